# script_graphs/backend/kernels/elementwise.py
import numpy as np

from ...ir.values import ValueTag
from ...script import Script


def create_elementwise_script(backend, name: str = "elementwise") -> Script:
    """
    Builds a small numpy script on ``backend``:

    - ``fill(value: f32) -> out``           out[...] = value
    - ``add(a: buf, b: buf) -> out``        out = a + b
    - ``scale(a: buf) -> out``              out = a * gain
    - ``accumulate(a: buf)``                total[...] += a  (global output buffer)
    - ``set_gain(g: f32)``                  invokable, gain = g

    Globals: ``gain`` (f32, default 1.0) and ``total`` (buffer).
    """
    script = Script(backend, name)
    script.field("gain", ValueTag.FLOAT32, default=1.0)
    script.field("total", ValueTag.BUFFER)

    @script.kernel(params=[ValueTag.FLOAT32])
    def fill(inputs, outputs, globals):
        outputs[0][...] = inputs[0]

    @script.kernel(params=[ValueTag.BUFFER, ValueTag.BUFFER])
    def add(inputs, outputs, globals):
        np.add(inputs[0], inputs[1], out=outputs[0])

    @script.kernel(params=[ValueTag.BUFFER])
    def scale(inputs, outputs, globals):
        np.multiply(inputs[0], np.float32(globals["gain"]), out=outputs[0])

    @script.kernel(params=[ValueTag.BUFFER])
    def accumulate(inputs, outputs, globals):
        total = globals["total"]
        if total is None:
            raise ValueError("accumulate needs the 'total' global bound to a buffer")
        # Buffer globals are updated in place.
        total += inputs[0].astype(total.dtype, copy=False)

    @script.invokable(params=[ValueTag.FLOAT32])
    def set_gain(args, globals):
        globals["gain"] = args[0]

    return script
