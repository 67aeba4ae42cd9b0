import logging

import numpy as np

from script_graphs import Binding, DType, GraphBuilder, ReferenceBackend, Type
from script_graphs.backend.kernels import create_elementwise_script

# ==============================================================================
# Build once, run many times:
#   a = fill(x); b = fill(y); s = add(a, b); out = scale(s) with gain bound to g
#   and every scaled result accumulated into a persistent `total` buffer.
# ==============================================================================

SHAPE = (4,)


def main():
    logging.basicConfig(level=logging.INFO)

    backend = ReferenceBackend()
    script = create_elementwise_script(backend)

    fill = script.get_kernel_id("fill")
    add = script.get_kernel_id("add")
    scale = script.get_kernel_id("scale")
    accumulate = script.get_kernel_id("accumulate")
    gain = script.get_field_id("gain")
    total = script.get_field_id("total")

    total_buf = backend.create_allocation(Type(DType.FP32, SHAPE))

    # 1. Declare the graph
    builder = GraphBuilder(backend)
    x = builder.add_input()
    y = builder.add_input()
    g = builder.add_input()

    a = builder.add_kernel(fill, Type(DType.FP32, SHAPE), x)
    b = builder.add_kernel(fill, Type(DType.FP32, SHAPE), y)
    s = builder.add_kernel(add, Type(DType.FP32, SHAPE), a.get_return(), b.get_return())
    out = builder.add_kernel(
        scale, Type(DType.FP32, SHAPE), s.get_return(), Binding(gain, g)
    )
    acc = builder.add_kernel(
        accumulate, None, out.get_return(), Binding(total, total_buf)
    )

    group = builder.create("elementwise-demo", out.get_return(), acc.get_global(total))
    print(group)

    # 2. Execute with different inputs
    for step, (xv, yv, gv) in enumerate([(1.0, 2.0, 1.0), (3.0, 4.0, 0.5), (0.0, 1.0, 10.0)]):
        scaled, running = group.execute(xv, yv, gv)
        print(
            f"step {step}: scaled={scaled.to_numpy()} total={running.to_numpy()}"
        )

    np.testing.assert_allclose(total_buf.to_numpy(), np.full(SHAPE, 16.5))
    print("\nDone.")


if __name__ == "__main__":
    main()
