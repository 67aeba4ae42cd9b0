import numpy as np
import pytest

from script_graphs.backend.kernels import create_elementwise_script
from script_graphs.backend.reference import ReferenceBackend
from script_graphs.ir.graph import GraphBuilder
from script_graphs.ir.values import ValueTag
from script_graphs.script import Script


class RecordingBackend(ReferenceBackend):
    """ReferenceBackend that remembers every closure call it receives."""

    def __init__(self):
        super().__init__()
        self.calls = []

    def create_closure(self, kernel_id, return_handle, field_ids, values, sizes,
                       dep_closures, dep_fields):
        self.calls.append(
            (
                "create_closure",
                dict(
                    kernel_id=kernel_id,
                    return_handle=return_handle,
                    field_ids=list(field_ids),
                    values=list(values),
                    sizes=list(sizes),
                    dep_closures=list(dep_closures),
                    dep_fields=list(dep_fields),
                ),
            )
        )
        return super().create_closure(
            kernel_id, return_handle, field_ids, values, sizes, dep_closures, dep_fields
        )

    def create_invoke_closure(self, invoke_id, packed_args, field_ids, values, sizes):
        self.calls.append(
            (
                "create_invoke_closure",
                dict(
                    invoke_id=invoke_id,
                    packed_args=bytes(packed_args),
                    field_ids=list(field_ids),
                    values=list(values),
                    sizes=list(sizes),
                ),
            )
        )
        return super().create_invoke_closure(
            invoke_id, packed_args, field_ids, values, sizes
        )

    def set_closure_arg(self, closure, index, value, size):
        self.calls.append(("set_closure_arg", (closure, index, value, size)))
        super().set_closure_arg(closure, index, value, size)

    def set_closure_global(self, closure, field_id, value, size):
        self.calls.append(("set_closure_global", (closure, field_id, value, size)))
        super().set_closure_global(closure, field_id, value, size)

    def execute_graph(self, graph):
        self.calls.append(("execute_graph", graph))
        super().execute_graph(graph)

    def calls_named(self, name):
        return [args for call, args in self.calls if call == name]


def create_int_script(backend) -> Script:
    """Scalar-driven kernels used by the execution scenarios."""
    script = Script(backend, "ints")
    script.field("offset", ValueTag.INT32, default=0)
    script.field("last", ValueTag.INT64, default=0)

    @script.kernel(params=[ValueTag.INT32])
    def double(inputs, outputs, globals):
        outputs[0][...] = 2 * inputs[0] + globals["offset"]
        globals["last"] = 2 * inputs[0]

    @script.kernel(params=[ValueTag.BUFFER])
    def plus_one(inputs, outputs, globals):
        np.add(inputs[0], 1, out=outputs[0])

    @script.kernel(params=[ValueTag.BUFFER, ValueTag.INT64])
    def add_scalar(inputs, outputs, globals):
        np.add(inputs[0], inputs[1], out=outputs[0])

    return script


@pytest.fixture
def backend():
    return ReferenceBackend()


@pytest.fixture
def recording_backend():
    return RecordingBackend()


@pytest.fixture
def elementwise(backend):
    return create_elementwise_script(backend)


@pytest.fixture
def ints(backend):
    return create_int_script(backend)


@pytest.fixture
def builder(backend):
    return GraphBuilder(backend)


@pytest.fixture
def recorded_ints(recording_backend):
    return create_int_script(recording_backend)


@pytest.fixture
def recorded_elementwise(recording_backend):
    return create_elementwise_script(recording_backend)


@pytest.fixture
def recording_builder(recording_backend):
    return GraphBuilder(recording_backend)
