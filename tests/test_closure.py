import numpy as np
import pytest

from script_graphs.errors import (
    ArgumentShapeError,
    BackendError,
    ConstructionError,
    ValueTypeError,
)
from script_graphs.ir.closure import Binding
from script_graphs.ir.dtypes import DType, Type
from script_graphs.ir.values import Value


def test_unbound_argument_encodes_empty_slot(
    recording_backend, recorded_ints, recording_builder
):
    x = recording_builder.add_input()
    double = recording_builder.add_kernel(
        recorded_ints.get_kernel_id("double"), Type(DType.INT32), x
    )

    (call,) = recording_backend.calls_named("create_closure")
    assert call["kernel_id"] == recorded_ints.get_kernel_id("double").id
    assert call["return_handle"] == double.return_value.handle
    assert call["field_ids"] == [0]
    assert call["values"] == [0]
    assert call["sizes"] == [0]
    assert call["dep_closures"] == [0]
    assert call["dep_fields"] == [0]
    assert x.arg_targets == [(0, 0)]
    assert x.field_targets == []


def test_return_future_carries_buffer_and_dependency(
    recording_backend, recorded_ints, recording_builder
):
    double = recording_builder.add_kernel(
        recorded_ints.get_kernel_id("double"), Type(DType.INT32), 4
    )
    recording_builder.add_kernel(
        recorded_ints.get_kernel_id("plus_one"), Type(DType.INT32), double.get_return()
    )

    _, call = recording_backend.calls_named("create_closure")
    assert call["values"] == [double.return_value.handle]
    assert call["sizes"] == [-1]
    assert call["dep_closures"] == [double.handle]
    assert call["dep_fields"] == [0]


def test_global_future_without_value_is_resolved_at_run_time(
    recording_backend, recorded_ints, recording_builder
):
    last = recorded_ints.get_field_id("last")
    double = recording_builder.add_kernel(
        recorded_ints.get_kernel_id("double"), Type(DType.INT32), 4
    )
    recording_builder.add_kernel(
        recorded_ints.get_kernel_id("add_scalar"),
        Type(DType.INT32),
        double.get_return(),
        double.get_global(last),
    )

    _, call = recording_backend.calls_named("create_closure")
    assert call["sizes"] == [-1, 0]
    assert call["values"][1] == 0
    assert call["dep_closures"] == [double.handle, double.handle]
    assert call["dep_fields"] == [0, last.id]


def test_global_future_with_bound_value_uses_it(
    recording_backend, recorded_ints, recording_builder
):
    offset = recorded_ints.get_field_id("offset")
    double = recording_builder.add_kernel(
        recorded_ints.get_kernel_id("double"), Type(DType.INT32), 1, Binding(offset, 7)
    )
    recording_builder.add_kernel(
        recorded_ints.get_kernel_id("double"),
        Type(DType.INT32),
        double.get_global(offset),
    )

    _, call = recording_backend.calls_named("create_closure")
    assert call["values"] == [7]
    assert call["sizes"] == [4]
    assert call["dep_closures"] == [double.handle]
    assert call["dep_fields"] == [offset.id]


def test_slots_list_arguments_then_globals(
    recording_backend, recorded_ints, recording_builder
):
    offset = recorded_ints.get_field_id("offset")
    last = recorded_ints.get_field_id("last")
    recording_builder.add_kernel(
        recorded_ints.get_kernel_id("double"),
        Type(DType.INT32),
        5,
        Binding(offset, 3),
        Binding(last, 2**40),
    )

    (call,) = recording_backend.calls_named("create_closure")
    assert call["field_ids"] == [0, offset.id, last.id]
    assert call["values"] == [5, 3, 2**40]
    assert call["sizes"] == [4, 4, 8]


def test_declared_parameter_tag_sets_wire_size(
    recording_backend, recorded_ints, recording_builder
):
    double = recording_builder.add_kernel(
        recorded_ints.get_kernel_id("double"), Type(DType.INT32), 4
    )
    # add_scalar takes an int64, so a small Python int still travels as 8 bytes.
    recording_builder.add_kernel(
        recorded_ints.get_kernel_id("add_scalar"),
        Type(DType.INT32),
        double.get_return(),
        3,
    )

    _, call = recording_backend.calls_named("create_closure")
    assert call["sizes"] == [-1, 8]


def test_futures_are_memoized(ints, builder):
    last = ints.get_field_id("last")
    double = builder.add_kernel(ints.get_kernel_id("double"), Type(DType.INT32), 1)

    assert double.get_return() is double.get_return()
    assert double.get_global(last) is double.get_global(last)
    assert double.get_return() is not double.get_global(last)
    assert repr(double.get_return()) == "Future(double.return)"
    assert repr(double.get_global(last)) == "Future(double.last)"


def test_future_value_is_none_before_execution(ints, builder):
    double = builder.add_kernel(ints.get_kernel_id("double"), Type(DType.INT32), 1)
    future = double.get_return()

    assert future.value is None
    assert future.cached_value is double.return_value


def test_kernel_without_return_type_has_no_return_buffer(ints, builder):
    double = builder.add_kernel(ints.get_kernel_id("double"), None, 1)

    assert double.return_value is None
    assert double.get_return().cached_value is None


def test_closure_is_attached_once(ints, builder, backend):
    double = builder.add_kernel(ints.get_kernel_id("double"), Type(DType.INT32), 1)
    with pytest.raises(ConstructionError):
        double.attach(backend, 12345)


def test_invoke_packs_concrete_arguments(
    recording_backend, recorded_elementwise, recording_builder
):
    inv = recording_builder.add_invoke(
        recorded_elementwise.get_invoke_id("set_gain"), 0.5
    )

    (call,) = recording_backend.calls_named("create_invoke_closure")
    assert call["packed_args"] == np.array(0.5, dtype="<f4").tobytes()
    assert call["field_ids"] == []
    assert not inv.is_kernel


def test_invoke_rejects_placeholder_arguments(elementwise, builder):
    set_gain = elementwise.get_invoke_id("set_gain")
    fill = builder.add_kernel(
        elementwise.get_kernel_id("fill"), Type(DType.FP32), 1.0
    )
    x = builder.add_input()

    with pytest.raises(ArgumentShapeError):
        builder.add_invoke(set_gain, x)
    with pytest.raises(ArgumentShapeError):
        builder.add_invoke(set_gain, fill.get_return())
    assert x.arg_targets == []


def test_invoke_rejects_future_global(elementwise, builder):
    gain = elementwise.get_field_id("gain")
    fill = builder.add_kernel(
        elementwise.get_kernel_id("fill"), Type(DType.FP32), 1.0
    )

    with pytest.raises(ArgumentShapeError):
        builder.add_invoke(
            elementwise.get_invoke_id("set_gain"), 2.0, Binding(gain, fill.get_global(gain))
        )


def test_unbound_value_fans_out_and_overwrites(
    recording_backend, recorded_ints, recording_builder
):
    x = recording_builder.add_input()
    first = recording_builder.add_kernel(
        recorded_ints.get_kernel_id("double"), Type(DType.INT32), x
    )
    second = recording_builder.add_kernel(
        recorded_ints.get_kernel_id("double"), Type(DType.INT32), x
    )

    x.set(4)
    x.set(6)

    assert recording_backend.calls_named("set_closure_arg") == [
        (first.handle, 0, 4, 4),
        (second.handle, 0, 4, 4),
        (first.handle, 0, 6, 4),
        (second.handle, 0, 6, 4),
    ]
    assert first.args == (6,)
    assert second.args == (6,)


def test_unbound_global_is_pushed_as_global(
    recording_backend, recorded_ints, recording_builder
):
    offset = recorded_ints.get_field_id("offset")
    x = recording_builder.add_input()
    double = recording_builder.add_kernel(
        recorded_ints.get_kernel_id("double"), Type(DType.INT32), 1, Binding(offset, x)
    )

    x.set(9)

    assert x.field_targets == [(0, offset)]
    assert recording_backend.calls_named("set_closure_global") == [
        (double.handle, offset.id, 9, 4)
    ]
    assert double.bindings[offset] == 9


def test_unsuitable_value_is_rejected_before_any_push(
    recording_backend, recorded_ints, recorded_elementwise, recording_builder
):
    offset = recorded_ints.get_field_id("offset")
    x = recording_builder.add_input()
    recording_builder.add_kernel(
        recorded_elementwise.get_kernel_id("fill"), Type(DType.FP32), x
    )
    recording_builder.add_kernel(
        recorded_ints.get_kernel_id("double"), Type(DType.INT32), 1, Binding(offset, x)
    )

    # fill accepts 2.5, the int32 global does not.
    with pytest.raises(ValueTypeError):
        x.set(2.5)
    assert recording_backend.calls_named("set_closure_arg") == []
    assert recording_backend.calls_named("set_closure_global") == []


def test_failed_construction_registers_nothing(ints, elementwise, builder, backend):
    x = builder.add_input()
    double = ints.get_kernel_id("double")
    allocations = len(backend._allocations)

    with pytest.raises(ArgumentShapeError):
        builder.add_kernel(double, Type(DType.INT32), x, 2)

    with pytest.raises(ArgumentShapeError, match="gain"):
        builder.add_kernel(
            double,
            Type(DType.INT32),
            x,
            Binding(elementwise.get_field_id("gain"), 1.0),
        )
    with pytest.raises(ArgumentShapeError):
        builder.add_invoke(
            elementwise.get_invoke_id("set_gain"),
            1.0,
            bindings={ints.get_field_id("offset"): 1},
        )

    assert x.arg_targets == []
    assert builder.closures == ()
    assert len(backend._allocations) == allocations


def test_backend_rejection_leaves_no_input_targets(
    recording_backend, recorded_ints, recording_builder
):
    x = recording_builder.add_input()
    allocations = len(recording_backend._allocations)
    recording_backend.create_closure = _refuse

    with pytest.raises(BackendError, match="refused"):
        recording_builder.add_kernel(
            recorded_ints.get_kernel_id("double"), Type(DType.INT32), x
        )
    assert x.arg_targets == []
    assert recording_builder.closures == ()
    assert len(recording_backend._allocations) == allocations


def _refuse(*args):
    raise BackendError("refused")


def test_explicit_value_must_match_declared_tag(ints, builder):
    with pytest.raises(ValueTypeError):
        builder.add_kernel(
            ints.get_kernel_id("double"), Type(DType.INT32), Value.float32(1.0)
        )
    assert builder.closures == ()
