from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..errors import ArgumentShapeError, ConstructionError
from ..script import FieldID, InvokeID, KernelID
from .buffer import Allocation
from .values import Value, ValueAndSize, ValueTag, coerce, pack_args


@dataclass(frozen=True)
class Binding:
    """Marks a global-field binding inside a flattened argument sequence."""

    field: FieldID
    value: Any


class Future:
    """
    The result of a closure: its return buffer (field_id is None) or one of
    its globals.
    """

    def __init__(self, closure: "Closure", field_id: Optional[FieldID] = None):
        self._closure = closure
        self._field_id = field_id

    @property
    def closure(self) -> "Closure":
        return self._closure

    @property
    def field_id(self) -> Optional[FieldID]:
        return self._field_id

    @property
    def cached_value(self) -> Any:
        """Backing object used while wiring the graph; None if there is none yet."""
        if self._field_id is None:
            return self._closure.return_value
        bound = self._closure.bindings.get(self._field_id)
        if isinstance(bound, (UnboundValue, Future)):
            return None
        return bound

    @property
    def value(self) -> Any:
        # Only meaningful once the producer has run.
        if not self._closure.has_executed:
            return None
        return self.cached_value

    def __repr__(self):
        target = "return" if self._field_id is None else self._field_id.name
        return f"Future({self._closure.name}.{target})"


class UnboundValue:
    """
    A free input of the graph. Targets are (closure index, slot) pairs into
    the builder's closure arena; set() pushes one value to all of them.
    """

    def __init__(self, arena: Sequence["Closure"]):
        self._arena = arena
        self._arg_targets: List[Tuple[int, int]] = []
        self._field_targets: List[Tuple[int, FieldID]] = []

    def add_reference(self, closure_index: int, slot: Union[int, FieldID]) -> None:
        if isinstance(slot, FieldID):
            self._field_targets.append((closure_index, slot))
        else:
            self._arg_targets.append((closure_index, slot))

    @property
    def arg_targets(self) -> List[Tuple[int, int]]:
        return list(self._arg_targets)

    @property
    def field_targets(self) -> List[Tuple[int, FieldID]]:
        return list(self._field_targets)

    def check(self, value: Any) -> None:
        """Raises ValueTypeError if any target cannot take the value."""
        if not self._arg_targets and not self._field_targets:
            Value.of(value)
        for closure_index, arg_index in self._arg_targets:
            self._arena[closure_index].encode_arg(arg_index, value)
        for closure_index, field_id in self._field_targets:
            coerce(value, field_id.tag)

    def set(self, value: Any) -> None:
        # Fail on an unsuitable value before anything reaches the backend.
        self.check(value)
        for closure_index, arg_index in self._arg_targets:
            self._arena[closure_index].set_arg(arg_index, value)
        for closure_index, field_id in self._field_targets:
            self._arena[closure_index].set_global(field_id, value)

    def __repr__(self):
        return (
            f"UnboundValue(args={len(self._arg_targets)}, "
            f"globals={len(self._field_targets)})"
        )


@dataclass
class SlotEncoding:
    """
    Parallel arrays describing a closure's slots, ready for the backend.
    """

    field_ids: List[int] = field(default_factory=list)
    values: List[int] = field(default_factory=list)
    sizes: List[int] = field(default_factory=list)
    dep_closures: List[int] = field(default_factory=list)
    dep_fields: List[int] = field(default_factory=list)
    # Placeholder targets, registered once the backend has accepted the closure.
    references: List[Tuple[UnboundValue, Union[int, FieldID]]] = field(
        default_factory=list
    )

    def append(self, field_id: int, vs: ValueAndSize, dep: Tuple[int, int]) -> None:
        self.field_ids.append(field_id)
        self.values.append(vs.value)
        self.sizes.append(vs.size)
        self.dep_closures.append(dep[0])
        self.dep_fields.append(dep[1])


_NO_VALUE = ValueAndSize(0, 0)
_NO_DEPENDENCY = (0, 0)


def _resolve_slot(
    obj: Any, tag: Optional[ValueTag]
) -> Tuple[ValueAndSize, Tuple[int, int]]:
    if isinstance(obj, Future):
        producer = obj.closure
        if producer.handle is None:
            raise ConstructionError(
                f"{obj!r} belongs to a closure that has not been created"
            )
        dep = (producer.handle, obj.field_id.id if obj.field_id is not None else 0)
        cached = obj.cached_value
        if cached is None:
            # The dependency edge supplies the value at run time.
            return _NO_VALUE, dep
        return coerce(cached, tag).encode(), dep
    return coerce(obj, tag).encode(), _NO_DEPENDENCY


class Closure:
    """
    One kernel or invokable call in a script group. The number of slots is
    fixed at construction; slot contents change when inputs are bound.
    """

    def __init__(
        self,
        function_id: Union[KernelID, InvokeID],
        args: Sequence[Any],
        bindings: Mapping[FieldID, Any],
    ):
        self.function_id = function_id
        self.handle: Optional[int] = None
        self._backend = None
        self._args: List[Any] = list(args)
        self._bindings: Dict[FieldID, Any] = dict(bindings)
        self._return_value: Optional[Allocation] = None
        self._return_future: Optional[Future] = None
        self._global_futures: Dict[FieldID, Future] = {}
        self._has_executed = False

    @property
    def name(self) -> str:
        return self.function_id.name

    @property
    def is_kernel(self) -> bool:
        return isinstance(self.function_id, KernelID)

    @property
    def args(self) -> Tuple[Any, ...]:
        return tuple(self._args)

    @property
    def bindings(self) -> Dict[FieldID, Any]:
        return dict(self._bindings)

    @property
    def return_value(self) -> Optional[Allocation]:
        return self._return_value

    @property
    def has_executed(self) -> bool:
        return self._has_executed

    def _param_tag(self, index: int) -> Optional[ValueTag]:
        params = self.function_id.params
        return params[index] if index < len(params) else None

    # --- Construction ---

    def encode_kernel_slots(self) -> SlotEncoding:
        enc = SlotEncoding()
        for i, obj in enumerate(self._args):
            if isinstance(obj, UnboundValue):
                enc.references.append((obj, i))
                enc.append(0, _NO_VALUE, _NO_DEPENDENCY)
            else:
                vs, dep = _resolve_slot(obj, self._param_tag(i))
                enc.append(0, vs, dep)
        self._encode_globals(enc, allow_futures=True)
        return enc

    def encode_invoke_slots(self) -> Tuple[bytes, SlotEncoding]:
        packed = []
        for i, obj in enumerate(self._args):
            if isinstance(obj, (UnboundValue, Future)):
                raise ArgumentShapeError(
                    f"Invokable '{self.name}': argument {i} must be a concrete value, "
                    f"got {type(obj).__name__}"
                )
            packed.append(coerce(obj, self._param_tag(i)))
        enc = SlotEncoding()
        self._encode_globals(enc, allow_futures=False)
        return pack_args(packed), enc

    def _encode_globals(self, enc: SlotEncoding, allow_futures: bool) -> None:
        for field_id, obj in self._bindings.items():
            if isinstance(obj, UnboundValue):
                enc.references.append((obj, field_id))
                enc.append(field_id.id, _NO_VALUE, _NO_DEPENDENCY)
                continue
            if isinstance(obj, Future) and not allow_futures:
                raise ArgumentShapeError(
                    f"Invokable '{self.name}': global '{field_id.name}' cannot be "
                    "bound to a future"
                )
            vs, dep = _resolve_slot(obj, field_id.tag)
            enc.append(field_id.id, vs, dep)

    def attach(
        self, backend, handle: int, return_value: Optional[Allocation] = None
    ) -> None:
        if self.handle is not None:
            raise ConstructionError(f"Closure '{self.name}' is already created")
        self._backend = backend
        self.handle = handle
        self._return_value = return_value

    # --- Futures ---

    def get_return(self) -> Future:
        if self._return_future is None:
            self._return_future = Future(self)
        return self._return_future

    def get_global(self, field_id: FieldID) -> Future:
        """
        Future for a global as this closure binds it. Its value is the bound
        object, so a field the closure does not bind gives a future whose value
        stays None even after execution. Consumers of such a future still
        receive what the kernel wrote, through the dependency edge.
        """
        future = self._global_futures.get(field_id)
        if future is None:
            future = Future(self, field_id)
            self._global_futures[field_id] = future
        return future

    # --- Rebinding ---

    def encode_arg(self, index: int, obj: Any) -> ValueAndSize:
        return coerce(obj, self._param_tag(index)).encode()

    def set_arg(self, index: int, obj: Any) -> None:
        vs = self.encode_arg(index, obj)
        self._args[index] = obj
        self._backend.set_closure_arg(self.handle, index, vs.value, vs.size)

    def set_global(self, field_id: FieldID, obj: Any) -> None:
        vs = coerce(obj, field_id.tag).encode()
        self._bindings[field_id] = obj
        self._backend.set_closure_global(self.handle, field_id.id, vs.value, vs.size)

    def mark_executed(self) -> None:
        self._has_executed = True

    def __repr__(self):
        kind = "kernel" if self.is_kernel else "invoke"
        return (
            f"Closure({kind} {self.name}, handle={self.handle}, "
            f"args={len(self._args)}, globals={len(self._bindings)})"
        )
