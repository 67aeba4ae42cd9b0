import itertools
import logging
import re
import warnings
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .. import config
from ..errors import (
    ArgumentShapeError,
    ArityNotice,
    BindingError,
    ConstructionError,
    InputCountError,
    InputTypeError,
    InvalidGroupNameError,
)
from ..script import FieldID, InvokeID, KernelID
from .closure import Binding, Closure, Future, UnboundValue
from .dtypes import Type

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9-]")


def validate_group_name(name: Optional[str]) -> str:
    """
    Group names are 1-100 characters from [A-Za-z0-9-]. The name is checked,
    never rewritten.
    """
    if (
        not isinstance(name, str)
        or not name
        or len(name) > config.MAX_GROUP_NAME_LENGTH
        or _INVALID_NAME_CHARS.search(name)
    ):
        raise InvalidGroupNameError(name)
    return name


def separate_args_and_bindings(
    args_and_bindings: Sequence[Any],
) -> Tuple[List[Any], Dict[FieldID, Any]]:
    """
    Splits a flattened sequence into positional arguments and global bindings.
    Once a Binding is seen every remaining element must be a Binding.
    """
    args: List[Any] = []
    bindings: Dict[FieldID, Any] = {}

    i = 0
    while i < len(args_and_bindings) and not isinstance(args_and_bindings[i], Binding):
        args.append(args_and_bindings[i])
        i += 1

    for j in range(i, len(args_and_bindings)):
        item = args_and_bindings[j]
        if not isinstance(item, Binding):
            raise ArgumentShapeError(
                f"Element {j} ({type(item).__name__}) follows a Binding; "
                "positional arguments must come before all bindings"
            )
        _put_binding(bindings, item.field, item.value)

    return args, bindings


def _put_binding(bindings: Dict[FieldID, Any], field_id: Any, value: Any) -> None:
    if not isinstance(field_id, FieldID):
        raise ArgumentShapeError(
            f"Global bindings must be keyed by FieldID, got {type(field_id).__name__}"
        )
    if field_id in bindings:
        raise ArgumentShapeError(f"Global '{field_id.name}' is bound more than once")
    bindings[field_id] = value


class GroupState(Enum):
    BUILT = "built"
    BINDING = "binding"
    RUNNING = "running"


class ScriptGroup:
    """
    A frozen set of closures with ordered inputs and outputs. The topology is
    fixed; execute() rebinds the inputs and runs everything again.
    """

    def __init__(
        self,
        backend,
        handle: int,
        name: str,
        closures: Sequence[Closure],
        inputs: Sequence[UnboundValue],
        outputs: Sequence[Future],
    ):
        self.backend = backend
        self.handle = handle
        self.name = name
        self._closures = tuple(closures)
        self._inputs = tuple(inputs)
        self._outputs = tuple(outputs)
        self._state = GroupState.BUILT

    @property
    def closures(self) -> Tuple[Closure, ...]:
        return self._closures

    @property
    def inputs(self) -> Tuple[UnboundValue, ...]:
        return self._inputs

    @property
    def outputs(self) -> Tuple[Future, ...]:
        return self._outputs

    @property
    def state(self) -> GroupState:
        return self._state

    def _check_inputs(self, inputs: Sequence[Any]) -> None:
        expected = len(self._inputs)
        if len(inputs) < expected:
            logger.error(
                "%r receives %d inputs, less than expected %d",
                self,
                len(inputs),
                expected,
            )
            raise InputCountError(self.name, len(inputs), expected)

        if len(inputs) > expected:
            logger.info(
                "%r receives %d inputs, more than expected %d",
                self,
                len(inputs),
                expected,
            )
            warnings.warn(
                f"script group '{self.name}' received {len(inputs)} inputs, "
                f"more than expected {expected}; the extra inputs are ignored",
                ArityNotice,
                stacklevel=3,
            )

        for i in range(expected):
            obj = inputs[i]
            if isinstance(obj, (Future, UnboundValue)):
                kind = "future" if isinstance(obj, Future) else "unbound value"
                logger.error("%r: input %d is a %s", self, i, kind)
                raise InputTypeError(self.name, i, kind)
            self._inputs[i].check(obj)

    def execute(self, *inputs: Any) -> List[Any]:
        """
        Binds the inputs in declaration order, runs the group once and returns
        the value of each output future, in declaration order.
        """
        if self._state != GroupState.BUILT:
            raise BindingError(
                f"script group '{self.name}' is already executing ({self._state.value})"
            )

        self._check_inputs(inputs)

        try:
            self._state = GroupState.BINDING
            for unbound, value in zip(self._inputs, inputs):
                unbound.set(value)

            self._state = GroupState.RUNNING
            if config.DEBUG_EXECUTION:
                logger.debug(
                    "[ScriptGroup.execute] running '%s' (%d closures)",
                    self.name,
                    len(self._closures),
                )
            self.backend.execute_graph(self.handle)
            for closure in self._closures:
                closure.mark_executed()
        finally:
            self._state = GroupState.BUILT

        return [future.value for future in self._outputs]

    def __repr__(self):
        return (
            f"ScriptGroup({self.name!r}, closures={len(self._closures)}, "
            f"inputs={len(self._inputs)}, outputs={len(self._outputs)})"
        )


class GraphBuilder:
    def __init__(self, backend, cache_path: Optional[str] = None):
        self.backend = backend
        self.cache_path = cache_path if cache_path is not None else config.GROUP_CACHE_PATH
        self._closures: List[Closure] = []
        self._inputs: List[UnboundValue] = []
        self._created = False

    @property
    def closures(self) -> Tuple[Closure, ...]:
        return tuple(self._closures)

    @property
    def inputs(self) -> Tuple[UnboundValue, ...]:
        return tuple(self._inputs)

    def _ensure_open(self) -> None:
        if self._created:
            raise ConstructionError(
                "GraphBuilder has already created its script group; "
                "use a new builder for another group"
            )

    def _collect(
        self,
        function_id: Union[KernelID, InvokeID],
        args_and_bindings: Sequence[Any],
        bindings: Optional[Mapping],
    ) -> Tuple[List[Any], Dict[FieldID, Any]]:
        args, bound = separate_args_and_bindings(args_and_bindings)
        if bindings:
            for field_id, value in bindings.items():
                _put_binding(bound, field_id, value)
        for field_id in bound:
            if field_id.script_handle != function_id.script_handle:
                raise ArgumentShapeError(
                    f"Global '{field_id.name}' is not declared by the script of "
                    f"'{function_id.name}'"
                )
        for obj in itertools.chain(args, bound.values()):
            if isinstance(obj, UnboundValue) and not any(obj is u for u in self._inputs):
                raise ConstructionError(f"{obj!r} was not created by this builder")
            if isinstance(obj, Future) and not any(
                obj.closure is c for c in self._closures
            ):
                raise ConstructionError(f"{obj!r} was not created by this builder")
        return args, bound

    def _register(self, closure: Closure, references) -> Closure:
        index = len(self._closures)
        for unbound, slot in references:
            unbound.add_reference(index, slot)
        self._closures.append(closure)
        return closure

    # --- Closures ---

    def add_kernel(
        self,
        kernel_id: KernelID,
        return_type: Optional[Type],
        *args_and_bindings: Any,
        bindings: Optional[Mapping[FieldID, Any]] = None,
    ) -> Closure:
        self._ensure_open()
        if not isinstance(kernel_id, KernelID):
            raise ConstructionError(f"Expected a KernelID, got {type(kernel_id).__name__}")
        args, bound = self._collect(kernel_id, args_and_bindings, bindings)
        if len(args) != kernel_id.arity:
            raise ArgumentShapeError(
                f"Kernel '{kernel_id.name}' takes {kernel_id.arity} arguments, "
                f"got {len(args)}"
            )

        closure = Closure(kernel_id, args, bound)
        enc = closure.encode_kernel_slots()
        return_value = (
            self.backend.create_allocation(return_type) if return_type is not None else None
        )
        try:
            handle = self.backend.create_closure(
                kernel_id.id,
                return_value.handle if return_value is not None else 0,
                enc.field_ids,
                enc.values,
                enc.sizes,
                enc.dep_closures,
                enc.dep_fields,
            )
        except Exception:
            if return_value is not None:
                self.backend.release_allocation(return_value.handle)
            raise
        closure.attach(self.backend, handle, return_value)
        return self._register(closure, enc.references)

    def add_invoke(
        self,
        invoke_id: InvokeID,
        *args_and_bindings: Any,
        bindings: Optional[Mapping[FieldID, Any]] = None,
    ) -> Closure:
        self._ensure_open()
        if not isinstance(invoke_id, InvokeID):
            raise ConstructionError(f"Expected an InvokeID, got {type(invoke_id).__name__}")
        args, bound = self._collect(invoke_id, args_and_bindings, bindings)
        if len(args) != invoke_id.arity:
            raise ArgumentShapeError(
                f"Invokable '{invoke_id.name}' takes {invoke_id.arity} arguments, "
                f"got {len(args)}"
            )

        closure = Closure(invoke_id, args, bound)
        packed, enc = closure.encode_invoke_slots()
        handle = self.backend.create_invoke_closure(
            invoke_id.id, packed, enc.field_ids, enc.values, enc.sizes
        )
        closure.attach(self.backend, handle)
        return self._register(closure, enc.references)

    def add_input(self) -> UnboundValue:
        self._ensure_open()
        unbound = UnboundValue(self._closures)
        self._inputs.append(unbound)
        return unbound

    # --- Group ---

    def create(self, name: str, *outputs: Future) -> ScriptGroup:
        self._ensure_open()
        validate_group_name(name)
        for i, future in enumerate(outputs):
            if not isinstance(future, Future):
                raise ConstructionError(
                    f"Output {i} must be a Future, got {type(future).__name__}"
                )
            if not any(future.closure is c for c in self._closures):
                raise ConstructionError(
                    f"Output {i} ({future!r}) does not belong to this builder"
                )

        closures = tuple(self._closures)
        handle = self.backend.create_graph(
            name, self.cache_path, [c.handle for c in closures]
        )
        self._created = True
        logger.debug(
            "Created script group '%s' with %d closures, %d inputs, %d outputs",
            name,
            len(closures),
            len(self._inputs),
            len(outputs),
        )
        return ScriptGroup(
            self.backend, handle, name, closures, tuple(self._inputs), outputs
        )
