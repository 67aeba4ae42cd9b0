# Expose main components for easy access
from .ir.dtypes import DType, Type
from .ir.buffer import Allocation
from .ir.values import Value, ValueAndSize, ValueTag
from .ir.closure import Binding, Closure, Future, UnboundValue
from .ir.graph import GraphBuilder, GroupState, ScriptGroup
from .script import FieldID, InvokeID, KernelID, Script
from .backend import Backend, ReferenceBackend
from .errors import (
    ArgumentShapeError,
    ArityNotice,
    BackendError,
    BindingError,
    ConstructionError,
    GraphError,
    InputCountError,
    InputTypeError,
    InvalidGroupNameError,
    KernelUnavailableError,
    ValueRangeError,
    ValueTypeError,
)
