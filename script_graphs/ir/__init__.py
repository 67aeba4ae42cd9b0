from .dtypes import DType, Type
from .buffer import Allocation
from .values import Value, ValueAndSize, ValueTag

__all__ = [
    "DType",
    "Type",
    "Allocation",
    "Value",
    "ValueAndSize",
    "ValueTag",
]
