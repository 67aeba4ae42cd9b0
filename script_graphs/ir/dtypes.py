import math
from enum import Enum
from dataclasses import dataclass
from typing import Tuple

import numpy as np


class DType(Enum):
    BOOL = "bool"
    INT32 = "int32"
    INT64 = "int64"
    FP32 = "float32"
    FP64 = "float64"

    @property
    def itemsize(self) -> int:
        """Returns the number of bytes per element."""
        return {
            DType.BOOL: 1,
            DType.INT32: 4,
            DType.INT64: 8,
            DType.FP32: 4,
            DType.FP64: 8,
        }[self]

    @property
    def numpy_dtype(self) -> np.dtype:
        return np.dtype(self.value)


def get_size_bytes(shape: Tuple[int, ...], dtype: DType) -> int:
    """
    Centralized logic for calculating total byte size.
    Scalar shapes () occupy a single element.
    """
    if any(d is None or d < 0 for d in shape):
        raise ValueError(f"Cannot calculate byte size for shape: {shape}")

    if len(shape) == 0:
        return dtype.itemsize

    return math.prod(shape) * dtype.itemsize


@dataclass(frozen=True)
class Type:
    """
    Element type and shape of a buffer, e.g. the return buffer of a kernel.
    """

    dtype: DType
    shape: Tuple[int, ...] = (1,)

    def __post_init__(self):
        object.__setattr__(self, "shape", tuple(int(d) for d in self.shape))
        # Validates the shape eagerly.
        get_size_bytes(self.shape, self.dtype)

    @property
    def size_bytes(self) -> int:
        return get_size_bytes(self.shape, self.dtype)

    def __repr__(self):
        shape_str = ",".join(str(d) for d in self.shape)
        return f"<{self.dtype.value} [{shape_str}]>"
