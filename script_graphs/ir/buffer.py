from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .dtypes import Type


@dataclass(eq=False)
class Allocation:
    """
    A typed buffer owned by a backend. The backend decides where the bytes
    live; this object only carries the handle and the type.
    """

    handle: int
    type: Type
    backend: Any = field(repr=False)

    def copy_from(self, data: Any) -> None:
        arr = np.asarray(data, dtype=self.type.dtype.numpy_dtype)
        if arr.size != int(np.prod(self.type.shape)):
            raise ValueError(
                f"Cannot copy {arr.size} elements into allocation of type {self.type}"
            )
        self.backend.write_allocation(self.handle, arr.reshape(self.type.shape))

    def to_numpy(self) -> np.ndarray:
        return self.backend.read_allocation(self.handle)
