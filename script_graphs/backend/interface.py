from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import numpy as np

from ..ir.buffer import Allocation
from ..ir.dtypes import Type


class Backend(ABC):
    """
    The compute engine behind a script group. It owns every resource and
    decides the run order from the dependency metadata it is given.

    Slot arrays are aligned by index. A field id of 0 marks a positional
    argument and a dependency closure of 0 means "no dependency".
    """

    @abstractmethod
    def register_script(self, script) -> int:
        """Makes a script's kernels, invokables and fields known; returns its handle."""
        pass

    @abstractmethod
    def create_allocation(self, type: Type) -> Allocation:
        pass

    @abstractmethod
    def read_allocation(self, handle: int) -> np.ndarray:
        """Returns a copy of the buffer contents."""
        pass

    @abstractmethod
    def write_allocation(self, handle: int, data: Any) -> None:
        pass

    @abstractmethod
    def release_allocation(self, handle: int) -> None:
        pass

    @abstractmethod
    def create_closure(
        self,
        kernel_id: int,
        return_handle: int,
        field_ids: Sequence[int],
        values: Sequence[int],
        sizes: Sequence[int],
        dep_closures: Sequence[int],
        dep_fields: Sequence[int],
    ) -> int:
        pass

    @abstractmethod
    def create_invoke_closure(
        self,
        invoke_id: int,
        packed_args: bytes,
        field_ids: Sequence[int],
        values: Sequence[int],
        sizes: Sequence[int],
    ) -> int:
        pass

    @abstractmethod
    def set_closure_arg(self, closure: int, index: int, value: int, size: int) -> None:
        pass

    @abstractmethod
    def set_closure_global(
        self, closure: int, field_id: int, value: int, size: int
    ) -> None:
        pass

    @abstractmethod
    def create_graph(
        self, name: str, cache_path: Optional[str], closures: Sequence[int]
    ) -> int:
        pass

    @abstractmethod
    def execute_graph(self, graph: int) -> None:
        """Runs every closure of the group once; returns when all are done."""
        pass
