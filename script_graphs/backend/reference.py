"""
File: script_graphs/backend/reference.py

In-process numpy backend. Closures run one at a time, in dependency order.
"""

import itertools
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from .. import config
from ..errors import BackendError, KernelUnavailableError
from ..ir.buffer import Allocation
from ..ir.dtypes import Type
from ..ir.values import ValueTag, decode_wire, unpack_args
from ..script import FieldID, Script, script_handle_of
from .interface import Backend

logger = logging.getLogger(__name__)

# Slot keys for dependency lookup: ("arg", index) or ("field", field_id).
SlotKey = Tuple[str, int]


@dataclass
class _ClosureRecord:
    handle: int
    kind: str  # "kernel" or "invoke"
    function_id: int
    return_handle: int = 0
    args: List[List[int]] = field(default_factory=list)  # [value, size]
    globals: Dict[int, List[int]] = field(default_factory=dict)
    deps: Dict[SlotKey, Tuple[int, int]] = field(default_factory=dict)
    packed_args: bytes = b""


@dataclass
class _GraphRecord:
    handle: int
    name: str
    cache_path: Optional[str]
    closures: List[int]
    order: List[int]


class ReferenceBackend(Backend):
    def __init__(self):
        self._handles = itertools.count(1)
        self._scripts: Dict[int, Script] = {}
        self._allocations: Dict[int, np.ndarray] = {}
        self._allocation_types: Dict[int, Type] = {}
        self._closures: Dict[int, _ClosureRecord] = {}
        self._graphs: Dict[int, _GraphRecord] = {}
        # Current value of every script global, keyed by field id.
        self._global_values: Dict[int, Any] = {}
        self.kernel_launch_filename: Optional[str] = None

    # --- Scripts ---

    def register_script(self, script: Script) -> int:
        handle = next(self._handles)
        self._scripts[handle] = script
        return handle

    def _script_for(self, ident_id: int) -> Script:
        script = self._scripts.get(script_handle_of(ident_id))
        if script is None:
            raise KernelUnavailableError(f"No script is registered for id {ident_id}")
        return script

    def _field(self, script: Script, field_id: int) -> FieldID:
        ident = script.field_for(field_id)
        if ident is None:
            raise BackendError(
                f"Field id {field_id} is not declared by script '{script.name}'"
            )
        return ident

    # --- Allocations ---

    def create_allocation(self, type: Type) -> Allocation:
        handle = next(self._handles)
        self._allocations[handle] = np.zeros(type.shape, dtype=type.dtype.numpy_dtype)
        self._allocation_types[handle] = type
        return Allocation(handle, type, self)

    def _allocation_array(self, handle: int) -> np.ndarray:
        arr = self._allocations.get(handle)
        if arr is None:
            raise BackendError(f"Unknown allocation handle {handle}")
        return arr

    def read_allocation(self, handle: int) -> np.ndarray:
        return self._allocation_array(handle).copy()

    def write_allocation(self, handle: int, data: Any) -> None:
        arr = self._allocation_array(handle)
        np.copyto(arr, np.asarray(data).reshape(arr.shape), casting="same_kind")

    def release_allocation(self, handle: int) -> None:
        self._allocation_array(handle)
        del self._allocations[handle]
        del self._allocation_types[handle]

    # --- Closures ---

    @staticmethod
    def _check_aligned(**arrays: Sequence) -> None:
        lengths = {name: len(arr) for name, arr in arrays.items()}
        if len(set(lengths.values())) > 1:
            raise BackendError(f"Slot arrays are not aligned: {lengths}")

    def _get_closure(self, handle: int) -> _ClosureRecord:
        rec = self._closures.get(handle)
        if rec is None:
            raise BackendError(f"Unknown closure handle {handle}")
        return rec

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
        self._check_aligned(
            field_ids=field_ids,
            values=values,
            sizes=sizes,
            dep_closures=dep_closures,
            dep_fields=dep_fields,
        )
        script = self._script_for(kernel_id)
        found = script.kernel_for(kernel_id)
        if found is None:
            raise KernelUnavailableError(
                f"Script '{script.name}' has no kernel with id {kernel_id}"
            )
        ident, _ = found
        if return_handle:
            self._allocation_array(return_handle)

        rec = _ClosureRecord(
            next(self._handles), "kernel", kernel_id, return_handle=return_handle
        )
        for fid, value, size, dep_c, dep_f in zip(
            field_ids, values, sizes, dep_closures, dep_fields
        ):
            if fid == 0:
                key: SlotKey = ("arg", len(rec.args))
                rec.args.append([value, size])
            else:
                self._field(script, fid)
                key = ("field", fid)
                rec.globals[fid] = [value, size]
            if dep_c:
                self._get_closure(dep_c)
                rec.deps[key] = (dep_c, dep_f)

        if len(rec.args) != ident.arity:
            raise BackendError(
                f"Kernel '{ident.name}' takes {ident.arity} arguments, got {len(rec.args)}"
            )
        self._closures[rec.handle] = rec
        return rec.handle

    def create_invoke_closure(
        self,
        invoke_id: int,
        packed_args: bytes,
        field_ids: Sequence[int],
        values: Sequence[int],
        sizes: Sequence[int],
    ) -> int:
        self._check_aligned(field_ids=field_ids, values=values, sizes=sizes)
        script = self._script_for(invoke_id)
        found = script.invokable_for(invoke_id)
        if found is None:
            raise KernelUnavailableError(
                f"Script '{script.name}' has no invokable with id {invoke_id}"
            )
        ident, _ = found
        try:
            unpack_args(packed_args, ident.params)
        except ValueError as e:
            raise BackendError(f"Invokable '{ident.name}': {e}") from e

        rec = _ClosureRecord(
            next(self._handles), "invoke", invoke_id, packed_args=bytes(packed_args)
        )
        for fid, value, size in zip(field_ids, values, sizes):
            if fid == 0:
                raise BackendError(
                    f"Invokable '{ident.name}' takes packed arguments, not positional slots"
                )
            self._field(script, fid)
            rec.globals[fid] = [value, size]
        self._closures[rec.handle] = rec
        return rec.handle

    def set_closure_arg(self, closure: int, index: int, value: int, size: int) -> None:
        rec = self._get_closure(closure)
        if not 0 <= index < len(rec.args):
            raise BackendError(
                f"Closure {closure} has {len(rec.args)} arguments, no index {index}"
            )
        rec.args[index] = [value, size]

    def set_closure_global(
        self, closure: int, field_id: int, value: int, size: int
    ) -> None:
        rec = self._get_closure(closure)
        if field_id not in rec.globals:
            raise BackendError(f"Closure {closure} does not bind field id {field_id}")
        rec.globals[field_id] = [value, size]

    # --- Groups ---

    def _topological_order(self, handles: Sequence[int]) -> List[int]:
        """
        Returns the closures ordered so that every producer runs before its
        consumers. Dependencies outside the group impose no order.
        A closure can only depend on closures created before it, so there are
        no cycles.
        """
        members = set(handles)
        visited = set()
        order: List[int] = []

        def _visit(handle: int):
            if handle in visited:
                return
            visited.add(handle)
            for dep_closure, _ in self._closures[handle].deps.values():
                if dep_closure in members:
                    _visit(dep_closure)
            order.append(handle)

        for handle in handles:
            _visit(handle)
        return order

    def _function_name(self, rec: _ClosureRecord) -> str:
        script = self._script_for(rec.function_id)
        if rec.kind == "kernel":
            found = script.kernel_for(rec.function_id)
        else:
            found = script.invokable_for(rec.function_id)
        return f"{script.name}.{found[0].name}"

    def _write_manifest(self, rec: _GraphRecord) -> None:
        os.makedirs(rec.cache_path, exist_ok=True)
        manifest = {
            "name": rec.name,
            "created": datetime.now().isoformat(),
            "order": rec.order,
            "closures": [
                {
                    "handle": h,
                    "kind": self._closures[h].kind,
                    "function": self._function_name(self._closures[h]),
                    "depends_on": sorted(
                        {dep for dep, _ in self._closures[h].deps.values()}
                    ),
                }
                for h in rec.closures
            ],
        }
        path = os.path.join(rec.cache_path, f"{rec.name}.json")
        with open(path, "w") as f:
            json.dump(manifest, f, indent=2)

    def create_graph(
        self, name: str, cache_path: Optional[str], closures: Sequence[int]
    ) -> int:
        for handle in closures:
            self._get_closure(handle)
        if len(set(closures)) != len(closures):
            raise BackendError(f"Group '{name}' lists a closure more than once")

        rec = _GraphRecord(
            next(self._handles),
            name,
            cache_path,
            list(closures),
            self._topological_order(closures),
        )
        if cache_path:
            self._write_manifest(rec)
        self._graphs[rec.handle] = rec
        logger.debug("Group '%s' execution order: %s", name, rec.order)
        return rec.handle

    def _get_graph(self, graph: int) -> _GraphRecord:
        rec = self._graphs.get(graph)
        if rec is None:
            raise BackendError(f"Unknown group handle {graph}")
        return rec

    def execution_order(self, graph: int) -> List[int]:
        return list(self._get_graph(graph).order)

    def execute_graph(self, graph: int) -> None:
        rec = self._get_graph(graph)

        with tqdm(
            rec.order,
            desc=f"group {rec.name}",
            disable=not config.DEBUG_EXECUTION,
        ) as pbar:
            for handle in pbar:
                closure = self._closures[handle]
                if config.DEBUG_EXECUTION and config.DEBUG_DETAILED:
                    logger.debug(
                        "[ReferenceBackend.execute_graph] running %s (%d)",
                        self._function_name(closure),
                        handle,
                    )
                self._run_closure(closure)

    # --- Execution ---

    def _resolve_dependency(self, dep: Tuple[int, int]) -> Any:
        dep_closure, dep_field = dep
        producer = self._get_closure(dep_closure)
        if dep_field == 0:
            if not producer.return_handle:
                raise BackendError(f"Closure {dep_closure} has no return buffer")
            return self._allocation_array(producer.return_handle)
        script = self._script_for(dep_field)
        ident = self._field(script, dep_field)
        return self._global_values.get(dep_field, script.field_defaults()[ident])

    def _decode_slot(
        self,
        value: int,
        size: int,
        tag: ValueTag,
        dep: Optional[Tuple[int, int]],
        what: str,
    ) -> Any:
        if size == 0:
            if dep is not None:
                return self._resolve_dependency(dep)
            raise BackendError(f"{what} is unbound")
        if size != tag.wire_size:
            raise BackendError(
                f"{what} expects {tag.value} (size {tag.wire_size}), got size {size}"
            )
        if tag == ValueTag.BUFFER:
            return self._allocation_array(value)
        return decode_wire(value, tag)

    def _globals_for(self, script: Script) -> Dict[str, Any]:
        return {
            ident.name: self._global_values.get(ident.id, default)
            for ident, default in script.field_defaults().items()
        }

    def _store_globals(self, script: Script, values: Dict[str, Any]) -> None:
        for ident in script.field_defaults():
            self._global_values[ident.id] = values[ident.name]

    def _run_closure(self, rec: _ClosureRecord) -> None:
        script = self._script_for(rec.function_id)
        name = self._function_name(rec)

        for fid, (value, size) in rec.globals.items():
            ident = self._field(script, fid)
            self._global_values[fid] = self._decode_slot(
                value,
                size,
                ident.tag,
                rec.deps.get(("field", fid)),
                f"{name}: global '{ident.name}'",
            )

        globals_view = self._globals_for(script)
        start = time.perf_counter()
        if rec.kind == "kernel":
            ident, func = script.kernel_for(rec.function_id)
            inputs = [
                self._decode_slot(
                    value, size, tag, rec.deps.get(("arg", i)), f"{name}: argument {i}"
                )
                for i, ((value, size), tag) in enumerate(zip(rec.args, ident.params))
            ]
            outputs = (
                [self._allocation_array(rec.return_handle)] if rec.return_handle else []
            )
            func(inputs, outputs, globals_view)
        else:
            ident, func = script.invokable_for(rec.function_id)
            args = unpack_args(rec.packed_args, ident.params)
            args = [
                self._allocation_array(a) if tag == ValueTag.BUFFER else a
                for a, tag in zip(args, ident.params)
            ]
            func(args, globals_view)
        elapsed_ms = (time.perf_counter() - start) * 1000
        self._store_globals(script, globals_view)

        if config.RECORD_KERNEL_LAUNCHES:
            self._record_kernel_launch(rec, name, elapsed_ms)

    def _record_kernel_launch(
        self, rec: _ClosureRecord, name: str, compute_time_ms: float
    ) -> None:
        """Append one launch record to this backend's .jsonl file."""
        if self.kernel_launch_filename is None:
            output_dir = config.RECORD_KERNEL_LAUNCHES_FOLDER
            os.makedirs(output_dir, exist_ok=True)
            run_num = 0
            while os.path.exists(os.path.join(output_dir, f"{run_num}.jsonl")):
                run_num += 1
            self.kernel_launch_filename = os.path.join(output_dir, f"{run_num}.jsonl")

        output_shape = (
            list(self._allocation_types[rec.return_handle].shape)
            if rec.return_handle
            else None
        )
        record = {
            "timestamp": datetime.now().isoformat(),
            "closure": rec.handle,
            "function": name,
            "kind": rec.kind,
            "output_shape": output_shape,
            "compute_time_ms": round(compute_time_ms, 6),
        }
        with open(self.kernel_launch_filename, "a") as f:
            f.write(json.dumps(record) + "\n")
