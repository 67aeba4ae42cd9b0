from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .ir.values import ValueTag

# Slots are packed below the script handle so every id is non-zero and unique per backend.
_SLOT_BITS = 16


def _make_id(script_handle: int, slot: int) -> int:
    return (script_handle << _SLOT_BITS) | (slot + 1)


@dataclass(frozen=True)
class KernelID:
    script_handle: int
    slot: int
    name: str
    params: Tuple[ValueTag, ...]

    @property
    def id(self) -> int:
        return _make_id(self.script_handle, self.slot)

    @property
    def arity(self) -> int:
        return len(self.params)


@dataclass(frozen=True)
class InvokeID:
    script_handle: int
    slot: int
    name: str
    params: Tuple[ValueTag, ...]

    @property
    def id(self) -> int:
        return _make_id(self.script_handle, self.slot)

    @property
    def arity(self) -> int:
        return len(self.params)


@dataclass(frozen=True)
class FieldID:
    script_handle: int
    slot: int
    name: str
    tag: ValueTag

    @property
    def id(self) -> int:
        return _make_id(self.script_handle, self.slot)


@dataclass
class _Entry:
    ident: Any
    func: Callable


@dataclass
class _FieldEntry:
    ident: FieldID
    default: Any = None


class Script:
    """
    Declares the kernels, invokables and global fields of one compute script.

    Kernels are called as ``fn(inputs, outputs, globals)``: ``inputs`` holds the
    decoded positional arguments (numpy arrays for buffers), ``outputs`` the
    return buffer if the closure has one, and ``globals`` a name -> value dict of
    the script's fields. Invokables are called as ``fn(args, globals)``.
    Changes made to ``globals`` are kept by the backend.
    """

    def __init__(self, backend, name: str):
        self.name = name
        self._kernels: List[_Entry] = []
        self._invokables: List[_Entry] = []
        self._fields: List[_FieldEntry] = []
        self.handle: int = backend.register_script(self)

    # --- Declaration ---

    def kernel(self, params: Sequence[ValueTag] = (), name: Optional[str] = None):
        def decorator(func):
            kernel_name = name or func.__name__
            if self._find(self._kernels, kernel_name) is not None:
                raise ValueError(
                    f"Kernel '{kernel_name}' is already declared in script '{self.name}'"
                )
            ident = KernelID(self.handle, len(self._kernels), kernel_name, tuple(params))
            self._kernels.append(_Entry(ident, func))
            return func

        return decorator

    def invokable(self, params: Sequence[ValueTag] = (), name: Optional[str] = None):
        def decorator(func):
            invoke_name = name or func.__name__
            if self._find(self._invokables, invoke_name) is not None:
                raise ValueError(
                    f"Invokable '{invoke_name}' is already declared in script '{self.name}'"
                )
            ident = InvokeID(
                self.handle, len(self._invokables), invoke_name, tuple(params)
            )
            self._invokables.append(_Entry(ident, func))
            return func

        return decorator

    def field(self, name: str, tag: ValueTag, default: Any = None) -> FieldID:
        if self._find(self._fields, name) is not None:
            raise ValueError(f"Field '{name}' is already declared in script '{self.name}'")
        ident = FieldID(self.handle, len(self._fields), name, tag)
        self._fields.append(_FieldEntry(ident, default))
        return ident

    # --- Lookup ---

    @staticmethod
    def _find(entries, name: str):
        for entry in entries:
            if entry.ident.name == name:
                return entry
        return None

    def get_kernel_id(self, name: str) -> KernelID:
        entry = self._find(self._kernels, name)
        if entry is None:
            raise KeyError(f"Script '{self.name}' has no kernel '{name}'")
        return entry.ident

    def get_invoke_id(self, name: str) -> InvokeID:
        entry = self._find(self._invokables, name)
        if entry is None:
            raise KeyError(f"Script '{self.name}' has no invokable '{name}'")
        return entry.ident

    def get_field_id(self, name: str) -> FieldID:
        entry = self._find(self._fields, name)
        if entry is None:
            raise KeyError(f"Script '{self.name}' has no field '{name}'")
        return entry.ident

    def kernel_for(self, ident_id: int) -> Optional[Tuple[KernelID, Callable]]:
        for entry in self._kernels:
            if entry.ident.id == ident_id:
                return entry.ident, entry.func
        return None

    def invokable_for(self, ident_id: int) -> Optional[Tuple[InvokeID, Callable]]:
        for entry in self._invokables:
            if entry.ident.id == ident_id:
                return entry.ident, entry.func
        return None

    def field_for(self, ident_id: int) -> Optional[FieldID]:
        for entry in self._fields:
            if entry.ident.id == ident_id:
                return entry.ident
        return None

    def field_defaults(self) -> Dict[FieldID, Any]:
        return {entry.ident: entry.default for entry in self._fields}

    def __repr__(self):
        return (
            f"Script({self.name!r}, kernels={len(self._kernels)}, "
            f"invokables={len(self._invokables)}, fields={len(self._fields)})"
        )


def script_handle_of(ident_id: int) -> int:
    return ident_id >> _SLOT_BITS
