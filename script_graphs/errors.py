from typing import Optional


class GraphError(Exception):
    """Base class for script_graphs exceptions."""


class ConstructionError(GraphError, ValueError):
    """Raised while building a group; no group is produced."""


class InvalidGroupNameError(ConstructionError):
    def __init__(self, name: Optional[str]):
        super().__init__(
            f"invalid script group name {name!r}: expected 1-100 characters "
            "from [A-Za-z0-9-]"
        )
        self.name = name


class ArgumentShapeError(ConstructionError):
    """Malformed positional/Binding sequence or argument count mismatch."""


class BindingError(GraphError, ValueError):
    """Raised by ScriptGroup.execute(); the group stays reusable."""


class InputCountError(BindingError):
    def __init__(self, group_name: str, received: int, expected: int):
        super().__init__(
            f"script group '{group_name}' received {received} inputs, "
            f"less than expected {expected}"
        )
        self.received = received
        self.expected = expected


class InputTypeError(BindingError, TypeError):
    def __init__(self, group_name: str, index: int, kind: str):
        super().__init__(
            f"script group '{group_name}': input {index} is a {kind}; "
            "only concrete values can be bound"
        )
        self.index = index


class ValueTypeError(GraphError, TypeError):
    """An object that has no Value encoding."""


class ValueRangeError(ValueTypeError, ValueError):
    """An integer outside the range of its declared width."""


class BackendError(GraphError, RuntimeError):
    pass


class KernelUnavailableError(BackendError):
    """Raised when a kernel or invokable is not known to the backend."""


class ArityNotice(UserWarning):
    """More inputs were passed to execute() than the group declares."""
