from .interface import Backend
from .reference import ReferenceBackend

__all__ = ["Backend", "ReferenceBackend"]
