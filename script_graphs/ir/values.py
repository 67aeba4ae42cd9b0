import operator
from enum import Enum
from dataclasses import dataclass
from typing import Any, List, NamedTuple, Optional, Sequence

import numpy as np

from ..errors import ValueRangeError, ValueTypeError
from .buffer import Allocation
from .dtypes import DType

_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1
_INT64_MIN, _INT64_MAX = -(2**63), 2**63 - 1


class ValueTag(Enum):
    BOOL = "bool"
    INT32 = "int32"
    INT64 = "int64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    BUFFER = "buffer"

    @property
    def wire_size(self) -> int:
        """Size reported to the backend. -1 lets the backend use its own type metadata."""
        return {
            ValueTag.BOOL: 4,
            ValueTag.INT32: 4,
            ValueTag.INT64: 8,
            ValueTag.FLOAT32: 4,
            ValueTag.FLOAT64: 8,
            ValueTag.BUFFER: -1,
        }[self]

    @property
    def packed_format(self) -> str:
        """Little-endian numpy format used when packing invoke arguments."""
        return {
            ValueTag.BOOL: "<i4",
            ValueTag.INT32: "<i4",
            ValueTag.INT64: "<i8",
            ValueTag.FLOAT32: "<f4",
            ValueTag.FLOAT64: "<f8",
            ValueTag.BUFFER: "<i8",
        }[self]

    @property
    def dtype(self) -> Optional[DType]:
        return {
            ValueTag.BOOL: DType.BOOL,
            ValueTag.INT32: DType.INT32,
            ValueTag.INT64: DType.INT64,
            ValueTag.FLOAT32: DType.FP32,
            ValueTag.FLOAT64: DType.FP64,
        }.get(self)


class ValueAndSize(NamedTuple):
    value: int
    size: int


def _as_integer(obj: Any) -> int:
    if isinstance(obj, (bool, np.bool_)):
        raise ValueTypeError(f"Expected an integer, got {type(obj).__name__}")
    try:
        return operator.index(obj)
    except TypeError:
        raise ValueTypeError(f"Expected an integer, got {type(obj).__name__}") from None


def _as_real(obj: Any) -> float:
    if isinstance(obj, (bool, np.bool_)) or not isinstance(
        obj, (int, float, np.integer, np.floating)
    ):
        raise ValueTypeError(f"Expected a real number, got {type(obj).__name__}")
    return float(obj)


@dataclass(frozen=True)
class Value:
    """
    A concrete value a closure slot can carry. Build one through the typed
    constructors, or let Value.of() pick the tag for a plain Python/numpy object.
    """

    tag: ValueTag
    payload: Any

    @classmethod
    def bool_(cls, value: Any) -> "Value":
        if not isinstance(value, (bool, np.bool_)):
            raise ValueTypeError(f"Expected a bool, got {type(value).__name__}")
        return cls(ValueTag.BOOL, bool(value))

    @classmethod
    def int32(cls, value: Any) -> "Value":
        v = _as_integer(value)
        if not _INT32_MIN <= v <= _INT32_MAX:
            raise ValueRangeError(f"{v} does not fit in a 32-bit integer")
        return cls(ValueTag.INT32, v)

    @classmethod
    def int64(cls, value: Any) -> "Value":
        v = _as_integer(value)
        if not _INT64_MIN <= v <= _INT64_MAX:
            raise ValueRangeError(f"{v} does not fit in a 64-bit integer")
        return cls(ValueTag.INT64, v)

    @classmethod
    def float32(cls, value: Any) -> "Value":
        return cls(ValueTag.FLOAT32, float(np.float32(_as_real(value))))

    @classmethod
    def float64(cls, value: Any) -> "Value":
        return cls(ValueTag.FLOAT64, _as_real(value))

    @classmethod
    def buffer(cls, allocation: Allocation) -> "Value":
        if not isinstance(allocation, Allocation):
            raise ValueTypeError(
                f"Expected an Allocation, got {type(allocation).__name__}"
            )
        return cls(ValueTag.BUFFER, allocation)

    @classmethod
    def of(cls, obj: Any) -> "Value":
        """Converts an object crossing the API boundary into a tagged Value."""
        if isinstance(obj, Value):
            return obj
        if isinstance(obj, Allocation):
            return cls.buffer(obj)
        # bool is an int subclass, so it must be checked first.
        if isinstance(obj, (bool, np.bool_)):
            return cls.bool_(obj)
        if isinstance(obj, np.int32):
            return cls.int32(obj)
        if isinstance(obj, np.int64):
            return cls.int64(obj)
        if isinstance(obj, (int, np.integer)):
            v = int(obj)
            if _INT32_MIN <= v <= _INT32_MAX:
                return cls.int32(v)
            if _INT64_MIN <= v <= _INT64_MAX:
                return cls.int64(v)
            raise ValueRangeError(f"Integer {v} does not fit in 64 bits")
        if isinstance(obj, np.float32):
            return cls.float32(obj)
        if isinstance(obj, (float, np.float64)):
            return cls.float64(obj)
        raise ValueTypeError(f"Unsupported value type: {type(obj).__name__}")

    def encode(self) -> ValueAndSize:
        """Returns the (64-bit wire value, size hint) pair sent to the backend."""
        tag = self.tag
        if tag == ValueTag.BUFFER:
            return ValueAndSize(self.payload.handle, tag.wire_size)
        if tag == ValueTag.BOOL:
            return ValueAndSize(1 if self.payload else 0, tag.wire_size)
        if tag in (ValueTag.INT32, ValueTag.INT64):
            return ValueAndSize(self.payload, tag.wire_size)
        if tag == ValueTag.FLOAT32:
            bits = np.array(self.payload, dtype=np.float32).view(np.uint32)
            return ValueAndSize(int(bits), tag.wire_size)
        bits = np.array(self.payload, dtype=np.float64).view(np.int64)
        return ValueAndSize(int(bits), tag.wire_size)


_CONSTRUCTORS = {
    ValueTag.BOOL: Value.bool_,
    ValueTag.INT32: Value.int32,
    ValueTag.INT64: Value.int64,
    ValueTag.FLOAT32: Value.float32,
    ValueTag.FLOAT64: Value.float64,
    ValueTag.BUFFER: Value.buffer,
}


def coerce(obj: Any, tag: Optional[ValueTag]) -> Value:
    """
    Builds the Value for a slot of a declared tag. Without a tag the type is
    inferred with Value.of(). An explicit Value must already carry the tag.
    """
    if tag is None:
        return Value.of(obj)
    if isinstance(obj, Value):
        if obj.tag != tag:
            raise ValueTypeError(f"Expected a {tag.value} value, got {obj.tag.value}")
        return obj
    return _CONSTRUCTORS[tag](obj)


def value_and_size(obj: Any, tag: Optional[ValueTag] = None) -> ValueAndSize:
    return coerce(obj, tag).encode()


def decode_wire(value: int, tag: ValueTag) -> Any:
    """
    Inverse of Value.encode() for scalar tags. BUFFER decodes to the raw handle;
    resolving it to storage is the backend's business.
    """
    if tag == ValueTag.BOOL:
        return bool(value)
    if tag in (ValueTag.INT32, ValueTag.INT64, ValueTag.BUFFER):
        return int(value)
    if tag == ValueTag.FLOAT32:
        return float(np.array(value & 0xFFFFFFFF, dtype=np.uint32).view(np.float32))
    return float(np.array(value, dtype=np.int64).view(np.float64))


def _wire_to_packed(value: Value) -> Any:
    if value.tag == ValueTag.BUFFER:
        return value.payload.handle
    if value.tag == ValueTag.BOOL:
        return 1 if value.payload else 0
    return value.payload


def _align(offset: int, width: int) -> int:
    return (offset + width - 1) // width * width


def pack_args(values: Sequence[Value]) -> bytes:
    """
    Packs invoke arguments into a flat little-endian buffer. Every value is
    aligned to its own width.
    """
    out = bytearray()
    for v in values:
        fmt = np.dtype(v.tag.packed_format)
        out.extend(b"\x00" * (_align(len(out), fmt.itemsize) - len(out)))
        out.extend(np.array(_wire_to_packed(v), dtype=fmt).tobytes())
    return bytes(out)


def unpack_args(data: bytes, tags: Sequence[ValueTag]) -> List[Any]:
    """Reads back what pack_args() wrote, given the declared parameter tags."""
    result = []
    offset = 0
    for tag in tags:
        fmt = np.dtype(tag.packed_format)
        offset = _align(offset, fmt.itemsize)
        if offset + fmt.itemsize > len(data):
            raise ValueError(
                f"Packed arguments too short: need {offset + fmt.itemsize} bytes, "
                f"have {len(data)}"
            )
        raw = np.frombuffer(data, dtype=fmt, count=1, offset=offset)[0]
        offset += fmt.itemsize
        if tag == ValueTag.BOOL:
            result.append(bool(raw))
        elif tag in (ValueTag.FLOAT32, ValueTag.FLOAT64):
            result.append(float(raw))
        else:
            result.append(int(raw))
    return result
