import struct
from typing import *

from .errors import EncodeError, MalformedString, UnexpectedEof

Buffer = Union[bytes, bytearray, memoryview]

_I8 = struct.Struct('<b')
_U8 = struct.Struct('<B')
_I16 = struct.Struct('<h')
_U16 = struct.Struct('<H')
_I32 = struct.Struct('<i')
_U32 = struct.Struct('<I')
_I64 = struct.Struct('<q')
_U64 = struct.Struct('<Q')
_F32 = struct.Struct('<f')
_F64 = struct.Struct('<d')

GUID_SIZE = 16
EMPTY_GUID = "00000000-0000-0000-0000-000000000000"


class WideStr(str):
    """A string that was (or must be) serialized as UTF-16LE with a negative length."""


def _check(data: Buffer, offset: int, size: int) -> int:
    end = offset + size
    if size < 0 or end > len(data):
        raise UnexpectedEof(size, max(0, len(data) - offset), offset=offset)
    return end


def _unpack(fmt: struct.Struct, data: Buffer, offset: int) -> Tuple[Any, int]:
    end = _check(data, offset, fmt.size)
    return fmt.unpack_from(data, offset)[0], end


def _pack(fmt: struct.Struct, data: bytearray, v: Any) -> None:
    try:
        data.extend(fmt.pack(v))
    except struct.error as e:
        raise EncodeError(f"cannot encode {v!r} as '{fmt.format}': {e}") from e


def read_i8(data: Buffer, offset: int) -> Tuple[int, int]:
    return _unpack(_I8, data, offset)


def write_i8(data: bytearray, v: int) -> None:
    _pack(_I8, data, int(v))


def read_u8(data: Buffer, offset: int) -> Tuple[int, int]:
    return _unpack(_U8, data, offset)


def write_u8(data: bytearray, v: int) -> None:
    _pack(_U8, data, int(v))


def read_i16(data: Buffer, offset: int) -> Tuple[int, int]:
    return _unpack(_I16, data, offset)


def write_i16(data: bytearray, v: int) -> None:
    _pack(_I16, data, int(v))


def read_u16(data: Buffer, offset: int) -> Tuple[int, int]:
    return _unpack(_U16, data, offset)


def write_u16(data: bytearray, v: int) -> None:
    _pack(_U16, data, int(v))


def read_i32(data: Buffer, offset: int) -> Tuple[int, int]:
    return _unpack(_I32, data, offset)


def write_i32(data: bytearray, v: int) -> None:
    _pack(_I32, data, int(v))


def read_u32(data: Buffer, offset: int) -> Tuple[int, int]:
    return _unpack(_U32, data, offset)


def write_u32(data: bytearray, v: int) -> None:
    _pack(_U32, data, int(v))


def read_i64(data: Buffer, offset: int) -> Tuple[int, int]:
    return _unpack(_I64, data, offset)


def write_i64(data: bytearray, v: int) -> None:
    _pack(_I64, data, int(v))


def read_u64(data: Buffer, offset: int) -> Tuple[int, int]:
    return _unpack(_U64, data, offset)


def write_u64(data: bytearray, v: int) -> None:
    _pack(_U64, data, int(v))


def read_f32(data: Buffer, offset: int) -> Tuple[float, int]:
    return _unpack(_F32, data, offset)


def write_f32(data: bytearray, v: float) -> None:
    _pack(_F32, data, float(v))


def read_f64(data: Buffer, offset: int) -> Tuple[float, int]:
    return _unpack(_F64, data, offset)


def write_f64(data: bytearray, v: float) -> None:
    _pack(_F64, data, float(v))


def read_bool(data: Buffer, offset: int) -> Tuple[bool, int]:
    """Read a one-byte boolean. Any nonzero byte is True."""
    value, offset = read_u8(data, offset)
    return value != 0, offset


def write_bool(data: bytearray, v: bool) -> None:
    data.append(1 if v else 0)


def read_bytes(data: Buffer, offset: int, size: int) -> Tuple[bytes, int]:
    end = _check(data, offset, size)
    return bytes(data[offset:end]), end


def read_view(data: Buffer, offset: int, size: int) -> Tuple[memoryview, int]:
    """Return a zero-copy view of the next `size` bytes, bounded so nested reads cannot overrun it."""
    end = _check(data, offset, size)
    return memoryview(data)[offset:end], end


def read_string(data: Buffer, offset: int) -> Tuple[str, int]:
    """Read UE FString: int32 length. If negative, it's UTF-16LE and -length is the code unit count.
    Length includes the null terminator, which is stripped.
    """
    start = offset
    strlen, offset = read_i32(data, offset)
    if strlen == 0:
        return "", offset
    if strlen < 0:
        raw, offset = read_bytes(data, offset, -strlen * 2)
        if raw[-2:] != b'\x00\x00':
            raise MalformedString(f"wide string of {-strlen} code units is not NUL terminated", offset=start)
        return WideStr(raw[:-2].decode('utf-16-le', errors='surrogatepass')), offset
    raw, offset = read_bytes(data, offset, strlen)
    if raw[-1] != 0:
        raise MalformedString(f"string of {strlen} bytes is not NUL terminated", offset=start)
    # surrogateescape keeps non UTF-8 (ANSI) bytes intact for re-encoding
    return raw[:-1].decode('utf-8', errors='surrogateescape'), offset


def write_string(data: bytearray, s: str) -> None:
    """Write a UE FString (length includes trailing NUL; 0 means empty)."""
    if isinstance(s, WideStr):
        raw = s.encode('utf-16-le', errors='surrogatepass')
        write_i32(data, -(len(raw) // 2 + 1))
        data.extend(raw)
        data.extend(b'\x00\x00')
        return
    if not s:
        write_i32(data, 0)
        return
    try:
        raw = s.encode('utf-8', errors='surrogateescape')
    except UnicodeEncodeError:
        # lone surrogates only survive as UTF-16
        write_string(data, WideStr(s))
        return
    write_i32(data, len(raw) + 1)
    data.extend(raw)
    data.append(0)


def read_guid(data: Buffer, offset: int) -> Tuple[str, int]:
    """Read a 16-byte GUID and return it in canonical 8-4-4-4-12 form."""
    raw, offset = read_bytes(data, offset, GUID_SIZE)
    # UE stores the first three groups little endian
    guid = f"{raw[0:4][::-1].hex()}-{raw[4:6][::-1].hex()}-{raw[6:8][::-1].hex()}-{raw[8:10].hex()}-{raw[10:16].hex()}"
    return guid, offset


def write_guid(data: bytearray, guid: str) -> None:
    parts = guid.split('-')
    try:
        chunks = [bytes.fromhex(p) for p in parts]
    except ValueError as e:
        raise EncodeError(f"invalid GUID {guid!r}") from e
    if [len(c) for c in chunks] != [4, 2, 2, 2, 6]:
        raise EncodeError(f"invalid GUID {guid!r}")
    data.extend(chunks[0][::-1])
    data.extend(chunks[1][::-1])
    data.extend(chunks[2][::-1])
    data.extend(chunks[3])
    data.extend(chunks[4])
