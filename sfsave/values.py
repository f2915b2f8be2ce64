from dataclasses import dataclass, field
from typing import *

from .errors import EncodeError, UnsupportedTextHistory
from .primitives import (Buffer, read_f32, read_f64, read_i32, read_i64, read_string, read_u8, read_u64,
                         write_f32, write_f64, write_i32, write_i64, write_string, write_u8, write_u64)


@dataclass
class ObjectReference:
    level_name: str = ""
    path_name: str = ""

    @property
    def is_null(self) -> bool:
        return not self.path_name

    @classmethod
    def from_bytes(cls, data: Buffer, offset: int) -> Tuple['ObjectReference', int]:
        level_name, offset = read_string(data, offset)
        path_name, offset = read_string(data, offset)
        return cls(level_name, path_name), offset

    def to_bytes(self, data: bytearray) -> None:
        write_string(data, self.level_name)
        write_string(data, self.path_name)


@dataclass
class SoftObjectReference:
    level_name: str = ""
    path_name: str = ""
    sub_path: str = ""

    @classmethod
    def from_bytes(cls, data: Buffer, offset: int) -> Tuple['SoftObjectReference', int]:
        level_name, offset = read_string(data, offset)
        path_name, offset = read_string(data, offset)
        sub_path, offset = read_string(data, offset)
        return cls(level_name, path_name, sub_path), offset

    def to_bytes(self, data: bytearray) -> None:
        write_string(data, self.level_name)
        write_string(data, self.path_name)
        write_string(data, self.sub_path)


def read_references(data: Buffer, offset: int) -> Tuple[List[ObjectReference], int]:
    count, offset = read_i32(data, offset)
    refs = []
    for _ in range(count):
        ref, offset = ObjectReference.from_bytes(data, offset)
        refs.append(ref)
    return refs, offset


def write_references(data: bytearray, refs: List[ObjectReference]) -> None:
    write_i32(data, len(refs))
    for ref in refs:
        ref.to_bytes(data)


@dataclass
class NetworkTrace:
    """FicsIt-Networks trace: a reference, optionally reached from a previous trace through a named step."""
    reference: ObjectReference = field(default_factory=ObjectReference)
    prev: Optional['NetworkTrace'] = None
    step: Optional[str] = None

    @classmethod
    def from_bytes(cls, data: Buffer, offset: int) -> Tuple['NetworkTrace', int]:
        reference, offset = ObjectReference.from_bytes(data, offset)
        prev = None
        has_prev, offset = read_i32(data, offset)
        if has_prev:
            prev, offset = cls.from_bytes(data, offset)
        step = None
        has_step, offset = read_i32(data, offset)
        if has_step:
            step, offset = read_string(data, offset)
        return cls(reference, prev, step), offset

    def to_bytes(self, data: bytearray) -> None:
        self.reference.to_bytes(data)
        write_i32(data, 0 if self.prev is None else 1)
        if self.prev is not None:
            self.prev.to_bytes(data)
        write_i32(data, 0 if self.step is None else 1)
        if self.step is not None:
            write_string(data, self.step)


@dataclass
class LuaProcessorState:
    """
    FicsIt-Networks Lua processor storage. The serialized struct table at the
    end has a class specific layout per entry and is kept as raw bytes.
    """
    traces: List[NetworkTrace] = field(default_factory=list)
    references: List[ObjectReference] = field(default_factory=list)
    thread: str = ""
    globals: str = ""
    structs: bytes = b""

    @classmethod
    def from_bytes(cls, data: Buffer, offset: int) -> Tuple['LuaProcessorState', int]:
        """Consumes everything up to the end of `data`, which must be bounded to the struct."""
        count, offset = read_i32(data, offset)
        traces = []
        for _ in range(count):
            trace, offset = NetworkTrace.from_bytes(data, offset)
            traces.append(trace)
        references, offset = read_references(data, offset)
        thread, offset = read_string(data, offset)
        globals_, offset = read_string(data, offset)
        return cls(traces, references, thread, globals_, bytes(data[offset:])), len(data)

    def to_bytes(self, data: bytearray) -> None:
        write_i32(data, len(self.traces))
        for trace in self.traces:
            trace.to_bytes(data)
        write_references(data, self.references)
        write_string(data, self.thread)
        write_string(data, self.globals)
        data.extend(self.structs)


# FText history types
HISTORY_NONE = 255
HISTORY_BASE = 0
HISTORY_NAMED_FORMAT = 1
HISTORY_ORDERED_FORMAT = 2
HISTORY_ARGUMENT_FORMAT = 3
HISTORY_TRANSFORM = 10
HISTORY_STRING_TABLE_ENTRY = 11

# FFormatArgumentValue types
ARGUMENT_INT = 0
ARGUMENT_UINT = 1
ARGUMENT_FLOAT = 2
ARGUMENT_DOUBLE = 3
ARGUMENT_TEXT = 4
ARGUMENT_GENDER = 5


@dataclass
class NoneHistory:
    culture_invariant: Optional[str] = None


@dataclass
class BaseHistory:
    namespace: str = ""
    key: str = ""
    source: str = ""


@dataclass
class FormatArgument:
    value_type: int
    value: Any
    name: Optional[str] = None


@dataclass
class FormatHistory:
    """Named (1), ordered (2) or argument (3) format; ordered arguments carry no name."""
    kind: int
    source_format: 'Text'
    arguments: List[FormatArgument] = field(default_factory=list)


@dataclass
class TransformHistory:
    source_text: 'Text'
    transform_type: int = 0


@dataclass
class StringTableHistory:
    table_id: str = ""
    key: str = ""


TextHistory = Union[NoneHistory, BaseHistory, FormatHistory, TransformHistory, StringTableHistory]


@dataclass
class Text:
    flags: int = 0
    history: TextHistory = field(default_factory=NoneHistory)

    @property
    def history_type(self) -> int:
        h = self.history
        if isinstance(h, NoneHistory):
            return HISTORY_NONE
        if isinstance(h, BaseHistory):
            return HISTORY_BASE
        if isinstance(h, FormatHistory):
            return h.kind
        if isinstance(h, TransformHistory):
            return HISTORY_TRANSFORM
        return HISTORY_STRING_TABLE_ENTRY

    def __str__(self):
        h = self.history
        if isinstance(h, NoneHistory):
            return h.culture_invariant or ""
        if isinstance(h, BaseHistory):
            return h.source
        if isinstance(h, FormatHistory):
            return str(h.source_format)
        if isinstance(h, TransformHistory):
            return str(h.source_text)
        return f"{h.table_id}:{h.key}"


def _read_argument_value(data: Buffer, offset: int, value_type: int) -> Tuple[Any, int]:
    if value_type == ARGUMENT_INT:
        return read_i64(data, offset)
    if value_type == ARGUMENT_UINT:
        return read_u64(data, offset)
    if value_type == ARGUMENT_FLOAT:
        return read_f32(data, offset)
    if value_type == ARGUMENT_DOUBLE:
        return read_f64(data, offset)
    if value_type == ARGUMENT_TEXT:
        return read_text(data, offset)
    if value_type == ARGUMENT_GENDER:
        return read_u8(data, offset)
    raise UnsupportedTextHistory(f"unknown text argument type {value_type}", offset=offset)


def _write_argument_value(data: bytearray, value_type: int, value: Any) -> None:
    if value_type == ARGUMENT_INT:
        write_i64(data, value)
    elif value_type == ARGUMENT_UINT:
        write_u64(data, value)
    elif value_type == ARGUMENT_FLOAT:
        write_f32(data, value)
    elif value_type == ARGUMENT_DOUBLE:
        write_f64(data, value)
    elif value_type == ARGUMENT_TEXT:
        write_text(data, value)
    elif value_type == ARGUMENT_GENDER:
        write_u8(data, value)
    else:
        raise UnsupportedTextHistory(f"unknown text argument type {value_type}")


def read_text(data: Buffer, offset: int) -> Tuple[Text, int]:
    """Read an FText: int32 flags, history type byte, then the history payload."""
    start = offset
    flags, offset = read_i32(data, offset)
    history_type, offset = read_u8(data, offset)

    if history_type == HISTORY_NONE:
        has_invariant, offset = read_i32(data, offset)
        invariant = None
        if has_invariant:
            invariant, offset = read_string(data, offset)
        return Text(flags, NoneHistory(invariant)), offset

    if history_type == HISTORY_BASE:
        namespace, offset = read_string(data, offset)
        key, offset = read_string(data, offset)
        source, offset = read_string(data, offset)
        return Text(flags, BaseHistory(namespace, key, source)), offset

    if history_type in (HISTORY_NAMED_FORMAT, HISTORY_ORDERED_FORMAT, HISTORY_ARGUMENT_FORMAT):
        source_format, offset = read_text(data, offset)
        count, offset = read_i32(data, offset)
        arguments = []
        for _ in range(count):
            name = None
            if history_type != HISTORY_ORDERED_FORMAT:
                name, offset = read_string(data, offset)
            value_type, offset = read_u8(data, offset)
            value, offset = _read_argument_value(data, offset, value_type)
            arguments.append(FormatArgument(value_type, value, name))
        return Text(flags, FormatHistory(history_type, source_format, arguments)), offset

    if history_type == HISTORY_TRANSFORM:
        source_text, offset = read_text(data, offset)
        transform_type, offset = read_u8(data, offset)
        return Text(flags, TransformHistory(source_text, transform_type)), offset

    if history_type == HISTORY_STRING_TABLE_ENTRY:
        table_id, offset = read_string(data, offset)
        key, offset = read_string(data, offset)
        return Text(flags, StringTableHistory(table_id, key)), offset

    raise UnsupportedTextHistory(f"unsupported text history type {history_type}", offset=start)


def write_text(data: bytearray, text: Text) -> None:
    write_i32(data, text.flags)
    write_u8(data, text.history_type)
    h = text.history
    if isinstance(h, NoneHistory):
        write_i32(data, 0 if h.culture_invariant is None else 1)
        if h.culture_invariant is not None:
            write_string(data, h.culture_invariant)
    elif isinstance(h, BaseHistory):
        write_string(data, h.namespace)
        write_string(data, h.key)
        write_string(data, h.source)
    elif isinstance(h, FormatHistory):
        write_text(data, h.source_format)
        write_i32(data, len(h.arguments))
        for arg in h.arguments:
            if h.kind != HISTORY_ORDERED_FORMAT:
                write_string(data, arg.name or "")
            write_u8(data, arg.value_type)
            _write_argument_value(data, arg.value_type, arg.value)
    elif isinstance(h, TransformHistory):
        write_text(data, h.source_text)
        write_u8(data, h.transform_type)
    elif isinstance(h, StringTableHistory):
        write_string(data, h.table_id)
        write_string(data, h.key)
    else:
        raise EncodeError(f"unknown text history {type(h).__name__}")
