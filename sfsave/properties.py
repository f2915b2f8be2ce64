import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import *

from .errors import (EncodeError, MalformedPropertyList, MalformedString, PropertySizeMismatch, SaveError,
                     UnexpectedEof, UnknownPropertyType)
from .primitives import (EMPTY_GUID, Buffer, read_bool, read_bytes, read_f32, read_f64, read_guid, read_i8,
                         read_i16, read_i32, read_i64, read_string, read_u8, read_u16, read_u32, read_u64,
                         read_view, write_bool, write_f32, write_f64, write_guid, write_i8, write_i16, write_i32,
                         write_i64, write_string, write_u8, write_u16, write_u32, write_u64)
from .values import (LuaProcessorState, NetworkTrace, ObjectReference, SoftObjectReference, Text, read_text,
                     write_text)

logger = logging.getLogger(__name__)

NONE_NAME = "None"

# from UE5 (save version 46) vectors, rotators and quats are serialized as doubles
LWC_SAVE_VERSION = 46


def _read_property_guid(data: Buffer, offset: int) -> Tuple[Optional[str], int]:
    has_guid, offset = read_u8(data, offset)
    if has_guid:
        return read_guid(data, offset)
    return None, offset


def _write_property_guid(data: bytearray, guid: Optional[str]) -> None:
    if guid is None:
        data.append(0)
        return
    data.append(1)
    write_guid(data, guid)


def read_property(data: Buffer, offset: int, version: int, owner: str = "") -> Tuple[Optional['Property'], int]:
    """
    Read one tagged property. Returns None when the 'None' terminator is reached.

    `owner` is the class path or struct type holding the property; some
    untagged container elements are only identifiable through it.
    """
    start = offset
    try:
        prop_name, offset = read_string(data, offset)
        if prop_name == NONE_NAME:
            return None, offset
        prop_type, offset = read_string(data, offset)
        prop_size, offset = read_i32(data, offset)
        prop_index, offset = read_i32(data, offset)
    except (UnexpectedEof, MalformedString) as e:
        raise MalformedPropertyList("unreadable property tag before the 'None' terminator", offset=start) from e

    try:
        return PropertyFactory.create_property(
            name=prop_name,
            prop_type=prop_type,
            prop_size=prop_size,
            prop_index=prop_index,
            data=data,
            offset=offset,
            version=version,
            owner=owner,
        )
    except UnknownPropertyType as e:
        logger.warning("%s on '%s', keeping %d raw bytes", e.message, prop_name, prop_size)
        return UnknownProperty.read_unknown(prop_name, prop_type, prop_size, prop_index, data, offset)
    except SaveError as e:
        raise e.add_context(property=prop_name, offset=offset)


def write_property(data: bytearray, prop: 'Property') -> None:
    write_string(data, prop.name)
    write_string(data, prop.type_name)

    payload = bytearray()
    prop.write_payload(payload)
    write_i32(data, len(payload))
    write_i32(data, prop.index)

    prop.write_tag(data)
    data.extend(payload)


def read_properties(data: Buffer, offset: int, version: int, owner: str = "") -> Tuple[List['Property'], int]:
    """Read properties until the 'None' terminator; `data` must be bounded to the enclosing payload."""
    properties = []
    while True:
        if offset >= len(data):
            raise MalformedPropertyList("property list ended without a 'None' terminator", offset=offset)
        prop, offset = read_property(data, offset, version, owner)

        if prop is None:
            return properties, offset

        properties.append(prop)


def write_properties(data: bytearray, properties: List['Property']) -> None:
    for prop in properties:
        write_property(data, prop)

    write_string(data, NONE_NAME)


class Property(ABC):
    type_name: ClassVar[str] = ""

    def __init__(self, name: str, index: int = 0, guid: Optional[str] = None):
        self._name = name
        self._index = index
        self._guid = guid

    @property
    def name(self) -> str:
        return self._name

    @property
    def index(self) -> int:
        return self._index

    @property
    def guid(self) -> Optional[str]:
        return self._guid

    @property
    def size(self) -> int:
        payload = bytearray()
        self.write_payload(payload)
        return len(payload)

    @property
    @abstractmethod
    def value(self) -> Any:
        pass

    @classmethod
    def from_bytes(cls, name: str, prop_index: int, prop_size: int, data: Buffer, offset: int,
                   version: int, owner: str = "") -> Tuple['Property', int]:
        tag, offset = cls.read_tag(data, offset)
        tag["owner"] = owner
        payload, end = read_view(data, offset, prop_size)
        prop, consumed = cls.read_payload(name, prop_index, tag, payload, version)
        if consumed != prop_size:
            raise PropertySizeMismatch(
                f"{cls.type_name} '{name}' consumed {consumed} of {prop_size} payload bytes")
        return prop, end

    @classmethod
    def read_tag(cls, data: Buffer, offset: int) -> Tuple[Dict[str, Any], int]:
        guid, offset = _read_property_guid(data, offset)
        return {"guid": guid}, offset

    def write_tag(self, data: bytearray) -> None:
        _write_property_guid(data, self._guid)

    @classmethod
    @abstractmethod
    def read_payload(cls, name: str, prop_index: int, tag: Dict[str, Any], data: memoryview,
                     version: int) -> Tuple['Property', int]:
        """Decode from a view bounded by the declared size; return the property and the bytes consumed."""

    @abstractmethod
    def write_payload(self, data: bytearray) -> None:
        pass

    def to_bytes(self, data: bytearray) -> None:
        write_property(data, self)

    def __eq__(self, other):
        return type(self) is type(other) and vars(self) == vars(other)

    def __repr__(self):
        return str(self)


class ScalarProperty(Property):
    """A property whose payload is a single value that can also appear bare inside containers."""

    def __init__(self, name: str, value: Any, index: int = 0, guid: Optional[str] = None):
        super().__init__(name, index, guid)
        self._value = value

    @property
    def value(self) -> Any:
        return self._value

    @classmethod
    @abstractmethod
    def read_value(cls, data: Buffer, offset: int, version: int) -> Tuple[Any, int]:
        pass

    @classmethod
    @abstractmethod
    def write_value(cls, data: bytearray, value: Any) -> None:
        pass

    @classmethod
    def read_payload(cls, name, prop_index, tag, data, version):
        value, offset = cls.read_value(data, 0, version)
        return cls(name, value, prop_index, tag["guid"]), offset

    def write_payload(self, data: bytearray) -> None:
        self.write_value(data, self._value)

    def __str__(self):
        return f"{self.type_name}(name={self._name}, value={self._value})"


class _NumericProperty(ScalarProperty):
    _reader: ClassVar[Callable[[Buffer, int], Tuple[Any, int]]]
    _writer: ClassVar[Callable[[bytearray, Any], None]]

    @classmethod
    def read_value(cls, data, offset, version):
        return cls._reader(data, offset)

    @classmethod
    def write_value(cls, data, value):
        cls._writer(data, value)


class Int8Property(_NumericProperty):
    type_name = "Int8Property"
    _reader = staticmethod(read_i8)
    _writer = staticmethod(write_i8)


class Int16Property(_NumericProperty):
    type_name = "Int16Property"
    _reader = staticmethod(read_i16)
    _writer = staticmethod(write_i16)


class IntProperty(_NumericProperty):
    type_name = "IntProperty"
    _reader = staticmethod(read_i32)
    _writer = staticmethod(write_i32)


class Int64Property(_NumericProperty):
    type_name = "Int64Property"
    _reader = staticmethod(read_i64)
    _writer = staticmethod(write_i64)


class UInt16Property(_NumericProperty):
    type_name = "UInt16Property"
    _reader = staticmethod(read_u16)
    _writer = staticmethod(write_u16)


class UInt32Property(_NumericProperty):
    type_name = "UInt32Property"
    _reader = staticmethod(read_u32)
    _writer = staticmethod(write_u32)


class UInt64Property(_NumericProperty):
    type_name = "UInt64Property"
    _reader = staticmethod(read_u64)
    _writer = staticmethod(write_u64)


class FloatProperty(_NumericProperty):
    type_name = "FloatProperty"
    _reader = staticmethod(read_f32)
    _writer = staticmethod(write_f32)


class DoubleProperty(_NumericProperty):
    type_name = "DoubleProperty"
    _reader = staticmethod(read_f64)
    _writer = staticmethod(write_f64)


class BoolProperty(ScalarProperty):
    """The value lives in the tag; the payload is always empty."""

    type_name = "BoolProperty"

    @classmethod
    def read_value(cls, data, offset, version):
        return read_bool(data, offset)

    @classmethod
    def write_value(cls, data, value):
        write_bool(data, value)

    @classmethod
    def read_tag(cls, data, offset):
        value, offset = read_bool(data, offset)
        guid, offset = _read_property_guid(data, offset)
        return {"value": value, "guid": guid}, offset

    def write_tag(self, data: bytearray) -> None:
        write_bool(data, self._value)
        _write_property_guid(data, self._guid)

    @classmethod
    def read_payload(cls, name, prop_index, tag, data, version):
        return cls(name, tag["value"], prop_index, tag["guid"]), 0

    def write_payload(self, data: bytearray) -> None:
        pass


class ByteProperty(ScalarProperty):
    """A raw byte, or an enum name when the tag carries an enum type."""

    type_name = "ByteProperty"

    def __init__(self, name: str, value: Union[int, str], index: int = 0, guid: Optional[str] = None,
                 enum_type: str = NONE_NAME):
        super().__init__(name, value, index, guid)
        self._enum_type = enum_type

    @property
    def enum_type(self) -> str:
        return self._enum_type

    @classmethod
    def read_value(cls, data, offset, version):
        return read_u8(data, offset)

    @classmethod
    def write_value(cls, data, value):
        write_u8(data, value)

    @classmethod
    def read_tag(cls, data, offset):
        enum_type, offset = read_string(data, offset)
        guid, offset = _read_property_guid(data, offset)
        return {"enum_type": enum_type, "guid": guid}, offset

    def write_tag(self, data: bytearray) -> None:
        write_string(data, self._enum_type)
        _write_property_guid(data, self._guid)

    @classmethod
    def read_payload(cls, name, prop_index, tag, data, version):
        enum_type = tag["enum_type"]
        if enum_type == NONE_NAME:
            value, offset = read_u8(data, 0)
        else:
            value, offset = read_string(data, 0)
        return cls(name, value, prop_index, tag["guid"], enum_type), offset

    def write_payload(self, data: bytearray) -> None:
        if isinstance(self._value, str):
            write_string(data, self._value)
        else:
            write_u8(data, self._value)

    def __str__(self):
        return f"ByteProperty(name={self._name}, enum_type={self._enum_type}, value={self._value})"


class EnumProperty(ScalarProperty):
    type_name = "EnumProperty"

    def __init__(self, name: str, value: str, index: int = 0, guid: Optional[str] = None,
                 enum_type: str = NONE_NAME):
        super().__init__(name, value, index, guid)
        self._enum_type = enum_type

    @property
    def enum_type(self) -> str:
        return self._enum_type

    @classmethod
    def read_value(cls, data, offset, version):
        return read_string(data, offset)

    @classmethod
    def write_value(cls, data, value):
        write_string(data, value)

    @classmethod
    def read_tag(cls, data, offset):
        enum_type, offset = read_string(data, offset)
        guid, offset = _read_property_guid(data, offset)
        return {"enum_type": enum_type, "guid": guid}, offset

    def write_tag(self, data: bytearray) -> None:
        write_string(data, self._enum_type)
        _write_property_guid(data, self._guid)

    @classmethod
    def read_payload(cls, name, prop_index, tag, data, version):
        value, offset = read_string(data, 0)
        return cls(name, value, prop_index, tag["guid"], tag["enum_type"]), offset

    def __str__(self):
        return f"EnumProperty(name={self._name}, enum_type={self._enum_type}, value={self._value})"


class StrProperty(ScalarProperty):
    type_name = "StrProperty"

    @classmethod
    def read_value(cls, data, offset, version):
        return read_string(data, offset)

    @classmethod
    def write_value(cls, data, value):
        write_string(data, value)


class NameProperty(StrProperty):
    type_name = "NameProperty"


class TextProperty(ScalarProperty):
    type_name = "TextProperty"

    @classmethod
    def read_value(cls, data, offset, version):
        return read_text(data, offset)

    @classmethod
    def write_value(cls, data, value):
        write_text(data, value)


class ObjectProperty(ScalarProperty):
    type_name = "ObjectProperty"

    @classmethod
    def read_value(cls, data, offset, version):
        return ObjectReference.from_bytes(data, offset)

    @classmethod
    def write_value(cls, data, value):
        value.to_bytes(data)


class InterfaceProperty(ObjectProperty):
    type_name = "InterfaceProperty"


class SoftObjectProperty(ScalarProperty):
    type_name = "SoftObjectProperty"

    @classmethod
    def read_value(cls, data, offset, version):
        return SoftObjectReference.from_bytes(data, offset)

    @classmethod
    def write_value(cls, data, value):
        value.to_bytes(data)


class StructProperty(Property):
    """
    A struct value. Native structs (Vector, Color, Guid...) and the game
    specific layouts in STRUCT_READERS are exposed as synthesized field
    properties; every other struct type is a nested property list. A
    non-native struct that cannot be decoded keeps its payload in `raw` and
    is written back verbatim.
    """

    type_name = "StructProperty"

    def __init__(self, name: str, struct_type: str, fields: Optional[List[Property]] = None, index: int = 0,
                 guid: Optional[str] = None, struct_guid: str = EMPTY_GUID, raw: Optional[bytes] = None):
        super().__init__(name, index, guid)
        self._struct_type = struct_type
        self._struct_guid = struct_guid
        self._fields = fields if fields is not None else []
        self._raw = raw

    @property
    def value(self) -> Union[List[Property], bytes]:
        return self._raw if self._raw is not None else self._fields

    @property
    def struct_type(self) -> str:
        return self._struct_type

    @property
    def struct_guid(self) -> str:
        return self._struct_guid

    @property
    def fields(self) -> List[Property]:
        return self._fields

    @property
    def raw(self) -> Optional[bytes]:
        return self._raw

    @property
    def is_native(self) -> bool:
        """True when the fields are synthesized from a fixed layout rather than read as a property list."""
        return self._struct_type in NATIVE_STRUCTS or self._struct_type in STRUCT_READERS

    def get(self, name: str, default: Any = None) -> Any:
        for field in self._fields:
            if field.name == name:
                return field
        return default

    @classmethod
    def read_tag(cls, data, offset):
        struct_type, offset = read_string(data, offset)
        struct_guid, offset = read_guid(data, offset)
        guid, offset = _read_property_guid(data, offset)
        return {"struct_type": struct_type, "struct_guid": struct_guid, "guid": guid}, offset

    def write_tag(self, data: bytearray) -> None:
        write_string(data, self._struct_type)
        write_guid(data, self._struct_guid)
        _write_property_guid(data, self._guid)

    @classmethod
    def read_payload(cls, name, prop_index, tag, data, version):
        struct_type = tag["struct_type"]
        kwargs = dict(index=prop_index, guid=tag["guid"], struct_guid=tag["struct_guid"])
        if struct_type in NATIVE_STRUCTS:
            fields, offset = read_struct_fields(struct_type, data, 0, version)
            return cls(name, struct_type, fields, **kwargs), offset
        try:
            fields, offset = read_struct_fields(struct_type, data, 0, version)
            if offset != len(data):
                raise PropertySizeMismatch(f"struct {struct_type} left {len(data) - offset} bytes unread")
        except SaveError as e:
            logger.warning("keeping %s struct '%s' as %d raw bytes: %s", struct_type, name, len(data), e)
            return cls(name, struct_type, raw=bytes(data), **kwargs), len(data)
        return cls(name, struct_type, fields, **kwargs), offset

    def write_payload(self, data: bytearray) -> None:
        if self._raw is not None:
            data.extend(self._raw)
            return
        write_struct_fields(data, self._struct_type, self._fields)

    def __str__(self):
        return f"StructProperty(name={self._name}, type={self._struct_type}, fields={len(self._fields)})"


def _lwc_fields(version: int, *names: str) -> List[Tuple[str, Type[ScalarProperty]]]:
    field_cls = DoubleProperty if version >= LWC_SAVE_VERSION else FloatProperty
    return [(n, field_cls) for n in names]


NATIVE_STRUCTS: Dict[str, Callable[[int], List[Tuple[str, Type[ScalarProperty]]]]] = {
    "Vector": lambda v: _lwc_fields(v, "X", "Y", "Z"),
    "Rotator": lambda v: _lwc_fields(v, "Pitch", "Yaw", "Roll"),
    "Vector2D": lambda v: _lwc_fields(v, "X", "Y"),
    "Vector4": lambda v: _lwc_fields(v, "X", "Y", "Z", "W"),
    "Quat": lambda v: _lwc_fields(v, "X", "Y", "Z", "W"),
    "Box": lambda v: _lwc_fields(v, "MinX", "MinY", "MinZ", "MaxX", "MaxY", "MaxZ") + [("IsValid", ByteProperty)],
    "LinearColor": lambda v: [(n, FloatProperty) for n in "RGBA"],
    "Color": lambda v: [(n, ByteProperty) for n in "BGRA"],
    "IntPoint": lambda v: [(n, IntProperty) for n in "XY"],
    "IntVector": lambda v: [(n, IntProperty) for n in "XYZ"],
    "IntVector4": lambda v: [(n, IntProperty) for n in "XYZW"],
    "DateTime": lambda v: [("Ticks", Int64Property)],
    "Timespan": lambda v: [("Ticks", Int64Property)],
    "Guid": lambda v: [(n, UInt32Property) for n in "ABCD"],
    "FluidBox": lambda v: [("Value", FloatProperty)],
    "RailroadTrackPosition": lambda v: [("Track", ObjectProperty), ("Offset", FloatProperty),
                                        ("Forward", FloatProperty)],
    "TimerHandle": lambda v: [("Handle", StrProperty)],
    "SlateBrush": lambda v: [("ResourceName", StrProperty)],
    "FICFrameRange": lambda v: [("Begin", Int64Property), ("End", Int64Property)],
    # single precision vector regardless of save version; only used for set and map elements
    "Vector3f": lambda v: [(n, FloatProperty) for n in "XYZ"],
}


class PropertyListField(ScalarProperty):
    """A property list prefixed with its int32 byte size."""

    type_name = "PropertyList"

    @classmethod
    def read_value(cls, data, offset, version):
        size, offset = read_i32(data, offset)
        body, end = read_view(data, offset, size)
        properties, pos = read_properties(body, 0, version)
        if pos != size:
            raise PropertySizeMismatch(f"property list left {size - pos} of {size} bytes unread")
        return properties, end

    @classmethod
    def write_value(cls, data, value):
        body = bytearray()
        write_properties(body, value)
        write_i32(data, len(body))
        data.extend(body)


class TaggedPropertyField(ScalarProperty):
    """A single tagged property embedded in a struct."""

    type_name = "TaggedProperty"

    @classmethod
    def read_value(cls, data, offset, version):
        prop, end = read_property(data, offset, version)
        if prop is None:
            raise MalformedPropertyList("expected a property, found the 'None' terminator", offset=offset)
        return prop, end

    @classmethod
    def write_value(cls, data, value):
        write_property(data, value)


class NetworkTraceField(ScalarProperty):
    type_name = "NetworkTrace"

    @classmethod
    def read_value(cls, data, offset, version):
        return NetworkTrace.from_bytes(data, offset)

    @classmethod
    def write_value(cls, data, value):
        value.to_bytes(data)


class LuaProcessorStateField(ScalarProperty):
    type_name = "LuaProcessorState"

    @classmethod
    def read_value(cls, data, offset, version):
        return LuaProcessorState.from_bytes(data, offset)

    @classmethod
    def write_value(cls, data, value):
        value.to_bytes(data)


def _read_inventory_item(data: Buffer, offset: int, version: int) -> Tuple[List[Property], int]:
    padding, offset = read_i32(data, offset)
    item_name, offset = read_string(data, offset)
    fields: List[Property] = [IntProperty("Padding", padding), StrProperty("ItemName", item_name)]

    if version < LWC_SAVE_VERSION:
        # legacy items point at their owner and carry one tagged property
        item_owner, offset = ObjectReference.from_bytes(data, offset)
        fields.append(ObjectProperty("Owner", item_owner))
        if offset < len(data):
            prop, offset = TaggedPropertyField.read_value(data, offset, version)
            fields.append(TaggedPropertyField("Property", prop))
        return fields, offset

    has_state, offset = read_i32(data, offset)
    fields.append(IntProperty("HasItemState", has_state))
    if has_state:
        state_padding, offset = read_i32(data, offset)
        state_type, offset = read_string(data, offset)
        state, offset = PropertyListField.read_value(data, offset, version)
        fields += [IntProperty("StatePadding", state_padding), StrProperty("ItemStateType", state_type),
                   PropertyListField("ItemState", state)]
    elif len(data) - offset == 4:
        # items carried over from pre 1.0 saves end with an extra int32
        trailer, offset = read_i32(data, offset)
        fields.append(IntProperty("Trailer", trailer))
    return fields, offset


StructReader = Callable[[Buffer, int, int], Tuple[List[Property], int]]


def _read_single(name: str, field_cls: Type[ScalarProperty]) -> StructReader:
    def read(data: Buffer, offset: int, version: int) -> Tuple[List[Property], int]:
        value, offset = field_cls.read_value(data, offset, version)
        return [field_cls(name, value)], offset
    return read


# game structs whose layout depends on their content; fields are written back with write_value in order
STRUCT_READERS: Dict[str, StructReader] = {
    "InventoryItem": _read_inventory_item,
    "FINNetworkTrace": _read_single("Trace", NetworkTraceField),
    "FINLuaProcessorStateStorage": _read_single("State", LuaProcessorStateField),
}


def read_struct_fields(struct_type: str, data: Buffer, offset: int, version: int) -> Tuple[List[Property], int]:
    layout = NATIVE_STRUCTS.get(struct_type)
    if layout is None:
        reader = STRUCT_READERS.get(struct_type)
        if reader is not None:
            return reader(data, offset, version)
        return read_properties(data, offset, version, owner=struct_type)
    fields = []
    for field_name, field_cls in layout(version):
        value, offset = field_cls.read_value(data, offset, version)
        fields.append(field_cls(field_name, value))
    return fields, offset


def write_struct_fields(data: bytearray, struct_type: str, fields: List[Property]) -> None:
    if struct_type not in NATIVE_STRUCTS and struct_type not in STRUCT_READERS:
        write_properties(data, fields)
        return
    for field in fields:
        if not isinstance(field, ScalarProperty):
            raise EncodeError(f"field '{field.name}' of native struct {struct_type} is not a scalar")
        field.write_value(data, field.value)


@dataclass
class ArrayStructInfo:
    """The single inner tag an array of structs carries ahead of its elements."""
    name: str
    struct_type: str
    struct_guid: str = EMPTY_GUID
    index: int = 0
    guid: Optional[str] = None


class ArrayProperty(Property):
    type_name = "ArrayProperty"

    def __init__(self, name: str, inner_type: str, values: Union[bytes, list], index: int = 0,
                 guid: Optional[str] = None, struct_info: Optional[ArrayStructInfo] = None,
                 raw: Optional[bytes] = None):
        super().__init__(name, index, guid)
        self._inner_type = inner_type
        self._values = values
        self._struct_info = struct_info
        self._raw = raw

    @property
    def value(self) -> Union[bytes, list]:
        return self._values

    @property
    def inner_type(self) -> str:
        return self._inner_type

    @property
    def struct_info(self) -> Optional[ArrayStructInfo]:
        return self._struct_info

    @property
    def raw(self) -> Optional[bytes]:
        return self._raw

    def __getitem__(self, index: int) -> Any:
        return self._values[index]

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self):
        return iter(self._values)

    @classmethod
    def read_tag(cls, data, offset):
        inner_type, offset = read_string(data, offset)
        guid, offset = _read_property_guid(data, offset)
        return {"inner_type": inner_type, "guid": guid}, offset

    def write_tag(self, data: bytearray) -> None:
        write_string(data, self._inner_type)
        _write_property_guid(data, self._guid)

    @classmethod
    def read_payload(cls, name, prop_index, tag, data, version):
        inner_type = tag["inner_type"]
        count, offset = read_i32(data, 0)

        if inner_type == "StructProperty":
            return cls._read_structs(name, prop_index, tag["guid"], count, data, offset, version)

        if inner_type == "ByteProperty" and len(data) - offset == count:
            values, offset = read_bytes(data, offset, count)
            return cls(name, inner_type, values, prop_index, tag["guid"]), offset

        if inner_type == "ByteProperty":
            # enum byte arrays store names
            elem_cls = EnumProperty
        else:
            elem_cls = PropertyFactory.element_class(inner_type)
        if elem_cls is None:
            logger.warning("array '%s' of unknown type %s kept as %d raw bytes", name, inner_type, len(data))
            return cls(name, inner_type, [], prop_index, tag["guid"], raw=bytes(data)), len(data)

        values = []
        for _ in range(count):
            value, offset = elem_cls.read_value(data, offset, version)
            values.append(value)
        return cls(name, inner_type, values, prop_index, tag["guid"]), offset

    @classmethod
    def _read_structs(cls, name, prop_index, guid, count, data, offset, version):
        inner_name, offset = read_string(data, offset)
        _, offset = read_string(data, offset)  # StructProperty
        inner_size, offset = read_i32(data, offset)
        inner_index, offset = read_i32(data, offset)
        struct_type, offset = read_string(data, offset)
        struct_guid, offset = read_guid(data, offset)
        inner_guid, offset = _read_property_guid(data, offset)
        info = ArrayStructInfo(inner_name, struct_type, struct_guid, inner_index, inner_guid)

        body, end = read_view(data, offset, inner_size)
        try:
            values = []
            pos = 0
            for _ in range(count):
                fields, pos = read_struct_fields(struct_type, body, pos, version)
                values.append(StructProperty(inner_name, struct_type, fields))
            if pos != len(body):
                raise PropertySizeMismatch(f"{struct_type} elements left {len(body) - pos} bytes unread")
        except SaveError as e:
            if struct_type in NATIVE_STRUCTS:
                raise
            logger.warning("array '%s' of %s kept as %d raw bytes: %s", name, struct_type, len(data), e)
            return cls(name, "StructProperty", [], prop_index, guid, struct_info=info, raw=bytes(data)), len(data)
        return cls(name, "StructProperty", values, prop_index, guid, struct_info=info), end

    def write_payload(self, data: bytearray) -> None:
        if self._raw is not None:
            data.extend(self._raw)
            return

        write_i32(data, len(self._values))
        if self._inner_type == "StructProperty":
            self._write_structs(data)
        elif isinstance(self._values, (bytes, bytearray)):
            data.extend(self._values)
        elif self._inner_type == "ByteProperty":
            for v in self._values:
                if isinstance(v, str):
                    write_string(data, v)
                else:
                    write_u8(data, v)
        else:
            elem_cls = PropertyFactory.element_class(self._inner_type)
            if elem_cls is None:
                raise EncodeError(f"ArrayProperty inner_type {self._inner_type} serialization not implemented")
            for v in self._values:
                elem_cls.write_value(data, v)

    def _write_structs(self, data: bytearray) -> None:
        info = self._struct_info
        if info is None:
            raise EncodeError(f"array '{self._name}' of structs has no element tag")
        body = bytearray()
        for element in self._values:
            write_struct_fields(body, info.struct_type, element.fields)
        write_string(data, info.name)
        write_string(data, "StructProperty")
        write_i32(data, len(body))
        write_i32(data, info.index)
        write_string(data, info.struct_type)
        write_guid(data, info.struct_guid)
        _write_property_guid(data, info.guid)
        data.extend(body)

    def __str__(self):
        return f"ArrayProperty(name={self._name}, inner_type={self._inner_type}, length={len(self._values)})"


ElementCodec = Tuple[Callable[[Buffer, int, int], Tuple[Any, int]], Callable[[bytearray, Any], None], bool]

# element layouts inside sets and maps are not described by any tag
_UNTAGGED_ELEMENT_TYPES = ("StructProperty", "ByteProperty")

# struct set elements are identified by the class holding the set
_SET_ELEMENT_STRUCTS = {
    "/Script/FactoryGame.FGFoilageRemoval": "Vector3f",
}

# struct map keys are identified by the map name, then by the class holding the map
_MAP_KEY_STRUCTS = {
    "Destroyed_Foliage_Transform": "Vector",
    "mSaveData": "IntVector",
    "mUnresolvedSaveData": "IntVector",
}
_MAP_KEY_OWNER_STRUCTS = {
    "/BuildGunUtilities/BGU_Subsystem.BGU_Subsystem_C": "Vector3f",
}


def _element_codec(type_name: str, struct_type: str = "") -> Optional[ElementCodec]:
    """Reader, writer and whether a failure may fall back to raw bytes."""
    if type_name == "StructProperty":
        def read(data, offset, version):
            return read_struct_fields(struct_type, data, offset, version)

        def write(data, fields):
            write_struct_fields(data, struct_type, fields)

        return read, write, True
    elem_cls = PropertyFactory.element_class(type_name)
    if elem_cls is None:
        return None
    return elem_cls.read_value, elem_cls.write_value, type_name in _UNTAGGED_ELEMENT_TYPES


class SetProperty(Property):
    type_name = "SetProperty"

    def __init__(self, name: str, inner_type: str, values: list, index: int = 0, guid: Optional[str] = None,
                 removed: Optional[list] = None, raw: Optional[bytes] = None, struct_type: str = ""):
        super().__init__(name, index, guid)
        self._inner_type = inner_type
        self._struct_type = struct_type
        self._values = values
        self._removed = removed if removed is not None else []
        self._raw = raw

    @property
    def value(self) -> list:
        return self._values

    @property
    def inner_type(self) -> str:
        return self._inner_type

    @property
    def struct_type(self) -> str:
        """Native layout of struct elements, empty when they are property lists."""
        return self._struct_type

    @property
    def removed(self) -> list:
        return self._removed

    @property
    def raw(self) -> Optional[bytes]:
        return self._raw

    @classmethod
    def read_tag(cls, data, offset):
        inner_type, offset = read_string(data, offset)
        guid, offset = _read_property_guid(data, offset)
        return {"inner_type": inner_type, "guid": guid}, offset

    def write_tag(self, data: bytearray) -> None:
        write_string(data, self._inner_type)
        _write_property_guid(data, self._guid)

    @classmethod
    def read_payload(cls, name, prop_index, tag, data, version):
        inner_type = tag["inner_type"]
        struct_type = _SET_ELEMENT_STRUCTS.get(tag["owner"], "") if inner_type == "StructProperty" else ""
        codec = _element_codec(inner_type, struct_type)
        if codec is None:
            logger.warning("set '%s' of unknown type %s kept as %d raw bytes", name, inner_type, len(data))
            return cls(name, inner_type, [], prop_index, tag["guid"], raw=bytes(data)), len(data)
        read, _, fallible = codec
        kwargs = dict(index=prop_index, guid=tag["guid"], struct_type=struct_type)

        try:
            removed_count, offset = read_i32(data, 0)
            removed = []
            for _ in range(removed_count):
                value, offset = read(data, offset, version)
                removed.append(value)
            count, offset = read_i32(data, offset)
            values = []
            for _ in range(count):
                value, offset = read(data, offset, version)
                values.append(value)
            if offset != len(data):
                raise PropertySizeMismatch(f"set elements left {len(data) - offset} bytes unread")
        except SaveError as e:
            if not fallible:
                raise
            logger.warning("set '%s' of %s kept as %d raw bytes: %s", name, inner_type, len(data), e)
            return cls(name, inner_type, [], raw=bytes(data), **kwargs), len(data)
        return cls(name, inner_type, values, removed=removed, **kwargs), offset

    def write_payload(self, data: bytearray) -> None:
        if self._raw is not None:
            data.extend(self._raw)
            return
        codec = _element_codec(self._inner_type, self._struct_type)
        if codec is None:
            raise EncodeError(f"SetProperty inner_type {self._inner_type} serialization not implemented")
        _, write, _ = codec
        write_i32(data, len(self._removed))
        for v in self._removed:
            write(data, v)
        write_i32(data, len(self._values))
        for v in self._values:
            write(data, v)

    def __str__(self):
        return f"SetProperty(name={self._name}, inner_type={self._inner_type}, length={len(self._values)})"


class MapProperty(Property):
    type_name = "MapProperty"

    def __init__(self, name: str, key_type: str, value_type: str, entries: List[Tuple[Any, Any]], index: int = 0,
                 guid: Optional[str] = None, removed: Optional[list] = None, raw: Optional[bytes] = None,
                 key_struct_type: str = ""):
        super().__init__(name, index, guid)
        self._key_type = key_type
        self._key_struct_type = key_struct_type
        self._value_type = value_type
        self._entries = entries
        self._removed = removed if removed is not None else []
        self._raw = raw

    @property
    def value(self) -> List[Tuple[Any, Any]]:
        return self._entries

    @property
    def key_type(self) -> str:
        return self._key_type

    @property
    def value_type(self) -> str:
        return self._value_type

    @property
    def key_struct_type(self) -> str:
        """Native layout of struct keys, empty when they are property lists."""
        return self._key_struct_type

    @property
    def removed(self) -> list:
        return self._removed

    @property
    def raw(self) -> Optional[bytes]:
        return self._raw

    @classmethod
    def read_tag(cls, data, offset):
        key_type, offset = read_string(data, offset)
        value_type, offset = read_string(data, offset)
        guid, offset = _read_property_guid(data, offset)
        return {"key_type": key_type, "value_type": value_type, "guid": guid}, offset

    def write_tag(self, data: bytearray) -> None:
        write_string(data, self._key_type)
        write_string(data, self._value_type)
        _write_property_guid(data, self._guid)

    @classmethod
    def read_payload(cls, name, prop_index, tag, data, version):
        key_type, value_type, guid = tag["key_type"], tag["value_type"], tag["guid"]
        key_struct_type = ""
        if key_type == "StructProperty":
            key_struct_type = _MAP_KEY_STRUCTS.get(name) or _MAP_KEY_OWNER_STRUCTS.get(tag["owner"], "")
        key_codec = _element_codec(key_type, key_struct_type)
        value_codec = _element_codec(value_type)
        if key_codec is None or value_codec is None:
            logger.warning("map '%s' of %s -> %s kept as %d raw bytes", name, key_type, value_type, len(data))
            return cls(name, key_type, value_type, [], prop_index, guid, raw=bytes(data)), len(data)
        read_key, _, key_fallible = key_codec
        read_value, _, value_fallible = value_codec
        kwargs = dict(index=prop_index, guid=guid, key_struct_type=key_struct_type)

        try:
            removed_count, offset = read_i32(data, 0)
            removed = []
            for _ in range(removed_count):
                key, offset = read_key(data, offset, version)
                removed.append(key)
            count, offset = read_i32(data, offset)
            entries = []
            for _ in range(count):
                key, offset = read_key(data, offset, version)
                value, offset = read_value(data, offset, version)
                entries.append((key, value))
            if offset != len(data):
                raise PropertySizeMismatch(f"map entries left {len(data) - offset} bytes unread")
        except SaveError as e:
            if not (key_fallible or value_fallible):
                raise
            logger.warning("map '%s' of %s -> %s kept as %d raw bytes: %s",
                           name, key_type, value_type, len(data), e)
            return cls(name, key_type, value_type, [], raw=bytes(data), **kwargs), len(data)
        return cls(name, key_type, value_type, entries, removed=removed, **kwargs), offset

    def write_payload(self, data: bytearray) -> None:
        if self._raw is not None:
            data.extend(self._raw)
            return
        key_codec = _element_codec(self._key_type, self._key_struct_type)
        value_codec = _element_codec(self._value_type)
        if key_codec is None or value_codec is None:
            raise EncodeError(f"MapProperty {self._key_type} -> {self._value_type} serialization not implemented")
        write_i32(data, len(self._removed))
        for key in self._removed:
            key_codec[1](data, key)
        write_i32(data, len(self._entries))
        for key, value in self._entries:
            key_codec[1](data, key)
            value_codec[1](data, value)

    def __str__(self):
        return (f"MapProperty(name={self._name}, key_type={self._key_type}, value_type={self._value_type}, "
                f"length={len(self._entries)})")


class UnknownProperty(Property):
    """Catch-all for type tags this library does not know; the payload is kept verbatim."""

    def __init__(self, name: str, prop_type: str, raw: bytes, index: int = 0, guid: Optional[str] = None):
        super().__init__(name, index, guid)
        self._prop_type = prop_type
        self._raw = raw

    @property
    def type_name(self) -> str:
        return self._prop_type

    @property
    def value(self) -> bytes:
        return self._raw

    @classmethod
    def read_unknown(cls, name: str, prop_type: str, prop_size: int, prop_index: int, data: Buffer,
                     offset: int) -> Tuple['UnknownProperty', int]:
        # the tag layout is unknown too; assume it is only the guid flag
        tag, offset = cls.read_tag(data, offset)
        tag["prop_type"] = prop_type
        payload, end = read_view(data, offset, prop_size)
        prop, _ = cls.read_payload(name, prop_index, tag, payload, 0)
        return prop, end

    @classmethod
    def read_payload(cls, name, prop_index, tag, data, version):
        return cls(name, tag["prop_type"], bytes(data), prop_index, tag["guid"]), len(data)

    def write_payload(self, data: bytearray) -> None:
        data.extend(self._raw)

    def __str__(self):
        return f"UnknownProperty(name={self._name}, type={self._prop_type}, value=<bytes len={len(self._raw)}>)"


class PropertyFactory:
    _TYPE_MAP: Dict[str, Type[Property]] = {}

    @classmethod
    def register(cls, *prop_classes: Type[Property]) -> None:
        for prop_cls in prop_classes:
            cls._TYPE_MAP[prop_cls.type_name] = prop_cls

    @classmethod
    def lookup(cls, prop_type: str) -> Type[Property]:
        prop_cls = cls._TYPE_MAP.get(prop_type)
        if prop_cls is None:
            raise UnknownPropertyType(prop_type)
        return prop_cls

    @classmethod
    def element_class(cls, prop_type: str) -> Optional[Type[ScalarProperty]]:
        """The class whose bare value codec serializes container elements of `prop_type`."""
        prop_cls = cls._TYPE_MAP.get(prop_type)
        if prop_cls is None or not issubclass(prop_cls, ScalarProperty):
            return None
        return prop_cls

    @classmethod
    def create_property(cls, name: str, prop_type: str, prop_size: int, prop_index: int, data: Buffer, offset: int,
                        version: int, owner: str = "") -> Tuple[Property, int]:
        return cls.lookup(prop_type).from_bytes(name, prop_index, prop_size, data, offset, version, owner)


PropertyFactory.register(
    Int8Property, Int16Property, IntProperty, Int64Property,
    UInt16Property, UInt32Property, UInt64Property,
    FloatProperty, DoubleProperty, BoolProperty, ByteProperty, EnumProperty,
    StrProperty, NameProperty, TextProperty,
    ObjectProperty, InterfaceProperty, SoftObjectProperty,
    StructProperty, ArrayProperty, SetProperty, MapProperty,
)
