import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import *

from .errors import (BodyLengthMismatch, DanglingOuterReference, EncodeError, MalformedLevel, MalformedString,
                     SaveError, TruncatedBody, UnconsumedBytes, UnexpectedEof)
from .primitives import (Buffer, read_f32, read_i32, read_i64, read_string, read_u32, read_view, write_f32,
                         write_i32, write_i64, write_string, write_u32)
from .properties import Property, read_properties, write_properties
from .values import ObjectReference, read_references, write_references

logger = logging.getLogger(__name__)

ACTOR_KIND = 1
COMPONENT_KIND = 0

# save version gates for the body layout
PARTITIONED_SAVE_VERSION = 46
LEVEL_VERSION_SAVE_VERSION = 51
OBJECT_FLAGS_SAVE_VERSION = 52

BODY_LENGTH_PREFIX_SIZE = 8


def _read_floats(data: Buffer, offset: int, count: int) -> Tuple[Tuple[float, ...], int]:
    values = []
    for _ in range(count):
        value, offset = read_f32(data, offset)
        values.append(value)
    return tuple(values), offset


def _write_floats(data: bytearray, values: Sequence[float]) -> None:
    for value in values:
        write_f32(data, value)


@dataclass
class ObjectHeader(ABC):
    class_path: str = ""
    reference: ObjectReference = field(default_factory=ObjectReference)
    flags: int = 0

    @property
    def path_name(self) -> str:
        return self.reference.path_name

    @classmethod
    def from_bytes(cls, data: Buffer, offset: int, version: int) -> Tuple['ObjectHeader', int]:
        start = offset
        kind, offset = read_i32(data, offset)
        if kind not in (ACTOR_KIND, COMPONENT_KIND):
            raise MalformedLevel(f"unknown object kind {kind}", offset=start)
        class_path, offset = read_string(data, offset)
        reference, offset = ObjectReference.from_bytes(data, offset)
        flags = 0
        if version >= OBJECT_FLAGS_SAVE_VERSION:
            flags, offset = read_u32(data, offset)

        if kind == COMPONENT_KIND:
            outer_path, offset = read_string(data, offset)
            return ComponentHeader(class_path, reference, flags, outer_path), offset

        need_transform, offset = read_i32(data, offset)
        rotation, offset = _read_floats(data, offset, 4)
        position, offset = _read_floats(data, offset, 3)
        scale, offset = _read_floats(data, offset, 3)
        was_placed_in_level, offset = read_i32(data, offset)
        return ActorHeader(class_path, reference, flags, need_transform, rotation, position, scale,
                           was_placed_in_level), offset

    def _write_common(self, data: bytearray, kind: int, version: int) -> None:
        write_i32(data, kind)
        write_string(data, self.class_path)
        self.reference.to_bytes(data)
        if version >= OBJECT_FLAGS_SAVE_VERSION:
            write_u32(data, self.flags)

    @abstractmethod
    def to_bytes(self, data: bytearray, version: int) -> None:
        pass


@dataclass
class ActorHeader(ObjectHeader):
    need_transform: int = 0
    rotation: Tuple[float, ...] = (0.0, 0.0, 0.0, 1.0)
    position: Tuple[float, ...] = (0.0, 0.0, 0.0)
    scale: Tuple[float, ...] = (1.0, 1.0, 1.0)
    was_placed_in_level: int = 0

    def to_bytes(self, data: bytearray, version: int) -> None:
        self._write_common(data, ACTOR_KIND, version)
        write_i32(data, self.need_transform)
        _write_floats(data, self.rotation)
        _write_floats(data, self.position)
        _write_floats(data, self.scale)
        write_i32(data, self.was_placed_in_level)


@dataclass
class ComponentHeader(ObjectHeader):
    outer_path: str = ""

    def to_bytes(self, data: bytearray, version: int) -> None:
        self._write_common(data, COMPONENT_KIND, version)
        write_string(data, self.outer_path)


@dataclass
class SaveObject:
    """
    One actor or component: its header-table entry plus its payload.

    `properties` keeps file order; the same name may appear more than once
    with different array indices. `trailing` holds whatever follows the
    property terminator, byte for byte. An object without a property list
    (`has_properties` False) is written back without a terminator.
    """

    header: ObjectHeader
    object_version: int = 0
    migrate_flag: int = 0
    parent: Optional[ObjectReference] = None
    components: List[ObjectReference] = field(default_factory=list)
    properties: List[Property] = field(default_factory=list)
    has_properties: bool = True
    trailing: bytes = b""

    @property
    def is_actor(self) -> bool:
        return isinstance(self.header, ActorHeader)

    @property
    def class_path(self) -> str:
        return self.header.class_path

    @property
    def path_name(self) -> str:
        return self.header.path_name

    @property
    def outer_path(self) -> Optional[str]:
        if isinstance(self.header, ComponentHeader):
            return self.header.outer_path or None
        if self.parent is not None and self.parent.path_name:
            return self.parent.path_name
        return None

    def get(self, name: str, default: Any = None) -> Any:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return default

    def property_map(self) -> Dict[str, Property]:
        """Properties by name in file order; later array indices of a repeated name are dropped."""
        result: Dict[str, Property] = {}
        for prop in self.properties:
            result.setdefault(prop.name, prop)
        return result

    @classmethod
    def from_bytes(cls, header: ObjectHeader, data: Buffer, offset: int, version: int) -> Tuple['SaveObject', int]:
        object_version, offset = read_i32(data, offset)
        migrate_flag, offset = read_i32(data, offset)
        size, offset = read_i32(data, offset)
        body, end = read_view(data, offset, size)

        pos = 0
        parent = None
        components: List[ObjectReference] = []
        if isinstance(header, ActorHeader):
            parent, pos = ObjectReference.from_bytes(body, pos)
            components, pos = read_references(body, pos)

        has_properties = pos < len(body)
        properties: List[Property] = []
        if has_properties:
            properties, pos = read_properties(body, pos, version, owner=header.class_path)

        trailing = bytes(body[pos:])
        if trailing:
            logger.debug("%d trailing bytes after properties of %s", len(trailing), header.path_name)

        return cls(header, object_version, migrate_flag, parent, components, properties, has_properties,
                   trailing), end

    def to_bytes(self, data: bytearray) -> None:
        write_i32(data, self.object_version)
        write_i32(data, self.migrate_flag)

        body = bytearray()
        if self.is_actor:
            (self.parent or ObjectReference()).to_bytes(body)
            write_references(body, self.components)
        if self.has_properties or self.properties:
            write_properties(body, self.properties)
        body.extend(self.trailing)

        write_i32(data, len(body))
        data.extend(body)


def _read_collectables(section: memoryview, offset: int) -> Tuple[Optional[List[ObjectReference]], bytes]:
    """Whatever follows the object headers: a reference list when it parses exactly, raw bytes otherwise."""
    if offset == len(section):
        return None, b""
    try:
        refs, end = read_references(section, offset)
    except (UnexpectedEof, MalformedString):
        end = -1
    if end == len(section):
        return refs, b""
    return None, bytes(section[offset:])


@dataclass
class Level:
    """
    A sublevel, or the persistent level when `name` is None.

    Object headers and object payloads are stored in two separate sections and
    are matched up by position.
    """

    name: Optional[str] = None
    objects: List[SaveObject] = field(default_factory=list)
    collectables: Optional[List[ObjectReference]] = None
    header_extra: bytes = b""
    level_version: int = 0
    trailing_collectables: List[ObjectReference] = field(default_factory=list)

    @property
    def is_persistent(self) -> bool:
        return self.name is None

    def object_index(self) -> Dict[str, int]:
        index: Dict[str, int] = {}
        for i, obj in enumerate(self.objects):
            index.setdefault(obj.path_name, i)
        return index

    def find(self, path_name: str) -> Optional[SaveObject]:
        i = self.object_index().get(path_name)
        return None if i is None else self.objects[i]

    def resolve_outer(self, obj: SaveObject, index: Optional[Dict[str, int]] = None) -> Optional[SaveObject]:
        outer = obj.outer_path
        if outer is None:
            return None
        if index is None:
            index = self.object_index()
        i = index.get(outer)
        return None if i is None else self.objects[i]

    def check_outer_references(self) -> None:
        """Raise DanglingOuterReference for a component whose outer is not in this level."""
        index = self.object_index()
        for i, obj in enumerate(self.objects):
            if not isinstance(obj.header, ComponentHeader) or obj.outer_path is None:
                continue
            if obj.outer_path not in index:
                raise DanglingOuterReference(f"outer '{obj.outer_path}' of {obj.path_name} is not in the level",
                                             level=self.name, object=i)

    @classmethod
    def from_bytes(cls, data: Buffer, offset: int, version: int, persistent: bool = False) -> Tuple['Level', int]:
        name = None
        if not persistent:
            name, offset = read_string(data, offset)

        section_size, offset = read_i64(data, offset)
        section, offset = read_view(data, offset, section_size)
        count, pos = read_i32(section, 0)
        headers = []
        for i in range(count):
            header_start = pos
            try:
                header, pos = ObjectHeader.from_bytes(section, pos, version)
            except SaveError as e:
                raise e.add_context(header=i, header_offset=header_start)
            headers.append(header)
        collectables, header_extra = _read_collectables(section, pos)

        objects_size, offset = read_i64(data, offset)
        objects_section, offset = read_view(data, offset, objects_size)
        object_count, pos = read_i32(objects_section, 0)
        if object_count != len(headers):
            raise MalformedLevel(f"level has {len(headers)} object headers but {object_count} objects")
        logger.debug("level %s: %d objects", name or "<persistent>", object_count)

        objects = []
        for i, header in enumerate(headers):
            object_start = pos
            try:
                obj, pos = SaveObject.from_bytes(header, objects_section, pos, version)
            except SaveError as e:
                raise e.add_context(object=i, path=header.path_name, object_offset=object_start)
            objects.append(obj)
        if pos != len(objects_section):
            raise MalformedLevel(f"{len(objects_section) - pos} unread bytes after the last object")

        level_version = 0
        if version >= LEVEL_VERSION_SAVE_VERSION:
            level_version, offset = read_u32(data, offset)

        trailing_collectables: List[ObjectReference] = []
        if not persistent:
            trailing_collectables, offset = read_references(data, offset)

        return cls(name, objects, collectables, header_extra, level_version, trailing_collectables), offset

    def to_bytes(self, data: bytearray, version: int) -> None:
        if not self.is_persistent:
            write_string(data, self.name)

        section = bytearray()
        write_i32(section, len(self.objects))
        for obj in self.objects:
            obj.header.to_bytes(section, version)
        if self.collectables is not None:
            write_references(section, self.collectables)
        section.extend(self.header_extra)
        write_i64(data, len(section))
        data.extend(section)

        objects = bytearray()
        write_i32(objects, len(self.objects))
        for obj in self.objects:
            obj.to_bytes(objects)
        write_i64(data, len(objects))
        data.extend(objects)

        if version >= LEVEL_VERSION_SAVE_VERSION:
            write_u32(data, self.level_version)
        if not self.is_persistent:
            write_references(data, self.trailing_collectables)


@dataclass
class Grid:
    """One world-partition grid entry from the table in front of the levels."""
    name: str
    cell_size: int = 0
    grid_hash: int = 0
    levels: List[Tuple[str, int]] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: Buffer, offset: int) -> Tuple['Grid', int]:
        name, offset = read_string(data, offset)
        cell_size, offset = read_i32(data, offset)
        grid_hash, offset = read_u32(data, offset)
        count, offset = read_i32(data, offset)
        levels = []
        for _ in range(count):
            level_name, offset = read_string(data, offset)
            level_hash, offset = read_u32(data, offset)
            levels.append((level_name, level_hash))
        return cls(name, cell_size, grid_hash, levels), offset

    def to_bytes(self, data: bytearray) -> None:
        write_string(data, self.name)
        write_i32(data, self.cell_size)
        write_u32(data, self.grid_hash)
        write_i32(data, len(self.levels))
        for level_name, level_hash in self.levels:
            write_string(data, level_name)
            write_u32(data, level_hash)


@dataclass
class ObjectGraph:
    """
    The decompressed body: optional grid table, the sublevels followed by the
    persistent level, and the collected-objects tail kept as raw bytes.
    """

    levels: List[Level] = field(default_factory=list)
    grids: Optional[List[Grid]] = None
    tail: bytes = b""

    @property
    def persistent_level(self) -> Optional[Level]:
        if self.levels and self.levels[-1].is_persistent:
            return self.levels[-1]
        return None

    @property
    def sublevels(self) -> List[Level]:
        return [level for level in self.levels if not level.is_persistent]

    def objects(self) -> Iterator[SaveObject]:
        for level in self.levels:
            yield from level.objects

    def check_outer_references(self) -> None:
        for i, level in enumerate(self.levels):
            try:
                level.check_outer_references()
            except SaveError as e:
                raise e.add_context(level_index=i)

    def collected_objects(self) -> Optional[Tuple[str, List[List[ObjectReference]]]]:
        """Interpret the tail as a level name followed by reference lists; None when there is no tail."""
        if not self.tail:
            return None
        try:
            level_name, offset = read_string(self.tail, 0)
            lists = []
            while offset < len(self.tail):
                refs, offset = read_references(self.tail, offset)
                lists.append(refs)
        except (UnexpectedEof, MalformedString) as e:
            raise UnconsumedBytes(f"{len(self.tail)} bytes after the last level are not a collected-objects "
                                  f"section") from e
        return level_name, lists

    @classmethod
    def from_bytes(cls, body: Buffer, version: int) -> 'ObjectGraph':
        data = memoryview(body)
        if len(data) < BODY_LENGTH_PREFIX_SIZE:
            raise TruncatedBody(f"body has {len(data)} bytes, too short for its length prefix")
        declared, offset = read_i64(data, 0)
        actual = len(data) - offset
        if declared > actual:
            raise TruncatedBody(f"body declares {declared} bytes but only {actual} were decompressed")
        if declared != actual:
            raise BodyLengthMismatch(f"body declares {declared} bytes but {actual} were decompressed")

        grids = None
        if version >= PARTITIONED_SAVE_VERSION:
            grid_count, offset = read_i32(data, offset)
            grids = []
            for _ in range(grid_count):
                grid, offset = Grid.from_bytes(data, offset)
                grids.append(grid)

        level_count, offset = read_i32(data, offset)
        if level_count < 0:
            raise MalformedLevel(f"negative sublevel count {level_count}", offset=offset - 4)
        logger.debug("reading %d sublevels and the persistent level", level_count)
        levels = []
        # the persistent level follows the counted sublevels and has no stored name
        for i in range(level_count + 1):
            level_start = offset
            try:
                level, offset = Level.from_bytes(data, offset, version, persistent=i == level_count)
            except SaveError as e:
                raise e.add_context(level_index=i, level_offset=level_start)
            levels.append(level)

        return cls(levels, grids, bytes(data[offset:]))

    def to_bytes(self, version: int) -> bytes:
        if not self.levels or not self.levels[-1].is_persistent:
            raise EncodeError("the last level must be the persistent level")
        if any(level.is_persistent for level in self.levels[:-1]):
            raise EncodeError("only the last level may be the persistent level")

        data = bytearray()
        if version >= PARTITIONED_SAVE_VERSION:
            grids = self.grids or []
            write_i32(data, len(grids))
            for grid in grids:
                grid.to_bytes(data)
        write_i32(data, len(self.levels) - 1)
        for level in self.levels:
            level.to_bytes(data, version)
        data.extend(self.tail)

        body = bytearray()
        write_i64(body, len(data))
        body.extend(data)
        return bytes(body)
