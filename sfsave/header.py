import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import *

from .errors import TruncatedHeader, UnexpectedEof, UnsupportedVersion
from .primitives import (Buffer, read_bytes, read_i8, read_i32, read_i64, read_string,
                         write_i8, write_i32, write_i64, write_string)

logger = logging.getLogger(__name__)

MAX_HEADER_VERSION = 14
MIN_SAVE_VERSION = 42
MAX_SAVE_VERSION = 52

# header version gates
SESSION_VISIBILITY_VERSION = 5
EDITOR_OBJECT_VERSION = 7
MOD_METADATA_VERSION = 8
SAVE_IDENTIFIER_VERSION = 10
PARTITIONED_WORLD_VERSION = 11
DATA_HASH_VERSION = 12
CREATIVE_MODE_VERSION = 13
SAVE_NAME_VERSION = 14

DATA_HASH_SIZE = 16

# .NET/UE ticks are 100ns intervals since 0001-01-01
_TICKS_EPOCH = datetime(1, 1, 1)


@dataclass
class Header:
    save_header_version: int
    save_version: int
    build_version: int = 0
    save_name: str = ""
    map_name: str = ""
    map_options: str = ""
    session_name: str = ""
    played_seconds: int = 0
    save_timestamp: int = 0
    session_visibility: int = 0
    editor_object_version: int = 0
    mod_metadata: str = ""
    is_modded_save: int = 0
    save_identifier: str = ""
    is_partitioned_world: int = 0
    data_hash_valid: int = 0
    data_hash: bytes = b""
    is_creative_mode_enabled: int = 0

    @property
    def saved_at(self) -> datetime:
        return _TICKS_EPOCH + timedelta(microseconds=self.save_timestamp // 10)

    @classmethod
    def from_bytes(cls, data: Buffer, offset: int = 0) -> Tuple['Header', int]:
        try:
            return cls._read(data, offset)
        except UnexpectedEof as e:
            raise TruncatedHeader(f"save header is truncated: {e.message}", offset=e.context.get('offset')) from e

    @classmethod
    def _read(cls, data: Buffer, offset: int) -> Tuple['Header', int]:
        header_version, offset = read_i32(data, offset)
        save_version, offset = read_i32(data, offset)
        if not 0 <= header_version <= MAX_HEADER_VERSION:
            raise UnsupportedVersion(f"unsupported save header version {header_version}")
        if not MIN_SAVE_VERSION <= save_version <= MAX_SAVE_VERSION:
            raise UnsupportedVersion(f"unsupported save version {save_version}")

        header = cls(save_header_version=header_version, save_version=save_version)
        header.build_version, offset = read_i32(data, offset)
        if header_version >= SAVE_NAME_VERSION:
            header.save_name, offset = read_string(data, offset)
        header.map_name, offset = read_string(data, offset)
        header.map_options, offset = read_string(data, offset)
        header.session_name, offset = read_string(data, offset)
        header.played_seconds, offset = read_i32(data, offset)
        header.save_timestamp, offset = read_i64(data, offset)
        if header_version >= SESSION_VISIBILITY_VERSION:
            header.session_visibility, offset = read_i8(data, offset)
        if header_version >= EDITOR_OBJECT_VERSION:
            header.editor_object_version, offset = read_i32(data, offset)
        if header_version >= MOD_METADATA_VERSION:
            header.mod_metadata, offset = read_string(data, offset)
            header.is_modded_save, offset = read_i32(data, offset)
        if header_version >= SAVE_IDENTIFIER_VERSION:
            header.save_identifier, offset = read_string(data, offset)
        if header_version >= PARTITIONED_WORLD_VERSION:
            header.is_partitioned_world, offset = read_i32(data, offset)
        if header_version >= DATA_HASH_VERSION:
            header.data_hash_valid, offset = read_i32(data, offset)
            if header.data_hash_valid:
                header.data_hash, offset = read_bytes(data, offset, DATA_HASH_SIZE)
        if header_version >= CREATIVE_MODE_VERSION:
            header.is_creative_mode_enabled, offset = read_i32(data, offset)

        logger.debug("read header v%d, save version %d, build %d (%d bytes)",
                     header_version, save_version, header.build_version, offset)
        return header, offset

    def to_bytes(self) -> bytes:
        data = bytearray()
        hv = self.save_header_version
        write_i32(data, hv)
        write_i32(data, self.save_version)
        write_i32(data, self.build_version)
        if hv >= SAVE_NAME_VERSION:
            write_string(data, self.save_name)
        write_string(data, self.map_name)
        write_string(data, self.map_options)
        write_string(data, self.session_name)
        write_i32(data, self.played_seconds)
        write_i64(data, self.save_timestamp)
        if hv >= SESSION_VISIBILITY_VERSION:
            write_i8(data, self.session_visibility)
        if hv >= EDITOR_OBJECT_VERSION:
            write_i32(data, self.editor_object_version)
        if hv >= MOD_METADATA_VERSION:
            write_string(data, self.mod_metadata)
            write_i32(data, self.is_modded_save)
        if hv >= SAVE_IDENTIFIER_VERSION:
            write_string(data, self.save_identifier)
        if hv >= PARTITIONED_WORLD_VERSION:
            write_i32(data, self.is_partitioned_world)
        if hv >= DATA_HASH_VERSION:
            write_i32(data, self.data_hash_valid)
            if self.data_hash_valid:
                data.extend(self.data_hash.ljust(DATA_HASH_SIZE, b'\x00')[:DATA_HASH_SIZE])
        if hv >= CREATIVE_MODE_VERSION:
            write_i32(data, self.is_creative_mode_enabled)
        return bytes(data)
