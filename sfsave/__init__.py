"""Reader and writer for Satisfactory `.sav` files."""

from .chunks import MAX_CHUNK_SIZE, ChunkHeader, compress_chunks, decompress_chunks
from .errors import (BodyLengthMismatch, CorruptChunk, DanglingOuterReference, DecodeCancelled, EncodeError,
                     MalformedLevel, MalformedPropertyList, MalformedString, PropertySizeMismatch, SaveError,
                     TruncatedBody, TruncatedChunk, TruncatedHeader, UnconsumedBytes, UnexpectedEof,
                     UnknownPropertyType, UnsupportedTextHistory, UnsupportedVersion)
from .header import MAX_HEADER_VERSION, MAX_SAVE_VERSION, MIN_SAVE_VERSION, Header
from .objects import ActorHeader, ComponentHeader, Grid, Level, ObjectGraph, ObjectHeader, SaveObject
from .primitives import WideStr
from .properties import (ArrayProperty, ArrayStructInfo, BoolProperty, ByteProperty, DoubleProperty, EnumProperty,
                         FloatProperty, Int8Property, Int16Property, Int64Property, InterfaceProperty, IntProperty,
                         MapProperty, NameProperty, ObjectProperty, Property, PropertyFactory, SetProperty,
                         SoftObjectProperty, StrProperty, StructProperty, TextProperty, UInt16Property,
                         UInt32Property, UInt64Property, UnknownProperty)
from .save import SaveDocument, load, read_savefile, save, write_savefile
from .values import (BaseHistory, FormatArgument, FormatHistory, LuaProcessorState, NetworkTrace, NoneHistory,
                     ObjectReference, SoftObjectReference, StringTableHistory, Text, TransformHistory)

__version__ = "0.1.0"
