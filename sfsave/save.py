import logging
import threading
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import *

from .chunks import MAX_CHUNK_SIZE, compress_chunks, decompress_chunks
from .errors import SaveError
from .header import Header
from .objects import ObjectGraph
from .primitives import Buffer

logger = logging.getLogger(__name__)


@dataclass
class SaveDocument:
    header: Header
    graph: ObjectGraph = field(default_factory=ObjectGraph)

    @property
    def version(self) -> int:
        return self.header.save_version

    @classmethod
    def load(cls, data: Buffer, *, strict: bool = False, workers: Optional[int] = None,
             cancel: Optional[threading.Event] = None) -> 'SaveDocument':
        """
        Decode a complete save file.

        Either returns a fully decoded document or raises a single SaveError.
        `strict` additionally rejects components whose outer object is missing
        from their level.
        """
        header, offset = Header.from_bytes(data)
        body = decompress_chunks(data, offset, workers=workers, cancel=cancel)
        logger.debug("decompressed body: %d bytes", len(body))

        graph = ObjectGraph.from_bytes(body, header.save_version)
        graph.collected_objects()
        if strict:
            graph.check_outer_references()
        return cls(header, graph)

    def body(self) -> bytes:
        return self.graph.to_bytes(self.header.save_version)

    def save(self, *, chunk_size: int = MAX_CHUNK_SIZE, level: int = zlib.Z_DEFAULT_COMPRESSION) -> bytes:
        data = bytearray(self.header.to_bytes())
        data.extend(compress_chunks(self.body(), chunk_size, level=level))
        return bytes(data)


def load(data: Buffer, **kwargs: Any) -> SaveDocument:
    return SaveDocument.load(data, **kwargs)


def save(document: SaveDocument, **kwargs: Any) -> bytes:
    return document.save(**kwargs)


def read_savefile(path: Union[str, Path], **kwargs: Any) -> SaveDocument:
    data = Path(path).read_bytes()
    try:
        return SaveDocument.load(data, **kwargs)
    except SaveError as e:
        raise e.add_context(path=str(path))


def write_savefile(path: Union[str, Path], document: SaveDocument, **kwargs: Any) -> None:
    Path(path).write_bytes(document.save(**kwargs))
