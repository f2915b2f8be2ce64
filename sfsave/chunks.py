import logging
import threading
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import *

from .errors import CorruptChunk, DecodeCancelled, TruncatedChunk, UnexpectedEof
from .primitives import Buffer, read_u8, read_u32, read_u64, read_view, write_u8, write_u32, write_u64

logger = logging.getLogger(__name__)

PACKAGE_FILE_TAG = 0x9E2A83C1
ARCHIVE_V2_TAG = 0x22222222
ZLIB_COMPRESSION_MARKER = 0x03000000
MAX_CHUNK_SIZE = 128 * 1024

CHUNK_HEADER_SIZE = 49
LEGACY_CHUNK_HEADER_SIZE = 48


@dataclass
class ChunkHeader:
    compressed_size: int
    uncompressed_size: int
    max_chunk_size: int = MAX_CHUNK_SIZE
    legacy: bool = False

    @property
    def header_size(self) -> int:
        return LEGACY_CHUNK_HEADER_SIZE if self.legacy else CHUNK_HEADER_SIZE

    @classmethod
    def from_bytes(cls, data: Buffer, offset: int, index: int = 0) -> Tuple['ChunkHeader', int]:
        start = offset
        try:
            tag, offset = read_u32(data, offset)
            if tag != PACKAGE_FILE_TAG:
                raise CorruptChunk(f"bad chunk tag 0x{tag:08x}", chunk=index, offset=start)
            archive_tag, offset = read_u32(data, offset)
            legacy = archive_tag != ARCHIVE_V2_TAG
            if legacy:
                max_chunk_size, offset = read_u64(data, offset)
            else:
                _, offset = read_u8(data, offset)
                max_chunk_size, offset = read_u32(data, offset)
                marker, offset = read_u32(data, offset)
                if marker != ZLIB_COMPRESSION_MARKER:
                    raise CorruptChunk(f"unsupported compression marker 0x{marker:08x}", chunk=index, offset=start)
            compressed, offset = read_u64(data, offset)
            uncompressed, offset = read_u64(data, offset)
            block_compressed, offset = read_u64(data, offset)
            block_uncompressed, offset = read_u64(data, offset)
        except UnexpectedEof as e:
            raise TruncatedChunk("partial chunk header", chunk=index, offset=start) from e
        if (compressed, uncompressed) != (block_compressed, block_uncompressed):
            raise CorruptChunk("chunk summary does not match its block sizes", chunk=index, offset=start)
        return cls(compressed, uncompressed, max_chunk_size, legacy), offset

    def to_bytes(self, data: bytearray) -> None:
        write_u32(data, PACKAGE_FILE_TAG)
        if self.legacy:
            write_u32(data, 0)
            write_u64(data, self.max_chunk_size)
        else:
            write_u32(data, ARCHIVE_V2_TAG)
            write_u8(data, 0)
            write_u32(data, self.max_chunk_size)
            write_u32(data, ZLIB_COMPRESSION_MARKER)
        # summary, then the single block it describes
        for _ in range(2):
            write_u64(data, self.compressed_size)
            write_u64(data, self.uncompressed_size)


def _scan_chunks(data: Buffer, offset: int) -> List[Tuple[int, ChunkHeader, memoryview]]:
    chunks = []
    while offset < len(data):
        index = len(chunks)
        start = offset
        header, offset = ChunkHeader.from_bytes(data, offset, index)
        try:
            payload, offset = read_view(data, offset, header.compressed_size)
        except UnexpectedEof as e:
            raise TruncatedChunk(f"chunk declares {header.compressed_size} compressed bytes, "
                                 f"{e.available} available", chunk=index, offset=start) from e
        chunks.append((start, header, payload))
    return chunks


def _inflate(index: int, start: int, header: ChunkHeader, payload: memoryview) -> bytes:
    d = zlib.decompressobj()
    try:
        out = d.decompress(payload)
    except zlib.error as e:
        raise CorruptChunk(f"zlib failure: {e}", chunk=index, offset=start) from e
    if not d.eof:
        raise CorruptChunk("zlib stream ends before its final block", chunk=index, offset=start)
    if d.unused_data:
        raise CorruptChunk(f"{len(d.unused_data)} bytes follow the zlib stream inside the chunk",
                           chunk=index, offset=start)
    if len(out) != header.uncompressed_size:
        raise CorruptChunk(f"chunk inflated to {len(out)} bytes, expected {header.uncompressed_size}",
                           chunk=index, offset=start)
    return out


def decompress_chunks(data: Buffer, offset: int = 0, *, workers: Optional[int] = None,
                      cancel: Optional[threading.Event] = None) -> bytes:
    """
    Reassemble the save body from the chunk records starting at `offset`.

    Every chunk header is validated before any payload is inflated. With
    `workers` > 1 the chunks are inflated on a thread pool; results land in a
    slot per chunk and are joined strictly in file order. `cancel` is only
    checked between chunks.
    """
    chunks = _scan_chunks(data, offset)
    logger.debug("decompressing %d chunks", len(chunks))
    results: List[Optional[bytes]] = [None] * len(chunks)

    if not workers or workers <= 1 or len(chunks) <= 1:
        for index, (start, header, payload) in enumerate(chunks):
            if cancel is not None and cancel.is_set():
                raise DecodeCancelled("decompression cancelled", chunk=index)
            results[index] = _inflate(index, start, header, payload)
        return b"".join(results)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_inflate, index, start, header, payload)
                   for index, (start, header, payload) in enumerate(chunks)]
        try:
            for index, future in enumerate(futures):
                if cancel is not None and cancel.is_set():
                    raise DecodeCancelled("decompression cancelled", chunk=index)
                results[index] = future.result()
        except BaseException:
            for future in futures:
                future.cancel()
            raise
    return b"".join(results)


def compress_chunks(body: Buffer, chunk_size: int = MAX_CHUNK_SIZE, *,
                    level: int = zlib.Z_DEFAULT_COMPRESSION) -> bytes:
    """Split `body` into blocks of at most `chunk_size` bytes and zlib-compress each one."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    view = memoryview(body)
    data = bytearray()
    for start in range(0, len(view), chunk_size):
        block = view[start:start + chunk_size]
        compressed = zlib.compress(block, level)
        ChunkHeader(len(compressed), len(block), chunk_size).to_bytes(data)
        data.extend(compressed)
    logger.debug("compressed %d body bytes into %d chunk bytes", len(view), len(data))
    return bytes(data)
