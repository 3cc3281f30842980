# Gridstream - Chunk Streamer
# SPDX-License-Identifier: Apache-2.0

"""
Sequential chunked processing of an in-memory buffer.

The buffer is split into fixed-size windows that are visited strictly in
ascending order, one at a time:
1. per_chunk(chunk) produces the chunk's result
2. on_progress receives the running percentage
3. on_chunk_complete(result, info) runs before the next chunk starts

Windows are zero-copy memoryview slices, so peak memory is the source
buffer plus the accumulated results. The whole buffer must already be in
memory; chunks are not streamed from storage.

Records that straddle a window boundary are only visible to a decoder when
the window is given a read-ahead (``overlap``). Decoders claim records that
start inside the window's primary range, so read-ahead never duplicates a
record.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union
import inspect
import logging
import math

logger = logging.getLogger(__name__)

BufferLike = Union[bytes, bytearray, memoryview]


@dataclass(frozen=True)
class ChunkInfo:
    """Position of one window inside the source buffer"""

    index: int
    total_chunks: int
    start: int
    end: int  # exclusive

    @property
    def size(self) -> int:
        return self.end - self.start

    def to_dict(self) -> dict:
        return {
            "chunk_index": self.index,
            "total_chunks": self.total_chunks,
            "start": self.start,
            "end": self.end,
            "chunk_size": self.size,
        }


@dataclass(frozen=True)
class Chunk:
    """
    One window of the buffer.

    ``data`` covers ``[info.start, info.start + len(data))``, which is the
    primary range ``[start, end)`` plus any read-ahead bytes.
    """

    data: memoryview
    info: ChunkInfo

    @property
    def primary(self) -> memoryview:
        """Bytes of the primary range only"""
        return self.data[: self.info.size]

    @property
    def available_end(self) -> int:
        """Absolute offset one past the last byte visible in this chunk"""
        return self.info.start + len(self.data)


@dataclass(frozen=True)
class ProgressUpdate:
    processed_chunks: int
    total_chunks: int
    progress: float


@dataclass
class StreamResult:
    """Per-chunk results in chunk order"""

    results: list = field(default_factory=list)
    total_chunks: int = 0
    total_size: int = 0


class ChunkWindows:
    """
    Restartable, index-addressable view of a buffer's windows.

    ``windows[i]`` always returns the same Chunk, so an iteration can be
    resumed from any index.
    """

    def __init__(self, buffer: BufferLike, chunk_size: int, overlap: int = 0):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if overlap < 0:
            raise ValueError(f"overlap must be >= 0, got {overlap}")

        self._view = memoryview(buffer).cast("B")
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.total_size = len(self._view)
        self.total_chunks = math.ceil(self.total_size / chunk_size)

    def __len__(self) -> int:
        return self.total_chunks

    def __getitem__(self, index: int) -> Chunk:
        if index < 0:
            index += self.total_chunks
        if not 0 <= index < self.total_chunks:
            raise IndexError(f"chunk index {index} out of range ({self.total_chunks} chunks)")

        start = index * self.chunk_size
        end = min(start + self.chunk_size, self.total_size)
        visible_end = min(end + self.overlap, self.total_size)

        info = ChunkInfo(index=index, total_chunks=self.total_chunks, start=start, end=end)
        return Chunk(data=self._view[start:visible_end], info=info)

    def __iter__(self):
        for i in range(self.total_chunks):
            yield self[i]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


PerChunk = Callable[[Chunk], Union[Any, Awaitable[Any]]]
ProgressSink = Callable[[ProgressUpdate], Union[None, Awaitable[None]]]
ChunkCompleteHook = Callable[[Any, ChunkInfo], Union[None, Awaitable[None]]]


async def process_in_chunks(
    buffer: BufferLike,
    chunk_size: int,
    per_chunk: PerChunk,
    on_progress: Optional[ProgressSink] = None,
    on_chunk_complete: Optional[ChunkCompleteHook] = None,
    overlap: int = 0,
) -> StreamResult:
    """
    Drive per_chunk over every window of the buffer, in order.

    Args:
        buffer: Source bytes (held in memory for the whole call)
        chunk_size: Window size in bytes
        per_chunk: Called with each Chunk; may be sync or async
        on_progress: Receives a ProgressUpdate after each chunk
        on_chunk_complete: Called with (result, ChunkInfo) before the next chunk starts
        overlap: Read-ahead bytes visible past each window end

    Returns:
        StreamResult with one result per chunk

    Any exception from per_chunk aborts the call; results of earlier chunks
    are discarded and no further hooks run.
    """
    windows = ChunkWindows(buffer, chunk_size, overlap)
    results = []

    logger.debug(
        f"Streaming {windows.total_size} bytes as {windows.total_chunks} chunks "
        f"of {chunk_size} bytes (overlap {overlap})"
    )

    for processed, chunk in enumerate(windows, start=1):
        result = await _maybe_await(per_chunk(chunk))
        results.append(result)

        if on_progress is not None:
            await _maybe_await(on_progress(ProgressUpdate(
                processed_chunks=processed,
                total_chunks=windows.total_chunks,
                progress=processed / windows.total_chunks * 100,
            )))

        if on_chunk_complete is not None:
            await _maybe_await(on_chunk_complete(result, chunk.info))

    return StreamResult(
        results=results,
        total_chunks=windows.total_chunks,
        total_size=windows.total_size,
    )
