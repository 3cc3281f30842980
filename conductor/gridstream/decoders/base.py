# Gridstream - Decoder Contract
# SPDX-License-Identifier: Apache-2.0

"""
Shared contract for format decoders and the per-call job that drives them.

A DecodeJob walks one buffer through:

    INIT -> HEADER (formats with a header phase) -> PROCESSING -> COMPLETE

Any failure in HEADER or PROCESSING moves the job to FAILED and is raised
as FormatDecodeError. There are no retry states.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Union
import asyncio
import inspect
import logging
import math

import numpy as np

from gridstream.errors import FormatDecodeError
from gridstream.streamer import Chunk, ProgressUpdate, StreamResult, process_in_chunks

logger = logging.getLogger(__name__)


def values_to_json(arr: np.ndarray) -> list:
    """Array values as JSON-native Python values (NaN becomes None)"""
    if arr.dtype.kind == "S":
        return [b.decode("latin-1") for b in arr.tolist()]
    values = arr.tolist()
    if arr.dtype.kind == "f":
        return [None if math.isnan(v) else v for v in values]
    return values


class DecodeFormat(str, Enum):
    """Supported byte formats"""
    NETCDF = "netcdf"
    GRIB2 = "grib2"


class DecodeState(str, Enum):
    INIT = "init"
    HEADER = "header"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class DecodeFilters:
    """
    Filters applied while decoding.

    bbox is [west, south, east, north] in degrees; west > east crosses the
    antimeridian.
    """

    variables: tuple[str, ...] = ()
    bbox: Optional[tuple[float, float, float, float]] = None
    time_start: Optional[datetime] = None
    time_end: Optional[datetime] = None

    @property
    def time_range(self) -> Optional[dict]:
        if self.time_start is None and self.time_end is None:
            return None
        return {
            "start": self.time_start.isoformat() if self.time_start else None,
            "end": self.time_end.isoformat() if self.time_end else None,
        }

    def echo(self) -> dict:
        """JSON-native form echoed into result metadata"""
        return {
            "bbox": list(self.bbox) if self.bbox is not None else None,
            "time_range": self.time_range,
        }


class DecoderAdapter(ABC):
    """
    Format-specific parsing over a stream of chunks.

    An adapter instance belongs to one decode call and may keep state across
    chunks (a parsed header, the end of the last consumed record).
    """

    format: DecodeFormat
    has_header: bool = False

    # Progress mapping: stage name and percentage range used while streaming
    start_stage: str = "loading"
    processing_base: float = 10.0
    processing_span: float = 90.0

    # Records seen but not decoded because they straddle a chunk boundary
    skipped_records: int = 0

    def parse_header(self, data: memoryview, total_size: int) -> Optional[dict]:
        """Parse format metadata from the leading bytes. Optional."""
        return None

    def header_window(self, total_size: int) -> int:
        """How many leading bytes parse_header needs"""
        return 0

    @abstractmethod
    def can_parse_chunk(self, chunk: Chunk, variable: str) -> bool:
        """Cheap test whether chunk can hold data for variable"""

    @abstractmethod
    def extract(self, chunk: Chunk, spec: Any, filters: DecodeFilters) -> Optional[Any]:
        """Extract data described by spec from chunk, or None"""

    @abstractmethod
    def process_chunk(self, chunk: Chunk, filters: DecodeFilters) -> Any:
        """Per-chunk result merged later by build_result"""

    @abstractmethod
    def build_result(self, stream: StreamResult, filters: DecodeFilters) -> dict:
        """Merge per-chunk results, in chunk order, into the final result"""


ProgressCallback = Callable[[dict], Any]


@dataclass
class DecodeJob:
    """
    One decode call over one buffer.

    Args:
        adapter: Fresh adapter for this call
        filters: Decode filters
        chunk_size: Window size in bytes
        overlap: Read-ahead bytes per window
        on_progress: Receives {"stage": str, "progress": float}
    """

    adapter: DecoderAdapter
    filters: DecodeFilters
    chunk_size: int
    overlap: int = 0
    on_progress: Optional[ProgressCallback] = None

    state: DecodeState = DecodeState.INIT
    processed_chunks: int = 0
    transitions: list = field(default_factory=lambda: [DecodeState.INIT])
    current_chunk: Optional[int] = None
    _callback_error: Optional[Exception] = field(default=None, init=False, repr=False)

    def _transition(self, state: DecodeState):
        logger.debug(f"{self.adapter.format.value} job: {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append(state)

    async def _emit(self, stage: str, progress: float):
        if self.on_progress is None:
            return
        try:
            outcome = self.on_progress({"stage": stage, "progress": progress})
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            self._callback_error = e
            raise

    async def _process(self, chunk: Chunk):
        self.current_chunk = chunk.info.index
        result = self.adapter.process_chunk(chunk, self.filters)
        self.processed_chunks += 1
        # Yield to the event loop between chunks
        await asyncio.sleep(0)
        return result

    async def _stream_progress(self, update: ProgressUpdate):
        await self._emit(
            "processing",
            self.adapter.processing_base + update.progress * self.adapter.processing_span / 100,
        )

    async def run(self, buffer: Union[bytes, bytearray, memoryview]) -> dict:
        """Decode the buffer. Raises FormatDecodeError on any failure."""
        if self.state is not DecodeState.INIT:
            raise RuntimeError(f"DecodeJob already ran (state: {self.state.value})")

        fmt = self.adapter.format.value
        view = memoryview(buffer).cast("B")
        try:
            if self.adapter.has_header:
                self._transition(DecodeState.HEADER)
                await self._emit("header", 10)
                window = self.adapter.header_window(len(view))
                self.adapter.parse_header(view[:window], len(view))
                await self._emit("metadata", 30)
            else:
                await self._emit(self.adapter.start_stage, self.adapter.processing_base)

            self._transition(DecodeState.PROCESSING)
            stream = await process_in_chunks(
                view,
                self.chunk_size,
                self._process,
                on_progress=self._stream_progress,
                overlap=self.overlap,
            )
            result = self.adapter.build_result(stream, self.filters)
        except FormatDecodeError:
            self._transition(DecodeState.FAILED)
            raise
        except Exception as e:
            if e is self._callback_error:
                # raised by the caller's progress callback, not by decoding
                self._transition(DecodeState.FAILED)
                raise
            stage = self.state.value
            chunk_index = self.current_chunk if self.state is DecodeState.PROCESSING else None
            self._transition(DecodeState.FAILED)
            logger.error(f"Failed to read {fmt} data in chunks: {e}")
            raise FormatDecodeError(fmt, stage, str(e), chunk_index) from e

        self._transition(DecodeState.COMPLETE)
        await self._emit("complete", 100)
        return result
