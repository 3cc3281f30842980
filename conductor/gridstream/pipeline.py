# Gridstream - Decode Pipeline
# SPDX-License-Identifier: Apache-2.0

"""
Decode orchestration: fingerprint -> result cache -> raw bytes -> chunked
decode -> result cache.

Usage:
    async with DecodePipeline.open() as pipeline:
        outcome = await pipeline.decode(buffer, "grib2", DecodeOptions(variables=["t"]))
        outcome.result["messages"]

Concurrent calls for the same fingerprint share one decode. Joined callers
get the shared result but not the progress updates of the leading call.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union
import asyncio
import logging

from pydantic import BaseModel, Field, field_validator, model_validator

from gridstream.blobcache import BlobCache, open_cache
from gridstream.config import DEFAULT_OVERLAP, GRIB2_CHUNK_SIZE, NETCDF_CHUNK_SIZE, CacheSettings
from gridstream.decoders import DecodeFilters, DecodeFormat, DecodeJob, adapter_for
from gridstream.errors import MissingSource, UnsupportedInput
from gridstream.fingerprint import generate_key
from gridstream.results import ResultCache

logger = logging.getLogger(__name__)

ByteSource = Union[bytes, bytearray, memoryview, str]

DEFAULT_CHUNK_SIZES = {
    DecodeFormat.NETCDF: NETCDF_CHUNK_SIZE,
    DecodeFormat.GRIB2: GRIB2_CHUNK_SIZE,
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TimeRange(BaseModel):
    """Inclusive time window; naive datetimes are taken as UTC"""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end")
    @classmethod
    def assume_utc(cls, v):
        return _as_utc(v)

    @model_validator(mode="after")
    def check_order(self):
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError(f"time_range start {self.start} is after end {self.end}")
        return self


class DecodeOptions(BaseModel):
    """Options for one decode call"""

    variables: list[str] = Field(default_factory=list, description="Variables / parameters to extract")
    bbox: Optional[tuple[float, float, float, float]] = Field(
        None, description="[west, south, east, north] in degrees"
    )
    time_range: Optional[TimeRange] = None
    chunk_size: Optional[int] = Field(None, gt=0, description="Window size in bytes (default by format)")
    overlap: int = Field(DEFAULT_OVERLAP, ge=0, description="Read-ahead bytes per window")
    on_progress: Optional[Callable[[dict], Any]] = Field(None, exclude=True)
    process: bool = Field(True, description="False returns the raw bytes without decoding")
    source: str = "unknown"
    dataset: str = "data"

    @field_validator("variables", mode="before")
    @classmethod
    def parse_variables(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("bbox")
    @classmethod
    def check_bbox(cls, v):
        if v is None:
            return None
        west, south, east, north = v
        if not (-90 <= south <= 90 and -90 <= north <= 90):
            raise ValueError(f"bbox latitudes must be within [-90, 90], got {south}, {north}")
        if south > north:
            raise ValueError(f"bbox south {south} is north of {north}")
        return v

    def filters(self) -> DecodeFilters:
        return DecodeFilters(
            variables=tuple(self.variables),
            bbox=self.bbox,
            time_start=self.time_range.start if self.time_range else None,
            time_end=self.time_range.end if self.time_range else None,
        )

    def fingerprint_params(self) -> dict:
        """The parameters that change a decode's result"""
        filters = self.filters()
        return {
            "variables": list(self.variables),
            "bbox": list(self.bbox) if self.bbox is not None else None,
            "time_range": filters.time_range,
            "overlap": self.overlap,
        }


class Provenance(str, Enum):
    CACHE = "cache"
    FRESH = "fresh"
    RAW = "raw"


@dataclass
class DecodeOutcome:
    """A decode result and where it came from"""

    result: Union[dict, bytes]
    provenance: Provenance
    fingerprint: str
    # False when records straddling chunk ends were skipped; such results are not cached
    complete: bool = True


class DecodePipeline:
    """
    Fingerprint-keyed, cached chunked decoding.

    Args:
        blobs: Raw blob cache; identifiers resolve through it
        results: Result cache (None disables result caching)
        dedupe_inflight: Share one decode between concurrent identical calls
        owns_blobs: Close the blob cache when the pipeline is closed
    """

    def __init__(
        self,
        blobs: BlobCache,
        results: Optional[ResultCache] = None,
        dedupe_inflight: bool = True,
        owns_blobs: bool = False,
    ):
        self.blobs = blobs
        self.results = results
        self.dedupe_inflight = dedupe_inflight
        self.owns_blobs = owns_blobs
        self._inflight: dict[str, asyncio.Future] = {}

    @classmethod
    def open(cls, settings: Optional[CacheSettings] = None, **kwargs) -> "DecodePipeline":
        """Pipeline over the configured file cache, with result caching"""
        settings = settings or CacheSettings.from_env()
        blobs = open_cache(settings)
        results = ResultCache(blobs, settings.compression_level)
        return cls(blobs, results, owns_blobs=True, **kwargs)

    async def close(self) -> None:
        if self.owns_blobs:
            await self.blobs.close()

    async def __aenter__(self) -> "DecodePipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _cache_key(self, identifier: str, options: DecodeOptions) -> str:
        return self.blobs.generate_cache_key(
            identifier, {"source": options.source, "dataset": options.dataset}
        )

    async def _resolve(self, byte_source: ByteSource, options: DecodeOptions) -> bytes:
        """Raw bytes for a buffer or a cached identifier"""
        if isinstance(byte_source, str):
            key = self._cache_key(byte_source, options)
            record = await self.blobs.get(key)
            if record is None:
                raise MissingSource(byte_source, key)
            return record.data
        return byte_source

    async def decode(
        self,
        byte_source: ByteSource,
        fmt: Union[DecodeFormat, str],
        options: Optional[DecodeOptions] = None,
    ) -> DecodeOutcome:
        """
        Decode a buffer or cached file.

        Args:
            byte_source: Raw bytes, or an identifier stored in the blob cache
            fmt: "netcdf" or "grib2"
            options: Filters and streaming options

        Returns:
            DecodeOutcome; result is the decoded dict, or raw bytes when
            options.process is False

        Raises:
            UnsupportedInput: byte_source is neither bytes-like nor str
            MissingSource: identifier not in the blob cache
            FormatDecodeError: header or chunk parsing failed
        """
        if not isinstance(byte_source, (bytes, bytearray, memoryview, str)):
            raise UnsupportedInput(type(byte_source).__name__)
        fmt = DecodeFormat(fmt)
        options = options or DecodeOptions()
        # identifiers are fingerprinted by the blob they resolve to
        identity = self._cache_key(byte_source, options) if isinstance(byte_source, str) else byte_source
        fingerprint = generate_key(identity, fmt.value, options.fingerprint_params())

        if not options.process:
            buffer = await self._resolve(byte_source, options)
            return DecodeOutcome(bytes(buffer), Provenance.RAW, fingerprint)

        if self.results is not None:
            cached = await self.results.get(fingerprint)
            if cached is not None:
                logger.info(f"Using cached processed {fmt.value} data: {fingerprint}")
                return DecodeOutcome(cached, Provenance.CACHE, fingerprint)

        if not self.dedupe_inflight:
            result, complete = await self._decode_fresh(byte_source, fmt, options, fingerprint)
            return DecodeOutcome(result, Provenance.FRESH, fingerprint, complete)

        pending = self._inflight.get(fingerprint)
        if pending is not None:
            logger.debug(f"Joining in-flight decode {fingerprint}")
            result, complete = await asyncio.shield(pending)
            return DecodeOutcome(result, Provenance.FRESH, fingerprint, complete)

        future = asyncio.get_running_loop().create_future()
        self._inflight[fingerprint] = future
        try:
            result, complete = await self._decode_fresh(byte_source, fmt, options, fingerprint)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unjoined failure is not reported as never awaited
            future.exception()
            raise
        else:
            future.set_result((result, complete))
        finally:
            self._inflight.pop(fingerprint, None)

        return DecodeOutcome(result, Provenance.FRESH, fingerprint, complete)

    async def _decode_fresh(
        self,
        byte_source: ByteSource,
        fmt: DecodeFormat,
        options: DecodeOptions,
        fingerprint: str,
    ) -> tuple[dict, bool]:
        buffer = await self._resolve(byte_source, options)
        filters = options.filters()

        job = DecodeJob(
            adapter=adapter_for(fmt, options.variables),
            filters=filters,
            chunk_size=options.chunk_size or DEFAULT_CHUNK_SIZES[fmt],
            overlap=options.overlap,
            on_progress=options.on_progress,
        )
        result = await job.run(buffer)

        skipped = job.adapter.skipped_records
        if skipped:
            logger.warning(
                f"{fmt.value} decode skipped {skipped} record(s) straddling chunk ends; "
                f"not caching {fingerprint} (raise overlap to recover them)"
            )
        elif self.results is not None:
            await self.results.put(
                fingerprint,
                result,
                source=options.source,
                dataset=options.dataset,
                format=fmt.value,
                variables=options.variables,
                bbox=list(options.bbox) if options.bbox is not None else None,
                time_range=filters.time_range,
            )
        return result, not skipped

    async def read_netcdf_chunked(self, byte_source: ByteSource, **options) -> Union[dict, bytes]:
        """Decode NetCDF; keyword arguments are DecodeOptions fields"""
        outcome = await self.decode(byte_source, DecodeFormat.NETCDF, DecodeOptions(**options))
        return outcome.result

    async def read_grib2_chunked(self, byte_source: ByteSource, **options) -> Union[dict, bytes]:
        """Decode GRIB2; keyword arguments are DecodeOptions fields"""
        outcome = await self.decode(byte_source, DecodeFormat.GRIB2, DecodeOptions(**options))
        return outcome.result
