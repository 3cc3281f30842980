# Gridstream - GRIB2 Decoder
# SPDX-License-Identifier: Apache-2.0

"""
Chunked decoding of GRIB2 message streams.

GRIB2 has no file header: each chunk is scanned for ``GRIB`` indicator
sections and every complete message found is handed to eccodes. Its
summary keys (parameter, times, grid extent) are filtered against
{bbox, time range, variables} before any values are decoded.

A message is claimed by the chunk its first byte lies in. It is decoded
only when its last byte is visible in that chunk (primary range plus
read-ahead); otherwise it is skipped with a warning.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional
import logging

import eccodes
import numpy as np

from gridstream.decoders.base import DecodeFilters, DecodeFormat, DecoderAdapter, values_to_json
from gridstream.errors import FormatDecodeError
from gridstream.streamer import Chunk, StreamResult

logger = logging.getLogger(__name__)

GRIB_MAGIC = b"GRIB"
END_MARKER = b"7777"
INDICATOR_LENGTH = 16

def _uint(data: memoryview, offset: int, size: int) -> int:
    return int.from_bytes(data[offset:offset + size], "big")

def _get(gid, key: str, default=None):
    """Key value, or default when the message does not define it"""
    if not eccodes.codes_is_defined(gid, key):
        return default
    return eccodes.codes_get(gid, key)

def _datetime(date: Optional[int], time: Optional[int]) -> Optional[datetime]:
    """eccodes YYYYMMDD / HHMM pair as an aware UTC datetime"""
    if date is None:
        return None
    stamp = f"{int(date):08d}{int(time or 0):04d}"
    return datetime.strptime(stamp, "%Y%m%d%H%M").replace(tzinfo=timezone.utc)

def _lon_intervals(west: float, east: float) -> list[tuple[float, float]]:
    """Longitude span as closed intervals within [0, 360]"""
    if east - west >= 360:
        return [(0.0, 360.0)]
    w = west % 360
    e = east % 360
    if w <= e:
        return [(w, e)]
    return [(w, 360.0), (0.0, e)]

@dataclass(frozen=True)
class GridExtent:
    """Regular lat/lon grid (gridType regular_ll), degrees"""

    ni: int
    nj: int
    lat1: float
    lon1: float
    lat2: float
    lon2: float
    di: float
    dj: float
    scanning_mode: int

    @property
    def num_points(self) -> int:
        return self.ni * self.nj

    @property
    def lat_range(self) -> tuple[float, float]:
        return min(self.lat1, self.lat2), max(self.lat1, self.lat2)

    @property
    def lon_range(self) -> tuple[float, float]:
        """(west, east) honoring the i scanning direction"""
        if self.scanning_mode & 0x80:
            return self.lon2, self.lon1
        return self.lon1, self.lon2

    def intersects(self, bbox: tuple[float, float, float, float]) -> bool:
        west, south, east, north = bbox
        lat_min, lat_max = self.lat_range
        if lat_max < south or lat_min > north:
            return False
        grid_west, grid_east = self.lon_range
        return any(
            a <= d and c <= b
            for a, b in _lon_intervals(west, east)
            for c, d in _lon_intervals(grid_west, grid_east)
        )

    def to_dict(self) -> dict:
        return {
            "ni": self.ni,
            "nj": self.nj,
            "lat1": self.lat1,
            "lon1": self.lon1,
            "lat2": self.lat2,
            "lon2": self.lon2,
            "di": self.di,
            "dj": self.dj,
            "scanning_mode": self.scanning_mode,
        }

@dataclass
class GribMessage:
    """Summary of one GRIB2 message, enough to filter without decoding values"""

    offset: int
    length: int
    discipline: int
    category: int
    number: int
    short_name: str
    long_name: str
    units: str
    param_id: Optional[int]
    reference_time: datetime
    valid_time: Optional[datetime]
    forecast_time: Optional[int]
    grid: Optional[GridExtent]
    num_points: int
    grid_template: Optional[int]
    product_template: Optional[int]
    packing_template: Optional[int]
    packing_type: Optional[str]

    @property
    def parameter_key(self) -> str:
        return f"{self.discipline},{self.category},{self.number}"

    @property
    def name(self) -> str:
        if self.short_name and self.short_name != "unknown":
            return self.short_name
        return f"VAR{self.discipline}-{self.category}-{self.number}"

    @property
    def time(self) -> datetime:
        return self.valid_time or self.reference_time

    def matches_variables(self, variables: tuple[str, ...]) -> bool:
        if not variables:
            return True
        names = {self.name.lower(), self.long_name.lower(), self.parameter_key}
        if self.param_id is not None:
            names.add(str(self.param_id))
        return any(v.lower() in names for v in variables)

    def matches(self, filters: DecodeFilters) -> bool:
        """Whether the message passes {variables, time range, bbox}"""
        if not self.matches_variables(filters.variables):
            return False
        if filters.time_start is not None and self.time < filters.time_start:
            return False
        if filters.time_end is not None and self.time > filters.time_end:
            return False
        if filters.bbox is not None:
            if self.grid is None:
                return False
            return self.grid.intersects(filters.bbox)
        return True

    def to_dict(self) -> dict:
        return {
            "offset": self.offset,
            "length": self.length,
            "discipline": self.discipline,
            "category": self.category,
            "number": self.number,
            "parameter": self.parameter_key,
            "param_id": self.param_id,
            "name": self.name,
            "long_name": self.long_name,
            "units": self.units,
            "reference_time": self.reference_time.isoformat(),
            "valid_time": self.valid_time.isoformat() if self.valid_time else None,
            "forecast_time": self.forecast_time,
            "grid": self.grid.to_dict() if self.grid else None,
            "num_points": self.num_points,
            "templates": {
                "grid": self.grid_template,
                "product": self.product_template,
                "packing": self.packing_template,
            },
            "packing_type": self.packing_type,
        }

def read_grid(gid) -> Optional[GridExtent]:
    """Extent of a regular lat/lon grid; other grid types have none"""
    if _get(gid, "gridType") != "regular_ll":
        return None
    return GridExtent(
        ni=int(eccodes.codes_get(gid, "Ni")),
        nj=int(eccodes.codes_get(gid, "Nj")),
        lat1=eccodes.codes_get_double(gid, "latitudeOfFirstGridPointInDegrees"),
        lon1=eccodes.codes_get_double(gid, "longitudeOfFirstGridPointInDegrees"),
        lat2=eccodes.codes_get_double(gid, "latitudeOfLastGridPointInDegrees"),
        lon2=eccodes.codes_get_double(gid, "longitudeOfLastGridPointInDegrees"),
        di=eccodes.codes_get_double(gid, "iDirectionIncrementInDegrees"),
        dj=eccodes.codes_get_double(gid, "jDirectionIncrementInDegrees"),
        scanning_mode=int(eccodes.codes_get(gid, "scanningMode")),
    )

def read_message(gid, offset: int, length: int) -> GribMessage:
    """
    Summarise one GRIB2 message from its eccodes handle.

    Only header keys are read; the data section is not decoded.

    Args:
        gid: eccodes handle of the message
        offset: Absolute offset of the message in the file
        length: Message length in bytes
    """
    reference_time = _datetime(_get(gid, "dataDate"), _get(gid, "dataTime"))
    if reference_time is None:
        raise ValueError("message has no reference time")
    return GribMessage(
        offset=offset,
        length=length,
        discipline=int(eccodes.codes_get(gid, "discipline")),
        category=int(eccodes.codes_get(gid, "parameterCategory")),
        number=int(eccodes.codes_get(gid, "parameterNumber")),
        short_name=_get(gid, "shortName", "unknown"),
        long_name=_get(gid, "name", "unknown"),
        units=_get(gid, "units", "unknown"),
        param_id=_get(gid, "paramId"),
        reference_time=reference_time,
        valid_time=_datetime(_get(gid, "validityDate"), _get(gid, "validityTime")),
        forecast_time=_get(gid, "forecastTime"),
        grid=read_grid(gid),
        num_points=int(eccodes.codes_get(gid, "numberOfDataPoints")),
        grid_template=_get(gid, "gridDefinitionTemplateNumber"),
        product_template=_get(gid, "productDefinitionTemplateNumber"),
        packing_template=_get(gid, "dataRepresentationTemplateNumber"),
        packing_type=_get(gid, "packingType"),
    )

def read_values(gid) -> list:
    """Decode a message's field values; points masked out by the bitmap become None"""
    values = eccodes.codes_get_values(gid)
    if _get(gid, "bitmapPresent"):
        missing = eccodes.codes_get_double(gid, "missingValue")
        values = np.where(values == missing, np.nan, values)
    return values_to_json(np.asarray(values, dtype=np.float64))

class GRIB2Adapter(DecoderAdapter):
    """GRIB2 decoder; message boundaries are discovered per chunk"""

    format = DecodeFormat.GRIB2
    has_header = False
    start_stage = "loading"
    processing_base = 10.0
    processing_span = 90.0

    def __init__(self):
        # Absolute offset where the last consumed message ended
        self._resume_at = 0
        self.skipped_offsets: list[int] = []

    def find_messages(self, chunk: Chunk) -> Iterator[tuple[int, memoryview]]:
        """
        Yield (absolute offset, message bytes) for messages starting in the chunk.

        Messages already consumed by an earlier chunk's read-ahead are not
        reported again.
        """
        base = chunk.info.start
        data = bytes(chunk.data)
        view = memoryview(data)
        pos = max(self._resume_at, base) - base
        limit = chunk.info.size

        while pos < limit:
            p = data.find(GRIB_MAGIC, pos, limit + len(GRIB_MAGIC) - 1)
            if p < 0:
                self._check_cut_magic(data, pos, chunk)
                break
            if p + INDICATOR_LENGTH > len(data):
                self._skip(base + p, None, chunk)
                break
            if data[p + 7] != 2:
                pos = p + 1
                continue

            total = _uint(view, p + 8, 8)
            if total < INDICATOR_LENGTH + len(END_MARKER):
                pos = p + 1
                continue
            if p + total > len(data):
                self._skip(base + p, total, chunk)
                pos = p + len(GRIB_MAGIC)
                continue
            if data[p + total - len(END_MARKER):p + total] != END_MARKER:
                pos = p + 1
                continue

            yield base + p, view[p:p + total]
            pos = p + total
            self._resume_at = base + p + total

    def _check_cut_magic(self, data: bytes, pos: int, chunk: Chunk):
        """A ``GRIB`` marker cut by the end of the visible data is a skipped message"""
        if chunk.info.index == chunk.info.total_chunks - 1:
            return
        for p in range(max(pos, len(data) - len(GRIB_MAGIC) + 1), min(len(data), chunk.info.size)):
            if GRIB_MAGIC.startswith(data[p:]):
                self._skip(chunk.info.start + p, None, chunk)
                return

    def _skip(self, offset: int, length: Optional[int], chunk: Chunk):
        self.skipped_offsets.append(offset)
        self.skipped_records += 1
        size = f"{length} bytes" if length is not None else "unknown length"
        logger.warning(
            f"[GRIB2] Message at offset {offset} ({size}) straddles the end of chunk "
            f"{chunk.info.index} and was skipped; increase overlap to recover it"
        )

    def can_parse_chunk(self, chunk: Chunk, variable: Optional[str] = None) -> bool:
        """
        Whether a message not yet consumed can start in the chunk.

        Any message may hold any variable, so only chunks wholly consumed by
        an earlier chunk's read-ahead are ruled out.
        """
        return chunk.info.size > 0 and chunk.info.end > self._resume_at

    def extract(self, chunk: Chunk, spec: tuple[GribMessage, int], filters: DecodeFilters) -> Optional[list]:
        """Values of the message in spec (summary, eccodes handle), or None when filtered out"""
        message, gid = spec
        if not message.matches(filters):
            return None
        return read_values(gid)

    def _decode_error(self, offset: int, error: Exception, chunk: Chunk) -> FormatDecodeError:
        return FormatDecodeError(
            self.format.value, "processing", f"message at offset {offset}: {error}", chunk.info.index,
        )

    def process_chunk(self, chunk: Chunk, filters: DecodeFilters) -> list:
        if not self.can_parse_chunk(chunk):
            logger.debug(f"[GRIB2] Chunk {chunk.info.index} was consumed by read-ahead")
            return []

        chunk_results = []
        for offset, raw in self.find_messages(chunk):
            try:
                gid = eccodes.codes_new_from_message(bytes(raw))
            except eccodes.CodesInternalError as e:
                raise self._decode_error(offset, e, chunk) from e
            try:
                message = read_message(gid, offset, len(raw))
                values = self.extract(chunk, (message, gid), filters)
            except (eccodes.CodesInternalError, ValueError) as e:
                raise self._decode_error(offset, e, chunk) from e
            finally:
                eccodes.codes_release(gid)

            if values is None:
                logger.debug(f"[GRIB2] Message {message.name} at {offset} filtered out")
                continue
            chunk_results.append({
                "message": message.to_dict(),
                "data": values,
                "chunk_info": chunk.info.to_dict(),
            })
        return chunk_results

    def build_result(self, stream: StreamResult, filters: DecodeFilters) -> dict:
        messages = [entry for chunk_result in stream.results for entry in chunk_result]
        return {
            "messages": messages,
            "metadata": {
                "total_size": stream.total_size,
                "processed_chunks": stream.total_chunks,
                "message_count": len(messages),
                **filters.echo(),
                "variables": list(filters.variables),
            },
        }
