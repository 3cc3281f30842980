# Gridstream - NetCDF Decoder
# SPDX-License-Identifier: Apache-2.0

"""
Chunked decoding of NetCDF classic files.

Supported layout (big-endian throughout):
- CDF-1 (classic, 32-bit offsets) and CDF-2 (64-bit offsets)
- fixed-size variables stored contiguously at ``begin``
- record variables interleaved by record, ``numrecs`` records of ``recsize``

The header is parsed once from a bounded leading window. Each chunk then
yields, per requested variable, the values whose first byte falls inside
the chunk. Values are concatenated in chunk order, i.e. file byte order.

bbox and time filters are echoed into the result but do not subset
NetCDF values.
"""

from dataclasses import dataclass, field
from typing import Any, Optional
import logging

import numpy as np

from gridstream.config import NETCDF_HEADER_WINDOW
from gridstream.decoders.base import DecodeFilters, DecodeFormat, DecoderAdapter, values_to_json
from gridstream.errors import FormatDecodeError
from gridstream.streamer import Chunk, StreamResult

logger = logging.getLogger(__name__)

NC_DIMENSION = 0x0A
NC_VARIABLE = 0x0B
NC_ATTRIBUTE = 0x0C
STREAMING_NUMRECS = 0xFFFFFFFF

# nc_type -> (name, numpy dtype)
NC_TYPES: dict[int, tuple[str, str]] = {
    1: ("byte", ">i1"),
    2: ("char", "S1"),
    3: ("short", ">i2"),
    4: ("int", ">i4"),
    5: ("float", ">f4"),
    6: ("double", ">f8"),
}


def _pad4(n: int) -> int:
    return (n + 3) & ~3


@dataclass
class NetCDFVariable:
    """Header entry for one variable"""

    name: str
    dim_names: list[str]
    shape: list[int]
    nc_type: int
    attributes: dict
    vsize: int
    begin: int
    is_record: bool
    segments: list[tuple[int, int]] = field(default_factory=list)

    @property
    def type_name(self) -> str:
        return NC_TYPES[self.nc_type][0]

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(NC_TYPES[self.nc_type][1])

    @property
    def itemsize(self) -> int:
        return self.dtype.itemsize

    def metadata(self) -> dict:
        return {
            "dimensions": list(self.shape),
            "dimension_names": list(self.dim_names),
            "type": self.type_name,
            "attributes": dict(self.attributes),
        }


@dataclass
class NetCDFHeader:
    version: int
    numrecs: int
    dimensions: list[tuple[str, int]]
    attributes: dict
    variables: dict[str, NetCDFVariable]
    header_size: int
    recsize: int = 0


class _HeaderReader:
    """Cursor over the header window; running off the end is an error"""

    def __init__(self, data: memoryview):
        self.data = data
        self.pos = 0

    def take(self, n: int) -> memoryview:
        if n < 0 or self.pos + n > len(self.data):
            raise FormatDecodeError(
                DecodeFormat.NETCDF.value,
                "header",
                f"header extends past the {len(self.data)}-byte window (at offset {self.pos})",
            )
        out = self.data[self.pos:self.pos + n]
        self.pos += n
        return out

    def uint32(self) -> int:
        return int.from_bytes(self.take(4), "big")

    def int64(self) -> int:
        return int.from_bytes(self.take(8), "big", signed=True)

    def name(self) -> str:
        n = self.uint32()
        raw = bytes(self.take(n))
        self.take(_pad4(n) - n)
        return raw.decode("utf-8")

    def values(self, nc_type: int, nelems: int) -> Any:
        if nc_type not in NC_TYPES:
            raise FormatDecodeError(DecodeFormat.NETCDF.value, "header", f"unknown nc_type {nc_type}")
        dtype = np.dtype(NC_TYPES[nc_type][1])
        nbytes = nelems * dtype.itemsize
        raw = self.take(nbytes)
        self.take(_pad4(nbytes) - nbytes)

        if nc_type == 2:
            return bytes(raw).rstrip(b"\x00").decode("utf-8", errors="replace")
        values = values_to_json(np.frombuffer(raw, dtype=dtype))
        return values[0] if len(values) == 1 else values

    def attributes(self) -> dict:
        tag = self.uint32()
        nelems = self.uint32()
        if tag == 0 and nelems == 0:
            return {}
        if tag != NC_ATTRIBUTE:
            raise FormatDecodeError(DecodeFormat.NETCDF.value, "header", f"expected attribute list, got tag {tag:#x}")
        attrs = {}
        for _ in range(nelems):
            name = self.name()
            nc_type = self.uint32()
            count = self.uint32()
            attrs[name] = self.values(nc_type, count)
        return attrs


def parse_header(data: memoryview, total_size: Optional[int] = None) -> NetCDFHeader:
    """
    Parse a NetCDF classic header.

    Args:
        data: Leading bytes of the file (must contain the whole header)
        total_size: Full file size, used to infer numrecs for streamed files

    Returns:
        NetCDFHeader with byte segments resolved for every variable
    """
    fmt = DecodeFormat.NETCDF.value
    if len(data) < 4 or bytes(data[:3]) != b"CDF":
        raise FormatDecodeError(fmt, "header", "not a NetCDF classic file (missing CDF magic)")
    version = data[3]
    if version not in (1, 2):
        raise FormatDecodeError(fmt, "header", f"unsupported NetCDF format version {version}")

    reader = _HeaderReader(data)
    reader.take(4)
    numrecs = reader.uint32()

    tag = reader.uint32()
    ndims = reader.uint32()
    dimensions: list[tuple[str, int]] = []
    if not (tag == 0 and ndims == 0):
        if tag != NC_DIMENSION:
            raise FormatDecodeError(fmt, "header", f"expected dimension list, got tag {tag:#x}")
        for _ in range(ndims):
            dimensions.append((reader.name(), reader.uint32()))

    global_attrs = reader.attributes()

    tag = reader.uint32()
    nvars = reader.uint32()
    variables: dict[str, NetCDFVariable] = {}
    if not (tag == 0 and nvars == 0):
        if tag != NC_VARIABLE:
            raise FormatDecodeError(fmt, "header", f"expected variable list, got tag {tag:#x}")
        for _ in range(nvars):
            name = reader.name()
            dimids = [reader.uint32() for _ in range(reader.uint32())]
            attrs = reader.attributes()
            nc_type = reader.uint32()
            if nc_type not in NC_TYPES:
                raise FormatDecodeError(fmt, "header", f"variable {name} has unknown nc_type {nc_type}")
            vsize = reader.uint32()
            begin = reader.uint32() if version == 1 else reader.int64()

            try:
                dims = [dimensions[i] for i in dimids]
            except IndexError:
                raise FormatDecodeError(fmt, "header", f"variable {name} references an undefined dimension")

            variables[name] = NetCDFVariable(
                name=name,
                dim_names=[d[0] for d in dims],
                shape=[d[1] for d in dims],
                nc_type=nc_type,
                attributes=attrs,
                vsize=vsize,
                begin=begin,
                is_record=bool(dims) and dims[0][1] == 0,
            )

    header = NetCDFHeader(
        version=version,
        numrecs=numrecs,
        dimensions=dimensions,
        attributes=global_attrs,
        variables=variables,
        header_size=reader.pos,
    )
    _resolve_segments(header, total_size)
    return header


def _resolve_segments(header: NetCDFHeader, total_size: Optional[int]):
    """Compute each variable's byte segments and the record stride"""
    record_vars = [v for v in header.variables.values() if v.is_record]

    def per_record_bytes(var: NetCDFVariable) -> int:
        return int(np.prod(var.shape[1:], dtype=np.int64)) * var.itemsize

    if len(record_vars) == 1:
        # A lone record variable is not padded
        header.recsize = per_record_bytes(record_vars[0])
    else:
        header.recsize = sum(v.vsize for v in record_vars)

    if header.numrecs == STREAMING_NUMRECS:
        if record_vars and total_size is not None and header.recsize > 0:
            first = min(v.begin for v in record_vars)
            header.numrecs = max(0, (total_size - first) // header.recsize)
        else:
            header.numrecs = 0
        logger.debug(f"Streaming NetCDF: inferred {header.numrecs} records")

    for var in header.variables.values():
        if var.is_record:
            var.shape[0] = header.numrecs
            nbytes = per_record_bytes(var)
            var.segments = [
                (var.begin + r * header.recsize, var.begin + r * header.recsize + nbytes)
                for r in range(header.numrecs)
            ]
        else:
            nbytes = int(np.prod(var.shape, dtype=np.int64)) * var.itemsize
            var.segments = [(var.begin, var.begin + nbytes)]


class NetCDFAdapter(DecoderAdapter):
    """NetCDF classic decoder with a one-time header phase"""

    format = DecodeFormat.NETCDF
    has_header = True
    start_stage = "header"
    processing_base = 30.0
    processing_span = 70.0

    def __init__(self, variables: Optional[list[str]] = None, header_window: int = NETCDF_HEADER_WINDOW):
        self.variables = list(variables or [])
        self.max_header_window = header_window
        self.header: Optional[NetCDFHeader] = None
        self.variable_metadata: dict[str, Optional[dict]] = {}

    def header_window(self, total_size: int) -> int:
        return min(self.max_header_window, total_size)

    def parse_header(self, data: memoryview, total_size: int) -> Optional[dict]:
        self.header = parse_header(data, total_size)

        for name in self.variables:
            var = self.header.variables.get(name)
            if var is None:
                logger.warning(f"[NetCDF] Variable not found in header: {name}")
                self.variable_metadata[name] = None
            else:
                self.variable_metadata[name] = var.metadata()

        logger.debug(
            f"[NetCDF] Header: version {self.header.version}, "
            f"{len(self.header.variables)} variables, {self.header.numrecs} records"
        )
        return self.variable_metadata

    def _spec(self, variable: str) -> Optional[NetCDFVariable]:
        if self.header is None:
            raise FormatDecodeError(self.format.value, "processing", "header not parsed")
        return self.header.variables.get(variable)

    def can_parse_chunk(self, chunk: Chunk, variable: str) -> bool:
        spec = self._spec(variable)
        if spec is None:
            return False
        start, end = chunk.info.start, chunk.info.end
        return any(seg_start < end and seg_end > start for seg_start, seg_end in spec.segments)

    def extract(self, chunk: Chunk, spec: NetCDFVariable, filters: DecodeFilters) -> Optional[list]:
        """
        Values of spec whose first byte lies in the chunk's primary range.

        A value whose bytes run past the visible data (no read-ahead) is
        skipped; the next chunk does not claim it either.
        """
        start, end = chunk.info.start, chunk.info.end
        visible_end = chunk.available_end
        itemsize = spec.itemsize
        values: list = []

        for seg_start, seg_end in spec.segments:
            lo = max(seg_start, start)
            hi = min(seg_end, end)
            if lo >= hi:
                continue

            first = -(-(lo - seg_start) // itemsize)
            last = -(-(hi - seg_start) // itemsize)
            complete = (min(seg_end, visible_end) - seg_start) // itemsize
            if last > complete:
                cut = last - max(complete, first)
                self.skipped_records += cut
                logger.warning(
                    f"[NetCDF] {spec.name}: {cut} value(s) straddle the end of "
                    f"chunk {chunk.info.index} and are skipped"
                )
                last = complete
            if first >= last:
                continue

            a = seg_start + first * itemsize - start
            b = seg_start + last * itemsize - start
            values.extend(values_to_json(np.frombuffer(chunk.data[a:b], dtype=spec.dtype)))

        return values or None

    def process_chunk(self, chunk: Chunk, filters: DecodeFilters) -> dict:
        chunk_results = {}
        for name in self.variables:
            if not self.can_parse_chunk(chunk, name):
                continue
            data = self.extract(chunk, self._spec(name), filters)
            if data:
                chunk_results[name] = data
        return chunk_results

    def build_result(self, stream: StreamResult, filters: DecodeFilters) -> dict:
        combined = {
            name: {"metadata": self.variable_metadata.get(name), "data": []}
            for name in self.variables
        }
        for chunk_result in stream.results:
            for name, data in chunk_result.items():
                combined[name]["data"].extend(data)

        return {
            "variables": combined,
            "metadata": {
                "total_size": stream.total_size,
                "processed_chunks": stream.total_chunks,
                **filters.echo(),
            },
        }
