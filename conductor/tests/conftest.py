# Gridstream - Test Fixtures
# SPDX-License-Identifier: Apache-2.0

"""
Synthetic NetCDF classic and GRIB2 byte builders.

The builders write just enough of each format for the decoders to parse:
real headers and sections with known values, no external libraries.
"""

from datetime import datetime, timezone
from typing import Optional
import struct

import numpy as np
import pytest

from gridstream.blobcache import FileBlobCache, MemoryBlobCache


# -- NetCDF classic ------------------------------------------------------------

# (kind, itemsize) -> nc_type
NC_TYPE_CODES = {("i", 1): 1, ("S", 1): 2, ("i", 2): 3, ("i", 4): 4, ("f", 4): 5, ("f", 8): 6}


def _pad4(n: int) -> int:
    return (n + 3) & ~3


def _padded(raw: bytes) -> bytes:
    return raw + b"\x00" * (_pad4(len(raw)) - len(raw))


def _nc_name(name: str) -> bytes:
    raw = name.encode("utf-8")
    return struct.pack(">I", len(raw)) + _padded(raw)


def _nc_attrs(attrs: Optional[dict]) -> bytes:
    if not attrs:
        return b"\x00" * 8
    out = struct.pack(">II", 0x0C, len(attrs))
    for name, value in attrs.items():
        out += _nc_name(name)
        if isinstance(value, str):
            raw = value.encode("utf-8")
            out += struct.pack(">II", 2, len(raw)) + _padded(raw)
        elif isinstance(value, int):
            out += struct.pack(">IIi", 4, 1, value)
        else:
            out += struct.pack(">IId", 6, 1, float(value))
    return out


def build_netcdf(
    dimensions: list[tuple[str, int]],
    variables: list[dict],
    numrecs: int = 0,
    version: int = 1,
    global_attrs: Optional[dict] = None,
    streaming: bool = False,
) -> bytes:
    """
    Build a NetCDF classic file.

    Args:
        dimensions: (name, length) pairs; length 0 marks the record dimension
        variables: dicts with "name", "dims" (dimension names), "data"
            (numpy array, big-endian dtype) and optional "attrs"
        numrecs: Number of records for record variables
        version: 1 (classic) or 2 (64-bit offset)
        streaming: Write numrecs as 0xFFFFFFFF
    """
    dim_index = {name: i for i, (name, _) in enumerate(dimensions)}
    record_dim = next((name for name, length in dimensions if length == 0), None)

    specs = []
    for var in variables:
        data = np.asarray(var["data"])
        dtype = data.dtype.newbyteorder(">") if data.dtype.kind != "S" else np.dtype("S1")
        data = data.astype(dtype)
        is_record = bool(var["dims"]) and var["dims"][0] == record_dim
        per_record = data[0:1].nbytes if is_record else data.nbytes
        specs.append({**var, "data": data, "nc_type": NC_TYPE_CODES[(dtype.kind, dtype.itemsize)],
                      "is_record": is_record, "nbytes": per_record})

    record_vars = [s for s in specs if s["is_record"]]
    for spec in specs:
        if spec["is_record"] and len(record_vars) == 1:
            spec["vsize"] = spec["nbytes"]
        else:
            spec["vsize"] = _pad4(spec["nbytes"])

    def header(begins: list[int]) -> bytes:
        out = b"CDF" + bytes([version])
        out += struct.pack(">I", 0xFFFFFFFF if streaming else numrecs)
        if dimensions:
            out += struct.pack(">II", 0x0A, len(dimensions))
            for name, length in dimensions:
                out += _nc_name(name) + struct.pack(">I", length)
        else:
            out += b"\x00" * 8
        out += _nc_attrs(global_attrs)
        if specs:
            out += struct.pack(">II", 0x0B, len(specs))
            for spec, begin in zip(specs, begins):
                out += _nc_name(spec["name"])
                out += struct.pack(">I", len(spec["dims"]))
                out += b"".join(struct.pack(">I", dim_index[d]) for d in spec["dims"])
                out += _nc_attrs(spec.get("attrs"))
                out += struct.pack(">II", spec["nc_type"], spec["vsize"])
                out += struct.pack(">I" if version == 1 else ">q", begin)
        else:
            out += b"\x00" * 8
        return out

    header_size = len(header([0] * len(specs)))

    begins = []
    offset = header_size
    for spec in specs:
        if not spec["is_record"]:
            begins.append(offset)
            offset += spec["vsize"]
        else:
            begins.append(None)
    record_start = offset
    for i, spec in enumerate(specs):
        if spec["is_record"]:
            begins[i] = offset
            offset += spec["vsize"]
    begins = [b if b is not None else 0 for b in begins]

    body = b""
    for spec in specs:
        if not spec["is_record"]:
            raw = spec["data"].tobytes()
            body += raw + b"\x00" * (spec["vsize"] - len(raw))
    assert header_size + len(body) == record_start

    for r in range(numrecs):
        for spec in record_vars:
            raw = spec["data"][r:r + 1].tobytes()
            body += raw + b"\x00" * (spec["vsize"] - len(raw))

    return header(begins) + body


def simple_netcdf() -> bytes:
    """temperature(lat=10, lon=10) float32 plus a 3-record time series"""
    temperature = (np.arange(100, dtype=">f4") + 250).reshape(10, 10)
    return build_netcdf(
        dimensions=[("time", 0), ("lat", 10), ("lon", 10)],
        variables=[
            {"name": "temperature", "dims": ["lat", "lon"], "data": temperature,
             "attrs": {"units": "K", "long_name": "Air Temperature"}},
            {"name": "time", "dims": ["time"], "data": np.array([0.0, 6.0, 12.0], dtype=">f8"),
             "attrs": {"units": "hours since 2024-01-01 00:00:00"}},
        ],
        numrecs=3,
        global_attrs={"title": "synthetic"},
    )


# -- GRIB2 ----------------------------------------------------------------------

def _sm(value: int, size: int) -> bytes:
    """Sign-and-magnitude integer"""
    if value < 0:
        value = (1 << (size * 8 - 1)) | -value
    return value.to_bytes(size, "big")


def _section(number: int, body: bytes) -> bytes:
    return struct.pack(">IB", len(body) + 5, number) + body


def build_grib2_message(
    values: np.ndarray,
    lat1: float = 50.0,
    lon1: float = 230.0,
    lat2: float = 20.0,
    lon2: float = 300.0,
    discipline: int = 0,
    category: int = 0,
    number: int = 0,
    reference_time: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc),
    forecast_hours: int = 0,
    nbits: int = 16,
    decimal_scale: int = 0,
    bitmap: Optional[np.ndarray] = None,
    packing_template: int = 0,
) -> bytes:
    """
    Build one GRIB2 message on a regular lat/lon grid.

    Args:
        values: (nj, ni) field; with decimal_scale D, values * 10^D must be integers
        bitmap: (nj, ni) bool mask of present points, or None for all present
    """
    values = np.asarray(values, dtype=np.float64)
    nj, ni = values.shape
    di = (lon2 - lon1) / (ni - 1) if ni > 1 else 0.0
    dj = abs(lat1 - lat2) / (nj - 1) if nj > 1 else 0.0

    flat = values.ravel()
    if bitmap is not None:
        flat = flat[np.asarray(bitmap).ravel()]
    scaled = np.rint(flat * 10 ** decimal_scale).astype(np.int64)
    reference = int(scaled.min()) if len(scaled) else 0
    packed_ints = (scaled - reference).astype(np.uint64)
    assert nbits == 0 or int(packed_ints.max(initial=0)) < 2 ** nbits

    if nbits:
        shifts = np.arange(nbits - 1, -1, -1, dtype=np.uint64)
        bits = ((packed_ints[:, None] >> shifts) & np.uint64(1)).astype(np.uint8).ravel()
        data_bytes = np.packbits(bits).tobytes()
    else:
        data_bytes = b""

    sec1 = _section(1, struct.pack(
        ">HHBBBHBBBBBBB", 7, 0, 4, 0, 1,
        reference_time.year, reference_time.month, reference_time.day,
        reference_time.hour, reference_time.minute, reference_time.second, 0, 1,
    ))
    sec3 = _section(3, (
        struct.pack(">BIBBH", 0, ni * nj, 0, 0, 0)
        + struct.pack(">BBIBIBI", 6, 0, 0, 0, 0, 0, 0)
        + struct.pack(">IIII", ni, nj, 0, 0xFFFFFFFF)
        + _sm(round(lat1 * 1e6), 4) + _sm(round(lon1 * 1e6), 4)
        + bytes([48])
        + _sm(round(lat2 * 1e6), 4) + _sm(round(lon2 * 1e6), 4)
        + struct.pack(">II", round(di * 1e6), round(dj * 1e6))
        + bytes([0])
    ))
    sec4 = _section(4, (
        struct.pack(">HHBBBBBHBB", 0, 0, category, number, 2, 0, 96, 0, 0, 1)
        + _sm(forecast_hours, 4)
        + struct.pack(">BBIBBI", 1, 0, 0, 255, 0, 0)
    ))
    sec5 = _section(5, (
        struct.pack(">IH", len(scaled), packing_template)
        + struct.pack(">f", float(reference))
        + _sm(0, 2) + _sm(decimal_scale, 2)
        + bytes([nbits, 0])
        # 5.40 adds compression type and target ratio
        + (bytes([0, 255]) if packing_template == 40 else b"")
    ))
    if bitmap is None:
        sec6 = _section(6, bytes([255]))
    else:
        mask_bits = np.asarray(bitmap, dtype=np.uint8).ravel()
        sec6 = _section(6, bytes([0]) + np.packbits(mask_bits).tobytes())
    sec7 = _section(7, data_bytes)

    body = sec1 + sec3 + sec4 + sec5 + sec6 + sec7
    total = 16 + len(body) + 4
    return b"GRIB" + b"\x00\x00" + bytes([discipline, 2]) + struct.pack(">Q", total) + body + b"7777"


def temperature_field(nj: int = 3, ni: int = 4, base: float = 270.0) -> np.ndarray:
    return base + np.arange(nj * ni, dtype=np.float64).reshape(nj, ni)


# -- fixtures -------------------------------------------------------------------

@pytest.fixture
def netcdf_bytes() -> bytes:
    return simple_netcdf()


@pytest.fixture
def grib2_bytes() -> bytes:
    """Temperature (0,0,0) at +0h and +6h, then u-wind (0,2,2) at +0h"""
    return (
        build_grib2_message(temperature_field())
        + build_grib2_message(temperature_field(base=280.0), forecast_hours=6)
        + build_grib2_message(temperature_field(base=0.0), category=2, number=2)
    )


@pytest.fixture
def memory_cache() -> MemoryBlobCache:
    return MemoryBlobCache(max_entry_size=768, storage_chunk_size=256)


@pytest.fixture(params=["memory", "file"])
def blob_cache(request, tmp_path):
    """Each backend with a small chunking threshold"""
    if request.param == "memory":
        return MemoryBlobCache(max_entry_size=768, storage_chunk_size=256)
    return FileBlobCache(tmp_path / "cache", max_entry_size=768, storage_chunk_size=256)
