# Gridstream - Result Export
# SPDX-License-Identifier: Apache-2.0

"""
Export decode results.

Supported targets:
1. xarray.Dataset - NetCDF variables keep their dimensions and attributes;
   GRIB2 messages on one lat/lon grid are stacked along a time axis
2. Result file - Zstandard-compressed JSON with a magic header (.json.zst)
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Union
import json
import logging

import numpy as np
import xarray as xr
import zstandard as zstd

from gridstream.config import COMPRESSION_LEVEL_DEFAULT

logger = logging.getLogger(__name__)

RESULT_MAGIC = b"GSRESLT1"


@dataclass
class ExportStats:
    """Statistics from a result file export"""
    input_bytes: int
    output_bytes: int
    compression_ratio: float
    path: Path


def _to_array(values: list, var_type: str) -> np.ndarray:
    if var_type == "char":
        return np.array(values, dtype="U1")
    if any(v is None for v in values):
        return np.array([np.nan if v is None else v for v in values], dtype=np.float64)
    return np.array(values)


def _netcdf_dataset(result: dict) -> xr.Dataset:
    data_vars = {}
    for name, entry in result["variables"].items():
        meta = entry.get("metadata")
        if meta is None:
            logger.warning(f"Skipping {name}: not present in the source file")
            continue

        shape = tuple(meta["dimensions"])
        expected = int(np.prod(shape, dtype=np.int64))
        if len(entry["data"]) != expected:
            raise ValueError(
                f"{name} has {len(entry['data'])} values, dimensions {list(shape)} need {expected}"
            )
        arr = _to_array(entry["data"], meta["type"]).reshape(shape)
        data_vars[name] = xr.Variable(meta["dimension_names"], arr, attrs=meta["attributes"])

    return xr.Dataset(data_vars, attrs={"total_size": result["metadata"]["total_size"]})


def _grid_axes(grid: dict) -> tuple[np.ndarray, np.ndarray]:
    """Latitude and longitude axes of a template 3.0 grid, in scan order"""
    scanning = grid["scanning_mode"]
    i_step = -grid["di"] if scanning & 0x80 else grid["di"]
    j_step = grid["dj"] if scanning & 0x40 else -grid["dj"]
    lats = grid["lat1"] + j_step * np.arange(grid["nj"])
    lons = grid["lon1"] + i_step * np.arange(grid["ni"])
    return lats, lons


def _message_time(message: dict) -> np.datetime64:
    stamp = datetime.fromisoformat(message["valid_time"] or message["reference_time"])
    return np.datetime64(stamp.replace(tzinfo=None), "ns")


def _grib2_dataset(result: dict) -> xr.Dataset:
    fields = [entry for entry in result["messages"] if entry["message"]["grid"] is not None]
    if not fields:
        return xr.Dataset()

    grid = fields[0]["message"]["grid"]
    if any(entry["message"]["grid"] != grid for entry in fields):
        raise ValueError("GRIB2 messages are on different grids; export them separately")
    lats, lons = _grid_axes(grid)

    by_name: dict[str, dict] = {}
    for entry in fields:
        message = entry["message"]
        times = by_name.setdefault(message["name"], {})
        time = _message_time(message)
        if time in times:
            logger.debug(f"Dropping duplicate {message['name']} field at {time} (offset {message['offset']})")
            continue
        times[time] = entry

    data_vars = {}
    for name, times in by_name.items():
        ordered = sorted(times)
        stack = np.stack([
            _to_array(times[t]["data"], "float").reshape(grid["nj"], grid["ni"])
            for t in ordered
        ])
        first = times[ordered[0]]["message"]
        data_vars[name] = xr.DataArray(
            stack,
            dims=("time", "latitude", "longitude"),
            coords={"time": ordered, "latitude": lats, "longitude": lons},
            attrs={"long_name": first["long_name"], "units": first["units"]},
        )

    return xr.Dataset(data_vars, attrs={"total_size": result["metadata"]["total_size"]})


def result_to_dataset(result: dict) -> xr.Dataset:
    """
    Convert a decode result into an xarray Dataset.

    Args:
        result: NetCDF result ({"variables": ...}) or GRIB2 result ({"messages": ...})

    Returns:
        Dataset with one data variable per decoded variable / parameter
    """
    if "variables" in result:
        return _netcdf_dataset(result)
    if "messages" in result:
        return _grib2_dataset(result)
    raise ValueError("Not a decode result: expected 'variables' or 'messages'")


def write_result(
    result: dict,
    path: Union[str, Path],
    compression_level: int = COMPRESSION_LEVEL_DEFAULT,
) -> ExportStats:
    """Write a result as Zstandard-compressed JSON"""
    path = Path(path)
    raw = RESULT_MAGIC + json.dumps(result, allow_nan=False, separators=(",", ":")).encode("utf-8")
    compressed = zstd.ZstdCompressor(level=compression_level).compress(raw)

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(compressed)

    stats = ExportStats(
        input_bytes=len(raw),
        output_bytes=len(compressed),
        compression_ratio=len(raw) / len(compressed) if compressed else 0,
        path=path,
    )
    logger.info(
        f"Exported result: {stats.output_bytes / 1024:.1f} KB "
        f"({stats.compression_ratio:.1f}x compression)"
    )
    return stats


def read_result(path: Union[str, Path]) -> dict:
    """Read a result file written by write_result"""
    with open(path, "rb") as f:
        compressed = f.read()

    raw = zstd.ZstdDecompressor().decompress(compressed)
    if raw[:len(RESULT_MAGIC)] != RESULT_MAGIC:
        raise ValueError(f"Invalid result file magic: {raw[:len(RESULT_MAGIC)]!r}")
    return json.loads(raw[len(RESULT_MAGIC):].decode("utf-8"))
