# Gridstream - Format Decoders
# SPDX-License-Identifier: Apache-2.0

"""
Format decoders for chunked streaming.

Each decode call gets a fresh adapter from adapter_for(); adapters keep
per-call state (parsed header, resume offset) and are never shared.
"""

from typing import Optional, Union

from gridstream.decoders.base import (
    DecodeFilters,
    DecodeFormat,
    DecodeJob,
    DecoderAdapter,
    DecodeState,
)
from gridstream.decoders.grib2 import GRIB2Adapter, GribMessage
from gridstream.decoders.netcdf import NetCDFAdapter, NetCDFHeader


def adapter_for(fmt: Union[DecodeFormat, str], variables: Optional[list[str]] = None) -> DecoderAdapter:
    """Fresh adapter for one decode call"""
    fmt = DecodeFormat(fmt)
    if fmt is DecodeFormat.NETCDF:
        return NetCDFAdapter(variables)
    elif fmt is DecodeFormat.GRIB2:
        return GRIB2Adapter()
    raise ValueError(f"Unsupported format: {fmt}")


__all__ = [
    "DecodeFilters",
    "DecodeFormat",
    "DecodeJob",
    "DecodeState",
    "DecoderAdapter",
    "GRIB2Adapter",
    "GribMessage",
    "NetCDFAdapter",
    "NetCDFHeader",
    "adapter_for",
]
