# Gridstream - Request Fingerprints
# SPDX-License-Identifier: Apache-2.0

"""
Deterministic cache keys for decode requests.

A fingerprint identifies the *result* of a decode: the byte source, the
format and the filter parameters. It is a cheap 32-bit rolling hash, not a
cryptographic digest; a collision can only return a wrong cached decode.
"""

from datetime import date, datetime
from typing import Any, Union
import hashlib
import json


def source_identity(source: Union[str, bytes, bytearray, memoryview]) -> str:
    """
    Stable identity string for a byte source.

    Identifiers are used verbatim. Buffers are identified by content so two
    different buffers never share a fingerprint.
    """
    if isinstance(source, str):
        return source
    return f"buffer-{hashlib.md5(source).hexdigest()}"


def _canonical(value: Any) -> Any:
    """Reduce params to JSON-native values with a stable form"""
    if hasattr(value, "model_dump"):
        return _canonical(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def canonical_params(params: Any) -> str:
    """
    Serialize params so that key order never changes the result.

    Dicts are emitted with sorted keys, tuples as lists and datetimes as
    ISO-8601 strings.
    """
    return json.dumps(
        _canonical(params),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def rolling_hash(text: str) -> int:
    """
    32-bit shift-and-subtract hash (h * 31 + unit) with signed wrap-around.

    Folds over UTF-16 code units, so characters outside the BMP count as
    their two surrogates. Returns the absolute value of the signed 32-bit
    accumulator.
    """
    units = text.encode("utf-16-be", errors="surrogatepass")
    h = 0
    for i in range(0, len(units), 2):
        h = ((h << 5) - h + ((units[i] << 8) | units[i + 1])) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def generate_key(source_descriptor: Union[str, bytes, bytearray, memoryview], format: str, params: Any) -> str:
    """
    Generate the fingerprint for a decode request.

    Args:
        source_descriptor: Identifier string or raw buffer
        format: Decoder format tag ("netcdf", "grib2")
        params: Filter parameters (variables, bbox, time range)

    Returns:
        Fingerprint of the form ``processed-{format}-{hash}``
    """
    combined = f"{source_identity(source_descriptor)}-{format}-{canonical_params(params)}"
    return f"processed-{format}-{rolling_hash(combined)}"
