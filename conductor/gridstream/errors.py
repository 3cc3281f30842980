# Gridstream - Error Types
# SPDX-License-Identifier: Apache-2.0

"""
Typed errors for the decode pipeline and its caches.

Fatal to a decode call:
- MissingSource: a referenced identifier is not in the blob cache
- UnsupportedInput: the byte source is neither a buffer nor an identifier
- FormatDecodeError: header parse or per-chunk extraction failed
- ChunkMissingError: a chunked blob cannot be reassembled

Internal only:
- CacheIOError: downgraded to a logged cache miss by ResultCache
"""

from typing import Optional


class GridstreamError(Exception):
    """Base exception for all gridstream errors."""


class MissingSource(GridstreamError):
    """Raised when an identifier cannot be resolved through the blob cache."""

    def __init__(self, identifier: str, cache_key: str):
        self.identifier = identifier
        self.cache_key = cache_key
        super().__init__(f"File not found in cache: {identifier} (key: {cache_key})")


class UnsupportedInput(GridstreamError):
    """Raised when a byte source is neither bytes-like nor a string identifier."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unsupported byte source type: {kind}")


class FormatDecodeError(GridstreamError):
    """Raised for failures inside header parsing or per-chunk extraction."""

    def __init__(self, format: str, stage: str, message: str, chunk_index: Optional[int] = None):
        self.format = format
        self.stage = stage
        self.chunk_index = chunk_index
        where = f"{stage}" if chunk_index is None else f"{stage}, chunk {chunk_index}"
        super().__init__(f"{format} decode failed ({where}): {message}")


class ChunkMissingError(GridstreamError):
    """Raised when a manifest references a chunk record that cannot be read."""

    def __init__(self, key: str, chunk_key: str, reason: str = "missing"):
        self.key = key
        self.chunk_key = chunk_key
        super().__init__(f"Cannot reassemble {key}: chunk {chunk_key} {reason}")


class CacheIOError(GridstreamError):
    """Raised by cache internals; never surfaced past ResultCache."""

    def __init__(self, operation: str, key: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.key = key
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Cache {operation} failed for {key}{detail}")
