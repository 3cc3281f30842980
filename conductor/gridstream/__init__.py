# Gridstream - Chunked Grid Decoding
# SPDX-License-Identifier: Apache-2.0

"""
Chunked streaming decode of large NetCDF / GRIB2 files with a two-tier cache.

Core pieces:
1. Raw blob cache: size-limited key/value store, oversized files fan out into chunks
2. Chunk streamer: ordered fixed-size windows over an in-memory buffer
3. Format decoders: NetCDF header + variable extraction, GRIB2 message scanning
4. Result cache: decoded results keyed by request fingerprint
"""

__version__ = "0.1.0"

from gridstream.blobcache import (
    BlobCache,
    BlobRecord,
    ChunkManifest,
    FileBlobCache,
    MemoryBlobCache,
    open_cache,
)
from gridstream.config import CacheSettings
from gridstream.errors import (
    CacheIOError,
    ChunkMissingError,
    FormatDecodeError,
    GridstreamError,
    MissingSource,
    UnsupportedInput,
)
from gridstream.fingerprint import generate_key
from gridstream.pipeline import DecodeOptions, DecodeOutcome, DecodePipeline, Provenance
from gridstream.results import ResultCache
from gridstream.streamer import process_in_chunks

__all__ = [
    "BlobCache",
    "BlobRecord",
    "CacheIOError",
    "CacheSettings",
    "ChunkManifest",
    "ChunkMissingError",
    "DecodeOptions",
    "DecodeOutcome",
    "DecodePipeline",
    "FileBlobCache",
    "FormatDecodeError",
    "GridstreamError",
    "MemoryBlobCache",
    "MissingSource",
    "Provenance",
    "ResultCache",
    "UnsupportedInput",
    "generate_key",
    "open_cache",
    "process_in_chunks",
]
