# Gridstream - Configuration
# SPDX-License-Identifier: Apache-2.0

"""
Defaults for chunked decoding and blob storage.

Environment Variables:
- GRIDSTREAM_CACHE_DIR: Root directory of the file-backed blob cache
- GRIDSTREAM_MAX_ENTRY_MB: Per-entry size above which blobs are stored chunked (default: 100)
- GRIDSTREAM_STORAGE_CHUNK_MB: Size of each stored chunk record (default: 100)
- GRIDSTREAM_COMPRESSION_LEVEL: Zstandard level for cached results (default: 9)
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import os
import tempfile

MIB = 1024 * 1024

# Decode windows
NETCDF_CHUNK_SIZE = 5 * MIB
GRIB2_CHUNK_SIZE = 10 * MIB
NETCDF_HEADER_WINDOW = 1 * MIB

# Read-ahead past each chunk end so records straddling a boundary can be
# completed. 0 keeps every chunk strictly independent.
DEFAULT_OVERLAP = 1 * MIB

# Storage limits
MAX_ENTRY_SIZE = 100 * MIB
STORAGE_CHUNK_SIZE = 100 * MIB

# Zstandard levels (1-22)
COMPRESSION_LEVEL_FAST = 3
COMPRESSION_LEVEL_DEFAULT = 9
COMPRESSION_LEVEL_MAX = 19


def _env_mb(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    value = int(float(raw) * MIB)
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw}")
    return value


@dataclass
class CacheSettings:
    """Settings for the persistent blob cache and the result cache on top of it."""

    cache_dir: Path
    max_entry_size: int = MAX_ENTRY_SIZE
    storage_chunk_size: int = STORAGE_CHUNK_SIZE
    compression_level: int = COMPRESSION_LEVEL_DEFAULT

    def __post_init__(self):
        self.cache_dir = Path(self.cache_dir)
        if self.max_entry_size <= 0:
            raise ValueError(f"max_entry_size must be positive, got {self.max_entry_size}")
        if self.storage_chunk_size <= 0:
            raise ValueError(f"storage_chunk_size must be positive, got {self.storage_chunk_size}")
        if not 1 <= self.compression_level <= 22:
            raise ValueError(f"Invalid zstd level: {self.compression_level}")

    @classmethod
    def from_env(cls, cache_dir: Optional[Path] = None) -> "CacheSettings":
        """
        Build settings from GRIDSTREAM_* environment variables.

        Args:
            cache_dir: Explicit cache directory, overrides GRIDSTREAM_CACHE_DIR

        Returns:
            CacheSettings with defaults for anything not set
        """
        if cache_dir is None:
            env_dir = os.environ.get("GRIDSTREAM_CACHE_DIR")
            cache_dir = Path(env_dir) if env_dir else Path(tempfile.gettempdir()) / "gridstream_cache"

        return cls(
            cache_dir=cache_dir,
            max_entry_size=_env_mb("GRIDSTREAM_MAX_ENTRY_MB", MAX_ENTRY_SIZE),
            storage_chunk_size=_env_mb("GRIDSTREAM_STORAGE_CHUNK_MB", STORAGE_CHUNK_SIZE),
            compression_level=int(
                os.environ.get("GRIDSTREAM_COMPRESSION_LEVEL", COMPRESSION_LEVEL_DEFAULT)
            ),
        )
