# Gridstream - Decode Result Cache
# SPDX-License-Identifier: Apache-2.0

"""
Cache of decoded results keyed by request fingerprint.

Results are stored as zstd-compressed JSON in a BlobCache. The cache is
strictly best-effort:
- a failed read is a miss (fail-open)
- a failed write is logged and reported as False, never raised

It only answers get/put; running the decode on a miss is the caller's job.
"""

from typing import Optional
import json
import logging

import zstandard as zstd

from gridstream.blobcache import BlobCache
from gridstream.config import COMPRESSION_LEVEL_DEFAULT
from gridstream.errors import CacheIOError

logger = logging.getLogger(__name__)

PROCESSED_FORMAT_PREFIX = "processed-"


def serialize_result(result: dict, level: int = COMPRESSION_LEVEL_DEFAULT) -> bytes:
    """Canonical JSON, compressed. Raises ValueError/TypeError for non-JSON values."""
    raw = json.dumps(result, allow_nan=False, separators=(",", ":")).encode("utf-8")
    return zstd.ZstdCompressor(level=level).compress(raw)


def deserialize_result(payload: bytes) -> dict:
    raw = zstd.ZstdDecompressor().decompress(payload)
    result = json.loads(raw.decode("utf-8"))
    if not isinstance(result, dict):
        raise ValueError(f"Cached result is {type(result).__name__}, expected object")
    return result


class ResultCache:
    """
    Decoded results stored over a BlobCache.

    Args:
        blobs: Underlying blob cache (shared with raw file storage)
        compression_level: Zstandard level for stored results
    """

    def __init__(self, blobs: BlobCache, compression_level: int = COMPRESSION_LEVEL_DEFAULT):
        self.blobs = blobs
        self.compression_level = compression_level

    async def get(self, fingerprint: str) -> Optional[dict]:
        """Return the cached result, or None on a miss or any read failure"""
        try:
            record = await self.blobs.get(fingerprint)
            if record is None:
                return None
            try:
                return deserialize_result(record.data)
            except (zstd.ZstdError, ValueError) as e:
                raise CacheIOError("decode", fingerprint, e) from e
        except Exception as e:
            logger.warning(f"Cache read failed for {fingerprint}: {e}")
            return None

    async def put(
        self,
        fingerprint: str,
        result: dict,
        *,
        source: str = "unknown",
        dataset: str = "unknown",
        format: str = "unknown",
        variables: Optional[list[str]] = None,
        bbox: Optional[list[float]] = None,
        time_range: Optional[dict] = None,
    ) -> bool:
        """
        Store a result. Returns False (after logging) if it could not be stored.
        """
        try:
            try:
                payload = serialize_result(result, self.compression_level)
            except (TypeError, ValueError) as e:
                raise CacheIOError("serialize", fingerprint, e) from e

            await self.blobs.put(fingerprint, payload, {
                "source": source,
                "dataset": dataset,
                "format": f"{PROCESSED_FORMAT_PREFIX}{format}",
                "processed": True,
                "variables": ",".join(variables or []),
                "bbox": bbox,
                "time_range": time_range,
            })
        except Exception as e:
            logger.warning(f"Failed to cache processed results for {fingerprint}: {e}")
            return False

        logger.info(f"Cached processed {format} data: {fingerprint}")
        return True

    async def delete(self, fingerprint: str) -> bool:
        return await self.blobs.delete(fingerprint)

    async def fingerprints(self) -> list[str]:
        """Keys of every stored result"""
        return [
            entry.key for entry in await self.blobs.list_entries()
            if (entry.format or "").startswith(PROCESSED_FORMAT_PREFIX)
        ]

    async def clear(self) -> int:
        """Remove every stored result, leaving raw blobs alone. Returns the count."""
        removed = 0
        for fingerprint in await self.fingerprints():
            if await self.blobs.delete(fingerprint):
                removed += 1
        logger.info(f"Cleared {removed} cached results")
        return removed
