# Gridstream - Raw Blob Cache
# SPDX-License-Identifier: Apache-2.0

"""
Persistent key/value storage for binary payloads.

Every backend enforces a per-entry size threshold. Payloads above it are
fanned out into numbered chunk records plus a manifest:

    <key>-chunk-0, <key>-chunk-1, ...   raw slices in order
    <key>-manifest                      ChunkManifest as JSON

A chunked download with a known size writes its manifest first, marked
partial, so an interrupted download can be resumed chunk by chunk.

Reads reassemble the chunks in manifest order. The fan-out is invisible to
callers: get/put/delete/keys only ever deal in logical keys.

Backends implement five primitives (_read, _write, _remove, _scan, _wipe);
everything else lives in BlobCache.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterable, Awaitable, Callable, Iterable, Optional, Union
import asyncio
import hashlib
import inspect
import json
import logging
import math
import os
import re
import tempfile

from gridstream.config import MAX_ENTRY_SIZE, MIB, STORAGE_CHUNK_SIZE, CacheSettings
from gridstream.errors import ChunkMissingError

logger = logging.getLogger(__name__)

BufferLike = Union[bytes, bytearray, memoryview]

# fetch(start, end) -> bytes of [start, end)
RangeFetcher = Callable[[int, int], Union[bytes, Awaitable[bytes]]]

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_\-\.]")

# Record kinds, stored under the private "_kind" metadata field
KIND_BLOB = "blob"
KIND_CHUNK = "chunk"
KIND_MANIFEST = "manifest"


def _public(meta: dict) -> dict:
    """Strip private bookkeeping fields from stored metadata"""
    return {k: v for k, v in meta.items() if not k.startswith("_")}


@dataclass(frozen=True)
class BlobRecord:
    """A stored payload and its descriptive metadata"""

    key: str
    data: bytes
    metadata: dict = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ChunkManifest:
    """
    How one oversized blob was split for storage.

    Chunk i covers bytes [i * chunk_size, min((i + 1) * chunk_size, total_size)).
    """

    file_key: str
    chunk_size: int
    total_chunks: int
    total_size: int
    chunk_keys: tuple[str, ...]

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        expected = math.ceil(self.total_size / self.chunk_size)
        if self.total_chunks != expected:
            raise ValueError(
                f"Manifest for {self.file_key}: total_chunks={self.total_chunks}, "
                f"expected {expected} for {self.total_size} bytes"
            )
        if len(self.chunk_keys) != self.total_chunks:
            raise ValueError(
                f"Manifest for {self.file_key} lists {len(self.chunk_keys)} chunk keys "
                f"for {self.total_chunks} chunks"
            )

    def chunk_range(self, index: int) -> tuple[int, int]:
        """Byte range [start, end) of chunk ``index``"""
        start = index * self.chunk_size
        return start, min(start + self.chunk_size, self.total_size)

    def to_dict(self) -> dict:
        return {
            "file_key": self.file_key,
            "chunk_size": self.chunk_size,
            "total_chunks": self.total_chunks,
            "total_size": self.total_size,
            "chunk_keys": list(self.chunk_keys),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChunkManifest":
        return cls(
            file_key=data["file_key"],
            chunk_size=int(data["chunk_size"]),
            total_chunks=int(data["total_chunks"]),
            total_size=int(data["total_size"]),
            chunk_keys=tuple(data["chunk_keys"]),
        )


@dataclass(frozen=True)
class PartialDownload:
    """An interrupted chunked download: its planned manifest and the chunks already stored"""

    manifest: ChunkManifest
    present: tuple[int, ...]
    metadata: dict = field(default_factory=dict)

    @property
    def missing(self) -> list[int]:
        return [i for i in range(self.manifest.total_chunks) if i not in self.present]


@dataclass(frozen=True)
class EntrySummary:
    key: str
    source: Optional[str]
    dataset: Optional[str]
    format: Optional[str]
    size: int
    created_at: Optional[str]
    chunked: bool


@dataclass
class CacheStats:
    total_entries: int
    total_size: int
    entries: list[EntrySummary] = field(default_factory=list)

    @property
    def total_size_mb(self) -> float:
        return self.total_size / MIB


class BlobCache(ABC):
    """
    Async blob cache contract.

    Subclasses provide raw record storage; this class layers the logical
    entry model (metadata, chunk fan-out, reassembly) on top.
    """

    def __init__(
        self,
        max_entry_size: int = MAX_ENTRY_SIZE,
        storage_chunk_size: int = STORAGE_CHUNK_SIZE,
    ):
        if max_entry_size <= 0:
            raise ValueError(f"max_entry_size must be positive, got {max_entry_size}")
        if not 0 < storage_chunk_size <= max_entry_size:
            raise ValueError(
                f"storage_chunk_size must be in (0, {max_entry_size}], got {storage_chunk_size}"
            )
        self.max_entry_size = max_entry_size
        self.storage_chunk_size = storage_chunk_size
        self._closed = False

    # -- raw record primitives ------------------------------------------------

    @abstractmethod
    async def _read(self, key: str) -> Optional[tuple[bytes, dict]]:
        """Return (payload, metadata) for a raw record, or None"""

    @abstractmethod
    async def _write(self, key: str, data: bytes, meta: dict) -> None:
        """Store a raw record, replacing any previous one"""

    @abstractmethod
    async def _remove(self, key: str) -> bool:
        """Remove a raw record. Return True when something was removed"""

    @abstractmethod
    async def _scan(self) -> list[tuple[str, dict]]:
        """List (key, metadata) of every raw record"""

    @abstractmethod
    async def _wipe(self) -> None:
        """Remove every raw record"""

    # -- lifecycle --------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self):
        if self._closed:
            raise RuntimeError(f"{type(self).__name__} is closed")

    async def close(self) -> None:
        self._closed = True

    async def __aenter__(self) -> "BlobCache":
        self._check_open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -- key generation ---------------------------------------------------------

    def generate_cache_key(self, identifier: str, metadata: Optional[dict] = None) -> str:
        """
        Deterministic, filename-safe key for an identifier.

        The same identifier with the same source/dataset always maps to the
        same slot. A short md5 of the full identifier keeps URLs that differ
        only in path or query apart.

        Args:
            identifier: URL or other logical name of the payload
            metadata: Mapping with optional "source" and "dataset"

        Returns:
            Key like ``mrms_precip_file.grib2_1a2b3c4d5e6f``
        """
        metadata = metadata or {}
        source = _UNSAFE_KEY_CHARS.sub("", str(metadata.get("source") or "unknown"))
        dataset = _UNSAFE_KEY_CHARS.sub("", str(metadata.get("dataset") or "data"))

        name = identifier.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
        slug = _UNSAFE_KEY_CHARS.sub("", name)[:64] or "blob"
        digest = hashlib.md5(identifier.encode("utf-8")).hexdigest()[:12]

        return "_".join([source or "unknown", dataset or "data", slug, digest])

    @staticmethod
    def generate_chunk_key(base_key: str, chunk_index: int) -> str:
        return f"{base_key}-chunk-{chunk_index}"

    @staticmethod
    def manifest_key(base_key: str) -> str:
        return f"{base_key}-manifest"

    # -- logical entries --------------------------------------------------------

    def _entry_metadata(self, metadata: Optional[dict], size: int) -> dict:
        meta = dict(metadata or {})
        meta.setdefault("source", "unknown")
        meta.setdefault("dataset", "unknown")
        meta.setdefault("format", "binary")
        meta["size"] = size
        meta["created_at"] = datetime.now(timezone.utc).isoformat()
        return meta

    async def get(self, key: str) -> Optional[BlobRecord]:
        """
        Fetch a logical entry, reassembling chunked storage if needed.

        Returns None when the key is absent. Raises ChunkMissingError when a
        chunked entry is incomplete.
        """
        self._check_open()
        stored = await self._read(key)
        if stored is not None:
            data, meta = stored
            if meta.get("_kind", KIND_BLOB) != KIND_BLOB:
                return None
            return BlobRecord(key=key, data=data, metadata=_public(meta))

        return await self.reassemble_chunks(key)

    async def put(self, key: str, data: BufferLike, metadata: Optional[dict] = None) -> str:
        """
        Store a payload under key, fully replacing any previous entry.

        Payloads larger than max_entry_size are stored chunked.
        """
        self._check_open()
        if len(data) > self.max_entry_size:
            await self.put_chunked(key, data, metadata)
            return key

        payload = bytes(data)
        await self._discard(key)

        meta = self._entry_metadata(metadata, len(payload))
        meta["_kind"] = KIND_BLOB
        await self._write(key, payload, meta)

        logger.info(f"Cached: {key} ({len(payload) / MIB:.1f}MB)")
        return key

    async def put_chunked(
        self,
        key: str,
        data: BufferLike,
        metadata: Optional[dict] = None,
        chunk_size: Optional[int] = None,
    ) -> ChunkManifest:
        """
        Store a payload as numbered chunk records plus a manifest.

        Args:
            key: Logical key
            data: Full payload
            metadata: Descriptive metadata for the logical entry
            chunk_size: Bytes per chunk record (default: storage_chunk_size)

        Returns:
            The written ChunkManifest
        """
        self._check_open()
        chunk_size = self._chunk_size(chunk_size)
        view = memoryview(data).cast("B")
        total_chunks = math.ceil(len(view) / chunk_size)

        logger.info(f"Storing large file as {total_chunks} chunks: {key}")
        await self._discard(key)

        chunk_keys = []
        for i in range(total_chunks):
            start = i * chunk_size
            end = min(start + chunk_size, len(view))
            chunk_keys.append(await self._write_chunk(key, i, start, bytes(view[start:end])))

        manifest = ChunkManifest(
            file_key=key,
            chunk_size=chunk_size,
            total_chunks=total_chunks,
            total_size=len(view),
            chunk_keys=tuple(chunk_keys),
        )
        await self._write_manifest(manifest, metadata)
        return manifest

    async def download_chunked(
        self,
        key: str,
        source: Union[Iterable[bytes], AsyncIterable[bytes], RangeFetcher],
        metadata: Optional[dict] = None,
        chunk_size: Optional[int] = None,
        total_size: Optional[int] = None,
        resume: bool = False,
    ) -> ChunkManifest:
        """
        Store a downloaded payload chunk by chunk as it arrives.

        ``source`` is either a stream of parts (any sizes, re-sliced into
        exact chunk_size records so at most one chunk is buffered) or a
        range fetcher ``fetch(start, end) -> bytes`` called once per chunk.

        With total_size known the manifest is written first and marked
        partial until every chunk is stored, so an interrupted download can
        be resumed. A partial entry is never readable through get().

        Args:
            key: Logical key
            source: Part stream or range fetcher
            metadata: Descriptive metadata for the logical entry
            chunk_size: Bytes per chunk record (default: storage_chunk_size)
            total_size: Payload size; required for a range fetcher
            resume: Keep chunks already stored by an interrupted download of key

        Raises:
            ValueError: The stream ended short of total_size, or a fetched
                range has the wrong length. Stored chunks are kept for resume.
        """
        self._check_open()
        chunk_size = self._chunk_size(chunk_size)
        by_range = callable(source)
        if by_range and total_size is None:
            raise ValueError("total_size is required when downloading by range")

        partial = await self.check_partial_download(key) if resume else None
        if partial is not None and total_size is not None and partial.manifest.total_size != total_size:
            logger.warning(
                f"Partial download of {key} has {partial.manifest.total_size} bytes, "
                f"expected {total_size}; starting over"
            )
            partial = None

        present: set[int] = set()
        manifest = None
        if partial is not None:
            manifest = partial.manifest
            chunk_size = manifest.chunk_size
            present = set(partial.present)
            metadata = metadata if metadata is not None else partial.metadata
            logger.info(
                f"Resuming download: {len(present)}/{manifest.total_chunks} chunks already stored: {key}"
            )
        else:
            await self._discard(key)
            if total_size is not None:
                manifest = self._plan_manifest(key, total_size, chunk_size)
                await self._write_manifest(manifest, metadata, complete=False)

        if by_range:
            for i in range(manifest.total_chunks):
                if i in present:
                    continue
                start, end = manifest.chunk_range(i)
                block = source(start, end)
                if inspect.isawaitable(block):
                    block = await block
                block = bytes(block)
                if len(block) != end - start:
                    raise ValueError(
                        f"Range {start}-{end} of {key} returned {len(block)} bytes, expected {end - start}"
                    )
                await self._write_chunk(key, i, start, block)
        else:
            pending = bytearray()
            chunk_keys = []
            received = 0

            async def flush(block: bytes):
                index = len(chunk_keys)
                if index in present:
                    chunk_keys.append(self.generate_chunk_key(key, index))
                else:
                    chunk_keys.append(await self._write_chunk(key, index, index * chunk_size, block))

            async for part in _iterate_parts(source):
                pending.extend(part)
                received += len(part)
                while len(pending) >= chunk_size:
                    await flush(bytes(pending[:chunk_size]))
                    del pending[:chunk_size]

            # a short tail is only the last chunk when the stream is complete
            if pending and (manifest is None or received == manifest.total_size):
                await flush(bytes(pending))

            if manifest is None:
                manifest = self._plan_manifest(key, received, chunk_size)
            elif received != manifest.total_size:
                raise ValueError(
                    f"Stream for {key} ended after {received} of {manifest.total_size} bytes; "
                    f"{len(chunk_keys)} chunks kept for resume"
                )

        await self._write_manifest(manifest, metadata)
        logger.info(
            f"Downloaded {manifest.total_size / MIB:.1f}MB into {manifest.total_chunks} chunks: {key}"
        )
        return manifest

    async def check_partial_download(self, key: str) -> Optional[PartialDownload]:
        """
        Describe an interrupted chunked download of key.

        Returns None when key has no partial manifest. A chunk counts as
        present only when its record has the expected size.
        """
        self._check_open()
        manifest, meta = await self._load_manifest(key, include_partial=True)
        if manifest is None or meta.get("_complete", True):
            return None

        present = []
        for i, chunk_key in enumerate(manifest.chunk_keys):
            stored = await self._read(chunk_key)
            start, end = manifest.chunk_range(i)
            if stored is not None and len(stored[0]) == end - start:
                present.append(i)

        logger.info(f"Found partial download: {len(present)}/{manifest.total_chunks} chunks: {key}")
        return PartialDownload(manifest=manifest, present=tuple(present), metadata=_public(meta))

    async def reassemble_chunks(self, key: str) -> Optional[BlobRecord]:
        """
        Rebuild a chunked entry by concatenating chunks in manifest order.

        Returns None when key has no manifest. Raises ChunkMissingError when
        a referenced chunk is absent or has the wrong size.
        """
        self._check_open()
        manifest, meta = await self._load_manifest(key)
        if manifest is None:
            return None

        buffer = bytearray(manifest.total_size)
        for i, chunk_key in enumerate(manifest.chunk_keys):
            stored = await self._read(chunk_key)
            if stored is None:
                raise ChunkMissingError(key, chunk_key)

            start, end = manifest.chunk_range(i)
            data = stored[0]
            if len(data) != end - start:
                raise ChunkMissingError(
                    key, chunk_key, reason=f"has {len(data)} bytes, expected {end - start}"
                )
            buffer[start:end] = data

        metadata = _public(meta)
        metadata.update({"reassembled": True, "chunk_count": manifest.total_chunks})
        return BlobRecord(key=key, data=bytes(buffer), metadata=metadata)

    async def get_manifest(self, key: str) -> Optional[ChunkManifest]:
        self._check_open()
        manifest, _ = await self._load_manifest(key)
        return manifest

    async def delete(self, key: str) -> bool:
        """Delete a logical entry and any chunk fan-out. True if anything was removed."""
        self._check_open()
        removed = await self._discard(key)
        if removed:
            logger.info(f"Deleted: {key}")
        return removed

    async def clear(self) -> None:
        self._check_open()
        await self._wipe()
        logger.info("Cleared all cached data")

    async def keys(self) -> list[str]:
        """Logical keys in sorted order; chunk records are not listed"""
        self._check_open()
        return sorted(summary.key for summary in await self._summaries())

    async def list_entries(
        self,
        source: Optional[str] = None,
        format: Optional[str] = None,
    ) -> list[EntrySummary]:
        """List logical entries, optionally filtered by source and format"""
        self._check_open()
        entries = await self._summaries()
        if source is not None:
            entries = [e for e in entries if e.source == source]
        if format is not None:
            entries = [e for e in entries if e.format == format]
        return sorted(entries, key=lambda e: e.key)

    async def stats(self) -> CacheStats:
        self._check_open()
        entries = sorted(await self._summaries(), key=lambda e: e.key)
        return CacheStats(
            total_entries=len(entries),
            total_size=sum(e.size for e in entries),
            entries=entries,
        )

    # -- internals --------------------------------------------------------------

    def _chunk_size(self, chunk_size: Optional[int]) -> int:
        chunk_size = chunk_size or self.storage_chunk_size
        if not 0 < chunk_size <= self.max_entry_size:
            raise ValueError(
                f"chunk_size must be in (0, {self.max_entry_size}], got {chunk_size}"
            )
        return chunk_size

    async def _write_chunk(self, key: str, index: int, start: int, block: bytes) -> str:
        chunk_key = self.generate_chunk_key(key, index)
        await self._write(chunk_key, block, {
            "_kind": KIND_CHUNK,
            "_base_key": key,
            "_chunk_index": index,
            "_chunk_start": start,
            "_chunk_end": start + len(block),
        })
        return chunk_key

    def _plan_manifest(self, key: str, total_size: int, chunk_size: int) -> ChunkManifest:
        total_chunks = math.ceil(total_size / chunk_size)
        return ChunkManifest(
            file_key=key,
            chunk_size=chunk_size,
            total_chunks=total_chunks,
            total_size=total_size,
            chunk_keys=tuple(self.generate_chunk_key(key, i) for i in range(total_chunks)),
        )

    async def _write_manifest(
        self,
        manifest: ChunkManifest,
        metadata: Optional[dict],
        complete: bool = True,
    ) -> None:
        meta = self._entry_metadata(metadata, manifest.total_size)
        meta.update({"_kind": KIND_MANIFEST, "_base_key": manifest.file_key, "_complete": complete})
        body = json.dumps(manifest.to_dict()).encode("utf-8")
        await self._write(self.manifest_key(manifest.file_key), body, meta)

    async def _load_manifest(
        self, key: str, include_partial: bool = False
    ) -> tuple[Optional[ChunkManifest], dict]:
        stored = await self._read(self.manifest_key(key))
        if stored is None:
            return None, {}
        body, meta = stored
        if meta.get("_kind") != KIND_MANIFEST:
            return None, {}
        if not include_partial and not meta.get("_complete", True):
            return None, {}
        return ChunkManifest.from_dict(json.loads(body.decode("utf-8"))), meta

    async def _discard(self, key: str) -> bool:
        """Remove the plain record, the manifest and every chunk of key"""
        removed = False
        stored = await self._read(self.manifest_key(key))
        if stored is not None and stored[1].get("_kind") == KIND_MANIFEST:
            try:
                manifest = ChunkManifest.from_dict(json.loads(stored[0].decode("utf-8")))
                chunk_keys = manifest.chunk_keys
            except (ValueError, KeyError) as e:
                logger.warning(f"Unreadable manifest for {key}, removing chunks by scan: {e}")
                chunk_keys = [
                    k for k, meta in await self._scan()
                    if meta.get("_kind") == KIND_CHUNK and meta.get("_base_key") == key
                ]
            for chunk_key in chunk_keys:
                await self._remove(chunk_key)
            removed = await self._remove(self.manifest_key(key))

        existing = await self._read(key)
        if existing is not None and existing[1].get("_kind", KIND_BLOB) == KIND_BLOB:
            removed = await self._remove(key) or removed
        return removed

    async def _summaries(self) -> list[EntrySummary]:
        summaries = []
        for raw_key, meta in await self._scan():
            kind = meta.get("_kind", KIND_BLOB)
            if kind == KIND_CHUNK or not meta.get("_complete", True):
                continue
            key = meta.get("_base_key", raw_key) if kind == KIND_MANIFEST else raw_key
            summaries.append(EntrySummary(
                key=key,
                source=meta.get("source"),
                dataset=meta.get("dataset"),
                format=meta.get("format"),
                size=int(meta.get("size", 0)),
                created_at=meta.get("created_at"),
                chunked=kind == KIND_MANIFEST,
            ))
        return summaries


async def _iterate_parts(parts: Union[Iterable[bytes], AsyncIterable[bytes]]):
    if hasattr(parts, "__aiter__"):
        async for part in parts:
            yield part
    else:
        for part in parts:
            yield part


class MemoryBlobCache(BlobCache):
    """Dict-backed cache; contents live as long as the instance"""

    def __init__(
        self,
        max_entry_size: int = MAX_ENTRY_SIZE,
        storage_chunk_size: Optional[int] = None,
    ):
        super().__init__(
            max_entry_size=max_entry_size,
            storage_chunk_size=storage_chunk_size or min(STORAGE_CHUNK_SIZE, max_entry_size),
        )
        self._records: dict[str, tuple[bytes, dict]] = {}

    async def _read(self, key: str) -> Optional[tuple[bytes, dict]]:
        stored = self._records.get(key)
        if stored is None:
            return None
        data, meta = stored
        return data, dict(meta)

    async def _write(self, key: str, data: bytes, meta: dict) -> None:
        self._records[key] = (data, dict(meta))

    async def _remove(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    async def _scan(self) -> list[tuple[str, dict]]:
        return [(key, dict(meta)) for key, (_, meta) in self._records.items()]

    async def _wipe(self) -> None:
        self._records.clear()


_PAYLOAD_SUFFIX = ".blob"
_META_SUFFIX = ".meta.json"


class FileBlobCache(BlobCache):
    """
    File-system cache.

    Each raw record is ``<digest>.blob`` plus a ``<digest>.meta.json``
    sidecar holding the original key and metadata, where digest is the
    sha256 of the key. Writes go through a temp file and os.replace so a
    crash never leaves a half-written payload. Blocking I/O runs in a worker
    thread.
    """

    def __init__(
        self,
        root: Union[str, Path],
        max_entry_size: int = MAX_ENTRY_SIZE,
        storage_chunk_size: Optional[int] = None,
    ):
        super().__init__(
            max_entry_size=max_entry_size,
            storage_chunk_size=storage_chunk_size or min(STORAGE_CHUNK_SIZE, max_entry_size),
        )
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _paths(self, key: str) -> tuple[Path, Path]:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:40]
        return self.root / f"{digest}{_PAYLOAD_SUFFIX}", self.root / f"{digest}{_META_SUFFIX}"

    def _atomic_write(self, path: Path, data: bytes):
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _read_sync(self, key: str) -> Optional[tuple[bytes, dict]]:
        payload_path, meta_path = self._paths(key)
        if not meta_path.exists() or not payload_path.exists():
            return None
        with open(meta_path) as f:
            sidecar = json.load(f)
        if sidecar.get("key") != key:
            return None
        return payload_path.read_bytes(), sidecar.get("metadata", {})

    def _write_sync(self, key: str, data: bytes, meta: dict):
        payload_path, meta_path = self._paths(key)
        sidecar = json.dumps({"key": key, "metadata": meta}, default=str).encode("utf-8")
        # Payload first: a sidecar is what makes a record visible
        self._atomic_write(payload_path, data)
        self._atomic_write(meta_path, sidecar)

    def _remove_sync(self, key: str) -> bool:
        payload_path, meta_path = self._paths(key)
        existed = meta_path.exists()
        meta_path.unlink(missing_ok=True)
        payload_path.unlink(missing_ok=True)
        return existed

    def _scan_sync(self) -> list[tuple[str, dict]]:
        records = []
        for meta_path in sorted(self.root.glob(f"*{_META_SUFFIX}")):
            try:
                with open(meta_path) as f:
                    sidecar = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable sidecar {meta_path.name}: {e}")
                continue
            records.append((sidecar["key"], sidecar.get("metadata", {})))
        return records

    def _wipe_sync(self):
        for path in self.root.iterdir():
            if path.is_file() and (
                path.name.endswith(_PAYLOAD_SUFFIX)
                or path.name.endswith(_META_SUFFIX)
                or path.name.startswith(".tmp-")
            ):
                path.unlink(missing_ok=True)

    async def _read(self, key: str) -> Optional[tuple[bytes, dict]]:
        return await asyncio.to_thread(self._read_sync, key)

    async def _write(self, key: str, data: bytes, meta: dict) -> None:
        await asyncio.to_thread(self._write_sync, key, data, meta)

    async def _remove(self, key: str) -> bool:
        return await asyncio.to_thread(self._remove_sync, key)

    async def _scan(self) -> list[tuple[str, dict]]:
        return await asyncio.to_thread(self._scan_sync)

    async def _wipe(self) -> None:
        await asyncio.to_thread(self._wipe_sync)


def open_cache(settings: Optional[CacheSettings] = None) -> FileBlobCache:
    """
    Construct the file-backed cache described by settings.

    Pair with ``await cache.close()`` (or use ``async with``).
    """
    settings = settings or CacheSettings.from_env()
    logger.info(f"Opening blob cache at {settings.cache_dir}")
    return FileBlobCache(
        settings.cache_dir,
        max_entry_size=settings.max_entry_size,
        storage_chunk_size=min(settings.storage_chunk_size, settings.max_entry_size),
    )
