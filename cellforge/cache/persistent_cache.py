"""
Persistent Prompt Cache
=======================

Durable tier of the generation cache. Entries live in an in-memory index and
are written to a single JSON Lines file, one record per line::

    {"key": "...", "value": "...", "createdAt": 1700000000.0, "ttl": 604800}

Bytes values (generated images) are stored base64-encoded with
``"encoding": "base64"``.

Durability:
- Writes are debounced. The file is rewritten after every ``flush_every``
  writes and on explicit ``flush()``/``close()``, so an unclean crash loses at
  most ``flush_every - 1`` entries.
- A rewrite goes to a temp file that atomically replaces the cache file.
- Flushes are serialized; only one writer touches the file at a time.
- Loading is tolerant per record: a malformed line is skipped and counted,
  the rest of the file still loads.

Two processes pointed at the same file are not coordinated: the last flush
wins.
"""

import base64
import json
import logging
import os
import tempfile
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any

from cellforge.cache.base import CacheEntry, CacheLookup, CacheStats, CacheValue, Clock
from cellforge.core.exceptions import CacheCorruptionError, PersistenceError

logger = logging.getLogger(__name__)


def _encode_record(entry: CacheEntry) -> str:
    record: dict[str, Any] = {
        "key": entry.key,
        "createdAt": entry.created_at,
        "ttl": entry.ttl,
    }
    if isinstance(entry.value, bytes):
        record["value"] = base64.b64encode(entry.value).decode("ascii")
        record["encoding"] = "base64"
    else:
        record["value"] = entry.value
    return json.dumps(record, ensure_ascii=False)


def _decode_record(line: str) -> CacheEntry:
    record = json.loads(line)
    if not isinstance(record, dict):
        raise ValueError("record is not an object")

    key = record["key"]
    value = record["value"]
    if not isinstance(key, str) or not isinstance(value, str):
        raise ValueError("key and value must be strings")
    if record.get("encoding") == "base64":
        value = base64.b64decode(value, validate=True)

    return CacheEntry(
        key=key,
        value=value,
        created_at=float(record["createdAt"]),
        ttl=float(record["ttl"]),
    )


class PersistentCache:
    """File-backed cache tier with TTL, LRU eviction and debounced flushes."""

    def __init__(
        self,
        path: str | Path,
        max_entries: int = 50_000,
        default_ttl: float = 7 * 24 * 3600,
        flush_every: int = 100,
        clock: Clock = time.time,
        load: bool = True,
    ):
        if flush_every < 1:
            raise ValueError("flush_every must be at least 1")
        self.path = Path(path)
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.flush_every = flush_every
        self.clock = clock

        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self._pending_writes = 0
        self._dirty = False

        self.stats = CacheStats()
        self.corrupted_records = 0
        self.flush_count = 0

        if load:
            self.load()

    # =========================================================================
    # LOADING
    # =========================================================================

    def load(self) -> int:
        """
        (Re)load the index from disk. Returns the number of live records
        loaded. Corrupt or expired records are skipped individually.
        """
        if not self.path.exists():
            logger.info(f"[PersistentCache] No cache file at {self.path}, starting empty")
            return 0

        loaded: OrderedDict[str, CacheEntry] = OrderedDict()
        corrupted = 0
        expired = 0
        now = self.clock()

        with open(self.path, "rb") as f:
            for line_no, raw in enumerate(f, start=1):
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    entry = _decode_record(raw.decode("utf-8"))
                except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
                    corrupted += 1
                    err = CacheCorruptionError(
                        f"Skipping malformed cache record in {self.path.name}",
                        original_error=e,
                        line=line_no,
                    )
                    logger.warning(f"[PersistentCache] {err.detail} (line {line_no}): {e}")
                    continue
                if entry.is_expired(now):
                    expired += 1
                    continue
                loaded.pop(entry.key, None)
                loaded[entry.key] = entry

        while len(loaded) > self.max_entries:
            loaded.popitem(last=False)

        with self._lock:
            self._entries = loaded
            self.corrupted_records += corrupted
            # Rewrite on next flush so dropped records leave the file
            self._dirty = corrupted > 0 or expired > 0

        logger.info(
            f"[PersistentCache] Loaded {len(loaded)} entries from {self.path} "
            f"({corrupted} corrupt, {expired} expired skipped). "
            f"Up to {self.flush_every - 1} unflushed writes can be lost on crash"
        )
        return len(loaded)

    # =========================================================================
    # READ / WRITE
    # =========================================================================

    def get(self, key: str) -> CacheLookup:
        entry = self.get_entry(key)
        if entry is None:
            return CacheLookup(None, False)
        return CacheLookup(entry.value, True)

    def get_entry(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats.misses += 1
                return None
            if entry.is_expired(self.clock()):
                del self._entries[key]
                self._dirty = True
                self.stats.expirations += 1
                self.stats.misses += 1
                return None
            self._entries.move_to_end(key)
            self.stats.hits += 1
            return entry

    def set(self, key: str, value: CacheValue, ttl: float | None = None) -> bool:
        """
        Store ``value`` in the index. Returns True when enough writes have
        accumulated that the caller should flush.
        """
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=self.clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = entry
            self.stats.sets += 1
            self._pending_writes += 1
            self._dirty = True
            self._evict_if_needed()
            return self._pending_writes >= self.flush_every

    def _evict_if_needed(self) -> None:
        if len(self._entries) <= self.max_entries:
            return
        # Evict a tenth at once so a full cache does not pay per write
        to_remove = max(1, self.max_entries // 10)
        for _ in range(min(to_remove, len(self._entries))):
            self._entries.popitem(last=False)
            self.stats.evictions += 1
        logger.info(f"[PersistentCache] Evicted {to_remove} least recently used entries")

    def has(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self.clock())

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            if removed:
                self._dirty = True
            return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._dirty = True

    def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            if expired:
                self._dirty = True
            self.stats.expirations += len(expired)
        return len(expired)

    # =========================================================================
    # FLUSH
    # =========================================================================

    @property
    def pending_writes(self) -> int:
        return self._pending_writes

    @property
    def dirty(self) -> bool:
        return self._dirty

    def flush(self) -> bool:
        """
        Write the index to disk if anything changed. Blocking; async callers
        run it in a worker thread. Returns True if the file was rewritten.
        """
        with self._flush_lock:
            with self._lock:
                if not self._dirty:
                    return False
                snapshot = list(self._entries.values())
                pending = self._pending_writes
                self._pending_writes = 0
                self._dirty = False

            try:
                self._write_snapshot(snapshot)
            except OSError as e:
                with self._lock:
                    self._pending_writes += pending
                    self._dirty = True
                raise PersistenceError(
                    f"Failed to write cache file {self.path}", original_error=e
                ) from e

            self.flush_count += 1
            logger.debug(f"[PersistentCache] Flushed {len(snapshot)} entries to {self.path}")
            return True

    def _write_snapshot(self, entries: list[CacheEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for entry in entries:
                    f.write(_encode_record(entry))
                    f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def close(self) -> None:
        self.flush()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def get_stats(self) -> dict[str, Any]:
        stats = self.stats.to_dict()
        stats.update(
            {
                "size": self.size(),
                "max_entries": self.max_entries,
                "pending_writes": self._pending_writes,
                "corrupted_records": self.corrupted_records,
                "flushes": self.flush_count,
                "path": str(self.path),
            }
        )
        return stats
