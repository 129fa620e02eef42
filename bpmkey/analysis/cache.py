"""
JSON-backed cache of analysis results, keyed by file fingerprint.

On-disk format (stable across releases; unknown entry fields are kept):

    {
      "version": 1,
      "entries": {
        "<fingerprint-hex>": {
          "ok": true,
          "filePath": "/music/song.mp3",
          "bpm": 128,
          "key": "Am",
          "confidence": 0.82,
          "updatedAt": "2024-01-01T12:00:00+00:00",
          "tempoExitCode": 0,
          "pitchExitCode": 0
        }
      }
    }

The cache is a performance optimization, not a source of truth:
    - a missing or corrupt file loads as an empty cache
    - set() only marks the document dirty and schedules a debounced flush
    - flush() writes a temp file next to the cache and renames it over the
      real file, so readers only ever see a complete document

All mutation happens on the event loop thread; no locking is needed for
the in-memory document itself.
"""

import asyncio
import json
import math
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from bpmkey.core.exceptions import CacheError
from bpmkey.core.logger import get_logger

logger = get_logger(__name__)


CACHE_VERSION = 1
DEFAULT_FLUSH_DELAY = 0.75

# Entry keys owned by CacheEntry; anything else is carried in CacheEntry.extra
ENTRY_FIELDS = frozenset({
    "ok", "filePath", "bpm", "key", "confidence", "updatedAt",
    "tempoExitCode", "pitchExitCode", "error",
})


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CacheEntry:
    """
    Outcome of analyzing one fingerprint.

    Attributes:
        ok: True if analysis produced an accepted BPM and/or key.
        file_path: Absolute path at time of analysis (informational).
        bpm: Integer BPM within [30, 300], or None.
        key: Musical key label such as 'C#m', at most 32 characters, or None.
        confidence: Combined confidence within [0, 1].
        updated_at: ISO-8601 timestamp of the analysis.
        tempo_exit_code: Exit code of the tempo invocation (diagnostic).
        pitch_exit_code: Exit code of the pitch invocation (diagnostic).
        error: Reason for a negative entry (e.g. 'aubio_not_installed').
        extra: Stored fields this version does not know, written back as-is.
    """

    ok: bool
    file_path: str
    bpm: int | None = None
    key: str | None = None
    confidence: float = 0.0
    updated_at: str = ""
    tempo_exit_code: int | None = None
    pitch_exit_code: int | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def has_result(self) -> bool:
        """True for a successful entry that carries a BPM or a key."""
        return self.ok and (self.bpm is not None or self.key is not None)

    @property
    def is_terminal(self) -> bool:
        """
        True when the entry settles its fingerprint for good.

        Anything recorded after aubio actually ran counts, including failed
        and low-confidence results. Entries carrying an error (aubio was not
        installed) say nothing about the file and are retried.
        """
        return self.error is None

    def to_cache_dict(self) -> dict[str, Any]:
        """Convert to the camelCase shape stored in the cache file."""
        data: dict[str, Any] = {
            **self.extra,
            "ok": self.ok,
            "filePath": self.file_path,
            "bpm": self.bpm,
            "key": self.key,
            "confidence": self.confidence,
            "updatedAt": self.updated_at,
            "tempoExitCode": self.tempo_exit_code,
            "pitchExitCode": self.pitch_exit_code,
        }
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_cache_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        """
        Build an entry from a stored dict, defaulting missing fields.

        Values of the wrong type, as well as NaN and infinities, which
        json.load() accepts, are read as missing.
        """
        bpm = _finite_number(data.get("bpm"))
        confidence = _finite_number(data.get("confidence"))
        error = data.get("error")
        return cls(
            ok=bool(data.get("ok", False)),
            file_path=str(data.get("filePath") or ""),
            bpm=int(bpm) if bpm is not None else None,
            key=data.get("key") if isinstance(data.get("key"), str) else None,
            confidence=confidence if confidence is not None else 0.0,
            updated_at=str(data.get("updatedAt") or ""),
            tempo_exit_code=_exit_code(data.get("tempoExitCode")),
            pitch_exit_code=_exit_code(data.get("pitchExitCode")),
            error=error if isinstance(error, str) else None,
            extra={name: value for name, value in data.items() if name not in ENTRY_FIELDS},
        )


def _finite_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def _exit_code(value: Any) -> int | None:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def atomic_write_json(file_path: Path, data: Any) -> None:
    """
    Write JSON to `file_path` via a temp file and an atomic rename.

    The temp file lives in the same directory so os.replace() never crosses
    filesystems. On any failure the temp file is removed and the previous
    file is left as it was.
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f"{file_path.name}.", suffix=".tmp", dir=str(file_path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, file_path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class ResultCache:
    """
    Fingerprint → CacheEntry map persisted as a single JSON document.

    Example:
        cache = ResultCache(Path("~/.bpmkey/analysis-cache.json").expanduser())
        await cache.load()
        cache.set(fp, CacheEntry(ok=True, file_path=path, bpm=128))
        await cache.flush()
    """

    def __init__(self, file_path: Path, flush_delay: float = DEFAULT_FLUSH_DELAY) -> None:
        self.file_path = Path(file_path)
        self.flush_delay = flush_delay
        self._entries: dict[str, CacheEntry] = {}
        self._loaded = False
        self._dirty = False
        self._flush_handle: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task | None = None
        self._load_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def __len__(self) -> int:
        return len(self._entries)

    async def load(self) -> None:
        """
        Read the cache file once; later calls are no-ops.

        A missing, unreadable or corrupt file results in an empty cache.
        """
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            self._entries = await asyncio.to_thread(self._read_entries)
            self._loaded = True

    def _read_entries(self) -> dict[str, CacheEntry]:
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                parsed = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable analysis cache {self.file_path}: {e}")
            return {}

        raw_entries = parsed.get("entries") if isinstance(parsed, dict) else None
        if not isinstance(raw_entries, dict):
            logger.warning(f"Ignoring analysis cache with unexpected structure: {self.file_path}")
            return {}

        entries = {}
        for key, value in raw_entries.items():
            if isinstance(value, dict):
                entries[key] = CacheEntry.from_cache_dict(value)
        logger.debug(f"Loaded {len(entries)} analysis cache entries from {self.file_path}")
        return entries

    def get(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def set(self, key: str, entry: CacheEntry) -> None:
        """Store an entry (last write wins) and schedule a debounced flush."""
        self._entries[key] = entry
        self._dirty = True
        self._schedule_flush()

    def stats(self) -> dict[str, int]:
        ok = sum(1 for entry in self._entries.values() if entry.ok)
        return {"total": len(self._entries), "ok": ok, "failed": len(self._entries) - ok}

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: the owner is expected to call flush() explicitly
            return

        if self._flush_handle is not None:
            self._flush_handle.cancel()
        self._flush_handle = loop.call_later(self.flush_delay, self._start_debounced_flush)

    def _start_debounced_flush(self) -> None:
        self._flush_handle = None
        self._flush_task = asyncio.get_running_loop().create_task(self._debounced_flush())

    async def _debounced_flush(self) -> None:
        try:
            await self.flush()
        except CacheError as e:
            logger.warning(f"Deferred analysis cache flush failed: {e}")

    def _document(self) -> dict[str, Any]:
        return {
            "version": CACHE_VERSION,
            "entries": {key: entry.to_cache_dict() for key, entry in self._entries.items()},
        }

    async def flush(self) -> bool:
        """
        Write the cache to disk if it changed since the last write.

        Returns:
            True if a write happened, False if there was nothing to write.

        Raises:
            CacheError: If the file could not be written. The previous file
                        is intact and the cache stays dirty.
        """
        async with self._write_lock:
            if not self._dirty:
                return False

            document = self._document()
            self._dirty = False
            try:
                await asyncio.to_thread(atomic_write_json, self.file_path, document)
            except OSError as e:
                self._dirty = True
                raise CacheError(
                    f"Failed to write analysis cache: {e}",
                    details={"file_path": str(self.file_path), "original_error": str(e)}
                ) from e

        logger.debug(f"Analysis cache written: {self.file_path} ({len(self._entries)} entries)")
        return True

    async def close(self) -> None:
        """Cancel any pending debounced flush and write outstanding changes."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        await self.flush()
