"""
Background BPM/key analysis queue.

The library scan calls enqueue() for each candidate file and moves on; the
queue runs aubio on at most `concurrency` files at a time and records each
outcome in the ResultCache, the file's tags and (optionally) the song index.

Per-file workflow:
    1. enqueue(): extension allow-list, fast fingerprint, dedup, FIFO push
    2. Cache hit: negative results stop here, usable ones re-apply tags and
       re-sync the song index (entries for a missing aubio are retried)
    3. aubio missing: store a negative entry and stop
    4. `aubio tempo` then `aubio pitch`, each parsed only on exit code 0
    5. Combine, store in the cache and flush right away
    6. Accepted results: write tags, re-stat, store the entry under the
       post-write fingerprint, notify the song index

Nothing that happens to a single file is allowed to escape the task. No
retries are made: a failed or low-confidence result is stored and the file
is only analyzed again once its fingerprint (size/mtime) changes.

Usage:
    queue = AnalysisQueue.from_config(config.analysis)
    await queue.enqueue("/music/song.mp3", song_id="abc", storage=store)
    await queue.idle()
    await queue.cache.close()
"""

import asyncio
import inspect
import os
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from bpmkey.analysis.cache import CacheEntry, ResultCache, now_iso
from bpmkey.analysis.fingerprint import StatHint, fingerprint
from bpmkey.analysis.parsers import (
    MIN_ACCEPTED_CONFIDENCE,
    KeyEstimate,
    TempoEstimate,
    combine_estimates,
    parse_key,
    parse_tempo,
    should_log_stderr,
)
from bpmkey.analysis.runner import ToolResult, run_tool
from bpmkey.analysis.tags import read_tags, write_tags
from bpmkey.core.config import AnalysisConfig
from bpmkey.core.exceptions import CacheError, FingerprintError
from bpmkey.core.logger import get_logger, log_analysis_failure

logger = get_logger(__name__)


class SongStore(Protocol):
    """
    Song index that receives analysis results.

    update_song() may be a plain method or a coroutine function. `fields`
    is a subset of {"bpm", "key", "lastModified"}; lastModified is an
    ISO-8601 timestamp of the file's mtime after tags were written.
    """

    def update_song(self, song_id: str, fields: dict[str, Any]) -> Any:
        ...


@dataclass
class QueueTask:
    file_path: str
    fingerprint: str
    stat_hint: StatHint | None = None
    song_id: str | None = None
    storage: SongStore | None = None


@dataclass
class QueueStats:
    """
    Counters for one AnalysisQueue instance.

    Attributes:
        queued: Tasks accepted by enqueue().
        deduplicated: enqueue() calls dropped because the fingerprint was
                      already queued or processed.
        rejected: enqueue() calls for unsupported formats or files that
                  could not be fingerprinted.
        cache_hits: Tasks answered from the cache.
        analyzed: Tasks that ran aubio.
        accepted: Analyses that met the confidence threshold.
        failed: Analyses stored as negative results (including aubio missing).
        completed: Tasks finished, whatever the outcome.
    """
    queued: int = 0
    deduplicated: int = 0
    rejected: int = 0
    cache_hits: int = 0
    analyzed: int = 0
    accepted: int = 0
    failed: int = 0
    completed: int = 0


def _mtime_iso(st: os.stat_result) -> str:
    return datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat()


class AnalysisQueue:
    """
    Bounded worker pool analyzing audio files with aubio.

    All state (pending deque, running counter, dedup set) is only touched
    from the event loop thread. The dedup set lives as long as the queue:
    a fingerprint is analyzed at most once per instance.
    """

    def __init__(
        self,
        cache: ResultCache,
        *,
        tool: str = "aubio",
        concurrency: int = 1,
        min_confidence: float = MIN_ACCEPTED_CONFIDENCE,
        formats: tuple[str, ...] = (".mp3",),
        tempo_timeout: float = 90.0,
        pitch_timeout: float = 120.0,
        probe_timeout: float = 3.0,
        max_stdout_bytes: int = 8 * 1024 * 1024,
        pitch_max_stdout_bytes: int = 6 * 1024 * 1024,
        max_stderr_bytes: int = 512 * 1024,
        pitch_buffer_size: int = 8192,
        pitch_hop_size: int = 4096
    ) -> None:
        self.cache = cache
        self.tool = tool
        self.concurrency = max(1, int(concurrency or 1))
        self.min_confidence = min_confidence
        self.formats = tuple(ext.lower() for ext in formats)
        self.tempo_timeout = tempo_timeout
        self.pitch_timeout = pitch_timeout
        self.probe_timeout = probe_timeout
        self.max_stdout_bytes = max_stdout_bytes
        self.pitch_max_stdout_bytes = pitch_max_stdout_bytes
        self.max_stderr_bytes = max_stderr_bytes
        self.pitch_buffer_size = pitch_buffer_size
        self.pitch_hop_size = pitch_hop_size

        self.stats = QueueStats()

        self._pending: deque[QueueTask] = deque()
        self._running = 0
        self._seen: set[str] = set()
        self._jobs: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

        self._available: bool | None = None
        self._probe_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: AnalysisConfig, cache: ResultCache | None = None) -> "AnalysisQueue":
        """Create a queue (and its cache, unless given) from AnalysisConfig."""
        if cache is None:
            cache = ResultCache(config.cache_file, flush_delay=config.flush_delay)
        return cls(
            cache,
            tool=config.tool,
            concurrency=config.concurrency,
            min_confidence=config.min_confidence,
            formats=config.formats,
            tempo_timeout=config.tempo_timeout,
            pitch_timeout=config.pitch_timeout,
            probe_timeout=config.probe_timeout,
            max_stdout_bytes=config.max_stdout_bytes,
            pitch_max_stdout_bytes=config.pitch_max_stdout_bytes,
            max_stderr_bytes=config.max_stderr_bytes,
            pitch_buffer_size=config.pitch_buffer_size,
            pitch_hop_size=config.pitch_hop_size,
        )

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def running(self) -> int:
        return self._running

    @property
    def tool_name(self) -> str:
        return Path(self.tool).stem or "tool"

    # =========================================================================
    # Public API
    # =========================================================================

    async def enqueue(
        self,
        file_path: str | Path,
        stat_hint: StatHint | None = None,
        song_id: str | None = None,
        storage: SongStore | None = None
    ) -> bool:
        """
        Queue a file for analysis and return without waiting for it.

        Args:
            file_path: Audio file to analyze.
            stat_hint: Size/mtime the caller already has, saves a stat.
            song_id: Identifier passed back to storage.update_song().
            storage: Optional song index to notify with results.

        Returns:
            True if a new task was queued, False if the file was rejected
            or its fingerprint is already known to this queue.
        """
        if not file_path:
            return False

        abs_path = os.path.abspath(file_path)
        if os.path.splitext(abs_path)[1].lower() not in self.formats:
            self.stats.rejected += 1
            return False

        try:
            if stat_hint is not None:
                key = fingerprint(abs_path, stat_hint)
            else:
                key = await asyncio.to_thread(fingerprint, abs_path)
        except FingerprintError as e:
            logger.warning(f"Skipping analysis, fingerprint failed: {e}")
            self.stats.rejected += 1
            return False

        if key in self._seen:
            self.stats.deduplicated += 1
            return False
        self._seen.add(key)

        self._pending.append(QueueTask(abs_path, key, stat_hint, song_id, storage))
        self.stats.queued += 1
        self._idle.clear()
        self._drain()
        return True

    async def idle(self) -> None:
        """Wait until no task is pending or running."""
        if not self._pending and self._running == 0:
            return
        await self._idle.wait()

    async def is_available(self) -> bool:
        """
        Check once whether the aubio CLI can be run.

        A zero exit code or any stdout from `aubio --version` counts as
        available; some builds print the version and exit non-zero.
        """
        if self._available is not None:
            return self._available

        async with self._probe_lock:
            if self._available is None:
                result = await run_tool(self.tool, ["--version"], timeout=self.probe_timeout)
                self._available = result.succeeded or bool(result.stdout.strip())
                if self._available:
                    logger.debug(f"{self.tool_name} available: {result.stdout.strip()[:80]}")
                else:
                    logger.warning(f"{self.tool_name} CLI not available; BPM/key analysis skipped")
        return self._available

    # =========================================================================
    # Worker pool
    # =========================================================================

    def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running < self.concurrency and self._pending:
            task = self._pending.popleft()
            self._running += 1
            job = loop.create_task(self._run_task(task))
            self._jobs.add(job)
            job.add_done_callback(self._on_task_done)

    def _on_task_done(self, job: asyncio.Task) -> None:
        self._jobs.discard(job)
        self._running -= 1
        self.stats.completed += 1

        if not job.cancelled() and job.exception() is not None:
            logger.error(f"Analysis task crashed: {job.exception()}")

        self._drain()
        if not self._pending and self._running == 0:
            self._idle.set()

    async def _run_task(self, task: QueueTask) -> None:
        try:
            await self._process(task)
        except Exception as e:
            # One file must never take down the queue
            logger.warning(f"Analysis failed for {task.file_path}: {e}")

    # =========================================================================
    # Task states
    # =========================================================================

    async def _process(self, task: QueueTask) -> None:
        await self.cache.load()

        cached = self.cache.get(task.fingerprint)
        if cached is not None and cached.is_terminal:
            self.stats.cache_hits += 1
            if not cached.has_result:
                logger.debug(f"Cached negative result for {task.file_path}, not analyzing again")
                return
            logger.debug(f"Cache hit for {task.file_path}: bpm={cached.bpm} key={cached.key}")
            await self._apply_result(task, cached, from_cache=True)
            return

        if not await self.is_available():
            self.stats.failed += 1
            reason = f"{self.tool_name}_not_installed"
            self.cache.set(task.fingerprint, CacheEntry(
                ok=False,
                file_path=task.file_path,
                updated_at=now_iso(),
                error=reason,
            ))
            await self._flush_cache()
            log_analysis_failure(logger, task.file_path, reason)
            return

        self.stats.analyzed += 1
        tempo_result, pitch_result = await self._run_analysis(task.file_path)

        tempo = parse_tempo(tempo_result.stdout) if tempo_result.succeeded else TempoEstimate(None, 0.0)
        key = parse_key(pitch_result.stdout) if pitch_result.succeeded else KeyEstimate(None, 0.0)
        ok, confidence = combine_estimates(tempo, key, self.min_confidence)

        self._log_tool_stderr("tempo", task.file_path, tempo_result)
        self._log_tool_stderr("pitch", task.file_path, pitch_result)

        entry = CacheEntry(
            ok=ok,
            file_path=task.file_path,
            bpm=tempo.bpm,
            key=key.key,
            confidence=confidence,
            updated_at=now_iso(),
            tempo_exit_code=tempo_result.exit_code,
            pitch_exit_code=pitch_result.exit_code,
        )
        self.cache.set(task.fingerprint, entry)
        await self._flush_cache()

        if not ok:
            self.stats.failed += 1
            log_analysis_failure(
                logger,
                task.file_path,
                _failure_reason(tempo_result, pitch_result, tempo, key),
                f"bpm={tempo.bpm} key={key.key} confidence={confidence:.2f}"
            )
            return

        self.stats.accepted += 1
        logger.info(f"Analyzed {Path(task.file_path).name}: bpm={tempo.bpm} key={key.key} ({confidence:.2f})")
        await self._apply_result(task, entry)

    async def _run_analysis(self, file_path: str) -> tuple[ToolResult, ToolResult]:
        """Run tempo then pitch tracking; they are never run concurrently."""
        tempo_result = await run_tool(
            self.tool,
            ["tempo", file_path],
            timeout=self.tempo_timeout,
            max_stdout_bytes=self.max_stdout_bytes,
            max_stderr_bytes=self.max_stderr_bytes,
        )
        pitch_result = await run_tool(
            self.tool,
            [
                "pitch", "-u", "midi", "-q",
                "-B", str(self.pitch_buffer_size),
                "-H", str(self.pitch_hop_size),
                file_path,
            ],
            timeout=self.pitch_timeout,
            max_stdout_bytes=self.pitch_max_stdout_bytes,
            max_stderr_bytes=self.max_stderr_bytes,
        )
        return tempo_result, pitch_result

    def _log_tool_stderr(self, command: str, file_path: str, result: ToolResult) -> None:
        if result.timed_out:
            logger.warning(f"{self.tool_name} {command} timed out: {file_path}")
        if should_log_stderr(result.stderr):
            logger.warning(f"{self.tool_name} {command} stderr for {Path(file_path).name}: {result.stderr.strip()}")

    async def _flush_cache(self) -> None:
        try:
            await self.cache.flush()
        except CacheError as e:
            logger.warning(str(e))

    def _remember_written(self, task: QueueTask, entry: CacheEntry, st: os.stat_result) -> None:
        # Our own tag write changed size/mtime; keep the result reachable
        written_key = fingerprint(task.file_path, StatHint.from_stat(st))
        if written_key != task.fingerprint:
            self.cache.set(written_key, entry)

    async def _apply_result(self, task: QueueTask, entry: CacheEntry, from_cache: bool = False) -> None:
        """
        Write tags and push the result to the song index.

        Both steps are best-effort. When the tag write changed the file, the
        entry is also stored under the file's new fingerprint and the new
        mtime is sent as lastModified, so the next scan does not mistake our
        own write for a user edit. A cached result whose tags are already in
        the file is not written again.
        """
        bpm, key = entry.bpm, entry.key
        fields: dict[str, Any] = {"bpm": bpm, "key": key}

        try:
            if from_cache and await asyncio.to_thread(read_tags, task.file_path) == (bpm, key):
                logger.debug(f"Tags already up to date: {task.file_path}")
            else:
                result = await asyncio.to_thread(write_tags, task.file_path, bpm, key)
                if result.written:
                    st = await asyncio.to_thread(os.stat, task.file_path)
                    fields["lastModified"] = _mtime_iso(st)
                    self._remember_written(task, entry, st)
                    await self._flush_cache()
        except OSError as e:
            logger.warning(f"Could not refresh tags for {task.file_path}: {e}")

        if task.storage is None or task.song_id is None:
            return

        try:
            outcome = task.storage.update_song(task.song_id, fields)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Song index update failed for {task.song_id}: {e}")


def _failure_reason(
    tempo_result: ToolResult,
    pitch_result: ToolResult,
    tempo: TempoEstimate,
    key: KeyEstimate
) -> str:
    if tempo_result.timed_out or pitch_result.timed_out:
        return "timeout"
    if not tempo_result.succeeded and not pitch_result.succeeded:
        return "tool_failed"
    if tempo.bpm is None and key.key is None:
        return "no_result"
    return "low_confidence"
