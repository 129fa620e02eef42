"""
Music library scanner.

Walks the configured directories and hands every audio file that is missing
a BPM or key tag to the AnalysisQueue. The scan never waits for analysis:
it returns as soon as every file was looked at, and callers that need the
results await queue.idle() afterwards.

Files the queue does not accept (by default anything but MP3) are still
counted, so the stats reflect the whole library.
"""

import asyncio
import hashlib
import os
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from bpmkey.analysis.fingerprint import StatHint
from bpmkey.analysis.queue import AnalysisQueue, SongStore
from bpmkey.analysis.tags import read_tags
from bpmkey.core.logger import get_logger

logger = get_logger(__name__)


# Progress is logged every this many files
PROGRESS_INTERVAL = 100


@dataclass
class ScanStats:
    """
    Result of a library scan.

    Attributes:
        total: Audio files found.
        already_tagged: Files that already carry both BPM and key.
        enqueued: Files newly queued for analysis.
        errors: Files that could not be stat'd.
    """
    total: int = 0
    already_tagged: int = 0
    enqueued: int = 0
    errors: int = 0


def song_id_for_path(file_path: str | Path) -> str:
    """Stable song identifier derived from the absolute file path."""
    abs_path = os.path.abspath(file_path)
    return hashlib.sha1(abs_path.encode("utf-8", errors="surrogateescape")).hexdigest()[:16]


def iter_audio_files(directory: Path, formats: tuple[str, ...]) -> Iterator[Path]:
    """
    Recursively yield files under `directory` with one of `formats`.

    Unreadable subdirectories are logged and skipped. Entries are visited
    in sorted order so repeated scans enqueue files in the same order.
    """
    try:
        entries = sorted(os.scandir(directory), key=lambda entry: entry.name)
    except OSError as e:
        logger.warning(f"Cannot read directory {directory}: {e}")
        return

    for entry in entries:
        path = Path(entry.path)
        try:
            is_dir = entry.is_dir()
        except OSError:
            continue
        if is_dir:
            yield from iter_audio_files(path, formats)
        elif path.suffix.lower() in formats:
            yield path


class LibraryScanner:
    """
    Producer side of the analysis pipeline.

    Example:
        scanner = LibraryScanner(queue, [Path("~/Music").expanduser()])
        stats = await scanner.scan()
        await queue.idle()
    """

    def __init__(
        self,
        queue: AnalysisQueue,
        directories: list[Path] | tuple[Path, ...],
        formats: tuple[str, ...] = (".mp3", ".flac", ".ogg", ".m4a", ".wav"),
        storage: SongStore | None = None
    ) -> None:
        self.queue = queue
        self.directories = [Path(d) for d in directories]
        self.formats = tuple(ext.lower() for ext in formats)
        self.storage = storage

    async def scan(self) -> ScanStats:
        """
        Scan all directories and enqueue files that need analysis.

        Missing directories are skipped with a warning. A file that fails to
        stat is counted in `errors` and the scan continues.

        Returns:
            ScanStats for the whole run.
        """
        stats = ScanStats()

        for directory in self.directories:
            if not directory.is_dir():
                logger.warning(f"Music directory not found, skipping: {directory}")
                continue

            logger.info(f"Scanning {directory}")
            files = await asyncio.to_thread(lambda: list(iter_audio_files(directory, self.formats)))

            for file_path in files:
                stats.total += 1
                await self._scan_file(file_path, stats)
                if stats.total % PROGRESS_INTERVAL == 0:
                    logger.info(f"Scanned {stats.total} files...")

        logger.info(
            f"Scan complete: {stats.total} files, {stats.already_tagged} already tagged, "
            f"{stats.enqueued} queued for analysis, {stats.errors} errors"
        )
        return stats

    async def _scan_file(self, file_path: Path, stats: ScanStats) -> None:
        try:
            st = await asyncio.to_thread(os.stat, file_path)
        except OSError as e:
            logger.warning(f"Error processing {file_path}: {e}")
            stats.errors += 1
            return

        bpm, key = await asyncio.to_thread(read_tags, file_path)
        if bpm is not None and key is not None:
            stats.already_tagged += 1
            return

        queued = await self.queue.enqueue(
            file_path,
            stat_hint=StatHint.from_stat(st),
            song_id=song_id_for_path(file_path) if self.storage is not None else None,
            storage=self.storage,
        )
        if queued:
            stats.enqueued += 1
