"""
Reading and writing BPM/key tags with mutagen.

Format handling:
    - MP3: ID3v2 TBPM / TKEY frames (tag header created if missing)
    - FLAC: Vorbis comments BPM / INITIALKEY
    - M4A/MP4: 'tmpo' atom and the iTunes 'initialkey' freeform atom

Tagging is a convenience on top of the analysis cache: write_tags() never
raises for malformed or unsupported files, it logs and reports
written=False. Note that a successful write changes the file's mtime.
"""

from dataclasses import dataclass
from pathlib import Path

import mutagen
from mutagen.flac import FLAC
from mutagen.id3 import ID3, ID3NoHeaderError, TBPM, TKEY
from mutagen.mp4 import MP4, MP4FreeForm

from bpmkey.analysis.parsers import normalize_bpm, normalize_key
from bpmkey.core.logger import get_logger

logger = get_logger(__name__)


MP4_KEY_ATOM = "----:com.apple.iTunes:initialkey"


@dataclass(frozen=True)
class TagWriteResult:
    written: bool
    reason: str | None = None


def write_tags(file_path: str | Path, bpm: int | None = None, key: str | None = None) -> TagWriteResult:
    """
    Write BPM and/or key into an audio file's tags, in place.

    Args:
        file_path: Audio file to update.
        bpm: BPM value; normalized to an integer in [30, 300] or dropped.
        key: Key label; trimmed and capped at 32 characters or dropped.

    Returns:
        TagWriteResult with written=True if the file was saved.
    """
    bpm_value = normalize_bpm(bpm)
    key_value = normalize_key(key)
    if bpm_value is None and key_value is None:
        return TagWriteResult(written=False, reason="nothing_to_write")

    path = Path(file_path)
    extension = path.suffix.lower()

    try:
        if extension == ".mp3":
            _write_id3(path, bpm_value, key_value)
        elif extension == ".flac":
            _write_flac(path, bpm_value, key_value)
        elif extension in (".m4a", ".mp4"):
            _write_mp4(path, bpm_value, key_value)
        else:
            logger.debug(f"Tag writing not supported for {extension}: {path}")
            return TagWriteResult(written=False, reason="unsupported_format")
    except (mutagen.MutagenError, OSError, ValueError) as e:
        logger.warning(f"Failed to write BPM/key tags to {path.name}: {e}")
        return TagWriteResult(written=False, reason=str(e))

    logger.debug(f"Wrote tags to {path.name}: bpm={bpm_value} key={key_value}")
    return TagWriteResult(written=True)


def _write_id3(path: Path, bpm: int | None, key: str | None) -> None:
    try:
        tags = ID3(str(path))
    except ID3NoHeaderError:
        tags = ID3()

    if bpm is not None:
        tags.setall("TBPM", [TBPM(encoding=3, text=str(bpm))])
    if key is not None:
        tags.setall("TKEY", [TKEY(encoding=3, text=key)])
    tags.save(str(path))


def _write_flac(path: Path, bpm: int | None, key: str | None) -> None:
    audio = FLAC(str(path))
    if audio.tags is None:
        audio.add_tags()
    if bpm is not None:
        audio["BPM"] = str(bpm)
    if key is not None:
        audio["INITIALKEY"] = key
    audio.save()


def _write_mp4(path: Path, bpm: int | None, key: str | None) -> None:
    audio = MP4(str(path))
    if audio.tags is None:
        audio.add_tags()
    if bpm is not None:
        audio["tmpo"] = [bpm]
    if key is not None:
        audio[MP4_KEY_ATOM] = [MP4FreeForm(key.encode("utf-8"))]
    audio.save()


def read_tags(file_path: str | Path) -> tuple[int | None, str | None]:
    """
    Read existing BPM and key tags.

    Returns:
        (bpm, key), each None when absent, unparseable or the format is
        unsupported. Never raises for unreadable files.
    """
    path = Path(file_path)
    extension = path.suffix.lower()

    try:
        if extension == ".mp3":
            try:
                tags = ID3(str(path))
            except ID3NoHeaderError:
                return None, None
            bpm = tags.get("TBPM")
            key = tags.get("TKEY")
            return (
                normalize_bpm(bpm.text[0]) if bpm and bpm.text else None,
                normalize_key(key.text[0]) if key and key.text else None,
            )

        if extension == ".flac":
            audio = FLAC(str(path))
            bpm_values = audio.get("BPM") or [None]
            key_values = audio.get("INITIALKEY") or [None]
            return normalize_bpm(bpm_values[0]), normalize_key(key_values[0])

        if extension in (".m4a", ".mp4"):
            audio = MP4(str(path))
            tmpo = audio.get("tmpo") or [None]
            key_values = audio.get(MP4_KEY_ATOM) or [b""]
            return normalize_bpm(tmpo[0]), normalize_key(bytes(key_values[0]).decode("utf-8", errors="replace"))
    except (mutagen.MutagenError, OSError, ValueError) as e:
        logger.debug(f"Could not read tags from {path.name}: {e}")

    return None, None
