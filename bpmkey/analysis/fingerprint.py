"""
File fingerprints used as analysis cache keys.

Two strengths are provided:

    fingerprint()         SHA-1 of absolute path, size and mtime. No file
                          content is read, so it is cheap enough to run for
                          every file during a library scan.
    strong_fingerprint()  Additionally hashes up to 64 KiB from the head and
                          the tail of the file, for callers that must catch
                          edits which preserve both size and mtime.

Both are pure functions of their inputs: the same path/size/mtime (and
bytes) always produce the same hex digest, and any change to size or mtime
produces a different one.
"""

import hashlib
import math
import os
from dataclasses import dataclass
from pathlib import Path

from bpmkey.core.exceptions import FingerprintError


SAMPLE_SIZE = 64 * 1024


@dataclass(frozen=True)
class StatHint:
    """
    File size and modification time supplied by a caller that already
    stat'ed the file, so fingerprinting does not have to.

    Attributes:
        size: File size in bytes.
        mtime_ms: Modification time in milliseconds since the epoch.
    """
    size: int
    mtime_ms: float

    @classmethod
    def from_stat(cls, st: os.stat_result) -> "StatHint":
        return cls(size=st.st_size, mtime_ms=st.st_mtime_ns / 1_000_000)


def _resolve(path: str | Path, stat_hint: StatHint | None) -> tuple[str, StatHint]:
    abs_path = os.path.abspath(path)
    if stat_hint is not None:
        return abs_path, stat_hint

    try:
        st = os.stat(abs_path)
    except OSError as e:
        raise FingerprintError(
            f"Cannot stat file for fingerprint: {abs_path}",
            details={"file_path": abs_path, "original_error": str(e)}
        ) from e
    return abs_path, StatHint.from_stat(st)


def _rounded_mtime(mtime_ms: float) -> int:
    # Half-up rounding, so x.5 ms never flips between platforms
    return int(math.floor(float(mtime_ms or 0) + 0.5))


def fingerprint(path: str | Path, stat_hint: StatHint | None = None) -> str:
    """
    Compute the fast fingerprint of a file.

    Args:
        path: Absolute or relative file path.
        stat_hint: Optional size/mtime to avoid a stat syscall.

    Returns:
        Lowercase hex SHA-1 digest.

    Raises:
        FingerprintError: If no hint is given and the file cannot be stat'd.
    """
    abs_path, hint = _resolve(path, stat_hint)

    digest = hashlib.sha1()
    digest.update(abs_path.encode("utf-8", errors="surrogateescape"))
    digest.update(b"\n")
    digest.update(str(int(hint.size)).encode("ascii"))
    digest.update(b"\n")
    digest.update(str(_rounded_mtime(hint.mtime_ms)).encode("ascii"))
    return digest.hexdigest()


def strong_fingerprint(
    path: str | Path,
    stat_hint: StatHint | None = None,
    sample_size: int = SAMPLE_SIZE
) -> str:
    """
    Compute the content-sampling fingerprint of a file.

    Reads up to `sample_size` bytes from the start and from the end of the
    file and folds them into the digest ahead of size and mtime.

    Args:
        path: Absolute or relative file path.
        stat_hint: Optional size/mtime to avoid a stat syscall.
        sample_size: Byte budget for each of the head and tail samples.

    Returns:
        Lowercase hex SHA-1 digest.

    Raises:
        FingerprintError: If the file cannot be stat'd or opened.
    """
    abs_path, hint = _resolve(path, stat_hint)
    size = int(hint.size)

    try:
        with open(abs_path, "rb") as f:
            head = f.read(min(sample_size, size)) if size > 0 else b""
            tail_len = min(sample_size, size)
            if tail_len > 0:
                f.seek(max(0, size - tail_len))
                tail = f.read(tail_len)
            else:
                tail = b""
    except OSError as e:
        raise FingerprintError(
            f"Cannot read file for fingerprint: {abs_path}",
            details={"file_path": abs_path, "original_error": str(e)}
        ) from e

    digest = hashlib.sha1()
    digest.update(abs_path.encode("utf-8", errors="surrogateescape"))
    digest.update(b"\n")
    digest.update(head)
    digest.update(tail)
    digest.update(b"\n")
    digest.update(str(size).encode("ascii"))
    digest.update(b"\n")
    digest.update(str(_rounded_mtime(hint.mtime_ms)).encode("ascii"))
    return digest.hexdigest()
