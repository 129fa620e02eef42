"""
Parsers that turn aubio's text output into BPM and key estimates.

aubio builds differ in what `aubio tempo` prints (a "bpm" line, one beat
timestamp per line, or a bare number), so parse_tempo() degrades through
several extraction strategies. Their fixed confidences keep the ordering

    direct "bpm N" match  >  single-number fallback

with the beat-interval strategy scored from how regular the beats are.

parse_key() expects `aubio pitch -u midi` output (`<time> <midi-note>` per
line) and estimates the key by matching a pitch-class histogram against
rotated Krumhansl-Kessler key profiles. Only the histogram front end is
aubio-specific; the template matching works for any pitch track.

All functions here are pure.
"""

import math
import re
from typing import Any, NamedTuple


MIN_BPM = 30
MAX_BPM = 300
MAX_KEY_LENGTH = 32

DIRECT_MATCH_CONFIDENCE = 0.7
SINGLE_NUMBER_CONFIDENCE = 0.4
MIN_ACCEPTED_CONFIDENCE = 0.15

# Beat intervals outside this window (seconds) are treated as missed or
# spurious beats
MIN_BEAT_INTERVAL = 0.1
MAX_BEAT_INTERVAL = 5.0
MIN_BEAT_INTERVALS = 3
# Coefficient of variation at which interval confidence reaches zero
MAX_INTERVAL_SPREAD = 0.25

MAX_PITCH_SAMPLES = 4000
MIN_PITCH_SAMPLES = 50

NOTE_NAMES = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")

# Krumhansl-Kessler probe-tone profiles, index 0 = tonic
MAJOR_PROFILE = (6.35, 2.23, 3.48, 2.33, 4.38, 4.09, 2.52, 5.19, 2.39, 3.66, 2.29, 2.88)
MINOR_PROFILE = (6.33, 2.68, 3.52, 5.38, 2.60, 3.53, 2.54, 4.75, 3.98, 2.69, 3.34, 3.17)

# Decoder chatter that shows up on almost every lossy file and means nothing
BENIGN_STDERR_MARKERS = (
    "Could not update timestamps",
    "Could not update timestamps for discarded samples",
    "Could not update timestamps for skipped samples",
    "filesize and duration do not match",
    "overread, skip",
)

_DIRECT_BPM_RE = re.compile(r"\b(bpm)\b[^0-9]*([0-9]+(?:\.[0-9]+)?)", re.IGNORECASE)
_FIRST_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_SINGLE_NUMBER_RE = re.compile(r"\b([0-9]{2,3}(?:\.[0-9]+)?)\b")
_ACTIONABLE_STDERR_RE = re.compile(r"\berror\b|\btraceback\b|\binvalid\b|\bfail", re.IGNORECASE)


class TempoEstimate(NamedTuple):
    bpm: int | None
    confidence: float


class KeyEstimate(NamedTuple):
    key: str | None
    confidence: float


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize_bpm(value: Any) -> int | None:
    """
    Coerce a BPM candidate to an integer within [30, 300].

    Returns:
        Rounded BPM, or None if the value is not a finite number in range.
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number < MIN_BPM or number > MAX_BPM:
        return None
    return _round_half_up(number)


def normalize_key(value: Any) -> str | None:
    """Trim a key label and cap it at 32 characters; empty becomes None."""
    text = str(value or "").strip()
    if not text:
        return None
    return text[:MAX_KEY_LENGTH]


def _tempo_from_intervals(values: list[float]) -> TempoEstimate | None:
    intervals = []
    for previous, current in zip(values, values[1:]):
        delta = current - previous
        if math.isfinite(delta) and MIN_BEAT_INTERVAL < delta < MAX_BEAT_INTERVAL:
            intervals.append(delta)

    if len(intervals) < MIN_BEAT_INTERVALS:
        return None

    intervals.sort()
    median = intervals[len(intervals) // 2]
    bpm = normalize_bpm(60.0 / median)

    mean = sum(intervals) / len(intervals)
    variance = sum((d - mean) ** 2 for d in intervals) / len(intervals)
    spread = math.sqrt(variance) / mean if mean > 0 else 1.0
    confidence = clamp(1.0 - spread / MAX_INTERVAL_SPREAD, 0.0, 1.0) if bpm is not None else 0.0

    return TempoEstimate(bpm, confidence)


def parse_tempo(
    stdout: str,
    direct_confidence: float = DIRECT_MATCH_CONFIDENCE,
    fallback_confidence: float = SINGLE_NUMBER_CONFIDENCE
) -> TempoEstimate:
    """
    Estimate BPM from `aubio tempo` output.

    Strategies, first match wins:
        1. A literal "bpm" followed by a number.
        2. One beat timestamp per line: the median of plausible successive
           intervals gives the BPM, their coefficient of variation the
           confidence (perfectly regular beats score 1.0).
        3. Any bare 2-3 digit number.

    Args:
        stdout: Raw tool output.
        direct_confidence: Confidence assigned to strategy 1.
        fallback_confidence: Confidence assigned to strategy 3.

    Returns:
        TempoEstimate; (None, 0.0) when nothing usable was found or the
        value falls outside [30, 300].
    """
    text = (stdout or "").strip()
    if not text:
        return TempoEstimate(None, 0.0)

    direct = _DIRECT_BPM_RE.search(text)
    if direct:
        bpm = normalize_bpm(direct.group(2))
        return TempoEstimate(bpm, direct_confidence if bpm is not None else 0.0)

    values = []
    for line in text.splitlines():
        match = _FIRST_NUMBER_RE.search(line.strip())
        if match:
            values.append(float(match.group(0)))

    if len(values) > MIN_BEAT_INTERVALS:
        estimate = _tempo_from_intervals(values)
        if estimate is not None:
            return estimate

    single = _SINGLE_NUMBER_RE.search(text)
    if single:
        bpm = normalize_bpm(single.group(1))
        return TempoEstimate(bpm, fallback_confidence if bpm is not None else 0.0)

    return TempoEstimate(None, 0.0)


def pitch_class_histogram(stdout: str, max_samples: int = MAX_PITCH_SAMPLES) -> list[int]:
    """
    Count voiced MIDI notes per pitch class from `<time> <midi>` lines.

    Unvoiced frames (0, negative or non-finite) are skipped; counting stops
    after `max_samples` voiced frames.
    """
    histogram = [0] * 12
    used = 0
    for line in (stdout or "").splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            midi = float(parts[1])
        except ValueError:
            continue
        if not math.isfinite(midi) or midi <= 0:
            continue
        histogram[_round_half_up(midi) % 12] += 1
        used += 1
        if used >= max_samples:
            break
    return histogram


def _rotate(profile: tuple[float, ...], root: int) -> list[float]:
    return [profile[(i - root) % 12] for i in range(12)]


def _dot(a: list[float], b: list[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


def parse_key(stdout: str, min_samples: int = MIN_PITCH_SAMPLES) -> KeyEstimate:
    """
    Estimate the musical key from `aubio pitch -u midi` output.

    Every root/mode pair is scored by the dot product of the normalized
    pitch-class histogram with the rotated major or minor profile. The best
    of the 24 scores wins; ties keep the earlier candidate (roots C..B,
    major before minor), so identical input always yields the same key.
    Confidence is the gap to the runner-up relative to the best score.

    The major and minor profiles share their tonic weight, so input that
    names the root but not the mode scores low even when the root is
    certain: a single repeated pitch class yields the right root with a
    confidence of about 0.003. Such a key is only kept together with a
    confident tempo (see combine_estimates).

    Returns:
        KeyEstimate such as ("A", 0.03) or ("F#m", 0.05); (None, 0.0) when
        fewer than `min_samples` voiced frames were found.
    """
    histogram = pitch_class_histogram(stdout)
    total = sum(histogram)
    if total < min_samples:
        return KeyEstimate(None, 0.0)

    distribution = [count / total for count in histogram]

    best: tuple[float, int, bool] | None = None
    runner_up = -math.inf
    for root in range(12):
        for minor, profile in ((False, MAJOR_PROFILE), (True, MINOR_PROFILE)):
            score = _dot(distribution, _rotate(profile, root))
            if best is None or score > best[0]:
                if best is not None:
                    runner_up = best[0]
                best = (score, root, minor)
            elif score > runner_up:
                runner_up = score

    best_score, root, minor = best
    key = normalize_key(NOTE_NAMES[root] + ("m" if minor else ""))

    gap = best_score - runner_up if math.isfinite(runner_up) else 0.0
    confidence = clamp(gap / max(1e-6, abs(best_score)), 0.0, 1.0)
    return KeyEstimate(key, confidence)


def combine_estimates(
    tempo: TempoEstimate,
    key: KeyEstimate,
    min_confidence: float = MIN_ACCEPTED_CONFIDENCE
) -> tuple[bool, float]:
    """
    Decide whether an analysis result is good enough to keep.

    Returns:
        (ok, confidence) where confidence is the larger of the two and ok
        requires a BPM or key plus confidence >= min_confidence. A wrong
        BPM tag is worse than none, hence the threshold.
    """
    confidence = clamp(max(tempo.confidence or 0.0, key.confidence or 0.0), 0.0, 1.0)
    has_value = tempo.bpm is not None or key.key is not None
    return has_value and confidence >= min_confidence, confidence


def should_log_stderr(stderr: str) -> bool:
    """
    Return True if tool stderr looks actionable.

    Known benign decoder warnings are suppressed outright; anything else is
    only surfaced when it mentions an error, failure, invalid input or a
    traceback.
    """
    text = (stderr or "").strip()
    if not text:
        return False
    if any(marker in text for marker in BENIGN_STDERR_MARKERS):
        return False
    return bool(_ACTIONABLE_STDERR_RE.search(text))
