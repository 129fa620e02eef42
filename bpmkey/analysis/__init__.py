"""
Analysis module for bpmkey.

This module turns audio files into BPM/key metadata using the aubio CLI:
    - fingerprint: Cheap cache keys from path, size and mtime
    - cache: JSON result cache with debounced, atomic writes
    - runner: Child process execution with timeouts and output caps
    - parsers: aubio output to BPM/key estimates with confidences
    - tags: BPM/key tag reading and writing via mutagen
    - queue: Bounded background queue tying it all together

Usage:
    from bpmkey.analysis import AnalysisQueue

    queue = AnalysisQueue.from_config(config.analysis)
    await queue.enqueue(path)
    await queue.idle()
"""

from bpmkey.analysis.cache import CacheEntry, ResultCache
from bpmkey.analysis.fingerprint import StatHint, fingerprint, strong_fingerprint
from bpmkey.analysis.parsers import (
    KeyEstimate,
    TempoEstimate,
    combine_estimates,
    normalize_bpm,
    normalize_key,
    parse_key,
    parse_tempo,
    should_log_stderr,
)
from bpmkey.analysis.queue import AnalysisQueue, QueueStats, SongStore
from bpmkey.analysis.runner import ToolResult, run_tool
from bpmkey.analysis.tags import TagWriteResult, read_tags, write_tags

__all__ = [
    # Fingerprint
    "StatHint",
    "fingerprint",
    "strong_fingerprint",
    # Cache
    "CacheEntry",
    "ResultCache",
    # Runner
    "ToolResult",
    "run_tool",
    # Parsers
    "TempoEstimate",
    "KeyEstimate",
    "parse_tempo",
    "parse_key",
    "combine_estimates",
    "normalize_bpm",
    "normalize_key",
    "should_log_stderr",
    # Tags
    "TagWriteResult",
    "read_tags",
    "write_tags",
    # Queue
    "AnalysisQueue",
    "QueueStats",
    "SongStore",
]
