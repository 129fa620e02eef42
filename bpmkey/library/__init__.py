"""
Library module for bpmkey.

Walks music directories and feeds files lacking BPM/key tags to the
analysis queue.
"""

from bpmkey.library.scanner import LibraryScanner, ScanStats, iter_audio_files, song_id_for_path

__all__ = [
    "LibraryScanner",
    "ScanStats",
    "iter_audio_files",
    "song_id_for_path",
]
