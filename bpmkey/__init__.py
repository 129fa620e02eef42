"""
bpmkey: offline BPM and key analysis for a local music library.

Scans music directories, runs the aubio CLI on files that lack BPM/key
tags, caches results by file fingerprint and writes them back into the
files' tags.
"""

__version__ = "0.3.0"
__author__ = "bpmkey contributors"
