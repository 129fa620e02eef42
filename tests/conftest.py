"""Test configuration and fixtures"""

import pytest
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

from bpmkey.analysis.runner import ToolResult


# 100 voiced frames, all on middle C
PITCH_OUTPUT_C = "\n".join(f"{i * 0.01:.3f} 60.02" for i in range(100))


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep BPMKEY_* variables from the developer's shell out of tests"""
    for name in ("BPMKEY_TOOL", "BPMKEY_CACHE_FILE", "BPMKEY_CONCURRENCY",
                 "BPMKEY_LOG_LEVEL", "BPMKEY_MUSIC_DIRS"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def make_mp3(temp_dir):
    """Factory for placeholder .mp3 files (no audio, taggable by mutagen)"""
    def _make(name="song.mp3", size=4096):
        path = temp_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\xff\xfb\x90\x00" + b"\x00" * (size - 4))
        return path
    return _make


def make_fake_aubio(
    tempo_stdout="bpm 140\n",
    pitch_stdout=PITCH_OUTPUT_C,
    installed=True,
    tempo_exit_code=0,
    pitch_exit_code=0,
    tempo_stderr="",
):
    """AsyncMock standing in for run_tool, answering like the aubio CLI"""
    async def _run(executable, args, **kwargs):
        command = args[0]
        if not installed:
            return ToolResult(exit_code=None, signal=None, stdout="",
                              stderr=f"[Errno 2] No such file or directory: '{executable}'")
        if command == "--version":
            return ToolResult(exit_code=0, signal=None, stdout="aubio version 0.4.9\n", stderr="")
        if command == "tempo":
            return ToolResult(exit_code=tempo_exit_code, signal=None, stdout=tempo_stdout, stderr=tempo_stderr)
        if command == "pitch":
            return ToolResult(exit_code=pitch_exit_code, signal=None, stdout=pitch_stdout, stderr="")
        raise AssertionError(f"unexpected aubio command: {args}")

    return AsyncMock(side_effect=_run)


@pytest.fixture
def fake_aubio():
    """Default fake aubio: installed, 140 BPM, pitch output centered on C"""
    return make_fake_aubio()
