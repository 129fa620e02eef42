"""Test the analysis result cache"""

import asyncio
import json
from unittest.mock import patch

import pytest

from bpmkey.analysis.cache import CACHE_VERSION, CacheEntry, ResultCache, atomic_write_json
from bpmkey.core.exceptions import CacheError


def sample_entry(**overrides):
    values = dict(
        ok=True,
        file_path="/music/song.mp3",
        bpm=128,
        key="Am",
        confidence=0.7,
        updated_at="2024-01-01T12:00:00+00:00",
        tempo_exit_code=0,
        pitch_exit_code=0,
    )
    values.update(overrides)
    return CacheEntry(**values)


class TestCacheEntry:
    """Test the stored entry shape"""

    def test_to_cache_dict(self):
        """Test camelCase keys and optional error"""
        data = sample_entry().to_cache_dict()
        assert data["filePath"] == "/music/song.mp3"
        assert data["tempoExitCode"] == 0
        assert "error" not in data

        failed = sample_entry(ok=False, bpm=None, key=None, error="aubio_not_installed")
        assert failed.to_cache_dict()["error"] == "aubio_not_installed"

    def test_from_cache_dict_defaults_and_unknown_fields(self):
        """Test missing fields are defaulted and unknown ones carried along"""
        entry = CacheEntry.from_cache_dict({"ok": True, "bpm": 99, "futureField": [1, 2]})
        assert entry.ok is True
        assert entry.bpm == 99
        assert entry.key is None
        assert entry.confidence == 0.0
        assert entry.file_path == ""
        assert entry.extra == {"futureField": [1, 2]}
        assert entry.to_cache_dict()["futureField"] == [1, 2]

    def test_from_cache_dict_wrong_types(self):
        """Test values of the wrong type are read as missing"""
        entry = CacheEntry.from_cache_dict({
            "ok": True, "bpm": True, "confidence": "high",
            "tempoExitCode": "0", "pitchExitCode": 1.5, "error": 42,
        })
        assert entry.bpm is None
        assert entry.confidence == 0.0
        assert entry.tempo_exit_code is None
        assert entry.pitch_exit_code is None
        assert entry.error is None

    def test_has_result(self):
        """Test only successful entries with a value count as results"""
        assert sample_entry().has_result
        assert sample_entry(bpm=None).has_result
        assert not sample_entry(bpm=None, key=None).has_result
        assert not sample_entry(ok=False).has_result

    def test_is_terminal(self):
        """Test only entries recorded without aubio are retried"""
        assert sample_entry().is_terminal
        assert sample_entry(ok=False, bpm=None, key=None, confidence=0.05).is_terminal
        assert not sample_entry(ok=False, bpm=None, key=None, error="aubio_not_installed").is_terminal


class TestResultCache:
    """Test loading, updating and flushing"""

    @pytest.mark.asyncio
    async def test_set_then_get(self, temp_dir):
        """Test set followed by get returns an equal entry"""
        cache = ResultCache(temp_dir / "cache.json")
        await cache.load()
        entry = sample_entry()
        cache.set("abc", entry)
        assert cache.get("abc") == entry
        assert cache.get("missing") is None
        await cache.close()

    @pytest.mark.asyncio
    async def test_missing_file_loads_empty(self, temp_dir):
        """Test a missing cache file is not an error"""
        cache = ResultCache(temp_dir / "nope" / "cache.json")
        await cache.load()
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_corrupt_file_loads_empty(self, temp_dir):
        """Test a corrupt cache file falls back to an empty cache"""
        path = temp_dir / "cache.json"
        path.write_text('{"version": 1, "entries": {"abc": ', encoding="utf-8")
        cache = ResultCache(path)
        await cache.load()
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_non_finite_numbers_are_dropped(self, temp_dir):
        """Test NaN and infinite values read as missing instead of raising"""
        path = temp_dir / "cache.json"
        path.write_text(
            '{"version": 1, "entries": {'
            '"abc": {"ok": true, "bpm": NaN, "key": "Am", "confidence": Infinity},'
            '"def": {"ok": true, "bpm": 1e400, "confidence": -Infinity},'
            '"ghi": {"ok": true, "bpm": 128}}}',
            encoding="utf-8"
        )
        cache = ResultCache(path)
        await cache.load()

        assert len(cache) == 3
        assert cache.get("abc").bpm is None
        assert cache.get("abc").key == "Am"
        assert cache.get("abc").confidence == 0.0
        assert cache.get("def").bpm is None
        assert cache.get("def").has_result is False
        assert cache.get("ghi").bpm == 128
        assert cache.stats()["total"] == 3

    @pytest.mark.asyncio
    async def test_unknown_fields_survive_rewrite(self, temp_dir):
        """Test fields written by newer versions are kept on flush"""
        path = temp_dir / "cache.json"
        atomic_write_json(path, {
            "version": 1,
            "entries": {"abc": {"ok": True, "bpm": 128, "energy": 0.9, "tool": {"name": "aubio"}}},
        })
        cache = ResultCache(path)
        await cache.load()
        cache.set("def", sample_entry())
        await cache.flush()

        document = json.loads(path.read_text(encoding="utf-8"))
        assert document["entries"]["abc"]["energy"] == 0.9
        assert document["entries"]["abc"]["tool"] == {"name": "aubio"}
        assert document["entries"]["abc"]["bpm"] == 128
        assert "energy" not in document["entries"]["def"]

    @pytest.mark.asyncio
    async def test_unexpected_structure_loads_empty(self, temp_dir):
        """Test valid JSON of the wrong shape is ignored"""
        path = temp_dir / "cache.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")
        cache = ResultCache(path)
        await cache.load()
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_flush_and_reload(self, temp_dir):
        """Test entries survive a round trip through the file"""
        path = temp_dir / "cache.json"
        cache = ResultCache(path)
        await cache.load()
        cache.set("abc", sample_entry())
        assert await cache.flush() is True

        document = json.loads(path.read_text(encoding="utf-8"))
        assert document["version"] == CACHE_VERSION
        assert document["entries"]["abc"]["bpm"] == 128

        reloaded = ResultCache(path)
        await reloaded.load()
        assert reloaded.get("abc") == sample_entry()

    @pytest.mark.asyncio
    async def test_second_flush_is_noop(self, temp_dir):
        """Test flushing twice without changes writes once"""
        cache = ResultCache(temp_dir / "cache.json")
        await cache.load()
        cache.set("abc", sample_entry())

        with patch("bpmkey.analysis.cache.atomic_write_json", wraps=atomic_write_json) as writer:
            assert await cache.flush() is True
            assert await cache.flush() is False
        assert writer.call_count == 1
        assert not cache.dirty

    @pytest.mark.asyncio
    async def test_load_is_memoized(self, temp_dir):
        """Test load reads the file only once"""
        path = temp_dir / "cache.json"
        atomic_write_json(path, {"version": 1, "entries": {"abc": sample_entry().to_cache_dict()}})
        cache = ResultCache(path)
        await cache.load()

        path.write_text('{"version": 1, "entries": {}}', encoding="utf-8")
        await cache.load()
        assert cache.get("abc") is not None

    @pytest.mark.asyncio
    async def test_failed_rename_keeps_previous_file(self, temp_dir):
        """Test an aborted flush leaves the old complete file behind"""
        path = temp_dir / "cache.json"
        cache = ResultCache(path)
        await cache.load()
        cache.set("old", sample_entry())
        await cache.flush()
        previous = path.read_text(encoding="utf-8")

        cache.set("new", sample_entry(bpm=90))
        with patch("bpmkey.analysis.cache.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(CacheError):
                await cache.flush()

        assert path.read_text(encoding="utf-8") == previous
        assert "new" not in json.loads(previous)["entries"]
        assert list(temp_dir.glob("*.tmp")) == []
        assert cache.dirty

        assert await cache.flush() is True
        assert "new" in json.loads(path.read_text(encoding="utf-8"))["entries"]
        await cache.close()

    @pytest.mark.asyncio
    async def test_debounced_flush_coalesces_updates(self, temp_dir):
        """Test a burst of updates ends in a single write"""
        path = temp_dir / "cache.json"
        cache = ResultCache(path, flush_delay=0.05)
        await cache.load()

        with patch("bpmkey.analysis.cache.atomic_write_json", wraps=atomic_write_json) as writer:
            for i in range(5):
                cache.set(f"key{i}", sample_entry(bpm=100 + i))
            await asyncio.sleep(0.5)

        assert writer.call_count == 1
        assert len(json.loads(path.read_text(encoding="utf-8"))["entries"]) == 5

    @pytest.mark.asyncio
    async def test_close_flushes_pending_changes(self, temp_dir):
        """Test close writes changes without waiting for the timer"""
        path = temp_dir / "cache.json"
        cache = ResultCache(path, flush_delay=60)
        await cache.load()
        cache.set("abc", sample_entry())
        await cache.close()
        assert "abc" in json.loads(path.read_text(encoding="utf-8"))["entries"]

    def test_set_without_event_loop(self, temp_dir):
        """Test set works outside an event loop and flush catches up later"""
        path = temp_dir / "cache.json"
        cache = ResultCache(path)
        cache.set("abc", sample_entry())
        assert cache.dirty
        assert asyncio.run(cache.flush()) is True
        assert path.exists()

    def test_stats(self, temp_dir):
        """Test ok/failed counters"""
        cache = ResultCache(temp_dir / "cache.json")
        cache.set("a", sample_entry())
        cache.set("b", sample_entry(ok=False, error="aubio_not_installed"))
        assert cache.stats() == {"total": 2, "ok": 1, "failed": 1}
