"""
Tests for the media cache: keys, self-healing lookups, eviction, persistence.
"""
import asyncio
import json
import os

import pytest

from muse.database.media_cache import INDEX_FILENAME, MediaCache


def make_file(directory, name):
    path = os.path.join(directory, name)
    with open(path, "wb") as f:
        f.write(b"audio")
    return path


@pytest.fixture
def cache_dir(tmp_path):
    return str(tmp_path / "cache")


class TestKeys:
    @pytest.mark.parametrize("url", [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=42s&list=PL123",
        "https://m.youtube.com/watch?feature=share&v=dQw4w9WgXcQ",
        "https://music.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ?si=tracking",
        "https://www.youtube.com/shorts/dQw4w9WgXcQ",
        "https://www.youtube.com/embed/dQw4w9WgXcQ",
    ])
    def test_variants_collapse_to_video_id(self, url):
        assert MediaCache.make_key(url) == "dQw4w9WgXcQ"

    def test_unrelated_references_stay_distinct(self):
        keys = {
            MediaCache.make_key("https://www.youtube.com/watch?v=aaaaaaaaaaa"),
            MediaCache.make_key("https://www.youtube.com/watch?v=bbbbbbbbbbb"),
            MediaCache.make_key("https://soundcloud.com/artist/song"),
            MediaCache.make_key("https://soundcloud.com/artist/other"),
        }
        assert len(keys) == 4

    def test_unknown_host_uses_raw_reference(self):
        url = "https://example.com/track?id=1"
        assert MediaCache.make_key(url) == url


class TestLookup:
    def test_put_then_get(self, cache_dir):
        cache = MediaCache(cache_dir, max_entries=10)
        path = make_file(cache_dir, "a.m4a")

        cache.put("https://youtu.be/dQw4w9WgXcQ", path, {"title": "A", "duration": 10})

        assert cache.get("https://www.youtube.com/watch?v=dQw4w9WgXcQ") == path
        assert cache.get_entry("https://youtu.be/dQw4w9WgXcQ").title == "A"

    def test_missing_file_prunes_entry(self, cache_dir):
        cache = MediaCache(cache_dir, max_entries=10)
        path = make_file(cache_dir, "a.m4a")
        cache.put("https://example.com/a", path)

        os.remove(path)

        assert not cache.has("https://example.com/a")
        assert len(cache) == 0
        assert cache.dirty

    def test_put_replaces_entry(self, cache_dir):
        cache = MediaCache(cache_dir, max_entries=10)
        first = make_file(cache_dir, "a.m4a")
        second = make_file(cache_dir, "b.m4a")

        cache.put("https://example.com/a", first, {"title": "old"})
        cache.put("https://example.com/a", second, {"title": "new"})

        assert len(cache) == 1
        assert cache.get_entry("https://example.com/a").meta == {"title": "new"}


class TestEviction:
    def test_oldest_fifth_is_evicted(self, cache_dir):
        cache = MediaCache(cache_dir, max_entries=10)
        paths = []
        for i in range(11):
            paths.append(make_file(cache_dir, f"{i}.m4a"))
            cache.put(f"https://example.com/{i}", paths[-1])

        assert len(cache) == 9
        assert len(cache) <= cache.max_entries
        assert not cache.has("https://example.com/0")
        assert not cache.has("https://example.com/1")
        assert not os.path.exists(paths[0])
        assert cache.has("https://example.com/10")

    def test_missing_victim_files_are_ignored(self, cache_dir):
        cache = MediaCache(cache_dir, max_entries=5)
        for i in range(6):
            cache.put(f"https://example.com/{i}", os.path.join(cache_dir, f"gone{i}.m4a"))
        assert len(cache) == 5

    def test_stats(self, cache_dir):
        cache = MediaCache(cache_dir, max_entries=8)
        cache.put("https://example.com/a", make_file(cache_dir, "a.m4a"))
        assert cache.stats() == {"size": 1, "max_entries": 8, "utilization_percent": 12.5}


class TestPersistence:
    def test_flush_and_reload(self, cache_dir):
        cache = MediaCache(cache_dir, max_entries=10)
        path = make_file(cache_dir, "a.m4a")
        cache.put("https://youtu.be/dQw4w9WgXcQ", path, {"title": "A", "duration": 3})

        assert cache.flush()
        with open(os.path.join(cache_dir, INDEX_FILENAME)) as f:
            data = json.load(f)
        assert data[0][0] == "dQw4w9WgXcQ"
        assert data[0][1]["filename"] == "a.m4a"

        reloaded = MediaCache(cache_dir, max_entries=10)
        assert reloaded.get("https://www.youtube.com/watch?v=dQw4w9WgXcQ") == path
        assert reloaded.get_entry("dQw4w9WgXcQ").duration == 3

    def test_corrupt_index_starts_empty(self, cache_dir):
        os.makedirs(cache_dir)
        with open(os.path.join(cache_dir, INDEX_FILENAME), "w") as f:
            f.write("{not json")

        cache = MediaCache(cache_dir, max_entries=10)

        assert len(cache) == 0

    def test_malformed_records_are_skipped(self, cache_dir):
        os.makedirs(cache_dir)
        path = make_file(cache_dir, "a.m4a")
        with open(os.path.join(cache_dir, INDEX_FILENAME), "w") as f:
            json.dump([["good", {"filepath": path, "ts": 1}], ["bad"], "junk"], f)

        cache = MediaCache(cache_dir, max_entries=10)

        assert [e.key for e in cache.entries()] == ["good"]

    @pytest.mark.asyncio
    async def test_debounced_writes_coalesce(self, cache_dir):
        cache = MediaCache(cache_dir, max_entries=10, save_delay=0.05)
        writes = []
        original = cache._write

        def counting_write(data):
            writes.append(len(data))
            original(data)

        cache._write = counting_write
        for i in range(5):
            cache.put(f"https://example.com/{i}", make_file(cache_dir, f"{i}.m4a"))

        assert writes == []
        await asyncio.sleep(0.2)

        assert writes == [5]
        assert not cache.dirty

    @pytest.mark.asyncio
    async def test_close_flushes_pending_changes(self, cache_dir):
        cache = MediaCache(cache_dir, max_entries=10, save_delay=60)
        cache.put("https://example.com/a", make_file(cache_dir, "a.m4a"))

        await cache.close()

        assert os.path.exists(os.path.join(cache_dir, INDEX_FILENAME))
        assert not cache.dirty

    def test_clear_removes_files_and_index(self, cache_dir):
        cache = MediaCache(cache_dir, max_entries=10)
        paths = [make_file(cache_dir, f"{i}.m4a") for i in range(3)]
        for i, path in enumerate(paths):
            cache.put(f"https://example.com/{i}", path)
        cache.flush()

        assert cache.clear() == (3, 3)
        assert len(cache) == 0
        assert not any(os.path.exists(p) for p in paths)
        assert not os.path.exists(os.path.join(cache_dir, INDEX_FILENAME))
