"""Tests for the per-job asset cache."""

import asyncio
import os

import pytest

from lemona_export.exceptions import AssetCacheFullError
from lemona_export.services.asset_cache import AssetCache, CachedAsset


def _writer(payload: bytes = b"x" * 10, calls: list | None = None):
    async def loader(path: str) -> CachedAsset:
        if calls is not None:
            calls.append(path)
        await asyncio.sleep(0)
        with open(path, "wb") as f:
            f.write(payload)
        return CachedAsset(key=path, path=path, size_bytes=len(payload), owned=True)

    return loader


class TestAssetCache:
    def test_path_keeps_extension(self, temp_output_dir):
        cache = AssetCache(str(temp_output_dir / "cache"))
        path = cache.path_for("https://cdn.test/clips/a.mp4?token=1")
        assert path.endswith(".mp4")
        assert path == cache.path_for("https://cdn.test/clips/a.mp4?token=1")
        assert path != cache.path_for("https://cdn.test/clips/b.mp4")

    @pytest.mark.asyncio
    async def test_concurrent_requests_are_coalesced(self, temp_output_dir):
        cache = AssetCache(str(temp_output_dir / "cache"))
        calls: list[str] = []
        loader = _writer(calls=calls)

        first, second = await asyncio.gather(cache.acquire("k", loader), cache.acquire("k", loader))

        assert first is second
        assert len(calls) == 1
        assert first.leases == 2
        assert (cache.hits, cache.misses) == (1, 1)

    @pytest.mark.asyncio
    async def test_lru_eviction_skips_leased(self, temp_output_dir):
        cache = AssetCache(str(temp_output_dir / "cache"), max_entries=2)
        a = await cache.acquire("a", _writer())
        await cache.acquire("b", _writer())
        cache.release("a")

        await cache.acquire("c", _writer())

        assert "a" not in cache
        assert "b" in cache and "c" in cache
        assert not os.path.exists(a.path)
        assert cache.evictions == 1

    @pytest.mark.asyncio
    async def test_full_when_everything_is_leased(self, temp_output_dir):
        cache = AssetCache(str(temp_output_dir / "cache"), max_entries=1)
        await cache.acquire("a", _writer())

        with pytest.raises(AssetCacheFullError) as exc_info:
            await cache.acquire("b", _writer())

        assert exc_info.value.kind == "asset-resolution"
        assert "b" not in cache
        assert not os.path.exists(cache.path_for("b"))

    @pytest.mark.asyncio
    async def test_byte_budget(self, temp_output_dir):
        cache = AssetCache(str(temp_output_dir / "cache"), max_bytes=15)
        await cache.acquire("a", _writer(b"1" * 10))
        cache.release("a")
        await cache.acquire("b", _writer(b"2" * 10))
        assert "a" not in cache
        assert cache.total_bytes == 10

    @pytest.mark.asyncio
    async def test_close_deletes_owned_files_only(self, temp_output_dir):
        cache = AssetCache(str(temp_output_dir / "cache"))
        owned = await cache.acquire("owned", _writer())
        local = temp_output_dir / "local.mp4"
        local.write_bytes(b"keep")

        async def borrow(path: str) -> CachedAsset:
            return CachedAsset(key="local", path=str(local), size_bytes=4, owned=False)

        await cache.acquire("local", borrow)
        cache.close()

        assert len(cache) == 0
        assert not os.path.exists(owned.path)
        assert local.exists()
