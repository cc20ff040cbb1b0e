"""Resolves timeline element sources to local files for one export job.

Sources may be local paths, file:// URLs or http(s) URLs. Remote sources are
downloaded into the job's AssetCache with bounded retry on transient network
failures. Audio-capable sources are probed so the compiler knows whether a
file carries an audio stream.

What happens to an element whose source cannot be resolved is decided by the
asset policy:
- strict: the AssetResolutionError propagates and the job fails
- lenient: the element is dropped and a warning is recorded on the job
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator
from urllib.parse import unquote, urlparse

import httpx

from lemona_export.config import Settings, get_settings
from lemona_export.exceptions import AssetResolutionError
from lemona_export.schemas.timeline import AUDIO_CAPABLE_KINDS, TimelineElement
from lemona_export.services.asset_cache import AssetCache, CachedAsset
from lemona_export.utils.media_info import MediaInfo, probe_media
from lemona_export.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


class _RetryableStatusError(Exception):
    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}")


@dataclass
class ResolvedTimeline:
    """Elements rewritten to point at local files."""

    elements: list[TimelineElement]
    audio_sources: dict[str, bool] = field(default_factory=dict)
    dropped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    # element id -> cache key leased on its behalf
    leases: dict[str, str] = field(default_factory=dict)


class AssetResolver:
    def __init__(
        self,
        cache: AssetCache,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        prober: Callable[[str], MediaInfo] = probe_media,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cache = cache
        self.settings = settings or get_settings()
        self._client = client
        self.prober = prober
        self._sleep = sleep

    @asynccontextmanager
    async def _client_scope(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(
            timeout=self.settings.asset_download_timeout_s,
            follow_redirects=True,
        ) as client:
            yield client

    async def resolve(
        self,
        elements: Sequence[TimelineElement],
        policy: str = "strict",
    ) -> ResolvedTimeline:
        """Resolve every element's source, applying the asset policy.

        Args:
            elements: Timeline elements (not modified)
            policy: "strict" or "lenient"

        Returns:
            ResolvedTimeline with element copies pointing at local files

        Raises:
            AssetResolutionError: Under the strict policy
        """
        probe_keys = {
            element.asset_source
            for element in elements
            if element.asset_source and element.kind in AUDIO_CAPABLE_KINDS
        }
        pending = [element for element in elements if element.asset_source]

        async with self._client_scope() as client:
            results = await asyncio.gather(
                *(self._acquire(client, element.asset_source, element.asset_source in probe_keys) for element in pending),
                return_exceptions=True,
            )
        outcome = dict(zip((element.id for element in pending), results))

        resolved = ResolvedTimeline(elements=[])
        for element_id, result in outcome.items():
            if isinstance(result, CachedAsset):
                resolved.leases[element_id] = result.key
        for element in elements:
            result = outcome.get(element.id)
            if result is None:
                resolved.elements.append(element)
                continue
            if isinstance(result, AssetResolutionError):
                if policy == "strict":
                    self.release(resolved)
                    raise result
                message = f"Dropped {element.kind} element {element.id}: {result.message}"
                logger.warning(f"[ASSETS] {message}")
                resolved.dropped.append(element.id)
                resolved.warnings.append(message)
                continue
            if isinstance(result, BaseException):
                self.release(resolved)
                raise result

            resolved.elements.append(element.model_copy(update={"source": result.path}))
            if result.has_audio is not None:
                resolved.audio_sources[result.path] = result.has_audio

        logger.info(
            f"[ASSETS] resolved {len(pending) - len(resolved.dropped)}/{len(pending)} sources "
            f"(cache hits={self.cache.hits}, misses={self.cache.misses})"
        )
        return resolved

    def release(self, resolved: ResolvedTimeline, element_ids: Iterable[str] | None = None) -> None:
        """Give back the cache leases held for resolved elements.

        Released entries stay usable until the cache needs the room, then
        they are the first to be evicted.

        Args:
            resolved: Result of resolve()
            element_ids: Elements whose sources are no longer needed (default: all)
        """
        ids = list(resolved.leases) if element_ids is None else [i for i in element_ids if i in resolved.leases]
        for element_id in ids:
            self.cache.release(resolved.leases.pop(element_id))

    async def _acquire(self, client: httpx.AsyncClient, source: str, probe: bool) -> CachedAsset:
        async def loader(target_path: str) -> CachedAsset:
            return await self._load(client, source, target_path, probe)

        return await self.cache.acquire(source, loader)

    async def _load(self, client: httpx.AsyncClient, source: str, target_path: str, probe: bool) -> CachedAsset:
        parsed = urlparse(source)
        owned = False
        if parsed.scheme in ("http", "https"):
            await self._download(client, source, target_path)
            path, owned = target_path, True
        elif parsed.scheme == "file":
            path = unquote(parsed.path)
        else:
            path = source

        if not os.path.isfile(path):
            raise AssetResolutionError(source, "file not found")

        has_audio = None
        if probe:
            try:
                info = await asyncio.to_thread(self.prober, path)
            except RuntimeError as e:
                if owned:
                    os.remove(path)
                raise AssetResolutionError(source, str(e), code="ASSET_UNREADABLE") from e
            has_audio = info.has_audio

        return CachedAsset(
            key=source,
            path=path,
            size_bytes=os.path.getsize(path),
            owned=owned,
            has_audio=has_audio,
        )

    async def _download(self, client: httpx.AsyncClient, url: str, target_path: str) -> None:
        partial = f"{target_path}.part"

        async def attempt() -> None:
            async with client.stream("GET", url) as response:
                if response.status_code in RETRYABLE_STATUS:
                    raise _RetryableStatusError(response.status_code)
                if response.status_code >= 400:
                    raise AssetResolutionError(url, f"HTTP {response.status_code}")
                with open(partial, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=1024 * 1024):
                        f.write(chunk)
            os.replace(partial, target_path)

        try:
            await retry_with_backoff(
                attempt,
                max_retries=self.settings.asset_download_retries,
                base_delay=self.settings.asset_retry_base_delay_s,
                retry_on=(httpx.TransportError, _RetryableStatusError),
                sleep=self._sleep,
            )
        except (httpx.TransportError, _RetryableStatusError) as e:
            raise AssetResolutionError(url, f"download failed: {e}") from e
        finally:
            if os.path.exists(partial):
                os.remove(partial)
        logger.info(f"[ASSETS] downloaded {url} -> {target_path}")
