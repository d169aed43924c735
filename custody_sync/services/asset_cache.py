"""
Offline asset cache for the application shell

Mirrors the browser cache-storage protocol: named caches of URL -> response,
pre-populated on install, pruned to the current version on activate, and
consulted per request class:

- navigations: network first, then the exact cached match, then the shell
  document
- scripts and styles: network first, then the exact cached match only
- everything else: cache first, fetching and storing on a miss
"""
import logging
from typing import NamedTuple, Optional
from urllib.parse import urljoin, urlsplit

import httpx
from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from ..core.config import settings
from ..core.database import SessionLocal
from ..core.errors import AssetUnavailableError
from ..db.models import AssetCacheEntry

logger = logging.getLogger(__name__)

NETWORK_FIRST_DESTINATIONS = ("script", "style")

# Hop-by-hop and length headers are recomputed when the body is replayed
_UNCACHED_HEADERS = {"connection", "keep-alive", "transfer-encoding", "content-encoding", "content-length"}


class AssetRequest(NamedTuple):
    url: str
    mode: str = "no-cors"
    destination: str = ""


class AssetResponse(NamedTuple):
    status_code: int
    headers: dict[str, str]
    body: bytes
    source: str  # "network" or "cache"


class CacheStorage:
    """Named response caches persisted in the local database"""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    def keys(self) -> list[str]:
        with self.session_factory() as db:
            rows = db.execute(select(AssetCacheEntry.cache_name).distinct()).scalars().all()
        return sorted(rows)

    def delete(self, cache_name: str) -> bool:
        with self.session_factory() as db:
            result = db.execute(delete(AssetCacheEntry).where(AssetCacheEntry.cache_name == cache_name))
            db.commit()
        return result.rowcount > 0

    def match(self, cache_name: str, url: str) -> Optional[AssetResponse]:
        with self.session_factory() as db:
            entry = db.get(AssetCacheEntry, (cache_name, url))
            if entry is None:
                return None
            return AssetResponse(entry.status_code, dict(entry.headers), entry.body, "cache")

    def put(self, cache_name: str, url: str, response: AssetResponse) -> None:
        self.put_all(cache_name, [(url, response)])

    def put_all(self, cache_name: str, entries: list[tuple[str, AssetResponse]]) -> None:
        """Store every entry in one transaction"""
        with self.session_factory() as db:
            for url, response in entries:
                headers = {k: v for k, v in response.headers.items() if k.lower() not in _UNCACHED_HEADERS}
                db.merge(
                    AssetCacheEntry(
                        cache_name=cache_name,
                        url=url,
                        status_code=response.status_code,
                        headers=headers,
                        body=response.body,
                    )
                )
            db.commit()


class OfflineAssetCache:
    """Serves the application shell with an offline fallback"""

    def __init__(
        self,
        storage: Optional[CacheStorage] = None,
        origin: Optional[str] = None,
        cache_name: Optional[str] = None,
        shell_urls: Optional[list[str]] = None,
        shell_document: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.storage = storage or CacheStorage()
        self.origin = (origin or settings.APP_ORIGIN).rstrip("/")
        self.cache_name = cache_name or settings.ASSET_CACHE_NAME
        self.shell_urls = shell_urls if shell_urls is not None else list(settings.ASSET_SHELL_URLS)
        self.shell_document = shell_document or settings.ASSET_SHELL_DOCUMENT
        self.transport = transport
        self.timeout = timeout
        self.controlling = False

    def _absolute(self, url: str) -> str:
        return urljoin(self.origin + "/", url)

    def _cache_key(self, url: str) -> str:
        """Cache entries are keyed by path+query for same-origin URLs"""
        absolute = self._absolute(url)
        if not self._same_origin(absolute):
            return absolute
        parts = urlsplit(absolute)
        return parts.path + (f"?{parts.query}" if parts.query else "")

    def _same_origin(self, url: str) -> bool:
        target = urlsplit(self._absolute(url))
        origin = urlsplit(self.origin)
        return (target.scheme, target.netloc) == (origin.scheme, origin.netloc)

    async def _fetch(self, url: str) -> AssetResponse:
        """Fetch from the network; transport failures raise httpx.HTTPError"""
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.get(self._absolute(url))
        return AssetResponse(resp.status_code, dict(resp.headers), resp.content, "network")

    async def install(self) -> None:
        """
        Pre-cache the shell URLs into the current cache

        All or nothing: if any shell URL cannot be fetched with a 200, nothing
        is stored and AssetUnavailableError is raised.
        """
        fetched = []
        for url in self.shell_urls:
            try:
                response = await self._fetch(url)
            except httpx.HTTPError as e:
                raise AssetUnavailableError(f"Failed to pre-cache {url}: {e.__class__.__name__}") from e
            if response.status_code != 200:
                raise AssetUnavailableError(f"Failed to pre-cache {url}: HTTP {response.status_code}")
            fetched.append((self._cache_key(url), response))

        self.storage.put_all(self.cache_name, fetched)
        logger.info(f"Pre-cached {len(fetched)} shell asset(s) into {self.cache_name}")

    def activate(self) -> list[str]:
        """Delete every cache except the current version and take control"""
        removed = []
        for name in self.storage.keys():
            if name != self.cache_name:
                self.storage.delete(name)
                removed.append(name)
        if removed:
            logger.info(f"Deleted stale asset caches: {', '.join(removed)}")
        self.controlling = True
        return removed

    async def handle(self, request: AssetRequest) -> AssetResponse:
        """
        Answer a request according to its class

        Raises:
            AssetUnavailableError: network unreachable and no usable cached copy
        """
        if request.mode == "navigate":
            return await self._network_first(request, shell_fallback=True)
        if request.destination in NETWORK_FIRST_DESTINATIONS:
            return await self._network_first(request, shell_fallback=False)
        return await self._cache_first(request)

    async def _network_first(self, request: AssetRequest, shell_fallback: bool) -> AssetResponse:
        key = self._cache_key(request.url)
        try:
            response = await self._fetch(request.url)
        except httpx.HTTPError as e:
            logger.info(f"Network unavailable for {key} ({e.__class__.__name__}), trying cache")
            cached = self.storage.match(self.cache_name, key)
            if cached is None and shell_fallback:
                cached = self.storage.match(self.cache_name, self.shell_document)
            if cached is None:
                raise AssetUnavailableError(f"{key} is not available offline") from e
            return cached

        if response.status_code == 200:
            self.storage.put(self.cache_name, key, response)
        return response

    async def _cache_first(self, request: AssetRequest) -> AssetResponse:
        key = self._cache_key(request.url)
        cached = self.storage.match(self.cache_name, key)
        if cached is not None:
            return cached

        try:
            response = await self._fetch(request.url)
        except httpx.HTTPError as e:
            raise AssetUnavailableError(f"{key} is not available offline") from e

        if response.status_code == 200 and self._same_origin(request.url):
            self.storage.put(self.cache_name, key, response)
        return response


# Singleton instance
asset_cache = OfflineAssetCache()
