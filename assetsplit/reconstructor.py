"""Runtime reassembly of split assets over HTTP.

The reconstructor looks up a requested asset in the published chunk manifest.
Split assets are fetched part by part, joined in index order and exposed
through a ``blob:`` URL from the caller's :class:`~assetsplit.blobs.BlobRegistry`.
Every failure degrades to the direct URL so the caller can always proceed.
"""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import unquote, urljoin, urlsplit

import httpx

from .blobs import BlobRegistry, is_object_url
from .config import Config
from .manifest import DEFAULT_MANIFEST_NAME, ChunkManifest, ManifestError, chunk_names

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


class ReconstructionError(RuntimeError):
    """Raised internally when a split asset cannot be reassembled."""


class ChunkFetchError(ReconstructionError):
    """A chunk request did not return a success status."""

    def __init__(self, url: str, status_code: int) -> None:
        super().__init__(f"Failed to fetch chunk {url} (HTTP {status_code})")
        self.url = url
        self.status_code = status_code


class Reconstructor:
    """Resolve asset URLs, transparently merging chunked uploads."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        registry: BlobRegistry,
        *,
        site_url: str,
        manifest_name: str = DEFAULT_MANIFEST_NAME,
        timeout: float = DEFAULT_TIMEOUT,
        max_concurrent_fetches: int = 1,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if max_concurrent_fetches < 1:
            raise ValueError("max_concurrent_fetches must be at least 1")
        self._client = client
        self._registry = registry
        self.site_url = site_url if site_url.endswith("/") else f"{site_url}/"
        self.manifest_name = manifest_name.lstrip("/")
        self.timeout = timeout
        self.max_concurrent_fetches = max_concurrent_fetches

    @classmethod
    def from_config(cls, config: Config, client: httpx.AsyncClient, registry: BlobRegistry) -> "Reconstructor":
        runtime = config.runtime
        return cls(
            client,
            registry,
            site_url=runtime.site_url,
            manifest_name=config.manifest_name,
            timeout=runtime.timeout,
            max_concurrent_fetches=runtime.max_concurrent_fetches,
        )

    @property
    def registry(self) -> BlobRegistry:
        return self._registry

    @property
    def manifest_url(self) -> str:
        return urljoin(self.site_url, self.manifest_name)

    def absolute_url(self, url: str) -> str:
        return urljoin(self.site_url, url)

    def manifest_key(self, url: str) -> str | None:
        """Root-relative manifest key for ``url``, or ``None`` if it lies outside the site."""
        site = urlsplit(self.site_url)
        target = urlsplit(self.absolute_url(url))
        if (target.scheme, target.netloc) != (site.scheme, site.netloc):
            return None
        path = unquote(target.path)
        root = unquote(site.path) or "/"
        if not path.startswith(root):
            return None
        key = path[len(root):].lstrip("/")
        return key or None

    async def resolve(self, base_path: str, file_name: str) -> str:
        """Return a usable URL for ``base_path + file_name``.

        Never raises: a missing manifest, a missing entry or any failure while
        reassembling yields the direct URL unchanged.
        """
        original_url = f"{base_path}{file_name}"
        try:
            async with asyncio.timeout(self.timeout):
                manifest = await self._fetch_manifest()
                if manifest is None:
                    return original_url

                key = self.manifest_key(original_url)
                total = manifest.get(key) if key else None
                if not total:
                    return original_url

                logger.info("Detected split file for %s, merging %d chunks...", file_name, total)
                payload = await self._fetch_chunks(self.absolute_url(original_url), total)
        except (httpx.HTTPError, ReconstructionError, TimeoutError, ValueError) as exc:
            logger.warning(
                "Failed to check/load split file for %s, falling back to original URL: %s",
                file_name,
                str(exc) or type(exc).__name__,
            )
            return original_url

        object_url = self._registry.create_object_url(payload)
        logger.info("Reconstructed %s (%d bytes) -> %s", file_name, len(payload), object_url)
        return object_url

    async def read(self, url: str) -> bytes:
        """Return the bytes behind a URL produced by :meth:`resolve`."""
        if is_object_url(url):
            return self._registry.get(url)
        response = await self._client.get(self.absolute_url(url))
        response.raise_for_status()
        return response.content

    async def _fetch_manifest(self) -> ChunkManifest | None:
        try:
            response = await self._client.get(self.manifest_url)
        except httpx.HTTPError as exc:
            logger.debug("Manifest request to %s failed: %s", self.manifest_url, exc)
            return None
        if not response.is_success:
            logger.debug("Manifest not available at %s (HTTP %d)", self.manifest_url, response.status_code)
            return None
        try:
            return ChunkManifest.from_json(response.content)
        except ManifestError as exc:
            logger.debug("Ignoring malformed manifest at %s: %s", self.manifest_url, exc)
            return None

    async def _fetch_chunks(self, url: str, total: int) -> bytes:
        urls = chunk_names(url, total)
        if self.max_concurrent_fetches == 1:
            payloads = [await self._fetch_chunk(chunk_url) for chunk_url in urls]
        else:
            payloads = await self._fetch_concurrently(urls)
        return b"".join(payloads)

    async def _fetch_concurrently(self, urls: list[str]) -> list[bytes]:
        semaphore = asyncio.Semaphore(self.max_concurrent_fetches)

        async def bounded(chunk_url: str) -> bytes:
            async with semaphore:
                return await self._fetch_chunk(chunk_url)

        tasks = [asyncio.ensure_future(bounded(chunk_url)) for chunk_url in urls]
        try:
            # gather keeps argument order, so completion order never affects assembly.
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _fetch_chunk(self, url: str) -> bytes:
        response = await self._client.get(url)
        if not response.is_success:
            raise ChunkFetchError(url, response.status_code)
        logger.debug("Fetched %s (%d bytes)", url, len(response.content))
        return response.content
