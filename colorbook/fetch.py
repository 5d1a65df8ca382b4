import asyncio
import logging

import httpx

from .errors import UpstreamError
from .storage import ArtifactStore

logger = logging.getLogger(__name__)


class Fetcher:
    """Resolves a page URL to bytes, reading our own artifacts straight from the store."""

    def __init__(self, http: httpx.AsyncClient, store: ArtifactStore):
        self.http = http
        self.store = store

    async def fetch(self, url: str) -> bytes:
        name = self.store.name_from_url(url)
        if name is not None:
            return await asyncio.to_thread(self.store.read, name)

        try:
            response = await self.http.get(url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("Fetching %s returned %s", url, exc.response.status_code)
            raise UpstreamError(f"failed to fetch {url}: HTTP {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            logger.warning("Fetching %s failed: %s", url, exc)
            raise UpstreamError(f"failed to fetch {url}: {exc}") from exc
        return response.content
