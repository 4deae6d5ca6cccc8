"""
Source fetcher: turns a BatchItem's source_uri into bytes.

http(s) URIs are downloaded (the ingestion transport hands out file URLs);
anything else is a path relative to the artifact store, where the API
keeps direct uploads.
"""

from typing import Optional

import httpx
import structlog

from app.errors import SourceFetchError
from app.storage.artifact_store import ArtifactStore

logger = structlog.get_logger(__name__)


class SourceFetcher:
    def __init__(
        self,
        artifact_store: ArtifactStore,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.artifact_store = artifact_store
        self.timeout = timeout
        self._transport = transport

    async def fetch(self, source_uri: str) -> bytes:
        if source_uri.startswith(("http://", "https://")):
            return await self._download(source_uri)
        try:
            return self.artifact_store.load_bytes(source_uri)
        except (FileNotFoundError, ValueError) as e:
            raise SourceFetchError(str(e)) from e

    async def _download(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SourceFetchError(f"Download failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise SourceFetchError(f"Download failed: {type(e).__name__}: {e}") from e

        logger.debug("source_downloaded", size_bytes=len(response.content))
        return response.content
