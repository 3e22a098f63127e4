from __future__ import annotations

import asyncio
import logging
import pathlib
import re
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urlparse
from uuid import UUID

import httpx
from PIL import Image

from media_composer.config import Settings
from media_composer.errors import ConfigError, FetchError
from media_composer.models.domain import AssetRole, LocalAsset
from media_composer.storage.workspace import JobWorkspace

DEFAULT_SUFFIX = {
    AssetRole.IMAGE: ".png",
    AssetRole.AUDIO: ".mp3",
    AssetRole.SUBTITLE: ".srt",
}
_SUFFIX_RE = re.compile(r"^\.[A-Za-z0-9]{1,5}$")


@dataclass(frozen=True)
class FetchRequest:
    url: str
    role: AssetRole
    index: int = 0


def validate_url(url: str | None, field: str) -> str:
    candidate = (url or "").strip()
    if not candidate:
        raise ConfigError(f"{field} required")
    parsed = urlparse(candidate)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"{field} must be an http(s) URL")
    return candidate


def suffix_for(url: str, role: AssetRole) -> str:
    suffix = pathlib.PurePosixPath(urlparse(url).path).suffix.lower()
    if _SUFFIX_RE.match(suffix):
        return suffix
    return DEFAULT_SUFFIX.get(role, ".bin")


def verify_image(path: str) -> None:
    try:
        with Image.open(path) as image:
            image.verify()
    except (OSError, SyntaxError, ValueError) as exc:
        raise FetchError("image asset is not a decodable image") from exc


class AssetFetcher:
    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.log = logger or logging.getLogger(__name__)

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.settings.fetch_timeout, connect=self.settings.fetch_connect_timeout)
        return httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            max_redirects=self.settings.fetch_max_redirects,
            transport=self.transport,
        )

    async def fetch_all(
        self,
        requests: List[FetchRequest],
        workspace: JobWorkspace,
        job_id: UUID | None = None,
    ) -> List[LocalAsset]:
        """Download every request concurrently; repeated URLs are fetched once."""
        async with self._client() as client:
            pending: Dict[str, asyncio.Task] = {}
            for request in requests:
                if request.url not in pending:
                    pending[request.url] = asyncio.ensure_future(
                        self.fetch(client, request, workspace, job_id=job_id)
                    )
            results = await asyncio.gather(*pending.values(), return_exceptions=True)
        by_url = dict(zip(pending.keys(), results))
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return [by_url[request.url] for request in requests]

    async def fetch(
        self,
        client: httpx.AsyncClient,
        request: FetchRequest,
        workspace: JobWorkspace,
        job_id: UUID | None = None,
    ) -> LocalAsset:
        url = request.url
        asset = workspace.allocate(request.role, suffix_for(url, request.role), request.index, source_url=url)
        extra = {"job_id": str(job_id) if job_id else None, "url": url, "role": request.role.value}
        try:
            # fetch_timeout bounds the whole retrieval, not only each read
            written = await asyncio.wait_for(
                self._download(client, url, asset.path),
                timeout=self.settings.fetch_timeout,
            )
        except asyncio.TimeoutError as exc:
            self.log.warning("asset download timed out", extra=extra)
            raise FetchError(f"download timed out {url}", url=url) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            self.log.warning("asset download failed", extra={**extra, "status": status})
            raise FetchError(f"download failed {status} {url}", url=url, status=status) from exc
        except httpx.TimeoutException as exc:
            self.log.warning("asset download timed out", extra=extra)
            raise FetchError(f"download timed out {url}", url=url) from exc
        except httpx.TooManyRedirects as exc:
            raise FetchError(f"too many redirects {url}", url=url) from exc
        except httpx.HTTPError as exc:
            self.log.warning("asset download failed", extra=extra, exc_info=True)
            raise FetchError(f"download failed {url}: {exc}", url=url) from exc
        except OSError as exc:
            raise FetchError(f"could not store download {url}: {exc}", url=url) from exc
        if written == 0:
            raise FetchError(f"download returned an empty body {url}", url=url)
        if request.role == AssetRole.IMAGE:
            await asyncio.to_thread(verify_image, asset.path)
        self.log.info("asset downloaded", extra={**extra, "size": written})
        return LocalAsset(
            path=asset.path,
            role=asset.role,
            index=asset.index,
            source_url=url,
            size=written,
        )

    async def _download(self, client: httpx.AsyncClient, url: str, path: str) -> int:
        written = 0
        async with client.stream("GET", url) as resp:
            resp.raise_for_status()
            with open(path, "wb") as f:
                async for chunk in resp.aiter_bytes():
                    written += len(chunk)
                    if written > self.settings.fetch_max_bytes:
                        raise FetchError(f"download exceeds {self.settings.fetch_max_bytes} bytes {url}", url=url)
                    f.write(chunk)
        return written
