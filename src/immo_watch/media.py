"""Download listing images and documents to local disk."""

import asyncio
import hashlib
import random
import re
from collections.abc import Sequence
from pathlib import Path
from typing import Final

import httpx

from immo_watch.logging import get_logger
from immo_watch.models import MediaPaths

logger = get_logger(__name__)

_MEDIA_DIR: Final = "media"

_IMAGE_EXTENSIONS: Final = (".jpg", ".jpeg", ".png", ".gif", ".webp")
_DOCUMENT_EXTENSIONS: Final = (".pdf", ".tiff", ".tif", ".bmp", *_IMAGE_EXTENSIONS)


def safe_dir_name(listing_hash: str) -> str:
    """Convert a listing hash to a filesystem-safe directory name."""
    return re.sub(r"[^a-zA-Z0-9_-]", "_", listing_hash)


def url_to_filename(url: str, prefix: str, index: int, *, default_ext: str) -> str:
    """Deterministic filename from URL using MD5 hash prefix.

    E.g. "image_003_a1b2c3d4.jpg"
    """
    url_hash = hashlib.md5(url.encode()).hexdigest()[:8]
    path = url.split("?")[0].lower()
    ext = default_ext
    for candidate in _DOCUMENT_EXTENSIONS:
        if path.endswith(candidate):
            ext = candidate.lstrip(".")
            break
    return f"{prefix}_{index:03d}_{url_hash}.{ext}"


class MediaDownloader:
    """Store a listing's media under ``<data_dir>/media/<listing hash>/``.

    Files already on disk are not downloaded again. Single failed downloads
    are skipped; the listing keeps whatever could be fetched.
    """

    def __init__(
        self,
        data_dir: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        delay_range: tuple[float, float] = (0.1, 0.3),
    ) -> None:
        self._root = Path(data_dir) / _MEDIA_DIR
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._delay_range = delay_range

    def listing_dir(self, listing_hash: str) -> Path:
        return self._root / safe_dir_name(listing_hash)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    async def _download_file(self, url: str, path: Path) -> bool:
        client = await self._get_client()
        try:
            response = await client.get(url)
            if response.status_code != 200:
                logger.debug("media_download_status", url=url, status=response.status_code)
                return False
            path.write_bytes(response.content)
            return True
        except httpx.HTTPError as e:
            logger.debug("media_download_failed", url=url, error=str(e))
            return False
        except OSError as e:
            logger.warning("media_write_failed", path=str(path), error=str(e))
            return False

    async def _delay(self) -> None:
        low, high = self._delay_range
        if high > 0:
            await asyncio.sleep(random.uniform(low, high))

    async def _download_all(
        self, urls: Sequence[str], directory: Path, prefix: str, default_ext: str
    ) -> list[str]:
        paths: list[str] = []
        directory.mkdir(parents=True, exist_ok=True)
        for index, url in enumerate(urls, start=1):
            if not url:
                continue
            path = directory / url_to_filename(url, prefix, index, default_ext=default_ext)
            if path.exists():
                paths.append(str(path))
                continue
            if await self._download_file(url, path):
                paths.append(str(path))
            if index < len(urls):
                await self._delay()
        return paths

    async def download(
        self, listing_hash: str, image_urls: Sequence[str], documents: Sequence[str]
    ) -> MediaPaths:
        """Download a listing's images and documents.

        Returns:
            Local paths of the files that are on disk afterwards.
        """
        base = self.listing_dir(listing_hash)
        image_paths = await self._download_all(image_urls, base / "images", "image", "jpg")
        doc_paths = await self._download_all(documents, base / "documents", "doc", "pdf")
        logger.debug(
            "media_downloaded",
            listing_hash=listing_hash,
            images=len(image_paths),
            documents=len(doc_paths),
        )
        return MediaPaths(image_paths=tuple(image_paths), doc_paths=tuple(doc_paths))

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
