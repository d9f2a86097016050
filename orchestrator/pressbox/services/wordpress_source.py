"""
WordPress core and SQLite drop-in fetcher for native sites.

Archives are downloaded once per version into the cache directory and
extracted from there for every new site.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
import httpx

from ..config import Settings
from ..errors import ProvisionError
from ..utils.async_fileio import extract_zip_async

logger = logging.getLogger(__name__)


class WordPressSource:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.cache_dir = settings.wordpress_cache_path
        self._transport = transport
        self._locks: dict = {}

    def _archive_url(self, version: str) -> str:
        base = self.settings.wordpress_download_url.rstrip("/")
        if version in ("", "latest"):
            return f"{base}/latest.zip"
        return f"{base}/wordpress-{version}.zip"

    async def _download(self, url: str, target: Path) -> Path:
        lock = self._locks.setdefault(str(target), asyncio.Lock())
        async with lock:
            if await aiofiles.os.path.exists(target):
                return target

            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            partial = target.with_suffix(target.suffix + ".part")
            logger.info(f"[WORDPRESS] Downloading {url}")

            try:
                async with httpx.AsyncClient(
                    transport=self._transport,
                    timeout=self.settings.wordpress_download_timeout_seconds,
                    follow_redirects=True,
                ) as client:
                    async with client.stream("GET", url) as response:
                        response.raise_for_status()
                        async with aiofiles.open(partial, "wb") as f:
                            async for chunk in response.aiter_bytes():
                                await f.write(chunk)
            except httpx.HTTPError as e:
                if await aiofiles.os.path.exists(partial):
                    await aiofiles.os.remove(partial)
                raise ProvisionError(f"Failed to download {url}: {e}") from e

            await aiofiles.os.replace(partial, target)
            logger.info(f"[WORDPRESS] Cached {target.name}")
            return target

    async def install_core(self, version: str, docroot: Path) -> None:
        """Extract WordPress core into docroot."""
        archive = await self._download(
            self._archive_url(version),
            self.cache_dir / f"wordpress-{version or 'latest'}.zip",
        )
        await extract_zip_async(archive, docroot, strip_prefix="wordpress/")

    async def install_sqlite_dropin(self, docroot: Path) -> None:
        """
        Install the SQLite Database Integration plugin and activate its db.php drop-in.
        """
        archive = await self._download(
            self.settings.sqlite_plugin_download_url,
            self.cache_dir / "sqlite-database-integration.zip",
        )
        plugins_dir = docroot / "wp-content" / "plugins"
        await extract_zip_async(archive, plugins_dir)

        plugin_dir = plugins_dir / "sqlite-database-integration"
        dropin_template = plugin_dir / "db.copy"
        if not await aiofiles.os.path.exists(dropin_template):
            raise ProvisionError(f"SQLite plugin archive is missing {dropin_template.name}")

        async with aiofiles.open(dropin_template, "r", encoding="utf-8") as f:
            dropin = await f.read()
        dropin = (
            dropin
            .replace("{SQLITE_IMPLEMENTATION_FOLDER_PATH}", str(plugin_dir))
            .replace("{SQLITE_PLUGIN}", "sqlite-database-integration/load.php")
        )
        async with aiofiles.open(docroot / "wp-content" / "db.php", "w", encoding="utf-8") as f:
            await f.write(dropin)
