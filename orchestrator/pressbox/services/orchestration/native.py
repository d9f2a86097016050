"""
Native Environment Backend

Runs a site directly on the host with the PHP built-in web server:

    php -c <path>/conf/php.ini -S 127.0.0.1:<port> -t <path>/public

Site layout under site.path:

    public/                  WordPress docroot
    public/wp-content/       themes, plugins, uploads (+ database/ for SQLite)
    conf/php.ini
    logs/server.log          PHP server stdout/stderr, appended across runs
    run/php-server.pid

The database is either SQLite through the db.php drop-in (no extra process)
or a schema on the shared MySQL/MariaDB server. The orchestrator makes sure
the shared server is up before start(); the backend only creates the site's
schema on it.
"""

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Dict, Optional, Tuple

import aiofiles.os
import psutil

from ...config import Settings
from ...errors import BackendUnavailable, ProvisionError
from ...models import Site
from ...schemas import DatabaseEngine
from ...utils.async_fileio import (
    is_empty_dir_async,
    read_tail_async,
    rmtree_async,
    write_text_async,
)
from ...utils.async_subprocess import check_command_exists, run_async
from ...utils.slug_generator import database_identifier
from ..database_servers import DatabaseServerManager
from ..site_templates import render_php_ini, render_placeholder_index, render_wp_config
from ..wordpress_source import WordPressSource
from .base import BaseEnvironmentBackend
from .environment import SiteEnvironment

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r'^[A-Za-z0-9_]+$')


class NativeBackend(BaseEnvironmentBackend):
    """PHP built-in server per site, tracked by PID."""

    def __init__(
        self,
        settings: Settings,
        db_servers: DatabaseServerManager,
        wordpress_source: Optional[WordPressSource] = None,
    ):
        self.settings = settings
        self.db_servers = db_servers
        self.wordpress_source = wordpress_source or WordPressSource(settings)
        self.host = settings.loopback_ip
        # Children we spawned in this process, so they can be reaped on stop
        self._processes: Dict[str, asyncio.subprocess.Process] = {}

    @property
    def environment(self) -> SiteEnvironment:
        return SiteEnvironment.NATIVE

    # =========================================================================
    # PATHS
    # =========================================================================

    def docroot(self, site: Site) -> Path:
        return self.site_path(site) / "public"

    def content_dir(self, site: Site) -> Path:
        return self.docroot(site) / "wp-content"

    def pid_file(self, site: Site) -> Path:
        return self.site_path(site) / "run" / "php-server.pid"

    def log_file(self, site: Site) -> Path:
        return self.site_path(site) / "logs" / "server.log"

    def php_ini(self, site: Site) -> Path:
        return self.site_path(site) / "conf" / "php.ini"

    # =========================================================================
    # AVAILABILITY
    # =========================================================================

    async def check_available(self) -> Tuple[bool, str]:
        php = self.settings.php_binary
        if not await check_command_exists(php):
            return False, f"PHP binary '{php}' not found. Install PHP or set PRESSBOX_PHP_BINARY."

        try:
            result = await run_async([php, "-v"], timeout=self.settings.process_spawn_timeout_seconds)
        except (OSError, asyncio.TimeoutError) as e:
            return False, f"PHP binary '{php}' could not be run: {e}"

        if not result.success:
            return False, f"PHP binary '{php}' failed: {result.stderr.strip()}"
        version_line = result.stdout.splitlines()[0] if result.stdout else php
        return True, version_line

    async def _require_php(self) -> None:
        available, description = await self.check_available()
        if not available:
            raise BackendUnavailable(
                "PHP runtime is not available",
                remediation=description
            )

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(self, site: Site) -> Site:
        await self._require_php()

        site_path = self.site_path(site)
        if not await is_empty_dir_async(site_path):
            raise ProvisionError(f"Site path {site_path} already exists and is not empty")

        logger.info(f"[NATIVE] Provisioning {site.name} at {site_path}")
        try:
            await self._provision(site)
        except Exception:
            await rmtree_async(site_path)
            raise

        logger.info(f"[NATIVE] Provisioned {site.name}")
        return site

    async def _provision(self, site: Site) -> None:
        docroot = self.docroot(site)
        engine = DatabaseEngine(site.database_engine)

        for directory in (docroot, self.pid_file(site).parent, self.log_file(site).parent):
            await aiofiles.os.makedirs(directory, exist_ok=True)

        if self.settings.download_wordpress:
            await self.wordpress_source.install_core(site.wordpress_version, docroot)
            if engine == DatabaseEngine.SQLITE:
                await self.wordpress_source.install_sqlite_dropin(docroot)
        else:
            await write_text_async(docroot / "index.php", render_placeholder_index(site.name))

        for sub in ("themes", "plugins", "uploads"):
            await aiofiles.os.makedirs(self.content_dir(site) / sub, exist_ok=True)

        if engine == DatabaseEngine.SQLITE:
            sqlite_dir = self.content_dir(site) / "database"
            await aiofiles.os.makedirs(sqlite_dir, exist_ok=True)
            site.db_name = "wordpress"
            site.db_user = ""
            site.db_password = ""
            db_host = "localhost"
        else:
            record = self.db_servers.get_record(engine)
            site.db_name = site.db_name or database_identifier(site.slug)
            # Shared servers are bootstrapped with a passwordless local root
            site.db_user = "root"
            site.db_password = ""
            db_host = f"127.0.0.1:{record.port}"
            sqlite_dir = None

        await write_text_async(
            docroot / "wp-config.php",
            render_wp_config(
                db_name=site.db_name,
                db_user=site.db_user,
                db_password=site.db_password,
                db_host=db_host,
                ssl=False,
                use_sqlite=engine == DatabaseEngine.SQLITE,
                sqlite_dir=str(sqlite_dir) if sqlite_dir else None,
                multisite=site.multisite,
            ),
        )
        await write_text_async(self.php_ini(site), render_php_ini(self.settings))

    # =========================================================================
    # START / STOP
    # =========================================================================

    async def start(self, site: Site) -> None:
        if await self.is_running(site):
            logger.info(f"[NATIVE] {site.name} already running on port {site.port}")
            return

        # Clear a stale server left over from a crashed run
        await self._terminate(site)

        engine = DatabaseEngine(site.database_engine)
        if engine.is_shared_server:
            await self._ensure_schema(site, engine)

        docroot = self.docroot(site)
        if not await aiofiles.os.path.isdir(docroot):
            raise ProvisionError(f"Docroot {docroot} is missing; recreate the site")

        cmd = [self.settings.php_binary]
        if await aiofiles.os.path.exists(self.php_ini(site)):
            cmd += ["-c", str(self.php_ini(site))]
        cmd += ["-S", f"{self.host}:{site.port}", "-t", str(docroot)]

        env = dict(os.environ)
        env.setdefault("PHP_CLI_SERVER_WORKERS", "4")

        log_path = self.log_file(site)
        await aiofiles.os.makedirs(log_path.parent, exist_ok=True)
        logger.info(f"[NATIVE] Starting {site.name}: {' '.join(cmd)}")

        log_handle = open(log_path, "ab")
        try:
            process = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=str(docroot),
                    env=env,
                    start_new_session=True,
                ),
                timeout=self.settings.process_spawn_timeout_seconds,
            )
        except FileNotFoundError as e:
            raise BackendUnavailable(
                f"PHP binary '{self.settings.php_binary}' not found",
                remediation="Install PHP or set PRESSBOX_PHP_BINARY."
            ) from e
        except asyncio.TimeoutError as e:
            raise ProvisionError(f"Timed out spawning PHP server for {site.name}") from e
        finally:
            log_handle.close()

        # An immediate exit (port bound, bad ini) is a launch failure, not a liveness timeout
        try:
            await asyncio.wait_for(process.wait(), timeout=0.5)
        except asyncio.TimeoutError:
            pass

        if process.returncode is not None:
            tail = await read_tail_async(log_path, 10)
            raise ProvisionError(
                f"PHP server for {site.name} exited with code {process.returncode}",
                remediation=tail.strip() or None
            )

        self._processes[site.id] = process
        await write_text_async(self.pid_file(site), str(process.pid))
        logger.info(f"[NATIVE] {site.name} launched (pid {process.pid}) on port {site.port}")

    async def _ensure_schema(self, site: Site, engine: DatabaseEngine) -> None:
        """Create the site's database on the shared server if it does not exist."""
        if not site.db_name or not _IDENTIFIER_RE.match(site.db_name):
            raise ProvisionError(f"Invalid database name for {site.name}: {site.db_name!r}")

        record = self.db_servers.get_record(engine)
        cmd = [
            self.settings.mysql_client_binary,
            "--protocol=TCP",
            "-h", "127.0.0.1",
            "-P", str(record.port),
            "-u", site.db_user or "root",
        ]
        if site.db_password:
            cmd.append(f"-p{site.db_password}")
        cmd += ["-e", f"CREATE DATABASE IF NOT EXISTS `{site.db_name}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"]

        try:
            result = await run_async(cmd, timeout=self.settings.process_spawn_timeout_seconds)
        except FileNotFoundError as e:
            raise BackendUnavailable(
                f"MySQL client '{self.settings.mysql_client_binary}' not found",
                remediation="Install the MySQL/MariaDB client tools or set PRESSBOX_MYSQL_CLIENT_BINARY."
            ) from e
        except asyncio.TimeoutError as e:
            raise BackendUnavailable(f"Timed out creating database {site.db_name} on {engine.value}") from e

        if not result.success:
            raise ProvisionError(f"Failed to create database {site.db_name}: {result.stderr.strip()}")

    async def stop(self, site: Site) -> None:
        if await self._terminate(site):
            logger.info(f"[NATIVE] {site.name} stopped")

    def _read_pid(self, site: Site) -> Optional[int]:
        process = self._processes.get(site.id)
        if process is not None and process.returncode is None:
            return process.pid
        try:
            return int(self.pid_file(site).read_text().strip())
        except (OSError, ValueError):
            return None

    def _is_php_server(self, pid: int) -> bool:
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return False
            return "php" in proc.name().lower()
        except psutil.Error:
            return False

    async def _terminate(self, site: Site) -> bool:
        """
        SIGTERM the site's PHP server, SIGKILL after the grace period.

        Returns:
            True if a live server was stopped
        """
        pid = self._read_pid(site)
        stopped = False

        if pid is not None and self._is_php_server(pid):
            grace = self.settings.stop_grace_seconds

            def _kill():
                try:
                    proc = psutil.Process(pid)
                    proc.terminate()
                    try:
                        proc.wait(timeout=grace)
                    except psutil.TimeoutExpired:
                        logger.warning(f"[NATIVE] {site.name} (pid {pid}) ignored SIGTERM, killing")
                        proc.kill()
                        proc.wait(timeout=5)
                except psutil.NoSuchProcess:
                    pass

            await asyncio.to_thread(_kill)
            stopped = True

        process = self._processes.pop(site.id, None)
        if process is not None and process.returncode is None:
            await process.wait()

        pid_file = self.pid_file(site)
        if await aiofiles.os.path.exists(pid_file):
            await aiofiles.os.remove(pid_file)
        return stopped

    # =========================================================================
    # DELETE / LOGS / STATUS
    # =========================================================================

    async def delete(self, site: Site) -> None:
        await self.stop(site)
        await rmtree_async(self.site_path(site))
        logger.info(f"[NATIVE] Deleted {site.name} ({site.path})")

    async def logs(self, site: Site, lines: int = 200) -> str:
        return await read_tail_async(self.log_file(site), lines)

    async def is_running(self, site: Site) -> bool:
        """Running = PHP server process alive AND the port accepts connections."""
        pid = self._read_pid(site)
        if pid is None or not self._is_php_server(pid):
            return False
        if site.port is None:
            return False
        return await self.port_accepts_connections(self.host, site.port)
