"""
Docker Compose Environment Backend

Each site is one compose project (project name = site slug) declared in
<path>/docker-compose.yml:

    db          mysql/mariadb
    wordpress   official image (apache, or php-fpm when the web server is nginx)
    nginx       only for web_server=nginx
    proxy       TLS terminator for apache sites with SSL

The compose file is regenerated on every start because the host port can
change between runs. WordPress files live in <path>/wordpress (bind mount),
the database in a named volume removed on delete.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os
import docker
import yaml

from ...config import Settings
from ...errors import BackendUnavailable, ProvisionError
from ...models import Site
from ...schemas import DatabaseEngine, WebServer
from ...utils.async_fileio import (
    is_empty_dir_async,
    read_text_async,
    rmtree_async,
    write_text_async,
)
from ...utils.async_subprocess import SubprocessResult, docker_compose
from ..site_templates import (
    build_compose_config,
    generate_password,
    generate_self_signed_cert,
    render_nginx_conf,
    render_proxy_conf,
)
from .base import BaseEnvironmentBackend
from .environment import SiteEnvironment

logger = logging.getLogger(__name__)

# Output from `compose down` when the stack is already gone
_ALREADY_REMOVED_MARKERS = ("no such container", "not found", "no resource found")


class ContainerBackend(BaseEnvironmentBackend):
    """One Docker Compose project per site."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.docker_binary = settings.docker_binary

    @property
    def environment(self) -> SiteEnvironment:
        return SiteEnvironment.CONTAINER

    # =========================================================================
    # PATHS
    # =========================================================================

    def _get_compose_file_path(self, site: Site) -> Path:
        return self.site_path(site) / "docker-compose.yml"

    def wordpress_dir(self, site: Site) -> Path:
        return self.site_path(site) / "wordpress"

    def content_dir(self, site: Site) -> Path:
        return self.wordpress_dir(site) / "wp-content"

    # =========================================================================
    # AVAILABILITY
    # =========================================================================

    async def check_available(self) -> Tuple[bool, str]:
        def _ping() -> str:
            client = docker.from_env(timeout=5)
            try:
                client.ping()
                return client.version().get("Version", "unknown")
            finally:
                client.close()

        try:
            version = await asyncio.to_thread(_ping)
        except docker.errors.DockerException as e:
            return False, f"Docker is not running or not installed ({e}). Start Docker and try again."
        return True, f"Docker {version}"

    async def _require_docker(self) -> None:
        available, description = await self.check_available()
        if not available:
            raise BackendUnavailable("Docker is not available", remediation=description)

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(self, site: Site) -> Site:
        await self._require_docker()

        site_path = self.site_path(site)
        if not await is_empty_dir_async(site_path):
            raise ProvisionError(f"Site path {site_path} already exists and is not empty")

        logger.info(f"[DOCKER] Provisioning {site.name} at {site_path}")

        try:
            await aiofiles.os.makedirs(self.wordpress_dir(site), exist_ok=True)
            await aiofiles.os.makedirs(self.content_dir(site), exist_ok=True)

            site.db_name = "wordpress"
            site.db_user = "wordpress"
            site.db_password = site.db_password or generate_password()

            web_server = WebServer(site.web_server)
            if web_server == WebServer.NGINX:
                await write_text_async(
                    site_path / "nginx" / "default.conf",
                    render_nginx_conf("wordpress:9000", ssl=site.ssl, server_name=site.domain or "_"),
                )
            elif site.ssl:
                await write_text_async(
                    site_path / "nginx" / "proxy.conf",
                    render_proxy_conf("wordpress:80", server_name=site.domain or "_"),
                )

            if site.ssl:
                await self._write_certificate(site)

            await self._write_compose_file(site)
        except Exception:
            await rmtree_async(site_path)
            raise

        logger.info(f"[DOCKER] Provisioned {site.name}")
        return site

    async def _write_certificate(self, site: Site) -> None:
        hostnames = [site.domain, "localhost"] if site.domain else ["localhost"]
        cert_pem, key_pem = await asyncio.to_thread(generate_self_signed_cert, hostnames)
        certs_dir = self.site_path(site) / "certs"
        await aiofiles.os.makedirs(certs_dir, exist_ok=True)
        async with aiofiles.open(certs_dir / "site.crt", "wb") as f:
            await f.write(cert_pem)
        async with aiofiles.open(certs_dir / "site.key", "wb") as f:
            await f.write(key_pem)

    def _generate_compose_config(self, site: Site) -> Dict[str, Any]:
        database_engine = DatabaseEngine(site.database_engine)
        if database_engine == DatabaseEngine.SQLITE:
            # Container sites always get a real database service
            database_engine = DatabaseEngine.MYSQL

        return build_compose_config(
            slug=site.slug,
            host_port=site.port,
            php_version=site.php_version,
            wordpress_version=site.wordpress_version,
            web_server=WebServer(site.web_server).value,
            database_engine=database_engine.value,
            ssl=site.ssl,
            db_name=site.db_name,
            db_user=site.db_user,
            db_password=site.db_password,
            settings=self.settings,
        )

    async def _write_compose_file(self, site: Site) -> Path:
        """Generate and write docker-compose.yml for a site."""
        compose_config = self._generate_compose_config(site)
        compose_file_path = self._get_compose_file_path(site)

        content = yaml.dump(compose_config, default_flow_style=False, sort_keys=False, width=1000000)
        await write_text_async(compose_file_path, content)

        logger.info(f"[DOCKER] Generated docker-compose.yml for {site.slug} (port {site.port})")
        return compose_file_path

    # =========================================================================
    # COMPOSE HELPERS
    # =========================================================================

    async def _compose(self, site: Site, args: List[str], timeout: Optional[float] = None) -> SubprocessResult:
        try:
            return await docker_compose(
                str(self._get_compose_file_path(site)),
                site.slug,
                args,
                timeout=timeout or self.settings.compose_timeout_seconds,
                docker_binary=self.docker_binary,
            )
        except FileNotFoundError as e:
            raise BackendUnavailable(
                f"'{self.docker_binary}' CLI not found",
                remediation="Install Docker with the compose plugin."
            ) from e

    async def _compose_file_exists(self, site: Site) -> bool:
        return await aiofiles.os.path.exists(self._get_compose_file_path(site))

    async def _expected_services(self, site: Site) -> List[str]:
        content = await read_text_async(self._get_compose_file_path(site))
        config = yaml.safe_load(content) or {}
        return list((config.get("services") or {}).keys())

    @staticmethod
    def _parse_ps_output(output: str) -> List[Dict[str, Any]]:
        """`compose ps --format json` prints a JSON array (older) or one object per line (newer)."""
        output = output.strip()
        if not output:
            return []
        if output.startswith("["):
            return json.loads(output)
        return [json.loads(line) for line in output.splitlines() if line.strip()]

    # =========================================================================
    # START / STOP
    # =========================================================================

    async def start(self, site: Site) -> None:
        if await self.is_running(site):
            logger.info(f"[DOCKER] {site.slug} already running on port {site.port}")
            return

        await self._write_compose_file(site)

        logger.info(f"[DOCKER] Starting project {site.slug}...")
        try:
            result = await self._compose(site, ["up", "-d", "--remove-orphans"])
        except asyncio.TimeoutError as e:
            raise ProvisionError(
                f"docker compose up timed out after {self.settings.compose_timeout_seconds:.0f}s",
                remediation="Images may still be pulling; try starting the site again."
            ) from e

        if not result.success:
            error_msg = result.stderr.strip() or "Unknown error"
            logger.error(f"[DOCKER] Failed to start project: {error_msg}")
            raise ProvisionError(f"Docker Compose failed: {error_msg}")

        logger.info(f"[DOCKER] Project {site.slug} launched")

    async def stop(self, site: Site) -> None:
        if not await self._compose_file_exists(site):
            logger.warning(f"[DOCKER] Compose file not found for {site.slug}")
            return

        grace = self.settings.stop_grace_seconds
        logger.info(f"[DOCKER] Stopping project {site.slug}...")

        try:
            result = await self._compose(site, ["stop", "-t", str(int(grace))], timeout=grace + 30)
            stopped = result.success
            if not stopped:
                logger.warning(f"[DOCKER] compose stop failed for {site.slug}: {result.stderr.strip()}")
        except asyncio.TimeoutError:
            logger.warning(f"[DOCKER] compose stop timed out for {site.slug}")
            stopped = False

        if not stopped:
            logger.warning(f"[DOCKER] Killing project {site.slug}")
            try:
                result = await self._compose(site, ["kill"], timeout=30)
            except asyncio.TimeoutError as e:
                raise ProvisionError(f"Could not stop containers for {site.slug}") from e
            if not result.success:
                raise ProvisionError(f"Could not stop containers for {site.slug}: {result.stderr.strip()}")

        logger.info(f"[DOCKER] Project {site.slug} stopped")

    # =========================================================================
    # DELETE / LOGS / STATUS
    # =========================================================================

    async def delete(self, site: Site) -> None:
        if await self._compose_file_exists(site):
            logger.info(f"[DOCKER] Removing project {site.slug}...")
            try:
                result = await self._compose(site, ["down", "-v", "--remove-orphans", "-t", str(int(self.settings.stop_grace_seconds))])
            except asyncio.TimeoutError as e:
                raise ProvisionError(f"docker compose down timed out for {site.slug}; files left in place") from e

            if not result.success:
                stderr = result.stderr.strip()
                if any(marker in stderr.lower() for marker in _ALREADY_REMOVED_MARKERS):
                    logger.info(f"[DOCKER] Containers for {site.slug} already removed")
                else:
                    raise ProvisionError(f"Failed to remove containers for {site.slug}: {stderr}")

        await rmtree_async(self.site_path(site))
        logger.info(f"[DOCKER] ✅ Deleted {site.slug} ({site.path})")

    async def logs(self, site: Site, lines: int = 200) -> str:
        if not await self._compose_file_exists(site):
            return ""
        try:
            result = await self._compose(site, ["logs", "--tail", str(lines), "--no-color"], timeout=30)
        except asyncio.TimeoutError:
            return ""
        return result.stdout + result.stderr

    async def get_project_status(self, site: Site) -> Dict[str, Any]:
        """Per-service state from `docker compose ps`."""
        if not await self._compose_file_exists(site):
            return {"status": "not_found", "containers": {}}

        try:
            result = await self._compose(site, ["ps", "-a", "--format", "json"], timeout=30)
        except asyncio.TimeoutError:
            return {"status": "error", "error": "docker compose ps timed out"}
        if not result.success:
            return {"status": "error", "error": result.stderr.strip() or "Unknown error"}

        try:
            entries = self._parse_ps_output(result.stdout)
        except json.JSONDecodeError as e:
            return {"status": "error", "error": f"Unparseable compose ps output: {e}"}

        containers_status = {}
        for container_info in entries:
            health = container_info.get("Health", "") or ""
            state = container_info.get("State", "")
            containers_status[container_info.get("Service", container_info.get("Name"))] = {
                "name": container_info.get("Name"),
                "state": state,
                "health": health,
                "running": state == "running" and health in ("", "healthy"),
            }

        expected = await self._expected_services(site)
        all_running = bool(expected) and all(
            containers_status.get(service, {}).get("running", False) for service in expected
        )

        return {
            "status": "running" if all_running else ("partial" if containers_status else "stopped"),
            "containers": containers_status,
            "project_slug": site.slug,
        }

    async def is_running(self, site: Site) -> bool:
        """Running = every declared service is up and healthy."""
        status = await self.get_project_status(site)
        return status["status"] == "running"
