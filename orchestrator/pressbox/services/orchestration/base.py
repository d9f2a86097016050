"""
Abstract Environment Backend

Defines the common interface that the native and container backends must
implement. The orchestrator only ever talks to a site through the backend
selected by the site's `environment` field.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Tuple

from ...models import Site
from .environment import SiteEnvironment


class BaseEnvironmentBackend(ABC):
    """
    Abstract base class for site environments.

    Contract shared by all backends:
    - create() provisions files and site-local config but never starts the site
    - start() is idempotent and returns once the process/stack is launched;
      liveness is verified by the orchestrator, not the backend
    - stop() is idempotent, graceful first with a hard kill after the grace period
    - delete() removes runtime state first and the filesystem last
    - logs() returns the tail of the process/container output

    Backends never touch the port pool, the hosts file or the site registry.
    """

    @property
    @abstractmethod
    def environment(self) -> SiteEnvironment:
        """Return the environment this backend handles."""
        pass

    # =========================================================================
    # SITE LIFECYCLE
    # =========================================================================

    @abstractmethod
    async def create(self, site: Site) -> Site:
        """
        Provision the filesystem layout and site-local configuration.

        Args:
            site: Site record with id, slug, port and path already assigned

        Returns:
            The same site, with backend-specific fields (database credentials) filled in

        Raises:
            ProvisionError: Target path exists and is not empty
            BackendUnavailable: Required runtime is missing
        """
        pass

    @abstractmethod
    async def start(self, site: Site) -> None:
        """
        Launch the site on site.port. No-op if already running.

        Raises:
            ProvisionError: Launch failed
            BackendUnavailable: Required runtime is missing
        """
        pass

    @abstractmethod
    async def stop(self, site: Site) -> None:
        """
        Stop the site. No-op if already stopped.

        Escalates to a forced kill after the grace period.
        """
        pass

    @abstractmethod
    async def delete(self, site: Site) -> None:
        """
        Remove all runtime state, then the site directory.

        The directory is left in place if stopping the site fails.
        """
        pass

    @abstractmethod
    async def logs(self, site: Site, lines: int = 200) -> str:
        """Return the tail of the site's process or container output."""
        pass

    # =========================================================================
    # STATUS
    # =========================================================================

    @abstractmethod
    async def is_running(self, site: Site) -> bool:
        """Observed state of the site's process/stack (not the registry status)."""
        pass

    @abstractmethod
    async def check_available(self) -> Tuple[bool, str]:
        """
        Check whether this backend's runtime can be used on this machine.

        Returns:
            (available, human-readable description or remediation)
        """
        pass

    # =========================================================================
    # FILESYSTEM
    # =========================================================================

    @abstractmethod
    def content_dir(self, site: Site) -> Path:
        """The site's wp-content directory (themes, plugins, uploads)."""
        pass

    def site_path(self, site: Site) -> Path:
        return Path(site.path)

    @staticmethod
    async def port_accepts_connections(host: str, port: int, timeout: float = 1.0) -> bool:
        """TCP connect check against a site's port."""
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True
