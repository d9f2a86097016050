"""
Backend Factory

Maps a site's environment to the backend that owns it. One factory is built
at application start and handed to the orchestrator; backends are created
lazily on first use and cached for the factory's lifetime.
"""

import logging
from typing import Dict, List, Optional

from ...config import Settings
from ..database_servers import DatabaseServerManager
from ..wordpress_source import WordPressSource
from .base import BaseEnvironmentBackend
from .environment import SiteEnvironment

logger = logging.getLogger(__name__)


class BackendFactory:
    """
    Creates and caches one backend per environment.

    Selection is by SiteEnvironment only, never by inspecting the site record.
    """

    def __init__(
        self,
        settings: Settings,
        db_servers: DatabaseServerManager,
        wordpress_source: Optional[WordPressSource] = None,
    ):
        self.settings = settings
        self.db_servers = db_servers
        self.wordpress_source = wordpress_source
        self._backends: Dict[SiteEnvironment, BaseEnvironmentBackend] = {}

    def register(self, backend: BaseEnvironmentBackend) -> None:
        """Install a pre-built backend (used by tests and embedders)."""
        self._backends[backend.environment] = backend

    def get_backend(self, environment) -> BaseEnvironmentBackend:
        """
        Get the backend for an environment.

        Args:
            environment: SiteEnvironment or its string value

        Raises:
            ValueError: If the environment is not supported
        """
        if not isinstance(environment, SiteEnvironment):
            environment = SiteEnvironment.from_string(environment)

        if environment in self._backends:
            return self._backends[environment]

        backend: BaseEnvironmentBackend

        if environment == SiteEnvironment.NATIVE:
            from .native import NativeBackend
            backend = NativeBackend(self.settings, self.db_servers, self.wordpress_source)
            logger.info("[ORCHESTRATOR] Created native backend")

        elif environment == SiteEnvironment.CONTAINER:
            from .docker import ContainerBackend
            backend = ContainerBackend(self.settings)
            logger.info("[ORCHESTRATOR] Created container backend")

        else:
            raise ValueError(f"Unsupported environment: {environment}")

        self._backends[environment] = backend
        return backend

    def all_backends(self) -> List[BaseEnvironmentBackend]:
        return [self.get_backend(environment) for environment in SiteEnvironment]

    async def get_capabilities(self) -> List[Dict]:
        """
        Availability of every environment on this machine.

        Returns:
            List of {"environment", "available", "description"} dicts
        """
        capabilities = []
        for backend in self.all_backends():
            available, description = await backend.check_available()
            capabilities.append({
                "environment": backend.environment.value,
                "available": available,
                "description": description,
            })
        return capabilities

    async def preferred_environment(self) -> SiteEnvironment:
        """
        Environment for new sites when neither the request nor settings pick one.

        Container when Docker is up, native otherwise.
        """
        if self.settings.default_environment:
            return SiteEnvironment.from_string(self.settings.default_environment)

        available, _ = await self.get_backend(SiteEnvironment.CONTAINER).check_available()
        return SiteEnvironment.CONTAINER if available else SiteEnvironment.NATIVE
