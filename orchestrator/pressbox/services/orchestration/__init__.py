"""
Orchestration Module - Environment Backends for Native and Container Sites

This module provides a unified interface for running WordPress sites
either directly on the host or as Docker Compose stacks.

Architecture:
- SiteEnvironment enum: Defines supported environments
- BaseEnvironmentBackend: Abstract interface all backends implement
- BackendFactory: Resolves a site's environment to its backend
- NativeBackend: PHP built-in server implementation
- ContainerBackend: Docker Compose implementation

Usage:
    from pressbox.services.orchestration import BackendFactory, SiteEnvironment

    factory = BackendFactory(settings, db_servers)
    backend = factory.get_backend(site.environment)
    await backend.start(site)
"""

from .environment import SiteEnvironment
from .base import BaseEnvironmentBackend
from .factory import BackendFactory

__all__ = [
    # Enums
    "SiteEnvironment",
    # Base class
    "BaseEnvironmentBackend",
    # Factory
    "BackendFactory",
]
