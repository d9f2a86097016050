"""
Services Module

Key Submodules:
- orchestration: Environment backends (native PHP server, Docker Compose)
- site_orchestrator: Lifecycle state machine coordinating everything below
- port_allocator / hosts_file / database_servers: Shared machine resources
- site_registry: Durable site records

Usage:
    from pressbox.services import EnvironmentOrchestrator

    orchestrator = EnvironmentOrchestrator.from_settings(get_settings())
    await orchestrator.initialize()
"""

from .site_orchestrator import EnvironmentOrchestrator, OperationResult

__all__ = [
    "EnvironmentOrchestrator",
    "OperationResult",
]
