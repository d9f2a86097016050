"""Utility modules for the site orchestrator."""

from .async_subprocess import SubprocessResult, run_async, check_command_exists, docker_compose
from .slug_generator import slugify, generate_site_slug, database_identifier, is_valid_slug

__all__ = [
    'SubprocessResult',
    'run_async',
    'check_command_exists',
    'docker_compose',
    'slugify',
    'generate_site_slug',
    'database_identifier',
    'is_valid_slug',
]
