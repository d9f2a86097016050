"""
Slug generation utilities for site directories and compose project names.

Site slugs look like "my-shop-k3x8n2" (name + short hash):
- Human-readable (slug prefix)
- Collision-free (hash suffix)
- Safe as a directory name, a compose project name and a DB identifier
"""

import re
from nanoid import generate


def slugify(text: str, max_length: int = 40) -> str:
    """
    Convert text to a filesystem- and compose-safe slug.

    Examples:
        "My Shop!" -> "my-shop"
        "Client_Site 2" -> "client-site-2"
    """
    slug = text.lower()

    # Remove non-alphanumeric characters (except spaces, hyphens, underscores)
    slug = re.sub(r'[^a-z0-9\s_-]', '', slug)

    # Collapse separators into a single hyphen
    slug = re.sub(r'[\s_-]+', '-', slug)

    slug = slug.strip('-')[:max_length].rstrip('-')

    if not slug:
        slug = 'site'

    return slug


def generate_short_hash(length: int = 6) -> str:
    """Random lowercase alphanumeric hash (e.g., "k3x8n2")."""
    alphabet = '0123456789abcdefghijklmnopqrstuvwxyz'
    return generate(alphabet, length)


def generate_site_slug(site_name: str, hash_length: int = 6) -> str:
    """
    Generate unique site slug: "my-shop-k3x8n2"

    Args:
        site_name: Human-readable site name
        hash_length: Length of random hash suffix (default 6)
    """
    return f"{slugify(site_name)}-{generate_short_hash(hash_length)}"


def database_identifier(slug: str) -> str:
    """MySQL-safe identifier derived from a site slug ("my-shop-k3x8n2" -> "wp_my_shop_k3x8n2")."""
    return "wp_" + re.sub(r'[^a-z0-9_]', '_', slug)[:60]


def is_valid_slug(slug: str) -> bool:
    """
    Valid slug pattern: lowercase alphanumeric + hyphens,
    starting and ending with an alphanumeric character.
    """
    if not slug:
        return False
    return bool(re.match(r'^[a-z0-9]+(-[a-z0-9]+)*$', slug))
