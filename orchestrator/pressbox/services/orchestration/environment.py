"""
Site Environment Enumeration

Defines the execution strategies a site can be placed in. The site's
`environment` field selects which backend owns its lifecycle.
"""

from enum import Enum


class SiteEnvironment(str, Enum):
    """
    Supported site environments.

    Attributes:
        NATIVE: PHP built-in server spawned directly on the host
        CONTAINER: Docker Compose stack (web server, PHP, database) per site
    """

    NATIVE = "native"
    CONTAINER = "container"

    @classmethod
    def from_string(cls, value: str) -> "SiteEnvironment":
        """
        Convert a string to SiteEnvironment enum.

        "local" and "docker" are accepted as aliases for older site records.

        Raises:
            ValueError: If value is not a valid environment
        """
        value_lower = value.lower().strip()
        aliases = {"local": cls.NATIVE, "docker": cls.CONTAINER}
        if value_lower in aliases:
            return aliases[value_lower]
        for env in cls:
            if env.value == value_lower:
                return env
        valid = ", ".join([e.value for e in cls])
        raise ValueError(
            f"Invalid environment: '{value}'. Valid environments: {valid}"
        )

    @property
    def is_native(self) -> bool:
        return self == SiteEnvironment.NATIVE

    @property
    def is_container(self) -> bool:
        return self == SiteEnvironment.CONTAINER

    def __str__(self) -> str:
        return self.value
