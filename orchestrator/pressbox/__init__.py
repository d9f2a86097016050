"""PressBox site orchestrator: local WordPress environments, native or containerized."""

__version__ = "0.1.0"
