"""
Orchestrator error taxonomy.

Lower-level components (port allocator, hosts synchronizer, database server
manager, environment backends) raise these exceptions. Only the
EnvironmentOrchestrator converts them into OperationResult values and decides
user-visible fallbacks.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for all typed orchestrator errors."""

    kind: str = "OrchestratorError"

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.remediation = remediation

    def to_dict(self) -> dict:
        data = {"error_kind": self.kind, "message": self.message}
        if self.remediation:
            data["remediation"] = self.remediation
        return data


class ProvisionError(OrchestratorError):
    """Filesystem or config setup failed (path conflict, missing runtime)."""

    kind = "ProvisionError"


class BackendUnavailable(ProvisionError):
    """A required runtime (PHP binary, container engine, DB daemon) is missing or down."""

    kind = "BackendUnavailable"


class NoPortsAvailable(OrchestratorError):
    kind = "NoPortsAvailable"


class LivenessTimeout(OrchestratorError):
    kind = "LivenessTimeout"


class HostsPermissionError(OrchestratorError):
    """Hosts file mutation attempted without elevated privileges."""

    kind = "PermissionError"


class HostsFileError(OrchestratorError):
    kind = "HostsFileError"


class ConflictError(OrchestratorError):
    """Operation requested on a site that already has one in flight."""

    kind = "ConflictError"


class DriftDetected(OrchestratorError):
    kind = "DriftDetected"


class SiteNotFound(OrchestratorError):
    kind = "NotFound"
