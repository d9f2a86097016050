"""
Sites API Router.

HTTP surface of the orchestrator for the desktop shell and CLI. Every
orchestrator call returns an OperationResult; failures are mapped from their
error kind to an HTTP status with an {"error_kind", "message"} body.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from ..schemas import (
    DatabaseServerStatusResponse,
    EnvironmentCapabilitiesResponse,
    ErrorResponse,
    HostsEntryListResponse,
    HostsEntryToggle,
    HostsStatsResponse,
    OperationResponse,
    SiteCreate,
    SiteListResponse,
    SiteLogsResponse,
    SiteMigrate,
    SiteRead,
)
from ..services.site_orchestrator import EnvironmentOrchestrator, OperationResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sites", tags=["sites"])
database_servers_router = APIRouter(prefix="/api/database-servers", tags=["database-servers"])
hosts_router = APIRouter(prefix="/api/hosts", tags=["hosts"])

ERROR_STATUS_CODES = {
    "ConflictError": status.HTTP_409_CONFLICT,
    "DriftDetected": status.HTTP_409_CONFLICT,
    "NotFound": status.HTTP_404_NOT_FOUND,
    "NoPortsAvailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "BackendUnavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "ProvisionError": status.HTTP_400_BAD_REQUEST,
    "HostsFileError": status.HTTP_400_BAD_REQUEST,
    "PermissionError": status.HTTP_403_FORBIDDEN,
    "LivenessTimeout": status.HTTP_504_GATEWAY_TIMEOUT,
}


def get_orchestrator(request: Request) -> EnvironmentOrchestrator:
    """The orchestrator built at application startup."""
    return request.app.state.orchestrator


def error_response(result: OperationResult) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(result.error_kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    body = ErrorResponse(
        error_kind=result.error_kind or "InternalError",
        message=result.message or "Unknown error",
        remediation=result.data.get("remediation"),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def operation_response(result: OperationResult):
    if not result.success:
        return error_response(result)
    return OperationResponse(
        success=True,
        site=SiteRead.model_validate(result.site) if result.site is not None else None,
        message=result.message,
        data=result.data,
    )


# ============================================================================
# Collection
# ============================================================================

@router.post("", response_model=OperationResponse, status_code=status.HTTP_201_CREATED)
async def create_site(
    request: SiteCreate,
    orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator),
):
    """Create a site (provisioned, not started)."""
    result = await orchestrator.create_site(request)
    return operation_response(result)


@router.get("", response_model=SiteListResponse)
async def list_sites(orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator)):
    """All sites, with status reconciled against what is actually running."""
    result = await orchestrator.list_sites()
    if not result.success:
        return error_response(result)
    return SiteListResponse(
        sites=[SiteRead.model_validate(site) for site in result.data["sites"]],
        drifted=result.data.get("drifted", []),
    )


@router.get("/environments", response_model=EnvironmentCapabilitiesResponse)
async def get_environments(orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator)):
    """Which environments can run on this machine, and which one new sites default to."""
    result = await orchestrator.get_environment_capabilities()
    if not result.success:
        return error_response(result)
    return EnvironmentCapabilitiesResponse(
        environments=result.data["environments"],
        preferred=result.data["preferred"],
    )


# ============================================================================
# Single site
# ============================================================================

@router.get("/{site_id}", response_model=SiteRead)
async def get_site(site_id: str, orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.get_site(site_id)
    if not result.success:
        return error_response(result)
    return SiteRead.model_validate(result.site)


@router.post("/{site_id}/start", response_model=OperationResponse)
async def start_site(site_id: str, orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.start_site(site_id)
    return operation_response(result)


@router.post("/{site_id}/stop", response_model=OperationResponse)
async def stop_site(site_id: str, orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.stop_site(site_id)
    return operation_response(result)


@router.delete("/{site_id}", response_model=OperationResponse)
async def delete_site(site_id: str, orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator)):
    """Stop the site and remove its hosts entry, port lease, files and record."""
    result = await orchestrator.delete_site(site_id)
    return operation_response(result)


@router.post("/{site_id}/migrate", response_model=OperationResponse)
async def migrate_site(
    site_id: str,
    request: SiteMigrate,
    orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator),
):
    """Move a site between the native and container environments (wp-content only)."""
    result = await orchestrator.migrate_site(site_id, request.from_environment, request.to_environment)
    return operation_response(result)


@router.get("/{site_id}/logs", response_model=SiteLogsResponse)
async def get_site_logs(
    site_id: str,
    lines: Optional[int] = Query(None, ge=1, le=10000),
    orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.get_site_logs(site_id, lines)
    if not result.success:
        return error_response(result)
    return SiteLogsResponse(site_id=site_id, logs=result.data["logs"])


# ============================================================================
# Shared infrastructure
# ============================================================================

@database_servers_router.get("", response_model=DatabaseServerStatusResponse)
async def get_database_servers(orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator)):
    """Live status of the shared MySQL/MariaDB servers."""
    result = await orchestrator.get_database_server_statuses()
    if not result.success:
        return error_response(result)
    return DatabaseServerStatusResponse(
        servers=result.data["servers"],
        warnings=result.data.get("warnings", []),
        installed=result.data.get("installed", []),
    )


@database_servers_router.post("/{engine}/start", response_model=OperationResponse)
async def start_database_server(engine: str, orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.start_database_server(engine)
    return operation_response(result)


@database_servers_router.post("/{engine}/stop", response_model=OperationResponse)
async def stop_database_server(engine: str, orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator)):
    """Stop a shared server; running sites that use it are listed in data.affected_sites."""
    result = await orchestrator.stop_database_server(engine)
    return operation_response(result)


@hosts_router.get("", response_model=HostsEntryListResponse)
async def list_hosts_entries(orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator)):
    """Entries PressBox manages in the system hosts file."""
    result = await orchestrator.list_hosts_entries()
    if not result.success:
        return error_response(result)
    return HostsEntryListResponse(entries=result.data["entries"])


@hosts_router.get("/stats", response_model=HostsStatsResponse)
async def get_hosts_stats(orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.hosts_stats()
    if not result.success:
        return error_response(result)
    return HostsStatsResponse(**result.data)


@hosts_router.post("/restore", response_model=OperationResponse)
async def restore_hosts_backup(orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator)):
    """Put back the hosts file as it was before PressBox first changed it."""
    result = await orchestrator.restore_hosts_backup()
    return operation_response(result)


@hosts_router.patch("/{domain}", response_model=OperationResponse)
async def set_hosts_entry_enabled(
    domain: str,
    request: HostsEntryToggle,
    orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.set_hosts_entry_enabled(domain, request.enabled)
    return operation_response(result)
