"""
Tests for the sites API router.

Endpoint functions are called directly with a mocked orchestrator; the app
wiring is covered through FastAPI's TestClient.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import status
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from pressbox.errors import (
    ConflictError,
    HostsFileError,
    HostsPermissionError,
    LivenessTimeout,
    NoPortsAvailable,
    ProvisionError,
    SiteNotFound,
)
from pressbox.main import create_app
from pressbox.routers import sites
from pressbox.schemas import HostsEntryToggle, SiteCreate, SiteMigrate
from pressbox.services.site_orchestrator import OperationResult

from conftest import make_site


@pytest.fixture
def site(settings):
    return make_site(
        settings,
        id="site-1",
        url="http://my-shop.local:8000",
        domain="my-shop.local",
        hosts_mapped=True,
        php_version="8.2",
        wordpress_version="latest",
        web_server="builtin",
        database_engine="sqlite",
        ssl=False,
        multisite=False,
        admin_user="admin",
        admin_email="admin@localhost.local",
    )


@pytest.fixture
def mock_orchestrator():
    return AsyncMock()


def body_of(response: JSONResponse) -> dict:
    return json.loads(response.body)


class TestErrorMapping:
    """Tests for error kind -> HTTP status mapping."""

    @pytest.mark.parametrize("error,expected_status", [
        (ConflictError("busy"), status.HTTP_409_CONFLICT),
        (SiteNotFound("missing"), status.HTTP_404_NOT_FOUND),
        (NoPortsAvailable("full"), status.HTTP_503_SERVICE_UNAVAILABLE),
        (LivenessTimeout("slow"), status.HTTP_504_GATEWAY_TIMEOUT),
    ])
    def test_known_kinds(self, error, expected_status):
        response = sites.error_response(OperationResult.failure(error))

        assert response.status_code == expected_status
        assert body_of(response)["error_kind"] == error.kind

    def test_permission_error(self):
        result = OperationResult(success=False, error_kind="PermissionError", message="Run as administrator")

        assert sites.error_response(result).status_code == status.HTTP_403_FORBIDDEN

    def test_unknown_kind_is_internal_error(self):
        result = OperationResult(success=False, error_kind="Exception", message="boom")

        assert sites.error_response(result).status_code == status.HTTP_500_INTERNAL_SERVER_ERROR

    def test_body_carries_remediation(self):
        error = NoPortsAvailable("No free port in 8000-8009", remediation="Stop a site or widen the port range.")

        body = body_of(sites.error_response(OperationResult.failure(error)))

        assert body == {
            "error_kind": "NoPortsAvailable",
            "message": "No free port in 8000-8009",
            "remediation": "Stop a site or widen the port range.",
        }

    def test_body_omits_missing_remediation(self):
        body = body_of(sites.error_response(OperationResult.failure(SiteNotFound("Site x not found"))))

        assert "remediation" not in body


class TestSiteEndpoints:
    """Tests for the per-site endpoints."""

    @pytest.mark.asyncio
    async def test_create_site(self, mock_orchestrator, site):
        mock_orchestrator.create_site.return_value = OperationResult.ok(site, port_reassigned_from=8005)
        request = SiteCreate(name="My Shop", port=8005)

        response = await sites.create_site(request, orchestrator=mock_orchestrator)

        mock_orchestrator.create_site.assert_awaited_once_with(request)
        assert response.success is True
        assert response.site.id == "site-1"
        assert response.site.url == "http://my-shop.local:8000"
        assert response.data == {"port_reassigned_from": 8005}

    @pytest.mark.asyncio
    async def test_create_site_conflict(self, mock_orchestrator):
        mock_orchestrator.create_site.return_value = OperationResult.failure(
            ConflictError("A site named 'My Shop' already exists")
        )

        response = await sites.create_site(SiteCreate(name="My Shop"), orchestrator=mock_orchestrator)

        assert isinstance(response, JSONResponse)
        assert response.status_code == status.HTTP_409_CONFLICT

    @pytest.mark.asyncio
    async def test_start_site(self, mock_orchestrator, site):
        site.status = "running"
        mock_orchestrator.start_site.return_value = OperationResult.ok(site, "Started My Shop on port 8000")

        response = await sites.start_site("site-1", orchestrator=mock_orchestrator)

        mock_orchestrator.start_site.assert_awaited_once_with("site-1")
        assert response.site.status == "running"
        assert response.message == "Started My Shop on port 8000"

    @pytest.mark.asyncio
    async def test_start_site_liveness_timeout(self, mock_orchestrator, site):
        mock_orchestrator.start_site.return_value = OperationResult.failure(
            LivenessTimeout("My Shop did not answer on port 8000"), site
        )

        response = await sites.start_site("site-1", orchestrator=mock_orchestrator)

        assert response.status_code == status.HTTP_504_GATEWAY_TIMEOUT

    @pytest.mark.asyncio
    async def test_stop_site(self, mock_orchestrator, site):
        mock_orchestrator.stop_site.return_value = OperationResult.ok(site)

        response = await sites.stop_site("site-1", orchestrator=mock_orchestrator)

        assert response.success is True
        assert response.site.status == "stopped"

    @pytest.mark.asyncio
    async def test_delete_site_without_site(self, mock_orchestrator):
        mock_orchestrator.delete_site.return_value = OperationResult.ok(message="Deleted My Shop")

        response = await sites.delete_site("site-1", orchestrator=mock_orchestrator)

        assert response.site is None
        assert response.message == "Deleted My Shop"

    @pytest.mark.asyncio
    async def test_migrate_site(self, mock_orchestrator, site):
        site.environment = "container"
        mock_orchestrator.migrate_site.return_value = OperationResult.ok(site, source_id="site-0")

        response = await sites.migrate_site(
            "site-0",
            SiteMigrate(from_environment="native", to_environment="container"),
            orchestrator=mock_orchestrator,
        )

        mock_orchestrator.migrate_site.assert_awaited_once_with("site-0", "native", "container")
        assert response.site.environment == "container"

    @pytest.mark.asyncio
    async def test_get_site_not_found(self, mock_orchestrator):
        mock_orchestrator.get_site.return_value = OperationResult.failure(SiteNotFound("Site nope not found"))

        response = await sites.get_site("nope", orchestrator=mock_orchestrator)

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert body_of(response)["message"] == "Site nope not found"

    @pytest.mark.asyncio
    async def test_get_site_logs(self, mock_orchestrator):
        mock_orchestrator.get_site_logs.return_value = OperationResult.ok(logs="[Mon] 127.0.0.1 GET /\n")

        response = await sites.get_site_logs("site-1", lines=20, orchestrator=mock_orchestrator)

        mock_orchestrator.get_site_logs.assert_awaited_once_with("site-1", 20)
        assert response.logs == "[Mon] 127.0.0.1 GET /\n"


class TestCollectionEndpoints:
    """Tests for list, capabilities and database server endpoints."""

    @pytest.mark.asyncio
    async def test_list_sites(self, mock_orchestrator, site):
        mock_orchestrator.list_sites.return_value = OperationResult.ok(sites=[site], drifted=["site-1"])

        response = await sites.list_sites(orchestrator=mock_orchestrator)

        assert [s.id for s in response.sites] == ["site-1"]
        assert response.drifted == ["site-1"]

    @pytest.mark.asyncio
    async def test_get_environments(self, mock_orchestrator):
        mock_orchestrator.get_environment_capabilities.return_value = OperationResult.ok(
            environments=[
                {"environment": "native", "available": True, "preferred": True, "description": "PHP 8.2.18"},
                {"environment": "container", "available": False, "preferred": False, "description": "Docker is not running"},
            ],
            preferred="native",
        )

        response = await sites.get_environments(orchestrator=mock_orchestrator)

        assert response.preferred == "native"
        assert [e.available for e in response.environments] == [True, False]

    @pytest.mark.asyncio
    async def test_get_database_servers(self, mock_orchestrator):
        mock_orchestrator.get_database_server_statuses.return_value = OperationResult.ok(
            servers=[{
                "engine": "mysql",
                "port": 3306,
                "is_running": False,
                "data_directory": "/data/db-servers/mysql/data",
            }],
            warnings=["mysql is not running on port 3306"],
            installed=["mysql"],
        )

        response = await sites.get_database_servers(orchestrator=mock_orchestrator)

        assert response.servers[0].engine == "mysql"
        assert response.warnings == ["mysql is not running on port 3306"]
        assert response.installed == ["mysql"]


class TestHostsEndpoints:
    """Tests for the hosts file endpoints."""

    @pytest.mark.asyncio
    async def test_list_entries(self, mock_orchestrator):
        mock_orchestrator.list_hosts_entries.return_value = OperationResult.ok(entries=[
            {"ip": "127.0.0.1", "hostname": "my-shop.local", "site_id": "site-1", "enabled": True},
        ])

        response = await sites.list_hosts_entries(orchestrator=mock_orchestrator)

        assert response.entries[0].hostname == "my-shop.local"
        assert response.entries[0].enabled is True

    @pytest.mark.asyncio
    async def test_stats(self, mock_orchestrator):
        mock_orchestrator.hosts_stats.return_value = OperationResult.ok(
            total_entries=4,
            managed_entries=1,
            enabled_entries=4,
            has_backup=True,
            has_privileges=False,
            non_admin_mode=False,
            last_modified=None,
        )

        response = await sites.get_hosts_stats(orchestrator=mock_orchestrator)

        assert response.managed_entries == 1
        assert response.has_privileges is False

    @pytest.mark.asyncio
    async def test_toggle_entry(self, mock_orchestrator):
        mock_orchestrator.set_hosts_entry_enabled.return_value = OperationResult.ok(
            message="Hosts entry my-shop.local disabled",
            entry={"ip": "127.0.0.1", "hostname": "my-shop.local", "site_id": "site-1", "enabled": False},
        )

        response = await sites.set_hosts_entry_enabled(
            "my-shop.local", HostsEntryToggle(enabled=False), orchestrator=mock_orchestrator
        )

        assert response.success is True
        assert response.data["entry"]["enabled"] is False
        mock_orchestrator.set_hosts_entry_enabled.assert_awaited_once_with("my-shop.local", False)

    @pytest.mark.asyncio
    async def test_restore_without_privileges(self, mock_orchestrator):
        mock_orchestrator.restore_hosts_backup.return_value = OperationResult.failure(
            HostsPermissionError("No write access to /etc/hosts", remediation="Run as administrator.")
        )

        response = await sites.restore_hosts_backup(orchestrator=mock_orchestrator)

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert body_of(response)["remediation"] == "Run as administrator."


class TestDatabaseServerEndpoints:
    """Tests for starting and stopping shared database servers."""

    @pytest.mark.asyncio
    async def test_start(self, mock_orchestrator):
        mock_orchestrator.start_database_server.return_value = OperationResult.ok(
            message="mysql is running", server={"engine": "mysql", "is_running": True}
        )

        response = await sites.start_database_server("mysql", orchestrator=mock_orchestrator)

        assert response.success is True
        assert response.data["server"]["is_running"] is True
        mock_orchestrator.start_database_server.assert_awaited_once_with("mysql")

    @pytest.mark.asyncio
    async def test_start_unknown_engine(self, mock_orchestrator):
        mock_orchestrator.start_database_server.return_value = OperationResult.failure(
            ProvisionError("'sqlite' is not a shared database server")
        )

        response = await sites.start_database_server("sqlite", orchestrator=mock_orchestrator)

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    @pytest.mark.asyncio
    async def test_stop_lists_affected_sites(self, mock_orchestrator):
        mock_orchestrator.stop_database_server.return_value = OperationResult.ok(
            message="mysql stopped",
            server={"engine": "mysql", "is_running": False},
            affected_sites=["My Shop"],
            warnings=["mysql stopped while in use by: My Shop"],
        )

        response = await sites.stop_database_server("mysql", orchestrator=mock_orchestrator)

        assert response.data["affected_sites"] == ["My Shop"]


class TestApp:
    """Tests for the assembled application."""

    def test_health_and_startup_reconcile(self, settings):
        orchestrator = MagicMock()
        orchestrator.initialize = AsyncMock(return_value=OperationResult.ok(adopted=[], drifted=[]))
        orchestrator.shutdown = AsyncMock(return_value=OperationResult.ok(stopped_servers=[]))
        orchestrator.list_sites = AsyncMock(return_value=OperationResult.ok(sites=[], drifted=[]))

        with TestClient(create_app(orchestrator=orchestrator, app_settings=settings)) as client:
            assert client.get("/health").json() == {"status": "healthy", "service": "pressbox-orchestrator"}
            assert client.get("/api/sites").json() == {"sites": [], "drifted": []}
            config = client.get("/api/config").json()

        assert config["port_range"] == [8000, 8009]
        orchestrator.initialize.assert_awaited_once()
        orchestrator.shutdown.assert_awaited_once()

    def test_error_status_over_http(self, settings):
        orchestrator = MagicMock()
        orchestrator.initialize = AsyncMock(return_value=OperationResult.ok())
        orchestrator.shutdown = AsyncMock(return_value=OperationResult.ok())
        orchestrator.stop_site = AsyncMock(return_value=OperationResult.failure(SiteNotFound("Site x not found")))

        with TestClient(create_app(orchestrator=orchestrator, app_settings=settings)) as client:
            response = client.post("/api/sites/x/stop")

        assert response.status_code == 404
        assert response.json()["error_kind"] == "NotFound"

    def test_hosts_routes_mounted(self, settings):
        orchestrator = MagicMock()
        orchestrator.initialize = AsyncMock(return_value=OperationResult.ok())
        orchestrator.shutdown = AsyncMock(return_value=OperationResult.ok())
        orchestrator.set_hosts_entry_enabled = AsyncMock(
            return_value=OperationResult.failure(HostsFileError("Hosts entry 'nas.home' not found"))
        )
        orchestrator.stop_database_server = AsyncMock(return_value=OperationResult.ok(affected_sites=[]))

        with TestClient(create_app(orchestrator=orchestrator, app_settings=settings)) as client:
            toggled = client.patch("/api/hosts/nas.home", json={"enabled": False})
            stopped = client.post("/api/database-servers/mariadb/stop")

        assert toggled.status_code == 400
        assert toggled.json()["error_kind"] == "HostsFileError"
        assert stopped.status_code == 200
        orchestrator.stop_database_server.assert_awaited_once_with("mariadb")
