"""
Test configuration and fixtures for pytest.

Every fixture works against a temporary data directory: settings, port
allocator, hosts file, site registry, shared database servers and fake
environment backends, plus an orchestrator wired from all of them.
"""

import sys
import os
import shutil
import tempfile
import asyncio
from pathlib import Path
from typing import List, Optional, Set, Tuple

import pytest
import pytest_asyncio

# Add the orchestrator directory to sys.path
orchestrator_dir = Path(__file__).parent.parent
sys.path.insert(0, str(orchestrator_dir))


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # CRITICAL: Set test environment variables BEFORE any pressbox imports
    os.environ["PRESSBOX_DATA_DIR"] = tempfile.mkdtemp(prefix="pressbox-test-")
    os.environ["PRESSBOX_HOSTS_FILE_PATH"] = os.path.join(os.environ["PRESSBOX_DATA_DIR"], "hosts")
    os.environ["PRESSBOX_DOWNLOAD_WORDPRESS"] = "false"
    os.environ["PRESSBOX_LOG_LEVEL"] = "DEBUG"

    # Import and clear settings cache after env vars are set
    from pressbox.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "docker: mark test as requiring Docker")


from pressbox.config import Settings
from pressbox.errors import ProvisionError
from pressbox.models import Site
from pressbox.services.database_servers import DatabaseServerManager
from pressbox.services.hosts_file import HostsFileSynchronizer
from pressbox.services.liveness import LivenessProbe
from pressbox.services.orchestration import BackendFactory, BaseEnvironmentBackend, SiteEnvironment
from pressbox.services.port_allocator import PortAllocator
from pressbox.services.site_orchestrator import EnvironmentOrchestrator
from pressbox.services.site_registry import SiteRegistry


INITIAL_HOSTS = (
    "127.0.0.1\tlocalhost\n"
    "# Added by the user\n"
    "192.168.1.20  nas.home   # my NAS\n"
    "::1\tlocalhost\n"
)


# ============================================================================
# Test doubles
# ============================================================================

class FakePortAllocator(PortAllocator):
    """Port allocator whose bind probe is driven by the `bound` set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.bound: Set[int] = set()

    def is_port_bindable(self, port: int) -> bool:
        return port not in self.bound


class FakeBackend(BaseEnvironmentBackend):
    """
    In-memory backend that lays out a wp-content tree on disk but runs nothing.

    Failure injection: set fail_create / fail_start / fail_stop / fail_delete
    to an exception instance. Set start_gate to an asyncio.Event to hold
    start() until the test releases it.
    """

    def __init__(self, environment: SiteEnvironment, available: bool = True):
        self._environment = environment
        self.available = available
        self.running: Set[str] = set()
        self.calls: List[Tuple[str, str]] = []
        self.fail_create: Optional[Exception] = None
        self.fail_start: Optional[Exception] = None
        self.fail_stop: Optional[Exception] = None
        self.fail_delete: Optional[Exception] = None
        self.start_gate: Optional[asyncio.Event] = None

    @property
    def environment(self) -> SiteEnvironment:
        return self._environment

    def content_dir(self, site: Site) -> Path:
        return Path(site.path) / "wp-content"

    def calls_for(self, operation: str) -> List[str]:
        return [slug for op, slug in self.calls if op == operation]

    async def create(self, site: Site) -> Site:
        self.calls.append(("create", site.slug))
        if self.fail_create:
            raise self.fail_create
        path = Path(site.path)
        if path.exists() and any(path.iterdir()):
            raise ProvisionError(f"Site path {path} already exists and is not empty")
        for sub in ("themes", "plugins", "uploads"):
            (self.content_dir(site) / sub).mkdir(parents=True, exist_ok=True)
        site.db_name = f"db_{self._environment.value}"
        return site

    async def start(self, site: Site) -> None:
        self.calls.append(("start", site.slug))
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.fail_start:
            raise self.fail_start
        self.running.add(site.id)

    async def stop(self, site: Site) -> None:
        self.calls.append(("stop", site.slug))
        if self.fail_stop:
            raise self.fail_stop
        self.running.discard(site.id)

    async def delete(self, site: Site) -> None:
        self.calls.append(("delete", site.slug))
        if self.fail_delete:
            raise self.fail_delete
        self.running.discard(site.id)
        shutil.rmtree(site.path, ignore_errors=True)

    async def logs(self, site: Site, lines: int = 200) -> str:
        return f"[{self._environment.value}] log tail for {site.slug} ({lines} lines)\n"

    async def is_running(self, site: Site) -> bool:
        return site.id in self.running

    async def check_available(self) -> Tuple[bool, str]:
        if self.available:
            return True, f"fake {self._environment.value} runtime"
        return False, f"fake {self._environment.value} runtime is switched off"


class FakeLivenessProbe(LivenessProbe):
    """Liveness probe that answers from the `live` flag instead of HTTP."""

    def __init__(self):
        super().__init__(timeout=0.2, poll_interval=0.05, request_timeout=0.1)
        self.live = True
        self.probed: List[int] = []

    async def check(self, port: int, timeout: Optional[float] = None) -> bool:
        self.probed.append(port)
        return self.live

    async def wait_until_live(self, port: int, timeout: Optional[float] = None) -> bool:
        self.probed.append(port)
        return self.live


class FakeDatabaseServerManager(DatabaseServerManager):
    """Shared database servers that flip a flag instead of spawning daemons."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.started: List[str] = []
        self.stopped: List[str] = []

    async def is_running(self, engine) -> bool:
        return self.get_record(engine).is_running

    async def start(self, engine):
        record = self.get_record(engine)
        if not record.is_running:
            self.started.append(record.engine.value)
            record.is_running = True
            record.version = "8.0.36"
        return record

    async def stop(self, engine) -> None:
        record = self.get_record(engine)
        self.stopped.append(record.engine.value)
        record.is_running = False


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings(tmp_path):
    """Settings pointed at a temporary data directory with a small port pool."""
    return Settings(
        data_dir=str(tmp_path / "data"),
        hosts_file_path=str(tmp_path / "hosts"),
        port_range_start=8000,
        port_range_end=8009,
        extra_ports=[],
        reserved_ports=[8005],
        default_environment="native",
        non_admin_mode=False,
        liveness_timeout_seconds=0.5,
        liveness_poll_interval_seconds=0.05,
        liveness_request_timeout_seconds=0.2,
        stop_grace_seconds=0.5,
        delete_settle_timeout_seconds=0.3,
        process_spawn_timeout_seconds=2.0,
        download_wordpress=False,
    )


@pytest.fixture
def hosts_path(settings):
    path = Path(settings.hosts_file_path)
    path.write_text(INITIAL_HOSTS, encoding="utf-8")
    return path


@pytest.fixture
def hosts(settings, hosts_path):
    return HostsFileSynchronizer(hosts_path, settings.hosts_backup_file)


@pytest.fixture
def port_allocator(settings):
    return FakePortAllocator(
        settings.port_range_start,
        settings.port_range_end,
        extra_ports=settings.extra_ports,
        reserved_ports=settings.reserved_ports,
        host=settings.loopback_ip,
    )


@pytest.fixture
def db_servers(settings):
    return FakeDatabaseServerManager(settings)


@pytest.fixture
def native_backend():
    return FakeBackend(SiteEnvironment.NATIVE)


@pytest.fixture
def container_backend():
    return FakeBackend(SiteEnvironment.CONTAINER)


@pytest.fixture
def liveness():
    return FakeLivenessProbe()


@pytest.fixture
def backends(settings, db_servers, native_backend, container_backend):
    factory = BackendFactory(settings, db_servers)
    factory.register(native_backend)
    factory.register(container_backend)
    return factory


@pytest_asyncio.fixture
async def registry(settings):
    """SQLite registry in the temporary data directory."""
    settings.data_path.mkdir(parents=True, exist_ok=True)
    registry = SiteRegistry.from_url(settings.registry_url)
    await registry.init()
    yield registry
    await registry.close()


@pytest_asyncio.fixture
async def orchestrator(settings, registry, port_allocator, hosts, db_servers, backends, liveness):
    """Orchestrator wired to fakes, initialized against an empty registry."""
    orchestrator = EnvironmentOrchestrator(
        settings=settings,
        registry=registry,
        ports=port_allocator,
        hosts=hosts,
        db_servers=db_servers,
        backends=backends,
        liveness=liveness,
    )
    result = await orchestrator.initialize()
    assert result.success
    return orchestrator


def make_site(settings: Settings, name: str = "My Shop", **overrides) -> Site:
    """Detached site record for registry-level tests."""
    slug = overrides.pop("slug", name.lower().replace(" ", "-") + "-abc123")
    values = dict(
        name=name,
        slug=slug,
        port=8000,
        environment="native",
        status="stopped",
        path=str(settings.sites_path / slug),
    )
    values.update(overrides)
    return Site(**values)


@pytest.fixture
def site_factory(settings):
    def _factory(name: str = "My Shop", **overrides) -> Site:
        return make_site(settings, name, **overrides)
    return _factory
