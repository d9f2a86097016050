"""
Environment Orchestrator

The coordinating component: create/start/stop/delete/migrate for sites,
driven through the backend that owns each site, with the port pool, the
hosts file and the shared database servers kept consistent around it.

Lifecycle:

    stopped -> starting -> running -> stopping -> stopped
                  |                       |
                  +-------> error <-------+        (error -> stopped via stop())

Start applies its effects in a fixed order and rolls back everything it
applied on failure:

    port allocate -> db server ensure running -> hosts entry ensure
        -> backend start -> liveness confirm -> registry status update

Every public method returns an OperationResult; typed errors from the lower
layers are converted here and nowhere else. At most one operation runs per
site; a second request is rejected with ConflictError instead of queued.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import aiofiles.os

from ..config import Settings
from ..errors import (
    BackendUnavailable,
    ConflictError,
    DriftDetected,
    HostsPermissionError,
    LivenessTimeout,
    OrchestratorError,
    ProvisionError,
    SiteNotFound,
)
from ..models import Site
from ..schemas import DatabaseEngine, SiteCreate, SiteStatus, WebServer
from ..utils.async_fileio import copy_tree_async
from ..utils.slug_generator import generate_site_slug
from .database_servers import DatabaseServerManager
from .hosts_file import HostsFileSynchronizer
from .liveness import LivenessProbe
from .orchestration import BackendFactory, BaseEnvironmentBackend, SiteEnvironment
from .port_allocator import PortAllocator
from .site_registry import SiteRegistry
from .wordpress_source import WordPressSource

logger = logging.getLogger(__name__)

# Files in wp-content that belong to the database layer, not the site content
_DB_LAYER_CONTENT = {"db.php", "database"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OperationResult:
    """Outcome of an orchestrator operation. Never an exception."""

    success: bool
    site: Optional[Site] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, site: Optional[Site] = None, message: Optional[str] = None, **data) -> "OperationResult":
        return cls(success=True, site=site, message=message, data=data)

    @classmethod
    def failure(cls, error: OrchestratorError, site: Optional[Site] = None) -> "OperationResult":
        data = {"remediation": error.remediation} if error.remediation else {}
        return cls(success=False, site=site, error_kind=error.kind, message=error.message, data=data)


@dataclass
class _InFlight:
    operation: str
    done: asyncio.Event = field(default_factory=asyncio.Event)


class EnvironmentOrchestrator:
    """
    Owns the site lifecycle.

    All shared components are constructed once and passed in; nothing here
    is looked up globally. Use from_settings() to build the standard set.
    """

    def __init__(
        self,
        settings: Settings,
        registry: SiteRegistry,
        ports: PortAllocator,
        hosts: HostsFileSynchronizer,
        db_servers: DatabaseServerManager,
        backends: BackendFactory,
        liveness: LivenessProbe,
        on_status_change: Optional[Callable[[Site], None]] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.ports = ports
        self.hosts = hosts
        self.db_servers = db_servers
        self.backends = backends
        self.liveness = liveness
        self.on_status_change = on_status_change

        self._in_flight: Dict[str, _InFlight] = {}
        # Operations still unwinding per site; a forced delete can overlap a start
        self._active: Dict[str, int] = {}
        self._deleted: Set[str] = set()
        self._create_lock = asyncio.Lock()
        self._pending_names: Set[str] = set()
        self._pending_domains: Set[str] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "EnvironmentOrchestrator":
        db_servers = DatabaseServerManager(settings)
        return cls(
            settings=settings,
            registry=SiteRegistry.from_url(settings.registry_url),
            ports=PortAllocator(
                settings.port_range_start,
                settings.port_range_end,
                extra_ports=settings.extra_ports,
                reserved_ports=settings.reserved_ports,
                host=settings.loopback_ip,
            ),
            hosts=HostsFileSynchronizer(Path(settings.hosts_file_path), settings.hosts_backup_file),
            db_servers=db_servers,
            backends=BackendFactory(settings, db_servers, WordPressSource(settings)),
            liveness=LivenessProbe(
                host=settings.loopback_ip,
                timeout=settings.liveness_timeout_seconds,
                poll_interval=settings.liveness_poll_interval_seconds,
                request_timeout=settings.liveness_request_timeout_seconds,
            ),
        )

    # =========================================================================
    # APPLICATION LIFECYCLE
    # =========================================================================

    async def initialize(self) -> OperationResult:
        """Prepare storage and reconcile the registry against reality."""
        await aiofiles.os.makedirs(self.settings.sites_path, exist_ok=True)
        await self.registry.init()
        return await self.reconcile()

    async def shutdown(self) -> OperationResult:
        """Clean application shutdown; stops shared database servers if configured to."""
        stopped: List[str] = []
        try:
            if self.settings.stop_shared_infra_on_exit:
                for record in await self.db_servers.get_all_server_statuses():
                    if record.is_running:
                        stopped.append(record.engine.value)
                await self.db_servers.stop_all()
            await self.registry.close()
        except Exception as e:
            return self._unexpected("shutdown", None, e)
        logger.info("[ORCHESTRATOR] Shut down")
        return OperationResult.ok(message="Shut down", stopped_servers=stopped)

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    @asynccontextmanager
    async def _operation(self, site_id: str, operation: str, force: bool = False):
        """Claim the single in-flight slot for a site."""
        current = self._in_flight.get(site_id)
        if current is not None and not force:
            raise ConflictError(
                f"Site {site_id} is busy ({current.operation} in progress)",
                remediation="Wait for the current operation to finish and try again."
            )
        token = _InFlight(operation)
        self._in_flight[site_id] = token
        self._active[site_id] = self._active.get(site_id, 0) + 1
        try:
            yield token
        finally:
            token.done.set()
            if self._in_flight.get(site_id) is token:
                del self._in_flight[site_id]
            self._active[site_id] -= 1
            if not self._active[site_id]:
                del self._active[site_id]
                # Nothing left that could re-save a deleted record
                self._deleted.discard(site_id)

    def is_busy(self, site_id: str) -> bool:
        return site_id in self._in_flight

    def _backend_for(self, site: Site) -> BaseEnvironmentBackend:
        return self.backends.get_backend(site.environment)

    async def _require_site(self, site_id: str) -> Site:
        site = await self.registry.get(site_id)
        if site is None:
            raise SiteNotFound(f"Site {site_id} not found")
        return site

    async def _save(self, site: Site) -> None:
        # A forced delete may finish while a start is still unwinding
        if site.id in self._deleted:
            return
        await self.registry.save(site)

    async def _set_status(self, site: Site, status: SiteStatus, message: Optional[str] = None) -> None:
        site.status = status.value
        site.status_message = message
        await self._save(site)
        logger.info(f"[ORCHESTRATOR] {site.name}: {status.value}" + (f" ({message})" if message else ""))
        if self.on_status_change:
            self.on_status_change(site)

    def _build_url(self, site: Site) -> str:
        scheme = "https" if site.ssl else "http"
        host = site.domain if (site.domain and site.hosts_mapped) else "localhost"
        return f"{scheme}://{host}:{site.port}"

    def _unexpected(self, operation: str, site: Optional[Site], error: Exception) -> OperationResult:
        logger.error(f"[ORCHESTRATOR] Unexpected error during {operation}: {error}", exc_info=True)
        return OperationResult(
            success=False,
            site=site,
            error_kind="InternalError",
            message=f"Unexpected error during {operation}: {error}",
        )

    @staticmethod
    def _clone_site(site: Site, **overrides) -> Site:
        values = {column.name: getattr(site, column.name) for column in Site.__table__.columns}
        values.update(overrides)
        return Site(**values)

    @staticmethod
    def _normalize_runtime(
        environment: SiteEnvironment,
        database_engine: Optional[DatabaseEngine],
        web_server: Optional[WebServer],
        ssl: bool,
    ) -> Tuple[DatabaseEngine, WebServer, bool, List[str]]:
        """
        Fit the requested runtime to what the environment can run.

        Returns:
            (database_engine, web_server, ssl, notes about anything adjusted)
        """
        notes: List[str] = []
        if environment.is_native:
            engine = database_engine or DatabaseEngine.SQLITE
            if web_server not in (None, WebServer.BUILTIN):
                notes.append(f"native sites use the PHP built-in server instead of {web_server.value}")
            if ssl:
                notes.append("SSL is not available in the native environment")
            return engine, WebServer.BUILTIN, False, notes

        engine = database_engine or DatabaseEngine.MYSQL
        if engine == DatabaseEngine.SQLITE:
            notes.append("container sites use MySQL instead of SQLite")
            engine = DatabaseEngine.MYSQL
        server = web_server if web_server not in (None, WebServer.BUILTIN) else WebServer.APACHE
        return engine, server, ssl, notes

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_site(self, request: SiteCreate) -> OperationResult:
        """Provision a new site (stopped). Port is picked, not leased, until start."""
        name = request.name
        domain = request.domain
        try:
            async with self._create_lock:
                if name in self._pending_names or await self.registry.get_by_name(name):
                    raise ProvisionError(f"A site named '{name}' already exists")
                if domain and (domain in self._pending_domains or await self.registry.get_by_domain(domain)):
                    raise ProvisionError(f"Domain '{domain}' is already used by another site")
                self._pending_names.add(name)
                if domain:
                    self._pending_domains.add(domain)

            try:
                return await self._create(request)
            finally:
                self._pending_names.discard(name)
                if domain:
                    self._pending_domains.discard(domain)
        except OrchestratorError as e:
            logger.warning(f"[ORCHESTRATOR] Create '{name}' failed: {e.message}")
            return OperationResult.failure(e)
        except Exception as e:
            return self._unexpected("create", None, e)

    async def _create(self, request: SiteCreate) -> OperationResult:
        if request.environment:
            try:
                environment = SiteEnvironment.from_string(request.environment)
            except ValueError as e:
                raise ProvisionError(str(e)) from e
        else:
            environment = await self.backends.preferred_environment()

        if environment.is_native and request.ssl:
            raise ProvisionError(
                "SSL is only available for container sites",
                remediation="Create the site in the container environment or disable SSL."
            )

        engine, web_server, ssl, notes = self._normalize_runtime(
            environment, request.database_engine, request.web_server, request.ssl
        )
        for note in notes:
            logger.info(f"[ORCHESTRATOR] {request.name}: {note}")

        slug = generate_site_slug(request.name)
        ports_in_use = await self.registry.ports_in_use()
        port = self.ports.suggest(exclude=ports_in_use, preferred=request.port)

        hosts_mapped = bool(request.domain) and not self.settings.non_admin_mode and self.hosts.has_privileges()

        site = Site(
            name=request.name,
            slug=slug,
            domain=request.domain,
            port=port,
            hosts_mapped=hosts_mapped,
            php_version=request.php_version,
            wordpress_version=request.wordpress_version or "latest",
            web_server=web_server.value,
            database_engine=engine.value,
            ssl=ssl,
            multisite=request.multisite,
            admin_user=request.admin_user or "admin",
            admin_password=request.admin_password or "password",
            admin_email=request.admin_email or "admin@localhost.local",
            environment=environment.value,
            status=SiteStatus.STOPPED.value,
            path=str(self.settings.sites_path / slug),
            created=_utcnow(),
        )
        site.url = self._build_url(site)

        backend = self.backends.get_backend(environment)
        await backend.create(site)
        await self.registry.add(site)

        logger.info(f"[ORCHESTRATOR] Created {site.name} ({environment.value}) on port {port}")
        data: Dict[str, Any] = {}
        if request.port is not None and port != request.port:
            data["port_reassigned_from"] = request.port
        if notes:
            data["notes"] = notes
        if request.domain and not hosts_mapped:
            data["hosts_fallback"] = "Custom domain not mapped; the site is reachable on localhost"
        return OperationResult.ok(site, f"Site '{site.name}' created", **data)

    # =========================================================================
    # START
    # =========================================================================

    async def start_site(self, site_id: str) -> OperationResult:
        site = None
        try:
            async with self._operation(site_id, "start"):
                site = await self._require_site(site_id)
                data = await self._start(site)
            return OperationResult.ok(site, data.pop("message", "Site started"), **data)
        except OrchestratorError as e:
            return OperationResult.failure(e, site)
        except Exception as e:
            return self._unexpected("start", site, e)

    async def _start(self, site: Site) -> Dict[str, Any]:
        backend = self._backend_for(site)

        if site.status == SiteStatus.ERROR:
            raise ConflictError(
                f"Site '{site.name}' is in error state: {site.status_message or 'unknown error'}",
                remediation="Stop the site to reset it, then start it again."
            )

        if site.status == SiteStatus.RUNNING:
            if await backend.is_running(site):
                if self.ports.lease_for(site.id) is None:
                    await self.ports.adopt(site.port, site.id)
                return {"message": "Site already running"}
            message = f"Registry says running but the {site.environment} backend reports it stopped"
            await self.ports.release_for_site(site.id)
            await self._set_status(site, SiteStatus.ERROR, message)
            raise DriftDetected(message, remediation="Stop the site to reset it, then start it again.")

        data: Dict[str, Any] = {}
        had_lease = self.ports.lease_for(site.id) is not None
        hosts_created = False
        backend_started = False

        await self._set_status(site, SiteStatus.STARTING)
        try:
            # 1. port
            requested_port = site.port
            port = await self.ports.allocate(site.id, preferred=site.port)
            if port != requested_port:
                data["port_reassigned_from"] = requested_port
                site.port = port

            # 2. shared database server
            engine = DatabaseEngine(site.database_engine)
            if SiteEnvironment.from_string(site.environment).is_native and engine.is_shared_server:
                await self.db_servers.ensure_running(engine)

            # 3. hosts entry
            hosts_created = await self._ensure_hosts_entry(site, data)
            site.url = self._build_url(site)

            # 4. backend
            backend_started = True
            await backend.start(site)

            # 5. liveness
            if not await self.liveness.wait_until_live(site.port):
                tail = await self._safe_logs(backend, site, 20)
                raise LivenessTimeout(
                    f"Site '{site.name}' did not respond on port {site.port} "
                    f"within {self.liveness.timeout:.0f}s",
                    remediation=tail.strip()[-1000:] or None
                )
        except Exception as e:
            await self._rollback_start(site, backend, backend_started, hosts_created, had_lease)
            message = e.message if isinstance(e, OrchestratorError) else str(e)
            await self._set_status(site, SiteStatus.ERROR, message)
            raise

        # 6. registry
        site.last_accessed = _utcnow()
        await self._set_status(site, SiteStatus.RUNNING)
        return data

    async def _ensure_hosts_entry(self, site: Site, data: Dict[str, Any]) -> bool:
        """
        Map the site's domain in the hosts file.

        Falls back to localhost mode when the hosts file cannot be written.

        Returns:
            True if this call created a new entry
        """
        if not site.domain:
            site.hosts_mapped = False
            return False

        if self.settings.non_admin_mode:
            site.hosts_mapped = False
            data["hosts_fallback"] = "Non-admin mode: the site is reachable on localhost"
            return False

        try:
            created = await self.hosts.add(site.domain, self.settings.loopback_ip, site.id)
        except HostsPermissionError as e:
            logger.warning(f"[ORCHESTRATOR] {site.name}: {e.message}; falling back to localhost")
            site.hosts_mapped = False
            data["hosts_fallback"] = e.message
            return False

        site.hosts_mapped = True
        return created

    async def _rollback_start(
        self,
        site: Site,
        backend: BaseEnvironmentBackend,
        backend_started: bool,
        hosts_created: bool,
        had_lease: bool,
    ) -> None:
        """Undo what a failed start applied, in reverse order. Best effort."""
        if backend_started:
            try:
                await backend.stop(site)
            except Exception as e:
                logger.warning(f"[ORCHESTRATOR] Rollback: stopping {site.name} failed: {e}")

        if hosts_created and site.domain:
            try:
                await self.hosts.remove(site.domain)
                site.hosts_mapped = False
            except OrchestratorError as e:
                logger.warning(f"[ORCHESTRATOR] Rollback: removing hosts entry failed: {e.message}")

        if not had_lease:
            await self.ports.release_for_site(site.id)

    @staticmethod
    async def _safe_logs(backend: BaseEnvironmentBackend, site: Site, lines: int) -> str:
        try:
            return await backend.logs(site, lines)
        except Exception as e:
            logger.debug(f"[ORCHESTRATOR] Could not read logs for {site.name}: {e}")
            return ""

    # =========================================================================
    # STOP
    # =========================================================================

    async def stop_site(self, site_id: str) -> OperationResult:
        site = None
        try:
            async with self._operation(site_id, "stop"):
                site = await self._require_site(site_id)
                message = await self._stop(site)
            return OperationResult.ok(site, message)
        except OrchestratorError as e:
            return OperationResult.failure(e, site)
        except Exception as e:
            return self._unexpected("stop", site, e)

    async def _stop(self, site: Site) -> str:
        """Stop a site; also the only way out of the error state."""
        backend = self._backend_for(site)

        if site.status == SiteStatus.STOPPED:
            try:
                running = await backend.is_running(site)
            except BackendUnavailable:
                running = False
            if not running:
                await self.ports.release_for_site(site.id)
                return "Site already stopped"

        await self._set_status(site, SiteStatus.STOPPING)
        try:
            await backend.stop(site)
        except Exception as e:
            message = e.message if isinstance(e, OrchestratorError) else str(e)
            await self._set_status(site, SiteStatus.ERROR, message)
            raise

        # Hosts entry stays so the domain keeps resolving while the site is off
        await self.ports.release_for_site(site.id)
        await self._set_status(site, SiteStatus.STOPPED)
        return "Site stopped"

    # =========================================================================
    # DELETE
    # =========================================================================

    async def delete_site(self, site_id: str) -> OperationResult:
        """
        Stop and remove a site: runtime, hosts entry, port lease, files, record.

        An in-flight start/stop is given delete_settle_timeout_seconds to
        finish before cleanup is forced.
        """
        site = None
        try:
            force = False
            current = self._in_flight.get(site_id)
            if current is not None:
                if current.operation in ("delete", "migrate"):
                    raise ConflictError(f"Site {site_id} is busy ({current.operation} in progress)")
                logger.info(f"[ORCHESTRATOR] Delete waiting for {current.operation} on {site_id} to settle")
                try:
                    await asyncio.wait_for(current.done.wait(), timeout=self.settings.delete_settle_timeout_seconds)
                except asyncio.TimeoutError:
                    logger.warning(f"[ORCHESTRATOR] {current.operation} on {site_id} did not settle; forcing delete")
                    force = True

            async with self._operation(site_id, "delete", force=force):
                site = await self._require_site(site_id)
                data = await self._delete(site)
            return OperationResult.ok(site, f"Site '{site.name}' deleted", **data)
        except OrchestratorError as e:
            return OperationResult.failure(e, site)
        except Exception as e:
            return self._unexpected("delete", site, e)

    async def _delete(self, site: Site) -> Dict[str, Any]:
        backend = self._backend_for(site)
        data: Dict[str, Any] = {}

        try:
            await backend.delete(site)
        except Exception as e:
            message = e.message if isinstance(e, OrchestratorError) else str(e)
            await self._set_status(site, SiteStatus.ERROR, f"Delete failed: {message}")
            raise

        if site.domain and not self.settings.non_admin_mode:
            try:
                await self.hosts.remove_for_site(site.id)
            except HostsPermissionError as e:
                logger.warning(f"[ORCHESTRATOR] Could not remove hosts entry for {site.name}: {e.message}")
                data["hosts_warning"] = e.message

        await self.ports.release_for_site(site.id)
        self._deleted.add(site.id)
        await self.registry.delete(site.id)

        site.status = SiteStatus.STOPPED.value
        logger.info(f"[ORCHESTRATOR] Deleted {site.name} ({site.id})")
        return data

    # =========================================================================
    # MIGRATE
    # =========================================================================

    async def migrate_site(self, site_id: str, from_environment: str, to_environment: str) -> OperationResult:
        """
        Move a site to another environment.

        wp-content (themes, plugins, uploads) is carried across; database
        contents are not. The source is only removed once the target is fully
        provisioned, and is left untouched if anything fails before that.
        """
        site = None
        try:
            try:
                source_env = SiteEnvironment.from_string(from_environment)
                target_env = SiteEnvironment.from_string(to_environment)
            except ValueError as e:
                raise ProvisionError(str(e)) from e

            if source_env == target_env:
                raise ProvisionError(f"Site is already in the {target_env.value} environment")

            async with self._operation(site_id, "migrate"):
                site = await self._require_site(site_id)
                if SiteEnvironment.from_string(site.environment) != source_env:
                    raise ProvisionError(
                        f"Site '{site.name}' is in the {site.environment} environment, not {source_env.value}"
                    )
                return await self._migrate(site, source_env, target_env)
        except OrchestratorError as e:
            return OperationResult.failure(e, site)
        except Exception as e:
            return self._unexpected("migrate", site, e)

    async def _migrate(
        self,
        site: Site,
        source_env: SiteEnvironment,
        target_env: SiteEnvironment,
    ) -> OperationResult:
        source = self.backends.get_backend(source_env)
        target = self.backends.get_backend(target_env)

        available, description = await target.check_available()
        if not available:
            raise BackendUnavailable(f"The {target_env.value} environment is not available", remediation=description)

        was_running = site.status == SiteStatus.RUNNING
        if site.status != SiteStatus.STOPPED:
            await self._stop(site)

        engine, web_server, ssl, notes = self._normalize_runtime(
            target_env,
            DatabaseEngine(site.database_engine),
            WebServer(site.web_server),
            site.ssl,
        )
        target_site = self._clone_site(
            site,
            environment=target_env.value,
            path=str(self.settings.sites_path / f"{site.slug}-{target_env.value}"),
            database_engine=engine.value,
            web_server=web_server.value,
            ssl=ssl,
            db_name=None,
            db_user=None,
            db_password=None,
        )

        logger.info(f"[ORCHESTRATOR] Migrating {site.name}: {source_env.value} -> {target_env.value}")
        target_created = False
        try:
            await target.create(target_site)
            target_created = True
            await self._copy_content(source.content_dir(site), target.content_dir(target_site))
        except Exception:
            if target_created:
                try:
                    await target.delete(target_site)
                except Exception as cleanup_error:
                    logger.warning(f"[ORCHESTRATOR] Migration cleanup failed: {cleanup_error}")
            if was_running:
                await self._restart_after_failed_migration(site)
            raise

        data: Dict[str, Any] = {"migrated_from": source_env.value, "notes": notes}
        try:
            await source.delete(site)
        except Exception as e:
            logger.warning(f"[ORCHESTRATOR] Old {source_env.value} files for {site.name} not removed: {e}")
            data["cleanup_warning"] = f"Old files left at {site.path}: {e}"

        for column in ("environment", "path", "database_engine", "web_server", "ssl",
                       "db_name", "db_user", "db_password"):
            setattr(site, column, getattr(target_site, column))
        site.url = self._build_url(site)
        await self._set_status(site, SiteStatus.STOPPED)
        logger.info(f"[ORCHESTRATOR] Migrated {site.name} to {target_env.value}")

        if was_running:
            try:
                data.update(await self._start(site))
            except OrchestratorError as e:
                data["restart_error"] = e.to_dict()
                return OperationResult.ok(site, "Site migrated but failed to restart", **data)

        return OperationResult.ok(site, f"Site migrated to {target_env.value}", **data)

    async def _copy_content(self, source_dir: Path, target_dir: Path) -> None:
        if not await aiofiles.os.path.isdir(source_dir):
            logger.info(f"[ORCHESTRATOR] No wp-content at {source_dir}; nothing to copy")
            return

        root = str(source_dir)

        def _ignore(directory, names):
            if str(directory) == root:
                return [name for name in names if name in _DB_LAYER_CONTENT]
            return []

        await copy_tree_async(source_dir, target_dir, ignore=_ignore)

    async def _restart_after_failed_migration(self, site: Site) -> None:
        try:
            await self._start(site)
        except OrchestratorError as e:
            logger.warning(f"[ORCHESTRATOR] Could not restart {site.name} after failed migration: {e.message}")

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def _check_drift(self, site: Site) -> Optional[str]:
        """
        Compare a site's persisted state with what is actually observable.

        Sites in running state must have a live backend; running sites whose
        lease was lost (app restart) re-adopt their port. Returns the drift
        message if the site was forced to error.
        """
        if site.status != SiteStatus.RUNNING or self.is_busy(site.id):
            return None

        backend = self._backend_for(site)
        try:
            running = await backend.is_running(site)
            reason = f"the {site.environment} backend reports it is not running"
        except BackendUnavailable as e:
            running = False
            reason = e.message

        if running and self.ports.lease_for(site.id) is None:
            try:
                await self.ports.adopt(site.port, site.id)
            except OrchestratorError as e:
                running = False
                reason = e.message

        if running:
            return None

        message = f"Registry said running, but {reason}"
        await self.ports.release_for_site(site.id)
        await self._set_status(site, SiteStatus.ERROR, message)
        logger.warning(f"[ORCHESTRATOR] Drift on {site.name}: {message}")
        return message

    async def list_sites(self) -> OperationResult:
        """All sites with live-reconciled status."""
        try:
            sites = await self.registry.list()
            drifted = []
            for site in sites:
                if await self._check_drift(site):
                    drifted.append(site.id)
            return OperationResult.ok(sites=sites, drifted=drifted)
        except OrchestratorError as e:
            return OperationResult.failure(e)
        except Exception as e:
            return self._unexpected("list", None, e)

    async def get_site(self, site_id: str) -> OperationResult:
        site = None
        try:
            site = await self._require_site(site_id)
            drift = await self._check_drift(site)
            if drift:
                return OperationResult.ok(site, drift, drifted=True)
            return OperationResult.ok(site)
        except OrchestratorError as e:
            return OperationResult.failure(e, site)
        except Exception as e:
            return self._unexpected("get", site, e)

    async def get_site_logs(self, site_id: str, lines: Optional[int] = None) -> OperationResult:
        site = None
        try:
            site = await self._require_site(site_id)
            backend = self._backend_for(site)
            text = await backend.logs(site, lines or self.settings.logs_tail_lines)
            return OperationResult.ok(site, logs=text)
        except OrchestratorError as e:
            return OperationResult.failure(e, site)
        except Exception as e:
            return self._unexpected("logs", site, e)

    async def _shared_server_dependents(self) -> Dict[str, List[str]]:
        """Running native sites per shared engine, by name."""
        dependents: Dict[str, List[str]] = {}
        for site in await self.registry.list():
            if (
                site.status == SiteStatus.RUNNING
                and SiteEnvironment.from_string(site.environment).is_native
                and DatabaseEngine(site.database_engine).is_shared_server
            ):
                dependents.setdefault(site.database_engine, []).append(site.name)
        return dependents

    async def get_database_server_statuses(self) -> OperationResult:
        """
        Live status of every shared database server, with a warning for each
        engine that running native sites depend on but that is not answering.
        """
        try:
            records = await self.db_servers.get_all_server_statuses()
            installed = [engine.value for engine in self.db_servers.find_installed_servers()]
            dependents = await self._shared_server_dependents()

            servers = []
            warnings = []
            for record in records:
                info = record.to_dict()
                info["installed"] = record.engine.value in installed
                servers.append(info)
                users = dependents.get(record.engine.value)
                if users and not record.is_running:
                    warnings.append(
                        f"{record.engine.value} is not running on port {record.port} "
                        f"but is used by: {', '.join(users)}"
                    )

            for warning in warnings:
                logger.warning(f"[ORCHESTRATOR] {warning}")
            return OperationResult.ok(servers=servers, warnings=warnings, installed=installed)
        except OrchestratorError as e:
            return OperationResult.failure(e)
        except Exception as e:
            return self._unexpected("database server status", None, e)

    async def get_environment_capabilities(self) -> OperationResult:
        try:
            capabilities = await self.backends.get_capabilities()
            preferred = await self.backends.preferred_environment()
            for capability in capabilities:
                capability["preferred"] = capability["environment"] == preferred.value
            return OperationResult.ok(environments=capabilities, preferred=preferred.value)
        except OrchestratorError as e:
            return OperationResult.failure(e)
        except Exception as e:
            return self._unexpected("environment capabilities", None, e)

    # =========================================================================
    # HOSTS FILE
    # =========================================================================

    def _require_hosts_management(self) -> None:
        if self.settings.non_admin_mode:
            raise HostsPermissionError(
                "Hosts file management is off in non-admin mode",
                remediation="Disable non-admin mode and run PressBox with administrator privileges."
            )

    async def list_hosts_entries(self) -> OperationResult:
        """Every entry PressBox has written to the hosts file, enabled or not."""
        try:
            entries = await self.hosts.list_entries()
            return OperationResult.ok(entries=[entry.to_dict() for entry in entries])
        except OrchestratorError as e:
            return OperationResult.failure(e)
        except Exception as e:
            return self._unexpected("list hosts entries", None, e)

    async def set_hosts_entry_enabled(self, domain: str, enabled: bool) -> OperationResult:
        """Comment a managed entry out, or back in, without forgetting it."""
        try:
            self._require_hosts_management()
            await self.hosts.set_enabled(domain, enabled)
            entry = await self.hosts.get_entry(domain)
            state = "enabled" if enabled else "disabled"
            return OperationResult.ok(message=f"Hosts entry {domain} {state}", entry=entry.to_dict())
        except OrchestratorError as e:
            return OperationResult.failure(e)
        except Exception as e:
            return self._unexpected("toggle hosts entry", None, e)

    async def restore_hosts_backup(self) -> OperationResult:
        """
        Put back the hosts file exactly as it was before PressBox first
        touched it. Sites keep running but lose their domain mapping.
        """
        try:
            self._require_hosts_management()
            await self.hosts.restore_from_backup()
            entries = await self.hosts.list_entries()
            return OperationResult.ok(
                message="Hosts file restored from backup",
                entries=[entry.to_dict() for entry in entries],
            )
        except OrchestratorError as e:
            return OperationResult.failure(e)
        except Exception as e:
            return self._unexpected("restore hosts backup", None, e)

    async def hosts_stats(self) -> OperationResult:
        try:
            stats = await self.hosts.stats()
            stats["non_admin_mode"] = self.settings.non_admin_mode
            return OperationResult.ok(**stats)
        except OrchestratorError as e:
            return OperationResult.failure(e)
        except Exception as e:
            return self._unexpected("hosts stats", None, e)

    # =========================================================================
    # SHARED DATABASE SERVERS
    # =========================================================================

    @staticmethod
    def _shared_engine(engine: str) -> DatabaseEngine:
        try:
            parsed = DatabaseEngine(engine.lower())
        except ValueError:
            parsed = None
        if parsed is None or not parsed.is_shared_server:
            raise ProvisionError(
                f"'{engine}' is not a shared database server",
                remediation=f"Use one of: {', '.join(e.value for e in DatabaseEngine if e.is_shared_server)}."
            )
        return parsed

    async def start_database_server(self, engine: str) -> OperationResult:
        try:
            parsed = self._shared_engine(engine)
            record = await self.db_servers.start(parsed)
            return OperationResult.ok(message=f"{parsed.value} is running", server=record.to_dict())
        except OrchestratorError as e:
            return OperationResult.failure(e)
        except Exception as e:
            return self._unexpected("start database server", None, e)

    async def stop_database_server(self, engine: str) -> OperationResult:
        """
        Stop a shared server on request. Running native sites on that engine
        are not stopped; they are reported so the caller can warn about them.
        """
        try:
            parsed = self._shared_engine(engine)
            affected = (await self._shared_server_dependents()).get(parsed.value, [])
            await self.db_servers.stop(parsed)
            record = self.db_servers.get_record(parsed)

            warnings = []
            if affected:
                warnings.append(f"{parsed.value} stopped while in use by: {', '.join(affected)}")
                logger.warning(f"[ORCHESTRATOR] {warnings[0]}")
            return OperationResult.ok(
                message=f"{parsed.value} stopped",
                server=record.to_dict(),
                affected_sites=affected,
                warnings=warnings,
            )
        except OrchestratorError as e:
            return OperationResult.failure(e)
        except Exception as e:
            return self._unexpected("stop database server", None, e)

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def reconcile(self) -> OperationResult:
        """
        Startup pass: re-verify every site the registry believes is active.

        Running and starting sites must have a live backend and answer the
        liveness probe on their port; their lease is then re-adopted and a
        start that got that far is promoted to running. A site caught
        stopping by a crash is forced to error, since a half-stopped runtime
        cannot be told apart from a broken one.
        """
        adopted: List[str] = []
        drifted: List[str] = []
        try:
            for site in await self.registry.list():
                if site.status == SiteStatus.STOPPING:
                    message = f"Interrupted while {site.status}; state unknown"
                    await self._set_status(site, SiteStatus.ERROR, message)
                    drifted.append(site.id)
                    continue

                if site.status not in (SiteStatus.RUNNING, SiteStatus.STARTING):
                    continue

                backend = self._backend_for(site)
                try:
                    running = await backend.is_running(site)
                except BackendUnavailable:
                    running = False
                live = running and await self.liveness.check(site.port)

                if live:
                    try:
                        await self.ports.adopt(site.port, site.id)
                        adopted.append(site.id)
                        if site.status == SiteStatus.STARTING:
                            await self._set_status(site, SiteStatus.RUNNING)
                        continue
                    except OrchestratorError as e:
                        message = e.message
                else:
                    message = f"Registry said {site.status}, but nothing answers on port {site.port}"

                await self._set_status(site, SiteStatus.ERROR, message)
                drifted.append(site.id)
                logger.warning(f"[ORCHESTRATOR] Drift on {site.name}: {message}")

            logger.info(f"[ORCHESTRATOR] Reconciled: {len(adopted)} running, {len(drifted)} drifted")
            return OperationResult.ok(adopted=adopted, drifted=drifted)
        except OrchestratorError as e:
            return OperationResult.failure(e)
        except Exception as e:
            return self._unexpected("reconcile", None, e)
