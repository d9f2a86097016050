"""
Database Server Manager

Manages the long-lived, shared MySQL-compatible daemons used by native
sites. There is at most one daemon per engine, shared by every site that
requested that engine, so its lifecycle is independent of any single site:

- start() is idempotent and never restarts a live server
- initialize() (first-run data directory setup) is separate from start()
- stop() is explicit only; site stop/delete never calls it
- get_all_server_statuses() probes each engine live, so a daemon killed
  out-of-band shows up as not running instead of being trusted
"""

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from ..config import Settings
from ..errors import BackendUnavailable, ProvisionError
from ..schemas import DatabaseEngine
from ..utils.async_fileio import write_text_async, read_tail_async
from ..utils.async_subprocess import run_async

logger = logging.getLogger(__name__)

# MySQL protocol v10 handshake; 0xff is an ERR packet (e.g. host not allowed),
# which still proves a MySQL-compatible server is answering.
_HANDSHAKE_V10 = 0x0A
_ERR_PACKET = 0xFF

SHARED_ENGINES = (DatabaseEngine.MYSQL, DatabaseEngine.MARIADB)


@dataclass
class DatabaseServerRecord:
    """Runtime record for one shared database engine."""
    engine: DatabaseEngine
    port: int
    data_directory: Path
    executable: str
    is_running: bool = False
    pid: Optional[int] = None
    version: Optional[str] = None
    initialized: bool = False
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)

    @property
    def config_path(self) -> Path:
        return self.data_directory.parent / "my.cnf"

    @property
    def pid_file(self) -> Path:
        return self.data_directory.parent / f"{self.engine.value}.pid"

    @property
    def log_file(self) -> Path:
        return self.data_directory.parent / f"{self.engine.value}.log"

    @property
    def socket_path(self) -> Path:
        return self.data_directory.parent / f"{self.engine.value}.sock"

    def to_dict(self) -> Dict:
        return {
            "engine": self.engine.value,
            "port": self.port,
            "is_running": self.is_running,
            "data_directory": str(self.data_directory),
            "version": self.version,
            "pid": self.pid,
        }


class DatabaseServerManager:
    """One record per engine, created lazily on first use."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.base_path = settings.db_servers_path
        self._records: Dict[DatabaseEngine, DatabaseServerRecord] = {}
        self._locks: Dict[DatabaseEngine, asyncio.Lock] = {}

    # =========================================================================
    # RECORDS
    # =========================================================================

    def _engine_defaults(self, engine: DatabaseEngine) -> Dict:
        if engine == DatabaseEngine.MYSQL:
            return {"port": self.settings.mysql_port, "executable": self.settings.mysql_binary}
        if engine == DatabaseEngine.MARIADB:
            return {"port": self.settings.mariadb_port, "executable": self.settings.mariadb_binary}
        raise ValueError(f"{engine} does not run as a shared server")

    def get_record(self, engine: DatabaseEngine) -> DatabaseServerRecord:
        engine = DatabaseEngine(engine)
        record = self._records.get(engine)
        if record is None:
            defaults = self._engine_defaults(engine)
            data_dir = self.base_path / engine.value / "data"
            record = DatabaseServerRecord(
                engine=engine,
                port=defaults["port"],
                data_directory=data_dir,
                executable=defaults["executable"],
                initialized=self._has_system_schema(data_dir),
            )
            self._records[engine] = record
        return record

    def _lock_for(self, engine: DatabaseEngine) -> asyncio.Lock:
        if engine not in self._locks:
            self._locks[engine] = asyncio.Lock()
        return self._locks[engine]

    @staticmethod
    def _has_system_schema(data_dir: Path) -> bool:
        return (data_dir / "mysql").is_dir()

    def find_installed_servers(self) -> List[DatabaseEngine]:
        """Engines whose daemon binary is available on this machine."""
        installed = []
        for engine in SHARED_ENGINES:
            if shutil.which(self._engine_defaults(engine)["executable"]):
                installed.append(engine)
        return installed

    # =========================================================================
    # PROBES
    # =========================================================================

    async def probe(self, port: int, timeout: Optional[float] = None) -> Optional[str]:
        """
        Live connectivity probe: connect and read the server greeting.

        Returns:
            The server version string if a MySQL-compatible server answered
            ("" when it answered with an error packet), None otherwise
        """
        timeout = timeout or self.settings.db_server_probe_timeout_seconds
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.settings.loopback_ip, port), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError):
            return None

        try:
            header = await asyncio.wait_for(reader.readexactly(4), timeout=timeout)
            length = int.from_bytes(header[:3], "little")
            payload = await asyncio.wait_for(reader.readexactly(length), timeout=timeout)
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError):
            return None
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        if not payload:
            return None
        if payload[0] == _HANDSHAKE_V10:
            end = payload.find(b"\x00", 1)
            return payload[1:end].decode("ascii", errors="replace") if end > 0 else ""
        if payload[0] == _ERR_PACKET:
            return ""
        return None

    async def is_running(self, engine: DatabaseEngine) -> bool:
        record = self.get_record(engine)
        version = await self.probe(record.port)
        record.is_running = version is not None
        if version:
            record.version = version
        return record.is_running

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def initialize(self, engine: DatabaseEngine) -> DatabaseServerRecord:
        """
        First-run setup: data directory, my.cnf and system schema bootstrap.

        Root is left with an empty password for local development. Safe to
        call repeatedly; the bootstrap only runs on an empty data directory.
        """
        record = self.get_record(engine)
        data_dir = record.data_directory

        await asyncio.to_thread(data_dir.mkdir, parents=True, exist_ok=True)

        if not record.config_path.exists():
            await write_text_async(record.config_path, self._render_config(record))
            logger.info(f"[DBSERVER] Created config file: {record.config_path}")

        if self._has_system_schema(data_dir):
            record.initialized = True
            return record

        if not shutil.which(record.executable):
            raise BackendUnavailable(
                f"{engine.value} server binary '{record.executable}' not found",
                remediation=f"Install {engine.value} or set the binary path in PressBox settings."
            )

        if engine == DatabaseEngine.MARIADB:
            cmd = [
                self.settings.mariadb_install_binary,
                f"--defaults-file={record.config_path}",
                f"--datadir={data_dir}",
                "--auth-root-authentication-method=normal",
            ]
        else:
            cmd = [
                record.executable,
                f"--defaults-file={record.config_path}",
                "--initialize-insecure",
                f"--datadir={data_dir}",
            ]

        logger.info(f"[DBSERVER] Initializing {engine.value} data directory {data_dir}")
        try:
            result = await run_async(cmd, timeout=self.settings.db_server_start_timeout_seconds * 4)
        except FileNotFoundError as e:
            raise BackendUnavailable(f"Cannot run {cmd[0]}: {e}") from e
        except asyncio.TimeoutError as e:
            raise ProvisionError(f"{engine.value} initialization timed out") from e

        if not result.success:
            raise ProvisionError(
                f"{engine.value} initialization failed (exit {result.returncode}): {result.stderr.strip()[-500:]}"
            )

        record.initialized = True
        logger.info(f"[DBSERVER] {engine.value} initialized")
        return record

    def _render_config(self, record: DatabaseServerRecord) -> str:
        return (
            "[mysqld]\n"
            f"port={record.port}\n"
            f"datadir={record.data_directory}\n"
            f"socket={record.socket_path}\n"
            f"pid-file={record.pid_file}\n"
            f"bind-address={self.settings.loopback_ip}\n"
            "skip-name-resolve\n"
            "character-set-server=utf8mb4\n"
            "collation-server=utf8mb4_unicode_ci\n"
        )

    async def start(self, engine: DatabaseEngine) -> DatabaseServerRecord:
        """
        Ensure the shared server for an engine is running.

        Returns immediately when a live server already answers on the port.

        Raises:
            BackendUnavailable: Binary missing or server not reachable before the timeout
        """
        engine = DatabaseEngine(engine)
        record = self.get_record(engine)

        async with self._lock_for(engine):
            if await self.is_running(engine):
                return record

            await self.initialize(engine)

            cmd = [
                record.executable,
                f"--defaults-file={record.config_path}",
                f"--log-error={record.log_file}",
            ]
            logger.info(f"[DBSERVER] Starting {engine.value} on port {record.port}")

            try:
                process = await asyncio.wait_for(
                    asyncio.create_subprocess_exec(
                        *cmd,
                        stdin=asyncio.subprocess.DEVNULL,
                        stdout=asyncio.subprocess.DEVNULL,
                        stderr=asyncio.subprocess.DEVNULL,
                        start_new_session=True,
                    ),
                    timeout=self.settings.process_spawn_timeout_seconds,
                )
            except FileNotFoundError as e:
                raise BackendUnavailable(
                    f"{engine.value} server binary '{record.executable}' not found",
                    remediation=f"Install {engine.value} or set the binary path in PressBox settings."
                ) from e
            except asyncio.TimeoutError as e:
                raise BackendUnavailable(f"Timed out spawning {engine.value}") from e

            record.process = process
            record.pid = process.pid

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.settings.db_server_start_timeout_seconds
            while loop.time() < deadline:
                if process.returncode is not None:
                    break
                if await self.is_running(engine):
                    logger.info(f"[DBSERVER] {engine.value} {record.version or ''} started on port {record.port}")
                    return record
                await asyncio.sleep(0.5)

            # Failed to come up: tear down the half-started daemon
            await self._terminate(record)
            tail = await read_tail_async(record.log_file, 20)
            raise BackendUnavailable(
                f"{engine.value} did not become reachable on port {record.port} "
                f"within {self.settings.db_server_start_timeout_seconds:.0f}s",
                remediation=tail.strip()[-500:] or None
            )

    async def ensure_running(self, engine: DatabaseEngine) -> DatabaseServerRecord:
        return await self.start(engine)

    async def stop(self, engine: DatabaseEngine) -> None:
        """
        Stop a shared server. Explicit only: many sites may depend on it.
        Idempotent when the server is already down.
        """
        engine = DatabaseEngine(engine)
        record = self.get_record(engine)

        async with self._lock_for(engine):
            await self._terminate(record)
            record.is_running = await self.probe(record.port) is not None
            if record.is_running:
                logger.warning(
                    f"[DBSERVER] {engine.value} still answering on port {record.port} "
                    "(not started by PressBox?)"
                )
            else:
                logger.info(f"[DBSERVER] {engine.value} stopped")

    async def stop_all(self) -> None:
        """Application-level shutdown of all shared database servers we know about."""
        for engine in list(self._records):
            try:
                await self.stop(engine)
            except (OSError, psutil.Error) as e:
                logger.error(f"[DBSERVER] Failed to stop {engine.value}: {e}")

    def _read_pid(self, record: DatabaseServerRecord) -> Optional[int]:
        if record.process is not None and record.process.returncode is None:
            return record.process.pid
        try:
            return int(record.pid_file.read_text().strip())
        except (OSError, ValueError):
            return None

    async def _terminate(self, record: DatabaseServerRecord) -> None:
        """SIGTERM, then SIGKILL after the grace period."""
        pid = self._read_pid(record)
        if pid is None:
            record.pid = None
            return

        def _kill():
            try:
                proc = psutil.Process(pid)
                if record.process is None and Path(record.executable).name not in proc.name():
                    # Stale pid file pointing at a recycled pid
                    logger.warning(f"[DBSERVER] pid {pid} is not {record.executable}; leaving it alone")
                    return
                proc.terminate()
                try:
                    proc.wait(timeout=self.settings.stop_grace_seconds)
                except psutil.TimeoutExpired:
                    logger.warning(f"[DBSERVER] {record.engine.value} (pid {pid}) ignored SIGTERM, killing")
                    proc.kill()
                    proc.wait(timeout=5)
            except psutil.NoSuchProcess:
                pass

        await asyncio.to_thread(_kill)
        if record.process is not None and record.process.returncode is None:
            await record.process.wait()
        record.process = None
        record.pid = None
        if record.pid_file.exists():
            try:
                os.remove(record.pid_file)
            except OSError:
                pass

    # =========================================================================
    # STATUS
    # =========================================================================

    async def get_all_server_statuses(self) -> List[DatabaseServerRecord]:
        """Live status for every shared engine (probed, not assumed)."""
        records = []
        for engine in SHARED_ENGINES:
            record = self.get_record(engine)
            was_running = record.is_running
            await self.is_running(engine)
            if was_running and not record.is_running:
                logger.warning(f"[DBSERVER] {engine.value} on port {record.port} is no longer reachable")
            records.append(record)
        return records
