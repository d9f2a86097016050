"""
Port Allocator

Hands out TCP ports to sites from a configurable pool and reclaims them on
stop/delete. A port is only considered free when no site holds a lease on
it AND an actual bind attempt succeeds: internal bookkeeping can be stale
after a crash, and other programs may grab ports at any time.

Leases live in memory only. After a restart the orchestrator's
reconciliation pass re-adopts the ports of sites that are verifiably live.
"""

import asyncio
import errno
import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from ..errors import NoPortsAvailable

logger = logging.getLogger(__name__)


@dataclass
class PortLease:
    """A port bound to a site while its process/container is expected to listen."""
    port: int
    site_id: str
    allocated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict:
        return {
            "port": self.port,
            "site_id": self.site_id,
            "allocated_at": self.allocated_at.isoformat(),
        }


class PortAllocator:
    """
    Process-wide port pool.

    All mutation goes through allocate/release/adopt, serialized by an
    asyncio lock so two sites starting at once can never receive the same
    port.
    """

    def __init__(
        self,
        range_start: int,
        range_end: int,
        extra_ports: Iterable[int] = (),
        reserved_ports: Iterable[int] = (),
        host: str = "127.0.0.1",
    ):
        if range_end < range_start:
            raise ValueError(f"Invalid port range {range_start}-{range_end}")

        self.host = host
        self.reserved_ports = set(reserved_ports)
        extra = list(extra_ports)

        pool: List[int] = list(range(range_start, range_end + 1))
        pool.extend(p for p in extra if p not in pool)
        self._pool = [p for p in pool if p not in self.reserved_ports]

        self._leases: Dict[int, PortLease] = {}
        self._lock = asyncio.Lock()

        logger.info(
            f"[PORTS] Pool {range_start}-{range_end} "
            f"(+{len(extra)} extra, {len(self.reserved_ports)} reserved)"
        )

    # =========================================================================
    # PROBES
    # =========================================================================

    def is_port_bindable(self, port: int) -> bool:
        """
        Try to bind the port; False if another process already holds it.

        SO_REUSEADDR matches how php -S, mysqld and Docker bind, so sockets
        left in TIME_WAIT by a stopped site do not count as taken.
        """
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self.host, port))
            except OSError as e:
                if e.errno not in (errno.EADDRINUSE, errno.EACCES):
                    logger.debug(f"[PORTS] Bind probe on {port} failed: {e}")
                return False
        return True

    async def is_port_listening(self, port: int, timeout: float = 1.0) -> bool:
        """True if something accepts TCP connections on the port."""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, port), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    # =========================================================================
    # ALLOCATION
    # =========================================================================

    def in_pool(self, port: int) -> bool:
        return port in self._pool

    def _is_free(self, port: int) -> bool:
        return port not in self._leases and port not in self.reserved_ports and self.is_port_bindable(port)

    def _first_free(self, exclude: Iterable[int] = ()) -> int:
        skip = set(exclude)
        for port in self._pool:
            if port in skip:
                continue
            if self._is_free(port):
                return port
        raise NoPortsAvailable(
            f"No free ports left in the configured pool ({len(self._pool)} ports)",
            remediation="Stop or delete unused sites, or widen the port range."
        )

    async def allocate(self, site_id: str, preferred: Optional[int] = None) -> int:
        """
        Lease a port to a site.

        Returns the site's existing lease if it has one. Otherwise the
        preferred port is used when it is free; when it is leased to another
        site or bound by another process, the lowest free pool port is
        handed out instead.

        Raises:
            NoPortsAvailable: If the entire pool is exhausted
        """
        async with self._lock:
            existing = self.lease_for(site_id)
            if existing is not None:
                return existing

            port: Optional[int] = None
            if preferred is not None:
                if self._is_free(preferred):
                    port = preferred
                else:
                    holder = self._leases.get(preferred)
                    reason = f"leased to site {holder.site_id}" if holder else "in use by another process"
                    logger.warning(f"[PORTS] Preferred port {preferred} is {reason}; reassigning")

            if port is None:
                port = self._first_free()

            self._leases[port] = PortLease(port=port, site_id=site_id)
            logger.info(f"[PORTS] Leased port {port} to site {site_id}")
            return port

    def suggest(self, exclude: Iterable[int] = (), preferred: Optional[int] = None) -> int:
        """
        Pick a port without leasing it (used when a site is created).

        Raises:
            NoPortsAvailable: If the entire pool is exhausted
        """
        if preferred is not None and preferred not in set(exclude) and self._is_free(preferred):
            return preferred
        if preferred is not None:
            logger.warning(f"[PORTS] Requested port {preferred} is taken; reassigning")
        return self._first_free(exclude)

    async def adopt(self, port: int, site_id: str) -> None:
        """Record a lease for a port found live during reconciliation."""
        async with self._lock:
            holder = self._leases.get(port)
            if holder is not None and holder.site_id != site_id:
                raise NoPortsAvailable(f"Port {port} is already leased to site {holder.site_id}")
            self._leases[port] = PortLease(port=port, site_id=site_id)
            logger.info(f"[PORTS] Adopted port {port} for site {site_id}")

    async def release(self, port: Optional[int]) -> None:
        """Release a port. Safe to call on a port that is already free."""
        if port is None:
            return
        async with self._lock:
            lease = self._leases.pop(port, None)
        if lease:
            logger.info(f"[PORTS] Released port {port} (site {lease.site_id})")

    async def release_for_site(self, site_id: str) -> Optional[int]:
        """Release whatever port the site holds. Returns the released port, if any."""
        async with self._lock:
            port = self.lease_for(site_id)
            if port is not None:
                del self._leases[port]
        if port is not None:
            logger.info(f"[PORTS] Released port {port} (site {site_id})")
        return port

    # =========================================================================
    # INSPECTION
    # =========================================================================

    def lease_for(self, site_id: str) -> Optional[int]:
        for port, lease in self._leases.items():
            if lease.site_id == site_id:
                return port
        return None

    def leases(self) -> List[PortLease]:
        return sorted(self._leases.values(), key=lambda lease: lease.port)
