"""
Hosts File Synchronizer

Maps custom local domains (e.g. "my-shop.local") to the loopback address by
writing tagged lines into the system hosts file:

    127.0.0.1	my-shop.local	# pressbox:site=<site-id>

Only tagged lines are ever rewritten or removed; everything the user wrote
is preserved byte-for-byte. Disabled entries stay in the file commented out
so they can be re-enabled without losing the mapping.

A single full copy of the hosts file is taken before the first mutation
this component ever performs. That backup is write-once and is the sole
recovery path (restore_from_backup).
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os

from ..errors import HostsFileError, HostsPermissionError

logger = logging.getLogger(__name__)

TAG_PREFIX = "pressbox:site="

# "[#] <ip> <hostname> ... # pressbox:site=<id>"
_MANAGED_LINE_RE = re.compile(
    r'^\s*(?P<disabled>#\s*)?(?P<ip>[0-9a-fA-F:.]+)\s+(?P<hostname>\S+)[^#\n]*#\s*'
    + re.escape(TAG_PREFIX) + r'(?P<site_id>\S+)\s*$'
)


@dataclass
class HostsEntry:
    ip: str
    hostname: str
    site_id: str
    enabled: bool = True

    def to_line(self) -> str:
        prefix = "" if self.enabled else "# "
        return f"{prefix}{self.ip}\t{self.hostname}\t# {TAG_PREFIX}{self.site_id}"

    def to_dict(self) -> Dict:
        return {
            "ip": self.ip,
            "hostname": self.hostname,
            "site_id": self.site_id,
            "enabled": self.enabled,
        }


def parse_managed_line(line: str) -> Optional[HostsEntry]:
    """Parse a tagged line into a HostsEntry; None for user-authored lines."""
    match = _MANAGED_LINE_RE.match(line)
    if not match:
        return None
    return HostsEntry(
        ip=match.group('ip'),
        hostname=match.group('hostname').lower(),
        site_id=match.group('site_id'),
        enabled=match.group('disabled') is None,
    )


class HostsFileSynchronizer:
    """
    Owns every mutation PressBox makes to the system hosts file.

    Mutations are serialized by an asyncio lock and gated on write access to
    the hosts file. Without it they fail closed with HostsPermissionError so
    the orchestrator can fall back to localhost URLs.
    """

    def __init__(self, hosts_path: Path, backup_path: Path):
        self.hosts_path = Path(hosts_path)
        self.backup_path = Path(backup_path)
        self._backup_taken = self.backup_path.exists()
        self._lock = asyncio.Lock()

    # =========================================================================
    # PRIVILEGES & BACKUP
    # =========================================================================

    def has_privileges(self) -> bool:
        """True if the hosts file (or its directory, if missing) is writable."""
        if self.hosts_path.exists():
            return os.access(self.hosts_path, os.W_OK)
        return os.access(self.hosts_path.parent, os.W_OK)

    def _require_privileges(self) -> None:
        if not self.has_privileges():
            raise HostsPermissionError(
                f"No write access to {self.hosts_path}",
                remediation="Run PressBox with administrator privileges or enable non-admin mode."
            )

    @property
    def has_backup(self) -> bool:
        return self._backup_taken or self.backup_path.exists()

    async def ensure_backup(self) -> bool:
        """
        Copy the hosts file to the backup location exactly once.

        Returns:
            True if a backup was written by this call, False if one already existed
        """
        if self.has_backup:
            self._backup_taken = True
            return False

        content = await self._read_raw()
        await aiofiles.os.makedirs(self.backup_path.parent, exist_ok=True)
        async with aiofiles.open(self.backup_path, 'x', encoding='utf-8', newline='') as f:
            await f.write(content)

        self._backup_taken = True
        logger.info(f"[HOSTS] Backed up {self.hosts_path} to {self.backup_path}")
        return True

    async def restore_from_backup(self) -> None:
        """Replace the live hosts file with the stored backup, verbatim."""
        self._require_privileges()
        if not self.backup_path.exists():
            raise HostsFileError(f"No hosts backup found at {self.backup_path}")

        async with self._lock:
            async with aiofiles.open(self.backup_path, 'r', encoding='utf-8', newline='') as f:
                content = await f.read()
            await self._write_raw(content)

        logger.warning(f"[HOSTS] Restored {self.hosts_path} from backup")

    # =========================================================================
    # RAW I/O
    # =========================================================================

    async def _read_raw(self) -> str:
        try:
            async with aiofiles.open(self.hosts_path, 'r', encoding='utf-8', newline='') as f:
                return await f.read()
        except FileNotFoundError:
            return ""
        except PermissionError as e:
            raise HostsPermissionError(f"Cannot read {self.hosts_path}: {e}") from e

    async def _write_raw(self, content: str) -> None:
        # Write in place: /etc/hosts is often a bind mount, so rename-over is not an option
        try:
            async with aiofiles.open(self.hosts_path, 'w', encoding='utf-8', newline='') as f:
                await f.write(content)
        except PermissionError as e:
            raise HostsPermissionError(f"Cannot write {self.hosts_path}: {e}") from e

    async def _read_lines(self) -> Tuple[List[str], str]:
        content = await self._read_raw()
        newline = "\r\n" if "\r\n" in content else "\n"
        lines = content.splitlines()
        return lines, newline

    async def _write_lines(self, lines: List[str], newline: str) -> None:
        content = newline.join(lines)
        if lines:
            content += newline
        await self._write_raw(content)

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def list_entries(self) -> List[HostsEntry]:
        """All entries written by PressBox, enabled or not."""
        lines, _ = await self._read_lines()
        return [entry for entry in (parse_managed_line(line) for line in lines) if entry]

    async def get_entry(self, domain: str) -> Optional[HostsEntry]:
        domain = domain.lower()
        for entry in await self.list_entries():
            if entry.hostname == domain:
                return entry
        return None

    async def stats(self) -> Dict:
        lines, _ = await self._read_lines()
        managed = [entry for entry in (parse_managed_line(line) for line in lines) if entry]
        user_lines = [
            line for line in lines
            if line.strip() and not line.strip().startswith('#') and parse_managed_line(line) is None
        ]
        last_modified = None
        if self.hosts_path.exists():
            last_modified = datetime.fromtimestamp(self.hosts_path.stat().st_mtime, tz=timezone.utc).isoformat()

        return {
            "total_entries": len(user_lines) + len(managed),
            "managed_entries": len(managed),
            "enabled_entries": len(user_lines) + sum(1 for e in managed if e.enabled),
            "has_backup": self.has_backup,
            "has_privileges": self.has_privileges(),
            "last_modified": last_modified,
        }

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def add(self, domain: str, ip: str, site_id: str) -> bool:
        """
        Append or replace the managed entry for a domain.

        Returns:
            True if a new entry was created, False if an existing one was replaced
        """
        self._require_privileges()
        domain = domain.lower()
        entry = HostsEntry(ip=ip, hostname=domain, site_id=site_id)

        async with self._lock:
            await self.ensure_backup()
            lines, newline = await self._read_lines()

            created = True
            new_lines: List[str] = []
            for line in lines:
                existing = parse_managed_line(line)
                if existing and existing.hostname == domain:
                    if created:
                        new_lines.append(entry.to_line())
                        created = False
                    continue
                new_lines.append(line)

            if created:
                new_lines.append(entry.to_line())

            await self._write_lines(new_lines, newline)

        logger.info(f"[HOSTS] {'Added' if created else 'Updated'} {domain} -> {ip} (site {site_id})")
        return created

    async def remove(self, domain: str) -> bool:
        """Remove the managed entry for a domain. Returns True if anything was removed."""
        domain = domain.lower()
        return await self._remove_matching(lambda e: e.hostname == domain, f"domain {domain}")

    async def remove_for_site(self, site_id: str) -> bool:
        """Remove every managed entry tagged with the site id."""
        return await self._remove_matching(lambda e: e.site_id == site_id, f"site {site_id}")

    async def _remove_matching(self, predicate, description: str) -> bool:
        self._require_privileges()

        async with self._lock:
            lines, newline = await self._read_lines()
            kept = []
            removed = 0
            for line in lines:
                entry = parse_managed_line(line)
                if entry and predicate(entry):
                    removed += 1
                    continue
                kept.append(line)

            if not removed:
                return False

            await self.ensure_backup()
            await self._write_lines(kept, newline)

        logger.info(f"[HOSTS] Removed {removed} entr{'y' if removed == 1 else 'ies'} for {description}")
        return True

    async def set_enabled(self, domain: str, enabled: bool) -> None:
        """Enable or disable (comment out) a managed entry."""
        self._require_privileges()
        domain = domain.lower()

        async with self._lock:
            lines, newline = await self._read_lines()
            found = False
            for i, line in enumerate(lines):
                entry = parse_managed_line(line)
                if entry and entry.hostname == domain:
                    entry.enabled = enabled
                    lines[i] = entry.to_line()
                    found = True

            if not found:
                raise HostsFileError(f"Hosts entry '{domain}' not found")

            await self.ensure_backup()
            await self._write_lines(lines, newline)

        logger.info(f"[HOSTS] {'Enabled' if enabled else 'Disabled'} {domain}")
