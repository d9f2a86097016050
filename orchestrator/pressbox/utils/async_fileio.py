"""
Async file I/O utilities
Wraps blocking file operations so site provisioning never blocks the event loop.
"""
import asyncio
import os
import shutil
import stat
import zipfile
from collections import deque
from pathlib import Path
from typing import Optional, Union

import aiofiles
import aiofiles.os

PathLike = Union[str, Path]


async def rmtree_async(path: PathLike) -> None:
    """
    Async version of shutil.rmtree.

    Read-only files (common in extracted archives and git checkouts) are made
    writable and retried once. Any other failure propagates.
    """
    def _make_writable(directory):
        for root, dirs, files in os.walk(directory):
            for name in dirs + files:
                full = os.path.join(root, name)
                if not os.path.islink(full):
                    os.chmod(full, os.stat(full).st_mode | stat.S_IWUSR | stat.S_IRUSR | stat.S_IXUSR)

    def _rmtree():
        if not os.path.lexists(path):
            return
        try:
            shutil.rmtree(path)
        except PermissionError:
            _make_writable(path)
            shutil.rmtree(path)

    await asyncio.to_thread(_rmtree)


async def write_text_async(file_path: PathLike, content: str, mode: str = 'w') -> None:
    """
    Async text write, creating parent directories as needed.

    Args:
        file_path: Path to file
        content: Content to write
        mode: Write mode ('w' or 'a')
    """
    parent = os.path.dirname(str(file_path))
    if parent:
        await aiofiles.os.makedirs(parent, exist_ok=True)
    async with aiofiles.open(file_path, mode, encoding='utf-8') as f:
        await f.write(content)


async def read_text_async(file_path: PathLike, errors: str = 'replace') -> str:
    async with aiofiles.open(file_path, 'r', encoding='utf-8', errors=errors) as f:
        return await f.read()


async def read_tail_async(file_path: PathLike, lines: int = 200) -> str:
    """
    Return the last `lines` lines of a text file, or "" if it does not exist.
    """
    if not await aiofiles.os.path.exists(file_path):
        return ""

    tail: deque = deque(maxlen=max(lines, 0))
    async with aiofiles.open(file_path, 'r', encoding='utf-8', errors='replace') as f:
        async for line in f:
            tail.append(line)
    return ''.join(tail)


async def copy_tree_async(src: PathLike, dst: PathLike, ignore=None) -> None:
    """
    Async directory tree copy; merges into an existing destination.

    Args:
        ignore: Optional shutil.copytree ignore callable
    """
    await asyncio.to_thread(shutil.copytree, src, dst, ignore=ignore, dirs_exist_ok=True)


async def is_empty_dir_async(path: PathLike) -> bool:
    """True if path does not exist or is an empty directory."""
    def _check():
        p = Path(path)
        if not p.exists():
            return True
        if not p.is_dir():
            return False
        return not any(p.iterdir())

    return await asyncio.to_thread(_check)


async def extract_zip_async(
    archive: PathLike,
    destination: PathLike,
    strip_prefix: Optional[str] = None
) -> None:
    """
    Extract a zip archive, optionally stripping a leading directory
    (WordPress archives unpack into "wordpress/").

    Args:
        archive: Path to the zip file
        destination: Directory to extract into
        strip_prefix: Leading path component to remove from every member
    """
    def _extract():
        dest = Path(destination).resolve()
        dest.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive) as zf:
            for member in zf.infolist():
                name = member.filename
                if strip_prefix:
                    if not name.startswith(strip_prefix):
                        continue
                    name = name[len(strip_prefix):]
                if not name:
                    continue
                target = (dest / name).resolve()
                if not target.is_relative_to(dest):
                    raise ValueError(f"Unsafe path in archive: {member.filename}")
                if member.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(member) as source, open(target, 'wb') as out:
                    shutil.copyfileobj(source, out)

    await asyncio.to_thread(_extract)
