"""
Async subprocess utilities
Every external command the orchestrator runs goes through here so that each
call carries an explicit timeout.
"""
import asyncio
import shutil
from typing import Optional, List
from dataclasses import dataclass


@dataclass
class SubprocessResult:
    """Outcome of one external command; output is always decoded text."""
    returncode: int
    stdout: str
    stderr: str
    args: List[str]

    @property
    def success(self) -> bool:
        return self.returncode == 0


async def run_async(cmd: List[str], timeout: Optional[float] = None) -> SubprocessResult:
    """
    Run a command to completion, capturing its output.

    Args:
        cmd: Executable and arguments
        timeout: Seconds before the process is killed (None = wait forever)

    Raises:
        asyncio.TimeoutError: The timeout expired; the process has been reaped
        FileNotFoundError: The executable does not exist
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise

    return SubprocessResult(
        returncode=process.returncode,
        stdout=(stdout_bytes or b"").decode('utf-8', errors='replace'),
        stderr=(stderr_bytes or b"").decode('utf-8', errors='replace'),
        args=cmd
    )


async def check_command_exists(command: str) -> bool:
    """True if `command` resolves on PATH (or is an existing executable path)."""
    return await asyncio.to_thread(shutil.which, command) is not None


async def docker_compose(
    compose_file: str,
    project_name: str,
    args: List[str],
    timeout: float,
    docker_binary: str = "docker"
) -> SubprocessResult:
    """`docker compose -f <file> -p <project> <args...>`"""
    return await run_async(
        [docker_binary, "compose", "-f", compose_file, "-p", project_name] + args,
        timeout=timeout
    )
