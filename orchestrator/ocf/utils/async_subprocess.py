"""
Async subprocess utilities

Runs CLI tools (the containerd `ctr` client) without blocking the event loop.
"""
import asyncio
from typing import Optional, List
from dataclasses import dataclass


@dataclass
class SubprocessResult:
    """Result from subprocess execution (mirrors subprocess.CompletedProcess)"""
    returncode: int
    stdout: str
    stderr: str
    args: List[str]

    @property
    def success(self) -> bool:
        return self.returncode == 0


async def run_async(
    cmd: List[str],
    timeout: Optional[float] = None,
) -> SubprocessResult:
    """
    Async replacement for subprocess.run()

    Args:
        cmd: Command and arguments as list
        timeout: Optional timeout in seconds

    Returns:
        SubprocessResult with returncode, stdout, stderr

    Raises:
        asyncio.TimeoutError: If timeout is exceeded (the process is killed)
        FileNotFoundError: If the executable does not exist
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout
        )
    except (asyncio.TimeoutError, asyncio.CancelledError):
        # Never leave a ctr process holding the socket
        process.kill()
        await process.wait()
        raise

    return SubprocessResult(
        returncode=process.returncode,
        stdout=stdout_bytes.decode('utf-8', errors='replace') if stdout_bytes else "",
        stderr=stderr_bytes.decode('utf-8', errors='replace') if stderr_bytes else "",
        args=list(cmd)
    )
