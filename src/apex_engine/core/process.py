"""Async subprocess helpers shared by the runtime probe, git and stats calls."""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence, Union


@dataclass
class ProcessResult:
    """Outcome of one finished subprocess."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


CommandRunner = Callable[..., Awaitable[ProcessResult]]


async def run_command(
    cmd: Sequence[str],
    cwd: Union[str, Path, None] = None,
    timeout: Optional[float] = None,
    env: Optional[dict[str, str]] = None,
) -> ProcessResult:
    """Run a command and collect its output.

    Raises:
        FileNotFoundError: The binary does not exist.
        asyncio.TimeoutError: The command did not finish within ``timeout``;
            the process is killed first.

    A cancelled caller also kills the process before the cancellation
    propagates.
    """
    full_env = None
    if env:
        full_env = {**os.environ, **env}

    proc = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=full_env,
    )

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except BaseException:
        # Timed out or cancelled
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        raise

    return ProcessResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
    )
