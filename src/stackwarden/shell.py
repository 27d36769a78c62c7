"""Subprocess helper shared by the update stages and stack operations.

All shell calls made by Stackwarden go through :func:`run_command`, which
always applies a timeout and never raises.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from stackwarden.logging import get_logger

log = get_logger("stackwarden.shell")

_MAX_LOGGED_STDERR = 500


@dataclass
class CommandOutput:
    """Outcome of one shell command."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int | None = None
    timed_out: bool = False

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).strip()


async def run_command(cmd: str, cwd: str | None = None, timeout: float = 120) -> CommandOutput:
    """Run a shell command and capture its output.

    A non-zero exit code, a timeout or a spawn error all produce
    ``success=False``; the timed-out process is killed.
    """
    try:
        proc = await asyncio.create_subprocess_shell(
            cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except Exception as exc:
        log.warning("shell_cmd_error", cmd=cmd, error=str(exc))
        return CommandOutput(success=False, stderr=str(exc))

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        log.warning("shell_cmd_timeout", cmd=cmd, timeout=timeout)
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        return CommandOutput(
            success=False,
            stderr=f"Command timed out after {timeout}s: {cmd}",
            timed_out=True,
        )

    out = stdout.decode(errors="replace")
    err = stderr.decode(errors="replace")
    if proc.returncode != 0:
        log.warning(
            "shell_cmd_failed",
            cmd=cmd,
            returncode=proc.returncode,
            stderr=err[:_MAX_LOGGED_STDERR],
        )
        return CommandOutput(success=False, stdout=out, stderr=err, returncode=proc.returncode)

    return CommandOutput(success=True, stdout=out, stderr=err, returncode=0)
