"""Asynchronous external command execution.

All pull/install/build subprocesses go through ``run_command`` so the event
loop keeps serving webhooks while a step runs.
"""

from __future__ import annotations

import asyncio
import contextlib
import shlex
from dataclasses import dataclass
from pathlib import Path

from webhook_deployer.errors import CommandError
from webhook_deployer.logging import get_logger

log = get_logger("webhook_deployer.commands")

_STDERR_TAIL = 500


@dataclass(frozen=True)
class CommandOutput:
    """Captured result of a finished command."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def stderr_tail(self) -> str:
        return self.stderr.strip()[-_STDERR_TAIL:]


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    await proc.wait()


def split_command(command: str) -> tuple[str, ...]:
    """Split a configured command line into argv."""
    argv = tuple(shlex.split(command))
    if not argv:
        raise CommandError("empty command")
    return argv


async def run_command(
    command: str | tuple[str, ...],
    cwd: Path,
    timeout: float = 120.0,
) -> CommandOutput:
    """Run a command to completion and capture its output.

    A non-zero exit is returned, not raised; callers decide what it means.
    Raises ``CommandError`` when the command cannot be spawned or exceeds
    ``timeout``. A timed-out or cancelled command has its process killed.
    """
    argv = split_command(command) if isinstance(command, str) else command
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
        )
    except OSError as exc:
        raise CommandError(f"cannot run {shlex.join(argv)}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.CancelledError:
        await _kill(proc)
        log.warning("command_cancelled", command=shlex.join(argv))
        raise
    except TimeoutError:
        await _kill(proc)
        log.warning("command_timed_out", command=shlex.join(argv), timeout=timeout)
        raise CommandError(f"{shlex.join(argv)} timed out after {timeout:g}s") from None

    output = CommandOutput(
        argv=argv,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
    if not output.ok:
        log.warning(
            "command_failed",
            command=shlex.join(argv),
            returncode=output.returncode,
            stderr=output.stderr_tail,
        )
    return output
