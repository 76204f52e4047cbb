"""Dependency install and build steps."""

from __future__ import annotations

import time
from pathlib import Path

from webhook_deployer.commands import run_command
from webhook_deployer.errors import BuildError, CommandError
from webhook_deployer.logging import get_logger

log = get_logger("webhook_deployer.build")


class BuildRunner:
    """Runs the install and build commands inside the repository."""

    def __init__(
        self,
        install_command: str = "npm install",
        build_command: str = "npm run build",
        timeout: float = 1200.0,
    ) -> None:
        self._install_command = install_command
        self._build_command = build_command
        self._timeout = timeout

    async def install(self, repo_path: Path) -> None:
        await self._run_step("install", self._install_command, repo_path)

    async def build(self, repo_path: Path) -> None:
        await self._run_step("build", self._build_command, repo_path)

    async def _run_step(self, step: str, command: str, repo_path: Path) -> None:
        log.info("build_step_started", step=step, command=command)
        start = time.monotonic()
        try:
            result = await run_command(command, cwd=repo_path, timeout=self._timeout)
        except CommandError as exc:
            raise BuildError(step, f"{step} step failed: {exc}") from exc

        if not result.ok:
            raise BuildError(
                step,
                f"{command!r} exited with {result.returncode}: {result.stderr_tail}",
                returncode=result.returncode,
            )
        log.info(
            "build_step_completed",
            step=step,
            duration_seconds=round(time.monotonic() - start, 2),
        )
