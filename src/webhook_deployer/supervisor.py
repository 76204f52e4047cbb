"""Supervision of the deployed application process.

``start`` returns as soon as the process is spawned. Its exit is observed by
a detached task and kept in a bounded sink for diagnostics. ``stop`` goes
through the port owner instead of the spawned handle, so it also stops an
instance left running by an earlier deployer process.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from webhook_deployer.commands import split_command
from webhook_deployer.errors import CommandError, SupervisionError
from webhook_deployer.health_checker import HealthCheckConfig, check_service_health
from webhook_deployer.logging import get_logger
from webhook_deployer.models import ProcessExit, SupervisedProcess
from webhook_deployer.process import ProcessPortInspector, ProcessTerminator

log = get_logger("webhook_deployer.supervisor")


class ApplicationSupervisor:
    """Starts, observes and stops the application bound to ``port``."""

    def __init__(
        self,
        port: int,
        start_command: str = "npm start",
        inspector: ProcessPortInspector | None = None,
        terminator: ProcessTerminator | None = None,
        readiness_url: str | None = None,
        readiness_config: HealthCheckConfig | None = None,
        exit_history: int = 50,
    ) -> None:
        self._port = port
        self._start_command = start_command
        self._inspector = inspector or ProcessPortInspector()
        self._terminator = terminator or ProcessTerminator()
        self._readiness_url = readiness_url
        self._readiness_config = readiness_config or HealthCheckConfig()
        self._exits: deque[ProcessExit] = deque(maxlen=exit_history)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._current: SupervisedProcess | None = None

    @property
    def port(self) -> int:
        return self._port

    @property
    def current(self) -> SupervisedProcess | None:
        """Instance launched by this supervisor, if any."""
        return self._current

    @property
    def exits(self) -> list[ProcessExit]:
        return list(self._exits)

    async def start(self, repo_path: Path) -> SupervisedProcess:
        """Launch the application in the background and return immediately."""
        try:
            argv = split_command(self._start_command)
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(repo_path),
                stdin=asyncio.subprocess.DEVNULL,
                # own session: the app keeps running if the deployer restarts
                start_new_session=True,
            )
        except (OSError, CommandError) as exc:
            raise SupervisionError(f"cannot launch {self._start_command!r}: {exc}") from exc

        process = SupervisedProcess(pid=proc.pid)
        process.completion = self._spawn(self._observe(proc, process))
        self._current = process
        log.info("application_started", pid=proc.pid, command=self._start_command)

        if self._readiness_url:
            self._spawn(self._probe_readiness(self._readiness_url))
        return process

    async def stop(self) -> int | None:
        """Terminate whatever listens on the application port.

        Returns the signalled pid, or None when nothing was listening.
        """
        binding = await self._inspector.inspect(self._port)
        if binding.pid is None:
            log.info("application_not_running", port=self._port)
            return None
        log.info("application_stopping", port=self._port, pid=binding.pid)
        await self._terminator.terminate(binding.pid)
        return binding.pid

    async def is_running(self) -> bool:
        binding = await self._inspector.inspect(self._port)
        return binding.is_bound

    async def close(self) -> None:
        """Cancel observer tasks. The application itself is left alone."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _observe(
        self, proc: asyncio.subprocess.Process, process: SupervisedProcess
    ) -> ProcessExit:
        returncode = await proc.wait()
        record = ProcessExit(pid=process.pid, returncode=returncode, started_at=process.started_at)
        self._exits.append(record)
        if returncode == 0:
            log.info("application_exited", pid=process.pid, returncode=returncode)
        else:
            log.warning("application_exited", pid=process.pid, returncode=returncode)
        return record

    async def _probe_readiness(self, url: str) -> None:
        healthy = await check_service_health(url, self._readiness_config)
        if healthy:
            log.info("application_ready", url=url)
        else:
            log.warning("application_not_ready", url=url)
