"""Update pipeline: pull, decide, then stop/install/build/start.

Lifecycle of a run, serialized by a single lock:
1. Pull the repository and record the resulting revision
2. Decide whether a rebuild is required
3. Stop the running application (found by its port)
4. Install dependencies, then build
5. Launch the new application instance in the background

A failing step ends the run. Nothing is rolled back, and the error is
recorded on the run result instead of propagating.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from datetime import UTC, datetime
from pathlib import Path

import structlog

from webhook_deployer.build import BuildRunner
from webhook_deployer.config import Settings
from webhook_deployer.errors import DeployError, PortLookupError
from webhook_deployer.health_checker import HealthCheckConfig
from webhook_deployer.logging import get_logger
from webhook_deployer.models import (
    PipelineStage,
    PipelineState,
    RunResult,
    RunStatus,
    ServiceStatus,
)
from webhook_deployer.repository import RepositorySync
from webhook_deployer.supervisor import ApplicationSupervisor

log = get_logger("webhook_deployer.pipeline")


class UpdatePipeline:
    """Serializes pipeline runs and owns the process-wide ``PipelineState``."""

    def __init__(
        self,
        repo_path: Path,
        repository: RepositorySync,
        builder: BuildRunner,
        supervisor: ApplicationSupervisor,
        history_size: int = 50,
        state: PipelineState | None = None,
    ) -> None:
        self._repo_path = repo_path
        self._repository = repository
        self._builder = builder
        self._supervisor = supervisor
        self._state = state or PipelineState()
        self._lock = asyncio.Lock()
        self._stage = PipelineStage.IDLE
        self._current_operation: str | None = None
        self._waiting = 0
        self._history: deque[RunResult] = deque(maxlen=history_size)
        self._tasks: set[asyncio.Task[RunResult]] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> UpdatePipeline:
        """Wire the pipeline and its collaborators from configuration."""
        supervisor = ApplicationSupervisor(
            port=settings.app_port,
            start_command=settings.start_command,
            readiness_url=settings.readiness_url,
            readiness_config=HealthCheckConfig(
                retries=settings.readiness_retries,
                delay_seconds=settings.readiness_delay_seconds,
            ),
            exit_history=settings.history_size,
        )
        return cls(
            repo_path=settings.git_repo_path,
            repository=RepositorySync(
                sync_command=settings.sync_command,
                change_detection=settings.change_detection,
                timeout=settings.command_timeout_seconds,
            ),
            builder=BuildRunner(
                install_command=settings.install_command,
                build_command=settings.build_command,
                timeout=settings.command_timeout_seconds,
            ),
            supervisor=supervisor,
            history_size=settings.history_size,
        )

    @property
    def supervisor(self) -> ApplicationSupervisor:
        return self._supervisor

    # ------------------------------------------------------------------
    # Public status surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> str:
        return self._stage.value

    @property
    def current_operation(self) -> str | None:
        return self._current_operation

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    @property
    def pending_runs(self) -> int:
        """Runs waiting for the lock behind the current one."""
        return self._waiting

    @property
    def scheduled_runs(self) -> int:
        """Triggered runs not yet finished, the current one included."""
        return len(self._tasks)

    @property
    def pipeline_state(self) -> PipelineState:
        return self._state

    @property
    def last_result(self) -> RunResult | None:
        return self._history[-1] if self._history else None

    @property
    def history(self) -> list[RunResult]:
        return list(self._history)

    def status_snapshot(self) -> ServiceStatus:
        """Return pipeline and application status for API responses."""
        current = self._supervisor.current
        return ServiceStatus(
            state=self.state,
            current_operation=self.current_operation,
            busy=self.is_busy,
            pending_runs=self.pending_runs,
            pipeline=self._state.to_dict(),
            application_pid=current.pid if current and not current.exited else None,
            last_result=self.last_result,
            recent_exits=self._supervisor.exits,
        )

    def build_required(self, changed: bool) -> bool:
        """New content always rebuilds. Without it, only the first run does,
        and only when the application is not already up."""
        first_run_pending = not self._state.is_first_run_completed
        return changed or (first_run_pending and not self._state.is_application_running)

    # ------------------------------------------------------------------
    # Primary flows
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Probe whether the application is already serving on its port."""
        async with self._lock:
            try:
                running = await self._supervisor.is_running()
            except PortLookupError as exc:
                log.warning("liveness_probe_failed", error=str(exc))
                running = False
            self._state.is_application_running = running
            log.info(
                "pipeline_initialized",
                application_running=running,
                port=self._supervisor.port,
            )

    def trigger(self, reason: str) -> asyncio.Task[RunResult]:
        """Schedule a run in the background and return its task."""
        task = asyncio.create_task(self.run(reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until every scheduled run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self, grace_seconds: float = 30.0) -> None:
        """Drain scheduled runs, cancelling those still going after ``grace_seconds``."""
        tasks = list(self._tasks)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        if pending:
            log.warning("pipeline_runs_cancelled", count=len(pending), stage=self.state)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def run(self, trigger: str) -> RunResult:
        """Execute one full run, waiting for any run already in progress."""
        self._waiting += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiting -= 1
        try:
            with structlog.contextvars.bound_contextvars(trigger=trigger):
                return await self._do_run(trigger)
        finally:
            self._lock.release()

    async def _do_run(self, trigger: str) -> RunResult:
        start = time.monotonic()
        result = RunResult(trigger=trigger)
        log.info("pipeline_run_started", pending_runs=self._waiting)

        try:
            self._enter(PipelineStage.SYNCING, f"Pulling {self._repo_path}")
            snapshot = await self._repository.sync(
                self._repo_path, self._state.last_synced_revision
            )
            if snapshot.error is not None:
                result.fail(snapshot.error)
                log.error("pipeline_run_failed", stage=self.state, error=result.error)
                return result
            result.steps_completed.append("sync")
            result.changed = snapshot.changed
            result.revision = snapshot.revision
            if snapshot.revision is not None:
                self._state.last_synced_revision = snapshot.revision

            self._enter(PipelineStage.DECIDING, "Deciding whether to rebuild")
            result.build_required = self.build_required(snapshot.changed)
            if not result.build_required:
                result.status = RunStatus.SKIPPED
                log.info("pipeline_run_skipped", revision=snapshot.revision)
                return result
            log.info("rebuild_required", changed=snapshot.changed, revision=snapshot.revision)

            self._enter(PipelineStage.STOPPING, f"Stopping application on :{self._supervisor.port}")
            await self._supervisor.stop()
            self._state.is_application_running = False
            result.steps_completed.append("stop")

            self._enter(PipelineStage.INSTALLING, "Installing dependencies")
            await self._builder.install(self._repo_path)
            result.steps_completed.append("install")

            self._enter(PipelineStage.BUILDING, "Building application")
            await self._builder.build(self._repo_path)
            result.steps_completed.append("build")

            self._enter(PipelineStage.STARTING, "Starting application")
            await self._supervisor.start(self._repo_path)
            self._state.is_application_running = True
            result.steps_completed.append("start")

            self._state.is_first_run_completed = True
            result.status = RunStatus.SUCCESS
            log.info("pipeline_run_completed", revision=snapshot.revision)
            return result

        except asyncio.CancelledError as exc:
            result.fail(exc)
            log.warning("pipeline_run_cancelled", stage=self.state)
            raise
        except DeployError as exc:
            result.fail(exc)
            log.error("pipeline_run_failed", stage=self.state, error=str(exc))
            return result
        except Exception as exc:
            result.fail(exc)
            log.exception("pipeline_run_crashed", stage=self.state)
            return result
        finally:
            result.duration_seconds = round(time.monotonic() - start, 2)
            result.completed_at = datetime.now(UTC).isoformat()
            self._history.append(result)
            self._stage = PipelineStage.IDLE
            self._current_operation = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _enter(self, stage: PipelineStage, operation: str) -> None:
        self._stage = stage
        self._current_operation = operation
        log.debug("pipeline_stage", stage=stage.value)
