"""Data models for pipeline runs, process lookups and service status."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from webhook_deployer.errors import SyncError


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class PipelineStage(StrEnum):
    """Where the orchestrator currently is inside a run."""

    IDLE = "idle"
    SYNCING = "syncing"
    DECIDING = "deciding"
    STOPPING = "stopping"
    INSTALLING = "installing"
    BUILDING = "building"
    STARTING = "starting"


class RunStatus(StrEnum):
    """Terminal outcome of a pipeline run."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class PipelineState:
    """Process-wide pipeline flags, owned by the orchestrator."""

    is_first_run_completed: bool = False
    is_application_running: bool = False
    last_synced_revision: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_first_run_completed": self.is_first_run_completed,
            "is_application_running": self.is_application_running,
            "last_synced_revision": self.last_synced_revision,
        }


@dataclass
class RepositorySnapshot:
    """Result of one pull attempt."""

    changed: bool = False
    revision: str | None = None
    output: str = ""
    error: SyncError | None = None


@dataclass(frozen=True)
class PortBinding:
    """Owner of a listening TCP port, if any."""

    port: int
    pid: int | None = None

    @property
    def is_bound(self) -> bool:
        return self.pid is not None


@dataclass
class SupervisedProcess:
    """A launched application instance and the task watching it."""

    pid: int
    started_at: str = field(default_factory=_now_iso)
    completion: asyncio.Task[ProcessExit] | None = field(default=None, repr=False)

    @property
    def exited(self) -> bool:
        return self.completion is not None and self.completion.done()


@dataclass
class ProcessExit:
    """Recorded natural exit of a supervised application."""

    pid: int
    returncode: int | None
    started_at: str
    exited_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "returncode": self.returncode,
            "started_at": self.started_at,
            "exited_at": self.exited_at,
        }


@dataclass
class RunResult:
    """Outcome of a single pipeline run."""

    trigger: str
    status: RunStatus = RunStatus.FAILED
    build_required: bool = False
    changed: bool | None = None
    revision: str | None = None
    steps_completed: list[str] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    started_at: str = field(default_factory=_now_iso)
    completed_at: str | None = None
    duration_seconds: float = 0.0

    def fail(self, exc: BaseException) -> None:
        self.status = RunStatus.FAILED
        self.error = str(exc) or exc.__class__.__name__
        self.error_type = exc.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger,
            "status": self.status.value,
            "build_required": self.build_required,
            "changed": self.changed,
            "revision": self.revision,
            "steps_completed": self.steps_completed,
            "error": self.error,
            "error_type": self.error_type,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class ServiceStatus:
    """Snapshot returned by ``GET /status``."""

    state: str
    current_operation: str | None = None
    busy: bool = False
    pending_runs: int = 0
    pipeline: dict[str, Any] = field(default_factory=dict)
    application_pid: int | None = None
    last_result: RunResult | None = None
    recent_exits: list[ProcessExit] = field(default_factory=list)
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "current_operation": self.current_operation,
            "busy": self.busy,
            "pending_runs": self.pending_runs,
            "pipeline": self.pipeline,
            "application_pid": self.application_pid,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "recent_exits": [e.to_dict() for e in self.recent_exits],
            "uptime_seconds": self.uptime_seconds,
        }
