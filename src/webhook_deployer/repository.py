"""Repository synchronization and change detection."""

from __future__ import annotations

from pathlib import Path

from webhook_deployer.commands import run_command
from webhook_deployer.config import ChangeDetection
from webhook_deployer.errors import CommandError, SyncError
from webhook_deployer.logging import get_logger
from webhook_deployer.models import RepositorySnapshot

log = get_logger("webhook_deployer.repository")

# git has printed both spellings over the years
_UP_TO_DATE_MARKERS = ("already up to date", "already up-to-date")


def pull_reports_no_change(output: str) -> bool:
    """True if pull output carries git's "nothing new" marker."""
    lowered = output.lower()
    return any(marker in lowered for marker in _UP_TO_DATE_MARKERS)


class RepositorySync:
    """Pulls a working copy and decides whether new content arrived.

    ``change_detection`` picks exactly one policy:

    * ``revision``: compare ``HEAD`` after the pull with the last recorded
      revision (or with ``HEAD`` before the pull when nothing is recorded yet).
    * ``pull_output``: look for the "Already up to date" marker in the pull
      output.
    """

    def __init__(
        self,
        sync_command: str = "git pull",
        change_detection: ChangeDetection = "revision",
        timeout: float = 300.0,
    ) -> None:
        self._sync_command = sync_command
        self._change_detection = change_detection
        self._timeout = timeout

    @property
    def change_detection(self) -> ChangeDetection:
        return self._change_detection

    async def sync(self, repo_path: Path, last_revision: str | None = None) -> RepositorySnapshot:
        """Pull ``repo_path``. Failures are returned on the snapshot, never raised."""
        try:
            return await self._sync(repo_path, last_revision)
        except SyncError as exc:
            log.error("repository_sync_failed", repo_path=str(repo_path), error=str(exc))
            return RepositorySnapshot(error=exc)
        except CommandError as exc:
            log.error("repository_sync_failed", repo_path=str(repo_path), error=str(exc))
            return RepositorySnapshot(error=SyncError(str(exc)))

    async def _sync(self, repo_path: Path, last_revision: str | None) -> RepositorySnapshot:
        if not repo_path.is_dir():
            raise SyncError(f"repository path {repo_path} does not exist")

        baseline = last_revision
        if self._change_detection == "revision" and baseline is None:
            baseline = await self.head_revision(repo_path)

        log.info("repository_pull_started", repo_path=str(repo_path))
        result = await run_command(self._sync_command, cwd=repo_path, timeout=self._timeout)
        if not result.ok:
            raise SyncError(
                f"{self._sync_command!r} exited with {result.returncode}: {result.stderr_tail}"
            )

        revision = await self.head_revision(repo_path)
        if self._change_detection == "revision":
            changed = revision != baseline
        else:
            changed = not pull_reports_no_change(result.stdout)

        log.info(
            "repository_pull_completed",
            changed=changed,
            revision=revision,
            policy=self._change_detection,
        )
        return RepositorySnapshot(changed=changed, revision=revision, output=result.stdout)

    async def head_revision(self, repo_path: Path) -> str:
        result = await run_command(("git", "rev-parse", "HEAD"), cwd=repo_path, timeout=30)
        if not result.ok:
            raise SyncError(f"cannot read HEAD of {repo_path}: {result.stderr_tail}")
        return result.stdout.strip()
