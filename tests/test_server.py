"""Tests for webhook_deployer.server: aiohttp endpoints."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp.test_utils import TestClient, TestServer
from structlog.testing import capture_logs

from webhook_deployer.build import BuildRunner
from webhook_deployer.config import Settings
from webhook_deployer.models import ProcessExit, RepositorySnapshot, SupervisedProcess
from webhook_deployer.pipeline import UpdatePipeline
from webhook_deployer.repository import RepositorySync
from webhook_deployer.server import ACK_TEXT, create_app, run_server
from webhook_deployer.supervisor import ApplicationSupervisor

SECRET = "s3cret-token"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_pipeline(tmp_path: Path, repo_sync: AsyncMock | None = None) -> UpdatePipeline:
    repo = MagicMock(spec=RepositorySync)
    repo.sync = repo_sync or AsyncMock(
        return_value=RepositorySnapshot(changed=False, revision="abc")
    )
    builder = MagicMock(spec=BuildRunner)
    builder.install = AsyncMock()
    builder.build = AsyncMock()
    supervisor = MagicMock(spec=ApplicationSupervisor)
    supervisor.port = 3000
    supervisor.exits = [ProcessExit(pid=77, returncode=1, started_at="2026-01-01T00:00:00+00:00")]
    supervisor.current = None
    supervisor.stop = AsyncMock(return_value=None)
    supervisor.start = AsyncMock(return_value=SupervisedProcess(pid=1234))
    supervisor.is_running = AsyncMock(return_value=False)
    return UpdatePipeline(
        repo_path=tmp_path, repository=repo, builder=builder, supervisor=supervisor
    )


async def _make_client(pipeline: UpdatePipeline, secret: str = SECRET) -> TestClient:
    client = TestClient(TestServer(create_app(pipeline, secret)))
    await client.start_server()
    return client


# ---------------------------------------------------------------------------
# TestWebhookEndpoint
# ---------------------------------------------------------------------------


class TestWebhookEndpoint:
    """Tests for POST /webhook."""

    async def test_valid_secret_acknowledges_and_runs(self, tmp_path: Path) -> None:
        pipeline = _make_pipeline(tmp_path)
        client = await _make_client(pipeline)
        try:
            resp = await client.post(
                "/webhook",
                json={"ref": "refs/heads/main"},
                headers={"X-Shared-Secret": SECRET},
            )
            assert resp.status == 200
            assert ACK_TEXT in await resp.text()

            await pipeline.wait_idle()
            assert [r.trigger for r in pipeline.history] == ["webhook"]
        finally:
            await client.close()

    async def test_gitlab_token_header_accepted(self, tmp_path: Path) -> None:
        pipeline = _make_pipeline(tmp_path)
        client = await _make_client(pipeline)
        try:
            resp = await client.post("/webhook", headers={"X-Gitlab-Token": SECRET})
            assert resp.status == 200
            await pipeline.wait_idle()
            assert len(pipeline.history) == 1
        finally:
            await client.close()

    async def test_wrong_secret_is_forbidden(self, tmp_path: Path) -> None:
        repo_sync = AsyncMock()
        pipeline = _make_pipeline(tmp_path, repo_sync=repo_sync)
        client = await _make_client(pipeline)
        try:
            resp = await client.post(
                "/webhook",
                json={"ref": "refs/heads/main", "secret": SECRET},
                headers={"X-Shared-Secret": "nope"},
            )
            assert resp.status == 403
            await pipeline.wait_idle()
            repo_sync.assert_not_awaited()
            assert pipeline.history == []
        finally:
            await client.close()

    async def test_missing_secret_is_forbidden(self, tmp_path: Path) -> None:
        repo_sync = AsyncMock()
        pipeline = _make_pipeline(tmp_path, repo_sync=repo_sync)
        client = await _make_client(pipeline)
        try:
            resp = await client.post("/webhook", data=b"anything")
            assert resp.status == 403
            repo_sync.assert_not_awaited()
        finally:
            await client.close()

    async def test_empty_configured_secret_rejects_everything(self, tmp_path: Path) -> None:
        pipeline = _make_pipeline(tmp_path)
        client = await _make_client(pipeline, secret="")
        try:
            resp = await client.post("/webhook", headers={"X-Shared-Secret": ""})
            assert resp.status == 403
        finally:
            await client.close()

    async def test_response_does_not_wait_for_pipeline(self, tmp_path: Path) -> None:
        gate = asyncio.Event()

        async def slow_sync(*args: object) -> RepositorySnapshot:
            await gate.wait()
            return RepositorySnapshot(changed=False, revision="abc")

        pipeline = _make_pipeline(tmp_path, repo_sync=AsyncMock(side_effect=slow_sync))
        client = await _make_client(pipeline)
        try:
            resp = await client.post("/webhook", headers={"X-Shared-Secret": SECRET})
            assert resp.status == 200
            assert pipeline.history == []

            gate.set()
            await pipeline.wait_idle()
            assert len(pipeline.history) == 1
        finally:
            await client.close()

    async def test_undecodable_secret_header_is_forbidden(self, tmp_path: Path) -> None:
        repo_sync = AsyncMock()
        pipeline = _make_pipeline(tmp_path, repo_sync=repo_sync)
        client = await _make_client(pipeline)
        try:
            reader, writer = await asyncio.open_connection(client.host, client.port)
            writer.write(
                b"POST /webhook HTTP/1.1\r\n"
                b"Host: localhost\r\n"
                b"X-Shared-Secret: \xff\xfe\r\n"
                b"Content-Length: 0\r\n"
                b"Connection: close\r\n\r\n"
            )
            await writer.drain()
            status_line = await reader.readline()
            writer.close()
            await writer.wait_closed()

            assert status_line.startswith(b"HTTP/1.1 403")
            repo_sync.assert_not_awaited()
        finally:
            await client.close()

    async def test_accepted_log_counts_the_new_run(self, tmp_path: Path) -> None:
        gate = asyncio.Event()

        async def slow_sync(*args: object) -> RepositorySnapshot:
            await gate.wait()
            return RepositorySnapshot(changed=False, revision="abc")

        pipeline = _make_pipeline(tmp_path, repo_sync=AsyncMock(side_effect=slow_sync))
        client = await _make_client(pipeline)
        try:
            with capture_logs() as logs:
                await client.post("/webhook", headers={"X-Shared-Secret": SECRET})
                await client.post("/webhook", headers={"X-Shared-Secret": SECRET})

            accepted = [e for e in logs if e["event"] == "webhook_accepted"]
            assert [e["scheduled_runs"] for e in accepted] == [1, 2]

            gate.set()
            await pipeline.wait_idle()
        finally:
            await client.close()

    async def test_get_not_allowed(self, tmp_path: Path) -> None:
        client = await _make_client(_make_pipeline(tmp_path))
        try:
            resp = await client.get("/webhook")
            assert resp.status == 405
        finally:
            await client.close()


# ---------------------------------------------------------------------------
# TestHealthEndpoint
# ---------------------------------------------------------------------------


class TestHealthEndpoint:
    """Tests for GET /health."""

    async def test_health_needs_no_auth(self, tmp_path: Path) -> None:
        client = await _make_client(_make_pipeline(tmp_path))
        try:
            resp = await client.get("/health")
            assert resp.status == 200
            assert (await resp.json())["status"] == "ok"
        finally:
            await client.close()


# ---------------------------------------------------------------------------
# TestStatusEndpoint
# ---------------------------------------------------------------------------


class TestStatusEndpoint:
    """Tests for GET /status."""

    async def test_status_requires_auth(self, tmp_path: Path) -> None:
        client = await _make_client(_make_pipeline(tmp_path))
        try:
            resp = await client.get("/status")
            assert resp.status == 403
        finally:
            await client.close()

    async def test_status_reports_pipeline(self, tmp_path: Path) -> None:
        pipeline = _make_pipeline(tmp_path)
        await pipeline.run("startup")
        client = await _make_client(pipeline)
        try:
            resp = await client.get("/status", headers={"X-Shared-Secret": SECRET})
            assert resp.status == 200
            data = await resp.json()
            assert data["state"] == "idle"
            assert data["busy"] is False
            assert data["pending_runs"] == 0
            assert data["pipeline"]["is_first_run_completed"] is True
            assert data["pipeline"]["last_synced_revision"] == "abc"
            assert data["last_result"]["status"] == "success"
            assert data["recent_exits"][0]["pid"] == 77
            assert "uptime_seconds" in data
        finally:
            await client.close()


# ---------------------------------------------------------------------------
# TestHistoryEndpoint
# ---------------------------------------------------------------------------


class TestHistoryEndpoint:
    """Tests for GET /history."""

    async def test_empty_history(self, tmp_path: Path) -> None:
        client = await _make_client(_make_pipeline(tmp_path))
        try:
            resp = await client.get("/history", headers={"X-Shared-Secret": SECRET})
            assert resp.status == 200
            assert (await resp.json())["entries"] == []
        finally:
            await client.close()

    async def test_history_lists_runs_in_order(self, tmp_path: Path) -> None:
        pipeline = _make_pipeline(tmp_path)
        await pipeline.run("startup")
        await pipeline.run("webhook")
        client = await _make_client(pipeline)
        try:
            resp = await client.get("/history", headers={"X-Gitlab-Token": SECRET})
            data = await resp.json()
            assert [e["trigger"] for e in data["entries"]] == ["startup", "webhook"]
            assert data["entries"][1]["status"] == "skipped"
        finally:
            await client.close()

    async def test_history_requires_auth(self, tmp_path: Path) -> None:
        client = await _make_client(_make_pipeline(tmp_path))
        try:
            resp = await client.get("/history", headers={"X-Shared-Secret": "wrong"})
            assert resp.status == 403
        finally:
            await client.close()


# ---------------------------------------------------------------------------
# TestRunServer
# ---------------------------------------------------------------------------


class TestRunServer:
    """Tests for run_server() startup and shutdown."""

    async def test_cancel_drains_pipeline_then_closes_supervisor(self, tmp_path: Path) -> None:
        settings = Settings(
            _env_file=None,  # type: ignore[call-arg]
            git_repo_path=tmp_path,
            webhook_secret_token="x",  # type: ignore[arg-type]
            shutdown_grace_seconds=5.0,
        )
        pipeline = MagicMock()
        pipeline.initialize = AsyncMock()
        pipeline.close = AsyncMock()
        pipeline.supervisor.close = AsyncMock()
        site = MagicMock()
        site.start = AsyncMock()

        with (
            patch("webhook_deployer.server.UpdatePipeline.from_settings", return_value=pipeline),
            patch("webhook_deployer.server.web.TCPSite", return_value=site),
        ):
            task = asyncio.create_task(run_server(settings))
            while not site.start.await_count:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        pipeline.initialize.assert_awaited_once()
        pipeline.trigger.assert_called_once_with("startup")
        pipeline.close.assert_awaited_once_with(5.0)
        pipeline.supervisor.close.assert_awaited_once()
