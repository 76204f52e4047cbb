"""Port-based process discovery and termination.

The application is located through the socket table rather than an
in-memory handle, so an instance started by a previous deployer process is
still found and stopped after the deployer restarts.
"""

from __future__ import annotations

import asyncio
import os

import psutil

from webhook_deployer.errors import PortLookupError, TerminationError
from webhook_deployer.logging import get_logger
from webhook_deployer.models import PortBinding

log = get_logger("webhook_deployer.process")


class ProcessPortInspector:
    """Reports which process, if any, listens on a TCP port."""

    async def inspect(self, port: int) -> PortBinding:
        """Return the port's owner; an unbound port is a normal result.

        Raises ``PortLookupError`` if the socket table cannot be read or a
        listener exists whose owning process is not visible to us.
        """
        return await asyncio.to_thread(self._inspect_sync, port)

    def _inspect_sync(self, port: int) -> PortBinding:
        try:
            connections = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied as exc:
            raise PortLookupError(f"access denied reading socket table: {exc}") from exc
        except OSError as exc:
            raise PortLookupError(f"cannot read socket table: {exc}") from exc

        listeners = [
            conn
            for conn in connections
            if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port
        ]
        if not listeners:
            log.debug("port_unbound", port=port)
            return PortBinding(port=port)

        pids = sorted({conn.pid for conn in listeners if conn.pid is not None})
        if not pids:
            raise PortLookupError(f"port {port} is bound but its owner is not visible")
        if len(pids) > 1:
            log.warning("port_has_multiple_owners", port=port, pids=pids)

        log.info("port_owner_found", port=port, pid=pids[0])
        return PortBinding(port=port, pid=pids[0])


class ProcessTerminator:
    """Sends a best-effort termination signal to a process."""

    async def terminate(self, pid: int) -> None:
        """Signal ``pid`` with SIGTERM without waiting for it to exit.

        A process that is already gone counts as terminated.
        """
        await asyncio.to_thread(self._terminate_sync, pid)

    def _terminate_sync(self, pid: int) -> None:
        if pid == os.getpid():
            raise TerminationError("refusing to terminate the deployer itself")
        try:
            psutil.Process(pid).terminate()
        except psutil.NoSuchProcess:
            log.info("process_already_gone", pid=pid)
            return
        except psutil.AccessDenied as exc:
            raise TerminationError(f"not permitted to terminate pid {pid}") from exc
        log.info("process_terminated", pid=pid)
