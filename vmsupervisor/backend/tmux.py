#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tmux driver: each VM runs inside its own detached tmux session, so an operator
can attach to the console while the supervisor tracks the pane process.
"""
import logging
import shlex
import time
import uuid
from typing import Any, Dict, List, Optional

import psutil
from libtmux import Server as TmuxServer

from .base import DriverError, HostHandle, HypervisorDriver, RuntimeInfo
from .helpers import process_runtime, render_command, terminate_pid

logger = logging.getLogger("vm-supervisor")


class TmuxManager:
    """Thin wrappers over raw tmux commands (avoids deprecated libtmux helpers)."""

    @staticmethod
    def session_exists(server: TmuxServer, name: str) -> bool:
        try:
            res = server.cmd("has-session", "-t", name)
            return getattr(res, "returncode", None) == 0
        except Exception:
            return False

    @staticmethod
    def kill_session(server: TmuxServer, name: str) -> None:
        """Kill a tmux session by name; a missing session is not an error."""
        try:
            server.cmd("kill-session", "-t", name)
        except Exception as e:
            logger.debug("kill-session %s failed: %s", name, e)

    @staticmethod
    def new_session(server: TmuxServer, name: str, window_name: str, command: List[str]) -> None:
        # `exec` so the pane pid is the VM process itself
        cmd_str = "exec " + " ".join(shlex.quote(x) for x in command)
        try:
            res = server.cmd("new-session", "-d", "-s", name, "-n", window_name, "sh", "-lc", cmd_str)
        except Exception as e:
            raise DriverError(f"Failed to create tmux session: {e}", operation="provision") from e
        if getattr(res, "returncode", 0) not in (0, None):
            detail = " ".join(getattr(res, "stderr", None) or []) or "unknown error"
            raise DriverError(f"Failed to create tmux session {name}: {detail}", operation="provision")

    @staticmethod
    def pane_pid(server: TmuxServer, name: str) -> Optional[int]:
        try:
            res = server.cmd("display-message", "-p", "-t", name, "#{pane_pid}")
            out = getattr(res, "stdout", None) or []
            return int(out[0].strip()) if out else None
        except (ValueError, IndexError):
            return None
        except Exception as e:
            logger.debug("display-message for %s failed: %s", name, e)
            return None


class TmuxDriver(HypervisorDriver):
    """Settings: command (argv template), session_prefix, socket_name, stop_timeout, startup_grace."""

    name = "tmux"

    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        super().__init__(settings)
        self.command = list(self.settings.get("command") or [])
        self.session_prefix = str(self.settings.get("session_prefix", "vm"))
        self.socket_name = self.settings.get("socket_name")
        self.stop_timeout = float(self.settings.get("stop_timeout", 10))
        self.startup_grace = float(self.settings.get("startup_grace", 0.5))
        self.tmux_manager = TmuxManager()

    def _server(self) -> TmuxServer:
        if self.socket_name:
            return TmuxServer(socket_name=self.socket_name)
        return TmuxServer()

    def provision(self, memory_mb: int, vcpus: int, name: str) -> HostHandle:
        argv = render_command(self.command, memory_mb=memory_mb, vcpus=vcpus, name=name)
        server = self._server()
        session_name = f"{self.session_prefix}-{uuid.uuid4().hex[:10]}"
        self.tmux_manager.new_session(server, session_name, "vm", argv)
        pid = self.tmux_manager.pane_pid(server, session_name)
        if not pid:
            # tmux spawning latency
            time.sleep(0.2)
            pid = self.tmux_manager.pane_pid(server, session_name)
        if not pid:
            self.tmux_manager.kill_session(server, session_name)
            raise DriverError(f"Could not discover pid for tmux session {session_name}", operation="provision")
        time.sleep(self.startup_grace)
        try:
            started_at = psutil.Process(pid).create_time()
        except psutil.NoSuchProcess as e:
            self.tmux_manager.kill_session(server, session_name)
            raise DriverError(f"'{argv[0]}' exited during startup", operation="provision") from e
        if not self.tmux_manager.session_exists(server, session_name):
            raise DriverError(f"'{argv[0]}' exited during startup", operation="provision")
        logger.info("VM started in tmux session %s (pid=%d) for name=%r", session_name, pid, name)
        return HostHandle(
            driver=self.name,
            ref=session_name,
            pid=pid,
            started_at=started_at,
            data={"argv": argv, "session": session_name},
        )

    def terminate(self, handle: HostHandle) -> None:
        server = self._server()
        if handle.pid is not None:
            terminate_pid(handle.pid, handle.started_at, self.stop_timeout)
        self.tmux_manager.kill_session(server, handle.ref)
        logger.info("tmux session %s stopped", handle.ref)

    def query(self, handle: HostHandle) -> RuntimeInfo:
        if handle.pid is None:
            raise DriverError(f"Handle {handle.ref} carries no pid", operation="query")
        info = process_runtime(handle.pid, handle.started_at)
        if info.alive and not self.tmux_manager.session_exists(self._server(), handle.ref):
            return RuntimeInfo(alive=False, pid=handle.pid, status="session-missing")
        return info
