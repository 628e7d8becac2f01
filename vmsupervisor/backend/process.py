#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Local process driver: each VM is a child process spawned from an argv template
(e.g. a qemu or firecracker command line) in its own session.
"""
import logging
import os
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

import psutil

from .base import DriverError, HostHandle, HypervisorDriver, RuntimeInfo
from .helpers import process_runtime, render_command, safe_label, terminate_pid

logger = logging.getLogger("vm-supervisor")


class ProcessDriver(HypervisorDriver):
    """Spawn VM processes directly with subprocess and manage them with psutil.
    Settings:
      - command (list[str], required): argv template with {memory_mb}, {vcpus}, {name}.
      - log_dir (str): directory for per-VM stdout/stderr logs; discarded when unset.
      - startup_grace (float): seconds the process must survive to count as started.
      - stop_timeout (float): seconds between SIGTERM and SIGKILL.
      - env (dict): extra environment variables.
    """

    name = "process"

    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        super().__init__(settings)
        self.command = list(self.settings.get("command") or [])
        self.log_dir = self.settings.get("log_dir")
        self.startup_grace = float(self.settings.get("startup_grace", 0.5))
        self.stop_timeout = float(self.settings.get("stop_timeout", 10))
        self.env = {str(k): str(v) for k, v in (self.settings.get("env") or {}).items()}
        self._children: Dict[int, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def provision(self, memory_mb: int, vcpus: int, name: str) -> HostHandle:
        argv = render_command(self.command, memory_mb=memory_mb, vcpus=vcpus, name=name)
        log_path = self._log_path(name)
        env = dict(os.environ, **self.env) if self.env else None
        try:
            if log_path is not None:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                with log_path.open("ab") as log_fp:
                    proc = self._spawn(argv, log_fp, env)
            else:
                proc = self._spawn(argv, subprocess.DEVNULL, env)
        except OSError as e:
            raise DriverError(f"Failed to spawn '{argv[0]}': {e}", operation="provision") from e
        try:
            rc = proc.wait(timeout=self.startup_grace)
        except subprocess.TimeoutExpired:
            rc = None
        if rc is not None:
            raise DriverError(f"'{argv[0]}' exited with code {rc} during startup", operation="provision")
        try:
            started_at = psutil.Process(proc.pid).create_time()
        except psutil.NoSuchProcess as e:
            proc.poll()
            raise DriverError(f"'{argv[0]}' vanished during startup", operation="provision") from e
        with self._lock:
            self._children[proc.pid] = proc
        logger.info("VM process started (pid=%d) for name=%r", proc.pid, name)
        data: Dict[str, Any] = {"argv": argv}
        if log_path is not None:
            data["log_file"] = str(log_path)
        return HostHandle(driver=self.name, ref=str(proc.pid), pid=proc.pid, started_at=started_at, data=data)

    def terminate(self, handle: HostHandle) -> None:
        if handle.pid is None:
            raise DriverError(f"Handle {handle.ref} carries no pid", operation="terminate")
        terminate_pid(handle.pid, handle.started_at, self.stop_timeout)
        with self._lock:
            proc = self._children.pop(handle.pid, None)
        if proc is not None:
            # reap; psutil may already have collected the exit status
            proc.poll()
        logger.info("VM process stopped (pid=%d)", handle.pid)

    def query(self, handle: HostHandle) -> RuntimeInfo:
        if handle.pid is None:
            raise DriverError(f"Handle {handle.ref} carries no pid", operation="query")
        return process_runtime(handle.pid, handle.started_at)

    def _spawn(self, argv, stdout, env) -> subprocess.Popen:
        return subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=subprocess.STDOUT,
            env=env,
            start_new_session=True,
        )

    def _log_path(self, name: str) -> Optional[Path]:
        if not self.log_dir:
            return None
        return Path(self.log_dir) / f"{safe_label(name)}-{int(time.time() * 1000)}.log"
