#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import itertools
import logging
import threading
import time
from typing import Any, Dict, Optional

from .base import HostHandle, HypervisorDriver, RuntimeInfo

logger = logging.getLogger("vm-supervisor")


class DummyDriver(HypervisorDriver):
    """In-memory driver for dry runs; settings: provision_delay, terminate_delay."""

    name = "dummy"

    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        super().__init__(settings)
        self.provision_delay = float(self.settings.get("provision_delay", 0))
        self.terminate_delay = float(self.settings.get("terminate_delay", 0))
        self._lock = threading.Lock()
        self._live: Dict[str, float] = {}
        self._counter = itertools.count(1)

    def provision(self, memory_mb: int, vcpus: int, name: str) -> HostHandle:
        if self.provision_delay:
            time.sleep(self.provision_delay)
        now = time.time()
        with self._lock:
            ref = f"dummy-{next(self._counter)}"
            self._live[ref] = now
        logger.info("dummy instance %s started (%d MB, %d vCPU, name=%r)", ref, memory_mb, vcpus, name)
        return HostHandle(driver=self.name, ref=ref, started_at=now)

    def terminate(self, handle: HostHandle) -> None:
        if self.terminate_delay:
            time.sleep(self.terminate_delay)
        with self._lock:
            self._live.pop(handle.ref, None)
        logger.info("dummy instance %s stopped", handle.ref)

    def query(self, handle: HostHandle) -> RuntimeInfo:
        with self._lock:
            started = self._live.get(handle.ref)
        if started is None:
            return RuntimeInfo(alive=False)
        return RuntimeInfo(alive=True, status="running", uptime_seconds=round(time.time() - started, 1))

    def live_count(self) -> int:
        with self._lock:
            return len(self._live)
