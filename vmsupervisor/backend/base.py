#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from vmsupervisor.errors import DriverError
from vmsupervisor.models import HostHandle, RuntimeInfo

__all__ = ["DriverError", "HostHandle", "HypervisorDriver", "RuntimeInfo"]


class HypervisorDriver(ABC):
    """Common interface for hypervisor drivers.
    Semantics:
      - provision(): start an instance and return a handle to it.
      - terminate(): stop the instance behind a handle. Must tolerate an
        instance that already exited.
      - query(): report live runtime info. Must not change instance state.
    Notes:
      - Raise DriverError for failures; the lifecycle engine wraps anything else.
      - Drivers are called concurrently for distinct VMs and must be thread-safe.
    """

    name = "base"

    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        self.settings = dict(settings or {})

    @abstractmethod
    def provision(self, memory_mb: int, vcpus: int, name: str) -> HostHandle:
        raise NotImplementedError

    @abstractmethod
    def terminate(self, handle: HostHandle) -> None:
        raise NotImplementedError

    @abstractmethod
    def query(self, handle: HostHandle) -> RuntimeInfo:
        raise NotImplementedError
