#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Supervisor wiring: one ledger, registry, engine and dispatcher per host process.
"""
import logging
import threading
from typing import Any, Dict, Optional

from vmsupervisor.backend import HypervisorDriver, get_backend_by_driver
from vmsupervisor.config import optional_seconds, resolve_capacity
from vmsupervisor.models import HostCapacity
from vmsupervisor.state import ResourceLedger, StateManager, VMRegistry
from vmsupervisor.utils import is_truthy

from .dispatcher import CommandDispatcher
from .lifecycle import LifecycleEngine

logger = logging.getLogger("vm-supervisor")


class Supervisor:
    """Owns the lifecycle components for one host."""

    def __init__(
        self,
        capacity: HostCapacity,
        driver: HypervisorDriver,
        state_file: Optional[str] = None,
        keep_destroyed: bool = True,
        max_tombstones: Optional[int] = None,
        max_workers: int = 8,
        create_timeout: Optional[float] = None,
        stop_timeout: Optional[float] = None,
    ):
        self.ledger = ResourceLedger(capacity)
        self.registry = VMRegistry(keep_destroyed=keep_destroyed, max_tombstones=max_tombstones)
        self.state_manager = StateManager(state_file)
        self.engine = LifecycleEngine(
            self.ledger, self.registry, driver, self.state_manager, driver_workers=max_workers
        )
        self.dispatcher = CommandDispatcher(
            self.engine,
            max_workers=max_workers,
            create_timeout=create_timeout,
            stop_timeout=stop_timeout,
        )
        self._init_lock = threading.Lock()
        self._initialized = False

    @classmethod
    def from_defaults(cls, defaults: Dict[str, Any]) -> "Supervisor":
        """Build a supervisor from the `defaults` section of the agent config."""
        driver_cfg = dict(defaults.get("driver") or {})
        driver_name = driver_cfg.pop("name", "process")
        state_cfg = defaults.get("state") or {}
        retention = state_cfg.get("retention") or {}
        timeouts = defaults.get("timeouts") or {}
        max_tombstones = retention.get("max_tombstones")
        supervisor = cls(
            capacity=resolve_capacity(defaults),
            driver=get_backend_by_driver(driver_name, driver_cfg),
            state_file=state_cfg.get("state_file") or None,
            keep_destroyed=is_truthy(retention.get("keep_destroyed", True)),
            max_tombstones=int(max_tombstones) if max_tombstones is not None else None,
            max_workers=int((defaults.get("dispatcher") or {}).get("max_workers", 8)),
            create_timeout=optional_seconds(timeouts.get("create")),
            stop_timeout=optional_seconds(timeouts.get("stop")),
        )
        logger.info(
            "Supervisor configured: driver=%s capacity=%d MB/%d vCPU",
            driver_name,
            supervisor.ledger.capacity.memory_mb,
            supervisor.ledger.capacity.vcpus,
        )
        return supervisor

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self) -> Dict[str, Any]:
        """Load persisted VM records once; later calls are no-ops."""
        with self._init_lock:
            if self._initialized:
                return {"status": "success", "message": "already initialized", "restored": 0, "failed": 0}
            logger.info("Starting VM state recovery...")
            summary = self.engine.recover(self.state_manager.load())
            self._initialized = True
        return {"status": "success", "message": "initialized", **summary}

    def shutdown(self, stop_running: bool = False) -> None:
        """Stop accepting work; VMs are left running unless `stop_running`."""
        if stop_running:
            self.dispatcher.stop_all()
        else:
            logger.info("Shutting down supervisor (VMs left running)")
        self.dispatcher.shutdown(wait=True)
        self.engine.shutdown(wait=False)
