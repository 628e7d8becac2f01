#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Lifecycle engine for the VM supervisor.
This module owns the per-VM state machine: it admits VMs against the resource
ledger, drives the hypervisor driver, and is the only writer of VM records.

    PENDING  -> RUNNING | FAILED
    RUNNING  -> STOPPING
    STOPPING -> STOPPED | FAILED
    STOPPED | FAILED -> DESTROYED
"""
import concurrent.futures
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from vmsupervisor.backend import HypervisorDriver
from vmsupervisor.errors import (
    DriverError,
    InsufficientResources,
    InternalFault,
    InvalidState,
    OperationTimeout,
)
from vmsupervisor.models import (
    ACTIVE_STATES,
    Denied,
    HostHandle,
    VMRecord,
    VMSnapshot,
    VMState,
)
from vmsupervisor.state import ResourceLedger, StateManager, VMRegistry

logger = logging.getLogger("vm-supervisor")

TRANSITIONS: Dict[VMState, frozenset] = {
    VMState.PENDING: frozenset({VMState.RUNNING, VMState.FAILED}),
    VMState.RUNNING: frozenset({VMState.STOPPING}),
    VMState.STOPPING: frozenset({VMState.STOPPED, VMState.FAILED}),
    VMState.STOPPED: frozenset({VMState.DESTROYED}),
    VMState.FAILED: frozenset({VMState.DESTROYED}),
    VMState.DESTROYED: frozenset(),
}


def predecessors(target: VMState) -> frozenset:
    """States from which `target` is reachable in one step."""
    return frozenset(src for src, targets in TRANSITIONS.items() if target in targets)


class LifecycleEngine:
    """State machine driving VMs through provisioning, stop and destroy."""

    def __init__(
        self,
        ledger: ResourceLedger,
        registry: VMRegistry,
        driver: HypervisorDriver,
        state_manager: Optional[StateManager] = None,
        driver_workers: int = 8,
    ):
        self.ledger = ledger
        self.registry = registry
        self.driver = driver
        self.state_manager = state_manager or StateManager()
        # Held across snapshot and write so an older snapshot never lands last.
        self._persist_lock = threading.Lock()
        self._driver_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=driver_workers, thread_name_prefix="vm-driver"
        )

    # ------------------------------------------------------------------ create

    def create(self, memory_mb: int, vcpus: int, name: str = "") -> str:
        """Reserve capacity and register a PENDING VM; provisioning happens in `provision`."""
        if not isinstance(memory_mb, int) or isinstance(memory_mb, bool) or memory_mb <= 0:
            raise ValueError(f"memory_mb must be a positive integer, got {memory_mb!r}")
        if not isinstance(vcpus, int) or isinstance(vcpus, bool) or vcpus < 1:
            raise ValueError(f"vcpus must be an integer >= 1, got {vcpus!r}")
        outcome = self.ledger.try_reserve(memory_mb, vcpus)
        if isinstance(outcome, Denied):
            logger.info("Create denied (%s): %d MB / %d vCPU name=%r", outcome.reason, memory_mb, vcpus, name)
            raise InsufficientResources(outcome.reason, memory_mb, vcpus)
        now = time.time()
        record = VMRecord(
            id=self._new_id(),
            name=name or "",
            memory_mb=memory_mb,
            vcpus=vcpus,
            state=VMState.PENDING,
            created_at=now,
            last_transition_at=now,
            reservation=outcome,
        )
        try:
            self.registry.insert(record)
        except Exception:
            self.ledger.release(outcome)
            raise
        logger.info("VM %s created (%d MB, %d vCPU, name=%r)", record.id, memory_mb, vcpus, record.name)
        self._persist()
        return record.id

    def provision(self, vm_id: str, timeout: Optional[float] = None) -> VMSnapshot:
        """Start the instance for a PENDING VM and move it to RUNNING or FAILED."""
        record = self.registry.get(vm_id)
        if record.state is not VMState.PENDING:
            raise InvalidState(vm_id, record.state, "provision")
        try:
            handle = self._call_driver(
                vm_id,
                "provision",
                self.driver.provision,
                record.memory_mb,
                record.vcpus,
                record.name,
                timeout=timeout,
                on_late_result=self._reap_late_handle,
            )
        except (DriverError, OperationTimeout) as e:
            self._fail(vm_id, VMState.PENDING, str(e))
            raise
        try:
            record = self._transition(vm_id, VMState.RUNNING, "provision", host_handle=handle)
        except Exception:
            self._reap_late_handle(vm_id, handle)
            raise
        return record.snapshot()

    def abort(self, vm_id: str, reason: str) -> None:
        """Fail a PENDING VM that will never be provisioned and release its capacity."""
        self._fail(vm_id, VMState.PENDING, reason)

    # -------------------------------------------------------------------- stop

    def stop(self, vm_id: str, timeout: Optional[float] = None) -> VMSnapshot:
        """Terminate a RUNNING VM. Resources are released even when teardown fails."""
        record = self._transition(vm_id, VMState.STOPPING, "stop")
        handle = record.host_handle
        try:
            self._call_driver(vm_id, "terminate", self.driver.terminate, handle, timeout=timeout)
        except (DriverError, OperationTimeout) as e:
            self._fail(vm_id, VMState.STOPPING, str(e))
            raise
        record = self._transition(vm_id, VMState.STOPPED, "stop", host_handle=None)
        self._release(record)
        return record.snapshot()

    # ----------------------------------------------------------------- destroy

    def destroy(self, vm_id: str) -> VMSnapshot:
        """Tombstone or drop a STOPPED/FAILED VM; RUNNING VMs must be stopped first."""
        record = self._transition(vm_id, VMState.DESTROYED, "destroy")
        snapshot = record.snapshot()
        self.registry.retire(vm_id)
        self._persist()
        return snapshot

    # ----------------------------------------------------------------- queries

    def info(self, vm_id: str) -> VMSnapshot:
        """Snapshot of one VM, enriched with live driver metrics when it has a handle."""
        record = self.registry.get(vm_id)
        snapshot = record.snapshot()
        handle = record.host_handle
        if handle is None:
            return snapshot
        try:
            runtime = self.driver.query(handle)
        except Exception as e:
            logger.warning("Live query failed for VM %s: %s", vm_id, e)
            return snapshot
        return record.snapshot(runtime=runtime)

    def list(self, states: Optional[Iterable[VMState]] = None) -> List[VMSnapshot]:
        return [r.snapshot() for r in self.registry.list(states)]

    def capacity(self) -> Dict[str, Any]:
        return self.ledger.usage()

    # ---------------------------------------------------------------- recovery

    def recover(self, records: Iterable[VMRecord]) -> Dict[str, int]:
        """Adopt records persisted by a previous process.
        Terminal records are restored as-is for audit. Records that were still
        active have no reservation in this process: their instance is
        terminated best-effort and they are restored as FAILED.
        """
        restored = failed = skipped = 0
        for record in records:
            if self.registry.issued(record.id):
                skipped += 1
                continue
            if record.state in ACTIVE_STATES:
                if record.host_handle is not None:
                    try:
                        self.driver.terminate(record.host_handle)
                    except Exception as e:
                        logger.warning("Could not terminate orphaned instance of VM %s: %s", record.id, e)
                record.state = VMState.FAILED
                record.host_handle = None
                record.error = "supervisor restarted while VM was active"
                record.last_transition_at = time.time()
                failed += 1
            elif record.host_handle is not None:
                logger.warning("VM %s persisted as %s with a host handle; dropping it", record.id, record.state.value)
                record.host_handle = None
            record.reservation = None
            try:
                self.registry.insert(record)
            except InternalFault as e:
                logger.error("Skipping unrecoverable VM record %s: %s", record.id, e)
                skipped += 1
                continue
            restored += 1
        if restored:
            self._persist()
        logger.info("Recovered %d VM records (%d marked failed, %d skipped)", restored, failed, skipped)
        return {"restored": restored, "failed": failed, "skipped": skipped}

    def shutdown(self, wait: bool = True) -> None:
        self._driver_pool.shutdown(wait=wait)

    # ----------------------------------------------------------------- helpers

    def _new_id(self) -> str:
        while True:
            vm_id = f"vm-{uuid.uuid4().hex[:12]}"
            if not self.registry.issued(vm_id):
                return vm_id

    def _transition(self, vm_id: str, target: VMState, operation: str, **fields: Any) -> VMRecord:
        record = self.registry.update_state(vm_id, target, predecessors(target), operation, **fields)
        logger.info("VM %s -> %s", vm_id, target.value)
        self._persist()
        return record

    def _fail(self, vm_id: str, expected: VMState, reason: str) -> None:
        """Move an in-flight VM to FAILED and give its capacity back."""
        record = self.registry.update_state(
            vm_id, VMState.FAILED, {expected}, "fail", host_handle=None, error=reason
        )
        logger.error("VM %s failed: %s", vm_id, reason)
        self._release(record)
        self._persist()

    def _release(self, record: VMRecord) -> None:
        token = record.reservation
        if token is None:
            logger.error("VM %s reached %s without a reservation", record.id, record.state.value)
            raise InternalFault(f"VM {record.id} has no reservation to release", vm_id=record.id)
        self.ledger.release(token)
        record.reservation = None

    def _call_driver(
        self,
        vm_id: str,
        operation: str,
        fn: Callable[..., Any],
        *args: Any,
        timeout: Optional[float] = None,
        on_late_result: Optional[Callable[[str, Any], None]] = None,
    ) -> Any:
        if timeout is None:
            return self._invoke(vm_id, operation, fn, *args)
        future = self._driver_pool.submit(self._invoke, vm_id, operation, fn, *args)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as e:
            logger.error("Driver %s for VM %s exceeded %.1fs", operation, vm_id, timeout)
            if future.cancel():
                logger.info("Driver %s for VM %s was still queued; cancelled", operation, vm_id)
            future.add_done_callback(lambda f: self._after_timeout(vm_id, operation, f, on_late_result))
            raise OperationTimeout(vm_id, operation, timeout) from e

    def _invoke(self, vm_id: str, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except DriverError as e:
            if e.vm_id is None:
                e.vm_id = vm_id
            raise
        except Exception as e:
            raise DriverError(f"{operation} failed for VM {vm_id}: {e}", operation=operation, vm_id=vm_id) from e

    def _after_timeout(self, vm_id: str, operation: str, future, on_late_result) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Late %s for VM %s finished with error: %s", operation, vm_id, exc)
            return
        logger.warning("Late %s for VM %s completed after timeout", operation, vm_id)
        if on_late_result is not None:
            on_late_result(vm_id, future.result())

    def _reap_late_handle(self, vm_id: str, handle: HostHandle) -> None:
        """Terminate an instance whose VM is no longer tracked as running."""
        try:
            self.driver.terminate(handle)
            logger.info("Terminated orphaned instance %s of VM %s", handle.ref, vm_id)
        except Exception as e:
            logger.error("Failed to terminate orphaned instance %s of VM %s: %s", handle.ref, vm_id, e)

    def _persist(self) -> None:
        if not self.state_manager.enabled:
            return
        with self._persist_lock:
            self.state_manager.save(self.registry.list())
