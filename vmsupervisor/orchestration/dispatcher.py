#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Command dispatcher for the VM supervisor.
Lifecycle requests for the same VM id run one at a time in arrival order;
requests for different ids run in parallel on a worker pool.
"""
import collections
import concurrent.futures
import logging
import threading
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from vmsupervisor.errors import SupervisorError
from vmsupervisor.models import VMSnapshot, VMState

from .lifecycle import LifecycleEngine

logger = logging.getLogger("vm-supervisor")

_Task = Tuple[concurrent.futures.Future, Callable[..., Any], Tuple[Any, ...], Dict[str, Any]]


class _KeyQueue:
    __slots__ = ("pending",)

    def __init__(self) -> None:
        self.pending: Deque[_Task] = collections.deque()


class CommandDispatcher:
    """Per-VM FIFO serialization in front of the lifecycle engine."""

    def __init__(
        self,
        engine: LifecycleEngine,
        max_workers: int = 8,
        create_timeout: Optional[float] = None,
        stop_timeout: Optional[float] = None,
    ):
        self.engine = engine
        self.create_timeout = create_timeout
        self.stop_timeout = stop_timeout
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="vm-dispatch"
        )
        self._lock = threading.Lock()
        # A key is present while its queue is being drained.
        self._queues: Dict[str, _KeyQueue] = {}
        self._closed = False

    def submit(self, vm_id: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> concurrent.futures.Future:
        """Queue `fn` behind any in-flight or pending work for `vm_id`."""
        future: concurrent.futures.Future = concurrent.futures.Future()
        with self._lock:
            if self._closed:
                raise RuntimeError("dispatcher is shut down")
            queue = self._queues.get(vm_id)
            if queue is not None:
                queue.pending.append((future, fn, args, kwargs))
                return future
            queue = _KeyQueue()
            queue.pending.append((future, fn, args, kwargs))
            self._queues[vm_id] = queue
        self._executor.submit(self._drain, vm_id)
        return future

    def _drain(self, vm_id: str) -> None:
        while True:
            with self._lock:
                queue = self._queues[vm_id]
                if not queue.pending:
                    del self._queues[vm_id]
                    return
                future, fn, args, kwargs = queue.pending.popleft()
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args, **kwargs)
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(result)

    def in_flight(self) -> List[str]:
        with self._lock:
            return list(self._queues)

    # -------------------------------------------------------------- lifecycle

    def create(
        self,
        memory_mb: int,
        vcpus: int,
        name: str = "",
        timeout: Optional[float] = None,
        wait: bool = False,
    ) -> str:
        """Admit a VM and schedule its provisioning; returns the new id while PENDING."""
        with self._lock:
            if self._closed:
                raise RuntimeError("dispatcher is shut down")
        vm_id = self.engine.create(memory_mb, vcpus, name)
        try:
            future = self.submit(
                vm_id, self.engine.provision, vm_id, timeout=self._or_default(timeout, self.create_timeout)
            )
        except Exception as e:
            self.engine.abort(vm_id, f"provisioning could not be scheduled: {e}")
            raise
        if wait:
            future.result()
        else:
            future.add_done_callback(lambda f: self._log_background_failure(vm_id, "provision", f))
        return vm_id

    def stop(self, vm_id: str, timeout: Optional[float] = None) -> VMSnapshot:
        return self.submit(vm_id, self.engine.stop, vm_id, timeout=self._or_default(timeout, self.stop_timeout)).result()

    def destroy(self, vm_id: str) -> VMSnapshot:
        return self.submit(vm_id, self.engine.destroy, vm_id).result()

    def stop_all(self, timeout: Optional[float] = None) -> Dict[str, Dict[str, Any]]:
        """Stop every RUNNING VM in parallel; returns per-id outcome."""
        futures = {
            snap.id: self.submit(snap.id, self.engine.stop, snap.id, timeout=self._or_default(timeout, self.stop_timeout))
            for snap in self.engine.list([VMState.RUNNING])
        }
        results: Dict[str, Dict[str, Any]] = {}
        for vm_id, future in futures.items():
            try:
                results[vm_id] = {"status": "success", "vm": future.result().to_dict()}
            except SupervisorError as e:
                results[vm_id] = {"status": "error", **e.to_dict()}
        logger.info("Stopped %d running VMs", sum(1 for r in results.values() if r["status"] == "success"))
        return results

    # ---------------------------------------------------------------- queries

    def info(self, vm_id: str) -> VMSnapshot:
        return self.engine.info(vm_id)

    def list(self, states: Optional[Iterable[VMState]] = None) -> List[VMSnapshot]:
        return self.engine.list(states)

    def capacity(self) -> Dict[str, Any]:
        return self.engine.capacity()

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)

    @staticmethod
    def _or_default(value: Optional[float], default: Optional[float]) -> Optional[float]:
        return value if value is not None else default

    @staticmethod
    def _log_background_failure(vm_id: str, operation: str, future: concurrent.futures.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Background %s of VM %s failed: %s", operation, vm_id, exc)
