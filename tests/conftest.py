"""
Shared fixtures: a scriptable in-memory driver and pre-wired supervisor parts.
"""

import threading
import time
from typing import Callable, List, Optional

import pytest

from vmsupervisor.backend import DriverError, HostHandle, HypervisorDriver, RuntimeInfo
from vmsupervisor.models import HostCapacity
from vmsupervisor.orchestration import CommandDispatcher, LifecycleEngine
from vmsupervisor.state import ResourceLedger, VMRegistry


class FakeDriver(HypervisorDriver):
    """Driver double with failure injection and blocking gates.

    Set `fail_provision` / `fail_terminate` to make the next calls raise
    DriverError. Clear `provision_gate` / `terminate_gate` to make calls block
    until the gate is set again.
    """

    name = "fake"

    def __init__(self):
        super().__init__({})
        self.fail_provision = False
        self.fail_terminate = False
        self.fail_query = False
        self.provision_gate = threading.Event()
        self.provision_gate.set()
        self.terminate_gate = threading.Event()
        self.terminate_gate.set()
        self.provisioned: List[HostHandle] = []
        self.terminated: List[HostHandle] = []
        self.live = set()
        self._lock = threading.Lock()
        self._counter = 0

    def provision(self, memory_mb: int, vcpus: int, name: str) -> HostHandle:
        self.provision_gate.wait(timeout=10)
        if self.fail_provision:
            raise DriverError("injected provision failure", operation="provision")
        with self._lock:
            self._counter += 1
            handle = HostHandle(driver=self.name, ref=f"fake-{self._counter}", started_at=time.time())
            self.provisioned.append(handle)
            self.live.add(handle.ref)
        return handle

    def terminate(self, handle: HostHandle) -> None:
        self.terminate_gate.wait(timeout=10)
        if self.fail_terminate:
            raise DriverError("injected terminate failure", operation="terminate")
        with self._lock:
            self.terminated.append(handle)
            self.live.discard(handle.ref)

    def query(self, handle: HostHandle) -> RuntimeInfo:
        if self.fail_query:
            raise DriverError("injected query failure", operation="query")
        with self._lock:
            alive = handle.ref in self.live
        return RuntimeInfo(alive=alive, status="running" if alive else None)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll `predicate` until it holds or `timeout` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def capacity() -> HostCapacity:
    return HostCapacity(memory_mb=256, vcpus=4)


@pytest.fixture
def ledger(capacity) -> ResourceLedger:
    return ResourceLedger(capacity)


@pytest.fixture
def registry() -> VMRegistry:
    return VMRegistry()


@pytest.fixture
def engine(ledger, registry, driver):
    eng = LifecycleEngine(ledger, registry, driver)
    yield eng
    eng.shutdown(wait=False)


@pytest.fixture
def dispatcher(engine):
    disp = CommandDispatcher(engine, max_workers=8)
    yield disp
    disp.shutdown(wait=False)


def start_vm(engine: LifecycleEngine, memory_mb: int = 128, vcpus: int = 1, name: str = "",
             timeout: Optional[float] = None) -> str:
    """Create and synchronously provision a VM through the engine."""
    vm_id = engine.create(memory_mb, vcpus, name)
    engine.provision(vm_id, timeout=timeout)
    return vm_id
