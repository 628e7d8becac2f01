import json
import threading
import time

from conftest import FakeDriver

from vmsupervisor.models import HostCapacity, HostHandle, VMRecord, VMState
from vmsupervisor.orchestration import LifecycleEngine, Supervisor
from vmsupervisor.state import ResourceLedger, StateManager, VMRegistry


def test_save_and_load_preserve_records(tmp_path):
    manager = StateManager(str(tmp_path / "state" / "vm-states.json"))
    now = time.time()
    handle = HostHandle(driver="process", ref="4242", pid=4242, started_at=now, data={"argv": ["qemu"]})
    manager.save([
        VMRecord("vm-1", "web", 128, 2, VMState.RUNNING, now, now, host_handle=handle),
        VMRecord("vm-2", "", 64, 1, VMState.FAILED, now, now, error="boom"),
    ])

    records = manager.load()
    assert [r.id for r in records] == ["vm-1", "vm-2"]
    assert records[0].host_handle == handle
    assert records[0].reservation is None
    assert records[1].state is VMState.FAILED
    assert records[1].error == "boom"
    assert list(tmp_path.joinpath("state").iterdir()) == [tmp_path / "state" / "vm-states.json"]


def test_disabled_manager_is_noop(tmp_path):
    manager = StateManager()
    assert not manager.enabled
    manager.save([])
    assert manager.load() == []


def test_missing_file_loads_empty(tmp_path):
    assert StateManager(str(tmp_path / "absent.json")).load() == []


def test_corrupt_file_loads_empty(tmp_path):
    path = tmp_path / "vm-states.json"
    path.write_text("{not json")
    assert StateManager(str(path)).load() == []


def test_malformed_entries_are_skipped(tmp_path):
    path = tmp_path / "vm-states.json"
    path.write_text(json.dumps({
        "version": 1,
        "vms": [
            {"id": "vm-ok", "memory_mb": 64, "vcpus": 1, "state": "stopped"},
            {"id": "vm-bad", "memory_mb": 64, "vcpus": 1, "state": "exploded"},
            {"name": "no-id"},
        ],
    }))
    assert [r.id for r in StateManager(str(path)).load()] == ["vm-ok"]


class TestSupervisorRecovery:

    def make_supervisor(self, path, driver):
        return Supervisor(HostCapacity(memory_mb=512, vcpus=4), driver, state_file=str(path))

    def test_restart_marks_active_vms_failed(self, tmp_path):
        path = tmp_path / "vm-states.json"
        first_driver = FakeDriver()
        first = self.make_supervisor(path, first_driver)
        first.init()
        running = first.dispatcher.create(128, 1, "keep", wait=True)
        stopped = first.dispatcher.create(128, 1, wait=True)
        first.dispatcher.stop(stopped)
        first.shutdown()

        second_driver = FakeDriver()
        second = self.make_supervisor(path, second_driver)
        result = second.init()
        assert result["restored"] == 2
        assert result["failed"] == 1
        assert second.dispatcher.info(running).state is VMState.FAILED
        assert second.dispatcher.info(stopped).state is VMState.STOPPED
        assert [h.ref for h in second_driver.terminated] == [first_driver.provisioned[0].ref]
        assert second.ledger.reserved_memory_mb == 0

        # recovered ids are never reissued and the full capacity is usable
        new_id = second.dispatcher.create(512, 4, wait=True)
        assert new_id not in (running, stopped)
        second.shutdown(stop_running=True)

    def test_init_is_idempotent(self, tmp_path):
        supervisor = self.make_supervisor(tmp_path / "vm-states.json", FakeDriver())
        assert supervisor.init()["message"] == "initialized"
        assert supervisor.init()["message"] == "already initialized"
        assert supervisor.initialized
        supervisor.shutdown()

    def test_shutdown_can_stop_running_vms(self, tmp_path):
        driver = FakeDriver()
        supervisor = self.make_supervisor(tmp_path / "vm-states.json", driver)
        supervisor.init()
        vm_id = supervisor.dispatcher.create(64, 1, wait=True)
        supervisor.shutdown(stop_running=True)
        assert supervisor.engine.info(vm_id).state is VMState.STOPPED
        assert len(driver.terminated) == 1


class SlowFirstSave(StateManager):
    """StateManager whose first write stalls after its records were taken."""

    def __init__(self, state_file):
        super().__init__(state_file)
        self.calls = 0
        self.first_save_started = threading.Event()

    def save(self, records):
        records = list(records)
        self.calls += 1
        if self.calls == 1:
            self.first_save_started.set()
            time.sleep(0.3)
        super().save(records)


def test_overlapping_saves_keep_latest_records(tmp_path):
    path = tmp_path / "vm-states.json"
    manager = SlowFirstSave(str(path))
    engine = LifecycleEngine(
        ResourceLedger(HostCapacity(memory_mb=512, vcpus=4)), VMRegistry(), FakeDriver(), manager
    )
    first = {}
    worker = threading.Thread(target=lambda: first.update(id=engine.create(64, 1, "first")))
    worker.start()
    assert manager.first_save_started.wait(timeout=5)
    second = engine.create(64, 1, "second")
    worker.join(timeout=5)

    saved = [r.id for r in StateManager(str(path)).load()]
    assert sorted(saved) == sorted([first["id"], second])
    engine.shutdown()


def test_terminal_record_with_stale_handle_is_recovered(tmp_path):
    path = tmp_path / "vm-states.json"
    path.write_text(json.dumps({
        "version": 1,
        "vms": [
            {"id": "vm-a", "memory_mb": 64, "vcpus": 1, "state": "stopped",
             "host_handle": {"driver": "fake", "ref": "fake-stale"}},
            {"id": "vm-b", "memory_mb": 64, "vcpus": 1, "state": "running",
             "host_handle": {"driver": "fake", "ref": "fake-live"}},
        ],
    }))
    driver = FakeDriver()
    supervisor = Supervisor(HostCapacity(memory_mb=512, vcpus=4), driver, state_file=str(path))
    result = supervisor.init()
    assert supervisor.initialized
    assert (result["restored"], result["failed"]) == (2, 1)
    assert supervisor.engine.info("vm-a").state is VMState.STOPPED
    assert supervisor.registry.get("vm-a").host_handle is None
    assert supervisor.engine.info("vm-b").state is VMState.FAILED
    assert [h.ref for h in driver.terminated] == ["fake-live"]
    supervisor.shutdown()
