import time

import pytest

from vmsupervisor.errors import InternalFault, InvalidState, NotFound
from vmsupervisor.models import HostHandle, VMRecord, VMState
from vmsupervisor.state import VMRegistry


def make_record(vm_id: str, state: VMState = VMState.PENDING, handle=None) -> VMRecord:
    now = time.time()
    return VMRecord(
        id=vm_id,
        name="",
        memory_mb=64,
        vcpus=1,
        state=state,
        created_at=now,
        last_transition_at=now,
        host_handle=handle,
    )


def handle(ref: str = "h-1") -> HostHandle:
    return HostHandle(driver="fake", ref=ref)


class TestLookup:

    def test_insert_and_get(self, registry):
        registry.insert(make_record("vm-a"))
        assert registry.get("vm-a").id == "vm-a"
        assert registry.contains("vm-a")
        assert len(registry) == 1

    def test_get_missing_raises_not_found(self, registry):
        with pytest.raises(NotFound) as exc:
            registry.get("vm-missing")
        assert exc.value.vm_id == "vm-missing"

    def test_id_collision_is_internal_fault(self, registry):
        registry.insert(make_record("vm-a"))
        with pytest.raises(InternalFault):
            registry.insert(make_record("vm-a"))

    def test_list_keeps_insertion_order_and_filters(self, registry):
        registry.insert(make_record("vm-1"))
        registry.insert(make_record("vm-2", VMState.RUNNING, handle()))
        registry.insert(make_record("vm-3", VMState.STOPPED))
        assert [r.id for r in registry.list()] == ["vm-1", "vm-2", "vm-3"]
        assert [r.id for r in registry.list([VMState.RUNNING, VMState.STOPPED])] == ["vm-2", "vm-3"]
        assert registry.list([VMState.FAILED]) == []

    def test_insert_rejects_handle_mismatch(self, registry):
        with pytest.raises(InternalFault):
            registry.insert(make_record("vm-a", VMState.RUNNING))
        assert not registry.contains("vm-a")


class TestUpdateState:

    def test_compare_and_set_success(self, registry):
        registry.insert(make_record("vm-a"))
        before = registry.get("vm-a").last_transition_at
        record = registry.update_state("vm-a", VMState.RUNNING, {VMState.PENDING}, host_handle=handle())
        assert record.state is VMState.RUNNING
        assert record.host_handle.ref == "h-1"
        assert record.last_transition_at >= before

    def test_mismatch_raises_invalid_state_without_mutation(self, registry):
        registry.insert(make_record("vm-a", VMState.STOPPED))
        with pytest.raises(InvalidState) as exc:
            registry.update_state("vm-a", VMState.STOPPING, {VMState.RUNNING}, "stop")
        assert exc.value.current is VMState.STOPPED
        assert exc.value.to_dict()["state"] == "stopped"
        assert registry.get("vm-a").state is VMState.STOPPED

    def test_running_without_handle_is_rejected(self, registry):
        registry.insert(make_record("vm-a"))
        with pytest.raises(InternalFault):
            registry.update_state("vm-a", VMState.RUNNING, {VMState.PENDING})
        assert registry.get("vm-a").state is VMState.PENDING

    def test_unknown_field_rejected_before_any_write(self, registry):
        registry.insert(make_record("vm-a"))
        with pytest.raises(InternalFault):
            registry.update_state("vm-a", VMState.FAILED, {VMState.PENDING}, error="x", memory_mb=1)
        record = registry.get("vm-a")
        assert record.state is VMState.PENDING
        assert record.error is None
        assert record.memory_mb == 64

    def test_missing_id_raises_not_found(self, registry):
        with pytest.raises(NotFound):
            registry.update_state("vm-x", VMState.FAILED, {VMState.PENDING})


class TestRetention:

    def test_tombstones_kept_by_default(self, registry):
        registry.insert(make_record("vm-a", VMState.DESTROYED))
        registry.retire("vm-a")
        assert registry.get("vm-a").state is VMState.DESTROYED

    def test_drop_destroyed_records(self):
        registry = VMRegistry(keep_destroyed=False)
        registry.insert(make_record("vm-a", VMState.DESTROYED))
        registry.retire("vm-a")
        assert not registry.contains("vm-a")
        assert registry.issued("vm-a")

    def test_max_tombstones_evicts_oldest(self):
        registry = VMRegistry(max_tombstones=2)
        for vm_id in ("vm-1", "vm-2", "vm-3"):
            registry.insert(make_record(vm_id, VMState.DESTROYED))
            registry.retire(vm_id)
        assert [r.id for r in registry.list()] == ["vm-2", "vm-3"]

    def test_retire_requires_destroyed(self, registry):
        registry.insert(make_record("vm-a", VMState.STOPPED))
        with pytest.raises(InternalFault):
            registry.retire("vm-a")

    def test_evict_only_destroyed(self, registry):
        registry.insert(make_record("vm-a", VMState.FAILED))
        with pytest.raises(InvalidState):
            registry.evict("vm-a")
        registry.update_state("vm-a", VMState.DESTROYED, {VMState.FAILED})
        registry.evict("vm-a")
        assert not registry.contains("vm-a")

    def test_negative_max_tombstones_rejected(self):
        with pytest.raises(ValueError):
            VMRegistry(max_tombstones=-1)
