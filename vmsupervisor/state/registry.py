#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
VM registry module for the VM supervisor.
In-memory table of VM records keyed by id. Pure storage: lookups, enumeration
and guarded state writes, all under a single lock.
"""
import logging
import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Set

from vmsupervisor.errors import InternalFault, InvalidState, NotFound
from vmsupervisor.models import HANDLE_STATES, VMRecord, VMState

logger = logging.getLogger("vm-supervisor")

_WRITABLE_FIELDS = frozenset({"host_handle", "reservation", "error"})


class VMRegistry:
    """Insertion-ordered store of VM records with tombstone retention."""

    def __init__(self, keep_destroyed: bool = True, max_tombstones: Optional[int] = None):
        if max_tombstones is not None and max_tombstones < 0:
            raise ValueError("max_tombstones must be >= 0")
        self.keep_destroyed = keep_destroyed
        self.max_tombstones = max_tombstones
        self._lock = threading.RLock()
        self._records: Dict[str, VMRecord] = {}
        self._issued: Set[str] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def contains(self, vm_id: str) -> bool:
        with self._lock:
            return vm_id in self._records

    def issued(self, vm_id: str) -> bool:
        """True if the id was ever inserted, even if evicted since."""
        with self._lock:
            return vm_id in self._issued

    def insert(self, record: VMRecord) -> None:
        with self._lock:
            if record.id in self._issued:
                raise InternalFault(f"VM id collision: {record.id}", vm_id=record.id)
            self._check_handle(record.id, record.state, record.host_handle)
            self._records[record.id] = record
            self._issued.add(record.id)

    def get(self, vm_id: str) -> VMRecord:
        with self._lock:
            record = self._records.get(vm_id)
            if record is None:
                raise NotFound(vm_id)
            return record

    def update_state(
        self,
        vm_id: str,
        new_state: VMState,
        allowed_from: Iterable[VMState],
        operation: str = "",
        **fields: Any,
    ) -> VMRecord:
        """Compare-and-set the state of a record; raises InvalidState on mismatch."""
        with self._lock:
            record = self.get(vm_id)
            if record.state not in set(allowed_from):
                raise InvalidState(vm_id, record.state, operation or new_state.value)
            handle = fields.get("host_handle", record.host_handle)
            self._check_handle(vm_id, new_state, handle)
            for key in fields:
                if key not in _WRITABLE_FIELDS:
                    raise InternalFault(f"Field '{key}' of VM {vm_id} is not writable", vm_id=vm_id)
            for key, value in fields.items():
                setattr(record, key, value)
            record.state = new_state
            record.last_transition_at = time.time()
            return record

    def list(self, states: Optional[Iterable[VMState]] = None) -> List[VMRecord]:
        with self._lock:
            if states is None:
                return list(self._records.values())
            wanted = set(states)
            return [r for r in self._records.values() if r.state in wanted]

    def retire(self, vm_id: str) -> None:
        """Apply the retention policy to a record that reached DESTROYED."""
        with self._lock:
            record = self.get(vm_id)
            if record.state is not VMState.DESTROYED:
                raise InternalFault(f"VM {vm_id} retired while {record.state.value}", vm_id=vm_id)
            if not self.keep_destroyed:
                del self._records[vm_id]
                return
            if self.max_tombstones is None:
                return
            tombstones = [r.id for r in self._records.values() if r.state is VMState.DESTROYED]
            for old_id in tombstones[: max(0, len(tombstones) - self.max_tombstones)]:
                del self._records[old_id]
                logger.debug("Evicted tombstone %s", old_id)

    def evict(self, vm_id: str) -> None:
        with self._lock:
            record = self.get(vm_id)
            if record.state is not VMState.DESTROYED:
                raise InvalidState(vm_id, record.state, "evict")
            del self._records[vm_id]

    @staticmethod
    def _check_handle(vm_id: str, state: VMState, handle: Any) -> None:
        if (handle is not None) != (state in HANDLE_STATES):
            raise InternalFault(
                f"VM {vm_id}: host handle {'present' if handle is not None else 'missing'} in state {state.value}",
                vm_id=vm_id,
            )
