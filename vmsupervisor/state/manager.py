#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
State management module for the VM supervisor.
This module handles VM record persistence and recovery operations.
"""
import dataclasses
import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from vmsupervisor.models import HostHandle, VMRecord, VMState

logger = logging.getLogger("vm-supervisor")

STATE_FORMAT_VERSION = 1


def record_to_dict(record: VMRecord) -> Dict[str, Any]:
    """Serialize a record for persistence; the reservation token is process-local and dropped."""
    return {
        "id": record.id,
        "name": record.name,
        "memory_mb": record.memory_mb,
        "vcpus": record.vcpus,
        "state": record.state.value,
        "created_at": record.created_at,
        "last_transition_at": record.last_transition_at,
        "error": record.error,
        "host_handle": dataclasses.asdict(record.host_handle) if record.host_handle else None,
    }


def record_from_dict(data: Dict[str, Any]) -> VMRecord:
    handle_data = data.get("host_handle")
    return VMRecord(
        id=str(data["id"]),
        name=str(data.get("name") or ""),
        memory_mb=int(data["memory_mb"]),
        vcpus=int(data["vcpus"]),
        state=VMState(data["state"]),
        created_at=float(data.get("created_at") or 0.0),
        last_transition_at=float(data.get("last_transition_at") or 0.0),
        host_handle=HostHandle(**handle_data) if isinstance(handle_data, dict) else None,
        error=data.get("error"),
    )


class StateManager:
    """Manager for VM record persistence and recovery."""

    def __init__(self, state_file: Optional[str] = None):
        self.state_file = Path(state_file) if state_file else None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.state_file is not None

    def save(self, records: Iterable[VMRecord]) -> None:
        """Write all records atomically; failures are logged, never raised."""
        if self.state_file is None:
            return
        payload = {
            "version": STATE_FORMAT_VERSION,
            "saved_at": time.time(),
            "vms": [record_to_dict(r) for r in records],
        }
        with self._lock:
            tmp_name = None
            try:
                self.state_file.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(prefix=".vm-states-", dir=str(self.state_file.parent))
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_name, self.state_file)
                tmp_name = None
                logger.debug("Saved VM states: %d records", len(payload["vms"]))
            except OSError as e:
                logger.error("Failed to save VM states to %s: %s", self.state_file, e)
            finally:
                if tmp_name:
                    try:
                        os.unlink(tmp_name)
                    except FileNotFoundError:
                        pass

    def load(self) -> List[VMRecord]:
        """Load persisted records; a missing or corrupt file yields an empty list."""
        if self.state_file is None:
            return []
        with self._lock:
            if not self.state_file.exists():
                return []
            try:
                with self.state_file.open("r", encoding="utf-8") as f:
                    payload = json.load(f)
            except (OSError, ValueError) as e:
                logger.error("Failed to load VM states from %s: %s", self.state_file, e)
                return []
        entries = payload.get("vms", []) if isinstance(payload, dict) else []
        records: List[VMRecord] = []
        for entry in entries:
            try:
                records.append(record_from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed VM state entry %r: %s", entry, e)
        logger.info("Loaded VM states: %d records", len(records))
        return records
