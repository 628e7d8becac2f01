#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Data models for the VM supervisor.
This module contains the data classes used throughout the application.
"""
import dataclasses
import enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class VMState(str, enum.Enum):
    """Lifecycle states of a managed VM."""

    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    DESTROYED = "destroyed"


# States whose VMs hold a ledger reservation.
ACTIVE_STATES = frozenset({VMState.PENDING, VMState.RUNNING, VMState.STOPPING})
# States in which a host handle must be present.
HANDLE_STATES = frozenset({VMState.RUNNING, VMState.STOPPING})


@dataclasses.dataclass(frozen=True)
class HostCapacity:
    """Total schedulable capacity of the host."""

    memory_mb: int
    vcpus: int


@dataclasses.dataclass(frozen=True)
class ReservationToken:
    """Committed claim on host memory/vCPU."""

    token_id: str
    memory_mb: int
    vcpus: int


@dataclasses.dataclass(frozen=True)
class Denied:
    """Reservation refusal; reason is InsufficientMemory or InsufficientVCPU."""

    reason: str
    memory_mb: int
    vcpus: int


@dataclasses.dataclass
class HostHandle:
    """Opaque reference to the OS process / hypervisor session backing a VM."""

    driver: str
    ref: str
    pid: Optional[int] = None
    started_at: float = 0.0
    data: Dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(frozen=True)
class RuntimeInfo:
    """Live metrics reported by a driver query."""

    alive: bool
    pid: Optional[int] = None
    status: Optional[str] = None
    cpu_percent: Optional[float] = None
    memory_rss_mb: Optional[float] = None
    uptime_seconds: Optional[float] = None


@dataclasses.dataclass
class VMRecord:
    """Supervisor-side record of one managed VM."""

    id: str
    name: str
    memory_mb: int
    vcpus: int
    state: VMState
    created_at: float
    last_transition_at: float
    host_handle: Optional[HostHandle] = None
    reservation: Optional[ReservationToken] = None
    error: Optional[str] = None

    def snapshot(self, runtime: Optional[RuntimeInfo] = None) -> "VMSnapshot":
        return VMSnapshot(
            id=self.id,
            name=self.name,
            memory_mb=self.memory_mb,
            vcpus=self.vcpus,
            state=self.state,
            created_at=self.created_at,
            last_transition_at=self.last_transition_at,
            error=self.error,
            runtime=runtime,
        )


@dataclasses.dataclass(frozen=True)
class VMSnapshot:
    """Caller-facing copy of a VM record; never carries the host handle."""

    id: str
    name: str
    memory_mb: int
    vcpus: int
    state: VMState
    created_at: float
    last_transition_at: float
    error: Optional[str] = None
    runtime: Optional[RuntimeInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "memory_mb": self.memory_mb,
            "vcpus": self.vcpus,
            "state": self.state.value,
            "created_at": self.created_at,
            "last_transition_at": self.last_transition_at,
        }
        if self.error:
            data["error"] = self.error
        if self.runtime is not None:
            data["runtime"] = dataclasses.asdict(self.runtime)
        return data


class CreateRequest(BaseModel):
    """FastAPI model for VM creation."""

    memory_mb: int = Field(128, gt=0, description="RAM in MiB")
    vcpus: int = Field(1, ge=1, description="Number of virtual CPUs")
    name: str = Field("", description="Free-form label, not required to be unique")
    wait: bool = Field(False, description="Block until provisioning completes")
    timeout: Optional[float] = Field(None, gt=0, description="Provisioning timeout in seconds")


class StopRequest(BaseModel):
    """FastAPI model for endpoints that accept an optional timeout."""

    timeout: Optional[float] = Field(None, gt=0)
