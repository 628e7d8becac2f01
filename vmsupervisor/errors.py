#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Error taxonomy for the VM supervisor.
Every lifecycle failure surfaces as a SupervisorError subclass carrying the
VM id (when known) and a stable `kind` string used by the API layer.
"""
from typing import Any, Dict, Optional


class SupervisorError(Exception):
    """Base class for typed lifecycle failures."""

    kind = "SupervisorError"

    def __init__(self, message: str, vm_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.vm_id = vm_id

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "kind": self.kind, "vm_id": self.vm_id}


class InsufficientResources(SupervisorError):
    """Host capacity cannot admit the requested reservation."""

    kind = "InsufficientResources"

    def __init__(self, reason: str, memory_mb: int, vcpus: int, vm_id: Optional[str] = None):
        super().__init__(
            f"Cannot reserve {memory_mb} MB / {vcpus} vCPU: {reason}",
            vm_id=vm_id,
        )
        self.reason = reason
        self.memory_mb = memory_mb
        self.vcpus = vcpus

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class NotFound(SupervisorError):
    """No VM with the given id exists in the registry."""

    kind = "NotFound"

    def __init__(self, vm_id: str):
        super().__init__(f"VM {vm_id} not found", vm_id=vm_id)


class InvalidState(SupervisorError):
    """The requested operation is not permitted from the VM's current state."""

    kind = "InvalidState"

    def __init__(self, vm_id: str, current: Any, operation: str):
        current_value = getattr(current, "value", current)
        super().__init__(
            f"Cannot {operation} VM {vm_id} in state '{current_value}'",
            vm_id=vm_id,
        )
        self.current = current
        self.operation = operation

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["state"] = getattr(self.current, "value", self.current)
        return data


class DriverError(SupervisorError):
    """The hypervisor driver failed to provision, terminate or query an instance."""

    kind = "DriverError"

    def __init__(self, message: str, operation: str = "", vm_id: Optional[str] = None):
        super().__init__(message, vm_id=vm_id)
        self.operation = operation


class OperationTimeout(SupervisorError):
    """A driver call exceeded the caller-supplied timeout."""

    kind = "Timeout"

    def __init__(self, vm_id: str, operation: str, timeout: float):
        super().__init__(
            f"{operation} of VM {vm_id} timed out after {timeout:g}s",
            vm_id=vm_id,
        )
        self.operation = operation
        self.timeout = timeout


class InternalFault(SupervisorError):
    """An internal invariant was violated (double release, id collision, ...)."""

    kind = "InternalFault"
