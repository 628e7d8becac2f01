#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
API handlers module for the VM supervisor.
This module contains the API endpoint handlers for VM operations.
"""
import logging
import platform
from typing import Any, Dict, List, NoReturn, Optional

from fastapi import HTTPException

from vmsupervisor import __version__
from vmsupervisor.errors import (
    DriverError,
    InsufficientResources,
    InternalFault,
    InvalidState,
    NotFound,
    OperationTimeout,
    SupervisorError,
)
from vmsupervisor.models import CreateRequest, StopRequest, VMState
from vmsupervisor.orchestration import Supervisor

logger = logging.getLogger("vm-supervisor")

_STATUS_BY_ERROR = (
    (NotFound, 404),
    (InvalidState, 409),
    (InsufficientResources, 409),
    (DriverError, 502),
    (OperationTimeout, 504),
    (InternalFault, 500),
)


def http_status_for(exc: SupervisorError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


def raise_http(exc: Exception) -> NoReturn:
    """Translate a domain error into an HTTPException carrying its typed payload."""
    if isinstance(exc, SupervisorError):
        raise HTTPException(status_code=http_status_for(exc), detail=exc.to_dict()) from exc
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=400, detail={"error": str(exc), "kind": "ValueError"}) from exc
    logger.exception("Unexpected error: %s", exc)
    raise HTTPException(status_code=500, detail={"error": f"Internal error: {exc}", "kind": "InternalFault"}) from exc


class APIHandlers:

    def __init__(self, supervisor: Supervisor, agent_cfg: Optional[Dict[str, Any]] = None):
        self.supervisor = supervisor
        self.dispatcher = supervisor.dispatcher
        self.agent_cfg = agent_cfg or {}

    def healthz(self) -> Dict[str, Any]:
        return {"status": "ok", "initialized": self.supervisor.initialized}

    def v1_index(self) -> Dict[str, Any]:
        return {
            "status": "success",
            "endpoints": [
                "GET /v1/version",
                "GET /v1/host",
                "POST /v1/init",
                "POST /v1/vms",
                "GET /v1/vms",
                "GET /v1/vms/{vm_id}",
                "POST /v1/vms/{vm_id}/stop",
                "DELETE /v1/vms/{vm_id}",
                "POST /v1/graceful-shutdown",
            ],
        }

    def v1_version(self) -> Dict[str, Any]:
        return {
            "status": "success",
            "version": __version__,
            "python": platform.python_version(),
            "driver": self.supervisor.engine.driver.name,
        }

    def v1_config_effective(self) -> Dict[str, Any]:
        return {"status": "success", "config": self.agent_cfg}

    def v1_host(self) -> Dict[str, Any]:
        return {"status": "success", "capacity": self.dispatcher.capacity()}

    def v1_init(self) -> Dict[str, Any]:
        try:
            return self.supervisor.init()
        except Exception as e:
            raise_http(e)

    def v1_create_vm(self, req: CreateRequest) -> Dict[str, Any]:
        try:
            vm_id = self.dispatcher.create(
                req.memory_mb, req.vcpus, req.name, timeout=req.timeout, wait=req.wait
            )
            vm = self.dispatcher.info(vm_id).to_dict()
        except Exception as e:
            raise_http(e)
        return {"status": "success", "message": f"VM {vm_id} created", "vm_id": vm_id, "vm": vm}

    def v1_list_vms(self, state: Optional[List[str]] = None) -> Dict[str, Any]:
        try:
            states = [VMState(s.lower()) for s in state] if state else None
        except ValueError as e:
            raise_http(ValueError(f"Unknown state filter: {e}"))
        vms = [snap.to_dict() for snap in self.dispatcher.list(states)]
        return {"status": "success", "message": f"Found {len(vms)} VMs", "vms": vms, "count": len(vms)}

    def v1_vm_info(self, vm_id: str) -> Dict[str, Any]:
        try:
            return {"status": "success", "vm": self.dispatcher.info(vm_id).to_dict()}
        except Exception as e:
            raise_http(e)

    def v1_vm_stop(self, vm_id: str, req: Optional[StopRequest] = None) -> Dict[str, Any]:
        timeout = req.timeout if req else None
        try:
            snapshot = self.dispatcher.stop(vm_id, timeout=timeout)
        except Exception as e:
            raise_http(e)
        return {"status": "success", "message": f"VM {vm_id} stopped", "vm": snapshot.to_dict()}

    def v1_vm_destroy(self, vm_id: str) -> Dict[str, Any]:
        try:
            snapshot = self.dispatcher.destroy(vm_id)
        except Exception as e:
            raise_http(e)
        return {"status": "success", "message": f"VM {vm_id} destroyed", "vm": snapshot.to_dict()}

    def v1_graceful_shutdown(self, req: Optional[StopRequest] = None) -> Dict[str, Any]:
        """Stop every running VM (for host maintenance)."""
        results = self.dispatcher.stop_all(timeout=req.timeout if req else None)
        failed = [vm_id for vm_id, r in results.items() if r["status"] != "success"]
        return {
            "status": "success" if not failed else "partial",
            "message": f"Stopped {len(results) - len(failed)} of {len(results)} running VMs",
            "results": results,
        }
