#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""API routes module for the VM supervisor."""
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query

from vmsupervisor.models import CreateRequest, StopRequest
from vmsupervisor.orchestration import Supervisor

from .handlers import APIHandlers


def register_routes(
    app: FastAPI,
    supervisor: Supervisor,
    agent_cfg: Optional[Dict[str, Any]] = None,
) -> APIHandlers:
    """Register all API routes with the FastAPI application."""
    handlers = APIHandlers(supervisor, agent_cfg)

    # Health and info endpoints
    @app.get("/healthz")
    def healthz():
        return handlers.healthz()

    @app.get("/v1")
    def v1_index():
        return handlers.v1_index()

    @app.get("/v1/version")
    def v1_version():
        return handlers.v1_version()

    @app.get("/v1/config/effective")
    def v1_config_effective():
        return handlers.v1_config_effective()

    @app.get("/v1/host")
    def v1_host():
        return handlers.v1_host()

    @app.post("/v1/init")
    def v1_init():
        return handlers.v1_init()

    # VM management endpoints
    @app.post("/v1/vms", status_code=201)
    def create_vm(req: CreateRequest):
        return handlers.v1_create_vm(req)

    @app.get("/v1/vms")
    def v1_list_vms(state: Optional[List[str]] = Query(None)):
        return handlers.v1_list_vms(state)

    @app.get("/v1/vms/{vm_id}")
    def v1_vm_info(vm_id: str):
        return handlers.v1_vm_info(vm_id)

    @app.post("/v1/vms/{vm_id}/stop")
    def v1_vm_stop(vm_id: str, req: Optional[StopRequest] = None):
        return handlers.v1_vm_stop(vm_id, req)

    @app.delete("/v1/vms/{vm_id}")
    def v1_vm_destroy(vm_id: str):
        return handlers.v1_vm_destroy(vm_id)

    # System management endpoints
    @app.post("/v1/graceful-shutdown")
    def v1_graceful_shutdown(req: Optional[StopRequest] = None):
        return handlers.v1_graceful_shutdown(req)

    return handlers
