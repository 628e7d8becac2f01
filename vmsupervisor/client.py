#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Licensed to the Apache Software Foundation (ASF) under one
# or more contributor license agreements.  See the NOTICE file
# distributed with this work for additional information
# regarding copyright ownership.  The ASF licenses this file
# to you under the Apache License, Version 2.0 (the
# "License"); you may not use this file except in compliance
# with the License.  You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE/2.0
#
# Unless required by applicable law or agreed to in writing,
# software distributed under the License is distributed on an
# "AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY
# KIND, either express or implied.  See the License for the
# specific language governing permissions and limitations
# under the License.

"""
VM supervisor HTTP client

Talks to a running supervisor daemon over its REST API:

    client = SupervisorClient("http://127.0.0.1:8080")
    vm_id = client.create_vm(memory_mb=128, vcpus=1, name="a")
    client.stop_vm(vm_id)

Operations: init, create, stop, destroy, list, info, host, graceful-shutdown.

Errors returned by the daemon are raised as ClientError carrying the HTTP
status, the message and the supervisor error kind (NotFound, InvalidState,
InsufficientResources, DriverError, Timeout, InternalFault).
"""

import os
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

import requests

DEFAULT_URL = "http://127.0.0.1:8080"


class ClientError(Exception):
    """Raised when the supervisor is unreachable or rejects a request."""

    def __init__(self, message: str, status: Optional[int] = None, kind: Optional[str] = None,
                 vm_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.kind = kind
        self.vm_id = vm_id

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "status": self.status, "kind": self.kind, "vm_id": self.vm_id}


def _normalize_base_url(url: str) -> str:
    """Accept host, host:port or a full URL; return '<scheme>://<authority>/v1'."""
    url = (url or "").strip().rstrip("/")
    if not url:
        raise ClientError("Supervisor URL not provided")
    if "://" not in url:
        url = f"http://{url}"
    parsed = urlparse(url)
    if not parsed.netloc:
        raise ClientError(f"Invalid supervisor URL: {url}")
    return f"{parsed.scheme}://{parsed.netloc}/v1"


class SupervisorClient(object):
    """HTTP endpoint and transport options for one supervisor daemon."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: int = 30,
        verify: Union[bool, str] = True,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = _normalize_base_url(url or os.getenv("VMSUP_URL", DEFAULT_URL))
        self.timeout = int(timeout or 30)
        self.verify = verify
        self.session = session or requests.Session()

    # -------------------------- HTTP helpers --------------------------
    def _req(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None,
             params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Perform an HTTP request with proper timeouts and map errors."""
        try:
            resp = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=json_body,
                params=params,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.exceptions.RequestException as e:
            raise ClientError(f"HTTP error contacting supervisor: {e}") from e
        return self._json_or_fail(resp)

    @staticmethod
    def _json_or_fail(resp: requests.Response) -> Dict[str, Any]:
        """Return parsed JSON or raise a ClientError with a helpful message."""
        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text[:500]}
        if resp.status_code >= 400:
            if isinstance(data, dict):
                raise ClientError(
                    str(data.get("error") or data.get("raw") or f"HTTP {resp.status_code}"),
                    status=resp.status_code,
                    kind=data.get("kind"),
                    vm_id=data.get("vm_id"),
                )
            raise ClientError(str(data), status=resp.status_code)
        if not isinstance(data, dict):
            raise ClientError("Supervisor returned non-JSON or unexpected payload", status=resp.status_code)
        return data

    # -------------------------- operations --------------------------
    def initialize_system(self) -> Dict[str, Any]:
        """POST /v1/init: load persisted state (idempotent)."""
        return self._req("POST", "/init")

    def create_vm(self, memory_mb: int = 128, vcpus: int = 1, name: str = "",
                  wait: bool = False, timeout: Optional[float] = None) -> str:
        """POST /v1/vms: returns the new VM id."""
        body: Dict[str, Any] = {"memory_mb": memory_mb, "vcpus": vcpus, "name": name, "wait": wait}
        if timeout is not None:
            body["timeout"] = timeout
        return self._req("POST", "/vms", json_body=body)["vm_id"]

    def stop_vm(self, vm_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """POST /v1/vms/{id}/stop"""
        body = {"timeout": timeout} if timeout is not None else None
        return self._req("POST", f"/vms/{vm_id}/stop", json_body=body)["vm"]

    def destroy_vm(self, vm_id: str) -> Dict[str, Any]:
        """DELETE /v1/vms/{id}"""
        return self._req("DELETE", f"/vms/{vm_id}")["vm"]

    def list_vms(self, states: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """GET /v1/vms"""
        params = {"state": list(states)} if states else None
        return self._req("GET", "/vms", params=params)["vms"]

    def get_vm_info(self, vm_id: str) -> Dict[str, Any]:
        """GET /v1/vms/{id}"""
        return self._req("GET", f"/vms/{vm_id}")["vm"]

    def host(self) -> Dict[str, Any]:
        """GET /v1/host: ledger capacity and usage."""
        return self._req("GET", "/host")["capacity"]

    def graceful_shutdown(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """POST /v1/graceful-shutdown: stop every running VM before host maintenance."""
        body = {"timeout": timeout} if timeout is not None else None
        return self._req("POST", "/graceful-shutdown", json_body=body)
