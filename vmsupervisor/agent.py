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
from __future__ import annotations

import logging
import ssl
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

from vmsupervisor import __version__
from vmsupervisor.api import register_routes
from vmsupervisor.config import ConfigManager
from vmsupervisor.orchestration import Supervisor
from vmsupervisor.utils import is_truthy

logger = logging.getLogger("vm-supervisor")
logger.setLevel(logging.INFO)
_DEF_HANDLER_SET = False

LOG_FORMAT = "%(asctime)s %(name)s [%(levelname)s] %(message)s"

_CLIENT_AUTH_MODES = {
    "none": ssl.CERT_NONE,
    "optional": ssl.CERT_OPTIONAL,
    "required": ssl.CERT_REQUIRED,
}


def apply_logging_from_cfg(cfg: Dict[str, Any]) -> None:
    """Configure the supervisor logger from the `logging` section (level, optional file)."""
    global _DEF_HANDLER_SET
    log_cfg = cfg.get("logging") or {}
    level_name = str(log_cfg.get("level", "INFO")).upper()
    level = logging.getLevelName(level_name)
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    if _DEF_HANDLER_SET:
        return
    targets: list = []
    if not logger.handlers:
        targets.append(logging.StreamHandler())
    log_file = log_cfg.get("file")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        targets.append(logging.FileHandler(log_file, encoding="utf-8"))
    for target in targets:
        target.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(target)
    _DEF_HANDLER_SET = True


def build_tls_options(security_cfg: Any) -> Dict[str, Any]:
    """Map `security.tls` onto uvicorn's ssl_* keyword arguments; empty when TLS is off."""
    tls = (security_cfg or {}).get("tls") if isinstance(security_cfg, dict) else None
    if not isinstance(tls, dict) or not is_truthy(tls.get("enabled", False)):
        logger.info("Serving plain HTTP (security.tls not enabled)")
        return {}
    missing = [key for key in ("cert_file", "key_file") if not tls.get(key)]
    if missing:
        raise RuntimeError(f"security.tls is enabled but {', '.join(missing)} is not set")
    for key in ("cert_file", "key_file", "ca_file"):
        if tls.get(key) and not Path(tls[key]).is_file():
            raise RuntimeError(f"security.tls.{key}: no such file {tls[key]}")
    mode = str(tls.get("client_auth", "none")).strip().lower()
    if mode not in _CLIENT_AUTH_MODES:
        raise RuntimeError(f"security.tls.client_auth must be one of {sorted(_CLIENT_AUTH_MODES)}, got {mode!r}")
    if mode != "none" and not tls.get("ca_file"):
        raise RuntimeError("security.tls.client_auth requires ca_file")
    options: Dict[str, Any] = {
        "ssl_certfile": tls["cert_file"],
        "ssl_keyfile": tls["key_file"],
        "ssl_cert_reqs": _CLIENT_AUTH_MODES[mode],
    }
    if tls.get("ca_file"):
        options["ssl_ca_certs"] = tls["ca_file"]
    logger.info("Serving HTTPS (client auth: %s)", mode)
    return options


def create_app(cfg: Optional[Dict[str, Any]] = None, supervisor: Optional[Supervisor] = None) -> FastAPI:
    """Build the FastAPI app around a supervisor; config is loaded when not given."""
    if cfg is None:
        cfg = ConfigManager().load_agent_config()
    apply_logging_from_cfg(cfg)
    if supervisor is None:
        supervisor = Supervisor.from_defaults(cfg.get("defaults", {}))
    stop_on_shutdown = is_truthy(cfg.get("stop_vms_on_shutdown", True))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting VM supervisor...")
        supervisor.init()
        logger.info("VM supervisor started successfully")
        yield
        logger.info("Shutting down VM supervisor...")
        supervisor.shutdown(stop_running=stop_on_shutdown)
        logger.info("VM supervisor shut down")

    app = FastAPI(title="VM Supervisor", version=__version__, lifespan=lifespan)
    app.state.supervisor = supervisor

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        """Log each request with its status code and latency."""
        started = time.monotonic()
        response = await call_next(request)
        logger.info(
            "%s %s -> %d (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - started) * 1000,
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning("Rejected request to %s: %s", request.url.path, exc.errors())
        return JSONResponse(
            status_code=422,
            content={"error": "Validation error", "kind": "ValueError", "detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
        if exc.status_code >= 500:
            logger.error("HTTP %d: %s", exc.status_code, detail.get("error"))
        else:
            logger.info("HTTP %d: %s", exc.status_code, detail.get("error"))
        return JSONResponse(status_code=exc.status_code, content=detail)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "kind": "InternalFault"})

    @app.get("/", include_in_schema=False)
    def root():
        return {"status": "ok", "message": "VM supervisor is running", "version": __version__}

    register_routes(app, supervisor, cfg)
    return app


def main() -> None:
    """Main entry point: load configuration and serve the API."""
    cfg = ConfigManager().load_agent_config()
    tls_options = build_tls_options(cfg.get("security", {}))
    app = create_app(cfg)
    uvicorn.run(app, host=cfg["bind_host"], port=cfg["bind_port"], reload=False, **tls_options)


if __name__ == "__main__":
    main()
