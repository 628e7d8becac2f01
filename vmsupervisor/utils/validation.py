#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Utilities module for the VM supervisor.
This module contains common utility functions used across the application.
"""
import json
from typing import Any, Dict, NoReturn

import typer


def fail(msg: str, **extra: Any) -> NoReturn:
    """Print an error JSON object and exit with code 1."""
    payload: Dict[str, Any] = {"error": msg}
    payload.update({k: v for k, v in extra.items() if v is not None})
    typer.echo(json.dumps(payload))
    raise typer.Exit(code=1)


def succeed(data: Dict[str, Any]) -> NoReturn:
    """Print a JSON object and exit with code 0."""
    typer.echo(json.dumps(data))
    raise typer.Exit(code=0)


def deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge src into dst and return dst. Dicts are merged recursively; lists/scalars are replaced."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_update(dst[k], v)
        else:
            dst[k] = v
    return dst


def is_truthy(value: Any) -> bool:
    """Interpret common truthy representations."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)
