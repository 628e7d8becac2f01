# backend/__init__.py
from __future__ import annotations

from typing import Any, Dict, Optional, Type

from .base import DriverError, HostHandle, HypervisorDriver, RuntimeInfo
from .dummy import DummyDriver
from .process import ProcessDriver
from .tmux import TmuxDriver

# Map of supported drivers
_BACKENDS: Dict[str, Type[HypervisorDriver]] = {
    "process": ProcessDriver,
    "tmux": TmuxDriver,
    "dummy": DummyDriver,
}


def get_backend_by_driver(driver: str, settings: Optional[Dict[str, Any]] = None) -> HypervisorDriver:
    """
    Returns a hypervisor driver instance for the specified 'driver'.
    """
    key = (driver or "").strip().lower()
    cls = _BACKENDS.get(key)
    if not cls:
        raise ValueError(f"Unsupported hypervisor driver '{driver}'")
    return cls(settings)


__all__ = [
    "DriverError",
    "DummyDriver",
    "HostHandle",
    "HypervisorDriver",
    "ProcessDriver",
    "RuntimeInfo",
    "TmuxDriver",
    "get_backend_by_driver",
]
