#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration management module for the VM supervisor.
This module handles supervisor configuration loading and host capacity resolution.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from vmsupervisor.backend.helpers import host_summary
from vmsupervisor.models import HostCapacity
from vmsupervisor.utils.validation import deep_update

logger = logging.getLogger("vm-supervisor")

DEFAULT_CONFIG_PATH = "/etc/vm-supervisor/supervisor.json"

_SECTIONS = ("host", "driver", "state", "timeouts", "dispatcher")


class ConfigManager:
    """Manager for configuration operations."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.environ.get("VMSUP_CONFIG", DEFAULT_CONFIG_PATH)

    def load_agent_config(self) -> Dict[str, Any]:
        """Load supervisor config.
        Precedence: env > JSON file (VMSUP_CONFIG) > built-in defaults for bind host/port.
        A missing file means defaults; a file with invalid JSON is fatal so the
        daemon never starts half-configured.
        """
        cfg: Dict[str, Any] = {
            "bind_host": "127.0.0.1",
            "bind_port": 8080,
            "logging": {"level": "INFO"},
            "stop_vms_on_shutdown": True,
            "defaults": {
                "host": {},
                "driver": {"name": "process"},
                "state": {"state_file": None, "retention": {"keep_destroyed": True, "max_tombstones": None}},
                "timeouts": {"create": None, "stop": None},
                "dispatcher": {"max_workers": 8},
            },
        }
        p = Path(self.config_path)
        if p.exists():
            with p.open("r", encoding="utf-8") as f:
                try:
                    file_cfg = json.load(f)
                except ValueError as e:
                    raise RuntimeError(f"Invalid JSON in VMSUP_CONFIG='{self.config_path}': {e}") from e
            if not isinstance(file_cfg, dict):
                raise RuntimeError(f"VMSUP_CONFIG='{self.config_path}' must contain a JSON object")
            deep_update(cfg, file_cfg)
            logger.info("Loaded configuration from %s", self.config_path)
        else:
            logger.info("No configuration file at %s, using defaults", self.config_path)
        env_host = os.environ.get("VMSUP_BIND_HOST")
        if env_host:
            cfg["bind_host"] = env_host
        env_port = os.environ.get("VMSUP_BIND_PORT")
        if env_port:
            cfg["bind_port"] = env_port
        try:
            cfg["bind_port"] = int(cfg["bind_port"])
        except (TypeError, ValueError) as e:
            raise RuntimeError(f"Invalid bind_port value: {cfg['bind_port']!r}") from e
        # Ensure sub-sections exist
        defaults = cfg.get("defaults")
        if not isinstance(defaults, dict):
            raise RuntimeError("'defaults' section must be a JSON object")
        for key in _SECTIONS:
            if not isinstance(defaults.get(key), dict):
                defaults[key] = {}
        return cfg


def resolve_capacity(defaults: Dict[str, Any]) -> HostCapacity:
    """Host capacity from `defaults.host`, falling back to the physical host via psutil."""
    host_cfg = defaults.get("host", {}) if isinstance(defaults, dict) else {}
    memory_mb = host_cfg.get("memory_mb")
    vcpus = host_cfg.get("vcpus")
    if memory_mb is None or vcpus is None:
        facts = host_summary()
        if memory_mb is None:
            reserved = int(host_cfg.get("reserved_memory_mb", 512))
            memory_mb = max(0, facts["memory_mb"] - reserved)
        if vcpus is None:
            vcpus = facts["cpu_count"]
        logger.info("Host capacity derived from system: %s MB, %s vCPU", memory_mb, vcpus)
    try:
        capacity = HostCapacity(memory_mb=int(memory_mb), vcpus=int(vcpus))
    except (TypeError, ValueError) as e:
        raise RuntimeError(f"Invalid host capacity: memory_mb={memory_mb!r} vcpus={vcpus!r}") from e
    if capacity.memory_mb <= 0 or capacity.vcpus <= 0:
        raise RuntimeError(f"Host capacity must be positive: {capacity}")
    return capacity


def optional_seconds(value: Any) -> Optional[float]:
    """Parse an optional positive timeout value from config; None, "" and 0 disable it."""
    if value is None or value == "":
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError) as e:
        raise RuntimeError(f"Invalid timeout {value!r}") from e
    if seconds == 0:
        return None
    if seconds < 0:
        raise RuntimeError(f"Timeout must be positive, got {value!r}")
    return seconds
