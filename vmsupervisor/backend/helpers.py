#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Process helpers shared by the local drivers (command rendering, psutil-based
termination and runtime metrics).
"""
import logging
import re
import time
from typing import Any, Dict, List, Optional, Sequence

import psutil

from vmsupervisor.errors import DriverError
from vmsupervisor.models import RuntimeInfo

logger = logging.getLogger("vm-supervisor")

# Tolerance when matching a recorded create_time against the live process.
CREATE_TIME_TOLERANCE = 1.0


def render_command(template: Sequence[str], **values: Any) -> List[str]:
    """Fill `{memory_mb}`, `{vcpus}` and `{name}` placeholders in an argv template."""
    if not template:
        raise DriverError("No VM command configured for driver", operation="provision")
    try:
        return [str(part).format(**values) for part in template]
    except (KeyError, IndexError) as e:
        raise DriverError(f"Invalid placeholder in VM command template: {e}", operation="provision") from e


def safe_label(name: str, default: str = "vm") -> str:
    """Reduce a free-form VM name to [A-Za-z0-9-] for file and session names."""
    label = re.sub(r"[^A-Za-z0-9-]+", "-", name or "").strip("-")
    return label[:48] or default


def _same_process(proc: psutil.Process, started_at: Optional[float]) -> bool:
    if not started_at:
        return True
    return abs(proc.create_time() - started_at) <= CREATE_TIME_TOLERANCE


def terminate_pid(pid: int, started_at: Optional[float], timeout: float) -> None:
    """Send SIGTERM, wait up to `timeout`, then SIGKILL. A vanished process counts as stopped."""
    try:
        proc = psutil.Process(pid)
        if not _same_process(proc, started_at):
            logger.info("pid %d belongs to another process now; instance already gone", pid)
            return
        proc.terminate()
        try:
            proc.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            logger.warning("pid %d ignored SIGTERM for %.1fs, sending SIGKILL", pid, timeout)
            proc.kill()
            proc.wait(timeout=timeout)
    except psutil.NoSuchProcess:
        return
    except psutil.AccessDenied as e:
        raise DriverError(f"Permission denied terminating pid {pid}: {e}", operation="terminate") from e
    except psutil.TimeoutExpired as e:
        raise DriverError(f"pid {pid} did not exit after SIGKILL", operation="terminate") from e


def process_runtime(pid: int, started_at: Optional[float]) -> RuntimeInfo:
    """Collect live metrics for a pid; a missing process reports alive=False."""
    try:
        proc = psutil.Process(pid)
        if not _same_process(proc, started_at):
            return RuntimeInfo(alive=False, pid=pid)
        with proc.oneshot():
            status = proc.status()
            cpu = proc.cpu_percent(interval=None)
            rss = proc.memory_info().rss
            created = proc.create_time()
    except psutil.NoSuchProcess:
        return RuntimeInfo(alive=False, pid=pid)
    except psutil.AccessDenied as e:
        raise DriverError(f"Permission denied querying pid {pid}: {e}", operation="query") from e
    return RuntimeInfo(
        alive=status != psutil.STATUS_ZOMBIE,
        pid=pid,
        status=status,
        cpu_percent=cpu,
        memory_rss_mb=round(rss / (1024 * 1024), 1),
        uptime_seconds=round(max(0.0, time.time() - created), 1),
    )


def host_summary() -> Dict[str, Any]:
    """Physical host facts used to default the ledger capacity."""
    vm = psutil.virtual_memory()
    return {
        "memory_mb": int(vm.total // (1024 * 1024)),
        "cpu_count": psutil.cpu_count(logical=True) or 1,
    }
