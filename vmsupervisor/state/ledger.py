#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Resource ledger module for the VM supervisor.
This module tracks host capacity and the memory/vCPU reserved by active VMs.
"""
import itertools
import logging
import threading
from typing import Any, Dict, Union

from vmsupervisor.errors import InternalFault
from vmsupervisor.models import Denied, HostCapacity, ReservationToken

logger = logging.getLogger("vm-supervisor")

INSUFFICIENT_MEMORY = "InsufficientMemory"
INSUFFICIENT_VCPU = "InsufficientVCPU"


class ResourceLedger:
    """Atomic reserve/release accounting against a fixed host capacity."""

    def __init__(self, capacity: HostCapacity):
        if capacity.memory_mb <= 0 or capacity.vcpus <= 0:
            raise ValueError(f"Host capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._lock = threading.Lock()
        self._reserved_memory = 0
        self._reserved_vcpus = 0
        self._active: Dict[str, ReservationToken] = {}
        self._counter = itertools.count(1)

    def try_reserve(self, memory_mb: int, vcpus: int) -> Union[ReservationToken, Denied]:
        """Commit memory and vCPUs together or not at all; memory is checked first."""
        with self._lock:
            if self._reserved_memory + memory_mb > self.capacity.memory_mb:
                return Denied(INSUFFICIENT_MEMORY, memory_mb, vcpus)
            if self._reserved_vcpus + vcpus > self.capacity.vcpus:
                return Denied(INSUFFICIENT_VCPU, memory_mb, vcpus)
            token = ReservationToken(f"rsv-{next(self._counter)}", memory_mb, vcpus)
            self._reserved_memory += memory_mb
            self._reserved_vcpus += vcpus
            self._active[token.token_id] = token
        logger.debug("Reserved %d MB / %d vCPU (%s)", memory_mb, vcpus, token.token_id)
        return token

    def release(self, token: ReservationToken) -> None:
        with self._lock:
            if self._active.pop(token.token_id, None) is None:
                logger.error("Reservation %s released twice or never issued", token.token_id)
                raise InternalFault(f"Reservation {token.token_id} is not active")
            self._reserved_memory -= token.memory_mb
            self._reserved_vcpus -= token.vcpus
        logger.debug("Released %d MB / %d vCPU (%s)", token.memory_mb, token.vcpus, token.token_id)

    @property
    def reserved_memory_mb(self) -> int:
        with self._lock:
            return self._reserved_memory

    @property
    def reserved_vcpus(self) -> int:
        with self._lock:
            return self._reserved_vcpus

    def usage(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "memory_mb": {
                    "total": self.capacity.memory_mb,
                    "reserved": self._reserved_memory,
                    "available": self.capacity.memory_mb - self._reserved_memory,
                },
                "vcpus": {
                    "total": self.capacity.vcpus,
                    "reserved": self._reserved_vcpus,
                    "available": self.capacity.vcpus - self._reserved_vcpus,
                },
                "reservations": len(self._active),
            }
