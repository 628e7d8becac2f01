# State module: resource ledger, VM registry and persistence
from .ledger import INSUFFICIENT_MEMORY, INSUFFICIENT_VCPU, ResourceLedger
from .manager import StateManager
from .registry import VMRegistry

__all__ = [
    "INSUFFICIENT_MEMORY",
    "INSUFFICIENT_VCPU",
    "ResourceLedger",
    "StateManager",
    "VMRegistry",
]
