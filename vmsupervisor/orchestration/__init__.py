# Orchestration module for VM lifecycle management
from .dispatcher import CommandDispatcher
from .lifecycle import TRANSITIONS, LifecycleEngine
from .supervisor import Supervisor

__all__ = ["CommandDispatcher", "LifecycleEngine", "Supervisor", "TRANSITIONS"]
