# Configuration module
from .manager import ConfigManager, optional_seconds, resolve_capacity

__all__ = ["ConfigManager", "optional_seconds", "resolve_capacity"]
