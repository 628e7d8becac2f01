# Shared helpers
from .validation import deep_update, fail, is_truthy, succeed

__all__ = ["deep_update", "fail", "is_truthy", "succeed"]
