# API handlers and routes module
from .handlers import APIHandlers, http_status_for
from .routes import register_routes

__all__ = ["APIHandlers", "http_status_for", "register_routes"]
