"""
TaskAPI — tasks and comments over a key-value store.

Packages:
    taskapi.engine    — config, errors, logging, credentials, store adapters
    taskapi.api       — request pipeline, validation schemas, route handlers
    taskapi.utilities — shared helpers
"""

__version__ = "1.0.0"
__all__ = ["engine", "api", "utilities"]
