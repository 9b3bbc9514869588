"""
Request execution: engine, host fallback and resource lifecycle.
"""

from .engine import (
    CodeExecutionEngine,
    execute,
    get_engine,
    list_languages,
    reset_engine,
    system_status,
)
from .fallback import FallbackExecutor
from .lifecycle import ExecutionLifecycle, sandbox_scope, sanitize_caller_id, workspace_scope

__all__ = [
    "CodeExecutionEngine",
    "ExecutionLifecycle",
    "FallbackExecutor",
    "execute",
    "get_engine",
    "list_languages",
    "reset_engine",
    "sandbox_scope",
    "sanitize_caller_id",
    "system_status",
    "workspace_scope",
]
