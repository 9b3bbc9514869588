"""
codebox: sandboxed multi-language code execution.

Runs untrusted source code in short-lived Docker containers with no
network, dropped capabilities and hard resource ceilings, and falls back
to host toolchains when the Docker daemon is unreachable.

Example:
    from codebox import execute

    result = execute("python", "print(2 + 2)")
    print(result.output)  # "4"
"""

__version__ = "0.1.0"

from .core.exceptions import (
    BackendUnavailableError,
    CodeboxError,
    CompilationFailedError,
    ConfigurationError,
    ExecutionError,
    ExecutionTimeoutError,
    InternalExecutionError,
    InvalidRequestError,
    NotRunnableError,
    ResourceLimitError,
    UnsupportedLanguageError,
)
from .execution import (
    CodeExecutionEngine,
    execute,
    get_engine,
    list_languages,
    system_status,
)
from .languages import available_templates, get_language, get_template
from .types import ExecutionPath, ExecutionRequest, ExecutionResult, ExecutionStatus

__all__ = [
    "BackendUnavailableError",
    "CodeExecutionEngine",
    "CodeboxError",
    "CompilationFailedError",
    "ConfigurationError",
    "ExecutionError",
    "ExecutionPath",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionStatus",
    "ExecutionTimeoutError",
    "InternalExecutionError",
    "InvalidRequestError",
    "NotRunnableError",
    "ResourceLimitError",
    "UnsupportedLanguageError",
    "available_templates",
    "execute",
    "get_engine",
    "get_language",
    "get_template",
    "list_languages",
    "system_status",
    "__version__",
]
