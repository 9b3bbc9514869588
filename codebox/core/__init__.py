"""
Core functionality for codebox.
"""

from .config import (
    ConfigManager,
    DockerConfig,
    EngineConfig,
    FallbackConfig,
    LimitsConfig,
    SandboxConfig,
)
from .exceptions import (
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
from .logging import get_logger, setup_logging

__all__ = [
    "BackendUnavailableError",
    "CodeboxError",
    "CompilationFailedError",
    "ConfigManager",
    "ConfigurationError",
    "DockerConfig",
    "EngineConfig",
    "ExecutionError",
    "ExecutionTimeoutError",
    "FallbackConfig",
    "InternalExecutionError",
    "InvalidRequestError",
    "LimitsConfig",
    "NotRunnableError",
    "ResourceLimitError",
    "SandboxConfig",
    "UnsupportedLanguageError",
    "get_logger",
    "setup_logging",
]
