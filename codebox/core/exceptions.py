"""
Custom exceptions for codebox.

Provides specific exception types for better error handling and user feedback.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..types import ExecutionResult


class CodeboxError(Exception):
    """Base exception for codebox errors."""


class ConfigurationError(CodeboxError):
    """Error in configuration."""


# Execution Errors


class ExecutionError(CodeboxError):
    """Base exception for execution errors."""

    user_message = "Code execution failed."
    recovery_hint = "Try again later."


class InvalidRequestError(ExecutionError):
    """Execution request is malformed."""

    def __init__(self, message: str):
        super().__init__(f"Invalid execution request: {message}")
        self.user_message = message
        self.recovery_hint = "Check the language, source and timeout values."


class UnsupportedLanguageError(ExecutionError):
    """Language id is not in the registry."""

    def __init__(self, language_id: str):
        super().__init__(f"Unsupported language: {language_id}")
        self.language_id = language_id
        self.user_message = f"Language '{language_id}' is not supported."
        self.recovery_hint = "Use `codebox languages` to see supported languages."


class NotRunnableError(ExecutionError):
    """Language exists but is only kept for highlighting metadata."""

    def __init__(self, language_id: str):
        super().__init__(f"Language is not executable: {language_id}")
        self.language_id = language_id
        self.user_message = f"Code in '{language_id}' cannot be executed."
        self.recovery_hint = "Pick a runnable language."


class _ResultError(ExecutionError):
    """Execution finished with a non-completed status."""

    def __init__(self, message: str, result: ExecutionResult | None = None):
        super().__init__(message)
        self.result = result


class CompilationFailedError(_ResultError):
    """Compile step exited non-zero."""

    def __init__(self, language: str, result: ExecutionResult | None = None):
        super().__init__(f"{language} compilation failed", result)
        self.user_message = "Your code did not compile."
        self.recovery_hint = "Read the compiler diagnostics in the error output."


class ExecutionTimeoutError(_ResultError):
    """Code execution exceeded the wall-clock limit."""

    def __init__(self, timeout_ms: int, result: ExecutionResult | None = None):
        super().__init__(f"Execution exceeded {timeout_ms}ms timeout", result)
        self.timeout_ms = timeout_ms
        self.user_message = "Execution timed out."
        self.recovery_hint = "Check for infinite loops or optimize your code."


class ResourceLimitError(_ResultError):
    """Code exceeded a memory or process limit."""

    def __init__(self, resource: str, result: ExecutionResult | None = None):
        super().__init__(f"{resource} limit exceeded", result)
        self.resource = resource
        self.user_message = f"Code exceeded the {resource} limit."
        self.recovery_hint = "Try simplifying your code or reducing resource usage."


class BackendUnavailableError(ExecutionError):
    """Isolation backend (or the fallback toolchain) cannot serve the request."""

    def __init__(self, detail: str):
        super().__init__(f"Execution backend unavailable: {detail}")
        self.detail = detail
        self.user_message = "The code execution service is unavailable."
        self.recovery_hint = "Start Docker or install the language toolchain on the host."


class InternalExecutionError(ExecutionError):
    """Infrastructure failure. Details are logged, never surfaced."""

    def __init__(self, message: str = "internal execution error"):
        super().__init__(message)
        self.user_message = "Code execution failed due to an internal error."
        self.recovery_hint = "Try again later."
