"""
Shared request/result types for the execution engine.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .core.exceptions import (
    CompilationFailedError,
    ExecutionTimeoutError,
    ResourceLimitError,
)


class ExecutionState(str, Enum):
    """Per-request lifecycle states."""

    CREATED = "created"
    PROVISIONED = "provisioned"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    COMPILE_FAILED = "compile_failed"
    RESOURCE_EXCEEDED = "resource_exceeded"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    TORN_DOWN = "torn_down"


class ExecutionStatus(str, Enum):
    """How a run ended, as reported to callers."""

    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    COMPILE_FAILED = "compile_failed"
    RESOURCE_EXCEEDED = "resource_exceeded"

    @property
    def state(self) -> ExecutionState:
        return ExecutionState(self.value)


class ExecutionPath(str, Enum):
    """Which executor produced a result."""

    SANDBOX = "sandbox"
    FALLBACK = "fallback"


@dataclass(slots=True)
class ExecutionRequest:
    """One call to the engine."""

    language_id: str
    source: str
    stdin: str | None = None
    timeout_ms: int | None = None
    caller_id: str | None = None
    execution_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(slots=True)
class StepOutcome:
    """Output of a single compile or run process."""

    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool = False
    oom_killed: bool = False

    @property
    def status(self) -> ExecutionStatus:
        """Status of a run step. Compile failures are decided by the caller."""
        if self.timed_out:
            return ExecutionStatus.TIMED_OUT
        if self.oom_killed:
            return ExecutionStatus.RESOURCE_EXCEEDED
        return ExecutionStatus.COMPLETED


@dataclass(slots=True)
class ExecutionResult:
    """Normalized result shared by the sandbox and fallback paths."""

    output: str
    error: str
    exit_code: int | None
    execution_time_ms: int
    execution_id: str
    path: ExecutionPath
    language: str
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    timeout_ms: int | None = None
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.status is ExecutionStatus.COMPLETED and self.exit_code == 0

    def raise_for_status(self) -> "ExecutionResult":
        """Raise the typed error matching a non-completed status."""
        if self.status is ExecutionStatus.COMPILE_FAILED:
            raise CompilationFailedError(self.language, self)
        if self.status is ExecutionStatus.TIMED_OUT:
            raise ExecutionTimeoutError(self.timeout_ms or 0, self)
        if self.status is ExecutionStatus.RESOURCE_EXCEEDED:
            raise ResourceLimitError("memory", self)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "output": self.output,
            "error": self.error,
            "exitCode": self.exit_code,
            "executionTime": self.execution_time_ms,
            "executionId": self.execution_id,
            "language": self.language,
            "status": self.status.value,
            "path": self.path.value,
            "truncated": self.truncated,
        }
