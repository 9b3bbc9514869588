"""
Lifecycle management for per-request resources.

``ExecutionLifecycle`` enforces the request state machine; the scope
helpers bind every acquired resource (sandbox container, namespaced temp
directory) to exactly one teardown, whatever path the request takes.
"""

from __future__ import annotations

import re
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from ..core.exceptions import InternalExecutionError
from ..core.logging import get_logger
from ..types import ExecutionState

if TYPE_CHECKING:
    from ..sandbox.orchestrator import SandboxHandle, SandboxOrchestrator

logger = get_logger(__name__)

_TERMINAL = {
    ExecutionState.COMPLETED,
    ExecutionState.TIMED_OUT,
    ExecutionState.COMPILE_FAILED,
    ExecutionState.RESOURCE_EXCEEDED,
    ExecutionState.BACKEND_UNAVAILABLE,
}

# TORN_DOWN is reachable from every live state so internal errors still clean up.
_TRANSITIONS: dict[ExecutionState, set[ExecutionState]] = {
    ExecutionState.CREATED: {
        ExecutionState.PROVISIONED,
        ExecutionState.COMPILE_FAILED,
        ExecutionState.BACKEND_UNAVAILABLE,
        ExecutionState.TORN_DOWN,
    },
    ExecutionState.PROVISIONED: {
        ExecutionState.RUNNING,
        ExecutionState.COMPILE_FAILED,
        ExecutionState.TIMED_OUT,
        ExecutionState.TORN_DOWN,
    },
    ExecutionState.RUNNING: {
        ExecutionState.COMPLETED,
        ExecutionState.TIMED_OUT,
        ExecutionState.COMPILE_FAILED,
        ExecutionState.RESOURCE_EXCEEDED,
        ExecutionState.TORN_DOWN,
    },
    ExecutionState.TORN_DOWN: set(),
}
for _state in _TERMINAL:
    _TRANSITIONS[_state] = {ExecutionState.TORN_DOWN}

_CALLER_ID_PATTERN = re.compile(r"[^A-Za-z0-9_-]")


class ExecutionLifecycle:
    """Tracks and validates one request's state transitions."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self.state = ExecutionState.CREATED
        self.history: list[ExecutionState] = [ExecutionState.CREATED]

    @property
    def terminal(self) -> bool:
        return self.state in _TERMINAL

    @property
    def torn_down(self) -> bool:
        return self.state is ExecutionState.TORN_DOWN

    def advance(self, new_state: ExecutionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InternalExecutionError(
                f"illegal lifecycle transition {self.state.value} -> {new_state.value}"
            )
        logger.debug("[%s] %s -> %s", self.execution_id, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def mark_running(self) -> None:
        if self.state is ExecutionState.PROVISIONED:
            self.advance(ExecutionState.RUNNING)


def sanitize_caller_id(caller_id: str | None) -> str:
    """Map a caller identity onto a single safe path component."""
    cleaned = _CALLER_ID_PATTERN.sub("_", (caller_id or "").strip())[:64]
    return cleaned or "anonymous"


@contextmanager
def sandbox_scope(
    orchestrator: SandboxOrchestrator,
    lifecycle: ExecutionLifecycle,
    **create_kwargs,
) -> Iterator[SandboxHandle]:
    """Provision a sandbox and guarantee its teardown."""
    handle = orchestrator.create(execution_id=lifecycle.execution_id, **create_kwargs)
    lifecycle.advance(ExecutionState.PROVISIONED)
    try:
        yield handle
    except BaseException:
        try:
            orchestrator.teardown(handle)
        except Exception:
            logger.exception("[%s] sandbox teardown failed", lifecycle.execution_id)
        lifecycle.advance(ExecutionState.TORN_DOWN)
        raise
    else:
        try:
            orchestrator.teardown(handle)
        except Exception as exc:
            logger.exception("[%s] sandbox teardown failed", lifecycle.execution_id)
            raise InternalExecutionError() from exc
        finally:
            lifecycle.advance(ExecutionState.TORN_DOWN)


@contextmanager
def workspace_scope(
    root: Path,
    caller_id: str | None,
    lifecycle: ExecutionLifecycle,
) -> Iterator[Path]:
    """Create ``<root>/<caller>/<execution id>`` and remove it afterwards."""
    caller_dir = root / sanitize_caller_id(caller_id)
    workdir = caller_dir / lifecycle.execution_id
    try:
        workdir.mkdir(parents=True, exist_ok=False)
    except OSError as exc:
        logger.exception("[%s] could not create workspace %s", lifecycle.execution_id, workdir)
        raise InternalExecutionError() from exc
    lifecycle.advance(ExecutionState.PROVISIONED)

    try:
        yield workdir
    except BaseException:
        _remove_workspace(workdir, lifecycle, propagate=False)
        raise
    else:
        _remove_workspace(workdir, lifecycle, propagate=True)


def _remove_workspace(
    workdir: Path,
    lifecycle: ExecutionLifecycle,
    *,
    propagate: bool,
) -> None:
    try:
        shutil.rmtree(workdir)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.exception("[%s] workspace cleanup failed: %s", lifecycle.execution_id, workdir)
        lifecycle.advance(ExecutionState.TORN_DOWN)
        if propagate:
            raise InternalExecutionError() from exc
        return
    lifecycle.advance(ExecutionState.TORN_DOWN)
