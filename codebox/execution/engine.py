"""
Code execution engine.

Public entry point: validate a request, run it in a sandbox when the
isolation backend answers its liveness probe, and fall back to host
toolchains when it does not. Every path yields the same ``ExecutionResult``.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from ..core.config import ConfigManager, EngineConfig
from ..core.exceptions import (
    BackendUnavailableError,
    ExecutionError,
    InternalExecutionError,
    InvalidRequestError,
    NotRunnableError,
)
from ..core.logging import get_logger
from ..languages import registry
from ..languages.registry import LanguageDescriptor
from ..sandbox.backend import DockerBackend
from ..sandbox.orchestrator import SandboxOrchestrator
from ..sandbox.packager import pack
from ..sandbox.supervisor import ExecutionSupervisor
from ..types import (
    ExecutionPath,
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    StepOutcome,
)
from .fallback import FallbackExecutor
from .lifecycle import ExecutionLifecycle, sandbox_scope

logger = get_logger(__name__)


class CodeExecutionEngine:
    """Runs untrusted source code in isolated, resource-bounded sandboxes."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        backend: DockerBackend | None = None,
        fallback: FallbackExecutor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = (config or EngineConfig()).validate()
        self._clock = clock

        self.backend: DockerBackend | None = None
        self.orchestrator: SandboxOrchestrator | None = None
        self.supervisor: ExecutionSupervisor | None = None
        if self.config.sandbox.backend == "docker":
            self.backend = backend or DockerBackend(self.config.sandbox.docker)
            self.orchestrator = SandboxOrchestrator(self.backend, self.config.sandbox)
            self.supervisor = ExecutionSupervisor(self.orchestrator, clock=clock)

        self.fallback = fallback or FallbackExecutor(self.config.fallback, clock=clock)

    # Requests

    def execute(
        self,
        language_id: str,
        source: str,
        *,
        timeout_ms: int | None = None,
        caller_id: str | None = None,
        stdin: str | None = None,
    ) -> ExecutionResult:
        """
        Compile (if needed) and run ``source``.

        User-code failures (non-zero exit, timeout, compile errors, resource
        limits) come back as a result; call ``raise_for_status()`` to turn them
        into exceptions.

        Raises:
            InvalidRequestError: Malformed arguments.
            UnsupportedLanguageError: Unknown language id.
            NotRunnableError: Language is known but never executed.
            BackendUnavailableError: Neither the sandbox nor the host can run it.
            InternalExecutionError: Infrastructure failure.
        """
        request = ExecutionRequest(
            language_id=language_id,
            source=source,
            stdin=stdin,
            timeout_ms=timeout_ms,
            caller_id=caller_id,
        )
        return self.run(request)

    def run(self, request: ExecutionRequest) -> ExecutionResult:
        descriptor = self.resolve(request)
        timeout_ms = self.effective_timeout(descriptor, request.timeout_ms)
        started = self._clock()
        logger.debug(
            "[%s] executing %s for %s (timeout %dms)",
            request.execution_id,
            descriptor.id,
            request.caller_id or "anonymous",
            timeout_ms,
        )

        try:
            path, status, outcome = self._dispatch(request, descriptor, timeout_ms)
        except ExecutionError:
            raise
        except Exception as exc:
            logger.exception("[%s] execution failed internally", request.execution_id)
            raise InternalExecutionError() from exc

        result = self._result(request, descriptor, path, status, outcome, started, timeout_ms)
        logger.info(
            "[%s] %s finished via %s: %s in %dms",
            request.execution_id,
            descriptor.id,
            path.value,
            status.value,
            result.execution_time_ms,
        )
        return result

    def resolve(self, request: ExecutionRequest) -> LanguageDescriptor:
        """Validate a request without allocating anything."""
        if not isinstance(request.language_id, str) or not request.language_id.strip():
            raise InvalidRequestError("language must be a non-empty string")
        if not isinstance(request.source, str):
            raise InvalidRequestError("source must be text")
        if request.stdin is not None and not isinstance(request.stdin, str):
            raise InvalidRequestError("stdin must be text")
        timeout = request.timeout_ms
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, int) or timeout <= 0):
            raise InvalidRequestError("timeout_ms must be a positive integer")

        descriptor = registry.get_language(request.language_id)
        if not descriptor.runnable:
            raise NotRunnableError(descriptor.id)
        return descriptor

    def effective_timeout(self, descriptor: LanguageDescriptor, requested: int | None) -> int:
        timeout = requested or self.config.sandbox.default_timeout_ms or descriptor.timeout_ms
        return min(int(timeout), self.config.sandbox.max_timeout_ms)

    def _dispatch(
        self,
        request: ExecutionRequest,
        descriptor: LanguageDescriptor,
        timeout_ms: int,
    ) -> tuple[ExecutionPath, ExecutionStatus, StepOutcome]:
        if self.orchestrator is not None:
            lifecycle = ExecutionLifecycle(request.execution_id)
            if self.orchestrator.is_available():
                try:
                    status, outcome = self._run_sandboxed(request, descriptor, timeout_ms, lifecycle)
                    return ExecutionPath.SANDBOX, status, outcome
                except BackendUnavailableError as exc:
                    if lifecycle.state is not ExecutionState.CREATED:
                        raise
                    reason = exc.detail
            else:
                reason = "liveness probe failed"
            lifecycle.advance(ExecutionState.BACKEND_UNAVAILABLE)
            lifecycle.advance(ExecutionState.TORN_DOWN)
            logger.warning("[%s] sandbox unavailable (%s), using host fallback", request.execution_id, reason)

        if not self.config.fallback.enabled:
            raise BackendUnavailableError("sandbox unavailable and host fallback is disabled")

        lifecycle = ExecutionLifecycle(request.execution_id)
        status, outcome = self.fallback.run(request, descriptor, lifecycle, timeout_ms=timeout_ms)
        return ExecutionPath.FALLBACK, status, outcome

    def _run_sandboxed(
        self,
        request: ExecutionRequest,
        descriptor: LanguageDescriptor,
        timeout_ms: int,
        lifecycle: ExecutionLifecycle,
    ) -> tuple[ExecutionStatus, StepOutcome]:
        archive = pack(descriptor, request.source, request.stdin)
        limits = descriptor.limits.with_overrides(self.config.limits)
        with sandbox_scope(
            self.orchestrator,
            lifecycle,
            descriptor=descriptor,
            archive=archive,
            limits=limits,
            timeout_ms=timeout_ms,
            caller_id=request.caller_id,
        ) as handle:
            return self.supervisor.supervise(
                handle,
                descriptor,
                lifecycle,
                timeout_ms=timeout_ms,
                with_stdin=request.stdin is not None,
            )

    def _result(
        self,
        request: ExecutionRequest,
        descriptor: LanguageDescriptor,
        path: ExecutionPath,
        status: ExecutionStatus,
        outcome: StepOutcome,
        started: float,
        timeout_ms: int,
    ) -> ExecutionResult:
        limit = self.config.sandbox.max_output_chars
        output, output_cut = _truncate(outcome.stdout, limit)
        error, error_cut = _truncate(outcome.stderr, limit)
        return ExecutionResult(
            output=output,
            error=error,
            exit_code=None if status is ExecutionStatus.TIMED_OUT else outcome.exit_code,
            execution_time_ms=int(round((self._clock() - started) * 1000)),
            execution_id=request.execution_id,
            path=path,
            language=descriptor.name,
            status=status,
            timeout_ms=timeout_ms,
            truncated=output_cut or error_cut,
        )

    # Introspection

    def list_languages(self) -> list[dict[str, Any]]:
        return [descriptor.summary() for descriptor in registry.list_languages()]

    def is_backend_available(self) -> bool:
        return self.orchestrator is not None and self.orchestrator.is_available()

    def system_status(self) -> dict[str, Any]:
        """Report backend health for degraded-mode indicators. Never raises."""
        available = False
        info: dict[str, Any] | None = None
        try:
            available = self.is_backend_available()
            if available:
                info = self.orchestrator.info()
        except Exception as exc:
            logger.debug("system status probe failed: %s", exc)
            info = {"error": str(exc)}
        return {
            "backendAvailable": available,
            "backendInfo": info,
            "fallbackAvailable": self.config.fallback.enabled,
        }

    # Maintenance

    def pull_images(self) -> dict[str, tuple[bool, str]]:
        return self._require_orchestrator().pull_images()

    def sweep_orphans(self, include_running: bool = False) -> list[str]:
        return self._require_orchestrator().sweep_orphans(include_running=include_running)

    def close(self) -> None:
        if self.backend is not None:
            self.backend.close()

    def _require_orchestrator(self) -> SandboxOrchestrator:
        if self.orchestrator is None:
            raise BackendUnavailableError("sandbox backend is disabled in configuration")
        if not self.orchestrator.is_available():
            raise BackendUnavailableError("docker daemon is not reachable")
        return self.orchestrator


def _truncate(text: str, limit: int) -> tuple[str, bool]:
    if limit > 0 and len(text) > limit:
        return text[:limit], True
    return text, False


_default_engine: CodeExecutionEngine | None = None


def get_engine() -> CodeExecutionEngine:
    """Return the process-wide engine, building it from ``codebox.yaml`` on first use."""
    global _default_engine
    if _default_engine is None:
        _default_engine = CodeExecutionEngine(ConfigManager().config)
    return _default_engine


def reset_engine() -> None:
    global _default_engine
    if _default_engine is not None:
        _default_engine.close()
    _default_engine = None


def execute(language_id: str, source: str, **kwargs: Any) -> ExecutionResult:
    return get_engine().execute(language_id, source, **kwargs)


def list_languages() -> list[dict[str, Any]]:
    return get_engine().list_languages()


def system_status() -> dict[str, Any]:
    try:
        return get_engine().system_status()
    except Exception as exc:
        logger.debug("could not build engine for status: %s", exc)
        return {"backendAvailable": False, "backendInfo": {"error": str(exc)}, "fallbackAvailable": True}
