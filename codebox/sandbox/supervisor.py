"""
Execution supervisor for provisioned sandboxes.

Each step (compile, then run) is a process started inside the sandbox.
Its attach stream is drained on a worker thread while the calling thread
polls for process exit with the remaining wall-clock budget. If the budget
runs out first the whole sandbox is killed; the daemon's verdict is never
trusted to enforce the limit.
"""

from __future__ import annotations

import re
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Callable

from ..core.logging import get_logger
from ..languages.registry import LanguageDescriptor, render_command, token_mapping
from ..types import ExecutionState, ExecutionStatus, StepOutcome
from .backend import DOCKER_ERRORS
from .demux import demux
from .orchestrator import SANDBOX_BINARY, SandboxHandle, SandboxOrchestrator
from .packager import STDIN_FILENAME

if TYPE_CHECKING:
    from ..execution.lifecycle import ExecutionLifecycle

logger = get_logger(__name__)

# Exit status of a process killed with SIGKILL (128 + 9). The kernel OOM
# killer produces it, but so can user code, so it is only a hint.
KILLED_EXIT_CODE = 137

# cgroup v2 and v1 locations of the memory controller's event counters.
_CGROUP_MEMORY_EVENTS = (
    "/sys/fs/cgroup/memory.events",
    "/sys/fs/cgroup/memory/memory.oom_control",
)
_OOM_KILL_PATTERN = re.compile(r"^oom_kill (\d+)$", re.MULTILINE)

_DRAIN_SECONDS = 2.0
_POLL_SECONDS = 0.1
_LINGER_SECONDS = 0.2
_INSPECT_SECONDS = 1.0
_INSPECT_INTERVAL = 0.01


def stdin_wrapper(argv: list[str]) -> list[str]:
    """Wrap ``argv`` so it reads the fixed input file as standard input."""
    return ["sh", "-c", f'exec "$@" < {STDIN_FILENAME}', "sh", *argv]


class ExecutionSupervisor:
    """Runs compile and run steps inside a sandbox under one deadline."""

    def __init__(
        self,
        orchestrator: SandboxOrchestrator,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.orchestrator = orchestrator
        self.backend = orchestrator.backend
        self._clock = clock

    def supervise(
        self,
        handle: SandboxHandle,
        descriptor: LanguageDescriptor,
        lifecycle: ExecutionLifecycle,
        *,
        timeout_ms: int,
        with_stdin: bool = False,
    ) -> tuple[ExecutionStatus, StepOutcome]:
        deadline = self._clock() + timeout_ms / 1000
        mapping = token_mapping(descriptor, handle.workdir, binary=SANDBOX_BINARY)

        if descriptor.compile_command is not None:
            argv = descriptor.invocation(tuple(render_command(descriptor.compile_command, mapping)))
            compiled = self._step(handle, argv, deadline)
            if compiled.timed_out:
                lifecycle.advance(ExecutionState.TIMED_OUT)
                return ExecutionStatus.TIMED_OUT, compiled
            if compiled.exit_code != 0:
                logger.info(
                    "[%s] %s compilation failed (exit %s)",
                    handle.execution_id,
                    descriptor.id,
                    compiled.exit_code,
                )
                lifecycle.advance(ExecutionState.COMPILE_FAILED)
                return ExecutionStatus.COMPILE_FAILED, _diagnostics(compiled)

        argv = descriptor.invocation(tuple(render_command(descriptor.run_command, mapping)))
        if with_stdin:
            argv = stdin_wrapper(argv)
        lifecycle.mark_running()
        outcome = self._step(handle, argv, deadline, final=True)
        status = outcome.status
        lifecycle.advance(status.state)
        return status, outcome

    def _step(
        self,
        handle: SandboxHandle,
        argv: list[str],
        deadline: float,
        *,
        final: bool = False,
    ) -> StepOutcome:
        remaining = deadline - self._clock()
        if remaining <= 0:
            self.orchestrator.kill(handle)
            return StepOutcome(stdout="", stderr="", exit_code=None, timed_out=True)

        exec_id, sock = self.backend.exec_start(
            handle.container,
            argv,
            workdir=handle.workdir,
            user=handle.user,
            environment=handle.environment,
        )

        sink = bytearray()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="codebox-reader")
        try:
            reader = pool.submit(self.backend.read_stream, sock, sink)
            if not self._await_exit(exec_id, reader, deadline):
                logger.warning(
                    "[%s] wall-clock limit reached, killing sandbox %s",
                    handle.execution_id,
                    handle.container_id[:12],
                )
                self.orchestrator.kill(handle)
                if not wait([reader], timeout=_DRAIN_SECONDS)[0]:
                    _close(sock)
                    wait([reader], timeout=_DRAIN_SECONDS)
                output = demux(reader.result() if reader.done() else bytes(sink))
                return StepOutcome(
                    stdout=output.stdout,
                    stderr=output.stderr,
                    exit_code=None,
                    timed_out=True,
                )

            exit_code = self._exit_code(exec_id)
            oom_killed = exit_code == KILLED_EXIT_CODE and self._memory_exhausted(handle)
            if not reader.done():
                # The process exited but a background child still holds the stream.
                logger.debug("[%s] output stream outlived its process", handle.execution_id)
                if final:
                    self.orchestrator.kill(handle)
                else:
                    _close(sock)
                wait([reader], timeout=_DRAIN_SECONDS)
            raw = reader.result() if reader.done() else bytes(sink)
        finally:
            pool.shutdown(wait=False)

        output = demux(raw)
        if not output.complete:
            logger.debug("[%s] attach stream ended mid-frame", handle.execution_id)
        return StepOutcome(
            stdout=output.stdout,
            stderr=output.stderr,
            exit_code=exit_code,
            oom_killed=oom_killed,
        )

    def _await_exit(self, exec_id: str, reader: Future, deadline: float) -> bool:
        """Wait for the process to exit. Returns False if the deadline passed first."""
        while not reader.done():
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False
            if wait([reader], timeout=min(remaining, _POLL_SECONDS))[0]:
                break
            if not self.backend.exec_inspect(exec_id).get("Running"):
                wait([reader], timeout=_LINGER_SECONDS)
                break
        return True

    def _exit_code(self, exec_id: str) -> int | None:
        # The stream can close a moment before the daemon records the exit.
        until = self._clock() + _INSPECT_SECONDS
        details = self.backend.exec_inspect(exec_id)
        while details.get("Running") and self._clock() < until:
            time.sleep(_INSPECT_INTERVAL)
            details = self.backend.exec_inspect(exec_id)
        return details.get("ExitCode")

    def _memory_exhausted(self, handle: SandboxHandle) -> bool:
        """
        Tell an out-of-memory kill apart from user code exiting with 137.

        The container's OOMKilled flag is only set once its main process dies,
        so the cgroup's own oom_kill counter is consulted as well.
        """
        try:
            if self.backend.state(handle.container).get("OOMKilled"):
                return True
            _, sock = self.backend.exec_start(
                handle.container,
                ["sh", "-c", f"cat {' '.join(_CGROUP_MEMORY_EVENTS)} 2>/dev/null"],
                workdir=handle.workdir,
                user=handle.user,
            )
            events = demux(self.backend.read_stream(sock)).stdout
        except DOCKER_ERRORS:
            logger.debug("[%s] could not read memory events", handle.execution_id, exc_info=True)
            return False
        return any(int(count) > 0 for count in _OOM_KILL_PATTERN.findall(events))


def _diagnostics(compiled: StepOutcome) -> StepOutcome:
    """Compiler diagnostics become the error text; some toolchains print them on stdout."""
    return StepOutcome(
        stdout="",
        stderr=compiled.stderr or compiled.stdout,
        exit_code=compiled.exit_code,
    )


def _close(sock) -> None:
    close = getattr(sock, "close", None)
    if callable(close):
        try:
            close()
        except OSError:
            pass
