"""
Host-local fallback executor.

Used when the isolation backend is unreachable. Code runs as a plain
subprocess of the host's toolchain inside a namespaced temporary directory,
with a scrubbed environment and the same wall-clock limit as the sandbox.
There is no network block and no memory or CPU ceiling on this path.
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import sys
import tempfile
import time
from contextlib import ExitStack
from pathlib import Path
from typing import Callable

from ..core.config import FallbackConfig
from ..core.exceptions import BackendUnavailableError
from ..core.logging import get_logger
from ..languages.registry import (
    LanguageDescriptor,
    LocalRecipe,
    render_command,
    render_token,
    token_mapping,
)
from ..sandbox.packager import STDIN_FILENAME, write_bundle
from ..types import ExecutionRequest, ExecutionState, ExecutionStatus, StepOutcome
from .lifecycle import ExecutionLifecycle, workspace_scope

logger = get_logger(__name__)

_BINARY_NAME = "main"


class FallbackExecutor:
    """Runs code with host-installed interpreters and compilers."""

    def __init__(
        self,
        config: FallbackConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or FallbackConfig()
        self._clock = clock

    def missing_tools(self, descriptor: LanguageDescriptor) -> list[str]:
        """Return the host executables ``descriptor`` needs but cannot find."""
        recipe = descriptor.local
        if recipe is None:
            return []
        return [tool for tool in recipe.tools if shutil.which(tool) is None]

    def supports(self, descriptor: LanguageDescriptor) -> bool:
        return descriptor.local is not None and not self.missing_tools(descriptor)

    def run(
        self,
        request: ExecutionRequest,
        descriptor: LanguageDescriptor,
        lifecycle: ExecutionLifecycle,
        *,
        timeout_ms: int,
    ) -> tuple[ExecutionStatus, StepOutcome]:
        """
        Execute one request on the host.

        Raises:
            BackendUnavailableError: The host has no toolchain for the language.
        """
        recipe = descriptor.local
        if recipe is None:
            self._unavailable(lifecycle)
            raise BackendUnavailableError(f"no host toolchain recipe for {descriptor.id}")
        missing = self.missing_tools(descriptor)
        if missing:
            self._unavailable(lifecycle)
            raise BackendUnavailableError(
                f"host toolchain for {descriptor.id} not found: {', '.join(missing)}"
            )

        root = self.config.resolve_temp_root()
        with workspace_scope(root, request.caller_id, lifecycle) as workdir:
            write_bundle(descriptor, request.source, workdir, request.stdin)
            stdin_path = workdir / STDIN_FILENAME if request.stdin is not None else None
            return self._run_in(workdir, recipe, descriptor, lifecycle, timeout_ms, stdin_path)

    def _run_in(
        self,
        workdir: Path,
        recipe: LocalRecipe,
        descriptor: LanguageDescriptor,
        lifecycle: ExecutionLifecycle,
        timeout_ms: int,
        stdin_path: Path | None,
    ) -> tuple[ExecutionStatus, StepOutcome]:
        mapping = token_mapping(
            descriptor,
            str(workdir),
            binary=str(workdir / _BINARY_NAME),
            python=sys.executable,
        )
        env = self._environment(workdir, descriptor, mapping)
        deadline = self._clock() + timeout_ms / 1000

        if recipe.compile:
            compiled = self._step(render_command(recipe.compile, mapping), workdir, env, deadline)
            if compiled.timed_out:
                lifecycle.advance(ExecutionState.TIMED_OUT)
                return ExecutionStatus.TIMED_OUT, compiled
            if compiled.exit_code != 0:
                logger.info("[%s] %s compilation failed on host", lifecycle.execution_id, descriptor.id)
                lifecycle.advance(ExecutionState.COMPILE_FAILED)
                return ExecutionStatus.COMPILE_FAILED, StepOutcome(
                    stdout="",
                    stderr=compiled.stderr or compiled.stdout,
                    exit_code=compiled.exit_code,
                )

        lifecycle.mark_running()
        outcome = self._step(render_command(recipe.run, mapping), workdir, env, deadline, stdin_path)
        status = outcome.status
        lifecycle.advance(status.state)
        return status, outcome

    def _step(
        self,
        argv: list[str],
        workdir: Path,
        env: dict[str, str],
        deadline: float,
        stdin_path: Path | None = None,
    ) -> StepOutcome:
        remaining = deadline - self._clock()
        if remaining <= 0:
            return StepOutcome(stdout="", stderr="", exit_code=None, timed_out=True)

        # Output goes to anonymous files rather than pipes: a background child
        # that inherits them cannot keep the step alive after its parent exits.
        with ExitStack() as stack:
            stdin = stack.enter_context(open(stdin_path, "rb")) if stdin_path else subprocess.DEVNULL
            out = stack.enter_context(tempfile.TemporaryFile(dir=workdir))
            err = stack.enter_context(tempfile.TemporaryFile(dir=workdir))
            try:
                process = subprocess.Popen(
                    argv,
                    cwd=str(workdir),
                    env=env,
                    stdin=stdin,
                    stdout=out,
                    stderr=err,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise BackendUnavailableError(f"{argv[0]} not found on host") from exc

            timed_out = False
            try:
                process.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                timed_out = True
                logger.warning("wall-clock limit reached, killing process group %d", process.pid)
            finally:
                # Background children must not outlive the step.
                _kill_group(process)
            if timed_out:
                process.wait()

            stdout, stderr = _read(out), _read(err)

        exit_code = None if timed_out else _normalize_exit(process.returncode)
        return StepOutcome(
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            exit_code=exit_code,
            timed_out=timed_out,
        )

    def _environment(
        self,
        workdir: Path,
        descriptor: LanguageDescriptor,
        mapping: dict[str, str],
    ) -> dict[str, str]:
        """Build a minimal environment. Host secrets are never inherited."""
        safe_env = {
            "HOME": str(workdir),
            "TMPDIR": str(workdir),
            "PYTHONPATH": "",
            "PYTHONUNBUFFERED": "1",
        }
        for key in self.config.env_allowlist:
            normalized_key = str(key).strip()
            if not normalized_key:
                continue
            value = os.getenv(normalized_key)
            if value is None:
                continue
            # Prevent control chars from leaking into process env.
            safe_env[normalized_key] = value.replace("\x00", "").replace("\n", "")
        safe_env.setdefault("PATH", os.defpath)
        for key, value in descriptor.env:
            safe_env[key] = render_token(value, mapping)
        return safe_env

    @staticmethod
    def _unavailable(lifecycle: ExecutionLifecycle) -> None:
        lifecycle.advance(ExecutionState.BACKEND_UNAVAILABLE)
        lifecycle.advance(ExecutionState.TORN_DOWN)


def _kill_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        process.kill()


def _read(stream) -> bytes:
    stream.seek(0)
    return stream.read()


def _normalize_exit(returncode: int | None) -> int | None:
    # Signal deaths are reported the way a shell (and the container runtime) would.
    if returncode is not None and returncode < 0:
        return 128 - returncode
    return returncode


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace").rstrip()
