"""Tests for sandbox provisioning and supervision against a fake Docker backend."""

import time

import pytest
from conftest import FakeDockerBackend, FakeExec
from docker.errors import APIError, ImageNotFound
from requests.exceptions import ConnectionError as RequestsConnectionError

from codebox.core.config import SandboxConfig
from codebox.core.exceptions import BackendUnavailableError, InternalExecutionError
from codebox.execution.lifecycle import ExecutionLifecycle
from codebox.languages import get_language
from codebox.languages.registry import MB, ResourceLimits
from codebox.sandbox.backend import DaemonUnreachableError
from codebox.sandbox.orchestrator import LABEL_CALLER, LABEL_EXECUTION, SandboxOrchestrator
from codebox.sandbox.packager import pack
from codebox.sandbox.supervisor import ExecutionSupervisor, stdin_wrapper
from codebox.types import ExecutionState, ExecutionStatus


def _provision(orchestrator, language="python", timeout_ms=5000, execution_id="exec1"):
    descriptor = get_language(language)
    return orchestrator.create(
        execution_id=execution_id,
        descriptor=descriptor,
        archive=pack(descriptor, "print(1)"),
        limits=descriptor.limits,
        timeout_ms=timeout_ms,
        caller_id="alice",
    )


def _running_lifecycle():
    lifecycle = ExecutionLifecycle("exec1")
    lifecycle.advance(ExecutionState.PROVISIONED)
    return lifecycle


def test_create_applies_isolation_policy(fake_backend):
    orchestrator = SandboxOrchestrator(fake_backend, SandboxConfig())

    handle = _provision(orchestrator, timeout_ms=10_000)

    container = fake_backend.containers[0]
    options = container.options
    assert container.image == "python:3.11-alpine"
    assert options["network_mode"] == "none"
    assert options["cap_drop"] == ["ALL"]
    assert "cap_add" not in options
    assert options["security_opt"] == ["no-new-privileges:true"]
    assert options["user"] == "nobody"
    assert options["mem_limit"] == options["memswap_limit"] == 128 * MB
    assert options["pids_limit"] == 50
    assert options["cpu_quota"] == 50_000
    assert {u["Name"]: u["Hard"] for u in options["ulimits"]} == {"nofile": 64, "nproc": 32}
    assert options["entrypoint"] == ["sleep", "40"]
    assert options["labels"] == {LABEL_EXECUTION: "exec1", LABEL_CALLER: "alice"}
    assert options["environment"]["HOME"] == "/app"
    assert options["environment"]["PYTHONDONTWRITEBYTECODE"] == "1"
    assert container.status == "running"
    assert container.archives[0][0] == "/app"
    assert handle.container_id == container.id
    assert handle.workdir == "/app"


def test_descriptor_env_placeholders_are_rendered(fake_backend):
    orchestrator = SandboxOrchestrator(fake_backend)

    _provision(orchestrator, language="go")

    assert fake_backend.containers[0].options["environment"]["GOCACHE"] == "/app/.gocache"


def test_read_only_rootfs_mounts_writable_workdir(fake_backend):
    config = SandboxConfig()
    config.docker.read_only_rootfs = True
    config.docker.extra_capabilities = ["chown"]
    orchestrator = SandboxOrchestrator(fake_backend, config)

    _provision(orchestrator)

    options = fake_backend.containers[0].options
    assert options["read_only"] is True
    assert "/app" in options["tmpfs"]
    assert options["cap_add"] == ["CHOWN"]


@pytest.mark.parametrize(
    "error",
    [
        RequestsConnectionError("refused"),
        DaemonUnreachableError("Error while fetching server API version"),
        ImageNotFound("could not pull python:3.11-alpine: pull access denied"),
    ],
)
def test_unreachable_daemon_or_missing_image_is_backend_unavailable(fake_backend, error):
    fake_backend.create_error = error
    orchestrator = SandboxOrchestrator(fake_backend)

    with pytest.raises(BackendUnavailableError):
        _provision(orchestrator)


def test_rejected_container_definition_is_internal_error(fake_backend):
    fake_backend.create_error = APIError("400 Client Error: invalid cap_add value")
    orchestrator = SandboxOrchestrator(fake_backend)

    with pytest.raises(InternalExecutionError):
        _provision(orchestrator)


def test_rejected_start_discards_container(fake_backend):
    fake_backend.start_error = APIError("cannot start")
    orchestrator = SandboxOrchestrator(fake_backend)

    with pytest.raises(InternalExecutionError):
        _provision(orchestrator)

    assert fake_backend.containers[0].remove_calls == 1


def test_connection_lost_during_start_discards_container(fake_backend):
    fake_backend.start_error = RequestsConnectionError("connection reset")
    orchestrator = SandboxOrchestrator(fake_backend)

    with pytest.raises(BackendUnavailableError):
        _provision(orchestrator)

    assert fake_backend.containers[0].remove_calls == 1


def test_teardown_is_idempotent(fake_backend):
    orchestrator = SandboxOrchestrator(fake_backend)
    handle = _provision(orchestrator)

    orchestrator.teardown(handle)
    orchestrator.teardown(handle)

    assert fake_backend.containers[0].remove_calls == 1
    assert handle.torn_down


def test_sweep_orphans_skips_running_by_default(fake_backend):
    orchestrator = SandboxOrchestrator(fake_backend)
    live = _provision(orchestrator, execution_id="live")
    dead = _provision(orchestrator, execution_id="dead")
    fake_backend.containers[1].status = "exited"

    removed = orchestrator.sweep_orphans()

    assert removed == [dead.container_id]
    assert orchestrator.sweep_orphans(include_running=True) == [live.container_id]


def test_pull_images_reports_each_image(fake_backend):
    fake_backend.pull_errors["gcc:12"] = APIError("rate limited")
    orchestrator = SandboxOrchestrator(fake_backend)

    results = orchestrator.pull_images()

    assert results["gcc:12"][0] is False
    assert results["python:3.11-alpine"] == (True, "pulled")
    assert "gcc:12" not in fake_backend.pulled
    assert len(fake_backend.pulled) == len(results) - 1


def test_supervise_script_completes(fake_backend):
    fake_backend.script(FakeExec(stdout=b"4\n"))
    orchestrator = SandboxOrchestrator(fake_backend)
    supervisor = ExecutionSupervisor(orchestrator)
    handle = _provision(orchestrator)
    lifecycle = _running_lifecycle()

    status, outcome = supervisor.supervise(handle, get_language("python"), lifecycle, timeout_ms=5000)

    assert status is ExecutionStatus.COMPLETED
    assert outcome.stdout == "4"
    assert outcome.exit_code == 0
    assert fake_backend.commands == [["python", "-u", "main.py"]]
    assert lifecycle.state is ExecutionState.COMPLETED


def test_supervise_non_zero_exit_is_still_completed(fake_backend):
    fake_backend.script(FakeExec(stderr=b"Traceback\nZeroDivisionError\n", exit_code=1))
    orchestrator = SandboxOrchestrator(fake_backend)
    supervisor = ExecutionSupervisor(orchestrator)
    handle = _provision(orchestrator)

    status, outcome = supervisor.supervise(handle, get_language("python"), _running_lifecycle(), timeout_ms=5000)

    assert status is ExecutionStatus.COMPLETED
    assert outcome.exit_code == 1
    assert outcome.stderr.endswith("ZeroDivisionError")


def test_compile_failure_skips_run(fake_backend):
    fake_backend.script(FakeExec(stderr=b"main.c:1:18: error: expected expression\n", exit_code=1))
    orchestrator = SandboxOrchestrator(fake_backend)
    supervisor = ExecutionSupervisor(orchestrator)
    handle = _provision(orchestrator, language="c")
    lifecycle = _running_lifecycle()

    status, outcome = supervisor.supervise(handle, get_language("c"), lifecycle, timeout_ms=5000)

    assert status is ExecutionStatus.COMPILE_FAILED
    assert "error: expected expression" in outcome.stderr
    assert len(fake_backend.commands) == 1
    assert fake_backend.commands[0][0] == "gcc"
    assert ExecutionState.RUNNING not in lifecycle.history


def test_compiler_diagnostics_on_stdout_become_error_text(fake_backend):
    fake_backend.script(FakeExec(stdout=b"Program.cs(1,1): error CS1002\n", exit_code=1))
    orchestrator = SandboxOrchestrator(fake_backend)
    supervisor = ExecutionSupervisor(orchestrator)
    handle = _provision(orchestrator, language="csharp")

    status, outcome = supervisor.supervise(handle, get_language("csharp"), _running_lifecycle(), timeout_ms=5000)

    assert status is ExecutionStatus.COMPILE_FAILED
    assert outcome.stderr == "Program.cs(1,1): error CS1002"
    assert outcome.stdout == ""


def test_compiled_language_runs_binary_after_successful_compile(fake_backend):
    fake_backend.script(FakeExec(), FakeExec(stdout=b"Hello\n"))
    orchestrator = SandboxOrchestrator(fake_backend)
    supervisor = ExecutionSupervisor(orchestrator)
    handle = _provision(orchestrator, language="cpp")

    status, outcome = supervisor.supervise(handle, get_language("cpp"), _running_lifecycle(), timeout_ms=5000)

    assert status is ExecutionStatus.COMPLETED
    assert outcome.stdout == "Hello"
    assert fake_backend.commands[1] == ["./main"]


def test_timeout_kills_container_and_keeps_partial_output(fake_backend):
    fake_backend.script(FakeExec(stdout=b"tick\n", hang=True))
    orchestrator = SandboxOrchestrator(fake_backend)
    supervisor = ExecutionSupervisor(orchestrator)
    handle = _provision(orchestrator, language="javascript")
    lifecycle = _running_lifecycle()

    started = time.monotonic()
    status, outcome = supervisor.supervise(handle, get_language("javascript"), lifecycle, timeout_ms=300)
    elapsed = time.monotonic() - started

    assert status is ExecutionStatus.TIMED_OUT
    assert outcome.exit_code is None
    assert outcome.stdout == "tick"
    assert fake_backend.containers[0].killed is True
    assert 0.3 <= elapsed < 2.0
    assert lifecycle.state is ExecutionState.TIMED_OUT


def test_compile_and_run_share_one_deadline(fake_backend):
    fake_backend.script(FakeExec(), FakeExec(hang=True))
    orchestrator = SandboxOrchestrator(fake_backend)
    now = [0.0]
    inspect = fake_backend.exec_inspect

    def _slow_compile(exec_id):
        now[0] = 10.0  # the compile step used up the whole budget
        return inspect(exec_id)

    fake_backend.exec_inspect = _slow_compile
    supervisor = ExecutionSupervisor(orchestrator, clock=lambda: now[0])
    handle = _provision(orchestrator, language="c")

    status, outcome = supervisor.supervise(handle, get_language("c"), _running_lifecycle(), timeout_ms=5000)

    assert status is ExecutionStatus.TIMED_OUT
    assert fake_backend.containers[0].killed is True
    assert len(fake_backend.commands) == 1


def test_exit_with_lingering_stream_is_completed(fake_backend):
    fake_backend.script(FakeExec(stdout=b"done\n", linger=True))
    orchestrator = SandboxOrchestrator(fake_backend)
    supervisor = ExecutionSupervisor(orchestrator)
    handle = _provision(orchestrator)
    lifecycle = _running_lifecycle()

    started = time.monotonic()
    status, outcome = supervisor.supervise(handle, get_language("python"), lifecycle, timeout_ms=3000)
    elapsed = time.monotonic() - started

    assert status is ExecutionStatus.COMPLETED
    assert outcome.exit_code == 0
    assert outcome.stdout == "done"
    assert elapsed < 2.0
    assert fake_backend.containers[0].killed is True
    assert lifecycle.state is ExecutionState.COMPLETED


def test_exit_137_with_oom_kill_count_is_resource_exceeded(fake_backend):
    fake_backend.script(FakeExec(exit_code=137), FakeExec(stdout=b"low 0\nhigh 0\nmax 3\noom 1\noom_kill 1\n"))
    orchestrator = SandboxOrchestrator(fake_backend)
    supervisor = ExecutionSupervisor(orchestrator)
    handle = _provision(orchestrator)
    lifecycle = _running_lifecycle()

    status, outcome = supervisor.supervise(handle, get_language("python"), lifecycle, timeout_ms=5000)

    assert status is ExecutionStatus.RESOURCE_EXCEEDED
    assert outcome.exit_code == 137
    assert lifecycle.state is ExecutionState.RESOURCE_EXCEEDED
    assert "/sys/fs/cgroup/memory.events" in fake_backend.commands[1][2]


def test_exit_137_without_oom_evidence_is_completed(fake_backend):
    fake_backend.script(FakeExec(exit_code=137), FakeExec(stdout=b"oom 0\noom_kill 0\n"))
    orchestrator = SandboxOrchestrator(fake_backend)
    supervisor = ExecutionSupervisor(orchestrator)
    handle = _provision(orchestrator)

    status, outcome = supervisor.supervise(handle, get_language("python"), _running_lifecycle(), timeout_ms=5000)

    assert status is ExecutionStatus.COMPLETED
    assert outcome.exit_code == 137


def test_oom_flag_on_container_is_resource_exceeded(fake_backend):
    fake_backend.script(FakeExec(exit_code=137))
    orchestrator = SandboxOrchestrator(fake_backend)
    supervisor = ExecutionSupervisor(orchestrator)
    handle = _provision(orchestrator)
    fake_backend.containers[0].oom_killed = True

    status, _ = supervisor.supervise(handle, get_language("python"), _running_lifecycle(), timeout_ms=5000)

    assert status is ExecutionStatus.RESOURCE_EXCEEDED
    assert len(fake_backend.commands) == 1


def test_non_137_exit_ignores_oom_flag(fake_backend):
    fake_backend.script(FakeExec(exit_code=1))
    orchestrator = SandboxOrchestrator(fake_backend)
    supervisor = ExecutionSupervisor(orchestrator)
    handle = _provision(orchestrator)
    fake_backend.containers[0].oom_killed = True

    status, _ = supervisor.supervise(handle, get_language("python"), _running_lifecycle(), timeout_ms=5000)

    assert status is ExecutionStatus.COMPLETED


def test_fixed_input_wraps_run_command(fake_backend):
    orchestrator = SandboxOrchestrator(fake_backend)
    supervisor = ExecutionSupervisor(orchestrator)
    handle = _provision(orchestrator)

    supervisor.supervise(handle, get_language("python"), _running_lifecycle(), timeout_ms=5000, with_stdin=True)

    assert fake_backend.commands == [stdin_wrapper(["python", "-u", "main.py"])]
    assert fake_backend.commands[0][:3] == ["sh", "-c", 'exec "$@" < .stdin']


def test_resource_limits_are_passed_through(fake_backend):
    orchestrator = SandboxOrchestrator(fake_backend)
    descriptor = get_language("python")

    orchestrator.create(
        execution_id="exec1",
        descriptor=descriptor,
        archive=b"",
        limits=ResourceLimits(memory_bytes=32 * MB, pids=5, nofile=16, nproc=4),
        timeout_ms=1000,
    )

    options = fake_backend.containers[0].options
    assert options["mem_limit"] == 32 * MB
    assert options["pids_limit"] == 5
    assert options["labels"][LABEL_CALLER] == "anonymous"
