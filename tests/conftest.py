"""
Pytest configuration and fixtures for codebox tests.
"""

import os
import threading
from dataclasses import dataclass, field

import pytest
from hypothesis import Verbosity, settings

from codebox.core.config import DockerConfig, EngineConfig
from codebox.sandbox.demux import STDERR, STDOUT, encode_frame

# Configure hypothesis settings for property-based testing
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.register_profile(
    "dev",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


@dataclass
class FakeExec:
    """Scripted behaviour of one process started inside a fake container."""

    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: int = 0
    hang: bool = False  # block until the container is killed
    linger: bool = False  # exit at once, but a child keeps the stream open


@dataclass
class FakeContainer:
    id: str
    image: str
    options: dict
    status: str = "created"
    archives: list = field(default_factory=list)
    killed: bool = False
    remove_calls: int = 0
    oom_killed: bool = False
    kill_event: threading.Event = field(default_factory=threading.Event)


class FakeSocket:
    def __init__(self, container: FakeContainer, script: FakeExec):
        self.container = container
        self.script = script
        self.closed = False

    def close(self):
        self.closed = True


class FakeDockerBackend:
    """In-memory stand-in for DockerBackend."""

    name = "docker"

    def __init__(self, available: bool = True):
        self.config = DockerConfig()
        self.available = available
        self.create_error: Exception | None = None
        self.start_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.pull_errors: dict[str, Exception] = {}
        self.scripts: list[FakeExec] = []
        self.containers: list[FakeContainer] = []
        self.commands: list[list[str]] = []
        self.pulled: list[str] = []
        self.closed = False
        self._execs: dict[str, FakeExec] = {}
        self._lock = threading.Lock()

    def script(self, *execs: FakeExec) -> "FakeDockerBackend":
        self.scripts.extend(execs)
        return self

    def check_health(self):
        if self.available:
            return True, "docker daemon ready (server fake)"
        return False, "docker daemon unavailable: connection refused"

    def ping(self):
        return self.available

    def info(self):
        return {"containers": len(self.containers), "serverVersion": "fake"}

    def close(self):
        self.closed = True

    def has_image(self, image):
        return image not in self.pull_errors

    def pull(self, image):
        if image in self.pull_errors:
            raise self.pull_errors[image]
        self.pulled.append(image)

    def create_container(self, image, **kwargs):
        if self.create_error is not None:
            raise self.create_error
        with self._lock:
            container = FakeContainer(id=f"fake{len(self.containers):08d}", image=image, options=kwargs)
            self.containers.append(container)
        return container

    def start(self, container):
        if self.start_error is not None:
            raise self.start_error
        container.status = "running"

    def put_archive(self, container, path, data):
        container.archives.append((path, data))

    def kill(self, container):
        container.killed = True
        container.status = "exited"
        container.kill_event.set()

    def remove(self, container):
        container.remove_calls += 1
        if self.remove_error is not None:
            raise self.remove_error
        container.status = "removed"

    def state(self, container):
        return {"OOMKilled": container.oom_killed}

    def labelled_containers(self, label):
        return [c for c in self.containers if label in c.options.get("labels", {}) and c.status != "removed"]

    def exec_start(self, container, cmd, *, workdir, user=None, environment=None):
        with self._lock:
            self.commands.append(list(cmd))
            script = self.scripts.pop(0) if self.scripts else FakeExec()
            exec_id = f"exec{len(self._execs)}"
            self._execs[exec_id] = (container, script)
        return exec_id, FakeSocket(container, script)

    def exec_inspect(self, exec_id):
        container, script = self._execs[exec_id]
        running = script.hang and not container.kill_event.is_set()
        return {"Running": running, "ExitCode": None if running else script.exit_code}

    def read_stream(self, sock, sink=None):
        sink = bytearray() if sink is None else sink
        script = sock.script
        if script.stdout:
            sink.extend(encode_frame(STDOUT, script.stdout))
        if script.hang or script.linger:
            sock.container.kill_event.wait(timeout=10)
            return bytes(sink)
        if script.stderr:
            sink.extend(encode_frame(STDERR, script.stderr))
        return bytes(sink)


@pytest.fixture
def fake_backend():
    return FakeDockerBackend()


@pytest.fixture
def engine_config(tmp_path):
    config = EngineConfig()
    config.fallback.temp_root = str(tmp_path / "work")
    return config.validate()
