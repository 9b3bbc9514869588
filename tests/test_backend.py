"""Tests for the Docker SDK wrapper, driven through an injected client."""

import socket
from types import SimpleNamespace

import pytest
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from requests.exceptions import ConnectionError as RequestsConnectionError

from codebox.core.config import DockerConfig
from codebox.sandbox import backend as backend_module
from codebox.sandbox.backend import CONNECTION_ERRORS, DaemonUnreachableError, DockerBackend
from codebox.sandbox.demux import STDERR, STDOUT, demux, encode_frame


def _api_error(status_code, message="daemon said no"):
    response = SimpleNamespace(status_code=status_code, url="http+docker://localhost/v1.43", reason=message)
    return APIError(message, response=response)


class FakeSDKContainer:
    def __init__(self, container_id="c0ffee000000", accept_archive=True):
        self.id = container_id
        self.accept_archive = accept_archive
        self.kill_error = None
        self.remove_error = None
        self.archives = []
        self.removed_with = None
        self.reloaded = False
        self.attrs = {"State": {"Status": "running", "OOMKilled": False}}

    def put_archive(self, path, data):
        self.archives.append((path, data))
        return self.accept_archive

    def start(self):
        self.attrs["State"]["Status"] = "running"

    def kill(self):
        if self.kill_error is not None:
            raise self.kill_error

    def remove(self, force=False):
        self.removed_with = {"force": force}
        if self.remove_error is not None:
            raise self.remove_error

    def reload(self):
        self.reloaded = True


class FakeImages:
    def __init__(self, present=(), pull_error=None):
        self.present = set(present)
        self.pull_error = pull_error
        self.pulled = []

    def get(self, image):
        if image not in self.present:
            raise ImageNotFound(f"No such image: {image}")
        return SimpleNamespace(tags=[image])

    def pull(self, image):
        if self.pull_error is not None:
            raise self.pull_error
        self.pulled.append(image)
        self.present.add(image)


class FakeContainers:
    def __init__(self, images, create_error=None):
        self.images = images
        self.create_error = create_error
        self.created = []
        self.list_calls = []

    def create(self, image, **kwargs):
        if self.create_error is not None:
            raise self.create_error
        if image not in self.images.present:
            raise ImageNotFound(f"No such image: {image}")
        container = FakeSDKContainer(container_id=f"c{len(self.created):011d}")
        self.created.append((image, kwargs))
        return container

    def list(self, all=False, filters=None):
        self.list_calls.append({"all": all, "filters": filters})
        return [FakeSDKContainer()]


class FakeAPI:
    def __init__(self):
        self.exec_create_calls = []
        self.exec_start_calls = []
        self.sock = object()

    def exec_create(self, container_id, cmd, **kwargs):
        self.exec_create_calls.append((container_id, cmd, kwargs))
        return {"Id": "exec-1"}

    def exec_start(self, exec_id, **kwargs):
        self.exec_start_calls.append((exec_id, kwargs))
        return self.sock

    def exec_inspect(self, exec_id):
        return {"ID": exec_id, "Running": False, "ExitCode": 0}


class FakeDockerClient:
    def __init__(self, present=(), ping_error=None, pull_error=None, create_error=None):
        self.images = FakeImages(present, pull_error)
        self.containers = FakeContainers(self.images, create_error)
        self.api = FakeAPI()
        self.ping_error = ping_error
        self.closed = False

    def ping(self):
        if self.ping_error is not None:
            raise self.ping_error
        return True

    def version(self):
        return {"Version": "24.0.7"}

    def info(self):
        return {"Containers": 3, "Images": 12, "MemTotal": 8 * 1024**3, "NCPU": 4, "ServerVersion": "24.0.7"}

    def close(self):
        self.closed = True


def _backend(client, **config):
    return DockerBackend(DockerConfig(**config), client_factory=lambda timeout: client)


def test_check_health_reports_server_version_and_closes_client():
    client = FakeDockerClient()

    healthy, detail = _backend(client).check_health()

    assert healthy is True
    assert "24.0.7" in detail
    assert client.closed is True


def test_check_health_when_client_cannot_be_built():
    def _factory(timeout):
        raise DockerException("Error while fetching server API version")

    healthy, detail = DockerBackend(client_factory=_factory).check_health()

    assert healthy is False
    assert detail.startswith("docker client unavailable")


def test_check_health_when_ping_fails():
    client = FakeDockerClient(ping_error=RequestsConnectionError("connection refused"))

    backend = _backend(client)

    assert backend.check_health()[0] is False
    assert backend.ping() is False
    assert client.closed is True


def test_client_construction_failure_is_a_connection_error():
    def _factory(timeout):
        raise DockerException("Error while fetching server API version")

    backend = DockerBackend(client_factory=_factory)

    with pytest.raises(DaemonUnreachableError) as exc_info:
        backend.create_container("python:3.11-alpine")
    assert isinstance(exc_info.value, CONNECTION_ERRORS)


def test_api_errors_are_not_connection_errors():
    assert not isinstance(_api_error(400), CONNECTION_ERRORS)
    assert not isinstance(ImageNotFound("missing"), CONNECTION_ERRORS)


def test_info_is_summarised():
    info = _backend(FakeDockerClient()).info()

    assert info == {
        "containers": 3,
        "images": 12,
        "memoryLimit": 8 * 1024**3,
        "cpus": 4,
        "serverVersion": "24.0.7",
    }


def test_create_container_pulls_missing_image_once():
    client = FakeDockerClient()

    container = _backend(client).create_container("gcc:12", network_mode="none")

    assert client.images.pulled == ["gcc:12"]
    assert client.containers.created == [("gcc:12", {"network_mode": "none"})]
    assert container.id


def test_create_container_without_auto_pull_reraises():
    client = FakeDockerClient()

    with pytest.raises(ImageNotFound):
        _backend(client, auto_pull=False).create_container("gcc:12")
    assert client.images.pulled == []


def test_failed_pull_surfaces_as_missing_image():
    client = FakeDockerClient(pull_error=_api_error(500, "toomanyrequests"))

    with pytest.raises(ImageNotFound) as exc_info:
        _backend(client).create_container("gcc:12")
    assert "could not pull gcc:12" in str(exc_info.value.args[0])


def test_rejected_container_definition_propagates():
    client = FakeDockerClient(present={"python:3.11-alpine"}, create_error=_api_error(400, "invalid cap_add value"))

    with pytest.raises(APIError):
        _backend(client).create_container("python:3.11-alpine")
    assert client.images.pulled == []


def test_has_image():
    backend = _backend(FakeDockerClient(present={"node:18-alpine"}))

    assert backend.has_image("node:18-alpine") is True
    assert backend.has_image("gcc:12") is False


def test_put_archive_rejection_raises():
    container = FakeSDKContainer(accept_archive=False)

    with pytest.raises(APIError):
        _backend(FakeDockerClient()).put_archive(container, "/app", b"tar")
    assert container.archives == [("/app", b"tar")]


@pytest.mark.parametrize("error", [NotFound("No such container"), _api_error(409, "is not running")])
def test_kill_ignores_containers_that_already_stopped(error):
    container = FakeSDKContainer()
    container.kill_error = error

    _backend(FakeDockerClient()).kill(container)


def test_kill_propagates_other_daemon_errors():
    container = FakeSDKContainer()
    container.kill_error = _api_error(500, "server error")

    with pytest.raises(APIError):
        _backend(FakeDockerClient()).kill(container)


def test_remove_forces_and_ignores_missing_container():
    container = FakeSDKContainer()
    container.remove_error = NotFound("No such container")

    _backend(FakeDockerClient()).remove(container)

    assert container.removed_with == {"force": True}


def test_state_reloads_container():
    container = FakeSDKContainer()
    container.attrs["State"]["OOMKilled"] = True

    state = _backend(FakeDockerClient()).state(container)

    assert container.reloaded is True
    assert state["OOMKilled"] is True


def test_labelled_containers_filters_by_label():
    client = FakeDockerClient()

    containers = _backend(client).labelled_containers("codebox.execution_id")

    assert len(containers) == 1
    assert client.containers.list_calls == [{"all": True, "filters": {"label": "codebox.execution_id"}}]


def test_exec_start_passes_process_settings():
    client = FakeDockerClient()
    container = FakeSDKContainer()

    exec_id, sock = _backend(client).exec_start(
        container,
        ["python", "-u", "main.py"],
        workdir="/app",
        user="nobody",
        environment={"HOME": "/app"},
    )

    assert exec_id == "exec-1"
    assert sock is client.api.sock
    container_id, cmd, options = client.api.exec_create_calls[0]
    assert container_id == container.id
    assert cmd == ["python", "-u", "main.py"]
    assert options == {
        "stdout": True,
        "stderr": True,
        "stdin": False,
        "tty": False,
        "user": "nobody",
        "environment": {"HOME": "/app"},
        "workdir": "/app",
    }
    assert client.api.exec_start_calls == [("exec-1", {"tty": False, "socket": True})]


def test_exec_start_without_user_runs_as_image_default():
    client = FakeDockerClient()

    _backend(client).exec_start(FakeSDKContainer(), ["true"], workdir="/app")

    assert client.api.exec_create_calls[0][2]["user"] == ""


def test_read_stream_reads_socket_until_eof():
    reader, writer = socket.socketpair()
    writer.sendall(encode_frame(STDOUT, b"hello\n") + encode_frame(STDERR, b"warn\n"))
    writer.close()
    sink = bytearray()

    raw = DockerBackend.read_stream(reader, sink)

    assert bytes(sink) == raw
    output = demux(raw)
    assert output.stdout == "hello"
    assert output.stderr == "warn"
    assert reader.fileno() == -1


def test_read_stream_keeps_partial_data_when_connection_drops(monkeypatch):
    chunks = [encode_frame(STDOUT, b"partial\n")]

    def _read(sock, n):
        if chunks:
            return chunks.pop(0)
        raise ConnectionResetError("connection reset by peer")

    monkeypatch.setattr(backend_module, "socket_read", _read)
    sock = SimpleNamespace(closed=False)
    sock.close = lambda: setattr(sock, "closed", True)

    raw = DockerBackend.read_stream(sock)

    assert demux(raw).stdout == "partial"
    assert sock.closed is True


def test_close_releases_client():
    client = FakeDockerClient()
    backend = _backend(client)
    backend.info()

    backend.close()

    assert client.closed is True
