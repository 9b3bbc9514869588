"""
Thin client over the Docker Engine API used as the isolation backend.

Only the calls the sandbox needs are exposed. Everything returns plain
values or SDK container objects; policy decisions live in the orchestrator.
"""

from __future__ import annotations

from typing import Any, Callable

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.utils.socket import read as socket_read
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import RequestException, Timeout

from ..core.config import DockerConfig
from ..core.logging import get_logger

logger = get_logger(__name__)

# Transport failures: the daemon could not be reached at all. APIError (the
# daemon answered and said no) derives from requests' HTTPError and is
# not covered by any of these.
CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    RequestsConnectionError,
    Timeout,
    ConnectionError,
    TimeoutError,
)

# Anything the SDK or its transport can raise. Used where a failure is only
# logged, never classified.
DOCKER_ERRORS: tuple[type[BaseException], ...] = (DockerException, RequestException, OSError)


class DaemonUnreachableError(ConnectionError):
    """The Docker client could not be constructed against the configured endpoint."""


_READ_CHUNK = 64 * 1024


class DockerBackend:
    """Docker SDK wrapper providing liveness and container control."""

    name = "docker"

    def __init__(
        self,
        config: DockerConfig | None = None,
        client_factory: Callable[[float], Any] | None = None,
    ):
        self.config = config or DockerConfig()
        self._client_factory = client_factory or self._default_client
        self._client: Any | None = None

    def _default_client(self, timeout: float) -> Any:
        if self.config.base_url:
            return docker.DockerClient(base_url=self.config.base_url, timeout=int(max(1, timeout)))
        return docker.from_env(timeout=int(max(1, timeout)))

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = self._client_factory(self.config.client_timeout_seconds)
            except DockerException as exc:
                # docker.from_env() probes the API version, so an absent
                # daemon surfaces here rather than on the first call.
                raise DaemonUnreachableError(str(exc)) from exc
        return self._client

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except DOCKER_ERRORS:
                logger.debug("failed to close docker client", exc_info=True)
            self._client = None

    # Liveness

    def check_health(self) -> tuple[bool, str]:
        """Return (healthy, detail) for daemon availability."""
        try:
            probe = self._client_factory(self.config.ping_timeout_seconds)
        except DOCKER_ERRORS as exc:
            return False, f"docker client unavailable: {exc}"

        try:
            probe.ping()
            version = probe.version().get("Version", "unknown")
        except DOCKER_ERRORS as exc:
            return False, f"docker daemon unavailable: {exc}"
        finally:
            try:
                probe.close()
            except DOCKER_ERRORS:
                pass
        return True, f"docker daemon ready (server {version})"

    def ping(self) -> bool:
        healthy, detail = self.check_health()
        if not healthy:
            logger.debug("docker ping failed: %s", detail)
        return healthy

    def info(self) -> dict[str, Any]:
        info = self.client.info()
        return {
            "containers": info.get("Containers"),
            "images": info.get("Images"),
            "memoryLimit": info.get("MemTotal"),
            "cpus": info.get("NCPU"),
            "serverVersion": info.get("ServerVersion"),
        }

    # Images

    def has_image(self, image: str) -> bool:
        try:
            self.client.images.get(image)
            return True
        except ImageNotFound:
            return False

    def pull(self, image: str) -> None:
        logger.info("Pulling %s", image)
        self.client.images.pull(image)

    # Containers

    def create_container(self, image: str, **kwargs: Any) -> Any:
        """
        Create (but do not start) a container, pulling the image once if missing.

        Raises:
            ImageNotFound: The image is absent and could not be pulled.
            APIError: The daemon rejected the container definition.
        """
        try:
            return self.client.containers.create(image, **kwargs)
        except ImageNotFound:
            if not self.config.auto_pull:
                raise
        try:
            self.pull(image)
        except APIError as exc:
            raise ImageNotFound(f"could not pull {image}: {exc}") from exc
        return self.client.containers.create(image, **kwargs)

    def put_archive(self, container: Any, path: str, data: bytes) -> None:
        if not container.put_archive(path, data):
            raise APIError(f"put_archive into {path} was rejected")

    def start(self, container: Any) -> None:
        container.start()

    def kill(self, container: Any) -> None:
        """SIGKILL the container. A container that already exited is not an error."""
        try:
            container.kill()
        except NotFound:
            pass
        except APIError as exc:
            if getattr(exc, "status_code", None) != 409:
                raise

    def remove(self, container: Any) -> None:
        try:
            container.remove(force=True)
        except NotFound:
            pass

    def state(self, container: Any) -> dict[str, Any]:
        container.reload()
        return dict(container.attrs.get("State") or {})

    def labelled_containers(self, label: str) -> list[Any]:
        return list(self.client.containers.list(all=True, filters={"label": label}))

    # Processes inside a running container

    def exec_start(
        self,
        container: Any,
        cmd: list[str],
        *,
        workdir: str,
        user: str | None = None,
        environment: dict[str, str] | None = None,
    ) -> tuple[str, Any]:
        """Start a process in ``container`` and return (exec id, raw attach socket)."""
        api = self.client.api
        created = api.exec_create(
            container.id,
            cmd,
            stdout=True,
            stderr=True,
            stdin=False,
            tty=False,
            user=user or "",
            environment=environment,
            workdir=workdir,
        )
        exec_id = created["Id"]
        sock = api.exec_start(exec_id, tty=False, socket=True)
        return exec_id, sock

    def exec_inspect(self, exec_id: str) -> dict[str, Any]:
        return self.client.api.exec_inspect(exec_id)

    @staticmethod
    def read_stream(sock: Any, sink: bytearray | None = None) -> bytes:
        """
        Read the multiplexed attach stream until the process closes it.

        Bytes are appended to ``sink`` as they arrive, so a caller that stops
        waiting can still collect what was read so far.
        """
        chunks = bytearray() if sink is None else sink
        try:
            while True:
                chunk = socket_read(sock, _READ_CHUNK)
                if not chunk:
                    break
                chunks.extend(chunk)
        except OSError:
            # Connection torn down by a kill; keep what arrived.
            logger.debug("attach stream closed early", exc_info=True)
        finally:
            close = getattr(sock, "close", None)
            if callable(close):
                close()
        return bytes(chunks)
