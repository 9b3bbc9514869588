"""
Sandbox orchestrator: one ephemeral, locked-down container per request.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from docker.errors import APIError, ImageNotFound
from docker.types import Ulimit

from ..core.config import SandboxConfig
from ..core.exceptions import BackendUnavailableError, InternalExecutionError
from ..core.logging import get_logger
from ..languages.registry import (
    LanguageDescriptor,
    ResourceLimits,
    render_token,
    runnable_languages,
    token_mapping,
)
from .backend import CONNECTION_ERRORS, DOCKER_ERRORS, DockerBackend

logger = get_logger(__name__)

LABEL_EXECUTION = "codebox.execution_id"
LABEL_CALLER = "codebox.caller_id"

SANDBOX_BINARY = "./main"


@dataclass(slots=True)
class SandboxHandle:
    """Reference to a provisioned sandbox."""

    execution_id: str
    container: Any
    container_id: str
    workdir: str
    user: str | None = None
    environment: dict[str, str] = field(default_factory=dict)
    state: str = "running"  # running | torn_down

    @property
    def torn_down(self) -> bool:
        return self.state == "torn_down"


class SandboxOrchestrator:
    """Provisions and tears down isolated containers through a DockerBackend."""

    def __init__(self, backend: DockerBackend, config: SandboxConfig | None = None):
        self.backend = backend
        self.config = config or SandboxConfig()

    def is_available(self) -> bool:
        """Liveness probe. Never raises."""
        return self.backend.ping()

    def info(self) -> dict[str, Any]:
        return self.backend.info()

    def environment(self, descriptor: LanguageDescriptor) -> dict[str, str]:
        workdir = self.config.docker.workdir
        mapping = token_mapping(descriptor, workdir, binary=SANDBOX_BINARY)
        env = {"HOME": workdir, "TMPDIR": workdir}
        for key, value in descriptor.env:
            env[key] = render_token(value, mapping)
        return env

    def container_options(
        self,
        *,
        execution_id: str,
        descriptor: LanguageDescriptor,
        limits: ResourceLimits,
        timeout_ms: int,
        caller_id: str | None = None,
    ) -> dict[str, Any]:
        """Build the ``containers.create`` keyword arguments for one sandbox."""
        docker_cfg = self.config.docker
        # The entry process only keeps the container alive; it expires on its
        # own if teardown never happens.
        lifetime = math.ceil(timeout_ms / 1000) + docker_cfg.idle_grace_seconds
        capabilities = sorted(
            {str(cap).strip().upper().removeprefix("CAP_") for cap in descriptor.capabilities}
            | {str(cap).strip().upper().removeprefix("CAP_") for cap in docker_cfg.extra_capabilities}
        )

        options: dict[str, Any] = {
            "entrypoint": ["sleep", str(lifetime)],
            "command": None,
            "working_dir": docker_cfg.workdir,
            "environment": self.environment(descriptor),
            "network_mode": "none",
            "mem_limit": limits.memory_bytes,
            "memswap_limit": limits.memory_bytes,
            "cpu_period": docker_cfg.cpu_period,
            "cpu_quota": limits.cpu_quota,
            "pids_limit": limits.pids,
            "cap_drop": ["ALL"],
            "security_opt": ["no-new-privileges:true"],
            "ulimits": [
                Ulimit(name="nofile", soft=limits.nofile, hard=limits.nofile),
                Ulimit(name="nproc", soft=limits.nproc, hard=limits.nproc),
            ],
            "labels": {
                LABEL_EXECUTION: execution_id,
                LABEL_CALLER: caller_id or "anonymous",
            },
            "stdin_open": False,
            "tty": False,
        }
        if capabilities:
            options["cap_add"] = capabilities
        if docker_cfg.run_as_user:
            options["user"] = docker_cfg.run_as_user
        if docker_cfg.read_only_rootfs:
            options["read_only"] = True
            options["tmpfs"] = {
                docker_cfg.workdir: "rw,exec,mode=1777,size=64m",
                "/tmp": "rw,mode=1777,size=16m",
            }
        return options

    def create(
        self,
        *,
        execution_id: str,
        descriptor: LanguageDescriptor,
        archive: bytes,
        limits: ResourceLimits,
        timeout_ms: int,
        caller_id: str | None = None,
    ) -> SandboxHandle:
        """
        Provision a running sandbox holding the packaged sources.

        Raises:
            BackendUnavailableError: The daemon could not be reached or the
                image is missing and could not be pulled. Nothing is left
                allocated in that case.
            InternalExecutionError: The daemon rejected the request.
        """
        options = self.container_options(
            execution_id=execution_id,
            descriptor=descriptor,
            limits=limits,
            timeout_ms=timeout_ms,
            caller_id=caller_id,
        )
        try:
            container = self.backend.create_container(descriptor.image, **options)
        except ImageNotFound as exc:
            logger.warning("[%s] image %s unavailable: %s", execution_id, descriptor.image, exc)
            raise BackendUnavailableError(f"image {descriptor.image} is not available") from exc
        except APIError as exc:
            logger.error("[%s] daemon rejected sandbox creation: %s", execution_id, exc)
            raise InternalExecutionError() from exc
        except CONNECTION_ERRORS as exc:
            logger.warning("[%s] sandbox creation failed: %s", execution_id, exc)
            raise BackendUnavailableError(f"could not create sandbox: {exc}") from exc

        try:
            self.backend.start(container)
            self.backend.put_archive(container, self.config.docker.workdir, archive)
        except APIError as exc:
            logger.error("[%s] daemon rejected sandbox provisioning: %s", execution_id, exc)
            self._discard(container, execution_id)
            raise InternalExecutionError() from exc
        except CONNECTION_ERRORS as exc:
            logger.warning("[%s] sandbox provisioning failed: %s", execution_id, exc)
            self._discard(container, execution_id)
            raise BackendUnavailableError(f"could not provision sandbox: {exc}") from exc

        logger.debug(
            "[%s] provisioned %s from %s",
            execution_id,
            container.id[:12],
            descriptor.image,
        )
        return SandboxHandle(
            execution_id=execution_id,
            container=container,
            container_id=container.id,
            workdir=self.config.docker.workdir,
            user=self.config.docker.run_as_user,
            environment=options["environment"],
        )

    def kill(self, handle: SandboxHandle) -> None:
        """Forcibly stop everything running in the sandbox."""
        logger.debug("[%s] killing %s", handle.execution_id, handle.container_id[:12])
        self.backend.kill(handle.container)

    def teardown(self, handle: SandboxHandle) -> None:
        """Remove the sandbox. Repeated calls are no-ops."""
        if handle.torn_down:
            return
        handle.state = "torn_down"
        self.backend.remove(handle.container)
        logger.debug("[%s] removed %s", handle.execution_id, handle.container_id[:12])

    def _discard(self, container: Any, execution_id: str) -> None:
        try:
            self.backend.remove(container)
        except DOCKER_ERRORS:
            logger.exception("[%s] could not discard partially provisioned sandbox", execution_id)

    def sweep_orphans(self, include_running: bool = False) -> list[str]:
        """
        Remove labelled containers left behind by crashed processes.

        Running containers may belong to in-flight requests of another engine,
        so they are only removed when ``include_running`` is set. Idle
        containers stop on their own once their lifetime runs out.
        """
        removed: list[str] = []
        for container in self.backend.labelled_containers(LABEL_EXECUTION):
            if container.status == "running" and not include_running:
                continue
            try:
                self.backend.remove(container)
            except DOCKER_ERRORS:
                logger.warning("could not remove orphan %s", container.id[:12], exc_info=True)
                continue
            removed.append(container.id)
        if removed:
            logger.info("Removed %d orphaned sandbox(es)", len(removed))
        return removed

    def pull_images(self) -> dict[str, tuple[bool, str]]:
        """Pull every image used by a runnable language. Returns image -> (ok, detail)."""
        results: dict[str, tuple[bool, str]] = {}
        for descriptor in runnable_languages():
            image = descriptor.image
            if not image or image in results:
                continue
            try:
                self.backend.pull(image)
            except DOCKER_ERRORS as exc:
                logger.warning("Failed to pull %s: %s", image, exc)
                results[image] = (False, str(exc))
            else:
                results[image] = (True, "pulled")
        return results
