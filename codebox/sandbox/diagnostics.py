"""
Environment diagnostics for the sandbox and the host fallback.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass

from ..core.config import EngineConfig
from ..languages.registry import runnable_languages
from .backend import DOCKER_ERRORS, DockerBackend


@dataclass(slots=True)
class DoctorCheck:
    """One diagnostic finding."""

    name: str
    status: str  # pass | warn | fail
    detail: str
    recommendation: str | None = None


def run_doctor(config: EngineConfig | None = None, backend: DockerBackend | None = None) -> list[DoctorCheck]:
    """Run detailed diagnostics for sandbox and fallback setup."""
    config = config or EngineConfig()
    checks: list[DoctorCheck] = []
    backend_name = config.sandbox.backend

    checks.append(
        DoctorCheck(
            name="configured_backend",
            status="pass" if backend_name == "docker" else "warn",
            detail=f"Sandbox backend set to '{backend_name}'.",
            recommendation=None
            if backend_name == "docker"
            else "Set sandbox.backend=docker to run code isolated.",
        )
    )

    if backend_name == "docker":
        checks.extend(_docker_checks(config, backend or DockerBackend(config.sandbox.docker)))

    checks.extend(_fallback_checks(config))
    return checks


def _docker_checks(config: EngineConfig, backend: DockerBackend) -> list[DoctorCheck]:
    checks: list[DoctorCheck] = []
    docker_cfg = config.sandbox.docker

    healthy, detail = backend.check_health()
    checks.append(
        DoctorCheck(
            name="docker_daemon",
            status="pass" if healthy else "fail",
            detail=detail,
            recommendation=None if healthy else "Start Docker or set sandbox.docker.base_url.",
        )
    )

    user = (docker_cfg.run_as_user or "").strip()
    if user and user not in {"root", "0", "0:0"}:
        checks.append(DoctorCheck(name="sandbox_user", status="pass", detail=f"Code runs as '{user}'."))
    else:
        checks.append(
            DoctorCheck(
                name="sandbox_user",
                status="warn",
                detail="Code runs as root inside the sandbox.",
                recommendation="Set sandbox.docker.run_as_user to an unprivileged user such as 'nobody'.",
            )
        )

    if docker_cfg.extra_capabilities:
        checks.append(
            DoctorCheck(
                name="capabilities",
                status="warn",
                detail=f"Extra capabilities granted: {', '.join(docker_cfg.extra_capabilities)}",
                recommendation="Remove sandbox.docker.extra_capabilities unless a toolchain needs them.",
            )
        )
    else:
        checks.append(DoctorCheck(name="capabilities", status="pass", detail="All capabilities dropped."))

    if not healthy:
        return checks

    images = sorted({d.image for d in runnable_languages() if d.image})
    try:
        missing = [image for image in images if not backend.has_image(image)]
    except DOCKER_ERRORS as exc:
        checks.append(DoctorCheck(name="images", status="warn", detail=f"Could not list images: {exc}"))
        return checks

    if not missing:
        checks.append(DoctorCheck(name="images", status="pass", detail=f"All {len(images)} images present."))
    else:
        checks.append(
            DoctorCheck(
                name="images",
                status="warn" if docker_cfg.auto_pull else "fail",
                detail=f"{len(missing)} of {len(images)} images missing locally.",
                recommendation="Run `codebox pull-images` to avoid first-run pull latency.",
            )
        )
    return checks


def _fallback_checks(config: EngineConfig) -> list[DoctorCheck]:
    checks: list[DoctorCheck] = []
    fallback = config.fallback

    if not fallback.enabled:
        checks.append(
            DoctorCheck(
                name="fallback",
                status="warn",
                detail="Host fallback is disabled; requests fail when the sandbox is unavailable.",
            )
        )
        return checks

    temp_root = fallback.resolve_temp_root()
    probe = temp_root if temp_root.exists() else temp_root.parent
    if os.access(probe, os.W_OK):
        checks.append(DoctorCheck(name="temp_write_access", status="pass", detail=f"Writable temp root: {temp_root}"))
    else:
        checks.append(
            DoctorCheck(
                name="temp_write_access",
                status="fail",
                detail=f"Temp root is not writable: {temp_root}",
                recommendation="Fix filesystem permissions or set fallback.temp_root.",
            )
        )

    allowlist = list(fallback.env_allowlist or [])
    checks.append(
        DoctorCheck(
            name="env_allowlist",
            status="pass" if len(allowlist) <= 6 else "warn",
            detail=f"{len(allowlist)} host env var(s) allowed.",
            recommendation=None if len(allowlist) <= 6 else "Keep env_allowlist minimal to reduce secret exposure.",
        )
    )

    ready = [
        d.id
        for d in runnable_languages()
        if d.local is not None and all(shutil.which(tool) for tool in d.local.tools)
    ]
    checks.append(
        DoctorCheck(
            name="host_toolchains",
            status="pass" if ready else "warn",
            detail=f"Host can run {len(ready)} language(s): {', '.join(ready) or 'none'}",
            recommendation=None if ready else "Install interpreters on the host for degraded-mode execution.",
        )
    )
    return checks
