"""
Configuration management for codebox.
"""

import json
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError

SUPPORTED_BACKENDS = {"docker", "none"}

_DANGEROUS_CAPABILITIES = {
    "ALL",
    "SYS_ADMIN",
    "SYS_PTRACE",
    "SYS_MODULE",
    "SYS_RAWIO",
    "NET_ADMIN",
    "NET_RAW",
    "DAC_READ_SEARCH",
}


@dataclass
class DockerConfig:
    """Docker-specific sandbox configuration."""

    base_url: str | None = None  # None -> DOCKER_HOST / default socket
    client_timeout_seconds: int = 60
    ping_timeout_seconds: float = 2.5
    run_as_user: str | None = "nobody"
    workdir: str = "/app"
    read_only_rootfs: bool = False
    auto_pull: bool = True
    idle_grace_seconds: int = 30
    cpu_period: int = 100_000
    extra_capabilities: list[str] = field(default_factory=list)


@dataclass
class SandboxConfig:
    """Isolation backend configuration."""

    backend: str = "docker"  # docker | none
    default_timeout_ms: int | None = None  # None -> per-language default
    max_timeout_ms: int = 60_000
    max_output_chars: int = 65_536
    docker: DockerConfig = field(default_factory=DockerConfig)


@dataclass
class FallbackConfig:
    """Host-local fallback executor configuration."""

    enabled: bool = True
    temp_root: str | None = None  # None -> <system temp>/codebox
    env_allowlist: list[str] = field(
        default_factory=lambda: ["PATH", "LANG", "LC_ALL", "JAVA_HOME", "GOROOT", "DOTNET_ROOT"]
    )

    def resolve_temp_root(self) -> Path:
        if self.temp_root:
            return Path(self.temp_root).expanduser()
        return Path(tempfile.gettempdir()) / "codebox"


@dataclass
class LimitsConfig:
    """Site-wide overrides applied on top of per-language resource limits."""

    memory_mb: int | None = None
    cpu_quota: int | None = None
    pids: int | None = None
    nofile: int | None = None
    nproc: int | None = None


@dataclass
class EngineConfig:
    """Top-level engine configuration."""

    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    def validate(self) -> "EngineConfig":
        """Reject configurations that would weaken the sandbox or cannot work."""
        backend = (self.sandbox.backend or "docker").strip().lower()
        if backend not in SUPPORTED_BACKENDS:
            raise ConfigurationError(
                f"Unsupported sandbox backend '{self.sandbox.backend}'. "
                f"Supported: {', '.join(sorted(SUPPORTED_BACKENDS))}"
            )
        self.sandbox.backend = backend

        if self.sandbox.max_timeout_ms <= 0:
            raise ConfigurationError("sandbox.max_timeout_ms must be positive")
        if self.sandbox.default_timeout_ms is not None and self.sandbox.default_timeout_ms <= 0:
            raise ConfigurationError("sandbox.default_timeout_ms must be positive")

        for cap in self.sandbox.docker.extra_capabilities:
            normalized = str(cap).strip().upper().removeprefix("CAP_")
            if normalized in _DANGEROUS_CAPABILITIES:
                raise ConfigurationError(
                    f"Capability '{cap}' is blocked by sandbox policy."
                )
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EngineConfig":
        """Build a config from plain nested dicts, ignoring unknown keys."""
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        sandbox_data = _section(data, "sandbox")
        docker_data = _section(sandbox_data, "docker")
        sandbox_data["docker"] = DockerConfig(**_known(DockerConfig, docker_data))

        config = cls(
            sandbox=SandboxConfig(**_known(SandboxConfig, sandbox_data)),
            fallback=FallbackConfig(**_known(FallbackConfig, _section(data, "fallback"))),
            limits=LimitsConfig(**_known(LimitsConfig, _section(data, "limits"))),
        )
        return config.validate()

    @classmethod
    def load_from_file(cls, config_path: Path) -> "EngineConfig":
        """Load configuration from a YAML or JSON file."""
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path) as f:
                if config_path.suffix.lower() == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

        try:
            return cls.from_dict(data)
        except TypeError as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

    def save_to_file(self, config_path: Path) -> None:
        """Save configuration to file."""
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            data = asdict(self)
            with open(config_path, "w") as f:
                if config_path.suffix.lower() == ".json":
                    json.dump(data, f, indent=2)
                else:
                    yaml.dump(data, f, default_flow_style=False, indent=2)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration: {e}") from e


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        return {}
    return value.copy()


def _known(config_cls: type, data: dict[str, Any]) -> dict[str, Any]:
    valid = set(config_cls.__dataclass_fields__)
    return {k: v for k, v in data.items() if k in valid}


class ConfigManager:
    """Locates and caches the engine configuration."""

    CONFIG_FILENAME = "codebox.yaml"
    ENV_VAR = "CODEBOX_CONFIG"

    def __init__(self, project_root: Path | None = None):
        self.project_root = project_root or Path.cwd()
        self.config_path = self._resolve_config_path()
        self._config: EngineConfig | None = None

    def _resolve_config_path(self) -> Path:
        override = os.getenv(self.ENV_VAR)
        if override:
            return Path(override).expanduser()
        return self.project_root / self.CONFIG_FILENAME

    @property
    def config(self) -> EngineConfig:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            self.load_config()
        return self._config

    def load_config(self) -> EngineConfig:
        """Load configuration from file, or defaults when none exists."""
        self.config_path = self._resolve_config_path()
        if self.config_path.exists():
            self._config = EngineConfig.load_from_file(self.config_path)
        else:
            self._config = EngineConfig().validate()
        return self._config

    def save_config(self) -> None:
        if self._config is None:
            raise ConfigurationError("No configuration to save")
        self._config.save_to_file(self.config_path)
