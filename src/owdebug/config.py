"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in owdebug.toml. The OpenWhisk credential may live in
.env or in the ``wsk`` CLI's ~/.wskprops. Environment variables override the
files using the ``OWDEBUG_`` prefix and ``__`` as the nested delimiter
(e.g. ``OWDEBUG_RELAY__MAX_GIVE_UPS=3``).

Priority (highest wins): init args > env vars > .env > owdebug.toml > ~/.wskprops

Usage::

    from owdebug.config import get_settings

    s = get_settings()
    print(s.action.name)
    print(s.container.port)
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path
from typing import Any

from pydantic import BaseModel, SecretStr, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from owdebug.types import BuildConfig

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in owdebug.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models; reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class ActionConfig(_StrictModel):
    name: str = ""
    source_path: str | None = None  # None → run the deployed code locally
    project_root: str | None = None  # None → current working directory
    kind: str | None = None  # None → inferred from the source suffix or remote action
    invoke_params: dict[str, Any] | None = None  # trigger the action after each reload
    binary: bool = False  # always package as an archive


class BuildSectionConfig(_StrictModel):
    command: str | None = None
    artifact_path: str | None = None  # relative to project root
    timeout: float = 300.0  # seconds

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("build timeout must be positive")
        return v


class ContainerConfig(_StrictModel):
    image: str | None = None  # overrides the per-kind image
    images: dict[str, str] = {
        "nodejs": "openwhisk/action-nodejs-v18:latest",
        "python": "openwhisk/action-python-v3.11:latest",
    }
    port: int = 9229  # debugger port published on the host
    debug_ports: dict[str, int] = {"nodejs": 9229, "python": 5678}
    host_ip: str = "127.0.0.1"  # DOCKER_HOST_IP overrides
    mount_path: str = "/owdebug"
    staging_dir: str | None = None  # None → fresh temp dir per session
    invoke_timeout: float = 60.0
    start_timeout: float = 30.0
    passthrough_env: dict[str, str] = {"DEBUG": "DEBUG", "WSK_NODE_DEBUG": "NODE_DEBUG"}
    runtime: str | None = None  # "docker" | None


class RelayConfig(_StrictModel):
    claim_timeout: float = 65.0  # slightly above the stub's own long-poll window
    give_up_backoff: float = 2.0
    error_backoff: float = 1.0
    max_give_ups: int = 5
    report_attempts: int = 3
    agent_path: str | None = None  # relay stub source; None → already deployed

    @field_validator("max_give_ups", "report_attempts")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        return max(1, v)


class WatchConfig(_StrictModel):
    debounce: float = 0.2  # seconds
    ignore: list[str] = []  # extra paths (relative to project root) to ignore


class OpenWhiskConfig(_StrictModel):
    api_host: str = ""
    namespace: str = "_"
    auth: SecretStr | None = None  # "<uuid>:<key>"
    insecure: bool = False  # skip TLS verification (local deployments)

    @field_validator("api_host")
    @classmethod
    def normalize_host(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if v and "://" not in v:
            v = f"https://{v}"
        return v


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# ~/.wskprops source
# ---------------------------------------------------------------------------

_WSKPROPS_KEYS = {"APIHOST": "api_host", "AUTH": "auth", "NAMESPACE": "namespace"}


def read_wskprops(path: Path) -> dict[str, str]:
    """Parse the ``KEY=value`` file written by the ``wsk`` CLI."""
    values: dict[str, str] = {}
    try:
        text = path.read_text()
    except OSError:
        return values
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        field = _WSKPROPS_KEYS.get(key.strip().upper())
        if field:
            values[field] = value.strip()
    return values


class WskPropsSettingsSource(PydanticBaseSettingsSource):
    """Lowest-priority source feeding the [openwhisk] section from ~/.wskprops."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        path = Path(os.environ.get("WSK_CONFIG_FILE") or Path.home() / ".wskprops")
        values = read_wskprops(path)
        return {"openwhisk": values} if values else {}


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="owdebug.toml",
        env_file=".env",
        env_prefix="OWDEBUG_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    action: ActionConfig = ActionConfig()
    build: BuildSectionConfig = BuildSectionConfig()
    container: ContainerConfig = ContainerConfig()
    relay: RelayConfig = RelayConfig()
    watch: WatchConfig = WatchConfig()
    openwhisk: OpenWhiskConfig = OpenWhiskConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > owdebug.toml > file secrets > ~/.wskprops."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
            WskPropsSettingsSource(settings_cls),
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        if self.action.project_root:
            return Path(self.action.project_root).expanduser().resolve()
        return Path.cwd().resolve()

    @property
    def build_config(self) -> BuildConfig | None:
        """The build step, or None when the entry file is used directly."""
        if not self.build.command:
            return None
        artifact = self.build.artifact_path or self.action.source_path
        if not artifact:
            raise ValueError("build.artifact_path is required when build.command is set")
        return BuildConfig(
            command=self.build.command,
            artifact_path=artifact,
            timeout=self.build.timeout,
        )

    @property
    def host_ip(self) -> str:
        """Address used to reach published sandbox ports (DOCKER_HOST_IP wins)."""
        return os.environ.get("DOCKER_HOST_IP") or self.container.host_ip


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
