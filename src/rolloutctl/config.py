"""Configuration management for rolloutctl using Pydantic."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from rolloutctl.core.exceptions import ConfigError
from rolloutctl.core.logging import LogLevel
from rolloutctl.core.output import OutputFormat
from rolloutctl.core.utils import get_home_dir, merge_dicts


class EnvSettings(BaseSettings):
    """Process-level settings read from ``ROLLOUT_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="ROLLOUT_", extra="ignore")

    state_dir: str | None = None
    profile: str | None = None
    config: str | None = None


class StateConfig(BaseModel):
    """Where targets, records, plans and audit logs live."""

    state_dir: str | None = None

    def get_state_dir(self) -> Path:
        """Get state directory from environment or config."""
        value = EnvSettings().state_dir or self.state_dir
        if value:
            return Path(value).expanduser()
        return get_home_dir() / "state"


class ArtifactsConfig(BaseModel):
    """Artifact store configuration."""

    root: str | None = None

    def get_root(self) -> Path:
        """Get artifact store root from config or environment."""
        value = os.environ.get("ROLLOUT_ARTIFACTS_ROOT") or self.root
        if value:
            return Path(value).expanduser()
        return get_home_dir() / "artifacts"


class ProbeConfig(BaseModel):
    """Health probe configuration."""

    default_path: str = "/health"
    timeout: float = 10.0
    verify_tls: bool = True
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v


class InstallConfig(BaseModel):
    """Install action configuration."""

    command: str | None = None
    workdir: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    timeout: float = 600.0

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v

    def get_command(self) -> str | None:
        """Get install command template from config or environment."""
        return os.environ.get("ROLLOUT_INSTALL_COMMAND") or self.command


class SecretsConfig(BaseModel):
    """Secret store configuration."""

    prefix: str = "ROLLOUT_SECRET_"
    lease_ttl: float = 900.0

    @field_validator("lease_ttl")
    @classmethod
    def validate_ttl(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("lease_ttl must be positive")
        return v


class AlertsConfig(BaseModel):
    """Escalation alert configuration."""

    slack_webhook_url: str | None = None
    channel: str | None = None
    timeout: float = 10.0

    def get_webhook_url(self) -> str | None:
        """Get Slack webhook URL from config or environment."""
        url = self.slack_webhook_url
        if url == "from_env" or url is None:
            url = (
                os.environ.get("ROLLOUT_SLACK_WEBHOOK_URL")
                or os.environ.get("SLACK_WEBHOOK_URL")
            )
        return url


class ReconcilerConfig(BaseModel):
    """Coordinator runtime settings."""

    poll_interval: float = 2.0

    @field_validator("poll_interval")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("poll_interval must be positive")
        return v


class TimeoutDefaults(BaseModel):
    """Default external call timeouts."""

    resolve: float | None = None
    install: float | None = None
    probe: float | None = None


class PolicyDefaults(BaseModel):
    """Rollout policy values applied under every plan's own policy."""

    batch_size: int | None = None
    max_parallel: int | None = None
    failure_threshold: float | str | None = None
    canary_size: int | None = None
    attempt_budget: int | None = None
    resolve_attempts: int | None = None
    backoff_base: float | None = None
    backoff_max: float | None = None
    timeouts: TimeoutDefaults = Field(default_factory=TimeoutDefaults)

    def as_overrides(self) -> dict[str, Any]:
        """Return only the values that were set."""
        data = self.model_dump(exclude_none=True)
        if not data.get("timeouts"):
            data.pop("timeouts", None)
        return data


class ProfileConfig(BaseModel):
    """Profile configuration grouping all component settings."""

    state: StateConfig = Field(default_factory=StateConfig)
    artifacts: ArtifactsConfig = Field(default_factory=ArtifactsConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    install: InstallConfig = Field(default_factory=InstallConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    policy: PolicyDefaults = Field(default_factory=PolicyDefaults)


class GlobalConfig(BaseModel):
    """Global settings."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: str = "auto"  # auto, always, never
    verbosity: LogLevel = LogLevel.WARNING

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if v not in ("auto", "always", "never"):
            raise ValueError("color must be 'auto', 'always', or 'never'")
        return v


class RolloutConfig(BaseModel):
    """Main configuration model."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    profiles: dict[str, ProfileConfig] = Field(default_factory=lambda: {"default": ProfileConfig()})

    def get_profile(self, name: str | None = None) -> ProfileConfig:
        """Get a profile by name, defaulting to 'default'."""
        profile_name = name or "default"
        if profile_name not in self.profiles:
            raise ConfigError(f"Profile '{profile_name}' not found")
        return self.profiles[profile_name]


class ConfigLoader:
    """Loads and merges configuration from multiple sources."""

    CONFIG_FILENAMES = ["rolloutctl.yaml", "rolloutctl.yml", ".rolloutctl.yaml", ".rolloutctl.yml"]

    def __init__(self):
        self._config: RolloutConfig | None = None

    def load(self, config_file: str | Path | None = None) -> RolloutConfig:
        """Load configuration from files.

        Priority (highest to lowest):
        1. Explicitly specified config file (or ROLLOUT_CONFIG)
        2. Project config (./rolloutctl.yaml)
        3. User config (~/.rolloutctl/config.yaml)

        Args:
            config_file: Optional explicit config file path

        Returns:
            Merged configuration
        """
        configs: list[dict[str, Any]] = []

        user_config_path = get_home_dir() / "config.yaml"
        if user_config_path.exists():
            configs.append(self._load_yaml_file(user_config_path))

        project_config = self._find_project_config()
        if project_config:
            configs.append(self._load_yaml_file(project_config))

        config_file = config_file or EnvSettings().config
        if config_file:
            config_path = Path(config_file)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_file}")
            configs.append(self._load_yaml_file(config_path))

        merged: dict[str, Any] = {}
        for config in configs:
            merged = merge_dicts(merged, config)

        try:
            self._config = RolloutConfig.model_validate(merged)
        except PydanticValidationError as e:
            raise ConfigError("Invalid configuration", {"errors": str(e)})
        return self._config

    def _find_project_config(self) -> Path | None:
        """Find project config file in current or parent directories."""
        current = Path.cwd()

        while current != current.parent:
            for filename in self.CONFIG_FILENAMES:
                config_path = current / filename
                if config_path.exists():
                    return config_path
            current = current.parent

        return None

    def _load_yaml_file(self, path: Path) -> dict[str, Any]:
        """Load a YAML config file."""
        try:
            with open(path) as f:
                content = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")
        if not isinstance(content, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return content


# Global config loader instance
_config_loader = ConfigLoader()


def load_config(config_file: str | Path | None = None) -> RolloutConfig:
    """Load rolloutctl configuration.

    Args:
        config_file: Optional explicit config file path

    Returns:
        Loaded configuration
    """
    return _config_loader.load(config_file)


def get_default_config() -> RolloutConfig:
    """Get default configuration without loading from files."""
    return RolloutConfig()
