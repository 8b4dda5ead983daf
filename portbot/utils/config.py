"""Configuration management for portbot using pydantic-settings."""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Ensure .env is loaded so ${VAR} expansion and os.environ lookups work
load_dotenv(dotenv_path=Path(".") / ".env", override=False)


class SlackConfig(BaseModel):
    """Slack Socket Mode configuration."""

    app_token: str = ""
    api_base_url: str = "https://slack.com/api/"
    open_timeout: float = 10.0


class CVPConfig(BaseModel):
    """CloudVision control-plane configuration."""

    host: str = ""
    port: int = 443
    verify_tls: bool = True
    timeout: float = 30.0
    max_retries: int = 2
    token_file: str = ""
    token: str = ""
    username: str = ""
    password: str = ""
    workspace_id: str = ""  # empty string is the mainline workspace
    tag_label: str = "walljack"


class ChangeControlConfig(BaseModel):
    """Change-control action names and labels."""

    shutdown_action: str = "shutdownInterface"
    enable_action: str = "noShutdownInterface"
    stage_label: str = "portbot"
    name_prefix: str = "portbot"


class RouterConfig(BaseModel):
    """Envelope worker pool configuration."""

    max_workers: int = 4
    max_queue_size: int = 100


class SessionConfig(BaseModel):
    """Reconnect policy for the Socket Mode session."""

    reconnect_delay: float = 5.0
    max_reconnect_attempts: int = 5


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    file: str = "./data/logs/portbot.log"
    max_size_mb: int = 50
    backup_count: int = 5
    audit_file: str = "./data/logs/audit.log"


class Settings(BaseSettings):
    """Main settings class that loads from YAML and environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PORTBOT_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    slack: SlackConfig = Field(default_factory=SlackConfig)
    cvp: CVPConfig = Field(default_factory=CVPConfig)
    change_control: ChangeControlConfig = Field(default_factory=ChangeControlConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Secrets from environment
    slack_app_token: str = Field(default="", alias="SLACK_APP_TOKEN")
    cvp_token: str = Field(default="", alias="CVP_TOKEN")
    cvp_username: str = Field(default="", alias="CVP_USERNAME")
    cvp_password: str = Field(default="", alias="CVP_PASSWORD")

    @classmethod
    def from_yaml(cls, config_path: str | Path | None = None) -> "Settings":
        """Load settings from YAML file with environment variable overrides."""
        if config_path is None:
            possible_paths = [
                Path("config/settings.yaml"),
                Path("config/settings.local.yaml"),
                Path.home() / ".config/portbot/settings.yaml",
            ]
            for path in possible_paths:
                if path.exists():
                    config_path = path
                    break

        config_data: dict[str, Any] = {}
        if config_path and Path(config_path).exists():
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}

        config_data = cls._expand_env_vars(config_data)

        env_keys = [
            ("slack_app_token", "SLACK_APP_TOKEN"),
            ("cvp_token", "CVP_TOKEN"),
            ("cvp_username", "CVP_USERNAME"),
            ("cvp_password", "CVP_PASSWORD"),
        ]
        for field_name, env_var in env_keys:
            if field_name not in config_data:
                config_data[field_name] = os.environ.get(env_var, "")

        try:
            instance = cls(**config_data)
        except Exception as e:
            raise ValueError(f"Invalid config: {e}") from e
        instance.validate()
        return instance

    def validate(self) -> None:
        """Validate critical config. Raises ValueError on failure."""
        errors: list[str] = []
        if not self.cvp.host.strip():
            errors.append("cvp.host is required")
        if self.router.max_workers < 1:
            errors.append("router.max_workers must be at least 1")
        if self.cvp.max_retries < 0:
            errors.append("cvp.max_retries must not be negative")
        if errors:
            raise ValueError("Config validation failed: " + "; ".join(errors))

    @classmethod
    def _expand_env_vars(cls, data: Any) -> Any:
        """Recursively expand environment variables in config values."""
        if isinstance(data, dict):
            return {k: cls._expand_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [cls._expand_env_vars(item) for item in data]
        elif isinstance(data, str):
            if data.startswith("${") and data.endswith("}"):
                env_var = data[2:-1]
                return os.environ.get(env_var, "")
            return data
        return data

    @property
    def slack_token(self) -> str:
        """App-level token used to open Socket Mode connections."""
        return self.slack_app_token or self.slack.app_token

    @property
    def cvp_bearer_token(self) -> str:
        """Pre-provisioned CVP token, if any."""
        return self.cvp_token or self.cvp.token


_config_path: str | Path | None = None


def set_config_path(path: str | Path | None) -> None:
    """Point get_settings() at an explicit YAML file and drop the cached instance."""
    global _config_path
    _config_path = path
    get_settings.cache_clear()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_yaml(_config_path)
