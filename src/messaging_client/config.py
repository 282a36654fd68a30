"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator


class MessagingConfig(BaseModel):
    """Deployment coordinates and request settings for the messaging API."""

    base_url: str
    org_id: str
    es_developer_name: str
    capabilities_version: str = "1"
    platform: str = "Web"
    language: Optional[str] = None
    app_name: str = "messaging-client"
    client_version: str = "1.0.0"
    timeout: float = Field(default=30.0, gt=0)
    list_entries_limit: int = Field(default=50, ge=1, le=1000)
    stream_reconnect: bool = True
    stream_retry_initial: float = Field(default=1.0, gt=0)  # seconds, doubled per failed attempt
    stream_retry_max: float = Field(default=30.0, gt=0)
    routing_attributes: dict[str, str] = Field(default_factory=dict)

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        if not value.startswith(("https://", "http://")):
            raise ValueError(f"base_url must be an http(s) URL, got {value!r}")
        return value.rstrip("/")

    @field_validator("org_id", "es_developer_name")
    @classmethod
    def _check_resolved(cls, value: str) -> str:
        if not value or value.startswith("${"):
            raise ValueError(f"unresolved value {value!r}; set it in the environment or .env")
        return value


class StorageConfig(BaseModel):
    db_path: str = "./data/messaging_client.db"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "console"  # console | json
    data_dir: str = "./data"
    messaging: MessagingConfig
    storage: StorageConfig = Field(default_factory=StorageConfig)


# ${NAME} or ${NAME:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${NAME} and ${NAME:-default} with environment values.

    Names in *extra* win over the environment. Unknown names without a
    default are left untouched so validation can report them.
    """

    def _replace(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        if extra and name in extra:
            return extra[name]
        value = os.environ.get(name)
        if value is not None:
            return value
        return default if default is not None else match.group(0)

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # data_dir may itself reference the environment, and other values may reference ${data_dir}
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    data = yaml.safe_load(_interpolate_env_vars(raw_text, extra={"data_dir": data_dir})) or {}
    return AppConfig(**data)
