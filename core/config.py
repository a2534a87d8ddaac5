import json
import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigError

logger = logging.getLogger(__name__)

# --- Environment-based Settings ---

class AppSettings(BaseSettings):
    """
    Process settings loaded from environment variables.
    The .env file is loaded automatically by pydantic-settings.
    """
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    LOG_LEVEL: str = Field("INFO", description="Log level (e.g., DEBUG, INFO, WARNING, ERROR)")
    LOG_FILE: Optional[str] = Field(None, description="Optional: path of a rotating JSON log file.")
    PLUGIN_CONFIG_DIR: Optional[str] = Field(None, description="Optional: directory holding <backend>.yml plugin files.")
    REQUEST_TIMEOUT: float = Field(30.0, description="Connect timeout in seconds for backend requests.")
    STREAM_BUFFER_SIZE: int = Field(10, ge=1, description="Capacity of the chunk and fragment channels.")

# --- YAML-based Plugin Configuration Models ---

StreamFormat = Literal["sse", "ndjson", "raw"]


class ServiceConfig(BaseModel):
    """One service exposed by a backend, e.g. chat or embed.

    The field set mirrors the services entry of a plugin.yaml file so those
    files load unchanged.  The transport reads endpoint, auth_type,
    special_url, extra_headers and stream_format.  task_type, protocol,
    expose_protocol, extra_url, auth_fields, default_model and support_models
    are descriptive only: they are validated and kept for callers that list
    a backend's services, but nothing here routes on them.
    """
    service_name: str
    task_type: str = ""
    protocol: str = "HTTP"
    expose_protocol: str = ""
    endpoint: str = ""
    auth_type: str = "none"
    auth_fields: List[str] = Field(default_factory=list)
    special_url: str = ""
    extra_url: str = ""
    extra_headers: Dict[str, str] = Field(default_factory=dict)
    stream_format: StreamFormat = "sse"
    default_model: str = ""
    support_models: List[str] = Field(default_factory=list)

    @field_validator("extra_headers", mode="before")
    @classmethod
    def _parse_extra_headers(cls, value: Union[str, Dict, None]):
        # plugin.yaml files carry extra_headers as an embedded JSON string
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise ValueError(f"failed to parse extra headers: {e}") from e
        if not isinstance(value, dict):
            raise ValueError("extra headers must be a mapping")
        return {str(k): v for k, v in value.items() if isinstance(v, str)}


class PluginConfig(BaseModel):
    """Engine host plus the services a backend exposes."""
    engine_host: str
    timeout: float = 30.0
    services: List[ServiceConfig] = Field(default_factory=list)

    def get_service(self, name: str) -> Optional[ServiceConfig]:
        for service in self.services:
            if service.service_name == name:
                return service
        return None


def load_plugin_config(path: Union[str, Path]) -> PluginConfig:
    """Loads a plugin YAML file and validates it with PluginConfig."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file '{config_path.name}' not found in {config_path.parent}")
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse {config_path.name}: {e}") from e
    try:
        return PluginConfig.model_validate(data or {})
    except ValidationError as e:
        raise ConfigError(f"invalid plugin configuration in {config_path.name}: {e}") from e


def find_plugin_config(backend: str, settings: Optional[AppSettings] = None) -> Optional[PluginConfig]:
    """Returns <PLUGIN_CONFIG_DIR>/<backend>.yml when present, else None."""
    settings = settings or get_settings()
    if not settings.PLUGIN_CONFIG_DIR:
        return None
    config_path = Path(settings.PLUGIN_CONFIG_DIR) / f"{backend}.yml"
    if not config_path.exists():
        logger.debug(f"No plugin file for {backend} in {config_path.parent}")
        return None
    return load_plugin_config(config_path)

# --- Global Settings Instance ---
_settings_instance: Optional[AppSettings] = None

def get_settings() -> AppSettings:
    """
    Returns a singleton instance of the settings object.
    Settings are loaded on first use so that importing modules under test
    does not validate the environment.
    """
    global _settings_instance
    if _settings_instance is None:
        try:
            _settings_instance = AppSettings()
        except ValidationError as e:
            logger.critical(f"FATAL: Configuration validation error: {e}")
            raise ConfigError(f"invalid settings: {e}") from e
    return _settings_instance

def reset_settings() -> None:
    """Drops the cached settings so the next get_settings() re-reads the environment."""
    global _settings_instance
    _settings_instance = None
