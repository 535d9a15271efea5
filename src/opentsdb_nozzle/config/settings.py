"""Configuration settings using Pydantic for validation."""

import os
import re
from typing import Any, Optional, Tuple, Type

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from ..errors import ConfigError


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination")

    @field_validator("format")
    @classmethod
    def validate_format(cls, v):
        if v.lower() not in ("json", "text"):
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class NozzleSettings(BaseSettings):
    """
    Nozzle settings.

    Every field can be overridden with a NOZZLE_-prefixed environment
    variable (NOZZLE_OPENTSDB_URL, NOZZLE_LOGGING__LEVEL, ...), which takes
    precedence over the config file.
    """

    model_config = SettingsConfigDict(
        env_prefix="NOZZLE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # UAA
    uaa_url: str = Field(default="", description="UAA base URL used to fetch the firehose token")
    username: str = Field(default="", description="UAA user with doppler.firehose scope")
    password: str = Field(default="", description="UAA password")
    disable_access_control: bool = Field(default=False, description="Connect without an auth token")

    # Firehose
    traffic_controller_url: str = Field(description="Traffic controller websocket URL")
    firehose_subscription_id: str = Field(default="opentsdb-nozzle", description="Firehose subscription ID")
    insecure_ssl_skip_verify: bool = Field(default=False, description="Skip TLS certificate verification")
    idle_timeout_seconds: float = Field(default=60, gt=0, description="Firehose connect timeout")
    firehose_reconnect_delay_seconds: float = Field(default=5.0, ge=0, description="Cool-down before reconnecting")

    # OpenTSDB
    opentsdb_url: str = Field(description="OpenTSDB HTTP API base URL, or host:port for telnet")
    use_telnet_api: bool = Field(default=False, description="Send telnet put lines instead of HTTP JSON")
    http_gzip: bool = Field(default=False, description="Gzip the HTTP request body")
    flush_duration_seconds: float = Field(default=15, gt=0, description="Flush interval")
    max_buffer_size: int = Field(default=50, ge=1, description="Events between forced flushes")
    metric_prefix: str = Field(default="", description="Prefix for every metric name")

    # Identity of this nozzle instance
    deployment: str = Field(default="", description="Deployment tag for internal metrics")
    job: str = Field(default="opentsdb-firehose-nozzle", description="Job name of this nozzle")
    index: str = Field(default="0", description="Instance index of this nozzle")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("traffic_controller_url")
    @classmethod
    def validate_traffic_controller_url(cls, v):
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("Traffic controller URL must start with ws:// or wss://")
        return v.rstrip("/")

    @field_validator("index", mode="before")
    @classmethod
    def validate_index(cls, v):
        # YAML reads `index: 0` as an int
        return str(v)

    @field_validator("opentsdb_url")
    @classmethod
    def validate_opentsdb_url(cls, v):
        if not v:
            raise ValueError("OpenTSDB URL must not be empty")
        return v.rstrip("/")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # Environment first: file values arrive as init kwargs
        return env_settings, dotenv_settings, init_settings, file_secret_settings


# ${NAME} or ${NAME:-fallback}
_ENV_REFERENCE = re.compile(r"\$\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*(?::-([^}]*))?\}")


def _expand(text: str) -> str:
    def lookup(match: "re.Match[str]") -> str:
        name, fallback = match.group(1), match.group(2)
        value = os.environ.get(name, fallback)
        if value is None:
            raise ConfigError(f"Config references ${{{name}}} but it is not set in the environment")
        return value

    return _ENV_REFERENCE.sub(lookup, text)


def substitute_env_vars(obj: Any) -> Any:
    """Expand ${NAME} and ${NAME:-fallback} in every string of a parsed config."""
    if isinstance(obj, str):
        return _expand(obj)
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    return obj


def load_settings(config_file: Optional[str] = None) -> NozzleSettings:
    """
    Load settings from a config file and environment variables.

    The file may be YAML or JSON and supports ${VAR_NAME} substitution.
    NOZZLE_* environment variables take precedence over file values.

    Raises:
        ConfigError: If the file is missing, malformed, or values are invalid
    """
    config_data = {}

    if config_file:
        try:
            with open(config_file, 'r') as f:
                raw_config = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Can not read config file [{config_file}]: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Can not parse config file {config_file}: {e}") from e

        if raw_config is None:
            raw_config = {}
        if not isinstance(raw_config, dict):
            raise ConfigError(f"Can not parse config file {config_file}: expected a mapping")

        config_data = substitute_env_vars(raw_config)

    try:
        return NozzleSettings(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
