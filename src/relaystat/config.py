"""Configuration handling for Relaystat proxy."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .utils import parse_size

logger = logging.getLogger(__name__)

telemetry_logger = logging.getLogger("telemetry")

DEFAULT_CONFIG_FILE = "config.yaml"
DEFAULT_UPSTREAM_URL = "https://openrouter.ai/api/v1/chat/completions"

# Environment variable -> settings field
ENV_FIELDS = {
    "PORT": "port",
    "OPENROUTER_API_KEY": "api_key",
    "UPSTREAM_URL": "upstream_url",
    "BODY_LIMIT": "body_limit",
    "UPSTREAM_TIMEOUT_MS": "upstream_timeout_ms",
    "CLIENT_TIMEOUT_MS": "client_timeout_ms",
    "STATS_DB_PATH": "stats_db_path",
    "LOG_LEVEL": "log_level",
    "LOG_DIR": "log_dir",
}

WARN_ENV_FIELDS = {
    "WARN_TOKENS_MANAGER": "manager",
    "WARN_TOKENS_CODER": "coder",
    "WARN_TOKENS_TESTER": "tester",
}


class ConfigError(Exception):
    """Raised when the proxy cannot be configured."""


class WarnThresholds(BaseModel):
    """Estimated-token thresholds above which a request is flagged in the logs."""

    model_config = ConfigDict(frozen=True)

    manager: int = 2000
    coder: int = 6000
    tester: int = 4000

    def for_agent(self, agent: str) -> int:
        return getattr(self, getattr(agent, "value", agent), self.manager)


class Settings(BaseModel):
    """Process-wide proxy settings, read once at startup."""

    model_config = ConfigDict(frozen=True)

    api_key: str
    port: int = 3003
    upstream_url: str = DEFAULT_UPSTREAM_URL
    body_limit: int = 2 * 1024 * 1024
    upstream_timeout_ms: int = 60000
    client_timeout_ms: int = 15000
    stats_db_path: str = "stats.db"
    default_title: str = "Relaystat Proxy"
    log_level: str = "INFO"
    log_dir: Optional[str] = None
    config_path: Optional[str] = None
    warn_tokens: WarnThresholds = WarnThresholds()

    @field_validator("api_key")
    @classmethod
    def _require_api_key(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("OPENROUTER_API_KEY is required")
        return value.strip()

    @field_validator("upstream_url")
    @classmethod
    def _require_https(cls, value: str) -> str:
        if not value.lower().startswith("https://"):
            raise ValueError("upstream_url must use https")
        return value

    @field_validator("body_limit", mode="before")
    @classmethod
    def _parse_body_limit(cls, value: Union[str, int]) -> int:
        return parse_size(value)

    @field_validator("upstream_timeout_ms", "client_timeout_ms")
    @classmethod
    def _positive_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @property
    def upstream_timeout(self) -> float:
        return self.upstream_timeout_ms / 1000.0

    @property
    def client_timeout(self) -> float:
        return self.client_timeout_ms / 1000.0


def _read_yaml(config_path: Optional[Path]) -> Dict[str, Any]:
    if config_path is None or not config_path.exists():
        return {}
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing {config_path}: {str(e)}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    logger.info(f"Successfully loaded configuration from {config_path}")
    return data


def _resolve_config_path(
    config_path: Optional[Union[str, Path]], environ: Mapping[str, str]
) -> Optional[Path]:
    if config_path is not None:
        return Path(config_path)
    return Path(environ.get("RELAYSTAT_CONFIG", DEFAULT_CONFIG_FILE))


def load_warn_thresholds(
    config_path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> WarnThresholds:
    """
    Read per-agent warning thresholds from the YAML file and environment.

    Environment variables win over the file, the file wins over defaults.
    """
    if environ is None:
        environ = os.environ
    data = _read_yaml(_resolve_config_path(config_path, environ))
    values = dict(data.get("warn_tokens") or {})
    for env_name, field in WARN_ENV_FIELDS.items():
        if environ.get(env_name):
            values[field] = environ[env_name]
    try:
        return WarnThresholds(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid warning thresholds: {e}") from e


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Build the proxy settings.

    Values come from the optional YAML file first, then from environment
    variables (a local .env file is loaded when reading the real process
    environment).

    Raises:
        ConfigError: if a value is invalid or the upstream credential is missing.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    resolved = _resolve_config_path(config_path, environ)
    data = _read_yaml(resolved)
    values: Dict[str, Any] = {k: v for k, v in data.items() if k != "warn_tokens"}
    for env_name, field in ENV_FIELDS.items():
        if environ.get(env_name):
            values[field] = environ[env_name]
    values.setdefault("api_key", "")
    values["config_path"] = str(resolved) if resolved is not None else None
    values["warn_tokens"] = load_warn_thresholds(resolved, environ)

    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None) -> None:
    """Configure root logging and, optionally, a telemetry log file."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    telemetry_logger.setLevel(logging.INFO)

    if not log_dir:
        return

    os.makedirs(log_dir, exist_ok=True)
    telemetry_log_file = Path(log_dir) / "telemetry.log"
    for handler in telemetry_logger.handlers:
        if getattr(handler, "baseFilename", None) == str(telemetry_log_file.resolve()):
            return
    file_handler = logging.FileHandler(str(telemetry_log_file), mode="a")
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    )
    telemetry_logger.addHandler(file_handler)
    telemetry_logger.propagate = True
