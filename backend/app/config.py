"""Configuration loader for the ledger bucket gateway."""
from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

LOGGER = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = REPO_ROOT / ".env"

_SIZE_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 * 1024,
    "GB": 1024 * 1024 * 1024,
    "TB": 1024 * 1024 * 1024 * 1024,
}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?B)?\s*$", re.IGNORECASE)


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


class _FrozenModel(BaseModel):
    """Base model enforcing immutability for config sections."""

    model_config = ConfigDict(frozen=True)


def parse_size(value: Union[int, str]) -> int:
    """Convert a human size string such as ``"100mb"`` into bytes.

    Args:
        value: Integer byte count or a string with an optional B/KB/MB/GB/TB suffix.

    Returns:
        int: Number of bytes described by ``value``.

    Raises:
        ValueError: If the value cannot be interpreted as a size.
    """

    if isinstance(value, bool):
        raise ValueError("size must be an integer or size string")
    if isinstance(value, int):
        if value < 0:
            raise ValueError("size cannot be negative")
        return value
    match = _SIZE_PATTERN.match(str(value))
    if match is None:
        raise ValueError(f"Unrecognised size value: {value!r}")
    amount = float(match.group(1))
    unit = (match.group(2) or "B").upper()
    return int(amount * _SIZE_UNITS[unit])


class ServiceConfig(_FrozenModel):
    """Service identity reported by health endpoints."""

    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)


class StorageConfig(_FrozenModel):
    """Mapping store connection settings."""

    database_url: str = Field(..., min_length=1)
    echo_sql: bool = False
    write_retry_attempts: int = Field(3, ge=1)
    lock_stripes: int = Field(64, ge=1)


class LedgerConfig(_FrozenModel):
    """Settings for the content-addressed ledger collaborator."""

    node_url: str = Field(..., min_length=1)
    gateway_url: str = Field(..., min_length=1)
    network: str = Field("devnet", min_length=1)
    api_token: Optional[str] = Field(default=None)
    upload_timeout_seconds: float = Field(..., gt=0)
    fetch_timeout_seconds: float = Field(..., gt=0)
    connect_timeout_seconds: float = Field(5.0, gt=0)
    max_connect_retries: int = Field(2, ge=0)
    backoff_initial_seconds: float = Field(0.25, gt=0)
    backoff_max_seconds: float = Field(4.0, gt=0)

    @field_validator("node_url", "gateway_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if not cleaned:
            raise ValueError("ledger URLs cannot be empty")
        return cleaned


class APIConfig(_FrozenModel):
    """Limits and access control applied at the gateway boundary."""

    max_object_bytes: int = Field(..., ge=0)
    max_keys_ceiling: int = Field(1000, ge=1)
    allow_empty_payload: bool = True
    api_key: Optional[str] = Field(default=None)
    allowed_origins: List[str] = Field(default_factory=list)

    @field_validator("max_object_bytes", mode="before")
    @classmethod
    def _parse_object_size(cls, value: Union[int, str]) -> int:
        return parse_size(value)

    @field_validator("api_key")
    @classmethod
    def _blank_key_disables_auth(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()


class ObservabilityConfig(_FrozenModel):
    """Location of operator-facing audit artifacts."""

    root_dir: str = Field(..., min_length=1)
    write_audit_filename: str = Field("write_audit.jsonl", min_length=1)


class AppConfig(_FrozenModel):
    """Top-level application configuration composed from config.yaml."""

    service: ServiceConfig
    storage: StorageConfig
    ledger: LedgerConfig
    api: APIConfig
    observability: ObservabilityConfig

    @staticmethod
    def default_path() -> Path:
        """Return the default location of the configuration file.

        Returns:
            Path: Absolute path to config.yaml at the repository root.
        """
        return REPO_ROOT / "config.yaml"


# (environment variable, config section, field, value parser)
_ENV_OVERRIDES: Tuple[Tuple[str, str, str, Callable[[str], Any]], ...] = (
    ("LEDGER_GATEWAY_DATABASE_URL", "storage", "database_url", str),
    ("LEDGER_GATEWAY_NODE_URL", "ledger", "node_url", str),
    ("LEDGER_GATEWAY_GATEWAY_URL", "ledger", "gateway_url", str),
    ("LEDGER_GATEWAY_API_TOKEN", "ledger", "api_token", str),
    ("LEDGER_GATEWAY_API_KEY", "api", "api_key", str),
    ("LEDGER_GATEWAY_MAX_OBJECT_BYTES", "api", "max_object_bytes", str),
)


def _determine_env_file_path() -> Optional[Path]:
    """Return the path to the environment file if one should be loaded."""

    override = os.getenv("LEDGER_GATEWAY_ENV_FILE")
    if override:
        candidate = Path(override).expanduser()
        if candidate.exists():
            return candidate
        LOGGER.warning("Configured environment file override does not exist: %s", candidate)
        return None
    if DEFAULT_ENV_FILE.exists():
        return DEFAULT_ENV_FILE
    return None


def _strip_inline_comment(value: str) -> str:
    """Remove inline comments from an environment value when unquoted."""

    comment_index = value.find("#")
    if comment_index == -1:
        return value
    return value[:comment_index].rstrip()


def _load_env_file(path: Path) -> None:
    """Populate ``os.environ`` with values read from a ``.env`` file."""

    try:
        with path.open("r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.lower().startswith("export "):
                    line = line[7:].lstrip()
                if "=" not in line:
                    continue
                key, raw_value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                existing_value = os.environ.get(key)
                if existing_value is not None and existing_value.strip() != "":
                    continue
                value = raw_value.strip()
                if not value:
                    os.environ[key] = ""
                    continue
                if value[0] in {'"', "'"} and value[-1] == value[0]:
                    os.environ[key] = value[1:-1]
                    continue
                os.environ[key] = _strip_inline_comment(value)
    except OSError:
        LOGGER.warning("Unable to read environment file at %s", path)


def _apply_environment_overrides(raw_content: Dict[str, Any]) -> Dict[str, Any]:
    """Merge environment-based overrides into the raw configuration mapping.

    Args:
        raw_content: Parsed YAML configuration prior to Pydantic validation.

    Returns:
        Dict[str, Any]: Configuration mapping with environment overrides applied.
    """

    env_file_path = _determine_env_file_path()
    if env_file_path is not None:
        _load_env_file(env_file_path)

    for env_name, section_name, field_name, parser in _ENV_OVERRIDES:
        raw = os.getenv(env_name)
        if raw is None or not raw.strip():
            continue
        section = raw_content.setdefault(section_name, {})
        if not isinstance(section, dict):
            raise ConfigError(f"Configuration section '{section_name}' must be a mapping")
        section[field_name] = parser(raw.strip())
        LOGGER.info("Configuration %s.%s overridden from environment", section_name, field_name)
    return raw_content


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Read YAML content from disk.

    Args:
        path: Location of the YAML file.

    Returns:
        Dict[str, Any]: Parsed YAML content.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        LOGGER.error("Configuration file missing at %s", path)
        raise ConfigError("Configuration file not found") from exc
    except yaml.YAMLError as exc:
        LOGGER.error("Invalid YAML syntax in %s", path)
        raise ConfigError("Invalid YAML syntax") from exc
    if not isinstance(data, dict):
        LOGGER.error("Configuration root must be a mapping: %s", path)
        raise ConfigError("Configuration root must be a mapping")
    return data


@lru_cache(maxsize=1)
def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from YAML.

    Args:
        path: Optional override path to the YAML file.

    Returns:
        AppConfig: Parsed configuration object.

    Raises:
        ConfigError: If the configuration cannot be loaded or validated.
    """
    config_path = path or AppConfig.default_path()
    raw_content = _read_yaml(config_path)
    raw_content = _apply_environment_overrides(raw_content)
    try:
        return AppConfig(**raw_content)
    except ValidationError as exc:
        LOGGER.error("Invalid configuration values: %s", exc)
        raise ConfigError("Configuration validation failed") from exc
