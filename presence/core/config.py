"""
Configuration: YAML file + .env + environment overrides, validated into Settings at startup.
"""
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from presence.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_RANGE = "Sheet1!A:E"
DEFAULT_ALLOWED_ORIGINS = ["http://localhost:3000", "http://localhost:5173"]

# Environment variable -> (section, key) in the config mapping
ENV_OVERRIDES = {
    "GOOGLE_SHEET_ID": ("sheets", "sheet_id"),
    "GOOGLE_API_KEY": ("sheets", "api_key"),
    "GOOGLE_SHEET_RANGE": ("sheets", "default_range"),
    "CACHE_DURATION": ("cache", "ttl_ms"),
    "ALLOWED_ORIGINS": ("api", "allowed_origins"),
    "PORT": ("api", "port"),
    "LOG_LEVEL": ("logging", "level"),
}


class SheetsSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    sheet_id: str = ""
    api_key: str = ""
    default_range: str = DEFAULT_RANGE
    base_url: str = "https://sheets.googleapis.com/v4/spreadsheets"
    batch_size: int = Field(5000, gt=0)
    metadata_timeout: float = Field(15.0, gt=0)
    batch_timeout: float = Field(45.0, gt=0)
    metadata_ttl_seconds: float = Field(0.0, ge=0)  # 0 = re-query row count every fetch
    fallback_row_count: int = Field(20000, gt=1)
    max_attempts: int = Field(3, ge=1)
    retry_base_delay: float = Field(1.0, ge=0)

    @model_validator(mode="after")
    def _require_credentials(self) -> "SheetsSettings":
        missing = [name for name, value in (
            ("GOOGLE_SHEET_ID", self.sheet_id),
            ("GOOGLE_API_KEY", self.api_key),
        ) if not (value or "").strip()]
        if missing:
            raise ValueError(
                "Missing Google Sheets configuration. Please set " + " and ".join(missing)
            )
        if "!" not in self.default_range:
            raise ValueError(f"default_range must be sheet-qualified (e.g. {DEFAULT_RANGE})")
        return self


class CacheSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    backend: Literal["memory", "sql"] = "memory"
    ttl_ms: int = Field(5 * 60 * 1000, gt=0)
    cleanup_interval_seconds: float = Field(600.0, gt=0)


class ApiSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 3000
    allowed_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    request_timeout_seconds: float = Field(45.0, gt=0)
    refresh_timeout_seconds: float = Field(60.0, gt=0)
    default_page_size: int = Field(15, gt=0)
    max_page_size: int = Field(1000, gt=0)
    debug: bool = False

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


class DatabaseSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str = "~/.presence_api/cache.db"


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    file: Optional[str] = None


class Settings(BaseModel):
    """Validated, immutable process configuration."""

    model_config = ConfigDict(frozen=True)

    sheets: SheetsSettings
    cache: CacheSettings = Field(default_factory=CacheSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


class Config:
    """Raw configuration mapping read from a YAML file, .env and the environment."""

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        self.environ = environ if environ is not None else os.environ
        if config_path:
            self.config_file = Path(config_path).expanduser().resolve()
        else:
            self.config_file = Path.cwd() / "config.yaml"
        self.config_dir = self.config_file.parent
        logger.debug(f"Using config file: {self.config_file}")

        self._load_env_file()
        self.data: Dict[str, Any] = self._load_config()
        self._apply_env_overrides()

    def _load_env_file(self) -> None:
        """Load KEY=VALUE lines from the first .env found; never overrides existing variables."""
        env_files = [
            self.config_dir / ".env",
            self.config_dir.parent / ".env",
            Path.cwd() / ".env",
        ]
        env_file = next((path for path in env_files if path.exists()), None)
        if not env_file:
            logger.debug("No .env file found, skipping environment variable loading")
            return

        logger.info(f"Loading environment variables from: {env_file}")
        try:
            with open(env_file, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue
                    match = re.match(r"^([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$", line)
                    if match:
                        key, value = match.groups()
                        value = value.strip('"').strip("'")
                        if key not in self.environ:
                            self.environ[key] = value
                            logger.debug(f"Loaded env var: {key}")
        except OSError as e:
            logger.warning(f"Error loading .env file: {e}")

    def _substitute_env_vars(self, data: Any) -> Any:
        """Recursively replace ${VAR} / $VAR string values with environment values."""
        if isinstance(data, dict):
            return {key: self._substitute_env_vars(value) for key, value in data.items()}
        if isinstance(data, list):
            return [self._substitute_env_vars(item) for item in data]
        if isinstance(data, str):
            if data.startswith("${") and data.endswith("}"):
                return self.environ.get(data[2:-1], "")
            if data.startswith("$") and len(data) > 1:
                return self.environ.get(data[1:], "")
        return data

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_file.exists():
            logger.info(f"Config file {self.config_file} not found, using defaults and environment")
            return {}
        try:
            with open(self.config_file) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Could not read config file {self.config_file}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError("Invalid config format: root must be a mapping")

        data = self._substitute_env_vars(data)
        if isinstance(data.get("logging"), dict) and data["logging"].get("file"):
            data["logging"]["file"] = os.path.expanduser(data["logging"]["file"])
        return data

    def _apply_env_overrides(self) -> None:
        for var, (section, key) in ENV_OVERRIDES.items():
            value = self.environ.get(var)
            if value is None or value == "":
                continue
            self.data.setdefault(section, {})
            if not isinstance(self.data[section], dict):
                raise ConfigurationError(f"Config section '{section}' must be a mapping")
            self.data[section][key] = value
            logger.debug(f"Config override from environment: {section}.{key} ({var})")

    def to_settings(self) -> Settings:
        return build_settings(self.data)


def build_settings(data: Dict[str, Any]) -> Settings:
    """Validate a raw config mapping. Raises ConfigurationError on any problem."""
    data = dict(data)
    data.setdefault("sheets", {})
    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {messages}") from e


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Read and validate configuration once at startup."""
    return Config(config_path).to_settings()
