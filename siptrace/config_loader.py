from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from siptrace.services.call_analysis import AnalysisOptions

LOGGER = logging.getLogger(__name__)

ENV_FILE = Path(".env")
ENV_HOMER_URL = "SIPTRACE_HOMER_URL"
ENV_HOMER_USERNAME = "SIPTRACE_HOMER_USERNAME"
ENV_HOMER_PASSWORD = "SIPTRACE_HOMER_PASSWORD"
ENV_CONFIG_PATH = "SIPTRACE_CONFIG"


def _string_list(value: object) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ValueError("Expected a list of strings")
    return [str(item).strip() for item in value if str(item).strip()]


class HomerSettings(BaseModel):
    url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: float = 30.0

    @field_validator("url", mode="before")
    @classmethod
    def normalize_url(cls, value: object) -> str:
        if value is None:
            return ""
        return str(value).strip().rstrip("/")

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout_seconds must be positive")
        return value


class AnalysisSettings(BaseModel):
    correlate_headers: List[str] = Field(default_factory=list)
    display_header_prefixes: List[str] = Field(default_factory=list)
    numbers: List[str] = Field(default_factory=list)
    limit: int = 100
    seed_margin_minutes: float = 5
    fanout_margin_minutes: float = 30
    group_window_before_seconds: float = 5
    group_window_after_seconds: float = 30

    @field_validator("correlate_headers", "display_header_prefixes", "numbers", mode="before")
    @classmethod
    def normalize_lists(cls, value: object) -> List[str]:
        return _string_list(value)

    @field_validator("limit")
    @classmethod
    def validate_limit(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("limit must be positive")
        return value

    @field_validator(
        "seed_margin_minutes",
        "fanout_margin_minutes",
        "group_window_before_seconds",
        "group_window_after_seconds",
    )
    @classmethod
    def validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("time tolerances must not be negative")
        return value

    @property
    def seed_margin_ms(self) -> int:
        return int(self.seed_margin_minutes * 60 * 1000)

    def to_options(
        self,
        correlate_headers: Sequence[str] = (),
        display_header_prefixes: Sequence[str] = (),
        numbers: Sequence[str] = (),
        limit: Optional[int] = None,
    ) -> AnalysisOptions:
        """Build analysis options; non-empty command line values replace configured ones."""
        return AnalysisOptions(
            correlate_headers=list(correlate_headers or self.correlate_headers),
            display_header_prefixes=list(display_header_prefixes or self.display_header_prefixes),
            numbers=list(numbers or self.numbers),
            limit=limit if limit is not None else self.limit,
            fanout_margin_ms=int(self.fanout_margin_minutes * 60 * 1000),
            group_window_before_ms=int(self.group_window_before_seconds * 1000),
            group_window_after_ms=int(self.group_window_after_seconds * 1000),
        )


class AppConfig(BaseModel):
    homer: HomerSettings = Field(default_factory=HomerSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)


def load_config(config_path: Path) -> AppConfig:
    LOGGER.info("Loading config path=%s", config_path, extra={"category": "CONFIG"})
    if not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")

    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in config file: {exc}") from exc

    if parsed is None:
        parsed = {}
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be a YAML object")

    try:
        cfg = AppConfig.model_validate(parsed)
        LOGGER.info(
            "Config loaded homer_url=%s correlate_headers=%s",
            cfg.homer.url or "-",
            cfg.analysis.correlate_headers,
            extra={"category": "CONFIG"},
        )
        return cfg
    except ValidationError as exc:
        LOGGER.error("Config validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ValueError(f"Invalid configuration: {exc}") from exc


def _parse_env_line(line: str) -> tuple[str, str] | None:
    text = line.strip()
    if not text or text.startswith("#"):
        return None
    if text.startswith("export "):
        text = text[len("export ") :].strip()
    key, sep, value = text.partition("=")
    key, value = key.strip(), value.strip()
    if not sep or not key:
        return None
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return key, value


def load_env_file(path: Path = ENV_FILE, override: bool = False) -> int:
    """Export KEY=VALUE lines of a dotenv file; existing variables win unless override is set."""
    if not path.exists():
        return 0
    loaded = 0
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        parsed = _parse_env_line(raw_line)
        if not parsed:
            continue
        key, value = parsed
        if override or key not in os.environ:
            os.environ[key] = value
            loaded += 1
    LOGGER.info("Loaded env file path=%s keys=%s", path, loaded, extra={"category": "CONFIG"})
    return loaded


def apply_env_overrides(cfg: AppConfig, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    env = os.environ if environ is None else environ
    updates = {}
    for var, attr in (
        (ENV_HOMER_URL, "url"),
        (ENV_HOMER_USERNAME, "username"),
        (ENV_HOMER_PASSWORD, "password"),
    ):
        value = env.get(var)
        if value:
            updates[attr] = value
    if not updates:
        return cfg

    LOGGER.info("Homer settings overridden from environment keys=%s", sorted(updates), extra={"category": "CONFIG"})
    homer = HomerSettings.model_validate({**cfg.homer.model_dump(), **updates})
    return cfg.model_copy(update={"homer": homer})


def resolve_config(config_path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Config file (explicit path, then SIPTRACE_CONFIG) with environment overrides applied."""
    env = os.environ if environ is None else environ
    if config_path is None and env.get(ENV_CONFIG_PATH):
        config_path = Path(env[ENV_CONFIG_PATH]).expanduser()
    cfg = load_config(config_path) if config_path is not None else AppConfig()
    return apply_env_overrides(cfg, env)
