"""
Configuration

One JSON file (~/.repairshopr-sync/config.json, or $RS_SYNC_CONFIG) validated
with pydantic, plus environment variable overrides for secrets and the knobs
operators tune most often.
"""

import json
import os
import re
from datetime import time
from pathlib import Path
from typing import Any, Mapping

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from repairshopr_sync.business_hours import BusinessCalendar, CalendarConfigError
from repairshopr_sync.client import RepairShoprClient
from repairshopr_sync.status import OPERATIONAL_STATUSES, CanonicalStatus

logger = structlog.get_logger(__name__)

CONFIG_ENV_VAR = "RS_SYNC_CONFIG"

DEFAULT_REWORK_KEYWORDS = [
    "rework",
    "redo",
    "fix again",
    "not working",
    "still broken",
    "returned",
    "failed",
]


class ConfigError(Exception):
    """Raised when the configuration file or overrides are invalid."""
    pass


def get_config_path() -> Path:
    """Get the configuration file path."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".repairshopr-sync" / "config.json"


def _parse_clock(value: Any) -> time:
    if isinstance(value, time):
        return value
    match = re.fullmatch(r"(\d{1,2}):(\d{2})", str(value).strip())
    if not match:
        raise ValueError(f"expected HH:MM, got {value!r}")
    return time(int(match.group(1)), int(match.group(2)))


class SourceSettings(BaseModel):
    """One RepairShopr instance."""

    model_config = ConfigDict(extra="forbid")

    name: str
    base_url: str | None = None
    subdomain: str | None = None
    api_key: str | None = Field(default=None, repr=False)
    enabled: bool = True
    requests_per_minute: int = Field(default=150, gt=0)
    per_page: int = Field(default=100, gt=0, le=500)
    fetch_comments: bool = False
    target_statuses: list[str] = Field(
        default_factory=lambda: [s.value for s in OPERATIONAL_STATUSES]
    )

    @field_validator("name")
    @classmethod
    def slug_name(cls, v: str) -> str:
        if not re.fullmatch(r"[A-Za-z0-9_-]+", v):
            raise ValueError("source name must be alphanumeric (with - or _)")
        return v.lower()

    @field_validator("subdomain")
    @classmethod
    def safe_subdomain(cls, v: str | None) -> str | None:
        # The API key travels in the query string, so the host must stay ours
        if v is not None and not RepairShoprClient.SUBDOMAIN_PATTERN.match(v):
            raise ValueError(
                f"Invalid subdomain '{v}'. "
                "Must be alphanumeric with optional hyphens, 1-63 characters."
            )
        return v

    @field_validator("target_statuses")
    @classmethod
    def known_statuses(cls, v: list[str]) -> list[str]:
        return [CanonicalStatus(s).value for s in v]

    @model_validator(mode="after")
    def resolve_base_url(self) -> "SourceSettings":
        if not self.base_url:
            if not self.subdomain:
                raise ValueError(f"source '{self.name}' needs base_url or subdomain")
            self.base_url = f"https://{self.subdomain}.repairshopr.com/api/v1"
        return self


class CalendarSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    work_days: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])
    day_start: str = "08:00"
    day_end: str = "18:00"
    timezone: str = "UTC"

    def build(self) -> BusinessCalendar:
        """Raises CalendarConfigError on an invalid week/day window."""
        try:
            start, end = _parse_clock(self.day_start), _parse_clock(self.day_end)
        except ValueError as e:
            raise CalendarConfigError(str(e)) from e
        return BusinessCalendar(
            work_days=frozenset(self.work_days),
            day_start=start,
            day_end=end,
            timezone_name=self.timezone,
        )


class PolicySettings(BaseModel):
    """Technician / workshop scoping rules for one source."""

    model_config = ConfigDict(extra="forbid")

    allowed_technicians: list[str] = Field(default_factory=list)
    denied_technicians: list[str] = Field(default_factory=list)
    denied_workshops: list[str] = Field(default_factory=list)
    workshop_assignments: dict[str, str] = Field(default_factory=dict)


class HeuristicsSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rework_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_REWORK_KEYWORDS))
    default_active_ratio: float = Field(default=0.3, ge=0.0, le=1.0)
    device_categories: dict[str, list[str]] | None = None
    status_mapping_file: str | None = None
    status_mapping: dict[str, str] = Field(default_factory=dict)


class SyncSettings(BaseModel):
    """Root configuration document."""

    model_config = ConfigDict(extra="forbid")

    sources: list[SourceSettings] = Field(default_factory=list)
    calendar: CalendarSettings = Field(default_factory=CalendarSettings)
    policies: dict[str, PolicySettings] = Field(default_factory=dict)
    heuristics: HeuristicsSettings = Field(default_factory=HeuristicsSettings)

    store_path: str = "~/.repairshopr-sync/store"
    max_concurrency: int = Field(default=4, ge=1, le=64)
    timeout_seconds: float = Field(default=600.0, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    claim_stale_after_minutes: int = Field(default=60, gt=0)
    max_refetch: int = Field(default=200, ge=0)

    # Scheduling
    stale_after_days: int = Field(default=30, ge=1)
    finalize_after_days: int = Field(default=7, ge=0)

    @field_validator("policies")
    @classmethod
    def lower_policy_keys(cls, v: dict[str, PolicySettings]) -> dict[str, PolicySettings]:
        return {k.lower(): p for k, p in v.items()}

    @model_validator(mode="after")
    def unique_sources(self) -> "SyncSettings":
        names = [s.name for s in self.sources]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate source names: {dupes}")
        return self

    def source(self, name: str) -> SourceSettings:
        for source in self.sources:
            if source.name == name.lower():
                return source
        raise KeyError(name)


def _env_key(source_name: str) -> str:
    return "RS_API_KEY_" + re.sub(r"[^A-Z0-9]", "_", source_name.upper())


def apply_env_overrides(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """
    Environment variables take precedence over file values:

        RS_API_KEY_<SOURCE>       api_key of that source
        RS_SYNC_MAX_CONCURRENCY   max_concurrency
        RS_SYNC_TIMEOUT_SECONDS   timeout_seconds
        RS_SYNC_STORE_PATH        store_path
    """
    data = dict(data)
    env_mappings = {
        "max_concurrency": "RS_SYNC_MAX_CONCURRENCY",
        "timeout_seconds": "RS_SYNC_TIMEOUT_SECONDS",
        "store_path": "RS_SYNC_STORE_PATH",
    }
    for config_key, env_var in env_mappings.items():
        env_value = env.get(env_var)
        if env_value is not None:
            data[config_key] = env_value

    sources = []
    for source in data.get("sources", []):
        source = dict(source)
        env_value = env.get(_env_key(str(source.get("name", ""))))
        if env_value:
            source["api_key"] = env_value
        sources.append(source)
    if sources:
        data["sources"] = sources
    return data


def load_settings(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> SyncSettings:
    """
    Load configuration from file, with environment variable overrides.

    A missing file yields defaults (no sources), so `check-config` can report
    what is absent instead of crashing.
    """
    env = os.environ if env is None else env
    config_path = Path(path).expanduser() if path else get_config_path()

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config {config_path} must contain a JSON object")
    else:
        logger.debug("No config file, using defaults", path=str(config_path))

    try:
        settings = SyncSettings.model_validate(apply_env_overrides(data, env))
    except ValidationError as e:
        raise ConfigError(f"Invalid config {config_path}:\n{e}") from e

    logger.debug("Configuration loaded", path=str(config_path), sources=len(settings.sources))
    return settings
