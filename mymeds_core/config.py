# =============================================================================
# mymeds_core/config.py
# Engine Settings
# =============================================================================
"""
EngineSettings - one immutable settings object handed to every component.

Sources, lowest to highest precedence:
- built-in defaults (values used by the mobile client)
- a TOML file with an [engine] table and a [supabase] table
- a .env file (python-dotenv)
- process environment variables

Expected TOML layout:
    [engine]
    data_dir = "local_data"
    prescriptions_ttl_hours = 24
    reminders_ttl_hours = 24
    fetch_timeout_seconds = 15

    [supabase]
    url = "https://your-project.supabase.co"
    key = "your-anon-key"
"""

from __future__ import annotations
import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from dotenv import dotenv_values

from mymeds_core.errors import ConfigurationError
from mymeds_core.logging import get_logger

logger = get_logger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class EngineSettings:
    """Tunables for the offline data layer."""
    data_dir: Path = Path("local_data")
    prescriptions_ttl: timedelta = timedelta(hours=24)
    reminders_ttl: timedelta = timedelta(hours=24)
    fetch_timeout: timedelta = timedelta(seconds=15)
    fetch_timeouts: Dict[str, timedelta] = field(default_factory=dict)  # per collection override
    inflight_cap: timedelta = timedelta(minutes=2)
    draft_expiry: timedelta = timedelta(days=7)
    max_drafts: int = 10
    max_mutation_retries: int = 3
    connection_timeout: float = 5.0
    check_interval_online: float = 30.0
    check_interval_offline: float = 10.0
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    def __post_init__(self):
        for name in ("prescriptions_ttl", "reminders_ttl", "fetch_timeout", "inflight_cap", "draft_expiry"):
            if getattr(self, name) <= timedelta(0):
                raise ConfigurationError(
                    f"{name} must be a positive duration",
                    config_key=name,
                    expected_type="positive duration",
                )
        for name, value in self.fetch_timeouts.items():
            if value <= timedelta(0):
                raise ConfigurationError(
                    f"fetch timeout for {name} must be positive",
                    config_key=f"fetch_timeouts.{name}",
                )
        if self.max_drafts < 1:
            raise ConfigurationError("max_drafts must be at least 1", config_key="max_drafts")
        if self.max_mutation_retries < 1:
            raise ConfigurationError(
                "max_mutation_retries must be at least 1",
                config_key="max_mutation_retries",
            )
        if self.inflight_cap <= self.fetch_timeout:
            raise ConfigurationError(
                "inflight_cap must be longer than fetch_timeout",
                config_key="inflight_cap",
            )

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / "mymeds.db"

    @property
    def drafts_dir(self) -> Path:
        return Path(self.data_dir) / "prescription_drafts"

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def timeout_for(self, collection: str) -> timedelta:
        """Fetch timeout for one collection, falling back to the default."""
        return self.fetch_timeouts.get(collection, self.fetch_timeout)

    def ttl_for(self, collection: str) -> timedelta:
        if collection == "prescriptions":
            return self.prescriptions_ttl
        if collection == "reminders":
            return self.reminders_ttl
        raise ConfigurationError(f"No TTL configured for collection '{collection}'", config_key=collection)


# =============================================================================
# LOADING
# =============================================================================

# env var -> (field, converter)
ENV_VARS = {
    "MYMEDS_DATA_DIR": ("data_dir", Path),
    "MYMEDS_PRESCRIPTIONS_TTL_HOURS": ("prescriptions_ttl", lambda v: timedelta(hours=float(v))),
    "MYMEDS_REMINDERS_TTL_HOURS": ("reminders_ttl", lambda v: timedelta(hours=float(v))),
    "MYMEDS_FETCH_TIMEOUT": ("fetch_timeout", lambda v: timedelta(seconds=float(v))),
    "MYMEDS_INFLIGHT_CAP": ("inflight_cap", lambda v: timedelta(seconds=float(v))),
    "MYMEDS_DRAFT_EXPIRY_DAYS": ("draft_expiry", lambda v: timedelta(days=float(v))),
    "MYMEDS_MAX_DRAFTS": ("max_drafts", int),
    "MYMEDS_MAX_MUTATION_RETRIES": ("max_mutation_retries", int),
    "MYMEDS_CONNECTION_TIMEOUT": ("connection_timeout", float),
    "SUPABASE_URL": ("supabase_url", str),
    "SUPABASE_KEY": ("supabase_key", str),
}

# [engine] key -> (field, converter)
TOML_KEYS = {
    "data_dir": ("data_dir", Path),
    "prescriptions_ttl_hours": ("prescriptions_ttl", lambda v: timedelta(hours=v)),
    "reminders_ttl_hours": ("reminders_ttl", lambda v: timedelta(hours=v)),
    "fetch_timeout_seconds": ("fetch_timeout", lambda v: timedelta(seconds=v)),
    "inflight_cap_seconds": ("inflight_cap", lambda v: timedelta(seconds=v)),
    "draft_expiry_days": ("draft_expiry", lambda v: timedelta(days=v)),
    "max_drafts": ("max_drafts", int),
    "max_mutation_retries": ("max_mutation_retries", int),
    "connection_timeout_seconds": ("connection_timeout", float),
    "check_interval_online_seconds": ("check_interval_online", float),
    "check_interval_offline_seconds": ("check_interval_offline", float),
}


def _convert(source: str, key: str, converter, raw: Any) -> Any:
    try:
        return converter(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid value for {key} in {source}: {raw!r}",
            config_key=key,
        ) from e


def _from_toml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "rb") as f:
            document = tomllib.load(f)
    except FileNotFoundError:
        logger.debug(f"No settings file at {path}, using defaults")
        return {}
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Malformed settings file {path}: {e}", config_key=str(path)) from e

    values: Dict[str, Any] = {}
    engine = document.get("engine", {})
    for key, (name, converter) in TOML_KEYS.items():
        if key in engine:
            values[name] = _convert(str(path), key, converter, engine[key])

    timeouts = engine.get("fetch_timeouts", {})
    if timeouts:
        values["fetch_timeouts"] = {
            collection: _convert(str(path), f"fetch_timeouts.{collection}", lambda v: timedelta(seconds=v), seconds)
            for collection, seconds in timeouts.items()
        }

    supabase = document.get("supabase", {})
    if supabase.get("url"):
        values["supabase_url"] = supabase["url"]
    if supabase.get("key"):
        values["supabase_key"] = supabase["key"]
    return values


def _from_env(env: Mapping[str, Optional[str]], source: str) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for var, (name, converter) in ENV_VARS.items():
        raw = env.get(var)
        if raw:
            values[name] = _convert(source, var, converter, raw)
    return values


def load_settings(
    path: Optional[PathLike] = None,
    env: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[PathLike] = None,
    **overrides: Any,
) -> EngineSettings:
    """
    Build EngineSettings from defaults, a TOML file, a .env file and the environment.

    Args:
        path: Optional TOML settings file
        env: Environment mapping (defaults to os.environ)
        dotenv_path: Optional .env file, applied below the real environment
        **overrides: Explicit field values, applied last

    Returns:
        Validated EngineSettings
    """
    values: Dict[str, Any] = {}

    if path is not None:
        values.update(_from_toml(Path(path)))

    if dotenv_path is not None:
        values.update(_from_env(dotenv_values(dotenv_path), str(dotenv_path)))

    values.update(_from_env(os.environ if env is None else env, "environment"))

    known = {f.name for f in fields(EngineSettings)}
    unknown = set(overrides) - known
    if unknown:
        raise ConfigurationError(f"Unknown settings: {sorted(unknown)}")
    values.update(overrides)

    settings = replace(EngineSettings(), **values) if values else EngineSettings()
    logger.debug(
        f"Settings loaded: data_dir={settings.data_dir}, "
        f"supabase={'configured' if settings.supabase_configured else 'not configured'}"
    )
    return settings
