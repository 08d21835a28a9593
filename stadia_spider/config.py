import math
import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from stadia_spider.rpc.throttle import DEFAULT_INTERVAL_SECONDS
from stadia_spider.spider import MIN_MAX_AGE_SECONDS

ENV_PREFIX = "STADIA_SPIDER_"
_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SpiderConfig:
    sqlite_path: str = os.path.join("data", "spider.sqlite")
    google_id: str = ""
    google_cookie: Optional[str] = None           # "SID=..;SSID=..;HSID=.."
    storage_state_path: str = os.path.join("data", "storage_state.json")
    offline: bool = False
    skip_seeding: bool = False
    request_interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    http_timeout_seconds: float = 20.0
    idle_sleep_seconds: float = 960.0
    error_sleep_seconds: float = 60.0
    min_max_age_seconds: float = MIN_MAX_AGE_SECONDS

    def with_overrides(self, **overrides) -> "SpiderConfig":
        """Copy with every override that isn't None applied (CLI flags)."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}")
    if value < 0 or math.isnan(value):
        raise ValueError(f"{ENV_PREFIX}{name} must not be negative, got {raw!r}")
    return value


def _bool(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(ENV_PREFIX + name, "").strip().lower() in _TRUTHY


def load_config(environ: Optional[Mapping[str, str]] = None) -> SpiderConfig:
    environ = os.environ if environ is None else environ
    defaults = SpiderConfig()
    return SpiderConfig(
        sqlite_path=environ.get(ENV_PREFIX + "SQLITE") or defaults.sqlite_path,
        google_id=environ.get(ENV_PREFIX + "GOOGLE_ID", defaults.google_id),
        google_cookie=environ.get(ENV_PREFIX + "GOOGLE_COOKIE") or None,
        storage_state_path=environ.get(ENV_PREFIX + "STORAGE_STATE") or defaults.storage_state_path,
        offline=_bool(environ, "OFFLINE"),
        skip_seeding=_bool(environ, "SKIP_SEEDING"),
        request_interval_seconds=_float(environ, "REQUEST_INTERVAL", defaults.request_interval_seconds),
        http_timeout_seconds=_float(environ, "HTTP_TIMEOUT", defaults.http_timeout_seconds),
        idle_sleep_seconds=_float(environ, "IDLE_SLEEP", defaults.idle_sleep_seconds),
        error_sleep_seconds=_float(environ, "ERROR_SLEEP", defaults.error_sleep_seconds),
        min_max_age_seconds=_float(environ, "MIN_MAX_AGE", defaults.min_max_age_seconds),
    )
