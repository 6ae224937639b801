from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

from errors import ConfigError

# Environment variables are read as DT_<KEY>, e.g. DT_TERM=202408
ENV_PREFIX = "DT_"

REQUIRED = (
    "bulletin_home_url",
    "course_details_url",
    "course_search_url",
    "course_sched_url",
    "term",
)

DEFAULT_USER_AGENT = "catalog-scraper/1.0 (+course catalog export; sequential, rate limited)"

@dataclass
class Settings:
    bulletin_home_url: str
    course_details_url: str
    course_search_url: str
    course_sched_url: str
    term: str                        # e.g. "202408"
    per_min_ratelimit: int = 60      # <= 0 disables the limiter
    timeout: float = 30.0
    retry_attempts: int = 1          # 1 = no retries
    user_agent: str = DEFAULT_USER_AGENT


def _from_env(environ: Mapping[str, str]) -> Dict[str, str]:
    known = {f.name for f in fields(Settings)}
    out: Dict[str, str] = {}
    for k, v in environ.items():
        if not k.upper().startswith(ENV_PREFIX):
            continue
        key = k[len(ENV_PREFIX):].lower()
        if key in known:
            out[key] = v
    return out


def _coerce(name: str, value: Any, kind: type) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be {kind.__name__}, got {value!r}")


def load_settings(environ: Optional[Mapping[str, str]] = None,
                  overrides: Optional[Mapping[str, Any]] = None) -> Settings:
    """
    Build Settings from DT_* environment variables, then apply any non-None
    overrides (CLI flags). Missing required keys raise ConfigError.
    """
    values: Dict[str, Any] = _from_env(os.environ if environ is None else environ)
    for k, v in (overrides or {}).items():
        if v is not None:
            values[k] = v

    missing = [k for k in REQUIRED if not values.get(k)]
    if missing:
        raise ConfigError("missing required setting(s): " + ", ".join(missing))

    if "per_min_ratelimit" in values:
        values["per_min_ratelimit"] = _coerce("per_min_ratelimit", values["per_min_ratelimit"], int)
    if "retry_attempts" in values:
        values["retry_attempts"] = _coerce("retry_attempts", values["retry_attempts"], int)
        if values["retry_attempts"] < 1:
            raise ConfigError("retry_attempts must be at least 1")
    if "timeout" in values:
        values["timeout"] = _coerce("timeout", values["timeout"], float)

    return Settings(**{k: str(v) if k in REQUIRED else v for k, v in values.items()})
