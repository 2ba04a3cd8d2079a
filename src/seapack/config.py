"""Process configuration resolved from the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from seapack.errors import ValidationError
from seapack.policy import Policy

DEFAULT_DIST_URL = "https://nodejs.org/dist"
DEFAULT_LOCK_TIMEOUT = 600.0
DEFAULT_MAX_WORKERS = 4

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"", "0", "false", "no", "off"})


@dataclass(frozen=True, slots=True)
class Settings:
    cache_dir: Path
    dist_url: str = DEFAULT_DIST_URL
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    max_workers: int = DEFAULT_MAX_WORKERS
    policy: Policy = field(default_factory=Policy)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        cache_dir = env.get("SEAPACK_CACHE_DIR")
        offline = _parse_bool(env, "SEAPACK_OFFLINE")
        return cls(
            cache_dir=Path(cache_dir).expanduser() if cache_dir else default_cache_dir(env),
            dist_url=env.get("SEAPACK_DIST_URL", DEFAULT_DIST_URL).rstrip("/"),
            lock_timeout=_parse_float(env, "SEAPACK_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT),
            max_workers=_parse_int(env, "SEAPACK_MAX_WORKERS", DEFAULT_MAX_WORKERS),
            policy=Policy(network_mode="offline" if offline else "online"),
        )


def default_cache_dir(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    xdg = env.get("XDG_CACHE_HOME")
    if xdg:
        return Path(xdg) / "seapack"
    local_app_data = env.get("LOCALAPPDATA")
    if os.name == "nt" and local_app_data:
        return Path(local_app_data) / "seapack"
    return Path.home() / ".cache" / "seapack"


def _parse_bool(env: Mapping[str, str], name: str) -> bool:
    raw = env.get(name, "").strip().lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    raise ValidationError(
        f"Invalid boolean value for {name}.",
        hint="Use 1/0, true/false, yes/no or on/off.",
        context={"variable": name, "value": raw},
    )


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid number for {name}.",
            context={"variable": name, "value": raw},
        ) from exc
    if value <= 0:
        raise ValidationError(
            f"{name} must be positive.",
            context={"variable": name, "value": raw},
        )
    return value


def _parse_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid integer for {name}.",
            context={"variable": name, "value": raw},
        ) from exc
    if value < 1:
        raise ValidationError(
            f"{name} must be at least 1.",
            context={"variable": name, "value": raw},
        )
    return value
