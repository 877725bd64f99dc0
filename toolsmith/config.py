"""Configuration management for the QA Toolsmith service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from .database import resolve_database_path

ENVIRONMENTS = ("local", "integration", "production")

DEFAULT_RATE_LIMIT_MAX = 10
DEFAULT_RATE_LIMIT_WINDOW = 60


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(value: Optional[str], default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"Expected an integer, got '{value}'") from exc
    if parsed <= 0:
        raise ValueError(f"Expected a positive integer, got '{value}'")
    return parsed


def _split_list(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def resolve_features_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the feature flag file."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent / "features.yaml").resolve(strict=False)


@dataclass(frozen=True)
class Settings:
    """Runtime settings assembled from environment variables."""

    env_name: Optional[str] = None
    database_path: Path = field(default_factory=lambda: resolve_database_path(None))
    features_path: Path = field(default_factory=lambda: resolve_features_path(None))
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    supabase_service_key: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    session_secure: bool = True
    trusted_proxies: Tuple[str, ...] = ()
    rate_limit_max: int = DEFAULT_RATE_LIMIT_MAX
    rate_limit_window: int = DEFAULT_RATE_LIMIT_WINDOW

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        env_name = (env.get("ENV_NAME") or "").strip().lower() or None
        if env_name not in ENVIRONMENTS:
            env_name = None

        return cls(
            env_name=env_name,
            database_path=resolve_database_path(env.get("TOOLSMITH_DB_PATH")),
            features_path=resolve_features_path(env.get("TOOLSMITH_FEATURES_PATH")),
            supabase_url=env.get("SUPABASE_URL") or None,
            supabase_key=env.get("SUPABASE_KEY") or None,
            supabase_service_key=env.get("SUPABASE_SERVICE_KEY") or None,
            openrouter_api_key=env.get("OPENROUTER_API_KEY") or None,
            session_secure=_env_flag(env.get("TOOLSMITH_SESSION_SECURE"), True),
            trusted_proxies=_split_list(env.get("TOOLSMITH_TRUSTED_PROXIES")),
            rate_limit_max=_env_int(env.get("TOOLSMITH_RATE_LIMIT_MAX"), DEFAULT_RATE_LIMIT_MAX),
            rate_limit_window=_env_int(
                env.get("TOOLSMITH_RATE_LIMIT_WINDOW"), DEFAULT_RATE_LIMIT_WINDOW
            ),
        )

    def env_check(self) -> Dict[str, bool]:
        """Report which deployment variables are present, never their values."""

        checks = {
            "SUPABASE_URL": bool(self.supabase_url),
            "SUPABASE_KEY": bool(self.supabase_key),
            "SUPABASE_SERVICE_KEY": bool(self.supabase_service_key),
            "OPENROUTER_API_KEY": bool(self.openrouter_api_key),
            "ENV_NAME": self.env_name is not None,
        }
        checks["all_set"] = all(checks.values())
        return checks


__all__ = ["ENVIRONMENTS", "Settings", "resolve_features_path"]
