"""Environment-scoped feature flags loaded from YAML."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

import yaml

from .errors import NotFoundError

logger = logging.getLogger("toolsmith.features")

FLAG_NAMES: Dict[str, tuple[str, ...]] = {
    "auth": ("passwordReset", "emailVerification", "socialLogin"),
    "collections": ("generators", "charters", "templates", "knowledgeBase", "export"),
}


def _disabled() -> Dict[str, Dict[str, bool]]:
    return {namespace: {name: False for name in names} for namespace, names in FLAG_NAMES.items()}


class FeatureFlags:
    """Read-only view over the flags of a single environment."""

    def __init__(self, flags: Optional[Mapping[str, Mapping[str, object]]] = None) -> None:
        resolved = _disabled()
        for namespace, values in (flags or {}).items():
            if namespace not in FLAG_NAMES:
                raise ValueError(f"Unknown feature namespace '{namespace}'")
            for name, value in (values or {}).items():
                if name not in FLAG_NAMES[namespace]:
                    raise ValueError(f"Unknown feature flag '{namespace}.{name}'")
                if not isinstance(value, bool):
                    raise ValueError(f"Feature flag '{namespace}.{name}' must be a boolean")
                resolved[namespace][name] = value
        self._flags = resolved

    @classmethod
    def all_enabled(cls) -> "FeatureFlags":
        return cls({namespace: {name: True for name in names} for namespace, names in FLAG_NAMES.items()})

    def is_enabled(self, flag: str) -> bool:
        """Return the state of ``flag`` given as ``namespace.name``; unknown flags are off."""

        namespace, _, name = flag.partition(".")
        return self._flags.get(namespace, {}).get(name, False)

    def as_dict(self) -> Dict[str, Dict[str, bool]]:
        return {namespace: dict(values) for namespace, values in self._flags.items()}

    def require(self, flag: str) -> Callable[[], None]:
        """Build a route dependency that hides the route while ``flag`` is off."""

        def dependency() -> None:
            if not self.is_enabled(flag):
                raise NotFoundError()

        return dependency


def load_feature_flags(path: Path, env_name: Optional[str]) -> FeatureFlags:
    """Load the flags for ``env_name`` from ``path``.

    A missing environment name, or one the file does not define, yields a set
    with every flag disabled.
    """

    if env_name is None:
        logger.warning("ENV_NAME is not set; all feature flags are disabled")
        return FeatureFlags()

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    section = raw.get(env_name)
    if section is None:
        logger.warning("No feature flags defined for environment '%s'", env_name)
        return FeatureFlags()
    return FeatureFlags(section)


__all__ = ["FLAG_NAMES", "FeatureFlags", "load_feature_flags"]
