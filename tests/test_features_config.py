from __future__ import annotations

import logging
from pathlib import Path

import pytest

from toolsmith.config import Settings, resolve_features_path
from toolsmith.errors import NotFoundError
from toolsmith.features import FLAG_NAMES, FeatureFlags, load_feature_flags

BUNDLED_FLAGS = resolve_features_path(None)


def test_bundled_file_covers_every_environment() -> None:
    for env_name in ("local", "integration", "production"):
        flags = load_feature_flags(BUNDLED_FLAGS, env_name)
        assert set(flags.as_dict()) == set(FLAG_NAMES)


def test_production_disables_unfinished_collections() -> None:
    flags = load_feature_flags(BUNDLED_FLAGS, "production")
    assert flags.is_enabled("collections.generators")
    assert flags.is_enabled("collections.knowledgeBase")
    assert not flags.is_enabled("collections.charters")
    assert not flags.is_enabled("auth.socialLogin")


def test_missing_environment_disables_everything(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="toolsmith.features"):
        flags = load_feature_flags(BUNDLED_FLAGS, None)
    assert not any(value for values in flags.as_dict().values() for value in values.values())
    assert "ENV_NAME is not set" in caplog.text


def test_environment_absent_from_file(tmp_path: Path) -> None:
    path = tmp_path / "features.yaml"
    path.write_text("local:\n  collections:\n    generators: true\n", encoding="utf-8")

    assert load_feature_flags(path, "local").is_enabled("collections.generators")
    assert not load_feature_flags(path, "production").is_enabled("collections.generators")


@pytest.mark.parametrize(
    "flags",
    [
        {"billing": {"invoices": True}},
        {"collections": {"unknown": True}},
        {"collections": {"generators": "yes"}},
    ],
)
def test_invalid_flag_definitions_are_rejected(flags) -> None:
    with pytest.raises(ValueError):
        FeatureFlags(flags)


def test_unknown_flag_names_read_as_disabled() -> None:
    flags = FeatureFlags.all_enabled()
    assert flags.is_enabled("auth.passwordReset")
    assert not flags.is_enabled("auth.unknown")
    assert not flags.is_enabled("nonsense")


def test_require_dependency_raises_not_found() -> None:
    dependency = FeatureFlags().require("collections.generators")
    with pytest.raises(NotFoundError):
        dependency()
    FeatureFlags.all_enabled().require("collections.generators")()


def test_settings_from_env(tmp_path: Path) -> None:
    settings = Settings.from_env(
        {
            "ENV_NAME": "Integration",
            "TOOLSMITH_DB_PATH": str(tmp_path / "qa.sqlite3"),
            "TOOLSMITH_SESSION_SECURE": "false",
            "TOOLSMITH_TRUSTED_PROXIES": "10.0.0.1, 10.0.0.2",
            "TOOLSMITH_RATE_LIMIT_MAX": "5",
            "SUPABASE_URL": "https://example.supabase.co",
        }
    )

    assert settings.env_name == "integration"
    assert settings.database_path == (tmp_path / "qa.sqlite3").resolve()
    assert settings.session_secure is False
    assert settings.trusted_proxies == ("10.0.0.1", "10.0.0.2")
    assert settings.rate_limit_max == 5
    assert settings.rate_limit_window == 60
    assert settings.env_check()["SUPABASE_URL"] is True
    assert settings.env_check()["all_set"] is False


def test_settings_defaults_and_invalid_values() -> None:
    defaults = Settings.from_env({})
    assert defaults.env_name is None
    assert defaults.session_secure is True
    assert defaults.database_path.name == "toolsmith.sqlite3"

    assert Settings.from_env({"ENV_NAME": "staging"}).env_name is None

    with pytest.raises(ValueError):
        Settings.from_env({"TOOLSMITH_RATE_LIMIT_WINDOW": "soon"})
