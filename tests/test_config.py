"""
test_config.py

Unit tests for the settings object and config-file discovery.
"""

from pydantic import ValidationError
import pytest

import family_screen_time.config as config_mod
from family_screen_time.config import Settings


def _settings(**overrides):
    return Settings(_env_file=None, **overrides)


@pytest.mark.parametrize("placeholder", ["change-me", "PLEASE_CHANGE", "0000", "1234"])
def test_placeholder_passcode_rejected(placeholder):
    with pytest.raises(ValidationError):
        _settings(GUARDIAN_PASSCODE=placeholder)


def test_real_passcode_accepted():
    settings = _settings(GUARDIAN_PASSCODE="8642")
    assert settings.passcode_configured
    assert settings.GUARDIAN_PASSCODE.get_secret_value() == "8642"
    assert "8642" not in repr(settings.GUARDIAN_PASSCODE)


def test_empty_passcode_is_not_configured():
    assert not _settings(GUARDIAN_PASSCODE="").passcode_configured


def test_store_backend_normalized_and_validated():
    assert _settings(STORE_BACKEND=" Memory ").STORE_BACKEND == "memory"
    with pytest.raises(ValidationError):
        _settings(STORE_BACKEND="sqlite")


def test_family_timezone_validated():
    assert _settings(FAMILY_TIMEZONE="Europe/Berlin").FAMILY_TIMEZONE == "Europe/Berlin"
    with pytest.raises(ValidationError):
        _settings(FAMILY_TIMEZONE="Moon/Base")


@pytest.mark.parametrize("field", ["MIN_SESSION_MINUTES", "STORE_CAS_MAX_ATTEMPTS", "EVENT_LOG_PAGE_SIZE"])
def test_positive_integers(field):
    with pytest.raises(ValidationError):
        _settings(**{field: 0})


def test_cors_origins_list():
    settings = _settings(CORS_ORIGINS="http://a.test, ,http://b.test")
    assert settings.cors_origins_list == ["http://a.test", "http://b.test"]


def test_config_path_from_env_var(monkeypatch, tmp_path):
    config_file = tmp_path / "custom.env"
    config_file.write_text("LOG_LEVEL=DEBUG\n")
    monkeypatch.setenv(config_mod.CONFIG_ENV_VAR, str(config_file))
    assert config_mod.get_config_path() == str(config_file)


def test_missing_env_var_path_falls_through(monkeypatch, tmp_path):
    monkeypatch.setenv(config_mod.CONFIG_ENV_VAR, str(tmp_path / "missing.env"))
    monkeypatch.setattr(config_mod, "PROJECT_ROOT", tmp_path)
    assert config_mod.get_config_path() is None

    (tmp_path / ".fst").write_text("")
    assert config_mod.get_config_path() == str(tmp_path / ".fst")
