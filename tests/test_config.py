"""Tests for licensor.config -- YAML config, env overrides and binding."""

from __future__ import annotations

import os
from unittest import mock

import pytest
import yaml

from licensor import parse_bool_env, parse_int_env
from licensor.config import bind_validation_options, get_config_path, load_config
from licensor.models import LicenseValidationOptions


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("LICENSOR_"):
            monkeypatch.delenv(name, raising=False)


def _write(path, data):
    path.write_text(yaml.safe_dump(data))
    return path


class TestConfigPath:
    def test_default(self):
        assert get_config_path().name == "config.yaml"
        assert get_config_path().parent.name == ".licensor"

    def test_env_override(self, tmp_path):
        with mock.patch.dict(os.environ, {"LICENSOR_CONFIG": str(tmp_path / "c.yaml")}):
            assert get_config_path() == tmp_path / "c.yaml"


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "nope.yaml")
        assert cfg.validation == LicenseValidationOptions()
        assert cfg.key_store.key_size == 2048

    def test_snake_case_section(self, tmp_path):
        path = _write(tmp_path / "c.yaml", {
            "license_validation": {"grace_period_days": 5, "enable_caching": False},
            "key_store": {"path": str(tmp_path / "keys"), "key_size": 3072, "passphrase_env": "MY_PASS"},
            "database": {"path": str(tmp_path / "x.db")},
            "logging": {"dir": str(tmp_path / "logs"), "level": "DEBUG"},
        })
        cfg = load_config(path)
        assert cfg.validation.grace_period_days == 5
        assert cfg.validation.enable_caching is False
        assert cfg.key_store.path == str(tmp_path / "keys")
        assert cfg.key_store.key_size == 3072
        assert cfg.db_path == str(tmp_path / "x.db")
        assert cfg.log_dir == str(tmp_path / "logs")
        assert cfg.log_level == "DEBUG"

    def test_pascal_case_section(self, tmp_path):
        path = _write(tmp_path / "c.yaml", {
            "LicenseValidation": {"GracePeriodDays": 7, "CacheDurationMinutes": 15, "AllowGracePeriod": False},
        })
        cfg = load_config(path)
        assert cfg.validation.grace_period_days == 7
        assert cfg.validation.cache_duration_minutes == 15
        assert cfg.validation.allow_grace_period is False

    def test_invalid_yaml_gives_defaults(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("license_validation: [unclosed")
        assert load_config(path).validation == LicenseValidationOptions()

    def test_env_overrides_file(self, tmp_path):
        path = _write(tmp_path / "c.yaml", {"license_validation": {"grace_period_days": 5}})
        env = {
            "LICENSOR_GRACE_PERIOD_DAYS": "9",
            "LICENSOR_ENABLE_AUDIT_LOGGING": "false",
            "LICENSOR_DB_PATH": str(tmp_path / "env.db"),
        }
        with mock.patch.dict(os.environ, env):
            cfg = load_config(path)
        assert cfg.validation.grace_period_days == 9
        assert cfg.validation.enable_audit_logging is False
        assert cfg.db_path == str(tmp_path / "env.db")

    def test_negative_env_value_ignored(self, tmp_path):
        with mock.patch.dict(os.environ, {"LICENSOR_CACHE_DURATION_MINUTES": "-5"}):
            cfg = load_config(tmp_path / "nope.yaml")
        assert cfg.validation.cache_duration_minutes == 60

    def test_passphrase_from_env(self, tmp_path):
        path = _write(tmp_path / "c.yaml", {"key_store": {"passphrase_env": "MY_PASS"}})
        with mock.patch.dict(os.environ, {"MY_PASS": "hunter2"}):
            assert load_config(path).key_store.passphrase() == "hunter2"
        assert load_config(path).key_store.passphrase() is None

    def test_unknown_top_level_key_warns(self, tmp_path, caplog):
        path = _write(tmp_path / "c.yaml", {"bogus": 1})
        load_config(path)
        assert "unknown key 'bogus'" in caplog.text


class TestBindValidationOptions:
    def test_wrong_types_keep_defaults(self, caplog):
        opts = bind_validation_options({"grace_period_days": "ten", "enable_caching": "yes"})
        assert opts.grace_period_days == 30
        assert opts.enable_caching is True
        assert "must be an integer" in caplog.text
        assert "must be a boolean" in caplog.text

    def test_negative_value_rejected(self):
        assert bind_validation_options({"grace_period_days": -1}).grace_period_days == 30

    def test_unknown_setting_ignored(self, caplog):
        bind_validation_options({"MaxRetries": 3})
        assert "Unknown license_validation setting" in caplog.text

    def test_non_mapping(self):
        assert bind_validation_options([1, 2]) == LicenseValidationOptions()

    def test_zero_limits_allowed(self):
        opts = bind_validation_options({"grace_period_days": 0, "cache_duration_minutes": 0})
        assert opts.grace_period_days == 0
        assert opts.cache_duration_minutes == 0


class TestEnvParsing:
    @pytest.mark.parametrize("raw,expected", [("1", True), ("on", True), ("No", False), ("maybe", True)])
    def test_parse_bool_env(self, raw, expected):
        with mock.patch.dict(os.environ, {"LICENSOR_FLAG": raw}):
            assert parse_bool_env("LICENSOR_FLAG", True) is expected

    def test_parse_int_env(self):
        with mock.patch.dict(os.environ, {"LICENSOR_N": "12"}):
            assert parse_int_env("LICENSOR_N", 3) == 12
        with mock.patch.dict(os.environ, {"LICENSOR_N": "twelve"}):
            assert parse_int_env("LICENSOR_N", 3) == 3
        assert parse_int_env("LICENSOR_UNSET", 3) == 3
