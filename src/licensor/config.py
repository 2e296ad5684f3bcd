"""Configuration for licensor.

Settings live in ``~/.licensor/config.yaml`` (override the path with
``LICENSOR_CONFIG``)::

    license_validation:          # alias: LicenseValidation
      grace_period_days: 30      # or GracePeriodDays
      cache_duration_minutes: 60
      enable_caching: true
      validate_signature: true
      validate_dates: true
      allow_grace_period: true
      enable_audit_logging: true
    key_store:
      path: ~/.licensor/keys
      key_size: 2048
      passphrase_env: LICENSOR_KEY_PASSPHRASE
    database:
      path: ~/.licensor/licensor.db
    logging:
      dir: ~/.licensor/logs
      level: INFO

Precedence (highest first):
    1. CLI flags
    2. Environment variables (``LICENSOR_GRACE_PERIOD_DAYS``, etc.)
    3. Config file
    4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
import re
import stat
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from licensor import parse_bool_env, parse_int_env
from licensor.models import LicenseValidationOptions

logger = logging.getLogger(__name__)

# Valid top-level keys in the config file.  Used for schema validation.
_KNOWN_KEYS: set[str] = {
    "license_validation",
    "LicenseValidation",
    "key_store",
    "database",
    "logging",
}

_VALIDATION_SECTION_KEYS = ("license_validation", "LicenseValidation")

_BOOL_ENV = {
    "enable_caching": "LICENSOR_ENABLE_CACHING",
    "validate_signature": "LICENSOR_VALIDATE_SIGNATURE",
    "validate_dates": "LICENSOR_VALIDATE_DATES",
    "allow_grace_period": "LICENSOR_ALLOW_GRACE_PERIOD",
    "enable_audit_logging": "LICENSOR_ENABLE_AUDIT_LOGGING",
}
_INT_ENV = {
    "grace_period_days": "LICENSOR_GRACE_PERIOD_DAYS",
    "cache_duration_minutes": "LICENSOR_CACHE_DURATION_MINUTES",
}


def get_config_path() -> Path:
    """Return the config file path (``LICENSOR_CONFIG`` or ``~/.licensor/config.yaml``)."""
    env_path = os.environ.get("LICENSOR_CONFIG", "").strip()
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".licensor" / "config.yaml"


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass
class KeyStoreSettings:
    path: str = field(default_factory=lambda: str(Path.home() / ".licensor" / "keys"))
    key_size: int = 2048
    passphrase_env: Optional[str] = None

    def passphrase(self) -> Optional[str]:
        """Read the private-key passphrase from the configured env var."""
        if not self.passphrase_env:
            return None
        return os.environ.get(self.passphrase_env) or None


@dataclass
class LicensorConfig:
    """Resolved configuration."""

    validation: LicenseValidationOptions = field(default_factory=LicenseValidationOptions)
    key_store: KeyStoreSettings = field(default_factory=KeyStoreSettings)
    db_path: str = field(default_factory=lambda: str(Path.home() / ".licensor" / "licensor.db"))
    log_dir: Optional[str] = None
    log_level: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "license_validation": self.validation.to_dict(),
            "key_store": {
                "path": self.key_store.path,
                "key_size": self.key_store.key_size,
                "passphrase_env": self.key_store.passphrase_env,
            },
            "database": {"path": self.db_path},
            "logging": {"dir": self.log_dir, "level": self.log_level},
        }


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------


def _check_file_permissions(path: Path) -> None:
    """Warn if *path* is readable by group or others."""
    if sys.platform == "win32":
        return
    try:
        mode = path.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH):
            logger.warning(
                "Config file %s has overly permissive permissions (mode %04o). Recommended: chmod 600 %s",
                path,
                stat.S_IMODE(mode),
                path,
            )
    except OSError:
        logger.debug("Could not stat config file %s", path)


def _validate_config_schema(data: dict[str, Any], path: Path) -> None:
    """Log warnings for unknown keys in the config file."""
    unknown = set(data.keys()) - _KNOWN_KEYS
    for key in sorted(unknown):
        logger.warning(
            "Config file %s contains unknown key %r (expected one of: %s)",
            path,
            key,
            ", ".join(sorted(_KNOWN_KEYS)),
        )


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read and parse the YAML config file; return ``{}`` on any failure."""
    if not path.is_file():
        return {}
    _check_file_permissions(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        if not isinstance(data, dict):
            return {}
        _validate_config_schema(data, path)
        return data
    except yaml.YAMLError as exc:
        logger.warning("Config file %s has invalid YAML: %s", path, exc)
        return {}
    except OSError as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return {}


def _snake_case(key: str) -> str:
    """``GracePeriodDays`` -> ``grace_period_days``; snake_case passes through."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key.strip()).lower()


def bind_validation_options(section: Any, base: Optional[LicenseValidationOptions] = None) -> LicenseValidationOptions:
    """Bind a ``LicenseValidation`` mapping onto validation options.

    Keys may be snake_case or PascalCase.  Values of the wrong type and
    out-of-range limits are reported as warnings and the previous value
    is kept.
    """
    options = base or LicenseValidationOptions()
    if not isinstance(section, dict):
        if section is not None:
            logger.warning("license_validation section must be a mapping, got %s", type(section).__name__)
        return options

    known = {f.name: f for f in fields(LicenseValidationOptions)}
    for raw_key, value in section.items():
        name = _snake_case(str(raw_key))
        if name not in known:
            logger.warning("Unknown license_validation setting %r", raw_key)
            continue
        default = getattr(options, name)
        if isinstance(default, bool):
            if not isinstance(value, bool):
                logger.warning("license_validation.%s must be a boolean, got %r", name, value)
                continue
        elif isinstance(value, bool) or not isinstance(value, int):
            logger.warning("license_validation.%s must be an integer, got %r", name, value)
            continue
        setattr(options, name, value)
        try:
            options.validate()
        except ValueError as exc:
            logger.warning("Invalid license_validation.%s=%r (%s); keeping %r", name, value, exc, default)
            setattr(options, name, default)
    return options


def _apply_env_overrides(options: LicenseValidationOptions) -> None:
    for name, env_var in _BOOL_ENV.items():
        setattr(options, name, parse_bool_env(env_var, getattr(options, name)))
    for name, env_var in _INT_ENV.items():
        previous = getattr(options, name)
        setattr(options, name, parse_int_env(env_var, previous))
        try:
            options.validate()
        except ValueError as exc:
            logger.warning("Invalid %s (%s); keeping %d", env_var, exc, previous)
            setattr(options, name, previous)


def load_config(config_path: Optional[Path] = None) -> LicensorConfig:
    """Load configuration from file and environment.

    Never raises for bad content: problems are logged and defaults kept.
    """
    path = config_path or get_config_path()
    raw = _read_config_file(path)
    config = LicensorConfig()

    section = None
    for key in _VALIDATION_SECTION_KEYS:
        if key in raw:
            section = raw[key]
            break
    config.validation = bind_validation_options(section)
    _apply_env_overrides(config.validation)

    key_store = raw.get("key_store") or {}
    if isinstance(key_store, dict):
        if key_store.get("path"):
            config.key_store.path = str(Path(str(key_store["path"])).expanduser())
        key_size = key_store.get("key_size")
        if isinstance(key_size, int) and not isinstance(key_size, bool):
            config.key_store.key_size = key_size
        elif key_size is not None:
            logger.warning("key_store.key_size must be an integer, got %r", key_size)
        if key_store.get("passphrase_env"):
            config.key_store.passphrase_env = str(key_store["passphrase_env"])

    database = raw.get("database") or {}
    if isinstance(database, dict) and database.get("path"):
        config.db_path = str(Path(str(database["path"])).expanduser())
    env_db = os.environ.get("LICENSOR_DB_PATH", "").strip()
    if env_db:
        config.db_path = env_db

    log_section = raw.get("logging") or {}
    if isinstance(log_section, dict):
        if log_section.get("dir"):
            config.log_dir = str(Path(str(log_section["dir"])).expanduser())
        if log_section.get("level"):
            config.log_level = str(log_section["level"])

    return config
