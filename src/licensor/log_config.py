"""Log rotation and secret scrubbing for licensor.

Signing keys pass through this process as PEM text, so every record is
scrubbed before it is written: private key bodies and the values of
``passphrase``, ``password``, ``secret`` and ``token`` pairs become
``***REDACTED***``.
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FILE_NAME = "licensor.log"
LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_DEFAULT_LOG_DIR = Path.home() / ".licensor" / "logs"
_REDACTED = "***REDACTED***"
_SECRET_NAMES = ("passphrase", "password", "secret", "token")

_PEM_PRIVATE_KEY = re.compile(
    r"-----BEGIN ((?:RSA |ENCRYPTED )?PRIVATE KEY)-----.*?-----END \1-----",
    re.DOTALL,
)
# name, optional closing quote, ':' or '=', optional opening quote, then the value
_SECRET_PAIR = re.compile(
    r"""((?:%s)["']?\s*[:=]\s*["']?)[^"'\s,{}\]]+""" % "|".join(_SECRET_NAMES),
    re.IGNORECASE,
)


def scrub(text: str) -> str:
    """Return *text* with private keys and secret values redacted."""
    text = _PEM_PRIVATE_KEY.sub(
        lambda m: f"-----BEGIN {m.group(1)}-----{_REDACTED}-----END {m.group(1)}-----",
        text,
    )
    return _SECRET_PAIR.sub(lambda m: m.group(1) + _REDACTED, text)


class ScrubFilter(logging.Filter):
    """Redacts secrets from the fully formatted message of each record.

    The message is rendered once with its arguments, scrubbed, and stored
    back on the record with the arguments cleared, so secrets split across
    the format string and its arguments are still caught.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = scrub(message)
        record.args = None
        return True


def _rotating_handler(root: logging.Logger) -> Optional[RotatingFileHandler]:
    for handler in root.handlers:
        if isinstance(handler, RotatingFileHandler):
            return handler
    return None


def configure_logging(
    log_dir: Optional[str] = None,
    *,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
    level: Optional[str] = None,
) -> str:
    """Send root logging to a rotating ``licensor.log`` with scrubbing.

    Safe to call repeatedly: the level is updated but a second file
    handler is never added.

    :param log_dir: Directory for the log file.  Defaults to
        ``LICENSOR_LOG_DIR``, then ``~/.licensor/logs``.
    :param level: Level name.  Defaults to ``LICENSOR_LOG_LEVEL``, then
        ``INFO``.
    :returns: Path of the active log file.
    """
    directory = Path(log_dir or os.environ.get("LICENSOR_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    level_name = (level or os.environ.get("LICENSOR_LOG_LEVEL") or "INFO").upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    root = logging.getLogger()
    root.setLevel(log_level)

    handler = _rotating_handler(root)
    if handler is None:
        directory.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            directory / LOG_FILE_NAME,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        root.addHandler(handler)
    handler.setLevel(log_level)

    for existing in root.handlers:
        if not any(isinstance(f, ScrubFilter) for f in existing.filters):
            existing.addFilter(ScrubFilter())
    return handler.baseFilename
