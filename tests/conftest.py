"""Shared fixtures for the licensor test suite.

RSA key generation is slow, so one 2048-bit key pair is generated per
session and reused by every fixture that needs signing material.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

import pytest

from licensor.crypto import (
    KeyPair,
    compute_checksum,
    compute_thumbprint,
    generate_key_pair,
    sign_data,
)
from licensor.decoder import encode_license
from licensor.keys import FileKeyStore
from licensor.models import License, LicenseFeature, SignedLicense
from licensor.persistence import LicensorDB

PRODUCT_ID = "acme-cad"
CONSUMER_ID = "consumer-42"

# Fixed "now" used by clock-driven tests.
NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_license(**overrides) -> License:
    kwargs = {
        "license_id": "lic-0001",
        "product_id": PRODUCT_ID,
        "consumer_id": CONSUMER_ID,
        "valid_from": utc(2024, 1, 1),
        "valid_to": utc(2025, 1, 1),
        "features_included": (
            LicenseFeature(name="Export"),
            LicenseFeature(name="Render"),
            LicenseFeature(name="Legacy", is_currently_valid=False),
        ),
        "licensed_to": "Acme Corp",
        "contact_email": "ops@acme.test",
        "issued_at": utc(2024, 1, 1),
    }
    kwargs.update(overrides)
    return License(**kwargs)


def sign_license(license: License, key_pair: KeyPair) -> SignedLicense:
    """Encode and sign *license* the same way the generator does."""
    license_data = encode_license(license)
    return SignedLicense(
        license_data=license_data,
        signature=sign_data(license_data.encode("ascii"), key_pair.private_key_pem),
        public_key_thumbprint=compute_thumbprint(key_pair.public_key_pem),
        checksum=compute_checksum(license_data),
        created_at=utc(2024, 1, 1),
    )


@pytest.fixture(autouse=True)
def _isolate_file_logging():
    """Drop rotating file handlers that a test installed on the root logger."""
    root = logging.getLogger()
    level = root.level
    before = set(root.handlers)
    for handler in list(root.handlers):
        if isinstance(handler, RotatingFileHandler):
            root.removeHandler(handler)
    yield
    for handler in list(root.handlers):
        if isinstance(handler, RotatingFileHandler) and handler not in before:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def key_pair() -> KeyPair:
    return generate_key_pair(2048)


@pytest.fixture(scope="session")
def other_key_pair() -> KeyPair:
    return generate_key_pair(2048)


@pytest.fixture()
def key_store(tmp_path, key_pair) -> FileKeyStore:
    """Key store holding the session key pair for :data:`PRODUCT_ID`."""
    store = FileKeyStore(tmp_path / "keys")
    store.store_key_pair(PRODUCT_ID, key_pair.private_key_pem, key_pair.public_key_pem)
    return store


@pytest.fixture()
def db(tmp_path):
    database = LicensorDB(db_path=str(tmp_path / "licensor.db"))
    yield database
    database.close()


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture()
def signed_license(key_pair) -> SignedLicense:
    return sign_license(make_license(), key_pair)
