"""Core license data model.

Defines the decoded license payload (:class:`License`), the signed
envelope that carries it (:class:`SignedLicense`), and the options and
result types used by :mod:`licensor.validation`.

Wire format
-----------
Both the envelope and the embedded payload are JSON documents with
camelCase field names::

    {
      "licenseData": "<base64 payload>",
      "signature": "<base64 RSA signature>",
      "signatureAlgorithm": "RS256",
      "publicKeyThumbprint": "...",
      "checksum": "...",
      "formatVersion": "1.0",
      "createdAt": "2024-01-01T00:00:00Z"
    }

Field lookup when reading is case-insensitive and ignores underscores, so
``licenseId``, ``LicenseId`` and ``license_id`` all bind to the same
attribute.
"""

from __future__ import annotations

import enum
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class LicenseStatus(enum.Enum):
    """Status of a license, or the outcome of validating one."""

    ACTIVE = "active"
    VALID = "active"  # alias of ACTIVE
    PENDING = "pending"
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"
    INVALID = "invalid"
    CORRUPTED = "corrupted"
    NOT_FOUND = "not_found"
    SERVICE_UNAVAILABLE = "service_unavailable"
    GRACE_PERIOD = "grace_period"
    REVOKED = "revoked"
    SUSPENDED = "suspended"
    RENEWAL_PENDING = "renewal_pending"
    ARCHIVED = "archived"


class LicenseTier(enum.Enum):
    """License tiers with increasing feature sets."""

    COMMUNITY = "community"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Any) -> LicenseTier:
        """Parse a tier from its name, value, or legacy integer code."""
        if isinstance(value, LicenseTier):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid license tier: {value!r}")
        if isinstance(value, int):
            codes = {0: cls.COMMUNITY, 1: cls.PROFESSIONAL, 2: cls.ENTERPRISE, 99: cls.CUSTOM}
            if value not in codes:
                raise ValueError(f"Invalid license tier code: {value}")
            return codes[value]
        text = str(value).strip().lower()
        for tier in cls:
            if tier.value == text:
                return tier
        raise ValueError(f"Invalid license tier: {value!r}")


class LicenseOperation(enum.Enum):
    """Operations recorded in the audit trail."""

    CREATED = "created"
    MODIFIED = "modified"
    ACTIVATED = "activated"
    RENEWED = "renewed"
    REVOKED = "revoked"
    SUSPENDED = "suspended"
    ARCHIVED = "archived"
    DOWNLOADED = "downloaded"
    VALIDATED = "validated"


# ---------------------------------------------------------------------------
# Date and field helpers
# ---------------------------------------------------------------------------

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp (``Z`` suffix allowed) into UTC.

    Fractional seconds beyond microsecond precision are truncated.

    :raises ValueError: If *value* is not a datetime or ISO 8601 string.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(r"\1", text)
    return ensure_utc(datetime.fromisoformat(text))


def format_datetime(value: datetime) -> str:
    """Format a datetime as ISO 8601 UTC with a ``Z`` suffix."""
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def format_display(value: datetime) -> str:
    """Format a datetime the way validation messages show it."""
    return ensure_utc(value).strftime("%Y-%m-%d %H:%M:%S")


def _normalise_key(key: str) -> str:
    return key.replace("_", "").lower()


def _fields(data: Mapping[str, Any]) -> dict[str, Any]:
    """Index a JSON object by normalised (case/underscore-free) key."""
    if not isinstance(data, Mapping):
        raise TypeError(f"Expected a JSON object, got {type(data).__name__}")
    return {_normalise_key(str(k)): v for k, v in data.items()}


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Expected an integer, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"Expected an integer, got {value!r}")
    return int(value)


def _string(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValueError(f"Expected a string, got {type(value).__name__}")
    return value


# ---------------------------------------------------------------------------
# License payload
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LicenseFeature:
    """A feature granted by a license."""

    name: str
    description: str = ""
    is_currently_valid: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "isCurrentlyValid": self.is_currently_valid,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LicenseFeature:
        f = _fields(data)
        name = _string(f.get("name"))
        if not name:
            raise ValueError("Feature name is required")
        is_currently_valid = f.get("iscurrentlyvalid")
        if is_currently_valid is None:
            is_currently_valid = True
        elif not isinstance(is_currently_valid, bool):
            raise ValueError("isCurrentlyValid must be a boolean")
        return cls(
            name=name,
            description=_string(f.get("description")),
            is_currently_valid=is_currently_valid,
        )


def _default_valid_to() -> datetime:
    return utc_now() + timedelta(days=365)


@dataclass(frozen=True)
class License:
    """Decoded license payload.

    Instances are immutable: renewals and status changes are expressed by
    issuing a new license, never by editing an issued payload.

    :param license_id: Unique license identifier.
    :param product_id: Product the license grants access to.
    :param consumer_id: Consumer the license was issued to.
    :param valid_from: Start of the validity window (UTC).
    :param valid_to: End of the validity window (UTC).
    :param features_included: Ordered features granted by the license.
    :param metadata: Free-form string metadata stamped at generation time.
    """

    license_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    product_id: str = ""
    consumer_id: str = ""
    valid_from: datetime = field(default_factory=utc_now)
    valid_to: datetime = field(default_factory=_default_valid_to)
    features_included: tuple[LicenseFeature, ...] = ()
    licensed_to: str = ""
    contact_person: str = ""
    contact_email: str = ""
    tier: LicenseTier = LicenseTier.COMMUNITY
    max_api_calls_per_month: Optional[int] = None
    max_concurrent_connections: Optional[int] = None
    issued_at: datetime = field(default_factory=utc_now)
    issuer: str = "Licensor"
    version: str = "1.0"
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "valid_from", ensure_utc(self.valid_from))
        object.__setattr__(self, "valid_to", ensure_utc(self.valid_to))
        object.__setattr__(self, "issued_at", ensure_utc(self.issued_at))
        object.__setattr__(self, "features_included", tuple(self.features_included))
        if self.valid_from > self.valid_to:
            raise ValueError("License valid_from must not be after valid_to")

    def has_feature(self, name: str) -> bool:
        """Return ``True`` if *name* is included (case-insensitive)."""
        return self.get_feature(name) is not None

    def get_feature(self, name: str) -> Optional[LicenseFeature]:
        wanted = name.lower()
        for feature in self.features_included:
            if feature.name.lower() == wanted:
                return feature
        return None

    def expires_within(self, days: int, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return (self.valid_to - now) <= timedelta(days=days)

    def days_until_expiry(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        return max(0, (self.valid_to - now).days)

    def to_dict(self) -> dict[str, Any]:
        """Serialise to the camelCase payload document."""
        return {
            "licenseId": self.license_id,
            "productId": self.product_id,
            "consumerId": self.consumer_id,
            "validFrom": format_datetime(self.valid_from),
            "validTo": format_datetime(self.valid_to),
            "featuresIncluded": [f.to_dict() for f in self.features_included],
            "licensedTo": self.licensed_to,
            "contactPerson": self.contact_person,
            "contactEmail": self.contact_email,
            "tier": self.tier.value,
            "maxApiCallsPerMonth": self.max_api_calls_per_month,
            "maxConcurrentConnections": self.max_concurrent_connections,
            "issuedAt": format_datetime(self.issued_at),
            "issuer": self.issuer,
            "version": self.version,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> License:
        """Build a license from a payload document.

        :raises ValueError: On missing identifiers, bad timestamps, or an
            inverted validity window.
        :raises TypeError: If *data* or a nested value has the wrong shape.
        """
        f = _fields(data)
        license_id = _string(f.get("licenseid"))
        if not license_id:
            raise ValueError("licenseId is required")
        if "validfrom" not in f or "validto" not in f:
            raise ValueError("validFrom and validTo are required")

        features_raw = f.get("featuresincluded") or []
        if not isinstance(features_raw, list):
            raise TypeError("featuresIncluded must be a list")
        metadata_raw = f.get("metadata") or {}
        if not isinstance(metadata_raw, Mapping):
            raise TypeError("metadata must be an object")

        kwargs: dict[str, Any] = {
            "license_id": license_id,
            "product_id": _string(f.get("productid")),
            "consumer_id": _string(f.get("consumerid")),
            "valid_from": parse_datetime(f["validfrom"]),
            "valid_to": parse_datetime(f["validto"]),
            "features_included": tuple(LicenseFeature.from_dict(item) for item in features_raw),
            "licensed_to": _string(f.get("licensedto")),
            "contact_person": _string(f.get("contactperson")),
            "contact_email": _string(f.get("contactemail")),
            "max_api_calls_per_month": _optional_int(f.get("maxapicallspermonth")),
            "max_concurrent_connections": _optional_int(f.get("maxconcurrentconnections")),
            "metadata": {str(k): "" if v is None else str(v) for k, v in metadata_raw.items()},
        }
        if f.get("tier") is not None:
            kwargs["tier"] = LicenseTier.parse(f["tier"])
        if f.get("issuedat") is not None:
            kwargs["issued_at"] = parse_datetime(f["issuedat"])
        if f.get("issuer") is not None:
            kwargs["issuer"] = _string(f["issuer"])
        if f.get("version") is not None:
            kwargs["version"] = str(f["version"])
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Signed envelope
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignedLicense:
    """A license payload plus its detached RSA signature.

    :param license_data: Base64 of the UTF-8 JSON payload.
    :param signature: Base64 RSA-SHA256 (PKCS#1 v1.5) signature over the
        ASCII bytes of *license_data*.
    :param public_key_thumbprint: Base64 SHA-256 of the signer's public
        key PEM.
    :param checksum: Base64 SHA-256 of *license_data*.
    """

    license_data: str
    signature: str
    public_key_thumbprint: str = ""
    checksum: str = ""
    format_version: str = "1.0"
    signature_algorithm: str = "RS256"
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "licenseData": self.license_data,
            "signature": self.signature,
            "signatureAlgorithm": self.signature_algorithm,
            "publicKeyThumbprint": self.public_key_thumbprint,
            "checksum": self.checksum,
            "formatVersion": self.format_version,
            "createdAt": format_datetime(self.created_at),
        }

    def to_json(self, *, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SignedLicense:
        """Build an envelope from a JSON object.

        Missing text fields default to empty strings; a present field of
        the wrong type raises :class:`ValueError`.
        """
        f = _fields(data)
        kwargs: dict[str, Any] = {
            "license_data": _string(f.get("licensedata")),
            "signature": _string(f.get("signature")),
            "public_key_thumbprint": _string(f.get("publickeythumbprint")),
            "checksum": _string(f.get("checksum")),
            "format_version": _string(f.get("formatversion"), "1.0"),
            "signature_algorithm": _string(f.get("signaturealgorithm"), "RS256"),
        }
        if f.get("createdat") is not None:
            kwargs["created_at"] = parse_datetime(f["createdat"])
        return cls(**kwargs)

    @classmethod
    def from_json(cls, text: str) -> SignedLicense:
        """Parse an envelope from JSON text.

        :raises json.JSONDecodeError: If *text* is not JSON.
        :raises TypeError: If the document is not a JSON object.
        :raises ValueError: If a field has the wrong type.
        """
        return cls.from_dict(json.loads(text))


# ---------------------------------------------------------------------------
# Validation options and results
# ---------------------------------------------------------------------------


@dataclass
class LicenseValidationOptions:
    """Switches and limits for one validation call.

    :param grace_period_days: Days after ``valid_to`` during which an
        expired license is still accepted (when *allow_grace_period*).
    :param cache_duration_minutes: TTL of cached validation results.
    """

    enable_caching: bool = True
    validate_signature: bool = True
    validate_dates: bool = True
    allow_grace_period: bool = True
    grace_period_days: int = 30
    cache_duration_minutes: int = 60
    enable_audit_logging: bool = True

    def validate(self) -> None:
        """Raise :class:`ValueError` for out-of-range limits."""
        if self.grace_period_days < 0:
            raise ValueError("grace_period_days must be >= 0")
        if self.cache_duration_minutes < 0:
            raise ValueError("cache_duration_minutes must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "enable_caching": self.enable_caching,
            "validate_signature": self.validate_signature,
            "validate_dates": self.validate_dates,
            "allow_grace_period": self.allow_grace_period,
            "grace_period_days": self.grace_period_days,
            "cache_duration_minutes": self.cache_duration_minutes,
            "enable_audit_logging": self.enable_audit_logging,
        }


@dataclass
class LicenseValidationResult:
    """Outcome of validating a signed license.

    ``is_valid`` is true only for :attr:`LicenseStatus.ACTIVE` and
    :attr:`LicenseStatus.GRACE_PERIOD`.  ``available_features`` holds the
    names of features flagged as currently valid.
    """

    status: LicenseStatus
    license: Optional[License] = None
    validation_messages: list[str] = field(default_factory=list)
    is_grace_period: bool = False
    grace_period_expiry: Optional[datetime] = None
    validated_at: datetime = field(default_factory=utc_now)
    is_signature_valid: bool = False
    are_dates_valid: bool = False
    available_features: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.status in (LicenseStatus.ACTIVE, LicenseStatus.GRACE_PERIOD)

    def add_message(self, message: str) -> None:
        """Append a message stamped with the validation time."""
        self.validation_messages.append(f"{format_display(self.validated_at)} - {message}")

    @classmethod
    def success(cls, license: License, *, now: Optional[datetime] = None) -> LicenseValidationResult:
        return cls(
            status=LicenseStatus.ACTIVE,
            license=license,
            validated_at=now or utc_now(),
            is_signature_valid=True,
            are_dates_valid=True,
            available_features=[f.name for f in license.features_included if f.is_currently_valid],
        )

    @classmethod
    def failure(
        cls,
        status: LicenseStatus,
        message: str,
        *,
        license: Optional[License] = None,
        now: Optional[datetime] = None,
    ) -> LicenseValidationResult:
        result = cls(status=status, license=license, validated_at=now or utc_now())
        result.add_message(message)
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "is_valid": self.is_valid,
            "is_signature_valid": self.is_signature_valid,
            "are_dates_valid": self.are_dates_valid,
            "is_grace_period": self.is_grace_period,
            "grace_period_expiry": (
                format_datetime(self.grace_period_expiry) if self.grace_period_expiry else None
            ),
            "validated_at": format_datetime(self.validated_at),
            "available_features": list(self.available_features),
            "validation_messages": list(self.validation_messages),
            "license": self.license.to_dict() if self.license else None,
        }
