"""License validation pipeline.

:class:`LicenseValidationService` checks a signed license in stages::

    1. decode             failure -> CORRUPTED
    2. public key lookup  missing or unusable product id -> INVALID
    3. cache lookup       hit returns the cached result
    4. signature check    mismatch -> INVALID
    5. date check         NOT_YET_VALID / EXPIRED / GRACE_PERIOD
    6. feature extraction
    7. cache store        successes and date failures only
    8. audit              best-effort

No stage raises to the caller: any unexpected exception becomes a
``SERVICE_UNAVAILABLE`` result.  Decode, key and signature failures are
never cached.  The cache key names the key the signature is checked against
and a digest of both the license data and its signature, so a hit is only
possible for the exact envelope that was verified before.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta
from typing import Callable, Optional

from licensor.audit import AuditEntry, AuditSink, record_audit
from licensor.crypto import compute_thumbprint, verify_signature
from licensor.dates import evaluate_dates
from licensor.decoder import decode_license
from licensor.keys import KeyRepository
from licensor.models import (
    LicenseOperation,
    LicenseStatus,
    LicenseValidationOptions,
    LicenseValidationResult,
    SignedLicense,
    utc_now,
)
from licensor.result_cache import (
    UNVERIFIED_KEY,
    ValidationResultCache,
    envelope_digest,
    make_cache_key,
)

logger = logging.getLogger(__name__)


class LicenseValidationService:
    """Validates signed licenses against product public keys.

    :param key_repository: Looks up a product's public key when the caller
        does not supply one.
    :param options: Default options, used when a call passes none.
    :param cache: Shared result cache.  A private one is created if omitted.
    :param audit_sink: Receives one entry per validation attempt when
        ``enable_audit_logging`` is on.
    :param clock: Callable returning the current UTC time.
    """

    def __init__(
        self,
        key_repository: Optional[KeyRepository] = None,
        *,
        options: Optional[LicenseValidationOptions] = None,
        cache: Optional[ValidationResultCache] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._keys = key_repository
        self._options = options or LicenseValidationOptions()
        self._clock = clock or utc_now
        self._cache = cache if cache is not None else ValidationResultCache(clock=self._clock)
        self._audit_sink = audit_sink

    @property
    def default_options(self) -> LicenseValidationOptions:
        return self._options

    @property
    def cache(self) -> ValidationResultCache:
        return self._cache

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def validate(
        self,
        signed_license: SignedLicense,
        public_key: Optional[str] = None,
        options: Optional[LicenseValidationOptions] = None,
    ) -> LicenseValidationResult:
        """Validate *signed_license*.

        :param public_key: PEM public key.  When omitted and signature
            checking is on, the key is looked up by the payload's product id.
        :param options: Per-call options; the service defaults otherwise.
        """
        opts = options or self._options
        now = self._clock()
        try:
            return self._run(signed_license, public_key, opts, now)
        except Exception as exc:
            logger.exception("License validation failed with exception")
            result = LicenseValidationResult.failure(
                LicenseStatus.SERVICE_UNAVAILABLE,
                f"License validation service encountered an error: {exc}",
                now=now,
            )
            self._audit(result, opts)
            return result

    def validate_from_json(
        self,
        license_json: str,
        public_key: Optional[str] = None,
        options: Optional[LicenseValidationOptions] = None,
    ) -> LicenseValidationResult:
        """Parse a JSON envelope and validate it."""
        now = self._clock()
        try:
            document = json.loads(license_json)
        except (json.JSONDecodeError, TypeError) as exc:
            logger.error("Failed to parse license JSON: %s", exc)
            return LicenseValidationResult.failure(
                LicenseStatus.CORRUPTED, "License JSON parsing failed", now=now
            )
        if not isinstance(document, dict):
            return LicenseValidationResult.failure(
                LicenseStatus.CORRUPTED, "Invalid license JSON format", now=now
            )
        try:
            signed_license = SignedLicense.from_dict(document)
        except (TypeError, ValueError) as exc:
            logger.error("License JSON has invalid fields: %s", exc)
            return LicenseValidationResult.failure(
                LicenseStatus.CORRUPTED, "Invalid license JSON format", now=now
            )
        return self.validate(signed_license, public_key, options)

    def validate_from_file(
        self,
        license_path: str | os.PathLike[str],
        public_key_path: Optional[str | os.PathLike[str]] = None,
        options: Optional[LicenseValidationOptions] = None,
    ) -> LicenseValidationResult:
        """Read a license (and optionally a public key) from disk and validate.

        Without *public_key_path* the key comes from the key repository.
        """
        now = self._clock()
        paths = [license_path] if public_key_path is None else [license_path, public_key_path]
        missing = [str(p) for p in paths if not os.path.isfile(p)]
        if missing:
            logger.error("License file or public key file not found: %s", ", ".join(missing))
            return LicenseValidationResult.failure(
                LicenseStatus.NOT_FOUND,
                f"License file or public key file not found: {', '.join(missing)}",
                now=now,
            )
        try:
            public_key = None
            if public_key_path is not None:
                with open(public_key_path, encoding="utf-8") as fh:
                    public_key = fh.read()
                if not public_key.strip():
                    logger.error("Public key file is empty: %s", public_key_path)
                    return LicenseValidationResult.failure(
                        LicenseStatus.INVALID, "Public key file is empty", now=now
                    )
            with open(license_path, encoding="utf-8") as fh:
                license_json = fh.read()
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("Failed to read license file %s: %s", license_path, exc)
            return LicenseValidationResult.failure(
                LicenseStatus.SERVICE_UNAVAILABLE, "Failed to read license file", now=now
            )
        return self.validate_from_json(license_json, public_key, options)

    def validate_signature(self, signed_license: SignedLicense, public_key: str) -> bool:
        """Check the envelope signature.  Never raises."""
        try:
            data = signed_license.license_data.encode("ascii")
        except (AttributeError, UnicodeEncodeError) as exc:
            logger.warning("License data is not base64 text: %s", exc)
            return False
        return verify_signature(data, signed_license.signature, public_key)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(
        self,
        signed_license: SignedLicense,
        public_key: Optional[str],
        opts: LicenseValidationOptions,
        now: datetime,
    ) -> LicenseValidationResult:
        logger.info("Validating license with format version %s", signed_license.format_version)

        license = decode_license(signed_license)
        if license is None:
            result = LicenseValidationResult.failure(
                LicenseStatus.CORRUPTED, "License data is corrupted or unreadable", now=now
            )
            self._audit(result, opts)
            return result

        key: Optional[str] = None
        if opts.validate_signature:
            key = public_key if public_key and public_key.strip() else None
            if key is None:
                key = self._lookup_public_key(license.product_id)
            if not key:
                result = LicenseValidationResult.failure(
                    LicenseStatus.INVALID,
                    f"Public key not found for product {license.product_id}",
                    license=license,
                    now=now,
                )
                self._audit(result, opts)
                return result

        cache_key = make_cache_key(
            compute_thumbprint(key) if key else UNVERIFIED_KEY,
            envelope_digest(signed_license.license_data, signed_license.signature),
        )
        if opts.enable_caching:
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.debug("License validation result served from cache")
                return cached

        if key is not None and not self.validate_signature(signed_license, key):
            result = LicenseValidationResult.failure(
                LicenseStatus.INVALID, "License signature validation failed", license=license, now=now
            )
            self._audit(result, opts)
            return result

        result = LicenseValidationResult.success(license, now=now)

        if opts.validate_dates:
            evaluation = evaluate_dates(license, opts, now)
            result.status = evaluation.status
            result.are_dates_valid = evaluation.is_valid
            result.is_grace_period = evaluation.is_grace_period
            result.grace_period_expiry = evaluation.grace_period_expiry
            for message in evaluation.messages:
                result.add_message(message)
            if not evaluation.is_valid:
                result.available_features = []

        if opts.enable_caching:
            self._cache.set(cache_key, result, timedelta(minutes=opts.cache_duration_minutes))

        if result.is_valid:
            logger.info("License %s validated: %s", license.license_id, result.status.value)
        else:
            logger.warning("License %s failed date validation: %s", license.license_id, result.status.value)
        self._audit(result, opts)
        return result

    def _lookup_public_key(self, product_id: str) -> Optional[str]:
        if self._keys is None:
            logger.warning("No key repository configured; cannot look up key for %s", product_id)
            return None
        try:
            key = self._keys.get_public_key(product_id)
        except ValueError as exc:
            logger.warning("Cannot look up public key for product %r: %s", product_id, exc)
            return None
        if not key:
            logger.warning("Public key not found for product %s", product_id)
        return key

    def _audit(self, result: LicenseValidationResult, opts: LicenseValidationOptions) -> None:
        if not opts.enable_audit_logging:
            return
        license = result.license
        record_audit(
            self._audit_sink,
            AuditEntry(
                license_id=license.license_id if license else "",
                product_id=license.product_id if license else "",
                consumer_id=license.consumer_id if license else "",
                operation=LicenseOperation.VALIDATED,
                description=f"License validation {result.status.value}",
                details={
                    "status": result.status.value,
                    "is_signature_valid": result.is_signature_valid,
                    "are_dates_valid": result.are_dates_valid,
                    "is_grace_period": result.is_grace_period,
                    "available_features": list(result.available_features),
                    "messages": list(result.validation_messages),
                },
                timestamp=result.validated_at,
            ),
        )
