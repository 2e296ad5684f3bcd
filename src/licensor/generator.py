"""Stateless license signer.

Turns a resolved :class:`SimplifiedLicenseGenerationRequest` into a
:class:`SignedLicense` envelope::

    license      = License(...)                       from the request
    licenseData  = base64(utf8(json(license)))
    signature    = RSA-SHA256-PKCS1v15(ascii(licenseData))
    thumbprint   = base64(sha256(public key PEM))
    checksum     = base64(sha256(licenseData))

The generator holds no keys; the private key travels on the request.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Optional

from licensor.crypto import (
    compute_checksum,
    compute_thumbprint,
    extract_public_key,
    sign_data,
    validate_private_key,
)
from licensor.decoder import encode_license
from licensor.models import License, SignedLicense, utc_now

if TYPE_CHECKING:
    from licensor.generation.base import SimplifiedLicenseGenerationRequest

logger = logging.getLogger(__name__)


def _metadata_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if value is None or isinstance(value, (bool, int, float)):
        return json.dumps(value)
    return str(value)


class LicenseGenerator:
    """Signs license requests with the private key they carry.

    :param clock: Callable returning the current UTC time, used for
        ``issuedAt`` and ``createdAt``.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or utc_now

    def generate_license(self, request: SimplifiedLicenseGenerationRequest) -> SignedLicense:
        """Build, serialise and sign the license described by *request*.

        :raises ValueError: If the request is incomplete or the private key
            is unusable.
        """
        logger.info(
            "Generating license for %s, product %s",
            request.licensed_to,
            request.product_name,
        )
        errors = request.validation_errors()
        if errors:
            message = f"Invalid license generation request: {', '.join(errors)}"
            logger.error(message)
            raise ValueError(message)
        if not validate_private_key(request.private_key_pem):
            raise ValueError("Invalid private key provided")

        now = self._clock()
        license = License(
            license_id=request.license_id,
            product_id=request.product_id,
            consumer_id=request.consumer_id,
            valid_from=request.valid_from,
            valid_to=request.valid_to,
            features_included=tuple(request.features),
            licensed_to=request.licensed_to,
            contact_person=request.contact_person,
            contact_email=request.contact_email,
            tier=request.tier,
            max_api_calls_per_month=request.max_api_calls_per_month,
            max_concurrent_connections=request.max_concurrent_connections,
            issued_at=now,
            issuer=request.issuer,
            metadata={str(k): _metadata_value(v) for k, v in request.custom_data.items()},
        )

        license_data = encode_license(license)
        signature = sign_data(license_data.encode("ascii"), request.private_key_pem)
        public_key = extract_public_key(request.private_key_pem)

        signed = SignedLicense(
            license_data=license_data,
            signature=signature,
            public_key_thumbprint=compute_thumbprint(public_key),
            checksum=compute_checksum(license_data),
            created_at=now,
        )
        logger.info("Generated license %s for %s", license.license_id, license.licensed_to)
        return signed
