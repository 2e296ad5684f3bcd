"""Product keys for online activation.

Keys look like ``XXXX-XXXX-XXXX-XXXX``, drawn with :mod:`secrets` from an
alphabet without the easily confused ``0``, ``1``, ``I`` and ``O``.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Dict

from licensor.generation.base import (
    GenerationRequestError,
    LicenseGenerationRequest,
    LicenseGenerationStrategy,
    LicenseKeyParameter,
    LicenseType,
    ProductLicense,
    SimplifiedLicenseGenerationRequest,
)
from licensor.models import SignedLicense

logger = logging.getLogger(__name__)

KEY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
KEY_FORMAT = "XXXX-XXXX-XXXX-XXXX"
_GROUPS = 4
_GROUP_LENGTH = 4
_MAX_DEVICES_WARNING = 10
OFFLINE_GRACE_HOURS = 72


def generate_product_key() -> str:
    """Return a random ``XXXX-XXXX-XXXX-XXXX`` key."""
    return "-".join(
        "".join(secrets.choice(KEY_ALPHABET) for _ in range(_GROUP_LENGTH))
        for _ in range(_GROUPS)
    )


class ProductKeyStrategy(LicenseGenerationStrategy):
    """Issues a formatted activation key backed by a signed license."""

    @property
    def supported_type(self) -> LicenseType:
        return LicenseType.PRODUCT_KEY

    def validate_request(self, request: LicenseGenerationRequest, generated_by: str) -> None:
        super().validate_request(request, generated_by)
        if request.max_devices is not None and request.max_devices < 1:
            raise GenerationRequestError(
                "max_devices must be at least 1 for product keys", code="INVALID_MAX_DEVICES"
            )
        if request.max_devices is not None and request.max_devices > _MAX_DEVICES_WARNING:
            logger.warning(
                "Product key with %d devices may impact online activation performance",
                request.max_devices,
            )

    def customize_generation_request(
        self,
        generation_request: SimplifiedLicenseGenerationRequest,
        request: LicenseGenerationRequest,
    ) -> None:
        product_key = generate_product_key()
        (
            generation_request
            .add_license_parameter(LicenseKeyParameter.LICENSE_TYPE, "ProductKey")
            .add_license_parameter(LicenseKeyParameter.ONLINE_ACTIVATION, True)
            .add_license_parameter(LicenseKeyParameter.PRODUCT_KEY, product_key)
            .add_license_parameter(LicenseKeyParameter.KEY_FORMAT, KEY_FORMAT)
            .add_license_parameter(LicenseKeyParameter.REQUIRES_ACTIVATION, True)
            .add_license_parameter(LicenseKeyParameter.ACTIVATION_URL, "/api/activation/activate")
            .add_license_parameter(LicenseKeyParameter.VALIDATION_URL, "/api/activation/validate")
        )
        if request.max_devices is not None:
            generation_request.add_license_parameter(
                LicenseKeyParameter.MAX_ACTIVATIONS, request.max_devices
            ).add_license_parameter(LicenseKeyParameter.SUPPORT_MACHINE_BINDING, True)
        else:
            generation_request.add_license_parameter(LicenseKeyParameter.MAX_ACTIVATIONS, 1)
        (
            generation_request
            .add_license_parameter(LicenseKeyParameter.REQUIRE_ONLINE_VALIDATION, True)
            .add_license_parameter(LicenseKeyParameter.ALLOW_OFFLINE_GRACE_PERIOD, str(OFFLINE_GRACE_HOURS))
            .add_license_parameter(LicenseKeyParameter.SUPPORT_KEY_DEACTIVATION, True)
            .add_license_parameter(LicenseKeyParameter.SUPPORT_KEY_TRANSFER, True)
        )
        logger.info("Generated product key %s for product %s", product_key, request.product_id)

    def create_license_entity(
        self,
        request: LicenseGenerationRequest,
        signed_license: SignedLicense,
        generation_request: SimplifiedLicenseGenerationRequest,
        generated_by: str,
    ) -> ProductLicense:
        entity = super().create_license_entity(request, signed_license, generation_request, generated_by)
        product_key = generation_request.get_license_parameter_as_string(LicenseKeyParameter.PRODUCT_KEY)
        if product_key:
            entity.license_key = product_key

        license_id = entity.license_id
        entity.metadata.update({
            "ProductKeyGenerated": "true",
            "OnlineActivation": "true",
            "KeyFormat": KEY_FORMAT,
            "RequiresActivation": "true",
            "ActivationStatus": "Pending",
            "ActivationsUsed": "0",
            "MaxActivations": str(request.max_devices or 1),
            "ActivationUrl": f"/api/activation/activate/{license_id}",
            "ValidationUrl": f"/api/activation/validate/{license_id}",
            "DeactivationUrl": f"/api/activation/deactivate/{license_id}",
        })
        return entity

    def post_process_license(
        self,
        entity: ProductLicense,
        request: LicenseGenerationRequest,
        signed_license: SignedLicense,
    ) -> None:
        logger.info("Product key %s ready for license %s", entity.license_key, entity.license_id)

    def get_recommended_settings(self) -> Dict[str, Any]:
        return {
            "RecommendedExpiryMonths": 12,
            "MaxActivations": 1,
            "OnlineValidation": True,
            "KeyFormat": KEY_FORMAT,
            "OfflineGracePeriodHours": OFFLINE_GRACE_HOURS,
            "SupportMachineBinding": True,
            "SupportKeyTransfer": True,
            "RequiresActivation": True,
            "RecommendedKeySize": 2048,
            "UsageScenario": "Standard online activation",
            "ActivationType": "Online",
            "ValidationMethod": "Server-side validation",
        }
