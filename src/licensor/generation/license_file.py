"""Offline license files.

The customer receives the signed envelope itself and validates it locally
against the embedded product public key, optionally bound to a limited
number of machines.
"""

from __future__ import annotations

import logging
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
from licensor.models import SignedLicense, ensure_utc

logger = logging.getLogger(__name__)

FILE_FORMAT = "XML"


class ProductLicenseFileStrategy(LicenseGenerationStrategy):
    """Issues a signed license file for offline validation."""

    @property
    def supported_type(self) -> LicenseType:
        return LicenseType.PRODUCT_LICENSE_FILE

    def validate_request(self, request: LicenseGenerationRequest, generated_by: str) -> None:
        super().validate_request(request, generated_by)
        if request.max_devices is not None and request.max_devices < 1:
            raise GenerationRequestError(
                "max_devices must be at least 1 for machine binding", code="INVALID_MAX_DEVICES"
            )

    def validate_validity_window(self, request: LicenseGenerationRequest) -> None:
        if request.expiry_date is not None and ensure_utc(request.expiry_date) <= self._clock():
            raise GenerationRequestError(
                "Expiry date must be in the future for product license files",
                code="EXPIRY_NOT_IN_FUTURE",
            )
        super().validate_validity_window(request)

    def customize_generation_request(
        self,
        generation_request: SimplifiedLicenseGenerationRequest,
        request: LicenseGenerationRequest,
    ) -> None:
        (
            generation_request
            .add_license_parameter(LicenseKeyParameter.LICENSE_TYPE, "ProductLicenseFile")
            .add_license_parameter(LicenseKeyParameter.OFFLINE_ACTIVATION, True)
            .add_license_parameter(LicenseKeyParameter.LICENSE_FILE_FORMAT, FILE_FORMAT)
        )
        if request.max_devices is not None:
            generation_request.add_license_parameter(
                LicenseKeyParameter.MAX_MACHINE_BINDINGS, request.max_devices
            )
        (
            generation_request
            .add_license_parameter(LicenseKeyParameter.SUPPORT_OFFLINE_VALIDATION, True)
            .add_license_parameter(LicenseKeyParameter.INCLUDE_PRODUCT_METADATA, True)
            .add_license_parameter(LicenseKeyParameter.GENERATE_LICENSE_FILE, True)
            .add_license_parameter(LicenseKeyParameter.INCLUDE_PUBLIC_KEY, True)
        )

    def create_license_entity(
        self,
        request: LicenseGenerationRequest,
        signed_license: SignedLicense,
        generation_request: SimplifiedLicenseGenerationRequest,
        generated_by: str,
    ) -> ProductLicense:
        entity = super().create_license_entity(request, signed_license, generation_request, generated_by)
        entity.public_key = self._keys.get_public_key(request.product_id)
        entity.license_signature = signed_license.signature
        entity.metadata.update({
            "LicenseFileGenerated": True,
            "OfflineActivation": True,
            "FileFormat": FILE_FORMAT,
            "SupportsOfflineValidation": True,
            "DownloadUrl": f"/api/licenses/{entity.license_id}/download",
            "FileSize": len(signed_license.license_data),
        })
        return entity

    def post_process_license(
        self,
        entity: ProductLicense,
        request: LicenseGenerationRequest,
        signed_license: SignedLicense,
    ) -> None:
        logger.info("License file ready for license %s", entity.license_id)

    def get_recommended_settings(self) -> Dict[str, Any]:
        return {
            "RecommendedExpiryMonths": 12,
            "MaxDevices": 5,
            "OfflineValidation": True,
            "FileFormat": FILE_FORMAT,
            "IncludePublicKey": True,
            "SupportMachineBinding": True,
            "RecommendedKeySize": 2048,
            "UsageScenario": "Enterprise offline deployment",
            "ActivationType": "Offline",
            "ValidationMethod": "Local file validation",
        }
