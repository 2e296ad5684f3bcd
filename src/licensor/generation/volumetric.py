"""Volumetric multi-user licenses.

The issued key encodes the seat count in its last group:
``XXXX-XXXX-XXXX-NNNN``, e.g. ``ABCD-EFGH-JKLM-0025`` for 25 users.
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
from licensor.generation.product_key import generate_product_key
from licensor.models import SignedLicense, format_datetime

logger = logging.getLogger(__name__)

MIN_USERS = 2
MAX_USERS = 9999
KEY_FORMAT = "XXXX-XXXX-XXXX-NNNN"


def make_volumetric_key(base_key: str, max_users: int) -> str:
    """Replace the last group of *base_key* with the zero-padded seat count."""
    return f"{base_key[:14]}-{max_users:04d}"


class VolumetricLicenseStrategy(LicenseGenerationStrategy):
    """Issues a seat-counted key for concurrent multi-user use."""

    @property
    def supported_type(self) -> LicenseType:
        return LicenseType.VOLUMETRIC_LICENSE

    def validate_request(self, request: LicenseGenerationRequest, generated_by: str) -> None:
        super().validate_request(request, generated_by)
        if request.max_users is None or request.max_users < MIN_USERS:
            raise GenerationRequestError(
                f"Volumetric licenses require max_users to be specified and >= {MIN_USERS}",
                code="MAX_USERS_TOO_LOW",
            )
        if request.max_users > MAX_USERS:
            raise GenerationRequestError(
                f"Maximum users for volumetric licenses cannot exceed {MAX_USERS}",
                code="MAX_USERS_TOO_HIGH",
            )

    def customize_generation_request(
        self,
        generation_request: SimplifiedLicenseGenerationRequest,
        request: LicenseGenerationRequest,
    ) -> None:
        base_key = generate_product_key()
        seats = request.max_users
        volumetric_key = make_volumetric_key(base_key, seats)
        (
            generation_request
            .add_license_parameter(LicenseKeyParameter.LICENSE_TYPE, "VolumetricLicense")
            .add_license_parameter(LicenseKeyParameter.BASE_KEY, base_key)
            .add_license_parameter(LicenseKeyParameter.VOLUMETRIC_KEY, volumetric_key)
            .add_license_parameter(LicenseKeyParameter.KEY_FORMAT, KEY_FORMAT)
            .add_license_parameter(LicenseKeyParameter.MAX_USERS, seats)
            .add_license_parameter(LicenseKeyParameter.SUPPORTS_CONCURRENT_USERS, True)
            .add_license_parameter(LicenseKeyParameter.USER_SLOT_ALLOCATION, seats)
            .add_license_parameter(LicenseKeyParameter.USAGE_TRACKING, True)
            .add_license_parameter(LicenseKeyParameter.CONCURRENT_USER_LIMIT, seats)
            .add_license_parameter(LicenseKeyParameter.SUPPORT_USER_POOLING, True)
            .add_license_parameter(LicenseKeyParameter.SUPPORT_DYNAMIC_SCALING, False)
            .add_license_parameter(LicenseKeyParameter.SUPPORT_USAGE_REPORTING, True)
            .add_license_parameter(LicenseKeyParameter.SUPPORT_USER_MANAGEMENT, True)
            .add_license_parameter(LicenseKeyParameter.REQUIRE_ONLINE_VALIDATION, True)
            .add_license_parameter(LicenseKeyParameter.ONLINE_ACTIVATION, True)
            .add_license_parameter(LicenseKeyParameter.USER_TRACKING_URL, "/api/volumetric/track-usage")
            .add_license_parameter(LicenseKeyParameter.USAGE_REPORTING_URL, "/api/volumetric/usage-report")
        )
        generation_request.max_concurrent_connections = seats
        logger.info(
            "Generated volumetric key %s for product %s with %d user slots",
            volumetric_key,
            request.product_id,
            seats,
        )

    def create_license_entity(
        self,
        request: LicenseGenerationRequest,
        signed_license: SignedLicense,
        generation_request: SimplifiedLicenseGenerationRequest,
        generated_by: str,
    ) -> ProductLicense:
        entity = super().create_license_entity(request, signed_license, generation_request, generated_by)
        volumetric_key = generation_request.get_license_parameter_as_string(LicenseKeyParameter.VOLUMETRIC_KEY)
        if volumetric_key:
            entity.license_key = volumetric_key
        entity.max_allowed_users = request.max_users

        license_id = entity.license_id
        seats = str(request.max_users)
        entity.metadata.update({
            "VolumetricLicenseGenerated": "true",
            "OnlineActivation": "true",
            "KeyFormat": KEY_FORMAT,
            "MaxUsers": seats,
            "ConcurrentUserLimit": seats,
            "CurrentActiveUsers": "0",
            "TotalUsersRegistered": "0",
            "UsageTrackingEnabled": "true",
            "LastUsageUpdate": format_datetime(self._clock()),
            "UsageReportingEnabled": "true",
            "UserTrackingUrl": f"/api/volumetric/{license_id}/track-usage",
            "UsageReportUrl": f"/api/volumetric/{license_id}/usage-report",
            "UserManagementUrl": f"/api/volumetric/{license_id}/manage-users",
        })
        return entity

    def post_process_license(
        self,
        entity: ProductLicense,
        request: LicenseGenerationRequest,
        signed_license: SignedLicense,
    ) -> None:
        logger.info(
            "Volumetric key %s with %d user slots ready for license %s",
            entity.license_key,
            entity.max_allowed_users,
            entity.license_id,
        )

    def get_recommended_settings(self) -> Dict[str, Any]:
        return {
            "RecommendedExpiryMonths": 12,
            "MinUsers": MIN_USERS,
            "MaxUsers": MAX_USERS,
            "DefaultUsers": 10,
            "OnlineValidation": True,
            "KeyFormat": KEY_FORMAT,
            "SupportsConcurrentUsers": True,
            "UsageTracking": True,
            "UserPooling": True,
            "RequiresActivation": True,
            "RecommendedKeySize": 2048,
            "UsageScenario": "Multi-user team licensing",
            "ActivationType": "Online",
            "ValidationMethod": "Server-side with user tracking",
            "SupportUsageReporting": True,
            "SupportUserManagement": True,
        }
