"""Abstract base for license generation strategies.

Every license model (product key, offline license file, volumetric
multi-user key) implements :class:`LicenseGenerationStrategy` so callers
can issue licenses through one template method::

    1. validate_request(request, generated_by)   fail fast, no crypto yet
    2. get_or_generate_private_key(product_id)
    3. create_generation_request(...)           shared defaults
    4. customize_generation_request(...)        strategy-specific parameters
    5. LicenseGenerator.generate_license(...)   RSA signature
    6. create_license_entity(...)               ProductLicense record
    7. post_process_license(...)
    8. LicenseStore.add_license(...) then a best-effort "created" audit entry

Input problems raise :class:`GenerationRequestError` before step 2.
Failures after that point are logged and re-raised unchanged; nothing is
rolled back.
"""

from __future__ import annotations

import enum
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from licensor.audit import AuditEntry, AuditSink, record_audit
from licensor.generator import LicenseGenerator
from licensor.keys import KeyRepository
from licensor.models import (
    LicenseFeature,
    LicenseOperation,
    LicenseStatus,
    LicenseTier,
    SignedLicense,
    ensure_utc,
    format_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY = timedelta(days=365)
FEATURE_METADATA_PREFIX = "Feature_"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class LicenseType(enum.Enum):
    """License models a strategy can issue."""

    PRODUCT_KEY = "product_key"
    PRODUCT_LICENSE_FILE = "product_license_file"
    VOLUMETRIC_LICENSE = "volumetric_license"


class LicenseKeyParameter(enum.Enum):
    """Keys of the strategy parameter bag.

    Values are the metadata keys written into the signed payload.
    """

    LICENSE_TYPE = "LicenseType"
    KEY_FORMAT = "KeyFormat"
    PRODUCT_KEY = "ProductKey"
    BASE_KEY = "BaseKey"
    VOLUMETRIC_KEY = "VolumetricKey"
    ONLINE_ACTIVATION = "OnlineActivation"
    OFFLINE_ACTIVATION = "OfflineActivation"
    REQUIRES_ACTIVATION = "RequiresActivation"
    ACTIVATION_URL = "ActivationUrl"
    VALIDATION_URL = "ValidationUrl"
    MAX_ACTIVATIONS = "MaxActivations"
    SUPPORT_MACHINE_BINDING = "SupportMachineBinding"
    MAX_MACHINE_BINDINGS = "MaxMachineBindings"
    REQUIRE_ONLINE_VALIDATION = "RequireOnlineValidation"
    ALLOW_OFFLINE_GRACE_PERIOD = "AllowOfflineGracePeriod"
    SUPPORT_KEY_DEACTIVATION = "SupportKeyDeactivation"
    SUPPORT_KEY_TRANSFER = "SupportKeyTransfer"
    LICENSE_FILE_FORMAT = "LicenseFileFormat"
    SUPPORT_OFFLINE_VALIDATION = "SupportOfflineValidation"
    INCLUDE_PRODUCT_METADATA = "IncludeProductMetadata"
    GENERATE_LICENSE_FILE = "GenerateLicenseFile"
    INCLUDE_PUBLIC_KEY = "IncludePublicKey"
    MAX_USERS = "MaxUsers"
    SUPPORTS_CONCURRENT_USERS = "SupportsConcurrentUsers"
    USER_SLOT_ALLOCATION = "UserSlotAllocation"
    USAGE_TRACKING = "UsageTracking"
    CONCURRENT_USER_LIMIT = "ConcurrentUserLimit"
    SUPPORT_USER_POOLING = "SupportUserPooling"
    SUPPORT_DYNAMIC_SCALING = "SupportDynamicScaling"
    SUPPORT_USAGE_REPORTING = "SupportUsageReporting"
    SUPPORT_USER_MANAGEMENT = "SupportUserManagement"
    USER_TRACKING_URL = "UserTrackingUrl"
    USAGE_REPORTING_URL = "UsageReportingUrl"
    ALLOW_OFFLINE_USAGE = "AllowOfflineUsage"
    ALLOW_VIRTUALIZATION = "AllowVirtualization"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class GenerationRequestError(ValueError):
    """Raised for invalid generation input, before any signing happens."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


# ---------------------------------------------------------------------------
# Requests and entities
# ---------------------------------------------------------------------------


@dataclass
class LicenseGenerationRequest:
    """Caller-facing parameters for issuing a license.

    ``metadata`` entries named ``Feature_<Name>`` with a ``True`` value
    grant feature ``<Name>``.
    """

    product_id: str
    consumer_id: str
    license_model: LicenseType
    product_name: str = ""
    consumer_name: str = ""
    product_tier: Optional[str] = None
    tier_id: Optional[str] = None
    valid_from: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    max_users: Optional[int] = None
    max_devices: Optional[int] = None
    allow_offline_usage: bool = False
    allow_virtualization: bool = False
    contact_person: str = ""
    contact_email: str = ""
    custom_properties: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SimplifiedLicenseGenerationRequest:
    """Fully resolved input to :class:`~licensor.generator.LicenseGenerator`.

    ``custom_data`` is the strategy parameter bag.  It is stamped into the
    signed payload's metadata.
    """

    product_id: str = ""
    product_name: str = ""
    licensed_to: str = ""
    contact_person: str = ""
    contact_email: str = ""
    private_key_pem: str = ""
    license_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    consumer_id: str = ""
    valid_from: datetime = field(default_factory=utc_now)
    valid_to: datetime = field(default_factory=lambda: utc_now() + DEFAULT_VALIDITY)
    tier: LicenseTier = LicenseTier.COMMUNITY
    max_api_calls_per_month: Optional[int] = None
    max_concurrent_connections: Optional[int] = None
    features: List[LicenseFeature] = field(default_factory=list)
    custom_data: Dict[str, Any] = field(default_factory=dict)
    issuer: str = "Licensor"

    def add_license_parameter(
        self, parameter: LicenseKeyParameter, value: Any
    ) -> SimplifiedLicenseGenerationRequest:
        """Set a parameter-bag entry and return ``self`` for chaining."""
        self.custom_data[parameter.value] = value
        return self

    def get_license_parameter(self, parameter: LicenseKeyParameter, default: Any = None) -> Any:
        return self.custom_data.get(parameter.value, default)

    def get_license_parameter_as_string(self, parameter: LicenseKeyParameter) -> Optional[str]:
        value = self.custom_data.get(parameter.value)
        return None if value is None else str(value)

    def validation_errors(self) -> List[str]:
        errors: List[str] = []
        if not self.product_id.strip():
            errors.append("ProductId is required")
        if not self.product_name.strip():
            errors.append("ProductName is required")
        if not self.licensed_to.strip():
            errors.append("LicensedTo is required")
        if not self.contact_email.strip():
            errors.append("ContactEmail is required")
        if not self.private_key_pem.strip():
            errors.append("PrivateKeyPem is required for license signing")
        if ensure_utc(self.valid_from) >= ensure_utc(self.valid_to):
            errors.append("ValidFrom must be before ValidTo")
        return errors

    def is_valid(self) -> bool:
        return not self.validation_errors()


@dataclass
class ProductLicense:
    """Stored record of an issued license.

    ``license_key`` is the value handed to the customer: the formatted
    key for key-based models, the base64 payload for license files.
    """

    license_id: str
    product_id: str
    consumer_id: str
    license_key: str
    license_model: LicenseType
    valid_from: datetime
    valid_to: datetime
    status: LicenseStatus = LicenseStatus.ACTIVE
    tier_id: Optional[str] = None
    max_allowed_users: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    public_key: Optional[str] = None
    license_signature: Optional[str] = None
    signed_license: Optional[SignedLicense] = None
    created_by: str = ""
    created_at: datetime = field(default_factory=utc_now)
    updated_by: str = ""
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "license_id": self.license_id,
            "product_id": self.product_id,
            "consumer_id": self.consumer_id,
            "license_key": self.license_key,
            "license_model": self.license_model.value,
            "status": self.status.value,
            "valid_from": format_datetime(self.valid_from),
            "valid_to": format_datetime(self.valid_to),
            "tier_id": self.tier_id,
            "max_allowed_users": self.max_allowed_users,
            "metadata": dict(self.metadata),
            "public_key": self.public_key,
            "license_signature": self.license_signature,
            "signed_license": self.signed_license.to_dict() if self.signed_license else None,
            "created_by": self.created_by,
            "created_at": format_datetime(self.created_at),
            "updated_by": self.updated_by,
            "updated_at": format_datetime(self.updated_at),
        }


class LicenseStore(ABC):
    """Persistence for issued :class:`ProductLicense` records."""

    @abstractmethod
    def add_license(self, license: ProductLicense) -> ProductLicense:
        """Persist a newly issued license and return the stored record."""

    @abstractmethod
    def get_license(self, license_id: str) -> Optional[ProductLicense]:
        """Return a stored license, or ``None``."""


# ---------------------------------------------------------------------------
# Strategy base
# ---------------------------------------------------------------------------


class LicenseGenerationStrategy(ABC):
    """Template method for issuing one license model.

    Concrete strategies must provide :attr:`supported_type`,
    :meth:`customize_generation_request` and
    :meth:`get_recommended_settings`, and may extend the other steps.

    :param generator: Signs the resolved request.
    :param key_repository: Source of the product's private key.  A key
        pair is generated on demand when the product has none.
    :param store: Optional store the new record is saved to.
    :param audit_sink: Optional sink for the ``created`` audit entry.
    :param clock: Callable returning the current UTC time.
    """

    def __init__(
        self,
        generator: LicenseGenerator,
        key_repository: KeyRepository,
        *,
        store: Optional[LicenseStore] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._generator = generator
        self._keys = key_repository
        self._store = store
        self._audit_sink = audit_sink
        self._clock = clock or utc_now

    @property
    @abstractmethod
    def supported_type(self) -> LicenseType:
        """The :class:`LicenseType` this strategy issues."""

    def can_handle(self, request: Optional[LicenseGenerationRequest]) -> bool:
        return request is not None and request.license_model == self.supported_type

    @abstractmethod
    def get_recommended_settings(self) -> Dict[str, Any]:
        """Return the advisory default settings for this license model."""

    # ------------------------------------------------------------------
    # Template method
    # ------------------------------------------------------------------

    def generate(self, request: LicenseGenerationRequest, generated_by: str) -> ProductLicense:
        """Issue, sign and store a license.

        :raises GenerationRequestError: If the request is invalid.
        """
        name = type(self).__name__
        logger.info(
            "Starting %s license generation for product %s, consumer %s",
            name,
            getattr(request, "product_id", None),
            getattr(request, "consumer_id", None),
        )
        self.validate_request(request, generated_by)

        try:
            private_key = self.get_or_generate_private_key(request.product_id)
            generation_request = self.create_generation_request(request, private_key)
            self.customize_generation_request(generation_request, request)
            signed = self._generator.generate_license(generation_request)
            entity = self.create_license_entity(request, signed, generation_request, generated_by)
            self.post_process_license(entity, request, signed)
            if self._store is not None:
                entity = self._store.add_license(entity)
        except Exception:
            logger.exception(
                "Error generating %s license for product %s",
                self.supported_type.value,
                request.product_id,
            )
            raise

        record_audit(
            self._audit_sink,
            AuditEntry(
                license_id=entity.license_id,
                product_id=entity.product_id,
                consumer_id=entity.consumer_id,
                operation=LicenseOperation.CREATED,
                description=f"{self.supported_type.value} license generated",
                performed_by=generated_by,
                details={"license_model": self.supported_type.value, "license_key": entity.license_key},
                timestamp=self._clock(),
            ),
        )
        logger.info(
            "Generated %s license %s for product %s",
            self.supported_type.value,
            entity.license_id,
            entity.product_id,
        )
        return entity

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def validate_request(self, request: Optional[LicenseGenerationRequest], generated_by: str) -> None:
        """Shared input checks.  Subclasses extend and call ``super()``."""
        if request is None:
            raise GenerationRequestError("Generation request is required", code="MISSING_REQUEST")
        if not generated_by or not generated_by.strip():
            raise GenerationRequestError("generated_by cannot be empty", code="MISSING_GENERATED_BY")
        if request.license_model != self.supported_type:
            raise GenerationRequestError(
                f"Request license model {request.license_model.value!r} does not match "
                f"strategy type {self.supported_type.value!r}",
                code="LICENSE_TYPE_MISMATCH",
            )
        if not request.product_id or not request.product_id.strip():
            raise GenerationRequestError("product_id is required", code="MISSING_PRODUCT_ID")
        if not request.consumer_id or not request.consumer_id.strip():
            raise GenerationRequestError("consumer_id is required", code="MISSING_CONSUMER_ID")
        self.validate_validity_window(request)

    def validate_validity_window(self, request: LicenseGenerationRequest) -> None:
        """Reject an expiry that is not after the start of the window.

        The window starts at ``valid_from``, or now when it is unset, which
        is what :meth:`create_generation_request` will stamp.
        """
        if request.expiry_date is None:
            return
        start = ensure_utc(request.valid_from) if request.valid_from is not None else self._clock()
        if start >= ensure_utc(request.expiry_date):
            raise GenerationRequestError(
                "valid_from must be before expiry_date", code="INVALID_VALIDITY_WINDOW"
            )

    def get_or_generate_private_key(self, product_id: str) -> str:
        private_key = self._keys.get_private_key(product_id)
        if not private_key:
            logger.info("No private key found for product %s, generating new key pair", product_id)
            self._keys.generate_key_pair_for_product(product_id)
            private_key = self._keys.get_private_key(product_id)
            if not private_key:
                raise RuntimeError(f"Key pair generation for product {product_id!r} produced no private key")
        return private_key

    def create_generation_request(
        self, request: LicenseGenerationRequest, private_key: str
    ) -> SimplifiedLicenseGenerationRequest:
        now = self._clock()
        generation_request = SimplifiedLicenseGenerationRequest(
            product_id=request.product_id,
            product_name=request.product_name or "Unknown Product",
            licensed_to=request.consumer_name or "Unknown Consumer",
            contact_person=request.contact_person or "Unknown Contact",
            contact_email=request.contact_email or "unknown@example.com",
            private_key_pem=private_key,
            consumer_id=request.consumer_id,
            valid_from=request.valid_from or now,
            valid_to=request.expiry_date or now + DEFAULT_VALIDITY,
            tier=self.map_tier(request.product_tier),
            features=[LicenseFeature(name=name) for name in self.map_features(request)],
            custom_data=dict(request.custom_properties),
        )
        if request.allow_offline_usage:
            generation_request.add_license_parameter(LicenseKeyParameter.ALLOW_OFFLINE_USAGE, True)
        if request.allow_virtualization:
            generation_request.add_license_parameter(LicenseKeyParameter.ALLOW_VIRTUALIZATION, True)
        return generation_request

    @abstractmethod
    def customize_generation_request(
        self,
        generation_request: SimplifiedLicenseGenerationRequest,
        request: LicenseGenerationRequest,
    ) -> None:
        """Add strategy-specific parameters to *generation_request*."""

    def create_license_entity(
        self,
        request: LicenseGenerationRequest,
        signed_license: SignedLicense,
        generation_request: SimplifiedLicenseGenerationRequest,
        generated_by: str,
    ) -> ProductLicense:
        now = self._clock()
        return ProductLicense(
            license_id=generation_request.license_id,
            product_id=request.product_id,
            consumer_id=request.consumer_id,
            license_key=signed_license.license_data,
            license_model=request.license_model,
            valid_from=generation_request.valid_from,
            valid_to=generation_request.valid_to,
            status=LicenseStatus.ACTIVE,
            tier_id=request.tier_id,
            max_allowed_users=request.max_users,
            metadata=dict(request.metadata),
            signed_license=signed_license,
            created_by=generated_by,
            created_at=now,
            updated_by=generated_by,
            updated_at=now,
        )

    def post_process_license(
        self,
        entity: ProductLicense,
        request: LicenseGenerationRequest,
        signed_license: SignedLicense,
    ) -> None:
        """Hook run after the entity is built and before it is stored."""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def map_tier(product_tier: Optional[str]) -> LicenseTier:
        return {
            "enterprise": LicenseTier.ENTERPRISE,
            "professional": LicenseTier.PROFESSIONAL,
            "community": LicenseTier.COMMUNITY,
            "premium": LicenseTier.CUSTOM,
        }.get((product_tier or "").strip().lower(), LicenseTier.COMMUNITY)

    @staticmethod
    def map_features(request: LicenseGenerationRequest) -> List[str]:
        return [
            key[len(FEATURE_METADATA_PREFIX):]
            for key, value in request.metadata.items()
            if key.startswith(FEATURE_METADATA_PREFIX)
            and len(key) > len(FEATURE_METADATA_PREFIX)
            and value is True
        ]
