"""License generation strategies."""

from licensor.generation.base import (
    GenerationRequestError,
    LicenseGenerationRequest,
    LicenseGenerationStrategy,
    LicenseKeyParameter,
    LicenseStore,
    LicenseType,
    ProductLicense,
    SimplifiedLicenseGenerationRequest,
)
from licensor.generation.license_file import ProductLicenseFileStrategy
from licensor.generation.product_key import ProductKeyStrategy, generate_product_key
from licensor.generation.registry import LicenseGenerationFactory
from licensor.generation.volumetric import VolumetricLicenseStrategy

__all__ = [
    "GenerationRequestError",
    "LicenseGenerationFactory",
    "LicenseGenerationRequest",
    "LicenseGenerationStrategy",
    "LicenseKeyParameter",
    "LicenseStore",
    "LicenseType",
    "ProductKeyStrategy",
    "ProductLicense",
    "ProductLicenseFileStrategy",
    "SimplifiedLicenseGenerationRequest",
    "VolumetricLicenseStrategy",
    "generate_product_key",
]
