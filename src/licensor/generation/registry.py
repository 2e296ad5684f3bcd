"""License generation strategy registry.

Maps each :class:`LicenseType` to the strategy that issues it and
dispatches generation requests accordingly.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Iterable, Optional

from licensor.audit import AuditSink
from licensor.generation.base import (
    GenerationRequestError,
    LicenseGenerationRequest,
    LicenseGenerationStrategy,
    LicenseStore,
    LicenseType,
    ProductLicense,
)
from licensor.generation.license_file import ProductLicenseFileStrategy
from licensor.generation.product_key import ProductKeyStrategy
from licensor.generation.volumetric import VolumetricLicenseStrategy
from licensor.generator import LicenseGenerator
from licensor.keys import KeyRepository

logger = logging.getLogger(__name__)


class LicenseGenerationFactory:
    """Thread-safe registry of generation strategies keyed by license type.

    Example::

        factory = LicenseGenerationFactory.with_default_strategies(
            LicenseGenerator(), FileKeyStore(), store=db, audit_sink=db,
        )
        entity = factory.generate(request, generated_by="alice")
    """

    def __init__(self, strategies: Optional[Iterable[LicenseGenerationStrategy]] = None) -> None:
        self._strategies: dict[LicenseType, LicenseGenerationStrategy] = {}
        self._lock = threading.Lock()
        for strategy in strategies or ():
            self.register(strategy)

    @classmethod
    def with_default_strategies(
        cls,
        generator: LicenseGenerator,
        key_repository: KeyRepository,
        *,
        store: Optional[LicenseStore] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> LicenseGenerationFactory:
        """Build a factory holding the product key, license file and
        volumetric strategies, all sharing the same collaborators."""
        kwargs = {"store": store, "audit_sink": audit_sink, "clock": clock}
        return cls([
            ProductKeyStrategy(generator, key_repository, **kwargs),
            ProductLicenseFileStrategy(generator, key_repository, **kwargs),
            VolumetricLicenseStrategy(generator, key_repository, **kwargs),
        ])

    def register(self, strategy: LicenseGenerationStrategy) -> None:
        """Register *strategy* for its supported type.

        :raises ValueError: If a strategy for that type is already registered.
        """
        with self._lock:
            if strategy.supported_type in self._strategies:
                raise ValueError(
                    f"A strategy for {strategy.supported_type.value!r} is already registered."
                )
            self._strategies[strategy.supported_type] = strategy
        logger.debug("Registered %s for %s", type(strategy).__name__, strategy.supported_type.value)

    def get_strategy(self, license_type: LicenseType) -> LicenseGenerationStrategy:
        """Return the strategy for *license_type*.

        :raises GenerationRequestError: If no strategy handles that type.
        """
        with self._lock:
            strategy = self._strategies.get(license_type)
        if strategy is None:
            raise GenerationRequestError(
                f"No generation strategy registered for license type {license_type.value!r}",
                code="UNSUPPORTED_LICENSE_TYPE",
            )
        return strategy

    def all_strategies(self) -> list[LicenseGenerationStrategy]:
        with self._lock:
            return list(self._strategies.values())

    def supported_types(self) -> list[LicenseType]:
        with self._lock:
            return list(self._strategies.keys())

    def generate(self, request: Optional[LicenseGenerationRequest], generated_by: str) -> ProductLicense:
        """Dispatch *request* to the strategy for its license model.

        :raises GenerationRequestError: For a missing request, empty
            *generated_by*, or an unsupported license model.
        """
        if request is None:
            raise GenerationRequestError("Generation request is required", code="MISSING_REQUEST")
        if not generated_by or not generated_by.strip():
            raise GenerationRequestError("generated_by cannot be empty", code="MISSING_GENERATED_BY")
        strategy = self.get_strategy(request.license_model)
        return strategy.generate(request, generated_by)
