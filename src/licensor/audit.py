"""Audit trail for license validation and generation.

Audit writes are a side channel: :func:`record_audit` swallows and logs
any sink failure so that auditing can never change the outcome of the
operation being audited.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from licensor.models import LicenseOperation, format_datetime, utc_now

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """One structured audit event."""

    license_id: str
    product_id: str
    consumer_id: str
    operation: LicenseOperation
    description: str
    performed_by: str = "system"
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "license_id": self.license_id,
            "product_id": self.product_id,
            "consumer_id": self.consumer_id,
            "operation": self.operation.value,
            "description": self.description,
            "performed_by": self.performed_by,
            "details": dict(self.details),
            "timestamp": format_datetime(self.timestamp),
        }


class AuditSink(ABC):
    """Destination for audit entries."""

    @abstractmethod
    def record(self, entry: AuditEntry) -> None:
        """Persist *entry*.  May raise; callers go through :func:`record_audit`."""


class LoggingAuditSink(AuditSink):
    """Sink that writes entries to a logger at INFO."""

    def __init__(self, logger_name: str = "licensor.audit.trail") -> None:
        self._logger = logging.getLogger(logger_name)

    def record(self, entry: AuditEntry) -> None:
        self._logger.info(
            "audit operation=%s license=%s product=%s consumer=%s by=%s: %s",
            entry.operation.value,
            entry.license_id,
            entry.product_id,
            entry.consumer_id,
            entry.performed_by,
            entry.description,
        )


def record_audit(sink: Optional[AuditSink], entry: AuditEntry) -> bool:
    """Send *entry* to *sink*, never raising.

    :returns: ``True`` if the sink accepted the entry.
    """
    if sink is None:
        return False
    try:
        sink.record(entry)
        return True
    except Exception as exc:
        logger.error(
            "Failed to record audit entry %s for license %s: %s",
            entry.operation.value,
            entry.license_id,
            exc,
        )
        return False
