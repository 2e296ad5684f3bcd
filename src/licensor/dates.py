"""Temporal validity of a license, including grace-period handling.

The evaluator classifies a license against ``now``:

* before ``valid_from``: not yet valid (failure);
* after ``valid_to`` and inside the grace window: valid, in grace period;
* after ``valid_to`` otherwise: expired (failure);
* inside the window: valid, with an advisory warning when expiry is at
  most :data:`EXPIRY_WARNING_DAYS` away.  The warning never changes
  validity.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from licensor.models import (
    License,
    LicenseStatus,
    LicenseValidationOptions,
    ensure_utc,
    format_display,
)

EXPIRY_WARNING_DAYS = 7


@dataclass
class DateEvaluation:
    """Outcome of :func:`evaluate_dates`."""

    status: LicenseStatus
    is_valid: bool
    messages: list[str] = field(default_factory=list)
    is_grace_period: bool = False
    grace_period_expiry: Optional[datetime] = None


def evaluate_dates(
    license: License,
    options: LicenseValidationOptions,
    now: datetime,
) -> DateEvaluation:
    """Classify the temporal state of *license* at *now*."""
    now = ensure_utc(now)

    if now < license.valid_from:
        return DateEvaluation(
            status=LicenseStatus.NOT_YET_VALID,
            is_valid=False,
            messages=[f"License is not yet valid. Valid from: {format_display(license.valid_from)} UTC"],
        )

    if now > license.valid_to:
        grace_expiry = license.valid_to + timedelta(days=options.grace_period_days)
        if options.allow_grace_period and now <= grace_expiry:
            return DateEvaluation(
                status=LicenseStatus.GRACE_PERIOD,
                is_valid=True,
                messages=[
                    f"License expired on {format_display(license.valid_to)} UTC "
                    f"but is in grace period until {format_display(grace_expiry)} UTC"
                ],
                is_grace_period=True,
                grace_period_expiry=grace_expiry,
            )
        return DateEvaluation(
            status=LicenseStatus.EXPIRED,
            is_valid=False,
            messages=[f"License expired on {format_display(license.valid_to)} UTC"],
        )

    evaluation = DateEvaluation(status=LicenseStatus.ACTIVE, is_valid=True)
    remaining = license.valid_to - now
    if remaining <= timedelta(days=EXPIRY_WARNING_DAYS):
        days = int(remaining.total_seconds() // 86400)
        evaluation.messages.append(
            f"Warning: License expires in {days} days on {format_display(license.valid_to)} UTC"
        )
    return evaluation
