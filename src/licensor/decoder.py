"""Encode and decode the license payload embedded in a signed envelope.

``licenseData`` is ``base64(utf8(json(license)))``.  Decoding is total:
any malformed input yields ``None`` so the validation pipeline can report
the license as corrupted without handling exceptions.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Optional

from licensor.models import License, SignedLicense

logger = logging.getLogger(__name__)


def encode_license(license: License) -> str:
    """Serialise *license* to the base64 payload string."""
    payload = json.dumps(license.to_dict(), separators=(",", ":"), ensure_ascii=False)
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def decode_license_data(license_data: str) -> Optional[License]:
    """Decode a base64 payload string, returning ``None`` if malformed."""
    if not license_data:
        logger.warning("License data is empty")
        return None
    try:
        raw = base64.b64decode(license_data, validate=True)
        document = json.loads(raw.decode("utf-8"))
        return License.from_dict(document)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Failed to decode license data: %s", exc)
        return None
    except (KeyError, TypeError, ValueError, OverflowError) as exc:
        logger.warning("License payload is not a valid license: %s", exc)
        return None


def decode_license(signed_license: SignedLicense) -> Optional[License]:
    """Decode the payload of *signed_license*, returning ``None`` if malformed."""
    return decode_license_data(signed_license.license_data)
