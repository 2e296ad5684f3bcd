"""Tests for licensor.validation -- the license validation pipeline."""

from __future__ import annotations

import base64
import dataclasses
import json
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from licensor.audit import AuditSink
from licensor.keys import KeyRepository
from licensor.models import (
    LicenseOperation,
    LicenseStatus,
    LicenseValidationOptions,
    SignedLicense,
)
from licensor.validation import LicenseValidationService

from conftest import NOW, PRODUCT_ID, FixedClock, make_license, sign_license, utc


class _RecordingSink(AuditSink):
    def __init__(self):
        self.entries = []

    def record(self, entry):
        self.entries.append(entry)


class _FailingSink(AuditSink):
    def record(self, entry):
        raise RuntimeError("audit store down")


@pytest.fixture()
def sink():
    return _RecordingSink()


@pytest.fixture()
def service(key_store, sink, clock):
    return LicenseValidationService(key_store, audit_sink=sink, clock=clock)


def _flip_signature_byte(signed: SignedLicense) -> SignedLicense:
    raw = bytearray(base64.b64decode(signed.signature))
    raw[10] ^= 0xFF
    return dataclasses.replace(signed, signature=base64.b64encode(bytes(raw)).decode("ascii"))


class TestValidateHappyPath:
    def test_valid_license(self, service, signed_license, key_pair):
        result = service.validate(signed_license, key_pair.public_key_pem)
        assert result.status is LicenseStatus.ACTIVE
        assert result.is_valid
        assert result.is_signature_valid
        assert result.are_dates_valid
        assert result.available_features == ["Export", "Render"]
        assert result.license.product_id == PRODUCT_ID
        assert result.validated_at == NOW

    def test_key_looked_up_by_product(self, service, signed_license):
        result = service.validate(signed_license)
        assert result.status is LicenseStatus.ACTIVE

    def test_blank_key_falls_back_to_lookup(self, service, signed_license):
        assert service.validate(signed_license, "   ").is_valid

    def test_expiring_soon_warns_but_is_valid(self, service, key_pair):
        signed = sign_license(make_license(valid_to=NOW + timedelta(days=3)), key_pair)
        result = service.validate(signed, key_pair.public_key_pem)
        assert result.is_valid
        assert result.status is LicenseStatus.ACTIVE
        assert len(result.validation_messages) == 1
        assert "3 days" in result.validation_messages[0]
        assert result.validation_messages[0].startswith("2024-06-01 12:00:00 - Warning:")


class TestValidateFailures:
    def test_malformed_payload_is_corrupted(self, service, key_pair):
        signed = SignedLicense(license_data="%%% not base64 %%%", signature="AAAA")
        result = service.validate(signed, key_pair.public_key_pem)
        assert result.status is LicenseStatus.CORRUPTED
        assert result.license is None
        assert not result.is_valid
        assert result.validation_messages[0].endswith("License data is corrupted or unreadable")

    def test_tampered_signature_is_invalid(self, service, signed_license, key_pair):
        result = service.validate(_flip_signature_byte(signed_license), key_pair.public_key_pem)
        assert result.status is LicenseStatus.INVALID
        assert not result.is_signature_valid
        assert result.license is not None
        assert result.validation_messages[0].endswith("License signature validation failed")

    def test_tampered_payload_is_invalid(self, service, signed_license, key_pair):
        payload = json.loads(base64.b64decode(signed_license.license_data))
        payload["validTo"] = "2099-01-01T00:00:00Z"
        forged = dataclasses.replace(
            signed_license,
            license_data=base64.b64encode(json.dumps(payload).encode()).decode("ascii"),
        )
        assert service.validate(forged, key_pair.public_key_pem).status is LicenseStatus.INVALID

    def test_wrong_key_is_invalid(self, service, signed_license, other_key_pair):
        result = service.validate(signed_license, other_key_pair.public_key_pem)
        assert result.status is LicenseStatus.INVALID

    def test_missing_key_is_invalid(self, tmp_path, key_pair, clock):
        from licensor.keys import FileKeyStore

        service = LicenseValidationService(FileKeyStore(tmp_path / "empty"), clock=clock)
        signed = sign_license(make_license(), key_pair)
        result = service.validate(signed)
        assert result.status is LicenseStatus.INVALID
        assert result.validation_messages[0].endswith(f"Public key not found for product {PRODUCT_ID}")

    def test_no_repository_and_no_key(self, signed_license, clock):
        result = LicenseValidationService(clock=clock).validate(signed_license)
        assert result.status is LicenseStatus.INVALID

    @pytest.mark.parametrize("product_id", ["Acme CAD", "../escape", ""])
    def test_unusable_product_id_is_invalid(self, service, key_pair, product_id):
        signed = sign_license(make_license(product_id=product_id), key_pair)
        result = service.validate(signed)
        assert result.status is LicenseStatus.INVALID
        assert result.validation_messages[0].endswith(f"Public key not found for product {product_id}")

    def test_out_of_range_number_is_corrupted(self, service, key_pair):
        text = json.dumps(make_license(max_api_calls_per_month=12345).to_dict())
        signed = SignedLicense(
            license_data=base64.b64encode(text.replace("12345", "1e400").encode()).decode("ascii"),
            signature="AAAA",
        )
        result = service.validate(signed, key_pair.public_key_pem)
        assert result.status is LicenseStatus.CORRUPTED

    def test_string_feature_flag_is_corrupted(self, service, key_pair):
        doc = make_license().to_dict()
        doc["featuresIncluded"][2]["isCurrentlyValid"] = "false"
        signed = SignedLicense(
            license_data=base64.b64encode(json.dumps(doc).encode()).decode("ascii"),
            signature="AAAA",
        )
        assert service.validate(signed, key_pair.public_key_pem).status is LicenseStatus.CORRUPTED

    def test_not_yet_valid(self, service, key_pair):
        signed = sign_license(make_license(valid_from=utc(2024, 7, 1), valid_to=utc(2025, 7, 1)), key_pair)
        result = service.validate(signed, key_pair.public_key_pem)
        assert result.status is LicenseStatus.NOT_YET_VALID
        assert not result.are_dates_valid
        assert result.available_features == []

    def test_expired(self, service, key_pair):
        signed = sign_license(make_license(valid_to=utc(2024, 1, 10)), key_pair)
        result = service.validate(signed, key_pair.public_key_pem)
        assert result.status is LicenseStatus.EXPIRED
        assert result.available_features == []

    def test_unexpected_error_is_service_unavailable(self, service, signed_license, key_pair):
        with patch("licensor.validation.evaluate_dates", side_effect=RuntimeError("boom")):
            result = service.validate(signed_license, key_pair.public_key_pem)
        assert result.status is LicenseStatus.SERVICE_UNAVAILABLE
        assert result.validation_messages[0].endswith(
            "License validation service encountered an error: boom"
        )

    def test_key_repository_error_is_service_unavailable(self, signed_license, clock):
        repo = MagicMock(spec=KeyRepository)
        repo.get_public_key.side_effect = OSError("disk gone")
        result = LicenseValidationService(repo, clock=clock).validate(signed_license)
        assert result.status is LicenseStatus.SERVICE_UNAVAILABLE


class TestGracePeriod:
    def test_grace_period(self, key_pair, sink):
        clock = FixedClock(utc(2024, 1, 12))
        service = LicenseValidationService(
            options=LicenseValidationOptions(grace_period_days=5), audit_sink=sink, clock=clock,
        )
        signed = sign_license(make_license(valid_to=utc(2024, 1, 10)), key_pair)
        result = service.validate(signed, key_pair.public_key_pem)
        assert result.status is LicenseStatus.GRACE_PERIOD
        assert result.is_valid
        assert result.is_grace_period
        assert result.grace_period_expiry == utc(2024, 1, 15)
        assert result.available_features == ["Export", "Render"]

    def test_per_call_options_override_defaults(self, service, key_pair):
        signed = sign_license(make_license(valid_to=utc(2024, 5, 30)), key_pair)
        opts = LicenseValidationOptions(allow_grace_period=False)
        assert service.validate(signed, key_pair.public_key_pem, opts).status is LicenseStatus.EXPIRED
        assert service.default_options.allow_grace_period


class TestDisabledChecks:
    def test_signature_check_disabled_skips_key_lookup(self, signed_license, clock):
        repo = MagicMock(spec=KeyRepository)
        service = LicenseValidationService(repo, clock=clock)
        opts = LicenseValidationOptions(validate_signature=False)
        result = service.validate(_flip_signature_byte(signed_license), options=opts)
        assert result.status is LicenseStatus.ACTIVE
        repo.get_public_key.assert_not_called()

    def test_date_check_disabled(self, service, key_pair):
        signed = sign_license(make_license(valid_to=utc(2020, 1, 1), valid_from=utc(2019, 1, 1)), key_pair)
        opts = LicenseValidationOptions(validate_dates=False)
        result = service.validate(signed, key_pair.public_key_pem, opts)
        assert result.status is LicenseStatus.ACTIVE
        assert result.validation_messages == []


class TestCaching:
    def test_repeat_validation_is_identical(self, service, signed_license, key_pair):
        first = service.validate(signed_license, key_pair.public_key_pem)
        second = service.validate(signed_license, key_pair.public_key_pem)
        assert second.to_dict() == first.to_dict()
        assert len(service.cache) == 1

    def test_cache_hit_skips_audit(self, service, signed_license, key_pair, sink):
        service.validate(signed_license, key_pair.public_key_pem)
        service.validate(signed_license, key_pair.public_key_pem)
        assert len(sink.entries) == 1
        assert service.cache.stats()["hits"] == 1

    def test_forged_signature_after_cached_success_is_rejected(self, service, signed_license, key_pair):
        assert service.validate(signed_license, key_pair.public_key_pem).is_valid
        forged = dataclasses.replace(signed_license, signature="AAAA")
        result = service.validate(forged, key_pair.public_key_pem)
        assert result.status is LicenseStatus.INVALID
        assert not result.is_signature_valid
        assert service.cache.stats()["hits"] == 0

    def test_flipped_signature_after_cached_success_is_rejected(self, service, signed_license, key_pair):
        service.validate(signed_license, key_pair.public_key_pem)
        result = service.validate(_flip_signature_byte(signed_license), key_pair.public_key_pem)
        assert result.status is LicenseStatus.INVALID

    def test_other_key_after_cached_success_is_rejected(
        self, service, signed_license, key_pair, other_key_pair,
    ):
        service.validate(signed_license, key_pair.public_key_pem)
        result = service.validate(signed_license, other_key_pair.public_key_pem)
        assert result.status is LicenseStatus.INVALID
        assert result.validation_messages[-1].endswith("License signature validation failed")

    def test_cache_hit_requires_same_envelope_and_key(self, service, signed_license, key_pair):
        service.validate(signed_license, key_pair.public_key_pem)
        with patch("licensor.validation.verify_signature") as verify:
            assert service.validate(signed_license, key_pair.public_key_pem).is_valid
        verify.assert_not_called()
        assert service.cache.stats()["hits"] == 1

    def test_date_failures_are_cached(self, service, key_pair):
        signed = sign_license(make_license(valid_to=utc(2024, 1, 10)), key_pair)
        service.validate(signed, key_pair.public_key_pem)
        assert len(service.cache) == 1

    def test_signature_failures_are_not_cached(self, service, signed_license, key_pair):
        service.validate(_flip_signature_byte(signed_license), key_pair.public_key_pem)
        assert len(service.cache) == 0

    def test_corrupted_not_cached(self, service, key_pair):
        service.validate(SignedLicense(license_data="???", signature=""), key_pair.public_key_pem)
        assert len(service.cache) == 0

    def test_caching_disabled(self, service, signed_license, key_pair, sink):
        opts = LicenseValidationOptions(enable_caching=False)
        service.validate(signed_license, key_pair.public_key_pem, opts)
        service.validate(signed_license, key_pair.public_key_pem, opts)
        assert len(service.cache) == 0
        assert len(sink.entries) == 2

    def test_cached_result_expires(self, key_store, signed_license, key_pair):
        clock = FixedClock()
        service = LicenseValidationService(
            key_store, options=LicenseValidationOptions(cache_duration_minutes=1), clock=clock,
        )
        service.validate(signed_license, key_pair.public_key_pem)
        clock.now = NOW + timedelta(minutes=2)
        result = service.validate(signed_license, key_pair.public_key_pem)
        assert result.validated_at == NOW + timedelta(minutes=2)

    def test_mutating_result_does_not_poison_cache(self, service, signed_license, key_pair):
        first = service.validate(signed_license, key_pair.public_key_pem)
        first.status = LicenseStatus.REVOKED
        assert service.validate(signed_license, key_pair.public_key_pem).status is LicenseStatus.ACTIVE


class TestAudit:
    def test_entry_recorded(self, service, signed_license, key_pair, sink):
        service.validate(signed_license, key_pair.public_key_pem)
        entry = sink.entries[0]
        assert entry.operation is LicenseOperation.VALIDATED
        assert entry.license_id == "lic-0001"
        assert entry.details["status"] == "active"
        assert entry.timestamp == NOW

    def test_failures_are_audited(self, service, key_pair, sink):
        service.validate(SignedLicense(license_data="???", signature=""), key_pair.public_key_pem)
        assert sink.entries[0].details["status"] == "corrupted"
        assert sink.entries[0].license_id == ""

    def test_audit_disabled(self, service, signed_license, key_pair, sink):
        service.validate(signed_license, key_pair.public_key_pem,
                         LicenseValidationOptions(enable_audit_logging=False))
        assert sink.entries == []

    def test_audit_failure_does_not_change_result(self, key_store, signed_license, key_pair, clock):
        service = LicenseValidationService(key_store, audit_sink=_FailingSink(), clock=clock)
        assert service.validate(signed_license, key_pair.public_key_pem).status is LicenseStatus.ACTIVE


class TestValidateFromJson:
    def test_valid(self, service, signed_license, key_pair):
        result = service.validate_from_json(signed_license.to_json(), key_pair.public_key_pem)
        assert result.is_valid

    def test_pascal_case_envelope(self, service, signed_license, key_pair):
        doc = {k[0].upper() + k[1:]: v for k, v in signed_license.to_dict().items()}
        assert service.validate_from_json(json.dumps(doc), key_pair.public_key_pem).is_valid

    def test_bad_json(self, service):
        result = service.validate_from_json("{nope")
        assert result.status is LicenseStatus.CORRUPTED
        assert result.validation_messages[0].endswith("License JSON parsing failed")

    @pytest.mark.parametrize("text", ["[]", '"string"', '{"licenseData": 5}'])
    def test_bad_shape(self, service, text):
        result = service.validate_from_json(text)
        assert result.status is LicenseStatus.CORRUPTED
        assert result.validation_messages[0].endswith("Invalid license JSON format")


class TestValidateFromFile:
    def test_valid(self, service, signed_license, key_pair, tmp_path):
        lic_path = tmp_path / "license.json"
        key_path = tmp_path / "public.pem"
        lic_path.write_text(signed_license.to_json(indent=2))
        key_path.write_text(key_pair.public_key_pem)
        assert service.validate_from_file(lic_path, key_path).is_valid

    def test_key_from_repository(self, service, signed_license, tmp_path):
        lic_path = tmp_path / "license.json"
        lic_path.write_text(signed_license.to_json())
        assert service.validate_from_file(lic_path).is_valid

    def test_missing_license_file(self, service, tmp_path):
        result = service.validate_from_file(tmp_path / "missing.json")
        assert result.status is LicenseStatus.NOT_FOUND

    def test_missing_key_file(self, service, signed_license, tmp_path):
        lic_path = tmp_path / "license.json"
        lic_path.write_text(signed_license.to_json())
        result = service.validate_from_file(lic_path, tmp_path / "nope.pem")
        assert result.status is LicenseStatus.NOT_FOUND

    def test_empty_key_file(self, service, signed_license, tmp_path):
        lic_path = tmp_path / "license.json"
        key_path = tmp_path / "public.pem"
        lic_path.write_text(signed_license.to_json())
        key_path.write_text("  \n")
        result = service.validate_from_file(lic_path, key_path)
        assert result.status is LicenseStatus.INVALID
        assert result.validation_messages[0].endswith("Public key file is empty")
