"""Tests for licensor.decoder."""

from __future__ import annotations

import base64
import json

import pytest

from licensor.decoder import decode_license, decode_license_data, encode_license
from licensor.models import SignedLicense

from conftest import make_license


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


class TestDecodeLicense:
    def test_round_trip(self):
        lic = make_license(licensed_to="Søren Ltd")
        assert decode_license_data(encode_license(lic)) == lic

    def test_payload_is_camel_case_json(self):
        payload = json.loads(base64.b64decode(encode_license(make_license())))
        assert payload["productId"] == "acme-cad"
        assert payload["validTo"] == "2025-01-01T00:00:00Z"

    @pytest.mark.parametrize("data", [
        "",
        "not base64 at all!",
        _b64("{not json"),
        _b64("[1, 2, 3]"),
        _b64(json.dumps({"productId": "x"})),
        base64.b64encode(b"\xff\xfe\xfd").decode("ascii"),
    ])
    def test_malformed_payload_returns_none(self, data):
        assert decode_license_data(data) is None

    def test_inverted_window_returns_none(self):
        doc = make_license().to_dict()
        doc["validFrom"], doc["validTo"] = doc["validTo"], doc["validFrom"]
        assert decode_license_data(_b64(json.dumps(doc))) is None

    def test_decode_from_envelope(self):
        lic = make_license()
        signed = SignedLicense(license_data=encode_license(lic), signature="")
        assert decode_license(signed) == lic

    def test_out_of_range_number_returns_none(self):
        text = json.dumps(make_license(max_api_calls_per_month=12345).to_dict())
        assert decode_license_data(_b64(text.replace("12345", "1e400"))) is None

    def test_string_feature_flag_returns_none(self):
        doc = make_license().to_dict()
        doc["featuresIncluded"][2]["isCurrentlyValid"] = "false"
        assert decode_license_data(_b64(json.dumps(doc))) is None
