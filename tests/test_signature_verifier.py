"""
Signature verifier unit tests.

Tests cover:
  - Manual signatures (name required, deterministic hash)
  - CAC structural checks: validity window, trusted issuer, subject format,
    signature bytes
  - Payload parsing from JSON input
  - Certificate subject helpers
"""

from datetime import datetime, timedelta, timezone

import pytest

from aft.core.exceptions import ValidationError
from aft.services.signature_verifier import (
    SignaturePayload,
    SignatureVerifier,
    canonical_timestamp,
    format_common_name,
    manual_signature_hash,
    parse_certificate_subject,
    signer_display_name,
)

NOW = datetime(2026, 5, 4, 12, 0, 0, 123456, tzinfo=timezone.utc)


@pytest.fixture()
def verifier():
    return SignatureVerifier()


def _payload(data):
    return SignaturePayload.from_dict(data, ip_address="10.1.1.1", user_agent="pytest")


# ═════════════════════════════════════════════════════════════════════════
# MANUAL
# ═════════════════════════════════════════════════════════════════════════


class TestManual:
    def test_valid_manual(self, verifier, manual_sig):
        result = verifier.verify(_payload(manual_sig("Riley Requestor")), "requestor@aft.test", NOW)
        assert result.valid is True
        assert result.method == "manual"
        assert result.signature_hash == manual_signature_hash("Riley Requestor", "requestor@aft.test", NOW)
        assert result.signed_at == NOW

    def test_blank_name_invalid(self, verifier, manual_sig):
        result = verifier.verify(_payload(manual_sig("   ")), "requestor@aft.test", NOW)
        assert result.valid is False
        assert result.reason == "Signer name is required"
        assert result.signature_hash is None

    def test_hash_depends_on_signer(self):
        a = manual_signature_hash("Riley", "a@aft.test", NOW)
        b = manual_signature_hash("Riley", "b@aft.test", NOW)
        assert a != b
        assert len(a) == 64


# ═════════════════════════════════════════════════════════════════════════
# CAC
# ═════════════════════════════════════════════════════════════════════════


class TestCac:
    def test_valid_cac(self, verifier, cac_sig):
        result = verifier.verify(_payload(cac_sig(NOW)), "dta@aft.test", NOW)
        assert result.valid is True, result.reason
        assert result.method == "cac"
        assert len(result.signature_hash) == 64

    def test_expired(self, verifier, cac_sig):
        data = cac_sig(NOW, valid_to=(NOW - timedelta(days=1)).isoformat())
        result = verifier.verify(_payload(data), "dta@aft.test", NOW)
        assert (result.valid, result.reason) == (False, "Certificate has expired")

    def test_not_yet_valid(self, verifier, cac_sig):
        data = cac_sig(NOW, valid_from=(NOW + timedelta(days=1)).isoformat())
        result = verifier.verify(_payload(data), "dta@aft.test", NOW)
        assert result.reason == "Certificate is not yet valid"

    def test_untrusted_issuer(self, verifier, cac_sig):
        data = cac_sig(NOW, issuer="CN=Let's Encrypt R3,O=Let's Encrypt,C=US")
        result = verifier.verify(_payload(data), "dta@aft.test", NOW)
        assert result.reason == "Certificate not issued by DOD CA"

    def test_subject_without_ou(self, verifier, cac_sig):
        data = cac_sig(NOW, subject="CN=DOE.JOHN.A.1234567890,O=U.S. Government")
        result = verifier.verify(_payload(data), "dta@aft.test", NOW)
        assert result.reason == "Invalid certificate subject format"

    def test_missing_certificate(self, verifier):
        result = verifier.verify(_payload({"method": "cac", "signature": "c2ln"}), "dta@aft.test", NOW)
        assert result.reason == "CAC certificate is required"

    def test_signature_bytes_must_be_base64(self, verifier, cac_sig):
        data = cac_sig(NOW)
        data["signature"] = "not base64!!"
        result = verifier.verify(_payload(data), "dta@aft.test", NOW)
        assert result.reason == "Signature data is not valid base64"

    def test_configured_issuer_patterns(self, cac_sig):
        data = cac_sig(NOW, issuer="CN=ECA Root CA 4,O=U.S. Government")
        assert SignatureVerifier([r"\bECA\b"]).verify(_payload(data), "x@aft.test", NOW).valid is True
        assert SignatureVerifier().verify(_payload(data), "x@aft.test", NOW).valid is False


# ═════════════════════════════════════════════════════════════════════════
# PARSING & HELPERS
# ═════════════════════════════════════════════════════════════════════════


class TestPayloadParsing:
    def test_unknown_method(self):
        with pytest.raises(ValidationError):
            SignaturePayload.from_dict({"method": "fingerprint"})

    def test_not_an_object(self):
        with pytest.raises(ValidationError):
            SignaturePayload.from_dict("Riley")

    def test_bad_timestamp(self):
        with pytest.raises(ValidationError):
            SignaturePayload.from_dict({"method": "manual", "signer_name": "R", "timestamp": "yesterday"})

    def test_camel_case_keys_and_epoch_millis(self):
        p = SignaturePayload.from_dict({
            "method": "cac",
            "certificate": {"thumbprint": "AA", "serialNumber": "01", "validFrom": 0, "validTo": 1000},
        })
        assert p.certificate.serial_number == "01"
        assert p.certificate.valid_to == datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)


class TestHelpers:
    def test_canonical_timestamp(self):
        assert canonical_timestamp(NOW) == "2026-05-04T12:00:00.123Z"
        naive = datetime(2026, 5, 4, 12, 0, 0, 123999)
        assert canonical_timestamp(naive) == "2026-05-04T12:00:00.123Z"

    def test_parse_subject(self):
        parts = parse_certificate_subject("CN=DOE.JOHN.A.123, OU=DoD, OU=PKI, O=U.S. Government")
        assert parts == {"CN": "DOE.JOHN.A.123", "OU": "DoD", "O": "U.S. Government"}

    def test_format_common_name(self):
        assert format_common_name("DOE.JOHN.A.1234567890") == "JOHN DOE"
        assert format_common_name("service-account") == "service-account"

    def test_signer_display_name(self):
        assert signer_display_name("CN=SMITH.JANE.Q.99,OU=DoD") == "JANE SMITH"
        assert signer_display_name("OU=DoD") == "Unknown signer"
