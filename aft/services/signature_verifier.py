"""
Signature verification for workflow steps.

Two methods are supported:

  manual  — the signer types their name under the fixed certification
            statement. Valid iff the trimmed name is non-empty.
  cac     — the browser/middleware signs with the signer's Common Access Card
            and sends the certificate descriptor plus the signature bytes.

SECURITY NOTE: CAC verification here is STRUCTURAL ONLY. It checks the
certificate validity window, that the issuer matches a trusted DOD CA name
pattern, that the subject carries CN= and OU=, and that signature bytes are
present. It does NOT verify the signature bytes against the certificate's
public key and does NOT build a chain of trust, so a fabricated descriptor
that satisfies those checks is accepted. Every CAC signature is stored with a
SHA-256 tamper-evidence hash that ``verify_integrity`` can recompute.

``verify()`` never raises for user input: problems come back as
``VerificationResult(valid=False, reason=...)``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import current_app, has_app_context

from aft.core.exceptions import ValidationError
from aft.models.signature import CERTIFICATION_STATEMENT

logger = logging.getLogger(__name__)

DEFAULT_TRUSTED_ISSUER_PATTERNS = (r"\bDOD\b", r"DEPARTMENT OF DEFENSE")
DEFAULT_ALGORITHM = "RSA-SHA256"


# ── Payload types ────────────────────────────────────────────────────────────


def _parse_ts(value, field_name: str) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # epoch milliseconds from browser clients
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"Invalid timestamp for {field_name}", {field_name: str(value)}) from exc


def _utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def canonical_timestamp(dt: datetime) -> str:
    """UTC, millisecond precision. Stable across DB round trips."""
    dt = _utc(dt)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class CertificateDescriptor:
    thumbprint: str
    subject: str
    issuer: str
    serial_number: str
    valid_from: datetime | None
    valid_to: datetime | None
    certificate: str = ""  # raw base64 blob

    @classmethod
    def from_dict(cls, data: dict) -> "CertificateDescriptor":
        return cls(
            thumbprint=str(data.get("thumbprint") or ""),
            subject=str(data.get("subject") or ""),
            issuer=str(data.get("issuer") or ""),
            serial_number=str(data.get("serial_number") or data.get("serialNumber") or ""),
            valid_from=_parse_ts(data.get("valid_from") or data.get("validFrom"), "valid_from"),
            valid_to=_parse_ts(data.get("valid_to") or data.get("validTo"), "valid_to"),
            certificate=str(data.get("certificate") or ""),
        )


@dataclass(frozen=True)
class SignaturePayload:
    """What a client submits to sign a step."""

    method: str
    signer_name: str = ""
    certificate: CertificateDescriptor | None = None
    signature: str = ""  # base64 signature bytes (cac)
    algorithm: str = DEFAULT_ALGORITHM
    timestamp: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    notes: str | None = None

    @classmethod
    def from_dict(cls, data: dict, *, ip_address=None, user_agent=None) -> "SignaturePayload":
        """Build a payload from JSON input. Raises ValidationError on malformed input."""
        if not isinstance(data, dict):
            raise ValidationError("signature must be an object")
        method = str(data.get("method") or "manual").lower()
        if method not in ("manual", "cac"):
            raise ValidationError("signature.method must be 'manual' or 'cac'", {"method": method})
        cert = data.get("certificate")
        if cert is not None and not isinstance(cert, dict):
            raise ValidationError("signature.certificate must be an object")
        return cls(
            method=method,
            signer_name=str(data.get("signer_name") or data.get("signerName") or ""),
            certificate=CertificateDescriptor.from_dict(cert) if cert else None,
            signature=str(data.get("signature") or ""),
            algorithm=str(data.get("algorithm") or DEFAULT_ALGORITHM),
            timestamp=_parse_ts(data.get("timestamp"), "timestamp"),
            ip_address=ip_address,
            user_agent=user_agent,
            notes=data.get("notes"),
        )


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    reason: str | None
    signature_hash: str | None
    method: str
    signed_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "reason": self.reason,
            "signature_hash": self.signature_hash,
            "method": self.method,
        }


# ── Hashing ──────────────────────────────────────────────────────────────────


def cac_signature_hash(signature: str, thumbprint: str, signed_at: datetime, algorithm: str) -> str:
    body = json.dumps(
        {
            "signature": signature,
            "certificateThumbprint": thumbprint,
            "timestamp": canonical_timestamp(signed_at),
            "algorithm": algorithm,
        },
        separators=(",", ":"),
    )
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def manual_signature_hash(signer_name: str, signer_email: str, signed_at: datetime) -> str:
    body = json.dumps(
        {
            "signerName": signer_name,
            "signerEmail": signer_email,
            "statement": CERTIFICATION_STATEMENT,
            "timestamp": canonical_timestamp(signed_at),
        },
        separators=(",", ":"),
    )
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


# ── Certificate subject helpers ──────────────────────────────────────────────


def parse_certificate_subject(subject: str) -> dict[str, str]:
    """``"CN=DOE.JOHN.A.123,OU=DoD,O=U.S. Government"`` → ``{"CN": ..., "OU": ..., "O": ...}``.

    Repeated attributes keep the first value.
    """
    parts: dict[str, str] = {}
    for chunk in (subject or "").split(","):
        key, sep, value = chunk.partition("=")
        if not sep:
            continue
        key = key.strip().upper()
        if key and key not in parts:
            parts[key] = value.strip()
    return parts


def format_common_name(cn: str) -> str:
    """CAC common names are ``LAST.FIRST.MIDDLE.EDIPI``; display as ``FIRST LAST``."""
    pieces = [p for p in (cn or "").split(".") if p]
    if len(pieces) >= 2:
        return f"{pieces[1]} {pieces[0]}".upper()
    return (cn or "").strip()


def signer_display_name(subject: str) -> str:
    cn = parse_certificate_subject(subject).get("CN", "")
    return format_common_name(cn) if cn else "Unknown signer"


# ── Verifier ─────────────────────────────────────────────────────────────────


class SignatureVerifier:
    """Validates signature payloads. Stateless apart from configuration."""

    def __init__(self, trusted_issuer_patterns=None):
        patterns = trusted_issuer_patterns or DEFAULT_TRUSTED_ISSUER_PATTERNS
        self._issuer_patterns = [re.compile(p, re.IGNORECASE) for p in patterns]

    @classmethod
    def from_config(cls) -> "SignatureVerifier":
        patterns = None
        if has_app_context():
            patterns = current_app.config.get("CAC_TRUSTED_ISSUER_PATTERNS")
        return cls(patterns)

    def issuer_trusted(self, issuer: str) -> bool:
        return any(p.search(issuer or "") for p in self._issuer_patterns)

    def check_certificate(self, cert: CertificateDescriptor | None, now: datetime) -> str | None:
        """Return the reason the certificate is unacceptable, or None."""
        if cert is None:
            return "CAC certificate is required"
        if not cert.thumbprint:
            return "Certificate thumbprint is missing"
        if cert.valid_from is None or cert.valid_to is None:
            return "Certificate validity window is missing"
        now = _utc(now)
        if now < _utc(cert.valid_from):
            return "Certificate is not yet valid"
        if now > _utc(cert.valid_to):
            return "Certificate has expired"
        if not self.issuer_trusted(cert.issuer):
            return "Certificate not issued by DOD CA"
        subject = cert.subject.upper()
        if "CN=" not in subject or "OU=" not in subject:
            return "Invalid certificate subject format"
        return None

    def verify(self, payload: SignaturePayload, signer_email: str, now: datetime | None = None) -> VerificationResult:
        now = now or datetime.now(timezone.utc)
        method = (payload.method or "").lower()
        signed_at = _utc(payload.timestamp) or _utc(now)

        if method == "manual":
            name = (payload.signer_name or "").strip()
            if not name:
                return VerificationResult(False, "Signer name is required", None, method)
            return VerificationResult(
                True, None, manual_signature_hash(name, signer_email, signed_at), method, signed_at,
            )

        if method != "cac":
            return VerificationResult(False, f"Unsupported signature method: {payload.method!r}", None, method or "unknown")

        reason = self.check_certificate(payload.certificate, now)
        if reason is None:
            reason = self._check_signature_bytes(payload.signature)
        if reason is not None:
            logger.warning(
                "CAC signature rejected: %s", reason,
                extra={"event_type": "signature_rejected", "signer_email": signer_email},
            )
            return VerificationResult(False, reason, None, method)

        digest = cac_signature_hash(payload.signature, payload.certificate.thumbprint, signed_at, payload.algorithm)
        return VerificationResult(True, None, digest, method, signed_at)

    @staticmethod
    def _check_signature_bytes(signature: str) -> str | None:
        if not signature:
            return "Signature data is missing"
        try:
            raw = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError):
            return "Signature data is not valid base64"
        if not raw:
            return "Signature data is empty"
        return None
