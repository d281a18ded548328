"""
Signature store — persists verified signatures inside the caller's transaction.

``record()`` only flushes; committing (or rolling back) is the job of the
workflow service so that the status change, the signature and the history
entry land together.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from aft.core.exceptions import DuplicateSignatureError, NotFoundError, ValidationError
from aft.core.workflow import Actor
from aft.models import db
from aft.models.signature import CERTIFICATION_STATEMENT, VALID_STEP_TYPES, Signature
from aft.services.signature_verifier import (
    CertificateDescriptor,
    SignaturePayload,
    SignatureVerifier,
    VerificationResult,
    cac_signature_hash,
    manual_signature_hash,
    parse_certificate_subject,
    signer_display_name,
)

logger = logging.getLogger(__name__)


def exists(request_id: int, step_type: str) -> bool:
    return (
        db.session.query(Signature.id)
        .filter_by(request_id=request_id, step_type=step_type)
        .first()
        is not None
    )


def record(
    request_id: int,
    step_type: str,
    signer: Actor,
    payload: SignaturePayload,
    verification: VerificationResult,
) -> int:
    """Insert a signature for ``(request_id, step_type)``.

    Returns:
        The new signature id.

    Raises:
        ValidationError: unknown step type or an unverified payload.
        DuplicateSignatureError: the step is already signed.
    """
    if step_type not in VALID_STEP_TYPES:
        raise ValidationError(f"Unknown signature step: {step_type}", {"step_type": step_type})
    if not verification.valid:
        raise ValidationError(f"Signature rejected: {verification.reason}", {"signature": verification.reason})
    if exists(request_id, step_type):
        raise DuplicateSignatureError(request_id, step_type)

    sig = Signature(
        request_id=request_id,
        step_type=step_type,
        method=verification.method,
        signer_id=signer.user_id,
        signer_email=signer.email,
        signature_hash=verification.signature_hash,
        ip_address=payload.ip_address,
        user_agent=(payload.user_agent or "")[:500] or None,
        notes=payload.notes,
        signed_at=verification.signed_at or datetime.now(timezone.utc),
    )
    if verification.method == "manual":
        sig.signer_name = payload.signer_name.strip()
        sig.certification_statement = CERTIFICATION_STATEMENT
    else:
        cert = payload.certificate
        sig.signer_name = signer_display_name(cert.subject)
        sig.cert_thumbprint = cert.thumbprint
        sig.cert_subject = cert.subject
        sig.cert_issuer = cert.issuer
        sig.cert_serial = cert.serial_number
        sig.cert_valid_from = cert.valid_from
        sig.cert_valid_to = cert.valid_to
        sig.certificate_blob = cert.certificate or None
        sig.signature_data = payload.signature
        sig.algorithm = payload.algorithm

    # The pre-check can race with a concurrent signer; the unique constraint
    # is the final word. Savepoint so the caller's session stays usable.
    try:
        with db.session.begin_nested():
            db.session.add(sig)
            db.session.flush()
    except IntegrityError as exc:
        raise DuplicateSignatureError(request_id, step_type) from exc

    logger.info(
        "Signature recorded",
        extra={
            "event_type": "signature_recorded",
            "request_id": request_id,
            "step_type": step_type,
            "method": sig.method,
            "user_id": signer.user_id,
        },
    )
    return sig.id


def list_for(request_id: int) -> list[Signature]:
    """All signatures on a request, newest first."""
    return (
        Signature.query
        .filter_by(request_id=request_id)
        .order_by(Signature.created_at.desc(), Signature.id.desc())
        .all()
    )


def request_id_for(signature_id: int) -> int:
    """Parent request of a signature.

    Raises:
        NotFoundError: no such signature.
    """
    request_id = db.session.execute(
        select(Signature.request_id).where(Signature.id == signature_id)
    ).scalar_one_or_none()
    if request_id is None:
        raise NotFoundError("Signature", signature_id)
    return request_id


def verify_integrity(signature_id: int, now: datetime | None = None) -> dict:
    """Recompute the tamper-evidence hash and, for CAC, recheck the validity window.

    Raises:
        NotFoundError: no such signature.
    """
    sig = db.session.get(Signature, signature_id)
    if sig is None:
        raise NotFoundError("Signature", signature_id)
    now = now or datetime.now(timezone.utc)

    if sig.method == "cac":
        expected = cac_signature_hash(sig.signature_data or "", sig.cert_thumbprint or "", sig.signed_at, sig.algorithm or "")
        cert = CertificateDescriptor(
            thumbprint=sig.cert_thumbprint or "",
            subject=sig.cert_subject or "",
            issuer=sig.cert_issuer or "",
            serial_number=sig.cert_serial or "",
            valid_from=sig.cert_valid_from,
            valid_to=sig.cert_valid_to,
        )
        cert_reason = SignatureVerifier.from_config().check_certificate(cert, now)
    else:
        expected = manual_signature_hash(sig.signer_name or "", sig.signer_email, sig.signed_at)
        cert_reason = None

    hash_matches = expected == sig.signature_hash
    reason = None
    if not hash_matches:
        reason = "Signature hash mismatch"
    elif cert_reason:
        reason = cert_reason

    if not hash_matches:
        logger.warning(
            "Signature integrity check failed",
            extra={"event_type": "signature_tamper", "signature_id": sig.id, "request_id": sig.request_id},
        )
    return {
        "signature_id": sig.id,
        "valid": hash_matches and cert_reason is None,
        "hash_matches": hash_matches,
        "certificate_valid": cert_reason is None,
        "reason": reason,
        "checked_at": now.isoformat(),
    }


def export_signature(sig: Signature) -> dict:
    """Audit-export view of a signature, including the parsed subject."""
    d = sig.to_dict()
    if sig.method == "cac":
        subject = parse_certificate_subject(sig.cert_subject or "")
        d["display_name"] = signer_display_name(sig.cert_subject or "")
        d["subject_fields"] = subject
        d["signature_data"] = sig.signature_data
    else:
        d["display_name"] = sig.signer_name
    return d
