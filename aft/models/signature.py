"""
Signature model — immutable per-step signatures on transfer requests.

Business rules:
- Exactly one signature per (request_id, step_type); enforced by a unique
  constraint and checked up front by ``aft.services.signature_store``.
- Records are NEVER updated or deleted. ``before_update`` / ``before_delete``
  mapper events raise ``ImmutableRecordError``.
- signer_name / signer_email are snapshots taken at signing time so the
  record stays meaningful if the User row changes later.
"""

from datetime import datetime, timezone

from sqlalchemy import event

from aft.core.exceptions import ImmutableRecordError
from aft.models import db

CERTIFICATION_STATEMENT = (
    "I certify that the above file(s)/media to be transferred to/from the IS are "
    "required to support the development and sustainment contractual efforts and "
    "comply with all applicable security requirements."
)

VALID_STEP_TYPES = frozenset({
    "requestor_signature",
    "approver_approval",
    "cpso_approval",
    "dta_signature",
    "sme_signature",
})


class Signature(db.Model):
    __tablename__ = "signatures"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer,
        db.ForeignKey("transfer_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_type = db.Column(db.String(30), nullable=False, comment="requestor_signature | approver_approval | ...")
    method = db.Column(db.String(10), nullable=False, comment="manual | cac")

    # Signer snapshot
    signer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    signer_email = db.Column(db.String(200), nullable=False)
    signer_name = db.Column(db.String(255))

    # Manual attestation
    certification_statement = db.Column(db.Text)
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.String(500))

    # CAC certificate descriptor
    cert_thumbprint = db.Column(db.String(128))
    cert_subject = db.Column(db.String(500))
    cert_issuer = db.Column(db.String(500))
    cert_serial = db.Column(db.String(128))
    cert_valid_from = db.Column(db.DateTime(timezone=True))
    cert_valid_to = db.Column(db.DateTime(timezone=True))
    certificate_blob = db.Column(db.Text, comment="Base64 DER/PEM as presented by the client")
    signature_data = db.Column(db.Text, comment="Base64 signature bytes")
    algorithm = db.Column(db.String(50))

    signature_hash = db.Column(db.String(64), nullable=False, comment="SHA-256 tamper-evidence hash")
    notes = db.Column(db.Text)
    signed_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("request_id", "step_type", name="uq_signature_request_step"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "step_type": self.step_type,
            "method": self.method,
            "signer_id": self.signer_id,
            "signer_email": self.signer_email,
            "signer_name": self.signer_name,
            "certification_statement": self.certification_statement,
            "ip_address": self.ip_address,
            "certificate": {
                "thumbprint": self.cert_thumbprint,
                "subject": self.cert_subject,
                "issuer": self.cert_issuer,
                "serial_number": self.cert_serial,
                "valid_from": self.cert_valid_from.isoformat() if self.cert_valid_from else None,
                "valid_to": self.cert_valid_to.isoformat() if self.cert_valid_to else None,
            } if self.method == "cac" else None,
            "algorithm": self.algorithm,
            "signature_hash": self.signature_hash,
            "notes": self.notes,
            "signed_at": self.signed_at.isoformat() if self.signed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Signature #{self.id} request={self.request_id} {self.step_type} ({self.method})>"


@event.listens_for(Signature, "before_update")
def _signature_no_update(mapper, connection, target):
    raise ImmutableRecordError("Signature", "update")


@event.listens_for(Signature, "before_delete")
def _signature_no_delete(mapper, connection, target):
    raise ImmutableRecordError("Signature", "delete")
