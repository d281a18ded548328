"""
Assured File Transfer request model.

A TransferRequest is the unit of work moved through the approval workflow in
``aft.core.workflow``. Its ``status`` column is only ever written through the
conditional update in ``aft.services.request_store.apply_transition`` (plus
the initial ``draft`` on insert); descriptive fields are editable while the
request is still a draft.
"""

import secrets
import string
import time
from datetime import datetime, timezone

from aft.models import db

# Fields a requestor may set on create and change while the request is a draft
DRAFT_EDITABLE_FIELDS = (
    "transfer_type",
    "classification",
    "caveat_info",
    "transfer_purpose",
    "data_description",
    "source_system",
    "source_location",
    "dest_system",
    "dest_location",
    "data_format",
    "data_size",
    "transfer_method",
    "encryption",
    "files_list",
    "urgency_level",
    "requested_start_date",
    "requested_end_date",
)

REQUIRED_DRAFT_FIELDS = ("transfer_type", "classification", "transfer_purpose", "data_description")

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, rem = divmod(n, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def generate_request_number() -> str:
    """``AFT-<base36 millisecond clock>-<4 random base36 chars>``, upper case."""
    stamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"AFT-{stamp}-{suffix}"


class TransferRequest(db.Model):
    __tablename__ = "transfer_requests"

    id = db.Column(db.Integer, primary_key=True)
    request_number = db.Column(db.String(40), nullable=False, unique=True, index=True)
    status = db.Column(db.String(40), nullable=False, default="draft", index=True)

    # Role-bound participants
    requestor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    dao_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cpso_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    dta_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    assigned_sme_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    media_custodian_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    rejected_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    # Transfer media carried by the DTA
    selected_drive_id = db.Column(db.Integer, db.ForeignKey("media_drives.id"), nullable=True, index=True)

    # Transfer description
    transfer_type = db.Column(db.String(20), nullable=False, comment="high-to-low | low-to-high")
    classification = db.Column(db.String(50), nullable=False)
    caveat_info = db.Column(db.String(200))
    transfer_purpose = db.Column(db.Text, nullable=False)
    data_description = db.Column(db.Text, nullable=False)
    source_system = db.Column(db.String(200))
    source_location = db.Column(db.String(200))
    dest_system = db.Column(db.String(200))
    dest_location = db.Column(db.String(200))
    data_format = db.Column(db.String(100))
    data_size = db.Column(db.String(50))
    transfer_method = db.Column(db.String(100))
    encryption = db.Column(db.String(100))
    files_list = db.Column(db.JSON, default=list)
    urgency_level = db.Column(db.String(20), default="normal")
    requested_start_date = db.Column(db.Date)
    requested_end_date = db.Column(db.Date)

    # Workflow metadata
    signature_method = db.Column(db.String(10), comment="manual | cac (requestor signature)")
    rejection_reason = db.Column(db.Text)
    disposition_notes = db.Column(db.Text)

    # Media disposition record (Media Custodian)
    disposition_optical_destroyed = db.Column(db.String(3), comment="yes | no | na")
    disposition_optical_retained = db.Column(db.String(3), comment="yes | no | na")
    disposition_ssd_sanitized = db.Column(db.String(3), comment="yes | no | na")
    disposition_custodian_name = db.Column(db.String(200))
    disposition_date = db.Column(db.Date)

    submitted_at = db.Column(db.DateTime(timezone=True))
    transfer_completed_at = db.Column(db.DateTime(timezone=True))
    disposed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    requestor = db.relationship("User", foreign_keys=[requestor_id])
    dta = db.relationship("User", foreign_keys=[dta_id])
    assigned_sme = db.relationship("User", foreign_keys=[assigned_sme_id])

    __table_args__ = (
        db.CheckConstraint(
            "transfer_type IN ('high-to-low', 'low-to-high')", name="ck_transfer_type",
        ),
        db.Index("ix_transfer_requests_status_updated", "status", "updated_at"),
    )

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "request_number": self.request_number,
            "status": self.status,
            "requestor_id": self.requestor_id,
            "requestor_email": self.requestor.email if self.requestor else None,
            "dao_id": self.dao_id,
            "approver_id": self.approver_id,
            "cpso_id": self.cpso_id,
            "dta_id": self.dta_id,
            "assigned_sme_id": self.assigned_sme_id,
            "media_custodian_id": self.media_custodian_id,
            "signature_method": self.signature_method,
            "rejection_reason": self.rejection_reason,
            "selected_drive_id": self.selected_drive_id,
            "disposition_notes": self.disposition_notes,
            "disposition": {
                "optical_destroyed": self.disposition_optical_destroyed,
                "optical_retained": self.disposition_optical_retained,
                "ssd_sanitized": self.disposition_ssd_sanitized,
                "custodian_name": self.disposition_custodian_name,
                "date": self.disposition_date.isoformat() if self.disposition_date else None,
            } if self.disposed_at else None,
        }
        for name in DRAFT_EDITABLE_FIELDS:
            value = getattr(self, name)
            d[name] = value.isoformat() if hasattr(value, "isoformat") else value
        for name in ("submitted_at", "transfer_completed_at", "disposed_at", "created_at", "updated_at"):
            value = getattr(self, name)
            d[name] = value.isoformat() if value else None
        return d

    def __repr__(self):
        return f"<TransferRequest {self.request_number} [{self.status}]>"
