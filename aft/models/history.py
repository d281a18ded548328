"""
Request history — the append-only audit trail of a transfer request.

Each workflow transition writes exactly one row (see
``aft.services.audit_trail``). Ordering by ``created_at`` then ``id`` is the
canonical timeline.
"""

from datetime import datetime, timezone

from sqlalchemy import event

from aft.core.exceptions import ImmutableRecordError
from aft.models import db

HISTORY_ACTIONS = frozenset({
    "CREATED",
    "DRAFT_UPDATED",
    "SUBMITTED",
    "DAO_APPROVED",
    "ISSM_APPROVED",
    "ISSM_APPROVED_CAC",
    "CPSO_APPROVED",
    "CPSO_APPROVED_CAC",
    "DTA_ASSIGNED",
    "DTA_SIGNED",
    "DTA_SIGNED_CAC",
    "SME_SIGNED",
    "SME_SIGNED_CAC",
    "MEDIA_CUSTODIAN_COMPLETED",
    "MEDIA_DISPOSED",
    "REJECTED",
    "CANCELLED",
})


class RequestHistory(db.Model):
    __tablename__ = "request_history"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer,
        db.ForeignKey("transfer_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action = db.Column(db.String(40), nullable=False)
    from_status = db.Column(db.String(40))
    to_status = db.Column(db.String(40))
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_email = db.Column(db.String(200), nullable=False)
    actor_role = db.Column(db.String(30))
    notes = db.Column(db.Text)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_request_history_request_created", "request_id", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "actor_email": self.actor_email,
            "actor_role": self.actor_role,
            "notes": self.notes,
            "timestamp": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<RequestHistory #{self.id} request={self.request_id} {self.action}>"


@event.listens_for(RequestHistory, "before_update")
def _history_no_update(mapper, connection, target):
    raise ImmutableRecordError("RequestHistory", "update")


@event.listens_for(RequestHistory, "before_delete")
def _history_no_delete(mapper, connection, target):
    raise ImmutableRecordError("RequestHistory", "delete")
