"""
Outbound email audit log.

Every notification the platform sends (or, in log-only mode, would have sent)
is recorded here for audit/debug.
"""

from datetime import datetime, timezone

from aft.models import db


class EmailLog(db.Model):
    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False, index=True)
    subject = db.Column(db.String(500), nullable=False)
    template_name = db.Column(db.String(100), nullable=True, comment="Notification kind / template used")
    status = db.Column(db.String(20), default="queued", comment="queued, sent, logged, failed")
    error_message = db.Column(db.Text, nullable=True)
    request_id = db.Column(
        db.Integer,
        db.ForeignKey("transfer_requests.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_email": self.recipient_email,
            "subject": self.subject,
            "template_name": self.template_name,
            "status": self.status,
            "error_message": self.error_message,
            "request_id": self.request_id,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EmailLog #{self.id} {self.template_name} → {self.recipient_email} [{self.status}]>"
