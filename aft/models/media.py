"""
Transfer media inventory.

Models:
    - MediaDrive: a physical drive (SSD, optical, ...) tracked by the Media
      Custodian. A drive is issued to one DTA at a time, carried through the
      transfer it is selected for, and returned when that transfer's media
      is disposed.

Lifecycle:
    available ──issue──▶ issued ──return──▶ available
    available / issued ──retire──▶ retired
"""

from datetime import datetime, timezone

from aft.models import db

# ── Constants ─────────────────────────────────────────────────────────────────

MEDIA_TYPES = {"SSD", "HDD", "USB", "CD", "DVD", "BD"}
OPTICAL_MEDIA_TYPES = {"CD", "DVD", "BD"}

DRIVE_STATUSES = {"available", "issued", "retired"}


class MediaDrive(db.Model):
    __tablename__ = "media_drives"

    id = db.Column(db.Integer, primary_key=True)
    serial_number = db.Column(db.String(100), nullable=False, unique=True, index=True)
    media_control_number = db.Column(db.String(50), unique=True)
    media_type = db.Column(db.String(10), nullable=False, default="SSD", comment="SSD | HDD | USB | CD | DVD | BD")
    model = db.Column(db.String(100), nullable=False)
    capacity = db.Column(db.String(50), nullable=False)
    classification = db.Column(db.String(50))
    location = db.Column(db.String(200))
    notes = db.Column(db.Text)

    status = db.Column(db.String(20), nullable=False, default="available", index=True)
    issued_to_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    issued_at = db.Column(db.DateTime(timezone=True))
    returned_at = db.Column(db.DateTime(timezone=True))
    purpose = db.Column(db.String(500))
    last_used = db.Column(db.DateTime(timezone=True))

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    issued_to = db.relationship("User", foreign_keys=[issued_to_user_id])

    __table_args__ = (
        db.CheckConstraint("status IN ('available', 'issued', 'retired')", name="ck_media_drive_status"),
    )

    @property
    def is_optical(self) -> bool:
        return self.media_type in OPTICAL_MEDIA_TYPES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "serial_number": self.serial_number,
            "media_control_number": self.media_control_number,
            "media_type": self.media_type,
            "model": self.model,
            "capacity": self.capacity,
            "classification": self.classification,
            "location": self.location,
            "notes": self.notes,
            "status": self.status,
            "issued_to_user_id": self.issued_to_user_id,
            "issued_to_email": self.issued_to.email if self.issued_to else None,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "returned_at": self.returned_at.isoformat() if self.returned_at else None,
            "purpose": self.purpose,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<MediaDrive {self.serial_number} [{self.status}]>"
