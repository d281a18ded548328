"""
Media inventory — the Media Custodian's drive register.

A drive is issued to one DTA at a time. The DTA selects it when taking or
completing a transfer (``selected_drive_id`` on the request), and it returns
to the pool when the custodian disposes of that transfer's media.

Functions:
    - register_drive:      add a drive to the register (custodian / admin)
    - list_drives:         custodian and admin see every drive, a DTA sees
                           the drives issued to them
    - issue_drive:         available → issued, one drive per DTA
    - return_drive:        issued → available, refused while a live transfer
                           still carries the drive
    - retire_drive:        available → retired
    - drive_for_transfer:  resolve the drive a DTA acts with (no writes)
    - release_for_request: return a disposed transfer's drive (flush only)

Management operations commit and return ``(drive, None)`` or
``(None, WorkflowError)``. ``release_for_request`` runs inside the caller's
transition transaction and does not commit.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from aft.core.exceptions import ConflictError, NotFoundError, StorageError, ValidationError, WorkflowError
from aft.core.workflow import TERMINAL_STATUSES, Role
from aft.models import db
from aft.models.media import DRIVE_STATUSES, MEDIA_TYPES, MediaDrive
from aft.models.request import TransferRequest
from aft.services import authorization, request_store

logger = logging.getLogger(__name__)

_MANAGERS = (Role.MEDIA_CUSTODIAN.value, Role.ADMIN.value)
_REQUIRED_FIELDS = ("serial_number", "model", "capacity")


def _now(now):
    return now or datetime.now(timezone.utc)


def _commit(context: dict) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Commit failed", extra={"event_type": "storage_error", **context})
        raise StorageError(context=context) from exc


def _refused(operation: str, session, exc: WorkflowError) -> tuple:
    db.session.rollback()
    logger.warning(
        "Drive operation refused: %s", exc,
        extra={
            "event_type": "drive_refused",
            "action": operation,
            "user_id": getattr(session, "user_id", None),
            "active_role": getattr(session, "active_role", None),
            "error_code": exc.code,
        },
    )
    return None, exc


def get_drive(drive_id) -> MediaDrive:
    drive = db.session.get(MediaDrive, drive_id)
    if drive is None:
        raise NotFoundError("MediaDrive", drive_id)
    return drive


def issued_drive_for(user_id: int) -> MediaDrive | None:
    return db.session.execute(
        select(MediaDrive).where(MediaDrive.issued_to_user_id == user_id, MediaDrive.status == "issued")
    ).scalars().first()


def _active_request_for(drive_id: int, exclude_request_id: int | None = None) -> TransferRequest | None:
    stmt = select(TransferRequest).where(
        TransferRequest.selected_drive_id == drive_id,
        TransferRequest.status.notin_(TERMINAL_STATUSES),
    )
    if exclude_request_id is not None:
        stmt = stmt.where(TransferRequest.id != exclude_request_id)
    return db.session.execute(stmt.order_by(TransferRequest.id)).scalars().first()


# ── Register ─────────────────────────────────────────────────────────────────


def register_drive(session, data: dict):
    """Add a drive to the register in ``available`` state."""
    data = data or {}
    try:
        authorization.require_role(session, *_MANAGERS)
        fields = {k: (str(data.get(k) or "").strip()) for k in _REQUIRED_FIELDS}
        missing = [k for k, v in fields.items() if not v]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}", {k: "required" for k in missing},
            )
        media_type = str(data.get("media_type") or "SSD").strip().upper()
        if media_type not in MEDIA_TYPES:
            raise ValidationError(
                f"media_type must be one of {', '.join(sorted(MEDIA_TYPES))}", {"media_type": media_type},
            )
        drive = MediaDrive(
            media_type=media_type,
            media_control_number=(data.get("media_control_number") or None),
            classification=data.get("classification"),
            location=data.get("location"),
            notes=data.get("notes"),
            status="available",
            **fields,
        )
        db.session.add(drive)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ValidationError(
                f"Drive {fields['serial_number']} is already registered",
                {"serial_number": fields["serial_number"]},
            ) from exc
    except WorkflowError as exc:
        return _refused("register", session, exc)

    _commit({"action": "register_drive", "serial_number": drive.serial_number})
    logger.info(
        "Drive %s registered", drive.serial_number,
        extra={"event_type": "drive_registered", "user_id": session.user_id},
    )
    return drive, None


def list_drives(session, status: str | None = None):
    try:
        authorization.require_role(session, *_MANAGERS, Role.DTA.value)
        if status is not None and status not in DRIVE_STATUSES:
            raise ValidationError(f"Unknown drive status '{status}'", {"status": status})
    except WorkflowError as exc:
        return None, exc

    stmt = select(MediaDrive)
    if session.active_role == Role.DTA.value:
        stmt = stmt.where(MediaDrive.issued_to_user_id == session.user_id)
    if status:
        stmt = stmt.where(MediaDrive.status == status)
    drives = db.session.execute(stmt.order_by(MediaDrive.serial_number)).scalars().all()
    return [d.to_dict() for d in drives], None


# ── Issue / return ───────────────────────────────────────────────────────────


def issue_drive(drive_id: int, session, dta_user_id, purpose: str | None = None, *, now=None):
    """Hand an available drive to a DTA.

    The recipient must hold the DTA role and must not already carry a drive.
    The status write is conditional on ``available`` so two custodians
    issuing the same drive cannot both succeed.
    """
    now = _now(now)
    try:
        authorization.require_role(session, *_MANAGERS)
        drive = get_drive(drive_id)
        try:
            dta_user_id = int(dta_user_id)
        except (TypeError, ValueError) as exc:
            raise ValidationError("A DTA must be selected", {"dta_user_id": "required"}) from exc
        if not request_store.user_has_role(dta_user_id, Role.DTA.value):
            raise ValidationError("Drives can only be issued to a DTA", {"dta_user_id": dta_user_id})
        held = issued_drive_for(dta_user_id)
        if held is not None:
            raise ValidationError(
                f"This DTA already holds drive {held.serial_number}",
                {"dta_user_id": dta_user_id, "drive_id": held.id},
            )

        result = db.session.execute(
            update(MediaDrive)
            .where(MediaDrive.id == drive.id, MediaDrive.status == "available")
            .values(
                status="issued", issued_to_user_id=dta_user_id, issued_at=now,
                returned_at=None, purpose=purpose, updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            actual = db.session.execute(select(MediaDrive.status).where(MediaDrive.id == drive.id)).scalar_one()
            raise ConflictError(
                f"Drive {drive.serial_number} is {actual} and cannot be issued.",
                actual_status=actual, expected_status="available",
            )
    except WorkflowError as exc:
        return _refused("issue", session, exc)

    _commit({"action": "issue_drive", "drive_id": drive_id})
    drive = db.session.get(MediaDrive, drive_id, populate_existing=True)
    logger.info(
        "Drive %s issued", drive.serial_number,
        extra={"event_type": "drive_issued", "user_id": session.user_id, "dta_user_id": dta_user_id},
    )
    return drive, None


def _release(drive: MediaDrive, now: datetime) -> None:
    drive.status = "available"
    drive.issued_to_user_id = None
    drive.returned_at = now
    drive.last_used = now
    drive.updated_at = now


def return_drive(drive_id: int, session, *, now=None):
    """Take a drive back from its DTA."""
    now = _now(now)
    try:
        authorization.require_role(session, *_MANAGERS)
        drive = get_drive(drive_id)
        if drive.status != "issued":
            raise ConflictError(
                f"Drive {drive.serial_number} is {drive.status}, not issued.",
                actual_status=drive.status, expected_status="issued",
            )
        active = _active_request_for(drive.id)
        if active is not None:
            raise ConflictError(
                f"Drive {drive.serial_number} is still in use by {active.request_number}.",
                actual_status=drive.status,
            )
        _release(drive, now)
        db.session.flush()
    except WorkflowError as exc:
        return _refused("return", session, exc)

    _commit({"action": "return_drive", "drive_id": drive_id})
    logger.info("Drive %s returned", drive.serial_number, extra={"event_type": "drive_returned", "user_id": session.user_id})
    return drive, None


def retire_drive(drive_id: int, session, *, now=None):
    now = _now(now)
    try:
        authorization.require_role(session, *_MANAGERS)
        drive = get_drive(drive_id)
        if drive.status != "available":
            raise ConflictError(
                f"Drive {drive.serial_number} must be returned before it is retired.",
                actual_status=drive.status, expected_status="available",
            )
        drive.status = "retired"
        drive.updated_at = now
        db.session.flush()
    except WorkflowError as exc:
        return _refused("retire", session, exc)

    _commit({"action": "retire_drive", "drive_id": drive_id})
    return drive, None


# ── Transfer hooks (used by workflow_service) ────────────────────────────────


def drive_for_transfer(drive_id, dta_user_id: int, *, default_to_issued: bool = False) -> int | None:
    """Id of the drive the DTA works with, or None when none is selected.

    Raises:
        ValidationError: the drive is unknown or not issued to this DTA.
    """
    if drive_id is None:
        if not default_to_issued:
            return None
        held = issued_drive_for(dta_user_id)
        return held.id if held is not None else None
    try:
        drive_id = int(drive_id)
    except (TypeError, ValueError) as exc:
        raise ValidationError("drive_id must be an integer", {"drive_id": drive_id}) from exc
    drive = db.session.get(MediaDrive, drive_id)
    if drive is None or drive.status != "issued" or drive.issued_to_user_id != dta_user_id:
        raise ValidationError("The selected drive is not issued to you", {"drive_id": drive_id})
    return drive_id


def release_for_request(request_id: int, now: datetime | None = None) -> MediaDrive | None:
    """Return the drive selected on ``request_id`` to the pool (flush only).

    A drive another live transfer still references stays issued.
    """
    now = _now(now)
    drive_id = db.session.execute(
        select(TransferRequest.selected_drive_id).where(TransferRequest.id == request_id)
    ).scalar_one_or_none()
    if drive_id is None:
        return None
    drive = db.session.get(MediaDrive, drive_id)
    if drive is None or drive.status != "issued":
        return None
    if _active_request_for(drive.id, exclude_request_id=request_id) is not None:
        return None
    _release(drive, now)
    db.session.flush()
    logger.info(
        "Drive %s returned on disposal", drive.serial_number,
        extra={"event_type": "drive_returned", "request_id": request_id},
    )
    return drive
