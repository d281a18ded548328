"""
Request storage — all reads and writes of TransferRequest rows.

The only code path that changes ``status`` is ``apply_transition``, a
conditional update:

    UPDATE transfer_requests SET status=:to, ...
     WHERE id=:id AND status=:expected

Zero affected rows means another actor moved the request first; the actual
status is re-read and reported in a ``ConflictError``.

Nothing here commits. Callers own the transaction.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from sqlalchemy import func, select, update

from aft.core.exceptions import ConflictError, NotFoundError, ValidationError
from aft.core.workflow import TERMINAL_STATUSES, TRANSFER_TYPES, conflict_message
from aft.models import db
from aft.models.auth import User, UserRole
from aft.models.request import (
    DRAFT_EDITABLE_FIELDS,
    REQUIRED_DRAFT_FIELDS,
    TransferRequest,
    generate_request_number,
)

logger = logging.getLogger(__name__)

_DATE_FIELDS = ("requested_start_date", "requested_end_date")


def get(request_id: int) -> TransferRequest:
    req = db.session.get(TransferRequest, request_id)
    if req is None:
        raise NotFoundError("TransferRequest", request_id)
    return req


def current_status(request_id: int) -> str | None:
    return db.session.execute(
        select(TransferRequest.status).where(TransferRequest.id == request_id)
    ).scalar_one_or_none()


def _clean_fields(data: dict) -> dict:
    cleaned = {}
    for name in DRAFT_EDITABLE_FIELDS:
        if name not in data:
            continue
        value = data[name]
        if name in _DATE_FIELDS and value and not isinstance(value, date):
            try:
                value = date.fromisoformat(str(value))
            except ValueError as exc:
                raise ValidationError(f"Invalid date for {name}", {name: "Use YYYY-MM-DD"}) from exc
        if isinstance(value, str):
            value = value.strip()
        cleaned[name] = value
    if "transfer_type" in cleaned and cleaned["transfer_type"] not in TRANSFER_TYPES:
        raise ValidationError(
            "transfer_type must be 'high-to-low' or 'low-to-high'",
            {"transfer_type": cleaned["transfer_type"]},
        )
    return cleaned


def create(requestor_id: int, data: dict) -> TransferRequest:
    """Insert a draft request (flush only)."""
    fields = _clean_fields(data)
    missing = [f for f in REQUIRED_DRAFT_FIELDS if not fields.get(f)]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            {f: "required" for f in missing},
        )
    req = TransferRequest(
        request_number=generate_request_number(),
        status="draft",
        requestor_id=requestor_id,
        **fields,
    )
    db.session.add(req)
    db.session.flush()
    return req


def update_draft_fields(req: TransferRequest, data: dict) -> list[str]:
    """Apply editable fields to a draft. Returns the names that changed."""
    fields = _clean_fields(data)
    changed = []
    for name, value in fields.items():
        if name in REQUIRED_DRAFT_FIELDS and not value:
            raise ValidationError(f"{name} cannot be empty", {name: "required"})
        if getattr(req, name) != value:
            setattr(req, name, value)
            changed.append(name)
    if changed:
        db.session.flush()
    return changed


def apply_transition(
    request_id: int,
    expected_status: str,
    to_status: str,
    field_updates: dict | None = None,
    *,
    action: str = "update",
    now: datetime | None = None,
) -> None:
    """Conditionally move ``request_id`` from ``expected_status`` to ``to_status``.

    Raises:
        NotFoundError: the request vanished.
        ConflictError: the stored status is no longer ``expected_status``.
    """
    now = now or datetime.now(timezone.utc)
    values = dict(field_updates or {})
    values["status"] = to_status
    values["updated_at"] = now

    result = db.session.execute(
        update(TransferRequest)
        .where(TransferRequest.id == request_id, TransferRequest.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        db.session.get(TransferRequest, request_id, populate_existing=True)
        return

    actual = current_status(request_id)
    if actual is None:
        raise NotFoundError("TransferRequest", request_id)
    logger.warning(
        "Status write lost the race",
        extra={
            "event_type": "transition_conflict",
            "request_id": request_id,
            "expected_status": expected_status,
            "actual_status": actual,
        },
    )
    raise ConflictError(conflict_message(actual, action), actual_status=actual, expected_status=expected_status)


def list_requests(
    *,
    status: str | list[str] | None = None,
    requestor_id: int | None = None,
    dta_id: int | None = None,
    assigned_sme_id: int | None = None,
    include_terminal: bool = True,
    limit: int = 200,
    offset: int = 0,
) -> tuple[list[TransferRequest], int]:
    """Filtered, newest-updated-first listing. Returns (items, total)."""
    q = TransferRequest.query
    if isinstance(status, str):
        q = q.filter(TransferRequest.status == status)
    elif status:
        q = q.filter(TransferRequest.status.in_(status))
    if requestor_id is not None:
        q = q.filter(TransferRequest.requestor_id == requestor_id)
    if dta_id is not None:
        q = q.filter(TransferRequest.dta_id == dta_id)
    if assigned_sme_id is not None:
        q = q.filter(TransferRequest.assigned_sme_id == assigned_sme_id)
    if not include_terminal:
        q = q.filter(TransferRequest.status.notin_(TERMINAL_STATUSES))
    total = q.order_by(None).count()
    items = (
        q.order_by(TransferRequest.updated_at.desc(), TransferRequest.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return items, total


def count_by_status() -> dict[str, int]:
    rows = db.session.execute(
        select(TransferRequest.status, func.count(TransferRequest.id)).group_by(TransferRequest.status)
    ).all()
    return {status: n for status, n in rows}


def ids_in_status(status: str) -> list[int]:
    return list(db.session.execute(
        select(TransferRequest.id).where(TransferRequest.status == status).order_by(TransferRequest.id)
    ).scalars())


# ── User lookups (for notifications and record-scoped checks) ──────────────


def get_user(user_id: int | None) -> User | None:
    if user_id is None:
        return None
    return db.session.get(User, user_id)


def emails_for_role(role: str) -> list[str]:
    """E-mail addresses of active users holding ``role``."""
    rows = db.session.execute(
        select(User.email)
        .join(UserRole, UserRole.user_id == User.id)
        .where(UserRole.role == role, UserRole.is_active.is_(True), User.is_active.is_(True))
        .order_by(User.email)
    ).scalars()
    return list(dict.fromkeys(rows))


def email_for_user(user_id: int) -> str | None:
    user = get_user(user_id)
    if user is None or not user.is_active:
        return None
    return user.email


def user_has_role(user_id: int, role: str) -> bool:
    return db.session.execute(
        select(UserRole.id).where(
            UserRole.user_id == user_id, UserRole.role == role, UserRole.is_active.is_(True)
        )
    ).first() is not None
