"""
Audit trail — request history writes and the timeline view built from them.

``append()`` inserts inside a SAVEPOINT. A failed insert is rolled back to
the savepoint and logged as a warning; the surrounding transition still
commits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from aft.core.exceptions import NotFoundError
from aft.core.workflow import (
    ROLE_LABELS,
    STATUS_LABELS,
    STATUS_OWNER,
    is_terminal,
    status_sequence,
)
from aft.models import db
from aft.models.history import RequestHistory
from aft.models.request import TransferRequest

logger = logging.getLogger(__name__)

# Typical hours a request spends in each status; drives the completion estimate.
AVERAGE_STATUS_HOURS = {
    "draft": 24,
    "submitted": 2,
    "pending_dao": 48,
    "pending_approver": 72,
    "pending_cpso": 48,
    "pending_dta": 24,
    "active_transfer": 168,
    "pending_sme_signature": 24,
    "pending_media_custodian": 72,
}

STEP_DESCRIPTIONS = {
    "draft": "Requestor prepares the transfer request",
    "submitted": "Request signed and submitted for review",
    "pending_dao": "Designated Authorizing Official reviews the high-to-low transfer",
    "pending_approver": "ISSM/ISSO reviews security requirements",
    "pending_cpso": "CPSO reviews and approves the transfer",
    "pending_dta": "Waiting for a Data Transfer Agent",
    "active_transfer": "DTA performs the transfer",
    "pending_sme_signature": "SME witnesses the transfer (two-person integrity)",
    "pending_media_custodian": "Media Custodian processes the media",
    "completed": "Transfer complete",
    "disposed": "Media disposed",
}


# ── Writes ───────────────────────────────────────────────────────────────────


def _insert_entry(
    request_id: int,
    action: str,
    actor_email: str,
    notes: str | None,
    from_status: str | None,
    to_status: str | None,
    actor_id: int | None,
    actor_role: str | None,
    created_at: datetime | None,
) -> RequestHistory:
    entry = RequestHistory(
        request_id=request_id,
        action=action,
        actor_email=actor_email,
        notes=notes,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        actor_role=actor_role,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def append(
    request_id: int,
    action: str,
    actor_email: str,
    notes: str | None = None,
    *,
    from_status: str | None = None,
    to_status: str | None = None,
    actor_id: int | None = None,
    actor_role: str | None = None,
    created_at: datetime | None = None,
) -> RequestHistory | None:
    """Append one history entry. Returns None when the write failed."""
    try:
        with db.session.begin_nested():
            return _insert_entry(
                request_id, action, actor_email, notes,
                from_status, to_status, actor_id, actor_role, created_at,
            )
    except SQLAlchemyError as exc:
        logger.warning(
            "History entry not written: %s", exc,
            extra={
                "event_type": "history_write_failed",
                "request_id": request_id,
                "action": action,
            },
        )
        return None


def entries_for(request_id: int) -> list[RequestHistory]:
    """Oldest first."""
    return (
        RequestHistory.query
        .filter_by(request_id=request_id)
        .order_by(RequestHistory.created_at.asc(), RequestHistory.id.asc())
        .all()
    )


# ── Timeline ─────────────────────────────────────────────────────────────────


def _aware(dt: datetime | None) -> datetime | None:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def step_sequence(req: TransferRequest) -> list[str]:
    seq = status_sequence(req.transfer_type)
    if req.status != "disposed":
        seq.remove("disposed")
    return seq


def current_step_index(req: TransferRequest, entries: list[RequestHistory], seq: list[str]) -> int:
    """Highest workflow step reached by an entry, or the current status itself."""
    reached = 0
    for e in entries:
        for s in (e.from_status, e.to_status):
            if s in seq:
                reached = max(reached, seq.index(s))
    if req.status in seq:
        reached = max(reached, seq.index(req.status))
    return reached


def progress_percent(current_index: int, total_steps: int) -> int:
    return round((current_index + 1) / total_steps * 100)


def estimate_completion(seq: list[str], current_index: int, now: datetime) -> datetime:
    remaining = sum(AVERAGE_STATUS_HOURS.get(s, 0) for s in seq[current_index:])
    return now + timedelta(hours=remaining)


def build_steps(req: TransferRequest, entries: list[RequestHistory], seq: list[str], current: int) -> list[dict]:
    entered_at: dict[str, datetime] = {"draft": _aware(req.created_at)}
    actor_at: dict[str, str] = {}
    for e in entries:
        if e.to_status and e.to_status not in entered_at:
            entered_at[e.to_status] = _aware(e.created_at)
        if e.from_status and e.from_status not in actor_at:
            actor_at[e.from_status] = e.actor_email
    if req.submitted_at and "submitted" not in entered_at:
        entered_at["submitted"] = _aware(req.submitted_at)

    failed = req.status in ("rejected", "cancelled")
    finished = req.status in ("completed", "disposed")
    steps = []
    for i, status in enumerate(seq):
        if status == "completed" and req.status == "disposed" and status not in entered_at:
            state = "skipped"
        elif i < current or (finished and i == current):
            state = "completed"
        elif i == current:
            state = "error" if failed else "current"
        else:
            state = "skipped" if failed else "pending"

        owner = STATUS_OWNER.get(status)
        duration = None
        start = entered_at.get(status)
        if state == "completed" and start is not None and i + 1 < len(seq):
            end = next((entered_at[s] for s in seq[i + 1:] if s in entered_at), None)
            if end is not None:
                duration = round((end - start).total_seconds() / 3600, 1)

        steps.append({
            "status": status,
            "title": STATUS_LABELS.get(status, status),
            "description": STEP_DESCRIPTIONS.get(status, ""),
            "assignee": actor_at.get(status) or (ROLE_LABELS[owner] if owner else None),
            "state": state,
            "entered_at": start.isoformat() if start else None,
            "duration_hours": duration,
        })
    return steps


def timeline_for(request_id: int, now: datetime | None = None) -> dict:
    """History entries (oldest first) plus the step/progress view."""
    req = db.session.get(TransferRequest, request_id)
    if req is None:
        raise NotFoundError("TransferRequest", request_id)

    now = now or datetime.now(timezone.utc)
    entries = entries_for(request_id)
    seq = step_sequence(req)
    current = current_step_index(req, entries, seq)
    terminal = is_terminal(req.status)

    return {
        "request_id": req.id,
        "request_number": req.request_number,
        "status": req.status,
        "status_label": STATUS_LABELS.get(req.status, req.status),
        "is_terminal": terminal,
        "current_step": current + 1,
        "total_steps": len(seq),
        "progress": progress_percent(current, len(seq)),
        "estimated_completion": None if terminal else estimate_completion(seq, current, now).isoformat(),
        "steps": build_steps(req, entries, seq, current),
        "entries": [e.to_dict() for e in entries],
    }
