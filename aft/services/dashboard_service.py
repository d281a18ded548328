"""
Request dashboard — per-role request listings with progress and SLA flags.

Each listed request carries:
  - timeline_progress  percent of workflow steps reached
  - current_step / total_steps
  - is_terminal
  - at_risk            non-terminal and idle longer than AT_RISK_IDLE_DAYS
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone

from flask import current_app

from aft.core.workflow import Role, is_at_risk, is_terminal
from aft.models.history import RequestHistory
from aft.services import audit_trail, authorization, request_store

logger = logging.getLogger(__name__)


def _entries_by_request(request_ids):
    grouped = defaultdict(list)
    if not request_ids:
        return grouped
    rows = (
        RequestHistory.query
        .filter(RequestHistory.request_id.in_(request_ids))
        .order_by(RequestHistory.created_at.asc(), RequestHistory.id.asc())
        .all()
    )
    for row in rows:
        grouped[row.request_id].append(row)
    return grouped


def _aware(dt):
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def summarize(req, entries, now, idle_days):
    """Dashboard row for one request."""
    seq = audit_trail.step_sequence(req)
    current = audit_trail.current_step_index(req, entries, seq)
    d = req.to_dict()
    d.update({
        "timeline_progress": audit_trail.progress_percent(current, len(seq)),
        "current_step": current + 1,
        "total_steps": len(seq),
        "is_terminal": is_terminal(req.status),
        "at_risk": is_at_risk(req.status, _aware(req.updated_at), now, idle_days),
    })
    return d


def _scope_filters(session):
    """Listing filters implied by the session's active role."""
    role = session.active_role
    if role == Role.ADMIN.value:
        return {}
    if role == Role.REQUESTOR.value:
        return {"requestor_id": session.user_id}
    return {"status": sorted(authorization.queue_statuses(role))}


def list_for_session(session, *, status=None, include_terminal=True, limit=200, offset=0, now=None):
    """Requests visible to the session, newest activity first.

    Returns:
        {"items": [...], "total": int, "at_risk": int}
    """
    authorization.require_session(session)
    now = now or datetime.now(timezone.utc)
    idle_days = current_app.config.get("AT_RISK_IDLE_DAYS", 5)

    filters = _scope_filters(session)
    if status:
        allowed = filters.get("status")
        if allowed is not None and status not in allowed:
            return {"items": [], "total": 0, "at_risk": 0}
        filters["status"] = status

    items, total = request_store.list_requests(
        include_terminal=include_terminal, limit=limit, offset=offset, **filters,
    )
    entries = _entries_by_request([r.id for r in items])
    rows = [summarize(r, entries.get(r.id, []), now, idle_days) for r in items]
    return {
        "items": rows,
        "total": total,
        "at_risk": sum(1 for r in rows if r["at_risk"]),
    }
