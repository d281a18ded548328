"""
Authorization gate — may this session perform this action on this request?

Checks, in order:
  1. the session is authenticated and has an active role selected
  2. the active role owns the request's current status
  3. record-scoped rules: requestors act on their own requests, the DTA
     completing a transfer must be the assigned DTA, the SME signing must be
     the assigned SME when one is set

Read access is broader than write access: ISSM/ISSO (approver) and CPSO can
see each other's queues; neither may act on the other's.

All failures raise ``AuthorizationError`` (aliased ``AccessDenied``) carrying
the current and required role.
"""

from __future__ import annotations

import logging

from aft.core.exceptions import AuthorizationError
from aft.core.workflow import ROLE_LABELS, STATUS_LABELS, Action, Actor, Role, owner_of

logger = logging.getLogger(__name__)

_STAFF_ROLES = frozenset({
    Role.DAO.value,
    Role.APPROVER.value,
    Role.CPSO.value,
    Role.DTA.value,
    Role.SME.value,
    Role.MEDIA_CUSTODIAN.value,
})

# Statuses each role may browse in its queue view
_READ_QUEUES = {
    Role.DAO.value: {"pending_dao"},
    Role.APPROVER.value: {"pending_approver", "pending_cpso"},
    Role.CPSO.value: {"pending_approver", "pending_cpso"},
    Role.DTA.value: {"pending_dta", "active_transfer"},
    Role.SME.value: {"pending_sme_signature"},
    Role.MEDIA_CUSTODIAN.value: {"pending_media_custodian", "completed"},
}


def _deny(message: str, session, required: str | None = None) -> AuthorizationError:
    role = getattr(session, "active_role", None)
    logger.warning(
        "Access denied: %s", message,
        extra={
            "event_type": "access_denied",
            "user_id": getattr(session, "user_id", None),
            "active_role": role,
            "required_role": required,
        },
    )
    return AuthorizationError(message, current_role=role, required_role=required)


def require_session(session) -> None:
    """Rule 1: an authenticated session with a selected role."""
    if session is None or not getattr(session, "user_id", None) or not getattr(session, "is_active", True):
        raise _deny("Authentication required", session)
    if not getattr(session, "active_role", None):
        raise _deny("Select a role before acting on requests", session)


def require_role(session, *roles: str) -> None:
    """Rule 1 plus: the active role is one of ``roles``."""
    require_session(session)
    if session.active_role not in roles:
        raise _deny(
            f"{ROLE_LABELS.get(session.active_role, session.active_role)} cannot perform this action",
            session,
            roles[0],
        )


def actor_from_session(session) -> Actor:
    return Actor(
        user_id=session.user_id,
        email=session.email,
        role=session.active_role,
        name=getattr(session, "display_name", "") or "",
    )


def check(session, request, action: str) -> None:
    """Raise ``AuthorizationError`` unless ``session`` may perform ``action`` on ``request``.

    Statuses without an owner (terminal or transient) pass the ownership rule;
    the state machine reports those as conflicts with a status-specific message.
    """
    action = action.value if isinstance(action, Action) else action
    require_session(session)
    role = session.active_role

    if action == Action.ROUTE.value:
        raise _deny("Routing submitted requests is a system action", session)

    owner = owner_of(request.status)
    if owner is None:
        return
    if role != owner:
        raise _deny(
            f"{ROLE_LABELS.get(role, role)} cannot act on a request that is "
            f"{STATUS_LABELS.get(request.status, request.status)}; {ROLE_LABELS[owner]} is required.",
            session,
            owner,
        )

    # 3. record-scoped rules
    if role == Role.REQUESTOR.value and request.requestor_id != session.user_id:
        raise _deny("Only the requestor who created this request can act on it", session, owner)
    if action == Action.COMPLETE_TRANSFER.value and request.dta_id != session.user_id:
        raise _deny("Only the assigned DTA can complete this transfer", session, owner)
    if action == Action.ASSIGN_DTA.value and request.dta_id not in (None, session.user_id):
        raise _deny("This transfer is already assigned to another DTA", session, owner)
    if action == Action.SIGN.value and request.assigned_sme_id not in (None, session.user_id):
        raise _deny("Only the assigned SME can sign this transfer", session, owner)


def can_view(session, request) -> bool:
    """Read access to a single request."""
    if session is None or not getattr(session, "active_role", None):
        return False
    role = session.active_role
    if role == Role.ADMIN.value:
        return True
    if request.requestor_id == session.user_id:
        return True
    if role not in _STAFF_ROLES or request.status == "draft":
        return False
    participants = (
        request.dao_id, request.approver_id, request.cpso_id, request.dta_id,
        request.assigned_sme_id, request.media_custodian_id,
    )
    return session.user_id in participants or request.status in _READ_QUEUES.get(role, set())


def queue_statuses(role: str) -> set[str]:
    """Statuses shown in ``role``'s work queue."""
    return set(_READ_QUEUES.get(role, set()))
