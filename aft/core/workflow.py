"""
AFT Request State Machine.

Pure transition planning for transfer requests: no database access, no mail.
Given a snapshot of a request, the acting role and the action, ``plan()``
either raises a ``WorkflowError`` or returns a ``TransitionPlan`` that the
workflow service applies inside one transaction.

Happy path:

    draft → submitted → [pending_dao →] pending_approver → pending_cpso →
    pending_dta → active_transfer → pending_sme_signature →
    pending_media_custodian → completed → disposed

Side branches: any pending_* → rejected (by the owner), draft → cancelled,
pending_media_custodian → disposed (the custodian disposes without a separate
completion step).

Guards, evaluated in order by ``plan()``:
    1. role ownership of the current status
    2. branch selection on submit (high-to-low requires the DAO step)
    3. signature requirement / validity
    4. non-empty rejection reason
    5. a well-formed disposition record (dispose)
The last guard (optimistic concurrency) is enforced by the conditional
status write in ``aft.services.request_store``.

Usage:
    from aft.core.workflow import Action, RequestSnapshot, plan

    tp = plan(snapshot, Action.APPROVE, actor, verification=result)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum

from aft.core.exceptions import (
    AuthorizationError,
    ConflictError,
    MissingSignatureError,
    ValidationError,
)


# ═════════════════════════════════════════════════════════════════════════════
# Vocabulary
# ═════════════════════════════════════════════════════════════════════════════


class RequestStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING_DAO = "pending_dao"
    PENDING_APPROVER = "pending_approver"
    PENDING_CPSO = "pending_cpso"
    PENDING_DTA = "pending_dta"
    ACTIVE_TRANSFER = "active_transfer"
    PENDING_SME_SIGNATURE = "pending_sme_signature"
    PENDING_MEDIA_CUSTODIAN = "pending_media_custodian"
    COMPLETED = "completed"
    DISPOSED = "disposed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class Role(str, Enum):
    ADMIN = "admin"
    REQUESTOR = "requestor"
    DAO = "dao"
    APPROVER = "approver"
    CPSO = "cpso"
    DTA = "dta"
    SME = "sme"
    MEDIA_CUSTODIAN = "media_custodian"


class Action(str, Enum):
    SUBMIT = "submit"
    CANCEL = "cancel"
    APPROVE = "approve"
    ASSIGN_DTA = "assign_dta"
    COMPLETE_TRANSFER = "complete_transfer"
    SIGN = "sign"
    DISPOSE = "dispose"
    REJECT = "reject"
    ROUTE = "route"


class StepType(str, Enum):
    REQUESTOR_SIGNATURE = "requestor_signature"
    APPROVER_APPROVAL = "approver_approval"
    CPSO_APPROVAL = "cpso_approval"
    DTA_SIGNATURE = "dta_signature"
    SME_SIGNATURE = "sme_signature"


class SignatureMethod(str, Enum):
    MANUAL = "manual"
    CAC = "cac"


HIGH_TO_LOW = "high-to-low"
LOW_TO_HIGH = "low-to-high"
TRANSFER_TYPES = (HIGH_TO_LOW, LOW_TO_HIGH)

STATUS_LABELS = {
    "draft": "Draft",
    "submitted": "Submitted",
    "pending_dao": "Pending DAO Review",
    "pending_approver": "Pending ISSM/ISSO Approval",
    "pending_cpso": "Pending CPSO Approval",
    "pending_dta": "Pending DTA Assignment",
    "active_transfer": "Active Transfer",
    "pending_sme_signature": "Pending SME Signature",
    "pending_media_custodian": "Pending Media Custodian",
    "completed": "Completed",
    "disposed": "Media Disposed",
    "rejected": "Rejected",
    "cancelled": "Cancelled",
}

ROLE_LABELS = {
    "admin": "Administrator",
    "requestor": "Requestor",
    "dao": "DAO",
    "approver": "ISSM/ISSO",
    "cpso": "CPSO",
    "dta": "DTA",
    "sme": "SME",
    "media_custodian": "Media Custodian",
}

# Exactly one role owns each actionable status. `submitted` is transient and
# has no human owner; terminal statuses have none either.
STATUS_OWNER: dict[str, str] = {
    "draft": Role.REQUESTOR.value,
    "pending_dao": Role.DAO.value,
    "pending_approver": Role.APPROVER.value,
    "pending_cpso": Role.CPSO.value,
    "pending_dta": Role.DTA.value,
    "active_transfer": Role.DTA.value,
    "pending_sme_signature": Role.SME.value,
    "pending_media_custodian": Role.MEDIA_CUSTODIAN.value,
    "completed": Role.MEDIA_CUSTODIAN.value,
}

TERMINAL_STATUSES = frozenset({"completed", "disposed", "rejected", "cancelled"})
PENDING_STATUSES = frozenset({
    "pending_dao",
    "pending_approver",
    "pending_cpso",
    "pending_dta",
    "pending_sme_signature",
    "pending_media_custodian",
})

# Signature requirement values
REQUIRED = "required"
OPTIONAL = "optional"

# Answers on the media disposition record
DISPOSITION_ANSWERS = ("yes", "no", "na")
_DISPOSITION_CHECKS = ("optical_destroyed", "optical_retained", "ssd_sanitized")

# (from_status, action) → rule
#   role:       owner that may act (None = system only)
#   to:         target status; None means "branch on transfer_type"
#   step:       signature step recorded with the transition
#   signature:  REQUIRED / OPTIONAL / None
#   history:    (manual/no-signature action, CAC action)
#   actor_field: request column stamped with the acting user's id
WORKFLOW_TRANSITIONS: dict[tuple[str, str], dict] = {
    ("draft", "submit"): {
        "role": "requestor", "to": None, "step": "requestor_signature",
        "signature": REQUIRED, "history": ("SUBMITTED", "SUBMITTED"),
        "actor_field": None,
    },
    ("draft", "cancel"): {
        "role": "requestor", "to": "cancelled", "step": None,
        "signature": None, "history": ("CANCELLED", "CANCELLED"),
        "actor_field": None,
    },
    ("submitted", "route"): {
        "role": None, "to": None, "step": None,
        "signature": None, "history": ("SUBMITTED", "SUBMITTED"),
        "actor_field": None,
    },
    ("pending_dao", "approve"): {
        "role": "dao", "to": "pending_approver", "step": None,
        "signature": None, "history": ("DAO_APPROVED", "DAO_APPROVED"),
        "actor_field": "dao_id",
    },
    ("pending_approver", "approve"): {
        "role": "approver", "to": "pending_cpso", "step": "approver_approval",
        "signature": OPTIONAL, "history": ("ISSM_APPROVED", "ISSM_APPROVED_CAC"),
        "actor_field": "approver_id",
    },
    ("pending_cpso", "approve"): {
        "role": "cpso", "to": "pending_dta", "step": "cpso_approval",
        "signature": OPTIONAL, "history": ("CPSO_APPROVED", "CPSO_APPROVED_CAC"),
        "actor_field": "cpso_id",
    },
    ("pending_dta", "assign_dta"): {
        "role": "dta", "to": "active_transfer", "step": None,
        "signature": None, "history": ("DTA_ASSIGNED", "DTA_ASSIGNED"),
        "actor_field": "dta_id",
    },
    ("active_transfer", "complete_transfer"): {
        "role": "dta", "to": "pending_sme_signature", "step": "dta_signature",
        "signature": REQUIRED, "history": ("DTA_SIGNED", "DTA_SIGNED_CAC"),
        "actor_field": None,
    },
    ("pending_sme_signature", "sign"): {
        "role": "sme", "to": "pending_media_custodian", "step": "sme_signature",
        "signature": REQUIRED, "history": ("SME_SIGNED", "SME_SIGNED_CAC"),
        "actor_field": None,
    },
    ("pending_media_custodian", "approve"): {
        "role": "media_custodian", "to": "completed", "step": None,
        "signature": None,
        "history": ("MEDIA_CUSTODIAN_COMPLETED", "MEDIA_CUSTODIAN_COMPLETED"),
        "actor_field": "media_custodian_id",
    },
    ("pending_media_custodian", "dispose"): {
        "role": "media_custodian", "to": "disposed", "step": None,
        "signature": None, "history": ("MEDIA_DISPOSED", "MEDIA_DISPOSED"),
        "actor_field": "media_custodian_id",
    },
    ("completed", "dispose"): {
        "role": "media_custodian", "to": "disposed", "step": None,
        "signature": None, "history": ("MEDIA_DISPOSED", "MEDIA_DISPOSED"),
        "actor_field": None,
    },
}

for _status in PENDING_STATUSES:
    WORKFLOW_TRANSITIONS[(_status, "reject")] = {
        "role": STATUS_OWNER[_status], "to": "rejected", "step": None,
        "signature": None, "history": ("REJECTED", "REJECTED"),
        "actor_field": None,
    }

_ACTION_VERB = {
    "submit": "submitted",
    "cancel": "cancelled",
    "approve": "approved",
    "assign_dta": "assigned",
    "complete_transfer": "completed",
    "sign": "signed",
    "dispose": "disposed",
    "reject": "rejected",
    "route": "routed",
    "update": "edited",
}

# Next-approver notification kind per target status
_NEXT_ROLE_NOTICE = {
    "pending_dao": ("dao", "next_approver"),
    "pending_approver": ("approver", "next_approver"),
    "pending_cpso": ("cpso", "next_approver"),
    "pending_dta": ("dta", "dta_assignment"),
    "pending_media_custodian": ("media_custodian", "next_approver"),
}


# ═════════════════════════════════════════════════════════════════════════════
# Plan objects
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class RequestSnapshot:
    """The subset of a transfer request the state machine reasons about."""

    id: int
    request_number: str
    status: str
    transfer_type: str
    requestor_id: int
    dta_id: int | None = None
    assigned_sme_id: int | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, req) -> "RequestSnapshot":
        return cls(
            id=req.id,
            request_number=req.request_number,
            status=req.status,
            transfer_type=req.transfer_type,
            requestor_id=req.requestor_id,
            dta_id=req.dta_id,
            assigned_sme_id=req.assigned_sme_id,
            updated_at=req.updated_at,
        )


@dataclass(frozen=True)
class Actor:
    """Who performs an action. ``role`` is the session's active role."""

    user_id: int | None
    email: str
    role: str | None
    name: str = ""


@dataclass
class HistoryDraft:
    action: str
    from_status: str
    to_status: str
    notes: str | None = None


@dataclass
class NotificationInstruction:
    """A notification to send after commit.

    Exactly one of ``recipient_role`` / ``recipient_user_id`` /
    ``recipient_email`` is set.
    """

    kind: str
    recipient_role: str | None = None
    recipient_user_id: int | None = None
    recipient_email: str | None = None
    template_data: dict = field(default_factory=dict)


@dataclass
class TransitionPlan:
    request_id: int
    action: str
    from_status: str
    to_status: str
    step_type: str | None
    signature_required: bool
    field_updates: dict
    history: HistoryDraft
    notifications: list[NotificationInstruction] = field(default_factory=list)


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def _value(x) -> str:
    return x.value if isinstance(x, Enum) else x


def is_terminal(status: str) -> bool:
    return _value(status) in TERMINAL_STATUSES


def owner_of(status: str) -> str | None:
    return STATUS_OWNER.get(_value(status))


def route_target(transfer_type: str) -> str:
    """Branch rule applied on submit and by the system ``route`` action."""
    if transfer_type == HIGH_TO_LOW:
        return RequestStatus.PENDING_DAO.value
    return RequestStatus.PENDING_APPROVER.value


def status_sequence(transfer_type: str) -> list[str]:
    """Ordered happy-path statuses for a request of the given transfer type."""
    seq = ["draft", "submitted"]
    if transfer_type == HIGH_TO_LOW:
        seq.append("pending_dao")
    seq += [
        "pending_approver",
        "pending_cpso",
        "pending_dta",
        "active_transfer",
        "pending_sme_signature",
        "pending_media_custodian",
        "completed",
        "disposed",
    ]
    return seq


def allowed_actions(status: str, role: str | None) -> list[str]:
    """Actions ``role`` may attempt on a request in ``status``."""
    status, role = _value(status), _value(role)
    return [
        action
        for (from_status, action), rule in WORKFLOW_TRANSITIONS.items()
        if from_status == status and rule["role"] is not None and rule["role"] == role
    ]


def is_at_risk(status: str, updated_at: datetime | None, now: datetime, idle_days: int = 5) -> bool:
    """A non-terminal request untouched for more than ``idle_days`` is at risk."""
    status = _value(status)
    if updated_at is None or status in TERMINAL_STATUSES or status == "draft":
        return False
    if updated_at.tzinfo is None and now.tzinfo is not None:
        updated_at = updated_at.replace(tzinfo=now.tzinfo)
    return now - updated_at > timedelta(days=idle_days)


def conflict_message(actual_status: str, action: str) -> str:
    """Explain why ``action`` cannot run against a request in ``actual_status``."""
    actual_status, action = _value(actual_status), _value(action)
    verb = _ACTION_VERB.get(action, action)
    if actual_status == "pending_cpso":
        return "This request has already been approved and is pending CPSO review."
    if actual_status == "pending_dta":
        return "This request has already been approved by CPSO and is pending DTA assignment."
    if actual_status == "rejected":
        return f"This request has been rejected and cannot be {verb}."
    if actual_status == "completed":
        return "This request has already been completed."
    if actual_status == "disposed":
        return "The media for this request has already been disposed."
    if actual_status == "cancelled":
        return "This request has been cancelled."
    label = STATUS_LABELS.get(actual_status, actual_status)
    return f'This request is in "{label}" status and cannot be {verb} by your role.'


def disposition_fields(data: dict | None, actor: Actor, now: datetime | None = None) -> dict:
    """Request columns for the Media Custodian's disposition record.

    Each media check is answered ``yes`` / ``no`` / ``na`` (default ``na``).
    The custodian name defaults to the acting user and the date to today.
    """
    data = data or {}
    if not isinstance(data, dict):
        raise ValidationError("The disposition record must be an object", {"disposition": "invalid"})
    fields: dict = {}
    errors: dict = {}
    for key in _DISPOSITION_CHECKS:
        answer = str(data.get(key) or "na").strip().lower()
        if answer not in DISPOSITION_ANSWERS:
            errors[key] = "Use yes, no or na"
        fields[f"disposition_{key}"] = answer
    if fields["disposition_optical_destroyed"] == "yes" and fields["disposition_optical_retained"] == "yes":
        errors["optical_retained"] = "Optical media cannot be both destroyed and retained"

    raw_date = data.get("date")
    if isinstance(raw_date, datetime):
        when = raw_date.date()
    elif isinstance(raw_date, date):
        when = raw_date
    elif raw_date:
        try:
            when = date.fromisoformat(str(raw_date)[:10])
        except ValueError:
            errors["date"] = "Use YYYY-MM-DD"
            when = None
    else:
        when = (now or datetime.now(timezone.utc)).date()

    if errors:
        raise ValidationError("Invalid disposition record", errors)

    name = data.get("custodian_name")
    fields["disposition_custodian_name"] = (name.strip() if isinstance(name, str) and name.strip() else None) \
        or actor.name or actor.email
    fields["disposition_date"] = when
    return fields


# ═════════════════════════════════════════════════════════════════════════════
# Planning
# ═════════════════════════════════════════════════════════════════════════════


def plan(
    request: RequestSnapshot,
    action: str,
    actor: Actor,
    *,
    verification=None,
    reason: str | None = None,
    notes: str | None = None,
    sme_user_id: int | None = None,
    require_approval_signature: bool = False,
    require_signature: bool = False,
    drive_id: int | None = None,
    disposition: dict | None = None,
    now: datetime | None = None,
) -> TransitionPlan:
    """Validate ``action`` against ``request`` and describe its effects.

    Args:
        request: Snapshot of the request as last read.
        action: An ``Action`` value.
        actor: The acting user; ``actor.role`` is the active role. The system
            ``route`` action accepts any actor.
        verification: Result of ``SignatureVerifier.verify`` for the payload
            supplied with this action, or None when no payload was supplied.
            Only ``valid``, ``reason`` and ``method`` are read.
        reason: Rejection reason (reject only).
        notes: Free-text notes stored on the history entry.
        sme_user_id: SME named by the DTA on ``complete_transfer``.
        require_approval_signature: Turns the optional approval signature on
            pending_approver / pending_cpso into a required one.
        require_signature: The caller asked for a signed action; a step
            without a signature slot refuses, any other step requires one.
        drive_id: Transfer drive selected by the DTA (assign_dta /
            complete_transfer).
        disposition: Media disposition answers (dispose only), see
            ``disposition_fields``.
        now: Clock value used for timestamp field updates.

    Raises:
        AuthorizationError: the active role does not own the current status.
        ConflictError: the request is not in a state that accepts ``action``.
        MissingSignatureError: a required signature was not supplied.
        ValidationError: invalid signature, empty reason, missing SME,
            invalid disposition record.
    """
    action = _value(action)
    status = request.status
    role = _value(actor.role)

    # 1. role ownership
    rule = WORKFLOW_TRANSITIONS.get((status, action))
    if action != Action.ROUTE.value:
        owner = owner_of(status)
        if owner is None:
            raise ConflictError(conflict_message(status, action), actual_status=status)
        if role != owner:
            raise AuthorizationError(
                f"Your active role ({ROLE_LABELS.get(role, role or 'none')}) cannot act on a "
                f"request that is {STATUS_LABELS.get(status, status)}; "
                f"{ROLE_LABELS[owner]} is required.",
                current_role=role,
                required_role=owner,
            )
    if rule is None:
        raise ConflictError(conflict_message(status, action), actual_status=status)

    # 2. branch selection
    to_status = rule["to"] or route_target(request.transfer_type)

    # 3. signature requirement
    requirement = rule["signature"]
    if require_signature and requirement is None:
        raise ValidationError(f"The '{action}' action does not accept a signature")
    signature_required = require_signature or requirement == REQUIRED or (
        requirement == OPTIONAL and require_approval_signature
    )
    if verification is None and signature_required:
        raise MissingSignatureError(rule["step"])
    if verification is not None:
        if requirement is None:
            raise ValidationError(f"The '{action}' action does not accept a signature")
        if not verification.valid:
            raise ValidationError(
                f"Signature rejected: {verification.reason}",
                {"signature": verification.reason},
            )
    signed_with_cac = verification is not None and _value(verification.method) == "cac"

    # 4. rejection reason
    if action == Action.REJECT.value:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reject a request", {"reason": "required"})
        reason = reason.strip()

    # Field updates
    field_updates: dict = {}
    if rule["actor_field"]:
        field_updates[rule["actor_field"]] = actor.user_id
    if action == Action.SUBMIT.value:
        field_updates["submitted_at"] = now
        if verification is not None:
            field_updates["signature_method"] = _value(verification.method)
    elif action == Action.COMPLETE_TRANSFER.value:
        if not sme_user_id:
            raise ValidationError("An SME must be selected to witness the transfer", {"sme_user_id": "required"})
        field_updates["assigned_sme_id"] = sme_user_id
        field_updates["transfer_completed_at"] = now
    elif action == Action.REJECT.value:
        field_updates["rejection_reason"] = reason
        field_updates["rejected_by_id"] = actor.user_id
    elif action == Action.DISPOSE.value:
        field_updates["disposition_notes"] = notes
        field_updates["disposed_at"] = now
        field_updates.update(disposition_fields(disposition, actor, now))
    if drive_id is not None and action in (Action.ASSIGN_DTA.value, Action.COMPLETE_TRANSFER.value):
        field_updates["selected_drive_id"] = drive_id

    history_action = rule["history"][1 if signed_with_cac else 0]
    history_notes = notes
    if action == Action.REJECT.value:
        history_notes = f"Rejection reason: {reason}" + (f"\n{notes}" if notes else "")
    elif action in (Action.SUBMIT.value, Action.ROUTE.value):
        routed = f"Routed to {STATUS_LABELS[to_status]}"
        history_notes = f"{routed}. {notes}" if notes else routed

    return TransitionPlan(
        request_id=request.id,
        action=action,
        from_status=status,
        to_status=to_status,
        step_type=rule["step"] if verification is not None else None,
        signature_required=signature_required,
        field_updates=field_updates,
        history=HistoryDraft(
            action=history_action,
            from_status=status,
            to_status=to_status,
            notes=history_notes,
        ),
        notifications=_notifications_for(request, action, to_status, actor, reason, sme_user_id),
    )


def _notifications_for(
    request: RequestSnapshot,
    action: str,
    to_status: str,
    actor: Actor,
    reason: str | None,
    sme_user_id: int | None,
) -> list[NotificationInstruction]:
    data = {
        "request_id": request.id,
        "request_number": request.request_number,
        "status": to_status,
        "status_label": STATUS_LABELS.get(to_status, to_status),
        "actor_email": actor.email,
        "actor_name": actor.name or actor.email,
    }
    out: list[NotificationInstruction] = []

    if action == Action.REJECT.value:
        out.append(NotificationInstruction(
            "request_rejected",
            recipient_user_id=request.requestor_id,
            template_data={**data, "reason": reason},
        ))
        return out
    if to_status == "completed":
        out.append(NotificationInstruction(
            "request_completed", recipient_user_id=request.requestor_id, template_data=data,
        ))
        return out
    if to_status == "pending_sme_signature" and sme_user_id:
        out.append(NotificationInstruction(
            "sme_signature_requested", recipient_user_id=sme_user_id, template_data=data,
        ))

    nxt = _NEXT_ROLE_NOTICE.get(to_status)
    if nxt:
        role, kind = nxt
        out.append(NotificationInstruction(kind, recipient_role=role, template_data=data))

    # Progress updates to the requestor for every forward move they did not make
    if action not in (Action.SUBMIT.value, Action.CANCEL.value, Action.ROUTE.value, Action.DISPOSE.value):
        out.append(NotificationInstruction(
            "request_progress", recipient_user_id=request.requestor_id, template_data=data,
        ))
    return out
