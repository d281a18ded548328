"""
Workflow service — the operations exposed to the HTTP layer and the CLI.

Every mutating operation follows the same path:

    load request → expected_status check → AuthorizationGate.check
      → SignatureVerifier.verify (when a payload is supplied)
      → RequestStateMachine.plan
      → one transaction:
            conditional status write (request_store.apply_transition)
            signature insert          (signature_store.record)
            drive release on dispose  (media_inventory.release_for_request)
            history insert            (audit_trail.append, savepoint)
        commit
      → NotificationDispatcher.dispatch (best-effort)

Return convention (same as the other services in this package):
    success → (TransitionResult, None)
    failure → (None, WorkflowError)

``StorageError`` (commit failed) and programming errors propagate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from aft.core import workflow
from aft.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
    WorkflowError,
)
from aft.core.workflow import Action, Actor, RequestSnapshot, Role
from aft.models import db
from aft.services import (
    audit_trail,
    authorization,
    media_inventory,
    notification_dispatcher,
    request_store,
    signature_store,
)
from aft.services.signature_verifier import SignaturePayload, SignatureVerifier

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = Actor(user_id=None, email="system@aft.local", role=None, name="AFT System")


@dataclass
class TransitionResult:
    request_id: int
    request_number: str
    action: str
    from_status: str
    to_status: str
    signature_id: int | None = None
    history_id: int | None = None
    notifications: int = 0
    request: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "request_number": self.request_number,
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "signature_id": self.signature_id,
            "history_id": self.history_id,
            "notifications": self.notifications,
            "request": self.request,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Internals
# ═════════════════════════════════════════════════════════════════════════════


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


def _config(key: str, default=None):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def _log_refusal(action: str, request_id: int, session, exc: WorkflowError) -> None:
    logger.warning(
        "Workflow action refused: %s", exc,
        extra={
            "event_type": "transition_refused",
            "action": action,
            "request_id": request_id,
            "user_id": getattr(session, "user_id", None),
            "active_role": getattr(session, "active_role", None) or getattr(session, "role", None),
            "error_code": exc.code,
        },
    )


def _coerce_payload(signature, session) -> SignaturePayload | None:
    if signature is None or isinstance(signature, SignaturePayload):
        return signature
    return SignaturePayload.from_dict(
        signature,
        ip_address=getattr(session, "ip_address", None),
        user_agent=getattr(session, "user_agent", None),
    )


def _validate_sme(sme_user_id) -> int:
    try:
        sme_user_id = int(sme_user_id)
    except (TypeError, ValueError) as exc:
        raise ValidationError("An SME must be selected to witness the transfer", {"sme_user_id": "required"}) from exc
    if not request_store.user_has_role(sme_user_id, Role.SME.value):
        raise ValidationError("Selected user does not hold the SME role", {"sme_user_id": sme_user_id})
    return sme_user_id


def _transition(
    request_id: int,
    session,
    action: str,
    *,
    signature=None,
    reason: str | None = None,
    notes: str | None = None,
    sme_user_id=None,
    require_signature: bool = False,
    drive_id=None,
    disposition: dict | None = None,
    return_drive: bool = True,
    expected_status: str | None = None,
    now: datetime | None = None,
    system: bool = False,
):
    now = _now(now)
    try:
        req = request_store.get(request_id)
        snapshot = RequestSnapshot.from_model(req)

        if expected_status is not None and expected_status != snapshot.status:
            raise ConflictError(
                workflow.conflict_message(snapshot.status, action),
                actual_status=snapshot.status,
                expected_status=expected_status,
            )

        if system:
            actor = SYSTEM_ACTOR
        else:
            authorization.check(session, snapshot, action)
            actor = authorization.actor_from_session(session)

        payload = _coerce_payload(signature, session)
        verification = None
        if payload is not None:
            verification = SignatureVerifier.from_config().verify(payload, actor.email, now)
        if action == Action.COMPLETE_TRANSFER.value and sme_user_id is not None:
            sme_user_id = _validate_sme(sme_user_id)
        if action in (Action.ASSIGN_DTA.value, Action.COMPLETE_TRANSFER.value):
            drive_id = media_inventory.drive_for_transfer(
                drive_id, actor.user_id, default_to_issued=action == Action.ASSIGN_DTA.value,
            )

        plan = workflow.plan(
            snapshot,
            action,
            actor,
            verification=verification,
            reason=reason,
            notes=notes,
            sme_user_id=sme_user_id,
            require_approval_signature=_config("REQUIRE_APPROVAL_SIGNATURE", False),
            require_signature=require_signature,
            drive_id=drive_id,
            disposition=disposition,
            now=now,
        )
    except WorkflowError as exc:
        _log_refusal(action, request_id, session, exc)
        return None, exc

    release_drive = return_drive and plan.action == Action.DISPOSE.value
    return _apply(plan, req.request_number, actor, payload, verification, now, release_drive=release_drive)


def _apply(plan, request_number, actor, payload, verification, now, *, release_drive=False):
    signature_id = None
    history = None
    try:
        request_store.apply_transition(
            plan.request_id, plan.from_status, plan.to_status, plan.field_updates,
            action=plan.action, now=now,
        )
        if plan.step_type and verification is not None:
            signature_id = signature_store.record(plan.request_id, plan.step_type, actor, payload, verification)
        if release_drive:
            media_inventory.release_for_request(plan.request_id, now)
        history = audit_trail.append(
            plan.request_id,
            plan.history.action,
            actor.email,
            plan.history.notes,
            from_status=plan.history.from_status,
            to_status=plan.history.to_status,
            actor_id=actor.user_id,
            actor_role=actor.role,
            created_at=now,
        )
        db.session.commit()
    except WorkflowError as exc:
        db.session.rollback()
        _log_refusal(plan.action, plan.request_id, actor, exc)
        return None, exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        context = {"request_id": plan.request_id, "action": plan.action, "to_status": plan.to_status}
        logger.exception("Transition could not be stored", extra={"event_type": "storage_error", **context})
        raise StorageError(context=context) from exc

    logger.info(
        "Request %s: %s → %s", request_number, plan.from_status, plan.to_status,
        extra={
            "event_type": "transition",
            "request_id": plan.request_id,
            "request_number": request_number,
            "action": plan.action,
            "user_id": actor.user_id,
            "active_role": actor.role,
        },
    )

    result = TransitionResult(
        request_id=plan.request_id,
        request_number=request_number,
        action=plan.action,
        from_status=plan.from_status,
        to_status=plan.to_status,
        signature_id=signature_id,
        history_id=history.id if history is not None else None,
        notifications=len(plan.notifications),
        request=request_store.get(plan.request_id).to_dict(),
    )
    _dispatch(plan.notifications)
    return result, None


def _dispatch(instructions) -> None:
    try:
        notification_dispatcher.dispatch(instructions)
    except RuntimeError:
        # executor already shut down (interpreter exit)
        logger.exception("Notifications not dispatched", extra={"event_type": "notification_failed"})


# ═════════════════════════════════════════════════════════════════════════════
# Drafts
# ═════════════════════════════════════════════════════════════════════════════


def create_request(session, data: dict):
    """Create a draft owned by the session's user (REQUESTOR role)."""
    try:
        authorization.require_session(session)
        if session.active_role != Role.REQUESTOR.value:
            raise AuthorizationError(
                "Only requestors can create transfer requests",
                current_role=session.active_role,
                required_role=Role.REQUESTOR.value,
            )
        req = request_store.create(session.user_id, data or {})
    except WorkflowError as exc:
        db.session.rollback()
        _log_refusal("create", 0, session, exc)
        return None, exc

    audit_trail.append(
        req.id, "CREATED", session.email, "Draft created",
        to_status="draft", actor_id=session.user_id, actor_role=session.active_role,
    )
    _commit({"request_number": req.request_number, "action": "create"})
    logger.info(
        "Draft %s created", req.request_number,
        extra={"event_type": "request_created", "request_id": req.id, "user_id": session.user_id},
    )
    return req, None


def update_draft(request_id: int, session, data: dict, *, expected_status: str | None = None):
    """Edit descriptive fields of a draft (owner only)."""
    try:
        req = request_store.get(request_id)
        if expected_status is not None and expected_status != req.status:
            raise ConflictError(
                workflow.conflict_message(req.status, "update"),
                actual_status=req.status, expected_status=expected_status,
            )
        if req.status != "draft":
            raise ConflictError("Only draft requests can be edited.", actual_status=req.status)
        authorization.check(session, RequestSnapshot.from_model(req), "update")
        changed = request_store.update_draft_fields(req, data or {})
    except WorkflowError as exc:
        db.session.rollback()
        _log_refusal("update", request_id, session, exc)
        return None, exc

    if changed:
        audit_trail.append(
            req.id, "DRAFT_UPDATED", session.email, "Updated: " + ", ".join(changed),
            from_status="draft", to_status="draft",
            actor_id=session.user_id, actor_role=session.active_role,
        )
        _commit({"request_id": req.id, "action": "update"})
    return req, None


def _commit(context: dict) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Commit failed", extra={"event_type": "storage_error", **context})
        raise StorageError(context=context) from exc


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


def submit_request(request_id: int, session, signature, *, notes=None, expected_status=None, now=None):
    """Sign and submit a draft. Routes to pending_dao (high-to-low) or pending_approver."""
    return _transition(
        request_id, session, Action.SUBMIT.value,
        signature=signature, notes=notes, expected_status=expected_status, now=now,
    )


def cancel(request_id: int, session, notes=None, *, expected_status=None, now=None):
    return _transition(request_id, session, Action.CANCEL.value, notes=notes, expected_status=expected_status, now=now)


def approve(request_id: int, session, notes=None, *, expected_status=None, now=None):
    """Approve the request for the session's role (DAO, ISSM, CPSO or Media Custodian)."""
    return _transition(request_id, session, Action.APPROVE.value, notes=notes, expected_status=expected_status, now=now)


def approve_with_signature(request_id: int, session, signature, notes=None, *, expected_status=None, now=None):
    """Approve with a manual or CAC signature (approver_approval / cpso_approval)."""
    return _transition(
        request_id, session, Action.APPROVE.value,
        signature=signature, notes=notes, require_signature=True,
        expected_status=expected_status, now=now,
    )


def reject(request_id: int, session, reason, notes=None, *, expected_status=None, now=None):
    return _transition(
        request_id, session, Action.REJECT.value,
        reason=reason, notes=notes, expected_status=expected_status, now=now,
    )


def assign_dta(request_id: int, session, notes=None, *, drive_id=None, expected_status=None, now=None):
    """DTA takes ownership of an approved request.

    ``drive_id`` defaults to the drive currently issued to the DTA, if any.
    """
    return _transition(
        request_id, session, Action.ASSIGN_DTA.value,
        notes=notes, drive_id=drive_id, expected_status=expected_status, now=now,
    )


def complete_transfer(
    request_id: int, session, signature, sme_user_id, notes=None, *, drive_id=None, expected_status=None, now=None,
):
    """Assigned DTA signs off the transfer and names the witnessing SME."""
    return _transition(
        request_id, session, Action.COMPLETE_TRANSFER.value,
        signature=signature, sme_user_id=sme_user_id, notes=notes, drive_id=drive_id,
        expected_status=expected_status, now=now,
    )


def sign_as_sme(request_id: int, session, notes=None, signature=None, *, expected_status=None, now=None):
    """SME two-person integrity signature.

    Without a payload a manual signature is derived from the SME's own
    account so the sme_signature step always has a record.
    """
    if signature is None and session is not None and getattr(session, "user_id", None):
        signature = SignaturePayload(
            method="manual",
            signer_name=getattr(session, "display_name", "") or session.email,
            ip_address=getattr(session, "ip_address", None),
            user_agent=getattr(session, "user_agent", None),
            notes=notes,
        )
    return _transition(
        request_id, session, Action.SIGN.value,
        signature=signature, notes=notes, expected_status=expected_status, now=now,
    )


def dispose(
    request_id: int, session, notes=None, *, disposition=None, return_drive=True, expected_status=None, now=None,
):
    """Media Custodian records disposal of the transfer media.

    Accepted from ``completed`` and directly from ``pending_media_custodian``.
    ``disposition`` carries the yes/no/na answers, custodian name and date
    (see ``workflow.disposition_fields``). With ``return_drive`` the drive
    selected for the transfer goes back to the pool in the same transaction.
    """
    return _transition(
        request_id, session, Action.DISPOSE.value,
        notes=notes, disposition=disposition, return_drive=return_drive,
        expected_status=expected_status, now=now,
    )


def route_submitted(request_id: int, *, now=None):
    """System action: move a request stuck in ``submitted`` to its review queue."""
    return _transition(request_id, None, Action.ROUTE.value, system=True, now=now)


def route_all_submitted(now=None) -> list[tuple]:
    return [route_submitted(rid, now=now) for rid in request_store.ids_in_status("submitted")]


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


def get_request(request_id: int, session):
    try:
        req = request_store.get(request_id)
        authorization.require_session(session)
        if not authorization.can_view(session, req):
            raise AuthorizationError(
                "You do not have access to this request", current_role=session.active_role,
            )
    except WorkflowError as exc:
        return None, exc
    d = req.to_dict()
    d["allowed_actions"] = workflow.allowed_actions(req.status, session.active_role)
    return d, None


def get_timeline(request_id: int, now: datetime | None = None):
    try:
        return audit_trail.timeline_for(request_id, now=now), None
    except NotFoundError as exc:
        return None, exc


def list_signatures(request_id: int):
    if request_store.current_status(request_id) is None:
        return None, NotFoundError("TransferRequest", request_id)
    return [signature_store.export_signature(s) for s in signature_store.list_for(request_id)], None


def verify_signature(signature_id: int, session, now: datetime | None = None):
    """Integrity report for one signature; readable by whoever may view its request."""
    try:
        request_id = signature_store.request_id_for(signature_id)
    except NotFoundError as exc:
        return None, exc
    _, err = get_request(request_id, session)
    if err:
        return None, err
    return signature_store.verify_integrity(signature_id, now=now), None
