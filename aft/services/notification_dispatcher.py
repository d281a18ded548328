"""
Notification dispatcher — delivers NotificationInstructions after commit.

Instructions name a recipient role, user id or address; the dispatcher
resolves them to e-mail addresses and hands each one to the Notifier
(``EmailService.notify`` unless another notifier is supplied).

Delivery is best-effort. A failed send is logged and never surfaces to the
caller of the workflow operation: by the time the dispatcher runs the
transition is already committed.

With ``NOTIFICATIONS_ASYNC`` set, delivery runs on a small thread pool with
its own application context.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from aft.core.exceptions import NotificationError
from aft.core.workflow import NotificationInstruction
from aft.models import db
from aft.services import request_store
from aft.services.email_service import EmailService

logger = logging.getLogger(__name__)

_EXTENSION_KEY = "aft_notification_executor"


def resolve_recipients(instruction: NotificationInstruction) -> list[str]:
    """E-mail addresses an instruction targets (possibly empty)."""
    if instruction.recipient_email:
        return [instruction.recipient_email]
    if instruction.recipient_user_id is not None:
        email = request_store.email_for_user(instruction.recipient_user_id)
        return [email] if email else []
    if instruction.recipient_role:
        return request_store.emails_for_role(instruction.recipient_role)
    return []


class NotificationDispatcher:
    """Sends instructions through ``notifier`` (anything with ``notify(kind, email, data)``)."""

    def __init__(self, notifier=None):
        self.notifier = notifier or EmailService

    def deliver(self, instructions: list[NotificationInstruction]) -> int:
        """Deliver synchronously. Returns the number of successful sends."""
        sent = 0
        for instruction in instructions:
            try:
                recipients = resolve_recipients(instruction)
            except SQLAlchemyError:
                db.session.rollback()
                logger.exception(
                    "Could not resolve notification recipients",
                    extra={"event_type": "notification_failed", "kind": instruction.kind},
                )
                continue
            if not recipients:
                logger.warning(
                    "No recipients for %s notification", instruction.kind,
                    extra={
                        "event_type": "notification_skipped",
                        "kind": instruction.kind,
                        "recipient_role": instruction.recipient_role,
                        "request_id": instruction.template_data.get("request_id"),
                    },
                )
                continue
            for email in recipients:
                if self._send_one(instruction, email):
                    sent += 1
        return sent

    def _send_one(self, instruction: NotificationInstruction, email: str) -> bool:
        extra = {
            "event_type": "notification",
            "kind": instruction.kind,
            "request_id": instruction.template_data.get("request_id"),
            "request_number": instruction.template_data.get("request_number"),
        }
        try:
            self.notifier.notify(instruction.kind, email, instruction.template_data)
            db.session.commit()
            return True
        except NotificationError as exc:
            # keep the failed EmailLog row
            try:
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
            logger.warning("Notification failed: %s", exc, extra=extra)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Notification log could not be written", extra=extra)
        except Exception:
            db.session.rollback()
            logger.exception("Unexpected notifier error", extra=extra)
        return False


def _executor(app) -> ThreadPoolExecutor:
    executor = app.extensions.get(_EXTENSION_KEY)
    if executor is None:
        executor = ThreadPoolExecutor(
            max_workers=app.config.get("NOTIFICATION_WORKERS", 2),
            thread_name_prefix="aft-notify",
        )
        app.extensions[_EXTENSION_KEY] = executor
    return executor


def _deliver_in_app(app, instructions: list[NotificationInstruction]) -> int:
    with app.app_context():
        try:
            return NotificationDispatcher().deliver(instructions)
        finally:
            db.session.remove()


def dispatch(instructions: list[NotificationInstruction]) -> Future | int:
    """Deliver ``instructions`` now or on the worker pool, per ``NOTIFICATIONS_ASYNC``."""
    if not instructions:
        return 0
    app = current_app._get_current_object()
    if app.config.get("NOTIFICATIONS_ASYNC"):
        return _executor(app).submit(_deliver_in_app, app, list(instructions))
    return NotificationDispatcher().deliver(instructions)


def shutdown(app, wait: bool = True) -> None:
    executor = app.extensions.pop(_EXTENSION_KEY, None)
    if executor is not None:
        executor.shutdown(wait=wait)
