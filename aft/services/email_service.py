"""
AFT Request Tracker
Email Service — the Notifier behind workflow notifications.

When SMTP is not configured, emails are logged but not sent (dev/test mode).

Uses:
    - MAIL_* config keys (MAIL_SERVER, MAIL_PORT, MAIL_USE_TLS, ...)
    - Falls back to logging-only mode when MAIL_SERVER is unset
    - All emails are recorded in EmailLog for audit

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import html
import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

from aft.core.exceptions import NotificationError
from aft.models import db
from aft.models.email_log import EmailLog

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

# Role that acts next, by the status the request just entered
NEXT_ROLE_NAMES = {
    "pending_dao": "DAO Review",
    "pending_approver": "ISSM/ISSO Approval",
    "pending_cpso": "CPSO Approval",
    "pending_dta": "DTA Assignment",
    "pending_sme_signature": "SME Two-Person Integrity Signature",
    "pending_media_custodian": "Media Custodian Processing",
}

_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: {header_color}; color: white; padding: 16px 24px;">
        <h2 style="margin: 0; font-size: 18px;">Assured File Transfer</h2>
        <p style="margin: 4px 0 0; font-size: 13px;">Request {request_number}</p>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        {body}
    </div>
    <div style="background: #f1f5f9; padding: 12px 24px; border: 1px solid #e2e8f0; border-top: none;">
        <p style="color: #94a3b8; font-size: 12px; margin: 0;">
            This is an automated message from the AFT request tracker. Do not reply.
        </p>
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "next_approver": {
        "subject": "AFT Request {request_number} - {role_name} Required",
        "header_color": "#1e3a8a",
        "body": (
            "<p>An Assured File Transfer request is awaiting <strong>{role_name}</strong>.</p>"
            "<p>Current status: {status_label}<br>Last action by: {actor_name}</p>"
        ),
    },
    "dta_assignment": {
        "subject": "AFT Request {request_number} - DTA Assignment Required",
        "header_color": "#1e3a8a",
        "body": (
            "<p>Request {request_number} has been approved by the CPSO and is waiting "
            "for a Data Transfer Agent to take ownership of the transfer.</p>"
        ),
    },
    "sme_signature_requested": {
        "subject": "AFT Request {request_number} - SME Two-Person Integrity Signature Required",
        "header_color": "#7c3aed",
        "body": (
            "<p>{actor_name} has completed the transfer for request {request_number} and "
            "named you as the witnessing SME.</p><p>Please review and sign.</p>"
        ),
    },
    "request_progress": {
        "subject": "AFT Request {request_number} - Status Update",
        "header_color": "#0f766e",
        "body": "<p>Your request is now <strong>{status_label}</strong>.</p><p>Updated by: {actor_name}</p>",
    },
    "request_rejected": {
        "subject": "AFT Request {request_number} - Rejected",
        "header_color": "#dc2626",
        "body": (
            "<p>Your request was rejected by {actor_name}.</p>"
            "<p><strong>Reason:</strong> {reason}</p>"
        ),
    },
    "request_completed": {
        "subject": "AFT Request {request_number} - Completed",
        "header_color": "#16a34a",
        "body": "<p>Your transfer request has been completed and processed by the Media Custodian.</p>",
    },
}


class EmailService:
    """
    Email sending service with template support.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database but not actually sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def get_template(template_name: str) -> dict[str, str] | None:
        return _TEMPLATES.get(template_name)

    @staticmethod
    def render(template_name: str, context: dict[str, Any]) -> tuple[str, str]:
        """Return ``(subject, html_body)`` for a template and context."""
        template = _TEMPLATES[template_name]
        ctx = _SafeDict(
            {k: html.escape(v) if isinstance(v, str) else v for k, v in context.items()}
        )
        ctx.setdefault("role_name", NEXT_ROLE_NAMES.get(context.get("status"), "Action"))
        subject = template["subject"].format_map(ctx)
        body = template["body"].format_map(ctx)
        html_body = _LAYOUT.format_map(_SafeDict(
            header_color=template["header_color"],
            request_number=context.get("request_number", ""),
            body=body,
        ))
        return subject, html_body

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        subject: str,
        html_body: str,
        template_name: str | None = None,
        request_id: int | None = None,
    ) -> EmailLog:
        """
        Send an email and log it.

        Raises:
            NotificationError: SMTP delivery failed. The EmailLog row is kept
                with status='failed'.
        """
        log = EmailLog(
            recipient_email=to_email,
            subject=subject,
            template_name=template_name,
            status="queued",
            request_id=request_id,
        )
        db.session.add(log)
        db.session.flush()

        if not cls.is_configured():
            log.status = "logged"
            log.sent_at = datetime.now(timezone.utc)
            logger.info(
                "Email (dev mode): to=%s subject='%s' template=%s",
                to_email, subject, template_name,
            )
            return log

        try:
            cls._send_smtp(to_email=to_email, subject=subject, html_body=html_body)
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            raise NotificationError(template_name or "email", to_email, str(exc)) from exc

        log.status = "sent"
        log.sent_at = datetime.now(timezone.utc)
        logger.info("Email sent: to=%s subject='%s'", to_email, subject)
        return log

    @classmethod
    def notify(cls, kind: str, email: str, template_data: dict[str, Any]) -> EmailLog:
        """Render the ``kind`` template for ``template_data`` and send it to ``email``."""
        if kind not in _TEMPLATES:
            raise NotificationError(kind, email, f"unknown template {kind!r}")
        subject, html_body = cls.render(kind, template_data)
        return cls.send(
            to_email=email,
            subject=subject,
            html_body=html_body,
            template_name=kind,
            request_id=template_data.get("request_id"),
        )

    @staticmethod
    def _send_smtp(*, to_email: str, subject: str, html_body: str) -> None:
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=cfg.get("MAIL_TIMEOUT_SECONDS", 30)) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
