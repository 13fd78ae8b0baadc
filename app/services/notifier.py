"""
Notification collaborator — signer and approver reminders.

Sends plain templated emails.  When SMTP is not configured the message is
logged but not sent (dev/test mode).  Delivery failures raise
ExternalServiceError; callers invoke the notifier only after their state
change has been committed, so a failure never rolls anything back.

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

from app.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


_TEMPLATES: dict[str, dict[str, str]] = {
    "signer_reminder": {
        "subject": "Reminder: your signature is requested on \"{title}\"",
        "html": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h3 style="color: #1e293b;">{title}</h3>
            <p style="color: #64748b; line-height: 1.6;">
                Your signature is still pending. Please review and sign by <strong>{due_at}</strong>.
            </p>
        </div>
        """,
    },
    "decision_reminder": {
        "subject": "Decision awaiting your approval: {title}",
        "html": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h3 style="color: #1e293b;">{title}</h3>
            <p style="color: #64748b; line-height: 1.6;">
                {sender} is waiting for your decision. Due: <strong>{due_date}</strong>.
            </p>
        </div>
        """,
    },
}


class Notifier:
    """Email dispatch used by the reminder paths."""

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @classmethod
    def send(cls, *, to_email: str, subject: str, html_body: str, template_name: str | None = None) -> bool:
        """Send one email.

        Returns True when the message went out over SMTP, False in
        log-only mode.

        Raises:
            ExternalServiceError: SMTP delivery failed.
        """
        if not cls.is_configured():
            logger.info(
                "Email (dev mode): to=%s subject='%s' template=%s",
                to_email, subject, template_name,
            )
            return False

        try:
            cls._send_smtp(to_email=to_email, subject=subject, html_body=html_body)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email failed: to=%s error=%s", to_email, exc)
            raise ExternalServiceError("notifier", f"delivery to {to_email} failed: {exc}") from exc
        logger.info("Email sent: to=%s subject='%s'", to_email, subject)
        return True

    @classmethod
    def send_from_template(cls, *, to_email: str, template_name: str, context: dict[str, Any]) -> bool:
        template = _TEMPLATES[template_name]
        return cls.send(
            to_email=to_email,
            subject=template["subject"].format_map(_SafeDict(context)),
            html_body=template["html"].format_map(_SafeDict(context)),
            template_name=template_name,
        )

    @staticmethod
    def _send_smtp(*, to_email: str, subject: str, html_body: str) -> None:
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER") or f"noreply@{server}"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


def remind_signer(*, signer_id: str, approval_title: str, due_at=None) -> bool:
    return Notifier.send_from_template(
        to_email=signer_id,
        template_name="signer_reminder",
        context={
            "title": approval_title,
            "due_at": due_at.strftime("%Y-%m-%d %H:%M UTC") if due_at else "as soon as possible",
        },
    )


def remind_approver(*, approver_email: str, decision_title: str, due_date=None, sender: str) -> bool:
    return Notifier.send_from_template(
        to_email=approver_email,
        template_name="decision_reminder",
        context={
            "title": decision_title,
            "due_date": due_date.isoformat() if due_date else "no due date",
            "sender": sender,
        },
    )


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
