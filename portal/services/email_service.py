"""
Studio Client Portal
Email Service.

Provides email sending capabilities with template support.
When SMTP is not configured, emails are logged but not sent (dev/test mode).

Uses:
    - Flask-Mail compatible config (MAIL_SERVER, MAIL_PORT, etc.)
    - Falls back to logging-only mode when SMTP is not configured
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

import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

from portal.models import db
from portal.models.notification import EmailLog

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="font-family: 'Inter', Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: {header_color}; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">{heading}</h2>
        <p style="margin: 4px 0 0; color: #e2e8f0; font-size: 13px;">{project_name}</p>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        {body}
        <p style="margin-top: 24px;">
            <a href="{project_url}" style="background: #1e293b; color: white; padding: 10px 18px;
               border-radius: 6px; text-decoration: none;">Open project</a>
        </p>
    </div>
    <div style="background: #f1f5f9; padding: 12px 24px; border-radius: 0 0 8px 8px;
                border: 1px solid #e2e8f0; border-top: none; text-align: center;">
        <p style="color: #94a3b8; font-size: 12px; margin: 0;">Studio Client Portal - Automated notification</p>
    </div>
</div>
"""


def _layout(heading: str, header_color: str, body: str) -> str:
    return (
        _LAYOUT.replace("{heading}", heading)
        .replace("{header_color}", header_color)
        .replace("{body}", body)
    )


_TEMPLATES: dict[str, dict[str, str]] = {
    "phase_advanced": {
        "subject": "[{project_name}] Now in {phase_icon} {phase_name}",
        "html": _layout(
            "Your project moved forward", "#1e293b",
            '<p style="color: #64748b; line-height: 1.6;">Your project has entered the '
            "<strong>{phase_name}</strong> phase.</p>"
            '<p style="color: #64748b;">{phase_description}</p>',
        ),
    },
    "phase_approval_needed": {
        "subject": "[{project_name}] Approval needed for {phase_name}",
        "html": _layout(
            "Your approval is needed", "#f59e0b",
            '<p style="color: #64748b; line-height: 1.6;">Everything for '
            "<strong>{phase_name}</strong> is in place. Please review and approve "
            "to continue.</p>",
        ),
    },
    "phase_approved": {
        "subject": "[{project_name}] {phase_name} approved by {actor_name}",
        "html": _layout(
            "Phase approved", "#22c55e",
            '<p style="color: #64748b; line-height: 1.6;"><strong>{actor_name}</strong> approved '
            "<strong>{phase_name}</strong>.</p>"
            '<p style="color: #64748b;">{notes}</p>',
        ),
    },
    "phase_changes_requested": {
        "subject": "[{project_name}] Changes requested for {phase_name}",
        "html": _layout(
            "Changes requested", "#ef4444",
            '<p style="color: #64748b; line-height: 1.6;"><strong>{actor_name}</strong> requested '
            "changes during <strong>{phase_name}</strong>:</p>"
            '<blockquote style="border-left: 3px solid #ef4444; margin: 0; padding: 8px 16px; '
            'color: #1e293b;">{feedback}</blockquote>',
        ),
    },
    "stalled_project_reminder": {
        "subject": "[{project_name}] {pending_count} action(s) waiting in {phase_name}",
        "html": _layout(
            "Your project is waiting on you", "#3b82f6",
            '<p style="color: #64748b; line-height: 1.6;">The <strong>{phase_name}</strong> phase '
            "has been open for {days_in_phase} days with {pending_count} required action(s) "
            "still pending.</p>",
        ),
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
        """Check if SMTP is configured."""
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def get_template(template_name: str) -> dict[str, str] | None:
        """Get an email template by name."""
        return _TEMPLATES.get(template_name)

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        subject: str,
        html_body: str,
        template_name: str | None = None,
        project_id: int | None = None,
    ) -> EmailLog:
        """
        Send an email and log it.

        If SMTP is not configured, the email is logged with status='sent'
        to simulate sending without actual delivery. Flushes the log row;
        the caller commits.

        Returns:
            The EmailLog record for this email.
        """
        log = EmailLog(
            recipient_email=to_email,
            recipient_name=to_name,
            subject=subject,
            template_name=template_name,
            status="queued",
            project_id=project_id,
        )
        db.session.add(log)
        db.session.flush()

        if not cls.is_configured():
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info(
                "Email (dev mode): to=%s subject='%s' template=%s",
                to_email, subject, template_name,
                extra={"project_id": project_id},
            )
            return log

        try:
            cls._send_smtp(to_email=to_email, to_name=to_name,
                           subject=subject, html_body=html_body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email sent: to=%s subject='%s'", to_email, subject,
                        extra={"project_id": project_id})
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email failed: to=%s error=%s", to_email, exc,
                         extra={"project_id": project_id})

        return log

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        template_name: str,
        context: dict[str, Any],
        project_id: int | None = None,
    ) -> EmailLog | None:
        """
        Send an email using a named template.

        Template variables are interpolated from the context dict.
        """
        template = cls.get_template(template_name)
        if not template:
            logger.warning("Email template not found: %s", template_name)
            return None

        subject = template["subject"].format_map(_SafeDict(context))
        html_body = template["html"].format_map(_SafeDict(context))

        return cls.send(
            to_email=to_email,
            to_name=to_name,
            subject=subject,
            html_body=html_body,
            template_name=template_name,
            project_id=project_id,
        )

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None,
                   subject: str, html_body: str) -> None:
        """Actually send via SMTP."""
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
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
