"""
Notification Dispatcher

Bridges billing services to delivery providers (SMTP email, Slack).
Fire-and-forget: provider failures are logged and never propagate into
the payment path that triggered them.
"""

from typing import Any, Dict, Optional

import structlog

from app.modules.notifications.domain.email_service import EmailService
from app.modules.notifications.domain.slack import SlackService, get_slack_service
from app.shared.core.config import get_settings

logger = structlog.get_logger()


class NotificationDispatcher:
    """
    Routes templated messages to email and ops alerts to Slack, with the
    super admin mailbox as a second alert channel.
    """

    def __init__(
        self,
        email: Optional[EmailService] = None,
        slack: Optional[SlackService] = None,
        super_admin_email: Optional[str] = None,
    ):
        self.email = email
        self.slack = slack
        self.super_admin_email = super_admin_email

    async def send_templated(self, recipient: Optional[str], template: str, data: Dict[str, Any]) -> bool:
        """Send a templated message to one recipient."""
        if not recipient:
            logger.info("notification_skipped", template=template, reason="no_recipient")
            return False
        if self.email is None:
            logger.info("notification_skipped", template=template, reason="email_not_configured")
            return False
        try:
            sent = await self.email.send_template([recipient], template, data)
        except Exception as e:
            logger.error("notification_failed", template=template, error=str(e))
            return False
        logger.info("notification_dispatched", template=template, sent=sent)
        return sent

    async def notify_super_admin(self, template: str, data: Dict[str, Any]) -> bool:
        return await self.send_templated(self.super_admin_email, template, data)

    async def send_alert(
        self,
        title: str,
        message: str,
        severity: str = "warning",
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Sends an ops alert to configured channels."""
        if self.slack:
            try:
                await self.slack.send_alert(title, message, severity, context=context)
            except Exception as e:
                logger.error("slack_alert_failed", title=title, error=str(e))

        if severity == "critical" and self.super_admin_email:
            await self.notify_super_admin("billing_alert", {"title": title, "message": message})

        logger.warning("billing_alert_dispatched", title=title, severity=severity)


def get_notification_dispatcher() -> NotificationDispatcher:
    settings = get_settings()
    email = None
    if settings.SMTP_HOST:
        email = EmailService(
            smtp_host=settings.SMTP_HOST,
            smtp_port=settings.SMTP_PORT,
            smtp_user=settings.SMTP_USER or "",
            smtp_password=settings.SMTP_PASSWORD or "",
            from_email=settings.SMTP_FROM,
        )
    return NotificationDispatcher(
        email=email,
        slack=get_slack_service(),
        super_admin_email=settings.SUPER_ADMIN_EMAIL,
    )
