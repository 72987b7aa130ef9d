"""
Email Notification Service

Sends templated billing emails (payment receipts, expiry notices,
recovered payments) via SMTP.
"""

import asyncio
import html
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Any, Callable, Dict, List, Tuple

import structlog

logger = structlog.get_logger()


def escape_html(text: Any) -> str:
    """Escape template values to prevent HTML injection."""
    if text is None or text == "":
        return ""
    return html.escape(str(text))


def _layout(heading: str, header_color: str, body: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ background: {header_color}; color: white; padding: 20px; border-radius: 8px 8px 0 0; }}
        .content {{ background: #f8fafc; padding: 20px; border-radius: 0 0 8px 8px; }}
        .metric {{ background: white; padding: 15px; border-radius: 8px; margin: 10px 0; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>{heading}</h1></div>
        <div class="content">
            {body}
            <p style="color: #64748b; font-size: 12px;">Sent by Medora Billing</p>
        </div>
    </div>
</body>
</html>
"""


def _payment_success(data: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
            <p>Your subscription payment for <strong>{escape_html(data.get('hospital_name'))}</strong> was received.</p>
            <div class="metric">
                <p>Doctors: <strong>{escape_html(data.get('doctor_count'))}</strong></p>
                <p>Billing cycle: <strong>{escape_html(data.get('billing_cycle'))}</strong></p>
                <p>Amount paid: <strong>₹{escape_html(data.get('amount'))}</strong></p>
                <p>Valid until: <strong>{escape_html(data.get('end_date'))}</strong></p>
                <p>Payment reference: {escape_html(data.get('payment_id'))}</p>
            </div>
"""
    return "Medora: Subscription payment received", _layout("Payment Received", "#10b981", body)


def _payment_recovered(data: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
            <p>A stuck renewal was completed by reconciliation.</p>
            <div class="metric">
                <p>Tenant: {escape_html(data.get('tenant_id'))}</p>
                <p>Order: {escape_html(data.get('order_id'))}</p>
                <p>Payment: {escape_html(data.get('payment_id'))}</p>
                <p>Amount: ₹{escape_html(data.get('amount'))}</p>
            </div>
"""
    return "Medora: Stuck payment recovered", _layout("Payment Recovered", "#0f172a", body)


def _subscription_expired(data: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
            <p>The subscription for <strong>{escape_html(data.get('hospital_name'))}</strong> expired on
            <strong>{escape_html(data.get('end_date'))}</strong>.</p>
            <p>Renew from the billing page to restore access for your doctors.</p>
"""
    return "Medora: Subscription expired", _layout("Subscription Expired", "#dc2626", body)


def _subscription_expiring(data: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
            <p>The subscription for <strong>{escape_html(data.get('hospital_name'))}</strong> ends in
            <strong>{escape_html(data.get('days_remaining'))} day(s)</strong>, on {escape_html(data.get('end_date'))}.</p>
            <p>Renew now to avoid interruption.</p>
"""
    return "Medora: Subscription expiring soon", _layout("Subscription Expiring", "#f59e0b", body)


def _subscription_cancelled(data: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
            <p>The subscription for <strong>{escape_html(data.get('hospital_name'))}</strong> was cancelled.
            Access continues until {escape_html(data.get('end_date'))}.</p>
"""
    return "Medora: Subscription cancelled", _layout("Subscription Cancelled", "#64748b", body)


def _billing_alert(data: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
            <p class="metric">{escape_html(data.get('message'))}</p>
"""
    return f"Medora alert: {data.get('title', 'Billing alert')}", _layout(escape_html(data.get("title")), "#f43f5e", body)


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    "payment_success": _payment_success,
    "payment_recovered": _payment_recovered,
    "subscription_expired": _subscription_expired,
    "subscription_expiring": _subscription_expiring,
    "subscription_cancelled": _subscription_cancelled,
    "billing_alert": _billing_alert,
}


class EmailService:
    """
    SMTP email sender.

    smtplib is blocking, so delivery runs in a worker thread.
    """

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        from_email: str,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email

    def render(self, template: str, data: Dict[str, Any]) -> Tuple[str, str]:
        builder = TEMPLATES.get(template)
        if builder is None:
            raise KeyError(f"Unknown email template: {template}")
        return builder(data)

    def _deliver(self, recipients: List[str], subject: str, html_body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = ", ".join(recipients)
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
            server.starttls()
            if self.smtp_user:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, recipients, msg.as_string())

    async def send_template(self, recipients: List[str], template: str, data: Dict[str, Any]) -> bool:
        """Render and send. Returns False instead of raising on failure."""
        if not recipients:
            logger.warning("email_skipped", template=template, reason="No recipients")
            return False

        try:
            subject, html_body = self.render(template, data)
            await asyncio.to_thread(self._deliver, recipients, subject, html_body)
            logger.info("billing_email_sent", template=template, recipient_count=len(recipients))
            return True
        except Exception as e:
            logger.error("billing_email_failed", template=template, error=str(e))
            return False
