from .slack import SlackService, get_slack_service
from .email_service import EmailService, TEMPLATES

__all__ = ["SlackService", "EmailService", "TEMPLATES", "get_slack_service"]
