import logging
import re
import sys
from typing import Any, Dict, Optional

import structlog

from app.shared.core.config import get_settings

# Keys whose values never reach logs: contact details and payment secrets
REDACTED_KEYS = frozenset({
    "email", "admin_email", "recipient", "phone", "password", "token", "secret",
    "signature", "razorpay_signature", "key_secret", "smtp_password", "api_key",
})
NESTED_CONTAINERS = ("details", "payload", "gateway_response", "notes")

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_RE = re.compile(r"(?<!\d)(?:\+?91[-\s]?)?[6-9]\d{9}(?!\d)")


def _scrub_text(value: str) -> str:
    return _PHONE_RE.sub("[REDACTED_PHONE]", _EMAIL_RE.sub("[REDACTED_EMAIL]", value))


def redact_sensitive(_logger, _method_name, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor: mask secrets and contact details before rendering."""
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "[REDACTED]"

    for container in NESTED_CONTAINERS:
        nested = event_dict.get(container)
        if isinstance(nested, dict) and REDACTED_KEYS.intersection(nested):
            event_dict[container] = {
                k: "[REDACTED]" if k in REDACTED_KEYS else v for k, v in nested.items()
            }

    # Gateway and SMTP error strings can echo contact details
    for key in ("error", "reason"):
        if isinstance(event_dict.get(key), str):
            event_dict[key] = _scrub_text(event_dict[key])

    return event_dict


def setup_logging() -> None:
    settings = get_settings()
    level = logging.DEBUG if settings.DEBUG else logging.INFO
    renderer = structlog.dev.ConsoleRenderer() if settings.DEBUG else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_sensitive,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn, celery and apscheduler log through the stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)


def audit_log(
    event: str,
    tenant_id: Any,
    actor: str = "system",
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Emit one billing audit record.

    Every subscription state change (renewal applied, recovery, expiry,
    cancellation) is logged through here so the audit stream has one schema.
    """
    structlog.get_logger("medora.audit").info(
        "billing_audit",
        audit_event=event,
        actor=actor,
        tenant_id=str(tenant_id),
        details=details or {},
    )
