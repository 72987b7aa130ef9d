import pytest
from unittest.mock import AsyncMock, MagicMock

from slack_sdk.errors import SlackApiError

from app.modules.notifications.domain.email_service import EmailService
from app.modules.notifications.domain.slack import SlackService, build_alert_attachment
from app.shared.core.notifications import NotificationDispatcher


@pytest.fixture
def email():
    service = MagicMock(spec=EmailService)
    service.send_template = AsyncMock(return_value=True)
    return service


def test_templates_escape_values():
    service = EmailService("smtp.test", 587, "", "", "billing@medora.test")

    subject, body = service.render("payment_success", {"hospital_name": "<script>x</script>", "amount": "100.00"})

    assert "Medora" in subject
    assert "<script>" not in body
    assert "&lt;script&gt;" in body


def test_unknown_template_raises():
    service = EmailService("smtp.test", 587, "", "", "billing@medora.test")
    with pytest.raises(KeyError):
        service.render("does_not_exist", {})


@pytest.mark.asyncio
async def test_missing_recipient_is_skipped(email):
    dispatcher = NotificationDispatcher(email=email)

    assert await dispatcher.send_templated(None, "payment_success", {}) is False
    email.send_template.assert_not_awaited()


@pytest.mark.asyncio
async def test_provider_failure_does_not_propagate(email):
    email.send_template.side_effect = ConnectionError("smtp down")
    dispatcher = NotificationDispatcher(email=email)

    assert await dispatcher.send_templated("admin@hospital.test", "payment_success", {}) is False


@pytest.mark.asyncio
async def test_critical_alert_reaches_super_admin(email):
    slack = MagicMock()
    slack.send_alert = AsyncMock(side_effect=RuntimeError("slack down"))
    dispatcher = NotificationDispatcher(email=email, slack=slack, super_admin_email="ops@medora.test")

    await dispatcher.send_alert("Stuck renewal", "order_1 needs review", severity="critical")

    slack.send_alert.assert_awaited_once()
    recipients, template, data = email.send_template.await_args.args
    assert recipients == ["ops@medora.test"]
    assert template == "billing_alert"
    assert data["title"] == "Stuck renewal"


@pytest.mark.asyncio
async def test_warning_alert_skips_email(email):
    dispatcher = NotificationDispatcher(email=email, super_admin_email="ops@medora.test")

    await dispatcher.send_alert("Gateway degraded", "ping failed")

    email.send_template.assert_not_awaited()


class TestSlackAlerts:
    @staticmethod
    def _service(**kwargs):
        client = MagicMock()
        client.chat_postMessage = AsyncMock()
        return SlackService("xoxb-test", "C123", client=client, **kwargs), client

    def test_attachment_escapes_context(self):
        attachment = build_alert_attachment(
            "Renewal requires admin review", "<!channel>", "critical", {"order_id": "<order_1>"}
        )

        assert attachment["color"] == "#f43f5e"
        assert attachment["blocks"][1]["text"]["text"] == "&lt;!channel&gt;"
        assert "&lt;order_1&gt;" in attachment["blocks"][2]["fields"][0]["text"]

    @pytest.mark.asyncio
    async def test_repeated_alert_is_posted_once(self):
        service, client = self._service()

        assert await service.send_alert("Gateway degraded", "ping failed") is True
        assert await service.send_alert("Gateway degraded", "ping failed") is True

        client.chat_postMessage.assert_awaited_once()
        assert client.chat_postMessage.await_args.kwargs["channel"] == "C123"

    @pytest.mark.asyncio
    async def test_rate_limited_post_is_retried(self, monkeypatch):
        monkeypatch.setattr("app.modules.notifications.domain.slack.asyncio.sleep", AsyncMock())
        service, client = self._service()
        response = MagicMock()
        response.get.return_value = "ratelimited"
        response.headers = {"Retry-After": "1"}
        client.chat_postMessage.side_effect = [SlackApiError("ratelimited", response), None]

        assert await service.send_alert("Stuck renewal", "order_1", severity="critical") is True
        assert client.chat_postMessage.await_count == 2
