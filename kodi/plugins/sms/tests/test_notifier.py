from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from kodi.plugins.sms.services.notifier import SmsNotifier
from kodi.plugins.sms.services.providers.base import BaseProvider
from kodi.plugins.sms.services.providers.textsms import TextSmsProvider
from kodi.utils.exceptions import PersistenceError


def _mock_provider(response=None, side_effect=None):
    provider = MagicMock(spec=BaseProvider)
    provider.name = "mock"
    provider.configured = True
    provider.send = AsyncMock(return_value=response or {}, side_effect=side_effect)
    provider.message_id.return_value = "m-1"
    return provider


def _sent_count(registry, kind, status):
    return registry.get_sample_value("sms_notifications_total", {"kind": kind, "status": status}) or 0


class TestSmsNotifier:
    @pytest.mark.asyncio
    async def test_success_is_logged(self, store, metrics, registry):
        provider = _mock_provider()
        notifier = SmsNotifier(provider, store, metrics=metrics)

        result = await notifier.send("0712345678", "hello", kind="welcome", tenant_id="t-1")

        assert result.success
        assert result.message_id == "m-1"
        provider.send.assert_awaited_once_with({"to": "0712345678", "message": "hello"})
        assert store.sms_logs[0]["status"] == "success"
        assert store.sms_logs[0]["tenantId"] == "t-1"
        assert store.sms_logs[0]["messageId"] == "m-1"
        assert _sent_count(registry, "welcome", "sent") == 1

    @pytest.mark.asyncio
    async def test_connection_error_is_reported(self, store, metrics, registry):
        provider = _mock_provider(side_effect=httpx.ConnectError("unreachable"))
        notifier = SmsNotifier(provider, store, metrics=metrics)

        result = await notifier.send("0712345678", "hello")

        assert not result.success
        assert result.error == "unreachable"
        assert store.sms_logs[0]["status"] == "failed"
        assert _sent_count(registry, "generic", "failed") == 1

    @pytest.mark.asyncio
    async def test_gateway_http_error(self, store, metrics):
        provider = TextSmsProvider(
            api_key="k",
            partner_id="p",
            sender_id="s",
            base_url="https://sms.example.test/api/services/sendsms/",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="gateway down")),
        )
        result = await SmsNotifier(provider, store, metrics=metrics).send("0712345678", "hello")

        assert not result.success
        assert result.error == "HTTP 500: gateway down"

    @pytest.mark.asyncio
    async def test_log_write_failure_does_not_fail_send(self, store, metrics):
        store.log_notification = AsyncMock(side_effect=PersistenceError("mongo down"))
        result = await SmsNotifier(_mock_provider(), store, metrics=metrics).send("0712345678", "hello")
        assert result.success

    @pytest.mark.asyncio
    async def test_unconfigured_provider_not_called(self, store, metrics):
        provider = _mock_provider()
        provider.configured = False

        result = await SmsNotifier(provider, store, metrics=metrics).send("0712345678", "hello")

        assert not result.success
        assert "not configured" in result.error
        provider.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_phone(self, store, metrics):
        provider = _mock_provider()
        result = await SmsNotifier(provider, store, metrics=metrics).send("", "hello")

        assert not result.success
        assert result.error == "No phone number"
        provider.send.assert_not_awaited()
        assert store.sms_logs[0]["to"] == ""
