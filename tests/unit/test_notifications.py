"""Unit tests for the webhook notifier."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from treasury_engine.config import WebhookConfig
from treasury_engine.notifications import WebhookNotifier

_SESSION = "treasury_engine.notifications.webhook.aiohttp.ClientSession"
_CONNECTOR = "treasury_engine.notifications.webhook.aiohttp.TCPConnector"


@pytest.fixture()
def notifier() -> WebhookNotifier:
    return WebhookNotifier(WebhookConfig(enabled=True, url="https://hooks.example.com/abc"))


@pytest.fixture()
def notifier_unconfigured() -> WebhookNotifier:
    return WebhookNotifier(WebhookConfig(enabled=True, url=""))


def _mock_session(status: int) -> AsyncMock:
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.__aenter__ = AsyncMock(return_value=mock_response)
    mock_response.__aexit__ = AsyncMock(return_value=None)

    mock_session = AsyncMock()
    mock_session.post = MagicMock(return_value=mock_response)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=None)
    return mock_session


class TestWebhookNotifier:
    @pytest.mark.asyncio
    async def test_send_alert_success(self, notifier: WebhookNotifier) -> None:
        mock_session = _mock_session(200)

        with patch(_SESSION, return_value=mock_session):
            with patch(_CONNECTOR):
                result = await notifier.send_alert("loop halted", subject="⚠️ Treasury action not completed")

        assert result is True
        payload = mock_session.post.call_args.kwargs["json"]
        assert payload["text"].startswith("⚠️ Treasury action not completed\n\n")
        assert "loop halted" in payload["text"]
        assert payload["level"] == "alert"

    @pytest.mark.asyncio
    async def test_send_alert_failure(self, notifier: WebhookNotifier) -> None:
        with patch(_SESSION, return_value=_mock_session(403)):
            with patch(_CONNECTOR):
                result = await notifier.send_alert("test alert")

        assert result is False

    @pytest.mark.asyncio
    async def test_send_log_levels(self, notifier: WebhookNotifier) -> None:
        mock_session = _mock_session(204)

        with patch(_SESSION, return_value=mock_session):
            with patch(_CONNECTOR):
                assert await notifier.send_log("cycle done") is True
                assert mock_session.post.call_args.kwargs["json"]["level"] == "info"
                assert await notifier.send_log("closed externally", silent=False) is True
                assert mock_session.post.call_args.kwargs["json"]["level"] == "notice"

    @pytest.mark.asyncio
    async def test_unconfigured_returns_false(self, notifier_unconfigured: WebhookNotifier) -> None:
        with patch(_SESSION) as session_cls:
            result = await notifier_unconfigured.send_alert("test")

        assert result is False
        session_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_client_error_returns_false(self, notifier: WebhookNotifier) -> None:
        mock_session = _mock_session(200)
        mock_session.post = MagicMock(side_effect=aiohttp.ClientError("connection reset"))

        with patch(_SESSION, return_value=mock_session):
            with patch(_CONNECTOR):
                result = await notifier.send_log("test")

        assert result is False

    @pytest.mark.asyncio
    async def test_timeout_returns_false(self, notifier: WebhookNotifier) -> None:
        mock_session = _mock_session(200)
        mock_session.post = MagicMock(side_effect=asyncio.TimeoutError())

        with patch(_SESSION, return_value=mock_session):
            with patch(_CONNECTOR):
                result = await notifier.send_alert("test")

        assert result is False
