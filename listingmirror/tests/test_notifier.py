from __future__ import annotations

import json

import httpx
import pytest

from listingmirror.app.services.notifier import AlertEvent, AlertSeverity, LogNotifier, WebhookNotifier


def make_event() -> AlertEvent:
    return AlertEvent(
        kind="stop_loss",
        title="Stop loss triggered",
        message="New payout 950 below stop loss 1000",
        listing_id=7,
        severity=AlertSeverity.WARNING,
        details={"attempted_payout": 950},
    )


@pytest.mark.anyio
async def test_webhook_posts_structured_event():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(204)

    notifier = WebhookNotifier("https://hooks.example/alerts", httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    delivered = await notifier.send_alert(make_event())
    await notifier.close()

    assert delivered is True
    assert received[0]["kind"] == "stop_loss"
    assert received[0]["severity"] == "WARNING"
    assert received[0]["listing_id"] == 7
    assert received[0]["details"] == {"attempted_payout": 950}


@pytest.mark.anyio
async def test_webhook_failure_returns_false():
    notifier = WebhookNotifier(
        "https://hooks.example/alerts",
        httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
    )

    assert await notifier.send_alert(make_event()) is False
    await notifier.close()


@pytest.mark.anyio
async def test_log_notifier(caplog):
    with caplog.at_level("WARNING", logger="listingmirror"):
        assert await LogNotifier().send_alert(make_event()) is True

    assert "Stop loss triggered" in caplog.text
