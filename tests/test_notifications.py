"""Tests for feed event emitters."""

import json
from datetime import datetime
from uuid import uuid4

import httpx
import pytest
import respx

from price_harvester.core.enums import EventKind, FeedErrorCode
from price_harvester.core.schema import Feed
from price_harvester.ingestion.notifications import (
    CompositeEmitter,
    FeedEvent,
    LoggingEmitter,
    NotificationEmitter,
    WebhookEmitter,
    build_emitter,
)

WEBHOOK_URL = "https://hooks.example.com/harvester"


def _event(**overrides) -> FeedEvent:
    feed = Feed(name="acme-daily", retailer_id=uuid4(), merchant_id=uuid4())
    fields = {"run_id": uuid4(), "error_code": FeedErrorCode.FILE_NOT_FOUND, "message": "gone"}
    fields.update(overrides)
    return FeedEvent.for_feed(EventKind.FEED_FAILED, feed, consecutive_failures=2, **fields)


class BrokenEmitter(NotificationEmitter):
    async def emit(self, event: FeedEvent) -> None:
        raise RuntimeError("sink down")


class RecordingEmitter(NotificationEmitter):
    def __init__(self) -> None:
        self.events: list[FeedEvent] = []

    async def emit(self, event: FeedEvent) -> None:
        self.events.append(event)


class TestFeedEvent:
    """Tests for event payloads."""

    def test_to_dict(self) -> None:
        """Events serialize ids as strings and times as UTC ISO-8601."""
        event = _event()
        event.occurred_at = datetime(2025, 3, 1, 12, 0, 0)

        payload = event.to_dict()

        assert payload["kind"] == "feed_failed"
        assert payload["error_code"] == FeedErrorCode.FILE_NOT_FOUND.value
        assert payload["feed_id"] == str(event.feed_id)
        assert payload["merchant_id"] == str(event.merchant_id)
        assert payload["occurred_at"] == "2025-03-01T12:00:00Z"
        assert payload["details"] == {"consecutive_failures": 2}
        json.dumps(payload)


class TestEmitters:
    """Tests for emitter implementations."""

    @pytest.mark.asyncio
    async def test_webhook_posts_json(self) -> None:
        """The webhook receives the event payload."""
        emitter = WebhookEmitter(WEBHOOK_URL)
        event = _event()

        async with respx.mock(assert_all_called=True) as router:
            route = router.post(WEBHOOK_URL).mock(return_value=httpx.Response(204))
            await emitter.emit(event)
        await emitter.close()

        body = json.loads(route.calls.last.request.content)
        assert body["kind"] == "feed_failed"
        assert body["run_id"] == str(event.run_id)

    @pytest.mark.asyncio
    async def test_webhook_raises_on_error_status(self) -> None:
        """Delivery failures surface to the caller."""
        emitter = WebhookEmitter(WEBHOOK_URL)

        async with respx.mock(assert_all_called=True) as router:
            router.post(WEBHOOK_URL).mock(return_value=httpx.Response(500))
            with pytest.raises(httpx.HTTPStatusError):
                await emitter.emit(_event())
        await emitter.close()

    @pytest.mark.asyncio
    async def test_composite_isolates_failures(self) -> None:
        """One broken sink does not stop the others."""
        recorder = RecordingEmitter()
        composite = CompositeEmitter([BrokenEmitter(), LoggingEmitter(), recorder])

        await composite.emit(_event())

        assert [e.kind for e in recorder.events] == [EventKind.FEED_FAILED]

    def test_build_emitter(self) -> None:
        """The webhook is only added when configured."""
        assert [type(e) for e in build_emitter().emitters] == [LoggingEmitter]
        assert [type(e) for e in build_emitter(WEBHOOK_URL).emitters] == [LoggingEmitter, WebhookEmitter]
