"""
Notification Events Module
==========================

Produces well-formed feed events for an external notification service.
Rendering and delivery belong to that service; emit failures are logged
and never fail a feed run.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

import httpx

from price_harvester.core.enums import EventKind, FeedErrorCode
from price_harvester.core.schema import Feed, utc_now

logger = logging.getLogger(__name__)


@dataclass
class FeedEvent:
    """An event about a feed or its merchant."""

    kind: EventKind
    feed_id: UUID
    retailer_id: UUID | None = None
    merchant_id: UUID | None = None
    run_id: UUID | None = None
    error_code: FeedErrorCode | str | None = None
    message: str | None = None
    occurred_at: datetime = field(default_factory=utc_now)
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_feed(
        cls,
        kind: EventKind,
        feed: Feed,
        run_id: UUID | None = None,
        error_code: FeedErrorCode | str | None = None,
        message: str | None = None,
        **details: Any,
    ) -> FeedEvent:
        """Build an event carrying the feed's retailer and merchant."""
        return cls(
            kind=kind,
            feed_id=feed.id,
            retailer_id=feed.retailer_id,
            merchant_id=feed.merchant_id,
            run_id=run_id,
            error_code=error_code,
            message=message,
            details=details,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        code = self.error_code.value if isinstance(self.error_code, FeedErrorCode) else self.error_code
        return {
            "kind": self.kind.value,
            "feed_id": str(self.feed_id),
            "retailer_id": str(self.retailer_id) if self.retailer_id else None,
            "merchant_id": str(self.merchant_id) if self.merchant_id else None,
            "run_id": str(self.run_id) if self.run_id else None,
            "error_code": code,
            "message": self.message,
            "occurred_at": self.occurred_at.isoformat() + "Z",
            "details": self.details,
        }


class NotificationEmitter(ABC):
    """Abstract sink for feed events."""

    @abstractmethod
    async def emit(self, event: FeedEvent) -> None:
        """
        Deliver one event.

        Args:
            event: Event to deliver
        """
        pass

    async def close(self) -> None:
        """Release any resources held by the emitter."""


class LoggingEmitter(NotificationEmitter):
    """Writes events to the log."""

    async def emit(self, event: FeedEvent) -> None:
        level = logging.INFO if event.kind == EventKind.FEED_RECOVERED else logging.WARNING
        logger.log(
            level,
            f"Feed event {event.kind.value}: feed={event.feed_id} "
            f"merchant={event.merchant_id} code={event.to_dict()['error_code']} "
            f"message={event.message}",
        )


class WebhookEmitter(NotificationEmitter):
    """POSTs events as JSON to a webhook URL."""

    def __init__(
        self, url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None
    ) -> None:
        """
        Initialize the emitter.

        Args:
            url: Webhook endpoint
            timeout: Request timeout in seconds
            client: Optional shared client (tests inject one)
        """
        self.url = url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def emit(self, event: FeedEvent) -> None:
        client = await self._get_client()
        response = await client.post(self.url, json=event.to_dict())
        response.raise_for_status()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class CompositeEmitter(NotificationEmitter):
    """
    Fans events out to several emitters.

    A failing emitter is logged and does not stop the others.
    """

    def __init__(self, emitters: list[NotificationEmitter]) -> None:
        self.emitters = emitters

    async def emit(self, event: FeedEvent) -> None:
        for emitter in self.emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.warning(
                    f"{type(emitter).__name__} failed to emit {event.kind.value} "
                    f"for feed {event.feed_id}: {e}"
                )

    async def close(self) -> None:
        for emitter in self.emitters:
            await emitter.close()


def build_emitter(webhook_url: str | None = None, timeout: float = 5.0) -> CompositeEmitter:
    """
    Build the default emitter chain: log always, webhook when configured.

    Args:
        webhook_url: Optional webhook endpoint
        timeout: Webhook timeout in seconds

    Returns:
        CompositeEmitter
    """
    emitters: list[NotificationEmitter] = [LoggingEmitter()]
    if webhook_url:
        emitters.append(WebhookEmitter(webhook_url, timeout=timeout))
    return CompositeEmitter(emitters)
