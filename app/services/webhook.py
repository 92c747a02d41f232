"""Webhook intake: subscription handshake, payload validation and enqueueing."""

from __future__ import annotations

import secrets
from typing import Any, Callable, ContextManager

import structlog
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from app.repositories.webhook import WebhookEventRepository
from app.schemas.strava import ActivityWebhookEvent, AthleteWebhookEvent, StravaWebhookEvent
from app.services.task_dispatcher import SyncTaskDispatcher

logger = structlog.get_logger(__name__)

SUBSCRIBE_MODE = "subscribe"

_event_adapter: TypeAdapter[ActivityWebhookEvent | AthleteWebhookEvent] = TypeAdapter(StravaWebhookEvent)


class WebhookValidationError(Exception):
    """Malformed handshake or event payload; never enqueued."""


class SubscriptionVerificationError(Exception):
    """Handshake verify token did not match the configured secret."""


def verify_subscription(
    mode: str | None,
    challenge: str | None,
    verify_token: str | None,
    *,
    expected_token: str,
) -> str:
    if not mode or not challenge or not verify_token:
        raise WebhookValidationError("Missing hub.mode, hub.challenge or hub.verify_token")
    if mode != SUBSCRIBE_MODE:
        raise WebhookValidationError(f"Unsupported hub.mode {mode!r}")
    if not secrets.compare_digest(verify_token.encode(), expected_token.encode()):
        raise SubscriptionVerificationError("Invalid verification token")
    return challenge


def parse_webhook_event(payload: Any) -> ActivityWebhookEvent | AthleteWebhookEvent:
    try:
        return _event_adapter.validate_python(payload)
    except ValidationError as exc:
        raise WebhookValidationError(f"Invalid webhook event: {exc.error_count()} error(s)") from exc


class WebhookReceiver:
    """Validates an inbound payload, persists it and hands it to the dispatcher.

    Runs on a worker thread and opens its own session, which may outlive the
    request that delivered the payload.
    """

    def __init__(
        self,
        session_scope: Callable[[], ContextManager[Session]],
        dispatcher: SyncTaskDispatcher,
    ) -> None:
        self._session_scope = session_scope
        self._dispatcher = dispatcher

    def receive(self, payload: Any) -> int:
        event = parse_webhook_event(payload)
        logger.info(
            "webhook_event_received",
            object_type=event.object_type,
            object_id=event.object_id,
            aspect_type=event.aspect_type,
            owner_id=event.owner_id,
            updates=event.updates,
        )

        with self._session_scope() as session:
            event_id = WebhookEventRepository(session).enqueue(event)

        self._dispatcher.dispatch_event(event_id)
        return event_id
