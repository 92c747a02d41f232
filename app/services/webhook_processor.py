from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import structlog

from app.core.retry import RetryPolicy
from app.models.webhook import WebhookEvent, WebhookEventStatus
from app.repositories.strava import StravaCredentialRepository
from app.repositories.webhook import WebhookEventRepository
from app.services.activity_sync import ActivitySyncService, SyncInterrupted

logger = structlog.get_logger(__name__)


class WebhookEventProcessor:
    """Moves one queued event through pending -> processing -> outcome.

    Failures never sleep here: a failed event goes back to ``pending`` and is
    picked up by the next processing pass until the retry policy gives up.
    """

    def __init__(
        self,
        event_repo: WebhookEventRepository,
        sync_service: ActivitySyncService,
        credential_repo: StravaCredentialRepository,
        retry_policy: RetryPolicy,
        *,
        stale_after: timedelta = timedelta(minutes=15),
    ) -> None:
        self._events = event_repo
        self._sync = sync_service
        self._credentials = credential_repo
        self._retry = retry_policy
        self._stale_after = stale_after

    def process(self, event_id: int, *, stop_event: threading.Event | None = None) -> WebhookEventStatus | None:
        event = self._events.claim(event_id)
        if event is None:
            logger.info("webhook_event_not_claimable", event_id=event_id)
            return None

        log = logger.bind(
            event_id=event_id,
            object_type=event.object_type,
            object_id=event.object_id,
            aspect_type=event.aspect_type,
        )
        try:
            self._dispatch(event, stop_event)
        except SyncInterrupted:
            self._events.release(event_id)
            log.info("webhook_event_released", reason="shutdown")
            return WebhookEventStatus.PENDING
        except Exception as exc:
            attempts = event.attempts + 1
            status = self._events.fail(event_id, attempts=attempts, error=str(exc) or type(exc).__name__, policy=self._retry)
            if status is WebhookEventStatus.FAILED:
                log.error("webhook_event_failed", attempts=attempts, error=str(exc))
            else:
                log.warning("webhook_event_retry_scheduled", attempts=attempts, error=str(exc))
            return status

        self._events.complete(event_id)
        log.info("webhook_event_completed")
        return WebhookEventStatus.COMPLETED

    def process_pending(self, limit: int = 50, *, stop_event: threading.Event | None = None) -> dict[str, int]:
        released = self._events.release_stale(datetime.now(timezone.utc) - self._stale_after)
        if released:
            logger.warning("webhook_events_released", count=released)

        counts: dict[str, int] = {}
        for event_id in self._events.list_pending_ids(limit):
            if stop_event is not None and stop_event.is_set():
                logger.info("webhook_event_pass_interrupted")
                break
            status = self.process(event_id, stop_event=stop_event)
            key = status.value if status is not None else "skipped"
            counts[key] = counts.get(key, 0) + 1
        return counts

    def _dispatch(self, event: WebhookEvent, stop_event: threading.Event | None = None) -> None:
        if event.object_type == "activity":
            if event.aspect_type in ("create", "update"):
                self._sync.sync_activity(event.object_id, event.owner_id, stop_event=stop_event)
            elif event.aspect_type == "delete":
                self._sync.delete_activity(event.object_id)
            return

        if event.object_type == "athlete" and event.aspect_type == "update":
            authorized = str((event.updates or {}).get("authorized", "")).lower()
            if authorized == "false":
                self._handle_deauthorization(event.object_id)
                return
        logger.debug("webhook_event_ignored", event_id=event.id, object_type=event.object_type)

    def _handle_deauthorization(self, athlete_id: int) -> None:
        found = self._credentials.deauthorize(athlete_id)
        logger.info("athlete_deauthorized", athlete_id=athlete_id, known_athlete=found)
