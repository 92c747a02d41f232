from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.retry import RetryPolicy
from app.models.webhook import WebhookEvent, WebhookEventStatus
from app.repositories.errors import storage_errors
from app.schemas.strava import ActivityWebhookEvent, AthleteWebhookEvent


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEventRepository:
    """Status-stamped table of accepted webhook notifications.

    Ordering is not guaranteed; every transition out of ``pending`` goes
    through :meth:`claim`, a conditional update, so concurrent workers never
    process the same event twice in one pass.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def enqueue(self, event: ActivityWebhookEvent | AthleteWebhookEvent) -> int:
        record = WebhookEvent(
            object_type=event.object_type,
            object_id=event.object_id,
            aspect_type=event.aspect_type,
            owner_id=event.owner_id,
            subscription_id=event.subscription_id,
            event_time=event.event_time,
            updates=dict(event.updates),
            status=WebhookEventStatus.PENDING.value,
            attempts=0,
        )
        with storage_errors(self._session, "enqueue webhook event"):
            self._session.add(record)
            self._session.commit()
            self._session.refresh(record)
        return record.id

    def get(self, event_id: int) -> WebhookEvent | None:
        statement = (
            select(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
        with storage_errors(self._session, "load webhook event"):
            return self._session.scalar(statement)

    def claim(self, event_id: int) -> WebhookEvent | None:
        statement = (
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .where(WebhookEvent.status == WebhookEventStatus.PENDING.value)
            .values(status=WebhookEventStatus.PROCESSING.value, claimed_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        with storage_errors(self._session, "claim webhook event"):
            result = self._session.execute(statement)
            self._session.commit()
        if result.rowcount != 1:
            return None
        return self.get(event_id)

    def complete(self, event_id: int) -> None:
        self._set_status(
            event_id,
            operation="complete webhook event",
            status=WebhookEventStatus.COMPLETED.value,
            processed_at=_utcnow(),
            error_message=None,
        )

    def fail(self, event_id: int, *, attempts: int, error: str, policy: RetryPolicy) -> WebhookEventStatus:
        status = WebhookEventStatus.PENDING if policy.allows(attempts) else WebhookEventStatus.FAILED
        values: dict[str, object] = {
            "status": status.value,
            "attempts": attempts,
            "error_message": error,
        }
        if status is WebhookEventStatus.FAILED:
            values["processed_at"] = _utcnow()
        self._set_status(event_id, operation="fail webhook event", **values)
        return status

    def release(self, event_id: int) -> None:
        """Hand a claimed event back to ``pending`` without spending an attempt."""
        self._set_status(
            event_id,
            operation="release webhook event",
            status=WebhookEventStatus.PENDING.value,
            claimed_at=None,
        )

    def list_pending_ids(self, limit: int = 50) -> list[int]:
        statement = (
            select(WebhookEvent.id)
            .where(WebhookEvent.status == WebhookEventStatus.PENDING.value)
            .order_by(WebhookEvent.id)
            .limit(limit)
        )
        with storage_errors(self._session, "list pending webhook events"):
            return list(self._session.scalars(statement))

    def list_failed(self, limit: int = 50) -> list[WebhookEvent]:
        statement = (
            select(WebhookEvent)
            .where(WebhookEvent.status == WebhookEventStatus.FAILED.value)
            .order_by(WebhookEvent.id.desc())
            .limit(limit)
        )
        with storage_errors(self._session, "list failed webhook events"):
            return list(self._session.scalars(statement))

    def release_stale(self, older_than: datetime) -> int:
        """Return events left in ``processing`` by a crashed worker to ``pending``."""
        statement = (
            update(WebhookEvent)
            .where(WebhookEvent.status == WebhookEventStatus.PROCESSING.value)
            .where(WebhookEvent.claimed_at < older_than)
            .values(status=WebhookEventStatus.PENDING.value, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        with storage_errors(self._session, "release stale webhook events"):
            result = self._session.execute(statement)
            self._session.commit()
        return result.rowcount or 0

    def requeue(self, event_id: int) -> bool:
        statement = (
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .where(WebhookEvent.status == WebhookEventStatus.FAILED.value)
            .values(status=WebhookEventStatus.PENDING.value, attempts=0, processed_at=None)
            .execution_options(synchronize_session=False)
        )
        with storage_errors(self._session, "requeue webhook event"):
            result = self._session.execute(statement)
            self._session.commit()
        return result.rowcount == 1

    def _set_status(self, event_id: int, *, operation: str, **values: object) -> None:
        statement = (
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with storage_errors(self._session, operation):
            self._session.execute(statement)
            self._session.commit()
