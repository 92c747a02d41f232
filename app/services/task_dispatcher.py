from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import rq
import structlog
from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.db.session import session_scope
from app.services.strava_api import StravaAPIClient
from app.services.sync_factory import create_event_processor, create_reconciler

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class TaskResult:
    status: str
    job_id: str | None = None


class SyncTaskDispatcher:
    """Runs sync work on the rq queue when one is configured, inline otherwise."""

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: sessionmaker[Session] | None = None,
        api_client_factory: Callable[[Session], StravaAPIClient] | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._api_client_factory = api_client_factory
        self._queue = self._init_queue(settings)

    def _init_queue(self, settings: Settings) -> rq.Queue | None:
        if settings.task_queue_force_inline or settings.task_queue_url is None:
            return None
        try:
            connection = Redis.from_url(settings.task_queue_url)
        except (RedisError, ValueError) as exc:
            logger.warning("task_queue_unavailable", error=str(exc))
            return None
        return rq.Queue(
            settings.task_queue_name,
            connection=connection,
            default_timeout=settings.task_queue_job_timeout_seconds,
        )

    @property
    def supports_queue(self) -> bool:
        return self._queue is not None

    def dispatch_event(self, event_id: int) -> TaskResult:
        if self._queue is None:
            with session_scope(self._session_factory) as session:
                processor = create_event_processor(session, self._settings, api_client=self._api_client(session))
                status = processor.process(event_id)
            return TaskResult(status=status.value if status is not None else "skipped")

        job = self._queue.enqueue(
            "app.tasks.sync_jobs.process_webhook_event_job",
            event_id,
            job_timeout=self._settings.task_queue_job_timeout_seconds,
        )
        logger.info("webhook_event_queued", event_id=event_id, job_id=job.id)
        return TaskResult(status="queued", job_id=job.id)

    def dispatch_backfill(self, athlete_id: int) -> TaskResult:
        if self._queue is None:
            with session_scope(self._session_factory) as session:
                reconciler = create_reconciler(session, self._settings, api_client=self._api_client(session))
                report = reconciler.backfill_account(athlete_id)
            logger.info("backfill_completed", athlete_id=athlete_id, synced=len(report.synced_activity_ids))
            return TaskResult(status="completed")

        job = self._queue.enqueue(
            "app.tasks.sync_jobs.backfill_athlete_job",
            athlete_id,
            job_timeout=self._settings.task_queue_job_timeout_seconds,
        )
        logger.info("backfill_queued", athlete_id=athlete_id, job_id=job.id)
        return TaskResult(status="queued", job_id=job.id)

    def _api_client(self, session: Session) -> StravaAPIClient | None:
        if self._api_client_factory is None:
            return None
        return self._api_client_factory(session)
