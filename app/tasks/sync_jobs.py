from __future__ import annotations

import threading
from typing import Any

from app.core.config import get_settings
from app.db.session import session_scope
from app.services.sync_factory import create_event_processor, create_reconciler


def process_webhook_event_job(event_id: int) -> str | None:
    settings = get_settings()
    with session_scope() as session:
        status = create_event_processor(session, settings).process(event_id)
        return status.value if status is not None else None


def process_pending_events_job(stop_event: threading.Event | None = None) -> dict[str, int]:
    settings = get_settings()
    with session_scope() as session:
        processor = create_event_processor(session, settings)
        return processor.process_pending(settings.event_processing_batch_size, stop_event=stop_event)


def reconcile_job(stop_event: threading.Event | None = None) -> dict[str, Any]:
    settings = get_settings()
    with session_scope() as session:
        report = create_reconciler(session, settings).run_sweep(stop_event)
        return {
            "accounts_checked": report.accounts_checked,
            "accounts_failed": report.accounts_failed,
            "synced_activity_ids": report.synced_activity_ids,
            "interrupted": report.interrupted,
        }


def backfill_athlete_job(athlete_id: int) -> dict[str, Any]:
    settings = get_settings()
    with session_scope() as session:
        report = create_reconciler(session, settings).backfill_account(athlete_id)
        return {
            "athlete_id": athlete_id,
            "synced_activity_ids": report.synced_activity_ids,
            "failed_activity_ids": report.failed_activity_ids,
        }
