from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog

from app.core.config import Settings
from app.repositories.activity import StravaActivityRepository
from app.repositories.strava import StravaCredentialRepository
from app.services.activity_sync import ActivitySyncService, SyncInterrupted
from app.services.strava_api import StravaAPIClient

logger = structlog.get_logger(__name__)

STRAVA_MAX_PAGE_SIZE = 200


@dataclass(slots=True)
class ReconciliationReport:
    accounts_checked: int = 0
    accounts_failed: list[int] = field(default_factory=list)
    synced_activity_ids: list[int] = field(default_factory=list)
    failed_activity_ids: list[int] = field(default_factory=list)
    interrupted: bool = False


class PollingReconciler:
    """Catch-up sweep for activities the webhook channel never delivered.

    Only the most recent activities of each linked athlete are compared, and
    only for presence: remote edits and deletions are not detected here.
    """

    def __init__(
        self,
        settings: Settings,
        credential_repo: StravaCredentialRepository,
        activity_repo: StravaActivityRepository,
        api_client: StravaAPIClient,
        sync_service: ActivitySyncService,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._credentials = credential_repo
        self._activities = activity_repo
        self._api = api_client
        self._sync = sync_service
        self._sleep = sleep

    def run_sweep(self, stop_event: threading.Event | None = None) -> ReconciliationReport:
        report = ReconciliationReport()
        if not self._settings.polling_enabled:
            logger.info("reconciliation_disabled")
            return report

        athlete_ids = self._credentials.list_linked_athlete_ids()
        logger.info("reconciliation_started", athletes=len(athlete_ids))

        for athlete_id in athlete_ids:
            if stop_event is not None and stop_event.is_set():
                report.interrupted = True
                logger.info("reconciliation_interrupted", checked=report.accounts_checked)
                break
            report.accounts_checked += 1
            try:
                self._reconcile_account(athlete_id, report, stop_event)
            except Exception as exc:
                report.accounts_failed.append(athlete_id)
                logger.error("reconciliation_account_failed", athlete_id=athlete_id, error=str(exc))

        logger.info(
            "reconciliation_finished",
            checked=report.accounts_checked,
            failed=len(report.accounts_failed),
            synced=len(report.synced_activity_ids),
        )
        return report

    def reconcile_account(self, athlete_id: int) -> ReconciliationReport:
        report = ReconciliationReport(accounts_checked=1)
        self._reconcile_account(athlete_id, report, None)
        return report

    def backfill_account(self, athlete_id: int, stop_event: threading.Event | None = None) -> ReconciliationReport:
        """Initial sync after an athlete connects: recent history, missing only."""
        report = ReconciliationReport(accounts_checked=1)
        after = int((datetime.now(timezone.utc) - timedelta(days=self._settings.initial_sync_days)).timestamp())
        limit = self._settings.initial_sync_max_activities
        per_page = min(limit, STRAVA_MAX_PAGE_SIZE)

        remote: list[dict[str, Any]] = []
        page = 1
        while len(remote) < limit:
            batch = self._api.list_activities(athlete_id, page=page, per_page=per_page, after=after)
            remote.extend(batch)
            if len(batch) < per_page:
                break
            page += 1
        remote = remote[:limit]

        missing = self._missing_ids(remote)
        logger.info("backfill_started", athlete_id=athlete_id, remote=len(remote), missing=len(missing))

        batch_size = max(1, self._settings.initial_sync_batch_size)
        for start in range(0, len(missing), batch_size):
            if stop_event is not None and stop_event.is_set():
                report.interrupted = True
                break
            if start:
                self._sleep(self._settings.initial_sync_batch_delay_seconds)
            for activity_id in missing[start : start + batch_size]:
                self._sync_one(athlete_id, activity_id, report, stop_event)

        logger.info("backfill_finished", athlete_id=athlete_id, synced=len(report.synced_activity_ids))
        return report

    def _reconcile_account(
        self,
        athlete_id: int,
        report: ReconciliationReport,
        stop_event: threading.Event | None,
    ) -> None:
        remote = self._api.list_activities(athlete_id, per_page=self._settings.polling_activity_limit)
        missing = self._missing_ids(remote)
        logger.info("reconciliation_account", athlete_id=athlete_id, remote=len(remote), missing=len(missing))
        for activity_id in missing:
            if stop_event is not None and stop_event.is_set():
                report.interrupted = True
                break
            self._sync_one(athlete_id, activity_id, report, stop_event)

    def _missing_ids(self, remote: list[dict[str, Any]]) -> list[int]:
        remote_ids = [item["id"] for item in remote if isinstance(item, dict) and isinstance(item.get("id"), int)]
        existing = self._activities.existing_activity_ids(remote_ids)
        return [activity_id for activity_id in remote_ids if activity_id not in existing]

    def _sync_one(
        self,
        athlete_id: int,
        activity_id: int,
        report: ReconciliationReport,
        stop_event: threading.Event | None,
    ) -> None:
        try:
            self._sync.sync_activity(activity_id, athlete_id, stop_event=stop_event)
        except SyncInterrupted:
            report.interrupted = True
            logger.info("reconciliation_activity_interrupted", athlete_id=athlete_id, activity_id=activity_id)
            return
        except Exception as exc:
            report.failed_activity_ids.append(activity_id)
            logger.warning(
                "reconciliation_activity_failed",
                athlete_id=athlete_id,
                activity_id=activity_id,
                error=str(exc),
            )
            return
        report.synced_activity_ids.append(activity_id)
