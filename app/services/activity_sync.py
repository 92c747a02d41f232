from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Iterator

import structlog
from pydantic import ValidationError

from app.core.config import Settings
from app.models.strava import STREAM_COLUMNS
from app.repositories.activity import StravaActivityRepository
from app.repositories.errors import StorageError
from app.schemas.strava import StravaActivityDetail, StravaStream
from app.services.strava_api import StravaAPIClient, StravaAPIError

logger = structlog.get_logger(__name__)


class PartialSyncWarning(Exception):
    """The summary record synced but stream or heart-rate data did not."""


class SyncInterrupted(Exception):
    """Shutdown stopped a sync before its heart-rate points were stored."""


@dataclass(slots=True)
class SyncOutcome:
    activity_id: int
    athlete_id: int
    streams_stored: bool = False
    heart_rate_points: int = 0
    warnings: list[PartialSyncWarning] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)


class ActivitySyncService:
    def __init__(
        self,
        settings: Settings,
        api_client: StravaAPIClient,
        activity_repo: StravaActivityRepository,
    ) -> None:
        self._settings = settings
        self._api = api_client
        self._activities = activity_repo

    def sync_activity(
        self,
        activity_id: int,
        athlete_id: int,
        *,
        stop_event: threading.Event | None = None,
    ) -> SyncOutcome:
        """Fetch one activity and store it with its streams and heart-rate points.

        The activity record is written last, so a local record means the sync
        ran to the end. ``SyncInterrupted`` leaves no record for a new activity
        and the previous heart-rate points for a known one.
        """
        detail = StravaActivityDetail.model_validate(self._api.get_activity(athlete_id, activity_id))
        outcome = SyncOutcome(activity_id=detail.id, athlete_id=athlete_id)

        if detail.has_heartrate and self._settings.activity_fetch_streams:
            try:
                self._sync_streams(outcome, stop_event)
            except PartialSyncWarning as warning:
                outcome.warnings.append(warning)
                logger.warning(
                    "activity_sync_degraded",
                    activity_id=outcome.activity_id,
                    athlete_id=athlete_id,
                    reason=str(warning),
                )

        self._activities.upsert_activity(self._activity_values(detail, athlete_id))
        logger.info("activity_synced", activity_id=detail.id, athlete_id=athlete_id, degraded=outcome.degraded)
        return outcome

    def delete_activity(self, activity_id: int) -> None:
        """Remove the activity, its stream bundle and its heart-rate points.

        Every deletion is attempted. The first failure is re-raised after the
        others have run so a successful return means nothing is left behind.
        """
        failures: list[StorageError] = []
        for label, remove in (
            ("activity", self._activities.delete_activity),
            ("streams", self._activities.delete_streams),
            ("heart_rate_points", self._activities.delete_heart_rate_points),
        ):
            try:
                removed = remove(activity_id)
            except StorageError as exc:
                logger.error("activity_delete_failed", activity_id=activity_id, target=label, error=str(exc))
                failures.append(exc)
            else:
                logger.debug("activity_delete_step", activity_id=activity_id, target=label, removed=removed)

        if failures:
            raise failures[0]
        logger.info("activity_deleted", activity_id=activity_id)

    def _sync_streams(self, outcome: SyncOutcome, stop_event: threading.Event | None) -> None:
        try:
            streams = self._api.get_activity_streams(
                outcome.athlete_id,
                outcome.activity_id,
                keys=self._settings.activity_stream_types,
                key_by_type=True,
            )
        except StravaAPIError as exc:
            raise PartialSyncWarning(f"stream fetch failed: {exc.message}") from exc

        series = _stream_series(streams)
        if not series:
            raise PartialSyncWarning("stream payload empty or unrecognised")

        values: dict[str, Any] = {column: series.get(column) for column in STREAM_COLUMNS}
        values.update(activity_id=outcome.activity_id, athlete_id=outcome.athlete_id)
        try:
            self._activities.upsert_streams(values)
        except StorageError as exc:
            raise PartialSyncWarning(f"stream store failed: {exc.operation}") from exc
        outcome.streams_stored = True

        if self._settings.activity_process_heart_rate:
            outcome.heart_rate_points = self._replace_heart_rate_points(outcome, series, stop_event)

    def _replace_heart_rate_points(
        self,
        outcome: SyncOutcome,
        series: dict[str, list[Any]],
        stop_event: threading.Event | None,
    ) -> int:
        times = series.get("time")
        heart_rates = series.get("heartrate")
        if not times or not heart_rates:
            return 0
        if len(times) != len(heart_rates):
            # Arrays are index-aligned; skip rather than pair samples wrongly.
            logger.warning(
                "heart_rate_stream_misaligned",
                activity_id=outcome.activity_id,
                time_samples=len(times),
                heart_rate_samples=len(heart_rates),
            )
            return 0

        try:
            points = [
                {
                    "activity_id": outcome.activity_id,
                    "athlete_id": outcome.athlete_id,
                    "time_offset": int(offset),
                    "heart_rate": int(rate),
                }
                for offset, rate in zip(times, heart_rates)
            ]
        except (TypeError, ValueError) as exc:
            raise PartialSyncWarning("heart rate stream contains non-numeric samples") from exc

        batch_size = max(1, self._settings.heart_rate_batch_size)

        def batches() -> Iterator[list[dict[str, Any]]]:
            for start in range(0, len(points), batch_size):
                if stop_event is not None and stop_event.is_set():
                    raise SyncInterrupted(f"heart rate insert for activity {outcome.activity_id} stopped by shutdown")
                yield points[start : start + batch_size]

        try:
            return self._activities.replace_heart_rate_points(outcome.activity_id, batches())
        except StorageError as exc:
            raise PartialSyncWarning(f"heart rate store failed: {exc.operation}") from exc

    @staticmethod
    def _activity_values(detail: StravaActivityDetail, athlete_id: int) -> dict[str, Any]:
        start_date_local = detail.start_date_local.replace(tzinfo=None) if detail.start_date_local else None
        summary_polyline = (detail.map or {}).get("summary_polyline")
        return {
            "strava_id": detail.id,
            "athlete_id": athlete_id,
            "name": detail.name,
            "description": detail.description,
            "activity_type": detail.type,
            "sport_type": detail.sport_type,
            "distance": detail.distance,
            "moving_time": detail.moving_time,
            "elapsed_time": detail.elapsed_time,
            "total_elevation_gain": detail.total_elevation_gain,
            "elev_high": detail.elev_high,
            "elev_low": detail.elev_low,
            "average_speed": detail.average_speed,
            "max_speed": detail.max_speed,
            "average_cadence": detail.average_cadence,
            "average_watts": detail.average_watts,
            "kilojoules": detail.kilojoules,
            "calories": detail.calories,
            "start_date": detail.start_date,
            "start_date_local": start_date_local,
            "timezone": detail.timezone,
            "start_latlng": detail.start_latlng,
            "end_latlng": detail.end_latlng,
            "summary_polyline": summary_polyline,
            "gear_id": detail.gear_id,
            "device_name": detail.device_name,
            "trainer": detail.trainer,
            "commute": detail.commute,
            "manual": detail.manual,
            "private": detail.private,
            "has_heartrate": detail.has_heartrate,
            "average_heartrate": detail.average_heartrate,
            "max_heartrate": detail.max_heartrate,
        }


def _stream_series(streams: Any) -> dict[str, list[Any]]:
    if isinstance(streams, dict):
        items = list(streams.items())
    elif isinstance(streams, list):
        items = [(stream.get("type"), stream) for stream in streams if isinstance(stream, dict)]
    else:
        return {}

    series: dict[str, list[Any]] = {}
    for key, raw in items:
        if key not in STREAM_COLUMNS:
            continue
        try:
            stream = StravaStream.model_validate(raw)
        except ValidationError:
            logger.warning("activity_stream_malformed", stream_type=key)
            continue
        series[key] = stream.data
    return series
