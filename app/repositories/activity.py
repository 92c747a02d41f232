from __future__ import annotations

from typing import Any, Iterable, Sequence

from sqlalchemy import delete, insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.models.base import Base
from app.models.strava import StravaActivity, StravaActivityStream, StravaHeartRatePoint
from app.repositories.errors import storage_errors

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class StravaActivityRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_activity(self, strava_id: int) -> StravaActivity | None:
        statement = (
            select(StravaActivity)
            .where(StravaActivity.strava_id == strava_id)
            .execution_options(populate_existing=True)
        )
        with storage_errors(self._session, "load activity"):
            return self._session.scalar(statement)

    def activity_exists(self, strava_id: int) -> bool:
        statement = select(StravaActivity.id).where(StravaActivity.strava_id == strava_id)
        with storage_errors(self._session, "check activity"):
            return self._session.scalar(statement) is not None

    def existing_activity_ids(self, strava_ids: Iterable[int]) -> set[int]:
        ids = list(strava_ids)
        if not ids:
            return set()
        statement = select(StravaActivity.strava_id).where(StravaActivity.strava_id.in_(ids))
        with storage_errors(self._session, "check activities"):
            return set(self._session.scalars(statement))

    def get_streams(self, activity_id: int) -> StravaActivityStream | None:
        statement = (
            select(StravaActivityStream)
            .where(StravaActivityStream.activity_id == activity_id)
            .execution_options(populate_existing=True)
        )
        with storage_errors(self._session, "load streams"):
            return self._session.scalar(statement)

    def list_heart_rate_points(self, activity_id: int) -> list[StravaHeartRatePoint]:
        statement = (
            select(StravaHeartRatePoint)
            .where(StravaHeartRatePoint.activity_id == activity_id)
            .order_by(StravaHeartRatePoint.time_offset)
        )
        with storage_errors(self._session, "load heart rate points"):
            return list(self._session.scalars(statement))

    def upsert_activity(self, values: dict[str, Any]) -> None:
        self._upsert(StravaActivity, values, key="strava_id", operation="upsert activity")

    def upsert_streams(self, values: dict[str, Any]) -> None:
        self._upsert(StravaActivityStream, values, key="activity_id", operation="upsert streams")

    def delete_heart_rate_points(self, activity_id: int) -> int:
        statement = delete(StravaHeartRatePoint).where(StravaHeartRatePoint.activity_id == activity_id)
        with storage_errors(self._session, "delete heart rate points"):
            result = self._session.execute(statement)
            self._session.commit()
        return result.rowcount or 0

    def replace_heart_rate_points(self, activity_id: int, batches: Iterable[Sequence[dict[str, Any]]]) -> int:
        """Swap the stored points of an activity for ``batches`` in one transaction.

        Nothing is committed until the last batch is written. An error raised
        while writing, or while producing a batch, rolls the delete back.
        """
        inserted = 0
        statement = delete(StravaHeartRatePoint).where(StravaHeartRatePoint.activity_id == activity_id)
        with storage_errors(self._session, "replace heart rate points"):
            try:
                self._session.execute(statement)
                for batch in batches:
                    self._insert_heart_rate_batch(batch)
                    inserted += len(batch)
                self._session.commit()
            except Exception:
                self._session.rollback()
                raise
        return inserted

    def _insert_heart_rate_batch(self, points: Sequence[dict[str, Any]]) -> None:
        if not points:
            return
        insert_factory = _UPSERT_DIALECTS.get(self._session.get_bind().dialect.name)
        if insert_factory is None:
            self._session.execute(insert(StravaHeartRatePoint), list(points))
            return
        # a concurrent replacement of the same activity may already hold these offsets
        statement = insert_factory(StravaHeartRatePoint)
        statement = statement.on_conflict_do_update(
            index_elements=["activity_id", "time_offset"],
            set_={"athlete_id": statement.excluded.athlete_id, "heart_rate": statement.excluded.heart_rate},
        )
        self._session.execute(statement, list(points))

    def delete_activity(self, strava_id: int) -> int:
        statement = delete(StravaActivity).where(StravaActivity.strava_id == strava_id)
        with storage_errors(self._session, "delete activity"):
            result = self._session.execute(statement)
            self._session.commit()
        return result.rowcount or 0

    def delete_streams(self, activity_id: int) -> int:
        statement = delete(StravaActivityStream).where(StravaActivityStream.activity_id == activity_id)
        with storage_errors(self._session, "delete streams"):
            result = self._session.execute(statement)
            self._session.commit()
        return result.rowcount or 0

    def _upsert(self, model: type[Base], values: dict[str, Any], *, key: str, operation: str) -> None:
        with storage_errors(self._session, operation):
            dialect = self._session.get_bind().dialect.name
            insert_factory = _UPSERT_DIALECTS.get(dialect)
            if insert_factory is None:
                self._merge(model, values, key=key)
            else:
                statement = insert_factory(model).values(**values)
                statement = statement.on_conflict_do_update(
                    index_elements=[key],
                    set_={column: statement.excluded[column] for column in values if column != key},
                )
                self._session.execute(statement)
            self._session.commit()

    def _merge(self, model: type[Base], values: dict[str, Any], *, key: str) -> None:
        column = getattr(model, key)
        existing = self._session.scalar(select(model).where(column == values[key]))
        if existing is None:
            self._session.add(model(**values))
            return
        for field, value in values.items():
            setattr(existing, field, value)
        self._session.add(existing)
