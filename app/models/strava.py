from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Float, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class StravaCredential(Base):
    __tablename__ = "strava_credentials"

    athlete_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    access_token: Mapped[str | None] = mapped_column(String, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(String, nullable=True)
    token_type: Mapped[str] = mapped_column(default="Bearer")
    scope: Mapped[str] = mapped_column(default="")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    webhook_subscription_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def is_linked(self) -> bool:
        return bool(self.access_token and self.refresh_token)


class StravaActivity(Base):
    __tablename__ = "strava_activities"

    strava_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    athlete_id: Mapped[int] = mapped_column(BigInteger, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    activity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    sport_type: Mapped[str | None] = mapped_column(String, nullable=True)

    distance: Mapped[float | None] = mapped_column(Float, nullable=True)
    moving_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    elapsed_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_elevation_gain: Mapped[float | None] = mapped_column(Float, nullable=True)
    elev_high: Mapped[float | None] = mapped_column(Float, nullable=True)
    elev_low: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_cadence: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_watts: Mapped[float | None] = mapped_column(Float, nullable=True)
    kilojoules: Mapped[float | None] = mapped_column(Float, nullable=True)
    calories: Mapped[float | None] = mapped_column(Float, nullable=True)

    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    start_date_local: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    timezone: Mapped[str | None] = mapped_column(String, nullable=True)
    start_latlng: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    end_latlng: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    summary_polyline: Mapped[str | None] = mapped_column(Text, nullable=True)

    gear_id: Mapped[str | None] = mapped_column(String, nullable=True)
    device_name: Mapped[str | None] = mapped_column(String, nullable=True)
    trainer: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    commute: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    manual: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    private: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    has_heartrate: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    average_heartrate: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_heartrate: Mapped[float | None] = mapped_column(Float, nullable=True)


class StravaActivityStream(Base):
    __tablename__ = "strava_activity_streams"

    activity_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    athlete_id: Mapped[int] = mapped_column(BigInteger, index=True)
    time: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    distance: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    latlng: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    altitude: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    velocity_smooth: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    heartrate: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    cadence: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    watts: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    temp: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    moving: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    grade_smooth: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)


STREAM_COLUMNS = (
    "time",
    "distance",
    "latlng",
    "altitude",
    "velocity_smooth",
    "heartrate",
    "cadence",
    "watts",
    "temp",
    "moving",
    "grade_smooth",
)


class StravaHeartRatePoint(Base):
    __tablename__ = "strava_activity_hr_points"
    __table_args__ = (UniqueConstraint("activity_id", "time_offset", name="uq_hr_point_activity_offset"),)

    activity_id: Mapped[int] = mapped_column(BigInteger, index=True)
    athlete_id: Mapped[int] = mapped_column(BigInteger, index=True)
    time_offset: Mapped[int] = mapped_column(Integer)
    heart_rate: Mapped[int] = mapped_column(Integer)
