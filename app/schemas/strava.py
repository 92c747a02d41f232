from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, StrictInt, field_validator

StravaId = Annotated[StrictInt, Field(gt=0)]


class StravaAuthorizeResponse(BaseModel):
    authorize_url: AnyHttpUrl


class StravaTokenExchangeResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str
    scope: list[str]
    expires_at: datetime
    athlete_id: int

    @field_validator("expires_at", mode="before")
    @classmethod
    def _coerce_expires_at(cls, value: int | float | datetime) -> datetime:
        if isinstance(value, datetime):
            return value
        return datetime.fromtimestamp(value, tz=timezone.utc)

    @field_validator("scope", mode="before")
    @classmethod
    def _coerce_scope(cls, value: list[str] | str) -> list[str]:
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            return [chunk for chunk in value.split(",") if chunk]
        raise TypeError("Invalid scope type")


class StravaConnectionResponse(BaseModel):
    athlete_id: int
    scope: list[str]
    expires_at: datetime
    backfill: Literal["queued", "scheduled"]


class StravaActivitySummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str | None = None
    distance: float | None = None
    moving_time: int | None = None
    elapsed_time: int | None = None
    type: str | None = None
    start_date: datetime | None = None


class StravaActivityDetail(StravaActivitySummary):
    description: str | None = None
    sport_type: str | None = None
    total_elevation_gain: float | None = None
    elev_high: float | None = None
    elev_low: float | None = None
    start_date_local: datetime | None = None
    timezone: str | None = None
    start_latlng: list[float] | None = None
    end_latlng: list[float] | None = None
    map: dict[str, Any] | None = None
    gear_id: str | None = None
    device_name: str | None = None
    trainer: bool | None = None
    commute: bool | None = None
    manual: bool | None = None
    private: bool | None = None
    average_speed: float | None = None
    max_speed: float | None = None
    average_cadence: float | None = None
    average_watts: float | None = None
    kilojoules: float | None = None
    calories: float | None = None
    has_heartrate: bool = False
    average_heartrate: float | None = None
    max_heartrate: float | None = None

    @field_validator("start_latlng", "end_latlng", mode="before")
    @classmethod
    def _empty_latlng(cls, value: Any) -> Any:
        # Strava sends [] for activities recorded without GPS
        if isinstance(value, list) and not value:
            return None
        return value


class StravaStream(BaseModel):
    type: str | None = None
    data: list[Any]
    series_type: str | None = None
    original_size: int | None = None
    resolution: str | None = None


class _WebhookEventBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    aspect_type: Literal["create", "update", "delete"]
    object_id: StravaId
    owner_id: StravaId
    subscription_id: StravaId
    event_time: StravaId
    updates: dict[str, Any] = Field(default_factory=dict)

    @field_validator("updates", mode="before")
    @classmethod
    def _coerce_updates(cls, value: Any) -> Any:
        return {} if value is None else value


class ActivityWebhookEvent(_WebhookEventBase):
    object_type: Literal["activity"]


class AthleteWebhookEvent(_WebhookEventBase):
    object_type: Literal["athlete"]


StravaWebhookEvent = Annotated[
    Union[ActivityWebhookEvent, AthleteWebhookEvent],
    Field(discriminator="object_type"),
]


class SubscriptionChallengeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    challenge: str = Field(alias="hub.challenge")
