from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.main import app
from app.models import strava as strava_models  # noqa: F401 ensure registration
from app.models import webhook as webhook_models  # noqa: F401 ensure registration
from app.models.base import Base
from app.repositories.strava import StravaCredentialRepository
from app.schemas.strava import StravaTokenExchangeResponse
from app.services.strava import StravaAuthError, StravaAuthService
from app.services.strava_api import StravaAPIClient

API_BASE = "https://www.strava.com/api/v3"


@pytest.fixture(autouse=True)
def _env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "test")

    monkeypatch.setenv("STRAVA_CLIENT_ID", "12345")
    monkeypatch.setenv("STRAVA_CLIENT_SECRET", "secret")
    monkeypatch.setenv("STRAVA_REDIRECT_URI", "https://example.com/strava/callback")
    monkeypatch.setenv("STRAVA_VERIFY_TOKEN", "verify-me")

    monkeypatch.setenv("DATABASE_URL", "sqlite:///./test.db")
    monkeypatch.setenv("TASK_QUEUE_FORCE_INLINE", "true")


@pytest.fixture()
def client() -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False, class_=Session)


@pytest.fixture()
def session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    with session_factory() as db_session:
        yield db_session


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        app_env="test",
        database_url="sqlite+pysqlite:///:memory:",
        strava_client_id="client",
        strava_client_secret="secret",
        strava_redirect_uri="https://example.com/callback",
        strava_verify_token="verify-me",
        task_queue_force_inline=True,
    )


class FakeStrava:
    """Path-routed stand-in for ``httpx.request``.

    Responses queued for a path are served in order; the last one repeats.
    A queued exception is raised and a queued callable builds the response.
    """

    def __init__(self) -> None:
        self.routes: dict[str, list[Any]] = {}
        self.calls: list[dict[str, Any]] = []

    def add(self, path: str, *responses: Any) -> None:
        self.routes.setdefault(path, []).extend(responses)

    def json(self, path: str, payload: Any, status_code: int = 200, headers: dict[str, str] | None = None) -> None:
        self.add(path, httpx.Response(status_code, json=payload, headers=headers))

    def paths(self) -> list[str]:
        return [call["path"] for call in self.calls]

    def __call__(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        path = url.removeprefix(API_BASE)
        self.calls.append({"method": method, "path": path, "headers": headers, "params": params})
        queue = self.routes.get(path)
        if not queue:
            raise AssertionError(f"Unexpected request {method} {path}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(method, url, headers=headers, params=params)
        return item


class StubAuthService(StravaAuthService):
    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.refresh_calls: list[str] = []
        self.fail_refresh = False

    def refresh_access_token(  # type: ignore[override]
        self,
        refresh_token: str,
        *,
        athlete_id: int | None = None,
    ) -> StravaTokenExchangeResponse:
        self.refresh_calls.append(refresh_token)
        if self.fail_refresh:
            raise StravaAuthError("refresh rejected")
        return StravaTokenExchangeResponse(
            access_token=f"fresh-{len(self.refresh_calls)}",
            refresh_token=f"refresh-{len(self.refresh_calls)}",
            token_type="Bearer",
            scope="read,activity:read_all",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=6),
            athlete_id=athlete_id or 0,
        )


@pytest.fixture()
def fake_strava() -> FakeStrava:
    return FakeStrava()


@pytest.fixture()
def auth_service(settings: Settings) -> StubAuthService:
    return StubAuthService(settings)


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def make_api_client(
    settings: Settings,
    fake_strava: FakeStrava,
    auth_service: StubAuthService,
    sleeps: list[float],
) -> Callable[..., StravaAPIClient]:
    def _build(session: Session, **overrides: Any) -> StravaAPIClient:
        options: dict[str, Any] = {
            "settings": settings,
            "credential_repo": StravaCredentialRepository(session),
            "auth_service": auth_service,
            "request_func": fake_strava,
            "sleep": sleeps.append,
        }
        options.update(overrides)
        return StravaAPIClient(**options)

    return _build


@pytest.fixture()
def link_athlete() -> Callable[..., None]:
    def _link(session: Session, athlete_id: int, *, expires_in: timedelta = timedelta(hours=6)) -> None:
        StravaCredentialRepository(session).upsert_from_token_exchange(
            athlete_id=athlete_id,
            access_token=f"access-{athlete_id}",
            refresh_token=f"refresh-{athlete_id}",
            token_type="Bearer",
            scope=["read", "activity:read_all"],
            expires_at=datetime.now(timezone.utc) + expires_in,
        )

    return _link


def activity_payload(activity_id: int, athlete_id: int, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": activity_id,
        "athlete": {"id": athlete_id},
        "name": f"Ride {activity_id}",
        "type": "Ride",
        "sport_type": "Ride",
        "distance": 25_000.0,
        "moving_time": 3_600,
        "elapsed_time": 3_900,
        "total_elevation_gain": 310.0,
        "start_date": "2024-05-01T06:30:00Z",
        "start_date_local": "2024-05-01T08:30:00Z",
        "timezone": "(GMT+01:00) Europe/Dublin",
        "start_latlng": [],
        "end_latlng": [],
        "map": {"summary_polyline": "abc"},
        "has_heartrate": False,
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def make_activity() -> Callable[..., dict[str, Any]]:
    return activity_payload
