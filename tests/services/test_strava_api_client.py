from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy.orm import Session

from app.repositories.strava import StravaCredentialRepository
from app.services.strava_api import (
    AccountNotLinkedError,
    AuthenticationError,
    ProviderError,
    RateLimitExceeded,
)


def test_list_activities_returns_data(session, make_api_client, link_athlete, fake_strava, auth_service) -> None:
    link_athlete(session, 4242)
    fake_strava.json("/athlete/activities", [{"id": 1, "name": "Ride"}])

    activities = make_api_client(session).list_activities(4242, page=2, per_page=50)

    assert activities == [{"id": 1, "name": "Ride"}]
    call = fake_strava.calls[0]
    assert call["params"] == {"page": 2, "per_page": 50}
    assert call["headers"]["Authorization"] == "Bearer access-4242"
    assert auth_service.refresh_calls == []


def test_get_activity_and_streams_params(session, make_api_client, link_athlete, fake_strava) -> None:
    link_athlete(session, 4242)
    fake_strava.json("/activities/1", {"id": 1})
    fake_strava.json("/activities/1/streams", {"time": {"data": [0, 1]}})
    client = make_api_client(session)

    assert client.get_activity(4242, 1)["id"] == 1
    assert "time" in client.get_activity_streams(4242, 1, keys=["time", "heartrate"])

    assert fake_strava.calls[0]["params"] == {"include_all_efforts": "true"}
    assert fake_strava.calls[1]["params"] == {"keys": "time,heartrate", "key_by_type": "true"}


def test_unlinked_athlete_raises_without_calling_strava(session, make_api_client, fake_strava) -> None:
    with pytest.raises(AccountNotLinkedError) as exc:
        make_api_client(session).list_activities(999)

    assert exc.value.status_code == 404
    assert isinstance(exc.value, AuthenticationError)
    assert fake_strava.calls == []


def test_refreshes_within_margin_exactly_once(session, make_api_client, link_athlete, fake_strava, auth_service) -> None:
    link_athlete(session, 4242, expires_in=timedelta(seconds=120))
    fake_strava.json("/athlete/activities", [])
    client = make_api_client(session)

    client.list_activities(4242)
    client.list_activities(4242)

    assert auth_service.refresh_calls == ["refresh-4242"]
    assert [call["headers"]["Authorization"] for call in fake_strava.calls] == ["Bearer fresh-1", "Bearer fresh-1"]

    stored = StravaCredentialRepository(session).get_by_athlete_id(4242)
    assert stored.access_token == "fresh-1"
    assert stored.refresh_token == "refresh-1"
    assert stored.expires_at > datetime.now(timezone.utc) + timedelta(hours=5)


def test_token_outside_margin_is_not_refreshed(session, make_api_client, link_athlete, fake_strava, auth_service) -> None:
    link_athlete(session, 4242, expires_in=timedelta(seconds=400))
    fake_strava.json("/athlete/activities", [])

    make_api_client(session).list_activities(4242)

    assert auth_service.refresh_calls == []


def test_refresh_failure_makes_no_api_call(session, make_api_client, link_athlete, fake_strava, auth_service) -> None:
    link_athlete(session, 4242, expires_in=timedelta(minutes=-5))
    auth_service.fail_refresh = True

    with pytest.raises(AuthenticationError):
        make_api_client(session).list_activities(4242)

    assert fake_strava.calls == []
    assert StravaCredentialRepository(session).get_by_athlete_id(4242).access_token == "access-4242"


def test_retry_after_header_is_honoured(session, make_api_client, link_athlete, fake_strava, sleeps) -> None:
    link_athlete(session, 4242)
    fake_strava.add(
        "/athlete/activities",
        httpx.Response(429, headers={"Retry-After": "7"}),
        httpx.Response(200, json=[{"id": 3}]),
    )

    activities = make_api_client(session).list_activities(4242)

    assert activities == [{"id": 3}]
    assert sleeps == [7.0]


def test_exponential_backoff_without_retry_after(session, make_api_client, link_athlete, fake_strava, sleeps) -> None:
    link_athlete(session, 4242)
    fake_strava.add(
        "/athlete/activities",
        httpx.Response(429),
        httpx.Response(429),
        httpx.Response(200, json=[]),
    )

    make_api_client(session).list_activities(4242)

    assert sleeps == [1.0, 2.0]


def test_rate_limit_ceiling_raises(session, make_api_client, link_athlete, fake_strava, sleeps) -> None:
    link_athlete(session, 4242)
    fake_strava.add("/athlete/activities", httpx.Response(429))

    with pytest.raises(RateLimitExceeded) as exc:
        make_api_client(session).list_activities(4242)

    assert exc.value.status_code == 429
    assert len(fake_strava.calls) == 4
    assert sleeps == [1.0, 2.0, 4.0]


def test_non_success_status_is_provider_error(session, make_api_client, link_athlete, fake_strava, sleeps) -> None:
    link_athlete(session, 4242)
    fake_strava.add("/activities/1", httpx.Response(500, json={"message": "oops"}))

    with pytest.raises(ProviderError) as exc:
        make_api_client(session).get_activity(4242, 1)

    assert exc.value.status_code == 500
    assert len(fake_strava.calls) == 1
    assert sleeps == []


def test_not_found_is_provider_error(session, make_api_client, link_athlete, fake_strava) -> None:
    link_athlete(session, 4242)
    fake_strava.add("/activities/999/streams", httpx.Response(404))

    with pytest.raises(ProviderError) as exc:
        make_api_client(session).get_activity_streams(4242, 999, keys=["watts"])

    assert exc.value.status_code == 404


def test_timeouts_are_retried_then_reported(session, make_api_client, link_athlete, fake_strava, sleeps) -> None:
    link_athlete(session, 4242)
    fake_strava.add("/athlete/activities", httpx.ReadTimeout("slow"))

    with pytest.raises(ProviderError) as exc:
        make_api_client(session).list_activities(4242)

    assert exc.value.status_code == 504
    assert len(fake_strava.calls) == 4


def test_timeout_then_success(session: Session, make_api_client, link_athlete, fake_strava, sleeps) -> None:
    link_athlete(session, 4242)
    fake_strava.add(
        "/athlete/activities",
        httpx.ConnectTimeout("slow"),
        httpx.Response(200, json=[{"id": 5}]),
    )

    assert make_api_client(session).list_activities(4242) == [{"id": 5}]
    assert sleeps == [1.0]
