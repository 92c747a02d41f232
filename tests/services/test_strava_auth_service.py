from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.services.strava import StravaAuthError, StravaAuthService


def _token_response(url: str, status: int = 200, **body) -> httpx.Response:
    return httpx.Response(status, json=body, request=httpx.Request("POST", url))


def test_build_authorize_url(settings) -> None:
    service = StravaAuthService(settings)
    state = service.generate_state()

    parsed = urlparse(service.build_authorize_url(state))
    params = parse_qs(parsed.query)

    assert len(state) == 32
    assert parsed.netloc == "www.strava.com"
    assert params["client_id"] == ["client"]
    assert params["state"] == [state]
    assert params["scope"] == ["read,activity:read_all"]


def test_refresh_access_token_posts_refresh_grant(settings, monkeypatch) -> None:
    seen: dict = {}

    def fake_post(url: str, data: dict, timeout: float) -> httpx.Response:
        seen.update(data)
        return _token_response(
            url,
            access_token="new-access",
            refresh_token="new-refresh",
            expires_at=1_900_000_000,
            token_type="Bearer",
        )

    monkeypatch.setattr("app.services.strava.httpx.post", fake_post)

    exchange = StravaAuthService(settings).refresh_access_token("old-refresh", athlete_id=42)

    assert seen["grant_type"] == "refresh_token"
    assert seen["refresh_token"] == "old-refresh"
    assert seen["client_secret"] == "secret"
    assert exchange.athlete_id == 42
    assert exchange.access_token == "new-access"
    assert exchange.refresh_token == "new-refresh"
    assert exchange.expires_at == datetime.fromtimestamp(1_900_000_000, tz=timezone.utc)


def test_refresh_keeps_old_refresh_token_when_not_rotated(settings, monkeypatch) -> None:
    monkeypatch.setattr(
        "app.services.strava.httpx.post",
        lambda url, data, timeout: _token_response(url, access_token="a", expires_at=1_900_000_000),
    )

    exchange = StravaAuthService(settings).refresh_access_token("keep-me", athlete_id=42)

    assert exchange.refresh_token == "keep-me"


def test_refresh_rejected_raises(settings, monkeypatch) -> None:
    monkeypatch.setattr(
        "app.services.strava.httpx.post",
        lambda url, data, timeout: _token_response(url, status=400, message="Bad Request"),
    )

    with pytest.raises(StravaAuthError):
        StravaAuthService(settings).refresh_access_token("revoked", athlete_id=42)


def test_exchange_requires_athlete(settings, monkeypatch) -> None:
    monkeypatch.setattr(
        "app.services.strava.httpx.post",
        lambda url, data, timeout: _token_response(
            url, access_token="a", refresh_token="r", expires_at=1_900_000_000
        ),
    )

    with pytest.raises(StravaAuthError):
        StravaAuthService(settings).exchange_code_for_tokens("code")
