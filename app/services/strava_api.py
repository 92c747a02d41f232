from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
import structlog

from app.core.config import Settings
from app.core.retry import RetryPolicy, call_with_retry, exponential_backoff
from app.models.strava import StravaCredential
from app.repositories.strava import StravaCredentialRepository
from app.services.strava import StravaAuthError, StravaAuthService

logger = structlog.get_logger(__name__)


class StravaAPIError(Exception):
    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class AuthenticationError(StravaAPIError):
    """Token refresh failed or no usable credential; the athlete must re-authorize."""

    def __init__(self, message: str, status_code: int = 401) -> None:
        super().__init__(message, status_code=status_code)


class AccountNotLinkedError(AuthenticationError):
    def __init__(self, athlete_id: int) -> None:
        super().__init__(f"Strava account {athlete_id} not linked", status_code=404)
        self.athlete_id = athlete_id


class RateLimitExceeded(StravaAPIError):
    def __init__(self, message: str = "Strava rate limited") -> None:
        super().__init__(message, status_code=429)


class ProviderError(StravaAPIError):
    """Non-2xx, non-throttling response (or exhausted timeouts)."""


class _Throttled(Exception):
    def __init__(self, retry_after: float | None) -> None:
        super().__init__("throttled")
        self.retry_after = retry_after


class _TimedOut(Exception):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds


@dataclass
class StravaAPIClient:
    """Bearer-authenticated Strava REST client for one datastore session.

    Tokens are refreshed ahead of expiry, throttled calls are retried with the
    configured backoff, and any other non-2xx response is terminal.
    """

    settings: Settings
    credential_repo: StravaCredentialRepository
    auth_service: StravaAuthService
    request_func: Callable[..., httpx.Response] | None = None
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], datetime] = _utcnow
    retry_policy: RetryPolicy | None = field(default=None)

    def __post_init__(self) -> None:
        if self.request_func is None:
            self.request_func = self._default_request
        if self.retry_policy is None:
            self.retry_policy = RetryPolicy(
                limit=self.settings.strava_rate_limit_max_retries,
                backoff=exponential_backoff(self.settings.strava_rate_limit_base_delay_seconds),
            )

    def list_activities(
        self,
        athlete_id: int,
        *,
        page: int = 1,
        per_page: int = 30,
        after: int | None = None,
        before: int | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"page": page, "per_page": per_page}
        if after is not None:
            params["after"] = after
        if before is not None:
            params["before"] = before
        result = self.request(athlete_id, "/athlete/activities", params=params)
        if isinstance(result, list):
            return result
        return []

    def get_activity(self, athlete_id: int, activity_id: int, *, include_all_efforts: bool = True) -> dict[str, Any]:
        return self.request(
            athlete_id,
            f"/activities/{activity_id}",
            params={"include_all_efforts": str(include_all_efforts).lower()},
        )

    def get_activity_streams(
        self,
        athlete_id: int,
        activity_id: int,
        *,
        keys: list[str],
        key_by_type: bool = True,
    ) -> Any:
        return self.request(
            athlete_id,
            f"/activities/{activity_id}/streams",
            params={"keys": ",".join(keys), "key_by_type": str(key_by_type).lower()},
        )

    def request(
        self,
        athlete_id: int,
        path: str,
        *,
        method: str = "GET",
        params: dict[str, Any] | None = None,
    ) -> Any:
        credential = self.credential_repo.get_credential(athlete_id)
        if credential is None:
            raise AccountNotLinkedError(athlete_id)

        credential = self._ensure_valid_token(credential)
        url = f"{self.settings.strava_api_base}{path}"
        headers = {"Authorization": f"Bearer {credential.access_token}"}

        def _attempt() -> httpx.Response:
            assert self.request_func is not None
            try:
                response = self.request_func(
                    method,
                    url,
                    headers=headers,
                    params=params or {},
                    timeout=self.settings.strava_request_timeout_seconds,
                )
            except httpx.TimeoutException as exc:
                raise _TimedOut(str(exc)) from exc
            if response.status_code == 429:
                raise _Throttled(_parse_retry_after(response.headers.get("Retry-After")))
            return response

        def _log_retry(retry: int, delay: float, exc: BaseException) -> None:
            logger.info(
                "strava_request_retry",
                athlete_id=athlete_id,
                path=path,
                retry=retry + 1,
                delay_seconds=delay,
                reason="rate_limited" if isinstance(exc, _Throttled) else "timeout",
            )

        assert self.retry_policy is not None
        try:
            response = call_with_retry(
                _attempt,
                self.retry_policy,
                retry_on=(_Throttled, _TimedOut),
                sleep=self.sleep,
                on_retry=_log_retry,
            )
        except _Throttled as exc:
            logger.warning("strava_rate_limit_exhausted", athlete_id=athlete_id, path=path)
            raise RateLimitExceeded(f"Strava rate limited after {self.retry_policy.limit} retries") from exc
        except _TimedOut as exc:
            logger.warning("strava_request_timeout_exhausted", athlete_id=athlete_id, path=path)
            raise ProviderError("Strava request timed out", status_code=504) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Strava request failed: {exc}") from exc

        if 200 <= response.status_code < 300:
            return response.json()

        if response.status_code == 404:
            raise ProviderError(f"Strava resource not found: {path}", status_code=404)

        raise ProviderError(
            f"Strava API error {response.status_code}",
            status_code=response.status_code,
        )

    def _ensure_valid_token(self, credential: StravaCredential) -> StravaCredential:
        margin = timedelta(seconds=self.settings.strava_token_refresh_margin_seconds)
        if credential.expires_at is not None and credential.expires_at - margin > self.clock():
            return credential

        assert credential.refresh_token is not None
        try:
            exchange = self.auth_service.refresh_access_token(
                credential.refresh_token,
                athlete_id=credential.athlete_id,
            )
        except StravaAuthError as exc:
            logger.warning("strava_token_refresh_failed", athlete_id=credential.athlete_id, error=str(exc))
            raise AuthenticationError(f"Token refresh failed for athlete {credential.athlete_id}") from exc

        return self.credential_repo.set_credential(
            credential.athlete_id,
            access_token=exchange.access_token,
            refresh_token=exchange.refresh_token,
            expires_at=exchange.expires_at,
            token_type=exchange.token_type,
            scope=exchange.scope,
        )

    @staticmethod
    def _default_request(
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        return httpx.request(method, url, headers=headers, params=params, timeout=timeout)
