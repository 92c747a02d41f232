"""Strava OAuth helpers: authorize URL, code exchange and token refresh."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

from app.core.config import Settings
from app.schemas.strava import StravaTokenExchangeResponse

logger = structlog.get_logger(__name__)


class StravaAuthError(Exception):
    """Raised when Strava authentication related flow fails."""


@dataclass(slots=True)
class StravaAuthService:
    settings: Settings

    def generate_state(self) -> str:
        """Create a 32-character hex state token for CSRF mitigation."""
        return secrets.token_hex(16)

    def build_authorize_url(self, state: str) -> str:
        query = {
            "client_id": self.settings.strava_client_id,
            "redirect_uri": str(self.settings.strava_redirect_uri),
            "response_type": "code",
            "scope": self.settings.strava_scope,
            "approval_prompt": "auto",
            "state": state,
        }
        return f"{self.settings.strava_authorize_base}?{urlencode(query)}"

    def exchange_code_for_tokens(self, code: str) -> StravaTokenExchangeResponse:
        data = self._post_token_request(
            {"code": code, "grant_type": "authorization_code"},
            failure_message="Error contacting Strava token endpoint",
        )
        try:
            return StravaTokenExchangeResponse(
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
                token_type=data.get("token_type", "Bearer"),
                scope=data.get("scope", self.settings.strava_scope),
                expires_at=_resolve_expires_at(data),
                athlete_id=_extract_athlete_id(data),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StravaAuthError("Strava token payload malformed") from exc

    def refresh_access_token(self, refresh_token: str, *, athlete_id: int | None = None) -> StravaTokenExchangeResponse:
        data = self._post_token_request(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"},
            failure_message="Error refreshing Strava access token",
        )
        try:
            exchange = StravaTokenExchangeResponse(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token", refresh_token),
                token_type=data.get("token_type", "Bearer"),
                scope=data.get("scope", self.settings.strava_scope),
                expires_at=_resolve_expires_at(data),
                athlete_id=_extract_athlete_id(data, fallback=athlete_id),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StravaAuthError("Strava refresh payload malformed") from exc

        logger.info("strava_token_refreshed", athlete_id=exchange.athlete_id, expires_at=exchange.expires_at.isoformat())
        return exchange

    def _post_token_request(self, grant: dict[str, str], *, failure_message: str) -> dict[str, Any]:
        payload = {
            "client_id": self.settings.strava_client_id,
            "client_secret": self.settings.strava_client_secret,
            **grant,
        }
        try:
            response = httpx.post(
                str(self.settings.strava_token_url),
                data=payload,
                timeout=self.settings.strava_request_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("strava_token_request_failed", grant_type=grant["grant_type"], error=str(exc))
            raise StravaAuthError(failure_message) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise StravaAuthError("Strava token response was not JSON") from exc


def _resolve_expires_at(data: dict[str, Any]) -> datetime:
    expires_at = data.get("expires_at")
    if isinstance(expires_at, (int, float)):
        return datetime.fromtimestamp(expires_at, tz=timezone.utc)
    if isinstance(expires_at, datetime):
        return expires_at
    raise ValueError("expires_at missing or invalid")


def _extract_athlete_id(data: dict[str, Any], fallback: int | None = None) -> int:
    athlete = data.get("athlete")
    if isinstance(athlete, dict) and isinstance(athlete.get("id"), int):
        return athlete["id"]
    if fallback is not None:
        return fallback
    raise ValueError("Athlete id missing")
