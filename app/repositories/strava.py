from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.strava import StravaCredential
from app.repositories.errors import storage_errors


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class StravaCredentialRepository:
    """Read/write boundary for per-athlete Strava OAuth tokens."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_by_athlete_id(self, athlete_id: int) -> StravaCredential | None:
        statement = select(StravaCredential).where(StravaCredential.athlete_id == athlete_id)
        with storage_errors(self._session, "load credential"):
            credential = self._session.scalar(statement)
        if credential and credential.expires_at is not None:
            credential.expires_at = _ensure_utc(credential.expires_at)
        return credential

    def get_credential(self, athlete_id: int) -> StravaCredential | None:
        """Return the athlete's credential, or None when absent or revoked."""
        credential = self.get_by_athlete_id(athlete_id)
        if credential is None or not credential.is_linked:
            return None
        return credential

    def set_credential(
        self,
        athlete_id: int,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        token_type: str | None = None,
        scope: list[str] | str | None = None,
        activate_subscription: bool = False,
    ) -> StravaCredential:
        credential = self.get_by_athlete_id(athlete_id)
        if credential is None:
            credential = StravaCredential(athlete_id=athlete_id)

        # both tokens are written in the same commit
        credential.access_token = access_token
        credential.refresh_token = refresh_token
        credential.expires_at = _ensure_utc(expires_at)
        if token_type is not None:
            credential.token_type = token_type
        if scope is not None:
            credential.scope = ",".join(scope) if isinstance(scope, list) else scope
        if activate_subscription:
            credential.webhook_subscription_active = True

        with storage_errors(self._session, "store credential"):
            self._session.add(credential)
            self._session.commit()
            self._session.refresh(credential)
        credential.expires_at = _ensure_utc(credential.expires_at)
        return credential

    def upsert_from_token_exchange(
        self,
        *,
        athlete_id: int,
        access_token: str,
        refresh_token: str,
        token_type: str,
        scope: list[str] | str,
        expires_at: datetime,
    ) -> StravaCredential:
        return self.set_credential(
            athlete_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            token_type=token_type,
            scope=scope,
            activate_subscription=True,
        )

    def deauthorize(self, athlete_id: int) -> bool:
        credential = self.get_by_athlete_id(athlete_id)
        if credential is None:
            return False

        credential.access_token = None
        credential.refresh_token = None
        credential.expires_at = None
        credential.webhook_subscription_active = False
        with storage_errors(self._session, "deauthorize athlete"):
            self._session.add(credential)
            self._session.commit()
        return True

    def list_linked_athlete_ids(self) -> list[int]:
        statement = (
            select(StravaCredential.athlete_id)
            .where(StravaCredential.access_token.is_not(None))
            .where(StravaCredential.refresh_token.is_not(None))
            .order_by(StravaCredential.athlete_id)
        )
        with storage_errors(self._session, "list linked athletes"):
            return list(self._session.scalars(statement))
