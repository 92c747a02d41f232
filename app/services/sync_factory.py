from __future__ import annotations

from datetime import timedelta

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.retry import RetryPolicy
from app.repositories.activity import StravaActivityRepository
from app.repositories.strava import StravaCredentialRepository
from app.repositories.webhook import WebhookEventRepository
from app.services.activity_sync import ActivitySyncService
from app.services.reconciler import PollingReconciler
from app.services.strava import StravaAuthService
from app.services.strava_api import StravaAPIClient
from app.services.webhook_processor import WebhookEventProcessor


def create_api_client(session: Session, settings: Settings) -> StravaAPIClient:
    return StravaAPIClient(
        settings=settings,
        credential_repo=StravaCredentialRepository(session),
        auth_service=StravaAuthService(settings),
    )


def create_sync_service(
    session: Session,
    settings: Settings,
    *,
    api_client: StravaAPIClient | None = None,
) -> ActivitySyncService:
    return ActivitySyncService(
        settings,
        api_client or create_api_client(session, settings),
        StravaActivityRepository(session),
    )


def create_event_processor(
    session: Session,
    settings: Settings,
    *,
    api_client: StravaAPIClient | None = None,
) -> WebhookEventProcessor:
    return WebhookEventProcessor(
        WebhookEventRepository(session),
        create_sync_service(session, settings, api_client=api_client),
        StravaCredentialRepository(session),
        RetryPolicy(limit=settings.webhook_max_attempts),
        stale_after=timedelta(seconds=settings.webhook_stale_processing_seconds),
    )


def create_reconciler(
    session: Session,
    settings: Settings,
    *,
    api_client: StravaAPIClient | None = None,
) -> PollingReconciler:
    api_client = api_client or create_api_client(session, settings)
    return PollingReconciler(
        settings,
        StravaCredentialRepository(session),
        StravaActivityRepository(session),
        api_client,
        create_sync_service(session, settings, api_client=api_client),
    )
