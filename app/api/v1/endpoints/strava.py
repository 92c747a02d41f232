import structlog
from fastapi import APIRouter, BackgroundTasks, Cookie, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from app.api.dependencies.db import get_db_session
from app.api.dependencies.tasks import get_sync_task_dispatcher
from app.core.config import Settings, get_settings
from app.repositories.errors import StorageError
from app.repositories.strava import StravaCredentialRepository
from app.schemas.strava import StravaAuthorizeResponse, StravaConnectionResponse
from app.services.strava import StravaAuthError, StravaAuthService
from app.services.task_dispatcher import SyncTaskDispatcher

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1/integrations/strava", tags=["strava"])

STATE_COOKIE = "strava_oauth_state"


@router.get("/connect", response_model=StravaAuthorizeResponse)
def connect_strava(
    response: Response,
    settings: Settings = Depends(get_settings),
) -> StravaAuthorizeResponse:
    service = StravaAuthService(settings)
    state = service.generate_state()
    authorize_url = service.build_authorize_url(state)

    secure_cookie = settings.app_env == "production"

    response.set_cookie(
        key=STATE_COOKIE,
        value=state,
        max_age=600,
        httponly=True,
        secure=secure_cookie,
        samesite="lax",
    )

    return StravaAuthorizeResponse(authorize_url=authorize_url)


def _run_backfill(dispatcher: SyncTaskDispatcher, athlete_id: int) -> None:
    try:
        dispatcher.dispatch_backfill(athlete_id)
    except Exception:
        logger.exception("backfill_dispatch_failed", athlete_id=athlete_id)


@router.get("/callback", response_model=StravaConnectionResponse)
def strava_callback(
    response: Response,
    background_tasks: BackgroundTasks,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    state_cookie: str | None = Cookie(default=None, alias=STATE_COOKIE),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db_session),
    dispatcher: SyncTaskDispatcher = Depends(get_sync_task_dispatcher),
) -> StravaConnectionResponse:
    if state_cookie is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing state cookie")

    if state is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing state")

    if state != state_cookie:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="State mismatch")

    if code is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing code")

    service = StravaAuthService(settings)

    try:
        token_response = service.exchange_code_for_tokens(code)
    except StravaAuthError as exc:
        response.delete_cookie(STATE_COOKIE, path="/")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Strava token exchange failed",
        ) from exc

    credential_repo = StravaCredentialRepository(db)
    try:
        credential_repo.upsert_from_token_exchange(
            athlete_id=token_response.athlete_id,
            access_token=token_response.access_token,
            refresh_token=token_response.refresh_token,
            token_type=token_response.token_type,
            scope=token_response.scope,
            expires_at=token_response.expires_at,
        )
    except StorageError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not store Strava credential",
        ) from exc

    logger.info("strava_account_connected", athlete_id=token_response.athlete_id)
    background_tasks.add_task(_run_backfill, dispatcher, token_response.athlete_id)

    response.delete_cookie(STATE_COOKIE, path="/")
    return StravaConnectionResponse(
        athlete_id=token_response.athlete_id,
        scope=token_response.scope,
        expires_at=token_response.expires_at,
        backfill="queued" if dispatcher.supports_queue else "scheduled",
    )
