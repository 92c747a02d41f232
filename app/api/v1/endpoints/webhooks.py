import asyncio
import contextvars
from concurrent.futures import Future, ThreadPoolExecutor

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from app.api.dependencies.strava import get_webhook_executor, get_webhook_receiver
from app.core.config import Settings, get_settings
from app.schemas.strava import SubscriptionChallengeResponse
from app.services.webhook import (
    SubscriptionVerificationError,
    WebhookReceiver,
    WebhookValidationError,
    verify_subscription,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1/integrations/strava", tags=["strava-webhooks"])


@router.get("/webhook", response_model=SubscriptionChallengeResponse)
def verify_webhook_subscription(
    mode: str | None = Query(default=None, alias="hub.mode"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
    verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    settings: Settings = Depends(get_settings),
) -> SubscriptionChallengeResponse:
    try:
        echoed = verify_subscription(mode, challenge, verify_token, expected_token=settings.strava_verify_token)
    except WebhookValidationError as exc:
        logger.warning("webhook_handshake_invalid", mode=mode, error=str(exc))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except SubscriptionVerificationError as exc:
        logger.warning("webhook_handshake_rejected", mode=mode)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid verification token") from exc

    logger.info("webhook_handshake_accepted")
    return SubscriptionChallengeResponse(challenge=echoed)


def _log_receive_outcome(future: Future) -> None:
    exc = future.exception()
    if exc is None:
        logger.info("webhook_event_accepted", event_id=future.result())
    elif isinstance(exc, WebhookValidationError):
        logger.warning("webhook_event_rejected", error=str(exc))
    else:
        logger.error("webhook_event_intake_failed", error=str(exc), exc_type=type(exc).__name__)


@router.post("/webhook", response_class=PlainTextResponse)
async def receive_webhook_event(
    request: Request,
    settings: Settings = Depends(get_settings),
    receiver: WebhookReceiver = Depends(get_webhook_receiver),
    executor: ThreadPoolExecutor = Depends(get_webhook_executor),
) -> PlainTextResponse:
    """Answer 200 "OK" once intake finishes or the deadline passes.

    Intake is never cancelled and keeps running past the deadline.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("webhook_event_rejected", error="body is not JSON")
        return PlainTextResponse("OK")

    # carry the request_id binding into the worker thread
    context = contextvars.copy_context()
    future = executor.submit(context.run, receiver.receive, payload)
    future.add_done_callback(_log_receive_outcome)

    done, _ = await asyncio.wait(
        {asyncio.wrap_future(future)},
        timeout=settings.webhook_response_timeout_seconds,
    )
    if not done:
        logger.warning(
            "webhook_intake_deadline_passed",
            timeout_seconds=settings.webhook_response_timeout_seconds,
        )
    return PlainTextResponse("OK")
