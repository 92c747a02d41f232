from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache, partial

from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from app.api.dependencies.db import get_session_factory
from app.api.dependencies.tasks import get_sync_task_dispatcher
from app.core.config import Settings, get_settings
from app.db.session import session_scope
from app.services.task_dispatcher import SyncTaskDispatcher
from app.services.webhook import WebhookReceiver


@lru_cache
def _executor(max_workers: int) -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="webhook")


def get_webhook_executor(settings: Settings = Depends(get_settings)) -> ThreadPoolExecutor:
    return _executor(settings.webhook_worker_threads)


def shutdown_webhook_executor() -> None:
    """Stop taking intake work. Intake already submitted still runs to the end."""
    if _executor.cache_info().currsize:
        _executor(get_settings().webhook_worker_threads).shutdown(wait=False)
    _executor.cache_clear()



def get_webhook_receiver(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    dispatcher: SyncTaskDispatcher = Depends(get_sync_task_dispatcher),
) -> WebhookReceiver:
    return WebhookReceiver(partial(session_scope, session_factory), dispatcher)
