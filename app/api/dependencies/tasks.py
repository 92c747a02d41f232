from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from app.api.dependencies.db import get_session_factory
from app.core.config import Settings, get_settings
from app.services.task_dispatcher import SyncTaskDispatcher


def get_sync_task_dispatcher(
    settings: Settings = Depends(get_settings),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> SyncTaskDispatcher:
    return SyncTaskDispatcher(settings, session_factory=session_factory)
