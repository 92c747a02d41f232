from fastapi import APIRouter

from app.api.v1.endpoints import health, strava, webhooks

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(strava.router)
api_router.include_router(webhooks.router)
