from fastapi import APIRouter

from fxrates.api.routes import alerts, fx, tasks

api_router = APIRouter()

api_router.include_router(fx.router, prefix="/api/v1/fx", tags=["fx"])
api_router.include_router(alerts.router, prefix="/api/v1/alerts", tags=["alerts"])
api_router.include_router(tasks.router, prefix="/tasks", tags=["tasks"])
