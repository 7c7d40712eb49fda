from fastapi import APIRouter, Depends
from ..deps import pipeline
from ...core.config import settings
from ...services.runtime import Pipeline

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(p: Pipeline = Depends(pipeline)):
    return {
        "status": "ok" if p.bus.running else "degraded",
        "app": settings.app_name,
        "env": settings.app_env,
        "event_bus": "running" if p.bus.running else "stopped",
        "dead_letters": len(p.bus.dead_letters),
    }
