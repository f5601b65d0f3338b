from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text

from snaptriage.api.v1 import images, projects
from snaptriage.core.context import TriageContext
from snaptriage.core.dependencies import get_context
from snaptriage.core.metrics import snapshot as metrics_snapshot

api_router = APIRouter()

api_router.include_router(images.router)
api_router.include_router(projects.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/health/ready", tags=["health"])
async def readiness(ctx: TriageContext = Depends(get_context)) -> dict[str, str]:
    try:
        async with ctx.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable")
    return {"status": "ready"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
