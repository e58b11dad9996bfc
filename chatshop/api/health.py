"""
ChatShop - Health endpoint
"""
import asyncio
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from chatshop.api.deps import get_shop
from chatshop.core.config import get_settings
from chatshop.services.container import Shop

settings = get_settings()
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(shop: Shop = Depends(get_shop)):
    deps: dict[str, str] = {}
    healthy = True

    try:
        async with shop.session_factory() as db:
            await asyncio.wait_for(db.execute(text("SELECT 1")), timeout=settings.HEALTH_CHECK_TIMEOUT)
        deps["database"] = "ok"
    except Exception as e:
        deps["database"] = f"error: {str(e)[:100]}"
        healthy = False

    try:
        await asyncio.wait_for(shop.sessions.redis.ping(), timeout=settings.HEALTH_CHECK_TIMEOUT)
        deps["redis"] = "ok"
    except Exception as e:
        deps["redis"] = f"error: {str(e)[:100]}"
        healthy = False

    return JSONResponse(
        content={
            "status": "healthy" if healthy else "degraded",
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "dependencies": deps,
        },
        status_code=200 if healthy else 503,
    )
