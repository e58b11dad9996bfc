"""
ChatShop - FastAPI entrypoint
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from chatshop.api import bot, health, store, webhook
from chatshop.core.config import get_settings
from chatshop.core.errors import (
    ChatShopError, ClassifierTimeout, ClassifierUnavailable, ConcurrencyConflict,
    DuplicateConfirmation, InsufficientIngredient, NotFound,
)
from chatshop.core.redis_client import close_redis
from chatshop.db.database import AsyncSessionLocal, Base, engine
from chatshop.middleware.idempotency import IdempotencyMiddleware
from chatshop.schemas.api import error_envelope
from chatshop.services.container import build_shop

settings = get_settings()
logger = logging.getLogger(__name__)

ERROR_STATUS: list[tuple[type[ChatShopError], int]] = [
    (NotFound, 404),
    (InsufficientIngredient, 409),
    (DuplicateConfirmation, 409),
    (ConcurrencyConflict, 409),
    (ClassifierTimeout, 503),
    (ClassifierUnavailable, 503),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    app.state.shop = build_shop(AsyncSessionLocal)
    yield
    await app.state.shop.aclose()
    await close_redis()
    await engine.dispose()


app = FastAPI(
    title="ChatShop",
    description="Chat-bot storefront: conversational carts, FIFO ingredient ledger, order fulfillment.",
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)

app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True,
                   allow_methods=["*"], allow_headers=["*"])
app.add_middleware(IdempotencyMiddleware)

if settings.METRICS_ENABLED:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")


@app.exception_handler(ChatShopError)
async def domain_error_handler(request: Request, exc: ChatShopError):
    status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
    if status_code >= 500:
        logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(error_envelope(type(exc).__name__, str(exc)), status_code=status_code)


app.include_router(webhook.router)
app.include_router(bot.router)
app.include_router(store.router)
app.include_router(health.router)


@app.get("/")
async def root():
    return {"service": settings.SERVICE_NAME, "version": settings.SERVICE_VERSION}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("chatshop.main:app", host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
