"""FastAPI application instance."""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from newsletter_desk.api.envelope import ApiResponse, ok, register_exception_handlers
from newsletter_desk.api.routes import newsletter, stats, subscribers
from newsletter_desk.core.config import settings
from newsletter_desk.utils.logger import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - startup hook
    configure_logging()
    yield


app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(subscribers.router)
app.include_router(stats.router)
app.include_router(newsletter.router)


@app.get("/health", tags=["system"], response_model=ApiResponse)
async def health() -> ApiResponse:
    """Simple uptime check."""

    return ok({"status": "healthy", "version": settings.api_version})
