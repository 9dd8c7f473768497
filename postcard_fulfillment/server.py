"""Build the service and its ASGI application from settings."""

from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from .api import create_app
from .core import FulfillmentCore


def build_core(settings: dict[str, object]) -> FulfillmentCore:
    """Create a :class:`FulfillmentCore` configured from ``settings``."""
    interval = settings.get("scheduler_interval")
    return FulfillmentCore(
        db_path=settings.get("db_path"),
        settings=settings,
        start_active=bool(settings.get("scheduler_active")),
        scheduler_interval=float(interval) if interval is not None else 300.0,
    )


def build_app(settings: dict[str, object], service: FulfillmentCore | None = None) -> FastAPI:
    """Return the FastAPI app whose lifespan starts and stops ``service``."""
    service = service or build_core(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    return create_app(
        service,
        api_token=settings.get("api_token"),
        lifespan=lifespan,
        webhook_token=settings.get("webhook_token"),
        cron_secret=settings.get("cron_secret"),
    )


def serve(settings: dict[str, object]) -> None:
    """Run the HTTP service until interrupted."""
    app = build_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
