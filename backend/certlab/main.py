"""
FastAPI application entry point

- builds the app, Sentry, CORS and the envelope exception handlers
- the lifespan owns the subscription lock manager, the billing provider
  client and the webhook retry queue (all on ``app.state``)

Run:
    uvicorn certlab.main:app --reload
"""
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from sqlmodel import Session

from certlab.api.errors import AppError
from certlab.api.main import api_router
from certlab.core.config import settings
from certlab.core.db import engine
from certlab.integrations.polar import create_polar_client
from certlab.services.subscription_lock import create_lock_manager
from certlab.services.webhook_handler import WebhookHandler
from certlab.services.webhook_retry import WebhookRetryQueue

logger = logging.getLogger(__name__)


def custom_generate_unique_id(route: APIRoute) -> str:
    return f"{route.tags[0]}-{route.name}"


def process_queued_webhook(event: dict[str, Any]) -> None:
    """Retry-queue callback: apply one event in its own session."""
    with Session(engine) as session:
        WebhookHandler(session).handle(event)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    lock_manager = create_lock_manager()
    lock_manager.start()
    app.state.lock_manager = lock_manager
    app.state.billing_provider = create_polar_client()

    retry_queue: WebhookRetryQueue | None = None
    if settings.WEBHOOK_RETRY_ENABLED:
        retry_queue = WebhookRetryQueue(process_queued_webhook)
        retry_queue.start()
    app.state.webhook_retry_queue = retry_queue

    try:
        yield
    finally:
        if retry_queue is not None:
            retry_queue.stop()
            status = retry_queue.queue_status()
            if status["total"]:
                logger.warning("Shutting down with %s webhook events still queued", status["total"])
        lock_manager.stop()


if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":  # pragma: no cover
    sentry_sdk.init(dsn=str(settings.SENTRY_DSN), enable_tracing=True)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    generate_unique_id_function=custom_generate_unique_id,
    lifespan=lifespan,
)


@app.exception_handler(AppError)
async def app_error_handler(_: Request, exc: AppError) -> JSONResponse:
    """
    Render business errors as ``{code, message, data: null}``.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "message": exc.message, "data": None},
    )


@app.exception_handler(HTTPException)
async def http_error_handler(_: Request, exc: HTTPException) -> JSONResponse:
    payload: dict[str, Any]
    if isinstance(exc.detail, dict) and {"code", "message"} <= set(exc.detail.keys()):
        payload = {"code": exc.detail.get("code"), "message": exc.detail.get("message")}
    else:
        payload = {"code": exc.status_code * 1000, "message": str(exc.detail)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": payload["code"], "message": payload["message"], "data": None},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "code": 422000,
            "message": "Validation error",
            "data": {"errors": exc.errors()},
        },
    )


if settings.all_cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.all_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(api_router, prefix=settings.API_V1_STR)
