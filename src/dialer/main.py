"""
FastAPI application entry point.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator
import asyncio
import hashlib

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sqlalchemy import text

from dialer.billing.config import get_billing_config
from dialer.billing.ledger import LedgerService
from dialer.billing.router import router as billing_router
from dialer.calls.scheduler import CallScheduler, CallSchedulerConfig
from dialer.campaigns.router import router as campaigns_router
from dialer.config import get_settings
from dialer.shared.database import db_manager
from dialer.shared.exceptions import (
    AppError,
    AuthenticationError,
    CampaignEditNotAllowedError,
    InsufficientCreditError,
    InvalidStatusTransitionError,
    NotFoundError,
    ValidationError,
)
from dialer.shared.logging import get_logger, setup_logging
from dialer.telephony.config import get_voice_provider_config
from dialer.telephony.factory import get_voice_provider
from dialer.telephony.webhooks.processor import WebhookEventProcessor
from dialer.telephony.webhooks.router import router as voice_webhooks_router
from dialer.webhook_errors.router import router as webhook_errors_router
from dialer.webhook_errors.service import WebhookErrorService

logger = get_logger(__name__)

Tick = Callable[[], Awaitable[None]]


def _advisory_lock_id(key: str) -> int:
    """Derive a stable signed bigint lock id from an arbitrary string key."""
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    # 63-bit positive space keeps the id inside a signed bigint
    return int.from_bytes(digest, "big", signed=False) & 0x7FFF_FFFF_FFFF_FFFF


async def _leader_supervisor(name: str, lock_key: str, interval_seconds: int, tick: Tick) -> None:
    """Run `tick` periodically only on the process holding the DB advisory lock.

    Safe under `uvicorn --workers N` and multiple replicas: standbys poll the
    lock and take over when the leader's connection goes away.
    """
    lock_id = _advisory_lock_id(lock_key)
    retry_sleep = 5

    logger.info(
        "Supervisor starting",
        extra={"supervisor": name, "interval_seconds": interval_seconds, "lock_id": lock_id},
    )

    while True:
        try:
            # Dedicated connection holds the advisory lock
            async with db_manager.engine.connect() as conn:
                res = await conn.execute(
                    text("SELECT pg_try_advisory_lock(:lock_id)"),
                    {"lock_id": lock_id},
                )
                if not bool(res.scalar()):
                    logger.info(
                        "Leader lock busy; standby",
                        extra={"supervisor": name, "lock_id": lock_id, "sleep_seconds": retry_sleep},
                    )
                    await asyncio.sleep(retry_sleep)
                    continue

                logger.info("Leader lock acquired", extra={"supervisor": name, "lock_id": lock_id})

                while True:
                    try:
                        await tick()
                    except asyncio.CancelledError:
                        raise
                    except Exception:
                        logger.exception("Supervisor tick failed", extra={"supervisor": name})

                    await asyncio.sleep(interval_seconds)

        except asyncio.CancelledError:
            logger.info("Supervisor cancelled; stopping", extra={"supervisor": name})
            raise
        except Exception:
            logger.exception(
                "Supervisor error; retrying",
                extra={"supervisor": name, "sleep_seconds": retry_sleep},
            )
            await asyncio.sleep(retry_sleep)


def _scheduler_tick() -> Tick:
    settings = get_settings()
    cfg = CallSchedulerConfig(
        interval_seconds=settings.scheduler_interval_seconds,
        stale_attempt_minutes=settings.stale_attempt_minutes,
        default_from_number=get_voice_provider_config().from_number,
    )
    provider = get_voice_provider()
    billing = get_billing_config()

    async def tick() -> None:
        async with db_manager.session() as session:
            scheduler = CallScheduler(
                session=session,
                provider=provider,
                ledger=LedgerService(session, billing),
                config=cfg,
            )
            await scheduler.run_once()

    return tick


async def redrive_webhook_event(payload: dict[str, Any]) -> None:
    """Re-run processing of a stored webhook body in a fresh session."""
    settings = get_settings()
    async with db_manager.session() as session:
        processor = WebhookEventProcessor(session, LedgerService(session, get_billing_config()), settings)
        await processor.process(payload)


async def _webhook_retry_tick() -> None:
    async with db_manager.session() as session:
        service = WebhookErrorService(session, get_settings())
        await service.sweep(redrive_webhook_event)
        await service.purge_resolved()


async def _stop_task(task: asyncio.Task[None] | None) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()

    logger.info("Application starting", extra={"env": settings.app_env})

    app.state.scheduler_task = None
    app.state.webhook_retry_task = None
    if settings.scheduler_enabled:
        app.state.scheduler_task = asyncio.create_task(
            _leader_supervisor(
                "scheduler",
                settings.scheduler_lock_key,
                settings.scheduler_interval_seconds,
                _scheduler_tick(),
            )
        )
        logger.info("Scheduler enabled; background task created")
    if settings.webhook_retry_sweep_enabled:
        app.state.webhook_retry_task = asyncio.create_task(
            _leader_supervisor(
                "webhook_retry",
                settings.webhook_retry_lock_key,
                settings.webhook_retry_interval_seconds,
                _webhook_retry_tick,
            )
        )
        logger.info("Webhook redrive sweep enabled; background task created")

    yield

    logger.info("Shutting down application")

    await _stop_task(app.state.scheduler_task)
    await _stop_task(app.state.webhook_retry_task)

    await db_manager.close()
    logger.info("Application shutdown complete")


def _error_response(status_code: int, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": {"code": exc.code, "message": exc.message}},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Outbound Dialer API",
        description="Outbound voice-agent campaign dialer",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Map domain exceptions to HTTP responses
    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return _error_response(status.HTTP_400_BAD_REQUEST, exc)

    @app.exception_handler(AuthenticationError)
    async def _authentication(_: Request, exc: AuthenticationError) -> JSONResponse:
        return _error_response(status.HTTP_401_UNAUTHORIZED, exc)

    @app.exception_handler(InvalidStatusTransitionError)
    async def _invalid_transition(_: Request, exc: InvalidStatusTransitionError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "detail": {
                    "code": exc.code,
                    "message": exc.reason,
                    "current_status": exc.current_status.value,
                    "valid_transitions": [s.value for s in exc.valid_transitions],
                }
            },
        )

    @app.exception_handler(CampaignEditNotAllowedError)
    async def _edit_not_allowed(_: Request, exc: CampaignEditNotAllowedError) -> JSONResponse:
        return _error_response(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(InsufficientCreditError)
    async def _insufficient_credit(_: Request, exc: InsufficientCreditError) -> JSONResponse:
        return _error_response(status.HTTP_409_CONFLICT, exc)

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(campaigns_router)
    app.include_router(billing_router)
    app.include_router(webhook_errors_router)
    app.include_router(voice_webhooks_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
