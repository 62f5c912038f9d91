"""
FleetDesk reservation API
"""
import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from . import __version__
from .api.routes import availability, bookings, quotes
from .config import Settings, get_settings
from .database import build_engine, build_session_factory, close_db, engine as default_engine, init_db
from .errors import BookingError
from .integrations.notifications import NotificationService
from .integrations.payments import PaymentGateway
from .locks import build_lock_manager
from .ratelimit import rate_limiter
from .redis_service import redis_service
from .services.audit import AuditService
from .services.bookings import BookingLifecycle
from .services.loyalty import LoyaltyService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def sweep_expired_holds(lifecycle: BookingLifecycle, interval: int):
    """Periodically cancel stale holds. Availability never depends on this."""
    while True:
        await asyncio.sleep(interval)
        try:
            await lifecycle.expire_stale_holds()
        except Exception as e:
            logger.error(f"Hold sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    await init_db(app.state.engine)
    logger.info("Database tables ready")

    sweeper = None
    if settings.hold_sweep_interval_seconds > 0:
        sweeper = asyncio.create_task(
            sweep_expired_holds(app.state.lifecycle, settings.hold_sweep_interval_seconds)
        )

    yield

    if sweeper:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
    await rate_limiter.close()
    await redis_service.disconnect()
    await close_db(app.state.engine)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[AsyncEngine] = None,
    lifecycle: Optional[BookingLifecycle] = None,
) -> FastAPI:
    if engine is None:
        engine = default_engine if settings is None else build_engine(settings.database_url)
    settings = settings or get_settings()
    session_factory = build_session_factory(engine)

    if lifecycle is None:
        lifecycle = BookingLifecycle(
            session_factory,
            policy=settings.policy,
            lock_manager=build_lock_manager(settings.lock_backend, redis_service, settings.lock_timeout_seconds),
            notifier=NotificationService(),
            payments=PaymentGateway(),
            audit=AuditService(session_factory),
            loyalty=LoyaltyService(session_factory),
            admin_email=settings.admin_email,
        )

    app = FastAPI(title="FleetDesk Reservation API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.lifecycle = lifecycle

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint"""
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
            db_status = "healthy"
        except Exception as e:
            db_status = f"error: {str(e)}"

        redis_status = "disabled"
        if settings.redis_enabled:
            try:
                client = await redis_service.ensure_connected()
                await client.ping()
                redis_status = "healthy"
            except Exception as e:
                redis_status = f"error: {str(e)}"

        return {
            "status": "healthy" if db_status == "healthy" and redis_status in ("healthy", "disabled") else "unhealthy",
            "database": db_status,
            "redis": redis_status,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    app.include_router(availability.router)
    app.include_router(quotes.router)
    app.include_router(bookings.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("fleetdesk.server:app", host="0.0.0.0", port=8001, reload=False)
