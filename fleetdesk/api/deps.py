"""
FastAPI dependencies shared by the routers.
"""
from typing import AsyncIterator, Optional

from fastapi import Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..redis_service import RedisService, redis_service
from ..schemas import Actor
from ..services.bookings import BookingLifecycle

ROLES = ("customer", "admin")


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.session_factory() as session:
        yield session


def get_lifecycle(request: Request) -> BookingLifecycle:
    return request.app.state.lifecycle


async def get_redis(request: Request) -> Optional[RedisService]:
    """Redis service, or None when the app runs with local locks."""
    if not request.app.state.settings.redis_enabled:
        return None
    await redis_service.ensure_connected()
    return redis_service


def get_actor(
    renter_id: Optional[str] = Header(None, alias="X-Renter-Id"),
    role: str = Header("customer", alias="X-Renter-Role"),
) -> Actor:
    """Identity is verified upstream and forwarded in headers."""
    if not renter_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "UNAUTHENTICATED", "message": "X-Renter-Id header is required"},
        )
    role = role.lower()
    if role not in ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "VALIDATION_ERROR", "message": f"Unknown role: {role}"},
        )
    return Actor(renter_id=renter_id, role=role)
