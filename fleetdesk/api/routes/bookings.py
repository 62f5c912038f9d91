"""
Bookings API: holds, confirmation, pickup, the active rental and return.
"""
from typing import Any, Dict, List, Optional
import hashlib
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from ...errors import BookingError
from ...models import BookingStatus
from ...ratelimit import RateLimit
from ...redis_service import RedisService
from ...schemas import (
    Actor,
    BookingView,
    CheckinRequest,
    ConfirmationResponse,
    ConfirmRequest,
    ContactlessPickupRequest,
    ExtendRequest,
    HoldRequest,
    HoldResponse,
    IncidentRequest,
    InspectionRequest,
    LocationUpdateRequest,
    ModifyRequest,
    PaymentView,
    PreparationRequest,
    ReturnRequest,
    SOSRequest,
    TrackingSampleRequest,
)
from ...services.bookings import BookingLifecycle
from ..deps import get_actor, get_lifecycle, get_redis

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


def _view(booking) -> BookingView:
    return BookingView.model_validate(booking)


@router.post(
    "/hold",
    response_model=HoldResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(RateLimit())],
)
async def place_hold(
    hold_request: HoldRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    redis: Optional[RedisService] = Depends(get_redis),
):
    """
    Hold a vehicle for the requested interval while the renter pays.

    If an Idempotency-Key header is provided, repeated requests with the same
    key (within 24h) return the original hold instead of creating another.

    Headers:
    - **Idempotency-Key**: Optional key for request idempotency
    """
    try:
        key_hash = None
        if idempotency_key and redis:
            # Scope keys per renter so two renters cannot collide
            key_hash = hashlib.sha256(f"{actor.renter_id}:{idempotency_key}".encode()).hexdigest()
            existing_result = await redis.get_idempotency_result(key_hash)
            if existing_result:
                logger.info(f"Returning cached hold for idempotency key: {idempotency_key}")
                existing_result["created_from_idempotency"] = True
                return HoldResponse(**existing_result)

        booking = await lifecycle.place_hold(actor, hold_request)
        response = HoldResponse(booking=_view(booking))

        if key_hash:
            await redis.store_idempotency_key(key_hash, response.model_dump(mode="json"))

        return response

    except (HTTPException, BookingError):
        raise
    except Exception as e:
        logger.error(f"Error creating hold: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create hold",
        )


@router.post("", response_model=BookingView, status_code=status.HTTP_201_CREATED)
async def request_booking(
    booking_request: HoldRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """Request a booking without holding the vehicle; confirm it to block inventory."""
    return _view(await lifecycle.request_booking(actor, booking_request))


@router.get("", response_model=List[BookingView])
async def list_bookings(
    booking_status: Optional[BookingStatus] = Query(None, alias="status"),
    all_renters: bool = Query(False, alias="all"),
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    bookings = await lifecycle.list_bookings(actor, status=booking_status, all_renters=all_renters)
    return [_view(booking) for booking in bookings]


@router.get("/{booking_id}", response_model=BookingView)
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return _view(await lifecycle.get_booking(actor, booking_id))


@router.post("/{booking_id}/confirm", response_model=ConfirmationResponse)
async def confirm_booking(
    booking_id: str,
    confirm_request: Optional[ConfirmRequest] = None,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """
    Confirm a hold or pending request and record the payment.

    Safe to retry: a booking that already has a payment returns it unchanged.
    """
    confirm_request = confirm_request or ConfirmRequest()
    booking, payment = await lifecycle.confirm(
        actor,
        booking_id,
        provider_reference=confirm_request.provider_reference,
        method=confirm_request.payment_method,
    )
    return ConfirmationResponse(booking=_view(booking), payment=PaymentView.model_validate(payment))


@router.post("/{booking_id}/prepare", response_model=BookingView)
async def prepare_vehicle(
    booking_id: str,
    preparation: PreparationRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return _view(await lifecycle.prepare(actor, booking_id, preparation))


@router.post("/{booking_id}/checkin", response_model=BookingView)
async def check_in(
    booking_id: str,
    checkin: CheckinRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return _view(await lifecycle.check_in(actor, booking_id, checkin))


@router.post("/{booking_id}/pickup", response_model=BookingView)
async def record_pickup(
    booking_id: str,
    inspection: InspectionRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return _view(await lifecycle.record_pickup(actor, booking_id, inspection))


@router.post("/{booking_id}/contactless-pickup", response_model=BookingView)
async def contactless_pickup(
    booking_id: str,
    pickup: ContactlessPickupRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return _view(await lifecycle.contactless_pickup(actor, booking_id, pickup))


@router.post("/{booking_id}/return", response_model=BookingView)
async def return_vehicle(
    booking_id: str,
    return_request: ReturnRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """Record the return inspection; the settled total replaces the booking total."""
    return _view(await lifecycle.return_vehicle(actor, booking_id, return_request))


@router.put("/{booking_id}/modify", response_model=BookingView)
async def modify_booking(
    booking_id: str,
    modification: ModifyRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return _view(await lifecycle.modify(actor, booking_id, modification))


@router.post("/{booking_id}/extend", response_model=BookingView)
async def extend_booking(
    booking_id: str,
    extension: ExtendRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return _view(await lifecycle.extend(actor, booking_id, extension))


@router.put("/{booking_id}/cancel", response_model=BookingView)
async def cancel_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return _view(await lifecycle.cancel(actor, booking_id))


@router.post("/{booking_id}/incident", response_model=BookingView)
async def report_incident(
    booking_id: str,
    incident: IncidentRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return _view(await lifecycle.report_incident(actor, booking_id, incident))


@router.post("/{booking_id}/sos", response_model=BookingView)
async def request_sos(
    booking_id: str,
    sos: SOSRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return _view(await lifecycle.request_sos(actor, booking_id, sos))


@router.post("/{booking_id}/location")
async def record_location(
    booking_id: str,
    update: LocationUpdateRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> Dict[str, Any]:
    return await lifecycle.record_location(actor, booking_id, update)


@router.post("/{booking_id}/tracking")
async def record_tracking(
    booking_id: str,
    sample: TrackingSampleRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> Dict[str, Any]:
    return await lifecycle.record_tracking(actor, booking_id, sample)
