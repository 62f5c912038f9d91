"""
Booking lifecycle for vehicle reservations.

One state machine covers both the held flow (pending_hold -> confirmed) and
the direct request flow (pending -> confirmed), then pickup, the active rental,
return and settlement. Every transition runs in its own session transaction;
audit and notifications happen after the commit and never undo it.
"""
import secrets
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import BookingPolicy
from ..database import ensure_utc, utcnow
from ..errors import (
    ConflictError,
    ForbiddenError,
    HoldExpiredError,
    InvalidStateError,
    NotFoundError,
    PaymentError,
    ValidationError,
)
from ..integrations.notifications import NotificationService
from ..integrations.payments import PaymentGateway
from ..locks import LocalLockManager
from ..models import Booking, BookingStatus, Location, Payment, PaymentStatus, Renter, Vehicle, VehicleStatus
from ..pricing.money import DAY, rental_days, round2
from ..pricing.settlement import CancellationPolicy, SettlementCalculator
from ..schemas import (
    Actor,
    AddOnLine,
    AddOnSelection,
    BookingView,
    CheckinRequest,
    ContactlessPickupRequest,
    ExtendRequest,
    HoldRequest,
    IncidentRequest,
    InspectionRequest,
    LocationTerms,
    LocationUpdateRequest,
    ModifyRequest,
    PreparationRequest,
    PriceBreakdown,
    ReturnRequest,
    SOSRequest,
    TrackingSampleRequest,
)
from ..stages import (
    BookingStages,
    CancellationRecord,
    CheckinRecord,
    ExtensionRecord,
    IncidentReport,
    LocationUpdate,
    PickupInspection,
    PreparationRecord,
    ReturnInspection,
    SettlementRecord,
    SOSRecord,
    TrackingAlert,
    TrackingSample,
)
from .audit import AuditService
from .availability import AvailabilityService, is_hold_expired
from .loyalty import LoyaltyService
from .pricing import PricingService
from .tracking import haversine_km, location_alerts, rental_stats

logger = logging.getLogger(__name__)

MODIFIABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.PENDING_HOLD, BookingStatus.CONFIRMED)
CANCELLABLE_STATUSES = (
    BookingStatus.PENDING,
    BookingStatus.PENDING_HOLD,
    BookingStatus.CONFIRMED,
    BookingStatus.READY_FOR_PICKUP,
    BookingStatus.CHECKED_IN,
)


class BookingLifecycle:
    """Consolidated booking state machine."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        policy: Optional[BookingPolicy] = None,
        lock_manager=None,
        notifier: Optional[NotificationService] = None,
        payments: Optional[PaymentGateway] = None,
        audit: Optional[AuditService] = None,
        loyalty: Optional[LoyaltyService] = None,
        admin_email: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.policy = policy or BookingPolicy()
        self.locks = lock_manager or LocalLockManager()
        self.notifier = notifier or NotificationService()
        self.payments = payments or PaymentGateway()
        self.audit = audit or AuditService(session_factory)
        self.loyalty = loyalty or LoyaltyService(session_factory)
        self.admin_email = admin_email
        self.clock = clock
        self.settlement = SettlementCalculator(self.policy)
        self.cancellation = CancellationPolicy(self.policy)

    # Helpers
    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else self.clock()

    @staticmethod
    async def _load(session: AsyncSession, booking_id: str) -> Booking:
        booking = await session.get(Booking, booking_id)
        if not booking:
            raise NotFoundError("Booking not found", {"booking_id": booking_id})
        return booking

    @staticmethod
    def _authorize(actor: Actor, booking: Booking, admin_only: bool = False) -> None:
        if actor.is_admin:
            return
        if admin_only:
            raise ForbiddenError("Only staff can perform this action", {"booking_id": booking.id})
        if booking.renter_id != actor.renter_id:
            raise ForbiddenError("Not your booking", {"booking_id": booking.id})

    @staticmethod
    def _require_state(booking: Booking, allowed: Iterable[BookingStatus], action: str) -> None:
        allowed = tuple(allowed)
        if booking.status not in allowed:
            raise InvalidStateError(
                f"Cannot {action} a booking in status {booking.status.value}",
                {
                    "booking_id": booking.id,
                    "status": booking.status.value,
                    "allowed": [status.value for status in allowed],
                },
            )

    @staticmethod
    def _transition(booking: Booking, status: BookingStatus) -> None:
        logger.info(f"Booking {booking.id}: {booking.status.value} -> {status.value}")
        booking.status = status

    def _stages(self, booking: Booking) -> BookingStages:
        return BookingStages.from_json(booking.addons, tracking_capacity=self.policy.tracking_buffer_size)

    @staticmethod
    def _save_stages(booking: Booking, stages: BookingStages) -> None:
        # Reassign the whole document so the JSON column is flagged dirty
        booking.addons = stages.to_json()

    @staticmethod
    def _snapshot(booking: Booking) -> Dict[str, Any]:
        return BookingView.model_validate(booking).model_dump(mode="json")

    @staticmethod
    async def _renter_email(session: AsyncSession, renter_id: str) -> Optional[str]:
        renter = await session.get(Renter, renter_id)
        return renter.email if renter else None

    @staticmethod
    async def _vehicle(session: AsyncSession, vehicle_id: str) -> Vehicle:
        vehicle = await session.get(Vehicle, vehicle_id)
        if not vehicle:
            raise NotFoundError("Vehicle not found", {"vehicle_id": vehicle_id})
        return vehicle

    @staticmethod
    def _set_vehicle_status(vehicle: Vehicle, status: VehicleStatus) -> None:
        if vehicle.status != status:
            logger.info(f"Vehicle {vehicle.id}: {vehicle.status.value} -> {status.value}")
            vehicle.status = status

    @staticmethod
    def _apply_breakdown(booking: Booking, breakdown: PriceBreakdown, lines: List[AddOnLine]) -> None:
        booking.subtotal = breakdown.subtotal
        booking.fees = round2(breakdown.fees + breakdown.young_driver_fee)
        booking.taxes = breakdown.taxes
        booking.total_price = breakdown.total
        booking.promo_code = breakdown.promo_code
        booking.addon_lines = [{"addon_id": line.addon_id, "qty": line.qty} for line in lines]
        booking.price_breakdown = breakdown.model_dump(mode="json")

    async def _audit(self, booking_id: str, action: str, data: Optional[Dict[str, Any]] = None) -> None:
        await self.audit.log_event("booking", booking_id, action, data)

    async def _notify(self, event: str, send: Callable[[], Awaitable[Any]]) -> None:
        try:
            await send()
        except Exception as e:
            logger.warning(f"Notification {event} failed: {e}")

    async def _award_loyalty(self, booking: Booking) -> None:
        try:
            await self.loyalty.award_points(booking.renter_id, booking.total_price)
        except Exception as e:
            logger.warning(f"Failed to award loyalty points for booking {booking.id}: {e}")

    @asynccontextmanager
    async def _booking_scope(
        self,
        actor: Actor,
        booking_id: str,
        allowed: Optional[Iterable[BookingStatus]] = None,
        action: str = "update",
        admin_only: bool = False,
    ) -> AsyncIterator[Tuple[AsyncSession, Booking]]:
        """Lock, load, authorize and state-check a booking, in that order."""
        async with self.locks.hold(f"booking:{booking_id}"):
            async with self.session_factory() as session:
                booking = await self._load(session, booking_id)
                self._authorize(actor, booking, admin_only=admin_only)
                if allowed is not None:
                    self._require_state(booking, allowed, action)
                yield session, booking

    async def _expire_hold(
        self,
        session: AsyncSession,
        booking: Booking,
        now: datetime,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        expired_at = booking.hold_expires_at
        self._transition(booking, BookingStatus.CANCELLED)
        booking.hold_expires_at = None
        await session.commit()
        data = {"hold_expires_at": expired_at.isoformat(), "at": now.isoformat()}
        data.update(extra or {})
        await self._audit(booking.id, "hold_expired", data)

    def _validate_window(self, start: datetime, end: datetime, now: datetime) -> None:
        AvailabilityService.validate_interval(start, end)
        if start < now:
            raise ValidationError("Start date cannot be in the past", {"start_date": start.isoformat()})

    async def _ensure_available(
        self,
        session: AsyncSession,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> None:
        conflicts = await AvailabilityService.find_conflicts(
            session, vehicle_id, start, end, now, exclude_booking_id=exclude_booking_id
        )
        if conflicts:
            raise ConflictError(
                "Vehicle is not available for the requested dates",
                {"vehicle_id": vehicle_id, "conflicting_booking_ids": [b.id for b in conflicts]},
            )

    # Creation
    async def place_hold(self, actor: Actor, request: HoldRequest, now: Optional[datetime] = None) -> Booking:
        """Reserve a vehicle for HOLD_MINUTES while the renter pays."""
        return await self._create(actor, request, BookingStatus.PENDING_HOLD, "hold_created", now)

    async def request_booking(self, actor: Actor, request: HoldRequest, now: Optional[datetime] = None) -> Booking:
        """Direct booking request; it only blocks the vehicle once confirmed."""
        return await self._create(actor, request, BookingStatus.PENDING, "booking_requested", now)

    async def _create(
        self,
        actor: Actor,
        request: HoldRequest,
        status: BookingStatus,
        action: str,
        now: Optional[datetime],
    ) -> Booking:
        now = self._now(now)
        start = ensure_utc(request.start_date)
        end = ensure_utc(request.end_date)
        self._validate_window(start, end, now)

        async with self.session_factory() as session:
            renter = await session.get(Renter, actor.renter_id)
            if not renter:
                raise NotFoundError("Renter not found", {"renter_id": actor.renter_id})

            pricing = PricingService(session, self.policy)
            vehicle = await pricing.get_vehicle(request.vehicle_id)
            if vehicle.status in (VehicleStatus.MAINTENANCE, VehicleStatus.RETIRED):
                raise ConflictError(
                    f"Vehicle is {vehicle.status.value}",
                    {"vehicle_id": vehicle.id, "vehicle_status": vehicle.status.value},
                )
            pickup = await pricing.get_location(request.pickup_location_id, "Pickup location")
            await pricing.get_location(request.dropoff_location_id, "Dropoff location")

            async with self.locks.hold(f"vehicle:{vehicle.id}"):
                await self._ensure_available(session, vehicle.id, start, end, now)

                breakdown, lines = await pricing.price(
                    vehicle,
                    start,
                    end,
                    pickup,
                    request.dropoff_location_id,
                    addons=request.addons,
                    promo_code=request.promo_code,
                    renter_age=renter.age,
                )

                booking = Booking(
                    renter_id=renter.id,
                    vehicle_id=vehicle.id,
                    pickup_location_id=pickup.id,
                    dropoff_location_id=request.dropoff_location_id,
                    start_date=start,
                    end_date=end,
                    status=status,
                    payment_status=PaymentStatus.PENDING,
                    notes=request.notes,
                    addons={},
                )
                if status == BookingStatus.PENDING_HOLD:
                    booking.hold_expires_at = now + timedelta(minutes=self.policy.hold_minutes)
                self._apply_breakdown(booking, breakdown, lines)

                session.add(booking)
                await session.commit()

        logger.info(f"Created booking {booking.id} ({status.value}) for vehicle {vehicle.id}: ${booking.total_price:.2f}")
        await self._audit(booking.id, action, {"vehicle_id": vehicle.id, "total_price": booking.total_price})
        return booking

    # Confirmation
    async def confirm(
        self,
        actor: Actor,
        booking_id: str,
        provider_reference: Optional[str] = None,
        method: str = "credit_card",
        now: Optional[datetime] = None,
    ) -> Tuple[Booking, Payment]:
        """
        Confirm a hold or a pending request against a payment.

        Repeating the call for a booking that already has a payment returns
        that payment without charging again. The vehicle stays locked while
        the provider captures, and a hold that lapses during the capture is
        cancelled and refunded instead of confirmed.
        """
        pinned = now is not None
        now = self._now(now)
        async with self._booking_scope(actor, booking_id) as (session, booking):
            result = await session.execute(select(Payment).where(Payment.booking_id == booking.id))
            existing = result.scalar_one_or_none()
            if existing:
                logger.info(f"Booking {booking.id} already confirmed with payment {existing.id}")
                return booking, existing

            self._require_state(booking, (BookingStatus.PENDING_HOLD, BookingStatus.PENDING), "confirm")

            if is_hold_expired(booking, now):
                await self._expire_hold(session, booking, now)
                raise HoldExpiredError(
                    "Hold has expired, please request a new quote",
                    {"booking_id": booking.id},
                )

            async with self.locks.hold(f"vehicle:{booking.vehicle_id}"):
                await self._ensure_available(
                    session, booking.vehicle_id, booking.start_date, booking.end_date, now,
                    exclude_booking_id=booking.id,
                )
                reference = await self._charge(booking, provider_reference, method)

                captured_at = now if pinned else self.clock()
                if is_hold_expired(booking, captured_at):
                    refund = await self._refund_lapsed(booking, reference)
                    await self._expire_hold(session, booking, captured_at, {"refund": refund})
                    raise HoldExpiredError(
                        "Hold expired while the payment was processed, please request a new quote",
                        {"booking_id": booking.id, "refund": refund},
                    )

                payment = await self._record_payment(session, booking, reference, method)

            email = await self._renter_email(session, booking.renter_id)

        await self._audit(booking.id, "confirmed", {"payment_id": payment.id, "amount": payment.amount})
        snapshot = self._snapshot(booking)
        await self._notify("booking_confirmation", lambda: self.notifier.send_booking_confirmation(email, snapshot))
        return booking, payment

    async def _charge(self, booking: Booking, provider_reference: Optional[str], method: str) -> str:
        if provider_reference:
            return provider_reference
        if booking.total_price <= 0:
            # Nothing to collect, e.g. a promo covering the whole rental
            reference = f"nocharge_{uuid.uuid4().hex[:16]}"
            logger.info(f"Booking {booking.id} totals $0.00, skipping capture: {reference}")
            return reference
        captured = await self.payments.capture(booking.total_price, booking.id, method)
        return captured.reference

    async def _refund_lapsed(self, booking: Booking, reference: str) -> Optional[str]:
        if booking.total_price <= 0 or reference.startswith("nocharge_"):
            return None
        try:
            refunded = await self.payments.refund(reference, booking.total_price, booking.id)
        except PaymentError as e:
            logger.error(f"Refund of {reference} for lapsed hold {booking.id} failed, needs manual follow-up: {e.message}")
            return None
        logger.info(f"Refunded {reference} for lapsed hold {booking.id}: {refunded.reference}")
        return refunded.reference

    async def _record_payment(self, session: AsyncSession, booking: Booking, reference: str, method: str) -> Payment:
        payment = Payment(
            booking_id=booking.id,
            amount=booking.total_price,
            method=method,
            status="completed",
            provider_reference=reference,
        )
        session.add(payment)

        self._transition(booking, BookingStatus.CONFIRMED)
        booking.payment_status = PaymentStatus.CAPTURED
        booking.hold_expires_at = None
        await session.commit()
        return payment

    # Pre-pickup
    async def prepare(
        self,
        actor: Actor,
        booking_id: str,
        request: PreparationRequest,
        now: Optional[datetime] = None,
    ) -> Booking:
        now = self._now(now)
        async with self._booking_scope(
            actor, booking_id, (BookingStatus.CONFIRMED,), "prepare", admin_only=True
        ) as (session, booking):
            stages = self._stages(booking)
            stages.record("preparation", PreparationRecord(**request.model_dump(), prepared_by=actor.renter_id, at=now))
            self._save_stages(booking, stages)

            vehicle = await self._vehicle(session, booking.vehicle_id)
            self._set_vehicle_status(vehicle, VehicleStatus.RESERVED)
            self._transition(booking, BookingStatus.READY_FOR_PICKUP)

            email = await self._renter_email(session, booking.renter_id)
            await session.commit()

        await self._audit(booking.id, "prepared", {"prepared_by": actor.renter_id})
        snapshot = self._snapshot(booking)
        await self._notify("pickup_reminder", lambda: self.notifier.send_pickup_reminder(email, snapshot))
        return booking

    async def check_in(
        self,
        actor: Actor,
        booking_id: str,
        request: CheckinRequest,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Online check-in; issues the one-time code used for contactless pickup."""
        now = self._now(now)
        if not request.agreement_signed:
            raise ValidationError("Rental agreement must be signed")
        if not request.documents:
            raise ValidationError("At least one document is required for check-in")

        async with self._booking_scope(
            actor, booking_id, (BookingStatus.CONFIRMED, BookingStatus.READY_FOR_PICKUP), "check in"
        ) as (session, booking):
            pickup_code = secrets.token_urlsafe(6)
            stages = self._stages(booking)
            stages.record(
                "checkin",
                CheckinRecord(
                    documents=request.documents,
                    agreement_signed=request.agreement_signed,
                    notes=request.notes,
                    pickup_code=pickup_code,
                    checked_in_at=now,
                ),
            )
            self._save_stages(booking, stages)
            self._transition(booking, BookingStatus.CHECKED_IN)

            email = await self._renter_email(session, booking.renter_id)
            await session.commit()

        await self._audit(booking.id, "checked_in", {"documents": len(request.documents)})
        snapshot = self._snapshot(booking)
        await self._notify(
            "digital_agreement", lambda: self.notifier.send_digital_agreement(email, snapshot, pickup_code)
        )
        return booking

    # Pickup
    async def record_pickup(
        self,
        actor: Actor,
        booking_id: str,
        request: InspectionRequest,
        now: Optional[datetime] = None,
    ) -> Booking:
        now = self._now(now)
        async with self._booking_scope(
            actor, booking_id, (BookingStatus.READY_FOR_PICKUP, BookingStatus.CHECKED_IN), "pick up"
        ) as (session, booking):
            await self._start_rental(session, booking, PickupInspection(method="counter", **request.model_dump(), at=now))
            await session.commit()

        await self._audit(booking.id, "picked_up", {"method": "counter"})
        return booking

    async def contactless_pickup(
        self,
        actor: Actor,
        booking_id: str,
        request: ContactlessPickupRequest,
        now: Optional[datetime] = None,
    ) -> Booking:
        now = self._now(now)
        async with self._booking_scope(
            actor, booking_id, (BookingStatus.CHECKED_IN,), "pick up"
        ) as (session, booking):
            stages = self._stages(booking)
            checkin = stages.get("checkin")
            if checkin is None or not secrets.compare_digest(checkin.pickup_code, request.pickup_code):
                raise ConflictError("Invalid pickup code", {"booking_id": booking.id})
            if checkin.code_used_at is not None:
                raise ConflictError("Pickup code has already been used", {"booking_id": booking.id})

            stages.replace("checkin", checkin.model_copy(update={"code_used_at": now}))
            self._save_stages(booking, stages)

            inspection = request.model_dump(exclude={"pickup_code"})
            await self._start_rental(session, booking, PickupInspection(method="contactless", **inspection, at=now))
            await session.commit()

        await self._audit(booking.id, "contactless_picked_up", {"method": "contactless"})
        return booking

    async def _start_rental(self, session: AsyncSession, booking: Booking, inspection: PickupInspection) -> None:
        stages = self._stages(booking)
        stages.record("pickup_inspection", inspection)
        self._save_stages(booking, stages)

        vehicle = await self._vehicle(session, booking.vehicle_id)
        self._set_vehicle_status(vehicle, VehicleStatus.RENTED)
        self._transition(booking, BookingStatus.ACTIVE)

    # Return
    async def return_vehicle(
        self,
        actor: Actor,
        booking_id: str,
        request: ReturnRequest,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Record the return inspection and settle the final total."""
        now = self._now(now)
        async with self._booking_scope(
            actor, booking_id, (BookingStatus.ACTIVE,), "return"
        ) as (session, booking):
            stages = self._stages(booking)
            pickup = stages.get("pickup_inspection")
            location = await session.get(Location, booking.pickup_location_id)

            settlement = self.settlement.settle(
                start=booking.start_date,
                end=booking.end_date,
                returned_at=now,
                original_total=booking.total_price,
                pickup_odometer=pickup.odometer if pickup else None,
                return_odometer=request.odometer,
                return_fuel_level=request.fuel_level,
                damage=request.damage,
                damage_cost=request.damage_cost,
                location=LocationTerms.model_validate(location) if location else None,
            )

            stages.record("return_inspection", ReturnInspection(**request.model_dump(), at=now))
            record = SettlementRecord(**settlement.model_dump(), returned_at=now)
            stages.record("settlement", record)
            self._save_stages(booking, stages)

            booking.total_price = settlement.final_total
            vehicle = await self._vehicle(session, booking.vehicle_id)
            self._set_vehicle_status(vehicle, VehicleStatus.MAINTENANCE if request.damage else VehicleStatus.AVAILABLE)
            self._transition(booking, BookingStatus.COMPLETED)

            email = await self._renter_email(session, booking.renter_id)
            await session.commit()

        logger.info(
            f"Settled booking {booking.id}: adjustments ${settlement.total_adjustments:.2f}, "
            f"final ${settlement.final_total:.2f}"
        )
        await self._audit(booking.id, "returned", {"final_total": settlement.final_total, "damage": request.damage})
        await self._award_loyalty(booking)
        snapshot = self._snapshot(booking)
        receipt = record.model_dump(mode="json")
        await self._notify("return_receipt", lambda: self.notifier.send_return_receipt(email, snapshot, receipt))
        return booking

    # Changes
    async def modify(
        self,
        actor: Actor,
        booking_id: str,
        request: ModifyRequest,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Change dates or locations and re-price; the stored add-ons and promo carry over."""
        now = self._now(now)
        async with self._booking_scope(actor, booking_id, MODIFIABLE_STATUSES, "modify") as (session, booking):
            if is_hold_expired(booking, now):
                await self._expire_hold(session, booking, now)
                raise HoldExpiredError("Hold has expired, please request a new quote", {"booking_id": booking.id})

            if request.promo_code and booking.promo_code and request.promo_code != booking.promo_code:
                raise ConflictError(
                    "A promo code has already been applied to this booking",
                    {"promo_code": booking.promo_code},
                )

            start = ensure_utc(request.start_date) if request.start_date else booking.start_date
            end = ensure_utc(request.end_date) if request.end_date else booking.end_date
            AvailabilityService.validate_interval(start, end)
            if request.start_date and start < now:
                raise ValidationError("Start date cannot be in the past", {"start_date": start.isoformat()})

            pricing = PricingService(session, self.policy)
            pickup_id = request.pickup_location_id or booking.pickup_location_id
            dropoff_id = request.dropoff_location_id or booking.dropoff_location_id
            pickup = await pricing.get_location(pickup_id, "Pickup location")
            await pricing.get_location(dropoff_id, "Dropoff location")
            vehicle = await pricing.get_vehicle(booking.vehicle_id)
            renter_age = await pricing.renter_age(booking.renter_id)

            previous = {
                "start_date": booking.start_date.isoformat(),
                "end_date": booking.end_date.isoformat(),
                "total_price": booking.total_price,
            }

            async with self.locks.hold(f"vehicle:{vehicle.id}"):
                await self._ensure_available(session, vehicle.id, start, end, now, exclude_booking_id=booking.id)

                selections = [AddOnSelection.model_validate(line) for line in booking.addon_lines or []]
                breakdown, lines = await pricing.price(
                    vehicle,
                    start,
                    end,
                    pickup,
                    dropoff_id,
                    addons=selections,
                    promo_code=booking.promo_code or request.promo_code,
                    renter_age=renter_age,
                )

                booking.start_date = start
                booking.end_date = end
                booking.pickup_location_id = pickup.id
                booking.dropoff_location_id = dropoff_id
                self._apply_breakdown(booking, breakdown, lines)
                await session.commit()

        logger.info(f"Modified booking {booking.id}: ${previous['total_price']:.2f} -> ${booking.total_price:.2f}")
        await self._audit(booking.id, "modified", {"previous": previous, "total_price": booking.total_price})
        return booking

    async def extend(
        self,
        actor: Actor,
        booking_id: str,
        request: ExtendRequest,
        now: Optional[datetime] = None,
    ) -> Booking:
        now = self._now(now)
        async with self._booking_scope(actor, booking_id, (BookingStatus.ACTIVE,), "extend") as (session, booking):
            current_end = booking.end_date
            if request.new_end_date:
                new_end = ensure_utc(request.new_end_date)
            elif request.additional_days:
                if request.additional_days <= 0:
                    raise ValidationError("Additional days must be positive")
                new_end = current_end + request.additional_days * DAY
            else:
                raise ValidationError("Either new_end_date or additional_days is required")

            if new_end <= current_end:
                raise ValidationError(
                    "New end date must be after the current end date",
                    {"end_date": current_end.isoformat(), "new_end_date": new_end.isoformat()},
                )

            vehicle = await self._vehicle(session, booking.vehicle_id)

            async with self.locks.hold(f"vehicle:{vehicle.id}"):
                await self._ensure_available(
                    session, vehicle.id, current_end, new_end, now, exclude_booking_id=booking.id
                )

                extra_days = rental_days(current_end, new_end)
                charge = round2(extra_days * vehicle.effective_daily_rate)

                stages = self._stages(booking)
                stages.append(
                    "extensions",
                    ExtensionRecord(previous_end=current_end, new_end=new_end, extra_days=extra_days, charge=charge, at=now),
                )
                self._save_stages(booking, stages)
                booking.end_date = new_end
                booking.total_price = round2(booking.total_price + charge)

                email = await self._renter_email(session, booking.renter_id)
                await session.commit()

        logger.info(f"Extended booking {booking.id} by {extra_days} day(s) for ${charge:.2f}")
        await self._audit(booking.id, "extended", {"extra_days": extra_days, "charge": charge})
        snapshot = self._snapshot(booking)
        await self._notify("booking_confirmation", lambda: self.notifier.send_booking_confirmation(email, snapshot))
        return booking

    async def cancel(self, actor: Actor, booking_id: str, now: Optional[datetime] = None) -> Booking:
        now = self._now(now)
        async with self._booking_scope(actor, booking_id, CANCELLABLE_STATUSES, "cancel") as (session, booking):
            previous_status = booking.status
            terms = self.cancellation.assess(booking.total_price, booking.start_date, now)

            stages = self._stages(booking)
            stages.record(
                "cancellation",
                CancellationRecord(
                    **terms.model_dump(),
                    cancelled_at=now,
                    cancelled_by=actor.renter_id,
                    previous_status=previous_status.value,
                ),
            )
            self._save_stages(booking, stages)

            if booking.payment_status in (PaymentStatus.CAPTURED, PaymentStatus.PAID) and terms.refund_amount > 0:
                booking.payment_status = PaymentStatus.REFUNDED

            if previous_status in (BookingStatus.READY_FOR_PICKUP, BookingStatus.CHECKED_IN):
                vehicle = await self._vehicle(session, booking.vehicle_id)
                if vehicle.status == VehicleStatus.RESERVED:
                    self._set_vehicle_status(vehicle, VehicleStatus.AVAILABLE)

            booking.hold_expires_at = None
            self._transition(booking, BookingStatus.CANCELLED)

            email = await self._renter_email(session, booking.renter_id)
            await session.commit()

        await self._audit(
            booking.id,
            "cancelled",
            {"previous_status": previous_status.value, "fee": terms.cancellation_fee, "refund": terms.refund_amount},
        )
        snapshot = self._snapshot(booking)
        terms_data = terms.model_dump(mode="json")
        await self._notify(
            "cancellation_notice", lambda: self.notifier.send_cancellation_notice(email, snapshot, terms_data)
        )
        return booking

    # Active rental
    async def report_incident(
        self,
        actor: Actor,
        booking_id: str,
        request: IncidentRequest,
        now: Optional[datetime] = None,
    ) -> Booking:
        now = self._now(now)
        async with self._booking_scope(
            actor, booking_id, (BookingStatus.ACTIVE,), "report an incident on"
        ) as (session, booking):
            incident = IncidentReport(**request.model_dump(), reported_at=now)
            stages = self._stages(booking)
            stages.append("incidents", incident)
            self._save_stages(booking, stages)

            if request.severity == "major" or request.type == "accident":
                vehicle = await self._vehicle(session, booking.vehicle_id)
                self._set_vehicle_status(vehicle, VehicleStatus.MAINTENANCE)
            await session.commit()

        logger.warning(f"Incident ({request.type}, {request.severity}) reported on booking {booking.id}")
        await self._audit(booking.id, "incident_reported", {"type": request.type, "severity": request.severity})
        snapshot = self._snapshot(booking)
        report = incident.model_dump(mode="json")
        await self._notify(
            "incident_report", lambda: self.notifier.send_incident_report(self.admin_email, snapshot, report)
        )
        return booking

    async def request_sos(
        self,
        actor: Actor,
        booking_id: str,
        request: SOSRequest,
        now: Optional[datetime] = None,
    ) -> Booking:
        now = self._now(now)
        async with self._booking_scope(
            actor, booking_id, (BookingStatus.ACTIVE,), "request assistance for"
        ) as (session, booking):
            sos = SOSRecord(note=request.note, location=request.location, at=now)
            stages = self._stages(booking)
            stages.append("sos_requests", sos)
            self._save_stages(booking, stages)
            await session.commit()

        logger.warning(f"SOS requested on booking {booking.id}")
        await self._audit(booking.id, "sos_requested", {"location": request.location})
        snapshot = self._snapshot(booking)
        data = sos.model_dump(mode="json")
        await self._notify("sos_alert", lambda: self.notifier.send_sos_alert(self.admin_email, snapshot, data))
        return booking

    async def record_location(
        self,
        actor: Actor,
        booking_id: str,
        request: LocationUpdateRequest,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Store a location update and report alerts plus rental stats."""
        now = self._now(now)
        async with self._booking_scope(
            actor, booking_id, (BookingStatus.ACTIVE,), "track"
        ) as (session, booking):
            update = LocationUpdate(
                latitude=request.latitude,
                longitude=request.longitude,
                timestamp=ensure_utc(request.timestamp) if request.timestamp else now,
                speed=request.speed,
                fuel_level=request.fuel_level,
                odometer=request.odometer,
            )
            stages = self._stages(booking)
            stages.append("location_updates", update)
            self._save_stages(booking, stages)

            alerts = location_alerts(
                self.policy, booking.end_date, now, speed=request.speed, fuel_level=request.fuel_level
            )

            pickup = stages.get("pickup_inspection")
            mileage = request.odometer
            if mileage is not None and pickup is not None and pickup.odometer is not None:
                mileage = mileage - pickup.odometer
            vehicle = await self._vehicle(session, booking.vehicle_id)
            stats = rental_stats(booking.start_date, booking.end_date, now, vehicle.effective_daily_rate, mileage)

            email = await self._renter_email(session, booking.renter_id)
            await session.commit()

        await self._audit(booking.id, "location_updated", {"alerts": alerts})
        if alerts:
            snapshot = self._snapshot(booking)
            await self._notify("booking_alert", lambda: self.notifier.send_booking_alert(email, snapshot, alerts))
        return {"booking_id": booking.id, "alerts": alerts, "stats": stats}

    async def record_tracking(
        self,
        actor: Actor,
        booking_id: str,
        request: TrackingSampleRequest,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = self._now(now)
        async with self._booking_scope(
            actor, booking_id, (BookingStatus.ACTIVE,), "track"
        ) as (session, booking):
            sample = TrackingSample(
                lat=request.lat,
                lng=request.lng,
                speed=request.speed,
                heading=request.heading,
                accuracy=request.accuracy,
                timestamp=ensure_utc(request.timestamp) if request.timestamp else now,
            )
            stages = self._stages(booking)
            last = stages.last_tracking_sample()
            distance = haversine_km(last.lat, last.lng, sample.lat, sample.lng) if last else 0.0
            log = stages.add_tracking_sample(sample, distance)

            new_alerts = []
            if sample.speed > self.policy.speed_limit_kmh:
                alert = TrackingAlert(
                    type="speeding",
                    message=f"Speed {sample.speed:.0f} km/h exceeds {self.policy.speed_limit_kmh:.0f} km/h",
                    timestamp=sample.timestamp,
                )
                log.alerts.append(alert)
                new_alerts.append(alert)

            self._save_stages(booking, stages)
            await session.commit()

        return {
            "booking_id": booking.id,
            "samples": len(log.locations),
            "total_distance": round2(log.total_distance),
            "alerts": [alert.model_dump(mode="json") for alert in new_alerts],
        }

    # Reads
    async def get_booking(self, actor: Actor, booking_id: str) -> Booking:
        async with self.session_factory() as session:
            booking = await self._load(session, booking_id)
            self._authorize(actor, booking)
            return booking

    async def list_bookings(
        self,
        actor: Actor,
        status: Optional[BookingStatus] = None,
        all_renters: bool = False,
    ) -> List[Booking]:
        """The actor's bookings; admins may ask for everyone's."""
        query = select(Booking).order_by(Booking.start_date.desc())
        if not (actor.is_admin and all_renters):
            query = query.where(Booking.renter_id == actor.renter_id)
        if status is not None:
            query = query.where(Booking.status == status)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # Housekeeping
    async def expire_stale_holds(self, now: Optional[datetime] = None) -> int:
        """
        Move holds past their expiry to cancelled. Returns how many were expired.

        Each hold is re-read under its booking lock, so a confirmation that
        is already in flight wins and the row is skipped.
        """
        now = self._now(now)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Booking.id).where(
                    Booking.status == BookingStatus.PENDING_HOLD,
                    Booking.hold_expires_at < now,
                )
            )
            candidates = list(result.scalars().all())

        expired = 0
        for booking_id in candidates:
            async with self.locks.hold(f"booking:{booking_id}"):
                async with self.session_factory() as session:
                    booking = await session.get(Booking, booking_id)
                    if booking is None or not is_hold_expired(booking, now):
                        continue
                    await self._expire_hold(session, booking, now)
                    expired += 1

        if expired:
            logger.info(f"Expired {expired} stale hold(s)")
        return expired
