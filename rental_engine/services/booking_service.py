from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models.rental_models import Booking, BookingItem, Promo
from services.allocation_service import assign_line_item, lock_units_for_items
from services.errors import (
    ConcurrentAllocationConflict,
    InvalidQuantity,
    RentalEngineError,
    TargetNotFound,
)
from services.ledger_service import (
    apply_target,
    assigned_unit_ids,
    booking_range,
    generate_booking_number,
    get_booking,
    get_line_item,
    serialize_booking,
    soft_delete_booking,
    store_additional_services,
    target_of,
)
from services.payment_service import (
    PaymentState,
    apply_grand_total,
    normalize_status,
    on_down_payment_edited,
    payment_summary,
    revalidate_payment,
    set_status,
    validate_down_payment,
)
from services.policy import ACTIVE_STATUSES, BookingPolicy
from services.pricing_service import PricingBreakdown, price_booking
from services.targets import DateRange, Target, as_datetime, rental_duration


LOGGER = logging.getLogger("rental_engine.bookings")

T = TypeVar("T")


@dataclass(frozen=True)
class LineItemRequest:
    target: Target
    quantity: int


def _require_quantity(quantity: int) -> int:
    value = int(quantity)
    if value < 1:
        raise InvalidQuantity(f"Quantity must be at least 1, got {quantity}.")
    return value


def _require_promo(db: Session, promo_id: int | None) -> None:
    if promo_id is not None and not db.get(Promo, promo_id):
        raise TargetNotFound("promo", promo_id)


def run_in_transaction(db: Session, policy: BookingPolicy, label: str, operation: Callable[[], T]) -> T:
    """Run ``operation`` and commit, retrying once from scratch on an allocation conflict.

    Every attempt re-reads its state, since the rollback discards the failed one.
    """
    attempts = 1 + max(0, policy.allocation_retries)
    for attempt in range(1, attempts + 1):
        try:
            result = operation()
            db.flush()
            db.commit()
            return result
        except StaleDataError as exc:
            db.rollback()
            conflict = ConcurrentAllocationConflict(reason=f"{label} touched a line item modified by another request")
            if attempt >= attempts:
                raise conflict from exc
            LOGGER.warning("Retrying %s after stale line item attempt=%s", label, attempt)
        except ConcurrentAllocationConflict:
            db.rollback()
            if attempt >= attempts:
                raise
            LOGGER.warning("Retrying %s after allocation conflict attempt=%s", label, attempt)
        except Exception:
            db.rollback()
            raise
    raise RuntimeError(f"{label} did not run")


def _reprice(db: Session, booking: Booking, policy: BookingPolicy) -> PricingBreakdown:
    breakdown = price_booking(db, booking)
    apply_grand_total(booking, breakdown.grand_total, policy)
    return breakdown


def _apply_schedule(booking: Booking, date_range: DateRange) -> None:
    booking.StartDate = date_range.start
    booking.EndDate = date_range.end
    booking.Duration = rental_duration(date_range.start, date_range.end)
    booking.UpdatedDate = datetime.now()


def _reallocate_all(db: Session, booking: Booking) -> None:
    db.flush()
    date_range = booking_range(booking)
    lock_units_for_items(db, booking.Items)
    for item in booking.Items:
        assign_line_item(db, item, date_range)


def describe_booking(db: Session, booking: Booking, policy: BookingPolicy) -> dict:
    payload = serialize_booking(booking)
    payload["pricing"] = price_booking(db, booking).to_dict()
    payload["payment"] = payment_summary(booking, policy)
    return payload


def create_booking(
    db: Session,
    policy: BookingPolicy,
    customer_id: int,
    start: date | datetime,
    end: date | datetime,
    items: Iterable[LineItemRequest],
    promo_id: int | None = None,
    down_payment: int | None = None,
    status: str | None = None,
    additional_services: Iterable[dict] = (),
    notes: str | None = None,
) -> Booking:
    requests = list(items)
    if not requests:
        raise InvalidQuantity("A booking needs at least one line item.")
    for request in requests:
        _require_quantity(request.quantity)
    date_range = DateRange.of(start, end)
    explicit_status = normalize_status(status) if status else None
    services = list(additional_services)

    def _operation() -> Booking:
        _require_promo(db, promo_id)
        booking = Booking(
            BookingNumber=generate_booking_number(db),
            CustomerID=customer_id,
            StartDate=date_range.start,
            EndDate=date_range.end,
            Duration=rental_duration(date_range.start, date_range.end),
            PromoID=promo_id,
            Status="pending",
            GrandTotal=0,
            DownPayment=0,
            RemainingPayment=0,
            CancellationFee=0,
            Notes=notes,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        store_additional_services(booking, services)
        db.add(booking)
        for request in requests:
            item = BookingItem(Quantity=int(request.quantity))
            apply_target(item, request.target)
            booking.Items.append(item)
        lock_units_for_items(db, booking.Items)
        for item in booking.Items:
            assign_line_item(db, item, date_range)

        _reprice(db, booking, policy)
        if explicit_status:
            if down_payment is not None:
                validate_down_payment(booking.GrandTotal, down_payment, policy)
                booking.DownPayment = int(down_payment)
            set_status(booking, explicit_status, policy)
        else:
            on_down_payment_edited(booking, int(down_payment or 0), policy)
        return booking

    booking = run_in_transaction(db, policy, "create booking", _operation)
    LOGGER.info(
        "Booking created booking=%s number=%s status=%s grand_total=%s",
        booking.BookingID,
        booking.BookingNumber,
        booking.Status,
        booking.GrandTotal,
    )
    return booking


def create_or_update_line_item(
    db: Session,
    policy: BookingPolicy,
    booking_id: int,
    target: Target,
    quantity: int,
    item_id: int | None = None,
    expected_version: int | None = None,
    date_range: DateRange | None = None,
) -> dict:
    wanted = _require_quantity(quantity)

    def _operation() -> dict:
        booking = get_booking(db, booking_id)
        reschedule = date_range is not None and date_range != booking_range(booking)
        if reschedule:
            _apply_schedule(booking, date_range)
        if item_id is None:
            item = BookingItem(Quantity=wanted)
            apply_target(item, target)
            booking.Items.append(item)
        else:
            item = get_line_item(booking, item_id)
            if expected_version is not None and int(item.Version) != int(expected_version):
                raise ConcurrentAllocationConflict(
                    reason=f"Line item {item_id} is at version {item.Version}, not {expected_version}"
                )
            if target_of(item) != target:
                apply_target(item, target)
            item.Quantity = wanted
        if reschedule:
            _reallocate_all(db, booking)
            unit_ids = assigned_unit_ids(item)
        else:
            unit_ids = assign_line_item(db, item, booking_range(booking))
        breakdown = _reprice(db, booking, policy)
        revalidate_payment(booking, policy)
        return {
            "bookingItemID": item.BookingItemID,
            "assignedUnitIDs": unit_ids,
            "pricing": breakdown.to_dict(),
        }

    return run_in_transaction(db, policy, "line item update", _operation)


def remove_line_item(db: Session, policy: BookingPolicy, booking_id: int, item_id: int) -> PricingBreakdown:
    def _operation() -> PricingBreakdown:
        booking = get_booking(db, booking_id)
        item = get_line_item(booking, item_id)
        if len(booking.Items) <= 1:
            raise InvalidQuantity("A booking must keep at least one line item.")
        booking.Items.remove(item)
        breakdown = _reprice(db, booking, policy)
        revalidate_payment(booking, policy)
        return breakdown

    return run_in_transaction(db, policy, "line item removal", _operation)


def update_schedule(
    db: Session,
    policy: BookingPolicy,
    booking_id: int,
    start: date | datetime,
    end: date | datetime,
) -> Booking:
    date_range = DateRange.of(start, end)

    def _operation() -> Booking:
        booking = get_booking(db, booking_id)
        _apply_schedule(booking, date_range)
        _reallocate_all(db, booking)
        _reprice(db, booking, policy)
        revalidate_payment(booking, policy)
        return booking

    return run_in_transaction(db, policy, "schedule update", _operation)


def set_promo(db: Session, policy: BookingPolicy, booking_id: int, promo_id: int | None) -> PricingBreakdown:
    def _operation() -> PricingBreakdown:
        _require_promo(db, promo_id)
        booking = get_booking(db, booking_id)
        booking.PromoID = promo_id
        breakdown = _reprice(db, booking, policy)
        revalidate_payment(booking, policy)
        return breakdown

    return run_in_transaction(db, policy, "promo update", _operation)


def set_additional_services(
    db: Session,
    policy: BookingPolicy,
    booking_id: int,
    services: Iterable[dict],
) -> PricingBreakdown:
    entries = list(services)

    def _operation() -> PricingBreakdown:
        booking = get_booking(db, booking_id)
        store_additional_services(booking, entries)
        breakdown = _reprice(db, booking, policy)
        revalidate_payment(booking, policy)
        return breakdown

    return run_in_transaction(db, policy, "additional services update", _operation)


def recompute_pricing(db: Session, policy: BookingPolicy, booking_id: int) -> PricingBreakdown:
    def _operation() -> PricingBreakdown:
        booking = get_booking(db, booking_id)
        breakdown = _reprice(db, booking, policy)
        revalidate_payment(booking, policy)
        return breakdown

    return run_in_transaction(db, policy, "pricing recompute", _operation)


def set_down_payment(db: Session, policy: BookingPolicy, booking_id: int, amount: int) -> PaymentState:
    def _operation() -> PaymentState:
        booking = get_booking(db, booking_id)
        was_active = booking.Status in ACTIVE_STATUSES
        state = on_down_payment_edited(booking, amount, policy)
        if not was_active and state.status in ACTIVE_STATUSES:
            _reallocate_all(db, booking)
        return state

    return run_in_transaction(db, policy, "down payment update", _operation)


def change_status(db: Session, policy: BookingPolicy, booking_id: int, new_status: str) -> PaymentState:
    status = normalize_status(new_status)

    def _operation() -> PaymentState:
        booking = get_booking(db, booking_id)
        if booking.Status not in ACTIVE_STATUSES and status in ACTIVE_STATUSES:
            # Units may have been booked elsewhere while this booking was inactive.
            _reallocate_all(db, booking)
        return set_status(booking, status, policy)

    return run_in_transaction(db, policy, "status change", _operation)


def bulk_change_status(db: Session, policy: BookingPolicy, booking_ids: Iterable[int], new_status: str) -> list[dict]:
    status = normalize_status(new_status)
    results = []
    for booking_id in booking_ids:
        try:
            state = change_status(db, policy, int(booking_id), status)
        except RentalEngineError as exc:
            LOGGER.warning("Bulk status change failed booking=%s status=%s error=%s", booking_id, status, exc)
            results.append({"bookingID": int(booking_id), "ok": False, "error": str(exc)})
            continue
        results.append({"bookingID": int(booking_id), "ok": True, **state.to_dict()})
    return results


def finish_expired_bookings(db: Session, policy: BookingPolicy, now: datetime | None = None) -> list[int]:
    cutoff = as_datetime(now) if now is not None else datetime.now()
    expired_ids = db.execute(
        select(Booking.BookingID)
        .where(Booking.Status == "rented")
        .where(Booking.DeletedAt.is_(None))
        .where(Booking.EndDate < cutoff)
        .order_by(Booking.BookingID)
    ).scalars().all()
    finished = []
    for booking_id in expired_ids:
        change_status(db, policy, booking_id, "finished")
        finished.append(int(booking_id))
    if finished:
        LOGGER.info("Finished expired bookings count=%s ids=%s", len(finished), finished)
    return finished


def delete_booking(db: Session, policy: BookingPolicy, booking_id: int) -> None:
    def _operation() -> None:
        booking = get_booking(db, booking_id)
        soft_delete_booking(booking)
        LOGGER.info("Booking soft-deleted booking=%s number=%s", booking.BookingID, booking.BookingNumber)

    run_in_transaction(db, policy, "booking deletion", _operation)
