from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from models.rental_models import Booking
from services.errors import InvalidDownPayment, InvalidStatus
from services.policy import BOOKING_STATUSES, SETTLED_STATUSES, BookingPolicy


LOGGER = logging.getLogger("rental_engine.payment")

KEEP_WHEN_SETTLED = frozenset({"rented", "finished"})


@dataclass(frozen=True)
class PaymentState:
    status: str
    grand_total: int
    down_payment: int
    remaining_payment: int
    cancellation_fee: int

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "grandTotal": self.grand_total,
            "downPayment": self.down_payment,
            "remainingPayment": self.remaining_payment,
            "cancellationFee": self.cancellation_fee,
        }


def normalize_status(raw: str | None) -> str:
    status = (raw or "").strip().lower()
    if status not in BOOKING_STATUSES:
        raise InvalidStatus(f"Unknown booking status {raw!r}; expected one of {', '.join(BOOKING_STATUSES)}.")
    return status


def remaining_payment(grand_total: int, down_payment: int) -> int:
    return max(0, int(grand_total) - int(down_payment))


def down_payment_range(grand_total: int, policy: BookingPolicy) -> tuple[int, int]:
    total = max(0, int(grand_total))
    return policy.min_down_payment(total), total


def validate_down_payment(grand_total: int, amount: int, policy: BookingPolicy) -> None:
    minimum, maximum = down_payment_range(grand_total, policy)
    value = int(amount)
    if value == 0:
        return
    if value < 0 or value < minimum or value > maximum:
        raise InvalidDownPayment(value, minimum, maximum)


def infer_status(down_payment: int, grand_total: int, current_status: str, policy: BookingPolicy) -> str:
    minimum = policy.min_down_payment(grand_total)
    if down_payment <= 0:
        return "cancelled"
    if down_payment < minimum:
        return "cancelled"
    if down_payment < grand_total:
        return "pending"
    if current_status in KEEP_WHEN_SETTLED:
        return current_status
    return "paid"


def snapshot(booking: Booking) -> PaymentState:
    return PaymentState(
        status=booking.Status,
        grand_total=int(booking.GrandTotal or 0),
        down_payment=int(booking.DownPayment or 0),
        remaining_payment=int(booking.RemainingPayment or 0),
        cancellation_fee=int(booking.CancellationFee or 0),
    )


def _touch(booking: Booking) -> None:
    booking.RemainingPayment = remaining_payment(booking.GrandTotal or 0, booking.DownPayment or 0)
    booking.UpdatedDate = datetime.now()


def apply_grand_total(booking: Booking, grand_total: int, policy: BookingPolicy) -> None:
    booking.GrandTotal = max(0, int(grand_total))
    booking.CancellationFee = policy.cancellation_fee(booking.GrandTotal)
    _touch(booking)


def set_status(booking: Booking, new_status: str, policy: BookingPolicy) -> PaymentState:
    """Explicit status action. Settled states force the down payment to the grand total."""
    status = normalize_status(new_status)
    grand_total = int(booking.GrandTotal or 0)
    if status in SETTLED_STATUSES:
        booking.DownPayment = grand_total
    elif status == "pending":
        minimum, _ = down_payment_range(grand_total, policy)
        if int(booking.DownPayment or 0) < minimum:
            raise InvalidDownPayment(int(booking.DownPayment or 0), minimum, grand_total)
    previous = booking.Status
    booking.Status = status
    _touch(booking)
    LOGGER.info("Status set booking=%s %s->%s down_payment=%s", booking.BookingID, previous, status, booking.DownPayment)
    return snapshot(booking)


def on_down_payment_edited(booking: Booking, amount: int, policy: BookingPolicy) -> PaymentState:
    grand_total = int(booking.GrandTotal or 0)
    try:
        validate_down_payment(grand_total, amount, policy)
    except InvalidDownPayment:
        LOGGER.warning("Down payment rejected booking=%s amount=%s grand_total=%s", booking.BookingID, amount, grand_total)
        raise
    booking.DownPayment = int(amount)
    previous = booking.Status
    booking.Status = infer_status(booking.DownPayment, grand_total, previous, policy)
    _touch(booking)
    LOGGER.info(
        "Down payment set booking=%s amount=%s status %s->%s",
        booking.BookingID,
        booking.DownPayment,
        previous,
        booking.Status,
    )
    return snapshot(booking)


def revalidate_payment(booking: Booking, policy: BookingPolicy) -> PaymentState:
    """Check the stored down payment against a freshly computed grand total.

    The down payment is kept unless it now exceeds the grand total, in which
    case it is capped. Bookings that fall below the minimum are cancelled;
    rented/finished bookings keep their status otherwise.
    """
    grand_total = int(booking.GrandTotal or 0)
    down_payment = int(booking.DownPayment or 0)
    if down_payment > grand_total:
        LOGGER.warning(
            "Down payment exceeds repriced total booking=%s down_payment=%s grand_total=%s",
            booking.BookingID,
            down_payment,
            grand_total,
        )
        down_payment = grand_total
        booking.DownPayment = down_payment

    current = booking.Status
    if current != "cancelled":
        inferred = infer_status(down_payment, grand_total, current, policy)
        if inferred != "cancelled" and current in KEEP_WHEN_SETTLED:
            inferred = current
        if inferred == "cancelled" and current == "rented":
            LOGGER.warning(
                "Rented booking cancelled by repricing booking=%s down_payment=%s grand_total=%s units released while out",
                booking.BookingID,
                down_payment,
                grand_total,
            )
        elif inferred != current:
            LOGGER.info("Status revalidated booking=%s %s->%s", booking.BookingID, current, inferred)
        booking.Status = inferred
    _touch(booking)
    return snapshot(booking)


def payment_summary(booking: Booking, policy: BookingPolicy) -> dict:
    grand_total = int(booking.GrandTotal or 0)
    down_payment = int(booking.DownPayment or 0)
    remaining = remaining_payment(grand_total, down_payment)
    if booking.Status == "cancelled":
        state = "cancelled"
    elif remaining <= 0:
        state = "paid"
    elif down_payment > 0:
        state = "partial"
    else:
        state = "unpaid"
    minimum, maximum = down_payment_range(grand_total, policy)
    return {
        "state": state,
        "grandTotal": grand_total,
        "downPayment": down_payment,
        "remainingPayment": remaining,
        "cancellationFee": int(booking.CancellationFee or 0),
        "minDownPayment": minimum,
        "maxDownPayment": maximum,
        "percentagePaid": round(down_payment * 100 / grand_total, 1) if grand_total > 0 else 0,
    }
