from __future__ import annotations

import json
import secrets
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.rental_models import Booking, BookingItem, ProductUnit, UnitAssignment
from services.errors import BookingNotFound, LineItemNotFound
from services.policy import ACTIVE_STATUSES
from services.targets import BundleTarget, DateRange, ProductTarget, Target


BOOKING_NUMBER_PREFIX = "GPR"


def generate_booking_number(db: Session, prefix: str = BOOKING_NUMBER_PREFIX) -> str:
    token = (prefix or BOOKING_NUMBER_PREFIX).upper()
    while True:
        candidate = f"{token}{secrets.randbelow(100000):05d}"
        exists = db.execute(
            select(Booking.BookingID).where(Booking.BookingNumber == candidate)
        ).first()
        if not exists:
            return candidate


def get_booking(db: Session, booking_id: int) -> Booking:
    stmt = (
        select(Booking)
        .options(selectinload(Booking.Items).selectinload(BookingItem.Assignments))
        .options(selectinload(Booking.Promo))
        .where(Booking.BookingID == booking_id)
        .where(Booking.DeletedAt.is_(None))
    )
    booking = db.execute(stmt).scalars().first()
    if not booking:
        raise BookingNotFound(booking_id)
    return booking


def get_line_item(booking: Booking, item_id: int) -> BookingItem:
    for item in booking.Items:
        if item.BookingItemID == item_id:
            return item
    raise LineItemNotFound(booking.BookingID, item_id)


def booking_range(booking: Booking) -> DateRange:
    return DateRange.of(booking.StartDate, booking.EndDate)


def target_of(item: BookingItem) -> Target:
    if item.BundleID is not None:
        return BundleTarget(int(item.BundleID))
    return ProductTarget(int(item.ProductID))


def apply_target(item: BookingItem, target: Target) -> None:
    if isinstance(target, BundleTarget):
        item.BundleID = target.bundle_id
        item.ProductID = None
    else:
        item.ProductID = target.product_id
        item.BundleID = None


def assigned_unit_ids(item: BookingItem) -> list[int]:
    return sorted(int(assignment.UnitID) for assignment in item.Assignments)


def assigned_units_by_product(item: BookingItem) -> dict[int, list[int]]:
    grouped: dict[int, list[int]] = {}
    for assignment in item.Assignments:
        grouped.setdefault(int(assignment.ProductID), []).append(int(assignment.UnitID))
    return {product_id: sorted(unit_ids) for product_id, unit_ids in grouped.items()}


def _active_overlap_stmt(date_range: DateRange):
    return (
        select(UnitAssignment.ProductID, UnitAssignment.UnitID, UnitAssignment.BookingItemID, Booking.StartDate, Booking.EndDate)
        .join(BookingItem, BookingItem.BookingItemID == UnitAssignment.BookingItemID)
        .join(Booking, Booking.BookingID == BookingItem.BookingID)
        .where(Booking.Status.in_(sorted(ACTIVE_STATUSES)))
        .where(Booking.DeletedAt.is_(None))
        .where(Booking.StartDate <= date_range.end)
        .where(Booking.EndDate >= date_range.start)
    )


def busy_unit_ids(
    db: Session,
    product_ids: Iterable[int],
    date_range: DateRange,
    exclude_item_ids: Iterable[int] = (),
) -> dict[int, set[int]]:
    wanted = sorted({int(pid) for pid in product_ids})
    busy: dict[int, set[int]] = {pid: set() for pid in wanted}
    if not wanted:
        return busy
    excluded = {int(iid) for iid in exclude_item_ids if iid is not None}
    stmt = _active_overlap_stmt(date_range).where(UnitAssignment.ProductID.in_(wanted))
    for product_id, unit_id, item_id, _, _ in db.execute(stmt).all():
        if item_id in excluded:
            continue
        busy.setdefault(int(product_id), set()).add(int(unit_id))
    return busy


def blocking_windows(
    db: Session,
    product_id: int,
    date_range: DateRange,
    exclude_item_ids: Iterable[int] = (),
) -> list[tuple[int, DateRange]]:
    excluded = {int(iid) for iid in exclude_item_ids if iid is not None}
    stmt = _active_overlap_stmt(date_range).where(UnitAssignment.ProductID == product_id)
    windows = []
    for _, unit_id, item_id, start, end in db.execute(stmt).all():
        if item_id in excluded:
            continue
        windows.append((int(unit_id), DateRange.of(start, end)))
    return windows


def lock_product_units(db: Session, product_ids: Iterable[int]) -> None:
    wanted = sorted({int(pid) for pid in product_ids})
    if not wanted:
        return
    # Row locks on the candidate units serialize competing check-then-assign
    # sequences for the same products (no-op on SQLite).
    db.execute(
        select(ProductUnit.UnitID)
        .where(ProductUnit.ProductID.in_(wanted))
        .order_by(ProductUnit.UnitID)
        .with_for_update()
    ).all()


def replace_assignments(db: Session, item: BookingItem, units_by_product: dict[int, list[int]]) -> None:
    wanted = {(int(pid), int(uid)) for pid, uids in units_by_product.items() for uid in uids}
    current = {(int(a.ProductID), int(a.UnitID)): a for a in item.Assignments}
    for key, assignment in current.items():
        if key not in wanted:
            item.Assignments.remove(assignment)
    for product_id, unit_id in sorted(wanted):
        if (product_id, unit_id) in current:
            continue
        item.Assignments.append(UnitAssignment(ProductID=product_id, UnitID=unit_id))


def conflicting_unit_ids(db: Session, item: BookingItem, date_range: DateRange) -> list[int]:
    unit_ids = assigned_unit_ids(item)
    if not unit_ids:
        return []
    stmt = (
        _active_overlap_stmt(date_range)
        .where(UnitAssignment.UnitID.in_(unit_ids))
        .where(UnitAssignment.BookingItemID != item.BookingItemID)
    )
    return sorted({int(row[1]) for row in db.execute(stmt).all()})


def load_additional_services(booking: Booking) -> list[dict]:
    raw = (booking.AdditionalServices or "").strip()
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (ValueError, json.JSONDecodeError):
        return []
    if not isinstance(parsed, list):
        return []
    services = []
    for entry in parsed:
        if not isinstance(entry, dict):
            continue
        try:
            amount = int(entry.get("amount") or 0)
        except (TypeError, ValueError):
            continue
        services.append({"name": str(entry.get("name") or "Additional service"), "amount": max(0, amount)})
    return services


def store_additional_services(booking: Booking, services: list[dict]) -> None:
    booking.AdditionalServices = json.dumps(
        [{"name": entry["name"], "amount": int(entry["amount"])} for entry in services],
        ensure_ascii=False,
    )


def soft_delete_booking(booking: Booking) -> None:
    booking.DeletedAt = datetime.now()
    booking.UpdatedDate = datetime.now()


def serialize_booking(booking: Booking) -> dict:
    items = []
    for item in booking.Items:
        target = target_of(item)
        items.append(
            {
                "bookingItemID": item.BookingItemID,
                "targetType": target.kind,
                "targetID": target.target_id,
                "productID": item.ProductID,
                "bundleID": item.BundleID,
                "quantity": item.Quantity,
                "version": item.Version,
                "assignedUnitIDs": assigned_unit_ids(item),
                "assignedUnitsByProduct": {
                    str(product_id): unit_ids for product_id, unit_ids in assigned_units_by_product(item).items()
                },
            }
        )
    return {
        "bookingID": booking.BookingID,
        "bookingNumber": booking.BookingNumber,
        "customerID": booking.CustomerID,
        "startDate": booking.StartDate,
        "endDate": booking.EndDate,
        "duration": booking.Duration,
        "promoID": booking.PromoID,
        "status": booking.Status,
        "grandTotal": booking.GrandTotal,
        "downPayment": booking.DownPayment,
        "remainingPayment": booking.RemainingPayment,
        "cancellationFee": booking.CancellationFee,
        "additionalServices": load_additional_services(booking),
        "notes": booking.Notes,
        "createdDate": booking.CreatedDate,
        "updatedDate": booking.UpdatedDate,
        "items": items,
    }
