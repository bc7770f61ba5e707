from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import replace

from sqlalchemy import inspect
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from models.rental_models import BookingItem
from services.availability_service import Availability, available_units
from services.catalog_service import target_requirements
from services.errors import ConcurrentAllocationConflict, InsufficientInventory, InvalidQuantity, TargetNotFound
from services.ledger_service import (
    assigned_unit_ids,
    assigned_units_by_product,
    conflicting_unit_ids,
    lock_product_units,
    replace_assignments,
    target_of,
)
from services.targets import BundleTarget, DateRange, Target


LOGGER = logging.getLogger("rental_engine.allocation")


def select_units(
    availability: Availability,
    quantity: int,
    current: Mapping[int, Iterable[int]] | None = None,
) -> dict[int, list[int]]:
    """Pick the units a line item should hold, per component product.

    Units the line item already holds are kept while they are still free, and
    the rest is filled from the lowest free unit ids, so an unchanged request
    always resolves to the same set. Nothing is selected unless every
    component can supply ``quantity * required_per_unit`` units.
    """
    if int(quantity) < 1:
        raise InvalidQuantity(f"Quantity must be at least 1, got {quantity}.")
    target = availability.target
    if not availability.found:
        raise TargetNotFound(target.kind, target.target_id)
    if not availability.components:
        raise InsufficientInventory(int(quantity), 0, target.label())

    for component in availability.components:
        needed = int(quantity) * component.required_per_unit
        if component.available_count < needed:
            raise InsufficientInventory(
                int(quantity),
                availability.available_count,
                target.label(),
                bottleneck_product_id=component.product_id if isinstance(target, BundleTarget) else None,
                shortfall=needed - component.available_count,
            )

    held = current or {}
    selection: dict[int, list[int]] = {}
    for component in availability.components:
        needed = int(quantity) * component.required_per_unit
        pool = sorted(component.available_unit_ids)
        free = set(pool)
        keep = sorted(uid for uid in held.get(component.product_id, ()) if uid in free)[:needed]
        kept = set(keep)
        fill = [uid for uid in pool if uid not in kept][: needed - len(keep)]
        selection[component.product_id] = sorted(keep + fill)
    return selection


def allocate(
    db: Session,
    target: Target,
    quantity: int,
    date_range: DateRange,
    exclude_item_ids: Iterable[int] = (),
    current: Mapping[int, Iterable[int]] | None = None,
    reserved_unit_ids: Iterable[int] = (),
) -> dict[int, list[int]]:
    availability = available_units(db, target, date_range, exclude_item_ids)
    reserved = set(reserved_unit_ids)
    if reserved:
        availability = replace(
            availability,
            components=tuple(
                replace(
                    component,
                    available_unit_ids=tuple(uid for uid in component.available_unit_ids if uid not in reserved),
                )
                for component in availability.components
            ),
        )
    try:
        return select_units(availability, quantity, current)
    except InsufficientInventory as exc:
        LOGGER.warning(
            "Allocation rejected target=%s requested=%s available=%s shortfall=%s bottleneck=%s",
            target.label(),
            exc.requested,
            exc.available,
            exc.shortfall,
            exc.bottleneck_product_id,
        )
        raise


def lock_units_for_items(db: Session, items: Iterable[BookingItem]) -> list[int]:
    """Lock the unit rows of every product the given line items draw on, in one statement.

    Multi-item writes take this before allocating item by item, so two bookings
    naming the same products in a different order still lock in ascending unit order.
    """
    product_ids: set[int] = set()
    for item in items:
        requirements = target_requirements(db, target_of(item))
        if requirements:
            product_ids.update(int(product_id) for product_id, _ in requirements)
    wanted = sorted(product_ids)
    lock_product_units(db, wanted)
    return wanted


def assign_line_item(db: Session, item: BookingItem, date_range: DateRange) -> list[int]:
    """Check availability and write the unit assignment for one line item.

    Runs inside the caller's transaction. Candidate unit rows are locked
    first, and after the flush the written units are re-checked against every
    other active overlapping assignment; a hit raises
    ``ConcurrentAllocationConflict`` and the caller must roll back.
    """
    target = target_of(item)
    requirements = target_requirements(db, target)
    if requirements is None:
        raise TargetNotFound(target.kind, target.target_id)
    lock_product_units(db, [product_id for product_id, _ in requirements])

    current = assigned_units_by_product(item)
    exclude = [item.BookingItemID] if item.BookingItemID is not None else []
    # Units held by other lines of the same booking are taken even while the booking is inactive.
    siblings = []
    if item.Booking is not None:
        for other in item.Booking.Items:
            if other is not item:
                siblings.extend(assigned_unit_ids(other))
    selection = allocate(db, target, int(item.Quantity or 0), date_range, exclude, current, siblings)

    if selection == current:
        return assigned_unit_ids(item)

    replace_assignments(db, item, selection)
    if inspect(item).persistent:
        flag_modified(item, "Quantity")
    try:
        db.flush()
    except StaleDataError as exc:
        LOGGER.warning("Line item changed concurrently item=%s", item.BookingItemID)
        raise ConcurrentAllocationConflict(reason=f"Line item {item.BookingItemID} was modified by another request") from exc

    conflicts = conflicting_unit_ids(db, item, date_range)
    if conflicts:
        LOGGER.warning("Allocation conflict item=%s units=%s", item.BookingItemID, conflicts)
        raise ConcurrentAllocationConflict(conflicts)

    unit_ids = assigned_unit_ids(item)
    LOGGER.info(
        "Allocated item=%s target=%s quantity=%s units=%s",
        item.BookingItemID,
        target.label(),
        item.Quantity,
        unit_ids,
    )
    return unit_ids
