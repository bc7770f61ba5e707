from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from services.catalog_service import allocatable_unit_ids, target_requirements
from services.errors import RentalEngineError
from services.ledger_service import blocking_windows, busy_unit_ids
from services.targets import DateRange, Target


@dataclass(frozen=True)
class ComponentAvailability:
    product_id: int
    required_per_unit: int
    available_unit_ids: tuple[int, ...]

    @property
    def available_count(self) -> int:
        return len(self.available_unit_ids)

    @property
    def supported_quantity(self) -> int:
        return self.available_count // max(1, self.required_per_unit)


@dataclass(frozen=True)
class Availability:
    target: Target
    date_range: DateRange
    found: bool
    components: tuple[ComponentAvailability, ...] = field(default_factory=tuple)

    @property
    def available_count(self) -> int:
        if not self.found or not self.components:
            return 0
        return max(0, min(component.supported_quantity for component in self.components))

    @property
    def available_unit_ids(self) -> list[int]:
        return sorted(uid for component in self.components for uid in component.available_unit_ids)

    def to_dict(self) -> dict:
        return {
            "targetType": self.target.kind,
            "targetID": self.target.target_id,
            "startDate": self.date_range.start,
            "endDate": self.date_range.end,
            "found": self.found,
            "availableCount": self.available_count,
            "availableUnitIDs": self.available_unit_ids,
            "components": [
                {
                    "productID": component.product_id,
                    "requiredPerUnit": component.required_per_unit,
                    "availableCount": component.available_count,
                    "availableUnitIDs": list(component.available_unit_ids),
                }
                for component in self.components
            ],
        }


def available_units(
    db: Session,
    target: Target,
    date_range: DateRange,
    exclude_item_ids: Iterable[int] = (),
) -> Availability:
    requirements = target_requirements(db, target)
    if not requirements:
        return Availability(target=target, date_range=date_range, found=requirements is not None)

    excluded = list(exclude_item_ids)
    busy = busy_unit_ids(db, [pid for pid, _ in requirements], date_range, excluded)
    components = []
    for product_id, required in requirements:
        taken = busy.get(product_id, set())
        free = tuple(uid for uid in allocatable_unit_ids(db, product_id) if uid not in taken)
        components.append(ComponentAvailability(product_id, required, free))
    return Availability(target=target, date_range=date_range, found=True, components=tuple(components))


def unavailable_dates(
    db: Session,
    target: Target,
    date_range: DateRange,
    exclude_item_ids: Iterable[int] = (),
) -> list[str]:
    requirements = target_requirements(db, target) or []
    excluded = list(exclude_item_ids)
    blocked: set[str] = set()
    for product_id, required in requirements:
        pool = set(allocatable_unit_ids(db, product_id))
        busy_by_day: dict[str, set[int]] = {}
        for unit_id, window in blocking_windows(db, product_id, date_range, excluded):
            for day in window.days():
                busy_by_day.setdefault(day.isoformat(), set()).add(unit_id)
        for day in date_range.days():
            key = day.isoformat()
            free = len(pool - busy_by_day.get(key, set()))
            if free < required:
                blocked.add(key)
    return sorted(blocked)


def check_cart_availability(db: Session, requests: Iterable[dict]) -> dict:
    results = []
    for request in requests:
        target = request["target"]
        quantity = max(1, int(request.get("quantity") or 1))
        try:
            date_range = DateRange.of(request["startDate"], request["endDate"])
        except RentalEngineError as exc:
            results.append(
                {
                    "targetType": target.kind,
                    "targetID": target.target_id,
                    "requestedQuantity": quantity,
                    "availableCount": 0,
                    "available": False,
                    "error": str(exc),
                }
            )
            continue
        availability = available_units(db, target, date_range)
        results.append(
            {
                **availability.to_dict(),
                "requestedQuantity": quantity,
                "available": availability.available_count >= quantity,
                "reference": request.get("reference"),
            }
        )

    available_items = sum(1 for entry in results if entry["available"])
    return {
        "allAvailable": available_items == len(results),
        "items": results,
        "summary": {
            "totalItems": len(results),
            "availableItems": available_items,
            "unavailableItems": len(results) - available_items,
        },
    }
