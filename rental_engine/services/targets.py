from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Union

from services.errors import InvalidDateRange


@dataclass(frozen=True)
class ProductTarget:
    product_id: int
    kind = "product"

    @property
    def target_id(self) -> int:
        return self.product_id

    def label(self) -> str:
        return f"product {self.product_id}"


@dataclass(frozen=True)
class BundleTarget:
    bundle_id: int
    kind = "bundle"

    @property
    def target_id(self) -> int:
        return self.bundle_id

    def label(self) -> str:
        return f"bundle {self.bundle_id}"


Target = Union[ProductTarget, BundleTarget]


def make_target(kind: str, target_id: int) -> Target:
    normalized = (kind or "").strip().lower()
    if normalized == "product":
        return ProductTarget(int(target_id))
    if normalized in {"bundle", "bundling"}:
        return BundleTarget(int(target_id))
    raise ValueError(f"Unknown target type {kind!r}; expected 'product' or 'bundle'.")


def as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        # Stored dates are naive UTC; an offset on one end must not make the pair incomparable.
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    return datetime.combine(value, datetime.min.time())


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end < self.start:
            raise InvalidDateRange(f"End date {self.end.isoformat()} precedes start date {self.start.isoformat()}.")

    @classmethod
    def of(cls, start: date | datetime, end: date | datetime) -> "DateRange":
        return cls(as_datetime(start), as_datetime(end))

    def overlaps(self, other: "DateRange") -> bool:
        # Inclusive on both ends: same-day turnover counts as a conflict.
        return other.start <= self.end and self.start <= other.end

    @property
    def duration_days(self) -> int:
        return rental_duration(self.start, self.end)

    def days(self) -> list[date]:
        current = self.start.date()
        last = self.end.date()
        result = []
        while current <= last:
            result.append(current)
            current += timedelta(days=1)
        return result


def rental_duration(start: datetime, end: datetime) -> int:
    if end < start:
        raise InvalidDateRange(f"End date {end.isoformat()} precedes start date {start.isoformat()}.")
    return max(1, (end - start) // timedelta(days=1) + 1)
