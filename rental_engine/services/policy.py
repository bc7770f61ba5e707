from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping


BOOKING_STATUSES = ("pending", "paid", "cancelled", "rented", "finished")
ACTIVE_STATUSES = frozenset({"pending", "paid", "rented"})
SETTLED_STATUSES = frozenset({"paid", "rented", "finished"})


@dataclass(frozen=True)
class BookingPolicy:
    min_down_payment_percent: int = 50
    cancellation_fee_percent: int = 50
    allocation_retries: int = 1

    def min_down_payment(self, grand_total: int) -> int:
        return max(0, int(grand_total)) * self.min_down_payment_percent // 100

    def cancellation_fee(self, grand_total: int) -> int:
        return max(0, int(grand_total)) * self.cancellation_fee_percent // 100


def _int_env(environ: Mapping[str, str], name: str, default: int, lower: int, upper: int) -> int:
    raw = (environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc
    if value < lower or value > upper:
        raise RuntimeError(f"Environment variable {name} must be between {lower} and {upper}, got {value}")
    return value


def load_booking_policy(environ: Mapping[str, str] | None = None) -> BookingPolicy:
    env = os.environ if environ is None else environ
    return BookingPolicy(
        min_down_payment_percent=_int_env(env, "BOOKING_MIN_DOWN_PAYMENT_PERCENT", 50, 0, 100),
        cancellation_fee_percent=_int_env(env, "BOOKING_CANCELLATION_FEE_PERCENT", 50, 0, 100),
        allocation_retries=_int_env(env, "BOOKING_ALLOCATION_RETRIES", 1, 0, 1),
    )
