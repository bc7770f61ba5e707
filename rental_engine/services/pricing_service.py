from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Iterable

from sqlalchemy.orm import Session

from models.rental_models import Booking, Promo
from services.catalog_service import resolve_unit_price
from services.ledger_service import load_additional_services, target_of


LOGGER = logging.getLogger("rental_engine.pricing")

PROMO_TYPES = ("percentage", "nominal", "day_based")
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class PricedLine:
    unit_price: int
    quantity: int


@dataclass(frozen=True)
class AdditionalService:
    name: str
    amount: int


@dataclass(frozen=True)
class PromoRule:
    promo_type: str
    percent: Decimal = Decimal(0)
    amount: int = 0
    group_size: int = 1
    pay_days: int = 0
    days: tuple[str, ...] = ()
    active: bool = True
    name: str = ""

    def applies_on(self, rental_start: date | datetime | None) -> bool:
        if not self.active:
            return False
        if not self.days or rental_start is None:
            return True
        return WEEKDAYS[rental_start.weekday()] in self.days

    def describe(self) -> str:
        if self.promo_type == "percentage":
            return f"Discount {self.percent.normalize():f}%"
        if self.promo_type == "nominal":
            return f"Fixed discount {self.amount}"
        if self.promo_type == "day_based":
            return f"Rent {self.group_size} days, pay {self.pay_days} days"
        return "Special discount"


@dataclass(frozen=True)
class PricingBreakdown:
    subtotal: int
    duration: int
    total_with_duration: int
    discount: int
    additional_services: int
    grand_total: int
    explanation: str = "No promo applied"
    services: tuple[AdditionalService, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "duration": self.duration,
            "totalWithDuration": self.total_with_duration,
            "discount": self.discount,
            "additionalServices": self.additional_services,
            "grandTotal": self.grand_total,
            "explanation": self.explanation,
            "services": [{"name": s.name, "amount": s.amount} for s in self.services],
        }


def _coerce_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_decimal(value: Any) -> Decimal:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal(0)
    return parsed if parsed.is_finite() else Decimal(0)


def parse_promo_rule(
    promo_type: str,
    payload: Any,
    active: bool = True,
    name: str = "",
) -> PromoRule:
    if isinstance(payload, str):
        try:
            payload = json.loads(payload) if payload.strip() else {}
        except (ValueError, json.JSONDecodeError):
            payload = {}
    if isinstance(payload, list):
        payload = payload[0] if payload and isinstance(payload[0], dict) else {}
    if not isinstance(payload, dict):
        payload = {}

    kind = (promo_type or "").strip().lower()
    days = payload.get("days") or ()
    if not isinstance(days, (list, tuple)):
        days = ()
    normalized_days = tuple(str(day).strip().lower() for day in days if str(day).strip().lower() in WEEKDAYS)

    percent_raw = payload.get("percent", payload.get("percentage", 0))
    amount_raw = payload.get("amount", payload.get("nominal", 0))
    return PromoRule(
        promo_type=kind,
        percent=min(Decimal(100), max(Decimal(0), _coerce_decimal(percent_raw))),
        amount=max(0, _coerce_int(amount_raw)),
        group_size=max(1, _coerce_int(payload.get("group_size"), 1)),
        pay_days=max(0, _coerce_int(payload.get("pay_days"), 0)),
        days=normalized_days,
        active=bool(active),
        name=name,
    )


def promo_rule_from_model(promo: Promo | None) -> PromoRule | None:
    if promo is None:
        return None
    return parse_promo_rule(promo.PromoType, promo.Rules, active=bool(promo.IsActive), name=promo.PromoName or "")


def _discount_for(rule: PromoRule, subtotal: int, duration: int, total_with_duration: int) -> tuple[int, str]:
    if rule.promo_type == "percentage":
        raw = (Decimal(total_with_duration) * rule.percent / Decimal(100)).to_integral_value(rounding=ROUND_FLOOR)
        return int(raw), f"Discount {rule.percent.normalize():f}% applied"
    if rule.promo_type == "nominal":
        return min(rule.amount, total_with_duration), f"Fixed discount {rule.amount} applied"
    if rule.promo_type == "day_based":
        full_groups = duration // rule.group_size
        remainder = duration % rule.group_size
        days_to_pay = full_groups * rule.pay_days + remainder
        explanation = f"Rent {rule.group_size} days, pay {rule.pay_days} days applied {full_groups} time(s)"
        if remainder:
            explanation += f" + {remainder} day(s) at full price"
        return max(0, subtotal * duration - subtotal * days_to_pay), explanation
    return 0, f"Unknown promo type {rule.promo_type!r}"


def compute_grand_total(
    lines: Iterable[PricedLine],
    duration: int,
    promo: PromoRule | None = None,
    additional_services: Iterable[AdditionalService] = (),
    rental_start: date | datetime | None = None,
) -> PricingBreakdown:
    """The one pricing formula for a booking.

    ``subtotal`` is the per-day rate of all lines, multiplied by ``duration``
    before the promo discount is taken off. Add-on services are flat and are
    added after the discount. The result depends on nothing but the arguments.
    """
    days = max(1, int(duration))
    subtotal = sum(max(0, int(line.unit_price)) * max(0, int(line.quantity)) for line in lines)
    total_with_duration = subtotal * days

    discount = 0
    explanation = "No promo applied"
    if promo is not None:
        if not promo.active:
            explanation = "Promo inactive"
        elif not promo.applies_on(rental_start):
            explanation = "Promo not applicable on the rental start day"
        else:
            discount, explanation = _discount_for(promo, subtotal, days, total_with_duration)
    discount = min(max(0, discount), total_with_duration)

    services = tuple(
        AdditionalService(name=service.name, amount=max(0, int(service.amount))) for service in additional_services
    )
    services_total = sum(service.amount for service in services)
    grand_total = max(0, total_with_duration - discount) + services_total
    return PricingBreakdown(
        subtotal=subtotal,
        duration=days,
        total_with_duration=total_with_duration,
        discount=discount,
        additional_services=services_total,
        grand_total=grand_total,
        explanation=explanation,
        services=services,
    )


def price_booking(db: Session, booking: Booking) -> PricingBreakdown:
    lines = [PricedLine(resolve_unit_price(db, target_of(item)), int(item.Quantity or 0)) for item in booking.Items]
    promo = db.get(Promo, booking.PromoID) if booking.PromoID else None
    services = [AdditionalService(entry["name"], entry["amount"]) for entry in load_additional_services(booking)]
    breakdown = compute_grand_total(
        lines,
        booking.Duration,
        promo_rule_from_model(promo),
        services,
        rental_start=booking.StartDate,
    )
    LOGGER.debug(
        "Priced booking=%s subtotal=%s duration=%s discount=%s grand_total=%s",
        booking.BookingID,
        breakdown.subtotal,
        breakdown.duration,
        breakdown.discount,
        breakdown.grand_total,
    )
    return breakdown
