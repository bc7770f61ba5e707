from __future__ import annotations


class RentalEngineError(RuntimeError):
    status_code = 400


class TargetNotFound(RentalEngineError):
    status_code = 404

    def __init__(self, target_kind: str, target_id: int):
        self.target_kind = target_kind
        self.target_id = target_id
        super().__init__(f"{target_kind.capitalize()} {target_id} not found or not available for rental.")


class BookingNotFound(RentalEngineError):
    status_code = 404

    def __init__(self, booking_id: int):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} not found.")


class LineItemNotFound(RentalEngineError):
    status_code = 404

    def __init__(self, booking_id: int, item_id: int):
        self.booking_id = booking_id
        self.item_id = item_id
        super().__init__(f"Line item {item_id} not found on booking {booking_id}.")


class InvalidDateRange(RentalEngineError):
    pass


class InvalidQuantity(RentalEngineError):
    pass


class InvalidStatus(RentalEngineError):
    pass


class InsufficientInventory(RentalEngineError):
    status_code = 409

    def __init__(
        self,
        requested: int,
        available: int,
        target_label: str,
        bottleneck_product_id: int | None = None,
        shortfall: int | None = None,
    ):
        self.requested = requested
        self.available = available
        self.shortfall = max(0, requested - available) if shortfall is None else shortfall
        self.target_label = target_label
        self.bottleneck_product_id = bottleneck_product_id
        message = f"Insufficient inventory for {target_label}: requested {requested}, available {available}"
        if bottleneck_product_id is not None:
            message += f" (short {self.shortfall} unit(s) of product {bottleneck_product_id})"
        else:
            message += f" (short {self.shortfall})"
        super().__init__(message + ".")


class InvalidDownPayment(RentalEngineError):
    def __init__(self, amount: int, minimum: int, maximum: int):
        self.amount = amount
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(
            f"Down payment {amount} is outside the valid range: "
            f"0 (cancel) or between {minimum} and {maximum}."
        )


class ConcurrentAllocationConflict(RentalEngineError):
    status_code = 409

    def __init__(self, unit_ids: list[int] | None = None, reason: str | None = None):
        self.unit_ids = sorted(unit_ids or [])
        detail = reason or "Unit(s) were claimed by another booking while this one was being saved"
        if self.unit_ids:
            detail += f": {', '.join(str(uid) for uid in self.unit_ids)}"
        super().__init__(detail + ". Please retry.")
