import logging
import os
from datetime import datetime
from typing import List

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

load_dotenv()

from db.base import Base
from db.deps import get_rental_db
from db.session import engine_rental
from models.rental_models import Booking
from schemas.availability import CartAvailabilityRequest
from schemas.bookings import (
    AdditionalServicesUpdateDto,
    BulkStatusChangeDto,
    CreateBookingDto,
    DownPaymentDto,
    FinishExpiredDto,
    PromoUpdateDto,
    ScheduleUpdateDto,
    StatusChangeDto,
    UpsertLineItemDto,
)
from services.availability_service import available_units, check_cart_availability, unavailable_dates
from services.booking_service import (
    LineItemRequest,
    bulk_change_status,
    change_status,
    create_booking,
    create_or_update_line_item,
    delete_booking,
    describe_booking,
    finish_expired_bookings,
    recompute_pricing,
    remove_line_item,
    set_additional_services,
    set_down_payment,
    set_promo,
    update_schedule,
)
from services.catalog_service import (
    allocatable_unit_ids,
    get_bundle,
    get_product,
    list_bundles,
    list_products,
    serialize_bundle,
    serialize_product,
)
from services.errors import InsufficientInventory, InvalidDownPayment, RentalEngineError, TargetNotFound
from services.ledger_service import get_booking
from services.payment_service import payment_summary
from services.policy import BookingPolicy, load_booking_policy
from services.targets import DateRange, make_target

API_LOGGER = logging.getLogger("rental_engine.api")

app = FastAPI(title="Rental Inventory Allocation & Pricing Engine")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str = "false") -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

BOOKING_POLICY = load_booking_policy()

if _env_flag("RENTAL_ENGINE_CREATE_SCHEMA"):
    Base.metadata.create_all(engine_rental)


def get_booking_policy() -> BookingPolicy:
    return BOOKING_POLICY


@app.exception_handler(RentalEngineError)
def handle_engine_error(request: Request, exc: RentalEngineError):
    API_LOGGER.warning("Request rejected path=%s error=%s detail=%s", request.url.path, type(exc).__name__, exc)
    payload = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InsufficientInventory):
        payload.update(
            {
                "requested": exc.requested,
                "available": exc.available,
                "shortfall": exc.shortfall,
                "bottleneckProductID": exc.bottleneck_product_id,
            }
        )
    elif isinstance(exc, InvalidDownPayment):
        payload.update({"minDownPayment": exc.minimum, "maxDownPayment": exc.maximum})
    return JSONResponse(status_code=exc.status_code, content=payload)


def _target_or_400(target_type: str, target_id: int):
    try:
        return make_target(target_type, target_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _describe(db: Session, booking_id: int, policy: BookingPolicy) -> dict:
    return describe_booking(db, get_booking(db, booking_id), policy)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        API_LOGGER.error("Database health check failed: %s", exc)
        raise HTTPException(status_code=503, detail="Database unavailable.") from exc
    return {"status": "ok", "database": "ok"}


@app.get("/api/products")
def get_products(db: Session = Depends(get_rental_db)):
    return [serialize_product(product, len(allocatable_unit_ids(db, product.ProductID))) for product in list_products(db)]


@app.get("/api/products/{product_id}")
def get_product_item(product_id: int, db: Session = Depends(get_rental_db)):
    product = get_product(db, product_id)
    if not product:
        raise TargetNotFound("product", product_id)
    return serialize_product(product, len(allocatable_unit_ids(db, product_id)))


@app.get("/api/bundles")
def get_bundles(db: Session = Depends(get_rental_db)):
    return [serialize_bundle(bundle) for bundle in list_bundles(db)]


@app.get("/api/bundles/{bundle_id}")
def get_bundle_item(bundle_id: int, db: Session = Depends(get_rental_db)):
    bundle = get_bundle(db, bundle_id)
    if not bundle:
        raise TargetNotFound("bundle", bundle_id)
    return serialize_bundle(bundle)


@app.get("/api/availability")
def get_availability(
    target_type: str = Query(..., alias="targetType"),
    target_id: int = Query(..., alias="targetID"),
    start_date: datetime = Query(..., alias="startDate"),
    end_date: datetime = Query(..., alias="endDate"),
    quantity: int = Query(1, alias="quantity"),
    exclude_item_ids: List[int] = Query([], alias="excludeItemIDs"),
    db: Session = Depends(get_rental_db),
):
    target = _target_or_400(target_type, target_id)
    availability = available_units(db, target, DateRange.of(start_date, end_date), exclude_item_ids)
    wanted = max(1, int(quantity))
    payload = availability.to_dict()
    payload["requestedQuantity"] = wanted
    payload["deficit"] = max(0, wanted - availability.available_count)
    return payload


@app.get("/api/availability/unavailable-dates")
def get_unavailable_dates(
    target_type: str = Query(..., alias="targetType"),
    target_id: int = Query(..., alias="targetID"),
    start_date: datetime = Query(..., alias="startDate"),
    end_date: datetime = Query(..., alias="endDate"),
    db: Session = Depends(get_rental_db),
):
    target = _target_or_400(target_type, target_id)
    return {
        "targetType": target.kind,
        "targetID": target.target_id,
        "unavailableDates": unavailable_dates(db, target, DateRange.of(start_date, end_date)),
    }


@app.post("/api/availability/cart")
def post_cart_availability(payload: CartAvailabilityRequest, db: Session = Depends(get_rental_db)):
    requests = [
        {
            "target": _target_or_400(item.targetType, item.targetID),
            "startDate": item.startDate,
            "endDate": item.endDate,
            "quantity": item.quantity,
            "reference": item.reference,
        }
        for item in payload.items
    ]
    return check_cart_availability(db, requests)


@app.post("/api/bookings", status_code=201)
def post_booking(
    payload: CreateBookingDto,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    if payload.downPayment is None and not payload.status:
        raise HTTPException(status_code=400, detail="downPayment is required unless an explicit status is given.")
    booking = create_booking(
        db,
        policy,
        customer_id=payload.customerID,
        start=payload.startDate,
        end=payload.endDate,
        items=[
            LineItemRequest(_target_or_400(item.targetType, item.targetID), item.quantity)
            for item in payload.items
        ],
        promo_id=payload.promoID,
        down_payment=payload.downPayment,
        status=payload.status,
        additional_services=[service.model_dump() for service in payload.additionalServices],
        notes=payload.notes,
    )
    return _describe(db, booking.BookingID, policy)


@app.get("/api/bookings/{booking_id}")
def get_booking_item(
    booking_id: int,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    return _describe(db, booking_id, policy)


@app.delete("/api/bookings/{booking_id}")
def delete_booking_item(
    booking_id: int,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    delete_booking(db, policy, booking_id)
    return {"message": "Booking deleted", "bookingID": booking_id}


def _upsert_line_item(
    booking_id: int,
    item_id: int | None,
    payload: UpsertLineItemDto,
    db: Session,
    policy: BookingPolicy,
) -> dict:
    date_range = None
    if payload.startDate is not None or payload.endDate is not None:
        if payload.startDate is None or payload.endDate is None:
            raise HTTPException(status_code=400, detail="startDate and endDate must be given together.")
        date_range = DateRange.of(payload.startDate, payload.endDate)
    return create_or_update_line_item(
        db,
        policy,
        booking_id,
        _target_or_400(payload.targetType, payload.targetID),
        payload.quantity,
        item_id=item_id,
        expected_version=payload.version,
        date_range=date_range,
    )


@app.post("/api/bookings/{booking_id}/items", status_code=201)
def post_line_item(
    booking_id: int,
    payload: UpsertLineItemDto,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    return _upsert_line_item(booking_id, None, payload, db, policy)


@app.put("/api/bookings/{booking_id}/items/{item_id}")
def put_line_item(
    booking_id: int,
    item_id: int,
    payload: UpsertLineItemDto,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    return _upsert_line_item(booking_id, item_id, payload, db, policy)


@app.delete("/api/bookings/{booking_id}/items/{item_id}")
def delete_line_item(
    booking_id: int,
    item_id: int,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    breakdown = remove_line_item(db, policy, booking_id, item_id)
    return {"message": "Line item removed", "pricing": breakdown.to_dict()}


@app.patch("/api/bookings/{booking_id}/schedule")
def patch_schedule(
    booking_id: int,
    payload: ScheduleUpdateDto,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    update_schedule(db, policy, booking_id, payload.startDate, payload.endDate)
    return _describe(db, booking_id, policy)


@app.put("/api/bookings/{booking_id}/promo")
def put_promo(
    booking_id: int,
    payload: PromoUpdateDto,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    return set_promo(db, policy, booking_id, payload.promoID).to_dict()


@app.put("/api/bookings/{booking_id}/additional-services")
def put_additional_services(
    booking_id: int,
    payload: AdditionalServicesUpdateDto,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    services = [service.model_dump() for service in payload.services]
    return set_additional_services(db, policy, booking_id, services).to_dict()


@app.post("/api/bookings/{booking_id}/pricing/recompute")
def post_recompute_pricing(
    booking_id: int,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    return recompute_pricing(db, policy, booking_id).to_dict()


@app.get("/api/bookings/{booking_id}/payment")
def get_payment(
    booking_id: int,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    booking: Booking = get_booking(db, booking_id)
    return payment_summary(booking, policy)


@app.post("/api/bookings/{booking_id}/down-payment")
def post_down_payment(
    booking_id: int,
    payload: DownPaymentDto,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    return set_down_payment(db, policy, booking_id, payload.amount).to_dict()


@app.post("/api/bookings/{booking_id}/status")
def post_status(
    booking_id: int,
    payload: StatusChangeDto,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    return change_status(db, policy, booking_id, payload.status).to_dict()


@app.post("/api/bookings/bulk-status")
def post_bulk_status(
    payload: BulkStatusChangeDto,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    if not payload.bookingIDs:
        raise HTTPException(status_code=400, detail="No bookingIDs supplied.")
    results = bulk_change_status(db, policy, payload.bookingIDs, payload.status)
    return {"status": payload.status, "results": results}


@app.post("/api/maintenance/finish-expired")
def post_finish_expired(
    payload: FinishExpiredDto | None = None,
    db: Session = Depends(get_rental_db),
    policy: BookingPolicy = Depends(get_booking_policy),
):
    now = payload.now if payload else None
    finished = finish_expired_bookings(db, policy, now)
    return {"finishedBookingIDs": finished, "count": len(finished)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=os.getenv("RENTAL_ENGINE_HOST", "127.0.0.1"),
        port=int(os.getenv("RENTAL_ENGINE_PORT", "8000")),
    )
