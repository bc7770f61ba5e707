from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.rental_models import Bundle, Product, ProductUnit
from services.errors import TargetNotFound
from services.targets import BundleTarget, ProductTarget, Target


RENTABLE_STATUS = "available"


def get_product(db: Session, product_id: int) -> Product | None:
    product = db.get(Product, product_id)
    if not product or (product.Status or "").strip().lower() != RENTABLE_STATUS:
        return None
    return product


def get_bundle(db: Session, bundle_id: int) -> Bundle | None:
    bundle = db.execute(
        select(Bundle)
        .options(selectinload(Bundle.Components))
        .where(Bundle.BundleID == bundle_id)
    ).scalars().first()
    if not bundle or (bundle.Status or "").strip().lower() != RENTABLE_STATUS:
        return None
    return bundle


def list_products(db: Session) -> list[Product]:
    return list(db.execute(select(Product).order_by(Product.ProductID)).scalars().all())


def list_bundles(db: Session) -> list[Bundle]:
    return list(
        db.execute(
            select(Bundle).options(selectinload(Bundle.Components)).order_by(Bundle.BundleID)
        ).scalars().all()
    )


def bundle_requirements(bundle: Bundle) -> list[tuple[int, int]]:
    """Return ``(product_id, quantity_per_bundle)`` pairs in component order."""
    return [(int(component.ProductID), max(1, int(component.Quantity or 1))) for component in bundle.Components]


def target_requirements(db: Session, target: Target) -> list[tuple[int, int]] | None:
    if isinstance(target, ProductTarget):
        return [(target.product_id, 1)] if get_product(db, target.product_id) else None
    bundle = get_bundle(db, target.bundle_id)
    if not bundle:
        return None
    return bundle_requirements(bundle)


def allocatable_unit_ids(db: Session, product_id: int) -> list[int]:
    if not get_product(db, product_id):
        return []
    return list(
        db.execute(
            select(ProductUnit.UnitID)
            .where(ProductUnit.ProductID == product_id)
            .where(ProductUnit.IsAvailable.is_(True))
            .order_by(ProductUnit.UnitID)
        ).scalars().all()
    )


def resolve_unit_price(db: Session, target: Target) -> int:
    if isinstance(target, ProductTarget):
        product = db.get(Product, target.product_id)
        if not product:
            raise TargetNotFound("product", target.product_id)
        return max(0, int(product.DailyPrice or 0))
    if isinstance(target, BundleTarget):
        bundle = db.get(Bundle, target.bundle_id)
        if not bundle:
            raise TargetNotFound("bundle", target.bundle_id)
        return max(0, int(bundle.Price or 0))
    raise TypeError(f"Unsupported target {target!r}")


def serialize_product(product: Product, unit_count: int | None = None) -> dict:
    payload = {
        "productID": product.ProductID,
        "productName": product.ProductName,
        "dailyPrice": product.DailyPrice,
        "status": product.Status,
        "units": [
            {
                "unitID": unit.UnitID,
                "serialNumber": unit.SerialNumber,
                "isAvailable": bool(unit.IsAvailable),
            }
            for unit in product.Units
        ],
    }
    if unit_count is not None:
        payload["unitCount"] = unit_count
    return payload


def serialize_bundle(bundle: Bundle) -> dict:
    return {
        "bundleID": bundle.BundleID,
        "bundleName": bundle.BundleName,
        "price": bundle.Price,
        "status": bundle.Status,
        "components": [
            {
                "productID": component.ProductID,
                "quantity": component.Quantity,
            }
            for component in bundle.Components
        ],
    }

