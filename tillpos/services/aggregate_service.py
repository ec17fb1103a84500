# Overview: Aggregate stock projector; keeps Product.stock equal to the sum of its ledger rows.

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..errors import NotFoundError
from ..models import Product, StockEntry
from .concurrency import lock_for_update


def sum_stock(product_id: str) -> int:
    total = db.session.query(
        func.coalesce(func.sum(StockEntry.quantity), 0)
    ).filter(StockEntry.product_id == product_id).scalar()
    return int(total or 0)


def recompute(product_id: str) -> int:
    """
    Write SUM(stock_entries.quantity) for the product into Product.stock.

    Must be called inside the transaction that mutated the ledger, after
    the mutation. The product row is locked first so two transactions
    touching different locations of the same product cannot each write a
    total that misses the other's change.
    """
    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})

    db.session.flush()
    product.stock = sum_stock(product_id)
    db.session.flush()
    return product.stock


def reconcile(business_id: int | None = None) -> list[dict]:
    """
    Recompute every product's aggregate and report the ones that drifted.

    Maintenance path for rows written outside the ledger service (imports,
    manual SQL). Does not commit.
    """
    query = db.session.query(Product).filter(Product.is_service.is_(False))
    if business_id is not None:
        query = query.filter(Product.business_id == business_id)

    drifted = []
    for product in query.order_by(Product.id).all():
        before = product.stock
        after = recompute(product.id)
        if before != after:
            drifted.append({"product_id": product.id, "before": before, "after": after})
    return drifted
