"""
Sale transaction engine.

create_sale() runs ONE database transaction:

1. classify lines into physical (stock-backed) and service lines, letting
   the catalog decide for products it already holds
2. resolve the location (explicit, else the caller's default)
3. admit cross-location sales only for callers with elevated scope
4. lock every (product, location) ledger row and check availability
5. insert the sale header
6. insert the lines (creating service placeholders in the catalog)
7. decrement the ledger and recompute each product's aggregate
8. commit

A failure at any step rolls the whole transaction back: no header, no
line, no ledger change survives an aborted attempt. Proforma sales
(quotes) skip steps 4 and 7.

update_sale() replaces a sale's lines as a record correction and does not
move stock. delete_sale() gives back what the ledger actually handed out for
the sale, less what returns already restocked, before removing it.
"""
from __future__ import annotations

import uuid
from dataclasses import replace

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..errors import AccessDeniedError, InsufficientStockError, NotFoundError, TillError, ValidationError
from ..models import Business, Product, Sale, SaleItem, SaleReturn, StockHistory
from ..models.inventory import HISTORY_OUT
from ..validation import SaleHeaderInput, SaleLineInput, partition_sale_lines
from . import aggregate_service, stock_service
from .access_service import (
    CallerContext,
    can_sell_from_any_location,
    require_business_access,
    require_location_in_business,
    require_product_in_business,
)
from .audit_service import record_audit
from .concurrency import begin_immediate, lock_for_update, run_with_retry


class SaleError(TillError):
    """Raised for sale operation errors."""
    default_code = "SALE_ERROR"


# =============================================================================
# TOTALS
# =============================================================================

def compute_vat_cents(subtotal_cents: int, vat_rate_bps: int) -> int:
    """VAT on a subtotal, nearest cent, half-up."""
    return (subtotal_cents * (vat_rate_bps or 0) + 5_000) // 10_000


def _apply_totals(sale: Sale, header: SaleHeaderInput, lines_subtotal_cents: int, vat_rate_bps: int) -> None:
    """Declared header amounts win; missing ones are derived from the lines."""
    if header.delivery_fee_cents is not None:
        sale.delivery_fee_cents = header.delivery_fee_cents
    delivery = sale.delivery_fee_cents or 0

    subtotal = header.subtotal_cents if header.subtotal_cents is not None else lines_subtotal_cents
    vat = header.vat_cents if header.vat_cents is not None else compute_vat_cents(subtotal, vat_rate_bps)
    total = header.total_cents if header.total_cents is not None else subtotal + vat + delivery

    sale.subtotal_cents = subtotal
    sale.vat_cents = vat
    sale.total_cents = total


def business_vat_rate_bps(business_id: int) -> int:
    business = db.session.get(Business, business_id)
    return business.vat_rate_bps if business else 0


# =============================================================================
# STEPS
# =============================================================================

def _settle_kind(line: SaleLineInput, business_id: int) -> SaleLineInput:
    """
    A product the business already has in its catalog decides whether the
    line is physical or a service; the line's own is_service flag only
    counts for ids the catalog does not hold yet.
    """
    product = db.session.get(Product, line.product_id)
    if product is not None and product.business_id == business_id and product.is_service != line.is_service:
        return replace(line, is_service=product.is_service)
    return line


def _has_physical(lines: list[SaleLineInput]) -> bool:
    return any(not line.is_service for line in lines)


def _require_physical_products(lines: list[SaleLineInput], business_id: int) -> None:
    for product_id in sorted({line.product_id for line in lines if not line.is_service}):
        require_product_in_business(product_id, business_id)


def _resolve_location(
    caller: CallerContext,
    location_id: int | None,
    *,
    has_physical: bool,
    is_proforma: bool,
) -> int | None:
    resolved = location_id if location_id is not None else caller.default_location_id
    if resolved is None and has_physical and not is_proforma:
        raise ValidationError(
            "Sale location not specified for physical items",
            code="LOCATION_REQUIRED",
        )
    return resolved


def _authorize_location(caller: CallerContext, location_id: int | None) -> None:
    if location_id is None:
        return
    require_location_in_business(location_id, caller.business_id)
    if location_id != caller.default_location_id and not can_sell_from_any_location(caller):
        current_app.logger.warning(
            "Cross-location sale denied: employee=%s default_location=%s requested_location=%s",
            caller.employee_id, caller.default_location_id, location_id,
        )
        raise AccessDeniedError(
            "Cannot create a sale from another location",
            code="FORBIDDEN_CROSS_LOCATION",
            details={"location_id": location_id, "default_location_id": caller.default_location_id},
        )


def _required_by_product(lines: list[SaleLineInput]) -> dict[str, int]:
    required: dict[str, int] = {}
    for line in lines:
        if not line.is_service:
            required[line.product_id] = required.get(line.product_id, 0) + line.quantity
    return required


def _preflight_stock(lines: list[SaleLineInput], location_id: int, business_id: int) -> dict:
    """
    Lock each (product, location) row once, in product-id order, and verify
    the summed quantity of that product's lines fits. The shortfall reported
    is the one whose first line comes earliest in the sale. Returns the
    locked entries keyed by product id for the decrement step.
    """
    required = _required_by_product(lines)
    locked = {}
    shortfalls = []
    for product_id in sorted(required):
        entry = stock_service.lock_entry(product_id, location_id)
        available = entry.quantity if entry else 0
        if available < required[product_id]:
            index = next(i for i, line in enumerate(lines) if line.product_id == product_id and not line.is_service)
            shortfalls.append((index, product_id, available))
        locked[product_id] = entry

    if shortfalls:
        index, product_id, available = min(shortfalls)
        product = require_product_in_business(product_id, business_id)
        raise InsufficientStockError(
            f"Insufficient stock for {lines[index].name or product.name} at this location",
            details={
                "index": index,
                "product_id": product_id,
                "location_id": location_id,
                "requested": required[product_id],
                "available": available,
            },
        )
    return locked


def ensure_service_placeholder(line: SaleLineInput, business_id: int) -> Product:
    """
    Make sure a service line's product id exists in the catalog so the
    sale_items foreign key holds. Creates a minimal is_service row when
    absent; an existing row of the same business is left as the catalog
    wrote it.
    """
    product = db.session.get(Product, line.product_id)
    if product is None:
        try:
            with db.session.begin_nested():
                product = Product(
                    id=line.product_id,
                    business_id=business_id,
                    name=line.name or "Service",
                    price_cents=line.price_cents,
                    is_service=True,
                    stock=0,
                )
                db.session.add(product)
        except IntegrityError:
            # Created concurrently by another sale
            product = db.session.get(Product, line.product_id)
    if product is None or product.business_id != business_id:
        raise ValidationError(
            f"Product id {line.product_id} is not available to this business",
            code="PRODUCT_ID_CONFLICT",
            details={"product_id": line.product_id},
        )
    return product


def _new_item(sale: Sale, line: SaleLineInput, line_number: int) -> SaleItem:
    return SaleItem(
        id=uuid.uuid4().hex,
        sale=sale,
        product_id=line.product_id,
        line_number=line_number,
        name=line.name,
        quantity=line.quantity,
        price_cents=line.price_cents,
        line_total_cents=line.line_total_cents,
        is_service=line.is_service,
    )


def _insert_items(sale: Sale, lines: list[SaleLineInput], business_id: int) -> None:
    for index, line in enumerate(lines):
        if line.is_service:
            ensure_service_placeholder(line, business_id)
        try:
            db.session.add(_new_item(sale, line, index + 1))
            db.session.flush()
        except SQLAlchemyError:
            current_app.logger.exception(
                "Failed to insert sale item: sale=%s index=%s product_id=%s quantity=%s price_cents=%s",
                sale.id, index, line.product_id, line.quantity, line.price_cents,
            )
            raise


def _apply_ledger(sale: Sale, lines: list[SaleLineInput], locked: dict, caller: CallerContext) -> None:
    for line in lines:
        if line.is_service:
            continue
        stock_service.decrement(
            business_id=sale.business_id,
            product_id=line.product_id,
            location_id=sale.location_id,
            quantity=line.quantity,
            employee_id=caller.employee_id,
            reference_id=sale.id,
            notes=f"Sale {sale.id}",
            entry=locked.get(line.product_id),
        )
    for product_id in sorted(_required_by_product(lines)):
        aggregate_service.recompute(product_id)


# =============================================================================
# OPERATIONS
# =============================================================================

def create_sale(
    caller: CallerContext,
    lines: list[SaleLineInput],
    header: SaleHeaderInput | None = None,
    *,
    location_id: int | None = None,
    is_proforma: bool = False,
) -> Sale:
    """Create and settle a sale atomically. Returns the committed Sale."""
    header = header or SaleHeaderInput()
    if not lines:
        raise SaleError("A sale needs at least one item", code="EMPTY_SALE")

    def _op():
        begin_immediate()
        settled = [_settle_kind(line, caller.business_id) for line in lines]
        has_physical = _has_physical(settled)
        resolved_location = _resolve_location(
            caller, location_id, has_physical=has_physical, is_proforma=is_proforma
        )
        _authorize_location(caller, resolved_location)
        _require_physical_products(settled, caller.business_id)

        moves_stock = has_physical and not is_proforma and resolved_location is not None
        locked = _preflight_stock(settled, resolved_location, caller.business_id) if moves_stock else {}

        sale = Sale(
            business_id=caller.business_id,
            location_id=resolved_location,
            customer_id=header.customer_id,
            payment_method=header.payment_method,
            cashier=caller.display_name,
            cashier_employee_id=caller.employee_id,
            is_proforma=is_proforma,
            particulars=header.particulars,
            delivery_fee_cents=0,
        )
        _apply_totals(
            sale,
            header,
            sum(line.line_total_cents for line in lines),
            business_vat_rate_bps(caller.business_id),
        )
        db.session.add(sale)
        db.session.flush()

        _insert_items(sale, settled, caller.business_id)

        if moves_stock:
            _apply_ledger(sale, settled, locked, caller)

        record_audit(
            business_id=caller.business_id,
            employee_id=caller.employee_id,
            action="create",
            resource="sale",
            resource_id=sale.id,
            details={
                "items": len(lines),
                "total_cents": sale.total_cents,
                "location_id": sale.location_id,
                "is_proforma": is_proforma,
            },
        )
        db.session.commit()
        current_app.logger.info(
            "Sale %s created: business=%s location=%s items=%s total_cents=%s",
            sale.id, sale.business_id, sale.location_id, len(lines), sale.total_cents,
        )
        return sale

    return run_with_retry(_op)


def _load_sale_for_write(caller: CallerContext, sale_id: int) -> Sale:
    sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    require_business_access(caller, sale.business_id)
    return sale


def update_sale(
    caller: CallerContext,
    sale_id: int,
    raw_items,
    header: SaleHeaderInput | None = None,
) -> dict:
    """
    Replace a sale's lines and refresh its header.

    Lines are validated one by one; bad lines are reported, good lines are
    written. Validation happens BEFORE the old lines are removed: when no
    supplied line is valid the request fails and the sale is untouched.
    Stock is not adjusted.

    Returns {"inserted_count", "rejected_items", "sale"}.
    """
    header = header or SaleHeaderInput()

    def _op():
        begin_immediate()
        sale = _load_sale_for_write(caller, sale_id)

        valid, rejected = partition_sale_lines(raw_items)

        accepted: list[SaleLineInput] = []
        for index, line in valid:
            line = _settle_kind(line, sale.business_id)
            try:
                if line.is_service:
                    ensure_service_placeholder(line, sale.business_id)
                else:
                    require_product_in_business(line.product_id, sale.business_id)
            except (NotFoundError, ValidationError) as e:
                rejected.append({
                    "index": index,
                    "product_id": line.product_id,
                    "reason": str(e),
                    "code": e.code,
                    "values": {
                        "product_id": line.product_id,
                        "quantity": line.quantity,
                        "price_cents": line.price_cents,
                        "is_service": line.is_service,
                    },
                })
                continue
            accepted.append(line)

        rejected.sort(key=lambda r: r["index"])
        for item in rejected:
            current_app.logger.warning(
                "Rejected sale item on update: sale=%s index=%s product_id=%s reason=%s values=%s",
                sale_id, item["index"], item["product_id"], item["reason"], item["values"],
            )

        if not accepted:
            raise ValidationError(
                "No valid items supplied; sale left unchanged",
                details={"rejected_items": rejected},
            )

        sale.items.clear()
        db.session.flush()

        for number, line in enumerate(accepted, start=1):
            db.session.add(_new_item(sale, line, number))

        if header.customer_id is not None:
            sale.customer_id = header.customer_id
        if header.payment_method is not None:
            sale.payment_method = header.payment_method
        if header.particulars is not None:
            sale.particulars = header.particulars
        _apply_totals(
            sale,
            header,
            sum(line.line_total_cents for line in accepted),
            business_vat_rate_bps(sale.business_id),
        )
        db.session.flush()

        record_audit(
            business_id=sale.business_id,
            employee_id=caller.employee_id,
            action="update",
            resource="sale",
            resource_id=sale.id,
            details={"inserted": len(accepted), "rejected": len(rejected)},
        )
        db.session.commit()
        return {
            "inserted_count": len(accepted),
            "rejected_items": rejected,
            "sale": sale,
        }

    return run_with_retry(_op)


def _outstanding_ledger_quantities(sale: Sale) -> dict[str, int]:
    """Per product: units taken by the sale's OUT history rows minus units restocked by its returns."""
    taken_rows = (
        db.session.query(StockHistory.product_id, func.sum(StockHistory.change_amount))
        .filter(
            StockHistory.business_id == sale.business_id,
            StockHistory.location_id == sale.location_id,
            StockHistory.type == HISTORY_OUT,
            StockHistory.reference_id == str(sale.id),
        )
        .group_by(StockHistory.product_id)
        .all()
    )
    outstanding = {product_id: -int(change or 0) for product_id, change in taken_rows}

    returned_rows = (
        db.session.query(SaleReturn.product_id, func.sum(SaleReturn.quantity))
        .filter(
            SaleReturn.business_id == sale.business_id,
            SaleReturn.sale_id == sale.id,
            SaleReturn.restocked.is_(True),
        )
        .group_by(SaleReturn.product_id)
        .all()
    )
    for product_id, quantity in returned_rows:
        outstanding[product_id] = outstanding.get(product_id, 0) - int(quantity or 0)

    return {product_id: quantity for product_id, quantity in outstanding.items() if quantity > 0}


def delete_sale(caller: CallerContext, sale_id: int) -> None:
    """
    Delete a sale and its items. Allowed for the owning business or a
    super-admin. Whatever the ledger handed out for the sale and returns
    have not already restocked goes back to the sale's location. The
    current lines are not consulted: update_sale() may have rewritten them.
    """
    def _op():
        begin_immediate()
        sale = _load_sale_for_write(caller, sale_id)

        restored = {}
        if not sale.is_proforma and sale.location_id is not None:
            restored = _outstanding_ledger_quantities(sale)
            for product_id in sorted(restored):
                stock_service.increment(
                    business_id=sale.business_id,
                    product_id=product_id,
                    location_id=sale.location_id,
                    quantity=restored[product_id],
                    employee_id=caller.employee_id,
                    reference_id=sale.id,
                    notes=f"Sale {sale.id} deleted",
                )
            for product_id in sorted(restored):
                aggregate_service.recompute(product_id)

        # Items go with the header (delete-orphan cascade)
        db.session.delete(sale)

        record_audit(
            business_id=sale.business_id,
            employee_id=caller.employee_id,
            action="delete",
            resource="sale",
            resource_id=sale_id,
            details={"restored": restored},
        )
        db.session.commit()
        current_app.logger.info("Sale %s deleted by employee %s", sale_id, caller.employee_id)

    run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_sale(caller: CallerContext, sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None or (sale.business_id != caller.business_id and not caller.is_super_admin):
        raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    return sale


def list_sales(caller: CallerContext, limit: int = 200) -> list[Sale]:
    return (
        db.session.query(Sale)
        .filter_by(business_id=caller.business_id)
        .order_by(Sale.created_at.desc(), Sale.id.desc())
        .limit(limit)
        .all()
    )
