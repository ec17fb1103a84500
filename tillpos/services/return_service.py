"""
Return processing: partial or full return of one sale line.

A return mutates the original sale instead of booking a negative
compensating sale:

- the line's quantity and line total shrink by the returned amount, and a
  line that reaches zero is deleted
- the sale's subtotal is re-derived from the remaining lines, VAT is
  re-applied at the business rate, total = subtotal + VAT + delivery fee
- physical stock goes back to the ledger at the sale's recorded location
  (no location or a service line: nothing to restock)
- an immutable SaleReturn row records the refund, reason and actor

Everything above happens in one transaction.
"""
from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import NotFoundError, TillError, ValidationError
from ..models import Sale, SaleItem, SaleReturn
from . import aggregate_service, stock_service
from .access_service import CallerContext
from .audit_service import record_audit
from .concurrency import begin_immediate, lock_for_update, run_with_retry
from .sales_service import business_vat_rate_bps, compute_vat_cents


class ReturnError(TillError):
    """Raised for return operation errors."""
    default_code = "RETURN_ERROR"


def _normalize_reason(reason) -> str:
    text = str(reason).strip() if reason is not None else ""
    if not text:
        raise ValidationError("reason is required", details={"reason": reason})
    if len(text) > 255:
        raise ValidationError("reason must be at most 255 characters")
    return text


def _pick_line(sale: Sale, product_id: str, quantity: int, sale_item_id: str | None) -> SaleItem:
    """
    The line to return against: the one named by sale_item_id, else the
    first line of the product that still holds enough quantity.
    """
    candidates = [item for item in sale.items if item.product_id == product_id]
    if sale_item_id is not None:
        candidates = [item for item in candidates if item.id == sale_item_id]
    if not candidates:
        raise NotFoundError(
            f"Product {product_id} is not on sale {sale.id}",
            details={"sale_id": sale.id, "product_id": product_id},
        )
    for item in candidates:
        if item.quantity >= quantity:
            return item
    raise ValidationError(
        "Return quantity exceeds the quantity sold",
        code="INVALID_QUANTITY",
        details={
            "sale_id": sale.id,
            "product_id": product_id,
            "requested": quantity,
            "sold": max(item.quantity for item in candidates),
        },
    )


def _recompute_sale_totals(sale: Sale) -> None:
    subtotal = sum(item.line_total_cents for item in sale.items)
    sale.subtotal_cents = subtotal
    sale.vat_cents = compute_vat_cents(subtotal, business_vat_rate_bps(sale.business_id))
    sale.total_cents = subtotal + sale.vat_cents + (sale.delivery_fee_cents or 0)


def return_item(
    caller: CallerContext,
    sale_id: int,
    product_id: str,
    quantity: int,
    reason: str,
    *,
    sale_item_id: str | None = None,
) -> tuple[SaleReturn, Sale]:
    """
    Return `quantity` units of `product_id` from a sale.

    Returns (SaleReturn, updated Sale).

    Raises:
        ValidationError: quantity not a positive integer (INVALID_QUANTITY),
            more than was sold on the line, or missing reason
        NotFoundError: sale absent / in another business, or product not on it
        ReturnError: the sale is a proforma quote
    """
    stock_service.require_positive_quantity(quantity)
    reason = _normalize_reason(reason)

    def _op():
        begin_immediate()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None:
            raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
        if sale.business_id != caller.business_id and not caller.is_super_admin:
            raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})

        if sale.is_proforma:
            raise ReturnError(
                "Items cannot be returned from a proforma sale",
                code="PROFORMA_SALE",
                details={"sale_id": sale.id},
            )

        item = _pick_line(sale, product_id, quantity, sale_item_id)
        item_id = item.id
        unit_price = item.price_cents
        refund_cents = unit_price * quantity
        restock = sale.location_id is not None and not item.is_service

        if item.quantity == quantity:
            sale.items.remove(item)
        else:
            item.quantity -= quantity
            item.line_total_cents = item.quantity * item.price_cents
        db.session.flush()

        _recompute_sale_totals(sale)

        if restock:
            stock_service.increment(
                business_id=sale.business_id,
                product_id=product_id,
                location_id=sale.location_id,
                quantity=quantity,
                employee_id=caller.employee_id,
                reference_id=sale.id,
                notes=f"Return on sale {sale.id}: {reason}",
            )
            aggregate_service.recompute(product_id)

        record = SaleReturn(
            business_id=sale.business_id,
            sale_id=sale.id,
            sale_item_id=item_id,
            product_id=product_id,
            location_id=sale.location_id,
            quantity=quantity,
            unit_price_cents=unit_price,
            refund_cents=refund_cents,
            restocked=restock,
            reason=reason,
            employee_id=caller.employee_id,
        )
        db.session.add(record)
        db.session.flush()

        record_audit(
            business_id=sale.business_id,
            employee_id=caller.employee_id,
            action="return",
            resource="sale",
            resource_id=sale.id,
            details={
                "return_id": record.id,
                "product_id": product_id,
                "quantity": quantity,
                "refund_cents": refund_cents,
                "reason": reason,
            },
        )
        db.session.commit()
        current_app.logger.info(
            "Return %s on sale %s: product=%s quantity=%s refund_cents=%s restocked=%s",
            record.id, sale.id, product_id, quantity, refund_cents, restock,
        )
        return record, sale

    return run_with_retry(_op)


def list_returns(caller: CallerContext, sale_id: int) -> list[SaleReturn]:
    query = db.session.query(SaleReturn).filter_by(sale_id=sale_id)
    if not caller.is_super_admin:
        query = query.filter_by(business_id=caller.business_id)
    return query.order_by(SaleReturn.created_at, SaleReturn.id).all()
