"""
Stock ledger: per-(product, location) quantities plus their history.

INVARIANTS (authoritative):
- stock_entries.quantity never goes below zero. decrement() clamps at zero
  instead of raising; availability is validated beforehand, under the same
  row lock, by check_available().
- The check and the later decrement of a sale use ONE row lock, taken once
  per (product, location) and held until commit or rollback.
- Multi-row locks are taken in (product_id, location_id) order so two
  opposite-direction moves cannot deadlock each other.
- Every mutation appends exactly one StockHistory row (two for a move).
  History is best-effort: a failed insert is logged, the mutation stands.
- Every mutation is followed, in the same transaction, by an aggregate
  recompute of the product (see aggregate_service).

The low-level functions (check_available, decrement, increment, move)
neither commit nor retry; they run inside the caller's transaction. The
*_stock functions are the public, self-committing operations.
"""
from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import AccessDeniedError, TillError, ValidationError
from ..models import StockEntry, StockHistory
from ..models.inventory import HISTORY_IN, HISTORY_OUT, HISTORY_MOVE_IN, HISTORY_MOVE_OUT
from . import aggregate_service
from .access_service import (
    CallerContext,
    can_move_inventory,
    require_location_in_business,
    require_product_in_business,
)
from .audit_service import record_audit
from .concurrency import begin_immediate, best_effort, lock_for_update, run_with_retry


class StockError(TillError):
    """Raised for ledger operations that cannot apply as requested."""
    default_code = "STOCK_ERROR"


def require_positive_quantity(quantity, field: str = "quantity") -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(
            f"{field} must be a positive integer",
            code="INVALID_QUANTITY",
            details={field: quantity},
        )
    return quantity


# =============================================================================
# LOW-LEVEL LEDGER OPERATIONS (caller owns the transaction)
# =============================================================================

def lock_entry(product_id: str, location_id: int) -> StockEntry | None:
    """SELECT ... FOR UPDATE on one ledger row (None when the row does not exist yet)."""
    return lock_for_update(
        db.session.query(StockEntry).filter_by(product_id=product_id, location_id=location_id)
    ).first()


def get_quantity(product_id: str, location_id: int) -> int:
    entry = db.session.query(StockEntry).filter_by(
        product_id=product_id, location_id=location_id
    ).first()
    return entry.quantity if entry else 0


def check_available(product_id: str, location_id: int, quantity: int) -> bool:
    """
    Lock the row and report whether it holds at least `quantity`.

    The lock stays held until the enclosing transaction ends, so the
    decrement that follows sees exactly the quantity checked here.
    """
    entry = lock_entry(product_id, location_id)
    available = entry.quantity if entry else 0
    return available >= quantity


def _append_history(
    *,
    business_id: int,
    product_id: str,
    location_id: int,
    change_amount: int,
    type: str,
    employee_id: int | None = None,
    reference_id=None,
    supplier_id=None,
    batch_number=None,
    notes: str | None = None,
) -> StockHistory | None:
    row = None
    with best_effort("stock history write", product_id=product_id, location_id=location_id, type=type):
        row = StockHistory(
            business_id=business_id,
            product_id=product_id,
            location_id=location_id,
            change_amount=change_amount,
            type=type,
            employee_id=employee_id,
            reference_id=str(reference_id) if reference_id is not None else None,
            supplier_id=str(supplier_id) if supplier_id is not None else None,
            batch_number=batch_number,
            notes=notes[:255] if notes else None,
        )
        db.session.add(row)
    if row is not None and row.id is None:
        return None
    return row


def decrement(
    *,
    business_id: int,
    product_id: str,
    location_id: int,
    quantity: int,
    employee_id: int | None = None,
    reference_id=None,
    supplier_id=None,
    batch_number=None,
    notes: str | None = None,
    history_type: str = HISTORY_OUT,
    entry: StockEntry | None = None,
) -> int:
    """
    Reduce the row by `quantity`, floored at zero. Returns the amount
    actually removed. A missing row is left missing (nothing to remove).
    """
    applied, _ = _decrement(
        business_id=business_id,
        product_id=product_id,
        location_id=location_id,
        quantity=quantity,
        employee_id=employee_id,
        reference_id=reference_id,
        supplier_id=supplier_id,
        batch_number=batch_number,
        notes=notes,
        history_type=history_type,
        entry=entry,
    )
    return applied


def _decrement(
    *,
    business_id: int,
    product_id: str,
    location_id: int,
    quantity: int,
    employee_id: int | None,
    reference_id,
    supplier_id,
    batch_number,
    notes: str | None,
    history_type: str,
    entry: StockEntry | None,
) -> tuple[int, StockHistory | None]:
    require_positive_quantity(quantity)
    if entry is None:
        entry = lock_entry(product_id, location_id)
    if entry is None:
        return 0, None

    before = entry.quantity
    entry.quantity = max(0, before - quantity)
    applied = before - entry.quantity
    db.session.flush()

    if applied < quantity:
        clamp_note = f"Clamped at zero: requested {quantity}, removed {applied}"
        notes = f"{notes}; {clamp_note}" if notes else clamp_note

    history = _append_history(
        business_id=business_id,
        product_id=product_id,
        location_id=location_id,
        change_amount=-applied,
        type=history_type,
        employee_id=employee_id,
        reference_id=reference_id,
        supplier_id=supplier_id,
        batch_number=batch_number,
        notes=notes,
    )
    return applied, history


def _get_or_create_entry(business_id: int, product_id: str, location_id: int) -> StockEntry:
    entry = lock_entry(product_id, location_id)
    if entry is not None:
        return entry
    try:
        with db.session.begin_nested():
            entry = StockEntry(
                business_id=business_id,
                product_id=product_id,
                location_id=location_id,
                quantity=0,
            )
            db.session.add(entry)
    except IntegrityError:
        # A concurrent transaction created the row between our read and insert
        entry = lock_entry(product_id, location_id)
    return entry


def increment(
    *,
    business_id: int,
    product_id: str,
    location_id: int,
    quantity: int,
    employee_id: int | None = None,
    reference_id=None,
    supplier_id=None,
    batch_number=None,
    notes: str | None = None,
    history_type: str = HISTORY_IN,
    entry: StockEntry | None = None,
) -> StockHistory | None:
    """Upsert: create the row at `quantity` or add to it. Returns the history row."""
    require_positive_quantity(quantity)
    if entry is None:
        entry = _get_or_create_entry(business_id, product_id, location_id)
    entry.quantity = entry.quantity + quantity
    db.session.flush()

    return _append_history(
        business_id=business_id,
        product_id=product_id,
        location_id=location_id,
        change_amount=quantity,
        type=history_type,
        employee_id=employee_id,
        reference_id=reference_id,
        supplier_id=supplier_id,
        batch_number=batch_number,
        notes=notes,
    )


def move(
    *,
    business_id: int,
    product_id: str,
    from_location_id: int,
    to_location_id: int,
    quantity: int,
    employee_id: int | None = None,
    reference_id=None,
    supplier_id=None,
    batch_number=None,
) -> int:
    """
    Decrement the source and increment the destination in the caller's
    transaction. Both rows are locked in location-id order before either is
    touched. The destination receives what the source actually gave up, so
    the product total is conserved. Returns the moved quantity.
    """
    require_positive_quantity(quantity)
    if from_location_id == to_location_id:
        raise StockError(
            "Source and destination locations must differ",
            code="SAME_LOCATION",
            details={"location_id": from_location_id},
        )

    entries = {}
    for location_id in sorted((from_location_id, to_location_id)):
        entries[location_id] = lock_entry(product_id, location_id)
    if entries[from_location_id] is None:
        return 0
    if entries[to_location_id] is None:
        entries[to_location_id] = _get_or_create_entry(business_id, product_id, to_location_id)

    moved, out_row = _decrement(
        business_id=business_id,
        product_id=product_id,
        location_id=from_location_id,
        quantity=quantity,
        employee_id=employee_id,
        reference_id=reference_id,
        supplier_id=supplier_id,
        batch_number=batch_number,
        notes=f"Moved to {to_location_id}",
        history_type=HISTORY_MOVE_OUT,
        entry=entries[from_location_id],
    )
    if moved <= 0:
        return 0

    increment(
        business_id=business_id,
        product_id=product_id,
        location_id=to_location_id,
        quantity=moved,
        employee_id=employee_id,
        reference_id=reference_id if reference_id is not None else (out_row.id if out_row else None),
        supplier_id=supplier_id,
        batch_number=batch_number,
        notes=f"Moved from {from_location_id}",
        history_type=HISTORY_MOVE_IN,
        entry=entries[to_location_id],
    )
    return moved


# =============================================================================
# PUBLIC OPERATIONS (own transaction, retry, commit)
# =============================================================================

def _stock_summary(product_id: str, total: int) -> dict:
    entries = db.session.query(StockEntry).filter_by(product_id=product_id).order_by(StockEntry.location_id).all()
    return {
        "product_id": product_id,
        "total": total,
        "locations": [{"location_id": e.location_id, "quantity": e.quantity} for e in entries],
    }


def increase_stock(
    caller: CallerContext,
    *,
    product_id: str,
    location_id: int,
    quantity: int,
    supplier_id=None,
    batch_number=None,
    reference_id=None,
    notes: str | None = None,
) -> dict:
    """Add stock at a location of the caller's business. Returns the new aggregate."""
    require_positive_quantity(quantity)

    def _op():
        begin_immediate()
        require_product_in_business(product_id, caller.business_id)
        require_location_in_business(location_id, caller.business_id)

        increment(
            business_id=caller.business_id,
            product_id=product_id,
            location_id=location_id,
            quantity=quantity,
            employee_id=caller.employee_id,
            reference_id=reference_id,
            supplier_id=supplier_id,
            batch_number=batch_number,
            notes=notes or "Stock increase",
        )
        total = aggregate_service.recompute(product_id)

        record_audit(
            business_id=caller.business_id,
            employee_id=caller.employee_id,
            action="increase",
            resource="stock",
            resource_id=product_id,
            details={"location_id": location_id, "quantity": quantity},
        )
        db.session.commit()
        return _stock_summary(product_id, total)

    return run_with_retry(_op)


def decrease_stock(
    caller: CallerContext,
    *,
    product_id: str,
    location_id: int,
    quantity: int,
    supplier_id=None,
    batch_number=None,
    reference_id=None,
    notes: str | None = None,
) -> dict:
    """Remove stock at a location (clamped at zero). Returns the new aggregate."""
    require_positive_quantity(quantity)

    def _op():
        begin_immediate()
        require_product_in_business(product_id, caller.business_id)
        require_location_in_business(location_id, caller.business_id)

        applied = decrement(
            business_id=caller.business_id,
            product_id=product_id,
            location_id=location_id,
            quantity=quantity,
            employee_id=caller.employee_id,
            reference_id=reference_id,
            supplier_id=supplier_id,
            batch_number=batch_number,
            notes=notes,
        )
        total = aggregate_service.recompute(product_id)

        record_audit(
            business_id=caller.business_id,
            employee_id=caller.employee_id,
            action="decrease",
            resource="stock",
            resource_id=product_id,
            details={"location_id": location_id, "requested": quantity, "applied": applied},
        )
        db.session.commit()
        return _stock_summary(product_id, total)

    return run_with_retry(_op)


def move_stock(
    caller: CallerContext,
    *,
    product_id: str,
    from_location_id: int,
    to_location_id: int,
    quantity: int,
    supplier_id=None,
    batch_number=None,
    reference_id=None,
) -> dict:
    """
    Move stock between two locations of the caller's business, all or nothing.

    Requires super-admin or the inventory:move permission.
    """
    if not can_move_inventory(caller):
        raise AccessDeniedError("Moving stock requires the inventory:move permission")
    require_positive_quantity(quantity)

    def _op():
        begin_immediate()
        require_product_in_business(product_id, caller.business_id)
        require_location_in_business(from_location_id, caller.business_id)
        require_location_in_business(to_location_id, caller.business_id)

        moved = move(
            business_id=caller.business_id,
            product_id=product_id,
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            quantity=quantity,
            employee_id=caller.employee_id,
            reference_id=reference_id,
            supplier_id=supplier_id,
            batch_number=batch_number,
        )
        total = aggregate_service.recompute(product_id)

        record_audit(
            business_id=caller.business_id,
            employee_id=caller.employee_id,
            action="move",
            resource="stock",
            resource_id=product_id,
            details={
                "from_location_id": from_location_id,
                "to_location_id": to_location_id,
                "requested": quantity,
                "moved": moved,
            },
        )
        db.session.commit()
        summary = _stock_summary(product_id, total)
        summary["moved"] = moved
        return summary

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_stock_entries(caller: CallerContext, product_id: str) -> dict:
    product = require_product_in_business(product_id, caller.business_id)
    entries = db.session.query(StockEntry).filter_by(
        product_id=product_id, business_id=caller.business_id
    ).order_by(StockEntry.location_id).all()
    return {
        "product": product.to_dict(),
        "entries": [e.to_dict() for e in entries],
    }


def list_stock_history(caller: CallerContext, product_id: str | None = None, limit: int = 200) -> list[StockHistory]:
    query = db.session.query(StockHistory).filter_by(business_id=caller.business_id)
    if product_id is not None:
        query = query.filter_by(product_id=product_id)
    return query.order_by(StockHistory.created_at.desc(), StockHistory.id.desc()).limit(limit).all()
