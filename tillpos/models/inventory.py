from __future__ import annotations

from ..extensions import db
from tillpos.time_utils import to_utc_z


HISTORY_IN = "IN"
HISTORY_OUT = "OUT"
HISTORY_MOVE_IN = "MOVE_IN"
HISTORY_MOVE_OUT = "MOVE_OUT"
HISTORY_TYPES = (HISTORY_IN, HISTORY_OUT, HISTORY_MOVE_IN, HISTORY_MOVE_OUT)


class Product(db.Model):
    """
    Catalog entry (physical product or service).

    Product ids are supplied by the catalog, not generated here, so the
    sale engine can create a placeholder row for a service under the id the
    client already knows.

    `stock` is a cached cross-location total. It is written ONLY by the
    aggregate projector (services/aggregate_service.py); it is never the
    source of truth for availability.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_business_name", "business_id", "name"),
    )

    id = db.Column(db.String(64), primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(32), nullable=True)

    # Authoritative storage in cents (catalog list price, not the sale snapshot)
    price_cents = db.Column(db.Integer, nullable=False, default=0)

    is_service = db.Column(db.Boolean, nullable=False, default=False)

    # Derived: SUM(stock_entries.quantity) for this product
    stock = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    business = db.relationship("Business", backref=db.backref("products", lazy=True))

    def __repr__(self) -> str:
        return f"<Product id={self.id!r} name={self.name!r} business_id={self.business_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "name": self.name,
            "unit": self.unit,
            "price_cents": self.price_cents,
            "is_service": self.is_service,
            "stock": self.stock,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockEntry(db.Model):
    """
    Current quantity of one product at one location.

    INVARIANT: quantity >= 0. Decrements are clamped at zero rather than
    rejected; oversell is prevented by the locked availability check that
    precedes every sale decrement.

    Rows are locked with SELECT ... FOR UPDATE for the whole
    check-then-decrement sequence of a sale.
    """
    __tablename__ = "stock_entries"
    __table_args__ = (
        db.UniqueConstraint("product_id", "location_id", name="uq_stock_entries_product_location"),
        db.CheckConstraint("quantity >= 0", name="ck_stock_entries_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    product_id = db.Column(db.String(64), db.ForeignKey("products.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("stock_entries", lazy=True))
    location = db.relationship("Location")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "product_id": self.product_id,
            "location_id": self.location_id,
            "quantity": self.quantity,
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockHistory(db.Model):
    """
    Append-only record of every stock mutation.

    IMMUTABLE: rows are never updated or deleted. Written best-effort: a
    failed history insert is logged and discarded, the stock change stands.
    Used for traceability, never for current-state queries.
    """
    __tablename__ = "stock_history"
    __table_args__ = (
        db.Index("ix_stock_history_business_created", "business_id", "created_at"),
        db.Index("ix_stock_history_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False)
    product_id = db.Column(db.String(64), nullable=False)
    location_id = db.Column(db.Integer, nullable=False)

    # Signed; the quantity actually applied to the stock row
    change_amount = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(16), nullable=False, index=True)  # IN, OUT, MOVE_IN, MOVE_OUT

    supplier_id = db.Column(db.String(64), nullable=True)
    batch_number = db.Column(db.String(64), nullable=True)
    # Sale id, return id, or the paired MOVE_OUT row for a MOVE_IN
    reference_id = db.Column(db.String(64), nullable=True, index=True)

    employee_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "product_id": self.product_id,
            "location_id": self.location_id,
            "change_amount": self.change_amount,
            "type": self.type,
            "supplier_id": self.supplier_id,
            "batch_number": self.batch_number,
            "reference_id": self.reference_id,
            "employee_id": self.employee_id,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
