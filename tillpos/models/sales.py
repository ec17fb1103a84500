from __future__ import annotations

from ..extensions import db
from tillpos.time_utils import to_utc_z


class Sale(db.Model):
    """
    Sale header.

    Created once by the sale engine inside a single transaction together
    with its items and stock effects. subtotal/vat/total may later be
    recomputed by the return processor; the row is deleted (items first)
    only by an explicit, authorized delete.

    location_id is NULL only for proforma sales or sales made up entirely
    of services.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_business_created", "business_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True, index=True)

    # All amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    vat_cents = db.Column(db.Integer, nullable=False, default=0)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    customer_id = db.Column(db.String(64), nullable=True, index=True)
    payment_method = db.Column(db.String(32), nullable=True)

    # Cashier identity as shown on receipts, plus the employee row it came from
    cashier = db.Column(db.String(255), nullable=True)
    cashier_employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=True)

    # Proforma sales are quotes: no stock check, no stock movement
    is_proforma = db.Column(db.Boolean, nullable=False, default=False)
    particulars = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "SaleItem",
        back_populates="sale",
        cascade="all, delete-orphan",
        order_by="SaleItem.line_number",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Sale id={self.id} business_id={self.business_id} total_cents={self.total_cents}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "business_id": self.business_id,
            "location_id": self.location_id,
            "subtotal_cents": self.subtotal_cents,
            "vat_cents": self.vat_cents,
            "delivery_fee_cents": self.delivery_fee_cents,
            "total_cents": self.total_cents,
            "customer_id": self.customer_id,
            "payment_method": self.payment_method,
            "cashier": self.cashier,
            "cashier_employee_id": self.cashier_employee_id,
            "is_proforma": self.is_proforma,
            "particulars": self.particulars,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class SaleItem(db.Model):
    """
    One line on a sale.

    id is generated per line, so the same product may appear on several
    lines and ids are never reused across sales. price_cents and is_service
    are snapshots taken at sale time; later catalog edits do not change
    historical lines.
    """
    __tablename__ = "sale_items"

    id = db.Column(db.String(32), primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.String(64), db.ForeignKey("products.id"), nullable=False, index=True)

    line_number = db.Column(db.Integer, nullable=False, default=1)
    name = db.Column(db.String(255), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)
    is_service = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "line_number": self.line_number,
            "name": self.name,
            "quantity": self.quantity,
            "price_cents": self.price_cents,
            "line_total_cents": self.line_total_cents,
            "is_service": self.is_service,
            "created_at": to_utc_z(self.created_at),
        }


class SaleReturn(db.Model):
    """
    Immutable record of an item returned against a sale.

    sale_id and sale_item_id are plain columns (no foreign keys) so the
    record outlives the line it refers to, which is deleted when its
    quantity reaches zero.
    """
    __tablename__ = "sale_returns"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, nullable=False, index=True)
    sale_item_id = db.Column(db.String(32), nullable=True)
    product_id = db.Column(db.String(64), nullable=False)
    location_id = db.Column(db.Integer, nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    refund_cents = db.Column(db.Integer, nullable=False)

    # False when the sale had no recorded location, or the line was a service
    restocked = db.Column(db.Boolean, nullable=False, default=False)

    reason = db.Column(db.String(255), nullable=False)
    employee_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "sale_id": self.sale_id,
            "sale_item_id": self.sale_item_id,
            "product_id": self.product_id,
            "location_id": self.location_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "refund_cents": self.refund_cents,
            "restocked": self.restocked,
            "reason": self.reason,
            "employee_id": self.employee_id,
            "created_at": to_utc_z(self.created_at),
        }
