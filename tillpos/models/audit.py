from __future__ import annotations

from ..extensions import db
from tillpos.time_utils import to_utc_z


class AuditLog(db.Model):
    """
    Append-only business activity log.

    Best-effort: written in a SAVEPOINT so a failed insert never rolls back
    the mutation it describes.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_business_created", "business_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, nullable=True, index=True)
    employee_id = db.Column(db.Integer, nullable=True)

    action = db.Column(db.String(32), nullable=False)  # create, update, delete, return, move ...
    resource = db.Column(db.String(32), nullable=False)  # sale, stock ...
    resource_id = db.Column(db.String(64), nullable=True)
    details = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "employee_id": self.employee_id,
            "action": self.action,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "details": self.details,
            "created_at": to_utc_z(self.created_at),
        }
