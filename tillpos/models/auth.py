from __future__ import annotations

from ..extensions import db
from tillpos.time_utils import to_utc_z


class Role(db.Model):
    """
    Business-scoped role with a flat list of permission strings.

    Permission strings use a "<area>:<capability>" form, e.g.
    "pos:any_location" or "inventory:move".
    """
    __tablename__ = "roles"
    __table_args__ = (
        db.UniqueConstraint("business_id", "name", name="uq_roles_business_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    name = db.Column(db.String(64), nullable=False)
    permissions = db.Column(db.JSON, nullable=False, default=list)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Role id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "name": self.name,
            "permissions": list(self.permissions or []),
        }


class Employee(db.Model):
    """
    Caller identity.

    MULTI-TENANT: every employee belongs to exactly one business. Super-admins
    may additionally act on other businesses' records where an operation
    allows it (sale deletion).
    """
    __tablename__ = "employees"
    __table_args__ = (
        db.UniqueConstraint("business_id", "email", name="uq_employees_business_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(255), nullable=True)

    role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=True)
    default_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)

    is_super_admin = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    business = db.relationship("Business", backref=db.backref("employees", lazy=True))
    role = db.relationship("Role")
    default_location = db.relationship("Location")

    def __repr__(self) -> str:
        return f"<Employee id={self.id} email={self.email!r} business_id={self.business_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "email": self.email,
            "name": self.name,
            "role_id": self.role_id,
            "default_location_id": self.default_location_id,
            "is_super_admin": self.is_super_admin,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class SessionToken(db.Model):
    """
    Bearer session. Only the SHA-256 hash of the token is stored.

    business_id is captured at creation and never changes for the session
    lifetime.
    """
    __tablename__ = "session_tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    token_hash = db.Column(db.String(255), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    employee = db.relationship("Employee", backref=db.backref("sessions", lazy=True))
    business = db.relationship("Business")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "business_id": self.business_id,
            "created_at": to_utc_z(self.created_at),
            "last_used_at": to_utc_z(self.last_used_at),
            "expires_at": to_utc_z(self.expires_at),
            "is_revoked": self.is_revoked,
            "revoked_at": to_utc_z(self.revoked_at) if self.revoked_at else None,
            "revoked_reason": self.revoked_reason,
        }
