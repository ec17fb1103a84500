"""
Access gate: caller context and tenant / location scope checks.

Every service takes a CallerContext instead of reading Flask's g, so the
same rules apply to HTTP requests, CLI commands and tests.

SECURITY INVARIANTS:
1. A caller only touches rows of its own business (super-admins excepted
   where an operation says so).
2. Ids coming from client input are validated against the caller's
   business; a row in another business is reported as NOT_FOUND so its
   existence is not revealed.
3. Selling from a location other than the caller's default requires
   elevated scope.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app

from ..extensions import db
from ..errors import AccessDeniedError, NotFoundError
from ..models import Employee, Location, Product
from ..permissions import POS_ANY_LOCATION, INVENTORY_MOVE
from .concurrency import lock_for_update


@dataclass(frozen=True)
class CallerContext:
    """Immutable view of who is calling and what they may do."""
    employee_id: int
    business_id: int
    email: str | None = None
    default_location_id: int | None = None
    is_super_admin: bool = False
    role_name: str | None = None
    permissions: frozenset = field(default_factory=frozenset)

    @property
    def display_name(self) -> str:
        return self.email or str(self.employee_id)

    def has_permission(self, code: str) -> bool:
        return code in self.permissions


def caller_from_employee(employee: Employee) -> CallerContext:
    role = employee.role
    return CallerContext(
        employee_id=employee.id,
        business_id=employee.business_id,
        email=employee.email,
        default_location_id=employee.default_location_id,
        is_super_admin=bool(employee.is_super_admin),
        role_name=role.name if role else None,
        permissions=frozenset(role.permissions or []) if role else frozenset(),
    )


def resolve_caller(employee_id: int) -> CallerContext:
    employee = db.session.get(Employee, employee_id)
    if employee is None or not employee.is_active:
        raise NotFoundError(f"Employee {employee_id} not found")
    return caller_from_employee(employee)


def _is_admin_role(caller: CallerContext) -> bool:
    admin_roles = current_app.config.get("ADMIN_ROLE_NAMES", ("admin", "owner"))
    return bool(caller.role_name) and caller.role_name.lower() in admin_roles


def can_sell_from_any_location(caller: CallerContext) -> bool:
    return caller.is_super_admin or caller.has_permission(POS_ANY_LOCATION) or _is_admin_role(caller)


def can_move_inventory(caller: CallerContext) -> bool:
    return caller.is_super_admin or caller.has_permission(INVENTORY_MOVE)


def require_business_access(caller: CallerContext, business_id: int) -> None:
    """Owning business or super-admin; anything else is a cross-tenant attempt."""
    if caller.business_id == business_id or caller.is_super_admin:
        return
    current_app.logger.warning(
        "Cross-business access denied: employee=%s business=%s target_business=%s",
        caller.employee_id, caller.business_id, business_id,
    )
    raise AccessDeniedError(
        "Access to another business is not allowed",
        code="FORBIDDEN",
        details={"reason": "cross_business"},
    )


def require_location_in_business(location_id: int, business_id: int) -> Location:
    location = db.session.get(Location, location_id)
    if location is None or location.business_id != business_id:
        raise NotFoundError(f"Location {location_id} not found", details={"location_id": location_id})
    return location


def require_product_in_business(product_id: str, business_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None or product.business_id != business_id:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product
