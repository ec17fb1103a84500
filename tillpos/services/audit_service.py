# Overview: Best-effort business audit trail.

from __future__ import annotations

from ..extensions import db
from ..models import AuditLog
from .concurrency import best_effort


def record_audit(
    *,
    business_id: int | None,
    employee_id: int | None,
    action: str,
    resource: str,
    resource_id=None,
    details: dict | None = None,
) -> None:
    """
    Append an AuditLog row inside the caller's transaction.

    Failures are logged and swallowed; the primary mutation is never rolled
    back because its audit row could not be written.
    """
    with best_effort("audit write", action=action, resource=resource, resource_id=resource_id):
        db.session.add(AuditLog(
            business_id=business_id,
            employee_id=employee_id,
            action=action,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details,
        ))
