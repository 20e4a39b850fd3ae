"""Audit logging service."""

from __future__ import annotations

from typing import Optional

from extensions import db
from models import AuditLog


def log_action(
    actor,
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    details: str = "",
    employee=None,
) -> None:
    """Record an audit log entry.

    NOTE: This does NOT commit; the entry belongs to the caller's transaction
    and is rolled back with it.
    """
    db.session.add(
        AuditLog(
            company_id=actor.company_id if actor else None,
            user_id=actor.user_id if actor else None,
            employee_id=employee.id if employee is not None else None,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
    )
