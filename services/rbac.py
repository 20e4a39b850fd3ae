"""Role-based access control.

Permission resolution has three outcomes, decided once per check:

* ``OWNER`` - the company owner role; every permission is granted.
* ``EMPLOYEE`` - an active employee record exists for the actor in its own
  company; permissions are the role's set plus custom ``True`` overrides.
* ``ROLE_FALLBACK`` - no active employee record; the role from the actor's
  claims is evaluated against the role table alone, without overrides.

The role table is an immutable :class:`RolePolicy` stored on the app config so
tests can substitute another one.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from functools import wraps
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional

from flask import current_app, g

from models import Employee
from services.auth import require_actor
from services.errors import AuthorizationError, InvalidInputError
from services.tenant import scope_read

logger = logging.getLogger(__name__)

WILDCARD = "*"


class PERMISSIONS:
    VIEW_DASHBOARD = "view_dashboard"
    VIEW_ANALYTICS = "view_analytics"
    CREATE_EMPLOYEES = "create_employees"
    UPDATE_EMPLOYEES = "update_employees"
    DELETE_EMPLOYEES = "delete_employees"
    VIEW_EMPLOYEES = "view_employees"
    CREATE_VEHICLES = "create_vehicles"
    UPDATE_VEHICLES = "update_vehicles"
    DELETE_VEHICLES = "delete_vehicles"
    VIEW_VEHICLES = "view_vehicles"
    CREATE_CUSTOMERS = "create_customers"
    UPDATE_CUSTOMERS = "update_customers"
    DELETE_CUSTOMERS = "delete_customers"
    VIEW_CUSTOMERS = "view_customers"
    CREATE_CONTRACTS = "create_contracts"
    UPDATE_CONTRACTS = "update_contracts"
    COMPLETE_CONTRACTS = "complete_contracts"
    CANCEL_CONTRACTS = "cancel_contracts"
    VIEW_CONTRACTS = "view_contracts"
    CREATE_PAYMENTS = "create_payments"
    UPDATE_PAYMENTS = "update_payments"
    VIEW_PAYMENTS = "view_payments"
    MANAGE_SETTINGS = "manage_settings"


P = PERMISSIONS

ALL_PERMISSIONS = frozenset(
    value for name, value in vars(PERMISSIONS).items() if name.isupper()
)


def validate_custom_permissions(raw) -> dict:
    """Return a clean ``{permission: bool}`` override map or raise."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise InvalidInputError.for_field("custom_permissions", "must be an object")
    unknown = sorted(name for name in raw if name not in ALL_PERMISSIONS)
    if unknown:
        raise InvalidInputError.for_field(
            "custom_permissions", f"unknown permissions: {', '.join(unknown)}"
        )
    not_bool = sorted(name for name, enabled in raw.items() if not isinstance(enabled, bool))
    if not_bool:
        raise InvalidInputError.for_field(
            "custom_permissions", f"values must be true or false: {', '.join(not_bool)}"
        )
    return dict(raw)


@dataclass(frozen=True)
class RoleDefinition:
    name: str
    label: str
    description: str
    permissions: frozenset

    @property
    def is_wildcard(self) -> bool:
        return WILDCARD in self.permissions

    def to_dict(self) -> dict:
        return {
            "value": self.name,
            "label": self.label,
            "description": self.description,
            "permissions": sorted(self.permissions),
        }


@dataclass(frozen=True)
class RolePolicy:
    roles: Mapping[str, RoleDefinition]
    owner_role: str = "owner"

    def __post_init__(self):
        object.__setattr__(self, "roles", MappingProxyType(dict(self.roles)))

    def permissions_for(self, role: Optional[str]) -> frozenset:
        definition = self.roles.get(role or "")
        return definition.permissions if definition else frozenset()

    def is_owner(self, role: Optional[str]) -> bool:
        return role == self.owner_role

    def assignable_roles(self) -> list[str]:
        """Roles an employee record may carry; ownership stays on the user."""
        return sorted(name for name in self.roles if name != self.owner_role)


def _role(name, label, description, *permissions) -> RoleDefinition:
    return RoleDefinition(name, label, description, frozenset(permissions))


DEFAULT_ROLE_POLICY = RolePolicy(
    {
        role.name: role
        for role in (
            _role("owner", "Owner", "Full system access including billing", WILDCARD),
            _role(
                "admin", "Administrator", "Nearly full access, manages employees and settings",
                P.VIEW_DASHBOARD, P.VIEW_ANALYTICS,
                P.CREATE_EMPLOYEES, P.UPDATE_EMPLOYEES, P.DELETE_EMPLOYEES, P.VIEW_EMPLOYEES,
                P.CREATE_VEHICLES, P.UPDATE_VEHICLES, P.DELETE_VEHICLES, P.VIEW_VEHICLES,
                P.CREATE_CUSTOMERS, P.UPDATE_CUSTOMERS, P.DELETE_CUSTOMERS, P.VIEW_CUSTOMERS,
                P.CREATE_CONTRACTS, P.UPDATE_CONTRACTS, P.COMPLETE_CONTRACTS,
                P.CANCEL_CONTRACTS, P.VIEW_CONTRACTS,
                P.CREATE_PAYMENTS, P.UPDATE_PAYMENTS, P.VIEW_PAYMENTS,
                P.MANAGE_SETTINGS,
            ),
            _role(
                "manager", "Manager", "Operational control, views analytics",
                P.VIEW_DASHBOARD, P.VIEW_ANALYTICS, P.VIEW_EMPLOYEES,
                P.CREATE_VEHICLES, P.UPDATE_VEHICLES, P.VIEW_VEHICLES,
                P.CREATE_CUSTOMERS, P.UPDATE_CUSTOMERS, P.VIEW_CUSTOMERS,
                P.CREATE_CONTRACTS, P.UPDATE_CONTRACTS, P.COMPLETE_CONTRACTS,
                P.CANCEL_CONTRACTS, P.VIEW_CONTRACTS,
                P.CREATE_PAYMENTS, P.VIEW_PAYMENTS,
            ),
            _role(
                "sales_agent", "Sales Agent",
                "Creates contracts, manages customers, processes payments",
                P.VIEW_DASHBOARD,
                P.CREATE_CUSTOMERS, P.UPDATE_CUSTOMERS, P.VIEW_CUSTOMERS,
                P.CREATE_CONTRACTS, P.UPDATE_CONTRACTS, P.VIEW_CONTRACTS,
                P.CREATE_PAYMENTS, P.VIEW_PAYMENTS, P.VIEW_VEHICLES,
            ),
            _role(
                "fleet_coordinator", "Fleet Coordinator", "Manages vehicles and maintenance",
                P.VIEW_DASHBOARD,
                P.CREATE_VEHICLES, P.UPDATE_VEHICLES, P.VIEW_VEHICLES,
                P.VIEW_CONTRACTS,
            ),
            _role(
                "accountant", "Accountant", "Financial operations and analytics",
                P.VIEW_DASHBOARD, P.VIEW_ANALYTICS,
                P.VIEW_PAYMENTS, P.CREATE_PAYMENTS, P.UPDATE_PAYMENTS,
                P.VIEW_CONTRACTS, P.VIEW_CUSTOMERS,
            ),
            _role(
                "receptionist", "Receptionist", "Basic operations: check-in/out, contracts, payments",
                P.VIEW_DASHBOARD, P.VIEW_CUSTOMERS, P.CREATE_CUSTOMERS,
                P.CREATE_CONTRACTS, P.VIEW_CONTRACTS,
                P.CREATE_PAYMENTS, P.VIEW_PAYMENTS, P.VIEW_VEHICLES,
            ),
            _role(
                "staff", "Staff", "General staff access",
                P.VIEW_DASHBOARD, P.VIEW_CUSTOMERS, P.VIEW_VEHICLES,
            ),
            _role("viewer", "Viewer", "Read-only access", P.VIEW_DASHBOARD),
        )
    }
)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

class ResolutionKind(str, enum.Enum):
    OWNER = "owner"
    EMPLOYEE = "employee"
    ROLE_FALLBACK = "role_fallback"


@dataclass(frozen=True)
class PermissionResolution:
    kind: ResolutionKind
    permissions: frozenset = field(default_factory=frozenset)
    all_permissions: bool = False
    employee: Optional[Employee] = None

    def allows(self, permission: str) -> bool:
        return self.all_permissions or permission in self.permissions


@dataclass(frozen=True)
class PermissionCheck:
    granted: bool
    employee: Optional[Employee]
    resolution: PermissionResolution

    def __bool__(self) -> bool:
        return self.granted


def find_active_employee(actor) -> Optional[Employee]:
    """Active employee row for the actor inside the actor's own company."""
    return Employee.query.filter_by(
        user_id=actor.user_id,
        company_id=scope_read(actor),
        status="active",
    ).first()


def _resolve_owner(actor, policy: RolePolicy, find_employee) -> Optional[PermissionResolution]:
    if not policy.is_owner(actor.role):
        return None
    return PermissionResolution(ResolutionKind.OWNER, all_permissions=True)


def _resolve_employee(actor, policy: RolePolicy, find_employee) -> Optional[PermissionResolution]:
    employee = find_employee(actor)
    if employee is None:
        return None
    role_permissions = policy.permissions_for(employee.role)
    overrides = {
        name for name, enabled in (employee.custom_permissions or {}).items() if enabled is True
    }
    return PermissionResolution(
        ResolutionKind.EMPLOYEE,
        permissions=frozenset(role_permissions | overrides),
        all_permissions=WILDCARD in role_permissions,
        employee=employee,
    )


def _resolve_role_fallback(actor, policy: RolePolicy, find_employee) -> PermissionResolution:
    logger.warning(
        "No active employee for user %s in company %s; using role-only check (%s)",
        actor.user_id, actor.company_id, actor.role,
    )
    role_permissions = policy.permissions_for(actor.role)
    return PermissionResolution(
        ResolutionKind.ROLE_FALLBACK,
        permissions=role_permissions,
        all_permissions=WILDCARD in role_permissions,
    )


_STRATEGIES = (_resolve_owner, _resolve_employee, _resolve_role_fallback)


def get_role_policy() -> RolePolicy:
    return current_app.config.get("ROLE_POLICY", DEFAULT_ROLE_POLICY)


def resolve_permissions(
    actor,
    policy: Optional[RolePolicy] = None,
    find_employee: Callable = find_active_employee,
) -> PermissionResolution:
    """Run the strategies in order; the first that applies decides."""
    policy = policy or get_role_policy()
    for strategy in _STRATEGIES:
        resolution = strategy(actor, policy, find_employee)
        if resolution is not None:
            return resolution
    raise AssertionError("role fallback always resolves")


def has_any_permission(
    actor,
    permissions: Iterable[str],
    policy: Optional[RolePolicy] = None,
    find_employee: Callable = find_active_employee,
) -> PermissionCheck:
    resolution = resolve_permissions(actor, policy, find_employee)
    for permission in permissions:
        if resolution.allows(permission):
            logger.debug(
                "Granted %s to user %s via %s", permission, actor.user_id, resolution.kind.value
            )
            return PermissionCheck(True, resolution.employee, resolution)
    return PermissionCheck(False, None, resolution)


def has_permission(
    actor,
    permission: str,
    policy: Optional[RolePolicy] = None,
    find_employee: Callable = find_active_employee,
) -> PermissionCheck:
    return has_any_permission(actor, [permission], policy, find_employee)


# ---------------------------------------------------------------------------
# Route decorators
# ---------------------------------------------------------------------------

def _guard(permissions: list[str]):
    actor = require_actor()
    check = has_any_permission(actor, permissions)
    if not check.granted:
        required = " or ".join(permissions)
        logger.warning(
            "Permission denied: user %s (%s) lacks %s [%s]",
            actor.user_id, actor.role, required, check.resolution.kind.value,
        )
        raise AuthorizationError(
            f"Insufficient permissions. Required: {required}",
            details={"required": permissions, "role": actor.role},
        )
    g.current_employee = check.employee


def permission_required(permission: str):
    """Reject the request with 403 unless the actor holds *permission*."""

    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            _guard([permission])
            return f(*args, **kwargs)

        return decorated

    return decorator


def any_permission_required(*permissions: str):
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            _guard(list(permissions))
            return f(*args, **kwargs)

        return decorated

    return decorator


def get_current_employee() -> Optional[Employee]:
    return getattr(g, "current_employee", None)
