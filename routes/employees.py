"""Employee management API.

Employees link a user account to the company with a role, a status and
per-permission overrides; all three feed permission resolution.
"""

import datetime

from flask import Blueprint, request
from werkzeug.security import generate_password_hash

from extensions import db
from models import VALID_EMPLOYEE_STATUSES, Employee, User
from services.audit import log_action
from services.auth import login_required, require_actor
from services.errors import AuthorizationError, InvalidInputError
from services.rbac import (
    P,
    get_current_employee,
    get_role_policy,
    permission_required,
    validate_custom_permissions,
)
from services.tenant import scope_write, tenant_query, tenant_resource
from utils import api_success, parse_date

employees_bp = Blueprint("employees", __name__)

MIN_PASSWORD_LENGTH = 8
# Termination has its own endpoint
_EDITABLE_STATUSES = VALID_EMPLOYEE_STATUSES - {"terminated"}


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _validate_role(value) -> str:
    allowed = get_role_policy().assignable_roles()
    if value not in allowed:
        raise InvalidInputError.for_field("role", f"must be one of {', '.join(allowed)}")
    return value


def _validate_status(value) -> str:
    if value not in _EDITABLE_STATUSES:
        raise InvalidInputError.for_field(
            "status", f"must be one of {', '.join(sorted(_EDITABLE_STATUSES))}"
        )
    return value


def _optional_date(data: dict, name: str):
    if data.get(name) in (None, ""):
        return None
    value = parse_date(data[name])
    if value is None:
        raise InvalidInputError.for_field(name, "must be YYYY-MM-DD")
    return value


@employees_bp.route("/api/employees", methods=["GET"])
@login_required
@permission_required(P.VIEW_EMPLOYEES)
def list_employees():
    query = tenant_query(Employee)
    status = request.args.get("status")
    if status:
        query = query.filter_by(status=status)
    role = request.args.get("role")
    if role:
        query = query.filter_by(role=role)
    employees = query.order_by(Employee.full_name).all()
    return api_success(
        "Employees fetched",
        data={"employees": [e.to_dict() for e in employees]},
        meta={"count": len(employees)},
    )


@employees_bp.route("/api/employees/<int:employee_id>", methods=["GET"])
@login_required
@tenant_resource(Employee, "employee_id", "employee")
@permission_required(P.VIEW_EMPLOYEES)
def get_employee(employee):
    return api_success("Employee fetched", data={"employee": employee.to_dict()})


@employees_bp.route("/api/employees", methods=["POST"])
@login_required
@permission_required(P.CREATE_EMPLOYEES)
def create_employee():
    """Create the login account and the employee record together."""
    actor = require_actor()
    data = scope_write(actor, _body())
    full_name = (data.get("full_name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    missing = {k: "is required" for k, v in (("full_name", full_name), ("email", email)) if not v}
    if missing:
        raise InvalidInputError("Full name and email are required", details=missing)
    if len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidInputError.for_field(
            "password", f"must be at least {MIN_PASSWORD_LENGTH} characters"
        )
    role = _validate_role(data.get("role"))
    overrides = validate_custom_permissions(data.get("custom_permissions"))
    hire_date = _optional_date(data, "hire_date") or datetime.date.today()
    if User.query.filter(db.func.lower(User.email) == email).first() is not None:
        raise InvalidInputError.for_field("email", "already in use")

    user = User(
        email=email,
        full_name=full_name,
        password_hash=generate_password_hash(password),
        role=role,
        company_id=data["company_id"],
    )
    db.session.add(user)
    db.session.flush()
    employee = Employee(
        company_id=data["company_id"],
        user_id=user.id,
        full_name=full_name,
        email=email,
        role=role,
        status="active",
        custom_permissions=overrides,
        hire_date=hire_date,
    )
    db.session.add(employee)
    db.session.flush()
    log_action(actor, "create", "employee", employee.id, f"{full_name} ({role})", get_current_employee())
    db.session.commit()
    return api_success("Employee created successfully", data={"employee": employee.to_dict()}, status=201)


@employees_bp.route("/api/employees/<int:employee_id>", methods=["PUT"])
@login_required
@tenant_resource(Employee, "employee_id", "employee")
@permission_required(P.UPDATE_EMPLOYEES)
def update_employee(employee):
    actor = require_actor()
    data = _body()
    if employee.status == "terminated":
        raise InvalidInputError.for_field("status", "terminated employees cannot be edited")

    changed = []
    if "full_name" in data:
        full_name = (data.get("full_name") or "").strip()
        if not full_name:
            raise InvalidInputError.for_field("full_name", "is required")
        employee.full_name = full_name
        changed.append("full_name")
    if "role" in data:
        employee.role = _validate_role(data["role"])
        changed.append(f"role={employee.role}")
    if "status" in data:
        employee.status = _validate_status(data["status"])
        changed.append(f"status={employee.status}")
    if "custom_permissions" in data:
        employee.custom_permissions = validate_custom_permissions(data["custom_permissions"])
        granted = sorted(k for k, v in employee.custom_permissions.items() if v)
        changed.append(f"custom_permissions={','.join(granted) or 'none'}")
    if "hire_date" in data:
        employee.hire_date = _optional_date(data, "hire_date")
        changed.append("hire_date")

    log_action(
        actor, "edit", "employee", employee.id,
        "; ".join(changed) or "no changes", get_current_employee(),
    )
    db.session.commit()
    return api_success("Employee updated successfully", data={"employee": employee.to_dict()})


@employees_bp.route("/api/employees/<int:employee_id>", methods=["DELETE"])
@login_required
@tenant_resource(Employee, "employee_id", "employee")
@permission_required(P.DELETE_EMPLOYEES)
def terminate_employee(employee):
    """Soft delete: mark terminated and deactivate the login account."""
    actor = require_actor()
    if employee.user_id == actor.user_id:
        raise AuthorizationError("You cannot terminate your own employee record")
    if employee.status == "terminated":
        raise InvalidInputError.for_field("status", "employee is already terminated")

    employee.status = "terminated"
    employee.termination_date = datetime.date.today()
    if employee.user is not None:
        employee.user.is_active = False
    reason = (_body().get("reason") or "").strip()
    log_action(
        actor, "terminate", "employee", employee.id,
        f"{employee.full_name}: {reason}" if reason else employee.full_name,
        get_current_employee(),
    )
    db.session.commit()
    return api_success("Employee terminated successfully", data={"employee": employee.to_dict()})
