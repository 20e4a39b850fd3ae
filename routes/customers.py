"""Customer and loyalty tier API."""

from flask import Blueprint, current_app, request

from extensions import db
from models import Customer
from services.audit import log_action
from services.auth import login_required, require_actor
from services.errors import InvalidInputError
from services.rbac import P, get_current_employee, permission_required
from services.tenant import scope_write, tenant_resource
from services.tiers import DEFAULT_TIER_POLICY, customer_tier_info
from utils import api_success

customers_bp = Blueprint("customers", __name__)

_EDITABLE_FIELDS = ("full_name", "email", "phone", "is_blacklisted", "apply_tier_discount")


def _tier_policy():
    return current_app.config.get("TIER_POLICY", DEFAULT_TIER_POLICY)


def _apply_fields(customer: Customer, data: dict) -> None:
    for name in _EDITABLE_FIELDS:
        if name not in data:
            continue
        value = data[name]
        if name in ("is_blacklisted", "apply_tier_discount"):
            if not isinstance(value, bool):
                raise InvalidInputError.for_field(name, "must be true or false")
        elif isinstance(value, str):
            value = value.strip() or None
        setattr(customer, name, value)
    if not customer.full_name:
        raise InvalidInputError.for_field("full_name", "is required")


@customers_bp.route("/api/customers", methods=["POST"])
@login_required
@permission_required(P.CREATE_CUSTOMERS)
def create_customer():
    actor = require_actor()
    data = scope_write(actor, request.get_json(silent=True) or {})
    customer = Customer(company_id=data["company_id"], total_rentals=0, lifetime_value=0)
    _apply_fields(customer, data)
    db.session.add(customer)
    db.session.flush()
    log_action(actor, "create", "customer", customer.id, customer.full_name, get_current_employee())
    db.session.commit()
    return api_success("Customer created successfully", data={"customer": customer.to_dict()}, status=201)


@customers_bp.route("/api/customers/<int:customer_id>", methods=["PATCH"])
@login_required
@tenant_resource(Customer, "customer_id", "customer")
@permission_required(P.UPDATE_CUSTOMERS)
def update_customer(customer):
    actor = require_actor()
    data = request.get_json(silent=True) or {}
    _apply_fields(customer, data)
    changed = ", ".join(sorted(k for k in data if k in _EDITABLE_FIELDS))
    log_action(actor, "edit", "customer", customer.id, changed or "no changes", get_current_employee())
    db.session.commit()
    return api_success("Customer updated successfully", data={"customer": customer.to_dict()})


@customers_bp.route("/api/customers/<int:customer_id>/tier-info", methods=["GET"])
@login_required
@tenant_resource(Customer, "customer_id", "customer")
@permission_required(P.VIEW_CUSTOMERS)
def tier_info(customer):
    return api_success("Customer tier info", data=customer_tier_info(customer, _tier_policy()))


@customers_bp.route("/api/tiers", methods=["GET"])
@login_required
def list_tiers():
    return api_success("Loyalty tiers", data={"tiers": [t.to_dict() for t in _tier_policy().tiers]})
