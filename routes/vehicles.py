"""Vehicle fleet API."""

from flask import Blueprint, request
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import VALID_VEHICLE_STATUSES, Vehicle
from services.audit import log_action
from services.auth import login_required, require_actor
from services.errors import InvalidInputError
from services.rbac import P, get_current_employee, permission_required
from services.tenant import stamp_tenant, tenant_query
from utils import api_success, safe_int, to_decimal

vehicles_bp = Blueprint("vehicles", __name__)


@vehicles_bp.route("/api/vehicles", methods=["GET"])
@login_required
@permission_required(P.VIEW_VEHICLES)
def list_vehicles():
    query = tenant_query(Vehicle)
    status = request.args.get("status")
    if status:
        query = query.filter_by(status=status)
    vehicles = query.order_by(Vehicle.brand, Vehicle.model).all()
    return api_success("Vehicles fetched", data={"vehicles": [v.to_dict() for v in vehicles]})


@vehicles_bp.route("/api/vehicles", methods=["POST"])
@login_required
@permission_required(P.CREATE_VEHICLES)
def create_vehicle():
    actor = require_actor()
    data = request.get_json(silent=True) or {}
    brand = (data.get("brand") or "").strip()
    model = (data.get("model") or "").strip()
    if not brand or not model:
        raise InvalidInputError(
            "Brand and model are required",
            details={k: "is required" for k, v in (("brand", brand), ("model", model)) if not v},
        )
    status = data.get("status") or "available"
    if status not in VALID_VEHICLE_STATUSES:
        raise InvalidInputError.for_field("status", f"must be one of {sorted(VALID_VEHICLE_STATUSES)}")
    mileage = safe_int(data.get("mileage"), 0)
    if mileage < 0:
        raise InvalidInputError.for_field("mileage", "must not be negative")
    daily_rate = to_decimal(data.get("daily_rate"), default=None)
    if daily_rate is not None and daily_rate < 0:
        raise InvalidInputError.for_field("daily_rate", "must not be negative")

    vehicle = Vehicle(
        brand=brand,
        model=model,
        registration_number=(data.get("registration_number") or "").strip() or None,
        status=status,
        mileage=mileage,
        daily_rate=daily_rate,
    )
    stamp_tenant(vehicle, actor)
    db.session.add(vehicle)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise InvalidInputError.for_field("registration_number", "already registered") from None
    log_action(actor, "create", "vehicle", vehicle.id, f"{brand} {model}", get_current_employee())
    db.session.commit()
    return api_success("Vehicle created successfully", data={"vehicle": vehicle.to_dict()}, status=201)
