"""Company rental policy settings API."""

from flask import Blueprint, request

from extensions import db
from services.audit import log_action
from services.auth import login_required, require_actor
from services.company_settings import get_rental_policy, update_rental_policy
from services.rbac import P, get_current_employee, permission_required
from services.tenant import scope_read
from utils import api_success

settings_bp = Blueprint("settings", __name__)


@settings_bp.route("/api/settings/rental-policy", methods=["GET"])
@login_required
def show_rental_policy():
    company_id = scope_read(require_actor())
    return api_success("Rental policy", data=get_rental_policy(company_id))


@settings_bp.route("/api/settings/rental-policy", methods=["PUT"])
@login_required
@permission_required(P.MANAGE_SETTINGS)
def edit_rental_policy():
    actor = require_actor()
    company_id = scope_read(actor)
    data = request.get_json(silent=True) or {}
    policy = update_rental_policy(company_id, data)
    log_action(
        actor, "edit", "app_setting", None,
        ", ".join(f"{k}={data[k]}" for k in sorted(data)), get_current_employee(),
    )
    db.session.commit()
    return api_success("Rental policy updated", data=policy)
