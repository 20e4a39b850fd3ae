"""Contract lifecycle API."""

from flask import Blueprint, request

from models import Contract
from services import contracts as contract_service
from services.auth import login_required, require_actor
from services.rbac import P, any_permission_required, get_current_employee, permission_required
from services.tenant import tenant_resource
from utils import api_success, safe_int

contracts_bp = Blueprint("contracts", __name__)


def _body() -> dict:
    return request.get_json(silent=True) or {}


@contracts_bp.route("/api/contracts", methods=["GET"])
@login_required
@permission_required(P.VIEW_CONTRACTS)
def list_contracts():
    contracts = contract_service.list_contracts(
        require_actor(),
        status=request.args.get("status") or None,
        customer_id=safe_int(request.args.get("customer_id"), 0) or None,
    )
    return api_success(
        "Contracts fetched",
        data={"contracts": [c.to_dict() for c in contracts]},
        meta={"count": len(contracts)},
    )


@contracts_bp.route("/api/contracts/stats", methods=["GET"])
@login_required
@any_permission_required(P.VIEW_CONTRACTS, P.VIEW_ANALYTICS)
def contract_stats():
    return api_success("Contract statistics", data=contract_service.contract_stats(require_actor()))


@contracts_bp.route("/api/contracts/<int:contract_id>", methods=["GET"])
@login_required
@tenant_resource(Contract, "contract_id", "contract")
@permission_required(P.VIEW_CONTRACTS)
def get_contract(contract):
    return api_success("Contract fetched", data={"contract": contract.to_dict()})


@contracts_bp.route("/api/contracts", methods=["POST"])
@login_required
@permission_required(P.CREATE_CONTRACTS)
def create_contract():
    result = contract_service.create_contract(
        require_actor(), _body(), employee=get_current_employee()
    )
    return api_success("Contract created successfully", data=result.to_dict(), status=201)


@contracts_bp.route("/api/contracts/<int:contract_id>", methods=["PUT"])
@login_required
@tenant_resource(Contract, "contract_id", "contract")
@permission_required(P.UPDATE_CONTRACTS)
def update_contract(contract):
    data = _body()
    result = contract_service.update_contract(
        require_actor(),
        contract.id,
        data,
        expected_version=data.get("version"),
        employee=get_current_employee(),
    )
    return api_success("Contract updated successfully", data=result.to_dict())


@contracts_bp.route("/api/contracts/<int:contract_id>/complete", methods=["POST"])
@login_required
@tenant_resource(Contract, "contract_id", "contract")
@permission_required(P.COMPLETE_CONTRACTS)
def complete_contract(contract):
    data = _body()
    result = contract_service.complete_contract(
        require_actor(),
        contract.id,
        end_mileage=data.get("end_mileage"),
        actual_return_date=data.get("actual_return_date"),
        additional_charges=data.get("additional_charges"),
        notes=data.get("notes"),
        expected_version=data.get("version"),
        employee=get_current_employee(),
    )
    return api_success("Contract completed successfully", data=result.to_dict())


@contracts_bp.route("/api/contracts/<int:contract_id>/extend", methods=["POST"])
@login_required
@tenant_resource(Contract, "contract_id", "contract")
@permission_required(P.UPDATE_CONTRACTS)
def extend_contract(contract):
    data = _body()
    result = contract_service.extend_contract(
        require_actor(),
        contract.id,
        new_end_date=data.get("new_end_date"),
        notes=data.get("notes"),
        expected_version=data.get("version"),
        employee=get_current_employee(),
    )
    return api_success("Contract extended successfully", data=result.to_dict())


@contracts_bp.route("/api/contracts/<int:contract_id>/cancel", methods=["POST"])
@login_required
@tenant_resource(Contract, "contract_id", "contract")
@permission_required(P.CANCEL_CONTRACTS)
def cancel_contract(contract):
    data = _body()
    result = contract_service.cancel_contract(
        require_actor(),
        contract.id,
        reason=data.get("reason"),
        expected_version=data.get("version"),
        employee=get_current_employee(),
    )
    return api_success("Contract cancelled successfully", data=result.to_dict())


@contracts_bp.route("/api/contracts/<int:contract_id>/mileage-estimate", methods=["GET"])
@login_required
@tenant_resource(Contract, "contract_id", "contract")
@permission_required(P.VIEW_CONTRACTS)
def mileage_estimate(contract):
    estimate = contract_service.estimate_overage(
        contract, request.args.get("estimated_end_mileage")
    )
    return api_success("Overage estimate calculated", data=estimate)
