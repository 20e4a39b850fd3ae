"""Test suite for the rental core API.

Tests cover: authentication, the contract lifecycle endpoints, RBAC resolution,
employee management, tenant isolation, company settings and configuration
fallbacks.
"""

import datetime
import os
from decimal import Decimal
from types import SimpleNamespace

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["CONFIG_PATH"] = "does-not-exist.yaml"

from flask import g
from sqlalchemy import text
from werkzeug.security import generate_password_hash

from app import _build_tier_policy, create_app
from config import load_config
from extensions import db
from models import AppSetting, AuditLog, Company, Contract, Customer, Employee, User, Vehicle
from services.auth import Actor, issue_token
from services.contracts import complete_contract, extend_contract
from services.errors import (
    ConcurrentModificationError,
    TenantContextError,
    TenantIsolationError,
    VehicleUnavailableError,
)
from services.rbac import (
    DEFAULT_ROLE_POLICY,
    ResolutionKind,
    has_any_permission,
    has_permission,
)
from services.tenant import scope_read, scope_write
from services.tiers import DEFAULT_TIER_POLICY

TEST_PASSWORD = "Secret123"


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    yield application


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


def _user(company, email, role, employee_role=None, employee_status="active", custom=None):
    user = User(
        email=email,
        full_name=email.split("@")[0].title(),
        password_hash=generate_password_hash(TEST_PASSWORD),
        role=role,
        company_id=company.id if company else None,
    )
    db.session.add(user)
    db.session.flush()
    if employee_role:
        db.session.add(
            Employee(
                company_id=company.id,
                user_id=user.id,
                full_name=user.full_name,
                email=email,
                role=employee_role,
                status=employee_status,
                custom_permissions=custom or {},
            )
        )
    return user


@pytest.fixture
def sample_data(app):
    """Two companies with users, customers and vehicles.

    Returns dict of IDs and bearer tokens to avoid detached instance errors.
    """
    with app.app_context():
        company_a = Company(name="Alpha Cars", slug="alpha")
        company_b = Company(name="Beta Rentals", slug="beta")
        db.session.add_all([company_a, company_b])
        db.session.flush()

        users = {
            "owner": _user(company_a, "owner@alpha.test", "owner"),
            "manager": _user(company_a, "manager@alpha.test", "manager", "manager"),
            "sales": _user(company_a, "sales@alpha.test", "sales_agent", "sales_agent"),
            "fallback_manager": _user(company_a, "nolink@alpha.test", "manager"),
            "viewer": _user(company_a, "viewer@alpha.test", "viewer"),
            "demoted": _user(company_a, "demoted@alpha.test", "manager", "viewer"),
            "custom": _user(
                company_a, "custom@alpha.test", "staff", "staff",
                custom={"complete_contracts": True, "cancel_contracts": False},
            ),
            "terminated": _user(
                company_a, "gone@alpha.test", "staff", "manager", employee_status="terminated"
            ),
            "orphan": _user(None, "orphan@nowhere.test", "manager"),
            "owner_b": _user(company_b, "owner@beta.test", "owner"),
            "manager_b": _user(company_b, "manager@beta.test", "manager", "manager"),
        }

        customers = {
            "silver": Customer(company_id=company_a.id, full_name="Sofia Silver", total_rentals=7),
            "optout": Customer(
                company_id=company_a.id, full_name="Oscar Optout", total_rentals=7,
                apply_tier_discount=False,
            ),
            "blacklisted": Customer(
                company_id=company_a.id, full_name="Bad Actor", is_blacklisted=True
            ),
            "customer_b": Customer(company_id=company_b.id, full_name="Beta Customer"),
        }
        vehicles = {
            "car1": Vehicle(company_id=company_a.id, brand="Renault", model="Clio",
                            registration_number="A-1", mileage=10000, daily_rate=Decimal("1000")),
            "car2": Vehicle(company_id=company_a.id, brand="Dacia", model="Duster",
                            registration_number="A-2", mileage=5000, daily_rate=Decimal("21000")),
            "car3": Vehicle(company_id=company_a.id, brand="Fiat", model="Panda",
                            registration_number="A-3", status="maintenance"),
            "car_b": Vehicle(company_id=company_b.id, brand="Kia", model="Rio",
                             registration_number="B-1", mileage=100),
        }
        db.session.add_all(list(customers.values()) + list(vehicles.values()))
        db.session.commit()

        ids = {"company_a": company_a.id, "company_b": company_b.id}
        ids.update({name: c.id for name, c in customers.items()})
        ids.update({name: v.id for name, v in vehicles.items()})
        ids.update({f"user_{name}": u.id for name, u in users.items()})
        ids["tokens"] = {name: issue_token(u) for name, u in users.items()}
        return ids


def _headers(sample_data, who):
    return {"Authorization": f"Bearer {sample_data['tokens'][who]}"}


def _create_contract(client, sample_data, who="manager", **overrides):
    payload = {
        "customer_id": sample_data["silver"],
        "vehicle_id": sample_data["car1"],
        "start_date": "2026-03-01",
        "end_date": "2026-03-05",
        "daily_rate": "1000",
    }
    payload.update(overrides)
    return client.post("/api/contracts", json=payload, headers=_headers(sample_data, who))


def _contract_id(client, sample_data, **overrides):
    resp = _create_contract(client, sample_data, **overrides)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["data"]["contract"]["id"]


# ============================================================================
# Authentication
# ============================================================================


class TestAuthApi:
    def test_login_success_returns_working_token(self, client, sample_data):
        resp = client.post(
            "/api/auth/login",
            json={"email": "manager@alpha.test", "password": TEST_PASSWORD},
        )
        assert resp.status_code == 200
        token = resp.get_json()["data"]["token"]
        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        body = me.get_json()["data"]
        assert body["user"]["email"] == "manager@alpha.test"
        assert body["permission_source"] == "employee"
        assert "complete_contracts" in body["permissions"]

    def test_login_wrong_password(self, client, sample_data):
        resp = client.post(
            "/api/auth/login",
            json={"email": "manager@alpha.test", "password": "nope"},
        )
        assert resp.status_code == 401
        assert resp.get_json()["success"] is False

    def test_login_missing_fields(self, client, sample_data):
        resp = client.post("/api/auth/login", json={"email": ""})
        assert resp.status_code == 422
        assert "email" in resp.get_json()["details"]

    def test_anonymous_request_rejected(self, client, sample_data):
        resp = client.get("/api/contracts")
        assert resp.status_code == 401
        assert resp.get_json()["code"] == "UNAUTHENTICATED"

    def test_garbage_token_rejected(self, client, sample_data):
        resp = client.get("/api/contracts", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    def test_owner_has_wildcard(self, client, sample_data):
        resp = client.get("/api/auth/me", headers=_headers(sample_data, "owner"))
        body = resp.get_json()["data"]
        assert body["permission_source"] == "owner"
        assert body["permissions"] == ["*"]

    def test_roles_listed(self, client, sample_data):
        resp = client.get("/api/auth/roles", headers=_headers(sample_data, "viewer"))
        roles = {r["value"] for r in resp.get_json()["data"]["roles"]}
        assert {"owner", "admin", "manager", "sales_agent", "viewer"} <= roles


# ============================================================================
# Contract lifecycle
# ============================================================================


class TestContractCreation:
    def test_create_contract(self, client, app, sample_data):
        resp = _create_contract(client, sample_data)
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        contract = data["contract"]
        assert contract["contract_number"] == "RENT-2026-0001"
        assert contract["status"] == "active"
        assert contract["total_days"] == 5
        assert contract["base_amount"] == 5000.0
        assert contract["start_mileage"] == 10000
        assert contract["daily_km_limit"] == 300
        assert contract["total_km_allowed"] == 1750
        assert data["allowance"]["bonus_per_day"] == 50
        with app.app_context():
            assert db.session.get(Vehicle, sample_data["car1"]).status == "rented"
            employee = Employee.query.filter_by(user_id=sample_data["user_manager"]).one()
            assert employee.total_contracts_created == 1
            # creation does not credit the customer
            assert db.session.get(Customer, sample_data["silver"]).total_rentals == 7

    def test_numbers_are_sequential(self, client, sample_data):
        _contract_id(client, sample_data)
        resp = _create_contract(client, sample_data, vehicle_id=sample_data["car2"])
        assert resp.get_json()["data"]["contract"]["contract_number"] == "RENT-2026-0002"

    def test_blacklisted_customer_rejected(self, client, sample_data):
        resp = _create_contract(client, sample_data, customer_id=sample_data["blacklisted"])
        assert resp.status_code == 403
        assert resp.get_json()["code"] == "CUSTOMER_BLACKLISTED"

    def test_vehicle_in_maintenance_rejected(self, client, sample_data):
        resp = _create_contract(client, sample_data, vehicle_id=sample_data["car3"])
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "VEHICLE_UNAVAILABLE"

    def test_rented_vehicle_rejected(self, client, sample_data):
        _contract_id(client, sample_data)
        resp = _create_contract(client, sample_data, start_date="2026-04-01", end_date="2026-04-02")
        assert resp.status_code == 409

    def test_end_before_start_rejected(self, client, sample_data):
        resp = _create_contract(client, sample_data, start_date="2026-03-05", end_date="2026-03-01")
        assert resp.status_code == 422
        assert "end_date" in resp.get_json()["details"]

    def test_out_of_bounds_km_limit_rejected(self, client, sample_data):
        resp = _create_contract(client, sample_data, daily_km_limit=5000)
        assert resp.status_code == 422

    def test_client_company_id_ignored(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data, company_id=sample_data["company_b"])
        with app.app_context():
            assert db.session.get(Contract, contract_id).company_id == sample_data["company_a"]


class TestContractCompletion:
    def test_silver_customer_overage(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 12000, "actual_return_date": "2026-03-05"},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 200, resp.get_json()
        data = resp.get_json()["data"]
        assert data["allowance"]["total_allowed"] == 1750
        overage = data["overage"]
        assert overage["overage_amount"] == 250
        assert overage["rate_used"] == 15.0
        assert overage["base_charge"] == 3750.0
        assert overage["discount_amount"] == 375.0
        assert overage["final_charge"] == 3375.0
        assert overage["tier_id"] == "SILVER"

        contract = data["contract"]
        assert contract["status"] == "completed"
        assert contract["actual_km_driven"] == 2000
        assert contract["additional_charges"] == 3375.0
        assert contract["tax_amount"] == 1591.25
        assert contract["total_amount"] == 9966.25
        assert contract["deposit_returned"] is True
        assert "KM overage: 250 km" in contract["notes"]

        with app.app_context():
            customer = db.session.get(Customer, sample_data["silver"])
            assert customer.total_rentals == 8
            assert customer.lifetime_value == Decimal("9966.25")
            vehicle = db.session.get(Vehicle, sample_data["car1"])
            assert vehicle.status == "available"
            assert vehicle.mileage == 12000
            assert AuditLog.query.filter_by(action="contract_complete", entity_id=contract_id).count() == 1

    def test_opted_out_customer_uses_base_tier(self, client, sample_data):
        contract_id = _contract_id(client, sample_data, customer_id=sample_data["optout"])
        resp = client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 12000},
            headers=_headers(sample_data, "manager"),
        )
        overage = resp.get_json()["data"]["overage"]
        assert resp.get_json()["data"]["allowance"]["total_allowed"] == 1500
        assert overage["overage_amount"] == 500
        assert overage["rate_used"] == 20.0
        assert overage["final_charge"] == 10000.0

    def test_within_allowance_has_no_charge(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 11000, "additional_charges": 200},
            headers=_headers(sample_data, "manager"),
        )
        data = resp.get_json()["data"]
        assert data["overage"]["tier_id"] == "N/A"
        assert data["contract"]["overage_charges"] == 0.0
        assert data["contract"]["additional_charges"] == 200.0

    def test_second_completion_rejected_without_double_credit(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data)
        first = client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 10500},
            headers=_headers(sample_data, "manager"),
        )
        assert first.status_code == 200
        second = client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 10600},
            headers=_headers(sample_data, "manager"),
        )
        assert second.status_code == 409
        body = second.get_json()
        assert body["code"] == "INVALID_TRANSITION"
        assert body["details"] == {"current_state": "completed", "requested": "complete"}
        with app.app_context():
            assert db.session.get(Customer, sample_data["silver"]).total_rentals == 8
            assert db.session.get(Contract, contract_id).end_mileage == 10500

    def test_odometer_regression_rejected(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 9000},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 422
        assert "end_mileage" in resp.get_json()["details"]
        with app.app_context():
            assert db.session.get(Contract, contract_id).status == "active"
            assert db.session.get(Customer, sample_data["silver"]).total_rentals == 7

    def test_stale_version_rejected(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data)
        fetched = client.get(f"/api/contracts/{contract_id}", headers=_headers(sample_data, "manager"))
        version = fetched.get_json()["data"]["contract"]["version"]
        with app.app_context():
            db.session.execute(
                text("UPDATE contract SET version_id = version_id + 1 WHERE id = :id"),
                {"id": contract_id},
            )
            db.session.commit()
        resp = client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 10500, "version": version},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "STALE_STATE"
        with app.app_context():
            assert db.session.get(Contract, contract_id).status == "active"
            assert db.session.get(Customer, sample_data["silver"]).total_rentals == 7

    def test_mileage_estimate_is_read_only(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.get(
            f"/api/contracts/{contract_id}/mileage-estimate?estimated_end_mileage=12000",
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["estimated_km_driven"] == 2000
        assert data["estimated_overage"]["final_charge"] == 3375.0
        assert data["warning"]
        with app.app_context():
            contract = db.session.get(Contract, contract_id)
            assert contract.status == "active"
            assert contract.end_mileage is None

    def test_mileage_estimate_requires_value(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.get(
            f"/api/contracts/{contract_id}/mileage-estimate",
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 422

    def test_fractional_odometer_rejected(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 10500.9},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 422
        assert resp.get_json()["details"] == {"end_mileage": "must be an integer"}
        estimate = client.get(
            f"/api/contracts/{contract_id}/mileage-estimate?estimated_end_mileage=10500.9",
            headers=_headers(sample_data, "manager"),
        )
        assert estimate.status_code == 422
        assert "estimated_end_mileage" in estimate.get_json()["details"]
        with app.app_context():
            contract = db.session.get(Contract, contract_id)
            assert contract.status == "active"
            assert contract.end_mileage is None

    def test_whole_number_float_odometer_accepted(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 10500.0},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 200
        assert resp.get_json()["data"]["contract"]["end_mileage"] == 10500

    def test_concurrent_completion_detected_on_flush(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data)
        with app.app_context():
            actor = Actor.from_user(db.session.get(User, sample_data["user_manager"]))
            # This session keeps the contract as it was before the other completion
            stale = db.session.get(Contract, contract_id)
            assert stale.status == "active"
            with app.app_context():
                complete_contract(actor, contract_id, end_mileage=10500)
            with pytest.raises(ConcurrentModificationError):
                complete_contract(actor, contract_id, end_mileage=10600)

        with app.app_context():
            contract = db.session.get(Contract, contract_id)
            assert contract.status == "completed"
            assert contract.end_mileage == 10500
            assert db.session.get(Customer, sample_data["silver"]).total_rentals == 8
            assert AuditLog.query.filter_by(action="contract_complete", entity_id=contract_id).count() == 1


class TestContractCancellation:
    def test_cancel_keeps_counters(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.post(
            f"/api/contracts/{contract_id}/cancel",
            json={"reason": "Customer changed plans"},
            headers=_headers(sample_data, "owner"),
        )
        assert resp.status_code == 200
        contract = resp.get_json()["data"]["contract"]
        assert contract["status"] == "cancelled"
        assert "Cancellation reason: Customer changed plans" in contract["notes"]
        assert contract["total_amount"] == 5950.0
        with app.app_context():
            assert db.session.get(Customer, sample_data["silver"]).total_rentals == 7
            assert db.session.get(Vehicle, sample_data["car1"]).status == "available"
            log = AuditLog.query.filter_by(action="contract_cancel").one()
            assert "Customer changed plans" in log.details

    def test_cancelled_contract_is_terminal(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        client.post(f"/api/contracts/{contract_id}/cancel", json={}, headers=_headers(sample_data, "owner"))
        for action, body in (("cancel", {}), ("complete", {"end_mileage": 10100}),
                             ("extend", {"new_end_date": "2026-03-09"})):
            resp = client.post(
                f"/api/contracts/{contract_id}/{action}", json=body, headers=_headers(sample_data, "owner")
            )
            assert resp.status_code == 409, action
            assert resp.get_json()["details"]["current_state"] == "cancelled"


class TestContractExtension:
    def test_extension_recomputes_amounts_only(self, client, sample_data):
        contract_id = _contract_id(
            client, sample_data, vehicle_id=sample_data["car2"], daily_rate="21000",
            start_date="2026-03-01", end_date="2026-03-07",
        )
        resp = client.post(
            f"/api/contracts/{contract_id}/extend",
            json={"new_end_date": "2026-03-10", "notes": "Trip extended"},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 200, resp.get_json()
        contract = resp.get_json()["data"]["contract"]
        assert contract["status"] == "active"
        assert contract["total_days"] == 10
        assert contract["base_amount"] == 210000.0
        assert contract["total_amount"] == 249900.0
        assert contract["total_km_allowed"] == 7 * 350
        assert contract["km_overage"] == 0
        assert contract["end_mileage"] is None
        assert "Extended from 2026-03-07 to 2026-03-10: Trip extended" in contract["notes"]

    def test_completion_after_extension_stores_recomputed_allowance(self, client, sample_data):
        contract_id = _contract_id(
            client, sample_data, vehicle_id=sample_data["car2"], daily_rate="21000",
            start_date="2026-03-01", end_date="2026-03-07",
        )
        client.post(
            f"/api/contracts/{contract_id}/extend",
            json={"new_end_date": "2026-03-10"},
            headers=_headers(sample_data, "manager"),
        )
        resp = client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 5000 + 3600},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 200, resp.get_json()
        contract = resp.get_json()["data"]["contract"]
        assert contract["total_km_allowed"] == 10 * 350
        assert contract["km_overage"] == 100
        assert contract["overage_charges"] == 1350.0
        assert contract["actual_km_driven"] - contract["total_km_allowed"] == contract["km_overage"]

    def test_new_end_must_be_later(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.post(
            f"/api/contracts/{contract_id}/extend",
            json={"new_end_date": "2026-03-05"},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 422
        assert "new_end_date" in resp.get_json()["details"]

    def test_conflicting_booking_rejected(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data)
        with app.app_context():
            db.session.add(
                Contract(
                    company_id=sample_data["company_a"],
                    contract_number="RENT-2026-9999",
                    customer_id=sample_data["optout"],
                    vehicle_id=sample_data["car1"],
                    start_date=datetime.date(2026, 3, 9),
                    end_date=datetime.date(2026, 3, 12),
                    daily_rate=Decimal("1000"),
                    total_days=4,
                )
            )
            db.session.commit()
        blocked = client.post(
            f"/api/contracts/{contract_id}/extend",
            json={"new_end_date": "2026-03-10"},
            headers=_headers(sample_data, "manager"),
        )
        assert blocked.status_code == 409
        assert blocked.get_json()["details"]["conflicting_contract"] == "RENT-2026-9999"
        allowed = client.post(
            f"/api/contracts/{contract_id}/extend",
            json={"new_end_date": "2026-03-08"},
            headers=_headers(sample_data, "manager"),
        )
        assert allowed.status_code == 200

    def test_availability_collaborator_is_injectable(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data)
        calls = []

        def fully_booked(vehicle_id, start, end, exclude_contract_id=None):
            calls.append((vehicle_id, start, end, exclude_contract_id))
            raise VehicleUnavailableError()

        with app.app_context():
            actor = Actor.from_user(db.session.get(User, sample_data["user_manager"]))
            with pytest.raises(VehicleUnavailableError):
                extend_contract(actor, contract_id, new_end_date="2026-03-06", availability=fully_booked)
            assert calls == [
                (sample_data["car1"], datetime.date(2026, 3, 6), datetime.date(2026, 3, 6), contract_id)
            ]
            assert db.session.get(Contract, contract_id).end_date == datetime.date(2026, 3, 5)


class TestContractUpdateAndRead:
    def test_update_recomputes_totals(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.put(
            f"/api/contracts/{contract_id}",
            json={"additional_charges": 500, "discount_amount": 100, "notes": "Child seat"},
            headers=_headers(sample_data, "sales"),
        )
        assert resp.status_code == 200
        contract = resp.get_json()["data"]["contract"]
        assert contract["tax_amount"] == 1026.0
        assert contract["total_amount"] == 6426.0
        assert contract["notes"] == "Child seat"
        assert contract["version"] == 2

    def test_negative_charge_rejected(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.put(
            f"/api/contracts/{contract_id}",
            json={"additional_charges": -5},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 422

    def test_list_and_stats(self, client, sample_data):
        first = _contract_id(client, sample_data)
        _contract_id(client, sample_data, vehicle_id=sample_data["car2"])
        client.post(f"/api/contracts/{first}/cancel", json={}, headers=_headers(sample_data, "owner"))
        listed = client.get("/api/contracts?status=active", headers=_headers(sample_data, "manager"))
        assert listed.get_json()["meta"]["count"] == 1
        stats = client.get("/api/contracts/stats", headers=_headers(sample_data, "manager")).get_json()
        assert stats["data"]["by_status"] == {"active": 1, "completed": 0, "cancelled": 1}

    def test_unknown_contract_is_404(self, client, sample_data):
        resp = client.get("/api/contracts/9999", headers=_headers(sample_data, "manager"))
        assert resp.status_code == 404
        assert resp.get_json()["code"] == "NOT_FOUND"


# ============================================================================
# RBAC
# ============================================================================


class TestRolePermissions:
    def _complete(self, client, sample_data, contract_id, who):
        return client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 10100},
            headers=_headers(sample_data, who),
        )

    def test_role_fallback_grants_when_role_allows(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = self._complete(client, sample_data, contract_id, "fallback_manager")
        assert resp.status_code == 200

    def test_role_fallback_denies_when_role_lacks_permission(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = self._complete(client, sample_data, contract_id, "viewer")
        assert resp.status_code == 403
        body = resp.get_json()
        assert body["code"] == "FORBIDDEN"
        assert "complete_contracts" in body["message"]

    def test_employee_role_wins_over_claim(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        assert self._complete(client, sample_data, contract_id, "demoted").status_code == 403

    def test_custom_override_grants(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        assert self._complete(client, sample_data, contract_id, "custom").status_code == 200

    def test_false_override_does_not_grant(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.post(
            f"/api/contracts/{contract_id}/cancel", json={}, headers=_headers(sample_data, "custom")
        )
        assert resp.status_code == 403

    def test_terminated_employee_falls_back_to_claim(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        assert self._complete(client, sample_data, contract_id, "terminated").status_code == 403

    def test_sales_agent_cannot_cancel(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.post(
            f"/api/contracts/{contract_id}/cancel", json={}, headers=_headers(sample_data, "sales")
        )
        assert resp.status_code == 403

    def test_resolution_strategies_with_injected_policy(self):
        actor = Actor(user_id=1, email="a@b.c", role="sales_agent", company_id=1)
        no_employee = lambda _actor: None  # noqa: E731
        check = has_permission(actor, "create_contracts", DEFAULT_ROLE_POLICY, no_employee)
        assert check.granted
        assert check.employee is None
        assert check.resolution.kind is ResolutionKind.ROLE_FALLBACK

        employee = SimpleNamespace(role="viewer", custom_permissions={"cancel_contracts": True})
        check = has_permission(actor, "create_contracts", DEFAULT_ROLE_POLICY, lambda _a: employee)
        assert not check.granted
        check = has_permission(actor, "cancel_contracts", DEFAULT_ROLE_POLICY, lambda _a: employee)
        assert check.granted
        assert check.employee is employee
        assert check.resolution.kind is ResolutionKind.EMPLOYEE

    def test_owner_never_looks_up_employee(self):
        actor = Actor(user_id=1, email="o@b.c", role="owner", company_id=1)

        def explode(_actor):
            raise AssertionError("employee lookup not expected")

        check = has_permission(actor, "anything_at_all", DEFAULT_ROLE_POLICY, explode)
        assert check.granted
        assert check.resolution.kind is ResolutionKind.OWNER

    def test_any_permission_evaluates_once(self):
        actor = Actor(user_id=1, email="a@b.c", role="staff", company_id=1)
        lookups = []

        def find(_actor):
            lookups.append(1)
            return None

        check = has_any_permission(
            actor, ["complete_contracts", "view_vehicles"], DEFAULT_ROLE_POLICY, find
        )
        assert check.granted
        assert len(lookups) == 1


# ============================================================================
# Tenant isolation
# ============================================================================


class TestTenantIsolation:
    def test_other_company_contract_denied(self, client, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.get(f"/api/contracts/{contract_id}", headers=_headers(sample_data, "manager_b"))
        assert resp.status_code == 403
        assert resp.get_json()["code"] == "TENANT_MISMATCH"

    def test_owner_bypass_still_requires_same_company(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data)
        resp = client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 10100},
            headers=_headers(sample_data, "owner_b"),
        )
        assert resp.status_code == 403
        assert resp.get_json()["code"] == "TENANT_MISMATCH"
        with app.app_context():
            assert db.session.get(Contract, contract_id).status == "active"

    def test_foreign_customer_rejected_on_create(self, client, sample_data):
        resp = _create_contract(client, sample_data, customer_id=sample_data["customer_b"])
        assert resp.status_code == 403

    def test_foreign_customer_tier_info_denied(self, client, sample_data):
        resp = client.get(
            f"/api/customers/{sample_data['customer_b']}/tier-info",
            headers=_headers(sample_data, "owner"),
        )
        assert resp.status_code == 403

    def test_list_only_shows_own_company(self, client, sample_data):
        _contract_id(client, sample_data)
        resp = client.get("/api/contracts", headers=_headers(sample_data, "owner_b"))
        assert resp.get_json()["data"]["contracts"] == []

    def test_actor_without_company_is_rejected(self, client, sample_data):
        resp = client.get("/api/contracts", headers=_headers(sample_data, "orphan"))
        assert resp.status_code == 403
        assert resp.get_json()["code"] == "INVALID_TENANT_CONTEXT"

    def test_scope_helpers(self):
        actor = Actor(user_id=1, email="a@b.c", role="manager", company_id=3)
        assert scope_read(actor) == 3
        assert scope_write(actor, {"company_id": 99, "name": "x"}) == {"company_id": 3, "name": "x"}
        with pytest.raises(TenantContextError):
            scope_read(Actor(user_id=2, email="b@b.c", role="manager", company_id=None))

    def test_flush_guard_blocks_cross_company_write(self, app, sample_data):
        with app.test_request_context():
            g.tenant_id = sample_data["company_a"]
            vehicle = db.session.get(Vehicle, sample_data["car_b"])
            vehicle.mileage = 1
            with pytest.raises(TenantIsolationError):
                db.session.flush()
            db.session.rollback()


# ============================================================================
# Customers & tiers
# ============================================================================


def _employee_id(app, user_id):
    with app.app_context():
        return Employee.query.filter_by(user_id=user_id).one().id


class TestEmployeeRoutes:
    def test_list_requires_view_permission(self, client, sample_data):
        resp = client.get("/api/employees", headers=_headers(sample_data, "sales"))
        assert resp.status_code == 403

    def test_list_is_scoped_to_company(self, client, sample_data):
        resp = client.get("/api/employees", headers=_headers(sample_data, "manager"))
        assert resp.status_code == 200
        employees = resp.get_json()["data"]["employees"]
        assert len(employees) == 5
        assert all(e["email"].endswith("@alpha.test") for e in employees)

        active = client.get("/api/employees?status=active", headers=_headers(sample_data, "manager"))
        assert active.get_json()["meta"]["count"] == 4

    def test_create_employee_with_override(self, client, app, sample_data):
        resp = client.post(
            "/api/employees",
            json={
                "full_name": "Rita Reception",
                "email": "Rita@Alpha.test",
                "password": "longenough",
                "role": "receptionist",
                "custom_permissions": {"cancel_contracts": True},
            },
            headers=_headers(sample_data, "owner"),
        )
        assert resp.status_code == 201, resp.get_json()
        employee = resp.get_json()["data"]["employee"]
        assert employee["email"] == "rita@alpha.test"
        assert employee["status"] == "active"
        assert employee["hire_date"] == datetime.date.today().isoformat()

        login = client.post(
            "/api/auth/login", json={"email": "rita@alpha.test", "password": "longenough"}
        )
        token = login.get_json()["data"]["token"]
        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        body = me.get_json()["data"]
        assert body["permission_source"] == "employee"
        assert "cancel_contracts" in body["permissions"]

        with app.app_context():
            entry = AuditLog.query.filter_by(action="create", entity_type="employee").one()
            assert entry.entity_id == employee["id"]
            assert entry.company_id == sample_data["company_a"]

    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"role": "owner"}, "role"),
            ({"custom_permissions": {"cancel_contracts": "yes"}}, "custom_permissions"),
            ({"custom_permissions": {"launch_rockets": True}}, "custom_permissions"),
            ({"custom_permissions": ["cancel_contracts"]}, "custom_permissions"),
            ({"password": "short"}, "password"),
            ({"email": "manager@alpha.test"}, "email"),
        ],
    )
    def test_create_validation(self, client, sample_data, overrides, field):
        payload = {
            "full_name": "New Hire",
            "email": "new@alpha.test",
            "password": "longenough",
            "role": "staff",
        }
        payload.update(overrides)
        resp = client.post("/api/employees", json=payload, headers=_headers(sample_data, "owner"))
        assert resp.status_code == 422
        assert field in resp.get_json()["details"]

    def test_manager_cannot_create(self, client, sample_data):
        resp = client.post(
            "/api/employees",
            json={"full_name": "X", "email": "x@alpha.test", "password": "longenough", "role": "staff"},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 403

    def test_override_granted_through_api_takes_effect(self, client, app, sample_data):
        contract_id = _contract_id(client, sample_data)
        denied = client.post(
            f"/api/contracts/{contract_id}/cancel", json={}, headers=_headers(sample_data, "sales")
        )
        assert denied.status_code == 403

        employee_id = _employee_id(app, sample_data["user_sales"])
        resp = client.put(
            f"/api/employees/{employee_id}",
            json={"custom_permissions": {"cancel_contracts": True}},
            headers=_headers(sample_data, "owner"),
        )
        assert resp.status_code == 200, resp.get_json()
        assert resp.get_json()["data"]["employee"]["custom_permissions"] == {"cancel_contracts": True}

        with app.app_context():
            actor = Actor.from_user(db.session.get(User, sample_data["user_sales"]))
            check = has_permission(actor, "cancel_contracts")
            assert check.granted
            assert check.resolution.kind == ResolutionKind.EMPLOYEE
            assert check.employee.id == employee_id

        allowed = client.post(
            f"/api/contracts/{contract_id}/cancel", json={}, headers=_headers(sample_data, "sales")
        )
        assert allowed.status_code == 200

    def test_role_change_through_api(self, client, app, sample_data):
        employee_id = _employee_id(app, sample_data["user_sales"])
        resp = client.put(
            f"/api/employees/{employee_id}",
            json={"role": "viewer", "status": "on_leave"},
            headers=_headers(sample_data, "owner"),
        )
        assert resp.status_code == 200
        with app.app_context():
            actor = Actor.from_user(db.session.get(User, sample_data["user_sales"]))
            # on_leave no longer counts as an active employee record
            check = has_permission(actor, "create_contracts")
            assert check.resolution.kind == ResolutionKind.ROLE_FALLBACK
            assert check.granted
            entry = AuditLog.query.filter_by(action="edit", entity_id=employee_id).one()
            assert "role=viewer" in entry.details

    def test_termination_through_api_changes_resolution(self, client, app, sample_data):
        employee_id = _employee_id(app, sample_data["user_demoted"])
        with app.app_context():
            actor = Actor.from_user(db.session.get(User, sample_data["user_demoted"]))
            before = has_permission(actor, "complete_contracts")
            assert not before.granted
            assert before.resolution.kind == ResolutionKind.EMPLOYEE

        resp = client.delete(
            f"/api/employees/{employee_id}",
            json={"reason": "Contract ended"},
            headers=_headers(sample_data, "owner"),
        )
        assert resp.status_code == 200, resp.get_json()
        employee = resp.get_json()["data"]["employee"]
        assert employee["status"] == "terminated"
        assert employee["termination_date"] == datetime.date.today().isoformat()

        with app.app_context():
            after = has_permission(actor, "complete_contracts")
            assert after.granted
            assert after.resolution.kind == ResolutionKind.ROLE_FALLBACK
            assert after.employee is None
            assert db.session.get(User, sample_data["user_demoted"]).is_active is False
            entry = AuditLog.query.filter_by(action="terminate", entity_id=employee_id).one()
            assert "Contract ended" in entry.details

        me = client.get("/api/auth/me", headers=_headers(sample_data, "demoted"))
        assert me.status_code == 401

    def test_terminate_twice_rejected(self, client, app, sample_data):
        employee_id = _employee_id(app, sample_data["user_terminated"])
        resp = client.delete(f"/api/employees/{employee_id}", headers=_headers(sample_data, "owner"))
        assert resp.status_code == 422
        edit = client.put(
            f"/api/employees/{employee_id}",
            json={"role": "staff"},
            headers=_headers(sample_data, "owner"),
        )
        assert edit.status_code == 422

    def test_terminated_status_only_via_delete(self, client, app, sample_data):
        employee_id = _employee_id(app, sample_data["user_sales"])
        resp = client.put(
            f"/api/employees/{employee_id}",
            json={"status": "terminated"},
            headers=_headers(sample_data, "owner"),
        )
        assert resp.status_code == 422
        assert "status" in resp.get_json()["details"]

    def test_cannot_terminate_self(self, client, app, sample_data):
        employee_id = _employee_id(app, sample_data["user_custom"])
        client.put(
            f"/api/employees/{employee_id}",
            json={"custom_permissions": {"delete_employees": True}},
            headers=_headers(sample_data, "owner"),
        )
        resp = client.delete(f"/api/employees/{employee_id}", headers=_headers(sample_data, "custom"))
        assert resp.status_code == 403
        with app.app_context():
            assert db.session.get(Employee, employee_id).status == "active"

    def test_cross_tenant_update_blocked(self, client, app, sample_data):
        employee_id = _employee_id(app, sample_data["user_sales"])
        resp = client.put(
            f"/api/employees/{employee_id}",
            json={"role": "manager"},
            headers=_headers(sample_data, "manager_b"),
        )
        assert resp.status_code == 403
        assert resp.get_json()["code"] == "TENANT_MISMATCH"
        with app.app_context():
            assert db.session.get(Employee, employee_id).role == "sales_agent"


class TestCustomerRoutes:
    def test_tier_info(self, client, sample_data):
        resp = client.get(
            f"/api/customers/{sample_data['silver']}/tier-info",
            headers=_headers(sample_data, "sales"),
        )
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["tier"] == "SILVER"
        assert data["apply_tier_discount"] is True
        assert data["progress"]["next_tier"] == "GOLD"
        assert data["progress"]["rentals_to_next_tier"] == 3
        assert data["benefits"]

    def test_tier_advances_after_completion(self, client, app, sample_data):
        with app.app_context():
            db.session.get(Customer, sample_data["silver"]).total_rentals = 9
            db.session.commit()
        contract_id = _contract_id(client, sample_data)
        client.post(
            f"/api/contracts/{contract_id}/complete",
            json={"end_mileage": 10100},
            headers=_headers(sample_data, "manager"),
        )
        resp = client.get(
            f"/api/customers/{sample_data['silver']}/tier-info",
            headers=_headers(sample_data, "manager"),
        )
        assert resp.get_json()["data"]["tier"] == "GOLD"

    def test_create_and_opt_out(self, client, sample_data):
        resp = client.post(
            "/api/customers",
            json={"full_name": "New Person", "email": "new@example.test"},
            headers=_headers(sample_data, "sales"),
        )
        assert resp.status_code == 201
        customer = resp.get_json()["data"]["customer"]
        assert customer["total_rentals"] == 0
        resp = client.patch(
            f"/api/customers/{customer['id']}",
            json={"apply_tier_discount": False},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.get_json()["data"]["customer"]["apply_tier_discount"] is False

    def test_create_requires_name(self, client, sample_data):
        resp = client.post("/api/customers", json={}, headers=_headers(sample_data, "sales"))
        assert resp.status_code == 422

    def test_list_tiers(self, client, sample_data):
        resp = client.get("/api/tiers", headers=_headers(sample_data, "viewer"))
        tiers = [t["tier"] for t in resp.get_json()["data"]["tiers"]]
        assert tiers == ["NEW", "BRONZE", "SILVER", "GOLD", "PLATINUM"]


class TestVehicleRoutes:
    def test_create_and_list(self, client, sample_data):
        resp = client.post(
            "/api/vehicles",
            json={"brand": "Skoda", "model": "Octavia", "registration_number": "A-9", "daily_rate": 5500},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 201
        listed = client.get("/api/vehicles?status=available", headers=_headers(sample_data, "manager"))
        regs = {v["registration_number"] for v in listed.get_json()["data"]["vehicles"]}
        assert regs == {"A-1", "A-2", "A-9"}

    def test_duplicate_registration_rejected(self, client, sample_data):
        resp = client.post(
            "/api/vehicles",
            json={"brand": "Skoda", "model": "Fabia", "registration_number": "A-1"},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 422

    def test_sales_agent_cannot_create(self, client, sample_data):
        resp = client.post(
            "/api/vehicles", json={"brand": "X", "model": "Y"}, headers=_headers(sample_data, "sales")
        )
        assert resp.status_code == 403


# ============================================================================
# Settings & configuration
# ============================================================================


class TestRentalPolicySettings:
    def test_defaults(self, client, sample_data):
        resp = client.get("/api/settings/rental-policy", headers=_headers(sample_data, "viewer"))
        data = resp.get_json()["data"]
        assert data["default_daily_km_limit"] == 300
        assert data["default_overage_rate"] == 20.0

    def test_update_affects_new_contracts(self, client, sample_data):
        resp = client.put(
            "/api/settings/rental-policy",
            json={"default_daily_km_limit": 400},
            headers=_headers(sample_data, "owner"),
        )
        assert resp.status_code == 200
        created = _create_contract(client, sample_data).get_json()["data"]["contract"]
        assert created["daily_km_limit"] == 400
        assert created["total_km_allowed"] == 2250

    def test_manager_cannot_update(self, client, sample_data):
        resp = client.put(
            "/api/settings/rental-policy",
            json={"default_daily_km_limit": 400},
            headers=_headers(sample_data, "manager"),
        )
        assert resp.status_code == 403

    def test_out_of_bounds_rejected(self, client, sample_data):
        resp = client.put(
            "/api/settings/rental-policy",
            json={"default_daily_km_limit": 20, "default_overage_rate": 99},
            headers=_headers(sample_data, "owner"),
        )
        assert resp.status_code == 422
        assert set(resp.get_json()["details"]) == {"default_daily_km_limit", "default_overage_rate"}

    def test_invalid_stored_value_falls_back(self, client, app, sample_data):
        with app.app_context():
            db.session.add(
                AppSetting(company_id=sample_data["company_a"], key="default_daily_km_limit", value="5000")
            )
            db.session.commit()
        resp = client.get("/api/settings/rental-policy", headers=_headers(sample_data, "owner"))
        assert resp.get_json()["data"]["default_daily_km_limit"] == 300


class TestConfig:
    def test_invalid_tier_table_falls_back(self):
        raw = [
            {"tier": "A", "min_rentals": 0, "max_rentals": 3, "overage_rate": 10},
            {"tier": "B", "min_rentals": 6, "overage_rate": 5},
        ]
        assert _build_tier_policy(raw) is DEFAULT_TIER_POLICY

    def test_missing_tier_table_uses_default(self):
        assert _build_tier_policy(None) is DEFAULT_TIER_POLICY

    def test_out_of_bounds_env_default_falls_back(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_DAILY_KM_LIMIT", "2000")
        monkeypatch.setenv("DEFAULT_OVERAGE_RATE", "12")
        _app_cfg, auth_cfg, policy, tiers, uri = load_config()
        assert policy.default_daily_km_limit == 300
        assert policy.default_overage_rate == Decimal("12")
        assert auth_cfg.jwt_secret == "test-secret-key"
        assert tiers is None
        assert uri == "sqlite://"


class TestErrorHandlersAndHeaders:
    def test_unknown_route_is_json_404(self, client):
        resp = client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.get_json()["success"] is False

    def test_security_headers(self, client):
        resp = client.get("/api/nope")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
