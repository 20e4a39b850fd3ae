"""Contract lifecycle service.

Each public operation is one unit of work: the contract row is locked, the
state machine decides whether the event is allowed, the transition's effects
are applied in order and everything commits together.  Any failure rolls the
whole transition back.
"""

from __future__ import annotations

import datetime
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.orm.exc import StaleDataError

from config_models import RentalPolicyConfig
from extensions import db
from models import Contract, Customer, Employee, NumberSequence, Vehicle
from services import availability as availability_service
from services.audit import log_action
from services.company_settings import get_default_daily_km_limit, validate_daily_km_limit
from services.contract_state import ContractEvent, ContractStatus, Effect, Transition, transition
from services.errors import (
    ConcurrentModificationError,
    CustomerBlacklistedError,
    InvalidInputError,
    NotFoundError,
    VehicleUnavailableError,
)
from services.pricing import (
    AllowanceBreakdown,
    OverageBreakdown,
    calculate_contract_totals,
    compute_allowance,
    estimate_for_distance,
    recompute_amounts,
)
from services.tenant import assert_ownership, scope_read, scope_write, tenant_query
from services.tiers import DEFAULT_TIER_POLICY, TierPolicy, resolve_tier
from utils import money_float, parse_date, to_decimal, to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _tier_policy() -> TierPolicy:
    return current_app.config.get("TIER_POLICY", DEFAULT_TIER_POLICY)


def _rental_policy() -> RentalPolicyConfig:
    return current_app.config.get("RENTAL_POLICY") or RentalPolicyConfig()


@contextmanager
def _unit_of_work():
    """Commit on success; roll back and re-raise on any failure."""
    try:
        yield
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning("Lost update detected, transition rolled back")
        raise ConcurrentModificationError() from None
    except Exception:
        db.session.rollback()
        raise


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------

def _required_date(data: dict, name: str) -> datetime.date:
    value = parse_date(data.get(name))
    if value is None:
        raise InvalidInputError.for_field(name, "a date in YYYY-MM-DD format is required")
    return value


def _non_negative_money(data: dict, name: str, default=ZERO) -> Decimal:
    return _money_value(data.get(name), name, default)


def _money_value(raw, name: str, default=ZERO) -> Decimal:
    if raw is None or raw == "":
        return to_money(default)
    value = to_decimal(raw, default=None)
    if value is None:
        raise InvalidInputError.for_field(name, "must be a number")
    if value < 0:
        raise InvalidInputError.for_field(name, "must not be negative")
    return to_money(value)


def _odometer(raw, name: str) -> int:
    if isinstance(raw, bool):
        raise InvalidInputError.for_field(name, "must be an integer")
    if isinstance(raw, float) and not raw.is_integer():
        raise InvalidInputError.for_field(name, "must be an integer")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise InvalidInputError.for_field(name, "must be an integer") from None
    if value < 0:
        raise InvalidInputError.for_field(name, "must not be negative")
    return value


def _append_note(contract: Contract, text: Optional[str]) -> None:
    if not text:
        return
    contract.notes = f"{contract.notes}\n{text}" if contract.notes else text


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------

def _lock_contract(actor, contract_id: int, expected_version=None) -> Contract:
    """Row-lock the contract and check tenant and expected version."""
    contract = Contract.query.filter_by(id=contract_id).with_for_update().one_or_none()
    if contract is None:
        raise NotFoundError("Contract not found")
    assert_ownership(actor, contract.company_id)
    if expected_version is not None:
        try:
            expected = int(expected_version)
        except (TypeError, ValueError):
            raise InvalidInputError.for_field("version", "must be an integer") from None
        if expected != contract.version_id:
            logger.info(
                "Stale version for %s: client %s, current %s",
                contract.contract_number, expected, contract.version_id,
            )
            raise ConcurrentModificationError(
                details={"expected_version": expected, "current_version": contract.version_id}
            )
    return contract


# ---------------------------------------------------------------------------
# Transition effects
# ---------------------------------------------------------------------------

@dataclass
class _TransitionContext:
    actor: object
    contract: Contract
    transition: Transition
    employee: Optional[Employee] = None
    notes: Optional[str] = None
    reason: Optional[str] = None
    end_mileage: Optional[int] = None
    return_date: Optional[datetime.date] = None
    extra_charges: Decimal = ZERO
    new_end_date: Optional[datetime.date] = None
    previous_end_date: Optional[datetime.date] = None
    updates: dict = field(default_factory=dict)
    availability: object = None
    allowance: Optional[AllowanceBreakdown] = None
    overage: Optional[OverageBreakdown] = None
    audit_details: list = field(default_factory=list)


def _record_return(ctx: _TransitionContext) -> None:
    contract = ctx.contract
    contract.actual_return_date = ctx.return_date or datetime.date.today()
    contract.end_mileage = ctx.end_mileage
    contract.actual_km_driven = ctx.end_mileage - contract.start_mileage
    contract.deposit_returned = True


def _assess_overage(ctx: _TransitionContext) -> None:
    contract = ctx.contract
    customer = contract.customer
    allowance, overage = estimate_for_distance(
        contract.actual_km_driven,
        contract.daily_km_limit,
        contract.total_days,
        customer.total_rentals or 0,
        bool(customer.apply_tier_discount),
        policy=_tier_policy(),
    )
    contract.total_km_allowed = allowance.total_allowed
    contract.km_overage = overage.overage_amount
    contract.overage_rate_per_km = overage.rate_used if overage.has_overage else None
    contract.overage_charges = overage.final_charge
    ctx.extra_charges += overage.final_charge
    ctx.allowance = allowance
    ctx.overage = overage


def _recompute_totals(ctx: _TransitionContext) -> None:
    contract = ctx.contract
    tax_rate = _rental_policy().tax_rate
    if ctx.new_end_date is not None:
        totals = calculate_contract_totals(
            contract.start_date,
            ctx.new_end_date,
            contract.daily_rate,
            contract.additional_charges,
            contract.discount_amount,
            tax_rate,
        )
        contract.end_date = ctx.new_end_date
        contract.total_days = totals.total_days
        contract.base_amount = totals.base_amount
        contract.tax_amount = totals.tax_amount
        contract.total_amount = totals.total_amount
        return

    for name, value in ctx.updates.items():
        setattr(contract, name, value)
    contract.additional_charges = to_money(contract.additional_charges) + ctx.extra_charges
    if to_money(contract.discount_amount) > to_money(contract.base_amount) + contract.additional_charges:
        raise InvalidInputError.for_field("discount_amount", "must not exceed the contract subtotal")
    contract.tax_amount, contract.total_amount = recompute_amounts(
        contract.base_amount, contract.additional_charges, contract.discount_amount, tax_rate
    )


def _check_availability(ctx: _TransitionContext) -> None:
    contract = ctx.contract
    if ctx.new_end_date is None or ctx.new_end_date <= contract.end_date:
        raise InvalidInputError.for_field("new_end_date", "must be after the current end date")
    ctx.previous_end_date = contract.end_date
    check = ctx.availability or availability_service.assert_vehicle_free
    check(
        contract.vehicle_id,
        contract.end_date + datetime.timedelta(days=1),
        ctx.new_end_date,
        exclude_contract_id=contract.id,
    )


def _append_transition_note(ctx: _TransitionContext) -> None:
    contract = ctx.contract
    if ctx.transition.event is ContractEvent.EXTEND:
        note = f"Extended from {ctx.previous_end_date.isoformat()} to {ctx.new_end_date.isoformat()}"
        _append_note(contract, f"{note}: {ctx.notes}" if ctx.notes else note)
        ctx.audit_details.append(note)
        return
    _append_note(contract, ctx.notes)
    if ctx.overage is not None and ctx.overage.has_overage:
        overage = ctx.overage
        _append_note(
            contract,
            f"KM overage: {overage.overage_amount} km beyond {ctx.allowance.total_allowed} km limit. "
            f"Base charge: {overage.base_charge}, tier discount ({overage.tier_id} - "
            f"{overage.discount_pct}%): -{overage.discount_amount}, "
            f"final overage charge: {overage.final_charge}.",
        )


def _record_reason(ctx: _TransitionContext) -> None:
    if ctx.reason:
        _append_note(ctx.contract, f"Cancellation reason: {ctx.reason}")
        ctx.audit_details.append(f"reason: {ctx.reason}")


def _release_vehicle(ctx: _TransitionContext) -> None:
    vehicle = ctx.contract.vehicle
    if vehicle is None:
        return
    if vehicle.status == "rented":
        vehicle.status = "available"
    if ctx.end_mileage is not None and ctx.end_mileage > (vehicle.mileage or 0):
        vehicle.mileage = ctx.end_mileage


def _credit_customer(ctx: _TransitionContext) -> None:
    """Increment counters with SQL expressions so concurrent credits add up."""
    contract = ctx.contract
    total = to_money(contract.total_amount)
    db.session.flush()
    db.session.execute(
        update(Customer)
        .where(Customer.id == contract.customer_id, Customer.company_id == contract.company_id)
        .values(
            total_rentals=Customer.total_rentals + 1,
            lifetime_value=Customer.lifetime_value + total,
        )
    )
    if contract.created_by is not None:
        db.session.execute(
            update(Employee)
            .where(Employee.user_id == contract.created_by, Employee.company_id == contract.company_id)
            .values(total_revenue_generated=Employee.total_revenue_generated + total)
        )


_EFFECT_HANDLERS = {
    Effect.RECORD_RETURN: _record_return,
    Effect.ASSESS_OVERAGE: _assess_overage,
    Effect.CHECK_AVAILABILITY: _check_availability,
    Effect.RECOMPUTE_TOTALS: _recompute_totals,
    Effect.APPEND_NOTE: _append_transition_note,
    Effect.RECORD_REASON: _record_reason,
    Effect.RELEASE_VEHICLE: _release_vehicle,
    Effect.CREDIT_CUSTOMER: _credit_customer,
}


def _apply(ctx: _TransitionContext) -> None:
    for effect in ctx.transition.effects:
        _EFFECT_HANDLERS[effect](ctx)
    if ctx.transition.changes_status:
        logger.info(
            "Contract %s: %s -> %s",
            ctx.contract.contract_number, ctx.transition.source.value, ctx.transition.target.value,
        )
        ctx.contract.status = ctx.transition.target.value
    details = "; ".join(ctx.audit_details)
    log_action(
        ctx.actor,
        f"contract_{ctx.transition.event.value}",
        "contract",
        ctx.contract.id,
        details or ctx.contract.contract_number,
        employee=ctx.employee,
    )


@dataclass(frozen=True)
class TransitionResult:
    contract: Contract
    transition: Optional[Transition]
    allowance: Optional[AllowanceBreakdown] = None
    overage: Optional[OverageBreakdown] = None

    def to_dict(self) -> dict:
        payload = {"contract": self.contract.to_dict()}
        if self.allowance is not None:
            payload["allowance"] = self.allowance.to_dict()
        if self.overage is not None:
            payload["overage"] = self.overage.to_dict()
        return payload


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def complete_contract(
    actor,
    contract_id: int,
    *,
    end_mileage,
    actual_return_date=None,
    additional_charges=None,
    notes: Optional[str] = None,
    expected_version=None,
    employee: Optional[Employee] = None,
) -> TransitionResult:
    with _unit_of_work():
        contract = _lock_contract(actor, contract_id, expected_version)
        step = transition(contract.status, ContractEvent.COMPLETE)
        end = _odometer(end_mileage, "end_mileage")
        if end < contract.start_mileage:
            raise InvalidInputError(
                f"End mileage ({end}) cannot be less than start mileage ({contract.start_mileage})",
                details={"end_mileage": "must not be less than start mileage"},
            )
        return_date = None
        if actual_return_date:
            return_date = parse_date(actual_return_date)
            if return_date is None:
                raise InvalidInputError.for_field("actual_return_date", "must be YYYY-MM-DD")
            if return_date < contract.start_date:
                raise InvalidInputError.for_field("actual_return_date", "must not be before start date")
        ctx = _TransitionContext(
            actor=actor,
            contract=contract,
            transition=step,
            employee=employee,
            notes=notes,
            end_mileage=end,
            return_date=return_date,
            extra_charges=_money_value(additional_charges, "additional_charges"),
        )
        _apply(ctx)
    logger.info(
        "Contract %s completed: %s km, total %s",
        contract.contract_number, contract.actual_km_driven, contract.total_amount,
    )
    return TransitionResult(contract, step, ctx.allowance, ctx.overage)


def cancel_contract(
    actor,
    contract_id: int,
    *,
    reason: Optional[str] = None,
    expected_version=None,
    employee: Optional[Employee] = None,
) -> TransitionResult:
    with _unit_of_work():
        contract = _lock_contract(actor, contract_id, expected_version)
        step = transition(contract.status, ContractEvent.CANCEL)
        ctx = _TransitionContext(
            actor=actor,
            contract=contract,
            transition=step,
            employee=employee,
            reason=(reason or "").strip() or None,
        )
        _apply(ctx)
    logger.info("Contract %s cancelled", contract.contract_number)
    return TransitionResult(contract, step)


def extend_contract(
    actor,
    contract_id: int,
    *,
    new_end_date,
    notes: Optional[str] = None,
    expected_version=None,
    employee: Optional[Employee] = None,
    availability=None,
) -> TransitionResult:
    """Push the end date forward.

    *availability* is called as ``(vehicle_id, start, end, exclude_contract_id=)``
    and must raise when the vehicle is booked; it defaults to
    :func:`services.availability.assert_vehicle_free`.
    """
    with _unit_of_work():
        contract = _lock_contract(actor, contract_id, expected_version)
        step = transition(contract.status, ContractEvent.EXTEND)
        new_end = parse_date(new_end_date)
        if new_end is None:
            raise InvalidInputError.for_field("new_end_date", "a date in YYYY-MM-DD format is required")
        ctx = _TransitionContext(
            actor=actor,
            contract=contract,
            transition=step,
            employee=employee,
            notes=notes,
            new_end_date=new_end,
            availability=availability,
        )
        _apply(ctx)
    logger.info(
        "Contract %s extended to %s (%s days)",
        contract.contract_number, contract.end_date, contract.total_days,
    )
    return TransitionResult(contract, step)


_UPDATABLE_MONEY_FIELDS = ("additional_charges", "discount_amount")


def update_contract(
    actor,
    contract_id: int,
    data: dict,
    *,
    expected_version=None,
    employee: Optional[Employee] = None,
) -> TransitionResult:
    """Edit notes, extras and adjustments of an active contract."""
    with _unit_of_work():
        contract = _lock_contract(actor, contract_id, expected_version)
        step = transition(contract.status, ContractEvent.UPDATE)
        updates: dict = {}
        for name in _UPDATABLE_MONEY_FIELDS:
            if name in data:
                updates[name] = _non_negative_money(data, name)
        if "notes" in data:
            updates["notes"] = (data.get("notes") or "").strip() or None
        if "extras" in data:
            extras = data.get("extras")
            if extras is not None and not isinstance(extras, dict):
                raise InvalidInputError.for_field("extras", "must be an object")
            updates["extras"] = extras or {}
        ctx = _TransitionContext(
            actor=actor,
            contract=contract,
            transition=step,
            employee=employee,
            updates=updates,
        )
        ctx.audit_details.append("fields: " + ", ".join(sorted(updates)) if updates else "no changes")
        _apply(ctx)
    return TransitionResult(contract, step)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def _next_contract_number(company_id: int, year: int) -> str:
    """Next ``RENT-YYYY-NNNN`` number; the counter restarts every year."""
    scope_key = str(year)
    seq = NumberSequence.query.filter_by(
        company_id=company_id, entity_type="contract", scope_key=scope_key
    ).with_for_update().first()
    if seq is None:
        seq = NumberSequence(
            company_id=company_id, entity_type="contract", scope_key=scope_key, last_value=0
        )
        db.session.add(seq)
    seq.last_value = (seq.last_value or 0) + 1
    db.session.flush()
    return f"RENT-{year}-{seq.last_value:04d}"


def _load_owned(actor, model, obj_id, label: str):
    if obj_id is None:
        raise InvalidInputError.for_field(f"{label}_id", "is required")
    obj = db.session.get(model, obj_id)
    if obj is None:
        raise NotFoundError(f"{label.capitalize()} not found")
    assert_ownership(actor, obj.company_id)
    return obj


def create_contract(actor, payload: dict, employee: Optional[Employee] = None) -> TransitionResult:
    data = scope_write(actor, payload)
    company_id = data["company_id"]

    with _unit_of_work():
        customer = _load_owned(actor, Customer, data.get("customer_id"), "customer")
        if customer.is_blacklisted:
            raise CustomerBlacklistedError()
        vehicle = _load_owned(actor, Vehicle, data.get("vehicle_id"), "vehicle")
        if vehicle.status != "available":
            raise VehicleUnavailableError(
                f"Vehicle is not available (current status: {vehicle.status})",
                details={"status": vehicle.status},
            )

        start = _required_date(data, "start_date")
        end = _required_date(data, "end_date")
        if end < start:
            raise InvalidInputError.for_field("end_date", "must not be before start date")
        availability_service.assert_vehicle_free(vehicle.id, start, end)

        daily_rate = _non_negative_money(data, "daily_rate", default=vehicle.daily_rate or ZERO)
        if daily_rate == ZERO and data.get("daily_rate") in (None, ""):
            raise InvalidInputError.for_field("daily_rate", "is required")
        if data.get("daily_km_limit") not in (None, ""):
            daily_km_limit = validate_daily_km_limit(data["daily_km_limit"])
        else:
            daily_km_limit = get_default_daily_km_limit(company_id)

        additional = _non_negative_money(data, "additional_charges")
        discount = _non_negative_money(data, "discount_amount")
        totals = calculate_contract_totals(
            start, end, daily_rate, additional, discount, _rental_policy().tax_rate
        )
        if totals.subtotal < 0:
            raise InvalidInputError.for_field("discount_amount", "must not exceed the contract subtotal")
        allowance = compute_allowance(
            daily_km_limit,
            totals.total_days,
            customer.total_rentals or 0,
            bool(customer.apply_tier_discount),
            _tier_policy(),
        )
        extras = data.get("extras") or {}
        if not isinstance(extras, dict):
            raise InvalidInputError.for_field("extras", "must be an object")

        contract = Contract(
            company_id=company_id,
            contract_number=_next_contract_number(company_id, start.year),
            customer_id=customer.id,
            vehicle_id=vehicle.id,
            created_by=actor.user_id,
            start_date=start,
            end_date=end,
            daily_rate=daily_rate,
            total_days=totals.total_days,
            base_amount=totals.base_amount,
            additional_charges=additional,
            discount_amount=discount,
            tax_amount=totals.tax_amount,
            total_amount=totals.total_amount,
            deposit_amount=_non_negative_money(data, "deposit_amount"),
            start_mileage=vehicle.mileage or 0,
            daily_km_limit=daily_km_limit,
            total_km_allowed=allowance.total_allowed,
            status=ContractStatus.ACTIVE.value,
            extras=extras,
            notes=(data.get("notes") or "").strip() or None,
        )
        db.session.add(contract)
        vehicle.status = "rented"
        if employee is not None:
            employee.total_contracts_created = (employee.total_contracts_created or 0) + 1
        db.session.flush()
        log_action(actor, "contract_create", "contract", contract.id, contract.contract_number, employee)

    logger.info("Contract %s created for customer %s", contract.contract_number, customer.id)
    return TransitionResult(contract, None, allowance, None)


# ---------------------------------------------------------------------------
# Read paths
# ---------------------------------------------------------------------------

def estimate_overage(contract: Contract, estimated_end_mileage) -> dict:
    """Overage preview for a candidate end odometer value; no writes."""
    end = _odometer(estimated_end_mileage, "estimated_end_mileage")
    if end < contract.start_mileage:
        raise InvalidInputError(
            f"Estimated end mileage ({end}) cannot be less than start mileage ({contract.start_mileage})",
            details={"estimated_end_mileage": "must not be less than start mileage"},
        )
    customer = contract.customer
    driven = end - contract.start_mileage
    allowance, overage = estimate_for_distance(
        driven,
        contract.daily_km_limit,
        contract.total_days,
        customer.total_rentals or 0,
        bool(customer.apply_tier_discount),
        policy=_tier_policy(),
    )
    tier = resolve_tier(customer.total_rentals or 0, _tier_policy())
    return {
        "contract_id": contract.id,
        "contract_number": contract.contract_number,
        "start_mileage": contract.start_mileage,
        "estimated_end_mileage": end,
        "estimated_km_driven": driven,
        "allowed_km": allowance.to_dict(),
        "estimated_overage": overage.to_dict(),
        "customer_tier": tier.tier_id,
        "warning": (
            f"Customer will be charged {overage.final_charge} for {overage.overage_amount} km overage"
            if overage.has_overage
            else None
        ),
    }


def list_contracts(actor, status: Optional[str] = None, customer_id: Optional[int] = None):
    query = tenant_query(Contract, actor)
    if status:
        query = query.filter_by(status=status)
    if customer_id:
        query = query.filter_by(customer_id=customer_id)
    return query.order_by(Contract.start_date.desc(), Contract.id.desc()).all()


def contract_stats(actor) -> dict:
    company_id = scope_read(actor)
    rows = (
        db.session.query(Contract.status, func.count(Contract.id), func.sum(Contract.total_amount))
        .filter(Contract.company_id == company_id)
        .group_by(Contract.status)
        .all()
    )
    by_status = {status.value: 0 for status in ContractStatus}
    revenue = ZERO
    for status, count, amount in rows:
        by_status[status] = count
        if status == ContractStatus.COMPLETED.value:
            revenue = to_money(amount or 0)
    return {
        "total_contracts": sum(by_status.values()),
        "by_status": by_status,
        "completed_revenue": money_float(revenue),
    }
