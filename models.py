"""SQLAlchemy models for the rental core."""

from __future__ import annotations

from extensions import db
from utils import money_float, utc_now

# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------

VALID_EMPLOYEE_STATUSES = {"active", "on_leave", "suspended", "terminated"}
VALID_VEHICLE_STATUSES = {"available", "rented", "maintenance", "retired"}


# ---------------------------------------------------------------------------
# Company (tenant)
# ---------------------------------------------------------------------------

class Company(db.Model):
    """A rental company; every business row is scoped to one."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


# ---------------------------------------------------------------------------
# Users & employees
# ---------------------------------------------------------------------------

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    full_name = db.Column(db.String(120))
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(30), nullable=False, default="staff")
    company_id = db.Column(db.Integer, db.ForeignKey("company.id"), index=True)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    company = db.relationship("Company")


class Employee(db.Model):
    """Staff record linking a user to a company with a role and overrides."""
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("company.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), unique=True)
    full_name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120))
    role = db.Column(db.String(30), nullable=False, default="staff")
    status = db.Column(db.String(20), nullable=False, default="active")
    # permission name -> bool, overrides the role table for this employee
    custom_permissions = db.Column(db.JSON, default=dict)
    hire_date = db.Column(db.Date)
    termination_date = db.Column(db.Date)
    total_contracts_created = db.Column(db.Integer, nullable=False, default=0)
    total_revenue_generated = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    user = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "full_name": self.full_name,
            "email": self.email,
            "role": self.role,
            "status": self.status,
            "hire_date": self.hire_date.isoformat() if self.hire_date else None,
            "termination_date": (
                self.termination_date.isoformat() if self.termination_date else None
            ),
            "custom_permissions": self.custom_permissions or {},
            "total_contracts_created": self.total_contracts_created,
            "total_revenue_generated": money_float(self.total_revenue_generated),
        }


# ---------------------------------------------------------------------------
# Customers & vehicles
# ---------------------------------------------------------------------------

class Customer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("company.id"), nullable=False, index=True)
    full_name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120))
    phone = db.Column(db.String(60))
    is_blacklisted = db.Column(db.Boolean, default=False)
    total_rentals = db.Column(db.Integer, nullable=False, default=0)
    lifetime_value = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    apply_tier_discount = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "is_blacklisted": bool(self.is_blacklisted),
            "total_rentals": self.total_rentals,
            "lifetime_value": money_float(self.lifetime_value),
            "apply_tier_discount": bool(self.apply_tier_discount),
        }


class Vehicle(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("company.id"), nullable=False, index=True)
    brand = db.Column(db.String(60), nullable=False)
    model = db.Column(db.String(60), nullable=False)
    registration_number = db.Column(db.String(20))
    status = db.Column(db.String(20), nullable=False, default="available")
    mileage = db.Column(db.Integer, nullable=False, default=0)
    daily_rate = db.Column(db.Numeric(10, 2, asdecimal=True))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.UniqueConstraint("company_id", "registration_number", name="uq_vehicle_reg_company"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "brand": self.brand,
            "model": self.model,
            "registration_number": self.registration_number,
            "status": self.status,
            "mileage": self.mileage,
            "daily_rate": money_float(self.daily_rate),
        }


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

class Contract(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("company.id"), nullable=False, index=True)
    contract_number = db.Column(db.String(30), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customer.id"), nullable=False)
    vehicle_id = db.Column(db.Integer, db.ForeignKey("vehicle.id"), nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey("user.id"))

    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    actual_return_date = db.Column(db.Date)

    daily_rate = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    total_days = db.Column(db.Integer, nullable=False)
    base_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    additional_charges = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    deposit_amount = db.Column(db.Numeric(12, 2, asdecimal=True), default=0)
    deposit_returned = db.Column(db.Boolean, default=False)

    start_mileage = db.Column(db.Integer, nullable=False, default=0)
    end_mileage = db.Column(db.Integer)
    actual_km_driven = db.Column(db.Integer)
    daily_km_limit = db.Column(db.Integer, nullable=False, default=300)
    total_km_allowed = db.Column(db.Integer, nullable=False, default=0)
    km_overage = db.Column(db.Integer, default=0)
    overage_rate_per_km = db.Column(db.Numeric(10, 2, asdecimal=True))
    overage_charges = db.Column(db.Numeric(12, 2, asdecimal=True), default=0)

    status = db.Column(db.String(20), nullable=False, default="active", index=True)
    extras = db.Column(db.JSON, default=dict)
    notes = db.Column(db.Text)
    version_id = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    customer = db.relationship("Customer")
    vehicle = db.relationship("Vehicle")

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        db.UniqueConstraint("company_id", "contract_number", name="uq_contract_number_company"),
        db.Index("ix_contract_vehicle_dates", "vehicle_id", "start_date", "end_date"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contract_number": self.contract_number,
            "customer_id": self.customer_id,
            "vehicle_id": self.vehicle_id,
            "status": self.status,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "actual_return_date": (
                self.actual_return_date.isoformat() if self.actual_return_date else None
            ),
            "daily_rate": money_float(self.daily_rate),
            "total_days": self.total_days,
            "base_amount": money_float(self.base_amount),
            "additional_charges": money_float(self.additional_charges),
            "discount_amount": money_float(self.discount_amount),
            "tax_amount": money_float(self.tax_amount),
            "total_amount": money_float(self.total_amount),
            "deposit_amount": money_float(self.deposit_amount),
            "deposit_returned": bool(self.deposit_returned),
            "start_mileage": self.start_mileage,
            "end_mileage": self.end_mileage,
            "actual_km_driven": self.actual_km_driven,
            "daily_km_limit": self.daily_km_limit,
            "total_km_allowed": self.total_km_allowed,
            "km_overage": self.km_overage,
            "overage_rate_per_km": money_float(self.overage_rate_per_km),
            "overage_charges": money_float(self.overage_charges),
            "extras": self.extras or {},
            "notes": self.notes,
            "version": self.version_id,
        }


class NumberSequence(db.Model):
    """Per-company counters for generated document numbers."""
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("company.id"), index=True)
    entity_type = db.Column(db.String(40), nullable=False)
    scope_key = db.Column(db.String(120), default="")
    last_value = db.Column(db.Integer, default=0)

    __table_args__ = (
        db.UniqueConstraint("company_id", "entity_type", "scope_key", name="uq_number_sequence"),
    )


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("company.id"), index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    employee_id = db.Column(db.Integer, db.ForeignKey("employee.id"))
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    user = db.relationship("User")

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )


# ---------------------------------------------------------------------------
# Application settings
# ---------------------------------------------------------------------------

class AppSetting(db.Model):
    """Key-value store for per-company settings."""
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("company.id"), index=True)
    key = db.Column(db.String(80), nullable=False)
    value = db.Column(db.Text)

    __table_args__ = (
        db.UniqueConstraint("company_id", "key", name="uq_app_setting_company_key"),
    )
