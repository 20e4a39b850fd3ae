"""Authentication API."""

from flask import Blueprint, request
from werkzeug.security import check_password_hash

from extensions import db, limiter
from models import User
from services.audit import log_action
from services.auth import Actor, issue_token, login_required, require_actor
from services.errors import AuthenticationRequiredError, InvalidInputError
from services.rbac import get_role_policy, resolve_permissions
from utils import api_success

auth_bp = Blueprint("auth", __name__)


@auth_bp.route("/api/auth/login", methods=["POST"])
@limiter.limit("5 per minute")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        raise InvalidInputError(
            "Email and password are required",
            details={k: "is required" for k, v in (("email", email), ("password", password)) if not v},
        )
    user = User.query.filter(db.func.lower(User.email) == email).first()
    if not (user and user.is_active and check_password_hash(user.password_hash, password)):
        raise AuthenticationRequiredError("Invalid email or password")

    actor = Actor.from_user(user)
    log_action(actor, "login", "user", user.id, "user logged in")
    db.session.commit()
    return api_success(
        "Login successful",
        data={
            "token": issue_token(user),
            "user": {
                "id": user.id,
                "email": user.email,
                "full_name": user.full_name,
                "role": user.role,
                "company_id": user.company_id,
            },
        },
    )


@auth_bp.route("/api/auth/me", methods=["GET"])
@login_required
def me():
    actor = require_actor()
    user = db.session.get(User, actor.user_id)
    resolution = resolve_permissions(actor)
    if resolution.all_permissions:
        permissions = ["*"]
    else:
        permissions = sorted(resolution.permissions)
    return api_success(
        "Current user",
        data={
            "user": {
                "id": user.id,
                "email": user.email,
                "full_name": user.full_name,
                "role": user.role,
                "company_id": user.company_id,
            },
            "employee": resolution.employee.to_dict() if resolution.employee else None,
            "permission_source": resolution.kind.value,
            "permissions": permissions,
        },
    )


@auth_bp.route("/api/auth/roles", methods=["GET"])
@login_required
def roles():
    policy = get_role_policy()
    return api_success(
        "Available roles",
        data={"roles": [role.to_dict() for role in policy.roles.values()]},
    )
