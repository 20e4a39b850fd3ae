"""Tenant (company) scoping and data isolation services.

Every business row carries ``company_id``.  Reads are filtered to the actor's
company, writes are stamped with it, and loaded resources are checked against
it before any permission check runs.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Optional

from flask import g
from sqlalchemy import event

from extensions import db
from services.auth import require_actor
from services.errors import NotFoundError, TenantContextError, TenantIsolationError

logger = logging.getLogger(__name__)


def scope_read(actor) -> int:
    """Return the company the actor is bound to; never defaults."""
    company_id = getattr(actor, "company_id", None)
    if company_id is None:
        logger.error("Actor %s has no company context", getattr(actor, "user_id", None))
        raise TenantContextError()
    return company_id


def scope_write(actor, payload: dict) -> dict:
    """Copy of *payload* with ``company_id`` forced to the actor's company."""
    company_id = scope_read(actor)
    supplied = payload.get("company_id")
    if supplied is not None and supplied != company_id:
        logger.warning(
            "Ignoring client-supplied company_id=%s for actor %s (company %s)",
            supplied, actor.user_id, company_id,
        )
    scoped = dict(payload)
    scoped["company_id"] = company_id
    return scoped


def assert_ownership(actor, resource_company_id: Optional[int]) -> None:
    company_id = scope_read(actor)
    if resource_company_id != company_id:
        logger.warning(
            "Cross-tenant access blocked: user %s (company %s) -> company %s",
            actor.user_id, company_id, resource_company_id,
        )
        raise TenantIsolationError(
            details={"actor_company_id": company_id, "resource_company_id": resource_company_id}
        )


def tenant_query(model, actor=None):
    """Return a query on *model* filtered to the actor's company.

    Usage::

        vehicles = tenant_query(Vehicle).filter_by(status="available").all()
    """
    company_id = scope_read(actor or require_actor())
    return model.query.filter_by(company_id=company_id)


def stamp_tenant(obj, actor=None):
    """Set ``company_id`` on *obj* to the actor's company.

    Call before ``db.session.add()``.  Returns *obj* for chaining.
    """
    if hasattr(obj, "company_id"):
        obj.company_id = scope_read(actor or require_actor())
    return obj


def tenant_resource(model, id_kwarg: str, as_kwarg: str):
    """Route decorator: load ``model`` by the URL id and check its company.

    The loaded object replaces the id keyword argument.  Unknown ids give
    404, rows of another company give 403.
    """

    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            actor = require_actor()
            scope_read(actor)
            obj = db.session.get(model, kwargs.pop(id_kwarg))
            if obj is None:
                raise NotFoundError(f"{model.__name__} not found")
            assert_ownership(actor, obj.company_id)
            kwargs[as_kwarg] = obj
            return f(*args, **kwargs)

        return decorated

    return decorator


# ---------------------------------------------------------------------------
# Flush guard
# ---------------------------------------------------------------------------

def bind_request_tenant() -> None:
    """``before_request`` hook run after the actor is loaded."""
    actor = getattr(g, "current_actor", None)
    g.tenant_id = actor.company_id if actor else None


def _enforce_tenant_on_flush(session, flush_context):
    """Reject new/dirty rows whose company differs from the request's.

    Primary isolation is ``tenant_query()``, ``stamp_tenant()`` and
    ``assert_ownership()``; this catches code paths that bypass them.
    """
    try:
        tid = getattr(g, "tenant_id", None)
    except RuntimeError:
        # Outside request context (CLI, seed scripts)
        return

    if tid is None:
        return

    for obj in list(session.new) + list(session.dirty):
        obj_tid = getattr(obj, "company_id", None)
        if obj_tid is not None and obj_tid != tid:
            raise TenantIsolationError(
                f"Cross-tenant write blocked: {type(obj).__name__} "
                f"has company_id={obj_tid}, active company is {tid}"
            )


def register_tenant_guards(app):
    """Register the request hook and the after_flush listener."""
    app.before_request(bind_request_tenant)
    if not event.contains(db.session, "after_flush", _enforce_tenant_on_flush):
        event.listen(db.session, "after_flush", _enforce_tenant_on_flush)
