"""Blueprint registration."""

from routes.auth import auth_bp
from routes.contracts import contracts_bp
from routes.customers import customers_bp
from routes.employees import employees_bp
from routes.settings import settings_bp
from routes.vehicles import vehicles_bp

ALL_BLUEPRINTS = [
    auth_bp,
    contracts_bp,
    customers_bp,
    employees_bp,
    vehicles_bp,
    settings_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
