#!/usr/bin/env python3
"""Maintenance commands.

Usage:
    python cli.py --help
    python cli.py init-db
    python cli.py seed --append
    python cli.py tiers
"""

from __future__ import annotations

import click


def get_app_context():
    """Get Flask application context."""
    from app import create_app
    app = create_app()
    return app.app_context()


@click.group()
def cli():
    """Rental core maintenance tools."""


@cli.command("init-db")
def init_db():
    """Create all tables that do not exist yet."""
    from extensions import db

    with get_app_context():
        db.create_all()
    click.echo("Database tables created.")


@cli.command()
@click.option("--append", is_flag=True, help="Keep existing data and add another demo company.")
def seed(append: bool):
    """Populate the database with demo data."""
    if not append and not click.confirm("Drop all tables and reseed?"):
        click.echo("Aborted.")
        return
    from seed_data import seed as run_seed

    summary = run_seed(append=append)
    click.echo(f"Seeded company {summary['company']} with contract {summary['contract']}.")


@cli.command()
def tiers():
    """Print the active loyalty tier table."""
    from flask import current_app

    with get_app_context():
        policy = current_app.config["TIER_POLICY"]
        click.echo(f"{'Tier':<10}{'Rentals':<10}{'Rate':>8}{'Disc %':>8}{'Bonus':>8}")
        for tier in policy.tiers:
            upper = "+" if tier.max_rentals is None else f"-{tier.max_rentals}"
            click.echo(
                f"{tier.tier_id:<10}{f'{tier.min_rentals}{upper}':<10}"
                f"{tier.overage_rate:>8}{tier.discount_pct:>8}{tier.distance_bonus_per_day:>8}"
            )


if __name__ == "__main__":
    cli()
