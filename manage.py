"""Management script for database and automation tasks"""

import click
from dotenv import load_dotenv
from flask.cli import FlaskGroup

load_dotenv()

from storefront import create_app
from storefront.automation.scheduler import get_scheduler
from storefront.automation.sweep import sweep_due_stores
from storefront.billing.plan_catalog import DEFAULT_PLANS, set_plan_price
from storefront.errors import UnknownPlan
from storefront.extensions import db
from storefront.models import PlanPrice

cli = FlaskGroup(create_app=lambda: create_app())


@cli.command("init-db")
def init_db():
    """Create all tables"""
    db.create_all()
    click.echo("Database initialized")


@cli.command("drop-db")
@click.confirmation_option(prompt="Drop all tables?")
def drop_db():
    """Drop all tables"""
    db.drop_all()
    click.echo("Database dropped")


@cli.command("seed-plans")
def seed_plans():
    """Insert default monthly and yearly prices for every plan that has none"""
    created = 0
    for plan in DEFAULT_PLANS.values():
        for interval, amount in (("month", plan.monthly_price_cents), ("year", plan.yearly_price_cents)):
            if PlanPrice.query.filter_by(plan=plan.id, interval=interval).first() is None:
                db.session.add(PlanPrice(plan=plan.id, interval=interval, amount_cents=amount))
                created += 1
    db.session.commit()
    click.echo(f"Seeded {created} plan price(s)")


@cli.command("set-plan-price")
@click.argument("plan")
@click.argument("interval", type=click.Choice(["month", "year"]))
@click.argument("amount_cents", type=int)
@click.option("--stripe-price-id", default=None, help="Stripe price to bill instead of inline pricing")
def set_price(plan, interval, amount_cents, stripe_price_id):
    """Override the price of PLAN for INTERVAL"""
    try:
        row = set_plan_price(plan, interval, amount_cents, stripe_price_id=stripe_price_id)
    except (UnknownPlan, ValueError) as e:
        raise click.BadParameter(str(e))
    click.echo(f"{row.plan}/{row.interval} = {row.amount_cents}")


@cli.command("sweep")
def sweep():
    """Run one automation sweep now"""
    summary = sweep_due_stores()
    click.echo(summary)


@cli.command("reset-automation")
@click.argument("store_id")
def reset_automation(store_id):
    """Return a store in the error state to the schedule"""
    store = get_scheduler().reset(store_id)
    click.echo(f"Store {store.id} is {store.automation_state}")


if __name__ == "__main__":
    cli()
