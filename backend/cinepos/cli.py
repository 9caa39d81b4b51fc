# Overview: Flask CLI command groups for bootstrap, tenant setup and maintenance.

# backend/cinepos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use `flask db upgrade` for migrations).
#
# Theater management (MULTI-TENANT):
# - python -m flask theaters list
#   List all theaters.
# - python -m flask theaters create --name "Grand Cinema" --code "GRAND"
#   Create a new theater (tenant).
#
# Users:
# - python -m flask users create --theater-id 1 --username admin --password "Password123" --role theater_admin
#   Create a user (prompts if options are omitted). super_admin takes no theater.
#
# Stock maintenance:
# - python -m flask stock sweep-reservations [--theater-id 1]
#   Mark cart reservations idle past their TTL as expired.

import click
from datetime import date
from flask.cli import with_appcontext

from .errors import CoreError
from .extensions import db
from .models import Theater
from .services import identity_service
from .services import stock_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables from the model metadata."""
    db.create_all()
    click.echo("PASS Database tables created")


@click.group('theaters')
def theaters_group():
    """Theater (tenant) management commands."""


@theaters_group.command('list')
@with_appcontext
def list_theaters():
    theaters = db.session.query(Theater).order_by(Theater.id.asc()).all()
    if not theaters:
        click.echo("No theaters found.")
        return
    for theater in theaters:
        status = "active" if theater.is_active else "inactive"
        click.echo(f"{theater.id:>4}  {theater.name}  [{theater.code or '-'}]  {status}")


@theaters_group.command('create')
@click.option('--name', required=True, help='Theater name (order numbers use its first two letters)')
@click.option('--code', default=None, help='Unique short code')
@click.option('--agreement-start', default=None, help='YYYY-MM-DD')
@click.option('--agreement-end', default=None, help='YYYY-MM-DD')
@with_appcontext
def create_theater(name, code, agreement_start, agreement_end):
    try:
        start = date.fromisoformat(agreement_start) if agreement_start else None
        end = date.fromisoformat(agreement_end) if agreement_end else None
    except ValueError:
        raise click.BadParameter("agreement dates must be YYYY-MM-DD")

    if code and db.session.query(Theater).filter_by(code=code).first():
        click.echo(f"FAIL Theater code '{code}' already exists")
        raise SystemExit(1)

    theater = Theater(name=name, code=code, is_active=True, agreement_start=start, agreement_end=end)
    db.session.add(theater)
    db.session.commit()
    click.echo(f"PASS Created theater: {theater.name} (ID: {theater.id})")


@click.group('users')
def users_group():
    """User management commands."""


@users_group.command('create')
@click.option('--theater-id', type=int, default=None, help='Theater the user belongs to')
@click.option('--username', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option(
    '--role',
    type=click.Choice(identity_service.ROLES),
    default=identity_service.ROLE_STAFF,
    show_default=True,
)
@with_appcontext
def create_user_command(theater_id, username, password, role):
    try:
        user = identity_service.create_user(username, password, role=role, theater_id=theater_id)
    except CoreError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Created user: {user.username} (ID: {user.id}, role: {user.role})")


@click.group('stock')
def stock_group():
    """Stock ledger maintenance commands."""


@stock_group.command('sweep-reservations')
@click.option('--theater-id', type=int, default=None, help='Limit the sweep to one theater')
@with_appcontext
def sweep_reservations(theater_id):
    swept = stock_service.sweep_expired_reservations(theater_id=theater_id)
    click.echo(f"PASS Expired {swept} reservation(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(theaters_group)
    app.cli.add_command(users_group)
    app.cli.add_command(stock_group)
