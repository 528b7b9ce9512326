"""
Operator commands for the Content Safety Gateway.

    safety-gateway init-db
    safety-gateway create-user --name "Test User" --email test@example.com [--limit 100]
    safety-gateway rotate-token --email test@example.com
    safety-gateway reset-daily-requests

``reset-daily-requests`` is meant to run from a daily scheduler (cron or
similar); it is never triggered by the request path.
"""

from typing import Optional

import click
from pydantic import ValidationError

from safety_gateway.db.init_db import init_db
from safety_gateway.db.session import SessionLocal
from safety_gateway.schemas.user import UserCreate
from safety_gateway.services.quota_service import reset_daily_usage
from safety_gateway.services.user_service import create_user, get_user_by_email, rotate_token


@click.group()
def main():
    """Operator commands for the Content Safety Gateway."""


@main.command("init-db")
def init_db_command():
    """Create database tables."""
    init_db()


@main.command("create-user")
@click.option("--name", required=True)
@click.option("--email", required=True)
@click.option("--limit", type=int, default=None, help="Daily request limit")
def create_user_command(name: str, email: str, limit: Optional[int]):
    """Create a user and print its API token."""
    try:
        data = UserCreate(name=name, email=email, requests_limit=limit)
    except ValidationError as e:
        raise click.BadParameter(str(e), param_hint="'--email' / '--limit'")

    with SessionLocal() as db:
        if get_user_by_email(db, str(data.email)) is not None:
            raise click.ClickException(f"User {data.email} already exists")
        user = create_user(db, data)
        click.echo(f"Created user {user.id} ({user.email}), daily limit {user.requests_limit}")
        click.echo(f"API token: {user.api_token}")


@main.command("rotate-token")
@click.option("--email", required=True)
def rotate_token_command(email: str):
    """Issue a new API token for a user."""
    with SessionLocal() as db:
        user = get_user_by_email(db, email)
        if user is None:
            raise click.ClickException(f"User {email} not found")
        click.echo(f"API token: {rotate_token(db, user)}")


@main.command("reset-daily-requests")
def reset_daily_requests_command():
    """Reset daily API request usage for all users."""
    with SessionLocal() as db:
        count = reset_daily_usage(db)
    click.echo(f"Reset request count for {count} users.")


if __name__ == "__main__":
    main()
