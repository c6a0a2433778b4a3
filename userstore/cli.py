"""CLI tools for schema migrations and user administration."""

import logging
import sys
from typing import NoReturn

import click

from userstore.core.config import settings
from userstore.core.errors import UserStoreError
from userstore.core.migration_scripts import create_migration
from userstore.core.migrations import MigrationRunner, ensure_migrations
from userstore.core.security import hash_password
from userstore.db.enums import UserRole
from userstore.db.session import SessionLocal, engine
from userstore.schemas.user import UserFilter, UserInfoCreate
from userstore.services import user_service
from userstore.utils.pagination import PaginatedResponse, PaginationParams


def _fail(error: Exception) -> NoReturn:
    click.echo(click.style(f"❌ {error}", fg="red"), err=True)
    sys.exit(1)


def _runner() -> MigrationRunner:
    return MigrationRunner(engine, timeout=settings.operation_timeout)


@click.group()
def cli():
    """userstore CLI tools."""
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Migrations
# =============================================================================


@cli.group()
def migrate():
    """Apply, revert and inspect schema migrations."""
    pass


@migrate.command("up")
@click.option("--target", type=int, default=None, help="Apply up to and including this version")
def migrate_up(target: int | None):
    """
    Apply pending migrations in version order.

    Example:
        userstore migrate up --target 20251208123639
    """
    try:
        report = _runner().up(target=target)
    except UserStoreError as e:
        _fail(e)

    if not report.actions:
        click.echo("✓ Database already up to date")
        return
    for version in report.versions:
        click.echo(f"✓ Applied {version}")


@migrate.command("down")
@click.option("--steps", type=click.IntRange(min=1), default=1, show_default=True, help="Migrations to revert")
def migrate_down(steps: int):
    """Revert the most recently applied migrations."""
    try:
        report = _runner().down(steps=steps)
    except UserStoreError as e:
        _fail(e)

    if not report.actions:
        click.echo("✓ Nothing to revert")
        return
    for version in report.versions:
        click.echo(f"✓ Reverted {version}")


@migrate.command("status")
def migrate_status():
    """Show applied and pending migrations."""
    try:
        status = _runner().status()
    except UserStoreError as e:
        _fail(e)

    click.echo(click.style("Applied:", bold=True))
    if status.applied:
        for record in status.applied:
            click.echo(f"  {record.version} {record.name} - {record.applied_at:%Y-%m-%d %H:%M} ({record.execution_ms} ms)")
    else:
        click.echo("  (none)")

    click.echo(click.style("Pending:", bold=True))
    if status.pending:
        for version in status.pending:
            click.echo(f"  {version}")
    else:
        click.echo("  (none)")


@migrate.command("unlock")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
def migrate_unlock(yes: bool):
    """
    Release a migration lock left behind by a runner that died.

    Only needed for the lock table used on SQLite; PostgreSQL advisory
    locks are released when the holding session ends.
    """
    runner = _runner()
    try:
        holder = runner.lock_holder()
    except UserStoreError as e:
        _fail(e)

    if holder is None:
        click.echo("✓ No migration lock is held")
        return

    click.echo(f"Lock held by {holder.holder} since {holder.acquired_at:%Y-%m-%d %H:%M:%S}")
    if not yes and not click.confirm("Release it? Only do this if that runner is no longer running"):
        click.echo("Aborted.")
        return

    try:
        runner.force_unlock()
    except UserStoreError as e:
        _fail(e)
    click.echo("✓ Migration lock released")


@migrate.command("add")
@click.argument("name")
@click.option(
    "--dir",
    "directory",
    type=click.Path(file_okay=False),
    default=None,
    help="Migrations directory (default: configured or bundled directory)",
)
def migrate_add(name: str, directory: str | None):
    """
    Create an empty reversible migration pair.

    Example:
        userstore migrate add "add user locale"
    """
    try:
        up_path, down_path = create_migration(directory or settings.migrations_path, name)
    except UserStoreError as e:
        _fail(e)

    click.echo(f"✓ Created {up_path}")
    click.echo(f"✓ Created {down_path}")


# =============================================================================
# Users
# =============================================================================


def _warn_if_pending() -> None:
    status = ensure_migrations(engine, auto_migrate=False)
    if not status.is_up_to_date:
        click.echo(
            click.style(f"⚠ {len(status.pending)} pending migration(s); run 'userstore migrate up'", fg="yellow"),
            err=True,
        )


@cli.group()
def users():
    """Manage user accounts."""
    pass


@users.command("create")
@click.option("--email", required=True, help="User email address")
@click.option("--password", default=None, help="Plain password; stored as an Argon2 hash")
@click.option("--password-hash", default=None, help="Pre-computed password hash")
@click.option(
    "--role",
    type=click.Choice([role.value for role in UserRole]),
    default=UserRole.GUEST.value,
    show_default=True,
)
@click.option("--first-name", default=None)
@click.option("--last-name", default=None)
@click.option("--username", default=None)
def create_user(
    email: str,
    password: str | None,
    password_hash: str | None,
    role: str,
    first_name: str | None,
    last_name: str | None,
    username: str | None,
):
    """
    Create a user with an optional profile.

    Example:
        userstore users create --email "owner@example.com" --password "s3cret" --role Owner
    """
    if (password is None) == (password_hash is None):
        raise click.UsageError("Pass exactly one of --password or --password-hash")
    if password is not None:
        password_hash = hash_password(password)

    info = UserInfoCreate(first_name=first_name, last_name=last_name, username=username)
    db = SessionLocal()
    try:
        _warn_if_pending()
        user = user_service.create_user(db, email, password_hash, role, info)
    except UserStoreError as e:
        _fail(e)
    finally:
        db.close()

    click.echo(f"✓ Created user {user.email}")
    click.echo(f"  ID: {user.id}")
    click.echo(f"  Role: {user.role.value}")


@users.command("show")
@click.argument("email")
def show_user(email: str):
    """Show a user by email."""
    db = SessionLocal()
    try:
        user = user_service.get_user_by_email(db, email)
    except UserStoreError as e:
        _fail(e)
    finally:
        db.close()

    click.echo(click.style(user.email, bold=True))
    click.echo(f"  ID: {user.id}")
    click.echo(f"  Role: {user.role.value}")
    if user.info.username:
        click.echo(f"  Username: {user.info.username}")
    full_name = " ".join(
        part for part in (user.info.first_name, user.info.middle_name, user.info.last_name) if part
    )
    if full_name:
        click.echo(f"  Name: {full_name}")
    click.echo(f"  Created: {user.created_at:%Y-%m-%d %H:%M}")


@users.command("list")
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--per-page", type=int, default=10, show_default=True)
@click.option("--role", type=click.Choice([role.value for role in UserRole]), default=None)
@click.option("--search", default=None, help="Match email, username or name")
def list_users(page: int, per_page: int, role: str | None, search: str | None):
    """List users, newest first."""
    filters = UserFilter(page=page, per_page=per_page, role=role, search=search)
    db = SessionLocal()
    try:
        items = user_service.list_users(db, filters)
        total = user_service.count_users(db, filters)
    except UserStoreError as e:
        _fail(e)
    finally:
        db.close()

    result = PaginatedResponse.create(items, total, PaginationParams(filters.page, filters.per_page))
    for user in result.items:
        click.echo(f"  {user.id}  {user.email:30} {user.role.value}")
    click.echo(f"Page {result.page}/{max(result.pages, 1)} - {result.total} user(s)")


@users.command("delete")
@click.argument("user_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
def delete_user(user_id: str, yes: bool):
    """Delete a user and its profile."""
    if not yes and not click.confirm(f"Delete user {user_id}?"):
        click.echo("Aborted.")
        return

    db = SessionLocal()
    try:
        user_service.delete_user(db, user_id)
    except UserStoreError as e:
        _fail(e)
    finally:
        db.close()

    click.echo(f"✓ Deleted user {user_id}")


def main() -> None:
    """Entry point for the userstore CLI."""
    cli()


if __name__ == "__main__":
    cli()
