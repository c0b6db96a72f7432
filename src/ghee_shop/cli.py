"""
Operator command line for the shop.

Every command reads the same environment (and ``.env``) as the server, so
it works against the configured database.  Business rules are enforced by
:class:`~ghee_shop.order_service.OrderService` exactly as over HTTP.

    ghee-shop serve
    ghee-shop orders --status pending
    ghee-shop set-status 12 confirmed
    ghee-shop invoice 12 -o slip.pdf
"""

from __future__ import annotations

import sqlite3
from typing import Optional

import click

from . import __version__
from .catalog import seed_products
from .config import Settings
from .dao import Database, ProductDAO
from .errors import ShopError
from .logging_config import configure_logging
from .order_status import ALL_STATUSES
from .web import ShopApp, build_app, run_server


def _load_app(ctx: click.Context) -> ShopApp:
    settings: Settings = ctx.obj["settings"]
    return build_app(settings)


@click.group()
@click.version_option(version=__version__, prog_name="ghee-shop")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Load settings from this .env file")
@click.pass_context
def cli(ctx: click.Context, env_file: Optional[str]) -> None:
    """Ghee shop order backend."""
    ctx.ensure_object(dict)
    settings = Settings.from_env(env_file)
    configure_logging(settings.log_dir, settings.log_level)
    ctx.obj["settings"] = settings


@cli.command("serve")
@click.option("--host", type=str, default=None, help="Bind address (default: HOST)")
@click.option("--port", type=int, default=None, help="Port (default: PORT)")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the JSON API server."""
    settings: Settings = ctx.obj["settings"]
    if host:
        settings.host = host
    if port:
        settings.port = port
    click.echo(f"Serving on http://{settings.host}:{settings.port} (Press CTRL+C to stop)")
    run_server(build_app(settings))


@cli.command("seed")
@click.pass_context
def seed(ctx: click.Context) -> None:
    """Create the schema and load the default catalog into an empty database."""
    db = Database(ctx.obj["settings"].database_path)
    db.create_schema()
    inserted = seed_products(ProductDAO(db))
    if inserted:
        click.echo(f"Seeded {inserted} products.")
    else:
        click.echo("Catalog already has products; nothing to do.")


@cli.command("orders")
@click.option("--status", type=click.Choice(ALL_STATUSES), default=None, help="Only orders in this status")
@click.option("--start-date", type=str, default=None, help="YYYY-MM-DD")
@click.option("--end-date", type=str, default=None, help="YYYY-MM-DD (inclusive)")
@click.pass_context
def orders(ctx: click.Context, status: Optional[str], start_date: Optional[str], end_date: Optional[str]) -> None:
    """List recent orders, newest first."""
    app = _load_app(ctx)
    try:
        rows = app.service.list_orders(start_date, end_date, status)
    except ShopError as exc:
        raise click.ClickException(exc.message)
    if not rows:
        click.echo("No orders found.")
        return
    for o in rows:
        click.echo(
            f"{o['id']:>5}  {o['order_number']:<22} {o['status']:<16} "
            f"Rs.{o['total_amount']:>9.2f}  {o['customer_name']} ({o['customer_phone']})  {o['created_at']}"
        )


@cli.command("set-status")
@click.argument("order_id", type=int)
@click.argument("status")
@click.pass_context
def set_status(ctx: click.Context, order_id: int, status: str) -> None:
    """Move an order to STATUS (pending, confirmed, processing, shipped, delivered, cancelled)."""
    app = _load_app(ctx)
    try:
        result = app.service.update_status(order_id, status)
    except ShopError as exc:
        raise click.ClickException(exc.message)
    order = result["order"]
    click.echo(f"Order {order['order_number']} is now {order['status']}.")


@cli.command("invoice")
@click.argument("order_id", type=int)
@click.option("--output", "-o", type=click.Path(dir_okay=False, writable=True), default=None,
              help="Output file (default: Order_<number>.pdf)")
@click.pass_context
def invoice(ctx: click.Context, order_id: int, output: Optional[str]) -> None:
    """Write the delivery slip + invoice PDF for an order."""
    app = _load_app(ctx)
    try:
        filename, pdf = app.service.render_invoice(order_id)
    except ShopError as exc:
        raise click.ClickException(exc.message)
    target = output or filename
    with open(target, "wb") as fh:
        fh.write(pdf)
    click.echo(f"Wrote {target} ({len(pdf)} bytes).")


@cli.command("check-db")
@click.pass_context
def check_db(ctx: click.Context) -> None:
    """Verify the database can be opened and queried."""
    settings: Settings = ctx.obj["settings"]
    db = Database(settings.database_path)
    try:
        db.check()
        db.create_schema()
        count = ProductDAO(db).count()
    except sqlite3.Error as exc:
        raise click.ClickException(f"Database check failed: {exc}")
    finally:
        db.close_thread_connection()
    click.echo(f"Database OK: {settings.database_path} ({count} products)")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
