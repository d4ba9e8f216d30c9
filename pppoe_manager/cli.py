# pppoe_manager/cli.py
from __future__ import annotations

import click
from flask import current_app
from flask.cli import with_appcontext

from .domain import RouterDescriptor
from .extensions import db
from .models import Router


def _router_or_fail(router_id: int) -> Router:
    router = db.session.get(Router, router_id)
    if router is None:
        raise click.ClickException(f"Router {router_id} not found")
    return router


def _echo_failure(res) -> None:
    click.echo(f"[FAIL] {res.describe()}")
    for hint in res.suggestions:
        click.echo(f"  - {hint}")


# ======================================================
# Router tools
# ======================================================
@click.group()
def router():
    """Router tools (test/import/resync)."""


@router.command("add")
@click.option("--name", "friendly_name", required=True, help="Display name.")
@click.option("--address", required=True, help="Router IP/hostname.")
@click.option("--port", type=int, default=8728, show_default=True)
@click.option("--user", "api_username", required=True, help="RouterOS API username.")
@click.option("--password", "api_password", required=True, prompt=True, hide_input=True)
@click.option("--tls", "use_tls", is_flag=True, help="Use API-SSL (usually port 8729).")
@with_appcontext
def router_add(friendly_name: str, address: str, port: int, api_username: str, api_password: str, use_tls: bool):
    """Register a router."""
    row = Router(
        friendly_name=friendly_name.strip(),
        address=address.strip(),
        port=port,
        api_username=api_username.strip(),
        api_password=api_password,
        use_tls=use_tls,
    )
    db.session.add(row)
    db.session.commit()
    click.echo(f"Router created: id={row.id} name={row.friendly_name} address={row.address}:{row.port}")


@router.command("test")
@click.argument("router_id", type=int)
@with_appcontext
def router_test(router_id: int):
    """Test the API connection and record router liveness."""
    from .services.accounts import check_router_connection

    r = _router_or_fail(router_id)
    res = check_router_connection(RouterDescriptor.from_router(r), router=r)
    if res.success:
        click.echo(f"[OK] {res.message} (identity={(res.data or {}).get('identity', '-')})")
    else:
        _echo_failure(res)
        raise SystemExit(1)


@router.command("import")
@click.argument("router_id", type=int)
@with_appcontext
def router_import(router_id: int):
    """
    Read-only scan: list router secrets that have no local account.
    Save them with an expiry through POST /api/routers/<id>/import/save.
    """
    from .services.sync import scan_import

    res = scan_import(_router_or_fail(router_id))
    if not res.success:
        _echo_failure(res.failure)
        raise SystemExit(1)

    plan = res.plan
    click.echo(f"Router secrets: {plan.remote_total}, not yet imported: {len(plan.new)}\n")
    for c in plan.new:
        click.echo(f"[NEW] user={c.username} status={c.status.value} profile={c.profile or '-'} comment='{c.comment}'")


@router.command("resync")
@click.argument("router_id", type=int)
@click.option("--apply", "apply_changes", is_flag=True, help="Actually write to the DB. Default is DRY-RUN.")
@with_appcontext
def router_resync(router_id: int, apply_changes: bool):
    """
    Merge router secrets into the DB:
      - secrets missing locally are imported (no expiry)
      - disabled flag + password follow the router
      - local-only accounts are reported, never deleted
    """
    from .services.sync import preview_resync, resync_router

    r = _router_or_fail(router_id)

    if not apply_changes:
        res = preview_resync(r)
        if not res.success:
            _echo_failure(res.failure)
            raise SystemExit(1)
        plan = res.plan
        click.echo(f"Resync DRY-RUN router_id={router_id}: {plan.summary()}\n")
        for c in plan.new:
            click.echo(f"[DRY] would import user={c.username} status={c.status.value}")
        for u in plan.updates:
            click.echo(f"[DRY] would update user={u.username} fields={','.join(u.fields)}")
        for d in plan.discrepancies:
            click.echo(f"[DISCREPANCY] user={d.username} {d.reason}")
        return

    res = resync_router(r)
    if not res.success:
        _echo_failure(res.failure)
        raise SystemExit(1)

    for d in res.plan.discrepancies:
        click.echo(f"[DISCREPANCY] user={d.username} {d.reason}")
    click.echo(f"\nDone. added={len(res.added)} updated={len(res.updated)} skipped={len(res.skipped)}")


# ======================================================
# Expiry tools
# ======================================================
@click.group()
def expiry():
    """Expiry enforcement tools."""


@expiry.command("run-once")
@click.option("--dry-run", is_flag=True, help="Only list overdue accounts.")
@with_appcontext
def expiry_run_once(dry_run: bool):
    """Run one enforcement tick now (independent of the background scheduler)."""
    from .router_agent import get_router_agent
    from .scheduler import ExpirationScheduler

    enforcer = ExpirationScheduler.from_app(current_app._get_current_object(), get_router_agent())
    enforcer.dry_run = dry_run or enforcer.dry_run

    report = enforcer.run_once()
    if report.error:
        raise click.ClickException(f"Tick abandoned: {report.error}")

    click.echo(
        f"checked={report.checked} expired={len(report.expired)} "
        f"failed={len(report.failed)} errors={len(report.errors)} dry_run={report.dry_run}"
    )
    for name in report.failed:
        click.echo(f"[FAIL] {name}")


# ======================================================
# Init hook
# ======================================================
def init_app(app):
    app.cli.add_command(router)
    app.cli.add_command(expiry)
