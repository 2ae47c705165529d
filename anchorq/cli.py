import json
from dataclasses import asdict

import click

from .config import DEFAULT_DB_FILE
from .db import init_db, connect_db
from .errors import AnchorError
from .logging import setup_logging
from .models import STATUSES
from .repository import get_config, set_config, list_records, get_record, counts, create_record
from .worker import build_service, serve


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


def _record_line(r):
    return (
        f"{r.id:>24} | {r.status:<10} | tx={r.transaction_handle or '-'} "
        f"| {r.issuer} / {r.title} | note={r.note or ''}"
    )


@click.group(help="anchorq — blockchain anchoring queue for issued certificates")
@click.option("--db", "db_path", envvar="ANCHORQ_DB", default=DEFAULT_DB_FILE,
              show_default=True, help="SQLite database holding records and config")
@click.pass_context
def cli(ctx, db_path):
    setup_logging()
    # Ensure DB/schema exist before any command runs
    init_db(db_path)
    ctx.obj = {"db": db_path}


def _service(ctx):
    return build_service(ctx.obj["db"])


# ---------- Records ----------
@cli.command("issue", help="Register an issued certificate for anchoring")
@click.option("--issuer", required=True, help="Issuing entity passed to the mint call")
@click.option("--title", required=True, help="Certificate title")
@click.option("--metadata", "metadata_ref", required=True, help="Metadata reference (token URI)")
@click.option("--id", "record_id", default=None, help="Record id (generated if omitted)")
@click.pass_context
def issue_cmd(ctx, issuer, title, metadata_ref, record_id):
    conn = connect_db(ctx.obj["db"])
    try:
        r = create_record(conn, issuer=issuer, title=title, metadata_ref=metadata_ref, record_id=record_id)
        click.secho(f"Registered {r.id} ({r.status}); `anchorq serve` will anchor it.", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("list")
@click.option("--status", type=click.Choice(STATUSES), default=None)
@click.pass_context
def list_cmd(ctx, status):
    conn = connect_db(ctx.obj["db"])
    try:
        rows = list_records(conn, status=status)
    finally:
        conn.close()

    if not rows:
        click.echo("No records.")
        return

    for r in rows:
        click.echo(_record_line(r))


@cli.command("show")
@click.argument("record_id")
@click.pass_context
def show_cmd(ctx, record_id):
    conn = connect_db(ctx.obj["db"])
    try:
        r = get_record(conn, record_id)
        click.echo(json.dumps(asdict(r), indent=2))
    except AnchorError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("status")
@click.pass_context
def status_cmd(ctx):
    conn = connect_db(ctx.obj["db"])
    try:
        click.echo(json.dumps(counts(conn), indent=2))
    finally:
        conn.close()


# ---------- Worker ----------
@cli.command("serve", help="Run the anchoring queue until Ctrl+C")
@click.pass_context
def serve_cmd(ctx):
    click.secho("Starting anchoring worker. Press Ctrl+C to stop…", fg="cyan")
    serve(_service(ctx))
    click.secho("Worker stopped.", fg="yellow")


# ---------- Recovery ----------
def _run_until_settled(service):
    engine = service.engine
    engine.start()
    try:
        engine.wait_idle(include_monitors=False)
    finally:
        engine.stop()
    stats = engine.get_stats()
    if stats["monitoring_jobs"]:
        click.secho(f"{stats['monitoring_jobs']} transaction(s) still unconfirmed; "
                    f"`anchorq serve` keeps monitoring them.", fg="yellow")


@cli.command("resend", help="Submit a record's anchoring transaction again")
@click.argument("record_id")
@click.option("--force", is_flag=True, help="Resend even though a transaction was already sent")
@click.pass_context
def resend_cmd(ctx, record_id, force):
    service = _service(ctx)
    try:
        job_id = service.resend_one(record_id, force=force)
    except AnchorError as e:
        _fail(e)
    click.secho(f"Queued {job_id} for {record_id}.", fg="green")
    _run_until_settled(service)
    click.echo(_record_line(service.store.get_by_id(record_id)))


@cli.command("resend-all", help=(
    "Resend every record whose submission failed for good. A running "
    "`anchorq serve` may still hold jobs for pending, retrying or processing "
    "records and this command cannot see them, so resending those could mint "
    "twice. Pass --all-unsent to cover every record without a transaction, "
    "only when no worker is running."
))
@click.option("--all-unsent", is_flag=True, help="Resend every record that has no transaction yet")
@click.pass_context
def resend_all_cmd(ctx, all_unsent):
    service = _service(ctx)
    queued = service.resend_all_pending(only_failed=not all_unsent)
    if not queued:
        click.echo("Nothing to resend.")
        return
    click.secho(f"Queued {len(queued)} record(s).", fg="green")
    _run_until_settled(service)
    for record_id in queued:
        click.echo(_record_line(service.store.get_by_id(record_id)))


@cli.command("verify", help="Check a record's transaction on chain now")
@click.argument("record_id")
@click.pass_context
def verify_cmd(ctx, record_id):
    service = _service(ctx)
    try:
        res = service.verify_one(record_id)
    except AnchorError as e:
        _fail(e)
    if res.confirmed:
        click.secho(f"{record_id}: {res.status} ({res.note})", fg="green" if res.status == "completed" else "red")
    else:
        click.secho(f"{record_id}: transaction {res.transaction_handle} not mined yet", fg="yellow")


@cli.command("verify-all", help="Check every unconfirmed transaction on chain now")
@click.pass_context
def verify_all_cmd(ctx):
    service = _service(ctx)
    results = service.verify_all_unconfirmed()
    if not results:
        click.echo("No unconfirmed transactions.")
        return
    for res in results:
        if res.error:
            state = f"error: {res.error}"
        elif res.confirmed:
            state = res.status
        else:
            state = "not mined yet"
        click.echo(f"{res.record_id:>24} | tx={res.transaction_handle} | {state}")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = connect_db(ctx.obj["db"])
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = connect_db(ctx.obj["db"])
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli()
