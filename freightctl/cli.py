import functools
import json
import logging

import click

from .db import connect_db
from .errors import FreightError
from .identity import IdentityOracle, USER_ENV, ROLE_ENV
from .models import JOB_STATES, BID_STATES, ROLES
from .repository import get_config, set_config
from .service import JobService
from .watcher import start_watch


def _service(ctx) -> JobService:
    return ctx.obj["service"]


def _me(ctx):
    return ctx.obj["identity"].current_user()


def reports_errors(fn):
    """Turn business-rule failures into a red one-liner and exit code 1."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except FreightError as e:
            click.secho(f"Error [{e.kind}]: {e.message}", fg="red")
            raise SystemExit(1)
    return wrapper


def _job_line(job) -> str:
    return (
        f"{job.id:>32} | {job.status:<11} | {job.payment.amount:>10.2f} {job.payment.currency} "
        f"| {job.pickup.location} -> {job.delivery.location} | bids={len(job.bids)} "
        f"| assigned={job.assigned_to or '-'} | {job.title}"
    )


def _print_job(job):
    click.echo(f"Job {job.id}: {job.title}")
    click.echo(f"  status:     {job.status}")
    click.echo(f"  posted by:  {job.posted_by} ({job.posted_by_role})")
    click.echo(f"  assigned:   {job.assigned_to or '-'}")
    click.echo(f"  pickup:     {job.pickup.location} on {job.pickup.date}")
    click.echo(f"  delivery:   {job.delivery.location} on {job.delivery.date}")
    click.echo(f"  cargo:      {job.cargo.type}")
    click.echo(f"  payment:    {job.payment.amount:.2f} {job.payment.currency} ({job.payment.payment_status})")
    if job.bids:
        click.echo("  bids:")
        for b in job.bids:
            click.echo(f"    {b.id} | {b.bidder:<16} | {b.amount:>10.2f} | {b.status}")


@click.group(help="freightctl: post, bid on, claim and deliver freight jobs")
@click.option("--db", "db_path", envvar="FREIGHTCTL_DB", default=None, help="SQLite database file")
@click.option("--as", "user_id", default=None, help=f"Acting user id (or ${USER_ENV})")
@click.option("--role", type=click.Choice(ROLES), default=None, help=f"Acting user role (or ${ROLE_ENV})")
@click.option("--log-level", default="WARNING", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, user_id, role, log_level):
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["identity"] = IdentityOracle(user_id, role)
    ctx.obj["service"] = JobService(db_path)


# ---------- Jobs ----------
@cli.group("job", help="Post and manage jobs")
def job_group():
    pass


@job_group.command("post", help="Post a new job (dispatcher/shipper)")
@click.option("--title", required=True)
@click.option("--description", required=True)
@click.option("--pickup", "pickup_location", required=True, help="Pickup location")
@click.option("--pickup-date", required=True, help="ISO date, e.g. 2025-11-09")
@click.option("--pickup-city", default=None)
@click.option("--pickup-state", default=None)
@click.option("--delivery", "delivery_location", required=True, help="Delivery location")
@click.option("--delivery-date", required=True, help="ISO date")
@click.option("--delivery-city", default=None)
@click.option("--delivery-state", default=None)
@click.option("--cargo-type", required=True)
@click.option("--weight", type=float, default=None)
@click.option("--special", multiple=True, help="Special requirement tag (repeatable)")
@click.option("--amount", type=float, required=True, help="Payment amount (> 0)")
@click.option("--currency", default=None)
@click.option("--distance", type=float, default=None, help="Miles")
@click.pass_context
@reports_errors
def job_post(ctx, title, description, pickup_location, pickup_date, pickup_city, pickup_state,
             delivery_location, delivery_date, delivery_city, delivery_state, cargo_type,
             weight, special, amount, currency, distance):
    fields = {
        "title": title,
        "description": description,
        "pickup": {"location": pickup_location, "date": pickup_date,
                   "city": pickup_city, "state": pickup_state},
        "delivery": {"location": delivery_location, "date": delivery_date,
                     "city": delivery_city, "state": delivery_state},
        "cargo": {"type": cargo_type, "weight": weight, "special_requirements": list(special)},
        "payment": {"amount": amount, "currency": currency},
        "distance": distance,
    }
    job = _service(ctx).create_job(_me(ctx), fields)
    click.secho(f"Posted {job.id} -> {job.title} ({job.payment.amount:.2f} {job.payment.currency})", fg="green")


@job_group.command("list", help="List jobs visible to you")
@click.option("--status", type=click.Choice(JOB_STATES + ("available", "claimed")), default=None)
@click.option("--cargo-type", default=None)
@click.option("--min-amount", type=float, default=None)
@click.option("--max-amount", type=float, default=None)
@click.option("--pickup-from", default=None)
@click.option("--pickup-to", default=None)
@click.option("--limit", type=int, default=None)
@click.option("--offset", type=int, default=0, show_default=True)
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
@reports_errors
def job_list(ctx, status, cargo_type, min_amount, max_amount, pickup_from, pickup_to, limit, offset, as_json):
    jobs = _service(ctx).list_jobs(
        _me(ctx), status=status, cargo_type=cargo_type, min_amount=min_amount,
        max_amount=max_amount, pickup_from=pickup_from, pickup_to=pickup_to,
        limit=limit, offset=offset,
    )
    if as_json:
        click.echo(json.dumps([j.to_dict() for j in jobs], indent=2))
        return
    if not jobs:
        click.echo("No jobs.")
        return
    for j in jobs:
        click.echo(_job_line(j))


@job_group.command("show")
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
@reports_errors
def job_show(ctx, job_id, as_json):
    job = _service(ctx).get_job(job_id)
    if as_json:
        click.echo(json.dumps(job.to_dict(), indent=2))
    else:
        _print_job(job)


@job_group.command("update", help="Edit a job you posted")
@click.argument("job_id")
@click.option("--title", default=None)
@click.option("--description", default=None)
@click.option("--amount", type=float, default=None)
@click.option("--pickup-date", default=None)
@click.option("--delivery-date", default=None)
@click.option("--cargo-type", default=None)
@click.pass_context
@reports_errors
def job_update(ctx, job_id, title, description, amount, pickup_date, delivery_date, cargo_type):
    fields = {}
    if title is not None:
        fields["title"] = title
    if description is not None:
        fields["description"] = description
    if amount is not None:
        fields["payment"] = {"amount": amount}
    if pickup_date is not None:
        fields["pickup"] = {"date": pickup_date}
    if delivery_date is not None:
        fields["delivery"] = {"date": delivery_date}
    if cargo_type is not None:
        fields["cargo"] = {"type": cargo_type}
    job = _service(ctx).update_job(job_id, fields, _me(ctx))
    click.secho(f"Updated {job.id}.", fg="green")


@job_group.command("delete")
@click.argument("job_id")
@click.pass_context
@reports_errors
def job_delete(ctx, job_id):
    _service(ctx).delete_job(job_id, _me(ctx))
    click.secho(f"Deleted {job_id}.", fg="yellow")


@job_group.command("claim", help="Take an open job directly (trucker)")
@click.argument("job_id")
@click.pass_context
@reports_errors
def job_claim(ctx, job_id):
    job = _service(ctx).claim_job(job_id, _me(ctx))
    click.secho(f"Claimed {job.id}; status={job.status}.", fg="green")


@job_group.command("status", help="Move a job to a new status")
@click.argument("job_id")
@click.argument("new_status")
@click.option("--notes", default=None)
@click.pass_context
@reports_errors
def job_status(ctx, job_id, new_status, notes):
    job = _service(ctx).update_job_status(job_id, new_status, _me(ctx), notes)
    click.secho(f"Job {job.id} is now {job.status}.", fg="green")


@job_group.command("history")
@click.argument("job_id")
@click.pass_context
@reports_errors
def job_history(ctx, job_id):
    for e in _service(ctx).job_history(job_id):
        click.echo(f"{e.timestamp} | {e.status:<11} | by={e.actor} | {e.notes or ''}")


# ---------- Bids ----------
@cli.group("bid", help="Bid on jobs and resolve bids")
def bid_group():
    pass


@bid_group.command("place")
@click.argument("job_id")
@click.argument("amount", type=float)
@click.option("--message", default=None)
@click.pass_context
@reports_errors
def bid_place(ctx, job_id, amount, message):
    me = _me(ctx)
    job = _service(ctx).place_bid(job_id, me, amount, message)
    bid = job.active_bid_for(me.id)
    click.secho(f"Bid {bid.id} of {bid.amount:.2f} placed on {job.id}.", fg="green")


@bid_group.command("accept")
@click.argument("job_id")
@click.argument("bid_id")
@click.pass_context
@reports_errors
def bid_accept(ctx, job_id, bid_id):
    job = _service(ctx).accept_bid(job_id, bid_id, _me(ctx))
    click.secho(f"Accepted {bid_id}; job {job.id} assigned to {job.assigned_to}.", fg="green")


@bid_group.command("reject")
@click.argument("job_id")
@click.argument("bid_id")
@click.pass_context
@reports_errors
def bid_reject(ctx, job_id, bid_id):
    _service(ctx).reject_bid(job_id, bid_id, _me(ctx))
    click.secho(f"Rejected {bid_id}.", fg="yellow")


@bid_group.command("withdraw")
@click.argument("job_id")
@click.argument("bid_id")
@click.pass_context
@reports_errors
def bid_withdraw(ctx, job_id, bid_id):
    _service(ctx).withdraw_bid(job_id, bid_id, _me(ctx))
    click.secho(f"Withdrew {bid_id}.", fg="yellow")


@bid_group.command("update")
@click.argument("job_id")
@click.argument("bid_id")
@click.option("--amount", type=float, default=None)
@click.option("--message", default=None)
@click.pass_context
@reports_errors
def bid_update(ctx, job_id, bid_id, amount, message):
    _service(ctx).update_bid(job_id, bid_id, _me(ctx), amount, message)
    click.secho(f"Updated {bid_id}.", fg="green")


@bid_group.command("mine", help="Bids you have placed")
@click.option("--status", type=click.Choice(BID_STATES), default=None)
@click.pass_context
@reports_errors
def bid_mine(ctx, status):
    rows = _service(ctx).list_my_bids(_me(ctx), status=status)
    if not rows:
        click.echo("No bids.")
        return
    for job, b in rows:
        click.echo(f"{b.id} | job={job.id} ({job.status}) | {b.amount:>10.2f} | {b.status} | {job.title}")


# ---------- Notifications ----------
@cli.group("notifications", help="Your notifications")
def notifications_group():
    pass


@notifications_group.command("list")
@click.option("--unread", is_flag=True)
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--offset", type=int, default=0, show_default=True)
@click.pass_context
@reports_errors
def notifications_list(ctx, unread, limit, offset):
    rows = _service(ctx).list_notifications(_me(ctx), unread_only=unread, limit=limit, offset=offset)
    if not rows:
        click.echo("No notifications.")
        return
    for n in rows:
        mark = " " if n.is_read else "*"
        click.echo(f"{mark} {n.id} | {n.created_at} | {n.type:<18} | {n.title}: {n.message}")


@notifications_group.command("count")
@click.pass_context
@reports_errors
def notifications_count(ctx):
    click.echo(str(_service(ctx).unread_count(_me(ctx))))


@notifications_group.command("read")
@click.argument("notification_id")
@click.pass_context
@reports_errors
def notifications_read(ctx, notification_id):
    _service(ctx).mark_notification_read(_me(ctx), notification_id)
    click.secho(f"Marked {notification_id} read.", fg="green")


@notifications_group.command("read-all")
@click.pass_context
@reports_errors
def notifications_read_all(ctx):
    n = _service(ctx).mark_all_notifications_read(_me(ctx))
    click.secho(f"Marked {n} notification(s) read.", fg="green")


@notifications_group.command("delete")
@click.argument("notification_id")
@click.pass_context
@reports_errors
def notifications_delete(ctx, notification_id):
    _service(ctx).delete_notification(_me(ctx), notification_id)
    click.secho(f"Deleted {notification_id}.", fg="yellow")


@notifications_group.command("watch", help="Print new notifications as they arrive")
@click.option("--all", "since_start", is_flag=True, help="Replay existing notifications first")
@click.pass_context
@reports_errors
def notifications_watch(ctx, since_start):
    me = _me(ctx)
    click.secho(f"Watching notifications for {me.id}. Press Ctrl+C to stop…", fg="cyan")
    start_watch(me.id, out=click.echo, db_path=ctx.obj["db_path"], since_start=since_start)
    click.secho("Stopped.", fg="yellow")


# ---------- Stats ----------
@cli.command("stats")
@click.pass_context
@reports_errors
def stats_cmd(ctx):
    click.echo(json.dumps(_service(ctx).stats(_me(ctx)), indent=2))


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = connect_db(ctx.obj["db_path"])
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = connect_db(ctx.obj["db_path"])
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


def main():
    cli()
