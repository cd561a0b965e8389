"""
JobService: the operations callers use.

Every mutating call on a job follows the same shape:

    lock(job id) -> BEGIN IMMEDIATE -> load -> validate + mutate in memory
                 -> save job (version CAS) + notification rows -> COMMIT
    unlock -> best-effort push

so a failed rule check or a lost race leaves nothing behind, and a failed
push never undoes a committed change. The in-process lock orders threads;
the immediate transaction orders processes sharing the database file.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Tuple

from . import bidding, lifecycle, permissions
from .db import begin_immediate, connect_db, init_db
from .dispatcher import Change, Dispatcher
from .errors import (
    ConcurrencyConflict, InvalidTransition, JobNotOpen, NotFound, Unauthorized, ValidationError,
)
from .models import (
    Bid, Cargo, Job, Location, Notification, Payment, Principal, StatusEntry,
    OPEN, DISPATCHER, POSTER_ROLES, PAYMENT_STATES, TRUCKER,
)
from .repository import (
    bid_stats, claim_open_job, delete_job, get_config, insert_job, job_stats,
    list_bids_by_bidder, list_jobs, load_job, save_job,
)
from . import repository
from .utils import new_id, now_iso, parse_date

logger = logging.getLogger(__name__)

REQUIRED_TEXT = ("title", "description")
EDITABLE_FIELDS = {
    "title", "description", "pickup", "delivery", "cargo", "payment",
    "distance", "estimated_duration",
}
LOCATION_FIELDS = {"location", "date", "address", "city", "state", "zip_code"}
CARGO_FIELDS = {"type", "weight", "volume", "quantity", "special_requirements"}
PAYMENT_FIELDS = {"amount", "currency", "payment_status"}


class JobLocks:
    """Per-job mutexes. Entries live only while someone holds or waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, job_id: str):
        with self._guard:
            lock, refs = self._locks.get(job_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[job_id] = (lock, refs + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, refs = self._locks[job_id]
                if refs <= 1:
                    del self._locks[job_id]
                else:
                    self._locks[job_id] = (lock, refs - 1)

    def __len__(self):
        with self._guard:
            return len(self._locks)


# ---------- field validation ----------
def _section(fields: dict, name: str) -> dict:
    value = fields.get(name)
    if value is None:
        raise ValidationError(f"{name} is required.")
    if not isinstance(value, dict):
        raise ValidationError(f"{name} must be an object.")
    return value


def _only(d: dict, allowed: set, name: str):
    unknown = set(d) - allowed
    if unknown:
        raise ValidationError(f"Unknown {name} field(s): {', '.join(sorted(unknown))}")


def _optional_number(value, name: str):
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number.")


def _build_location(d: dict, name: str) -> Location:
    _only(d, LOCATION_FIELDS, name)
    if not str(d.get("location") or "").strip():
        raise ValidationError(f"{name}.location is required.")
    if not d.get("date"):
        raise ValidationError(f"{name}.date is required.")
    try:
        when = parse_date(d["date"])
    except ValueError as e:
        raise ValidationError(f"{name}.date: {e}")
    return Location(
        location=str(d["location"]).strip(),
        date=when,
        address=d.get("address"),
        city=d.get("city"),
        state=d.get("state"),
        zip_code=d.get("zip_code"),
    )


def _build_cargo(d: dict) -> Cargo:
    _only(d, CARGO_FIELDS, "cargo")
    if not str(d.get("type") or "").strip():
        raise ValidationError("cargo.type is required.")
    reqs = d.get("special_requirements") or []
    if isinstance(reqs, str):
        reqs = [r.strip() for r in reqs.split(",") if r.strip()]
    quantity = d.get("quantity")
    if quantity is not None:
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise ValidationError("cargo.quantity must be an integer.")
    return Cargo(
        type=str(d["type"]).strip(),
        weight=_optional_number(d.get("weight"), "cargo.weight"),
        volume=_optional_number(d.get("volume"), "cargo.volume"),
        quantity=quantity,
        special_requirements=list(reqs),
    )


def _build_payment(d: dict, default_currency: str) -> Payment:
    _only(d, PAYMENT_FIELDS, "payment")
    amount = _optional_number(d.get("amount"), "payment.amount")
    if amount is None or amount != amount or amount <= 0:
        raise ValidationError("payment.amount must be greater than 0.")
    status = d.get("payment_status") or "pending"
    if status not in PAYMENT_STATES:
        raise ValidationError(f"payment.payment_status must be one of {', '.join(PAYMENT_STATES)}.")
    return Payment(amount=amount, currency=d.get("currency") or default_currency, payment_status=status)


def _check_text(fields: dict):
    for name in REQUIRED_TEXT:
        if not str(fields.get(name) or "").strip():
            raise ValidationError(f"{name} is required.")


class JobService:
    def __init__(self, db_path: Optional[str] = None, dispatcher: Optional[Dispatcher] = None,
                 locks: Optional[JobLocks] = None):
        self.db_path = db_path
        self.dispatcher = dispatcher if dispatcher is not None else Dispatcher()
        self.locks = locks if locks is not None else JobLocks()
        init_db(db_path)

    def _connect(self):
        return connect_db(self.db_path)

    def _mutate(self, job_id: str, actor: Principal, fn: Callable, claim: bool = False):
        """Run `fn(job) -> (result, Change)` under the job's lock, commit, then push."""
        conn = self._connect()
        try:
            with self.locks.hold(job_id):
                try:
                    with conn:
                        begin_immediate(conn)
                        job = load_job(conn, job_id)
                        result, change = fn(job)
                        if claim:
                            claim_open_job(conn, job)
                        else:
                            save_job(conn, job)
                        rows = self.dispatcher.persist_change(conn, change, sender=actor.id, job_id=job.id)
                except ConcurrencyConflict:
                    if claim:
                        raise JobNotOpen(f"Job {job_id} is no longer open.")
                    raise
            self.dispatcher.push(rows, job.id, change.events, conn=conn)
            return result
        finally:
            conn.close()

    # ---------- jobs ----------
    def create_job(self, poster: Principal, fields: dict) -> Job:
        if not permissions.can_post_job(poster):
            raise Unauthorized(f"Role {poster.role} cannot post jobs.")
        if not isinstance(fields, dict):
            raise ValidationError("Job fields must be an object.")
        _only(fields, EDITABLE_FIELDS, "job")
        _check_text(fields)

        conn = self._connect()
        try:
            currency = get_config(conn).get("default_currency", "USD")
            ts = now_iso()
            job = Job(
                id=new_id(),
                title=str(fields["title"]).strip(),
                description=str(fields["description"]).strip(),
                posted_by=poster.id,
                posted_by_role=poster.role if poster.role in POSTER_ROLES else DISPATCHER,
                pickup=_build_location(_section(fields, "pickup"), "pickup"),
                delivery=_build_location(_section(fields, "delivery"), "delivery"),
                cargo=_build_cargo(_section(fields, "cargo")),
                payment=_build_payment(_section(fields, "payment"), currency),
                distance=_optional_number(fields.get("distance"), "distance"),
                estimated_duration=_optional_number(fields.get("estimated_duration"), "estimated_duration"),
                status=OPEN,
                status_history=[StatusEntry(status=OPEN, timestamp=ts, actor=poster.id, notes="Job posted")],
                created_at=ts,
                updated_at=ts,
            )
            with conn:
                insert_job(conn, job)
            logger.info("job %s posted by %s", job.id, poster.id)

            change = Change()
            change.emit("newJobPosted", {"jobId": job.id, "title": job.title}, public=True)
            self.dispatcher.push([], job.id, change.events, conn=conn)
            return job
        finally:
            conn.close()

    def get_job(self, job_id: str) -> Job:
        conn = self._connect()
        try:
            return load_job(conn, job_id)
        finally:
            conn.close()

    def list_jobs(self, requester: Principal, **filters) -> List[Job]:
        conn = self._connect()
        try:
            if filters.get("limit") is None:
                filters["limit"] = int(get_config(conn).get("list_limit", "100"))
            if filters.get("status"):
                filters["status"] = lifecycle.normalize_status(filters["status"])
            try:
                return list_jobs(conn, requester, **filters)
            except ValueError as e:
                raise ValidationError(str(e))
        finally:
            conn.close()

    def update_job(self, job_id: str, fields: dict, actor: Principal) -> Job:
        if not isinstance(fields, dict) or not fields:
            raise ValidationError("No fields to update.")
        locked = set(fields) - EDITABLE_FIELDS
        if locked:
            raise ValidationError(f"Field(s) cannot be updated: {', '.join(sorted(locked))}")

        def apply(job: Job):
            if not permissions.can_edit_job(actor, job):
                raise Unauthorized(f"User {actor.id} is not authorized to update job {job.id}.")
            if lifecycle.is_terminal(job.status):
                raise InvalidTransition(f"Job {job.id} is {job.status} and can no longer be edited.")

            merged = job.to_dict()
            for key, value in fields.items():
                if key in ("pickup", "delivery", "cargo", "payment"):
                    if not isinstance(value, dict):
                        raise ValidationError(f"{key} must be an object.")
                    merged[key] = {**merged[key], **value}
                else:
                    merged[key] = value
            _check_text(merged)

            job.title = str(merged["title"]).strip()
            job.description = str(merged["description"]).strip()
            job.pickup = _build_location(merged["pickup"], "pickup")
            job.delivery = _build_location(merged["delivery"], "delivery")
            job.cargo = _build_cargo(merged["cargo"])
            job.payment = _build_payment(merged["payment"], job.payment.currency)
            job.distance = _optional_number(merged.get("distance"), "distance")
            job.estimated_duration = _optional_number(merged.get("estimated_duration"), "estimated_duration")
            job.updated_at = now_iso()

            change = Change()
            change.emit("jobUpdated", {"jobId": job.id, "updatedBy": actor.id})
            return job, change

        return self._mutate(job_id, actor, apply)

    def delete_job(self, job_id: str, actor: Principal):
        conn = self._connect()
        try:
            with self.locks.hold(job_id):
                with conn:
                    begin_immediate(conn)
                    job = load_job(conn, job_id)
                    if not permissions.can_edit_job(actor, job):
                        raise Unauthorized(f"User {actor.id} is not authorized to delete job {job.id}.")
                    if not delete_job(conn, job_id):
                        raise NotFound(f"Job {job_id} not found.")
            logger.info("job %s deleted by %s", job_id, actor.id)
            change = Change()
            change.emit("jobDeleted", {"jobId": job_id, "deletedBy": actor.id})
            self.dispatcher.push([], job_id, change.events, conn=conn)
        finally:
            conn.close()

    def claim_job(self, job_id: str, trucker: Principal) -> Job:
        def apply(job: Job):
            return job, bidding.claim(job, trucker)

        job = self._mutate(job_id, trucker, apply, claim=True)
        logger.info("job %s claimed by %s", job_id, trucker.id)
        return job

    def update_job_status(self, job_id: str, new_status: str, actor: Principal,
                          notes: Optional[str] = None) -> Job:
        def apply(job: Job):
            return job, lifecycle.transition(job, new_status, actor, notes)

        job = self._mutate(job_id, actor, apply)
        logger.info("job %s moved to %s by %s", job_id, job.status, actor.id)
        return job

    def job_history(self, job_id: str) -> List[StatusEntry]:
        return list(self.get_job(job_id).status_history)

    # ---------- bids ----------
    def place_bid(self, job_id: str, bidder: Principal, amount, message: Optional[str] = None) -> Job:
        def apply(job: Job):
            _, change = bidding.submit_bid(job, bidder, amount, message)
            return job, change

        job = self._mutate(job_id, bidder, apply)
        logger.info("bid placed on job %s by %s", job_id, bidder.id)
        return job

    def update_bid(self, job_id: str, bid_id: str, bidder: Principal, amount=None,
                   message: Optional[str] = None) -> Job:
        def apply(job: Job):
            bidding.update_bid(job, bid_id, bidder, amount, message)
            return job, Change()

        return self._mutate(job_id, bidder, apply)

    def accept_bid(self, job_id: str, bid_id: str, actor: Principal) -> Job:
        def apply(job: Job):
            return job, bidding.accept_bid(job, bid_id, actor)

        job = self._mutate(job_id, actor, apply)
        logger.info("bid %s accepted on job %s; assigned to %s", bid_id, job_id, job.assigned_to)
        return job

    def reject_bid(self, job_id: str, bid_id: str, actor: Principal) -> Job:
        def apply(job: Job):
            return job, bidding.reject_bid(job, bid_id, actor)

        return self._mutate(job_id, actor, apply)

    def withdraw_bid(self, job_id: str, bid_id: str, bidder: Principal) -> Job:
        def apply(job: Job):
            return job, bidding.withdraw_bid(job, bid_id, bidder)

        return self._mutate(job_id, bidder, apply)

    def list_my_bids(self, bidder: Principal, status: Optional[str] = None) -> List[Tuple[Job, Bid]]:
        conn = self._connect()
        try:
            return list_bids_by_bidder(conn, bidder.id, status=status)
        finally:
            conn.close()

    # ---------- notifications ----------
    def list_notifications(self, user: Principal, unread_only: bool = False,
                           limit: int = 50, offset: int = 0) -> List[Notification]:
        conn = self._connect()
        try:
            return repository.list_notifications(
                conn, user.id, unread_only=unread_only, limit=limit, offset=offset
            )
        finally:
            conn.close()

    def mark_notification_read(self, user: Principal, notification_id: str):
        conn = self._connect()
        try:
            with conn:
                ok = repository.mark_read(conn, notification_id, user.id, now_iso())
            if not ok:
                raise NotFound(f"Notification {notification_id} not found.")
        finally:
            conn.close()

    def mark_all_notifications_read(self, user: Principal) -> int:
        conn = self._connect()
        try:
            with conn:
                return repository.mark_all_read(conn, user.id, now_iso())
        finally:
            conn.close()

    def unread_count(self, user: Principal) -> int:
        conn = self._connect()
        try:
            return repository.unread_count(conn, user.id)
        finally:
            conn.close()

    def delete_notification(self, user: Principal, notification_id: str):
        conn = self._connect()
        try:
            with conn:
                ok = repository.delete_notification(conn, notification_id, user.id)
            if not ok:
                raise NotFound(f"Notification {notification_id} not found.")
        finally:
            conn.close()

    # ---------- stats ----------
    def stats(self, user: Principal) -> dict:
        conn = self._connect()
        try:
            if user.is_admin:
                return {"jobs": job_stats(conn), "bids": bid_stats(conn)}
            as_role = "trucker" if user.role == TRUCKER else "poster"
            return {
                "jobs": job_stats(conn, user.id),
                "bids": bid_stats(conn, user.id, as_role=as_role),
            }
        finally:
            conn.close()
