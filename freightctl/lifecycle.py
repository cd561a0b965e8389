"""
Job lifecycle state machine.

    open -> assigned -> in_progress -> [delivered ->] completed
    open / assigned / in_progress -> cancelled

`claimed` and `available` from the older vocabulary are read as
`assigned` and `open`. Only claim and bid acceptance may enter
`assigned`, since they are the only paths that know who the assignee is.

Everything here mutates the in-memory Job and returns a `Change`;
persistence and delivery are the service layer's job.
"""
from typing import Optional, Set

from . import permissions
from .dispatcher import Change
from .errors import InvalidTransition, Unauthorized, ValidationError
from .models import (
    Job, Principal, StatusEntry,
    OPEN, ASSIGNED, IN_PROGRESS, DELIVERED, COMPLETED, CANCELLED,
    JOB_STATES, STATUS_ALIASES, TERMINAL_STATES, PENDING, REJECTED,
    JOB_STATUS_UPDATE, JOB_COMPLETED, JOB_CANCELLED, BID_REJECTED,
)
from .utils import format_amount, now_iso

TRANSITIONS = {
    OPEN: {ASSIGNED, CANCELLED},
    ASSIGNED: {IN_PROGRESS, CANCELLED},
    IN_PROGRESS: {DELIVERED, COMPLETED, CANCELLED},
    DELIVERED: {COMPLETED},
    COMPLETED: set(),
    CANCELLED: set(),
}


def normalize_status(status: str) -> str:
    s = (status or "").strip().lower()
    s = STATUS_ALIASES.get(s, s)
    if s not in JOB_STATES:
        raise ValidationError(f"Unknown job status: {status!r}")
    return s


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def valid_transitions(status: str) -> Set[str]:
    return set(TRANSITIONS.get(status, ()))


def validate_transition(job: Job, target: str):
    allowed = TRANSITIONS.get(job.status, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(allowed)) or "none"
        raise InvalidTransition(
            f"Cannot move job {job.id} from {job.status} to {target}. "
            f"Allowed from {job.status}: [{allowed_str}]"
        )


def record(job: Job, status: str, actor_id: str, notes: Optional[str], ts: str):
    job.status = status
    job.status_history.append(StatusEntry(status=status, timestamp=ts, actor=actor_id, notes=notes))
    job.updated_at = ts
    if status == COMPLETED:
        job.completed_at = ts


def reject_pending_bids(job: Job, ts: str, except_bid: Optional[str] = None) -> list:
    rejected = []
    for b in job.bids:
        if b.status == PENDING and b.id != except_bid:
            b.status = REJECTED
            b.responded_at = ts
            rejected.append(b)
    return rejected


def assign(job: Job, assignee: str, actor: Principal, notes: Optional[str], ts: str):
    """The single open -> assigned step shared by claim and bid acceptance."""
    if not assignee:
        raise ValidationError("An assignee is required to assign a job.")
    validate_transition(job, ASSIGNED)
    job.assigned_to = assignee
    record(job, ASSIGNED, actor.id, notes, ts)


def transition(job: Job, new_status: str, actor: Principal, notes: Optional[str] = None) -> Change:
    if not permissions.can_transition_job(actor, job):
        raise Unauthorized(f"User {actor.id} is not authorized to update the status of job {job.id}.")

    target = normalize_status(new_status)
    if target == ASSIGNED:
        raise InvalidTransition("Jobs become assigned by claim or bid acceptance, not by status update.")
    validate_transition(job, target)

    ts = now_iso()
    recipients = [job.posted_by]
    if job.assigned_to and job.assigned_to != job.posted_by:
        recipients.append(job.assigned_to)

    change = Change()
    if target == CANCELLED:
        for b in reject_pending_bids(job, ts):
            change.notify(
                [b.bidder], BID_REJECTED, "Bid Rejected",
                f'Job "{job.title}" was cancelled; your bid of {format_amount(b.amount)} was rejected',
                related_bid=b.id,
            )
        job.assigned_to = None

    record(job, target, actor.id, notes, ts)

    if target == COMPLETED:
        type_, title = JOB_COMPLETED, "Job Completed"
    elif target == CANCELLED:
        type_, title = JOB_CANCELLED, "Job Cancelled"
    else:
        type_, title = JOB_STATUS_UPDATE, "Job Status Updated"
    change.notify(recipients, type_, title, f'Job "{job.title}" status updated to {target}')
    change.emit("statusUpdated", {"jobId": job.id, "status": target, "updatedBy": actor.id})
    return change
