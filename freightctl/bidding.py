"""
Bid resolution.

Two ways a job gets its trucker:

- bidding: truckers place bids, the poster accepts one, every other
  pending bid is rejected in the same step;
- claim: a trucker takes an open job outright. Their own pending bid,
  if any, is accepted and every other pending bid is rejected.

Both end in `lifecycle.assign`. Functions here validate, mutate the
in-memory Job and return a `Change`; the service layer persists the job
and the notifications in one transaction.
"""
from typing import Optional, Tuple

from . import lifecycle, permissions
from .dispatcher import Change
from .errors import (
    BidNotFound, BidNotPending, DuplicateBid, InvalidAmount, JobNotOpen, Unauthorized,
)
from .models import (
    Bid, Job, Principal,
    OPEN, PENDING, ACCEPTED, REJECTED, WITHDRAWN,
    BID_RECEIVED, BID_ACCEPTED, BID_REJECTED, BID_WITHDRAWN, JOB_CLAIMED,
)
from .utils import format_amount, new_id, now_iso


def _check_amount(amount) -> float:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise InvalidAmount(f"Bid amount must be a number, got {amount!r}.")
    if value != value or value <= 0:
        raise InvalidAmount("Bid amount must be greater than 0.")
    return value


def _require_open(job: Job, what: str):
    if job.status != OPEN:
        raise JobNotOpen(f"Job {job.id} is {job.status}; {what} requires an open job.")


def _get_bid(job: Job, bid_id: str) -> Bid:
    bid = job.find_bid(bid_id)
    if bid is None:
        raise BidNotFound(f"Bid {bid_id} not found on job {job.id}.")
    return bid


def _require_pending(bid: Bid):
    if bid.status != PENDING:
        raise BidNotPending(f"Bid {bid.id} is already {bid.status}.")


def _rejection_notices(change: Change, job: Job, rejected):
    for b in rejected:
        change.notify(
            [b.bidder], BID_REJECTED, "Bid Rejected",
            f'Your bid of {format_amount(b.amount)} on "{job.title}" was not selected',
            related_bid=b.id,
        )


def submit_bid(job: Job, bidder: Principal, amount, message: Optional[str] = None) -> Tuple[Bid, Change]:
    if not permissions.can_bid(bidder, job):
        raise Unauthorized(f"User {bidder.id} may not bid on job {job.id}.")
    _require_open(job, "bidding")
    if job.active_bid_for(bidder.id) is not None:
        raise DuplicateBid(f"User {bidder.id} already has a bid on job {job.id}.")
    value = _check_amount(amount)

    ts = now_iso()
    bid = Bid(id=new_id(), bidder=bidder.id, amount=value, message=message, created_at=ts)
    job.bids.append(bid)
    job.updated_at = ts

    change = Change()
    change.notify(
        [job.posted_by], BID_RECEIVED, "New Bid Received",
        f'New bid of {format_amount(value)} received for "{job.title}"',
        related_bid=bid.id,
    )
    change.emit("newBid", {"jobId": job.id, "bidId": bid.id, "amount": value, "trucker": bidder.id})
    return bid, change


def update_bid(job: Job, bid_id: str, bidder: Principal, amount=None,
               message: Optional[str] = None) -> Bid:
    bid = _get_bid(job, bid_id)
    if not permissions.can_withdraw_bid(bidder, bid):
        raise Unauthorized(f"Only the bidder may edit bid {bid.id}.")
    _require_pending(bid)
    _require_open(job, "editing a bid")
    if amount is not None:
        bid.amount = _check_amount(amount)
    if message is not None:
        bid.message = message
    job.updated_at = now_iso()
    return bid


def accept_bid(job: Job, bid_id: str, actor: Principal) -> Change:
    if not permissions.can_accept_bid(actor, job):
        raise Unauthorized(f"Only the poster may accept bids on job {job.id}.")
    bid = _get_bid(job, bid_id)
    _require_pending(bid)
    _require_open(job, "accepting a bid")

    ts = now_iso()
    rejected = lifecycle.reject_pending_bids(job, ts, except_bid=bid.id)
    bid.status = ACCEPTED
    bid.responded_at = ts
    lifecycle.assign(job, bid.bidder, actor, f"Bid {bid.id} accepted", ts)

    change = Change()
    change.notify(
        [bid.bidder], BID_ACCEPTED, "Bid Accepted",
        f'Your bid of {format_amount(bid.amount)} on "{job.title}" was accepted',
        related_bid=bid.id,
    )
    _rejection_notices(change, job, rejected)
    change.emit("bidAccepted", {"jobId": job.id, "bidId": bid.id, "trucker": bid.bidder})
    change.emit("statusUpdated", {"jobId": job.id, "status": job.status, "updatedBy": actor.id})
    return change


def reject_bid(job: Job, bid_id: str, actor: Principal) -> Change:
    if not permissions.can_reject_bid(actor, job):
        raise Unauthorized(f"Only the poster may reject bids on job {job.id}.")
    bid = _get_bid(job, bid_id)
    _require_pending(bid)

    ts = now_iso()
    bid.status = REJECTED
    bid.responded_at = ts
    job.updated_at = ts

    change = Change()
    _rejection_notices(change, job, [bid])
    return change


def withdraw_bid(job: Job, bid_id: str, bidder: Principal) -> Change:
    bid = _get_bid(job, bid_id)
    if not permissions.can_withdraw_bid(bidder, bid):
        raise Unauthorized(f"Only the bidder may withdraw bid {bid.id}.")
    _require_pending(bid)

    ts = now_iso()
    bid.status = WITHDRAWN
    bid.withdrawn_at = ts
    job.updated_at = ts

    change = Change()
    change.notify(
        [job.posted_by], BID_WITHDRAWN, "Bid Withdrawn",
        f'A bid of {format_amount(bid.amount)} on "{job.title}" was withdrawn',
        related_bid=bid.id,
    )
    return change


def claim(job: Job, trucker: Principal) -> Change:
    if not permissions.can_claim_job(trucker, job):
        raise Unauthorized(f"User {trucker.id} may not claim job {job.id}.")
    _require_open(job, "claiming")

    ts = now_iso()
    own = job.active_bid_for(trucker.id)
    if own is not None and own.status != PENDING:
        own = None
    rejected = lifecycle.reject_pending_bids(job, ts, except_bid=own.id if own else None)
    if own is not None:
        own.status = ACCEPTED
        own.responded_at = ts
    lifecycle.assign(job, trucker.id, trucker, "Job claimed by trucker", ts)

    change = Change()
    change.notify(
        [job.posted_by], JOB_CLAIMED, "Job Claimed",
        f'Your job "{job.title}" has been claimed',
    )
    _rejection_notices(change, job, rejected)
    change.emit("statusUpdated", {"jobId": job.id, "status": job.status, "updatedBy": trucker.id})
    return change
