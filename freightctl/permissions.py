"""
Capability checks. Each predicate looks only at the actor and the job
(and bid), never at the store, so every operation can ask its question
up front.
"""
from .models import Job, Bid, Principal, ADMIN, TRUCKER, POSTER_ROLES


def is_poster(actor: Principal, job: Job) -> bool:
    return actor.id == job.posted_by


def is_assignee(actor: Principal, job: Job) -> bool:
    return job.assigned_to is not None and actor.id == job.assigned_to


def can_post_job(actor: Principal) -> bool:
    return actor.role in POSTER_ROLES or actor.role == ADMIN


def can_edit_job(actor: Principal, job: Job) -> bool:
    return is_poster(actor, job) or actor.role == ADMIN


def can_transition_job(actor: Principal, job: Job) -> bool:
    return is_assignee(actor, job) or is_poster(actor, job) or actor.role == ADMIN


def can_bid(actor: Principal, job: Job) -> bool:
    if is_poster(actor, job):
        return False
    return actor.role in (TRUCKER, ADMIN)


def can_claim_job(actor: Principal, job: Job) -> bool:
    return can_bid(actor, job)


def can_accept_bid(actor: Principal, job: Job) -> bool:
    return is_poster(actor, job) or actor.role == ADMIN


def can_reject_bid(actor: Principal, job: Job) -> bool:
    return can_accept_bid(actor, job)


def can_withdraw_bid(actor: Principal, bid: Bid) -> bool:
    return actor.id == bid.bidder
