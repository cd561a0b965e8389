"""Job lifecycle state machine, tested on in-memory jobs."""

import pytest

from freightctl import lifecycle
from freightctl.errors import InvalidTransition, Unauthorized, ValidationError
from freightctl.models import (
    Bid, Cargo, Job, Location, Payment, Principal, StatusEntry,
    OPEN, ASSIGNED, IN_PROGRESS, DELIVERED, COMPLETED, CANCELLED, JOB_STATES,
    PENDING, REJECTED,
)

POSTER = Principal("poster", "shipper")
TRUCKER = Principal("driver", "trucker")
ADMIN = Principal("root", "admin")
OTHER = Principal("nobody", "trucker")


def _make_job(status=OPEN, assigned_to=None) -> Job:
    return Job(
        id="J-1",
        title="Steel coils",
        description="Flatbed run",
        posted_by=POSTER.id,
        posted_by_role="shipper",
        pickup=Location(location="Gary, IN", date="2025-11-09"),
        delivery=Location(location="Detroit, MI", date="2025-11-10"),
        cargo=Cargo(type="flatbed"),
        payment=Payment(amount=1500),
        status=status,
        assigned_to=assigned_to,
        status_history=[StatusEntry(status=OPEN, timestamp="t0", actor=POSTER.id)],
    )


class TestGraph:
    def test_happy_path_edges(self):
        assert lifecycle.valid_transitions(OPEN) == {ASSIGNED, CANCELLED}
        assert lifecycle.valid_transitions(ASSIGNED) == {IN_PROGRESS, CANCELLED}
        assert lifecycle.valid_transitions(IN_PROGRESS) == {DELIVERED, COMPLETED, CANCELLED}
        assert lifecycle.valid_transitions(DELIVERED) == {COMPLETED}

    def test_terminal_states_have_no_exits(self):
        for state in (COMPLETED, CANCELLED):
            assert lifecycle.is_terminal(state)
            assert lifecycle.valid_transitions(state) == set()

    def test_every_state_is_in_graph(self):
        assert set(lifecycle.TRANSITIONS) == set(JOB_STATES)

    def test_aliases_normalize(self):
        assert lifecycle.normalize_status("claimed") == ASSIGNED
        assert lifecycle.normalize_status("available") == OPEN
        assert lifecycle.normalize_status(" In_Progress ") == IN_PROGRESS

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            lifecycle.normalize_status("teleported")


class TestTransition:
    def test_assignee_starts_job(self):
        job = _make_job(ASSIGNED, assigned_to=TRUCKER.id)
        change = lifecycle.transition(job, IN_PROGRESS, TRUCKER, "rolling")
        assert job.status == IN_PROGRESS
        last = job.status_history[-1]
        assert (last.status, last.actor, last.notes) == (IN_PROGRESS, TRUCKER.id, "rolling")
        assert set(change.notices[0].recipients) == {POSTER.id, TRUCKER.id}
        assert change.events[0].name == "statusUpdated"

    def test_completion_stamps_timestamp(self):
        job = _make_job(IN_PROGRESS, assigned_to=TRUCKER.id)
        lifecycle.transition(job, COMPLETED, POSTER)
        assert job.status == COMPLETED
        assert job.completed_at == job.status_history[-1].timestamp
        assert job.assigned_to == TRUCKER.id

    def test_delivered_then_completed(self):
        job = _make_job(IN_PROGRESS, assigned_to=TRUCKER.id)
        lifecycle.transition(job, DELIVERED, TRUCKER)
        lifecycle.transition(job, COMPLETED, POSTER)
        assert [e.status for e in job.status_history] == [OPEN, DELIVERED, COMPLETED]

    def test_unrelated_user_is_unauthorized(self):
        job = _make_job(IN_PROGRESS, assigned_to=TRUCKER.id)
        with pytest.raises(Unauthorized):
            lifecycle.transition(job, COMPLETED, OTHER)
        assert job.status == IN_PROGRESS
        assert len(job.status_history) == 1

    def test_admin_may_transition(self):
        job = _make_job(ASSIGNED, assigned_to=TRUCKER.id)
        lifecycle.transition(job, IN_PROGRESS, ADMIN)
        assert job.status == IN_PROGRESS

    def test_cannot_complete_open_job(self):
        job = _make_job(OPEN)
        with pytest.raises(InvalidTransition):
            lifecycle.transition(job, COMPLETED, POSTER)
        assert job.status == OPEN

    def test_status_update_cannot_assign(self):
        job = _make_job(OPEN)
        with pytest.raises(InvalidTransition):
            lifecycle.transition(job, "claimed", POSTER)

    def test_unknown_target_is_malformed_input(self):
        job = _make_job(ASSIGNED, assigned_to=TRUCKER.id)
        with pytest.raises(ValidationError):
            lifecycle.transition(job, "lost", POSTER)
        assert job.status == ASSIGNED

    def test_nothing_leaves_completed(self):
        job = _make_job(COMPLETED, assigned_to=TRUCKER.id)
        with pytest.raises(InvalidTransition):
            lifecycle.transition(job, CANCELLED, POSTER)

    def test_cancel_clears_assignee_and_rejects_pending(self):
        job = _make_job(OPEN)
        job.bids.append(Bid(id="b1", bidder="t1", amount=900, status=PENDING))
        change = lifecycle.transition(job, CANCELLED, POSTER, "customer cancelled")
        assert job.status == CANCELLED
        assert job.assigned_to is None
        assert job.bids[0].status == REJECTED
        assert job.bids[0].responded_at is not None
        types = [n.type for n in change.notices]
        assert "bid_rejected" in types and "job_cancelled" in types

    def test_cancel_assigned_job(self):
        job = _make_job(ASSIGNED, assigned_to=TRUCKER.id)
        change = lifecycle.transition(job, CANCELLED, POSTER)
        assert job.assigned_to is None
        # the former assignee still hears about it
        assert TRUCKER.id in change.notices[-1].recipients


class TestAssign:
    def test_assign_requires_assignee(self):
        job = _make_job(OPEN)
        with pytest.raises(ValidationError):
            lifecycle.assign(job, "", POSTER, None, "t1")

    def test_assign_only_from_open(self):
        job = _make_job(IN_PROGRESS, assigned_to=TRUCKER.id)
        with pytest.raises(InvalidTransition):
            lifecycle.assign(job, "t2", POSTER, None, "t1")
        assert job.assigned_to == TRUCKER.id
