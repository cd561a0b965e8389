"""
CLI smoke test for freightctl
-----------------------------
Walks the whole flow through the command line:
1. Posting a job and listing it
2. Bidding, accepting, and rival rejection
3. Status updates and authorization failures
4. Notifications and configuration
"""

import json

import pytest
from click.testing import CliRunner

from freightctl.cli import cli


@pytest.fixture
def run(db_path):
    runner = CliRunner()

    def _run(user, role, *args, ok=True):
        argv = ["--db", db_path]
        if user:
            argv += ["--as", user, "--role", role]
        result = runner.invoke(cli, argv + list(args))
        if ok:
            assert result.exit_code == 0, result.output
        return result

    return _run


def _post(run):
    run(
        "ship-1", "shipper", "job", "post",
        "--title", "Pallets to Denver", "--description", "12 pallets",
        "--pickup", "Chicago, IL", "--pickup-date", "2025-11-09",
        "--delivery", "Denver, CO", "--delivery-date", "2025-11-11",
        "--cargo-type", "dry_van", "--amount", "2800", "--special", "liftgate",
    )
    jobs = json.loads(run("ship-1", "shipper", "job", "list", "--json").output)
    assert len(jobs) == 1
    return jobs[0]


def test_basic_flow(run):
    job = _post(run)
    assert job["status"] == "open"
    assert job["cargo"]["special_requirements"] == ["liftgate"]

    run("truck-a", "trucker", "bid", "place", job["id"], "2600", "--message", "today")
    run("truck-b", "trucker", "bid", "place", job["id"], "2750")

    dup = run("truck-a", "trucker", "bid", "place", job["id"], "2500", ok=False)
    assert dup.exit_code == 1
    assert "duplicate_bid" in dup.output

    shown = json.loads(run("ship-1", "shipper", "job", "show", job["id"], "--json").output)
    bid_a = [b for b in shown["bids"] if b["bidder"] == "truck-a"][0]

    out = run("ship-1", "shipper", "bid", "accept", job["id"], bid_a["id"]).output
    assert "assigned to truck-a" in out

    shown = json.loads(run("ship-1", "shipper", "job", "show", job["id"], "--json").output)
    assert shown["status"] == "assigned"
    assert {b["bidder"]: b["status"] for b in shown["bids"]} == {
        "truck-a": "accepted", "truck-b": "rejected",
    }

    run("truck-a", "trucker", "job", "status", job["id"], "in_progress", "--notes", "loaded")
    denied = run("truck-b", "trucker", "job", "status", job["id"], "completed", ok=False)
    assert denied.exit_code == 1
    assert "unauthorized" in denied.output

    run("ship-1", "shipper", "job", "status", job["id"], "completed")
    history = run("ship-1", "shipper", "job", "history", job["id"]).output
    assert "in_progress" in history and "loaded" in history

    inbox = run("truck-b", "trucker", "notifications", "list").output
    assert "bid_rejected" in inbox
    assert run("ship-1", "shipper", "notifications", "count").output.strip() != "0"
    run("ship-1", "shipper", "notifications", "read-all")
    assert run("ship-1", "shipper", "notifications", "count").output.strip() == "0"

    stats = json.loads(run("root", "admin", "stats").output)
    assert stats["jobs"]["completed"] == 1
    assert stats["bids"]["accepted"] == 1


def test_claim_and_invalid_transition(run):
    job = _post(run)
    bad = run("ship-1", "shipper", "job", "status", job["id"], "completed", ok=False)
    assert "invalid_transition" in bad.output

    run("truck-a", "trucker", "job", "claim", job["id"])
    again = run("truck-b", "trucker", "job", "claim", job["id"], ok=False)
    assert "job_not_open" in again.output

    mine = json.loads(run("truck-a", "trucker", "job", "list", "--json").output)
    assert [j["assigned_to"] for j in mine] == ["truck-a"]


def test_missing_identity(run, monkeypatch):
    monkeypatch.delenv("FREIGHTCTL_USER", raising=False)
    monkeypatch.delenv("FREIGHTCTL_ROLE", raising=False)
    result = run(None, None, "job", "list", ok=False)
    assert result.exit_code == 1
    assert "unauthorized" in result.output


def test_config(run):
    cfg = json.loads(run(None, None, "config", "get").output)
    assert cfg["default_currency"] == "USD"
    run(None, None, "config", "set", "push_enabled", "0")
    assert json.loads(run(None, None, "config", "get").output)["push_enabled"] == "0"
    bad = run(None, None, "config", "set", "backoff_base", "3", ok=False)
    assert bad.exit_code == 1
