import threading

from conftest import make_fields
from freightctl.repository import set_config
from freightctl.db import connect_db
from freightctl.watcher import watch_loop


def _fast_polls(db_path):
    conn = connect_db(db_path)
    try:
        set_config(conn, "poll_interval_seconds", "0")
    finally:
        conn.close()


def test_replays_history(service, db_path, shipper, trucker_a):
    _fast_polls(db_path)
    job = service.create_job(shipper, make_fields())
    service.place_bid(job.id, trucker_a, 2600)

    lines = []
    shown = watch_loop(shipper.id, out=lines.append, db_path=db_path, since_start=True, max_polls=1)
    assert shown == 1
    assert "bid_received" in lines[0]
    assert job.id in lines[0]


def test_only_new_rows_by_default(service, db_path, shipper, trucker_a):
    _fast_polls(db_path)
    job = service.create_job(shipper, make_fields())
    service.place_bid(job.id, trucker_a, 2600)

    lines = []
    assert watch_loop(shipper.id, out=lines.append, db_path=db_path, max_polls=1) == 0
    assert lines == []


def test_stop_event(db_path, service):
    stop = threading.Event()
    stop.set()
    assert watch_loop("anyone", out=print, db_path=db_path, stop=stop) == 0
