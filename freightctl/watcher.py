import logging
import signal
import threading
import time
from typing import Callable, Optional

from .db import connect_db
from .repository import get_config, last_notification_seq, notifications_after

logger = logging.getLogger(__name__)

_stop = threading.Event()


def setup_signal_handlers():
    def _handler(signum, frame):
        print(f"\n[watch] Received signal {signum}. Stopping")
        _stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not the main thread
            pass


def format_row(row) -> str:
    job = f" job={row['related_job']}" if row["related_job"] else ""
    return f"[{row['created_at']}] {row['type']:<18} {row['title']}: {row['message']}{job}"


def watch_loop(
    user_id: str,
    out: Callable[[str], None] = print,
    db_path: Optional[str] = None,
    since_start: bool = False,
    stop: Optional[threading.Event] = None,
    max_polls: Optional[int] = None,
) -> int:
    """
    Tail the persisted notifications of `user_id` and hand each new one to `out`.
    Returns how many were shown. Stops on `stop`, a signal, or after `max_polls`.
    """
    stop = stop or _stop
    conn = connect_db(db_path)
    shown = 0
    try:
        try:
            interval = float(get_config(conn).get("poll_interval_seconds", "0.5"))
        except ValueError:
            logger.warning("bad poll_interval_seconds; using 0.5")
            interval = 0.5

        cursor = 0 if since_start else last_notification_seq(conn, user_id)
        polls = 0
        while not stop.is_set():
            for row in notifications_after(conn, user_id, cursor):
                out(format_row(row))
                cursor = row["seq"]
                shown += 1
            polls += 1
            if max_polls is not None and polls >= max_polls:
                break
            stop.wait(interval)
    finally:
        conn.close()
    return shown


def start_watch(user_id: str, out: Callable[[str], None] = print, db_path: Optional[str] = None,
                since_start: bool = False):
    setup_signal_handlers()
    _stop.clear()
    t = threading.Thread(
        target=watch_loop, args=(user_id, out, db_path, since_start), daemon=True
    )
    t.start()
    try:
        while t.is_alive():
            time.sleep(0.5)
    finally:
        _stop.set()
        t.join()
