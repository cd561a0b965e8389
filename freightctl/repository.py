import json
import sqlite3
from typing import Dict, Iterable, List, Optional, Tuple

from .config import ALLOWED_CONFIG_KEYS
from .errors import ConcurrencyConflict, NotFound
from .models import (
    Bid, Job, Notification, Principal,
    OPEN, JOB_STATES, BID_STATES, ADMIN, TRUCKER, POSTER_ROLES,
)


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


# ---------- Jobs: insert / load / save / delete ----------
# None of these commit; the service wraps each operation in one `with conn:`.
def _row_to_job(row: sqlite3.Row) -> Job:
    return Job.from_dict(json.loads(row["doc"]))


def insert_job(conn, job: Job):
    conn.execute(
        """INSERT INTO jobs
           (id, posted_by, assigned_to, status, cargo_type, amount, pickup_date,
            version, doc, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            job.id, job.posted_by, job.assigned_to, job.status, job.cargo.type,
            job.payment.amount, job.pickup.date, job.version,
            json.dumps(job.to_dict()), job.created_at, job.updated_at,
        ),
    )


def find_job(conn, job_id: str) -> Optional[Job]:
    row = conn.execute("SELECT doc FROM jobs WHERE id=?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def load_job(conn, job_id: str) -> Job:
    job = find_job(conn, job_id)
    if job is None:
        raise NotFound(f"Job {job_id} not found.")
    return job


def save_job(conn, job: Job, expect_status: Optional[str] = None):
    """
    Compare-and-swap on `version`: the row is written only if nobody else
    wrote it since `job` was loaded. With `expect_status`, the stored status
    must also still be that value.
    """
    expected = job.version
    job.version = expected + 1
    sql = """UPDATE jobs
             SET assigned_to=?, status=?, cargo_type=?, amount=?, pickup_date=?,
                 version=?, doc=?, updated_at=?
             WHERE id=? AND version=?"""
    params = [
        job.assigned_to, job.status, job.cargo.type, job.payment.amount, job.pickup.date,
        job.version, json.dumps(job.to_dict()), job.updated_at, job.id, expected,
    ]
    if expect_status is not None:
        sql += " AND status=?"
        params.append(expect_status)
    updated = conn.execute(sql, params)
    if updated.rowcount != 1:
        job.version = expected
        raise ConcurrencyConflict(f"Job {job.id} was modified concurrently.")


def claim_open_job(conn, job: Job):
    """Write a freshly assigned job only if the stored row is still open."""
    save_job(conn, job, expect_status=OPEN)


def delete_job(conn, job_id: str) -> bool:
    res = conn.execute("DELETE FROM jobs WHERE id=?", (job_id,))
    return res.rowcount == 1


# ---------- Queries ----------
def list_jobs(
    conn,
    requester: Principal,
    *,
    status: Optional[str] = None,
    cargo_type: Optional[str] = None,
    min_amount: Optional[float] = None,
    max_amount: Optional[float] = None,
    pickup_from: Optional[str] = None,
    pickup_to: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Job]:
    where = []
    params: list = []

    # Role scope
    if requester.role == TRUCKER:
        where.append("(status=? OR assigned_to=?)")
        params += [OPEN, requester.id]
    elif requester.role in POSTER_ROLES:
        where.append("posted_by=?")
        params.append(requester.id)
    elif requester.role != ADMIN:
        where.append("status=?")
        params.append(OPEN)

    if status:
        if status not in JOB_STATES:
            raise ValueError(f"Unknown status filter: {status}")
        where.append("status=?")
        params.append(status)
    if cargo_type:
        where.append("cargo_type=?")
        params.append(cargo_type)
    if min_amount is not None:
        where.append("amount >= ?")
        params.append(float(min_amount))
    if max_amount is not None:
        where.append("amount <= ?")
        params.append(float(max_amount))
    if pickup_from:
        where.append("pickup_date >= ?")
        params.append(pickup_from)
    if pickup_to:
        where.append("pickup_date <= ?")
        params.append(pickup_to)

    sql = "SELECT doc FROM jobs"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY created_at DESC, id LIMIT ? OFFSET ?"
    params += [int(limit), int(offset)]
    return [_row_to_job(r) for r in conn.execute(sql, params).fetchall()]


def list_bids_by_bidder(conn, bidder: str, status: Optional[str] = None) -> List[Tuple[Job, Bid]]:
    rows = conn.execute(
        """SELECT j.doc FROM jobs j
           WHERE EXISTS (
               SELECT 1 FROM json_each(j.doc, '$.bids') b
               WHERE json_extract(b.value, '$.bidder') = ?
           )
           ORDER BY j.created_at DESC""",
        (bidder,),
    ).fetchall()
    out = []
    for r in rows:
        job = _row_to_job(r)
        for b in job.bids:
            if b.bidder == bidder and (status is None or b.status == status):
                out.append((job, b))
    return out


def job_stats(conn, user_id: Optional[str] = None) -> Dict[str, object]:
    sql = "SELECT status, COUNT(1) AS c, AVG(amount) AS avg_amount FROM jobs"
    params: list = []
    if user_id:
        sql += " WHERE posted_by=? OR assigned_to=?"
        params = [user_id, user_id]
    sql += " GROUP BY status"

    out: Dict[str, object] = {s: 0 for s in JOB_STATES}
    total = 0
    weighted = 0.0
    for r in conn.execute(sql, params).fetchall():
        out[r["status"]] = r["c"]
        total += r["c"]
        weighted += (r["avg_amount"] or 0) * r["c"]
    out["total"] = total
    out["avg_amount"] = round(weighted / total, 2) if total else None
    return out


def bid_stats(conn, user_id: Optional[str] = None, as_role: Optional[str] = None) -> Dict[str, object]:
    """Bid counts across jobs. as_role='trucker' counts bids placed, 'poster' bids received."""
    sql = """SELECT json_extract(b.value, '$.status') AS status,
                    COUNT(1) AS c,
                    AVG(json_extract(b.value, '$.amount')) AS avg_amount
             FROM jobs j, json_each(j.doc, '$.bids') b"""
    params: list = []
    if user_id and as_role == "trucker":
        sql += " WHERE json_extract(b.value, '$.bidder') = ?"
        params.append(user_id)
    elif user_id and as_role == "poster":
        sql += " WHERE j.posted_by = ?"
        params.append(user_id)
    sql += " GROUP BY status"

    out: Dict[str, object] = {s: 0 for s in BID_STATES}
    total = 0
    weighted = 0.0
    for r in conn.execute(sql, params).fetchall():
        out[r["status"]] = r["c"]
        total += r["c"]
        weighted += (r["avg_amount"] or 0) * r["c"]
    out["total"] = total
    out["avg_amount"] = round(weighted / total, 2) if total else None
    return out


# ---------- Notifications ----------
def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        recipient=row["recipient"],
        sender=row["sender"],
        type=row["type"],
        title=row["title"],
        message=row["message"],
        related_job=row["related_job"],
        related_bid=row["related_bid"],
        link=row["link"],
        is_read=bool(row["is_read"]),
        read_at=row["read_at"],
        created_at=row["created_at"],
    )


def insert_notification(conn, n: Notification):
    conn.execute(
        """INSERT INTO notifications
           (id, recipient, sender, type, title, message, related_job, related_bid,
            link, is_read, read_at, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            n.id, n.recipient, n.sender, n.type, n.title, n.message, n.related_job,
            n.related_bid, n.link, int(n.is_read), n.read_at, n.created_at,
        ),
    )


def list_notifications(
    conn,
    recipient: str,
    *,
    unread_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> List[Notification]:
    sql = "SELECT * FROM notifications WHERE recipient=?"
    params: list = [recipient]
    if unread_only:
        sql += " AND is_read=0"
    sql += " ORDER BY seq DESC LIMIT ? OFFSET ?"
    params += [int(limit), int(offset)]
    return [_row_to_notification(r) for r in conn.execute(sql, params).fetchall()]


def notifications_after(conn, recipient: str, after_seq: int) -> Iterable[sqlite3.Row]:
    """Rows newer than `after_seq`, oldest first. Used by the watcher to tail."""
    return conn.execute(
        "SELECT * FROM notifications WHERE recipient=? AND seq > ? ORDER BY seq ASC",
        (recipient, after_seq),
    ).fetchall()


def last_notification_seq(conn, recipient: str) -> int:
    row = conn.execute(
        "SELECT COALESCE(MAX(seq), 0) AS s FROM notifications WHERE recipient=?",
        (recipient,),
    ).fetchone()
    return row["s"]


def mark_read(conn, notification_id: str, recipient: str, ts: str) -> bool:
    res = conn.execute(
        "UPDATE notifications SET is_read=1, read_at=? WHERE id=? AND recipient=?",
        (ts, notification_id, recipient),
    )
    return res.rowcount == 1


def mark_all_read(conn, recipient: str, ts: str) -> int:
    res = conn.execute(
        "UPDATE notifications SET is_read=1, read_at=? WHERE recipient=? AND is_read=0",
        (ts, recipient),
    )
    return res.rowcount


def unread_count(conn, recipient: str) -> int:
    return conn.execute(
        "SELECT COUNT(1) AS c FROM notifications WHERE recipient=? AND is_read=0",
        (recipient,),
    ).fetchone()["c"]


def delete_notification(conn, notification_id: str, recipient: str) -> bool:
    res = conn.execute(
        "DELETE FROM notifications WHERE id=? AND recipient=?",
        (notification_id, recipient),
    )
    return res.rowcount == 1
