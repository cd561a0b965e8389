"""
Notification / broadcast dispatch.

Every mutation is delivered in two phases:

1. `Dispatcher.persist` writes one notification row per recipient inside
   the caller's transaction, so the rows commit or roll back together with
   the job they describe.
2. `Dispatcher.push` runs after commit and forwards the rows and the job
   events to whoever is subscribed in the `ConnectionRegistry`. Failures
   here are logged and dropped; the notification table stays the record
   of what happened.
"""
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from .models import Notification
from .repository import insert_notification, get_config
from .utils import new_id, now_iso

logger = logging.getLogger(__name__)

PUBLIC_CHANNEL = "jobs"

Subscriber = Callable[[str, dict], None]


@dataclass
class Notice:
    """A notification to persist for a set of users."""
    recipients: List[str]
    type: str
    title: str
    message: str
    related_bid: Optional[str] = None


@dataclass
class JobEvent:
    """A live event for the job's shared channel (or the public channel)."""
    name: str
    payload: dict
    public: bool = False


@dataclass
class Change:
    """What a state change wants the dispatcher to deliver."""
    notices: List[Notice] = field(default_factory=list)
    events: List[JobEvent] = field(default_factory=list)

    def notify(self, recipients: Iterable[str], type_: str, title: str, message: str,
               related_bid: Optional[str] = None):
        self.notices.append(Notice(list(recipients), type_, title, message, related_bid))

    def emit(self, name: str, payload: dict, public: bool = False):
        self.events.append(JobEvent(name, payload, public))

    def extend(self, other: "Change"):
        self.notices.extend(other.notices)
        self.events.extend(other.events)


def user_channel(user_id: str) -> str:
    return str(user_id)


def job_channel(job_id: str) -> str:
    return f"job_{job_id}"


class ConnectionRegistry:
    """Who listens on which channel, for this process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subs: Dict[str, List[Subscriber]] = defaultdict(list)

    def subscribe(self, channel: str, callback: Subscriber):
        with self._lock:
            self._subs[channel].append(callback)

    def unsubscribe(self, channel: str, callback: Subscriber):
        with self._lock:
            subs = self._subs.get(channel)
            if not subs:
                return
            try:
                subs.remove(callback)
            except ValueError:
                return
            if not subs:
                del self._subs[channel]

    def subscribers(self, channel: str) -> List[Subscriber]:
        with self._lock:
            return list(self._subs.get(channel, ()))

    def channels(self) -> List[str]:
        with self._lock:
            return sorted(self._subs)


class Dispatcher:
    def __init__(self, registry: Optional[ConnectionRegistry] = None):
        self.registry = registry if registry is not None else ConnectionRegistry()

    # ---------- phase 1 ----------
    def persist(
        self,
        conn,
        recipients: Iterable[str],
        type_: str,
        title: str,
        message: str,
        *,
        sender: Optional[str] = None,
        related_job: Optional[str] = None,
        related_bid: Optional[str] = None,
    ) -> List[Notification]:
        """Insert one row per distinct recipient. Runs inside the caller's transaction."""
        out = []
        seen = set()
        ts = now_iso()
        for r in recipients:
            if not r or r in seen:
                continue
            seen.add(r)
            n = Notification(
                id=new_id(),
                recipient=r,
                type=type_,
                title=title,
                message=message,
                sender=sender,
                related_job=related_job,
                related_bid=related_bid,
                link=f"/jobs/{related_job}" if related_job else None,
                created_at=ts,
            )
            insert_notification(conn, n)
            out.append(n)
        return out

    def persist_change(self, conn, change: Change, *, sender: Optional[str],
                       job_id: Optional[str]) -> List[Notification]:
        rows = []
        for notice in change.notices:
            rows.extend(self.persist(
                conn, notice.recipients, notice.type, notice.title, notice.message,
                sender=sender, related_job=job_id, related_bid=notice.related_bid,
            ))
        return rows

    # ---------- phase 2 ----------
    def push(self, notifications: Iterable[Notification], job_id: Optional[str] = None,
             events: Iterable[JobEvent] = (), conn=None) -> int:
        """
        Best-effort live delivery. Returns how many subscriber calls succeeded.
        Never raises.
        """
        if conn is not None and not self._push_enabled(conn):
            logger.debug("live push disabled by config")
            return 0

        delivered = 0
        for n in notifications:
            delivered += self._send(user_channel(n.recipient), "newNotification", n.to_dict())
        for ev in events:
            if ev.public:
                delivered += self._send(PUBLIC_CHANNEL, ev.name, ev.payload)
            elif job_id is not None:
                delivered += self._send(job_channel(job_id), ev.name, ev.payload)
        return delivered

    def _send(self, channel: str, event: str, payload: dict) -> int:
        ok = 0
        for cb in self.registry.subscribers(channel):
            try:
                cb(event, payload)
                ok += 1
            except Exception:
                logger.warning("push of %s to channel %s failed", event, channel, exc_info=True)
        return ok

    @staticmethod
    def _push_enabled(conn) -> bool:
        try:
            return get_config(conn).get("push_enabled", "1") not in ("0", "false", "no")
        except Exception:
            logger.warning("could not read push_enabled; pushing anyway", exc_info=True)
            return True
