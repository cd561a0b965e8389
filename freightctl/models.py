from dataclasses import dataclass, field, asdict
from typing import List, Optional

# Job States
OPEN = "open"
ASSIGNED = "assigned"
IN_PROGRESS = "in_progress"
DELIVERED = "delivered"
COMPLETED = "completed"
CANCELLED = "cancelled"

JOB_STATES = (OPEN, ASSIGNED, IN_PROGRESS, DELIVERED, COMPLETED, CANCELLED)
TERMINAL_STATES = frozenset({COMPLETED, CANCELLED})
# assigned_to is set exactly while the job is in one of these
ASSIGNED_STATES = frozenset({ASSIGNED, IN_PROGRESS, DELIVERED, COMPLETED})

# Older vocabulary still accepted on input
STATUS_ALIASES = {"available": OPEN, "claimed": ASSIGNED}

# Bid States
PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"
WITHDRAWN = "withdrawn"

BID_STATES = (PENDING, ACCEPTED, REJECTED, WITHDRAWN)

# Roles
TRUCKER = "trucker"
DISPATCHER = "dispatcher"
SHIPPER = "shipper"
SERVICE_PROVIDER = "service_provider"
ADMIN = "admin"

ROLES = (TRUCKER, DISPATCHER, SHIPPER, SERVICE_PROVIDER, ADMIN)
POSTER_ROLES = frozenset({DISPATCHER, SHIPPER})

# Payment status, independent of job status
PAYMENT_STATES = ("pending", "paid", "refunded")

# Notification types
JOB_POSTED = "job_posted"
JOB_CLAIMED = "job_claimed"
JOB_ASSIGNED = "job_assigned"
JOB_STATUS_UPDATE = "job_status_update"
JOB_COMPLETED = "job_completed"
JOB_CANCELLED = "job_cancelled"
BID_RECEIVED = "bid_received"
BID_ACCEPTED = "bid_accepted"
BID_REJECTED = "bid_rejected"
BID_WITHDRAWN = "bid_withdrawn"
SYSTEM = "system"

NOTIFICATION_TYPES = (
    JOB_POSTED, JOB_CLAIMED, JOB_ASSIGNED, JOB_STATUS_UPDATE, JOB_COMPLETED,
    JOB_CANCELLED, BID_RECEIVED, BID_ACCEPTED, BID_REJECTED, BID_WITHDRAWN, SYSTEM,
)


@dataclass(frozen=True)
class Principal:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN


@dataclass
class Location:
    location: str
    date: str
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


@dataclass
class Cargo:
    type: str
    weight: Optional[float] = None
    volume: Optional[float] = None
    quantity: Optional[int] = None
    special_requirements: List[str] = field(default_factory=list)


@dataclass
class Payment:
    amount: float
    currency: str = "USD"
    payment_status: str = "pending"


@dataclass
class Bid:
    id: str
    bidder: str
    amount: float
    message: Optional[str] = None
    status: str = PENDING
    created_at: str = ""
    responded_at: Optional[str] = None
    withdrawn_at: Optional[str] = None


@dataclass
class StatusEntry:
    status: str
    timestamp: str
    actor: str
    notes: Optional[str] = None


@dataclass
class Job:
    id: str
    title: str
    description: str
    posted_by: str
    posted_by_role: str
    pickup: Location
    delivery: Location
    cargo: Cargo
    payment: Payment
    assigned_to: Optional[str] = None
    status: str = OPEN
    distance: Optional[float] = None
    estimated_duration: Optional[float] = None
    bids: List[Bid] = field(default_factory=list)
    status_history: List[StatusEntry] = field(default_factory=list)
    version: int = 1
    created_at: str = ""
    updated_at: str = ""
    completed_at: Optional[str] = None

    def find_bid(self, bid_id: str) -> Optional[Bid]:
        for b in self.bids:
            if b.id == bid_id:
                return b
        return None

    def active_bid_for(self, bidder: str) -> Optional[Bid]:
        for b in self.bids:
            if b.bidder == bidder and b.status != WITHDRAWN:
                return b
        return None

    def pending_bids(self) -> List[Bid]:
        return [b for b in self.bids if b.status == PENDING]

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "Job":
        d = dict(d)
        d["pickup"] = Location(**d["pickup"])
        d["delivery"] = Location(**d["delivery"])
        d["cargo"] = Cargo(**d["cargo"])
        d["payment"] = Payment(**d["payment"])
        d["bids"] = [Bid(**b) for b in d.get("bids", [])]
        d["status_history"] = [StatusEntry(**e) for e in d.get("status_history", [])]
        return cls(**d)


@dataclass
class Notification:
    id: str
    recipient: str
    type: str
    title: str
    message: str
    sender: Optional[str] = None
    related_job: Optional[str] = None
    related_bid: Optional[str] = None
    link: Optional[str] = None
    is_read: bool = False
    read_at: Optional[str] = None
    created_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)
