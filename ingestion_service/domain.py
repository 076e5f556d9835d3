"""
Domain types shared by the verifier, reconciler, ledger and ingestion service.

Record states are plain frozen dataclasses so the reconciler can stay free of
I/O; the ledger converts ORM rows to and from them.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Provider(Enum):
    PROVIDER_A = "providerA"  # card-network style
    PROVIDER_B = "providerB"  # account-based style


class PaymentStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class SubscriptionStatus(Enum):
    INCOMPLETE = "INCOMPLETE"
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"


ACTIVE_LIKE = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class IngestOutcome(Enum):
    APPLIED = "APPLIED"
    NO_OP = "NO_OP"
    STALE = "STALE"
    ORPHAN = "ORPHAN"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    IGNORED = "IGNORED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def event_key(provider: Provider, event_id: str) -> str:
    return f"{provider.value}:{event_id}"


@dataclass(frozen=True)
class VerifiedEvent:
    """An event whose signature was checked against the raw request body."""
    provider: Provider
    event_id: str
    event_type: str
    payload: Dict[str, Any]

    @property
    def key(self) -> str:
        return event_key(self.provider, self.event_id)


@dataclass(frozen=True)
class PaymentEvent:
    provider: Provider
    event_id: str
    event_type: str
    external_id: str
    target_status: PaymentStatus
    amount: Optional[int] = None
    currency: Optional[str] = None
    occurred_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return event_key(self.provider, self.event_id)


@dataclass(frozen=True)
class SubscriptionEvent:
    provider: Provider
    event_id: str
    event_type: str
    external_id: str
    target_status: SubscriptionStatus
    owner_ref: Optional[str] = None
    plan: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    creates: bool = False
    occurred_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return event_key(self.provider, self.event_id)


@dataclass(frozen=True)
class PaymentState:
    id: str
    provider: Provider
    external_id: str
    amount: int
    currency: str
    status: PaymentStatus
    created_at: datetime
    version: int
    owner_ref: Optional[str] = None
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionState:
    id: str
    provider: Provider
    external_id: str
    owner_ref: str
    plan: str
    status: SubscriptionStatus
    current_period_end: Optional[datetime]
    created_at: datetime
    version: int
    cancel_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class IngestResult:
    outcome: IngestOutcome
    event_key: Optional[str] = None
    record_id: Optional[str] = None
    effects: list = field(default_factory=list)
