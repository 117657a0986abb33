"""
Data models for storage layer.

Defines the gateway's durable records and their status enums.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, FrozenSet, Optional


class IntegrationStatus(Enum):
    """Operational status of a provider integration."""
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    DISABLED = "Disabled"


class OfficerStatus(Enum):
    ACTIVE = "Active"
    SUSPENDED = "Suspended"


class LedgerAction(Enum):
    """Kinds of credit-affecting transactions."""
    TOP_UP = "Top-up"
    RENEWAL = "Renewal"
    DEDUCTION = "Deduction"
    REFUND = "Refund"


class QueryStatus(Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"


class ReservationState(Enum):
    """Lifecycle of a credit reservation.

    HELD is the only non-terminal state; every reservation leaves it
    exactly once.
    """
    HELD = "Held"
    COMMITTED = "Committed"
    RELEASED = "Released"
    EXPIRED = "Expired"


REDACTED = "********"


@dataclass(frozen=True)
class ProviderIntegration:
    """A registered external provider integration and its credential.

    Read-only to the gateway apart from the usage counters.
    """
    id: str
    name: str
    provider_tag: str
    status: IntegrationStatus
    credit_cost: Decimal
    credential: str
    usage_count: int = 0
    last_used: Optional[datetime] = None

    def redacted(self) -> "ProviderIntegration":
        """Copy safe for display paths, with the secret material masked."""
        return replace(self, credential=REDACTED if self.credential else "")


@dataclass(frozen=True)
class RatePlan:
    id: str
    name: str
    allowed_operation_tags: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Officer:
    """Snapshot of an officer row.

    credits_remaining is a projection maintained by the ledger and must
    never be written directly.
    """
    id: str
    name: str
    status: OfficerStatus
    plan_id: Optional[str]
    credits_remaining: Decimal
    total_credits: Decimal
    total_queries: int = 0
    last_active: Optional[datetime] = None


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable credit transaction.

    Append-only: corrections are made with further compensating entries,
    never by editing or deleting an existing one.
    """
    id: int
    officer_id: str
    action: LedgerAction
    credits_delta: Decimal
    created_at: datetime
    related_query_id: Optional[str] = None
    remarks: Optional[str] = None


@dataclass(frozen=True)
class Reservation:
    """Durable form of a reservation token."""
    token: str
    officer_id: str
    amount: Decimal
    state: ReservationState
    created_at: datetime
    query_id: Optional[str] = None
    settled_at: Optional[datetime] = None


@dataclass(frozen=True)
class QueryRecord:
    """Audit record of one invocation attempt."""
    id: str
    officer_id: str
    operation_tag: str
    input_summary: str
    status: QueryStatus
    created_at: datetime
    provider_tag: Optional[str] = None
    result_summary: Optional[str] = None
    full_result: Optional[Any] = None
    credits_charged: Decimal = Decimal("0")
    error_kind: Optional[str] = None
    attempt: int = 1
    completed_at: Optional[datetime] = None
