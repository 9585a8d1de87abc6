"""Canonical payment model shared by adapters, ledger and engines.

Provider adapters translate provider-native payloads into these types;
nothing downstream of an adapter looks at a raw provider payload again.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Union
from uuid import UUID

from loan_engine.models.base import utcnow


class Provider(str, Enum):
    """Money-movement providers."""

    MPESA = "MPESA"
    AIRTEL = "AIRTEL"
    BANK = "BANK"


class Channel(str, Enum):
    """How confirmation reaches us."""

    PUSH = "PUSH"  # Provider calls back
    PULL = "PULL"  # Callback not guaranteed; we poll
    MANUAL = "MANUAL"  # A reviewer decides


# Each provider reaches us through exactly one channel
PROVIDER_CHANNELS = {
    Provider.MPESA: Channel.PUSH,
    Provider.AIRTEL: Channel.PULL,
    Provider.BANK: Channel.MANUAL,
}


class IntentState(str, Enum):
    """Payment intent lifecycle."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not IntentState.PENDING


class EventStatus(str, Enum):
    """Outcome reported by a provider event."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


class EventSource(str, Enum):
    """Where a provider event came from."""

    CALLBACK = "callback"
    POLL = "poll"
    MANUAL = "manual"
    C2B = "c2b"
    SWEEP = "sweep"
    OPERATOR = "operator"
    SUBMISSION = "submission"


class ProviderStatus(str, Enum):
    """Provider's synchronous answer to a submission."""

    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


# Prefixes make internal references recognisable in provider portals
REFERENCE_PREFIXES = {
    Provider.MPESA: "MPE",
    Provider.AIRTEL: "AIR",
    Provider.BANK: "BNK",
}


def generate_internal_reference(provider: Provider) -> str:
    """Collision-resistant reference assigned before any provider call."""
    return f"{REFERENCE_PREFIXES[provider]}{secrets.token_hex(10).upper()}"


# =============================================================================
# Typed provider metadata
# =============================================================================


@dataclass(frozen=True)
class StkPushMetadata:
    """M-Pesa STK push acknowledgement."""

    merchant_request_id: str | None
    checkout_request_id: str
    customer_message: str | None = None


@dataclass(frozen=True)
class MpesaCallbackMetadata:
    """M-Pesa STK callback or status query result."""

    merchant_request_id: str | None
    checkout_request_id: str
    receipt_number: str | None = None
    phone_number: str | None = None
    transaction_date: str | None = None


@dataclass(frozen=True)
class C2BMetadata:
    """M-Pesa customer-to-business confirmation (paybill deposit)."""

    trans_id: str
    bill_ref_number: str | None
    msisdn: str | None
    business_short_code: str | None = None
    first_name: str | None = None
    last_name: str | None = None


@dataclass(frozen=True)
class AirtelSubmitMetadata:
    """Airtel collection request acknowledgement."""

    transaction_id: str
    status_code: str | None = None
    status_message: str | None = None


@dataclass(frozen=True)
class AirtelCallbackMetadata:
    """Airtel callback or enquiry result."""

    transaction_id: str
    airtel_money_id: str | None = None
    status_code: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class BankInstructionMetadata:
    """Where the borrower should send a bank transfer."""

    bank_name: str
    account_number: str
    account_name: str
    reference: str
    branch_code: str | None = None
    swift_code: str | None = None


@dataclass(frozen=True)
class BankReviewMetadata:
    """Reviewer decision on a bank transfer."""

    reviewer_id: str
    decision: str
    bank_receipt_number: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class AttributionMetadata:
    """Operator attribution of parked money to a loan."""

    receipt_id: str
    operator_id: str


ProviderMetadata = Union[
    StkPushMetadata,
    MpesaCallbackMetadata,
    C2BMetadata,
    AirtelSubmitMetadata,
    AirtelCallbackMetadata,
    BankInstructionMetadata,
    BankReviewMetadata,
    AttributionMetadata,
]


def serialize_metadata(metadata: ProviderMetadata | None) -> str | None:
    """Serialize typed metadata to the opaque storage blob."""
    if metadata is None:
        return None
    return json.dumps(
        {"type": type(metadata).__name__, "data": asdict(metadata)},
        default=str,
        sort_keys=True,
    )


def load_metadata(blob: str | None) -> dict[str, Any] | None:
    """Read a stored metadata blob for display."""
    if not blob:
        return None
    return json.loads(blob)


# =============================================================================
# Canonical requests and events
# =============================================================================


@dataclass(frozen=True)
class InitiationRequest:
    """Request to collect a repayment through a provider."""

    provider: Provider
    loan_id: UUID
    amount: Decimal
    payer_account_ref: str
    currency: str | None = None
    description: str | None = None
    # Supplied on client retry; makes initiation idempotent
    internal_reference: str | None = None


@dataclass(frozen=True)
class InitiationResult:
    """Outcome of an initiation call."""

    intent_id: UUID
    internal_reference: str
    provider_status: ProviderStatus
    provider_message: str
    state: IntentState
    external_reference: str | None = None
    resubmitted: bool = False
    instructions: ProviderMetadata | None = None


@dataclass(frozen=True)
class SubmissionRequest:
    """What an adapter needs to submit an intent; detached from the ORM."""

    internal_reference: str
    amount: Decimal
    currency: str
    payer_account_ref: str | None
    account_reference: str | None
    description: str | None = None


@dataclass(frozen=True)
class ProviderEvent:
    """A provider's statement about one transaction.

    Identified for idempotency by (provider, external_reference, status).
    """

    provider: Provider
    external_reference: str
    status: EventStatus
    source: EventSource
    amount: Decimal | None = None
    currency: str | None = None
    result_code: str | None = None
    result_description: str | None = None
    receipt: str | None = None
    payer_account_ref: str | None = None
    account_reference: str | None = None
    occurred_at: datetime | None = None
    internal_reference: str | None = None
    metadata: ProviderMetadata | None = None
    actor_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def idempotency_key(self) -> tuple[str, str, str]:
        return (self.provider.value, self.external_reference, self.status.value)

    def raw_json(self) -> str | None:
        if not self.raw:
            return None
        return json.dumps(self.raw, default=str, sort_keys=True)


@dataclass(frozen=True)
class TransitionEvidence:
    """Why an intent changed state; stored alongside the transition."""

    source: EventSource
    result_code: str | None = None
    result_description: str | None = None
    receipt: str | None = None
    amount: Decimal | None = None
    occurred_at: datetime | None = None
    actor_id: str | None = None
    metadata: ProviderMetadata | None = None

    @classmethod
    def from_event(cls, event: ProviderEvent) -> TransitionEvidence:
        return cls(
            source=event.source,
            result_code=event.result_code,
            result_description=event.result_description,
            receipt=event.receipt,
            amount=event.amount,
            occurred_at=event.occurred_at,
            actor_id=event.actor_id,
            metadata=event.metadata,
        )


def ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = [
    "AirtelCallbackMetadata",
    "AirtelSubmitMetadata",
    "AttributionMetadata",
    "BankInstructionMetadata",
    "BankReviewMetadata",
    "C2BMetadata",
    "Channel",
    "EventSource",
    "EventStatus",
    "InitiationRequest",
    "InitiationResult",
    "IntentState",
    "MpesaCallbackMetadata",
    "Provider",
    "ProviderEvent",
    "ProviderMetadata",
    "PROVIDER_CHANNELS",
    "ProviderStatus",
    "StkPushMetadata",
    "SubmissionRequest",
    "TransitionEvidence",
    "ensure_utc",
    "generate_internal_reference",
    "load_metadata",
    "serialize_metadata",
    "utcnow",
]
