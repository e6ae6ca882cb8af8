"""Domain data structures shared by the dispatch components.

Everything fetched from the network is a frozen snapshot: a tick reads it,
nobody mutates it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

import claimer.constants as C
from claimer.predicates import Predicate


@dataclass(slots=True, frozen=True)
class AccountSnapshot:
    public_key: str
    sequence: int
    native_balance: Decimal
    selling_liabilities: Decimal = Decimal(0)

    @property
    def spendable_balance(self) -> Decimal:
        return self.native_balance - self.selling_liabilities


@dataclass(slots=True, frozen=True)
class Claimant:
    destination: str
    predicate: Predicate | None  # None: the ledger predicate could not be parsed


@dataclass(slots=True, frozen=True)
class ClaimGrant:
    id: str
    amount: Decimal
    asset: str
    claimants: tuple[Claimant, ...] = ()

    @property
    def is_native(self) -> bool:
        return self.asset == C.NATIVE_ASSET

    def claimant_for(self, key: str) -> Claimant | None:
        for c in self.claimants:
            if c.destination == key:
                return c
        return None


@dataclass(slots=True, frozen=True)
class SequenceLease:
    value: int
    epoch: int  # reconciliations of the issuing allocator before this lease


@dataclass(slots=True, frozen=True)
class TransactionIntent:
    """A signed transaction, consumed by exactly one submission attempt."""

    envelope_xdr: str
    tx_hash: str
    lease: SequenceLease
    fee: int  # stroops, for the whole transaction
    operations: tuple[str, ...]
    destination: str
    amount: Decimal
    grant_id: str | None
    expires_at: datetime

    @property
    def sequence(self) -> int:
        return self.lease.value

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(slots=True, frozen=True)
class SubmissionOutcome:
    kind: C.OutcomeKind
    tx_hash: str | None = None
    detail: str | None = None

    @classmethod
    def accepted(cls, tx_hash: str) -> SubmissionOutcome:
        return cls(C.OutcomeKind.ACCEPTED, tx_hash=tx_hash)

    @classmethod
    def sequence_conflict(cls, detail: str = "tx_bad_seq") -> SubmissionOutcome:
        return cls(C.OutcomeKind.SEQUENCE_CONFLICT, detail=detail)

    @classmethod
    def rate_limited(cls, detail: str = "HTTP 429") -> SubmissionOutcome:
        return cls(C.OutcomeKind.RATE_LIMITED, detail=detail)

    @classmethod
    def rejected(cls, reason: str) -> SubmissionOutcome:
        return cls(C.OutcomeKind.REJECTED, detail=reason)

    @classmethod
    def transport_error(cls, detail: str) -> SubmissionOutcome:
        return cls(C.OutcomeKind.TRANSPORT_ERROR, detail=detail)

    @property
    def ok(self) -> bool:
        return self.kind == C.OutcomeKind.ACCEPTED

    def __str__(self):
        return f"{self.kind} {self.tx_hash or self.detail or ''}".rstrip()


@dataclass(slots=True, frozen=True)
class ScheduleTarget:
    target_instant: datetime
    lead_time: timedelta
    batch_interval: timedelta
    batch_size: int

    @property
    def fire_at(self) -> datetime:
        return self.target_instant - self.lead_time


@dataclass(slots=True, frozen=True)
class TickSnapshot:
    """Account and grant state fetched once per tick and shared by its attempts."""

    account: AccountSnapshot
    grants: tuple[ClaimGrant, ...]
    reference_fee: int  # stroops per operation
    fetched_at: datetime | None = field(default=None, compare=False)
