import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import claimer.constants as C
from claimer.models import AccountSnapshot, ClaimGrant
from claimer.predicates import is_claimable

log = logging.getLogger("claimer.gate")


def estimate_fee(reference_fee: int, operations: int = C.CLAIM_AND_PAY_OPS) -> Decimal:
    """Reference fee (stroops per op) times op count, in native units."""
    return Decimal(reference_fee * operations) / C.STROOPS_PER_UNIT


@dataclass(slots=True, frozen=True)
class GateDecision:
    verdict: C.GateVerdict
    grant: ClaimGrant | None
    fee_estimate: Decimal
    spendable: Decimal

    @property
    def sufficient(self) -> bool:
        return self.verdict == C.GateVerdict.SUFFICIENT


class BalanceGate:
    """Decides whether an attempt has the funds to proceed."""

    def __init__(self, claimant_key: str):
        self.claimant_key = claimant_key

    def find_eligible_grant(self, grants: Iterable[ClaimGrant], required: Decimal, at: datetime) -> ClaimGrant | None:
        for g in grants:
            if g.is_native and g.amount >= required and is_claimable(g, self.claimant_key, at):
                return g
        return None

    def evaluate(
        self,
        account: AccountSnapshot,
        required: Decimal,
        fee_estimate: Decimal,
        grants: Iterable[ClaimGrant],
        at: datetime,
    ) -> GateDecision:
        spendable = account.spendable_balance
        grant = self.find_eligible_grant(grants, required, at)
        if grant is None:
            verdict = C.GateVerdict.NO_ELIGIBLE_GRANT
        elif spendable < fee_estimate:
            verdict = C.GateVerdict.INSUFFICIENT_FOR_FEE
        else:
            verdict = C.GateVerdict.SUFFICIENT
        return GateDecision(verdict=verdict, grant=grant, fee_estimate=fee_estimate, spendable=spendable)

    def evaluate_direct(self, account: AccountSnapshot, required: Decimal, fee_estimate: Decimal) -> GateDecision:
        """Payment-only check: spendable balance must cover amount and fee."""
        spendable = account.spendable_balance
        if spendable < required + fee_estimate:
            verdict = C.GateVerdict.INSUFFICIENT_FOR_PAYMENT
        else:
            verdict = C.GateVerdict.SUFFICIENT
        return GateDecision(verdict=verdict, grant=None, fee_estimate=fee_estimate, spendable=spendable)
