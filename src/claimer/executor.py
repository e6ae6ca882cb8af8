import asyncio
import logging

import httpx

import claimer.constants as C
from claimer.horizon import HorizonError, LedgerClient
from claimer.models import SubmissionOutcome, TransactionIntent
from claimer.sequence import SequenceAllocator

log = logging.getLogger("claimer.executor")

BAD_SEQ = "tx_bad_seq"


def _result_codes(body: dict) -> tuple[str | None, list[str]]:
    codes = (body.get("extras") or {}).get("result_codes") or {}
    return codes.get("transaction"), list(codes.get("operations") or [])


def classify_response(status: int, body: dict) -> SubmissionOutcome:
    """Map a Horizon submission response onto a SubmissionOutcome."""
    if 200 <= status < 300:
        return SubmissionOutcome.accepted(body.get("hash", ""))
    if status == 429:
        return SubmissionOutcome.rate_limited(f"HTTP {status}")
    tx_code, op_codes = _result_codes(body)
    if tx_code == BAD_SEQ:
        return SubmissionOutcome.sequence_conflict(tx_code)
    if status >= 500:
        # 504 means Horizon gave up waiting, the transaction may still land.
        return SubmissionOutcome.transport_error(f"HTTP {status} {body.get('title', '')}".rstrip())
    if tx_code:
        reason = tx_code if not op_codes else f"{tx_code} {op_codes}"
    else:
        reason = body.get("title") or body.get("detail") or f"HTTP {status}"
    return SubmissionOutcome.rejected(reason)


class SubmissionExecutor:
    def __init__(self, ledger: LedgerClient, allocator: SequenceAllocator, *, timeout: float = C.SUBMIT_TIMEOUT):
        self.ledger = ledger
        self.allocator = allocator
        self.timeout = timeout

    async def submit(self, intent: TransactionIntent) -> SubmissionOutcome:
        try:
            r = await asyncio.wait_for(self.ledger.submit_transaction(intent.envelope_xdr), timeout=self.timeout)
        except asyncio.TimeoutError:
            return SubmissionOutcome.transport_error(f"timeout after {self.timeout}s")
        except httpx.HTTPError as e:
            return SubmissionOutcome.transport_error(f"{type(e).__name__}: {e}")

        try:
            body = r.json()
        except ValueError:
            body = {}
        outcome = classify_response(r.status_code, body if isinstance(body, dict) else {})

        if outcome.kind == C.OutcomeKind.SEQUENCE_CONFLICT:
            try:
                await self.allocator.reconcile(stale=intent.lease)
            except (HorizonError, httpx.HTTPError) as e:
                log.warning("Sequence reconcile after conflict on seq=%s failed: %s", intent.sequence, e)
        return outcome
