import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import httpx

import claimer.constants as C
from claimer.config import Settings
from claimer.executor import SubmissionExecutor
from claimer.gate import BalanceGate, GateDecision, estimate_fee
from claimer.horizon import HorizonError, LedgerClient
from claimer.models import ScheduleTarget, SequenceLease, SubmissionOutcome, TickSnapshot, TransactionIntent
from claimer.sequence import SequenceAllocator
from claimer.timesource import TimeSource
from claimer.txn_factory import TransactionAssembler, format_amount

log = logging.getLogger("claimer.scheduler")


@dataclass(slots=True, frozen=True)
class DispatchPlan:
    """What to send, and when. Built once from Settings at startup."""

    account_id: str
    destination: str
    amount: Decimal
    fee_per_operation: int  # stroops
    mode: C.Mode = C.Mode.BURST
    target: ScheduleTarget | None = None
    poll_interval: timedelta = timedelta(seconds=5)
    max_retries: int = 5
    retry_delay: timedelta = timedelta(seconds=1)
    rate_limit_backoff: timedelta = timedelta(seconds=2)
    claim_required: bool = True
    wait_granularity: float = C.WAIT_GRANULARITY

    @classmethod
    def from_settings(cls, settings: Settings, account_id: str, target: ScheduleTarget | None) -> "DispatchPlan":
        return cls(
            account_id=account_id,
            destination=settings.destination,
            amount=settings.amount,
            fee_per_operation=settings.fee_stroops,
            mode=settings.mode,
            target=target,
            poll_interval=settings.poll_interval,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            rate_limit_backoff=settings.rate_limit_backoff,
            claim_required=settings.claim_required,
        )


@dataclass
class DispatchStats:
    batches: int = 0
    attempts: int = 0
    accepted: int = 0
    sequence_conflicts: int = 0
    rate_limited: int = 0
    rejected: int = 0
    transport_errors: int = 0
    skipped: int = 0
    exhausted: int = 0
    errors: int = 0

    _FIELDS = {
        C.OutcomeKind.ACCEPTED: "accepted",
        C.OutcomeKind.SEQUENCE_CONFLICT: "sequence_conflicts",
        C.OutcomeKind.RATE_LIMITED: "rate_limited",
        C.OutcomeKind.REJECTED: "rejected",
        C.OutcomeKind.TRANSPORT_ERROR: "transport_errors",
    }

    def record(self, outcome: SubmissionOutcome) -> None:
        name = self._FIELDS[outcome.kind]
        setattr(self, name, getattr(self, name) + 1)

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class DispatchScheduler:
    """Drives attempts in one of two modes.

    burst: IDLE -> WAITING_FOR_TARGET -> FIRING -> STOPPED
    poll:  IDLE -> POLLING -> STOPPED

    STOPPED is only reached through ``stop()``. Every suspension waits on the
    stop event, so a stop request is honoured within one suspension interval.
    """

    def __init__(
        self,
        plan: DispatchPlan,
        *,
        ledger: LedgerClient,
        clock: TimeSource,
        allocator: SequenceAllocator,
        gate: BalanceGate,
        assembler: TransactionAssembler,
        executor: SubmissionExecutor,
        stop: asyncio.Event | None = None,
    ):
        if plan.mode == C.Mode.BURST and plan.target is None:
            raise ValueError("burst mode needs a ScheduleTarget")
        self.plan = plan
        self.ledger = ledger
        self.clock = clock
        self.allocator = allocator
        self.gate = gate
        self.assembler = assembler
        self.executor = executor
        self.stop_event = stop or asyncio.Event()

        self.state = C.DispatchState.IDLE
        self.transitions: list[tuple[C.DispatchState, datetime]] = [(self.state, clock.now())]
        self.stats = DispatchStats()
        self.last_outcome: dict[str, Any] | None = None
        self._inflight: set[asyncio.Task] = set()
        self._backoff_pending = False

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def stop(self) -> None:
        if not self.stop_event.is_set():
            log.info("Shutting down dispatcher...")
            self.stop_event.set()

    @property
    def stopped(self) -> bool:
        return self.state == C.DispatchState.STOPPED

    def _set_state(self, state: C.DispatchState) -> None:
        at = self.clock.now()
        log.debug("%s --> %s at %s", self.state, state, at.isoformat())
        self.state = state
        self.transitions.append((state, at))

    async def _pause(self, seconds: float) -> bool:
        """Suspend for up to ``seconds``. True if a stop was requested."""
        if self.stop_event.is_set():
            return True
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=max(seconds, 0.0))
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self) -> None:
        try:
            if self.plan.mode == C.Mode.BURST:
                if await self.wait_for_target():
                    await self._fire()
            else:
                await self._poll()
        finally:
            await self._cancel_inflight()
            self._set_state(C.DispatchState.STOPPED)
            log.info("Dispatcher stopped - Stats: %s", self.stats.as_dict())

    # ------------------------------------------------------------------
    # burst mode
    # ------------------------------------------------------------------

    async def wait_for_target(self) -> bool:
        """Suspend until ``target.fire_at``. False if stopped first."""
        target = self.plan.target
        self._set_state(C.DispatchState.WAITING_FOR_TARGET)
        fire_at = target.fire_at
        log.info(
            "Scheduled unlock at %s, firing at %s (%d ms early)",
            target.target_instant.isoformat(),
            fire_at.isoformat(),
            target.lead_time / timedelta(milliseconds=1),
        )
        last_logged: float | None = None
        while True:
            remaining = (fire_at - self.clock.now()).total_seconds()
            if remaining <= 0:
                return True
            if last_logged is None or last_logged - remaining >= C.COUNTDOWN_LOG_EVERY:
                log.info("Waiting... %.2fs", remaining)
                last_logged = remaining
            if await self._pause(min(remaining, self.plan.wait_granularity)):
                return False

    async def _fire(self) -> None:
        target = self.plan.target
        self._set_state(C.DispatchState.FIRING)
        log.info(
            "Firing transactions with %s attempts every %sms",
            target.batch_size,
            int(target.batch_interval / timedelta(milliseconds=1)),
        )
        tick = 0
        while not self.stop_event.is_set():
            tick += 1
            self._spawn(self.run_batch(tick), name=f"batch-{tick}")
            delay = target.batch_interval.total_seconds()
            if self._backoff_pending:
                self._backoff_pending = False
                delay += self.plan.rate_limit_backoff.total_seconds()
                log.warning("Rate limited last batch, backing off %.1fs", self.plan.rate_limit_backoff.total_seconds())
            if await self._pause(delay):
                break

    async def run_batch(self, tick: int) -> list[SubmissionOutcome | None]:
        """One tick: a shared snapshot, then ``batch_size`` concurrent attempts."""
        target = self.plan.target
        self.stats.batches += 1
        log.info("Batch %s firing (%s attempts)", tick, target.batch_size)
        snapshot = await self._snapshot_or_none(f"[batch {tick}]")
        if snapshot is None:
            return []
        # Attempts land after the lead time, so judge eligibility there.
        at = self.clock.now() + target.lead_time
        results = await asyncio.gather(
            *(self.attempt(snapshot, at, label=f"[batch {tick}.{i}]") for i in range(1, target.batch_size + 1))
        )
        if any(o is not None and o.kind == C.OutcomeKind.RATE_LIMITED for o in results):
            self._backoff_pending = True
        return results

    async def attempt(self, snapshot: TickSnapshot, at: datetime, label: str) -> SubmissionOutcome | None:
        """Gate, allocate, build, submit once. Never raises (except cancellation)."""
        try:
            decision = self.decide(snapshot, at)
            if not decision.sufficient:
                self.stats.skipped += 1
                self._log_skip(label, decision)
                return None
            lease = await self.allocator.allocate()
            intent = self._build(lease, decision)
            self.stats.attempts += 1
            outcome = await self.executor.submit(intent)
            self._record(label, intent, outcome)
            return outcome
        except Exception:
            self.stats.errors += 1
            log.exception("%s attempt failed", label)
            return None

    # ------------------------------------------------------------------
    # polling mode
    # ------------------------------------------------------------------

    async def _poll(self) -> None:
        self._set_state(C.DispatchState.POLLING)
        log.info("Starting claim and withdrawal polling every %.1fs", self.plan.poll_interval.total_seconds())
        tick = 0
        while not self.stop_event.is_set():
            tick += 1
            try:
                await self.poll_once(tick)
            except Exception:
                self.stats.errors += 1
                log.exception("Error during poll %s", tick)
            if await self._pause(self.plan.poll_interval.total_seconds()):
                break

    async def poll_once(self, tick: int) -> SubmissionOutcome | None:
        label = f"[poll {tick}]"
        snapshot = await self._snapshot_or_none(label)
        if snapshot is None:
            return None
        decision = self.decide(snapshot, self.clock.now())
        log.info(
            "%s Attempting claim and withdrawal: native=%s claimable=%s required=%s",
            label,
            decision.spendable,
            decision.grant.amount if decision.grant else "-",
            format_amount(self.plan.amount),
        )
        if not decision.sufficient:
            self.stats.skipped += 1
            self._log_skip(label, decision)
            return None
        return await self._submit_with_retries(label, decision)

    async def _submit_with_retries(self, label: str, decision: GateDecision) -> SubmissionOutcome | None:
        budget = self.plan.max_retries
        lease: SequenceLease | None = None
        intent: TransactionIntent | None = None
        outcome: SubmissionOutcome | None = None
        for attempt in range(1, budget + 1):
            # Leased only when about to submit, so a conflict on the last try
            # leaves the reconciled baseline for the next tick.
            if lease is None:
                lease = await self.allocator.allocate()
            # A stale intent is rebuilt on the same lease instead of resent verbatim.
            if intent is None or intent.is_expired(self.clock.now()):
                intent = self._build(lease, decision)
            self.stats.attempts += 1
            outcome = await self.executor.submit(intent)
            self._record(f"{label} try {attempt}/{budget}", intent, outcome)

            if outcome.kind in (C.OutcomeKind.ACCEPTED, C.OutcomeKind.REJECTED):
                return outcome
            if outcome.kind == C.OutcomeKind.SEQUENCE_CONFLICT:
                # executor already reconciled; the next try leases from the new baseline
                lease = None
                intent = None
                delay = 0.0
            elif outcome.kind == C.OutcomeKind.RATE_LIMITED:
                delay = self.plan.rate_limit_backoff.total_seconds()
            else:
                delay = self.plan.retry_delay.total_seconds()

            if attempt < budget:
                log.info("%s Retry %s/%s in %.1fs: %s", label, attempt, budget, delay, outcome)
                if await self._pause(delay):
                    return outcome

        self.stats.exhausted += 1
        log.error("%s Transaction failed after %s tries (exhausted retries): %s", label, budget, outcome)
        return outcome

    # ------------------------------------------------------------------
    # shared pieces
    # ------------------------------------------------------------------

    async def fetch_snapshot(self) -> TickSnapshot:
        account, grants, fee = await asyncio.gather(
            self.ledger.load_account(self.plan.account_id),
            self.ledger.list_claim_grants(self.plan.account_id),
            self.ledger.current_reference_fee(),
        )
        return TickSnapshot(account=account, grants=tuple(grants), reference_fee=fee, fetched_at=self.clock.now())

    async def _snapshot_or_none(self, label: str) -> TickSnapshot | None:
        try:
            return await self.fetch_snapshot()
        except (HorizonError, httpx.HTTPError) as e:
            self.stats.errors += 1
            log.error("%s Error checking balances: %s", label, e)
            return None

    def decide(self, snapshot: TickSnapshot, at: datetime) -> GateDecision:
        fee_estimate = estimate_fee(snapshot.reference_fee, C.CLAIM_AND_PAY_OPS)
        decision = self.gate.evaluate(snapshot.account, self.plan.amount, fee_estimate, snapshot.grants, at)
        if decision.verdict == C.GateVerdict.NO_ELIGIBLE_GRANT and not self.plan.claim_required:
            # payment only, straight from the spendable balance
            return self.gate.evaluate_direct(snapshot.account, self.plan.amount, estimate_fee(snapshot.reference_fee, 1))
        return decision

    def _build(self, lease: SequenceLease, decision: GateDecision) -> TransactionIntent:
        return self.assembler.build(
            self.plan.account_id,
            lease,
            self.plan.fee_per_operation,
            self.plan.destination,
            self.plan.amount,
            decision.grant,
            now=self.clock.now(),
        )

    def _log_skip(self, label: str, decision: GateDecision) -> None:
        amount = format_amount(self.plan.amount)
        if decision.verdict == C.GateVerdict.NO_ELIGIBLE_GRANT:
            log.info(
                "%s Cannot proceed: no unlocked claimable balance of %s or more. Native: %s. Awaiting lockup release.",
                label, amount, decision.spendable,
            )
        elif decision.verdict == C.GateVerdict.INSUFFICIENT_FOR_FEE:
            log.warning(
                "%s Found claimable balance %s (%s) but native balance %s can't cover fee %s",
                label, decision.grant.amount, decision.grant.id, decision.spendable, decision.fee_estimate,
            )
        else:
            log.warning(
                "%s Insufficient native balance for payment: %s < %s + fee %s",
                label, decision.spendable, amount, decision.fee_estimate,
            )

    def _record(self, label: str, intent: TransactionIntent, outcome: SubmissionOutcome) -> None:
        self.stats.record(outcome)
        ctx = (
            f"amount={format_amount(intent.amount)} destination={intent.destination} "
            f"grant={intent.grant_id or '-'} fee={intent.fee} seq={intent.sequence}"
        )
        kind = outcome.kind
        if kind == C.OutcomeKind.ACCEPTED:
            log.info("%s Success: hash=%s %s", label, outcome.tx_hash, ctx)
        elif kind == C.OutcomeKind.SEQUENCE_CONFLICT:
            log.warning("%s Bad sequence, reconciled (next=%s): %s", label, self.allocator.next_value, ctx)
        elif kind == C.OutcomeKind.RATE_LIMITED:
            log.warning("%s Rate limited by Horizon: %s", label, ctx)
        elif kind == C.OutcomeKind.REJECTED:
            log.error("%s Rejected: %s %s", label, outcome.detail, ctx)
        else:
            log.error("%s Transport error: %s %s", label, outcome.detail, ctx)
        self.last_outcome = {
            "kind": str(kind),
            "tx_hash": outcome.tx_hash,
            "detail": outcome.detail,
            "sequence": intent.sequence,
            "grant_id": intent.grant_id,
            "at": self.clock.now().isoformat(),
        }

    def _spawn(self, coro: Coroutine, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._inflight.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.stats.errors += 1
            log.error("%s failed", task.get_name(), exc_info=task.exception())

    async def _cancel_inflight(self) -> None:
        # Already-sent submissions are not revoked, their outcomes are dropped.
        tasks = list(self._inflight)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def status(self) -> dict[str, Any]:
        target = self.plan.target
        return {
            "state": str(self.state),
            "mode": str(self.plan.mode),
            "account": self.plan.account_id,
            "destination": self.plan.destination,
            "amount": format_amount(self.plan.amount),
            "fee_per_operation": self.plan.fee_per_operation,
            "target_instant": target.target_instant.isoformat() if target else None,
            "fire_at": target.fire_at.isoformat() if target else None,
            "next_sequence": self.allocator.next_value,
            "sequence_epoch": self.allocator.epoch,
            "clock": self.clock.describe(),
            "in_flight_batches": len(self._inflight),
            "stats": self.stats.as_dict(),
            "last_outcome": self.last_outcome,
            "transitions": [{"state": str(s), "at": at.isoformat()} for s, at in self.transitions],
        }
