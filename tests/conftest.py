# tests/conftest.py
import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from stellar_sdk import Keypair, TransactionEnvelope

import claimer.constants as C
from claimer.executor import SubmissionExecutor
from claimer.gate import BalanceGate
from claimer.models import AccountSnapshot, Claimant, ClaimGrant
from claimer.predicates import Predicate, Unconditional
from claimer.scheduler import DispatchPlan, DispatchScheduler
from claimer.sequence import SequenceAllocator
from claimer.timesource import TimeSource
from claimer.txn_factory import TransactionAssembler

GRANT_ID = "00000000" + "ab" * 32
TX_HASH = "cd" * 32
UTC = timezone.utc


def horizon_response(status: int = 200, body: dict | None = None) -> httpx.Response:
    return httpx.Response(status, json=body if body is not None else {"hash": TX_HASH})


def bad_seq_response() -> httpx.Response:
    return horizon_response(400, {"title": "Transaction Failed", "extras": {"result_codes": {"transaction": "tx_bad_seq"}}})


def sequence_of(envelope_xdr: str) -> int:
    return TransactionEnvelope.from_xdr(envelope_xdr, C.NETWORK_PASSPHRASE).transaction.sequence


class FakeLedger:
    """In-memory LedgerClient. ``responder`` maps an envelope to a response or an exception."""

    def __init__(
        self,
        account_id: str,
        *,
        sequence: int = 100,
        balance: str = "10",
        grants: Iterable[ClaimGrant] = (),
        base_fee: int = 100_000,
        submit_delay: float = 0.0,
    ):
        self.account_id = account_id
        self.sequence = sequence
        self.balance = Decimal(balance)
        self.grants = list(grants)
        self.base_fee = base_fee
        self.submit_delay = submit_delay
        self.submitted: list[str] = []
        self.loads = 0
        self.responder: Callable[[str], httpx.Response | Exception] = lambda xdr: horizon_response()

    async def load_account(self, public_key: str) -> AccountSnapshot:
        self.loads += 1
        return AccountSnapshot(public_key=public_key, sequence=self.sequence, native_balance=self.balance)

    async def list_claim_grants(self, claimant_key: str) -> list[ClaimGrant]:
        return list(self.grants)

    async def current_reference_fee(self) -> int:
        return self.base_fee

    async def submit_transaction(self, envelope_xdr: str) -> httpx.Response:
        self.submitted.append(envelope_xdr)
        await asyncio.sleep(self.submit_delay)
        result = self.responder(envelope_xdr)
        if isinstance(result, Exception):
            raise result
        return result


class FakeClock(TimeSource):
    """TimeSource frozen at ``current`` until advanced."""

    def __init__(self, start: datetime):
        super().__init__(clock=lambda: self.current)
        self.current = start

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def loop_clock(start: datetime) -> TimeSource:
    """TimeSource that reads ``start`` when created and then follows the running loop's clock."""
    loop = asyncio.get_running_loop()
    t0 = loop.time()
    return TimeSource(clock=lambda: start + timedelta(seconds=loop.time() - t0))


def make_grant(
    claimant: str,
    amount: str = "50",
    predicate: Predicate | None = Unconditional(),
    *,
    asset: str = C.NATIVE_ASSET,
    grant_id: str = GRANT_ID,
) -> ClaimGrant:
    return ClaimGrant(id=grant_id, amount=Decimal(amount), asset=asset, claimants=(Claimant(claimant, predicate),))


def make_scheduler(
    ledger: FakeLedger,
    signer: Keypair,
    clock: TimeSource,
    destination: str,
    **plan_kwargs,
) -> DispatchScheduler:
    allocator = SequenceAllocator(ledger, signer.public_key)
    plan_kwargs.setdefault("amount", Decimal("50"))
    plan_kwargs.setdefault("fee_per_operation", 100_000)
    plan = DispatchPlan(account_id=signer.public_key, destination=destination, **plan_kwargs)
    return DispatchScheduler(
        plan,
        ledger=ledger,
        clock=clock,
        allocator=allocator,
        gate=BalanceGate(signer.public_key),
        assembler=TransactionAssembler(signer, C.NETWORK_PASSPHRASE),
        executor=SubmissionExecutor(ledger, allocator, timeout=1.0),
    )


@pytest.fixture()
def signer() -> Keypair:
    return Keypair.random()


@pytest.fixture()
def destination() -> str:
    return Keypair.random().public_key


@pytest.fixture()
def ledger(signer: Keypair) -> FakeLedger:
    return FakeLedger(signer.public_key, grants=[make_grant(signer.public_key)])


@pytest.fixture()
def assembler(signer: Keypair) -> TransactionAssembler:
    return TransactionAssembler(signer, C.NETWORK_PASSPHRASE)


@pytest.fixture()
def restore_logging():
    """Undo setup_logging() so later tests still see records through caplog."""
    root = logging.getLogger()
    saved_root = list(root.handlers), root.level
    yield
    for name in ("claimer", "httpx", "uvicorn.access", "stellar_sdk"):
        lg = logging.getLogger(name)
        for h in list(lg.handlers):
            lg.removeHandler(h)
            h.close()
        lg.propagate = True
        lg.setLevel(logging.NOTSET)
    for h in list(root.handlers):
        if h not in saved_root[0]:
            root.removeHandler(h)
            h.close()
    root.setLevel(saved_root[1])
