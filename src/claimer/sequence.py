import asyncio
import logging

from claimer.horizon import LedgerClient
from claimer.models import SequenceLease

log = logging.getLogger("claimer.sequence")


class SequenceAllocator:
    """Optimistic per-account sequence cache shared by concurrent attempts.

    ``allocate`` hands out ``next`` and bumps it; ``reconcile`` throws the
    optimistic cache away and rebases on the ledger. Both run under one lock,
    so leases issued between two reconciliations are unique and contiguous.
    Uniqueness is all that is promised: the ledger decides which attempt's
    sequence lands first, and conflicts are expected under contention.
    """

    def __init__(self, ledger: LedgerClient, account_id: str):
        self.ledger = ledger
        self.account_id = account_id
        self._lock = asyncio.Lock()
        self._next: int | None = None
        self._epoch = 0

    @property
    def next_value(self) -> int | None:
        return self._next

    @property
    def epoch(self) -> int:
        return self._epoch

    async def _onchain_sequence(self) -> int:
        account = await self.ledger.load_account(self.account_id)
        return account.sequence

    async def seed(self) -> int:
        async with self._lock:
            onchain = await self._onchain_sequence()
            self._next = onchain + 1
            log.info("Loaded account sequence %s, next lease %s", onchain, self._next)
            return self._next

    async def allocate(self) -> SequenceLease:
        async with self._lock:
            if self._next is None:
                self._next = await self._onchain_sequence() + 1
            lease = SequenceLease(value=self._next, epoch=self._epoch)
            self._next += 1
            return lease

    async def reconcile(self, stale: SequenceLease | None = None) -> int:
        """Rebase on the on-chain sequence. Returns the new ``next``.

        A conflict reported for a lease from an earlier epoch is already
        covered by the reconciliation that ended that epoch, so no fetch.
        """
        async with self._lock:
            if stale is not None and stale.epoch < self._epoch and self._next is not None:
                log.debug("Lease %s predates epoch %s, skipping reconcile", stale.value, self._epoch)
                return self._next
            onchain = await self._onchain_sequence()
            old = self._next
            self._next = onchain + 1
            self._epoch += 1
            log.info("Reconciled sequence %s -> %s (on-chain %s, epoch %s)", old, self._next, onchain, self._epoch)
            return self._next
