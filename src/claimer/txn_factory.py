import logging
from datetime import datetime, timedelta
from decimal import Decimal

from stellar_sdk import Account, Asset, Keypair, TransactionBuilder

from claimer.models import ClaimGrant, SequenceLease, TransactionIntent

log = logging.getLogger("claimer.txn")

AMOUNT_QUANTUM = Decimal("0.0000001")


def format_amount(amount: Decimal) -> str:
    return format(amount.quantize(AMOUNT_QUANTUM), "f")


class TransactionAssembler:
    """Builds and signs ``[claim?] + payment`` transactions for one account."""

    def __init__(self, signer: Keypair, network_passphrase: str, *, validity: timedelta = timedelta(seconds=30)):
        self.signer = signer
        self.network_passphrase = network_passphrase
        self.validity = validity

    def build(
        self,
        account_id: str,
        lease: SequenceLease,
        fee_per_operation: int,
        destination: str,
        amount: Decimal,
        grant: ClaimGrant | None = None,
        *,
        now: datetime,
    ) -> TransactionIntent:
        # The builder uses source sequence + 1 for the transaction.
        source = Account(account_id, lease.value - 1)
        expires_at = now + self.validity
        builder = TransactionBuilder(
            source_account=source,
            network_passphrase=self.network_passphrase,
            base_fee=fee_per_operation,
        )
        operations = []
        if grant is not None:
            builder.append_claim_claimable_balance_op(balance_id=grant.id)
            operations.append("claim_claimable_balance")
        builder.append_payment_op(destination=destination, asset=Asset.native(), amount=format_amount(amount))
        operations.append("payment")
        builder.add_time_bounds(0, int(expires_at.timestamp()))

        envelope = builder.build()
        envelope.sign(self.signer)
        intent = TransactionIntent(
            envelope_xdr=envelope.to_xdr(),
            tx_hash=envelope.hash_hex(),
            lease=lease,
            fee=envelope.transaction.fee,
            operations=tuple(operations),
            destination=destination,
            amount=amount,
            grant_id=grant.id if grant else None,
            expires_at=expires_at,
        )
        log.debug("Built %s seq=%s fee=%s hash=%s", "+".join(operations), lease.value, intent.fee, intent.tx_hash)
        return intent
