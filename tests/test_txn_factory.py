# tests/test_txn_factory.py
from datetime import datetime, timedelta
from decimal import Decimal

from stellar_sdk import ClaimClaimableBalance, Payment, TransactionEnvelope

import claimer.constants as C
from claimer.models import SequenceLease
from claimer.txn_factory import format_amount
from conftest import GRANT_ID, UTC, make_grant

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=UTC)


def _parse(xdr: str) -> TransactionEnvelope:
    return TransactionEnvelope.from_xdr(xdr, C.NETWORK_PASSPHRASE)


def test_format_amount():
    assert format_amount(Decimal("1.5")) == "1.5000000"
    assert format_amount(Decimal("100")) == "100.0000000"


def test_claim_and_payment(signer, destination, assembler):
    lease = SequenceLease(value=101, epoch=0)
    intent = assembler.build(
        signer.public_key, lease, 100_000, destination, Decimal("50"), make_grant(signer.public_key), now=NOW
    )
    env = _parse(intent.envelope_xdr)
    tx = env.transaction

    assert tx.sequence == 101
    assert intent.sequence == 101
    assert tx.fee == 200_000 == intent.fee
    assert intent.operations == ("claim_claimable_balance", "payment")
    assert isinstance(tx.operations[0], ClaimClaimableBalance)
    assert tx.operations[0].balance_id == GRANT_ID
    pay = tx.operations[1]
    assert isinstance(pay, Payment)
    assert pay.destination.account_id == destination
    assert Decimal(pay.amount) == Decimal("50")
    assert pay.asset.is_native()

    assert tx.preconditions.time_bounds.max_time == int((NOW + timedelta(seconds=30)).timestamp())
    assert intent.expires_at == NOW + timedelta(seconds=30)
    assert intent.tx_hash == env.hash_hex()
    assert intent.grant_id == GRANT_ID

    assert len(env.signatures) == 1
    assert env.signatures[0].signature_hint == signer.signature_hint()


def test_payment_only(signer, destination, assembler):
    intent = assembler.build(signer.public_key, SequenceLease(7, 0), 100, destination, Decimal("1"), now=NOW)
    tx = _parse(intent.envelope_xdr).transaction
    assert len(tx.operations) == 1
    assert intent.operations == ("payment",)
    assert tx.fee == 100
    assert intent.grant_id is None


def test_expiry(signer, destination, assembler):
    intent = assembler.build(signer.public_key, SequenceLease(7, 0), 100, destination, Decimal("1"), now=NOW)
    assert not intent.is_expired(NOW + timedelta(seconds=29))
    assert intent.is_expired(NOW + timedelta(seconds=30))
