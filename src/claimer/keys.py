"""Mnemonic to keypair derivation and address checks.

Pi wallets derive the account key from a BIP-39 phrase along the hardened
SLIP-10 ed25519 path m/44'/314159'/0'.
"""

import hashlib
import hmac
import struct

from mnemonic import Mnemonic
from stellar_sdk import Keypair, MuxedAccount
from stellar_sdk.exceptions import SdkError

import claimer.constants as C
from claimer.errors import InvalidDestination, InvalidMnemonic

HARDENED = 0x80000000
ED25519_SEED_KEY = b"ed25519 seed"


def _parse_path(path: str) -> list[int]:
    parts = path.split("/")
    if parts[0] != "m":
        raise ValueError(f"derivation path must start with 'm': {path}")
    indexes = []
    for p in parts[1:]:
        # ed25519 only supports hardened children
        if not p.endswith("'"):
            raise ValueError(f"non-hardened segment {p!r} in {path}")
        indexes.append(int(p[:-1]) + HARDENED)
    return indexes


def slip10_ed25519(seed: bytes, path: str) -> bytes:
    digest = hmac.new(ED25519_SEED_KEY, seed, hashlib.sha512).digest()
    key, chain = digest[:32], digest[32:]
    for index in _parse_path(path):
        digest = hmac.new(chain, b"\x00" + key + struct.pack(">I", index), hashlib.sha512).digest()
        key, chain = digest[:32], digest[32:]
    return key


def derive_keypair(phrase: str, path: str = C.DERIVATION_PATH, *, language: str = "english") -> Keypair:
    words = " ".join(phrase.split())
    if not Mnemonic(language).check(words):
        raise InvalidMnemonic("Invalid mnemonic phrase")
    seed = Mnemonic.to_seed(words)
    return Keypair.from_raw_ed25519_seed(slip10_ed25519(seed, path))


def validate_destination(address: str) -> str:
    """Accepts G... and M... addresses, returns the address unchanged."""
    try:
        MuxedAccount.from_account(address)
    except (ValueError, SdkError) as e:
        raise InvalidDestination(f"Invalid destination address {address!r}: {e}") from e
    return address
