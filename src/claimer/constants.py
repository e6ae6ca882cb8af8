from typing import Final
from enum import StrEnum

HORIZON_URL: Final = "https://api.mainnet.minepi.com"
NETWORK_PASSPHRASE: Final = "Pi Network"
DERIVATION_PATH: Final = "m/44'/314159'/0'"

NATIVE_ASSET: Final = "native"
STROOPS_PER_UNIT: Final = 10_000_000
FALLBACK_BASE_FEE: Final = 100_000  # stroops, used when the ledger fee can't be read
CLAIM_AND_PAY_OPS: Final = 2

NTP_SERVER: Final = "pool.ntp.org"
NTP_TIMEOUT = 3.0
RPC_TIMEOUT = 10.0
SUBMIT_TIMEOUT = 30.0
GRANT_PAGE_SIZE = 200  # Horizon maximum
MAX_GRANT_PAGES = 10
WAIT_GRANULARITY = 0.1  # seconds between clock checks while waiting for the target
COUNTDOWN_LOG_EVERY = 10.0


class Mode(StrEnum):
    BURST = "burst"
    POLL  = "poll"


class DispatchState(StrEnum):
    IDLE               = "IDLE"
    WAITING_FOR_TARGET = "WAITING_FOR_TARGET"
    FIRING             = "FIRING"
    POLLING            = "POLLING"
    STOPPED            = "STOPPED"


class OutcomeKind(StrEnum):
    ACCEPTED          = "ACCEPTED"
    SEQUENCE_CONFLICT = "SEQUENCE_CONFLICT"
    RATE_LIMITED      = "RATE_LIMITED"
    REJECTED          = "REJECTED"
    TRANSPORT_ERROR   = "TRANSPORT_ERROR"


class GateVerdict(StrEnum):
    SUFFICIENT               = "SUFFICIENT"
    INSUFFICIENT_FOR_PAYMENT = "INSUFFICIENT_FOR_PAYMENT"
    INSUFFICIENT_FOR_FEE     = "INSUFFICIENT_FOR_FEE"
    NO_ELIGIBLE_GRANT        = "NO_ELIGIBLE_GRANT"


__all__ = [
    "CLAIM_AND_PAY_OPS",
    "COUNTDOWN_LOG_EVERY",
    "DERIVATION_PATH",
    "FALLBACK_BASE_FEE",
    "GRANT_PAGE_SIZE",
    "HORIZON_URL",
    "MAX_GRANT_PAGES",
    "NATIVE_ASSET",
    "NETWORK_PASSPHRASE",
    "NTP_SERVER",
    "NTP_TIMEOUT",
    "RPC_TIMEOUT",
    "STROOPS_PER_UNIT",
    "SUBMIT_TIMEOUT",
    "WAIT_GRANULARITY",

    ######
    "DispatchState",
    "GateVerdict",
    "Mode",
    "OutcomeKind",
]
