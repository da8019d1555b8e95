from typing import Final
from enum import StrEnum

# Well-known development funder, endowed in every dev/local chain spec.
DEV_FUNDER_URI: Final = "//Alice"

# Generic substrate SS58 prefix
SS58_FORMAT: Final = 42

# sr25519 public keys and the AccountId32 they map to
ADDRESS_LEN: Final = 32

# Key derivation: fixed seed width, versioned personalisation
SEED_WIDTH: Final = 32
KDF_VERSION: Final = 1
KDF_PERSON: Final = b"stakepop-kdf-v1"


class TxState(StrEnum):
    CREATED   = "CREATED"
    SUBMITTED = "SUBMITTED"
    INCLUDED  = "INCLUDED"
    FINALIZED = "FINALIZED"
    FAILED    = "FAILED"
    TIMED_OUT = "TIMED_OUT"


class Confirmation(StrEnum):
    INCLUDED  = "included"
    FINALIZED = "finalized"


class Stage(StrEnum):
    ACCOUNTS = "accounts"
    FUNDING  = "funding"
    BOND     = "bond"
    ROLE     = "role"
    STATE    = "state"


TERMINAL_STATES: Final = frozenset({TxState.FINALIZED, TxState.FAILED, TxState.TIMED_OUT})

# States at which a wait for a given confirmation level is satisfied
REACHED: Final = {
    Confirmation.INCLUDED: frozenset({TxState.INCLUDED, TxState.FINALIZED}),
    Confirmation.FINALIZED: frozenset({TxState.FINALIZED}),
}

# Default per-account funding is ExistentialDeposit * FUND_MULTIPLIER
FUND_MULTIPLIER: Final = 10
DEFAULT_NUMBER: Final = 10
DEFAULT_NOMINATIONS: Final = 6
DEFAULT_PARACHAIN_ID: Final = 2000
STORAGE_PAGE_SIZE: Final = 100
MAX_CONCURRENCY: Final = 8
FINALITY_TIMEOUT: Final = 120.0
RPC_TIMEOUT: Final = 10.0
# A blocked status read re-checks for abandonment this often
WATCH_POLL_INTERVAL: Final = 1.0

__all__ = [
    "ADDRESS_LEN",
    "DEFAULT_NOMINATIONS",
    "DEFAULT_NUMBER",
    "DEFAULT_PARACHAIN_ID",
    "DEV_FUNDER_URI",
    "FINALITY_TIMEOUT",
    "FUND_MULTIPLIER",
    "KDF_PERSON",
    "KDF_VERSION",
    "MAX_CONCURRENCY",
    "REACHED",
    "RPC_TIMEOUT",
    "SEED_WIDTH",
    "SS58_FORMAT",
    "STORAGE_PAGE_SIZE",
    "TERMINAL_STATES",
    "WATCH_POLL_INTERVAL",

    ######
    "Confirmation",
    "Stage",
    "TxState",
]
