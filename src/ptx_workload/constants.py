from enum import StrEnum


class TxType(StrEnum):
    ACCOUNT_SET = "AccountSet"
    PAYMENT     = "Payment"


class TxState(StrEnum):
    PENDING   = "PENDING"
    INCLUDED  = "INCLUDED"
    REJECTED  = "REJECTED"
    TIMED_OUT = "TIMED_OUT"


class DispatchState(StrEnum):
    SUBMITTED     = "SUBMITTED"
    REJECTED      = "REJECTED"
    FAILED        = "FAILED"
    NOT_ATTEMPTED = "NOT_ATTEMPTED"


TERMINAL_STATE = {TxState.INCLUDED, TxState.REJECTED, TxState.TIMED_OUT}

# XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
TXN_HASH_PREFIX = bytes.fromhex("54584E00")

MAX_PAYLOAD_BYTES = 1024
DEFAULT_FEE_DROPS = 10
DEFAULT_TRANSFER_DROPS = 1_000_000
RPC_TIMEOUT = 2.0
SUBMIT_TIMEOUT = 20.0
POLL_INTERVAL = 0.5
CONFIRM_TIMEOUT = 60.0
QUEUE_DEPTH = 4

__all__ = [
    "CONFIRM_TIMEOUT",
    "DEFAULT_FEE_DROPS",
    "DEFAULT_TRANSFER_DROPS",
    "MAX_PAYLOAD_BYTES",
    "POLL_INTERVAL",
    "QUEUE_DEPTH",
    "RPC_TIMEOUT",
    "SUBMIT_TIMEOUT",
    "TERMINAL_STATE",
    "TXN_HASH_PREFIX",

    ######
    "DispatchState",
    "TxState",
    "TxType",
]
