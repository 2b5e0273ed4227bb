from decimal import Decimal
from enum import StrEnum
from typing import Final


class TxStatus(StrEnum):
    CONFIRMED = "CONFIRMED"
    FAILED    = "FAILED"


class DispatcherState(StrEnum):
    IDLE     = "IDLE"
    RUNNING  = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED  = "STOPPED"


class Network(StrEnum):
    EVM  = "evm"
    XRPL = "xrpl"


# Funding
BATCH_SIZE: Final = 20
GAS_RESERVE_PER_ACCOUNT: Final = Decimal("0.01")  # whole units, e.g. ETH
BALANCE_PREVIEW: Final = 3  # worker balances logged after distribution

# Dispatch
DEFAULT_TRANSACTION_AMOUNT: Final = Decimal("0.0001")

# Timeouts (seconds)
RECEIPT_POLL_INTERVAL = 0.5
RECEIPT_TIMEOUT = 120.0
RPC_TIMEOUT = 5.0
PROBE_RETRY_DELAY = 2.0
SETTLE_SECONDS = 5.0

__all__ = [
    "BALANCE_PREVIEW",
    "BATCH_SIZE",
    "DEFAULT_TRANSACTION_AMOUNT",
    "GAS_RESERVE_PER_ACCOUNT",
    "PROBE_RETRY_DELAY",
    "RECEIPT_POLL_INTERVAL",
    "RECEIPT_TIMEOUT",
    "RPC_TIMEOUT",
    "SETTLE_SECONDS",

    ######
    "DispatcherState",
    "Network",
    "TxStatus",
]
