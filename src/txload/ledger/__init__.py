"""Ledger capability interface.

The load-test core talks to a remote ledger only through ``Ledger``. Amounts
crossing the interface are integers in the ledger's base unit (wei, drops).
Backends translate their library and transport exceptions into
``txload.errors`` so the core never sees a library exception type.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol, TYPE_CHECKING

from txload.constants import Network, TxStatus

if TYPE_CHECKING:
    from txload.config import LoadTestConfig


@dataclass(frozen=True, slots=True)
class Account:
    address: str
    signer: Any = field(repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class Receipt:
    tx_hash: str
    status: TxStatus
    block: int | None = None

    @property
    def confirmed(self) -> bool:
        return self.status is TxStatus.CONFIRMED


@dataclass(frozen=True, slots=True)
class NetworkInfo:
    name: str
    chain_id: int | None = None


class Ledger(Protocol):
    name: str
    collection_gas_units: int
    fallback_fee_rate: int

    def account_from_secret(self, secret: str) -> Account: ...
    def new_account(self) -> Account: ...
    async def get_balance(self, address: str) -> int: ...
    async def get_sequence(self, address: str) -> int: ...
    async def fee_rate(self) -> int | None: ...
    async def broadcast(self, account: Account, to: str, amount: int, sequence: int) -> str: ...
    async def wait_for_receipt(self, tx_hash: str) -> Receipt: ...
    async def network_info(self) -> NetworkInfo: ...
    def to_base_units(self, value: Decimal) -> int: ...
    def format_amount(self, amount: int) -> str: ...
    async def aclose(self) -> None: ...


def connect(config: "LoadTestConfig") -> Ledger:
    """Build the backend selected by ``config.network``."""
    if config.network == Network.XRPL:
        from txload.ledger.xrpl_ledger import XrplLedger

        return XrplLedger(config.rpc_url, receipt_timeout=config.receipt_timeout)

    from txload.ledger.evm_ledger import EvmLedger

    return EvmLedger(
        config.rpc_url,
        gas_limit=config.gas_limit,
        gas_price_gwei=config.gas_price,
        receipt_timeout=config.receipt_timeout,
    )


__all__ = ["Account", "Ledger", "NetworkInfo", "Receipt", "connect"]
