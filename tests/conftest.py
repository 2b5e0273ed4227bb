import asyncio
import itertools
from decimal import Decimal

import pytest

from txload.accounts import AccountPool
from txload.config import LoadTestConfig
from txload.constants import TxStatus
from txload.errors import LedgerQueryError, NetworkInfoUnavailable, SequenceConflict, TransferFailure
from txload.ledger import Account, NetworkInfo, Receipt
from txload.sequence import SequenceAllocator

UNIT = 10**6  # base units per whole coin


class FakeLedger:
    """In-memory ledger implementing the Ledger protocol.

    Transfers apply at broadcast time. A sequence below the account's pending
    count (or one already used) is rejected as a conflict.
    """

    name = "fake"
    collection_gas_units = 1
    fallback_fee_rate = 50

    def __init__(self, *, fee: int = 10, rate: int | None = 10, receipt_delay: float = 0.0):
        self.fee = fee
        self.rate = rate
        self.receipt_delay = receipt_delay

        self.balances: dict[str, int] = {}
        self.sequences: dict[str, int] = {}
        self._used: dict[str, set[int]] = {}
        self._receipts: dict[str, Receipt] = {}
        self._ids = itertools.count(1)
        self._hashes = itertools.count(1)

        self.events: list[tuple] = []  # (kind, loop time, sender, sequence, tx_hash)
        self.broadcasts: list[dict] = []
        self.sequence_queries: list[str] = []
        self.fail_to: set[str] = set()  # receipt FAILED for transfers to these
        self.fail_from: set[str] = set()  # receipt FAILED for transfers from these
        self.broadcast_errors: dict[str, list[Exception]] = {}
        self.balance_errors: set[str] = set()
        self.sequence_errors: set[str] = set()
        self.network_down = False
        self.closed = False

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def account_from_secret(self, secret: str) -> Account:
        return Account(address=f"funding-{secret}", signer=secret)

    def new_account(self) -> Account:
        n = next(self._ids)
        return Account(address=f"acct-{n:04d}", signer=n)

    async def get_balance(self, address: str) -> int:
        await asyncio.sleep(0)
        if address in self.balance_errors:
            raise LedgerQueryError(f"balance {address} unavailable")
        return self.balances.get(address, 0)

    async def get_sequence(self, address: str) -> int:
        await asyncio.sleep(0)
        self.sequence_queries.append(address)
        if address in self.sequence_errors:
            raise LedgerQueryError(f"sequence {address} unavailable")
        return self.sequences.get(address, 0)

    async def fee_rate(self) -> int | None:
        return self.rate

    async def broadcast(self, account: Account, to: str, amount: int, sequence: int) -> str:
        await asyncio.sleep(0)
        sender = account.address
        self.events.append(("broadcast", self._now(), sender, sequence, None))

        queued = self.broadcast_errors.get(sender)
        if queued:
            raise queued.pop(0)

        used = self._used.setdefault(sender, set())
        if sequence < self.sequences.get(sender, 0) or sequence in used:
            raise SequenceConflict(f"nonce too low: {sequence}")
        if self.balances.get(sender, 0) < amount + self.fee:
            raise TransferFailure(f"insufficient funds for {sender}")

        used.add(sequence)
        self.sequences[sender] = max(self.sequences.get(sender, 0), sequence + 1)
        tx_hash = f"0x{next(self._hashes):064x}"

        failed = to in self.fail_to or sender in self.fail_from
        self.balances[sender] -= self.fee
        if not failed:
            self.balances[sender] -= amount
            self.balances[to] = self.balances.get(to, 0) + amount

        status = TxStatus.FAILED if failed else TxStatus.CONFIRMED
        self._receipts[tx_hash] = Receipt(tx_hash, status, len(self.broadcasts) + 1)
        self.broadcasts.append(
            {"from": sender, "to": to, "amount": amount, "sequence": sequence, "hash": tx_hash, "at": self._now()}
        )
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str) -> Receipt:
        await asyncio.sleep(self.receipt_delay)
        receipt = self._receipts[tx_hash]
        self.events.append(("receipt", self._now(), None, None, tx_hash))
        return receipt

    async def network_info(self) -> NetworkInfo:
        if self.network_down:
            raise NetworkInfoUnavailable("no route to network")
        return NetworkInfo(name="fakenet", chain_id=1337)

    def to_base_units(self, value: Decimal) -> int:
        return int(value * UNIT)

    def format_amount(self, amount: int) -> str:
        return f"{Decimal(amount) / UNIT} FAKE"

    async def aclose(self) -> None:
        self.closed = True

    def sent_by(self, address: str) -> list[dict]:
        return [b for b in self.broadcasts if b["from"] == address]


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def allocator(ledger) -> SequenceAllocator:
    return SequenceAllocator(ledger)


@pytest.fixture
def pool(ledger) -> AccountPool:
    return AccountPool.from_secret(ledger, "master")


def make_config(**kw) -> LoadTestConfig:
    base = dict(
        private_key="master",
        rpc_url="http://127.0.0.1:8545",
        num_wallets=3,
        transactions_per_wallet=2,
        interval_ms=0,
        settle_seconds=0,
        transaction_amount=Decimal("0.0001"),
    )
    base.update(kw)
    return LoadTestConfig(**base)
