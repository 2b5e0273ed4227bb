"""Moving value between the funding account and the worker accounts.

Distribution stops at the first failed batch and does not undo transfers that
already went out in it. Collection tolerates per-account failures and always
runs to the end.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from txload import constants as C
from txload.accounts import AccountPool
from txload.errors import (
    CollectionFailure,
    DistributionFailed,
    InsufficientFunds,
    RecoverableError,
    TransferFailure,
)
from txload.ledger import Account, Ledger
from txload.sequence import SequenceAllocator
from txload.stats import TransactionRecord

log = logging.getLogger("txload.funding")


@dataclass(frozen=True, slots=True)
class DistributionPlan:
    balance: int
    reserve: int
    worker_count: int
    share: int

    @property
    def available(self) -> int:
        return self.balance - self.reserve

    @classmethod
    def compute(cls, balance: int, worker_count: int, reserve: int, amount: int | None = None) -> "DistributionPlan":
        """Split ``balance - reserve`` evenly, dropping the remainder.

        Raises InsufficientFunds when the funding account is empty, when the
        reserve eats the whole balance, or when ``amount`` does not fit.
        """
        if balance == 0:
            raise InsufficientFunds("Master wallet has no funds to distribute")
        if worker_count <= 0:
            raise ValueError("worker_count must be > 0")
        available = balance - reserve
        if available <= 0:
            raise InsufficientFunds(f"Insufficient funds after reserving gas (balance={balance}, reserve={reserve})")

        share = available // worker_count if amount is None else amount
        if share <= 0 or share * worker_count > available:
            raise InsufficientFunds(
                f"Cannot send {share} to each of {worker_count} wallets with {available} available"
            )
        return cls(balance=balance, reserve=reserve, worker_count=worker_count, share=share)


@dataclass(slots=True)
class DistributionResult:
    plan: DistributionPlan
    transfers: list[TransactionRecord] = field(default_factory=list)


class FundDistributor:
    def __init__(
        self,
        ledger: Ledger,
        allocator: SequenceAllocator,
        *,
        batch_size: int = C.BATCH_SIZE,
        reserve_per_account: Decimal = C.GAS_RESERVE_PER_ACCOUNT,
    ):
        self.ledger = ledger
        self.allocator = allocator
        self.batch_size = batch_size
        self.reserve_per_account = reserve_per_account

    async def plan(self, pool: AccountPool, amount: int | None = None) -> DistributionPlan:
        try:
            balance = await self.ledger.get_balance(pool.funding.address)
        except RecoverableError as e:
            raise DistributionFailed(f"cannot read master balance: {e}") from e
        log.info("Master wallet balance: %s", self.ledger.format_amount(balance))
        if balance == 0:
            raise InsufficientFunds("Master wallet has no funds to distribute")
        reserve = self.ledger.to_base_units(self.reserve_per_account * len(pool))
        return DistributionPlan.compute(balance, len(pool), reserve, amount)

    async def distribute(self, pool: AccountPool, amount: int | None = None) -> DistributionResult:
        """Fund every worker in batches of ``batch_size``.

        Each batch is broadcast concurrently with pre-assigned consecutive
        sequences and must fully reach a terminal state before the next one
        starts. Any failed transfer aborts the remaining batches.
        """
        plan = await self.plan(pool, amount)
        log.info("Distributing %s to each wallet", self.ledger.format_amount(plan.share))

        funding = pool.funding
        try:
            await self.allocator.initialize(funding.address)
        except RecoverableError as e:
            raise DistributionFailed(f"cannot read master sequence: {e}") from e

        workers = pool.workers
        total = len(workers)
        result = DistributionResult(plan=plan)
        for batch_no, start in enumerate(range(0, total, self.batch_size), 1):
            batch = workers[start:start + self.batch_size]
            log.info("Processing batch %s: wallets %s-%s", batch_no, start + 1, start + len(batch))

            sequences = self.allocator.allocate_range(funding.address, len(batch))
            outcomes = await asyncio.gather(
                *(
                    self._fund(funding, w, plan.share, seq, start + i, total)
                    for i, (w, seq) in enumerate(zip(batch, sequences))
                ),
                return_exceptions=True,
            )

            failures: list[RecoverableError] = []
            for outcome in outcomes:
                if isinstance(outcome, RecoverableError):
                    failures.append(outcome)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    result.transfers.append(outcome)

            if failures:
                raise DistributionFailed(
                    f"batch {batch_no}: {len(failures)}/{len(batch)} funding transfers failed ({failures[0]})",
                    failures=failures,
                )
            log.info("Batch %s completed", batch_no)

        log.info("Fund distribution completed")
        return result

    async def _fund(self, funding: Account, worker: Account, amount: int, sequence: int,
                    index: int, total: int) -> TransactionRecord:
        try:
            tx_hash = await self.ledger.broadcast(funding, worker.address, amount, sequence)
            log.info("Sent funds to wallet %s/%s: %s", index + 1, total, tx_hash)
            receipt = await self.ledger.wait_for_receipt(tx_hash)
        except RecoverableError as e:
            log.error("Failed to send funds to wallet %s: %s", index + 1, e)
            raise

        if not receipt.confirmed:
            log.error("Funding transfer to wallet %s failed on ledger: %s", index + 1, tx_hash)
            raise TransferFailure(f"funding transfer {tx_hash} to wallet {index + 1} failed")
        log.info("Confirmed funds for wallet %s/%s", index + 1, total)
        return TransactionRecord(tx_hash, worker.address, amount, sequence, receipt.status, receipt.block)


@dataclass(frozen=True, slots=True)
class CollectionResult:
    address: str
    success: bool
    amount: int = 0
    tx_hash: str | None = None
    error: str | None = None


@dataclass(slots=True)
class CollectionSummary:
    successful: int
    total: int
    collected: int
    final_balance: int | None
    results: list[CollectionResult] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.total - self.successful


class FundCollector:
    def __init__(self, ledger: Ledger, allocator: SequenceAllocator):
        self.ledger = ledger
        self.allocator = allocator

    async def estimated_cost(self) -> int:
        rate = None
        try:
            rate = await self.ledger.fee_rate()
        except RecoverableError as e:
            log.warning("Fee data unavailable, using fallback rate: %s", e)
        if rate is None:
            rate = self.ledger.fallback_fee_rate
        return self.ledger.collection_gas_units * rate

    async def collect_all(self, pool: AccountPool) -> CollectionSummary:
        """Sweep every worker back to the funding account, all at once.

        Per-account errors are logged and counted as failed collections; they
        never stop the sibling sweeps.
        """
        log.info("Collecting remaining funds from all wallets...")
        workers = pool.workers
        results = await asyncio.gather(
            *(self._collect(pool.funding, w, i) for i, w in enumerate(workers))
        )

        successful = sum(1 for r in results if r.success)
        collected = sum(r.amount for r in results if r.success)

        final_balance: int | None
        try:
            final_balance = await self.ledger.get_balance(pool.funding.address)
        except RecoverableError as e:
            log.warning("Could not read final master balance: %s", e)
            final_balance = None

        return CollectionSummary(
            successful=successful,
            total=len(workers),
            collected=collected,
            final_balance=final_balance,
            results=list(results),
        )

    async def _collect(self, funding: Account, account: Account, index: int) -> CollectionResult:
        n = index + 1
        try:
            balance = await self.ledger.get_balance(account.address)
            if balance == 0:
                log.info("Wallet %s: No funds to collect", n)
                return CollectionResult(account.address, True)

            cost = await self.estimated_cost()
            if balance <= cost:
                log.info("Wallet %s: Balance too low to cover gas (%s)", n, self.ledger.format_amount(balance))
                return CollectionResult(account.address, True)

            amount = balance - cost
            await self.allocator.initialize(account.address)
            seq = self.allocator.allocate(account.address)
            tx_hash = await self.ledger.broadcast(account, funding.address, amount, seq)
            log.info("Wallet %s: Collecting %s - %s", n, self.ledger.format_amount(amount), tx_hash)

            receipt = await self.ledger.wait_for_receipt(tx_hash)
            if not receipt.confirmed:
                raise CollectionFailure(f"sweep {tx_hash} failed on ledger")
        except RecoverableError as e:
            log.error("Wallet %s: Collection error - %s", n, e)
            return CollectionResult(account.address, False, error=str(e))
        except Exception as e:
            log.error("Wallet %s: Collection failed unexpectedly", n, exc_info=True)
            return CollectionResult(account.address, False, error=f"{type(e).__name__}: {e}")

        log.info("Wallet %s: Collection confirmed", n)
        return CollectionResult(account.address, True, amount, tx_hash)
