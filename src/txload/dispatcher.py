import asyncio
import logging

from txload import constants as C
from txload.accounts import AccountPool
from txload.constants import DispatcherState
from txload.errors import ErrorKind, FatalError, RecoverableError
from txload.ledger import Account, Ledger
from txload.sequence import SequenceAllocator
from txload.stats import Stats, StatsAggregator, TransactionRecord

log = logging.getLogger("txload.dispatcher")


def _first_fatal(eg: BaseExceptionGroup) -> FatalError | None:
    sub = eg.subgroup(FatalError)
    while isinstance(sub, BaseExceptionGroup):
        sub = sub.exceptions[0]
    return sub


class TransactionDispatcher:
    """One send loop per worker, all sharing one event loop.

    IDLE -> RUNNING -> STOPPING -> STOPPED. ``stop()`` is cooperative: loops
    notice it before their next send, in-flight sends and receipt waits are
    left to finish.

    Suspension points are the ledger calls, receipt waits and interval sleeps.
    Sequence allocation and every stats update happen between them.
    """

    def __init__(
        self,
        ledger: Ledger,
        pool: AccountPool,
        allocator: SequenceAllocator,
        *,
        transactions_per_account: int,
        interval_ms: int,
        amount: int,
    ):
        self.ledger = ledger
        self.pool = pool
        self.allocator = allocator
        self.transactions_per_account = transactions_per_account
        self.interval = interval_ms / 1000
        self.amount = amount

        self.stats = StatsAggregator()
        self.state = DispatcherState.IDLE
        self._running = False
        self._stop_requested = False

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        if self.state is DispatcherState.RUNNING:
            log.info("Stopping load test...")
            self.state = DispatcherState.STOPPING
        elif self.state is DispatcherState.IDLE:
            self._stop_requested = True
        self._running = False

    async def start(self) -> Stats:
        if self.state in (DispatcherState.RUNNING, DispatcherState.STOPPING):
            raise RuntimeError("Load test is already running")

        self.stats.reset()
        if self._stop_requested:
            self._stop_requested = False
            self.state = DispatcherState.STOPPED
            log.info("Stop requested before start, nothing sent")
            return self.stats.finish()

        self.state = DispatcherState.RUNNING
        self._running = True
        workers = self.pool.workers
        log.info(
            "Starting load test: %s transactions per wallet, %sms interval",
            self.transactions_per_account, int(self.interval * 1000),
        )
        try:
            ready = await self._initialize_sequences(workers)
            async with asyncio.TaskGroup() as tg:
                for index, account in enumerate(workers):
                    if account.address in ready:
                        tg.create_task(self._run_account(account, index, len(workers)), name=f"wallet-{index + 1}")
        except BaseExceptionGroup as eg:
            fatal = _first_fatal(eg)
            if fatal is None:
                raise
            raise fatal from eg
        finally:
            self._running = False
            self.state = DispatcherState.STOPPED
            stats = self.stats.finish()
            log.info("Load test finished: %s sent, %s confirmed, %s failed in %.2fs",
                     stats.total, stats.succeeded, stats.failed, stats.elapsed)
        return stats

    async def _initialize_sequences(self, workers: tuple[Account, ...]) -> set[str]:
        log.info("Initializing nonces for all wallets...")

        async def init(account: Account) -> str | None:
            try:
                await self.allocator.initialize(account.address)
            except RecoverableError as e:
                log.error("Could not initialize sequence for %s, skipping it: %s", account.address, e)
                return None
            return account.address

        results = await asyncio.gather(*(init(a) for a in workers))
        log.info("Nonce initialization completed")
        return {addr for addr in results if addr is not None}

    async def _run_account(self, account: Account, index: int, total: int) -> None:
        n = index + 1
        log.info("Starting transactions for wallet %s", n)

        # spread first sends across one interval
        await asyncio.sleep(index * self.interval / total)

        for i in range(self.transactions_per_account):
            if not self._running:
                break
            await self._send(account, n, i + 1)
            if i < self.transactions_per_account - 1:
                await asyncio.sleep(self.interval)

        log.info("Completed all transactions for wallet %s", n)

    async def _send(self, account: Account, wallet_no: int, tx_no: int) -> TransactionRecord | None:
        to = self.pool.funding.address
        seq = self.allocator.allocate(account.address)
        broadcast = False
        try:
            tx_hash = await self.ledger.broadcast(account, to, self.amount, seq)
            broadcast = True
            self.stats.record_broadcast()
            log.info("Wallet %s, Tx %s: %s", wallet_no, tx_no, tx_hash)
            receipt = await self.ledger.wait_for_receipt(tx_hash)
        except FatalError:
            raise
        except RecoverableError as e:
            self.stats.record_failure(broadcast=broadcast)
            log.error("Wallet %s, Transaction %s failed: %s", wallet_no, tx_no, e)
            if e.kind is ErrorKind.SEQUENCE_CONFLICT:
                await self._resync(account, wallet_no)
            return None
        except Exception:
            self.stats.record_failure(broadcast=broadcast)
            log.error("Wallet %s, Transaction %s failed unexpectedly", wallet_no, tx_no, exc_info=True)
            return None

        rec = TransactionRecord(receipt.tx_hash, to, self.amount, seq, receipt.status, receipt.block)
        self.stats.record(rec)
        if rec.status is C.TxStatus.CONFIRMED:
            log.info("Wallet %s, Tx %s confirmed in block %s", wallet_no, tx_no, rec.block)
        else:
            log.warning("Wallet %s, Tx %s failed", wallet_no, tx_no)
        return rec

    async def _resync(self, account: Account, wallet_no: int) -> None:
        log.info("Nonce issue detected for wallet %s, updating from network...", wallet_no)
        try:
            await self.allocator.resync(account.address)
        except RecoverableError as e:
            log.error("Resync for wallet %s failed: %s", wallet_no, e)
