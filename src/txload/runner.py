import asyncio
import logging
import signal

import httpx

from txload import constants as C
from txload.accounts import AccountPool
from txload.config import LoadTestConfig
from txload.constants import Network
from txload.dispatcher import TransactionDispatcher
from txload.errors import (
    ConfigValidation,
    EndpointUnreachable,
    ErrorKind,
    FatalError,
    InsufficientFunds,
    NetworkInfoUnavailable,
    RecoverableError,
)
from txload.funding import CollectionSummary, DistributionResult, FundCollector, FundDistributor
from txload.ledger import Ledger, connect
from txload.report import collection_lines, stats_lines
from txload.sequence import SequenceAllocator
from txload.stats import Stats

log = logging.getLogger("txload.runner")

PROBE_PAYLOADS = {
    Network.EVM: {"jsonrpc": "2.0", "method": "eth_chainId", "params": [], "id": 1},
    Network.XRPL: {"method": "server_info", "params": [{}]},
}


async def probe_endpoint(url: str, payload: dict, *, max_retries: int = 3,
                         retry_delay: float = C.PROBE_RETRY_DELAY) -> None:
    """Probe the RPC endpoint with retries until it responds."""
    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=C.RPC_TIMEOUT) as http:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                log.info("RPC endpoint responding (attempt %s/%s)", attempt, max_retries)
                return
        except httpx.HTTPError as e:
            if attempt < max_retries:
                log.info("RPC not ready yet (attempt %s/%s): %s - retrying in %ss...",
                         attempt, max_retries, e.__class__.__name__, retry_delay)
                await asyncio.sleep(retry_delay)
            else:
                raise EndpointUnreachable(f"{url} did not respond after {max_retries} attempts: {e}") from e


class LoadTest:
    """One complete run: pre-flight, fund, dispatch, and always collect."""

    def __init__(self, config: LoadTestConfig, ledger: Ledger | None = None, *, probe: bool = True):
        self.config = config
        self.ledger = ledger or connect(config)
        self.probe = probe
        self.allocator = SequenceAllocator(self.ledger)

        self.pool: AccountPool | None = None
        self.dispatcher: TransactionDispatcher | None = None
        self.distribution: DistributionResult | None = None
        self.collection: CollectionSummary | None = None
        self.stats: Stats | None = None
        self._stop_requested = False

    def stop(self) -> None:
        self._stop_requested = True
        if self.dispatcher is not None:
            self.dispatcher.stop()

    async def run(self, *, install_signal_handlers: bool = True) -> int:
        """Execute the run and map the outcome to an exit status."""
        loop = asyncio.get_running_loop()
        handled = self._install_signal_handlers(loop) if install_signal_handlers else []
        try:
            await self.execute()
        except FatalError as e:
            log.error("Error [%s]: %s", e.kind, e)
            return 1
        finally:
            for sig in handled:
                loop.remove_signal_handler(sig)
            await self.ledger.aclose()
        log.info("Load test completed successfully!")
        return 0

    async def execute(self) -> None:
        cfg = self.config
        if self.probe:
            await probe_endpoint(cfg.rpc_url, PROBE_PAYLOADS[cfg.network], max_retries=cfg.probe_retries)
        log.info("Connected to RPC: %s", cfg.rpc_url)
        await self._log_network()

        try:
            funding = self.ledger.account_from_secret(cfg.private_key)
        except ValueError as e:
            raise ConfigValidation(f"Configuration validation failed:\n- PRIVATE_KEY (private_key): {e}") from e
        log.info("Master wallet: %s", funding.address)

        try:
            balance = await self.ledger.get_balance(funding.address)
        except RecoverableError as e:
            raise FatalError(f"cannot read master balance: {e}", kind=ErrorKind.LEDGER_QUERY) from e
        log.info("Master wallet balance: %s", self.ledger.format_amount(balance))
        if balance == 0:
            raise InsufficientFunds("Master wallet has no funds. Please fund the wallet before running the load test.")

        self.pool = AccountPool(self.ledger, funding)
        self.pool.create_accounts(cfg.num_wallets)
        self.dispatcher = TransactionDispatcher(
            self.ledger,
            self.pool,
            self.allocator,
            transactions_per_account=cfg.transactions_per_wallet,
            interval_ms=cfg.interval_ms,
            amount=self.ledger.to_base_units(cfg.transaction_amount),
        )
        if self._stop_requested:
            self.dispatcher.stop()

        try:
            log.info("Distributing funds to child wallets...")
            self.distribution = await FundDistributor(self.ledger, self.allocator).distribute(self.pool)

            log.info("Waiting for fund distribution to settle...")
            await asyncio.sleep(cfg.settle_seconds)
            await self._preview_balances()

            log.info("Starting load test...")
            self.stats = await self.dispatcher.start()
            for line in stats_lines(self.stats):
                log.info(line)
        finally:
            await self._teardown()

    async def _teardown(self) -> None:
        if not self.pool:
            return
        self.collection = await FundCollector(self.ledger, self.allocator).collect_all(self.pool)
        for line in collection_lines(self.collection, self.ledger.format_amount):
            log.info(line)

    async def _log_network(self) -> None:
        try:
            info = await self.ledger.network_info()
        except NetworkInfoUnavailable as e:
            log.warning("Could not fetch network info, but continuing... (%s)", e)
            return
        log.info("Network: %s (Chain ID: %s)", info.name, info.chain_id)

    async def _preview_balances(self) -> None:
        log.info("Verifying wallet balances...")
        workers = self.pool.workers
        for i, w in enumerate(workers[:C.BALANCE_PREVIEW]):
            try:
                balance = await self.ledger.get_balance(w.address)
            except RecoverableError as e:
                log.warning("Wallet %s: balance unavailable (%s)", i + 1, e)
                continue
            log.info("Wallet %s: %s", i + 1, self.ledger.format_amount(balance))
        if len(workers) > C.BALANCE_PREVIEW:
            log.info("... and %s more wallets", len(workers) - C.BALANCE_PREVIEW)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list[signal.Signals]:
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                continue
            installed.append(sig)
        return installed

    def _on_signal(self, sig: signal.Signals) -> None:
        log.info("Received %s, stopping load test...", sig.name)
        self.stop()

    def snapshot(self) -> dict:
        d = self.dispatcher
        stats = d.stats.snapshot() if d is not None else Stats()
        return {
            "state": d.state if d is not None else C.DispatcherState.IDLE,
            "stats": stats.as_dict(),
        }

    def accounts(self) -> dict:
        if self.pool is None:
            return {"funding": None, "workers": []}
        return {
            "funding": self.pool.funding.address,
            "workers": [
                {"address": a, "next_sequence": self.allocator.peek(a)} for a in self.pool.addresses()
            ],
        }
