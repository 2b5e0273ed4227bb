import pytest

from conftest import UNIT, FakeLedger
from txload.accounts import AccountPool
from txload.funding import FundCollector
from txload.report import collection_lines
from txload.sequence import SequenceAllocator


@pytest.fixture
def collector(ledger, allocator):
    return FundCollector(ledger, allocator)


class TestEstimatedCost:
    @pytest.mark.asyncio
    async def test_uses_fee_rate(self, ledger, collector):
        ledger.rate = 7
        assert await collector.estimated_cost() == 7

    @pytest.mark.asyncio
    async def test_falls_back_when_rate_unknown(self, ledger, collector):
        ledger.rate = None
        assert await collector.estimated_cost() == ledger.fallback_fee_rate


class TestCollectAll:
    @pytest.mark.asyncio
    async def test_sweeps_everything_above_cost(self, ledger, pool, collector):
        workers = pool.create_accounts(3)
        for w in workers:
            ledger.balances[w.address] = UNIT

        summary = await collector.collect_all(pool)

        assert (summary.successful, summary.total, summary.failed) == (3, 3, 0)
        assert summary.collected == 3 * (UNIT - 10)
        assert summary.final_balance == 3 * (UNIT - 10)
        assert all(ledger.balances[w.address] == 0 for w in workers)

    @pytest.mark.asyncio
    async def test_dust_and_empty_accounts_succeed_with_nothing(self, ledger, pool, collector):
        dust, empty, rich = pool.create_accounts(3)
        ledger.balances[dust.address] = 10  # exactly the cost
        ledger.balances[rich.address] = 1000

        summary = await collector.collect_all(pool)

        assert summary.successful == 3
        assert summary.collected == 990
        assert summary.final_balance == 990
        assert [b["from"] for b in ledger.broadcasts] == [rich.address]
        by_addr = {r.address: r for r in summary.results}
        assert by_addr[dust.address].amount == 0
        assert by_addr[empty.address].tx_hash is None

    @pytest.mark.asyncio
    async def test_per_account_errors_are_isolated(self, ledger, pool, collector):
        bad_balance, bad_receipt, good = pool.create_accounts(3)
        for w in (bad_balance, bad_receipt, good):
            ledger.balances[w.address] = 1000
        ledger.balance_errors.add(bad_balance.address)
        ledger.fail_from.add(bad_receipt.address)

        summary = await collector.collect_all(pool)

        assert (summary.successful, summary.failed) == (1, 2)
        assert summary.collected == 990
        errors = {r.address: r.error for r in summary.results if not r.success}
        assert set(errors) == {bad_balance.address, bad_receipt.address}
        assert "failed on ledger" in errors[bad_receipt.address]

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_abort_siblings(self):
        class UnsyncedLedger(FakeLedger):
            broken: str | None = None

            async def get_balance(self, address):
                if address == self.broken:
                    raise KeyError("validated_ledger")
                return await super().get_balance(address)

        ledger = UnsyncedLedger()
        pool = AccountPool.from_secret(ledger, "master")
        broken, *others = pool.create_accounts(3)
        ledger.broken = broken.address
        for w in others:
            ledger.balances[w.address] = 1000

        summary = await FundCollector(ledger, SequenceAllocator(ledger)).collect_all(pool)

        assert (summary.successful, summary.failed, summary.total) == (2, 1, 3)
        assert summary.collected == 2 * 990
        assert summary.final_balance == 2 * 990
        failed = next(r for r in summary.results if not r.success)
        assert failed.address == broken.address
        assert "KeyError" in failed.error

    @pytest.mark.asyncio
    async def test_collects_with_fresh_sequence(self, ledger, pool, allocator, collector):
        (w,) = pool.create_accounts(1)
        ledger.balances[w.address] = 1000
        ledger.sequences[w.address] = 4
        await allocator.initialize(w.address)
        allocator.allocate_range(w.address, 10)  # stale local cache

        await collector.collect_all(pool)

        assert ledger.sent_by(w.address)[0]["sequence"] == 4

    @pytest.mark.asyncio
    async def test_final_balance_unavailable(self, ledger, pool, collector):
        pool.create_accounts(2)
        ledger.balance_errors.add(pool.funding.address)

        summary = await collector.collect_all(pool)

        assert summary.final_balance is None
        assert "- Master wallet final balance: unavailable" in collection_lines(summary)

    @pytest.mark.asyncio
    async def test_summary_lines(self, ledger, pool, collector):
        (w,) = pool.create_accounts(1)
        ledger.balances[w.address] = UNIT + 10

        summary = await collector.collect_all(pool)
        lines = collection_lines(summary, ledger.format_amount)

        assert "- Successful collections: 1/1" in lines
        assert "- Total collected: 1 FAKE" in lines
