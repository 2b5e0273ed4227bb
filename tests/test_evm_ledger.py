from decimal import Decimal

import pytest
from eth_account import Account as EthAccount
from web3 import Web3
from web3.exceptions import TimeExhausted

from txload.constants import TxStatus
from txload.errors import LedgerQueryError, NetworkInfoUnavailable, SequenceConflict, TransferFailure
from txload.ledger.evm_ledger import EvmLedger, classify_send_error, is_sequence_conflict


async def _value(v):
    if isinstance(v, Exception):
        raise v
    return v


class FakeEth:
    def __init__(self):
        self.balance = 0
        self.tx_count = 0
        self.price = Web3.to_wei(3, "gwei")
        self.chain = 31337
        self.sent = []
        self.send_error = None
        self.receipt = {"status": 1, "blockNumber": 12}

    @property
    def gas_price(self):
        return _value(self.price)

    @property
    def chain_id(self):
        return _value(self.chain)

    async def get_balance(self, address):
        return await _value(self.balance)

    async def get_transaction_count(self, address, block_identifier):
        assert block_identifier == "pending"
        return await _value(self.tx_count)

    async def send_raw_transaction(self, raw):
        if self.send_error:
            raise self.send_error
        self.sent.append(raw)
        return b"\x12" * 32

    async def wait_for_transaction_receipt(self, tx_hash, timeout, poll_latency):
        return await _value(self.receipt)


class FakeWeb3:
    def __init__(self):
        self.eth = FakeEth()
        self.provider = object()


@pytest.fixture
def w3():
    return FakeWeb3()


@pytest.fixture
def ledger(w3):
    return EvmLedger("http://unused", w3=w3)


class TestErrorClassification:
    @pytest.mark.parametrize(
        "message",
        ["nonce too low", "Nonce too high", "replacement transaction underpriced"],
    )
    def test_sequence_conflicts(self, message):
        assert is_sequence_conflict(message)
        assert isinstance(classify_send_error(ValueError(message)), SequenceConflict)

    def test_other_failures(self):
        e = classify_send_error(ValueError("insufficient funds for gas * price + value"))
        assert isinstance(e, TransferFailure)
        assert not isinstance(e, SequenceConflict)


class TestQueries:
    @pytest.mark.asyncio
    async def test_balance_and_sequence(self, w3, ledger):
        w3.eth.balance = 5 * 10**18
        w3.eth.tx_count = 9
        assert await ledger.get_balance("0xabc") == 5 * 10**18
        assert await ledger.get_sequence("0xabc") == 9

    @pytest.mark.asyncio
    async def test_query_errors_are_wrapped(self, w3, ledger):
        w3.eth.balance = OSError("refused")
        with pytest.raises(LedgerQueryError):
            await ledger.get_balance("0xabc")

    @pytest.mark.asyncio
    async def test_fee_rate_from_node(self, w3, ledger):
        assert await ledger.fee_rate() == Web3.to_wei(3, "gwei")
        w3.eth.price = 0
        assert await ledger.fee_rate() is None
        w3.eth.price = ValueError("rpc error")
        assert await ledger.fee_rate() is None

    @pytest.mark.asyncio
    async def test_fee_rate_override(self, w3):
        ledger = EvmLedger("http://unused", gas_price_gwei=Decimal("1.5"), w3=w3)
        assert await ledger.fee_rate() == 1_500_000_000

    @pytest.mark.asyncio
    async def test_network_info(self, w3, ledger):
        info = await ledger.network_info()
        assert (info.name, info.chain_id) == ("anvil", 31337)

    @pytest.mark.asyncio
    async def test_network_info_unavailable(self, w3, ledger):
        w3.eth.chain = OSError("refused")
        with pytest.raises(NetworkInfoUnavailable):
            await ledger.network_info()


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_signs_and_sends(self, w3, ledger):
        sender = ledger.new_account()
        to = EthAccount.create().address

        tx_hash = await ledger.broadcast(sender, to, 1000, 4)

        assert tx_hash == "0x" + "12" * 32
        assert len(w3.eth.sent) == 1

    @pytest.mark.asyncio
    async def test_nonce_error(self, w3, ledger):
        w3.eth.send_error = ValueError({"code": -32000, "message": "nonce too low"})
        with pytest.raises(SequenceConflict):
            await ledger.broadcast(ledger.new_account(), EthAccount.create().address, 1, 0)

    @pytest.mark.asyncio
    async def test_receipts(self, w3, ledger):
        assert (await ledger.wait_for_receipt("0x01")).status is TxStatus.CONFIRMED
        w3.eth.receipt = {"status": 0, "blockNumber": 13}
        receipt = await ledger.wait_for_receipt("0x01")
        assert (receipt.status, receipt.block) == (TxStatus.FAILED, 13)

    @pytest.mark.asyncio
    async def test_receipt_timeout(self, w3, ledger):
        w3.eth.receipt = TimeExhausted("gone")
        with pytest.raises(TransferFailure, match="no receipt"):
            await ledger.wait_for_receipt("0x01")


class TestConversions:
    def test_units(self, ledger):
        assert ledger.to_base_units(Decimal("0.0001")) == 10**14
        assert ledger.format_amount(10**18) == "1 ETH"

    def test_account_from_secret(self, ledger):
        key = "0x" + "11" * 32
        acct = ledger.account_from_secret(key)
        assert acct.address == EthAccount.from_key(key).address

    @pytest.mark.asyncio
    async def test_aclose_without_disconnect(self, ledger):
        await ledger.aclose()
