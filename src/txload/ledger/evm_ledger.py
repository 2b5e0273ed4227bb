import logging
from decimal import Decimal

import aiohttp
from eth_account import Account as EthAccount
from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, Web3Exception

from txload import constants as C
from txload.errors import (
    LedgerQueryError,
    NetworkInfoUnavailable,
    SequenceConflict,
    TransferFailure,
)
from txload.ledger import Account, NetworkInfo, Receipt

log = logging.getLogger("txload.ledger.evm")

# web3 v6 surfaces JSON-RPC errors as ValueError, v7 as Web3RPCError
TRANSPORT_ERRORS = (Web3Exception, ValueError, aiohttp.ClientError, OSError)

KNOWN_CHAINS = {
    1: "mainnet",
    10: "optimism",
    324: "zksync",
    8453: "base",
    11155111: "sepolia",
    17000: "holesky",
    31337: "anvil",
    1337: "dev",
}


def is_sequence_conflict(message: str) -> bool:
    m = message.lower()
    return "nonce" in m or "replacement" in m


def classify_send_error(e: Exception) -> TransferFailure | SequenceConflict:
    message = str(e)
    if is_sequence_conflict(message):
        return SequenceConflict(message)
    return TransferFailure(message)


class EvmLedger:
    name = "evm"
    collection_gas_units = 1_000_000
    fallback_fee_rate = Web3.to_wei(20, "gwei")

    def __init__(
        self,
        rpc_url: str,
        *,
        gas_limit: int = 21000,
        gas_price_gwei: Decimal | None = None,
        receipt_timeout: float | None = C.RECEIPT_TIMEOUT,
        poll_interval: float = C.RECEIPT_POLL_INTERVAL,
        w3: AsyncWeb3 | None = None,
    ):
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.gas_limit = gas_limit
        # None means "whatever the node reports right now"
        self.gas_price = Web3.to_wei(gas_price_gwei, "gwei") if gas_price_gwei is not None else None
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self._chain_id: int | None = None

    def account_from_secret(self, secret: str) -> Account:
        acct = EthAccount.from_key(secret)
        return Account(address=acct.address, signer=acct)

    def new_account(self) -> Account:
        acct = EthAccount.create()
        return Account(address=acct.address, signer=acct)

    async def get_balance(self, address: str) -> int:
        try:
            return int(await self.w3.eth.get_balance(address))
        except TRANSPORT_ERRORS as e:
            raise LedgerQueryError(f"balance {address}: {e}") from e

    async def get_sequence(self, address: str) -> int:
        try:
            return int(await self.w3.eth.get_transaction_count(address, "pending"))
        except TRANSPORT_ERRORS as e:
            raise LedgerQueryError(f"transaction count {address}: {e}") from e

    async def fee_rate(self) -> int | None:
        if self.gas_price is not None:
            return self.gas_price
        try:
            price = int(await self.w3.eth.gas_price)
        except TRANSPORT_ERRORS as e:
            log.warning("Gas price unavailable: %s", e)
            return None
        return price or None

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self.w3.eth.chain_id)
        return self._chain_id

    async def broadcast(self, account: Account, to: str, amount: int, sequence: int) -> str:
        try:
            transaction = {
                "to": to,
                "value": amount,
                "gas": self.gas_limit,
                "gasPrice": await self.fee_rate() or self.fallback_fee_rate,
                "nonce": sequence,
                "chainId": await self.chain_id(),
            }
            signed = account.signer.sign_transaction(transaction)
            raw_transaction = getattr(signed, "raw_transaction", getattr(signed, "rawTransaction", None))
            tx_hash = await self.w3.eth.send_raw_transaction(raw_transaction)
        except TRANSPORT_ERRORS as e:
            raise classify_send_error(e) from e
        return Web3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str) -> Receipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout, poll_latency=self.poll_interval
            )
        except TimeExhausted as e:
            raise TransferFailure(f"no receipt for {tx_hash} after {self.receipt_timeout}s") from e
        except TRANSPORT_ERRORS as e:
            raise classify_send_error(e) from e
        status = C.TxStatus.CONFIRMED if receipt["status"] == 1 else C.TxStatus.FAILED
        return Receipt(tx_hash, status, int(receipt["blockNumber"]))

    async def network_info(self) -> NetworkInfo:
        try:
            chain_id = await self.chain_id()
        except TRANSPORT_ERRORS as e:
            raise NetworkInfoUnavailable(str(e)) from e
        return NetworkInfo(name=KNOWN_CHAINS.get(chain_id, "unknown"), chain_id=chain_id)

    def to_base_units(self, value: Decimal) -> int:
        return int(Web3.to_wei(value, "ether"))

    def format_amount(self, amount: int) -> str:
        return f"{Web3.from_wei(amount, 'ether')} ETH"

    async def aclose(self) -> None:
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
