import asyncio
import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.constants import XRPLException
from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import sign
from xrpl.models.requests import AccountInfo, Fee, ServerInfo, ServerState, SubmitOnly, Tx
from xrpl.models.transactions import Payment
from xrpl.utils import drops_to_xrp, xrp_to_drops
from xrpl.wallet import Wallet

from txload import constants as C
from txload.errors import (
    LedgerQueryError,
    NetworkInfoUnavailable,
    SequenceConflict,
    TransferFailure,
)
from txload.ledger import Account, NetworkInfo, Receipt

log = logging.getLogger("txload.ledger.xrpl")

HORIZON = 15  # Payments expire if not validated within 15 ledgers
GRACE = 2
MAX_FEE_DROPS = 1000  # Cap to keep escalation from draining accounts (base is 10)
ACCEPTED = {"tesSUCCESS", "terQUEUED"}
SEQUENCE_CONFLICTS = {"tefPAST_SEQ", "terPRE_SEQ"}

TRANSPORT_ERRORS = (XRPLException, httpx.HTTPError, OSError)


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def txid_from_signed_blob(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


def spendable(balance: int, owner_count: int, reserve_base: int, reserve_inc: int) -> int:
    """Drops an account can actually send; the reserve is locked."""
    return max(0, balance - reserve_base - owner_count * reserve_inc)


@dataclass(frozen=True, slots=True)
class FeeLevels:
    """Drops from the ``fee`` command. Changes every ledger, never cache it."""

    base: int
    minimum: int
    open_ledger: int
    queue_size: int
    max_queue_size: int

    @classmethod
    def parse(cls, result: dict) -> "FeeLevels":
        drops = result["drops"]
        return cls(
            base=int(drops["base_fee"]),
            minimum=int(drops["minimum_fee"]),
            open_ledger=int(drops["open_ledger_fee"]),
            queue_size=int(result["current_queue_size"]),
            max_queue_size=int(result["max_queue_size"]),
        )

    @property
    def escalated(self) -> bool:
        return self.minimum > self.base


def classify_engine_result(engine_result: str, message: str = "") -> None:
    """Raise for a submit result that never reached the ledger."""
    if engine_result in ACCEPTED or engine_result.startswith("tec"):
        # tec* claims a fee and consumes the sequence; the receipt reports the failure
        return
    detail = f"{engine_result}: {message}" if message else engine_result
    if engine_result in SEQUENCE_CONFLICTS:
        raise SequenceConflict(detail)
    raise TransferFailure(detail)


class XrplLedger:
    name = "xrpl"
    collection_gas_units = 2  # fee headroom for escalation between estimate and submit
    fallback_fee_rate = 10  # drops

    def __init__(
        self,
        rpc_url: str,
        *,
        receipt_timeout: float | None = C.RECEIPT_TIMEOUT,
        poll_interval: float = C.RECEIPT_POLL_INTERVAL,
        client: AsyncJsonRpcClient | None = None,
    ):
        self.client = client or AsyncJsonRpcClient(rpc_url)
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        # tx hash -> LastLedgerSequence, for expiry while waiting on a receipt
        self._last_ledger: dict[str, int] = {}
        # sender -> lock held from fee lookup through submit
        self._submit_locks: dict[str, asyncio.Lock] = {}

    async def _rpc(self, req, *, t=C.RPC_TIMEOUT):
        try:
            return await asyncio.wait_for(self.client.request(req), timeout=t)
        except TRANSPORT_ERRORS as e:
            raise LedgerQueryError(f"{req.method} failed: {e}") from e

    def account_from_secret(self, secret: str) -> Account:
        w = Wallet.from_seed(secret)
        return Account(address=w.address, signer=w)

    def new_account(self) -> Account:
        w = Wallet.create()
        return Account(address=w.address, signer=w)

    async def _validated_ledger(self) -> dict:
        ss = await self._rpc(ServerState())
        try:
            return ss.result["state"]["validated_ledger"]
        except KeyError as e:
            raise LedgerQueryError(f"server has no validated ledger (missing {e})") from e

    async def _account_data(self, address: str, **kw) -> dict | None:
        r = await self._rpc(AccountInfo(account=address, ledger_index="current", **kw))
        if not r.is_successful():
            if r.result.get("error") == "actNotFound":
                return None
            raise LedgerQueryError(f"account_info {address}: {r.result.get('error_message') or r.result}")
        return r.result

    async def get_balance(self, address: str) -> int:
        result = await self._account_data(address)
        if result is None:
            return 0
        vl = await self._validated_ledger()
        try:
            data = result["account_data"]
            return spendable(
                int(data["Balance"]),
                int(data.get("OwnerCount", 0)),
                int(vl["reserve_base"]),
                int(vl["reserve_inc"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerQueryError(f"malformed balance data for {address}: {e!r}") from e

    async def get_sequence(self, address: str) -> int:
        result = await self._account_data(address, queue=True)
        if result is None:
            raise LedgerQueryError(f"account {address} does not exist")
        seq = int(result["account_data"]["Sequence"])
        highest = result.get("queue_data", {}).get("highest_sequence")
        if highest is not None:
            seq = max(seq, int(highest) + 1)
        return seq

    async def fee_levels(self) -> FeeLevels:
        r = await self._rpc(Fee())
        return FeeLevels.parse(r.result)

    async def fee_rate(self) -> int | None:
        try:
            fl = await self.fee_levels()
        except (LedgerQueryError, KeyError) as e:
            log.warning("Fee data unavailable: %s", e)
            return None
        if fl.escalated:
            log.warning("Queue fees escalated: minimum=%s open_ledger=%s base=%s (queue %s/%s)",
                        fl.minimum, fl.open_ledger, fl.base, fl.queue_size, fl.max_queue_size)
        return min(fl.minimum, MAX_FEE_DROPS)

    def _submit_lock(self, address: str) -> asyncio.Lock:
        lock = self._submit_locks.get(address)
        if lock is None:
            lock = self._submit_locks[address] = asyncio.Lock()
        return lock

    async def broadcast(self, account: Account, to: str, amount: int, sequence: int) -> str:
        """Sign and submit one Payment.

        Submits from one sender are serialized on a FIFO lock taken before the
        first await, so callers that start in sequence order reach rippled in
        sequence order. A higher sequence arriving first would get terPRE_SEQ.
        """
        async with self._submit_lock(account.address):
            return await self._sign_and_submit(account, to, amount, sequence)

    async def _sign_and_submit(self, account: Account, to: str, amount: int, sequence: int) -> str:
        wallet: Wallet = account.signer
        fee = await self.fee_rate() or self.fallback_fee_rate
        try:
            lls = int((await self._validated_ledger())["seq"]) + HORIZON
        except LedgerQueryError as e:
            raise TransferFailure(str(e)) from e

        tx = Payment(
            account=account.address,
            destination=to,
            amount=str(amount),
            sequence=sequence,
            fee=str(fee),
            last_ledger_sequence=lls,
        ).to_xrpl()
        if tx.get("Flags") == 0:
            del tx["Flags"]
        tx["SigningPubKey"] = wallet.public_key

        signing_blob = encode_for_signing(tx)
        to_sign = signing_blob if isinstance(signing_blob, str) else signing_blob.hex()
        tx["TxnSignature"] = sign(to_sign, wallet.private_key)
        signed_blob_hex = encode(tx)
        tx_hash = txid_from_signed_blob(signed_blob_hex)

        try:
            res = await self._rpc(SubmitOnly(tx_blob=signed_blob_hex))
        except LedgerQueryError as e:
            raise TransferFailure(str(e)) from e
        er = res.result.get("engine_result", res.result.get("error", "unknown"))
        classify_engine_result(er, res.result.get("engine_result_message", ""))

        srv_txid = res.result.get("tx_json", {}).get("hash")
        if isinstance(srv_txid, str) and srv_txid:
            tx_hash = srv_txid
        self._last_ledger[tx_hash] = lls
        log.debug("submitted %s seq=%s er=%s", tx_hash, sequence, er)
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str) -> Receipt:
        """Poll until validated, expired past LastLedgerSequence, or timed out."""
        lls = self._last_ledger.get(tx_hash)
        try:
            async with asyncio.timeout(self.receipt_timeout):
                while True:
                    r = await self._rpc(Tx(transaction=tx_hash))
                    result = r.result
                    if result.get("validated"):
                        meta_result = result["meta"]["TransactionResult"]
                        status = C.TxStatus.CONFIRMED if meta_result == "tesSUCCESS" else C.TxStatus.FAILED
                        return Receipt(tx_hash, status, int(result["ledger_index"]))
                    if lls is not None:
                        latest = int((await self._validated_ledger())["seq"])
                        if latest > lls + GRACE:
                            log.debug("%s expired at ledger %s (lls %s)", tx_hash, latest, lls)
                            return Receipt(tx_hash, C.TxStatus.FAILED, None)
                    await asyncio.sleep(self.poll_interval)
        except TimeoutError as e:
            raise TransferFailure(f"no validation for {tx_hash} after {self.receipt_timeout}s") from e
        except LedgerQueryError as e:
            raise TransferFailure(str(e)) from e
        finally:
            self._last_ledger.pop(tx_hash, None)

    async def network_info(self) -> NetworkInfo:
        try:
            r = await self._rpc(ServerInfo())
            info = r.result["info"]
        except (LedgerQueryError, KeyError) as e:
            raise NetworkInfoUnavailable(str(e)) from e
        network_id = info.get("network_id")
        return NetworkInfo(name=f"xrpl ({info.get('build_version', 'unknown')})",
                           chain_id=int(network_id) if network_id is not None else None)

    def to_base_units(self, value: Decimal) -> int:
        return int(xrp_to_drops(value))

    def format_amount(self, amount: int) -> str:
        return f"{drops_to_xrp(str(amount))} XRP"

    async def aclose(self) -> None:
        # AsyncJsonRpcClient opens a connection per request
        return None
