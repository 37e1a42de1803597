"""
Ledger Access

Single point of contact with the chain: reads, log queries, simulation and
signed writes from the one signing identity. Every web3 failure surfaces as
LedgerError so callers never depend on provider-specific exceptions.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from eth_abi import decode
from eth_account import Account
from eth_utils import keccak, to_checksum_address
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from custody.errors import LedgerError
from custody.intents import encode_call

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Event topics
# ---------------------------------------------------------------------------

TRANSFER_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()
PROPOSAL_EXECUTED_TOPIC = "0x" + keccak(text="ProposalExecuted(bytes32,bytes32)").hex()
PROPOSAL_DELETED_TOPIC = "0x" + keccak(text="ProposalDeleted(bytes32,bytes32)").hex()
TRANSACTIONS_PROPOSED_TOPIC = "0x" + keccak(
    text="TransactionsProposed(address,uint256,bytes32,"
         "((address,uint8,uint256,bytes)[],uint256),bytes32,bytes,string,uint256)"
).hex()

RECEIPT_TIMEOUT_SECONDS = 120


def address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


def topic_to_address(topic: Any) -> str:
    raw = _hex(topic)
    return to_checksum_address("0x" + raw[-40:])


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else "0x" + text


@dataclass(frozen=True)
class LogEntry:
    address: str
    topics: tuple[str, ...]
    data: bytes
    block_number: int
    transaction_hash: str
    log_index: int = 0


@dataclass(frozen=True)
class TransferLog:
    asset: str
    sender: str
    recipient: str
    amount: int
    block_number: int
    transaction_hash: str


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class Ledger:
    """
    Chain access for one signing account over one RPC endpoint.

    Writes are serialized through a lock and each caller decides whether to
    wait for the receipt; nothing else in the agent sends transactions.
    """

    def __init__(self, w3: Optional[Web3], account: Any):
        self.w3 = w3
        self.account = account
        self._write_lock = threading.Lock()
        self._timestamps: dict[int, int] = {}

    @classmethod
    def connect(cls, rpc_url: str, private_key: str) -> "Ledger":
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        return cls(w3, Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self.account.address

    # -- primitive reads ---------------------------------------------------

    def block_number(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except (Web3Exception, OSError, ValueError) as exc:
            raise LedgerError(f"block_number failed: {exc}") from exc

    def chain_id(self) -> int:
        try:
            return int(self.w3.eth.chain_id)
        except (Web3Exception, OSError, ValueError) as exc:
            raise LedgerError(f"chain_id failed: {exc}") from exc

    def block_timestamp_ms(self, block_number: int) -> int:
        if block_number not in self._timestamps:
            try:
                block = self.w3.eth.get_block(block_number)
            except (Web3Exception, OSError, ValueError) as exc:
                raise LedgerError(f"get_block({block_number}) failed: {exc}") from exc
            self._timestamps[block_number] = int(block["timestamp"]) * 1000
        return self._timestamps[block_number]

    def native_balance(self, address: str, block: int | str = "latest") -> int:
        try:
            return int(self.w3.eth.get_balance(to_checksum_address(address), block))
        except (Web3Exception, OSError, ValueError) as exc:
            raise LedgerError(f"get_balance({address}) failed: {exc}") from exc

    def logs(
        self,
        address: str,
        topics: Sequence[Optional[str]],
        from_block: int,
        to_block: int,
    ) -> list[LogEntry]:
        try:
            raw = self.w3.eth.get_logs({
                "address": to_checksum_address(address),
                "topics": list(topics),
                "fromBlock": from_block,
                "toBlock": to_block,
            })
        except (Web3Exception, OSError, ValueError) as exc:
            raise LedgerError(f"get_logs({address}) failed: {exc}") from exc
        return [
            LogEntry(
                address=to_checksum_address(entry["address"]),
                topics=tuple(_hex(t) for t in entry["topics"]),
                data=bytes(entry["data"]),
                block_number=int(entry["blockNumber"]),
                transaction_hash=_hex(entry["transactionHash"]),
                log_index=int(entry.get("logIndex", 0)),
            )
            for entry in raw
        ]

    def call(self, to: str, data: bytes, value: int = 0, sender: str | None = None) -> bytes:
        """eth_call; a revert raises LedgerError. Doubles as write simulation."""
        try:
            return bytes(self.w3.eth.call({
                "from": sender or self.address,
                "to": to_checksum_address(to),
                "data": "0x" + data.hex(),
                "value": value,
            }))
        except (Web3Exception, OSError, ValueError) as exc:
            raise LedgerError(f"eth_call to {to} failed: {exc}") from exc

    # -- writes --------------------------------------------------------------

    def send(self, to: str, data: bytes, value: int = 0) -> str:
        """Sign and broadcast a transaction; returns the transaction hash."""
        with self._write_lock:
            try:
                eth = self.w3.eth
                tx = {
                    "from": self.address,
                    "to": to_checksum_address(to),
                    "data": "0x" + data.hex(),
                    "value": value,
                    "nonce": eth.get_transaction_count(self.address, "pending"),
                    "chainId": eth.chain_id,
                }
                tx["gas"] = eth.estimate_gas(tx)
                base_fee = eth.get_block("latest").get("baseFeePerGas")
                if base_fee is None:
                    tx["gasPrice"] = eth.gas_price
                else:
                    priority = eth.max_priority_fee
                    tx["maxPriorityFeePerGas"] = priority
                    tx["maxFeePerGas"] = base_fee * 2 + priority
                signed = self.account.sign_transaction(tx)
                tx_hash = eth.send_raw_transaction(signed.raw_transaction)
            except (Web3Exception, OSError, ValueError) as exc:
                raise LedgerError(f"transaction to {to} failed: {exc}") from exc
        logger.info("sent transaction %s to %s", _hex(tx_hash), to)
        return _hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: float = RECEIPT_TIMEOUT_SECONDS) -> dict:
        try:
            return dict(self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout))
        except (Web3Exception, OSError, ValueError) as exc:
            raise LedgerError(f"receipt for {tx_hash} unavailable: {exc}") from exc

    def get_receipt(self, tx_hash: str) -> Optional[dict]:
        """Receipt if mined, None if not (yet) known to the node."""
        try:
            return dict(self.w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
        except (Web3Exception, OSError, ValueError) as exc:
            raise LedgerError(f"get_transaction_receipt({tx_hash}) failed: {exc}") from exc

    # -- derived helpers (built only on the primitives above) -----------------

    def read(self, address: str, signature: str, args: Sequence[Any] = (),
             returns: Sequence[str] = ("uint256",)) -> Any:
        """Call a view function; returns a single value or a tuple."""
        raw = self.call(address, encode_call(signature, args))
        try:
            values = decode(list(returns), raw)
        except Exception as exc:  # eth_abi raises several unrelated types
            raise LedgerError(f"could not decode {signature} from {address}: {exc}") from exc
        return values[0] if len(values) == 1 else values

    def send_and_confirm(self, to: str, data: bytes, value: int = 0) -> dict:
        """Send, wait for the receipt and fail on revert."""
        tx_hash = self.send(to, data, value)
        receipt = self.wait_for_receipt(tx_hash)
        if int(receipt.get("status", 0)) != 1:
            raise LedgerError(f"transaction {tx_hash} reverted")
        receipt.setdefault("transactionHash", tx_hash)
        return receipt

    def erc20_balance(self, token: str, holder: str) -> int:
        return int(self.read(token, "balanceOf(address)", [holder]))

    def erc20_allowance(self, token: str, owner: str, spender: str) -> int:
        return int(self.read(token, "allowance(address,address)", [owner, spender]))

    def erc20_decimals(self, token: str) -> int:
        return int(self.read(token, "decimals()", returns=("uint8",)))

    def transfer_logs(self, asset: str, recipient: str, from_block: int,
                      to_block: int) -> list[TransferLog]:
        transfers: list[TransferLog] = []
        for entry in self.logs(asset, [TRANSFER_TOPIC, None, address_topic(recipient)],
                               from_block, to_block):
            # ERC-721 shares the Transfer topic but indexes the token id
            if len(entry.topics) != 3 or len(entry.data) != 32:
                continue
            transfers.append(TransferLog(
                asset=to_checksum_address(asset),
                sender=topic_to_address(entry.topics[1]),
                recipient=topic_to_address(entry.topics[2]),
                amount=int.from_bytes(entry.data, "big"),
                block_number=entry.block_number,
                transaction_hash=entry.transaction_hash,
            ))
        return transfers
