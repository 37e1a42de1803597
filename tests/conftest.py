"""
Shared fixtures: an in-memory ledger double and a few fixed addresses.

FakeLedger overrides only the Ledger primitives; every derived helper
(read, erc20_balance, transfer_logs, send_and_confirm) runs the real code.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

import pytest
from eth_abi import encode
from eth_account import Account
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from custody.errors import LedgerError
from custody.ledger import TRANSFER_TOPIC, Ledger, LogEntry, address_topic

AGENT_KEY = "0x" + "11" * 32
AGENT = Account.from_key(AGENT_KEY).address
VAULT = to_checksum_address("0x" + "5a" * 20)
GOVERNOR = to_checksum_address("0x" + "60" * 20)
ORACLE = to_checksum_address("0x" + "0c" * 20)
USDC = to_checksum_address("0x" + "a0" * 20)
WETH = to_checksum_address("0x" + "e0" * 20)
ROUTER = to_checksum_address("0x" + "e5" * 20)
CTF = to_checksum_address("0x4d97dcd97ec945f40cf65f87097ace5ea0476045")
STRANGER = to_checksum_address("0x" + "99" * 20)


def selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


class FakeLedger(Ledger):
    """Scriptable chain: reads keyed by (address, selector), logs in a list."""

    def __init__(self, head: int = 100):
        super().__init__(None, Account.from_key(AGENT_KEY))
        self.head = head
        self.native: dict[str, dict[int, int]] = {}
        self.entries: list[LogEntry] = []
        self.reads: dict[tuple[str, bytes], bytes] = {}
        self.reverts: dict[tuple[str, bytes], str] = {}
        self.sent: list[tuple[str, bytes, int]] = []
        self.receipts: dict[str, dict] = {}
        self.calls: list[tuple[str, bytes]] = []
        self.fail_logs = False
        self.receipt_status = 1

    # -- scripting -----------------------------------------------------------

    def set_read(self, address: str, signature: str, values: Sequence[Any],
                 types: Sequence[str] = ("uint256",)) -> None:
        self.reads[(address.lower(), selector(signature))] = encode(list(types), list(values))

    def revert(self, address: str, signature: str, reason: str = "execution reverted") -> None:
        self.reverts[(address.lower(), selector(signature))] = reason

    def set_native(self, address: str, block: int, balance: int) -> None:
        self.native.setdefault(address.lower(), {})[block] = balance

    def add_transfer(self, token: str, sender: str, recipient: str, amount: int,
                     block: int, tx_hash: str) -> None:
        self.entries.append(LogEntry(
            address=to_checksum_address(token),
            topics=(TRANSFER_TOPIC, address_topic(sender), address_topic(recipient)),
            data=amount.to_bytes(32, "big"),
            block_number=block,
            transaction_hash=tx_hash,
            log_index=len(self.entries),
        ))

    def add_log(self, address: str, topics: Sequence[str], data: bytes, block: int,
                tx_hash: str) -> None:
        self.entries.append(LogEntry(
            address=to_checksum_address(address),
            topics=tuple(topics),
            data=data,
            block_number=block,
            transaction_hash=tx_hash,
            log_index=len(self.entries),
        ))

    # -- primitives ----------------------------------------------------------

    def chain_id(self) -> int:
        return 137

    def block_number(self) -> int:
        return self.head

    def block_timestamp_ms(self, block_number: int) -> int:
        return 1_700_000_000_000 + block_number * 2_000

    def native_balance(self, address: str, block: int | str = "latest") -> int:
        history = self.native.get(address.lower(), {})
        at = self.head if block == "latest" else block
        known = [b for b in history if b <= at]
        return history[max(known)] if known else 0

    def logs(self, address: str, topics: Sequence[Optional[str]], from_block: int,
             to_block: int) -> list[LogEntry]:
        if self.fail_logs:
            raise LedgerError("get_logs failed: upstream timeout")
        out = []
        for entry in self.entries:
            if entry.address.lower() != address.lower():
                continue
            if not from_block <= entry.block_number <= to_block:
                continue
            if any(t is not None and (i >= len(entry.topics) or entry.topics[i].lower() != t.lower())
                   for i, t in enumerate(topics)):
                continue
            out.append(entry)
        return out

    def call(self, to: str, data: bytes, value: int = 0, sender: str | None = None) -> bytes:
        key = (to.lower(), bytes(data[:4]))
        self.calls.append((to, bytes(data)))
        if key in self.reverts:
            raise LedgerError(f"eth_call to {to} failed: {self.reverts[key]}")
        if key not in self.reads:
            raise LedgerError(f"eth_call to {to} failed: no code")
        return self.reads[key]

    def send(self, to: str, data: bytes, value: int = 0) -> str:
        tx_hash = "0x" + f"{len(self.sent) + 1:064x}"
        self.sent.append((to, bytes(data), value))
        self.receipts[tx_hash] = {"status": self.receipt_status, "transactionHash": tx_hash}
        return tx_hash

    def wait_for_receipt(self, tx_hash: str, timeout: float = 0) -> dict:
        return dict(self.receipts[tx_hash])

    def get_receipt(self, tx_hash: str) -> Optional[dict]:
        receipt = self.receipts.get(tx_hash)
        return dict(receipt) if receipt is not None else None


def script_governor(ledger: FakeLedger, bond: int = 0, collateral: str = USDC,
                    rules: str = "Funds may be withdrawn to the agent.") -> None:
    """Make GOVERNOR answer the oracle-context reads."""
    ledger.set_read(GOVERNOR, "collateral()", [collateral], ("address",))
    ledger.set_read(GOVERNOR, "bondAmount()", [bond])
    ledger.set_read(GOVERNOR, "optimisticOracleV3()", [ORACLE], ("address",))
    ledger.set_read(GOVERNOR, "rules()", [rules], ("string",))
    ledger.set_read(GOVERNOR, "identifier()", [b"ASSERT_TRUTH".ljust(32, b"\0")], ("bytes32",))
    ledger.set_read(GOVERNOR, "liveness()", [7200], ("uint64",))
    ledger.set_read(ORACLE, "getMinimumBond(address)", [0])


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()
