"""
Signal Detector

Polls the ledger for new blocks and turns vault balance changes and governor
proposal events into an ordered list of signals. A block range is processed
atomically: either every query for the range succeeds and the cursor moves to
the head, or DetectionError is raised and nothing is committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from eth_utils import to_checksum_address

from custody.errors import DetectionError, LedgerError
from custody.intents import ZERO_ADDRESS
from custody.ledger import (
    PROPOSAL_DELETED_TOPIC,
    PROPOSAL_EXECUTED_TOPIC,
    Ledger,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------

class SignalKind(str, Enum):
    ASSET_DEPOSIT = "asset_deposit"
    NATIVE_DEPOSIT = "native_deposit"
    TIMER = "timer"
    BALANCES = "balances"
    PRICE_TRIGGER = "price_trigger"
    TIMELOCK_TRIGGER = "timelock_trigger"
    SOURCE_TRADE_OBSERVED = "source_trade_observed"
    PROPOSAL_EXECUTED = "proposal_executed"
    PROPOSAL_DELETED = "proposal_deleted"
    AGENT_STATE = "agent_state"


DEPOSIT_KINDS = frozenset({SignalKind.ASSET_DEPOSIT, SignalKind.NATIVE_DEPOSIT})


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    asset: Optional[str] = None
    amount: Optional[int] = None
    block_number: Optional[int] = None
    transaction_hash: Optional[str] = None
    sender: Optional[str] = None
    timestamp_ms: Optional[int] = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_deposit(self) -> bool:
        return self.kind in DEPOSIT_KINDS

    @property
    def anchor_id(self) -> str:
        """Stable identifier used as a timelock anchor for deposits."""
        return self.transaction_hash or f"block:{self.block_number}:{self.asset}"

    def as_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind.value}
        for key in ("asset", "amount", "block_number", "transaction_hash",
                    "sender", "timestamp_ms"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        out.update(self.data)
        return out


@dataclass
class DetectionResult:
    signals: list[Signal]
    cursor: Optional[int]


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------

class SignalDetector:
    """
    Diffs tracked-asset transfers and the vault's native balance against a
    block cursor. The native baseline is committed together with the cursor.
    """

    def __init__(
        self,
        ledger: Ledger,
        vault: str,
        tracked_assets: Iterable[str] = (),
        watch_native_balance: bool = True,
        governor: str | None = None,
    ):
        self.ledger = ledger
        self.vault = to_checksum_address(vault)
        self.tracked_assets: list[str] = []
        for asset in tracked_assets:
            self.track(asset)
        self.watch_native_balance = watch_native_balance
        self.governor = to_checksum_address(governor) if governor else None
        self.last_native_balance: Optional[int] = None

    def track(self, asset: str) -> None:
        asset = to_checksum_address(asset)
        if asset not in self.tracked_assets:
            self.tracked_assets.append(asset)

    def prime(self, block: int) -> None:
        """Set the native baseline at ``block`` without emitting signals."""
        if not self.watch_native_balance:
            return
        try:
            self.last_native_balance = self.ledger.native_balance(self.vault, block)
        except LedgerError as exc:
            raise DetectionError(f"Failed to prime native balance: {exc}") from exc

    def detect(self, cursor: Optional[int]) -> DetectionResult:
        """
        Detect changes in ``(cursor, head]``.

        Returns:
            DetectionResult with the signals and the new cursor. The cursor is
            unchanged when there are no new blocks; on first use (cursor None)
            the cursor and baseline are primed and no signals are emitted.
        """
        try:
            head = self.ledger.block_number()
        except LedgerError as exc:
            raise DetectionError(f"Failed to read chain head: {exc}") from exc

        if cursor is None:
            self.prime(head)
            logger.info("primed block cursor at %d", head)
            return DetectionResult(signals=[], cursor=head)

        if head <= cursor:
            return DetectionResult(signals=[], cursor=cursor)

        from_block, to_block = cursor + 1, head
        signals: list[Signal] = []
        native_balance = self.last_native_balance

        try:
            for asset in self.tracked_assets:
                for log in self.ledger.transfer_logs(asset, self.vault, from_block, to_block):
                    signals.append(Signal(
                        kind=SignalKind.ASSET_DEPOSIT,
                        asset=log.asset,
                        amount=log.amount,
                        block_number=log.block_number,
                        transaction_hash=log.transaction_hash,
                        sender=log.sender,
                        timestamp_ms=self.ledger.block_timestamp_ms(log.block_number),
                    ))

            if self.watch_native_balance:
                native_balance = self.ledger.native_balance(self.vault, to_block)
                if self.last_native_balance is not None and native_balance > self.last_native_balance:
                    signals.append(Signal(
                        kind=SignalKind.NATIVE_DEPOSIT,
                        asset=ZERO_ADDRESS,
                        amount=native_balance - self.last_native_balance,
                        block_number=to_block,
                        sender="unknown",
                        timestamp_ms=self.ledger.block_timestamp_ms(to_block),
                    ))

            if self.governor:
                signals.extend(self._proposal_events(from_block, to_block))
        except LedgerError as exc:
            raise DetectionError(
                f"Detection failed for blocks {from_block}..{to_block}: {exc}"
            ) from exc

        # Range fully extracted: commit baseline and cursor together
        self.last_native_balance = native_balance
        return DetectionResult(signals=signals, cursor=to_block)

    def _proposal_events(self, from_block: int, to_block: int) -> list[Signal]:
        events: list[Signal] = []
        for topic, kind in (
            (PROPOSAL_EXECUTED_TOPIC, SignalKind.PROPOSAL_EXECUTED),
            (PROPOSAL_DELETED_TOPIC, SignalKind.PROPOSAL_DELETED),
        ):
            for entry in self.ledger.logs(self.governor, [topic], from_block, to_block):
                if len(entry.topics) < 2:
                    continue
                events.append(Signal(
                    kind=kind,
                    block_number=entry.block_number,
                    transaction_hash=entry.transaction_hash,
                    data={
                        "proposal_hash": entry.topics[1].lower(),
                        "assertion_id": entry.topics[2].lower() if len(entry.topics) > 2 else None,
                    },
                ))
        return events
