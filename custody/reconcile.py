"""
Proposal Reconciliation -- status of a posted proposal.

A posted proposal is tracked until its governor outcome is observed. Before
that, its submission receipt decides whether it is still in flight, mined,
reverted, or abandoned after the confirm timeout. After a restart the pending
proposal is re-derived from chain state, never from memory.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Optional

from eth_abi import decode

from custody.errors import LedgerError
from custody.ledger import (
    TRANSACTIONS_PROPOSED_TOPIC,
    Ledger,
    address_topic,
)
from custody.proposals import ProposalSubmission

logger = logging.getLogger(__name__)


DEFAULT_CONFIRM_TIMEOUT_MS = 60_000

ZERO_HASH = b"\x00" * 32


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class ProposalStatus(str, Enum):
    PENDING = "PENDING"          # submission not yet mined
    CONFIRMED = "CONFIRMED"      # mined; awaiting execution or dispute
    EXECUTED = "EXECUTED"
    DELETED = "DELETED"
    REVERTED = "REVERTED"
    EXPIRED = "EXPIRED"          # unmined past the confirm timeout

    @property
    def clears_submission(self) -> bool:
        return self in (ProposalStatus.EXECUTED, ProposalStatus.DELETED,
                        ProposalStatus.REVERTED, ProposalStatus.EXPIRED)


def check_submission_status(
    ledger: Ledger,
    submission: ProposalSubmission,
    now_ms: Optional[int] = None,
    timeout_ms: int = DEFAULT_CONFIRM_TIMEOUT_MS,
) -> ProposalStatus:
    """Receipt-based status of a submission.

    Args:
        ledger: chain access
        submission: the pending ProposalSubmission
        now_ms: wall clock override
        timeout_ms: how long an unmined submission is retained

    Returns:
        ProposalStatus enum value
    """
    if submission.confirmed:
        return ProposalStatus.CONFIRMED

    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    try:
        receipt = ledger.get_receipt(submission.proposal_id)
    except LedgerError as exc:
        logger.warning("receipt lookup for %s failed: %s", submission.proposal_id, exc)
        receipt = None

    if receipt is None:
        if now_ms - submission.submitted_at_ms > timeout_ms:
            return ProposalStatus.EXPIRED
        return ProposalStatus.PENDING

    if int(receipt.get("status", 0)) != 1:
        return ProposalStatus.REVERTED
    return ProposalStatus.CONFIRMED


def onchain_pending(ledger: Ledger, governor: str, proposal_hash: str) -> bool:
    """True while the governor still holds an assertion for the proposal."""
    assertion = ledger.read(
        governor, "proposalHashes(bytes32)", [proposal_hash], returns=("bytes32",),
    )
    return bytes(assertion) != ZERO_HASH


# ---------------------------------------------------------------------------
# Restart recovery
# ---------------------------------------------------------------------------

_PROPOSED_DATA_TYPES = [
    "((address,uint8,uint256,bytes)[],uint256)",
    "bytes32",
    "bytes",
    "string",
    "uint256",
]


def recover_pending_submission(
    ledger: Ledger,
    governor: str,
    proposer: str,
    lookback_blocks: int,
    head: Optional[int] = None,
) -> Optional[ProposalSubmission]:
    """
    Re-derive the agent's still-pending proposal from TransactionsProposed
    logs in the lookback window. The newest proposal whose hash is still
    registered on the governor wins.
    """
    head = ledger.block_number() if head is None else head
    from_block = max(0, head - lookback_blocks)
    entries = ledger.logs(
        governor,
        [TRANSACTIONS_PROPOSED_TOPIC, address_topic(proposer)],
        from_block,
        head,
    )

    for entry in sorted(entries, key=lambda e: (e.block_number, e.log_index), reverse=True):
        try:
            _, proposal_hash_raw, _, _, _ = decode(_PROPOSED_DATA_TYPES, entry.data)
        except Exception as exc:  # eth_abi raises several unrelated types
            logger.warning("undecodable TransactionsProposed log %s: %s", entry.transaction_hash, exc)
            continue
        proposal_hash = "0x" + bytes(proposal_hash_raw).hex()
        if not onchain_pending(ledger, governor, proposal_hash):
            continue

        logger.info("recovered pending proposal %s from block %d", proposal_hash, entry.block_number)
        return ProposalSubmission(
            proposal_id=entry.transaction_hash,
            proposal_hash=proposal_hash,
            bond_amount=0,
            collateral="",
            oracle="",
            version="recovered",
            submitted_at_ms=ledger.block_timestamp_ms(entry.block_number),
            confirmed=True,
        )
    return None
