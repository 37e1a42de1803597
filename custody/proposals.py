"""
Proposal Submitter

Posts a batch of low-level calls to the Optimistic Governor as a bonded
proposal. Bonding preflight runs before any proposal write; submission walks
the known governor interface versions newest first, simulating each before
sending, and keeps every failed attempt for diagnostics.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

from eth_abi import encode
from eth_utils import keccak, to_checksum_address

from custody.errors import (
    BondShortfallError,
    LedgerError,
    PreflightError,
    VersionFallbackExhausted,
)
from custody.intents import ERC20_APPROVE, LowLevelCall, encode_call
from custody.ledger import Ledger

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Governor context
# ---------------------------------------------------------------------------

TRANSACTION_TUPLE = "(address,uint8,uint256,bytes)"


@dataclass(frozen=True)
class OracleContext:
    """Snapshot of governor parameters, read once and re-read on demand."""
    collateral: str
    bond_amount: int
    oracle: str
    rules: str
    identifier: str
    liveness: int

    def as_json(self) -> dict[str, Any]:
        return {
            "collateral": self.collateral,
            "bond_amount": str(self.bond_amount),
            "optimistic_oracle": self.oracle,
            "rules": self.rules,
            "identifier": self.identifier,
            "liveness": str(self.liveness),
        }


def load_oracle_context(ledger: Ledger, governor: str) -> OracleContext:
    identifier = ledger.read(governor, "identifier()", returns=("bytes32",))
    return OracleContext(
        collateral=to_checksum_address(ledger.read(governor, "collateral()", returns=("address",))),
        bond_amount=int(ledger.read(governor, "bondAmount()")),
        oracle=to_checksum_address(ledger.read(governor, "optimisticOracleV3()", returns=("address",))),
        rules=ledger.read(governor, "rules()", returns=("string",)),
        identifier="0x" + bytes(identifier).hex(),
        liveness=int(ledger.read(governor, "liveness()", returns=("uint64",))),
    )


def proposal_hash(calls: Sequence[LowLevelCall]) -> str:
    """keccak256(abi.encode(Transaction[])) as the governor computes it."""
    encoded = encode(
        [f"{TRANSACTION_TUPLE}[]"],
        [[(c.to, c.operation, c.value, c.data) for c in calls]],
    )
    return "0x" + keccak(encoded).hex()


# ---------------------------------------------------------------------------
# Interface versions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProposalVersion:
    name: str
    signature: str
    encode_args: Callable[[Sequence[LowLevelCall], str], list[Any]]

    def encode(self, calls: Sequence[LowLevelCall], explanation: str) -> bytes:
        return encode_call(self.signature, self.encode_args(calls, explanation))


PROPOSAL_VERSIONS: tuple[ProposalVersion, ...] = (
    ProposalVersion(
        name="v2-explained",
        signature=f"proposeTransactions({TRANSACTION_TUPLE}[],bytes)",
        encode_args=lambda calls, explanation: [
            [(c.to, c.operation, c.value, c.data) for c in calls],
            explanation.encode("utf-8"),
        ],
    ),
    ProposalVersion(
        name="v1-legacy",
        signature="proposeTransactions((address,uint256,bytes,uint8)[])",
        encode_args=lambda calls, explanation: [
            [(c.to, c.value, c.data, c.operation) for c in calls],
        ],
    ),
)


# ---------------------------------------------------------------------------
# Submission record
# ---------------------------------------------------------------------------

@dataclass
class ProposalSubmission:
    proposal_id: str            # submission transaction hash
    proposal_hash: str
    bond_amount: int
    collateral: str
    oracle: str
    version: str
    submitted_at_ms: int
    calls: list[LowLevelCall] = field(default_factory=list)
    confirmed: bool = False     # submission receipt observed

    def as_json(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "proposal_hash": self.proposal_hash,
            "bond_amount": str(self.bond_amount),
            "collateral": self.collateral,
            "oracle": self.oracle,
            "version": self.version,
            "submitted_at_ms": self.submitted_at_ms,
            "confirmed": self.confirmed,
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Submitter
# ---------------------------------------------------------------------------

class ProposalSubmitter:
    """
    Bonding preflight plus versioned proposal submission.

    Args:
        ledger: chain access for the signing account
        governor: Optimistic Governor module address
        extra_spenders: spenders approved for the bond besides the oracle
        versions: interface versions in preference order
    """

    def __init__(
        self,
        ledger: Ledger,
        governor: str,
        extra_spenders: Iterable[str] = (),
        versions: Sequence[ProposalVersion] = PROPOSAL_VERSIONS,
        clock: Callable[[], int] = _now_ms,
    ):
        self.ledger = ledger
        self.governor = to_checksum_address(governor)
        self.extra_spenders = [to_checksum_address(s) for s in extra_spenders]
        self.versions = tuple(versions)
        self.clock = clock

    def load_context(self) -> OracleContext:
        return load_oracle_context(self.ledger, self.governor)

    def minimum_bond(self, oracle: str, collateral: str) -> int:
        try:
            return int(self.ledger.read(oracle, "getMinimumBond(address)", [collateral]))
        except LedgerError as exc:
            logger.debug("getMinimumBond unavailable on %s: %s", oracle, exc)
            return 0

    def preflight(self, context: OracleContext | None = None) -> tuple[OracleContext, int]:
        """
        Verify and arrange everything the bond needs before any proposal write.

        Returns:
            (context, required_bond)
        """
        ctx = context or self.load_context()
        signer = self.ledger.address

        # (1) bond is the larger of the module bond and the oracle minimum
        required = max(ctx.bond_amount, self.minimum_bond(ctx.oracle, ctx.collateral))

        if required > 0:
            # (2) collateral balance covers the bond
            available = self.ledger.erc20_balance(ctx.collateral, signer)
            if available < required:
                raise BondShortfallError(ctx.collateral, required, available)

            # (3) every spender holds at least the bond allowance
            for spender in self._spenders(ctx):
                self.ensure_allowance(ctx.collateral, spender, required)

        # (4) gas
        if self.ledger.native_balance(signer) <= 0:
            raise PreflightError(f"Signer {signer} has no native balance to pay gas")

        return ctx, required

    def ensure_allowance(self, token: str, spender: str, required: int) -> None:
        signer = self.ledger.address
        if self.ledger.erc20_allowance(token, signer, spender) >= required:
            return
        logger.info("approving %s for %d of %s", spender, required, token)
        try:
            self.ledger.send_and_confirm(token, encode_call(ERC20_APPROVE, [spender, required]))
        except LedgerError as exc:
            raise PreflightError(f"Bond approval for {spender} failed: {exc}") from exc
        granted = self.ledger.erc20_allowance(token, signer, spender)
        if granted < required:
            raise PreflightError(
                f"Allowance for {spender} is {granted} after approval; required {required}"
            )

    def _spenders(self, ctx: OracleContext) -> list[str]:
        spenders = [ctx.oracle]
        for spender in self.extra_spenders:
            if spender not in spenders:
                spenders.append(spender)
        return spenders

    def submit(
        self,
        calls: Sequence[LowLevelCall],
        explanation: str = "",
        context: OracleContext | None = None,
    ) -> ProposalSubmission:
        """Preflight, then propose through the first version that simulates."""
        if not calls:
            raise PreflightError("Refusing to propose an empty call batch")
        ctx, required = self.preflight(context)

        attempts: list[tuple[str, str]] = []
        for version in self.versions:
            data = version.encode(calls, explanation)
            try:
                self.ledger.call(self.governor, data)
            except LedgerError as exc:
                logger.info("proposal version %s rejected in simulation: %s", version.name, exc)
                attempts.append((version.name, str(exc)))
                continue

            tx_hash = self.ledger.send(self.governor, data)
            submission = ProposalSubmission(
                proposal_id=tx_hash,
                proposal_hash=proposal_hash(calls),
                bond_amount=required,
                collateral=ctx.collateral,
                oracle=ctx.oracle,
                version=version.name,
                submitted_at_ms=self.clock(),
                calls=list(calls),
            )
            logger.info("proposal %s submitted via %s (tx %s)",
                        submission.proposal_hash, version.name, tx_hash)
            return submission

        raise VersionFallbackExhausted(attempts)
