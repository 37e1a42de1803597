"""
Policy Gate
Deterministic validation of every tool call the decision service requests.

Holds the agent's explicit state (step flags, cycle counter, the pending
proposal, fired triggers, the active copy trade) and checks each call against
the deployment profile before anything touches the ledger. Refusals are
GateResult values, never exceptions. Every evaluation is logged to the Audit
Spine when one is configured.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Optional, Sequence

from custody.audit import AuditSpineManager
from custody.deployments import (
    BUILD,
    ERC1155_DEPOSIT,
    PLACE_ORDER,
    POST,
    PROPOSAL_TOOLS,
    BalanceRequirement,
    DeploymentProfile,
    TriggerMode,
)
from custody.errors import CompilationError
from custody.identity import AgentIdentity
from custody.intents import AssetTransfer, LowLevelCall, value_moving_recipients
from custody.proposals import ProposalSubmission
from custody.reconcile import ProposalStatus
from custody.signals import Signal, SignalKind
from custody.timelock import DepositAnchor, TimelockTrigger
from custody.tools import ToolRequest
from custody.triggers import Candidate, TriggerBoard

if TYPE_CHECKING:
    from custody.executor import ToolOutcome
    from custody.venue import SourceTrade

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"confirmed", "ok", "submitted", "placed"})


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------

class Verdict(str, Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


@dataclass
class Violation:
    rule: str          # e.g. "step_order", "recipients"
    description: str


@dataclass
class GateResult:
    verdict: Verdict
    tool: str
    call_id: str
    violations: list[Violation] = field(default_factory=list)
    event_id: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.verdict == Verdict.ACCEPTED

    def refusal_output(self) -> dict[str, Any]:
        """Tool output reported back to the decision service for a refusal."""
        return {
            "status": "rejected",
            "reasons": [f"[{v.rule}] {v.description}" for v in self.violations],
        }


@dataclass(frozen=True)
class CopyTrade:
    trade_id: str
    side: str
    price: float
    outcome: str
    token_id: int
    copy_amount_wei: int
    fee_amount_wei: int
    order_maker_amount: int
    order_taker_amount: int

    def as_json(self) -> dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "side": self.side,
            "price": self.price,
            "outcome": self.outcome,
            "token_id": str(self.token_id),
            "copy_amount_wei": str(self.copy_amount_wei),
            "fee_amount_wei": str(self.fee_amount_wei),
            "order_maker_amount": str(self.order_maker_amount),
            "order_taker_amount": str(self.order_taker_amount),
        }


@dataclass
class Observations:
    """Per-cycle reads the gate cannot make itself."""
    balances: dict[str, int] = field(default_factory=dict)
    onchain_pending: bool = False


@dataclass
class AgentState:
    flags: dict[str, bool] = field(default_factory=dict)
    cycles_completed: int = 0
    last_action_ms: Optional[int] = None
    pending: Optional[ProposalSubmission] = None
    onchain_pending: bool = False
    prepared_calls: list[LowLevelCall] = field(default_factory=list)
    fired_triggers: set[str] = field(default_factory=set)
    race_winner: Optional[str] = None
    race_consumed: bool = False
    deposit_anchors: list[DepositAnchor] = field(default_factory=list)
    timelock_due: list[str] = field(default_factory=list)
    timelock_authorized: list[str] = field(default_factory=list)
    timelock_spent: Optional[str] = None
    active_trade: Optional[CopyTrade] = None
    seen_trade_id: Optional[str] = None
    balances: dict[str, int] = field(default_factory=dict)

    @classmethod
    def fresh(cls, profile: DeploymentProfile) -> "AgentState":
        return cls(flags={flag: False for flag in profile.flags})

    def reset_flags(self) -> None:
        for flag in self.flags:
            self.flags[flag] = False

    def as_json(self) -> dict[str, Any]:
        return {
            "flags": dict(self.flags),
            "cycles_completed": self.cycles_completed,
            "last_action_ms": self.last_action_ms,
            "pending_proposal": self.pending is not None or self.onchain_pending,
            "pending": self.pending.as_json() if self.pending else None,
            "prepared_calls": len(self.prepared_calls),
            "fired_triggers": sorted(self.fired_triggers),
            "race_winner": self.race_winner,
            "timelock_due": list(self.timelock_due),
            "timelock_authorized": list(self.timelock_authorized),
            "copy_trade": self.active_trade.as_json() if self.active_trade else None,
            "balances": {k: str(v) for k, v in self.balances.items()},
        }


# ---------------------------------------------------------------------------
# Copy-trading arithmetic
# ---------------------------------------------------------------------------

def calculate_copy_amounts(balance_wei: int, fee_bps: int) -> tuple[int, int]:
    """Split a collateral balance into (copy amount, fee)."""
    fee = balance_wei * fee_bps // 10_000
    return balance_wei - fee, fee


def compute_buy_order_amounts(collateral_wei: int, price: float) -> tuple[int, int]:
    """
    BUY order amounts for spending ``collateral_wei`` at ``price``.

    Returns:
        (maker_amount, taker_amount): collateral given, outcome tokens received
    """
    price_dec = Decimal(str(price))
    if price_dec <= 0 or price_dec >= 1:
        raise ValueError(f"price must be in (0, 1), got {price}")
    taker = (Decimal(collateral_wei) / price_dec).to_integral_value(rounding=ROUND_FLOOR)
    return collateral_wei, int(taker)


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

def _check_tool_enabled(tool: str, enabled: Sequence[str]) -> list[Violation]:
    if tool in enabled:
        return []
    return [Violation("tool_enabled", f"Tool {tool} is not enabled for this deployment.")]


def _check_cycle_budget(tool: str, profile: DeploymentProfile, state: AgentState) -> list[Violation]:
    if profile.step_for(tool) is None or profile.max_cycles is None:
        return []
    if state.cycles_completed >= profile.max_cycles:
        return [Violation(
            "cycle_budget",
            f"All {profile.max_cycles} cycles are complete; no further steps are allowed.",
        )]
    return []


def _check_step_order(tool: str, profile: DeploymentProfile, state: AgentState) -> list[Violation]:
    violations: list[Violation] = []
    step = profile.step_for(tool)
    if step is None:
        return violations
    if state.flags.get(step.flag):
        violations.append(Violation(
            "idempotency", f"{tool} already completed this cycle ({step.flag} is set).",
        ))
    previous = profile.predecessor(tool)
    if previous is not None and not state.flags.get(previous.flag):
        violations.append(Violation(
            "step_order", f"{tool} requires {previous.tool} first ({previous.flag} is not set).",
        ))
    return violations


def _check_pending(tool: str, state: AgentState) -> list[Violation]:
    if tool not in PROPOSAL_TOOLS:
        return []
    if state.pending is not None or state.onchain_pending:
        return [Violation(
            "pending_proposal",
            "A proposal is already pending; wait for execution or deletion.",
        )]
    return []


def _check_prepared(tool: str, state: AgentState) -> list[Violation]:
    if tool == POST and not state.prepared_calls:
        return [Violation(
            "prepared_calls", "No transactions prepared; call build_og_transactions first.",
        )]
    return []


def _check_trigger_gate(tool: str, profile: DeploymentProfile, state: AgentState) -> list[Violation]:
    if tool not in PROPOSAL_TOOLS:
        return []
    if profile.trigger_mode == TriggerMode.RACE:
        if state.race_winner is None:
            return [Violation("trigger_race", "No price trigger has fired yet.")]
        if state.race_consumed:
            return [Violation(
                "trigger_race",
                f"Winning trigger {state.race_winner} was already used by a proposal.",
            )]
    if profile.trigger_mode == TriggerMode.TIMELOCK and not state.timelock_authorized:
        if not state.timelock_due:
            return [Violation("timelock", "No timelock has elapsed yet.")]
        return [Violation(
            "timelock", "Every elapsed timelock was already used by a proposal.",
        )]
    return []


def _check_interval(
    tool: str, profile: DeploymentProfile, state: AgentState, now_ms: int,
) -> list[Violation]:
    first = profile.first_step
    if first is None or first.tool != tool or not profile.interval_seconds:
        return []
    if state.last_action_ms is None:
        return []
    elapsed = (now_ms - state.last_action_ms) // 1000
    if elapsed < profile.interval_seconds:
        return [Violation(
            "interval",
            f"Only {elapsed}s since the last completed cycle; "
            f"interval is {profile.interval_seconds}s.",
        )]
    return []


def _check_balances(
    tool: str,
    profile: DeploymentProfile,
    requirements: Sequence[BalanceRequirement],
    state: AgentState,
) -> list[Violation]:
    first = profile.first_step
    if first is None or first.tool != tool:
        return []
    violations: list[Violation] = []
    for req in requirements:
        available = state.balances.get(req.label, 0)
        if available < req.minimum:
            violations.append(Violation(
                "balances",
                f"{req.label}: {req.holder} holds {available} of {req.asset}, "
                f"requires {req.minimum}.",
            ))
    return violations


def _check_recipients(request: ToolRequest, identity: AgentIdentity) -> list[Violation]:
    if request.name != BUILD:
        return []
    try:
        intents = request.arguments.intents()
    except CompilationError:
        # surfaces from the compiler as the tool output
        return []
    violations: list[Violation] = []
    for index, intent in enumerate(intents):
        for recipient in identity.disallowed(value_moving_recipients(intent)):
            violations.append(Violation(
                "recipients",
                f"Action {index} ({intent.kind}) sends funds to unauthorized recipient {recipient}.",
            ))
    return violations


def _check_copy_trade(
    request: ToolRequest,
    profile: DeploymentProfile,
    state: AgentState,
    identity: AgentIdentity,
    conditional_tokens: str,
    collateral_token: str,
) -> list[Violation]:
    if profile.trigger_mode != TriggerMode.COPY or profile.step_for(request.name) is None:
        return []
    trade = state.active_trade
    if trade is None:
        return [Violation("copy_trade", "No active source trade to copy.")]

    args = request.arguments
    violations: list[Violation] = []

    if request.name == PLACE_ORDER:
        expected = {
            "token_id": trade.token_id,
            "side": trade.side,
            "maker_amount": trade.order_maker_amount,
            "taker_amount": trade.order_taker_amount,
        }
        for key, want in expected.items():
            got = getattr(args, key)
            if got != want:
                violations.append(Violation(
                    "copy_trade", f"Order {key} is {got}; the active trade requires {want}.",
                ))

    elif request.name == ERC1155_DEPOSIT:
        if args.token.lower() != conditional_tokens.lower():
            violations.append(Violation(
                "copy_trade", f"Token {args.token} is not the conditional tokens contract.",
            ))
        if args.token_id != trade.token_id:
            violations.append(Violation(
                "copy_trade", f"Token id {args.token_id} does not match the copied outcome.",
            ))
        held = state.balances.get("copy_token", 0)
        if args.amount <= 0 or args.amount > held:
            violations.append(Violation(
                "copy_trade", f"Deposit amount {args.amount} must be in 1..{held}.",
            ))

    elif request.name == BUILD:
        try:
            intents = args.intents()
        except CompilationError as exc:
            return [Violation("copy_trade", str(exc))]
        ok = (
            len(intents) == 1
            and isinstance(intents[0], AssetTransfer)
            and intents[0].token.lower() == collateral_token.lower()
            and intents[0].to.lower() == identity.address.lower()
            and intents[0].amount_wei == trade.copy_amount_wei
        )
        if not ok:
            violations.append(Violation(
                "copy_trade",
                f"Reimbursement must be one asset_transfer of {trade.copy_amount_wei} "
                f"{collateral_token} to {identity.address}.",
            ))

    return violations


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

class PolicyGate:
    """
    Deployment-aware gate and the only writer of AgentState.

    Args:
        profile: resolved deployment profile
        identity: agent address, vault and recipient allowlist
        enabled: tool names the decision service may call
        requirements: balances that must hold before the first step
        conditional_tokens: ERC-1155 contract for copy-trading deposits
        collateral_token: reimbursement token for copy trading
        audit: optional Audit Spine
    """

    def __init__(
        self,
        profile: DeploymentProfile,
        identity: AgentIdentity,
        enabled: Sequence[str],
        requirements: Sequence[BalanceRequirement] = (),
        conditional_tokens: str = "",
        collateral_token: str = "",
        audit: AuditSpineManager | None = None,
    ):
        self.profile = profile
        self.identity = identity
        self.enabled = tuple(enabled)
        self.requirements = tuple(requirements)
        self.conditional_tokens = conditional_tokens
        self.collateral_token = collateral_token
        self.audit = audit
        self.board = TriggerBoard(exclusive=profile.trigger_mode == TriggerMode.RACE)

    def new_state(self) -> AgentState:
        return AgentState.fresh(self.profile)

    # -- validation ----------------------------------------------------------

    def validate(self, request: ToolRequest, state: AgentState, now_ms: int) -> GateResult:
        """Run every check against one tool call. Never raises for refusals."""
        tool = request.name
        violations: list[Violation] = []
        violations.extend(_check_tool_enabled(tool, self.enabled))
        violations.extend(_check_cycle_budget(tool, self.profile, state))
        violations.extend(_check_step_order(tool, self.profile, state))
        violations.extend(_check_pending(tool, state))
        violations.extend(_check_prepared(tool, state))
        violations.extend(_check_trigger_gate(tool, self.profile, state))
        violations.extend(_check_interval(tool, self.profile, state, now_ms))
        violations.extend(_check_balances(tool, self.profile, self.requirements, state))
        violations.extend(_check_recipients(request, self.identity))
        violations.extend(_check_copy_trade(
            request, self.profile, state, self.identity,
            self.conditional_tokens, self.collateral_token,
        ))

        result = GateResult(
            verdict=Verdict.REJECTED if violations else Verdict.ACCEPTED,
            tool=tool,
            call_id=request.call_id,
            violations=violations,
        )
        if violations:
            logger.warning("gate rejected %s: %s", tool,
                           "; ".join(v.description for v in violations))

        # Log to Audit Spine: every evaluation, pass or fail
        if self.audit is not None:
            result.event_id = self.audit.log_event(
                actor_id=self.identity.address,
                event_type=f"GATE_EVAL:{tool.upper()}",
                payload={
                    "verdict": result.verdict.value,
                    "call_id": request.call_id,
                    "arguments": request.arguments_json(),
                    "violations": [
                        {"rule": v.rule, "description": v.description}
                        for v in violations
                    ],
                    "state": state.as_json(),
                },
            )
        return result

    # -- state transitions ---------------------------------------------------

    def on_outcome(
        self, request: ToolRequest, outcome: "ToolOutcome", state: AgentState, now_ms: int,
    ) -> None:
        """Advance state after an executed call; only success statuses count."""
        status = str(outcome.output.get("status", ""))
        if status not in SUCCESS_STATUSES:
            return
        step = self.profile.step_for(request.name)
        if step is not None:
            state.flags[step.flag] = True
        if request.name == BUILD:
            state.prepared_calls = list(outcome.calls)
        elif request.name == POST and outcome.submission is not None:
            state.pending = outcome.submission
            if self.profile.trigger_mode == TriggerMode.RACE:
                state.race_consumed = True
            elif state.timelock_authorized:
                state.timelock_spent = state.timelock_authorized.pop(0)

    def on_proposal_events(
        self,
        executed: Iterable[str],
        deleted: Iterable[str],
        state: AgentState,
        now_ms: int,
    ) -> Optional[ProposalStatus]:
        """Match governor events against the pending proposal."""
        if state.pending is None:
            return None
        target = state.pending.proposal_hash.lower()
        if target in {h.lower() for h in executed}:
            logger.info("proposal %s executed", target)
            self._complete_cycle(state, now_ms)
            return ProposalStatus.EXECUTED
        if target in {h.lower() for h in deleted}:
            logger.warning("proposal %s deleted", target)
            self._abandon(state)
            return ProposalStatus.DELETED
        return None

    def reconcile(self, status: ProposalStatus, state: AgentState) -> None:
        """Apply a submission status from the reconciler."""
        if state.pending is None:
            return
        if status == ProposalStatus.CONFIRMED:
            state.pending.confirmed = True
        elif status in (ProposalStatus.REVERTED, ProposalStatus.EXPIRED):
            logger.warning("proposal %s %s; resetting", state.pending.proposal_id, status.value.lower())
            self._abandon(state)

    def _complete_cycle(self, state: AgentState, now_ms: int) -> None:
        state.reset_flags()
        state.cycles_completed += 1
        if self.profile.max_cycles is not None:
            state.cycles_completed = min(state.cycles_completed, self.profile.max_cycles)
        state.last_action_ms = now_ms
        state.pending = None
        state.onchain_pending = False
        state.prepared_calls = []
        state.timelock_spent = None
        self._retire_trade(state)

    def _abandon(self, state: AgentState) -> None:
        state.reset_flags()
        state.pending = None
        state.onchain_pending = False
        state.prepared_calls = []
        state.race_consumed = False
        if state.timelock_spent is not None:
            state.timelock_authorized.insert(0, state.timelock_spent)
            state.timelock_spent = None
        # the order may already be filled; never place it twice
        self._retire_trade(state)

    @staticmethod
    def _retire_trade(state: AgentState) -> None:
        if state.active_trade is not None:
            state.seen_trade_id = state.active_trade.trade_id
            state.active_trade = None

    # -- triggers ------------------------------------------------------------

    def record_deposits(self, signals: Iterable[Signal], state: AgentState) -> None:
        known = {a.id for a in state.deposit_anchors}
        for signal in signals:
            if (signal.is_deposit and signal.timestamp_ms is not None
                    and signal.anchor_id not in known):
                state.deposit_anchors.append(DepositAnchor(signal.anchor_id, signal.timestamp_ms))
                known.add(signal.anchor_id)

    def fire_trigger(self, candidates: Iterable[Candidate], state: AgentState) -> Optional[Candidate]:
        """At most one trigger per cycle; records what fired."""
        winner = self.board.select(candidates, state.fired_triggers, state.race_winner)
        if winner is None:
            return None
        state.fired_triggers.add(winner.id)
        if self.profile.trigger_mode == TriggerMode.RACE:
            state.race_winner = winner.id
        elif isinstance(winner, TimelockTrigger):
            state.timelock_authorized.append(winner.id)
        logger.info("trigger %s fired", winner.id)
        return winner

    def observe_source_trade(
        self,
        trade: "SourceTrade",
        state: AgentState,
        collateral_balance_wei: int,
        fee_bps: int,
        yes_token_id: Optional[str] = None,
        no_token_id: Optional[str] = None,
    ) -> Optional[Signal]:
        """Adopt the source trader's latest BUY as the active copy trade."""
        if state.active_trade is not None or trade.id == state.seen_trade_id:
            return None
        if trade.side != "BUY" or not 0 < trade.price < 1:
            return None
        token_id = {"YES": yes_token_id, "NO": no_token_id}.get(trade.outcome) or trade.asset
        if not token_id:
            logger.info("source trade %s has no resolvable outcome token", trade.id)
            return None
        copy_amount, fee = calculate_copy_amounts(collateral_balance_wei, fee_bps)
        if copy_amount <= 0:
            return None
        maker, taker = compute_buy_order_amounts(copy_amount, trade.price)
        state.active_trade = CopyTrade(
            trade_id=trade.id,
            side=trade.side,
            price=trade.price,
            outcome=trade.outcome,
            token_id=int(token_id),
            copy_amount_wei=copy_amount,
            fee_amount_wei=fee,
            order_maker_amount=maker,
            order_taker_amount=taker,
        )
        return Signal(
            kind=SignalKind.SOURCE_TRADE_OBSERVED,
            data={"source_trade": trade.as_json(), "copy_trade": state.active_trade.as_json()},
        )

    # -- derived signals -----------------------------------------------------

    def augment(
        self,
        signals: list[Signal],
        state: AgentState,
        now_ms: int,
        observations: Observations,
    ) -> list[Signal]:
        """Append timer, balances and agent_state signals."""
        state.balances = dict(observations.balances)
        state.onchain_pending = observations.onchain_pending
        out = list(signals)

        if self.profile.interval_seconds:
            elapsed = None
            if state.last_action_ms is not None:
                elapsed = (now_ms - state.last_action_ms) // 1000
            out.append(Signal(kind=SignalKind.TIMER, timestamp_ms=now_ms, data={
                "elapsed_seconds": elapsed,
                "interval_seconds": self.profile.interval_seconds,
                "should_execute": elapsed is None or elapsed >= self.profile.interval_seconds,
            }))

        if self.requirements:
            data: dict[str, Any] = {}
            for req in self.requirements:
                available = state.balances.get(req.label, 0)
                data[req.label] = str(available)
                data[f"{req.label}_sufficient"] = available >= req.minimum
            out.append(Signal(kind=SignalKind.BALANCES, data=data))

        out.append(Signal(kind=SignalKind.AGENT_STATE, data={
            "agent_state": {
                **state.as_json(),
                "max_cycles": self.profile.max_cycles,
                "deployment": self.profile.name,
            },
        }))
        return out
