"""
Agent Engine

One cycle: reconcile the pending proposal, detect signals, fire triggers,
derive state signals, ask the decision service, then validate, execute and
record every tool call it requested. The loop schedules the next cycle only
after the previous one settles.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from custody.audit import AuditSpineManager
from custody.config import AgentConfig
from custody.deployments import (
    POST,
    DeploymentProfile,
    TriggerMode,
    balance_requirements,
    build_instructions,
    enabled_tools,
    resolve_profile,
)
from custody.errors import (
    CustodyError,
    DecisionProtocolError,
    LedgerError,
    ToolArgumentError,
    VenueRequestError,
)
from custody.evidence import ToolEvidence, create_tool_evidence, log_evidence_to_spine
from custody.executor import ToolExecutor
from custody.identity import AgentIdentity, load_account
from custody.ledger import Ledger
from custody.oracle import DecisionClient, DecisionResult
from custody.policy_gate import AgentState, Observations, PolicyGate
from custody.pricing import PoolPriceReader
from custody.proposals import OracleContext, ProposalSubmitter
from custody.reconcile import (
    ProposalStatus,
    check_submission_status,
    onchain_pending,
    recover_pending_submission,
)
from custody.signals import Signal, SignalDetector, SignalKind
from custody.timelock import due_timelocks, extract_timelock_triggers
from custody.tools import ToolRequest, parse_tool_call, tool_schemas
from custody.triggers import PriceTrigger
from custody.venue import ClobClient

logger = logging.getLogger(__name__)

# Signals the engine derives itself; alone they do not warrant a decision
DERIVED_KINDS = frozenset({SignalKind.AGENT_STATE, SignalKind.BALANCES, SignalKind.TIMER})


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CycleReport:
    started_at_ms: int
    cursor: Optional[int]
    signals: list[dict[str, Any]] = field(default_factory=list)
    decision: Optional[dict[str, Any]] = None
    evidence: list[ToolEvidence] = field(default_factory=list)
    explanation: Optional[str] = None

    def as_json(self) -> dict[str, Any]:
        return {
            "started_at_ms": self.started_at_ms,
            "cursor": self.cursor,
            "signals": self.signals,
            "decision": self.decision,
            "tool_calls": [
                {"call_id": e.call_id, "tool": e.tool, "status": e.status,
                 "evidence_hash": e.evidence_hash}
                for e in self.evidence
            ],
            "explanation": self.explanation,
        }


class AgentEngine:
    """
    Wires detector, gate, decision client, executor and submitter together
    and owns the agent state and block cursor.
    """

    def __init__(
        self,
        config: AgentConfig,
        ledger: Ledger,
        identity: AgentIdentity,
        profile: DeploymentProfile,
        gate: PolicyGate,
        detector: SignalDetector,
        submitter: ProposalSubmitter,
        executor: ToolExecutor,
        decision: DecisionClient | None = None,
        venue: ClobClient | None = None,
        price_reader: PoolPriceReader | None = None,
        audit: AuditSpineManager | None = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.config = config
        self.ledger = ledger
        self.identity = identity
        self.profile = profile
        self.gate = gate
        self.detector = detector
        self.submitter = submitter
        self.executor = executor
        self.decision = decision
        self.venue = venue
        self.price_reader = price_reader
        self.audit = audit
        self.clock = clock

        self.state: AgentState = gate.new_state()
        self.cursor: Optional[int] = None
        self.context: Optional[OracleContext] = None
        self.price_triggers: list[PriceTrigger] = list(config.price_triggers)
        self.instructions = build_instructions(profile, config)
        self.last_report: Optional[CycleReport] = None
        # signals a failed decision round-trip never answered
        self.undecided: list[Signal] = []
        self.snapshot: dict[str, Any] = {}
        self._publish()

    # -- startup -------------------------------------------------------------

    def start(self) -> None:
        """Load the oracle context, recover a pending proposal and prime the cursor."""
        self.context = self.submitter.load_context()
        self.detector.track(self.context.collateral)

        recovered = recover_pending_submission(
            self.ledger,
            self.identity.governor,
            self.identity.address,
            self.config.proposal_lookback_blocks,
        )
        if recovered is not None:
            self.state.pending = recovered
            for flag in self.state.flags:
                self.state.flags[flag] = True

        if self.config.start_block is not None:
            self.detector.prime(self.config.start_block)
            self.cursor = self.config.start_block

        if (self.profile.trigger_mode == TriggerMode.RACE and not self.price_triggers
                and self.decision is not None):
            rules = self.config.commitment_text or self.context.rules
            if rules:
                self.price_triggers = self.decision.infer_price_triggers(rules)
                logger.info("inferred %d price trigger(s)", len(self.price_triggers))

        logger.info("agent %s serving vault %s with deployment %s",
                    self.identity.address, self.identity.vault, self.profile.name)
        self._publish()

    def close(self) -> None:
        for client in (self.decision, self.venue):
            if client is not None:
                client.close()

    def _oracle_context(self) -> OracleContext:
        if self.context is None:
            self.context = self.submitter.load_context()
        return self.context

    # -- cycle ---------------------------------------------------------------

    def run_cycle(self, now_ms: Optional[int] = None) -> CycleReport:
        now = self.clock() if now_ms is None else now_ms
        try:
            return self._cycle(now)
        finally:
            self._publish()

    def _publish(self) -> None:
        """Snapshot for the service surface, taken on the loop thread."""
        report = self.last_report
        self.snapshot = {
            "cursor": self.cursor,
            "state": self.state.as_json(),
            "last_cycle": report.as_json() if report else None,
        }

    def _cycle(self, now: int) -> CycleReport:
        state = self.state

        self._reconcile(now)

        detection = self.detector.detect(self.cursor)
        self.cursor = detection.cursor
        signals = list(detection.signals)
        logger.info("cycle at block %s: %d signal(s)", self.cursor, len(signals))

        self.gate.record_deposits(signals, state)
        self.gate.on_proposal_events(
            [s.data["proposal_hash"] for s in signals if s.kind == SignalKind.PROPOSAL_EXECUTED],
            [s.data["proposal_hash"] for s in signals if s.kind == SignalKind.PROPOSAL_DELETED],
            state,
            now,
        )

        signals.extend(self._trigger_signals(now))
        signals = self.undecided + signals
        observations = self._observe()
        augmented = self.gate.augment(signals, state, now, observations)

        report = CycleReport(
            started_at_ms=now,
            cursor=self.cursor,
            signals=[s.as_json() for s in augmented],
        )
        self.last_report = report

        if self.decision is None:
            logger.debug("no decision service configured; skipping decision")
            return report
        if not self._needs_decision(augmented):
            logger.debug("nothing actionable this cycle")
            return report

        self.undecided = [s for s in signals if s.kind not in DERIVED_KINDS]
        result = self.decision.decide(
            augmented,
            context=self._oracle_context().as_json(),
            tools=tool_schemas(self.gate.enabled),
            instructions=self.instructions,
            extra={
                "vault": self.identity.vault,
                "governor": self.identity.governor,
                "agent_address": self.identity.address,
            },
        )
        self.undecided = []
        report.decision = result.as_json()
        if result.decision is not None:
            logger.info("decision: %s (%s)", result.decision.action, result.decision.rationale)

        report.evidence = self._run_tool_calls(result, now)
        if report.evidence:
            report.explanation = self.decision.explain(
                result.response_id,
                [(e.call_id, e.output_json()) for e in report.evidence],
            )
            if report.explanation:
                logger.info("explanation: %s", report.explanation)
        return report

    def _needs_decision(self, signals: list[Signal]) -> bool:
        for signal in signals:
            if signal.kind not in DERIVED_KINDS:
                return True
            if signal.kind == SignalKind.TIMER and signal.data.get("should_execute"):
                return True
        # a step sequence is in progress and not waiting on the governor
        flags = self.state.flags.values()
        return any(flags) and not all(flags) and self.state.pending is None

    def _reconcile(self, now_ms: int) -> None:
        pending = self.state.pending
        if pending is None or pending.confirmed:
            return
        status = check_submission_status(
            self.ledger, pending, now_ms, self.config.proposal_confirm_timeout_ms,
        )
        self.gate.reconcile(status, self.state)
        if status == ProposalStatus.CONFIRMED:
            self._refresh_context()

    def _refresh_context(self) -> None:
        try:
            self.context = self.submitter.load_context()
        except LedgerError as exc:
            logger.warning("oracle context refresh failed: %s", exc)
            self.context = None

    # -- triggers ------------------------------------------------------------

    def _trigger_signals(self, now_ms: int) -> list[Signal]:
        state = self.state
        mode = self.profile.trigger_mode

        if mode == TriggerMode.TIMELOCK:
            rules = self.config.commitment_text or self._oracle_context().rules
            due = due_timelocks(extract_timelock_triggers(rules, state.deposit_anchors), now_ms)
            state.timelock_due = [t.id for t in due]
            fired = self.gate.fire_trigger(due, state)
            if fired is not None:
                return [Signal(kind=SignalKind.TIMELOCK_TRIGGER, timestamp_ms=now_ms,
                               data=fired.as_json())]

        if self.price_triggers and self.price_reader is not None:
            return self._price_signals(now_ms)

        if mode == TriggerMode.COPY:
            return self._copy_trade_signals()
        return []

    def _price_signals(self, now_ms: int) -> list[Signal]:
        met: list[PriceTrigger] = []
        quotes = {}
        for trigger in self.price_triggers:
            try:
                quote = self.price_reader.quote(trigger)
            except LedgerError as exc:
                logger.warning("price read for trigger %s failed: %s", trigger.id, exc)
                continue
            if quote is not None and trigger.is_met(quote.price):
                met.append(trigger)
                quotes[trigger.id] = quote
        fired = self.gate.fire_trigger(met, self.state)
        if fired is None:
            return []
        quote = quotes[fired.id]
        return [Signal(kind=SignalKind.PRICE_TRIGGER, timestamp_ms=now_ms, data={
            **fired.as_json(), "price": quote.price, "pool": quote.pool, "fee": quote.fee,
        })]

    def _copy_trade_signals(self) -> list[Signal]:
        settings = self.config.copy_trading
        if self.venue is None or not settings.source_user or self.state.active_trade:
            return []
        try:
            trades = self.venue.source_trades(settings.source_user, settings.market, limit=1)
        except VenueRequestError as exc:
            logger.warning("source trade read failed: %s", exc)
            return []
        if not trades:
            return []
        balance = self.ledger.erc20_balance(self.config.polymarket.collateral_token,
                                            self.identity.vault)
        signal = self.gate.observe_source_trade(
            trades[0], self.state, balance, settings.fee_bps,
            settings.yes_token_id, settings.no_token_id,
        )
        return [signal] if signal is not None else []

    # -- observations --------------------------------------------------------

    def _observe(self) -> Observations:
        balances: dict[str, int] = {}
        for req in self.gate.requirements:
            holder = self.identity.vault if req.holder == "vault" else self.identity.address
            balances[req.label] = self.ledger.erc20_balance(req.asset, holder)

        trade = self.state.active_trade
        if trade is not None:
            balances["copy_token"] = int(self.ledger.read(
                self.config.polymarket.conditional_tokens,
                "balanceOf(address,uint256)",
                [self.identity.address, trade.token_id],
            ))

        pending = False
        if self.state.pending is not None:
            try:
                pending = onchain_pending(self.ledger, self.identity.governor,
                                          self.state.pending.proposal_hash)
            except LedgerError as exc:
                logger.warning("proposalHashes read failed: %s", exc)
                pending = True
        return Observations(balances=balances, onchain_pending=pending)

    # -- tool calls ----------------------------------------------------------

    def _run_tool_calls(self, result: DecisionResult, now_ms: int) -> list[ToolEvidence]:
        evidence: list[ToolEvidence] = []
        halted: Optional[str] = None

        for call in result.tool_calls:
            arguments: Any = call.arguments
            if halted is not None:
                output = {"status": "skipped", "reason": f"earlier call failed: {halted}"}
            else:
                try:
                    request = parse_tool_call(call.call_id, call.name, call.arguments)
                except ToolArgumentError as exc:
                    logger.warning("invalid tool call %s: %s", call.name, exc)
                    output = {"status": "error", "error": str(exc)}
                else:
                    arguments = request.arguments_json()
                    output = self._run_one(request, now_ms)
                if output.get("status") == "error":
                    halted = output["error"]

            record = create_tool_evidence(call.call_id, call.name, arguments, output)
            if self.audit is not None:
                log_evidence_to_spine(self.audit, self.identity.address, record)
            evidence.append(record)
        return evidence

    def _run_one(self, request: ToolRequest, now_ms: int) -> dict[str, Any]:
        verdict = self.gate.validate(request, self.state, now_ms)
        if not verdict.passed:
            return verdict.refusal_output()
        try:
            outcome = self.executor.execute(request, self.state)
        except CustodyError as exc:
            logger.error("%s failed: %s", request.name, exc)
            return {"status": "error", "error": str(exc)}
        self.gate.on_outcome(request, outcome, self.state, now_ms)
        if request.name == POST and outcome.submission is not None:
            self._refresh_context()
        return outcome.output


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------

class AgentLoop:
    """Runs cycles back to back with a fixed delay measured from each cycle's end."""

    def __init__(self, engine: AgentEngine, interval_ms: int):
        self.engine = engine
        self.interval_ms = interval_ms

    def run_forever(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self.engine.run_cycle()
            except DecisionProtocolError as exc:
                logger.error("decision service error: %s", exc)
            except CustodyError as exc:
                logger.error("cycle failed: %s", exc)
            except Exception:
                logger.exception("unexpected cycle failure")
            stop.wait(self.interval_ms / 1000)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_engine(config: AgentConfig) -> AgentEngine:
    """Construct every component from configuration."""
    account = load_account(config.private_key)
    ledger = Ledger.connect(config.rpc_url, config.private_key)
    identity = AgentIdentity(
        address=account.address,
        vault=config.commitment_safe,
        governor=config.og_module,
        authorized_recipients=config.authorized_recipients,
    )
    profile = resolve_profile(config)
    audit = None
    if config.audit_database_url:
        audit = AuditSpineManager(config.audit_database_url)
        audit.ensure_schema()

    gate = PolicyGate(
        profile,
        identity,
        enabled_tools(profile, config),
        requirements=balance_requirements(profile, config),
        conditional_tokens=config.polymarket.conditional_tokens,
        collateral_token=config.polymarket.collateral_token,
        audit=audit,
    )
    detector = SignalDetector(
        ledger,
        config.commitment_safe,
        tracked_assets=config.watch_assets,
        watch_native_balance=config.watch_native_balance,
        governor=config.og_module,
    )
    submitter = ProposalSubmitter(ledger, config.og_module, extra_spenders=config.bond_spenders)

    venue = None
    if profile.trigger_mode == TriggerMode.COPY or config.polymarket.has_credentials:
        venue = ClobClient(config.polymarket, account.address)

    chain_id = config.chain_id
    if chain_id is None and venue is not None:
        chain_id = ledger.chain_id()

    executor = ToolExecutor(
        ledger,
        identity,
        submitter,
        venue=venue,
        conditional_tokens=config.polymarket.conditional_tokens,
        exchange=config.polymarket.exchange,
        chain_id=chain_id,
        default_deposit_asset=config.default_deposit_asset or config.dca.deposit_asset,
        default_deposit_amount_wei=config.default_deposit_amount_wei,
    )

    decision = None
    if config.openai_api_key:
        decision = DecisionClient(config.openai_base_url, config.openai_api_key, config.openai_model)

    price_reader = None
    if config.uniswap_v3_factory or config.price_triggers or profile.trigger_mode == TriggerMode.RACE:
        price_reader = PoolPriceReader(ledger, config.uniswap_v3_factory)

    return AgentEngine(
        config, ledger, identity, profile, gate, detector, submitter, executor,
        decision=decision, venue=venue, price_reader=price_reader, audit=audit,
    )
