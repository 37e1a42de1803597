"""
Policy Gate test suite: idempotency flags, pending-proposal exclusion,
recipient allowlist, copy-trade matching and state transitions.
"""

from __future__ import annotations

import json

import pytest

from conftest import AGENT, CTF, GOVERNOR, STRANGER, USDC, VAULT, WETH
from custody.deployments import (
    BUILD,
    DEPOSIT,
    DISPUTE,
    ERC1155_DEPOSIT,
    PLACE_ORDER,
    POST,
    BalanceRequirement,
    get_profile,
)
from custody.executor import ToolOutcome
from custody.identity import AgentIdentity
from custody.intents import LowLevelCall
from custody.policy_gate import (
    Observations,
    PolicyGate,
    Verdict,
    calculate_copy_amounts,
    compute_buy_order_amounts,
)
from custody.proposals import ProposalSubmission
from custody.reconcile import ProposalStatus
from custody.signals import Signal, SignalKind
from custody.timelock import DepositAnchor, TimelockTrigger
from custody.tools import parse_tool_call
from custody.triggers import PriceTrigger
from custody.venue import SourceTrade

NOW = 1_800_000_000_000
HASH = "0x" + "cd" * 32
YES_TOKEN = "1234567890"

IDENTITY = AgentIdentity(address=AGENT, vault=VAULT, governor=GOVERNOR)


def _gate(profile_name: str = "default", requirements=()) -> PolicyGate:
    profile = get_profile(profile_name)
    return PolicyGate(
        profile, IDENTITY, profile.tools,
        requirements=requirements,
        conditional_tokens=CTF,
        collateral_token=USDC,
    )


FLAT_FIELDS = (
    "token", "to", "amount_wei", "value_wei", "signature", "args_json", "router",
    "token_in", "token_out", "fee", "recipient", "amount_in_wei", "amount_out_min_wei",
    "sqrt_price_limit_x96", "ctf_contract", "collateral_token", "condition_id",
    "parent_collection_id", "partition",
)


def _actions(*actions: dict) -> dict:
    rows = []
    for action in actions:
        row = {k: None for k in FLAT_FIELDS}
        row.update(action)
        rows.append(row)
    return {"actions": rows}


def _transfer(to: str, amount: str = "10") -> dict:
    return _actions({"kind": "asset_transfer", "token": USDC, "to": to, "amount_wei": amount})


def _call(name: str, args: dict, call_id: str = "call_1"):
    return parse_tool_call(call_id, name, json.dumps(args))


def _submission() -> ProposalSubmission:
    return ProposalSubmission(
        proposal_id="0x" + "01" * 32, proposal_hash=HASH, bond_amount=0,
        collateral=USDC, oracle=GOVERNOR, version="v2-explained", submitted_at_ms=NOW,
    )


def _build_and_post(gate: PolicyGate, state) -> None:
    call = LowLevelCall(to=USDC, value=0, data=b"\x01")
    gate.on_outcome(_call(BUILD, _transfer(AGENT)), ToolOutcome({"status": "ok"}, calls=[call]),
                    state, NOW)
    gate.on_outcome(_call(POST, {"explanation": ""}),
                    ToolOutcome({"status": "submitted"}, submission=_submission()), state, NOW)


# ---------------------------------------------------------------------------
# Step order and pending proposal
# ---------------------------------------------------------------------------

def test_build_accepted_on_fresh_state():
    gate = _gate()
    result = gate.validate(_call(BUILD, _transfer(AGENT)), gate.new_state(), NOW)
    assert result.verdict == Verdict.ACCEPTED


def test_post_requires_prepared_calls():
    gate = _gate()
    result = gate.validate(_call(POST, {"explanation": "x"}), gate.new_state(), NOW)
    assert not result.passed
    rules = {v.rule for v in result.violations}
    assert "prepared_calls" in rules
    assert "step_order" in rules


def test_proposal_tools_rejected_while_pending():
    gate = _gate()
    state = gate.new_state()
    _build_and_post(gate, state)
    assert state.pending is not None

    for name, args in ((BUILD, _transfer(AGENT)), (POST, {"explanation": ""})):
        result = gate.validate(_call(name, args), state, NOW)
        assert not result.passed
        assert "pending_proposal" in {v.rule for v in result.violations}


def test_onchain_pending_blocks_proposals_without_local_record():
    gate = _gate()
    state = gate.new_state()
    gate.augment([], state, NOW, Observations(onchain_pending=True))
    result = gate.validate(_call(BUILD, _transfer(AGENT)), state, NOW)
    assert "pending_proposal" in {v.rule for v in result.violations}


def test_completed_step_is_not_repeated():
    gate = _gate()
    state = gate.new_state()
    gate.on_outcome(_call(BUILD, _transfer(AGENT)),
                    ToolOutcome({"status": "ok"}, calls=[LowLevelCall(USDC, 0, b"")]), state, NOW)
    result = gate.validate(_call(BUILD, _transfer(AGENT)), state, NOW)
    assert "idempotency" in {v.rule for v in result.violations}


def test_failed_outcome_does_not_advance_flags():
    gate = _gate()
    state = gate.new_state()
    gate.on_outcome(_call(BUILD, _transfer(AGENT)), ToolOutcome({"status": "error"}), state, NOW)
    assert state.flags["proposal_built"] is False
    assert state.prepared_calls == []


def test_tool_outside_profile_rejected():
    gate = _gate("timelock-withdraw")
    result = gate.validate(_call(DEPOSIT, {"asset": None, "amount_wei": None}),
                           gate.new_state(), NOW)
    assert "tool_enabled" in {v.rule for v in result.violations}


def test_dispute_is_not_a_step_tool():
    gate = _gate()
    state = gate.new_state()
    _build_and_post(gate, state)
    call = _call(DISPUTE, {"assertion_id": "0x" + "aa" * 32, "explanation": "bad"})
    assert gate.validate(call, state, NOW).passed


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("recipient", [AGENT, VAULT])
def test_agent_and_vault_are_allowed_recipients(recipient):
    gate = _gate()
    assert gate.validate(_call(BUILD, _transfer(recipient)), gate.new_state(), NOW).passed


def test_unknown_recipient_rejected():
    gate = _gate()
    result = gate.validate(_call(BUILD, _transfer(STRANGER)), gate.new_state(), NOW)
    assert [v.rule for v in result.violations] == ["recipients"]
    assert result.refusal_output()["status"] == "rejected"


def test_configured_recipient_allowed():
    identity = AgentIdentity(AGENT, VAULT, GOVERNOR, authorized_recipients=[STRANGER])
    profile = get_profile("default")
    gate = PolicyGate(profile, identity, profile.tools)
    assert gate.validate(_call(BUILD, _transfer(STRANGER)), gate.new_state(), NOW).passed


def _contract_call(to: str, signature: str, args=None, value_wei=None) -> dict:
    return {"kind": "contract_call", "to": to, "signature": signature,
            "args_json": json.dumps(args) if args is not None else None, "value_wei": value_wei}


@pytest.mark.parametrize("action", [
    _contract_call(STRANGER, "deposit()", value_wei=str(10 ** 18)),
    _contract_call(USDC, "transfer(address,uint256)", [STRANGER, "999"]),
    _contract_call(USDC, "approve(address spender, uint256 amount)", [STRANGER, "999"]),
    _contract_call(USDC, "transferFrom(address,address,uint256)", [VAULT, STRANGER, "1"]),
    _contract_call(STRANGER, "execute(bytes)", ["0x"]),
])
def test_contract_call_cannot_pay_unknown_recipient(action):
    gate = _gate()
    result = gate.validate(_call(BUILD, _actions(action)), gate.new_state(), NOW)
    assert [v.rule for v in result.violations] == ["recipients"]
    assert STRANGER in result.violations[0].description


def test_contract_call_to_allowed_receivers():
    gate = _gate()
    build = _actions(
        _contract_call(USDC, "transfer(address,uint256)", [AGENT.lower(), "5"]),
        _contract_call(VAULT, "deposit()", value_wei="1"),
    )
    assert gate.validate(_call(BUILD, build), gate.new_state(), NOW).passed


# ---------------------------------------------------------------------------
# Proposal lifecycle
# ---------------------------------------------------------------------------

def test_execution_resets_flags_and_counts_cycle():
    gate = _gate()
    state = gate.new_state()
    _build_and_post(gate, state)

    status = gate.on_proposal_events([HASH.upper().replace("0X", "0x")], [], state, NOW + 5)

    assert status == ProposalStatus.EXECUTED
    assert state.pending is None
    assert state.cycles_completed == 1
    assert state.last_action_ms == NOW + 5
    assert not any(state.flags.values())
    assert state.prepared_calls == []


def test_deletion_resets_without_counting():
    gate = _gate()
    state = gate.new_state()
    _build_and_post(gate, state)
    assert gate.on_proposal_events([], [HASH], state, NOW) == ProposalStatus.DELETED
    assert state.pending is None
    assert state.cycles_completed == 0
    assert not any(state.flags.values())


def test_unrelated_events_leave_pending_alone():
    gate = _gate()
    state = gate.new_state()
    _build_and_post(gate, state)
    assert gate.on_proposal_events(["0x" + "00" * 32], [], state, NOW) is None
    assert state.pending is not None


def test_expired_submission_is_cleared():
    gate = _gate()
    state = gate.new_state()
    _build_and_post(gate, state)
    gate.reconcile(ProposalStatus.EXPIRED, state)
    assert state.pending is None
    assert state.flags["proposal_posted"] is False


def test_confirmed_submission_kept_and_marked():
    gate = _gate()
    state = gate.new_state()
    _build_and_post(gate, state)
    gate.reconcile(ProposalStatus.CONFIRMED, state)
    assert state.pending.confirmed is True


# ---------------------------------------------------------------------------
# Trigger gating
# ---------------------------------------------------------------------------

def _rules(result) -> list[str]:
    return [v.rule for v in result.violations]


def test_race_needs_an_unused_winner():
    gate = _gate("price-race-swap")
    state = gate.new_state()
    build = _call(BUILD, _transfer(VAULT))
    assert _rules(gate.validate(build, state, NOW)) == ["trigger_race"]

    trigger = PriceTrigger(id="sell-high", base_token=WETH, quote_token=USDC,
                           comparator="gte", threshold=3000.0, priority=0)
    assert gate.fire_trigger([trigger], state) is trigger
    assert gate.validate(build, state, NOW).passed

    # a deleted proposal re-arms the winner
    _build_and_post(gate, state)
    assert state.race_consumed is True
    gate.on_proposal_events([], [HASH], state, NOW)
    assert state.race_consumed is False
    assert gate.validate(build, state, NOW).passed

    _build_and_post(gate, state)
    gate.on_proposal_events([HASH], [], state, NOW)
    assert _rules(gate.validate(build, state, NOW)) == ["trigger_race"]


def _timelock(trigger_id: str = "absolute:1000") -> TimelockTrigger:
    return TimelockTrigger(id=trigger_id, kind="absolute", timestamp_ms=1000,
                           source="after January 1, 1970")


def test_timelock_authorizes_exactly_one_proposal():
    gate = _gate("timelock-withdraw")
    state = gate.new_state()
    build = _call(BUILD, _transfer(AGENT))
    result = gate.validate(build, state, NOW)
    assert _rules(result) == ["timelock"]
    assert "elapsed" in result.violations[0].description

    trigger = _timelock()
    state.timelock_due = [trigger.id]
    assert gate.fire_trigger([trigger], state) is trigger
    assert gate.validate(build, state, NOW).passed

    _build_and_post(gate, state)
    assert state.timelock_authorized == []
    gate.on_proposal_events([HASH], [], state, NOW)

    # still due, but fired once and already used
    assert gate.fire_trigger([trigger], state) is None
    result = gate.validate(build, state, NOW)
    assert _rules(result) == ["timelock"]
    assert "already used" in result.violations[0].description


def test_deleted_timelock_proposal_restores_its_authorization():
    gate = _gate("timelock-withdraw")
    state = gate.new_state()
    trigger = _timelock()
    state.timelock_due = [trigger.id]
    gate.fire_trigger([trigger], state)

    _build_and_post(gate, state)
    gate.on_proposal_events([], [HASH], state, NOW)

    assert state.timelock_authorized == [trigger.id]
    assert gate.validate(_call(BUILD, _transfer(AGENT)), state, NOW).passed


def test_deposit_at_time_zero_anchors_timelocks():
    gate = _gate("timelock-withdraw")
    state = gate.new_state()
    deposit = Signal(kind=SignalKind.ASSET_DEPOSIT, asset=USDC, amount=1,
                     transaction_hash="0xdep", timestamp_ms=0)
    gate.record_deposits([deposit, deposit], state)
    assert state.deposit_anchors == [DepositAnchor("0xdep", 0)]


# ---------------------------------------------------------------------------
# DCA pacing and balances
# ---------------------------------------------------------------------------

def test_dca_cycle_budget_and_interval():
    requirement = BalanceRequirement("agent_deposit", "agent", USDC, 1)
    gate = _gate("dca", requirements=[requirement])
    state = gate.new_state()
    deposit = _call(DEPOSIT, {"asset": None, "amount_wei": None})

    gate.augment([], state, NOW, Observations(balances={"agent_deposit": 0}))
    assert "balances" in {v.rule for v in gate.validate(deposit, state, NOW).violations}

    gate.augment([], state, NOW, Observations(balances={"agent_deposit": 5}))
    assert gate.validate(deposit, state, NOW).passed

    state.last_action_ms = NOW - 10_000
    assert "interval" in {v.rule for v in gate.validate(deposit, state, NOW).violations}

    state.cycles_completed = 2
    assert "cycle_budget" in {v.rule for v in gate.validate(deposit, state, NOW).violations}


def test_augment_emits_timer_balances_and_state():
    requirement = BalanceRequirement("vault_reimbursement", "vault", USDC, 100)
    gate = _gate("dca", requirements=[requirement])
    state = gate.new_state()
    state.last_action_ms = NOW - 250_000
    signals = gate.augment(
        [Signal(kind=SignalKind.ASSET_DEPOSIT, asset=USDC, amount=1)], state, NOW,
        Observations(balances={"vault_reimbursement": 50}),
    )
    kinds = [s.kind for s in signals]
    assert kinds == [SignalKind.ASSET_DEPOSIT, SignalKind.TIMER, SignalKind.BALANCES,
                     SignalKind.AGENT_STATE]
    assert signals[1].data["elapsed_seconds"] == 250
    assert signals[1].data["should_execute"] is True
    assert signals[2].data["vault_reimbursement_sufficient"] is False
    assert signals[3].data["agent_state"]["pending_proposal"] is False


# ---------------------------------------------------------------------------
# Copy trading
# ---------------------------------------------------------------------------

def test_copy_amounts_keep_fee():
    assert calculate_copy_amounts(1_000_000, 100) == (990_000, 10_000)
    assert compute_buy_order_amounts(990_000, 0.55) == (990_000, 1_800_000)


def _copy_state(gate: PolicyGate):
    state = gate.new_state()
    trade = SourceTrade(id="trade-1", side="BUY", outcome="YES", price=0.55)
    signal = gate.observe_source_trade(trade, state, 1_000_000, 100, YES_TOKEN, "42")
    assert signal is not None and signal.kind == SignalKind.SOURCE_TRADE_OBSERVED
    return state


def test_copy_order_must_match_active_trade():
    gate = _gate("copy-trading")
    state = _copy_state(gate)
    good = {"token_id": YES_TOKEN, "side": "BUY", "maker_amount": "990000",
            "taker_amount": "1800000", "order_type": "FOK"}
    assert gate.validate(_call(PLACE_ORDER, good), state, NOW).passed

    bad = dict(good, maker_amount="1000000")
    result = gate.validate(_call(PLACE_ORDER, bad), state, NOW)
    assert [v.rule for v in result.violations] == ["copy_trade"]


def test_copy_deposit_bounded_by_held_tokens():
    gate = _gate("copy-trading")
    state = _copy_state(gate)
    state.flags["order_submitted"] = True
    gate.augment([], state, NOW, Observations(balances={"copy_token": 1_800_000}))

    ok = {"token": CTF, "token_id": YES_TOKEN, "amount": "1800000", "data": None}
    assert gate.validate(_call(ERC1155_DEPOSIT, ok), state, NOW).passed

    too_much = dict(ok, amount="1800001")
    assert not gate.validate(_call(ERC1155_DEPOSIT, too_much), state, NOW).passed


def test_copy_reimbursement_goes_to_agent_for_copy_amount():
    gate = _gate("copy-trading")
    state = _copy_state(gate)
    state.flags.update(order_submitted=True, token_deposited=True)

    assert gate.validate(_call(BUILD, _transfer(AGENT, "990000")), state, NOW).passed
    assert not gate.validate(_call(BUILD, _transfer(AGENT, "1000000")), state, NOW).passed
    assert not gate.validate(_call(BUILD, _transfer(VAULT, "990000")), state, NOW).passed


def test_copy_trade_not_observed_twice():
    gate = _gate("copy-trading")
    state = _copy_state(gate)
    trade = SourceTrade(id="trade-1", side="BUY", outcome="YES", price=0.55)
    assert gate.observe_source_trade(trade, state, 1_000_000, 100, YES_TOKEN) is None

    state.active_trade = None
    state.seen_trade_id = "trade-1"
    assert gate.observe_source_trade(trade, state, 1_000_000, 100, YES_TOKEN) is None


def test_sell_trades_are_not_copied():
    gate = _gate("copy-trading")
    state = gate.new_state()
    trade = SourceTrade(id="t", side="SELL", outcome="YES", price=0.5)
    assert gate.observe_source_trade(trade, state, 1_000_000, 100, YES_TOKEN) is None
    assert state.active_trade is None
