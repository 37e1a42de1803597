"""
Deployment Profiles

One engine serves every deployment; a profile declares what differs between
them: which tools the decision service may call, the ordered step tools and
the state flag each one sets, pacing, cycle budget, trigger gating and the
balances that must hold before the first step.

default:           build -> post
dca:               deposit -> build -> post, paced and capped
timelock-withdraw: build -> post once a timelock is due
price-race-swap:   build -> post for the single winning price trigger
copy-trading:      order -> token deposit -> build -> post per source trade
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from custody.config import AgentConfig
from custody.errors import ConfigurationError


class TriggerMode(str, Enum):
    NONE = "none"
    TIMELOCK = "timelock"
    RACE = "race"
    COPY = "copy"


# Tool names
BUILD = "build_og_transactions"
POST = "post_bond_and_propose"
DEPOSIT = "make_deposit"
ERC1155_DEPOSIT = "make_erc1155_deposit"
DISPUTE = "dispute_assertion"
PLACE_ORDER = "polymarket_clob_place_order"
CANCEL_ORDERS = "polymarket_clob_cancel_orders"

PROPOSAL_TOOLS = frozenset({BUILD, POST})
DISPUTE_GATED = frozenset({DISPUTE})


@dataclass(frozen=True)
class Step:
    tool: str
    flag: str


@dataclass(frozen=True)
class BalanceRequirement:
    label: str
    holder: str              # "vault" | "agent"
    asset: str
    minimum: int


@dataclass(frozen=True)
class DeploymentProfile:
    name: str
    role: str
    tools: tuple[str, ...]
    steps: tuple[Step, ...]
    interval_seconds: Optional[int] = None
    max_cycles: Optional[int] = None
    trigger_mode: TriggerMode = TriggerMode.NONE
    guidance: tuple[str, ...] = ()

    @property
    def flags(self) -> tuple[str, ...]:
        return tuple(step.flag for step in self.steps)

    def step_for(self, tool: str) -> Optional[Step]:
        for step in self.steps:
            if step.tool == tool:
                return step
        return None

    def predecessor(self, tool: str) -> Optional[Step]:
        for index, step in enumerate(self.steps):
            if step.tool == tool:
                return self.steps[index - 1] if index > 0 else None
        return None

    @property
    def first_step(self) -> Optional[Step]:
        return self.steps[0] if self.steps else None


_PROPOSAL_STEPS = (Step(BUILD, "proposal_built"), Step(POST, "proposal_posted"))


DEPLOYMENT_PROFILES: dict[str, DeploymentProfile] = {
    "default": DeploymentProfile(
        name="default",
        role="You are an agent monitoring an onchain commitment (Safe + Optimistic Governor).",
        tools=(BUILD, POST, DEPOSIT, DISPUTE),
        steps=_PROPOSAL_STEPS,
        guidance=(
            "Given signals and rules, recommend a course of action. Prefer no-op when unsure.",
            "Use build_og_transactions to construct proposal payloads, then post_bond_and_propose.",
        ),
    ),
    "dca": DeploymentProfile(
        name="dca",
        role="You are a DCA (dollar cost averaging) service agent.",
        tools=(DEPOSIT, BUILD, POST, DISPUTE),
        steps=(Step(DEPOSIT, "deposit_confirmed"),) + _PROPOSAL_STEPS,
        interval_seconds=200,
        max_cycles=2,
        guidance=(
            "Each cycle: deposit into the Safe, then build and post the reimbursement proposal.",
            "Read signals.agent_state to see which steps already completed; never repeat a completed step.",
            "If a precondition fails (timer, balances, pending proposal), output action=ignore.",
        ),
    ),
    "timelock-withdraw": DeploymentProfile(
        name="timelock-withdraw",
        role="You are a timelock withdrawal agent.",
        tools=(BUILD, POST, DISPUTE),
        steps=_PROPOSAL_STEPS,
        trigger_mode=TriggerMode.TIMELOCK,
        guidance=(
            "You may only withdraw funds to your own agent address, and only after the timelock in the rules.",
            "If a timelock trigger fires, re-check the rules and propose withdrawals that follow them.",
        ),
    ),
    "price-race-swap": DeploymentProfile(
        name="price-race-swap",
        role="You are a price-race swap agent for a commitment Safe controlled by an Optimistic Governor.",
        tools=(BUILD, POST, DISPUTE),
        steps=_PROPOSAL_STEPS,
        trigger_mode=TriggerMode.RACE,
        guidance=(
            "Interpret the commitment as a multi-choice race and execute at most one winning branch.",
            "Use routed_swap actions with the pool fee from the price_trigger signal.",
            "Never route purchased assets anywhere other than the Safe unless the commitment requires it.",
        ),
    ),
    "copy-trading": DeploymentProfile(
        name="copy-trading",
        role="You are a copy-trading commitment agent.",
        tools=(PLACE_ORDER, ERC1155_DEPOSIT, BUILD, POST, CANCEL_ORDERS, DISPUTE),
        steps=(
            Step(PLACE_ORDER, "order_submitted"),
            Step(ERC1155_DEPOSIT, "token_deposited"),
        ) + _PROPOSAL_STEPS,
        trigger_mode=TriggerMode.COPY,
        guidance=(
            "Copy the source trader's latest BUY with 99% of the Safe collateral; 1% is kept as a fee.",
            "Use the amounts in signals.agent_state.copy_trade exactly: place the order, deposit the "
            "outcome tokens into the Safe, then propose the reimbursement to your own address.",
        ),
    ),
}


def get_profile(name: str) -> DeploymentProfile:
    if name not in DEPLOYMENT_PROFILES:
        known = ", ".join(sorted(DEPLOYMENT_PROFILES))
        raise ConfigurationError(f"Unknown AGENT_MODULE '{name}' (known: {known})")
    return DEPLOYMENT_PROFILES[name]


def resolve_profile(config: AgentConfig) -> DeploymentProfile:
    """Profile for the configured deployment with config-driven pacing applied."""
    profile = get_profile(config.agent_module)
    if profile.name == "dca":
        profile = replace(
            profile,
            interval_seconds=config.dca.interval_seconds,
            max_cycles=config.dca.max_cycles,
        )
    return profile


def enabled_tools(profile: DeploymentProfile, config: AgentConfig) -> tuple[str, ...]:
    tools = []
    for tool in profile.tools:
        if tool in PROPOSAL_TOOLS and not config.propose_enabled:
            continue
        if tool in DISPUTE_GATED and not config.dispute_enabled:
            continue
        tools.append(tool)
    return tuple(tools)


def balance_requirements(profile: DeploymentProfile, config: AgentConfig) -> list[BalanceRequirement]:
    if profile.name != "dca":
        return []
    requirements: list[BalanceRequirement] = []
    if config.dca.reimbursement_asset and config.dca.min_vault_balance_wei > 0:
        requirements.append(BalanceRequirement(
            label="vault_reimbursement",
            holder="vault",
            asset=config.dca.reimbursement_asset,
            minimum=config.dca.min_vault_balance_wei,
        ))
    if config.dca.deposit_asset:
        requirements.append(BalanceRequirement(
            label="agent_deposit",
            holder="agent",
            asset=config.dca.deposit_asset,
            minimum=1,
        ))
    return requirements


def build_instructions(profile: DeploymentProfile, config: AgentConfig) -> str:
    """System instructions: short operational framing plus the policy text verbatim."""
    if config.propose_enabled and config.dispute_enabled:
        mode = "You may propose and dispute."
    elif config.propose_enabled:
        mode = "You may propose but you may not dispute."
    elif config.dispute_enabled:
        mode = "You may dispute but you may not propose."
    else:
        mode = "You may not propose or dispute; provide opinions only."

    parts = [profile.role, *profile.guidance, mode,
             "If an onchain action is needed, call a tool.",
             "If no action is needed, output strict JSON with keys: action "
             "(propose|deposit|dispute|ignore|other) and rationale (string)."]
    if config.commitment_text:
        parts.append("Commitment text:\n" + config.commitment_text)
    return " ".join(parts)
