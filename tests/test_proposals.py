"""
Proposal Submitter tests: bond preflight, version fallback and the
proposal hash used to match governor events.
"""

from __future__ import annotations

import pytest

from conftest import AGENT, GOVERNOR, ORACLE, USDC, VAULT, FakeLedger, script_governor, selector
from custody.errors import BondShortfallError, PreflightError, VersionFallbackExhausted
from custody.intents import ERC20_APPROVE, ERC20_TRANSFER, LowLevelCall, encode_call
from custody.proposals import PROPOSAL_VERSIONS, ProposalSubmitter, proposal_hash

V2 = PROPOSAL_VERSIONS[0].signature
V1 = PROPOSAL_VERSIONS[1].signature

CALLS = [LowLevelCall(to=USDC, value=0, data=encode_call(ERC20_TRANSFER, [AGENT, 10]))]


def _submitter(ledger: FakeLedger, bond: int = 0) -> ProposalSubmitter:
    script_governor(ledger, bond=bond)
    ledger.set_native(AGENT, 0, 10 ** 18)
    return ProposalSubmitter(ledger, GOVERNOR, clock=lambda: 1_000)


def test_submits_with_newest_version_when_it_simulates(ledger):
    submitter = _submitter(ledger)
    ledger.set_read(GOVERNOR, V2, [], ())
    ledger.set_read(GOVERNOR, V1, [], ())

    submission = submitter.submit(CALLS, "pay the agent")

    assert submission.version == "v2-explained"
    assert submission.proposal_hash == proposal_hash(CALLS)
    assert submission.submitted_at_ms == 1_000
    assert len(ledger.sent) == 1
    assert ledger.sent[0][1][:4] == selector(V2)


def test_falls_back_to_legacy_interface(ledger):
    submitter = _submitter(ledger)
    ledger.revert(GOVERNOR, V2, "function selector not recognized")
    ledger.set_read(GOVERNOR, V1, [], ())

    submission = submitter.submit(CALLS)

    assert submission.version == "v1-legacy"
    assert ledger.sent[0][1][:4] == selector(V1)


def test_exhausted_fallback_keeps_every_attempt(ledger):
    submitter = _submitter(ledger)
    ledger.revert(GOVERNOR, V2, "selector not recognized")
    ledger.revert(GOVERNOR, V1, "bond not approved")

    with pytest.raises(VersionFallbackExhausted) as excinfo:
        submitter.submit(CALLS)

    attempts = excinfo.value.attempts
    assert [name for name, _ in attempts] == ["v2-explained", "v1-legacy"]
    assert "selector not recognized" in attempts[0][1]
    assert "bond not approved" in excinfo.value.last_error
    assert ledger.sent == []


def test_bond_shortfall_reports_required_and_available(ledger):
    submitter = _submitter(ledger, bond=500)
    ledger.set_read(USDC, "balanceOf(address)", [200])

    with pytest.raises(BondShortfallError) as excinfo:
        submitter.submit(CALLS)

    assert excinfo.value.required == 500
    assert excinfo.value.available == 200
    assert ledger.sent == []


def test_oracle_minimum_bond_wins_when_larger(ledger):
    submitter = _submitter(ledger, bond=100)
    ledger.set_read(ORACLE, "getMinimumBond(address)", [300])
    ledger.set_read(USDC, "balanceOf(address)", [1_000])
    ledger.set_read(USDC, "allowance(address,address)", [300])

    _, required = submitter.preflight()
    assert required == 300
    assert ledger.sent == []


def test_short_allowance_is_approved_and_rechecked(ledger):
    submitter = _submitter(ledger, bond=100)
    ledger.set_read(USDC, "balanceOf(address)", [1_000])
    ledger.set_read(USDC, "allowance(address,address)", [0])

    # allowance never moves: approval must be detected as insufficient
    with pytest.raises(PreflightError):
        submitter.preflight()
    assert ledger.sent[0][0] == USDC
    assert ledger.sent[0][1] == encode_call(ERC20_APPROVE, [ORACLE, 100])


def test_empty_batch_is_refused(ledger):
    submitter = _submitter(ledger)
    with pytest.raises(PreflightError):
        submitter.submit([])


def test_no_gas_fails_preflight(ledger):
    script_governor(ledger)
    submitter = ProposalSubmitter(ledger, GOVERNOR)
    with pytest.raises(PreflightError):
        submitter.preflight()


def test_proposal_hash_depends_on_calls():
    other = [LowLevelCall(to=USDC, value=0, data=encode_call(ERC20_TRANSFER, [VAULT, 10]))]
    assert proposal_hash(CALLS) != proposal_hash(other)
    assert proposal_hash(CALLS).startswith("0x") and len(proposal_hash(CALLS)) == 66
