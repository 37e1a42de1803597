"""
Tool evidence hashing and Audit Spine logging, with an in-memory spine.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from typing import Any, Optional

from conftest import AGENT, GOVERNOR, VAULT
from custody.audit import AuditSpineManager
from custody.deployments import POST, get_profile
from custody.evidence import create_tool_evidence, log_evidence_to_spine, wire_value
from custody.identity import AgentIdentity
from custody.policy_gate import PolicyGate
from custody.tools import parse_tool_call


class MemorySpine(AuditSpineManager):
    """AuditSpineManager that keeps events in a dict instead of Postgres."""

    def __init__(self):
        super().__init__("")
        self.events: dict[str, dict[str, Any]] = {}

    def log_event(self, actor_id: str, event_type: str, payload: dict[str, Any],
                  _max_retries: int = 3) -> str:
        event_id = str(uuid.uuid4())
        self.events[event_id] = {
            "id": event_id,
            "actor_id": actor_id,
            "event_type": event_type,
            "payload": json.loads(json.dumps(payload, default=str)),
        }
        return event_id

    def get_event(self, event_id: str) -> Optional[dict[str, Any]]:
        return self.events.get(event_id)

    def recent_events(self, limit: int = 50, event_type: str | None = None) -> list[dict[str, Any]]:
        events = [e for e in reversed(list(self.events.values()))
                  if event_type is None or e["event_type"] == event_type]
        return events[:limit]


def test_evidence_hash_covers_canonical_json():
    evidence = create_tool_evidence(
        "c1", POST, {"explanation": "x"}, {"status": "submitted", "bond_amount": 10 ** 24},
        created_at="2026-01-01T00:00:00+00:00",
    )
    canonical = json.dumps({
        "call_id": "c1",
        "tool": POST,
        "arguments": {"explanation": "x"},
        "output": {"status": "submitted", "bond_amount": str(10 ** 24)},
        "created_at": "2026-01-01T00:00:00+00:00",
    }, sort_keys=True)
    assert evidence.evidence_hash == hashlib.sha256(canonical.encode()).hexdigest()
    assert evidence.status == "submitted"

    changed = create_tool_evidence(
        "c1", POST, {"explanation": "y"}, {"status": "submitted", "bond_amount": 10 ** 24},
        created_at="2026-01-01T00:00:00+00:00",
    )
    assert changed.evidence_hash != evidence.evidence_hash


def test_wire_value_stringifies_integers_but_not_flags():
    assert wire_value({"a": 1, "b": [2, True], "c": b"\x01", "d": None}) == {
        "a": "1", "b": ["2", True], "c": "0x01", "d": None,
    }


def test_evidence_is_logged_to_the_spine():
    spine = MemorySpine()
    evidence = create_tool_evidence("c1", POST, {}, {"status": "rejected", "reasons": []})

    event_id = log_evidence_to_spine(spine, AGENT, evidence)

    event = spine.get_event(event_id)
    assert event["event_type"] == "TOOL_EVIDENCE:POST_BOND_AND_PROPOSE"
    assert event["payload"]["evidence_hash"] == evidence.evidence_hash


def test_every_gate_evaluation_is_audited():
    spine = MemorySpine()
    profile = get_profile("default")
    gate = PolicyGate(profile, AgentIdentity(AGENT, VAULT, GOVERNOR), profile.tools, audit=spine)
    state = gate.new_state()

    result = gate.validate(parse_tool_call("c1", POST, {"explanation": ""}), state, now_ms=0)

    assert not result.passed
    event = spine.get_event(result.event_id)
    assert event["event_type"] == "GATE_EVAL:POST_BOND_AND_PROPOSE"
    assert event["payload"]["verdict"] == "REJECTED"
    rules = {v["rule"] for v in event["payload"]["violations"]}
    assert {"step_order", "prepared_calls"} <= rules
    assert event["payload"]["state"]["pending_proposal"] is False
