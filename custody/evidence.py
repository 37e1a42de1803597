"""
Tool Evidence

One record per tool call the decision service requested, executed or refused,
hashed with SHA-256 over canonical JSON. The output part is what goes back to
the decision service in the explanation turn.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel

from custody.audit import AuditSpineManager


class ToolEvidence(BaseModel):
    call_id: str
    tool: str
    arguments: Any
    output: dict[str, Any]
    created_at: str
    evidence_hash: str

    @property
    def status(self) -> str:
        return str(self.output.get("status", "unknown"))

    def output_json(self) -> str:
        return json.dumps(self.output, sort_keys=True, default=str)


def wire_value(value: Any) -> Any:
    """Integers as strings, recursively; bytes as 0x hex."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, dict):
        return {str(k): wire_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [wire_value(v) for v in value]
    return value


def create_tool_evidence(
    call_id: str,
    tool: str,
    arguments: Any,
    output: dict[str, Any],
    created_at: Optional[str] = None,
) -> ToolEvidence:
    """Build a ToolEvidence with a SHA-256 hash over canonical JSON."""
    created_at = created_at or datetime.now(timezone.utc).isoformat()
    arguments = wire_value(arguments)
    output = wire_value(output)

    # All fields except evidence_hash, serialized to canonical JSON
    pre_hash = {
        "call_id": call_id,
        "tool": tool,
        "arguments": arguments,
        "output": output,
        "created_at": created_at,
    }
    canonical = json.dumps(pre_hash, sort_keys=True)
    evidence_hash = hashlib.sha256(canonical.encode()).hexdigest()

    return ToolEvidence(
        call_id=call_id,
        tool=tool,
        arguments=arguments,
        output=output,
        created_at=created_at,
        evidence_hash=evidence_hash,
    )


def log_evidence_to_spine(
    audit: AuditSpineManager,
    actor_id: str,
    evidence: ToolEvidence,
) -> str:
    """Log a TOOL_EVIDENCE event to the Audit Spine. Returns event_id."""
    return audit.log_event(
        actor_id=actor_id,
        event_type=f"TOOL_EVIDENCE:{evidence.tool.upper()}",
        payload=evidence.model_dump(),
    )
