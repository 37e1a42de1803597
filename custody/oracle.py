"""
Decision Oracle Client
Thin synchronous wrapper over an OpenAI Responses-compatible endpoint.

One request per cycle: the deployment instructions plus the policy text go in
the system message, the signals and context go in the user message as JSON,
and the response carries either a structured decision or tool calls. Nothing
is retried at this layer; failures raise DecisionProtocolError and abort the
cycle.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from custody.errors import DecisionProtocolError
from custody.evidence import wire_value
from custody.signals import Signal
from custody.triggers import PriceTrigger, sanitize_price_triggers

logger = logging.getLogger(__name__)

DECISION_ACTIONS = ("propose", "deposit", "dispute", "ignore", "other")

DECISION_FORMAT = {
    "type": "json_schema",
    "name": "agent_decision",
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {
            "action": {"type": "string", "enum": list(DECISION_ACTIONS)},
            "rationale": {"type": "string"},
        },
        "required": ["action", "rationale"],
        "additionalProperties": False,
    },
}

PRICE_TRIGGER_INSTRUCTIONS = (
    "Extract every price condition from the commitment text. Respond with JSON "
    '{"triggers": [{"id", "base_token", "quote_token", "comparator" (gte|lte), '
    '"threshold", "priority", "emit_once", "pool"}]}. Use an empty list when '
    "the text has no price conditions."
)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class StructuredDecision(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["propose", "deposit", "dispute", "ignore", "other"]
    rationale: str


@dataclass(frozen=True)
class OracleToolCall:
    call_id: str
    name: str
    arguments: str          # raw JSON string as returned


@dataclass
class DecisionResult:
    response_id: str
    decision: Optional[StructuredDecision] = None
    tool_calls: list[OracleToolCall] = field(default_factory=list)

    def as_json(self) -> dict[str, Any]:
        return {
            "response_id": self.response_id,
            "decision": self.decision.model_dump() if self.decision else None,
            "tool_calls": [{"call_id": c.call_id, "name": c.name} for c in self.tool_calls],
        }


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class DecisionClient:
    """
    Client for the decision service.

    Args:
        base_url: API base (e.g. "https://api.openai.com/v1")
        api_key: bearer token
        model: model name sent with every request
        timeout: HTTP request timeout in seconds
        transport: httpx transport override (tests)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}"},
        )
        self._trigger_cache: dict[str, list[PriceTrigger]] = {}

    def close(self) -> None:
        self._client.close()

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = self._client.post(f"{self.base_url}/responses", json=body)
        except httpx.HTTPError as exc:
            raise DecisionProtocolError(f"Decision request failed: {exc}") from exc
        if not resp.is_success:
            raise DecisionProtocolError(
                f"Decision service returned {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise DecisionProtocolError(
                f"Decision service returned non-JSON body: {resp.text[:200]}",
                status_code=resp.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise DecisionProtocolError("Decision service returned a non-object body")
        return data

    def decide(
        self,
        signals: Sequence[Signal],
        context: dict[str, Any],
        tools: list[dict],
        instructions: str,
        extra: dict[str, Any] | None = None,
    ) -> DecisionResult:
        """
        Ask for a decision on this cycle's signals.

        Returns:
            DecisionResult with the response id, an optional structured
            decision and the requested tool calls in order.
        """
        payload = {"signals": [s.as_json() for s in signals], "context": context}
        payload.update(extra or {})

        body: dict[str, Any] = {
            "model": self.model,
            "input": [
                {"role": "system", "content": instructions},
                {"role": "user", "content": json.dumps(wire_value(payload), sort_keys=True)},
            ],
            "text": {"format": DECISION_FORMAT},
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
            body["parallel_tool_calls"] = False

        data = self._post(body)
        return parse_decision(data)

    def explain(self, response_id: str, outputs: list[tuple[str, str]]) -> Optional[str]:
        """
        Send tool outputs back for a short explanation. Never raises.

        Args:
            response_id: id of the response that requested the tools
            outputs: (call_id, output JSON) pairs
        """
        if not outputs:
            return None
        body = {
            "model": self.model,
            "previous_response_id": response_id,
            "input": [
                {"type": "function_call_output", "call_id": call_id, "output": output}
                for call_id, output in outputs
            ],
        }
        try:
            data = self._post(body)
        except DecisionProtocolError as exc:
            logger.warning("explanation turn failed: %s", exc)
            return None
        text = _output_text(data)
        if not text:
            logger.warning("explanation turn for %s returned no text", response_id)
        return text or None

    def infer_price_triggers(self, policy_text: str) -> list[PriceTrigger]:
        """Price triggers implied by the policy text; cached per text."""
        if policy_text in self._trigger_cache:
            return self._trigger_cache[policy_text]
        body = {
            "model": self.model,
            "input": [
                {"role": "system", "content": PRICE_TRIGGER_INSTRUCTIONS},
                {"role": "user", "content": policy_text},
            ],
            "text": {"format": {"type": "json_object"}},
        }
        data = self._post(body)
        text = _output_text(data)
        try:
            parsed = json.loads(text)
        except (TypeError, json.JSONDecodeError) as exc:
            raise DecisionProtocolError(f"Price trigger response is not JSON: {text!r}") from exc
        raw = parsed.get("triggers", []) if isinstance(parsed, dict) else None
        try:
            triggers = sanitize_price_triggers(raw)
        except ValueError as exc:
            raise DecisionProtocolError(f"Inferred price triggers are invalid: {exc}") from exc
        self._trigger_cache[policy_text] = triggers
        return triggers


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def _output_text(data: dict[str, Any]) -> str:
    if isinstance(data.get("output_text"), str):
        return data["output_text"]
    parts: list[str] = []
    for item in data.get("output") or []:
        if item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            if content.get("type") == "output_text" and isinstance(content.get("text"), str):
                parts.append(content["text"])
    return "".join(parts)


def parse_decision(data: dict[str, Any]) -> DecisionResult:
    response_id = data.get("id")
    if not response_id:
        raise DecisionProtocolError("Decision response has no id")

    tool_calls = []
    for item in data.get("output") or []:
        if item.get("type") == "function_call":
            tool_calls.append(OracleToolCall(
                call_id=item.get("call_id") or item.get("id") or "",
                name=item.get("name", ""),
                arguments=item.get("arguments") or "{}",
            ))

    text = _output_text(data).strip()
    decision = None
    if text:
        try:
            decision = StructuredDecision.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise DecisionProtocolError(f"Structured decision is invalid: {exc}") from exc

    if decision is None and not tool_calls:
        raise DecisionProtocolError("Decision response is empty")
    return DecisionResult(response_id=response_id, decision=decision, tool_calls=tool_calls)
