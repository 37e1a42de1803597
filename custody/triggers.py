"""
Trigger Board

Price triggers parsed from configuration (or inferred from the policy text)
and the selection rule shared by every trigger kind: among the triggers that
are true in a cycle at most one fires, lowest priority first, then lexical id.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol

from eth_utils import is_address, to_checksum_address

COMPARATORS = {"gte": "gte", ">=": "gte", "lte": "lte", "<=": "lte"}


# ---------------------------------------------------------------------------
# Price triggers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PriceTrigger:
    id: str
    base_token: str
    quote_token: str
    comparator: str
    threshold: float
    priority: int
    emit_once: bool = True
    label: Optional[str] = None
    pool: Optional[str] = None

    def is_met(self, price: float) -> bool:
        if self.comparator == "gte":
            return price >= self.threshold
        return price <= self.threshold

    def as_json(self) -> dict[str, Any]:
        out = {
            "trigger_id": self.id,
            "base_token": self.base_token,
            "quote_token": self.quote_token,
            "comparator": self.comparator,
            "threshold": self.threshold,
            "priority": self.priority,
        }
        if self.label:
            out["label"] = self.label
        out["pool"] = self.pool or "high-liquidity"
        return out


def _address(value: Any, index: int, field_name: str) -> str:
    if not isinstance(value, str) or not is_address(value) or not value.startswith("0x"):
        raise ValueError(f"Trigger {index} has invalid {field_name}: {value!r}")
    return to_checksum_address(value)


def sanitize_price_triggers(raw: Any) -> list[PriceTrigger]:
    """
    Validate raw trigger dicts and return them in firing order.

    Raises:
        ValueError on any malformed trigger or duplicate id.
    """
    if not isinstance(raw, list):
        return []

    triggers: list[PriceTrigger] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValueError(f"Trigger at index {index} is not an object.")

        base = _address(item.get("base_token", item.get("baseToken")), index, "base_token")
        quote = _address(item.get("quote_token", item.get("quoteToken")), index, "quote_token")
        if base == quote:
            raise ValueError(f"Trigger {index} uses the same base and quote token.")

        try:
            threshold = float(item.get("threshold"))
        except (TypeError, ValueError):
            raise ValueError(f"Trigger {index} has invalid threshold.") from None
        if not threshold > 0 or threshold == float("inf"):
            raise ValueError(f"Trigger {index} has invalid threshold.")

        priority = item.get("priority", index)
        if isinstance(priority, bool) or not isinstance(priority, int) or priority < 0:
            if isinstance(priority, float) and priority.is_integer() and priority >= 0:
                priority = int(priority)
            else:
                raise ValueError(f"Trigger {index} has invalid priority.")

        comparator = COMPARATORS.get(str(item.get("comparator", "")).strip().lower())
        if comparator is None:
            raise ValueError(f"Unsupported comparator: {item.get('comparator')!r}")

        emit_once = item.get("emit_once", item.get("emitOnce"))
        pool = item.get("pool")
        triggers.append(PriceTrigger(
            id=str(item["id"]) if item.get("id") else f"trigger-{index + 1}",
            label=str(item["label"]) if item.get("label") else None,
            base_token=base,
            quote_token=quote,
            comparator=comparator,
            threshold=threshold,
            priority=priority,
            emit_once=True if emit_once is None else bool(emit_once),
            pool=_address(pool, index, "pool") if pool else None,
        ))

    seen: set[str] = set()
    for trigger in triggers:
        if trigger.id in seen:
            raise ValueError(f"Duplicate trigger id: {trigger.id}")
        seen.add(trigger.id)

    return sorted(triggers, key=lambda t: (t.priority, t.id))


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

class Candidate(Protocol):
    id: str
    priority: int
    emit_once: bool


class TriggerBoard:
    """
    Picks at most one trigger per cycle and remembers what fired.

    ``fired`` and ``winner`` live on the agent state so the board itself
    holds no memory between cycles.

    Args:
        exclusive: race mode; once any trigger has won nothing else fires
    """

    def __init__(self, exclusive: bool = False):
        self.exclusive = exclusive

    def select(
        self,
        candidates: Iterable[Candidate],
        fired: set[str],
        winner: Optional[str] = None,
    ) -> Optional[Candidate]:
        if self.exclusive and winner is not None:
            return None
        eligible = [c for c in candidates if not (c.emit_once and c.id in fired)]
        if not eligible:
            return None
        return min(eligible, key=lambda c: (c.priority, c.id))
