"""
Tool Catalogue

Strict function schemas offered to the decision service and the argument
models every returned tool call is validated against before any use. Unknown
tool names and malformed arguments raise ToolArgumentError; nothing is
coerced into shape.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from custody.deployments import (
    BUILD,
    CANCEL_ORDERS,
    DEPOSIT,
    DISPUTE,
    ERC1155_DEPOSIT,
    PLACE_ORDER,
    POST,
)
from custody.errors import CompilationError, ToolArgumentError
from custody.intents import (
    INTENT_KINDS,
    Address,
    Bytes32,
    Uint,
    parse_intent,
)


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------

class _Args(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class FlatAction(_Args):
    """One action as the decision service sends it: every field present, unused ones null."""
    kind: Literal["asset_transfer", "native_transfer", "contract_call", "routed_swap", "collateral_split"]
    token: Optional[str] = None
    to: Optional[str] = None
    amount_wei: Optional[str] = None
    value_wei: Optional[str] = None
    signature: Optional[str] = None
    args_json: Optional[str] = None
    router: Optional[str] = None
    token_in: Optional[str] = None
    token_out: Optional[str] = None
    fee: Optional[int] = None
    recipient: Optional[str] = None
    amount_in_wei: Optional[str] = None
    amount_out_min_wei: Optional[str] = None
    sqrt_price_limit_x96: Optional[str] = None
    ctf_contract: Optional[str] = None
    collateral_token: Optional[str] = None
    condition_id: Optional[str] = None
    parent_collection_id: Optional[str] = None
    partition: Optional[list[str]] = None

    def to_intent_dict(self, index: int) -> dict[str, Any]:
        raw = {k: v for k, v in self.model_dump().items() if v is not None and k != "args_json"}
        if self.kind == "contract_call":
            try:
                args = json.loads(self.args_json) if self.args_json else []
            except json.JSONDecodeError as exc:
                raise CompilationError(
                    f"Invalid contract_call action at index {index}: args_json: {exc}",
                    kind=self.kind, index=index,
                ) from exc
            if not isinstance(args, list):
                raise CompilationError(
                    f"Invalid contract_call action at index {index}: args_json must be a JSON array",
                    kind=self.kind, index=index,
                )
            raw["args"] = args
        return raw


class BuildArgs(_Args):
    actions: list[FlatAction] = Field(min_length=1)

    def intents(self) -> list:
        return [parse_intent(a.to_intent_dict(i), i) for i, a in enumerate(self.actions)]


class ProposeArgs(_Args):
    explanation: str = ""


class DepositArgs(_Args):
    asset: Optional[Address] = None
    amount_wei: Optional[Uint] = None


class Erc1155DepositArgs(_Args):
    token: Address
    token_id: Uint
    amount: Uint
    data: Optional[str] = None


class DisputeArgs(_Args):
    assertion_id: Bytes32
    explanation: str = ""


class PlaceOrderArgs(_Args):
    token_id: Uint
    side: Literal["BUY", "SELL"]
    maker_amount: Uint
    taker_amount: Uint
    order_type: Literal["GTC", "FOK", "GTD", "FAK"]


class CancelOrdersArgs(_Args):
    mode: Literal["ids", "market", "all"]
    order_ids: Optional[list[str]] = None
    market: Optional[str] = None
    asset_id: Optional[str] = None


ARGUMENT_MODELS: dict[str, type[_Args]] = {
    BUILD: BuildArgs,
    POST: ProposeArgs,
    DEPOSIT: DepositArgs,
    ERC1155_DEPOSIT: Erc1155DepositArgs,
    DISPUTE: DisputeArgs,
    PLACE_ORDER: PlaceOrderArgs,
    CANCEL_ORDERS: CancelOrdersArgs,
}


# ---------------------------------------------------------------------------
# Wire schemas
# ---------------------------------------------------------------------------

def _nullable(kind: str, description: str) -> dict:
    return {"type": [kind, "null"], "description": description}


def _object(properties: dict[str, dict]) -> dict:
    return {
        "type": "object",
        "properties": properties,
        "required": list(properties),
        "additionalProperties": False,
    }


_UINT = "unsigned integer as a decimal string"

_ACTION_SCHEMA = _object({
    "kind": {"type": "string", "enum": list(INTENT_KINDS)},
    "token": _nullable("string", "asset_transfer: ERC-20 token address"),
    "to": _nullable("string", "asset_transfer / native_transfer / contract_call: target address"),
    "amount_wei": _nullable("string", f"asset_transfer / collateral_split amount, {_UINT}"),
    "value_wei": _nullable("string", f"native_transfer / contract_call value, {_UINT}"),
    "signature": _nullable("string", "contract_call: function signature such as transfer(address,uint256)"),
    "args_json": _nullable("string", "contract_call: JSON array of ordered arguments"),
    "router": _nullable("string", "routed_swap: Uniswap V3 router address"),
    "token_in": _nullable("string", "routed_swap: input token"),
    "token_out": _nullable("string", "routed_swap: output token"),
    "fee": _nullable("integer", "routed_swap: pool fee tier"),
    "recipient": _nullable("string", "routed_swap: recipient of the output token"),
    "amount_in_wei": _nullable("string", f"routed_swap: input amount, {_UINT}"),
    "amount_out_min_wei": _nullable("string", f"routed_swap: minimum output, {_UINT}"),
    "sqrt_price_limit_x96": _nullable("string", f"routed_swap: price limit, {_UINT}"),
    "ctf_contract": _nullable("string", "collateral_split: conditional tokens contract"),
    "collateral_token": _nullable("string", "collateral_split: collateral token"),
    "condition_id": _nullable("string", "collateral_split: 0x-prefixed condition id"),
    "parent_collection_id": _nullable("string", "collateral_split: parent collection id"),
    "partition": {"type": ["array", "null"], "items": {"type": "string"},
                  "description": f"collateral_split: index sets, each {_UINT}"},
})

_PARAMETERS: dict[str, tuple[str, dict]] = {
    BUILD: (
        "Compile actions into Optimistic Governor transactions for a later proposal.",
        _object({"actions": {"type": "array", "items": _ACTION_SCHEMA}}),
    ),
    POST: (
        "Post the bond and propose the transactions prepared by build_og_transactions.",
        _object({"explanation": {"type": "string", "description": "short human-readable explanation"}}),
    ),
    DEPOSIT: (
        "Deposit an ERC-20 (or native asset with the zero address) from the agent into the Safe.",
        _object({
            "asset": _nullable("string", "token address; zero address for native; null for the default"),
            "amount_wei": _nullable("string", f"{_UINT}; null for the default"),
        }),
    ),
    ERC1155_DEPOSIT: (
        "Transfer ERC-1155 tokens from the agent into the Safe.",
        _object({
            "token": {"type": "string", "description": "ERC-1155 contract address"},
            "token_id": {"type": "string", "description": _UINT},
            "amount": {"type": "string", "description": _UINT},
            "data": _nullable("string", "0x-prefixed transfer data"),
        }),
    ),
    DISPUTE: (
        "Dispute an Optimistic Oracle assertion that violates the rules.",
        _object({
            "assertion_id": {"type": "string", "description": "0x-prefixed assertion id"},
            "explanation": {"type": "string", "description": "why the proposal violates the rules"},
        }),
    ),
    PLACE_ORDER: (
        "Sign and place a Polymarket CLOB order from the agent.",
        _object({
            "token_id": {"type": "string", "description": "outcome token id"},
            "side": {"type": "string", "enum": ["BUY", "SELL"]},
            "maker_amount": {"type": "string", "description": _UINT},
            "taker_amount": {"type": "string", "description": _UINT},
            "order_type": {"type": "string", "enum": ["GTC", "FOK", "GTD", "FAK"]},
        }),
    ),
    CANCEL_ORDERS: (
        "Cancel Polymarket CLOB orders by id list, by market or all.",
        _object({
            "mode": {"type": "string", "enum": ["ids", "market", "all"]},
            "order_ids": {"type": ["array", "null"], "items": {"type": "string"}},
            "market": _nullable("string", "condition id for mode=market"),
            "asset_id": _nullable("string", "token id for mode=market"),
        }),
    ),
}


def tool_schemas(names: Sequence[str]) -> list[dict]:
    """Responses-API function tool definitions for ``names``, in order."""
    schemas = []
    for name in names:
        description, parameters = _PARAMETERS[name]
        schemas.append({
            "type": "function",
            "name": name,
            "description": description,
            "strict": True,
            "parameters": parameters,
        })
    return schemas


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolRequest:
    call_id: str
    name: str
    arguments: _Args

    def arguments_json(self) -> dict[str, Any]:
        return self.arguments.model_dump(mode="json")


def parse_tool_call(call_id: str, name: str, raw_arguments: Any) -> ToolRequest:
    """Validate one tool call from the decision service."""
    model = ARGUMENT_MODELS.get(name)
    if model is None:
        raise ToolArgumentError(name, "unknown tool")
    if isinstance(raw_arguments, str):
        try:
            raw_arguments = json.loads(raw_arguments) if raw_arguments.strip() else {}
        except json.JSONDecodeError as exc:
            raise ToolArgumentError(name, f"arguments are not valid JSON: {exc}") from exc
    if not isinstance(raw_arguments, dict):
        raise ToolArgumentError(name, "arguments must be a JSON object")
    try:
        arguments = model.model_validate(raw_arguments)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first["loc"]) or "arguments"
        raise ToolArgumentError(name, f"{where}: {first['msg']}") from exc
    return ToolRequest(call_id=call_id, name=name, arguments=arguments)
