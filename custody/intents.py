"""
Intent Compiler

Translates high-level action intents into the ordered low-level calls a vault
executes. Compilation is pure and deterministic: no I/O, and a batch either
compiles completely or raises CompilationError without emitting anything.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Annotated, Any, Callable, Literal, Optional, Sequence, Union

from eth_abi import encode, is_encodable_type
from eth_abi.exceptions import EncodingError
from eth_abi.grammar import normalize
from eth_utils import function_signature_to_4byte_selector, is_address, to_checksum_address
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, ValidationError

from custody.errors import CompilationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ZERO_ADDRESS = "0x" + "0" * 40
ZERO_BYTES32 = "0x" + "0" * 64

CALL = 0

ERC20_TRANSFER = "transfer(address,uint256)"
ERC20_APPROVE = "approve(address,uint256)"
ERC1155_SAFE_TRANSFER = "safeTransferFrom(address,address,uint256,uint256,bytes)"
EXACT_INPUT_SINGLE = (
    "exactInputSingle((address,address,uint24,address,uint256,uint256,uint160))"
)
SPLIT_POSITION = "splitPosition(address,bytes32,bytes32,uint256[],uint256)"


# ---------------------------------------------------------------------------
# Low-level call
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LowLevelCall:
    to: str
    value: int
    data: bytes
    operation: int = CALL

    def as_json(self) -> dict[str, Any]:
        return {
            "to": self.to,
            "value": str(self.value),
            "data": "0x" + self.data.hex(),
            "operation": self.operation,
        }


# ---------------------------------------------------------------------------
# ABI helpers
# ---------------------------------------------------------------------------

_SIGNATURE_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*\((.*)\)\s*$", re.DOTALL)


def split_types(inner: str) -> list[str]:
    """Split a comma-separated ABI type list, respecting tuple parentheses."""
    if not inner.strip():
        return []
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    for ch in inner:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"Unbalanced parentheses in '{inner}'")
        if ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    if depth != 0:
        raise ValueError(f"Unbalanced parentheses in '{inner}'")
    parts.append("".join(current).strip())
    if any(not part for part in parts):
        raise ValueError(f"Empty type in '{inner}'")
    return parts


def _strip_param_name(part: str) -> str:
    # "address to" -> "address"; tuple types keep their array suffix
    if part.startswith("("):
        close = part.rindex(")")
        suffix = part[close + 1:].split()
        return part[: close + 1] + (suffix[0] if suffix and suffix[0].startswith("[") else "")
    return part.split()[0]


def parse_signature(signature: str) -> tuple[str, list[str]]:
    """Parse ``name(type,...)`` into its name and normalized ABI types."""
    match = _SIGNATURE_RE.match(signature or "")
    if not match:
        raise ValueError(f"Malformed function signature '{signature}'")
    name = match.group(1)
    types = [normalize(_strip_param_name(part)) for part in split_types(match.group(2))]
    for abi_type in types:
        if not is_encodable_type(abi_type):
            raise ValueError(f"Unsupported ABI type '{abi_type}' in '{signature}'")
    return name, types


def coerce_abi_value(abi_type: str, value: Any) -> Any:
    """Convert JSON-ish argument values into what eth_abi expects."""
    if abi_type.endswith("]"):
        base = abi_type[: abi_type.rindex("[")]
        if not isinstance(value, (list, tuple)):
            raise ValueError(f"Expected a list for {abi_type}, got {value!r}")
        return [coerce_abi_value(base, item) for item in value]
    if abi_type.startswith("("):
        members = split_types(abi_type[1:-1])
        if not isinstance(value, (list, tuple)) or len(value) != len(members):
            raise ValueError(f"Expected {len(members)} tuple members for {abi_type}")
        return tuple(coerce_abi_value(m, v) for m, v in zip(members, value))
    if abi_type == "address":
        if not isinstance(value, str) or not is_address(value):
            raise ValueError(f"Invalid address: {value!r}")
        return to_checksum_address(value)
    if abi_type.startswith(("uint", "int")):
        if isinstance(value, bool):
            raise ValueError(f"Expected an integer for {abi_type}, got a boolean")
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            text = value.strip()
            return int(text, 16) if text.lower().startswith("0x") else int(text)
        raise ValueError(f"Expected an integer for {abi_type}, got {value!r}")
    if abi_type == "bool":
        if not isinstance(value, bool):
            raise ValueError(f"Expected a boolean, got {value!r}")
        return value
    if abi_type.startswith("bytes"):
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if isinstance(value, str) and value.startswith("0x"):
            return bytes.fromhex(value[2:])
        raise ValueError(f"Expected 0x-prefixed hex for {abi_type}, got {value!r}")
    return value


def encode_call(signature: str, args: Sequence[Any] = ()) -> bytes:
    """Selector plus ABI-encoded arguments for a function signature."""
    name, types = parse_signature(signature)
    if len(args) != len(types):
        raise ValueError(
            f"{name} expects {len(types)} argument(s), got {len(args)}"
        )
    values = [coerce_abi_value(t, v) for t, v in zip(types, args)]
    canonical = f"{name}({','.join(types)})"
    return function_signature_to_4byte_selector(canonical) + encode(types, values)


# ---------------------------------------------------------------------------
# Field types
# ---------------------------------------------------------------------------

def _to_address(value: Any) -> str:
    if not isinstance(value, str) or not is_address(value):
        raise ValueError(f"Invalid address: {value!r}")
    return to_checksum_address(value)


def _to_uint(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("Expected an unsigned integer, got a boolean")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
    else:
        raise ValueError(f"Expected an unsigned integer string, got {value!r}")
    if number < 0:
        raise ValueError(f"Expected an unsigned integer, got {number}")
    return number


def _to_bytes32(value: Any) -> str:
    if not isinstance(value, str) or not re.fullmatch(r"0x[0-9a-fA-F]{64}", value):
        raise ValueError(f"Expected a 0x-prefixed 32-byte hex string, got {value!r}")
    return value.lower()


Address = Annotated[str, BeforeValidator(_to_address)]
Uint = Annotated[int, BeforeValidator(_to_uint)]
Bytes32 = Annotated[str, BeforeValidator(_to_bytes32)]


# ---------------------------------------------------------------------------
# Action intents
# ---------------------------------------------------------------------------

class _Intent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class AssetTransfer(_Intent):
    kind: Literal["asset_transfer"]
    token: Address
    to: Address
    amount_wei: Uint


class NativeTransfer(_Intent):
    kind: Literal["native_transfer"]
    to: Address
    value_wei: Uint


class ContractCall(_Intent):
    kind: Literal["contract_call"]
    to: Address
    signature: str
    args: list[Any] = Field(default_factory=list)
    value_wei: Optional[Uint] = None


class RoutedSwap(_Intent):
    kind: Literal["routed_swap"]
    router: Address
    token_in: Address
    token_out: Address
    fee: int = Field(strict=True, ge=0, lt=2**24)
    recipient: Address
    amount_in_wei: Uint
    amount_out_min_wei: Uint
    sqrt_price_limit_x96: Optional[Uint] = None


class CollateralSplit(_Intent):
    kind: Literal["collateral_split"]
    ctf_contract: Optional[Address] = None
    collateral_token: Address
    condition_id: Bytes32
    parent_collection_id: Optional[Bytes32] = None
    partition: list[Uint] = Field(min_length=2)
    amount_wei: Uint


ActionIntent = Annotated[
    Union[AssetTransfer, NativeTransfer, ContractCall, RoutedSwap, CollateralSplit],
    Field(discriminator="kind"),
]

_INTENT_ADAPTER: TypeAdapter = TypeAdapter(ActionIntent)


# Position of the argument that receives value, keyed by canonical signature
_VALUE_RECEIVER_ARG: dict[str, int] = {
    ERC20_TRANSFER: 0,
    ERC20_APPROVE: 0,
    "increaseAllowance(address,uint256)": 0,
    "setApprovalForAll(address,bool)": 0,
    "transferFrom(address,address,uint256)": 1,
    "safeTransferFrom(address,address,uint256)": 1,
    "safeTransferFrom(address,address,uint256,bytes)": 1,
    ERC1155_SAFE_TRANSFER: 1,
    "safeBatchTransferFrom(address,address,uint256[],uint256[],bytes)": 1,
}


def _contract_call_recipients(intent: ContractCall) -> list[str]:
    recipients = [intent.to] if intent.value_wei else []
    try:
        name, types = parse_signature(intent.signature)
    except ValueError:
        return [intent.to]
    position = _VALUE_RECEIVER_ARG.get(f"{name}({','.join(types)})")
    if position is None:
        # unknown selector: the target itself must be an allowed recipient
        receiver = intent.to
    else:
        raw = intent.args[position] if position < len(intent.args) else intent.to
        receiver = to_checksum_address(raw) if isinstance(raw, str) and is_address(raw) else str(raw)
    if receiver not in recipients:
        recipients.append(receiver)
    return recipients


def value_moving_recipients(intent: _Intent) -> list[str]:
    """Addresses an intent sends funds to, for recipient checks."""
    if isinstance(intent, (AssetTransfer, NativeTransfer)):
        return [intent.to]
    if isinstance(intent, RoutedSwap):
        return [intent.recipient]
    if isinstance(intent, ContractCall):
        return _contract_call_recipients(intent)
    return []


# ---------------------------------------------------------------------------
# Expansions
# ---------------------------------------------------------------------------

def _compile_asset_transfer(intent: AssetTransfer, ctf: str | None) -> list[LowLevelCall]:
    return [LowLevelCall(
        to=intent.token,
        value=0,
        data=encode_call(ERC20_TRANSFER, [intent.to, intent.amount_wei]),
    )]


def _compile_native_transfer(intent: NativeTransfer, ctf: str | None) -> list[LowLevelCall]:
    return [LowLevelCall(to=intent.to, value=intent.value_wei, data=b"")]


def _compile_contract_call(intent: ContractCall, ctf: str | None) -> list[LowLevelCall]:
    return [LowLevelCall(
        to=intent.to,
        value=intent.value_wei or 0,
        data=encode_call(intent.signature, intent.args),
    )]


def _compile_routed_swap(intent: RoutedSwap, ctf: str | None) -> list[LowLevelCall]:
    approve = LowLevelCall(
        to=intent.token_in,
        value=0,
        data=encode_call(ERC20_APPROVE, [intent.router, intent.amount_in_wei]),
    )
    params = (
        intent.token_in,
        intent.token_out,
        intent.fee,
        intent.recipient,
        intent.amount_in_wei,
        intent.amount_out_min_wei,
        intent.sqrt_price_limit_x96 or 0,
    )
    swap = LowLevelCall(
        to=intent.router,
        value=0,
        data=encode_call(EXACT_INPUT_SINGLE, [params]),
    )
    # approve must land before the router pulls token_in
    return [approve, swap]


def _compile_collateral_split(intent: CollateralSplit, ctf: str | None) -> list[LowLevelCall]:
    ctf_contract = intent.ctf_contract or ctf
    if not ctf_contract:
        raise ValueError("collateral_split requires ctf_contract or a configured conditional-tokens address")
    ctf_contract = _to_address(ctf_contract)
    if intent.amount_wei == 0:
        raise ValueError("collateral_split amount_wei must be > 0")
    return [
        LowLevelCall(
            to=intent.collateral_token,
            value=0,
            data=encode_call(ERC20_APPROVE, [ctf_contract, 0]),
        ),
        LowLevelCall(
            to=intent.collateral_token,
            value=0,
            data=encode_call(ERC20_APPROVE, [ctf_contract, intent.amount_wei]),
        ),
        LowLevelCall(
            to=ctf_contract,
            value=0,
            data=encode_call(SPLIT_POSITION, [
                intent.collateral_token,
                intent.parent_collection_id or ZERO_BYTES32,
                intent.condition_id,
                list(intent.partition),
                intent.amount_wei,
            ]),
        ),
    ]


_COMPILERS: dict[str, Callable[[Any, Optional[str]], list[LowLevelCall]]] = {
    "asset_transfer": _compile_asset_transfer,
    "native_transfer": _compile_native_transfer,
    "contract_call": _compile_contract_call,
    "routed_swap": _compile_routed_swap,
    "collateral_split": _compile_collateral_split,
}

INTENT_KINDS = tuple(_COMPILERS)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_intent(raw: Any, index: int = 0) -> _Intent:
    """Validate one raw action (dict or intent model) into an ActionIntent."""
    if isinstance(raw, _Intent):
        return raw
    if not isinstance(raw, dict):
        raise CompilationError(f"Action at index {index} is not an object.", index=index)
    kind = raw.get("kind")
    if kind not in _COMPILERS:
        raise CompilationError(
            f"Unknown action kind '{kind}' at index {index}.", kind=kind, index=index,
        )
    try:
        return _INTENT_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first["loc"][1:])
        raise CompilationError(
            f"Invalid {kind} action at index {index}: {where}: {first['msg']}",
            kind=kind, index=index,
        ) from exc


def compile_intents(
    intents: Sequence[Any],
    *,
    conditional_tokens: str | None = None,
) -> list[LowLevelCall]:
    """
    Compile action intents into low-level calls, all-or-nothing.

    Args:
        intents: ActionIntent models or raw dicts with a ``kind`` field.
        conditional_tokens: default conditional-tokens contract for
            ``collateral_split`` intents that do not name one.

    Returns:
        The ordered list of calls for the whole batch.
    """
    calls: list[LowLevelCall] = []
    for index, raw in enumerate(intents):
        intent = parse_intent(raw, index)
        try:
            calls.extend(_COMPILERS[intent.kind](intent, conditional_tokens))
        except (ValueError, TypeError, EncodingError) as exc:
            raise CompilationError(
                f"Failed to compile {intent.kind} action at index {index}: {exc}",
                kind=intent.kind, index=index,
            ) from exc
    return calls
