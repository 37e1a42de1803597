"""
Tool Executor

Runs tool calls that already passed the Policy Gate. Proposal tools compile
intents and hand them to the Proposal Submitter; direct-call tools send
through the Ledger or the trading venue. Failures raise CustodyError
subclasses; the engine turns them into tool outputs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from custody.deployments import (
    BUILD,
    CANCEL_ORDERS,
    DEPOSIT,
    DISPUTE,
    ERC1155_DEPOSIT,
    PLACE_ORDER,
    POST,
)
from custody.errors import ConfigurationError, ToolArgumentError
from custody.identity import AgentIdentity
from custody.intents import (
    ERC1155_SAFE_TRANSFER,
    ERC20_TRANSFER,
    ZERO_ADDRESS,
    LowLevelCall,
    compile_intents,
    encode_call,
)
from custody.ledger import Ledger
from custody.policy_gate import AgentState
from custody.proposals import ProposalSubmission, ProposalSubmitter
from custody.tools import ToolRequest
from custody.venue import ClobClient, sign_order

logger = logging.getLogger(__name__)

DISPUTE_ASSERTION = "disputeAssertion(bytes32,address)"


@dataclass
class ToolOutcome:
    output: dict[str, Any]
    calls: list[LowLevelCall] = field(default_factory=list)
    submission: Optional[ProposalSubmission] = None


class ToolExecutor:
    """
    Dispatches accepted tool calls by name.

    Args:
        ledger: chain access for the agent account
        identity: agent address and vault
        submitter: bonded proposal submitter
        venue: CLOB client, required only for order tools
        conditional_tokens: default contract for collateral splits
        exchange: CTF exchange that verifies signed orders
        chain_id: chain id for order signing
        default_deposit_asset / default_deposit_amount_wei: make_deposit defaults
    """

    def __init__(
        self,
        ledger: Ledger,
        identity: AgentIdentity,
        submitter: ProposalSubmitter,
        venue: ClobClient | None = None,
        conditional_tokens: str | None = None,
        exchange: str | None = None,
        chain_id: int | None = None,
        default_deposit_asset: str | None = None,
        default_deposit_amount_wei: int | None = None,
    ):
        self.ledger = ledger
        self.identity = identity
        self.submitter = submitter
        self.venue = venue
        self.conditional_tokens = conditional_tokens
        self.exchange = exchange
        self.chain_id = chain_id
        self.default_deposit_asset = default_deposit_asset
        self.default_deposit_amount_wei = default_deposit_amount_wei
        self._handlers: dict[str, Callable[[ToolRequest, AgentState], ToolOutcome]] = {
            BUILD: self._build,
            POST: self._post,
            DEPOSIT: self._deposit,
            ERC1155_DEPOSIT: self._erc1155_deposit,
            DISPUTE: self._dispute,
            PLACE_ORDER: self._place_order,
            CANCEL_ORDERS: self._cancel_orders,
        }

    def execute(self, request: ToolRequest, state: AgentState) -> ToolOutcome:
        handler = self._handlers.get(request.name)
        if handler is None:
            raise ToolArgumentError(request.name, "no executor for tool")
        logger.info("executing %s (%s)", request.name, request.call_id)
        return handler(request, state)

    # -- proposal tools ------------------------------------------------------

    def _build(self, request: ToolRequest, state: AgentState) -> ToolOutcome:
        calls = compile_intents(
            request.arguments.intents(), conditional_tokens=self.conditional_tokens,
        )
        return ToolOutcome(
            output={"status": "ok", "transactions": [c.as_json() for c in calls]},
            calls=calls,
        )

    def _post(self, request: ToolRequest, state: AgentState) -> ToolOutcome:
        submission = self.submitter.submit(state.prepared_calls, request.arguments.explanation)
        return ToolOutcome(
            output={"status": "submitted", **submission.as_json()},
            submission=submission,
        )

    # -- direct calls --------------------------------------------------------

    def _deposit(self, request: ToolRequest, state: AgentState) -> ToolOutcome:
        args = request.arguments
        asset = args.asset or self.default_deposit_asset
        amount = args.amount_wei if args.amount_wei is not None else self.default_deposit_amount_wei
        if not asset or amount is None:
            raise ToolArgumentError(
                request.name,
                "asset and amount_wei are required when no default deposit is configured",
            )
        if amount <= 0:
            raise ToolArgumentError(request.name, "amount_wei must be > 0")

        if asset.lower() == ZERO_ADDRESS:
            receipt = self.ledger.send_and_confirm(self.identity.vault, b"", amount)
        else:
            receipt = self.ledger.send_and_confirm(
                asset, encode_call(ERC20_TRANSFER, [self.identity.vault, amount]),
            )
        return ToolOutcome(output={
            "status": "confirmed",
            "asset": asset,
            "amount_wei": str(amount),
            "transaction_hash": _tx_hash(receipt),
        })

    def _erc1155_deposit(self, request: ToolRequest, state: AgentState) -> ToolOutcome:
        args = request.arguments
        if args.amount <= 0:
            raise ToolArgumentError(request.name, "amount must be > 0")
        data = bytes.fromhex(args.data[2:]) if args.data and args.data.startswith("0x") else b""
        receipt = self.ledger.send_and_confirm(args.token, encode_call(
            ERC1155_SAFE_TRANSFER,
            [self.identity.address, self.identity.vault, args.token_id, args.amount, data],
        ))
        return ToolOutcome(output={
            "status": "confirmed",
            "token": args.token,
            "token_id": str(args.token_id),
            "amount": str(args.amount),
            "transaction_hash": _tx_hash(receipt),
        })

    def _dispute(self, request: ToolRequest, state: AgentState) -> ToolOutcome:
        args = request.arguments
        ctx, bond = self.submitter.preflight()
        receipt = self.ledger.send_and_confirm(
            ctx.oracle, encode_call(DISPUTE_ASSERTION, [args.assertion_id, self.identity.address]),
        )
        logger.info("disputed assertion %s: %s", args.assertion_id, args.explanation)
        return ToolOutcome(output={
            "status": "confirmed",
            "assertion_id": args.assertion_id,
            "bond_amount": str(bond),
            "transaction_hash": _tx_hash(receipt),
        })

    def _require_venue(self) -> ClobClient:
        if self.venue is None or not self.exchange or self.chain_id is None:
            raise ConfigurationError("Polymarket CLOB is not configured for this deployment")
        return self.venue

    def _place_order(self, request: ToolRequest, state: AgentState) -> ToolOutcome:
        args = request.arguments
        venue = self._require_venue()
        order = sign_order(
            self.ledger.account,
            exchange=self.exchange,
            chain_id=self.chain_id,
            token_id=args.token_id,
            side=args.side,
            maker_amount=args.maker_amount,
            taker_amount=args.taker_amount,
        )
        response = venue.place_order(order, args.order_type)
        accepted = not (isinstance(response, dict) and response.get("success") is False)
        return ToolOutcome(output={
            "status": "placed" if accepted else "rejected_by_venue",
            "order": order.as_json(),
            "response": response,
        })

    def _cancel_orders(self, request: ToolRequest, state: AgentState) -> ToolOutcome:
        args = request.arguments
        venue = self._require_venue()
        try:
            response = venue.cancel_orders(args.mode, args.order_ids, args.market, args.asset_id)
        except ValueError as exc:
            raise ToolArgumentError(request.name, str(exc)) from exc
        return ToolOutcome(output={"status": "ok", "response": response})


def _tx_hash(receipt: dict) -> str:
    value = receipt.get("transactionHash", "")
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)
