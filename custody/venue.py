"""
Trading Venue -- Polymarket CLOB client
Thin synchronous wrapper over the CLOB REST API and the public data API.

Requests are authenticated with L2 HMAC headers derived from the API key,
secret and passphrase. Idempotent requests (GET, DELETE) are retried on 5xx
and transport failures; order placement (POST) is sent exactly once.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from eth_account.messages import encode_typed_data

from custody.config import PolymarketSettings
from custody.errors import ConfigurationError, TransientVenueError, VenueRequestError

logger = logging.getLogger(__name__)

IDEMPOTENT_METHODS = frozenset({"GET", "DELETE"})

SIDE_CODES = {"BUY": 0, "SELL": 1}
SIGNATURE_TYPE_EOA = 0


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceTrade:
    id: str
    side: str
    outcome: str
    price: float
    size: Optional[float] = None
    asset: Optional[str] = None
    market: Optional[str] = None
    timestamp: Optional[int] = None

    def as_json(self) -> dict[str, Any]:
        return {
            "trade_id": self.id,
            "side": self.side,
            "outcome": self.outcome,
            "price": self.price,
            "size": self.size,
            "asset": self.asset,
            "market": self.market,
            "timestamp": self.timestamp,
        }


@dataclass
class RequestAttempt:
    method: str
    path: str
    status_code: Optional[int]


@dataclass
class SignedOrder:
    salt: int
    maker: str
    signer: str
    taker: str
    token_id: int
    maker_amount: int
    taker_amount: int
    expiration: int
    nonce: int
    fee_rate_bps: int
    side: str
    signature_type: int
    signature: str = ""

    def typed_message(self) -> dict[str, Any]:
        return {
            "salt": self.salt,
            "maker": self.maker,
            "signer": self.signer,
            "taker": self.taker,
            "tokenId": self.token_id,
            "makerAmount": self.maker_amount,
            "takerAmount": self.taker_amount,
            "expiration": self.expiration,
            "nonce": self.nonce,
            "feeRateBps": self.fee_rate_bps,
            "side": SIDE_CODES[self.side],
            "signatureType": self.signature_type,
        }

    def as_json(self) -> dict[str, Any]:
        return {
            "salt": self.salt,
            "maker": self.maker,
            "signer": self.signer,
            "taker": self.taker,
            "tokenId": str(self.token_id),
            "makerAmount": str(self.maker_amount),
            "takerAmount": str(self.taker_amount),
            "expiration": str(self.expiration),
            "nonce": str(self.nonce),
            "feeRateBps": str(self.fee_rate_bps),
            "side": self.side,
            "signatureType": self.signature_type,
            "signature": self.signature,
        }


# ---------------------------------------------------------------------------
# Order signing (EIP-712, CTF exchange)
# ---------------------------------------------------------------------------

ORDER_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Order": [
        {"name": "salt", "type": "uint256"},
        {"name": "maker", "type": "address"},
        {"name": "signer", "type": "address"},
        {"name": "taker", "type": "address"},
        {"name": "tokenId", "type": "uint256"},
        {"name": "makerAmount", "type": "uint256"},
        {"name": "takerAmount", "type": "uint256"},
        {"name": "expiration", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "feeRateBps", "type": "uint256"},
        {"name": "side", "type": "uint8"},
        {"name": "signatureType", "type": "uint8"},
    ],
}


def sign_order(
    account: Any,
    exchange: str,
    chain_id: int,
    token_id: int,
    side: str,
    maker_amount: int,
    taker_amount: int,
    salt: Optional[int] = None,
) -> SignedOrder:
    """Build and sign an EOA order for the CTF exchange."""
    order = SignedOrder(
        salt=salt if salt is not None else secrets.randbelow(2 ** 32),
        maker=account.address,
        signer=account.address,
        taker="0x" + "0" * 40,
        token_id=token_id,
        maker_amount=maker_amount,
        taker_amount=taker_amount,
        expiration=0,
        nonce=0,
        fee_rate_bps=0,
        side=side,
        signature_type=SIGNATURE_TYPE_EOA,
    )
    signable = encode_typed_data(full_message={
        "types": ORDER_TYPES,
        "primaryType": "Order",
        "domain": {
            "name": "Polymarket CTF Exchange",
            "version": "1",
            "chainId": chain_id,
            "verifyingContract": exchange,
        },
        "message": order.typed_message(),
    })
    signed = account.sign_message(signable)
    order.signature = "0x" + bytes(signed.signature).hex()
    return order


def l2_signature(secret: str, timestamp: str, method: str, path: str, body: str = "") -> str:
    """base64url HMAC-SHA256 over timestamp + method + path + body."""
    key = base64.urlsafe_b64decode(secret + "=" * (-len(secret) % 4))
    message = f"{timestamp}{method}{path}{body}".encode()
    digest = hmac.new(key, message, hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode()


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ClobClient:
    """
    Client for the Polymarket CLOB.

    Places signed orders, cancels orders and reads source trades. Every
    underlying transport attempt is appended to ``attempts``.
    """

    def __init__(
        self,
        settings: PolymarketSettings,
        address: str,
        transport: httpx.BaseTransport | None = None,
        sleep=time.sleep,
    ):
        """
        Args:
            settings: hosts, credentials and retry policy
            address: signing address sent as POLY_ADDRESS
            transport: httpx transport override (tests)
            sleep: delay function between retries
        """
        self.settings = settings
        self.address = address
        self.attempts: list[RequestAttempt] = []
        self._sleep = sleep
        self._client = httpx.Client(
            timeout=settings.request_timeout_ms / 1000,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    # -- transport -----------------------------------------------------------

    def _auth_headers(self, method: str, path: str, body: str) -> dict[str, str]:
        s = self.settings
        if not s.has_credentials:
            raise ConfigurationError(
                "Missing CLOB credentials. Set POLYMARKET_CLOB_API_KEY, "
                "POLYMARKET_CLOB_API_SECRET, and POLYMARKET_CLOB_API_PASSPHRASE."
            )
        timestamp = str(int(time.time()))
        return {
            "POLY_ADDRESS": self.address,
            "POLY_SIGNATURE": l2_signature(s.api_secret, timestamp, method, path, body),
            "POLY_TIMESTAMP": timestamp,
            "POLY_API_KEY": s.api_key,
            "POLY_PASSPHRASE": s.api_passphrase,
        }

    def _request(self, method: str, path: str, body: Any = None) -> Any:
        payload = "" if body is None else json.dumps(body, separators=(",", ":"))
        retries = self.settings.max_retries if method in IDEMPOTENT_METHODS else 0
        url = f"{self.settings.clob_host}{path}"

        for attempt in range(retries + 1):
            headers = {"Content-Type": "application/json",
                       **self._auth_headers(method, path, payload)}
            try:
                resp = self._client.request(method, url, headers=headers,
                                            content=payload or None)
            except httpx.TransportError as exc:
                self.attempts.append(RequestAttempt(method, path, None))
                if attempt < retries:
                    logger.warning("CLOB %s %s transport error, retrying: %s", method, path, exc)
                    self._sleep(self.settings.retry_delay_ms / 1000)
                    continue
                if method in IDEMPOTENT_METHODS:
                    raise TransientVenueError(method, path, None, str(exc)) from exc
                raise VenueRequestError(method, path, None, str(exc)) from exc

            self.attempts.append(RequestAttempt(method, path, resp.status_code))
            if resp.status_code >= 500 and attempt < retries:
                logger.warning("CLOB %s %s returned %d, retrying", method, path, resp.status_code)
                self._sleep(self.settings.retry_delay_ms / 1000)
                continue
            if resp.status_code >= 500 and method in IDEMPOTENT_METHODS:
                raise TransientVenueError(method, path, resp.status_code, resp.text)
            if not resp.is_success:
                raise VenueRequestError(method, path, resp.status_code, resp.text)
            return _parse_body(resp)

        raise TransientVenueError(method, path, None, "retries exhausted")

    # -- orders --------------------------------------------------------------

    def place_order(self, order: SignedOrder, order_type: str) -> Any:
        return self._request("POST", "/order", {
            "order": order.as_json(),
            "owner": self.settings.api_key,
            "orderType": order_type,
        })

    def cancel_orders(
        self,
        mode: str,
        order_ids: Optional[list[str]] = None,
        market: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> Any:
        if mode == "all":
            return self._request("DELETE", "/cancel-all")
        if mode == "market":
            if not market and not asset_id:
                raise ValueError("cancel mode=market requires market or asset_id.")
            return self._request("DELETE", "/cancel-market-orders",
                                 {"market": market, "asset_id": asset_id})
        if not order_ids:
            raise ValueError("cancel mode=ids requires non-empty order_ids.")
        return self._request("DELETE", "/orders", order_ids)

    # -- public data ---------------------------------------------------------

    def source_trades(self, user: str, market: Optional[str] = None, limit: int = 10) -> list[SourceTrade]:
        """Most recent trades of ``user``, newest first."""
        params: dict[str, Any] = {"user": user, "limit": limit}
        if market:
            params["market"] = market
        try:
            resp = self._client.get(f"{self.settings.data_api_host}/trades", params=params)
        except httpx.TransportError as exc:
            raise TransientVenueError("GET", "/trades", None, str(exc)) from exc
        if not resp.is_success:
            raise VenueRequestError("GET", "/trades", resp.status_code, resp.text)
        rows = _parse_body(resp)
        trades: list[SourceTrade] = []
        for row in rows if isinstance(rows, list) else []:
            trade_id = row.get("id") or row.get("transactionHash")
            if not trade_id or row.get("price") is None:
                continue
            trades.append(SourceTrade(
                id=str(trade_id),
                side=str(row.get("side", "")).upper(),
                outcome=str(row.get("outcome", "")).upper(),
                price=float(row["price"]),
                size=float(row["size"]) if row.get("size") is not None else None,
                asset=str(row["asset"]) if row.get("asset") is not None else None,
                market=row.get("conditionId") or row.get("market"),
                timestamp=row.get("timestamp"),
            ))
        return trades


def _parse_body(resp: httpx.Response) -> Any:
    if not resp.text:
        return None
    try:
        return resp.json()
    except ValueError:
        return {"raw": resp.text}
