"""
Uniswap V3 pool prices for price triggers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from eth_utils import to_checksum_address

from custody.errors import LedgerError
from custody.ledger import Ledger
from custody.triggers import PriceTrigger

logger = logging.getLogger(__name__)

FEE_TIERS = (100, 500, 3000, 10000)
Q96 = 2 ** 96


@dataclass(frozen=True)
class PoolQuote:
    pool: str
    fee: int
    price: float             # quote units per one base unit


class PoolPriceReader:
    """Reads spot prices from pool ``slot0`` with token decimals applied."""

    def __init__(self, ledger: Ledger, factory: str | None):
        self.ledger = ledger
        self.factory = to_checksum_address(factory) if factory else None
        self._decimals: dict[str, int] = {}

    def decimals(self, token: str) -> int:
        if token not in self._decimals:
            self._decimals[token] = self.ledger.erc20_decimals(token)
        return self._decimals[token]

    def best_pool(self, token_a: str, token_b: str) -> Optional[tuple[str, int]]:
        """Highest-liquidity pool for the pair across the standard fee tiers."""
        if not self.factory:
            raise LedgerError("UNISWAP_V3_FACTORY is required to select pools")
        best: Optional[tuple[str, int]] = None
        best_liquidity = -1
        for fee in FEE_TIERS:
            pool = self.ledger.read(
                self.factory, "getPool(address,address,uint24)",
                [token_a, token_b, fee], returns=("address",),
            )
            if int(pool, 16) == 0:
                continue
            liquidity = int(self.ledger.read(pool, "liquidity()", returns=("uint128",)))
            if liquidity > best_liquidity:
                best, best_liquidity = (to_checksum_address(pool), fee), liquidity
        return best

    def quote(self, trigger: PriceTrigger) -> Optional[PoolQuote]:
        if trigger.pool:
            pool = trigger.pool
            fee = int(self.ledger.read(pool, "fee()", returns=("uint24",)))
        else:
            found = self.best_pool(trigger.base_token, trigger.quote_token)
            if found is None:
                logger.warning("no pool for %s/%s", trigger.base_token, trigger.quote_token)
                return None
            pool, fee = found

        token0 = to_checksum_address(self.ledger.read(pool, "token0()", returns=("address",)))
        token1 = to_checksum_address(self.ledger.read(pool, "token1()", returns=("address",)))
        if {token0, token1} != {trigger.base_token, trigger.quote_token}:
            raise LedgerError(f"Pool {pool} does not trade {trigger.base_token}/{trigger.quote_token}")

        slot0 = self.ledger.read(
            pool, "slot0()",
            returns=("uint160", "int24", "uint16", "uint16", "uint16", "uint8", "bool"),
        )
        sqrt_price = int(slot0[0])
        if sqrt_price == 0:
            return None

        # token1 per token0, adjusted for decimals
        raw = (sqrt_price / Q96) ** 2
        price_1_per_0 = raw * 10 ** (self.decimals(token0) - self.decimals(token1))
        price = price_1_per_0 if trigger.base_token == token0 else 1 / price_1_per_0
        return PoolQuote(pool=pool, fee=fee, price=price)
