"""
Uniswap V3 pool pricing against scripted pool reads.
"""

from __future__ import annotations

import math

import pytest
from eth_utils import to_checksum_address

from conftest import USDC, WETH, FakeLedger
from custody.errors import LedgerError
from custody.pricing import Q96, PoolPriceReader
from custody.triggers import PriceTrigger

FACTORY = to_checksum_address("0x" + "fa" * 20)
POOL = to_checksum_address("0x" + "b0" * 20)
SLOT0 = ("uint160", "int24", "uint16", "uint16", "uint16", "uint8", "bool")


def _pool(ledger: FakeLedger, price_usdc_per_weth: float) -> None:
    ledger.set_read(FACTORY, "getPool(address,address,uint24)", [POOL], ("address",))
    ledger.set_read(POOL, "liquidity()", [10 ** 18], ("uint128",))
    ledger.set_read(POOL, "fee()", [3000], ("uint24",))
    ledger.set_read(POOL, "token0()", [WETH], ("address",))
    ledger.set_read(POOL, "token1()", [USDC], ("address",))
    ledger.set_read(WETH, "decimals()", [18], ("uint8",))
    ledger.set_read(USDC, "decimals()", [6], ("uint8",))
    sqrt_price = int(math.sqrt(price_usdc_per_weth * 10 ** -12) * Q96)
    ledger.set_read(POOL, "slot0()", [sqrt_price, 0, 0, 0, 0, 0, True], SLOT0)


def _trigger(base: str, quote: str, pool: str | None = None) -> PriceTrigger:
    return PriceTrigger(id="t", base_token=base, quote_token=quote, comparator="gte",
                        threshold=3000.0, priority=0, pool=pool)


def test_quote_in_quote_units_per_base(ledger):
    _pool(ledger, 3000.0)
    reader = PoolPriceReader(ledger, FACTORY)

    quote = reader.quote(_trigger(WETH, USDC))
    assert quote.price == pytest.approx(3000.0, rel=1e-6)
    assert quote.pool == POOL
    assert quote.fee == 100

    inverse = reader.quote(_trigger(USDC, WETH, pool=POOL))
    assert inverse.price == pytest.approx(1 / 3000.0, rel=1e-6)
    assert inverse.fee == 3000


def test_pool_must_trade_the_pair(ledger):
    _pool(ledger, 3000.0)
    other = to_checksum_address("0x" + "cc" * 20)
    with pytest.raises(LedgerError):
        PoolPriceReader(ledger, FACTORY).quote(_trigger(WETH, other, pool=POOL))


def test_missing_pool_yields_no_quote(ledger):
    ledger.set_read(FACTORY, "getPool(address,address,uint24)", ["0x" + "00" * 20], ("address",))
    assert PoolPriceReader(ledger, FACTORY).quote(_trigger(WETH, USDC)) is None


def test_pool_selection_needs_a_factory(ledger):
    with pytest.raises(LedgerError):
        PoolPriceReader(ledger, None).quote(_trigger(WETH, USDC))
