"""
Concentrated-liquidity primitives (Uniswap V3 conventions).

Prices are Q64.96 square roots; amounts are raw token units.
"""

from decimal import Decimal, getcontext

getcontext().prec = 40

Q96 = 2**96


def tick_to_sqrt_price_x96(tick: int) -> int:
    """sqrt(1.0001^tick) * 2^96, truncated."""
    return int(Decimal("1.0001") ** (Decimal(tick) / 2) * Q96)


def sqrt_price_x96_to_price(sqrt_price_x96: int, decimals0: int, decimals1: int) -> float:
    """Human price of token0 denominated in token1."""
    ratio = (Decimal(sqrt_price_x96) / Decimal(Q96)) ** 2
    return float(ratio * Decimal(10) ** (decimals0 - decimals1))


def _ordered(sqrt_a: int, sqrt_b: int) -> tuple[int, int]:
    return (sqrt_a, sqrt_b) if sqrt_a <= sqrt_b else (sqrt_b, sqrt_a)


def liquidity_for_amount0(sqrt_a: int, sqrt_b: int, amount0: int) -> int:
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    intermediate = sqrt_a * sqrt_b // Q96
    return amount0 * intermediate // (sqrt_b - sqrt_a)


def liquidity_for_amount1(sqrt_a: int, sqrt_b: int, amount1: int) -> int:
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    return amount1 * Q96 // (sqrt_b - sqrt_a)


def liquidity_for_amounts(
    sqrt_price_x96: int, sqrt_a: int, sqrt_b: int, amount0: int, amount1: int
) -> int:
    """Maximum liquidity mintable in [a, b] from the given amounts at the current price."""
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    if sqrt_price_x96 <= sqrt_a:
        return liquidity_for_amount0(sqrt_a, sqrt_b, amount0)
    if sqrt_price_x96 < sqrt_b:
        liq0 = liquidity_for_amount0(sqrt_price_x96, sqrt_b, amount0)
        liq1 = liquidity_for_amount1(sqrt_a, sqrt_price_x96, amount1)
        return min(liq0, liq1)
    return liquidity_for_amount1(sqrt_a, sqrt_b, amount1)


def amount0_for_liquidity(sqrt_a: int, sqrt_b: int, liquidity: int) -> int:
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    return (liquidity * Q96 * (sqrt_b - sqrt_a) // sqrt_b) // sqrt_a


def amount1_for_liquidity(sqrt_a: int, sqrt_b: int, liquidity: int) -> int:
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    return liquidity * (sqrt_b - sqrt_a) // Q96


def amounts_for_liquidity(
    sqrt_price_x96: int, sqrt_a: int, sqrt_b: int, liquidity: int
) -> tuple[int, int]:
    """Token amounts (amount0, amount1) represented by `liquidity` at the current price."""
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    if sqrt_price_x96 <= sqrt_a:
        return amount0_for_liquidity(sqrt_a, sqrt_b, liquidity), 0
    if sqrt_price_x96 < sqrt_b:
        return (
            amount0_for_liquidity(sqrt_price_x96, sqrt_b, liquidity),
            amount1_for_liquidity(sqrt_a, sqrt_price_x96, liquidity),
        )
    return 0, amount1_for_liquidity(sqrt_a, sqrt_b, liquidity)


def position_amounts(
    sqrt_price_x96: int, tick_lower: int, tick_upper: int, liquidity: int
) -> tuple[int, int]:
    return amounts_for_liquidity(
        sqrt_price_x96,
        tick_to_sqrt_price_x96(tick_lower),
        tick_to_sqrt_price_x96(tick_upper),
        liquidity,
    )
