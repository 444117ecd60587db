"""
Dynamic range: ATR sets the width, long-horizon RSI skews it, short-horizon
RSI dampens the skew.
"""

import logging
import math
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# 1% price move ~= 100 ticks
TICKS_PER_PERCENT = 100


@dataclass(frozen=True)
class TickRange:
    lower: int
    upper: int


def range_width(atr: float, price: float, config) -> int:
    """Radius in ticks from volatility, clamped to [MIN_RANGE_WIDTH, MAX_RANGE_WIDTH]."""
    vol_percent = atr / price * 100 if price > 0 else 0.0
    raw_width = math.floor(vol_percent * TICKS_PER_PERCENT * config.ATR_SAFETY_FACTOR)
    width = max(config.MIN_RANGE_WIDTH, min(raw_width, config.MAX_RANGE_WIDTH))
    logger.info(
        "[Strategy] ATR: $%.2f | Vol: %.2f%% | Calc Width: %d | Radius: %d",
        atr,
        vol_percent,
        raw_width,
        width,
    )
    return width


def select_skew(rsi_short: float, rsi_long: float, config) -> float:
    """Fraction of the total span placed above the current tick.

    Long RSI picks the trend side; a short-term extreme in the same direction
    pulls it halfway back so the range does not chase a local top or bottom.
    """
    if rsi_long > config.RSI_LONG_BULL:
        skew = config.SKEW_BULL
    elif rsi_long < config.RSI_LONG_BEAR:
        skew = config.SKEW_BEAR
    else:
        skew = 0.5

    if skew > 0.5 and rsi_short > config.RSI_SHORT_OVERBOUGHT:
        skew = config.SKEW_DAMPENED_BULL
    elif skew < 0.5 and rsi_short < config.RSI_SHORT_OVERSOLD:
        skew = config.SKEW_DAMPENED_BEAR
    return skew


def _floor_to_spacing(tick: int, spacing: int) -> int:
    return math.floor(tick / spacing) * spacing


def compute_tick_range(
    current_tick: int,
    tick_spacing: int,
    current_price: float,
    atr: float,
    rsi_short: float,
    rsi_long: float,
    config,
) -> TickRange:
    width = range_width(atr, current_price, config)
    skew = select_skew(rsi_short, rsi_long, config)

    total_span = width * 2
    upper_diff = math.floor(total_span * skew)
    lower_diff = math.floor(total_span * (1 - skew))

    lower = _floor_to_spacing(current_tick - lower_diff, tick_spacing)
    upper = _floor_to_spacing(current_tick + upper_diff, tick_spacing)

    # Boundary sanitation: usable ticks are spacing multiples inside [MIN_TICK, MAX_TICK]
    min_usable = math.ceil(config.MIN_TICK / tick_spacing) * tick_spacing
    max_usable = math.floor(config.MAX_TICK / tick_spacing) * tick_spacing
    lower = max(lower, min_usable)
    upper = min(upper, max_usable)
    lower = min(lower, max_usable)
    upper = max(upper, min_usable)

    if lower >= upper:
        upper = lower + tick_spacing
    if upper > max_usable:
        upper = max_usable
        lower = upper - tick_spacing

    logger.info(
        "[Strategy] New Range: [%d, %d] (Skew: %.2f, Span: %d, RSI short=%.1f long=%.1f)",
        lower,
        upper,
        skew,
        upper - lower,
        rsi_short,
        rsi_long,
    )
    return TickRange(lower=lower, upper=upper)
