"""
RebalanceExecutor: exit old position -> rebalance swap -> mint new position.

Each step depends on the on-chain effects of the previous one, so nothing
here runs in parallel. The ledger is written after the exit and after the
mint so that a crash in between restarts as "no position".
"""

import logging
from dataclasses import dataclass
from enum import Enum

from deltabot import v3_math
from deltabot.errors import MarketDataUnavailable, PriceManipulationSuspected
from deltabot.ledger import NO_POSITION
from deltabot.range_calculator import TickRange, compute_tick_range
from deltabot.state_reader import PoolSnapshot, WalletBalances

logger = logging.getLogger(__name__)


class OutcomeKind(Enum):
    MINTED = "minted"
    PROFIT_SECURED = "profit_secured"
    ABORTED = "aborted"


@dataclass(frozen=True)
class RebalanceOutcome:
    kind: OutcomeKind
    position_id: str = NO_POSITION
    tick_range: TickRange | None = None
    reason: str = ""
    price: float = 0.0

    @classmethod
    def minted(cls, position_id, tick_range: TickRange, price: float):
        return cls(OutcomeKind.MINTED, str(position_id), tick_range, price=price)

    @classmethod
    def profit_secured(cls, price: float, reason: str):
        return cls(OutcomeKind.PROFIT_SECURED, reason=reason, price=price)

    @classmethod
    def aborted(cls, reason: str):
        return cls(OutcomeKind.ABORTED, reason=reason)


@dataclass(frozen=True)
class SwapPlan:
    token_in: str
    token_out: str
    amount_in: int
    amount_out_min: int
    sell_volatile: bool


@dataclass(frozen=True)
class SwapPolicy:
    """How much of the value imbalance to swap, and whether to protect output."""

    fraction_to_volatile: float = 0.5
    fraction_to_stable: float = 0.5
    slippage_bps: int = 0
    min_usdc: int = 0
    min_weth: int = 0

    @classmethod
    def from_config(cls, config):
        return cls(
            fraction_to_volatile=config.SWAP_FRACTION_TO_VOLATILE,
            fraction_to_stable=config.SWAP_FRACTION_TO_STABLE,
            slippage_bps=config.SWAP_SLIPPAGE_BPS,
            min_usdc=config.REBALANCE_THRESHOLD_USDC,
            min_weth=config.REBALANCE_THRESHOLD_WETH,
        )


def plan_portfolio_swap(
    balances: WalletBalances, price: float, policy: SwapPolicy, config
) -> SwapPlan | None:
    """Swap part of the value imbalance toward an even split. None below dust."""
    weth_scale = 10**config.WETH_DECIMALS
    usdc_scale = 10**config.USDC_DECIMALS
    weth_value = int(balances.weth * price * usdc_scale / weth_scale)

    if balances.usdc > weth_value:
        amount_in = int((balances.usdc - weth_value) * policy.fraction_to_volatile)
        if amount_in < policy.min_usdc:
            return None
        expected_out = int(amount_in / price * weth_scale / usdc_scale) if price > 0 else 0
        sell_volatile = False
        token_in, token_out = config.USDC_ADDRESS, config.WETH_ADDRESS
    else:
        value_in = int((weth_value - balances.usdc) * policy.fraction_to_stable)
        amount_in = int(value_in / price * weth_scale / usdc_scale) if price > 0 else 0
        amount_in = min(amount_in, balances.weth)
        if amount_in < policy.min_weth:
            return None
        expected_out = value_in
        sell_volatile = True
        token_in, token_out = config.WETH_ADDRESS, config.USDC_ADDRESS

    amount_out_min = 0
    if policy.slippage_bps > 0:
        amount_out_min = expected_out * (10_000 - policy.slippage_bps) // 10_000

    return SwapPlan(
        token_in=token_in,
        token_out=token_out,
        amount_in=amount_in,
        amount_out_min=amount_out_min,
        sell_volatile=sell_volatile,
    )


class RebalanceExecutor:
    def __init__(self, state_reader, lp_manager, market_data, ledger, alerts, config, policy=None):
        self.state_reader = state_reader
        self.lp_manager = lp_manager
        self.market_data = market_data
        self.ledger = ledger
        self.alerts = alerts
        self.config = config
        self.policy = policy or SwapPolicy.from_config(config)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def check_manipulation(self, pool: PoolSnapshot) -> None:
        cfg = self.config
        twap_tick = self.state_reader.get_twap_tick(cfg.TWAP_WINDOW_SECONDS)
        if abs(pool.tick - twap_tick) > cfg.TWAP_MAX_TICK_DEVIATION:
            raise PriceManipulationSuspected(pool.tick, twap_tick, cfg.TWAP_MAX_TICK_DEVIATION)
        logger.info("[Rebalance] TWAP check ok: spot=%d twap=%d", pool.tick, twap_tick)

    def is_profit_secured(self, balances: WalletBalances, had_position: bool) -> bool:
        cfg = self.config
        return (
            had_position
            and balances.weth <= cfg.PROFIT_SECURED_WETH_DUST
            and balances.usdc >= cfg.PROFIT_SECURED_MIN_USDC
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def exit_position(self, position_id: str) -> None:
        self.lp_manager.atomic_exit(int(position_id))
        self.ledger.save(position_id=NO_POSITION)

    def rebalance_portfolio(self, pool: PoolSnapshot) -> SwapPlan | None:
        balances = self.state_reader.get_balances()
        plan = plan_portfolio_swap(balances, pool.price, self.policy, self.config)
        if plan is None:
            logger.info("[Rebalance] Balance is good enough. Skipping swap.")
            return None
        logger.info(
            "[Swap] Selling %d of %s (min out %d)",
            plan.amount_in,
            "WETH" if plan.sell_volatile else "USDC",
            plan.amount_out_min,
        )
        self.lp_manager.swap_exact_input(
            plan.token_in, plan.token_out, plan.amount_in, plan.amount_out_min
        )
        return plan

    def mint_max_liquidity(self, pool: PoolSnapshot, tick_range: TickRange):
        """Mint with a haircut of wallet balances so rounding never exceeds them."""
        cfg = self.config
        balances = self.state_reader.get_balances()
        weth_safe = balances.weth * cfg.MINT_SAFETY_BPS // 10_000
        usdc_safe = balances.usdc * cfg.MINT_SAFETY_BPS // 10_000

        if pool.volatile_is_token0(cfg.WETH_ADDRESS):
            amount0, amount1 = weth_safe, usdc_safe
        else:
            amount0, amount1 = usdc_safe, weth_safe

        sqrt_a = v3_math.tick_to_sqrt_price_x96(tick_range.lower)
        sqrt_b = v3_math.tick_to_sqrt_price_x96(tick_range.upper)
        liquidity = v3_math.liquidity_for_amounts(
            pool.sqrt_price_x96, sqrt_a, sqrt_b, amount0, amount1
        )
        if liquidity <= 0:
            raise RuntimeError(
                f"nothing to mint: balances weth={balances.weth} usdc={balances.usdc}"
            )
        desired0, desired1 = v3_math.amounts_for_liquidity(
            pool.sqrt_price_x96, sqrt_a, sqrt_b, liquidity
        )
        desired0, desired1 = min(desired0, amount0), min(desired1, amount1)
        keep = 10_000 - cfg.MINT_SLIPPAGE_BPS

        return self.lp_manager.mint_position(
            token0=pool.token0,
            token1=pool.token1,
            tick_lower=tick_range.lower,
            tick_upper=tick_range.upper,
            amount0_desired=desired0,
            amount1_desired=desired1,
            amount0_min=desired0 * keep // 10_000,
            amount1_min=desired1 * keep // 10_000,
        )

    # ------------------------------------------------------------------
    # Full sequence
    # ------------------------------------------------------------------

    def execute_full_rebalance(self, pool: PoolSnapshot, old_position_id: str) -> RebalanceOutcome:
        """Remove old -> swap -> refresh price -> mint new."""
        logger.info("[Rebalance] Starting full rebalance sequence (old=%s)", old_position_id)
        had_position = old_position_id != NO_POSITION

        # 1. Manipulation guard: do not touch anything on a spiked price
        try:
            self.check_manipulation(pool)
        except PriceManipulationSuspected as e:
            logger.error("[Rebalance] %s. Aborting.", e)
            self.alerts.send_alert("Rebalance aborted: price manipulation suspected", str(e))
            return RebalanceOutcome.aborted(str(e))

        # 2. Signals before any state change
        try:
            signal = self.market_data.get_signals()
        except MarketDataUnavailable as e:
            logger.error("[Rebalance] Market data unavailable (%s). Aborting.", e)
            return RebalanceOutcome.aborted(f"market data unavailable: {e}")

        # 3. Exit old position
        if had_position:
            self.exit_position(old_position_id)

        # 4. Profit-secured check, then portfolio swap
        balances = self.state_reader.get_balances()
        if self.is_profit_secured(balances, had_position):
            reason = (
                f"wallet holds {balances.usdc} USDC raw and only {balances.weth} WETH raw "
                "after exit"
            )
            logger.warning("[Rebalance] PROFIT_SECURED: %s", reason)
            return RebalanceOutcome.profit_secured(pool.price, reason)

        self.rebalance_portfolio(pool)

        # 5. Refresh pool state after our own swap
        logger.info("[System] Refreshing market data...")
        fresh = self.state_reader.get_pool_snapshot()
        logger.info("[Update] Tick: %d price=%.2f", fresh.tick, fresh.price)

        # 6. New range
        tick_range = compute_tick_range(
            fresh.tick,
            fresh.tick_spacing,
            fresh.price,
            signal.atr,
            signal.rsi_short,
            signal.rsi_long,
            self.config,
        )

        # 7. Mint
        result = self.mint_max_liquidity(fresh, tick_range)

        # 8. Persist handle + post-mint stable balance (baseline for deposit detection)
        post_mint = self.state_reader.get_balances()
        self.ledger.save(
            position_id=str(result.token_id), last_known_stable_balance=post_mint.usdc
        )
        logger.info(
            "[Rebalance] Complete: token_id=%s range=[%d, %d]",
            result.token_id,
            tick_range.lower,
            tick_range.upper,
        )
        return RebalanceOutcome.minted(result.token_id, tick_range, fresh.price)
