"""Mark-to-market valuation and the circuit breaker that acts on it."""

import logging
from dataclasses import dataclass

from deltabot.ledger import NO_POSITION
from deltabot.state_reader import PoolSnapshot, PositionInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortfolioValuation:
    wallet_usd: float
    position_usd: float
    fees_usd: float
    price: float

    @property
    def total_usd(self) -> float:
        return self.wallet_usd + self.position_usd + self.fees_usd


class PortfolioGuard:
    """Values wallet + position + pending fees and trips the circuit breaker."""

    def __init__(self, state_reader, lp_manager, hedge, ledger, alerts, config):
        self.state_reader = state_reader
        self.lp_manager = lp_manager
        self.hedge = hedge
        self.ledger = ledger
        self.alerts = alerts
        self.config = config

    def _usd(self, weth: int, usdc: int, price: float) -> float:
        cfg = self.config
        return weth / 10**cfg.WETH_DECIMALS * price + usdc / 10**cfg.USDC_DECIMALS

    def value(self, pool: PoolSnapshot, position: PositionInfo | None) -> PortfolioValuation:
        """USD value of wallet balances, the position and its uncollected fees."""
        wallet = self.state_reader.get_balances()
        position_usd = 0.0
        fees_usd = 0.0
        if position is not None and position.liquidity > 0:
            held = self.state_reader.position_amounts(position, pool)
            position_usd = self._usd(held.weth, held.usdc, pool.price)
            fee0, fee1 = self.lp_manager.simulate_collect(position.token_id)
            if pool.volatile_is_token0(self.config.WETH_ADDRESS):
                fees_usd = self._usd(fee0, fee1, pool.price)
            else:
                fees_usd = self._usd(fee1, fee0, pool.price)
        return PortfolioValuation(
            wallet_usd=self._usd(wallet.weth, wallet.usdc, pool.price),
            position_usd=position_usd,
            fees_usd=fees_usd,
            price=pool.price,
        )

    def breached(self, valuation: PortfolioValuation) -> bool:
        """True when the portfolio is strictly below the circuit-breaker floor."""
        return valuation.total_usd < self.config.CIRCUIT_BREAKER_FLOOR_USD

    def trip(self, position_id: str, pool: PoolSnapshot, valuation: PortfolioValuation) -> None:
        """Pull liquidity, clear the hedge, sell down to the target stable split, halt."""
        cfg = self.config
        logger.critical(
            "[Risk] Circuit breaker: portfolio $%.2f < floor $%.2f",
            valuation.total_usd,
            cfg.CIRCUIT_BREAKER_FLOOR_USD,
        )

        if position_id != NO_POSITION:
            self.lp_manager.atomic_exit(int(position_id))
            self.ledger.save(position_id=NO_POSITION)

        if cfg.HEDGE_ENABLED:
            self.hedge.close_all_debt()

        balances = self.state_reader.get_balances()
        weth_usd = self._usd(balances.weth, 0, pool.price)
        total_usd = weth_usd + self._usd(0, balances.usdc, pool.price)
        excess_usd = weth_usd - total_usd * (1 - cfg.CIRCUIT_BREAKER_TARGET_STABLE_FRACTION)
        if excess_usd > 0 and pool.price > 0:
            sell_weth = min(
                balances.weth, int(excess_usd / pool.price * 10**cfg.WETH_DECIMALS)
            )
            if sell_weth >= cfg.REBALANCE_THRESHOLD_WETH:
                logger.info("[Risk] Liquidating %d wei WETH to USDC", sell_weth)
                self.lp_manager.swap_exact_input(
                    cfg.WETH_ADDRESS, cfg.USDC_ADDRESS, sell_weth, 0
                )

        self.ledger.save(circuit_breaker=True, circuit_breaker_exit_price=pool.price)
        self.alerts.send_alert(
            "CIRCUIT BREAKER TRIPPED",
            f"Portfolio value ${valuation.total_usd:.2f} fell below "
            f"${cfg.CIRCUIT_BREAKER_FLOOR_USD:.2f} at price {pool.price:.2f}. "
            "Automatic re-entry halted; clear circuit_breaker in the state file to resume.",
        )
