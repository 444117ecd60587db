"""
HedgeManager: keeps an Aave WETH borrow equal to the WETH held in the LP
position, and owns the panic exit.

Panic exit does not terminate the process; it returns a report and the
caller (control loop / entry point) moves to its terminal state.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from deltabot.chain import MAX_UINT256, load_abi
from deltabot.ledger import NO_POSITION

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class HedgeAction(Enum):
    NOOP = "noop"
    INCREASED = "increased"
    DECREASED = "decreased"
    REFUSED = "refused"
    PANIC = "panic"


@dataclass(frozen=True)
class HedgeState:
    health_factor: float
    current_debt: int


@dataclass
class PanicReport:
    position_exited: bool = False
    ledger_reset: bool = False
    debt_before: int = 0
    debt_repaid: bool = False
    errors: list[str] = field(default_factory=list)


class HedgeManager:
    """Keeps Aave WETH debt matched to the WETH held in the LP position."""

    def __init__(self, chain, lp_manager, state_reader, ledger, alerts, config):
        self.chain = chain
        self.lp_manager = lp_manager
        self.state_reader = state_reader
        self.ledger = ledger
        self.alerts = alerts
        self.config = config
        self.last_panic_report: PanicReport | None = None

    @property
    def aave_pool(self):
        return self.chain.contract(self.config.AAVE_POOL, load_abi("aave_pool.json"))

    # ------------------------------------------------------------------
    # Info getters
    # ------------------------------------------------------------------

    def get_health_factor(self) -> float:
        """Aave health factor as a float, or the sentinel when it is not meaningful."""
        cfg = self.config
        owner = self.chain.address
        data = self.chain.read(
            "getUserAccountData",
            lambda: self.aave_pool.functions.getUserAccountData(owner).call(),
        )
        total_collateral_base, health_factor_raw = int(data[0]), int(data[5])
        # Negligible collateral or absurd ratio: treat as safe, not as a division artifact
        if total_collateral_base < cfg.MIN_COLLATERAL_BASE:
            return cfg.HEALTH_FACTOR_SENTINEL
        if health_factor_raw > int(cfg.HEALTH_FACTOR_CEILING * 10**18):
            return cfg.HEALTH_FACTOR_SENTINEL
        return health_factor_raw / 10**18

    def get_current_debt(self) -> int:
        """Variable WETH debt in wei; 0 when no debt token is configured."""
        debt_token = self.config.WETH_DEBT_TOKEN
        if not debt_token or debt_token.lower() == ZERO_ADDRESS:
            return 0
        owner = self.chain.address
        contract = self.chain.contract(debt_token, load_abi("erc20.json"))
        return int(self.chain.read("debt.balanceOf", lambda: contract.functions.balanceOf(owner).call()))

    def read_state(self) -> HedgeState:
        return HedgeState(
            health_factor=self.get_health_factor(), current_debt=self.get_current_debt()
        )

    # ------------------------------------------------------------------
    # Safety check (every block)
    # ------------------------------------------------------------------

    def check_health(self, position_id: str) -> HedgeAction:
        """Panic if the health factor is below the floor. Read failures count as safe."""
        try:
            hf = self.get_health_factor()
        except Exception as e:
            logger.error("[Aave] Health check failed: %s", e)
            return HedgeAction.NOOP

        if hf < self.config.AAVE_MIN_HEALTH_FACTOR:
            logger.warning(
                "[Risk] Health Factor Critical: %.4f < %.2f",
                hf,
                self.config.AAVE_MIN_HEALTH_FACTOR,
            )
            self.panic_exit_all(position_id, hf)
            return HedgeAction.PANIC
        return HedgeAction.NOOP

    # ------------------------------------------------------------------
    # Hedge adjustments
    # ------------------------------------------------------------------

    def increase_short(self, amount: int) -> HedgeAction:
        """Borrow WETH and sell it for USDC."""
        cfg = self.config
        hf = self.get_health_factor()
        if hf < cfg.AAVE_TARGET_HEALTH_FACTOR:
            logger.warning("[Hedge] Health Factor low (%.2f). Skipping borrow.", hf)
            self.alerts.send_alert("Hedge Warning", f"Health Factor low ({hf:.4f}). Skipping borrow.")
            return HedgeAction.REFUSED

        logger.info("[Hedge] OPEN SHORT: Borrowing %d wei WETH...", amount)
        self.chain.send(
            "aave.borrow",
            self.aave_pool.functions.borrow(
                cfg.WETH_ADDRESS, amount, cfg.AAVE_RATE_MODE_VARIABLE, 0, self.chain.address
            ),
        )

        # Forced unwind of fresh debt: no minimum output
        logger.info("[Hedge] Selling borrowed WETH for USDC...")
        self.lp_manager.swap_exact_input(cfg.WETH_ADDRESS, cfg.USDC_ADDRESS, amount, 0)
        logger.info("[Hedge] Short position increased.")
        return HedgeAction.INCREASED

    def decrease_short(self, amount: int, force: bool = False) -> HedgeAction:
        """Repay WETH debt, buying any shortfall with USDC first.

        force=True repays the whole outstanding debt (uint256 max) so a panic
        unwind ends at exactly zero regardless of interest accrued meanwhile.
        """
        cfg = self.config
        logger.info("[Hedge] CLOSE SHORT: Repaying %d wei WETH (force=%s)...", amount, force)

        needed = amount + amount // 1000 if force else amount
        weth_balance = self.state_reader.token_balance(cfg.WETH_ADDRESS)
        if weth_balance < needed:
            deficit = needed - weth_balance
            usdc_balance = self.state_reader.token_balance(cfg.USDC_ADDRESS)
            logger.info("[Hedge] Buying %d wei WETH deficit with up to %d USDC", deficit, usdc_balance)
            self.lp_manager.swap_exact_output(cfg.USDC_ADDRESS, cfg.WETH_ADDRESS, deficit, usdc_balance)

        self.chain.send(
            "aave.repay",
            self.aave_pool.functions.repay(
                cfg.WETH_ADDRESS,
                MAX_UINT256 if force else amount,
                cfg.AAVE_RATE_MODE_VARIABLE,
                self.chain.address,
            ),
        )
        logger.info("[Hedge] Repay confirmed.")
        return HedgeAction.DECREASED

    def adjust_hedge(self, lp_weth_amount: int, position_id: str) -> HedgeAction:
        """Borrow or repay so debt tracks `lp_weth_amount` within the neutral threshold."""
        hf = self.get_health_factor()
        if hf < self.config.AAVE_MIN_HEALTH_FACTOR:
            self.panic_exit_all(position_id, hf)
            return HedgeAction.PANIC

        current_debt = self.get_current_debt()
        diff = lp_weth_amount - current_debt
        threshold = self.config.DELTA_NEUTRAL_THRESHOLD
        logger.info(
            "[Hedge] LP Long: %d wei | Aave Short: %d wei | Net Delta: %d wei",
            lp_weth_amount,
            current_debt,
            diff,
        )

        if diff > threshold:
            return self.increase_short(diff)
        if diff < -threshold:
            return self.decrease_short(-diff)
        logger.info("[Hedge] Balanced.")
        return HedgeAction.NOOP

    def close_all_debt(self) -> int:
        """Repay all outstanding WETH debt. Returns the debt found before repaying."""
        debt = self.get_current_debt()
        if debt > 0:
            logger.info("[Aave] Found debt: %d wei WETH", debt)
            self.decrease_short(debt, force=True)
        return debt

    # ------------------------------------------------------------------
    # Panic exit
    # ------------------------------------------------------------------

    def panic_exit_all(self, position_id: str, health_factor: float | None = None) -> PanicReport:
        """Break LP first (the only WETH source), reset the ledger, then repay all debt."""
        logger.critical("[CRITICAL EXIT] Initiating panic cleanup!")
        report = PanicReport()

        # 1. Alert, best effort
        try:
            self.alerts.send_alert(
                "CRITICAL: Panic Exit", f"HF {health_factor}. Exiting all positions."
            )
        except Exception as e:
            logger.error("[Panic] Failed to send initial alert: %s", e)

        # 2-3. Exit LP, then reset ledger before anything else
        if position_id and position_id != NO_POSITION:
            try:
                self.lp_manager.atomic_exit(int(position_id))
                report.position_exited = True
                self.ledger.save(position_id=NO_POSITION)
                report.ledger_reset = True
                logger.info("[Panic] LP closed & state reset.")
            except Exception as e:
                logger.error("[Panic] Failed to close LP: %s", e, exc_info=True)
                report.errors.append(f"close LP: {e}")
                self.alerts.send_alert("[Panic] Failed to close LP", str(e))

        # 4. Repay everything
        try:
            report.debt_before = self.close_all_debt()
            report.debt_repaid = True
        except Exception as e:
            logger.error("[Panic] Failed to repay Aave debt: %s", e, exc_info=True)
            report.errors.append(f"repay: {e}")
            self.alerts.send_alert("[Panic] Failed to repay Aave debt", str(e))

        logger.critical("[EXIT] Strategy stopped. Operator intervention required.")
        self.last_panic_report = report
        return report
