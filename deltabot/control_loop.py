"""
ControlLoop: block-driven scheduler tying ledger, pool state, rebalance
executor and hedge manager together.

All mutable scheduler state lives in a LoopState instance owned by the
loop. Reaching SAFE_MODE sets `exit_code`; terminating the process is the
entry point's job.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from deltabot.hedge import HedgeAction, PanicReport
from deltabot.ledger import NO_POSITION, PositionRecord
from deltabot.rebalancer import OutcomeKind

logger = logging.getLogger(__name__)


class BotMode(Enum):
    ACTIVE = "active"
    STANDBY = "standby"
    CIRCUIT_BROKEN = "circuit_broken"
    SAFE_MODE = "safe_mode"


class Branch(Enum):
    SKIPPED_BUSY = "skipped_busy"
    THROTTLED = "throttled"
    SAFE_MODE_HALT = "safe_mode_halt"
    CIRCUIT_BROKEN_HALT = "circuit_broken_halt"
    PANIC = "panic"
    INITIALIZE = "initialize"
    WAIT_FOR_FUNDS = "wait_for_funds"
    STRATEGY_NOT_DUE = "strategy_not_due"
    POSITION_CLOSED = "position_closed"
    POSITION_ADOPTED = "position_adopted"
    HEDGE_ADJUST = "hedge_adjust"
    REBALANCE = "rebalance"
    FORCED_REBALANCE = "forced_rebalance"
    STANDBY_WAIT = "standby_wait"
    STANDBY_EXIT = "standby_exit"
    CIRCUIT_BREAKER_TRIP = "circuit_breaker_trip"
    FAILED = "failed"


@dataclass
class LoopState:
    mode: BotMode = BotMode.ACTIVE
    processing: bool = False
    last_run_ts: float = 0.0
    last_strategy_ts: float = 0.0
    last_status_ts: float = 0.0
    last_orphan_scan_ts: float = 0.0
    exit_code: int | None = None


@dataclass
class CycleResult:
    block: int
    branch: Branch
    detail: dict = field(default_factory=dict)


class ControlLoop:
    """Decides and dispatches one action per block."""

    def __init__(
        self,
        state_reader,
        rebalancer,
        hedge,
        ledger,
        alerts,
        config,
        portfolio=None,
        state: LoopState | None = None,
        clock=time.time,
        decisions_file: str | None = None,
    ):
        self.state_reader = state_reader
        self.rebalancer = rebalancer
        self.hedge = hedge
        self.ledger = ledger
        self.alerts = alerts
        self.config = config
        self.portfolio = portfolio
        self.state = state or LoopState()
        self.clock = clock
        self.decisions_file = Path(decisions_file) if decisions_file else None
        self._lock = threading.Lock()
        self._cycle_tick: int | None = None
        self._cycle_position_id: str | None = None

    # ------------------------------------------------------------------
    # Block entry point
    # ------------------------------------------------------------------

    def on_block(self, block_number: int) -> CycleResult:
        """Run one cycle for this block, or return why it was skipped."""
        if self.state.mode is BotMode.SAFE_MODE:
            if block_number % self.config.SAFE_MODE_LOG_EVERY_BLOCKS == 0:
                logger.warning(
                    "[SafeMode] Bot is in SAFE MODE. No actions taken. Block: %d", block_number
                )
            return CycleResult(block_number, Branch.SAFE_MODE_HALT)

        # Overlapping blocks are dropped, not queued
        if not self._lock.acquire(blocking=False):
            return CycleResult(block_number, Branch.SKIPPED_BUSY)
        try:
            self.state.processing = True
            now = self.clock()
            if now - self.state.last_run_ts < self.config.MIN_INTERVAL_SECONDS:
                return CycleResult(block_number, Branch.THROTTLED)
            self.state.last_run_ts = now
            self._cycle_tick = None
            self._cycle_position_id = None

            try:
                result = self._run_cycle(block_number, now)
            except Exception as e:
                logger.error("[Block %d] Error: %s", block_number, e, exc_info=True)
                result = CycleResult(block_number, Branch.FAILED, {"error": str(e)})

            self._log_decision(result)
            self._maybe_send_status(now)
            return result
        finally:
            self.state.processing = False
            self._lock.release()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _run_cycle(self, block: int, now: float) -> CycleResult:
        cfg = self.config
        record = self.ledger.load()

        self._cycle_position_id = record.position_id

        if record.circuit_breaker:
            if self.state.mode is not BotMode.CIRCUIT_BROKEN:
                self.state.mode = BotMode.CIRCUIT_BROKEN
                logger.warning("[Risk] Circuit breaker flag set. Waiting for operator reset.")
            return CycleResult(block, Branch.CIRCUIT_BROKEN_HALT)
        if self.state.mode is BotMode.CIRCUIT_BROKEN:
            logger.info("[Risk] Circuit breaker cleared by operator. Resuming.")
        self.state.mode = BotMode.STANDBY if record.standby else BotMode.ACTIVE

        # Critical path: every block, not throttled
        if cfg.HEDGE_ENABLED:
            if self.hedge.check_health(record.position_id) is HedgeAction.PANIC:
                return self._enter_safe_mode(block)

        if self.state.mode is BotMode.STANDBY:
            return self._standby_cycle(block, record)

        if not record.has_position:
            adopted = self._scan_for_untracked_position(now)
            if adopted is not None:
                return CycleResult(block, Branch.POSITION_ADOPTED, {"adopted": adopted})

        force = self._detect_new_funds(record)

        if not record.has_position and not force and cfg.AUTO_INVEST_NEW_FUNDS:
            logger.info("[Block %d] No active position and no new funds. Waiting...", block)
            return CycleResult(block, Branch.WAIT_FOR_FUNDS)

        # Strategy path: interval-gated unless new funds force it
        if not force and now - self.state.last_strategy_ts < cfg.STRATEGY_INTERVAL_SECONDS:
            return CycleResult(block, Branch.STRATEGY_NOT_DUE)
        self.state.last_strategy_ts = now

        if not record.has_position:
            logger.info("[Block %d] No active position. Initializing strategy...", block)
            pool = self._snapshot()
            return self._rebalance(block, pool, NO_POSITION, Branch.INITIALIZE)
        logger.info("[Block %d] Running Strategy Logic...", block)
        return self._strategy_cycle(block, record, force)

    def _strategy_cycle(self, block: int, record: PositionRecord, force: bool) -> CycleResult:
        cfg = self.config
        pool = self._snapshot()
        position = self.state_reader.get_position(record.token_id)

        if position is None or position.liquidity == 0:
            return self._reconcile_closed_position(block, record)

        if cfg.CIRCUIT_BREAKER_ENABLED and self.portfolio is not None:
            valuation = self.portfolio.value(pool, position)
            logger.info("[Risk] Portfolio value: $%.2f", valuation.total_usd)
            if self.portfolio.breached(valuation):
                self.portfolio.trip(record.position_id, pool, valuation)
                self.state.mode = BotMode.CIRCUIT_BROKEN
                return CycleResult(
                    block, Branch.CIRCUIT_BREAKER_TRIP, {"value_usd": valuation.total_usd}
                )

        if not force and position.contains(pool.tick):
            logger.info("[Strategy] In Range. Adjusting Hedge...")
            if not cfg.HEDGE_ENABLED:
                return CycleResult(block, Branch.HEDGE_ADJUST, {"action": "disabled"})
            held = self.state_reader.position_amounts(position, pool)
            action = self.hedge.adjust_hedge(held.weth, record.position_id)
            if action is HedgeAction.PANIC:
                return self._enter_safe_mode(block)
            if action in (HedgeAction.INCREASED, HedgeAction.DECREASED):
                # Hedge swaps move USDC; do not mistake them for a deposit
                usdc = self.state_reader.get_balances().usdc
                self.ledger.save(last_known_stable_balance=usdc)
            return CycleResult(
                block,
                Branch.HEDGE_ADJUST,
                {"action": action.value, "tick": pool.tick, "lp_weth": held.weth},
            )

        if force:
            logger.info("[Strategy] Forcing rebalance to incorporate new funds.")
            return self._rebalance(block, pool, record.position_id, Branch.FORCED_REBALANCE)
        logger.info(
            "[Strategy] Out of Range (%d not in [%d, %d]). Rebalancing...",
            pool.tick,
            position.tick_lower,
            position.tick_upper,
        )
        return self._rebalance(block, pool, record.position_id, Branch.REBALANCE)

    def _standby_cycle(self, block: int, record: PositionRecord) -> CycleResult:
        cfg = self.config
        pool = self._snapshot()
        trigger = record.standby_reference_price * (1 - cfg.STANDBY_PULLBACK_FRACTION)
        if pool.price > trigger:
            return CycleResult(
                block, Branch.STANDBY_WAIT, {"price": pool.price, "trigger": trigger}
            )

        logger.info(
            "[Standby] Price %.2f pulled back below %.2f. Re-entering.", pool.price, trigger
        )
        self.ledger.save(standby=False, standby_reference_price=0.0)
        self.state.mode = BotMode.ACTIVE
        self.alerts.send_alert(
            "Standby exit",
            f"Price {pool.price:.2f} <= {trigger:.2f} (reference "
            f"{record.standby_reference_price:.2f}). Re-entering position.",
        )
        return self._rebalance(block, pool, record.position_id, Branch.STANDBY_EXIT)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _snapshot(self):
        pool = self.state_reader.get_pool_snapshot()
        self._cycle_tick = pool.tick
        return pool

    def _rebalance(self, block: int, pool, position_id: str, branch: Branch) -> CycleResult:
        outcome = self.rebalancer.execute_full_rebalance(pool, position_id)
        detail = {"outcome": outcome.kind.value, "old_position_id": position_id}

        if outcome.kind is OutcomeKind.MINTED:
            detail["position_id"] = outcome.position_id
            detail["range"] = [outcome.tick_range.lower, outcome.tick_range.upper]
            # Hedge check on the very next strategy pass
            self.state.last_strategy_ts = 0.0
        elif outcome.kind is OutcomeKind.PROFIT_SECURED:
            self.ledger.save(standby=True, standby_reference_price=outcome.price)
            self.state.mode = BotMode.STANDBY
            logger.warning("[System] Profit secured. Entering STANDBY at price %.2f", outcome.price)
            self.alerts.send_alert(
                "Standby: Profit Secured",
                f"{outcome.reason}\nWaiting for a "
                f"{self.config.STANDBY_PULLBACK_FRACTION:.1%} pullback from {outcome.price:.2f}.",
            )
        else:
            detail["reason"] = outcome.reason
            logger.warning("[Rebalance] Aborted at block %d: %s", block, outcome.reason)
        return CycleResult(block, branch, detail)

    def _detect_new_funds(self, record: PositionRecord) -> bool:
        cfg = self.config
        if not cfg.AUTO_INVEST_NEW_FUNDS:
            return False

        usdc = self.state_reader.get_balances().usdc
        if record.last_known_stable_balance <= 0:
            logger.info("[Auto-Invest] Initializing baseline USDC balance.")
            if not record.has_position and usdc >= cfg.AUTO_INVEST_THRESHOLD_USDC:
                logger.info("[Auto-Invest] Initial funds detected (%d raw USDC).", usdc)
                return True
            self.ledger.save(last_known_stable_balance=usdc)
            return False

        deposit = usdc - record.last_known_stable_balance
        if deposit >= cfg.AUTO_INVEST_THRESHOLD_USDC:
            logger.info("[Auto-Invest] New deposit of %d raw USDC detected.", deposit)
            return True
        return False

    def _reconcile_closed_position(self, block: int, record: PositionRecord) -> CycleResult:
        logger.warning("[Strategy] Position %s is closed on chain.", record.position_id)
        self.alerts.send_alert("CRITICAL: Position Closed.", f"ID: {record.position_id}")
        self.ledger.save(position_id=NO_POSITION)
        self.state.last_orphan_scan_ts = self.clock()
        orphan = self.state_reader.find_orphan_position()
        if orphan is not None:
            logger.info("[Strategy] Adopting orphan position %s", orphan)
            self.ledger.save(position_id=str(orphan))
        return CycleResult(
            block,
            Branch.POSITION_CLOSED,
            {"closed": record.position_id, "adopted": orphan},
        )

    def _scan_for_untracked_position(self, now: float) -> int | None:
        """Adopt a live position the ledger does not know about.

        Covers a mint whose receipt was lost (timeout or missing event) but
        which landed on chain. Scans at most once per strategy interval.
        """
        if now - self.state.last_orphan_scan_ts < self.config.STRATEGY_INTERVAL_SECONDS:
            return None
        self.state.last_orphan_scan_ts = now
        orphan = self.state_reader.find_orphan_position()
        if orphan is None:
            return None
        logger.warning("[Strategy] Found untracked position %s on chain. Adopting.", orphan)
        self.ledger.save(position_id=str(orphan))
        self._cycle_position_id = str(orphan)
        # Hedge it on the next strategy pass
        self.state.last_strategy_ts = 0.0
        self.alerts.send_alert("Position adopted", f"Untracked position {orphan} found on chain.")
        return orphan

    def _enter_safe_mode(self, block: int) -> CycleResult:
        logger.error("[System] Panic exit triggered. Entering SAFE MODE.")
        self.state.mode = BotMode.SAFE_MODE
        self.state.exit_code = 1
        report = self.hedge.last_panic_report
        errors = list(report.errors) if isinstance(report, PanicReport) else []
        body = "Entered SAFE MODE after panic exit."
        if errors:
            body += "\nUnresolved panic steps:\n" + "\n".join(f"- {e}" for e in errors)
        self.alerts.send_alert("Bot Stopped", body)
        return CycleResult(block, Branch.PANIC, {"errors": errors})

    def _maybe_send_status(self, now: float) -> None:
        cfg = self.config
        if now - self.state.last_status_ts < cfg.DAILY_STATUS_INTERVAL_SECONDS:
            return
        self.state.last_status_ts = now
        try:
            record = self.ledger.load()
            body = f"Mode: {self.state.mode.value}\nPosition: {record.position_id}\n"
            if self.portfolio is not None:
                pool = self.state_reader.get_pool_snapshot()
                position = (
                    self.state_reader.get_position(record.token_id)
                    if record.has_position
                    else None
                )
                valuation = self.portfolio.value(pool, position)
                body += f"Portfolio value: ${valuation.total_usd:.2f} at {pool.price:.2f}\n"
            if cfg.HEDGE_ENABLED:
                hedge_state = self.hedge.read_state()
                body += (
                    f"Health factor: {hedge_state.health_factor:.3f}\n"
                    f"WETH debt: {hedge_state.current_debt} wei\n"
                )
            self.alerts.send_alert("Daily status", body)
        except Exception as e:
            logger.error("[Status] Failed to build daily status: %s", e)

    def _log_decision(self, result: CycleResult) -> None:
        logger.debug(
            "DECISION: block=%d branch=%s mode=%s detail=%s",
            result.block,
            result.branch.value,
            self.state.mode.value,
            result.detail,
        )
        if self.decisions_file is None:
            return
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "block": result.block,
            "branch": result.branch.value,
            "mode": self.state.mode.value,
            "tick": self._cycle_tick,
            "position_id": self._cycle_position_id,
            "detail": result.detail,
        }
        self.decisions_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.decisions_file, "a") as f:
            f.write(json.dumps(record, default=str) + "\n")
