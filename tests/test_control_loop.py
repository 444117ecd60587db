"""Scenario tests for the block-driven control loop."""

import json
from dataclasses import replace
from unittest.mock import Mock, patch

import pytest

from deltabot.control_loop import BotMode, Branch, ControlLoop, LoopState
from deltabot.hedge import HedgeAction, HedgeManager
from deltabot.ledger import NO_POSITION
from deltabot.portfolio import PortfolioValuation
from deltabot.range_calculator import TickRange
from deltabot.rebalancer import RebalanceOutcome
from deltabot.state_reader import WalletBalances

from conftest import BASE_TICK, WALLET, make_pool, make_position

USDC_BALANCE = 200 * 10**6


class Clock:
    def __init__(self, start=1_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def collaborators(recorder):
    recorder.state_reader.get_pool_snapshot.return_value = make_pool()
    recorder.state_reader.get_position.return_value = make_position()
    recorder.state_reader.position_amounts.return_value = WalletBalances(
        weth=10**18, usdc=1500 * 10**6
    )
    recorder.state_reader.get_balances.return_value = WalletBalances(weth=0, usdc=USDC_BALANCE)
    recorder.state_reader.find_orphan_position.return_value = None
    recorder.hedge.check_health.return_value = HedgeAction.NOOP
    recorder.hedge.adjust_hedge.return_value = HedgeAction.NOOP
    recorder.rebalancer.execute_full_rebalance.return_value = RebalanceOutcome.minted(
        43, TickRange(BASE_TICK - 500, BASE_TICK + 500), 3000.0
    )
    recorder.portfolio.breached.return_value = False
    recorder.portfolio.value.return_value = PortfolioValuation(
        wallet_usd=200.0, position_usd=4500.0, fees_usd=1.0, price=3000.0
    )
    return recorder


@pytest.fixture
def make_loop(collaborators, ledger, cfg, clock, tmp_path):
    def _make(hedge=None, config=None, **kwargs):
        return ControlLoop(
            collaborators.state_reader,
            collaborators.rebalancer,
            hedge or collaborators.hedge,
            ledger,
            collaborators.alerts,
            config or cfg,
            portfolio=collaborators.portfolio,
            clock=clock,
            decisions_file=str(tmp_path / "decisions" / "decisions.jsonl"),
            **kwargs,
        )

    return _make


def _with_position(ledger, position_id="7"):
    ledger.save(position_id=position_id, last_known_stable_balance=USDC_BALANCE)


# ---------------------------------------------------------------------------
# Steady state
# ---------------------------------------------------------------------------


def test_in_range_only_adjusts_hedge(make_loop, collaborators, ledger):
    _with_position(ledger)
    loop = make_loop()

    result = loop.on_block(1)

    assert result.branch is Branch.HEDGE_ADJUST
    collaborators.hedge.adjust_hedge.assert_called_once_with(10**18, "7")
    collaborators.rebalancer.execute_full_rebalance.assert_not_called()
    assert ledger.load().position_id == "7"


def test_out_of_range_rebalances_existing_position(make_loop, collaborators, ledger):
    _with_position(ledger)
    pool = make_pool(tick=BASE_TICK + 2000)
    collaborators.state_reader.get_pool_snapshot.return_value = pool
    loop = make_loop()

    result = loop.on_block(1)

    assert result.branch is Branch.REBALANCE
    collaborators.rebalancer.execute_full_rebalance.assert_called_once_with(pool, "7")
    collaborators.hedge.adjust_hedge.assert_not_called()
    assert result.detail["position_id"] == "43"


def test_strategy_runs_at_most_once_per_interval(make_loop, collaborators, ledger, clock):
    _with_position(ledger)
    loop = make_loop()

    assert loop.on_block(1).branch is Branch.HEDGE_ADJUST
    clock.advance(10)
    assert loop.on_block(2).branch is Branch.STRATEGY_NOT_DUE
    clock.advance(60)
    assert loop.on_block(3).branch is Branch.HEDGE_ADJUST

    # health is checked on every dispatched block
    assert collaborators.hedge.check_health.call_count == 3


def test_hedge_trade_refreshes_deposit_baseline(make_loop, collaborators, ledger, clock):
    _with_position(ledger)
    collaborators.hedge.adjust_hedge.return_value = HedgeAction.INCREASED
    # short sale proceeds land in the wallet after the hedge adjusts
    collaborators.state_reader.get_balances.side_effect = [
        WalletBalances(weth=0, usdc=USDC_BALANCE),
        WalletBalances(weth=0, usdc=USDC_BALANCE + 900 * 10**6),
        WalletBalances(weth=0, usdc=USDC_BALANCE + 900 * 10**6),
    ]
    loop = make_loop()

    assert loop.on_block(1).branch is Branch.HEDGE_ADJUST
    assert ledger.load().last_known_stable_balance == USDC_BALANCE + 900 * 10**6

    clock.advance(120)
    collaborators.hedge.adjust_hedge.return_value = HedgeAction.NOOP
    assert loop.on_block(2).branch is Branch.HEDGE_ADJUST
    collaborators.rebalancer.execute_full_rebalance.assert_not_called()


# ---------------------------------------------------------------------------
# Reentrancy and throttling
# ---------------------------------------------------------------------------


def test_block_arriving_mid_cycle_is_dropped(make_loop, collaborators, ledger):
    _with_position(ledger)
    loop = make_loop()
    loop._lock.acquire()
    try:
        assert loop.on_block(1).branch is Branch.SKIPPED_BUSY
    finally:
        loop._lock.release()
    collaborators.hedge.check_health.assert_not_called()


def test_blocks_inside_min_interval_are_throttled(make_loop, collaborators, ledger, clock):
    _with_position(ledger)
    loop = make_loop()
    loop.on_block(1)
    clock.advance(1)
    assert loop.on_block(2).branch is Branch.THROTTLED
    assert collaborators.hedge.check_health.call_count == 1


def test_throttled_block_releases_processing_flag(make_loop, ledger, clock):
    _with_position(ledger)
    loop = make_loop()
    loop.on_block(1)
    loop.on_block(2)
    assert loop.state.processing is False
    clock.advance(5)
    assert loop.on_block(3).branch is not Branch.SKIPPED_BUSY


def test_cycle_exception_is_contained(make_loop, collaborators, ledger, clock):
    _with_position(ledger)
    collaborators.state_reader.get_pool_snapshot.side_effect = RuntimeError("rpc exploded")
    loop = make_loop()

    result = loop.on_block(1)
    assert result.branch is Branch.FAILED
    assert "rpc exploded" in result.detail["error"]
    assert loop.state.processing is False

    collaborators.state_reader.get_pool_snapshot.side_effect = None
    clock.advance(120)
    assert loop.on_block(2).branch is Branch.HEDGE_ADJUST


# ---------------------------------------------------------------------------
# Startup paths
# ---------------------------------------------------------------------------


def test_cold_start_with_funds_initializes(make_loop, collaborators, ledger):
    collaborators.state_reader.get_balances.return_value = WalletBalances(
        weth=0, usdc=1000 * 10**6
    )
    loop = make_loop()

    result = loop.on_block(1)

    assert result.branch is Branch.INITIALIZE
    collaborators.rebalancer.execute_full_rebalance.assert_called_once()
    assert collaborators.rebalancer.execute_full_rebalance.call_args.args[1] == NO_POSITION


def test_no_position_without_new_funds_waits(make_loop, collaborators, ledger):
    collaborators.state_reader.get_balances.return_value = WalletBalances(weth=0, usdc=10**6)
    loop = make_loop()

    assert loop.on_block(1).branch is Branch.WAIT_FOR_FUNDS
    collaborators.rebalancer.execute_full_rebalance.assert_not_called()
    assert ledger.load().last_known_stable_balance == 10**6


def test_no_position_with_auto_invest_off_initializes(make_loop, collaborators, config_factory, tmp_path):
    loop = make_loop(config=config_factory(AUTO_INVEST_NEW_FUNDS=False))
    assert loop.on_block(1).branch is Branch.INITIALIZE


def test_deposit_forces_rebalance_even_in_range(make_loop, collaborators, ledger):
    _with_position(ledger)
    collaborators.state_reader.get_balances.return_value = WalletBalances(
        weth=0, usdc=USDC_BALANCE + 50 * 10**6
    )
    loop = make_loop()

    result = loop.on_block(1)

    assert result.branch is Branch.FORCED_REBALANCE
    collaborators.rebalancer.execute_full_rebalance.assert_called_once()
    collaborators.hedge.adjust_hedge.assert_not_called()


def test_deposit_bypasses_strategy_interval(make_loop, collaborators, ledger, clock):
    _with_position(ledger)
    loop = make_loop()
    loop.on_block(1)

    collaborators.state_reader.get_balances.return_value = WalletBalances(
        weth=0, usdc=USDC_BALANCE + 50 * 10**6
    )
    clock.advance(5)
    assert loop.on_block(2).branch is Branch.FORCED_REBALANCE


def test_closed_position_is_reconciled_and_orphan_adopted(make_loop, collaborators, ledger):
    _with_position(ledger)
    collaborators.state_reader.get_position.return_value = None
    collaborators.state_reader.find_orphan_position.return_value = 55
    loop = make_loop()

    result = loop.on_block(1)

    assert result.branch is Branch.POSITION_CLOSED
    assert ledger.load().position_id == "55"
    collaborators.alerts.send_alert.assert_called_once()


def test_zero_liquidity_position_counts_as_closed(make_loop, collaborators, ledger):
    _with_position(ledger)
    collaborators.state_reader.get_position.return_value = make_position(liquidity=0)
    loop = make_loop()

    assert loop.on_block(1).branch is Branch.POSITION_CLOSED
    assert ledger.load().position_id == NO_POSITION


def test_untracked_position_on_chain_is_adopted(make_loop, collaborators, ledger, clock):
    # a mint whose receipt was lost leaves the ledger at "none"
    ledger.save(last_known_stable_balance=USDC_BALANCE)
    collaborators.state_reader.find_orphan_position.return_value = 99
    loop = make_loop()

    result = loop.on_block(1)

    assert result.branch is Branch.POSITION_ADOPTED
    assert ledger.load().position_id == "99"
    collaborators.rebalancer.execute_full_rebalance.assert_not_called()

    clock.advance(5)
    assert loop.on_block(2).branch is Branch.HEDGE_ADJUST
    collaborators.hedge.adjust_hedge.assert_called_once_with(10**18, "99")


def test_untracked_position_scan_runs_once_per_interval(make_loop, collaborators, ledger, clock):
    ledger.save(last_known_stable_balance=USDC_BALANCE)
    loop = make_loop()

    assert loop.on_block(1).branch is Branch.WAIT_FOR_FUNDS
    clock.advance(10)
    assert loop.on_block(2).branch is Branch.WAIT_FOR_FUNDS
    assert collaborators.state_reader.find_orphan_position.call_count == 1

    clock.advance(60)
    loop.on_block(3)
    assert collaborators.state_reader.find_orphan_position.call_count == 2


# ---------------------------------------------------------------------------
# Panic / SAFE_MODE
# ---------------------------------------------------------------------------


def test_critical_health_factor_panics_and_signals_exit(
    make_loop, collaborators, ledger, cfg, clock
):
    _with_position(ledger)
    recorder = collaborators
    recorder.chain.address = WALLET
    recorder.state_reader.token_balance.return_value = 10**20
    hedge = HedgeManager(
        recorder.chain, recorder.lp_manager, recorder.state_reader, ledger, recorder.alerts, cfg
    )
    loop = make_loop(hedge=hedge)

    with patch.object(hedge, "get_health_factor", return_value=0.95), patch.object(
        hedge, "get_current_debt", return_value=4 * 10**17
    ):
        result = loop.on_block(1)

    assert result.branch is Branch.PANIC
    assert loop.state.mode is BotMode.SAFE_MODE
    assert loop.state.exit_code == 1
    recorder.lp_manager.atomic_exit.assert_called_once_with(7)
    assert ledger.load().position_id == NO_POSITION
    repay = [c for c in recorder.mock_calls if c[0].endswith("functions.repay")]
    assert len(repay) == 1
    recorder.rebalancer.execute_full_rebalance.assert_not_called()

    clock.advance(600)
    assert loop.on_block(2).branch is Branch.SAFE_MODE_HALT
    assert recorder.lp_manager.atomic_exit.call_count == 1


def test_failed_panic_steps_are_listed_in_stop_alert(make_loop, collaborators, ledger, cfg):
    _with_position(ledger)
    recorder = collaborators
    recorder.chain.address = WALLET
    recorder.lp_manager.atomic_exit.side_effect = RuntimeError("exit reverted")
    hedge = HedgeManager(
        recorder.chain, recorder.lp_manager, recorder.state_reader, ledger, recorder.alerts, cfg
    )
    loop = make_loop(hedge=hedge)

    with patch.object(hedge, "get_health_factor", return_value=0.5), patch.object(
        hedge, "get_current_debt", return_value=0
    ):
        result = loop.on_block(1)

    assert result.branch is Branch.PANIC
    assert result.detail["errors"] == ["close LP: exit reverted"]
    subject, body = recorder.alerts.send_alert.call_args.args
    assert subject == "Bot Stopped"
    assert "close LP: exit reverted" in body


def test_safe_mode_ignores_blocks(make_loop, collaborators):
    loop = make_loop(state=LoopState(mode=BotMode.SAFE_MODE, exit_code=1))
    for block in (99, 100, 101):
        assert loop.on_block(block).branch is Branch.SAFE_MODE_HALT
    assert collaborators.state_reader.mock_calls == []
    collaborators.hedge.check_health.assert_not_called()


def test_hedge_disabled_skips_health_check(make_loop, collaborators, ledger, config_factory):
    _with_position(ledger)
    loop = make_loop(config=config_factory(HEDGE_ENABLED=False))
    result = loop.on_block(1)
    collaborators.hedge.check_health.assert_not_called()
    collaborators.hedge.adjust_hedge.assert_not_called()
    assert result.branch is Branch.HEDGE_ADJUST


# ---------------------------------------------------------------------------
# Standby
# ---------------------------------------------------------------------------


def test_profit_secured_enters_standby_then_exits_on_pullback(
    make_loop, collaborators, ledger, clock
):
    _with_position(ledger)
    collaborators.state_reader.get_pool_snapshot.return_value = make_pool(tick=BASE_TICK + 2000)
    def secure_profit(pool, position_id):
        ledger.save(position_id=NO_POSITION)
        return RebalanceOutcome.profit_secured(3000.0, "all USDC")

    collaborators.rebalancer.execute_full_rebalance.side_effect = secure_profit
    loop = make_loop()

    assert loop.on_block(1).branch is Branch.REBALANCE
    assert loop.state.mode is BotMode.STANDBY
    record = ledger.load()
    assert record.standby is True
    assert record.standby_reference_price == 3000.0

    # price holds above the 5% pullback trigger
    pool = make_pool()
    collaborators.state_reader.get_pool_snapshot.return_value = replace(pool, price=2900.0)
    clock.advance(10)
    assert loop.on_block(2).branch is Branch.STANDBY_WAIT
    assert collaborators.rebalancer.execute_full_rebalance.call_count == 1

    collaborators.rebalancer.execute_full_rebalance.side_effect = None
    collaborators.rebalancer.execute_full_rebalance.return_value = RebalanceOutcome.minted(
        44, TickRange(BASE_TICK - 500, BASE_TICK + 500), 2800.0
    )
    collaborators.state_reader.get_pool_snapshot.return_value = replace(pool, price=2800.0)
    clock.advance(10)
    result = loop.on_block(3)

    assert result.branch is Branch.STANDBY_EXIT
    assert loop.state.mode is BotMode.ACTIVE
    assert ledger.load().standby is False
    assert collaborators.rebalancer.execute_full_rebalance.call_args.args[1] == NO_POSITION


def test_standby_survives_restart(make_loop, collaborators, ledger):
    ledger.save(standby=True, standby_reference_price=3000.0)
    collaborators.state_reader.get_pool_snapshot.return_value = replace(make_pool(), price=3100.0)
    loop = make_loop()

    assert loop.on_block(1).branch is Branch.STANDBY_WAIT
    assert loop.state.mode is BotMode.STANDBY


def test_aborted_rebalance_keeps_mode(make_loop, collaborators, ledger):
    _with_position(ledger)
    collaborators.state_reader.get_pool_snapshot.return_value = make_pool(tick=BASE_TICK + 2000)
    collaborators.rebalancer.execute_full_rebalance.return_value = RebalanceOutcome.aborted(
        "market data unavailable"
    )
    loop = make_loop()

    result = loop.on_block(1)
    assert result.detail["reason"] == "market data unavailable"
    assert loop.state.mode is BotMode.ACTIVE
    assert ledger.load().position_id == "7"


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


def test_portfolio_below_floor_trips_breaker(make_loop, collaborators, ledger):
    _with_position(ledger)
    collaborators.portfolio.breached.return_value = True
    loop = make_loop()

    result = loop.on_block(1)

    assert result.branch is Branch.CIRCUIT_BREAKER_TRIP
    collaborators.portfolio.trip.assert_called_once()
    assert collaborators.portfolio.trip.call_args.args[0] == "7"
    assert loop.state.mode is BotMode.CIRCUIT_BROKEN
    collaborators.hedge.adjust_hedge.assert_not_called()


def test_breaker_flag_halts_until_operator_clears_it(make_loop, collaborators, ledger, clock):
    ledger.save(circuit_breaker=True, circuit_breaker_exit_price=2500.0)
    loop = make_loop()

    assert loop.on_block(1).branch is Branch.CIRCUIT_BROKEN_HALT
    assert loop.state.mode is BotMode.CIRCUIT_BROKEN
    collaborators.rebalancer.execute_full_rebalance.assert_not_called()

    ledger.save(circuit_breaker=False)
    collaborators.state_reader.get_balances.return_value = WalletBalances(
        weth=0, usdc=1000 * 10**6
    )
    clock.advance(10)
    assert loop.on_block(2).branch is Branch.INITIALIZE
    assert loop.state.mode is BotMode.ACTIVE


# ---------------------------------------------------------------------------
# Decision log and status
# ---------------------------------------------------------------------------


def test_each_dispatched_cycle_is_logged_as_json(make_loop, ledger, tmp_path):
    _with_position(ledger)
    loop = make_loop()
    loop.on_block(12345)

    lines = (tmp_path / "decisions" / "decisions.jsonl").read_text().splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["block"] == 12345
    assert entry["branch"] == "hedge_adjust"
    assert entry["mode"] == "active"
    assert entry["tick"] == BASE_TICK
    assert entry["position_id"] == "7"


def test_daily_status_alert_is_sent_once_per_interval(
    make_loop, collaborators, ledger, clock, config_factory
):
    _with_position(ledger)
    collaborators.hedge.read_state.return_value = Mock(health_factor=2.1, current_debt=10**17)
    loop = make_loop(config=config_factory(DAILY_STATUS_INTERVAL_SECONDS=3600))
    loop.state.last_status_ts = clock()

    loop.on_block(1)
    collaborators.alerts.send_alert.assert_not_called()

    clock.advance(3600)
    loop.on_block(2)
    collaborators.alerts.send_alert.assert_called_once()
    subject, body = collaborators.alerts.send_alert.call_args.args
    assert subject == "Daily status"
    assert "Portfolio value" in body
    assert "Health factor: 2.100" in body
