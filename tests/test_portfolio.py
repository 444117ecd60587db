"""Tests for mark-to-market valuation and the circuit-breaker liquidation."""

import pytest

from deltabot.ledger import NO_POSITION
from deltabot.portfolio import PortfolioGuard, PortfolioValuation
from deltabot.state_reader import WalletBalances

from conftest import USDC, WETH, make_pool, make_position


@pytest.fixture
def guard(recorder, ledger_spy, cfg):
    return PortfolioGuard(
        recorder.state_reader,
        recorder.lp_manager,
        recorder.hedge,
        ledger_spy,
        recorder.alerts,
        cfg,
    )


def test_value_sums_wallet_position_and_fees(guard, recorder):
    pool = make_pool(price=2000.0)
    recorder.state_reader.get_balances.return_value = WalletBalances(weth=10**18, usdc=100 * 10**6)
    recorder.state_reader.position_amounts.return_value = WalletBalances(
        weth=5 * 10**17, usdc=1000 * 10**6
    )
    # token0 is WETH: (fees0, fees1) = (WETH, USDC)
    recorder.lp_manager.simulate_collect.return_value = (10**16, 5 * 10**6)

    valuation = guard.value(pool, make_position())

    assert valuation.wallet_usd == pytest.approx(2100.0)
    assert valuation.position_usd == pytest.approx(2000.0)
    assert valuation.fees_usd == pytest.approx(25.0)
    assert valuation.total_usd == pytest.approx(4125.0)


def test_value_without_position_is_wallet_only(guard, recorder):
    recorder.state_reader.get_balances.return_value = WalletBalances(weth=0, usdc=700 * 10**6)
    valuation = guard.value(make_pool(), None)
    assert valuation.total_usd == pytest.approx(700.0)
    recorder.lp_manager.simulate_collect.assert_not_called()


def test_breach_is_strictly_below_floor(guard, cfg):
    at_floor = PortfolioValuation(cfg.CIRCUIT_BREAKER_FLOOR_USD, 0.0, 0.0, 3000.0)
    below = PortfolioValuation(cfg.CIRCUIT_BREAKER_FLOOR_USD - 0.01, 0.0, 0.0, 3000.0)
    assert not guard.breached(at_floor)
    assert guard.breached(below)


def test_trip_exits_repays_sells_down_and_latches(guard, recorder, ledger, cfg):
    ledger.save(position_id="7")
    pool = make_pool(price=2000.0)
    # after exit and repay: 0.2 WETH ($400) + $50 USDC; target 80% stable
    recorder.state_reader.get_balances.return_value = WalletBalances(
        weth=2 * 10**17, usdc=50 * 10**6
    )
    valuation = PortfolioValuation(450.0, 0.0, 0.0, 2000.0)

    guard.trip("7", pool, valuation)

    names = [c[0] for c in recorder.mock_calls]
    exit_at = names.index("lp_manager.atomic_exit")
    repay_at = names.index("hedge.close_all_debt")
    sell_at = names.index("lp_manager.swap_exact_input")
    assert exit_at < repay_at < sell_at

    token_in, token_out, amount_in, _ = recorder.lp_manager.swap_exact_input.call_args.args
    assert (token_in, token_out) == (WETH, USDC)
    # keep 20% of $450 = $90 in WETH, sell $310 worth
    assert amount_in == pytest.approx(155 * 10**15, rel=1e-6)

    record = ledger.load()
    assert record.position_id == NO_POSITION
    assert record.circuit_breaker is True
    assert record.circuit_breaker_exit_price == 2000.0
    recorder.alerts.send_alert.assert_called_once()


def test_trip_without_excess_weth_does_not_swap(guard, recorder, ledger):
    recorder.state_reader.get_balances.return_value = WalletBalances(weth=0, usdc=400 * 10**6)
    guard.trip(NO_POSITION, make_pool(), PortfolioValuation(400.0, 0.0, 0.0, 3000.0))
    recorder.lp_manager.atomic_exit.assert_not_called()
    recorder.lp_manager.swap_exact_input.assert_not_called()
    assert ledger.load().circuit_breaker is True
