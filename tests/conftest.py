"""
Shared fixtures for deltabot tests.

Nothing here touches a network: chain, market data and alerts are mocks.
Collaborator mocks hang off one parent MagicMock (`recorder`) so tests can
assert on the relative order of calls across components.
"""

from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from deltabot import config as config_module
from deltabot import v3_math
from deltabot.ledger import PositionLedger
from deltabot.state_reader import PoolSnapshot, PositionInfo, WalletBalances

WETH = config_module.WETH_ADDRESS
USDC = config_module.USDC_ADDRESS
WALLET = "0x" + "11" * 20

# ~3000 USDC per WETH with WETH as token0 (Arbitrum ordering)
BASE_TICK = -196250


def build_config(**overrides):
    values = {
        name: getattr(config_module, name)
        for name in dir(config_module)
        if name.isupper()
    }
    values.update(
        READ_RETRY_BASE_DELAY=0.0,
        READ_RETRY_MAX_DELAY=0.0,
        RECONNECT_DELAY=0.0,
        ALERTS_ENABLED=False,
        HEDGE_ENABLED=True,
        AUTO_INVEST_NEW_FUNDS=True,
        CIRCUIT_BREAKER_ENABLED=True,
        AAVE_MIN_HEALTH_FACTOR=1.0,
        AAVE_TARGET_HEALTH_FACTOR=1.5,
        SWAP_SLIPPAGE_BPS=0,
        SWAP_FRACTION_TO_VOLATILE=0.5,
        SWAP_FRACTION_TO_STABLE=0.5,
        MIN_INTERVAL_SECONDS=3.0,
        STRATEGY_INTERVAL_SECONDS=60.0,
        DAILY_STATUS_INTERVAL_SECONDS=86_400,
        POOL_ADDRESS="0x" + "22" * 20,
    )
    values.update(overrides)
    values["sort_tokens"] = config_module.sort_tokens
    values["compute_pool_address"] = lambda: values["POOL_ADDRESS"]
    return SimpleNamespace(**values)


@pytest.fixture
def config_factory():
    return build_config


@pytest.fixture
def cfg(tmp_path):
    return build_config(STATE_FILE=str(tmp_path / "bot_state.json"))


@pytest.fixture
def ledger(tmp_path):
    return PositionLedger(tmp_path / "bot_state.json")


@pytest.fixture
def recorder():
    """Parent mock; children record into recorder.mock_calls in call order."""
    return MagicMock(name="recorder")


@pytest.fixture
def ledger_spy(recorder, ledger):
    """Real ledger whose load/save calls also land in recorder.mock_calls."""
    spy = MagicMock(wraps=ledger)
    recorder.attach_mock(spy, "ledger")
    return spy


def make_pool(tick=BASE_TICK, tick_spacing=10, **overrides) -> PoolSnapshot:
    sqrt_price = v3_math.tick_to_sqrt_price_x96(tick)
    pool = PoolSnapshot(
        sqrt_price_x96=sqrt_price,
        tick=tick,
        liquidity=10**20,
        tick_spacing=tick_spacing,
        token0=WETH,
        token1=USDC,
        price=v3_math.sqrt_price_x96_to_price(sqrt_price, 18, 6),
    )
    return replace(pool, **overrides) if overrides else pool


def make_position(token_id=7, tick_lower=BASE_TICK - 500, tick_upper=BASE_TICK + 500, liquidity=10**15):
    return PositionInfo(
        token_id=token_id,
        token0=WETH,
        token1=USDC,
        fee=500,
        tick_lower=tick_lower,
        tick_upper=tick_upper,
        liquidity=liquidity,
        tokens_owed0=0,
        tokens_owed1=0,
    )


@pytest.fixture
def pool_factory():
    return make_pool


@pytest.fixture
def position_factory():
    return make_position


@pytest.fixture
def balances():
    return WalletBalances
