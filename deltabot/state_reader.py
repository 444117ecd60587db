"""
StateReader: reads Uniswap V3 pool, position and wallet state.
"""

import logging
from dataclasses import dataclass

from web3.exceptions import ContractLogicError

from deltabot import v3_math
from deltabot.chain import load_abi

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolSnapshot:
    sqrt_price_x96: int
    tick: int
    liquidity: int
    tick_spacing: int
    token0: str
    token1: str
    price: float  # WETH priced in USDC

    def volatile_is_token0(self, weth_address: str) -> bool:
        return self.token0.lower() == weth_address.lower()


@dataclass(frozen=True)
class PositionInfo:
    token_id: int
    token0: str
    token1: str
    fee: int
    tick_lower: int
    tick_upper: int
    liquidity: int
    tokens_owed0: int
    tokens_owed1: int

    def contains(self, tick: int) -> bool:
        return self.tick_lower <= tick <= self.tick_upper


@dataclass(frozen=True)
class WalletBalances:
    weth: int
    usdc: int


class StateReader:
    """Reads pool and position state through a ChainClient."""

    def __init__(self, chain, config):
        self.chain = chain
        self.config = config
        self.pool_address = config.compute_pool_address()
        self._pool_constants: tuple[int, str, str] | None = None

    # Contracts are re-resolved per call so they follow reconnects.

    @property
    def pool(self):
        return self.chain.contract(self.pool_address, load_abi("pool.json"))

    @property
    def position_manager(self):
        return self.chain.contract(self.config.POSITION_MANAGER, load_abi("position_manager.json"))

    def erc20(self, address: str):
        return self.chain.contract(address, load_abi("erc20.json"))

    # ------------------------------------------------------------------
    # Pool
    # ------------------------------------------------------------------

    def _constants(self) -> tuple[int, str, str]:
        """tickSpacing/token0/token1 never change for a deployed pool."""
        if self._pool_constants is None:
            spacing = self.chain.read("tickSpacing", lambda: self.pool.functions.tickSpacing().call())
            token0 = self.chain.read("token0", lambda: self.pool.functions.token0().call())
            token1 = self.chain.read("token1", lambda: self.pool.functions.token1().call())
            self._pool_constants = (int(spacing), token0, token1)
        return self._pool_constants

    def price_from_sqrt(self, sqrt_price_x96: int, token0: str) -> float:
        cfg = self.config
        if token0.lower() == cfg.WETH_ADDRESS.lower():
            return v3_math.sqrt_price_x96_to_price(
                sqrt_price_x96, cfg.WETH_DECIMALS, cfg.USDC_DECIMALS
            )
        usdc_in_weth = v3_math.sqrt_price_x96_to_price(
            sqrt_price_x96, cfg.USDC_DECIMALS, cfg.WETH_DECIMALS
        )
        return 1.0 / usdc_in_weth if usdc_in_weth > 0 else 0.0

    def get_pool_snapshot(self) -> PoolSnapshot:
        """Fresh slot0 + liquidity. Never cached: every swap moves it."""
        tick_spacing, token0, token1 = self._constants()
        slot0 = self.chain.read("slot0", lambda: self.pool.functions.slot0().call())
        liquidity = self.chain.read("liquidity", lambda: self.pool.functions.liquidity().call())
        return PoolSnapshot(
            sqrt_price_x96=int(slot0[0]),
            tick=int(slot0[1]),
            liquidity=int(liquidity),
            tick_spacing=tick_spacing,
            token0=token0,
            token1=token1,
            price=self.price_from_sqrt(int(slot0[0]), token0),
        )

    def get_twap_tick(self, window_seconds: int) -> int:
        """Arithmetic mean tick over the trailing window (pool oracle)."""
        tick_cumulatives, _ = self.chain.read(
            "observe", lambda: self.pool.functions.observe([window_seconds, 0]).call()
        )
        delta = int(tick_cumulatives[1]) - int(tick_cumulatives[0])
        # floor division rounds toward -inf, matching OracleLibrary.consult
        return delta // window_seconds

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def get_position(self, token_id: int) -> PositionInfo | None:
        """Position data, or None when the handle no longer exists (burned)."""
        try:
            raw = self.chain.read(
                f"positions({token_id})",
                lambda: self.position_manager.functions.positions(token_id).call(),
            )
        except ContractLogicError as e:
            logger.warning("Position %s not readable (treating as closed): %s", token_id, e)
            return None
        return PositionInfo(
            token_id=int(token_id),
            token0=raw[2],
            token1=raw[3],
            fee=int(raw[4]),
            tick_lower=int(raw[5]),
            tick_upper=int(raw[6]),
            liquidity=int(raw[7]),
            tokens_owed0=int(raw[10]),
            tokens_owed1=int(raw[11]),
        )

    def position_amounts(self, position: PositionInfo, pool: PoolSnapshot) -> WalletBalances:
        """Underlying WETH/USDC of a position at the current pool price."""
        amount0, amount1 = v3_math.position_amounts(
            pool.sqrt_price_x96, position.tick_lower, position.tick_upper, position.liquidity
        )
        if pool.volatile_is_token0(self.config.WETH_ADDRESS):
            return WalletBalances(weth=amount0, usdc=amount1)
        return WalletBalances(weth=amount1, usdc=amount0)

    def find_orphan_position(self) -> int | None:
        """Newest wallet-owned position on our pool with nonzero liquidity."""
        owner = self.chain.address
        count = self.chain.read(
            "npm.balanceOf", lambda: self.position_manager.functions.balanceOf(owner).call()
        )
        token0, token1 = self.config.sort_tokens()
        newest = None
        for index in range(int(count)):
            token_id = self.chain.read(
                "tokenOfOwnerByIndex",
                lambda i=index: self.position_manager.functions.tokenOfOwnerByIndex(owner, i).call(),
            )
            position = self.get_position(int(token_id))
            if position is None or position.liquidity <= 0:
                continue
            if (
                position.token0.lower() != token0.lower()
                or position.token1.lower() != token1.lower()
                or position.fee != self.config.POOL_FEE
            ):
                continue
            if newest is None or position.token_id > newest:
                newest = position.token_id
        return newest

    # ------------------------------------------------------------------
    # Wallet
    # ------------------------------------------------------------------

    def token_balance(self, address: str) -> int:
        owner = self.chain.address
        return int(
            self.chain.read(
                f"balanceOf({address[:10]})",
                lambda: self.erc20(address).functions.balanceOf(owner).call(),
            )
        )

    def get_balances(self) -> WalletBalances:
        return WalletBalances(
            weth=self.token_balance(self.config.WETH_ADDRESS),
            usdc=self.token_balance(self.config.USDC_ADDRESS),
        )
