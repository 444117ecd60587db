"""deltabot: delta-neutral concentrated-liquidity agent (Uniswap V3 LP + Aave V3 short)."""

__version__ = "0.1.0"
