import os
from pathlib import Path

from dotenv import load_dotenv

# Load deltabot/.env into os.environ BEFORE reading any env-backed settings.
# override=False means Docker/shell env vars take precedence over .env.
load_dotenv(Path(__file__).resolve().parent / ".env", override=False)


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


# Arbitrum One (chain ID 42161)
RPC_URLS = [u.strip() for u in os.environ.get("RPC_URL", "").split(",") if u.strip()]
PRIVATE_KEY = os.environ.get("PRIVATE_KEY", "")
EXPECTED_CHAIN_ID = _env_int("EXPECTED_CHAIN_ID", 42161)

# Uniswap V3 contracts
V3_FACTORY = os.environ.get("V3_FACTORY", "0x1F98431c8aD98523631AE4a59f267346ea31F984")
POSITION_MANAGER = os.environ.get(
    "POSITION_MANAGER", "0xC36442b4a4522E871399CD717aBDD847Ab11FE88"
)
SWAP_ROUTER = os.environ.get("SWAP_ROUTER", "0xE592427A0AEce92De3Edee1F18E0157C05861564")
POOL_INIT_CODE_HASH = "0xe34f199b19b2b4f47f68442619d555527d244f78a3297ea89325f843f87b8b54"

# Aave V3 lending market
AAVE_POOL = os.environ.get("AAVE_POOL", "0x794a61358D6845594F94dc1DB02A252b5b4814aD")
WETH_DEBT_TOKEN = os.environ.get(
    "WETH_DEBT_TOKEN", "0x0c84331e39d6658Cd6e6b9ba04736cC4c4734351"
)
AAVE_RATE_MODE_VARIABLE = 2

# Tokens: WETH is the volatile asset, USDC the stable one
WETH_ADDRESS = os.environ.get("WETH_ADDRESS", "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1")
USDC_ADDRESS = os.environ.get("USDC_ADDRESS", "0xaf88d065e77c8cC2239327C5EDb3A432268e5831")
WETH_DECIMALS = 18
USDC_DECIMALS = 6

# Pool params: WETH/USDC 0.05% pool
POOL_FEE = _env_int("POOL_FEE", 500)
POOL_ADDRESS = os.environ.get("POOL_ADDRESS", "")  # derived via CREATE2 when empty

# Chain client
READ_RETRY_ATTEMPTS = _env_int("READ_RETRY_ATTEMPTS", 4)
READ_RETRY_BASE_DELAY = _env_float("READ_RETRY_BASE_DELAY", 0.5)
READ_RETRY_MAX_DELAY = _env_float("READ_RETRY_MAX_DELAY", 8.0)
TX_TIMEOUT_SECONDS = _env_int("TX_TIMEOUT_SECONDS", 120)
TX_DEADLINE_SECONDS = _env_int("TX_DEADLINE_SECONDS", 300)
TX_GAS_LIMIT = _env_int("TX_GAS_LIMIT", 1_000_000)
BLOCK_POLL_INTERVAL = _env_float("BLOCK_POLL_INTERVAL", 2.0)
RECONNECT_DELAY = _env_float("RECONNECT_DELAY", 5.0)

# Range calculator
ATR_SAFETY_FACTOR = _env_float("ATR_SAFETY_FACTOR", 4.0)
MIN_RANGE_WIDTH = _env_int("MIN_RANGE_WIDTH", 500)  # ticks, radius
MAX_RANGE_WIDTH = _env_int("MAX_RANGE_WIDTH", 4000)
RSI_LONG_BULL = _env_float("RSI_LONG_BULL", 60.0)
RSI_LONG_BEAR = _env_float("RSI_LONG_BEAR", 40.0)
RSI_SHORT_OVERBOUGHT = _env_float("RSI_SHORT_OVERBOUGHT", 70.0)
RSI_SHORT_OVERSOLD = _env_float("RSI_SHORT_OVERSOLD", 30.0)
SKEW_BULL = 0.6
SKEW_BEAR = 0.4
SKEW_DAMPENED_BULL = 0.55
SKEW_DAMPENED_BEAR = 0.45

# Market data
MARKET_SYMBOL = os.environ.get("MARKET_SYMBOL", "ETHUSDT")
COINBASE_PRODUCT = os.environ.get("COINBASE_PRODUCT", "ETH-USD")
ATR_INTERVAL = os.environ.get("ATR_INTERVAL", "1h")
RSI_SHORT_INTERVAL = os.environ.get("RSI_SHORT_INTERVAL", "15m")
RSI_LONG_INTERVAL = os.environ.get("RSI_LONG_INTERVAL", "4h")
INDICATOR_PERIOD = _env_int("INDICATOR_PERIOD", 14)
MARKET_DATA_TIMEOUT = _env_float("MARKET_DATA_TIMEOUT", 5.0)

# Rebalance executor
TWAP_WINDOW_SECONDS = _env_int("TWAP_WINDOW_SECONDS", 300)
TWAP_MAX_TICK_DEVIATION = _env_int("TWAP_MAX_TICK_DEVIATION", 200)  # ~2%
MINT_SAFETY_BPS = _env_int("MINT_SAFETY_BPS", 9990)  # deploy 99.9% of balances
MINT_SLIPPAGE_BPS = _env_int("MINT_SLIPPAGE_BPS", 50)
REBALANCE_THRESHOLD_USDC = _env_int("REBALANCE_THRESHOLD_USDC", 5 * 10**6)
REBALANCE_THRESHOLD_WETH = _env_int("REBALANCE_THRESHOLD_WETH", 2 * 10**15)
SWAP_FRACTION_TO_VOLATILE = _env_float("SWAP_FRACTION_TO_VOLATILE", 0.5)
SWAP_FRACTION_TO_STABLE = _env_float("SWAP_FRACTION_TO_STABLE", 0.5)
SWAP_SLIPPAGE_BPS = _env_int("SWAP_SLIPPAGE_BPS", 0)  # 0 disables amountOutMinimum
PROFIT_SECURED_WETH_DUST = _env_int("PROFIT_SECURED_WETH_DUST", 10**15)
PROFIT_SECURED_MIN_USDC = _env_int("PROFIT_SECURED_MIN_USDC", 1000 * 10**6)

# Hedge manager
HEDGE_ENABLED = _env_bool("HEDGE_ENABLED", "true")
AAVE_MIN_HEALTH_FACTOR = _env_float("AAVE_MIN_HEALTH_FACTOR", 1.05)
AAVE_TARGET_HEALTH_FACTOR = _env_float("AAVE_TARGET_HEALTH_FACTOR", 1.5)
HEALTH_FACTOR_SENTINEL = 999.0
HEALTH_FACTOR_CEILING = 100.0
MIN_COLLATERAL_BASE = _env_int("MIN_COLLATERAL_BASE", 10**6)  # Aave base units (8 dp USD)
DELTA_NEUTRAL_THRESHOLD = _env_int("DELTA_NEUTRAL_THRESHOLD", 10**16)

# Control loop
MIN_INTERVAL_SECONDS = _env_float("MIN_INTERVAL_SECONDS", 3.0)
STRATEGY_INTERVAL_SECONDS = _env_float("STRATEGY_INTERVAL_SECONDS", 60.0)
SAFE_MODE_LOG_EVERY_BLOCKS = 100
AUTO_INVEST_NEW_FUNDS = _env_bool("AUTO_INVEST_NEW_FUNDS", "true")
AUTO_INVEST_THRESHOLD_USDC = _env_int("AUTO_INVEST_THRESHOLD_USDC", 10 * 10**6)
STANDBY_PULLBACK_FRACTION = _env_float("STANDBY_PULLBACK_FRACTION", 0.05)
CIRCUIT_BREAKER_ENABLED = _env_bool("CIRCUIT_BREAKER_ENABLED", "true")
CIRCUIT_BREAKER_FLOOR_USD = _env_float("CIRCUIT_BREAKER_FLOOR_USD", 500.0)
CIRCUIT_BREAKER_TARGET_STABLE_FRACTION = _env_float(
    "CIRCUIT_BREAKER_TARGET_STABLE_FRACTION", 0.8
)
DAILY_STATUS_INTERVAL_SECONDS = _env_int("DAILY_STATUS_INTERVAL_SECONDS", 86_400)

# Persistence
STATE_FILE = os.environ.get(
    "STATE_FILE", str(Path(__file__).resolve().parent / "bot_state.json")
)
DECISIONS_DIR = os.environ.get(
    "DECISIONS_DIR", str(Path(__file__).resolve().parent / "decisions")
)

# Alerts (email)
ALERTS_ENABLED = _env_bool("ALERTS_ENABLED", "false")
SMTP_HOST = os.environ.get("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = _env_int("SMTP_PORT", 587)
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASS = os.environ.get("SMTP_PASS", "")
ALERT_TO_EMAIL = os.environ.get("ALERT_TO_EMAIL", "")

# Tick bounds of the V3 core
MIN_TICK = -887272
MAX_TICK = 887272


def sort_tokens() -> tuple[str, str]:
    from eth_utils.address import to_checksum_address

    a = to_checksum_address(WETH_ADDRESS)
    b = to_checksum_address(USDC_ADDRESS)
    if int(a, 16) > int(b, 16):
        a, b = b, a
    return a, b


def compute_pool_address() -> str:
    """CREATE2 address of the WETH/USDC pool for POOL_FEE (Uniswap V3 factory)."""
    if POOL_ADDRESS:
        from eth_utils.address import to_checksum_address

        return to_checksum_address(POOL_ADDRESS)

    from eth_abi.abi import encode
    from eth_utils.address import to_checksum_address
    from eth_utils.crypto import keccak

    token0, token1 = sort_tokens()
    salt = keccak(encode(["address", "address", "uint24"], [token0, token1, POOL_FEE]))
    raw = keccak(
        b"\xff"
        + bytes.fromhex(V3_FACTORY[2:])
        + salt
        + bytes.fromhex(POOL_INIT_CODE_HASH[2:])
    )
    return to_checksum_address("0x" + raw[12:].hex())
