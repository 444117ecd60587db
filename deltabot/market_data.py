"""
Market data: ETH candles from Binance (Coinbase fallback) reduced to
RSI and ATR.

Any failure surfaces as MarketDataUnavailable. No default indicator
values are ever substituted.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
import requests

from deltabot.errors import MarketDataUnavailable

logger = logging.getLogger(__name__)

BINANCE_KLINES_URL = "https://api.binance.com/api/v3/klines"
COINBASE_CANDLES_URL = "https://api.exchange.coinbase.com/products/{product}/candles"

# Coinbase only serves these granularities; 4h falls back to 6h candles.
COINBASE_GRANULARITY = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "1h": 3600,
    "4h": 21600,
    "6h": 21600,
    "1d": 86400,
}

MAX_RETRIES = 3
BASE_RETRY_DELAY = 1


@dataclass(frozen=True)
class Candles:
    high: np.ndarray
    low: np.ndarray
    close: np.ndarray


@dataclass(frozen=True)
class MarketSignal:
    atr: float  # USD per period
    rsi_short: float
    rsi_long: float


def compute_rsi(closes: np.ndarray, period: int = 14) -> float:
    """Wilder RSI of the last close."""
    closes = np.asarray(closes, dtype=np.float64)
    if closes.size < period + 1:
        raise ValueError(f"need {period + 1} closes for RSI, got {closes.size}")

    deltas = np.diff(closes)
    gains = np.clip(deltas, 0.0, None)
    losses = np.clip(-deltas, 0.0, None)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return float(100.0 - 100.0 / (1.0 + rs))


def compute_atr(high: np.ndarray, low: np.ndarray, close: np.ndarray, period: int = 14) -> float:
    """Wilder ATR of the last candle."""
    high = np.asarray(high, dtype=np.float64)
    low = np.asarray(low, dtype=np.float64)
    close = np.asarray(close, dtype=np.float64)
    if close.size < period + 1:
        raise ValueError(f"need {period + 1} candles for ATR, got {close.size}")

    prev_close = close[:-1]
    true_range = np.maximum.reduce(
        [
            high[1:] - low[1:],
            np.abs(high[1:] - prev_close),
            np.abs(low[1:] - prev_close),
        ]
    )
    atr = true_range[:period].mean()
    for tr in true_range[period:]:
        atr = (atr * (period - 1) + tr) / period
    return float(atr)


class MarketDataProvider:
    def __init__(self, config, session: requests.Session | None = None):
        self.config = config
        self.session = session or requests.Session()

    # ------------------------------------------------------------------
    # Candle sources
    # ------------------------------------------------------------------

    def _with_retry(self, label: str, fn):
        for attempt in range(MAX_RETRIES):
            try:
                return fn()
            except (requests.RequestException, ValueError, KeyError, IndexError) as e:
                if attempt == MAX_RETRIES - 1:
                    raise
                delay = BASE_RETRY_DELAY * (2**attempt)
                logger.warning(
                    "[Analytics] %s failed (attempt %d): %s. Retrying in %ds",
                    label,
                    attempt + 1,
                    e,
                    delay,
                )
                time.sleep(delay)

    def _binance_candles(self, interval: str, limit: int) -> Candles:
        response = self.session.get(
            BINANCE_KLINES_URL,
            params={"symbol": self.config.MARKET_SYMBOL, "interval": interval, "limit": limit},
            timeout=self.config.MARKET_DATA_TIMEOUT,
        )
        response.raise_for_status()
        rows = response.json()
        # [open_time, open, high, low, close, ...]
        return Candles(
            high=np.array([float(r[2]) for r in rows]),
            low=np.array([float(r[3]) for r in rows]),
            close=np.array([float(r[4]) for r in rows]),
        )

    def _coinbase_candles(self, interval: str, limit: int) -> Candles:
        granularity = COINBASE_GRANULARITY.get(interval, 3600)
        response = self.session.get(
            COINBASE_CANDLES_URL.format(product=self.config.COINBASE_PRODUCT),
            params={"granularity": granularity},
            timeout=self.config.MARKET_DATA_TIMEOUT,
        )
        response.raise_for_status()
        # [time, low, high, open, close, volume], newest first
        rows = list(reversed(response.json()))[-limit:]
        return Candles(
            high=np.array([float(r[2]) for r in rows]),
            low=np.array([float(r[1]) for r in rows]),
            close=np.array([float(r[4]) for r in rows]),
        )

    def fetch_candles(self, interval: str, limit: int) -> Candles:
        try:
            return self._with_retry(
                f"Binance {interval}", lambda: self._binance_candles(interval, limit)
            )
        except Exception as binance_error:
            logger.warning(
                "[Analytics] Binance API failed (%s). Switching to Coinbase fallback...",
                binance_error,
            )
            try:
                return self._with_retry(
                    f"Coinbase {interval}", lambda: self._coinbase_candles(interval, limit)
                )
            except Exception as coinbase_error:
                raise MarketDataUnavailable(
                    f"candles {interval}: Binance: {binance_error} | Coinbase: {coinbase_error}",
                    coinbase_error,
                ) from coinbase_error

    # ------------------------------------------------------------------
    # Indicators
    # ------------------------------------------------------------------

    def get_rsi(self, interval: str, period: int | None = None) -> float:
        period = period or self.config.INDICATOR_PERIOD
        candles = self.fetch_candles(interval, period + 50)
        try:
            return compute_rsi(candles.close, period)
        except ValueError as e:
            raise MarketDataUnavailable(f"RSI {interval}: {e}", e) from e

    def get_atr(self, interval: str, period: int | None = None) -> float:
        period = period or self.config.INDICATOR_PERIOD
        candles = self.fetch_candles(interval, period + 20)
        try:
            return compute_atr(candles.high, candles.low, candles.close, period)
        except ValueError as e:
            raise MarketDataUnavailable(f"ATR {interval}: {e}", e) from e

    def get_signals(self) -> MarketSignal:
        """ATR plus both RSI horizons; the three requests run concurrently."""
        cfg = self.config
        with ThreadPoolExecutor(max_workers=3) as pool:
            atr_future = pool.submit(self.get_atr, cfg.ATR_INTERVAL)
            short_future = pool.submit(self.get_rsi, cfg.RSI_SHORT_INTERVAL)
            long_future = pool.submit(self.get_rsi, cfg.RSI_LONG_INTERVAL)
            signal = MarketSignal(
                atr=atr_future.result(),
                rsi_short=short_future.result(),
                rsi_long=long_future.result(),
            )
        logger.info(
            "[Analytics] ATR=%.2f RSI short=%.2f long=%.2f",
            signal.atr,
            signal.rsi_short,
            signal.rsi_long,
        )
        return signal
