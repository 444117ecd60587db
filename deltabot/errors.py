"""Failure types raised by deltabot components."""

from __future__ import annotations


class DeltaBotError(RuntimeError):
    """Base class for failures the control loop can tell apart."""


class ChainReadError(DeltaBotError):
    """A contract read kept failing after every retry."""

    def __init__(self, what: str, original: Exception | None = None):
        super().__init__(f"chain read failed: {what} ({original})")
        self.what = what
        self.original = original


class TransactionFailed(DeltaBotError):
    """A submitted transaction was mined with status 0."""

    def __init__(self, label: str, tx_hash: str):
        super().__init__(f"{label} reverted: {tx_hash}")
        self.label = label
        self.tx_hash = tx_hash


class TransactionTimeout(DeltaBotError):
    """No receipt before the timeout; the outcome on chain is unknown."""

    def __init__(self, label: str, tx_hash: str, timeout: float):
        super().__init__(f"{label} not confirmed within {timeout}s: {tx_hash}")
        self.label = label
        self.tx_hash = tx_hash
        self.timeout = timeout


class MarketDataUnavailable(DeltaBotError):
    """Every market-data source failed for an indicator request."""

    def __init__(self, source: str, original: Exception | None = None):
        super().__init__(source)
        self.source = source
        self.original = original


class PriceManipulationSuspected(DeltaBotError):
    def __init__(self, spot_tick: int, twap_tick: int, max_deviation: int):
        self.spot_tick = spot_tick
        self.twap_tick = twap_tick
        self.deviation = abs(spot_tick - twap_tick)
        super().__init__(
            f"price manipulation suspected: spot={spot_tick} twap={twap_tick} "
            f"deviation={self.deviation} > {max_deviation}"
        )


class MintEventMissing(DeltaBotError):
    """Mint was confirmed but the receipt carries no Transfer event for us."""

    def __init__(self, tx_hash: str):
        super().__init__(
            f"mint {tx_hash} succeeded but no Transfer event to the wallet was found"
        )
        self.tx_hash = tx_hash
