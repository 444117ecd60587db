"""
ChainClient: web3 connection with RPC fallback, read retries, and
submit-and-wait transactions.

Contract handles are resolved through `contract()` on every use, so a
reconnect (which swaps the underlying Web3 instance) never leaves callers
holding bindings to a dead transport.
"""

import json
import logging
import os
import threading
import time
from functools import lru_cache
from typing import Callable

from eth_utils import to_checksum_address
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from deltabot.errors import ChainReadError, TransactionFailed, TransactionTimeout

logger = logging.getLogger(__name__)

MAX_UINT256 = 2**256 - 1
MAX_UINT128 = 2**128 - 1

ABI_DIR = os.path.join(os.path.dirname(__file__), "abi")


@lru_cache(maxsize=None)
def load_abi(filename: str) -> list:
    with open(os.path.join(ABI_DIR, filename)) as f:
        return json.load(f)


class ChainClient:
    """Signing web3 client bound to one wallet and a list of RPC endpoints."""

    def __init__(self, rpc_urls: list[str], private_key: str, config):
        if not rpc_urls:
            raise ValueError("RPC_URL is not set")
        self.rpc_urls = list(rpc_urls)
        self.config = config
        self._url_index = 0
        self._generation = 0
        self._contracts: dict[tuple, object] = {}
        self._reconnect_listeners: list[Callable[[], None]] = []
        self._send_lock = threading.Lock()
        self._reconnect_lock = threading.Lock()

        logger.info("[Network] Loaded %d RPC node(s)", len(self.rpc_urls))
        self.w3 = self._connect()
        self.account = self.w3.eth.account.from_key(private_key)
        logger.info("[Network] Wallet: %s", self.account.address)

    @property
    def address(self) -> str:
        return self.account.address

    @property
    def rpc_index(self) -> int:
        return self._url_index

    @property
    def generation(self) -> int:
        return self._generation

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _connect(self) -> Web3:
        """Try each RPC URL starting at the current index; first that answers wins."""
        last_error = None
        for offset in range(len(self.rpc_urls)):
            index = (self._url_index + offset) % len(self.rpc_urls)
            url = self.rpc_urls[index]
            try:
                w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": 30}))
                if w3.is_connected():
                    self._url_index = index
                    logger.info("[Network] Connected to RPC #%d (chain %d)", index, w3.eth.chain_id)
                    return w3
                last_error = ConnectionError(f"RPC #{index} not responding")
            except Exception as e:
                last_error = e
            logger.warning("[Network] RPC #%d unavailable: %s", index, last_error)
        raise ConnectionError(f"No RPC endpoint reachable: {last_error}")

    def on_reconnect(self, callback: Callable[[], None]) -> None:
        """Register a callback fired after the transport has been replaced."""
        self._reconnect_listeners.append(callback)

    def reconnect(self, seen_generation: int | None = None) -> None:
        """Rotate to the next RPC endpoint and notify rebind listeners.

        `seen_generation` is the transport generation the caller saw fail.
        If another thread already rotated past it, this call is a no-op.
        """
        if seen_generation is None:
            seen_generation = self._generation
        with self._reconnect_lock:
            if self._generation != seen_generation:
                logger.info("[Network] Provider already switched by another thread.")
                return
            time.sleep(self.config.RECONNECT_DELAY)
            self._url_index = (self._url_index + 1) % len(self.rpc_urls)
            self.w3 = self._connect()
            self._contracts.clear()
            self._generation += 1
        logger.info("[Network] Provider switched. Re-binding listeners...")
        for callback in self._reconnect_listeners:
            try:
                callback()
            except Exception as e:
                logger.error("[Network] Reconnect listener failed: %s", e, exc_info=True)

    def contract(self, address: str, abi: list):
        key = (self._generation, address.lower(), id(abi))
        bound = self._contracts.get(key)
        if bound is None:
            bound = self.w3.eth.contract(address=to_checksum_address(address), abi=abi)
            self._contracts[key] = bound
        return bound

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, label: str, fn: Callable[[], object]):
        """Run a read with exponential backoff. Reverts are not retried."""
        cfg = self.config
        last_error: Exception | None = None
        for attempt in range(cfg.READ_RETRY_ATTEMPTS):
            generation = self._generation
            try:
                return fn()
            except ContractLogicError:
                raise
            except Exception as e:
                last_error = e
                delay = min(cfg.READ_RETRY_BASE_DELAY * (2**attempt), cfg.READ_RETRY_MAX_DELAY)
                logger.warning(
                    "[Network] Read %s failed (attempt %d/%d): %s",
                    label,
                    attempt + 1,
                    cfg.READ_RETRY_ATTEMPTS,
                    e,
                )
                if attempt < cfg.READ_RETRY_ATTEMPTS - 1:
                    time.sleep(delay)
                    if not self.w3.is_connected():
                        self.reconnect(generation)
        raise ChainReadError(label, last_error)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def deadline(self) -> int:
        return int(time.time()) + self.config.TX_DEADLINE_SECONDS

    def send(self, label: str, contract_fn, value: int = 0, gas: int | None = None) -> dict:
        """Build, sign, send and wait for a contract call. Never retried."""
        with self._send_lock:
            nonce = self.read(
                "nonce", lambda: self.w3.eth.get_transaction_count(self.address, "pending")
            )
            gas_price = self.read("gas_price", lambda: self.w3.eth.gas_price)
            tx = contract_fn.build_transaction(
                {
                    "from": self.address,
                    "nonce": nonce,
                    "value": value,
                    "gas": gas or self.config.TX_GAS_LIMIT,
                    "gasPrice": gas_price,
                }
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)

        logger.info("[Tx] %s sent: %s", label, tx_hash.hex())
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.TX_TIMEOUT_SECONDS
            )
        except TimeExhausted:
            logger.error("[Tx] %s timed out: %s", label, tx_hash.hex())
            raise TransactionTimeout(label, tx_hash.hex(), self.config.TX_TIMEOUT_SECONDS)

        if receipt["status"] != 1:
            logger.error("[Tx] %s reverted: %s", label, tx_hash.hex())
            raise TransactionFailed(label, tx_hash.hex())
        return receipt

    # ------------------------------------------------------------------
    # Block subscription
    # ------------------------------------------------------------------

    def watch_blocks(
        self, callback: Callable[[int], None], stop_event: threading.Event
    ) -> None:
        """Poll for new block numbers and dispatch each on its own thread.

        Dispatch does not wait for the previous callback, so the callee is
        responsible for dropping blocks that arrive while it is busy.
        """
        last_seen = None
        logger.info("[System] Listening for blocks...")
        while not stop_event.is_set():
            generation = self._generation
            try:
                number = self.w3.eth.block_number
            except Exception as e:
                logger.error("[Network] Block poll failed: %s. Reconnecting...", e)
                try:
                    self.reconnect(generation)
                except ConnectionError as conn_err:
                    logger.error("[Network] Reconnect failed: %s", conn_err)
                continue

            if last_seen is None or number > last_seen:
                last_seen = number
                threading.Thread(
                    target=callback, args=(number,), name=f"block-{number}", daemon=True
                ).start()
            stop_event.wait(self.config.BLOCK_POLL_INTERVAL)
