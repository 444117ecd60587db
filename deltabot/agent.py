"""
deltabot entry point: wires collaborators, runs startup checks, then feeds
every new block into the ControlLoop until it reaches a terminal state.

Exit codes: 0 on Ctrl+C, 1 on initialization failure or after a panic exit.
"""

import argparse
import logging
import os
import threading

from deltabot import config
from deltabot.alerts import AlertSender
from deltabot.chain import ChainClient
from deltabot.control_loop import ControlLoop
from deltabot.hedge import HedgeManager
from deltabot.ledger import PositionLedger
from deltabot.lp_manager import LPManager
from deltabot.market_data import MarketDataProvider
from deltabot.portfolio import PortfolioGuard
from deltabot.rebalancer import RebalanceExecutor
from deltabot.state_reader import StateReader

logger = logging.getLogger("deltabot")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def setup_logging(decisions_dir: str) -> None:
    """Console at INFO, decisions.log at DEBUG, on the package root logger."""
    os.makedirs(decisions_dir, exist_ok=True)
    logger.setLevel(logging.DEBUG)
    if logger.handlers:
        return

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console)

    fh = logging.FileHandler(os.path.join(decisions_dir, "decisions.log"))
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(fh)


class DeltaBot:
    """Owns the collaborator graph for one wallet/pool pair."""

    def __init__(self, cfg=config):
        self.config = cfg
        self.alerts = AlertSender(cfg)
        self.chain = ChainClient(cfg.RPC_URLS, cfg.PRIVATE_KEY, cfg)
        self.ledger = PositionLedger(cfg.STATE_FILE)
        self.state_reader = StateReader(self.chain, cfg)
        self.lp_manager = LPManager(self.chain, cfg)
        self.market_data = MarketDataProvider(cfg)
        self.hedge = HedgeManager(
            self.chain, self.lp_manager, self.state_reader, self.ledger, self.alerts, cfg
        )
        self.rebalancer = RebalanceExecutor(
            self.state_reader, self.lp_manager, self.market_data, self.ledger, self.alerts, cfg
        )
        self.portfolio = PortfolioGuard(
            self.state_reader, self.lp_manager, self.hedge, self.ledger, self.alerts, cfg
        )
        self.loop = ControlLoop(
            self.state_reader,
            self.rebalancer,
            self.hedge,
            self.ledger,
            self.alerts,
            cfg,
            portfolio=self.portfolio,
            decisions_file=os.path.join(cfg.DECISIONS_DIR, "decisions.jsonl"),
        )
        self.stop_event = threading.Event()
        self.chain.on_reconnect(self._on_reconnect)

    def _on_reconnect(self) -> None:
        logger.warning("[Network] Reconnected on RPC #%d", self.chain.rpc_index)
        self.alerts.send_alert(
            "RPC failover", f"Switched to RPC #{self.chain.rpc_index}. Resuming block watch."
        )

    def initialize(self) -> None:
        """Chain id check, approvals, and orphan adoption when the ledger is empty."""
        cfg = self.config
        chain_id = self.chain.read("chain_id", lambda: self.chain.w3.eth.chain_id)
        if chain_id != cfg.EXPECTED_CHAIN_ID:
            raise RuntimeError(
                f"Connected to chain {chain_id}, expected {cfg.EXPECTED_CHAIN_ID}"
            )
        logger.info("[Init] Pool: %s", self.state_reader.pool_address)

        spenders = [cfg.POSITION_MANAGER, cfg.SWAP_ROUTER]
        if cfg.HEDGE_ENABLED:
            spenders.append(cfg.AAVE_POOL)
        self.lp_manager.setup_approvals(spenders)

        record = self.ledger.load()
        if record.has_position:
            logger.info("[Init] Resuming with position %s", record.position_id)
            return

        orphan = self.state_reader.find_orphan_position()
        if orphan is not None:
            logger.info("[Init] Found orphan position %s. Adopting it.", orphan)
            self.ledger.save(position_id=str(orphan))
        else:
            logger.info("[Init] No existing position.")

    def on_block(self, block_number: int) -> None:
        self.loop.on_block(block_number)
        if self.loop.state.exit_code is not None:
            self.stop_event.set()

    def run(self) -> int:
        logger.info("Bot started. Listening for blocks. Press Ctrl+C to stop.")
        self.alerts.send_alert("Bot started", f"Wallet {self.chain.address}")
        try:
            self.chain.watch_blocks(self.on_block, self.stop_event)
        except KeyboardInterrupt:
            logger.info("Bot stopped by user.")
            self.stop_event.set()
            return 0
        return self.loop.state.exit_code or 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Delta-neutral concentrated liquidity bot")
    parser.add_argument(
        "--state-file", default=None, help="Override STATE_FILE (ledger JSON path)"
    )
    args = parser.parse_args(argv)
    if args.state_file:
        config.STATE_FILE = args.state_file

    setup_logging(config.DECISIONS_DIR)

    alerts = AlertSender(config)
    try:
        bot = DeltaBot(config)
        bot.initialize()
    except Exception as e:
        logger.critical("FATAL ERROR during initialization: %s", e, exc_info=True)
        alerts.send_alert("Bot Crashed", f"Initialization failed: {e}")
        return 1

    exit_code = bot.run()
    if exit_code:
        logger.critical("Exiting with status %d. Operator intervention required.", exit_code)
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
