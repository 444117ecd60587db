"""
One-shot remediation: close the recorded LP position, repay all lending
debt, reset the ledger. Run this after a panic exit or before shutting the
bot down for good.
"""

import argparse
import logging

from deltabot import config
from deltabot.agent import setup_logging
from deltabot.alerts import AlertSender
from deltabot.chain import ChainClient
from deltabot.hedge import HedgeManager
from deltabot.ledger import NO_POSITION, PositionLedger
from deltabot.lp_manager import LPManager
from deltabot.state_reader import StateReader

logger = logging.getLogger("deltabot.manual_close")


def close_everything(lp_manager, hedge, ledger, skip_debt: bool = False) -> int:
    record = ledger.load()
    if record.has_position:
        logger.info("--- Closing LP position %s ---", record.position_id)
        lp_manager.atomic_exit(record.token_id)
    else:
        logger.info("No LP position recorded.")
    ledger.save(position_id=NO_POSITION, standby=False, standby_reference_price=0.0)

    repaid = 0
    if not skip_debt:
        logger.info("--- Closing lending position ---")
        repaid = hedge.close_all_debt()
        if repaid == 0:
            logger.info("No debt found.")
    return repaid


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Close LP position and repay all debt")
    parser.add_argument("--state-file", default=None, help="Override STATE_FILE")
    parser.add_argument(
        "--skip-debt", action="store_true", help="Only close the LP position"
    )
    args = parser.parse_args(argv)
    if args.state_file:
        config.STATE_FILE = args.state_file

    setup_logging(config.DECISIONS_DIR)
    logger.info("Starting manual close...")

    alerts = AlertSender(config)
    chain = ChainClient(config.RPC_URLS, config.PRIVATE_KEY, config)
    ledger = PositionLedger(config.STATE_FILE)
    state_reader = StateReader(chain, config)
    lp_manager = LPManager(chain, config)
    hedge = HedgeManager(chain, lp_manager, state_reader, ledger, alerts, config)

    try:
        repaid = close_everything(lp_manager, hedge, ledger, skip_debt=args.skip_debt)
    except Exception as e:
        logger.error("Manual close failed: %s", e, exc_info=True)
        alerts.send_alert("Manual close failed", str(e))
        return 1

    balances = state_reader.get_balances()
    logger.info(
        "All positions closed. Repaid %d wei. Wallet: %d wei WETH, %d raw USDC",
        repaid,
        balances.weth,
        balances.usdc,
    )
    alerts.send_alert("Manual Close", "LP and lending positions closed by operator.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
