"""
Uniswap V3 NonfungiblePositionManager + SwapRouter operations: approvals,
atomic exit, mint, and single-pool swaps.

Exit uses raw eth_abi encoding for the calls bundled into multicall().
"""

import logging
from dataclasses import dataclass

from eth_abi import encode as abi_encode
from eth_utils import keccak, to_checksum_address
from web3.exceptions import ContractLogicError

from deltabot.chain import MAX_UINT128, MAX_UINT256, load_abi
from deltabot.errors import MintEventMissing

logger = logging.getLogger(__name__)

TRANSFER_TOPIC = keccak(text="Transfer(address,address,uint256)")
ZERO_TOPIC = b"\x00" * 32

DECREASE_LIQUIDITY_SIG = "decreaseLiquidity((uint256,uint128,uint256,uint256,uint256))"
COLLECT_SIG = "collect((uint256,address,uint128,uint128))"
BURN_SIG = "burn(uint256)"


def encode_call(signature: str, arg_types: list[str], args: list) -> bytes:
    """4-byte selector + ABI-encoded arguments."""
    return keccak(text=signature)[:4] + abi_encode(arg_types, args)


def _topic_bytes(topic) -> bytes:
    if isinstance(topic, str):
        return bytes.fromhex(topic[2:] if topic.startswith("0x") else topic)
    return bytes(topic)


@dataclass(frozen=True)
class ExitResult:
    token_id: int
    tx_hash: str | None
    already_closed: bool = False


@dataclass(frozen=True)
class MintResult:
    token_id: int
    tx_hash: str
    tick_lower: int
    tick_upper: int


class LPManager:
    """Builds and sends position-manager and router transactions."""

    def __init__(self, chain, config):
        self.chain = chain
        self.config = config

    @property
    def position_manager(self):
        return self.chain.contract(self.config.POSITION_MANAGER, load_abi("position_manager.json"))

    @property
    def swap_router(self):
        return self.chain.contract(self.config.SWAP_ROUTER, load_abi("swap_router.json"))

    # ------------------------------------------------------------------
    # Approvals (one-time setup)
    # ------------------------------------------------------------------

    def setup_approvals(self, spenders: list[str]):
        """Approve WETH and USDC to every spender whose allowance is below half of max."""
        owner = self.chain.address
        for token in (self.config.WETH_ADDRESS, self.config.USDC_ADDRESS):
            erc20 = self.chain.contract(token, load_abi("erc20.json"))
            for spender in spenders:
                spender = to_checksum_address(spender)
                allowance = self.chain.read(
                    "allowance",
                    lambda: erc20.functions.allowance(owner, spender).call(),
                )
                if int(allowance) >= MAX_UINT256 // 2:
                    continue
                logger.info("[Approve] Authorizing %s for %s...", token, spender)
                self.chain.send(
                    "approve", erc20.functions.approve(spender, MAX_UINT256), gas=100_000
                )

    # ------------------------------------------------------------------
    # Atomic exit: decrease + collect + burn in one multicall
    # ------------------------------------------------------------------

    def atomic_exit(self, token_id: int) -> ExitResult:
        """Close a position completely. An already-burned handle counts as success."""
        logger.info("[Exit] Executing atomic exit for token %s...", token_id)
        try:
            raw = self.chain.read(
                f"positions({token_id})",
                lambda: self.position_manager.functions.positions(token_id).call(),
            )
        except ContractLogicError as e:
            logger.info("[Exit] Token %s already released (%s)", token_id, e)
            return ExitResult(token_id=token_id, tx_hash=None, already_closed=True)

        liquidity = int(raw[7])
        recipient = self.chain.address
        deadline = self.chain.deadline()
        calls = []

        if liquidity > 0:
            calls.append(
                encode_call(
                    DECREASE_LIQUIDITY_SIG,
                    ["(uint256,uint128,uint256,uint256,uint256)"],
                    [(token_id, liquidity, 0, 0, deadline)],
                )
            )
        calls.append(
            encode_call(
                COLLECT_SIG,
                ["(uint256,address,uint128,uint128)"],
                [(token_id, recipient, MAX_UINT128, MAX_UINT128)],
            )
        )
        calls.append(encode_call(BURN_SIG, ["uint256"], [token_id]))

        receipt = self.chain.send(
            f"exit({token_id})", self.position_manager.functions.multicall(calls)
        )
        tx_hash = receipt["transactionHash"].hex()
        logger.info("[Exit] Atomic exit of %s successful (tx=%s)", token_id, tx_hash)
        return ExitResult(token_id=token_id, tx_hash=tx_hash)

    def simulate_collect(self, token_id: int) -> tuple[int, int]:
        """Pending fees (amount0, amount1) via a static collect() call."""
        owner = self.chain.address
        result = self.chain.read(
            f"collect.call({token_id})",
            lambda: self.position_manager.functions.collect(
                (token_id, owner, MAX_UINT128, MAX_UINT128)
            ).call({"from": owner}),
        )
        return int(result[0]), int(result[1])

    # ------------------------------------------------------------------
    # Mint position
    # ------------------------------------------------------------------

    def mint_position(
        self,
        token0: str,
        token1: str,
        tick_lower: int,
        tick_upper: int,
        amount0_desired: int,
        amount1_desired: int,
        amount0_min: int,
        amount1_min: int,
    ) -> MintResult:
        """Mint a new LP position and return the handle from the Transfer event."""
        params = (
            to_checksum_address(token0),
            to_checksum_address(token1),
            self.config.POOL_FEE,
            tick_lower,
            tick_upper,
            amount0_desired,
            amount1_desired,
            amount0_min,
            amount1_min,
            self.chain.address,
            self.chain.deadline(),
        )
        logger.info(
            "[Mint] Minting ticks=[%d, %d] amount0=%d amount1=%d",
            tick_lower,
            tick_upper,
            amount0_desired,
            amount1_desired,
        )
        receipt = self.chain.send("mint", self.position_manager.functions.mint(params))
        token_id = self.parse_token_id(receipt)
        tx_hash = receipt["transactionHash"].hex()
        logger.info("[Mint] Success! token_id=%s tx=%s", token_id, tx_hash)
        return MintResult(
            token_id=token_id, tx_hash=tx_hash, tick_lower=tick_lower, tick_upper=tick_upper
        )

    def parse_token_id(self, receipt) -> int:
        """Extract tokenId from the ERC721 Transfer(0x0 -> wallet, id) event."""
        pm_address = self.config.POSITION_MANAGER.lower()
        wallet = self.chain.address.lower()

        for log in receipt.get("logs", []):
            if str(log["address"]).lower() != pm_address:
                continue
            topics = log["topics"]
            if len(topics) < 4 or _topic_bytes(topics[0]) != TRANSFER_TOPIC:
                continue
            if _topic_bytes(topics[1]) != ZERO_TOPIC:
                continue
            to_address = "0x" + _topic_bytes(topics[2])[12:].hex()
            if to_address.lower() != wallet:
                continue
            return int.from_bytes(_topic_bytes(topics[3]), "big")

        raise MintEventMissing(receipt["transactionHash"].hex())

    # ------------------------------------------------------------------
    # Swaps
    # ------------------------------------------------------------------

    def swap_exact_input(
        self, token_in: str, token_out: str, amount_in: int, amount_out_min: int = 0
    ) -> str:
        params = (
            to_checksum_address(token_in),
            to_checksum_address(token_out),
            self.config.POOL_FEE,
            self.chain.address,
            self.chain.deadline(),
            amount_in,
            amount_out_min,
            0,
        )
        receipt = self.chain.send(
            "exactInputSingle", self.swap_router.functions.exactInputSingle(params)
        )
        return receipt["transactionHash"].hex()

    def swap_exact_output(
        self, token_in: str, token_out: str, amount_out: int, amount_in_max: int
    ) -> str:
        params = (
            to_checksum_address(token_in),
            to_checksum_address(token_out),
            self.config.POOL_FEE,
            self.chain.address,
            self.chain.deadline(),
            amount_out,
            amount_in_max,
            0,
        )
        receipt = self.chain.send(
            "exactOutputSingle", self.swap_router.functions.exactOutputSingle(params)
        )
        return receipt["transactionHash"].hex()
