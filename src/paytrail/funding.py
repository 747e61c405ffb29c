"""
Mining-driven wallet funding.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from paytrail.errors import FundingError, NodeRPCError
from paytrail.models import format_btc
from paytrail.rpc import NodeClient


@dataclass
class FundingResult:
    blocks_mined: int
    final_balance: int  # satoshis


class FundingEngine:
    """
    Mines blocks to an address until a wallet's balance passes a threshold.

    Coinbase rewards only count towards the balance once they mature
    (COINBASE_MATURITY further blocks), so funding an empty regtest wallet
    takes 101 blocks.
    """

    def __init__(self, node: NodeClient, max_blocks: int | None = None):
        self.node = node
        self.max_blocks = max_blocks

    def mine(self, address: str, count: int = 1) -> list[str]:
        """Generate ``count`` blocks paying to ``address``, returning their hashes."""
        try:
            block_hashes = self.node.generate_to_address(count, address)
        except NodeRPCError as e:
            raise FundingError(f"Failed to mine {count} block(s) to {address}: {e}") from e
        logger.debug(f"Mined {len(block_hashes)} block(s) to {address}")
        return block_hashes

    def ensure_balance(
        self,
        wallet: NodeClient,
        mining_address: str,
        min_balance: int = 0,
    ) -> FundingResult:
        """
        Mine one block at a time until ``wallet`` holds more than ``min_balance``.

        Args:
            wallet: Wallet-scoped client whose balance is checked
            mining_address: Address receiving the block rewards
            min_balance: Threshold in satoshis; the balance must exceed it

        Returns:
            Number of blocks mined by this call and the resulting balance

        Raises:
            FundingError: On any RPC failure, or when ``max_blocks`` is set
                and reached before the threshold
        """
        blocks_mined = 0
        balance = self._balance(wallet)

        while balance <= min_balance:
            if self.max_blocks is not None and blocks_mined >= self.max_blocks:
                raise FundingError(
                    f"Balance still {format_btc(balance)} BTC after mining "
                    f"{blocks_mined} blocks"
                )
            self.mine(mining_address, 1)
            blocks_mined += 1
            balance = self._balance(wallet)
            if blocks_mined % 25 == 0:
                logger.debug(f"Blocks mined: {blocks_mined}, balance: {format_btc(balance)} BTC")

        logger.info(
            f"Wallet '{wallet.wallet}' funded: {format_btc(balance)} BTC "
            f"after mining {blocks_mined} block(s)"
        )
        return FundingResult(blocks_mined=blocks_mined, final_balance=balance)

    def _balance(self, wallet: NodeClient) -> int:
        try:
            return wallet.get_balance()
        except NodeRPCError as e:
            raise FundingError(f"Failed to query balance of '{wallet.wallet}': {e}") from e
