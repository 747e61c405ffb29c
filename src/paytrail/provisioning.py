"""
Idempotent wallet provisioning (create-or-load).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from loguru import logger

from paytrail.constants import RPC_WALLET_ALREADY_LOADED, RPC_WALLET_NOT_FOUND
from paytrail.errors import NodeRPCError, ProvisionError
from paytrail.rpc import NodeClient


class ProvisionOutcome(str, Enum):
    LOADED = "loaded"
    ALREADY_LOADED = "already_loaded"
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


@dataclass
class ProvisionResult:
    wallet_name: str
    outcome: ProvisionOutcome
    client: NodeClient


def _is_already_loaded(error: NodeRPCError) -> bool:
    # Older nodes report this as a generic wallet error (-4)
    return error.code == RPC_WALLET_ALREADY_LOADED or "already loaded" in error.message


def _is_not_found(error: NodeRPCError) -> bool:
    message = error.message.lower()
    return (
        error.code == RPC_WALLET_NOT_FOUND
        or "not found" in message
        or "does not exist" in message
    )


def _is_already_exists(error: NodeRPCError) -> bool:
    return "already exists" in error.message.lower()


class WalletProvisioner:
    """
    Ensures a named wallet exists and is loaded on the node.

    The state machine is one-shot: try ``loadwallet``; if the wallet file is
    missing, ``createwallet``; a create that fails because the wallet
    already exists counts as success. Anything else raises
    ``ProvisionError``.
    """

    def __init__(self, node: NodeClient):
        self.node = node

    def ensure(self, wallet_name: str) -> ProvisionResult:
        try:
            self.node.load_wallet(wallet_name)
            logger.info(f"Wallet '{wallet_name}' loaded")
            return self._result(wallet_name, ProvisionOutcome.LOADED)
        except NodeRPCError as e:
            if _is_already_loaded(e):
                logger.info(f"Wallet '{wallet_name}' already loaded")
                return self._result(wallet_name, ProvisionOutcome.ALREADY_LOADED)
            if not _is_not_found(e):
                raise ProvisionError(f"Failed to load wallet '{wallet_name}': {e}") from e

        logger.info(f"Wallet '{wallet_name}' not found, creating new wallet")
        try:
            self.node.create_wallet(wallet_name)
        except NodeRPCError as e:
            if _is_already_exists(e):
                logger.info(f"Wallet '{wallet_name}' already exists")
                return self._result(wallet_name, ProvisionOutcome.ALREADY_EXISTS)
            raise ProvisionError(f"Failed to create wallet '{wallet_name}': {e}") from e

        logger.info(f"Wallet '{wallet_name}' created")
        return self._result(wallet_name, ProvisionOutcome.CREATED)

    def _result(self, wallet_name: str, outcome: ProvisionOutcome) -> ProvisionResult:
        return ProvisionResult(
            wallet_name=wallet_name,
            outcome=outcome,
            client=self.node.for_wallet(wallet_name),
        )
