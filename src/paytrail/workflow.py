"""
End-to-end payment workflow.

Provision wallets, fund the miner, pay the trader, confirm, reconcile and
write the record. Every step depends on the previous one, so they run
strictly in order and the first failure aborts the run.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from paytrail.config import Settings
from paytrail.errors import FundingError, NodeRPCError, PaymentError
from paytrail.funding import FundingEngine, FundingResult
from paytrail.models import Address, ReconciledRecord, btc_to_sats, format_btc
from paytrail.payment import PaymentDispatcher
from paytrail.provisioning import WalletProvisioner
from paytrail.reconcile import TransactionReconciler
from paytrail.record import write_record
from paytrail.rpc import NodeClient


@dataclass
class WorkflowResult:
    record: ReconciledRecord
    output_path: Path
    funding: FundingResult
    mining_address: Address
    trader_address: Address


def client_from_settings(settings: Settings) -> NodeClient:
    return NodeClient(
        rpc_url=settings.rpc_url,
        rpc_user=settings.rpc_user,
        rpc_password=settings.rpc_password,
        timeout=settings.rpc_timeout,
    )


def _log_mempool_entry(node: NodeClient, txid: str) -> None:
    try:
        entry = node.get_mempool_entry(txid)
    except NodeRPCError as e:
        logger.warning(f"Transaction {txid} not found in mempool: {e}")
        return
    fees = entry.get("fees", {})
    logger.info(
        f"Transaction {txid} in mempool, vsize {entry.get('vsize')}, fee {fees.get('base')}"
    )


def run_workflow(settings: Settings, node: NodeClient) -> WorkflowResult:
    info = node.get_blockchain_info()
    logger.info(f"Connected to {info.get('chain')} node at height {info.get('blocks')}")

    provisioner = WalletProvisioner(node)
    miner = provisioner.ensure(settings.miner_wallet).client
    trader = provisioner.ensure(settings.trader_wallet).client

    funding = FundingEngine(node, max_blocks=settings.max_funding_blocks)
    try:
        mining_address = miner.get_new_address(settings.mining_label)
    except NodeRPCError as e:
        raise FundingError(f"Failed to create mining address: {e}") from e
    logger.info(
        f"Generated mining address with label '{settings.mining_label}': {mining_address}"
    )

    if settings.premine_blocks:
        funding.mine(mining_address, settings.premine_blocks)
        logger.info(f"Pre-mined {settings.premine_blocks} blocks")
    funded = funding.ensure_balance(miner, mining_address, btc_to_sats(settings.min_balance))

    try:
        trader_address = trader.get_new_address(settings.receive_label)
    except NodeRPCError as e:
        raise PaymentError(f"Failed to create receiving address: {e}") from e
    logger.info(
        f"Generated trader address with label '{settings.receive_label}': {trader_address}"
    )

    txid = PaymentDispatcher().pay(miner, trader_address, settings.amount)
    _log_mempool_entry(node, txid)

    blocks = funding.mine(mining_address, settings.confirmation_blocks)
    logger.info(f"Mined {len(blocks)} block(s) to confirm {txid}")

    reconciler = TransactionReconciler(
        node, change_policy=settings.change_policy, input_policy=settings.input_policy
    )
    record = reconciler.reconcile(txid, trader_address, miner)

    logger.info(f"Final Miner wallet balance: {format_btc(miner.get_balance())} BTC")
    logger.info(f"Final Trader wallet balance: {format_btc(trader.get_balance())} BTC")

    output_path = write_record(record, settings.output_path)
    return WorkflowResult(
        record=record,
        output_path=output_path,
        funding=funded,
        mining_address=mining_address,
        trader_address=trader_address,
    )
