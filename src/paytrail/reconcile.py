"""
Transaction reconciliation.

Given a confirmed txid, resolve its economic shape purely from node data:
which prior output funded it, which output paid the counterparty, which
output is change, and the implied fee (inputs minus outputs).

Scope restriction: a payment is assumed to be funded by a single input
(``InputPolicy.FIRST``). ``InputPolicy.ALL`` sums every input's prevout for
multi-input transactions but still reports the first input's address.
This is not a general UTXO attribution algorithm.
"""

from __future__ import annotations

from loguru import logger
from pydantic import ValidationError

from paytrail.errors import (
    DecodeFailure,
    NodeRPCError,
    NotConfirmed,
    PrevOutUnresolvable,
    ReconcileError,
)
from paytrail.models import (
    Address,
    ChangePolicy,
    DecodedTransaction,
    InputPolicy,
    ReconciledRecord,
    TxInput,
    TxOutput,
    WalletTransaction,
    format_btc,
)
from paytrail.rpc import NodeClient


class TransactionReconciler:
    """
    Builds a ``ReconciledRecord`` for a confirmed payment.

    Args:
        node: Node-scoped client for raw transaction and block queries
        change_policy: ``ADDRESS_INEQUALITY`` treats any non-destination
            output as change; ``OWNERSHIP`` asks the sending wallet whether it
            owns the address and ignores outputs that belong to neither party
        input_policy: Which inputs form the funding side
    """

    def __init__(
        self,
        node: NodeClient,
        change_policy: ChangePolicy = ChangePolicy.ADDRESS_INEQUALITY,
        input_policy: InputPolicy = InputPolicy.FIRST,
    ):
        self.node = node
        self.change_policy = change_policy
        self.input_policy = input_policy
        self._prev_tx_cache: dict[str, DecodedTransaction] = {}

    def reconcile(
        self, txid: str, destination: str, sending_wallet: NodeClient
    ) -> ReconciledRecord:
        """
        Reconcile ``txid`` against the address it was sent to.

        Raises:
            NotConfirmed: The transaction is not in a block yet
            DecodeFailure: The transaction could not be fetched or decoded
            PrevOutUnresolvable: The funding prevout could not be resolved
            AddressUnparseable: ``destination`` is not a usable address
            ReconcileError: Any other node failure during reconciliation
        """
        txid = txid.lower()
        destination_address = Address(destination)

        wallet_tx = self._wallet_transaction(txid, sending_wallet)
        if not wallet_tx.is_confirmed or wallet_tx.blockhash is None:
            raise NotConfirmed(f"Transaction {txid} has no confirmations; mine a block first")
        block_hash = wallet_tx.blockhash
        block_height = self._block_height(block_hash)

        tx = self._decode(txid, sending_wallet, block_hash, wallet_tx.hex)

        input_address, input_amount = self._resolve_funding(tx, sending_wallet)
        payment, change = self._classify_outputs(tx, destination_address, sending_wallet)

        payment_amount = payment.value if payment else 0
        change_amount = change.value if change else 0
        fee = abs(input_amount - (payment_amount + change_amount))
        self._check_wallet_fee(wallet_tx, tx, fee)

        record = ReconciledRecord(
            txid=txid,
            input_address=input_address,
            input_amount=input_amount,
            payment_address=payment.address if payment else None,
            payment_amount=payment_amount,
            change_address=change.address if change else None,
            change_amount=change_amount,
            fee=fee,
            block_height=block_height,
            block_hash=block_hash,
        )
        logger.info(
            f"Reconciled {txid}: in {format_btc(input_amount)}, "
            f"paid {format_btc(payment_amount)}, change {format_btc(change_amount)}, "
            f"fee {format_btc(fee)} BTC at height {block_height}"
        )
        return record

    def _wallet_transaction(self, txid: str, wallet: NodeClient) -> WalletTransaction:
        try:
            return wallet.get_transaction(txid)
        except NodeRPCError as e:
            raise ReconcileError(f"Wallet '{wallet.wallet}' does not know {txid}: {e}") from e

    def _block_height(self, block_hash: str) -> int:
        try:
            header = self.node.get_block_header(block_hash)
        except NodeRPCError as e:
            raise ReconcileError(f"Failed to fetch header of block {block_hash}: {e}") from e
        try:
            return int(header["height"])
        except (KeyError, TypeError, ValueError) as e:
            raise ReconcileError(f"Malformed header for block {block_hash}: {header!r}") from e

    def _raw_hex(
        self,
        txid: str,
        wallet: NodeClient,
        blockhash: str | None = None,
        wallet_hex: str = "",
    ) -> str:
        """
        Fetch raw transaction hex from the node.

        Without ``-txindex`` the node only serves mempool transactions or
        ones in a given block, so fall back to the wallet's copy.
        """
        try:
            return self.node.get_raw_transaction(txid, blockhash)
        except NodeRPCError as e:
            logger.debug(f"getrawtransaction {txid} failed ({e}), trying wallet copy")
            if wallet_hex:
                return wallet_hex
            return wallet.get_transaction(txid).hex

    def _decode_hex(self, raw_hex: str, txid: str) -> DecodedTransaction:
        try:
            decoded = self.node.decode_raw_transaction(raw_hex)
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            raise DecodeFailure(f"Malformed decoded transaction {txid}: {e}") from e
        if decoded.txid != txid:
            raise DecodeFailure(f"Decoded txid {decoded.txid} does not match {txid}")
        return decoded

    def _decode(
        self, txid: str, wallet: NodeClient, blockhash: str, wallet_hex: str
    ) -> DecodedTransaction:
        try:
            raw_hex = self._raw_hex(txid, wallet, blockhash, wallet_hex)
            return self._decode_hex(raw_hex, txid)
        except NodeRPCError as e:
            raise DecodeFailure(f"Failed to fetch or decode {txid}: {e}") from e

    def _prev_transaction(self, txid: str, wallet: NodeClient) -> DecodedTransaction:
        if txid not in self._prev_tx_cache:
            self._prev_tx_cache[txid] = self._decode_hex(self._raw_hex(txid, wallet), txid)
        return self._prev_tx_cache[txid]

    def _resolve_prevout(self, tx_input: TxInput, wallet: NodeClient) -> TxOutput:
        prevout = tx_input.prevout
        if prevout is None:
            raise PrevOutUnresolvable("Coinbase input has no previous output")

        try:
            prev_tx = self._prev_transaction(prevout.txid, wallet)
        except (NodeRPCError, DecodeFailure) as e:
            raise PrevOutUnresolvable(
                f"Cannot fetch previous transaction {prevout.txid}: {e}"
            ) from e

        if prevout.vout >= len(prev_tx.outputs):
            raise PrevOutUnresolvable(
                f"Output index {prevout.vout} out of range for {prevout.txid} "
                f"({len(prev_tx.outputs)} outputs)"
            )
        output = prev_tx.outputs[prevout.vout]
        if output.address is None:
            raise PrevOutUnresolvable(f"Previous output {prevout} has no address")
        return output

    def _resolve_funding(self, tx: DecodedTransaction, wallet: NodeClient) -> tuple[Address, int]:
        if not tx.inputs:
            raise PrevOutUnresolvable(f"Transaction {tx.txid} has no inputs")

        if self.input_policy == InputPolicy.FIRST:
            selected = tx.inputs[:1]
            if len(tx.inputs) > 1:
                logger.warning(
                    f"Transaction {tx.txid} has {len(tx.inputs)} inputs; "
                    "only the first is attributed"
                )
        else:
            selected = tx.inputs

        outputs = [self._resolve_prevout(tx_input, wallet) for tx_input in selected]
        address = outputs[0].address
        assert address is not None
        return address, sum(output.value for output in outputs)

    def _owned_by(self, address: Address, wallet: NodeClient) -> bool:
        try:
            info = wallet.get_address_info(address)
        except NodeRPCError as e:
            raise ReconcileError(f"Ownership query for {address} failed: {e}") from e
        return bool(info.get("ismine", False))

    def _classify_outputs(
        self, tx: DecodedTransaction, destination: Address, wallet: NodeClient
    ) -> tuple[TxOutput | None, TxOutput | None]:
        payment: TxOutput | None = None
        change: TxOutput | None = None

        for output in tx.outputs:
            if output.address is None:
                logger.warning(f"Output {output.n} of {tx.txid} has no address, skipping")
                continue

            if output.address == destination:
                if payment is not None:
                    logger.warning(
                        f"Multiple outputs pay {destination}; using output {output.n}"
                    )
                payment = output
            elif (
                self.change_policy == ChangePolicy.ADDRESS_INEQUALITY
                or self._owned_by(output.address, wallet)
            ):
                if change is not None:
                    logger.warning(
                        f"Multiple change candidates in {tx.txid}; using output {output.n}"
                    )
                change = output
            else:
                logger.warning(
                    f"Output {output.n} to {output.address} belongs to neither party, ignoring"
                )

        if payment is None:
            logger.warning(f"No output of {tx.txid} pays {destination}")
        if change is None:
            logger.debug(f"Transaction {tx.txid} has no change output")
        return payment, change

    def _check_wallet_fee(
        self, wallet_tx: WalletTransaction, tx: DecodedTransaction, fee: int
    ) -> None:
        # The wallet's fee covers all inputs and outputs, so it is only
        # comparable when the record does too
        if wallet_tx.fee is None:
            return
        covers_all_inputs = self.input_policy == InputPolicy.ALL or len(tx.inputs) == 1
        if covers_all_inputs and abs(wallet_tx.fee) != fee:
            logger.warning(
                f"Computed fee {format_btc(fee)} differs from wallet-reported fee "
                f"{format_btc(abs(wallet_tx.fee))} for {tx.txid}"
            )
