"""
Single-recipient payment via the wallet ``send`` RPC.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from paytrail.errors import AddressUnparseable, NodeRPCError, PaymentError
from paytrail.models import Address, btc_to_sats, format_btc, is_txid, sats_to_btc
from paytrail.rpc import NodeClient


class SendRequest(BaseModel):
    """
    Arguments of the ``send`` RPC.

    Only the recipient map is set by this workflow. The remaining fields
    mirror the RPC's optional positional parameters; ``None`` means "use the
    node's default".
    """

    recipients: dict[str, int] = Field(..., min_length=1)  # address -> satoshis
    conf_target: int | None = Field(default=None, ge=1)
    estimate_mode: str | None = None
    fee_rate: Decimal | None = Field(default=None, ge=0)  # sat/vB
    options: dict[str, Any] | None = None

    @field_validator("recipients")
    @classmethod
    def validate_amounts(cls, v: dict[str, int]) -> dict[str, int]:
        for address, sats in v.items():
            if sats <= 0:
                raise ValueError(f"Amount for {address} must be positive")
        return v

    def to_params(self) -> list[Any]:
        outputs = {address: sats_to_btc(sats) for address, sats in self.recipients.items()}
        return [outputs, self.conf_target, self.estimate_mode, self.fee_rate, self.options]


class SendResult(BaseModel):
    complete: bool
    txid: str | None = None
    hex: str | None = None


class PaymentDispatcher:
    """Submits one payment and returns its txid."""

    def pay(self, wallet: NodeClient, to_address: str, amount: Decimal | int | str) -> str:
        """
        Pay ``amount`` BTC from ``wallet`` to ``to_address``.

        Raises:
            PaymentError: Invalid amount, RPC failure, or an incomplete
                (not fully signed) transaction
        """
        try:
            destination = Address(to_address)
            sats = btc_to_sats(amount)
        except (AddressUnparseable, ValueError) as e:
            raise PaymentError(str(e)) from e
        if sats <= 0:
            raise PaymentError(f"Payment amount must be positive, got {amount}")

        request = SendRequest(recipients={destination: sats})
        logger.info(f"Sending {format_btc(sats)} BTC from '{wallet.wallet}' to {destination}")

        try:
            response = wallet.call("send", request.to_params())
        except NodeRPCError as e:
            raise PaymentError(f"send failed: {e}") from e

        try:
            result = SendResult.model_validate(response)
        except ValidationError as e:
            raise PaymentError(f"Unexpected send response: {response!r}") from e
        if not result.complete:
            raise PaymentError("Node returned an incomplete transaction (more signatures needed)")
        if not result.txid or not is_txid(result.txid):
            raise PaymentError(f"Node returned an invalid txid: {result.txid!r}")

        logger.info(f"Transaction sent with TXID: {result.txid}")
        return result.txid
