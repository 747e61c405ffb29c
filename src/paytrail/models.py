"""
Data models using Pydantic for validation of node responses.

Amounts are carried as integer satoshis. Node JSON is parsed with
``Decimal`` so conversion never passes through binary floats.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, GetCoreSchemaHandler, field_validator
from pydantic_core import core_schema

from paytrail.constants import BTC_QUANTUM, SATS_PER_BTC, TXID_HEX_LENGTH
from paytrail.errors import AddressUnparseable

BECH32_PREFIXES = ("bc1", "tb1", "bcrt1")

_ADDRESS_CHARS = re.compile(r"^[A-Za-z0-9]+$")
_TXID_PATTERN = re.compile(rf"^[0-9a-fA-F]{{{TXID_HEX_LENGTH}}}$")


def btc_to_sats(value: Any) -> int:
    """
    Convert a BTC amount (Decimal, str or int) to satoshis.

    Raises:
        ValueError: If the amount has more than 8 fractional digits or is
            not a number
    """
    if isinstance(value, float):
        # repr() of a float is the shortest string that round-trips
        value = repr(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    sats = amount * SATS_PER_BTC
    if sats != sats.to_integral_value():
        raise ValueError(f"Amount {value} is not a whole number of satoshis")
    return int(sats)


def sats_to_btc(sats: int) -> Decimal:
    """Convert satoshis to a Decimal with exactly 8 fractional digits."""
    return (Decimal(sats) / SATS_PER_BTC).quantize(BTC_QUANTUM)


def format_btc(sats: int) -> str:
    return f"{sats_to_btc(sats):.8f}"


def is_txid(value: str) -> bool:
    return bool(_TXID_PATTERN.match(value))


class Address(str):
    """
    Address in canonical string form.

    Bech32 addresses are case-insensitive, so they are lowered; a
    mixed-case bech32 string is invalid. Base58 addresses are case
    sensitive and kept verbatim. Comparison is plain string equality of
    the canonical form.
    """

    __slots__ = ()

    def __new__(cls, value: str) -> Address:
        return super().__new__(cls, cls.canonicalize(value))

    @staticmethod
    def canonicalize(value: str) -> str:
        if not isinstance(value, str) or not value:
            raise AddressUnparseable(f"Empty or non-string address: {value!r}")
        if not _ADDRESS_CHARS.match(value):
            raise AddressUnparseable(f"Address contains invalid characters: {value!r}")
        lowered = value.lower()
        if lowered.startswith(BECH32_PREFIXES):
            if value != lowered and value != value.upper():
                raise AddressUnparseable(f"Mixed-case bech32 address: {value}")
            return lowered
        return value

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        return core_schema.no_info_after_validator_function(
            cls._validate, core_schema.str_schema()
        )

    @classmethod
    def _validate(cls, value: str) -> Address:
        # pydantic only collects ValueError into a ValidationError
        try:
            return cls(value)
        except AddressUnparseable as e:
            raise ValueError(str(e)) from e


class ChangePolicy(str, Enum):
    """How a non-payment output is attributed to the sender."""

    ADDRESS_INEQUALITY = "inequality"
    OWNERSHIP = "ownership"


class InputPolicy(str, Enum):
    """Which inputs make up the funding side of the record."""

    FIRST = "first"
    ALL = "all"


class OutPoint(BaseModel):
    txid: str
    vout: int = Field(..., ge=0)

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


class TxInput(BaseModel):
    prevout: OutPoint | None = None  # None for coinbase inputs
    coinbase: str | None = None

    @property
    def is_coinbase(self) -> bool:
        return self.prevout is None


class TxOutput(BaseModel):
    n: int = Field(..., ge=0)
    value: int = Field(..., ge=0)  # satoshis
    address: Address | None = None
    script_type: str = ""


class DecodedTransaction(BaseModel):
    txid: str
    inputs: list[TxInput] = Field(default_factory=list)
    outputs: list[TxOutput] = Field(default_factory=list)

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> DecodedTransaction:
        """
        Build from a ``decoderawtransaction`` (or verbose
        ``getrawtransaction``) result.

        Output addresses come from ``scriptPubKey.address`` with a fallback
        to the pre-v22 ``scriptPubKey.addresses`` list. Outputs whose script
        has no address (OP_RETURN, bare multisig, ...) get ``None``.
        """
        inputs = []
        for vin in data.get("vin", []):
            if "coinbase" in vin:
                inputs.append(TxInput(coinbase=vin["coinbase"]))
            else:
                inputs.append(TxInput(prevout=OutPoint(txid=vin["txid"], vout=vin["vout"])))

        outputs = []
        for index, vout in enumerate(data.get("vout", [])):
            script_pub_key = vout.get("scriptPubKey", {})
            raw_address = script_pub_key.get("address")
            if not raw_address and script_pub_key.get("addresses"):
                raw_address = script_pub_key["addresses"][0]
            try:
                address = Address(raw_address) if raw_address else None
            except AddressUnparseable:
                address = None
            outputs.append(
                TxOutput(
                    n=vout.get("n", index),
                    value=btc_to_sats(vout["value"]),
                    address=address,
                    script_type=script_pub_key.get("type", ""),
                )
            )

        return cls(txid=data["txid"], inputs=inputs, outputs=outputs)

    @property
    def total_output_value(self) -> int:
        return sum(output.value for output in self.outputs)


class WalletTransaction(BaseModel):
    """Wallet view of a transaction (``gettransaction``)."""

    txid: str
    confirmations: int = 0
    blockhash: str | None = None
    blockheight: int | None = None
    fee: int | None = None  # signed satoshis, negative for sends
    hex: str = ""

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> WalletTransaction:
        fee = data.get("fee")
        return cls(
            txid=data["txid"],
            confirmations=data.get("confirmations", 0),
            blockhash=data.get("blockhash"),
            blockheight=data.get("blockheight"),
            fee=btc_to_sats(fee) if fee is not None else None,
            hex=data.get("hex", ""),
        )

    @property
    def is_confirmed(self) -> bool:
        return self.blockhash is not None and self.confirmations > 0


class ReconciledRecord(BaseModel):
    """Reconciled economic shape of one confirmed payment."""

    txid: str
    input_address: Address
    input_amount: int = Field(..., ge=0)
    payment_address: Address | None = None
    payment_amount: int = Field(default=0, ge=0)
    change_address: Address | None = None
    change_amount: int = Field(default=0, ge=0)
    fee: int = Field(..., ge=0)
    block_height: int = Field(..., ge=0)
    block_hash: str

    model_config = ConfigDict(frozen=True)

    @field_validator("txid", "block_hash")
    @classmethod
    def validate_hash(cls, v: str) -> str:
        if not is_txid(v):
            raise ValueError(f"Expected {TXID_HEX_LENGTH} hex characters, got {v!r}")
        return v.lower()

    @property
    def balance_ok(self) -> bool:
        return self.input_amount == self.payment_amount + self.change_amount + self.fee
