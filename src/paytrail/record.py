"""
Fixed-layout text record for a reconciled payment.

Ten newline-separated fields in this order:

    txid
    input_address
    input_amount        (8 decimals)
    payment_address
    payment_amount      (8 decimals)
    change_address
    change_amount       (8 decimals)
    fee                 (8 decimals, written as a negative number)
    block_height
    block_hash
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from loguru import logger

from paytrail.errors import RecordWriteError
from paytrail.models import ReconciledRecord, btc_to_sats, format_btc

RECORD_FIELD_COUNT = 10


def format_fee(fee: int) -> str:
    """The record carries the fee as the negative of its magnitude."""
    if fee == 0:
        return format_btc(0)
    return f"-{format_btc(abs(fee))}"


def format_record(record: ReconciledRecord) -> str:
    fields = [
        record.txid,
        record.input_address,
        format_btc(record.input_amount),
        record.payment_address or "",
        format_btc(record.payment_amount),
        record.change_address or "",
        format_btc(record.change_amount),
        format_fee(record.fee),
        str(record.block_height),
        record.block_hash,
    ]
    return "\n".join(fields) + "\n"


def parse_record(text: str) -> ReconciledRecord:
    """
    Parse a record produced by ``format_record``.

    Raises:
        ValueError: Wrong number of fields or malformed values
    """
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    if len(lines) != RECORD_FIELD_COUNT:
        raise ValueError(f"Expected {RECORD_FIELD_COUNT} fields, got {len(lines)}")

    (
        txid,
        input_address,
        input_amount,
        payment_address,
        payment_amount,
        change_address,
        change_amount,
        fee,
        block_height,
        block_hash,
    ) = lines

    return ReconciledRecord(
        txid=txid,
        input_address=input_address,
        input_amount=btc_to_sats(input_amount),
        payment_address=payment_address or None,
        payment_amount=btc_to_sats(payment_amount),
        change_address=change_address or None,
        change_amount=btc_to_sats(change_amount),
        fee=abs(btc_to_sats(fee)),
        block_height=int(block_height),
        block_hash=block_hash,
    )


def write_record(record: ReconciledRecord, path: Path | str) -> Path:
    """
    Write the record atomically.

    The content goes to a temporary file in the target directory which is
    then renamed over ``path``, so a failed write never leaves a partial
    record behind.

    Raises:
        RecordWriteError: If the file cannot be written
    """
    target = Path(path)
    content = format_record(record)
    tmp_name = None
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, target)
        tmp_name = None
    except OSError as e:
        raise RecordWriteError(f"Failed to write record to {target}: {e}") from e
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)

    logger.info(f"Transaction details written to {target}")
    return target
