"""
Command-line interface for paytrail.
"""

from __future__ import annotations

import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger
from pydantic import ValidationError

from paytrail.config import Settings, get_settings
from paytrail.errors import PaytrailError
from paytrail.models import ChangePolicy, InputPolicy, format_btc
from paytrail.reconcile import TransactionReconciler
from paytrail.record import format_record, write_record
from paytrail.workflow import client_from_settings, run_workflow

app = typer.Typer(
    name="paytrail",
    help="Regtest payment workflow with transaction reconciliation",
    add_completion=False,
)


def setup_logging(level: str) -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _apply_overrides(settings: Settings, **overrides: object) -> Settings:
    values = {key: value for key, value in overrides.items() if value is not None}
    if not values:
        return settings
    try:
        return Settings.model_validate({**settings.model_dump(), **values})
    except ValidationError as e:
        raise typer.BadParameter(str(e)) from e


def _parse_amount(amount: str | None) -> Decimal | None:
    if amount is None:
        return None
    try:
        return Decimal(amount)
    except InvalidOperation as e:
        raise typer.BadParameter(f"Invalid amount: {amount}") from e


def _fail(error: PaytrailError) -> typer.Exit:
    logger.error(f"Failed during {error.stage}: {error}")
    return typer.Exit(code=1)


@app.command()
def run(
    rpc_url: Annotated[str | None, typer.Option("--rpc-url", help="Node RPC URL")] = None,
    rpc_user: Annotated[str | None, typer.Option("--rpc-user", help="RPC username")] = None,
    rpc_password: Annotated[
        str | None, typer.Option("--rpc-password", help="RPC password")
    ] = None,
    amount: Annotated[
        str | None, typer.Option("--amount", "-a", help="Amount to send in BTC")
    ] = None,
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Record output file")
    ] = None,
    change_policy: Annotated[
        ChangePolicy | None,
        typer.Option("--change-policy", help="Change attribution: inequality | ownership"),
    ] = None,
    input_policy: Annotated[
        InputPolicy | None,
        typer.Option("--input-policy", help="Funding inputs: first | all"),
    ] = None,
    premine: Annotated[
        int | None, typer.Option("--premine", help="Blocks to mine before the balance loop")
    ] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l")] = None,
) -> None:
    """Provision wallets, fund, pay, confirm, reconcile and write the record."""
    settings = _apply_overrides(
        get_settings(),
        rpc_url=rpc_url,
        rpc_user=rpc_user,
        rpc_password=rpc_password,
        amount=_parse_amount(amount),
        output_path=output,
        change_policy=change_policy,
        input_policy=input_policy,
        premine_blocks=premine,
        log_level=log_level,
    )
    setup_logging(settings.log_level)

    try:
        with client_from_settings(settings) as node:
            result = run_workflow(settings, node)
    except PaytrailError as e:
        raise _fail(e) from e

    record = result.record
    typer.echo(format_record(record), nl=False)
    typer.echo(
        f"\nPaid {format_btc(record.payment_amount)} BTC to {record.payment_address} "
        f"in block {record.block_height}; record written to {result.output_path}"
    )


@app.command()
def reconcile(
    txid: Annotated[str, typer.Argument(help="Confirmed transaction id")],
    destination: Annotated[
        str, typer.Option("--destination", "-d", help="Address the payment was sent to")
    ],
    wallet: Annotated[
        str | None, typer.Option("--wallet", "-w", help="Sending wallet name")
    ] = None,
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write the record to this file")
    ] = None,
    change_policy: Annotated[ChangePolicy | None, typer.Option("--change-policy")] = None,
    input_policy: Annotated[InputPolicy | None, typer.Option("--input-policy")] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l")] = None,
) -> None:
    """Reconcile an already confirmed transaction."""
    settings = _apply_overrides(
        get_settings(),
        miner_wallet=wallet,
        change_policy=change_policy,
        input_policy=input_policy,
        log_level=log_level,
    )
    setup_logging(settings.log_level)

    try:
        with client_from_settings(settings) as node:
            reconciler = TransactionReconciler(
                node,
                change_policy=settings.change_policy,
                input_policy=settings.input_policy,
            )
            record = reconciler.reconcile(
                txid, destination, node.for_wallet(settings.miner_wallet)
            )
        if output is not None:
            write_record(record, output)
    except PaytrailError as e:
        raise _fail(e) from e

    typer.echo(format_record(record), nl=False)


@app.command()
def info(
    log_level: Annotated[str | None, typer.Option("--log-level", "-l")] = None,
) -> None:
    """Show the node's chain, height and best block."""
    settings = _apply_overrides(get_settings(), log_level=log_level)
    setup_logging(settings.log_level)

    try:
        with client_from_settings(settings) as node:
            chain_info = node.get_blockchain_info()
    except PaytrailError as e:
        raise _fail(e) from e

    typer.echo(f"Chain: {chain_info.get('chain')}")
    typer.echo(f"Blocks: {chain_info.get('blocks')}")
    typer.echo(f"Best block: {chain_info.get('bestblockhash')}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
