"""
paytrail - Regtest payment workflow with transaction reconciliation

Provisions wallets, funds them by mining, sends one payment and reconciles
its inputs, outputs, change and fee from node data.
"""

__version__ = "0.1.0"

from paytrail.errors import (
    AddressUnparseable,
    DecodeFailure,
    FundingError,
    NodeConnectionError,
    NodeRPCError,
    NotConfirmed,
    PaymentError,
    PaytrailError,
    PrevOutUnresolvable,
    ProvisionError,
    ReconcileError,
    RecordWriteError,
)
from paytrail.funding import FundingEngine, FundingResult
from paytrail.models import Address, ChangePolicy, InputPolicy, ReconciledRecord
from paytrail.payment import PaymentDispatcher, SendRequest
from paytrail.provisioning import ProvisionOutcome, ProvisionResult, WalletProvisioner
from paytrail.reconcile import TransactionReconciler
from paytrail.record import format_record, parse_record, write_record
from paytrail.rpc import NodeClient

__all__ = [
    "Address",
    "AddressUnparseable",
    "ChangePolicy",
    "DecodeFailure",
    "FundingEngine",
    "FundingError",
    "FundingResult",
    "InputPolicy",
    "NodeClient",
    "NodeConnectionError",
    "NodeRPCError",
    "NotConfirmed",
    "PaymentDispatcher",
    "PaymentError",
    "PaytrailError",
    "PrevOutUnresolvable",
    "ProvisionError",
    "ProvisionOutcome",
    "ProvisionResult",
    "ReconcileError",
    "ReconciledRecord",
    "RecordWriteError",
    "SendRequest",
    "TransactionReconciler",
    "WalletProvisioner",
    "format_record",
    "parse_record",
    "write_record",
]
