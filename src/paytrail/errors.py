"""
Error taxonomy for the payment workflow.

Every failure surfaces to the top level and aborts the run. Each stage
raises its own exception type so callers and tests can tell which stage
failed.
"""

from __future__ import annotations


class PaytrailError(Exception):
    """Base class for all workflow errors."""

    stage = "workflow"


class NodeConnectionError(PaytrailError):
    """Node unreachable, timed out, or rejected our credentials."""

    stage = "node connection"


class NodeRPCError(PaytrailError):
    """The node answered with a JSON-RPC error object."""

    stage = "node rpc"

    def __init__(self, method: str, code: int | None, message: str):
        self.method = method
        self.code = code
        self.message = message
        super().__init__(f"RPC error {code} in {method}: {message}")


class ProvisionError(PaytrailError):
    """Wallet could be neither loaded nor created."""

    stage = "wallet provisioning"


class FundingError(PaytrailError):
    """Block generation or balance query failed."""

    stage = "funding"


class PaymentError(PaytrailError):
    """Send failed or the node reported an incomplete transaction."""

    stage = "payment"


class ReconcileError(PaytrailError):
    """Transaction could not be reconciled."""

    stage = "reconciliation"


class NotConfirmed(ReconcileError):
    """Transaction has no containing block yet."""


class PrevOutUnresolvable(ReconcileError):
    """The output spent by the funding input could not be resolved."""


class DecodeFailure(ReconcileError):
    """Raw transaction could not be fetched or decoded."""


class AddressUnparseable(ReconcileError):
    """A string could not be interpreted as an address."""


class RecordWriteError(PaytrailError, OSError):
    """Writing the reconciled record to disk failed."""

    stage = "record write"
