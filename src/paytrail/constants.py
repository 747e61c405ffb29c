"""
Bitcoin amount and chain constants used across the workflow.
"""

from __future__ import annotations

from decimal import Decimal

# Base units per whole coin
SATS_PER_BTC = 100_000_000

# Amounts are reported by the node with 8 fractional digits
BTC_DECIMALS = 8
BTC_QUANTUM = Decimal("0.00000001")

# A coinbase output becomes spendable after this many further confirmations.
# From an empty regtest chain the first reward matures at block 101.
COINBASE_MATURITY = 100

# Transaction ids are double-SHA256 hashes rendered as hex
TXID_HEX_LENGTH = 64

# Bitcoin Core RPC error codes we branch on
RPC_WALLET_ERROR = -4
RPC_INVALID_ADDRESS_OR_KEY = -5
RPC_WALLET_NOT_FOUND = -18
RPC_WALLET_ALREADY_LOADED = -35
