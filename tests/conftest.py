"""
Test configuration and fixtures.

Provides an in-memory regtest node that speaks Bitcoin Core's JSON-RPC
over ``httpx.MockTransport``, so the real ``NodeClient`` is exercised
without a running node. It models wallets, coinbase maturity, single-input
payments with change, and a node without ``-txindex``.
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from urllib.parse import unquote

import httpx
import pytest

from paytrail.rpc import NodeClient

COINBASE_MATURITY = 100
HALVING_INTERVAL = 150
INITIAL_SUBSIDY = Decimal("50")
DEFAULT_FEE = Decimal("0.00000141")

WALLET_METHODS = {
    "getbalance",
    "getnewaddress",
    "send",
    "gettransaction",
    "getaddressinfo",
}


def _hash(*parts: object) -> str:
    return hashlib.sha256("|".join(str(p) for p in parts).encode()).hexdigest()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return float(obj)
    raise TypeError(f"Cannot serialize {type(obj).__name__}")


class RPCFailure(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class FakeTx:
    txid: str
    vin: list[dict[str, Any]]
    vout: list[dict[str, Any]]
    sender: str | None = None
    fee: Decimal | None = None
    blockhash: str | None = None

    @property
    def hex(self) -> str:
        return "0200000001" + self.txid

    @property
    def is_coinbase(self) -> bool:
        return "coinbase" in self.vin[0]


@dataclass
class FakeRegtestNode:
    """In-memory stand-in for a regtest bitcoind with wallet support."""

    rpc_user: str = "alice"
    rpc_password: str = "password"
    txindex: bool = False
    fee: Decimal = DEFAULT_FEE
    change_first: bool = False
    incomplete_send: bool = False
    prune_funding_on_send: bool = False

    wallets_on_disk: set[str] = field(default_factory=set)
    loaded_wallets: set[str] = field(default_factory=set)
    blocks: list[str] = field(default_factory=lambda: [_hash("genesis")])
    txs: dict[str, FakeTx] = field(default_factory=dict)
    mempool: list[str] = field(default_factory=list)
    spent: set[tuple[str, int]] = field(default_factory=set)
    address_owner: dict[str, str] = field(default_factory=dict)
    address_label: dict[str, str] = field(default_factory=dict)
    failures: dict[str, tuple[int, str]] = field(default_factory=dict)
    calls: list[tuple[str | None, str, list[Any]]] = field(default_factory=list)
    _counter: int = 0

    # ------------------------------------------------------------------
    # Chain state helpers
    # ------------------------------------------------------------------

    @property
    def height(self) -> int:
        return len(self.blocks) - 1

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def new_address(self, wallet: str, label: str = "") -> str:
        address = "bcrt1q" + _hash("addr", wallet, self._next())[:38]
        self.address_owner[address] = wallet
        self.address_label[address] = label
        return address

    def confirmations(self, tx: FakeTx) -> int:
        if tx.blockhash is None:
            return 0
        return self.height - self.blocks.index(tx.blockhash) + 1

    def spendable_outpoints(self, wallet: str) -> list[tuple[str, int, Decimal]]:
        result = []
        for tx in self.txs.values():
            depth = self.confirmations(tx)
            if depth == 0:
                continue
            if tx.is_coinbase and depth < COINBASE_MATURITY + 1:
                continue
            for out in tx.vout:
                address = out["scriptPubKey"].get("address")
                if self.address_owner.get(address) != wallet:
                    continue
                if (tx.txid, out["n"]) in self.spent:
                    continue
                result.append((tx.txid, out["n"], out["value"]))
        return result

    def add_transaction(
        self,
        inputs: list[tuple[str, int]],
        outputs: list[tuple[str | None, Decimal]],
        sender: str | None = None,
        fee: Decimal | None = None,
    ) -> str:
        """Put a transaction spending ``inputs`` into the mempool."""
        txid = _hash("tx", self._next())
        vin = [{"txid": prev_txid, "vout": n, "sequence": 4294967293} for prev_txid, n in inputs]
        vout = []
        for n, (address, value) in enumerate(outputs):
            if address is None:
                script = {"type": "nulldata", "hex": "6a0474657374"}
            else:
                script = {"type": "witness_v0_keyhash", "address": address}
            vout.append({"value": Decimal(value), "n": n, "scriptPubKey": script})
        self.txs[txid] = FakeTx(txid=txid, vin=vin, vout=vout, sender=sender, fee=fee)
        self.spent.update(inputs)
        self.mempool.append(txid)
        return txid

    def mine(self, count: int, address: str) -> list[str]:
        hashes = []
        for _ in range(count):
            height = self.height + 1
            block_hash = _hash("block", height, self._next())
            subsidy = INITIAL_SUBSIDY / (2 ** (height // HALVING_INTERVAL))
            coinbase_txid = _hash("coinbase", height)
            self.txs[coinbase_txid] = FakeTx(
                txid=coinbase_txid,
                vin=[{"coinbase": f"{height:06x}", "sequence": 4294967295}],
                vout=[
                    {
                        "value": subsidy,
                        "n": 0,
                        "scriptPubKey": {"type": "witness_v0_keyhash", "address": address},
                    }
                ],
                blockhash=block_hash,
            )
            for txid in self.mempool:
                self.txs[txid].blockhash = block_hash
            self.mempool = []
            self.blocks.append(block_hash)
            hashes.append(block_hash)
        return hashes

    def forget(self, txid: str) -> None:
        """Drop a transaction as if the node had pruned it."""
        del self.txs[txid]

    def balance(self, wallet: str) -> Decimal:
        return sum((value for _, _, value in self.spendable_outpoints(wallet)), Decimal("0"))

    def methods_called(self) -> list[str]:
        return [method for _, method, _ in self.calls]

    # ------------------------------------------------------------------
    # RPC handlers
    # ------------------------------------------------------------------

    def _getblockchaininfo(self, wallet: str | None, params: list[Any]) -> Any:
        return {"chain": "regtest", "blocks": self.height, "bestblockhash": self.blocks[-1]}

    def _loadwallet(self, wallet: str | None, params: list[Any]) -> Any:
        name = params[0]
        if name in self.loaded_wallets:
            raise RPCFailure(-35, f'Wallet "{name}" is already loaded.')
        if name not in self.wallets_on_disk:
            raise RPCFailure(
                -18,
                f"Wallet file verification failed. Failed to load database path "
                f"'/regtest/wallets/{name}'. Path does not exist.",
            )
        self.loaded_wallets.add(name)
        return {"name": name}

    def _createwallet(self, wallet: str | None, params: list[Any]) -> Any:
        name = params[0]
        if name in self.wallets_on_disk:
            raise RPCFailure(
                -4,
                f"Wallet file verification failed. Failed to create database path "
                f"'/regtest/wallets/{name}'. Database already exists.",
            )
        self.wallets_on_disk.add(name)
        self.loaded_wallets.add(name)
        return {"name": name}

    def _generatetoaddress(self, wallet: str | None, params: list[Any]) -> Any:
        count, address = params
        return self.mine(count, address)

    def _getbalance(self, wallet: str | None, params: list[Any]) -> Any:
        assert wallet is not None
        return self.balance(wallet)

    def _getnewaddress(self, wallet: str | None, params: list[Any]) -> Any:
        assert wallet is not None
        label = params[0] if params else ""
        return self.new_address(wallet, label)

    def _send(self, wallet: str | None, params: list[Any]) -> Any:
        assert wallet is not None
        outputs = {address: Decimal(str(value)) for address, value in params[0].items()}
        total = sum(outputs.values(), Decimal("0"))

        candidates = [
            utxo for utxo in self.spendable_outpoints(wallet) if utxo[2] >= total + self.fee
        ]
        if not candidates:
            raise RPCFailure(-6, "Insufficient funds")
        prev_txid, prev_n, prev_value = candidates[0]

        change = prev_value - total - self.fee
        tx_outputs: list[tuple[str | None, Decimal]] = list(outputs.items())
        if change > 0:
            change_output = (self.new_address(wallet), change)
            if self.change_first:
                tx_outputs.insert(0, change_output)
            else:
                tx_outputs.append(change_output)

        if self.incomplete_send:
            return {"complete": False, "psbt": "cHNidP8BAH0CAAAAAQ=="}

        txid = self.add_transaction(
            [(prev_txid, prev_n)], tx_outputs, sender=wallet, fee=self.fee
        )
        if self.prune_funding_on_send:
            self.forget(prev_txid)
        return {"txid": txid, "complete": True}

    def _involves(self, tx: FakeTx, wallet: str) -> bool:
        if tx.sender == wallet:
            return True
        return any(
            self.address_owner.get(out["scriptPubKey"].get("address")) == wallet
            for out in tx.vout
        )

    def _gettransaction(self, wallet: str | None, params: list[Any]) -> Any:
        assert wallet is not None
        txid = params[0]
        tx = self.txs.get(txid)
        if tx is None or not self._involves(tx, wallet):
            raise RPCFailure(-5, "Invalid or non-wallet transaction id")
        result: dict[str, Any] = {
            "txid": txid,
            "confirmations": self.confirmations(tx),
            "hex": tx.hex,
        }
        if tx.blockhash is not None:
            result["blockhash"] = tx.blockhash
            result["blockheight"] = self.blocks.index(tx.blockhash)
        if tx.sender == wallet and tx.fee is not None:
            result["fee"] = -tx.fee
        return result

    def _getrawtransaction(self, wallet: str | None, params: list[Any]) -> Any:
        txid = params[0]
        blockhash = params[2] if len(params) > 2 else None
        tx = self.txs.get(txid)
        if tx is not None:
            if self.txindex or txid in self.mempool:
                return tx.hex
            if blockhash is not None and tx.blockhash == blockhash:
                return tx.hex
        if blockhash is not None:
            raise RPCFailure(-5, "No such transaction found in the provided block.")
        raise RPCFailure(
            -5,
            "No such mempool or blockchain transaction. "
            "Use gettransaction for wallet transactions.",
        )

    def _decoderawtransaction(self, wallet: str | None, params: list[Any]) -> Any:
        raw_hex = params[0]
        for tx in self.txs.values():
            if tx.hex == raw_hex:
                return {
                    "txid": tx.txid,
                    "hash": tx.txid,
                    "version": 2,
                    "vin": tx.vin,
                    "vout": tx.vout,
                }
        raise RPCFailure(-22, "TX decode failed")

    def _getblockheader(self, wallet: str | None, params: list[Any]) -> Any:
        block_hash = params[0]
        if block_hash not in self.blocks:
            raise RPCFailure(-5, "Block not found")
        height = self.blocks.index(block_hash)
        return {
            "hash": block_hash,
            "height": height,
            "confirmations": self.height - height + 1,
        }

    def _getaddressinfo(self, wallet: str | None, params: list[Any]) -> Any:
        address = params[0]
        return {
            "address": address,
            "ismine": self.address_owner.get(address) == wallet,
            "labels": [self.address_label.get(address, "")],
        }

    def _getmempoolentry(self, wallet: str | None, params: list[Any]) -> Any:
        txid = params[0]
        if txid not in self.mempool:
            raise RPCFailure(-5, "Transaction not in mempool")
        return {"vsize": 141, "fees": {"base": self.txs[txid].fee or Decimal("0")}}

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _authorized(self, request: httpx.Request) -> bool:
        expected = base64.b64encode(f"{self.rpc_user}:{self.rpc_password}".encode()).decode()
        return request.headers.get("authorization") == f"Basic {expected}"

    def handle(self, request: httpx.Request) -> httpx.Response:
        if not self._authorized(request):
            return httpx.Response(401)

        path = request.url.path
        wallet = unquote(path[len("/wallet/") :]) if path.startswith("/wallet/") else None

        payload = json.loads(request.content)
        method = payload["method"]
        params = payload.get("params", [])
        self.calls.append((wallet, method, params))

        try:
            if method in self.failures:
                raise RPCFailure(*self.failures[method])
            if method in WALLET_METHODS:
                if wallet is None:
                    raise RPCFailure(-19, "Wallet file not specified")
                if wallet not in self.loaded_wallets:
                    raise RPCFailure(-18, "Requested wallet does not exist or is not loaded")
            handler = getattr(self, f"_{method}", None)
            if handler is None:
                raise RPCFailure(-32601, "Method not found")
            body = {"result": handler(wallet, params), "error": None, "id": payload["id"]}
            status = 200
        except RPCFailure as e:
            body = {
                "result": None,
                "error": {"code": e.code, "message": e.message},
                "id": payload["id"],
            }
            status = 500

        return httpx.Response(
            status,
            content=json.dumps(body, default=_json_default),
            headers={"Content-Type": "application/json"},
        )


@pytest.fixture
def regtest_node() -> FakeRegtestNode:
    return FakeRegtestNode()


@pytest.fixture
def node_client(regtest_node: FakeRegtestNode):
    client = NodeClient(transport=httpx.MockTransport(regtest_node.handle))
    yield client
    client.close()


@pytest.fixture
def miner(regtest_node: FakeRegtestNode, node_client: NodeClient) -> NodeClient:
    """Loaded, empty Miner wallet."""
    regtest_node.wallets_on_disk.add("Miner")
    regtest_node.loaded_wallets.add("Miner")
    return node_client.for_wallet("Miner")


@pytest.fixture
def trader(regtest_node: FakeRegtestNode, node_client: NodeClient) -> NodeClient:
    """Loaded, empty Trader wallet."""
    regtest_node.wallets_on_disk.add("Trader")
    regtest_node.loaded_wallets.add("Trader")
    return node_client.for_wallet("Trader")


@pytest.fixture
def mining_address(regtest_node: FakeRegtestNode, miner: NodeClient) -> str:
    return regtest_node.new_address("Miner", "Mining Reward")


@pytest.fixture
def funded_miner(
    regtest_node: FakeRegtestNode, miner: NodeClient, mining_address: str
) -> NodeClient:
    """Miner wallet with one matured coinbase (101 blocks)."""
    regtest_node.mine(COINBASE_MATURITY + 1, mining_address)
    return miner
