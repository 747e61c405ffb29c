"""
Bitcoin Core JSON-RPC client.

Synchronous request/response transport over httpx. One client talks to the
node endpoint; ``for_wallet`` derives a client scoped to a loaded wallet
(``/wallet/<name>``) that shares the same connection pool.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from paytrail.constants import BTC_DECIMALS
from paytrail.errors import NodeConnectionError, NodeRPCError
from paytrail.models import Address, DecodedTransaction, WalletTransaction, btc_to_sats

# Timeout for regular RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0


def _json_default(obj: Any) -> Any:
    # Core accepts amounts as strings, which keeps all 8 digits exact
    if isinstance(obj, Decimal):
        return f"{obj:.{BTC_DECIMALS}f}"
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class NodeClient:
    """
    Client for a Bitcoin Core node's RPC interface.

    All calls block until the node answers. Transport failures raise
    ``NodeConnectionError``; error objects returned by the node raise
    ``NodeRPCError`` carrying the node's error code.
    """

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:18443",
        rpc_user: str = "alice",
        rpc_password: str = "password",
        timeout: float = DEFAULT_RPC_TIMEOUT,
        wallet: str | None = None,
        transport: httpx.BaseTransport | None = None,
        client: httpx.Client | None = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        self.timeout = timeout
        self.wallet = wallet
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=timeout, auth=(rpc_user, rpc_password), transport=transport
        )
        self._request_id = 0

    @property
    def endpoint(self) -> str:
        if self.wallet is None:
            return self.rpc_url
        return f"{self.rpc_url}/wallet/{quote(self.wallet, safe='')}"

    def for_wallet(self, wallet_name: str) -> NodeClient:
        """Return a client whose calls target the named wallet."""
        return NodeClient(
            rpc_url=self.rpc_url,
            rpc_user=self.rpc_user,
            rpc_password=self.rpc_password,
            timeout=self.timeout,
            wallet=wallet_name,
            client=self.client,
        )

    def call(self, method: str, params: list | None = None) -> Any:
        """
        Make an RPC call.

        Args:
            method: RPC method name
            params: Positional method parameters

        Returns:
            The ``result`` member of the response

        Raises:
            NodeRPCError: The node returned an error object
            NodeConnectionError: On connection, timeout or auth failure
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        logger.debug(f"RPC -> {method} {payload['params']} ({self.wallet or 'node'})")

        try:
            response = self.client.post(
                self.endpoint,
                content=json.dumps(payload, default=_json_default),
                headers={"Content-Type": "application/json"},
            )
        except httpx.TimeoutException as e:
            logger.error(f"RPC call timed out: {method} - {e}")
            raise NodeConnectionError(f"Timed out calling {method} at {self.rpc_url}") from e
        except httpx.HTTPError as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise NodeConnectionError(f"Cannot reach node at {self.rpc_url}: {e}") from e

        if response.status_code in (401, 403):
            raise NodeConnectionError(
                f"Node rejected credentials for user '{self.rpc_user}' "
                f"(HTTP {response.status_code})"
            )

        # Core reports RPC errors with HTTP 404/500 and a JSON body, so parse
        # the body before looking at the status code
        try:
            data = response.json(parse_float=Decimal)
        except ValueError as e:
            raise NodeConnectionError(
                f"Invalid response to {method} (HTTP {response.status_code})"
            ) from e
        if not isinstance(data, dict):
            raise NodeConnectionError(
                f"Invalid response to {method} (HTTP {response.status_code}): {data!r}"
            )

        error_info = data.get("error")
        if error_info:
            if isinstance(error_info, dict):
                code = error_info.get("code")
                message = error_info.get("message", str(error_info))
            else:
                code, message = None, str(error_info)
            logger.debug(f"RPC <- {method} error {code}: {message}")
            raise NodeRPCError(method, code, message)

        return data.get("result")

    def get_blockchain_info(self) -> dict[str, Any]:
        return self.call("getblockchaininfo")

    def load_wallet(self, wallet_name: str) -> dict[str, Any]:
        return self.call("loadwallet", [wallet_name])

    def create_wallet(self, wallet_name: str) -> dict[str, Any]:
        return self.call("createwallet", [wallet_name])

    def generate_to_address(self, count: int, address: str) -> list[str]:
        return self.call("generatetoaddress", [count, str(address)])

    def get_balance(self) -> int:
        """Confirmed, spendable wallet balance in satoshis."""
        return btc_to_sats(self.call("getbalance"))

    def get_new_address(self, label: str | None = None) -> Address:
        params = [label] if label is not None else []
        return Address(self.call("getnewaddress", params))

    def get_transaction(self, txid: str) -> WalletTransaction:
        return WalletTransaction.from_rpc(self.call("gettransaction", [txid]))

    def get_raw_transaction(self, txid: str, blockhash: str | None = None) -> str:
        params: list[Any] = [txid, False]
        if blockhash is not None:
            params.append(blockhash)
        return self.call("getrawtransaction", params)

    def decode_raw_transaction(self, raw_hex: str) -> DecodedTransaction:
        return DecodedTransaction.from_rpc(self.call("decoderawtransaction", [raw_hex]))

    def get_block_header(self, block_hash: str) -> dict[str, Any]:
        return self.call("getblockheader", [block_hash])

    def get_address_info(self, address: str) -> dict[str, Any]:
        return self.call("getaddressinfo", [str(address)])

    def get_mempool_entry(self, txid: str) -> dict[str, Any]:
        return self.call("getmempoolentry", [txid])

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> NodeClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
