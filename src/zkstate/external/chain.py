"""Chain boundary — encodes, signs, and submits verifier contract calls.

The join saga talks to the chain only through the ChainClient protocol:

    data   = client.encode_call("joinCommitments", args)
    tx     = await client.build_transaction(data)
    signed = await client.sign(tx)
    result = await client.send(signed)     # waits for inclusion
    result["events"][0]                    # the event representing the call

Web3ChainClient is the default adapter: web3 for RPC and ABI encoding,
eth_account for signing. Gas and account parameters come from
configuration, never from the saga.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Sequence, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class ChainClient(Protocol):
    """Contract for blockchain clients."""

    def encode_call(self, method: str, args: Sequence[Any]) -> bytes:
        """ABI-encode a call to the verifier contract."""
        ...

    async def build_transaction(self, data: bytes) -> dict[str, Any]:
        """Transaction parameters (from, to, gas, price, nonce, chain id, data)."""
        ...

    async def sign(self, tx_params: Mapping[str, Any]) -> Any:
        ...

    async def send(self, signed_tx: Any) -> Mapping[str, Any]:
        """Broadcast and wait for inclusion; returns {"events": [...], ...}."""
        ...


def load_abi(path: Path) -> list[dict[str, Any]]:
    """Read an ABI from a plain ABI list or a build artifact with an "abi" key."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data["abi"]
    return data


class Web3ChainClient:
    """ChainClient backed by a JSON-RPC node.

    Usage:
        client = Web3ChainClient(
            rpc_url="http://localhost:8545",
            private_key="0x...",
            contract_address="0x...",
            abi=load_abi(Path("build/contracts/EscrowShield.json")),
        )
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        abi: Sequence[Mapping[str, Any]],
        default_account: Optional[str] = None,
        chain_id: Optional[int] = None,
        default_gas: int = 6_000_000,
        gas_price_gwei: str = "2",
        receipt_timeout: float = 300.0,
        web3: Optional[Any] = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._private_key = private_key
        self._contract_address = contract_address
        self._abi = list(abi)
        self._default_account = default_account
        self._chain_id = chain_id
        self._default_gas = default_gas
        self._gas_price_gwei = gas_price_gwei
        self._receipt_timeout = receipt_timeout
        self._w3 = web3
        self._contract = None

    def _web3(self) -> Any:
        if self._w3 is None:
            from web3 import Web3, HTTPProvider
            self._w3 = Web3(HTTPProvider(self._rpc_url))
        return self._w3

    def _verifier(self) -> Any:
        if self._contract is None:
            from web3 import Web3
            self._contract = self._web3().eth.contract(
                address=Web3.to_checksum_address(self._contract_address),
                abi=self._abi,
            )
        return self._contract

    def _account(self) -> Any:
        from eth_account import Account
        return Account.from_key(self._private_key)

    def encode_call(self, method: str, args: Sequence[Any]) -> bytes:
        encoded = self._verifier().encode_abi(method, args=list(args))
        return bytes.fromhex(encoded.removeprefix("0x"))

    def _build_transaction(self, data: bytes) -> dict[str, Any]:
        w3 = self._web3()
        acct = self._account()
        if self._default_account and self._default_account.lower() != acct.address.lower():
            raise ValueError(
                f"Configured account {self._default_account} does not match the signing key"
            )
        chain_id = self._chain_id if self._chain_id is not None else w3.eth.chain_id
        return {
            "from": acct.address,
            "to": self._verifier().address,
            "value": 0,
            "gas": self._default_gas,
            "gasPrice": w3.to_wei(self._gas_price_gwei, "gwei"),
            "nonce": w3.eth.get_transaction_count(acct.address),
            "chainId": chain_id,
            "data": data,
        }

    async def build_transaction(self, data: bytes) -> dict[str, Any]:
        return await asyncio.to_thread(self._build_transaction, data)

    async def sign(self, tx_params: Mapping[str, Any]) -> Any:
        return self._account().sign_transaction(dict(tx_params))

    def _send(self, signed_tx: Any) -> dict[str, Any]:
        w3 = self._web3()
        tx_hash = w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        logger.info("Sent tx %s, waiting for confirmation", tx_hash.hex())
        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        if receipt["status"] != 1:
            raise RuntimeError(f"Transaction {tx_hash.hex()} reverted")
        logger.info("Confirmed tx %s in block %d", tx_hash.hex(), receipt["blockNumber"])
        return {
            "tx_hash": tx_hash.hex(),
            "block_number": receipt["blockNumber"],
            "events": self._decode_events(receipt),
        }

    def _decode_events(self, receipt: Any) -> list[dict[str, Any]]:
        from web3.logs import DISCARD

        decoded: list[dict[str, Any]] = []
        for event in self._verifier().events:
            for log in event().process_receipt(receipt, errors=DISCARD):
                decoded.append({
                    "event": log["event"],
                    "args": {k: _plain(v) for k, v in log["args"].items()},
                    "log_index": log["logIndex"],
                    "block_number": log["blockNumber"],
                    "transaction_hash": log["transactionHash"].hex(),
                })
        decoded.sort(key=lambda e: e["log_index"])
        return decoded

    async def send(self, signed_tx: Any) -> Mapping[str, Any]:
        return await asyncio.to_thread(self._send, signed_tx)


def _plain(value: Any) -> Any:
    """Event argument as a JSON-friendly value."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value
