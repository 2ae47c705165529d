"""
Chain Client: submits the mint transaction and reads receipts.

The engine only depends on the `ChainClient` protocol. `Web3ChainClient`
is the production implementation for a single EVM endpoint and a single
signing key.
"""

import json
import os
from typing import Any, Dict, List, Optional, Protocol

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from .config import DEFAULT_RPC_URL
from .errors import ConfirmationTimeout, QueryError, SubmissionError
from .logging import get_logger
from .models import Receipt

log = get_logger(__name__)

MINT_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "mintNFT",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "recipient", "type": "address"},
            {"name": "issuer", "type": "string"},
            {"name": "title", "type": "string"},
            {"name": "tokenURI", "type": "string"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    }
]


class ChainClient(Protocol):
    def submit(self, issuer: str, title: str, metadata_ref: str) -> str:
        """Broadcast the mint transaction, return its handle. Raises SubmissionError."""

    def get_receipt(self, handle: str) -> Optional[Receipt]:
        """Receipt, or None while not yet mined. Raises QueryError."""

    def wait_for_receipt(self, handle: str, timeout: float) -> Receipt:
        """Block up to `timeout` seconds. Raises ConfirmationTimeout or QueryError."""


def receipt_from_web3(handle: str, raw) -> Receipt:
    return Receipt(
        transaction_handle=handle,
        status_ok=raw["status"] == 1,
        block_ref=raw.get("blockNumber"),
        gas_used=raw.get("gasUsed"),
    )


class Web3ChainClient:
    def __init__(
        self,
        w3: Web3,
        account=None,
        contract_address: Optional[str] = None,
        abi: Optional[List[Dict[str, Any]]] = None,
        poll_latency: float = 2.0,
    ):
        self.w3 = w3
        self.account = account
        self.contract_address = contract_address
        self.poll_latency = poll_latency
        self._contract = None
        if contract_address:
            self._contract = w3.eth.contract(
                address=Web3.to_checksum_address(contract_address),
                abi=abi or MINT_ABI,
            )

    @classmethod
    def from_env(cls) -> "Web3ChainClient":
        rpc_url = os.environ.get("RPC_URL", DEFAULT_RPC_URL)
        private_key = os.environ.get("PRIVATE_KEY")
        contract_address = os.environ.get("CONTRACT_ADDRESS")
        abi = None
        abi_path = os.environ.get("CONTRACT_ABI_PATH")
        if abi_path:
            with open(abi_path, "r", encoding="utf-8") as fh:
                abi = json.load(fh)
        account = Account.from_key(private_key) if private_key else None
        return cls(
            Web3(Web3.HTTPProvider(rpc_url)),
            account=account,
            contract_address=contract_address,
            abi=abi,
        )

    # ---------- Submit ----------
    def submit(self, issuer: str, title: str, metadata_ref: str) -> str:
        if self.account is None or self._contract is None:
            raise SubmissionError("Blockchain configuration incomplete (PRIVATE_KEY or CONTRACT_ADDRESS)")
        for name, value in (("issuer", issuer), ("title", title), ("metadata_ref", metadata_ref)):
            if not value:
                raise SubmissionError(f"{name} is empty")

        try:
            fn = self._contract.functions.mintNFT(self.account.address, issuer, title, metadata_ref)
            tx = fn.build_transaction({
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address, "pending"),
                "chainId": self.w3.eth.chain_id,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            raise SubmissionError(str(e)) from e

        handle = Web3.to_hex(tx_hash)
        log.info("transaction_broadcast", handle=handle, issuer=issuer, metadata_ref=metadata_ref)
        return handle

    # ---------- Receipts ----------
    def get_receipt(self, handle: str) -> Optional[Receipt]:
        try:
            raw = self.w3.eth.get_transaction_receipt(handle)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise QueryError(str(e)) from e
        return receipt_from_web3(handle, raw)

    def wait_for_receipt(self, handle: str, timeout: float) -> Receipt:
        try:
            raw = self.w3.eth.wait_for_transaction_receipt(
                handle, timeout=timeout, poll_latency=self.poll_latency
            )
        except TimeExhausted as e:
            raise ConfirmationTimeout(f"No receipt for {handle} after {timeout}s") from e
        except Exception as e:
            raise QueryError(str(e)) from e
        return receipt_from_web3(handle, raw)
