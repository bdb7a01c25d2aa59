"""
Ledger RPC - the subset of Solana JSON-RPC the pipeline needs.

Every error object returned by the node is passed through classify_rpc_error,
so callers only ever see typed PaymentSwapError subclasses.
"""

import asyncio
import base64
import logging
from typing import Optional, Dict, Any, List, Tuple, Union

import aiohttp
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .config import PipelineConfig, NATIVE_MINT
from .errors import RPC_INTERNAL_ERROR, TransientError, classify_rpc_error

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 9

Address = Union[str, Pubkey]


def _may_have_been_delivered(error: TransientError) -> bool:
    """True when a failed send gives no proof the node never got the transaction."""
    if error.details.get("transport"):
        return True
    if error.details.get("status", 0) >= 500:
        return True
    return error.details.get("code") == RPC_INTERNAL_ERROR


class LedgerRpc:
    """Async JSON-RPC client over a shared aiohttp session."""

    def __init__(
        self,
        session: aiohttp.ClientSession = None,
        config: PipelineConfig = None,
    ):
        self.config = config or PipelineConfig()
        self.rpc_url = self.config.rpc_url
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=self.config.http_timeout_seconds)
        self._request_id = 0

    async def __aenter__(self):
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_session and self._session:
            await self._session.close()

    async def _call(self, method: str, params: Optional[list] = None) -> Any:
        """
        Perform one JSON-RPC call and return its result.

        Raises:
            PaymentSwapError: Classified error object from the node
            TransientError: Transport failure or non-JSON response
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            async with self._session.post(self.rpc_url, json=payload, timeout=self._timeout) as resp:
                if resp.status == 429 or resp.status >= 500:
                    raise TransientError(f"RPC {method} HTTP {resp.status}", {"status": resp.status})
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"RPC {method} transport error: {e!r}")
            raise TransientError(f"RPC {method} failed: {e!r}", {"transport": True})

        if not isinstance(body, dict):
            raise TransientError(f"RPC {method} returned unexpected body: {body!r}")

        if body.get("error"):
            raise classify_rpc_error(body["error"])

        return body.get("result")

    # =========================================================================
    # Balances & accounts
    # =========================================================================

    async def get_balance(self, address: Address) -> int:
        """Native balance in lamports."""
        result = await self._call(
            "getBalance",
            [str(address), {"commitment": self.config.commitment}],
        )
        return int(result["value"])

    async def get_account_info(self, address: Address, encoding: str = "base64") -> Optional[Dict[str, Any]]:
        """Raw account info (None when the account does not exist)."""
        result = await self._call(
            "getAccountInfo",
            [str(address), {"encoding": encoding, "commitment": self.config.commitment}],
        )
        return result["value"] if result else None

    async def get_multiple_accounts(self, addresses: List[Address]) -> List[Optional[bytes]]:
        """
        Fetch account data for several addresses in one call.

        Returns:
            Decoded data per address, None where the account does not exist
        """
        if not addresses:
            return []
        result = await self._call(
            "getMultipleAccounts",
            [[str(a) for a in addresses], {"encoding": "base64", "commitment": self.config.commitment}],
        )
        accounts = []
        for value in result["value"]:
            if value is None:
                accounts.append(None)
            else:
                accounts.append(base64.b64decode(value["data"][0]))
        return accounts

    async def get_token_account_balance(self, address: Address) -> int:
        """Token balance in base units; a missing holding account counts as 0."""
        account = await self.get_account_info(address, encoding="jsonParsed")
        if account is None:
            return 0
        try:
            return int(account["data"]["parsed"]["info"]["tokenAmount"]["amount"])
        except (TypeError, KeyError):
            pass
        # Node did not parse the account; ask for the balance directly
        result = await self._call(
            "getTokenAccountBalance",
            [str(address), {"commitment": self.config.commitment}],
        )
        return int(result["value"]["amount"])

    async def get_mint_decimals(self, mint: Address) -> int:
        """Decimals of a mint from its parsed account, falling back to 9."""
        if str(mint) == NATIVE_MINT:
            return DEFAULT_DECIMALS
        try:
            account = await self.get_account_info(mint, encoding="jsonParsed")
            return int(account["data"]["parsed"]["info"]["decimals"])
        except (TypeError, KeyError, ValueError):
            logger.warning(f"Could not read decimals for mint {str(mint)[:8]}..., assuming {DEFAULT_DECIMALS}")
            return DEFAULT_DECIMALS

    # =========================================================================
    # Transactions
    # =========================================================================

    async def get_latest_blockhash(self) -> Tuple[Hash, int]:
        """Return (blockhash, last_valid_block_height)."""
        result = await self._call(
            "getLatestBlockhash",
            [{"commitment": self.config.commitment}],
        )
        value = result["value"]
        return Hash.from_string(value["blockhash"]), int(value["lastValidBlockHeight"])

    async def get_block_height(self) -> int:
        result = await self._call("getBlockHeight", [{"commitment": self.config.commitment}])
        return int(result)

    async def send_transaction(self, tx: VersionedTransaction, skip_preflight: bool = False) -> str:
        """
        Submit a signed transaction.

        Returns:
            Transaction signature (base58)

        Raises:
            TransientError: With details["maybe_delivered"] set when the node
                may have accepted the transaction before the call failed
                (transport failure, HTTP 5xx, internal error)
        """
        encoded = base64.b64encode(bytes(tx)).decode()
        try:
            return await self._call(
                "sendTransaction",
                [
                    encoded,
                    {
                        "encoding": "base64",
                        "skipPreflight": skip_preflight,
                        "preflightCommitment": self.config.commitment,
                    },
                ],
            )
        except TransientError as e:
            if _may_have_been_delivered(e):
                e.details["maybe_delivered"] = True
            raise

    async def get_signature_statuses(
        self,
        signatures: List[str],
        search_transaction_history: bool = False,
    ) -> List[Optional[Dict[str, Any]]]:
        result = await self._call(
            "getSignatureStatuses",
            [signatures, {"searchTransactionHistory": search_transaction_history}],
        )
        return result["value"]
