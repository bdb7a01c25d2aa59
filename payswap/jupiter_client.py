"""Jupiter Swap Client - Exact-input quotes and swap instructions from the Jupiter API."""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, Any, List

import aiohttp

from .config import PipelineConfig
from .errors import InvalidQuote, RouteBuildFailed, TransientError

logger = logging.getLogger(__name__)

SWAP_MODE_EXACT_IN = "ExactIn"


@dataclass(frozen=True)
class Quote:
    """Validated exact-input quote from Jupiter."""

    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    minimum_out_amount: int
    slippage_bps: int
    route: List[Dict[str, Any]] = field(default_factory=list)
    price_impact_pct: Decimal = Decimal("0")
    max_accounts: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)  # Sent back verbatim for instructions

    @property
    def price(self) -> Decimal:
        """Output base units per input base unit."""
        return Decimal(self.out_amount) / Decimal(self.in_amount)

    @property
    def venues(self) -> List[str]:
        """AMM labels the route passes through."""
        return [
            leg.get("swapInfo", {}).get("label", "?")
            for leg in self.route
        ]


def parse_quote(data: Dict[str, Any], max_accounts: Optional[int] = None) -> Quote:
    """
    Validate a Jupiter quote response.

    Raises:
        InvalidQuote: If inAmount or outAmount is missing or not positive
    """
    if not isinstance(data, dict):
        raise InvalidQuote(f"Quote response is not an object: {data!r}")

    if data.get("error"):
        raise InvalidQuote(
            f"Jupiter quote error: {data['error']}",
            {"errorCode": data.get("errorCode")},
        )

    try:
        in_amount = int(data["inAmount"])
        out_amount = int(data["outAmount"])
    except (KeyError, TypeError, ValueError):
        raise InvalidQuote(
            "Invalid quote response from Jupiter: inAmount/outAmount missing",
            {"keys": sorted(data.keys())},
        )

    if in_amount <= 0 or out_amount <= 0:
        raise InvalidQuote(f"Quote amounts must be positive: in={in_amount} out={out_amount}")

    if data.get("swapMode", SWAP_MODE_EXACT_IN) != SWAP_MODE_EXACT_IN:
        raise InvalidQuote(f"Expected ExactIn quote, got {data.get('swapMode')}")

    return Quote(
        input_mint=data.get("inputMint", ""),
        output_mint=data.get("outputMint", ""),
        in_amount=in_amount,
        out_amount=out_amount,
        minimum_out_amount=int(data.get("otherAmountThreshold") or out_amount),
        slippage_bps=int(data.get("slippageBps", 0)),
        route=list(data.get("routePlan") or []),
        price_impact_pct=Decimal(str(data.get("priceImpactPct") or "0")),
        max_accounts=max_accounts,
        raw=data,
    )


class JupiterClient:
    """
    Client for the Jupiter Swap API.

    Quotes are always requested in ExactIn mode: the input amount is fixed
    and the output may vary down to the quote's minimum. Swap instructions
    are fetched as individual instructions (not a prebuilt transaction) so
    the caller can choose the fee payer.

    API Docs: https://dev.jup.ag/docs/swap-api
    """

    def __init__(
        self,
        session: aiohttp.ClientSession = None,
        config: PipelineConfig = None,
    ):
        """
        Initialize Jupiter client.

        Args:
            session: Optional aiohttp session (created on enter if not provided)
            config: Pipeline configuration (API URL, key, timeouts)
        """
        self.config = config or PipelineConfig()
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=self.config.http_timeout_seconds)

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.config.jupiter_api_key:
            headers["x-api-key"] = self.config.jupiter_api_key
        return headers

    async def __aenter__(self):
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_session and self._session:
            await self._session.close()

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int = None,
        max_accounts: Optional[int] = None,
    ) -> Quote:
        """
        Get an exact-input swap quote.

        Side-effect free; safe to retry.

        Args:
            input_mint: Input token mint address
            output_mint: Output token mint address
            amount: Input amount in base units (lamports for SOL)
            slippage_bps: Slippage tolerance in basis points
            max_accounts: Upper bound on accounts the route may touch

        Returns:
            Validated Quote

        Raises:
            InvalidQuote: No route, or response missing amounts
            TransientError: Network failure, rate limit or server error
        """
        if amount <= 0:
            raise InvalidQuote(f"Input amount must be positive, got {amount}")

        slippage_bps = self.config.slippage_bps if slippage_bps is None else slippage_bps
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
            "swapMode": SWAP_MODE_EXACT_IN,
        }
        if max_accounts is not None:
            params["maxAccounts"] = str(max_accounts)

        url = f"{self.config.jupiter_api_url}/quote"
        status, data = await self._request("GET", url, params=params)

        if status != 200:
            message = data.get("error") if isinstance(data, dict) else data
            if status == 429 or status >= 500:
                raise TransientError(f"Jupiter quote failed ({status}): {message}")
            raise InvalidQuote(
                f"Jupiter quote failed ({status}): {message}",
                {"status": status, "errorCode": data.get("errorCode") if isinstance(data, dict) else None},
            )

        quote = parse_quote(data, max_accounts=max_accounts)
        logger.info(
            f"Quote: {quote.in_amount} {input_mint[:8]}... -> {quote.out_amount} {output_mint[:8]}... "
            f"(min {quote.minimum_out_amount}, impact {quote.price_impact_pct}%, "
            f"maxAccounts={max_accounts or 'none'})"
        )
        return quote

    async def get_swap_instructions(
        self,
        quote: Quote,
        user_public_key: str,
        destination_token_account: str,
    ) -> Dict[str, Any]:
        """
        Get the individual instructions that execute a quote.

        Args:
            quote: Quote from get_quote()
            user_public_key: Funder address (owner of the input funds)
            destination_token_account: Account that receives the output tokens

        Returns:
            Raw swap-instructions response

        Raises:
            RouteBuildFailed: Jupiter reported an error for this route
            TransientError: Network failure, rate limit or server error
        """
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": user_public_key,
            "destinationTokenAccount": destination_token_account,
            "wrapAndUnwrapSol": self.config.wrap_and_unwrap_sol,
            "useSharedAccounts": False,
            "dynamicComputeUnitLimit": self.config.dynamic_compute_unit_limit,
            "prioritizationFeeLamports": self.config.prioritization_fee_lamports,
        }

        url = f"{self.config.jupiter_api_url}/swap-instructions"
        status, data = await self._request("POST", url, json=payload)

        if status == 429 or status >= 500:
            raise TransientError(f"Jupiter swap-instructions failed ({status}): {data}")

        if not isinstance(data, dict):
            raise RouteBuildFailed(f"Swap instructions error ({status}): {data}")

        if data.get("error") or status != 200:
            raise RouteBuildFailed(
                f"Swap instructions error: {data.get('error') or status}",
                {"status": status, "response": data},
            )

        return data

    async def _request(self, method: str, url: str, **kwargs) -> tuple:
        """Perform a request and return (status, decoded body)."""
        try:
            async with self._session.request(
                method,
                url,
                headers=self._get_headers(),
                timeout=self._timeout,
                **kwargs,
            ) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = await response.text()
                return response.status, data

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Jupiter request {method} {url} failed: {e!r}")
            raise TransientError(f"Jupiter request failed: {e!r}")
