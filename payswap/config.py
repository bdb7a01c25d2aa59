"""Configuration for the payment-as-swap pipeline."""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union
from dotenv import load_dotenv

load_dotenv()


# Wrapped SOL mint; Jupiter uses it to denote the native asset
NATIVE_MINT = "So11111111111111111111111111111111111111112"

LAMPORTS_PER_SOL = 1_000_000_000

# Packet data limit for a serialized transaction
MAX_TRANSACTION_SIZE = 1232


def _parse_tiers(value: str) -> Tuple[Optional[int], ...]:
    """Parse "none,40,30,25" into (None, 40, 30, 25)."""
    tiers = []
    for part in value.split(","):
        part = part.strip().lower()
        if not part:
            continue
        tiers.append(None if part in ("none", "0", "-") else int(part))
    return tuple(tiers)


@dataclass(frozen=True)
class PipelineConfig:
    """Configuration for quote, build, submission and reconciliation."""

    # Endpoints
    rpc_url: str = field(
        default_factory=lambda: os.getenv(
            "SOLANA_RPC_URL",
            "https://api.mainnet-beta.solana.com"
        )
    )
    jupiter_api_url: str = field(
        default_factory=lambda: os.getenv(
            "JUPITER_API_URL",
            "https://lite-api.jup.ag/swap/v1"
        )
    )
    jupiter_api_key: str = field(
        default_factory=lambda: os.getenv("JUPITER_API_KEY", "")
    )

    # Swap settings
    slippage_bps: int = field(
        default_factory=lambda: int(os.getenv("PAYSWAP_SLIPPAGE_BPS", "2000"))
    )
    wrap_and_unwrap_sol: bool = True
    dynamic_compute_unit_limit: bool = True
    prioritization_fee_lamports: Union[int, str] = "auto"

    # Route complexity tiers: unconstrained first, then three fixed maxAccounts limits
    route_tiers: Tuple[Optional[int], ...] = field(
        default_factory=lambda: _parse_tiers(
            os.getenv("PAYSWAP_ROUTE_TIERS", "none,40,30,25")
        )
    )

    # Transient retry budget (exponential backoff between attempts)
    max_attempts: int = field(
        default_factory=lambda: int(os.getenv("PAYSWAP_MAX_ATTEMPTS", "3"))
    )
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    # Timeouts
    http_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("PAYSWAP_HTTP_TIMEOUT", "8"))
    )
    confirmation_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("PAYSWAP_CONFIRM_TIMEOUT", "60"))
    )
    confirmation_poll_seconds: float = 2.0
    commitment: str = "confirmed"

    # Limits and tolerances (lamports / base units)
    max_transaction_size: int = MAX_TRANSACTION_SIZE
    landing_tolerance: int = 10_000
    min_fee_payer_balance: int = 10_000_000  # 0.01 SOL
    native_reserve_lamports: int = 890_880  # rent-exempt minimum for a system account

    # Reconciliation also requires the destination to have received tokens
    verify_destination_on_reconcile: bool = True

    def __post_init__(self):
        if not self.route_tiers:
            raise ValueError("route_tiers must contain at least one tier")
        if None in self.route_tiers[1:]:
            raise ValueError("only the first route tier may be unconstrained")
        limits = [t for t in self.route_tiers if t is not None]
        if any(b >= a for a, b in zip(limits, limits[1:])):
            raise ValueError(f"route tiers must be strictly tighter: {self.route_tiers}")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
