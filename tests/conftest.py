"""Shared fixtures: real keypairs, Jupiter payloads and an in-memory ledger."""

import base64
from typing import List, Optional, Sequence, Tuple
from unittest.mock import AsyncMock

import base58
import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from payswap.config import PipelineConfig, NATIVE_MINT
from payswap.jupiter_client import parse_quote
from payswap.keys import holding_account

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
JUPITER_PROGRAM = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"
COMPUTE_BUDGET_PROGRAM = "ComputeBudget111111111111111111111111111111"
TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ATA_PROGRAM = "ATokenGPvbdGVxr1b2hGZbpYCWnjXvVoQQe9fs6TqCUA"

LAST_VALID_BLOCK_HEIGHT = 1_000


# ============================================================================
# Payload builders
# ============================================================================

def encode_credential(keypair: Keypair) -> str:
    """base58 secret key, as wallets export it."""
    return base58.b58encode(bytes(keypair)).decode()


def quote_response(
    in_amount: int = 500_000_000,
    out_amount: int = 1_000_000,
    input_mint: str = NATIVE_MINT,
    output_mint: str = USDC_MINT,
    **overrides,
) -> dict:
    """Jupiter /quote response body."""
    data = {
        "inputMint": input_mint,
        "inAmount": str(in_amount),
        "outputMint": output_mint,
        "outAmount": str(out_amount),
        "otherAmountThreshold": str(out_amount * 8 // 10),
        "swapMode": "ExactIn",
        "slippageBps": 2000,
        "priceImpactPct": "0.0012",
        "routePlan": [
            {"swapInfo": {"label": "Whirlpool", "inAmount": str(in_amount), "outAmount": str(out_amount)}, "percent": 100},
        ],
    }
    data.update(overrides)
    return data


def raw_instruction(
    program_id: str,
    accounts: Sequence[Tuple[Pubkey, bool, bool]] = (),
    data: bytes = b"",
) -> dict:
    """Instruction in Jupiter's JSON shape; accounts are (pubkey, is_signer, is_writable)."""
    return {
        "programId": program_id,
        "accounts": [
            {"pubkey": str(pubkey), "isSigner": signer, "isWritable": writable}
            for pubkey, signer, writable in accounts
        ],
        "data": base64.b64encode(data).decode(),
    }


def swap_instructions_response(
    funder: Pubkey,
    destination_account: Pubkey,
    route_accounts: int = 4,
    lookup_tables: Optional[List[str]] = None,
    token_ledger: bool = False,
) -> dict:
    """Jupiter /swap-instructions response; route_accounts controls transaction size."""
    route = [(Pubkey.new_unique(), False, True) for _ in range(route_accounts)]
    response = {
        "tokenLedgerInstruction": None,
        "computeBudgetInstructions": [
            raw_instruction(COMPUTE_BUDGET_PROGRAM, data=bytes([2, 0x40, 0x0D, 0x03, 0x00])),
            raw_instruction(COMPUTE_BUDGET_PROGRAM, data=bytes([3, 0x10, 0x27, 0, 0, 0, 0, 0, 0])),
        ],
        "setupInstructions": [
            raw_instruction(
                ATA_PROGRAM,
                [(funder, True, True), (destination_account, False, True)],
                data=bytes([1]),
            ),
        ],
        "swapInstruction": raw_instruction(
            JUPITER_PROGRAM,
            [(funder, True, True), (destination_account, False, True)] + route,
            data=b"\xe5\x17\xcb\x97\x7a\xe3\xad\x2a" + bytes(16),
        ),
        "cleanupInstruction": raw_instruction(
            TOKEN_PROGRAM,
            [(funder, True, True)],
            data=bytes([9]),
        ),
        "otherInstructions": [],
        "addressLookupTableAddresses": lookup_tables or [],
    }
    if token_ledger:
        response["tokenLedgerInstruction"] = raw_instruction(
            JUPITER_PROGRAM, [(funder, True, False)], data=bytes([7])
        )
    return response


# ============================================================================
# In-memory ledger
# ============================================================================

class Ledger:
    """Balances keyed by address, plus effects applied when a transaction is sent."""

    def __init__(self):
        self.native = {}
        self.tokens = {}
        self.effects = []
        self.sent = []

    def set_native(self, address, lamports: int) -> None:
        self.native[str(address)] = lamports

    def set_tokens(self, address, amount: int) -> None:
        self.tokens[str(address)] = amount

    def on_send(self, native=None, tokens=None) -> None:
        """Register balance changes that happen when the next transaction lands."""
        self.effects.append((native or {}, tokens or {}))

    def apply(self) -> None:
        if not self.effects:
            return
        native, tokens = self.effects.pop(0)
        for address, change in native.items():
            self.native[str(address)] = self.native.get(str(address), 0) + change
        for address, change in tokens.items():
            self.tokens[str(address)] = self.tokens.get(str(address), 0) + change


@pytest.fixture
def ledger():
    return Ledger()


@pytest.fixture
def mock_rpc(ledger):
    """Mock ledger RPC backed by the in-memory ledger."""
    rpc = AsyncMock()

    def send(tx):
        ledger.sent.append(tx)
        ledger.apply()
        return str(tx.signatures[0])

    rpc.get_balance = AsyncMock(side_effect=lambda address: ledger.native.get(str(address), 0))
    rpc.get_token_account_balance = AsyncMock(side_effect=lambda address: ledger.tokens.get(str(address), 0))
    rpc.get_multiple_accounts = AsyncMock(return_value=[])
    rpc.get_latest_blockhash = AsyncMock(return_value=(Hash.new_unique(), LAST_VALID_BLOCK_HEIGHT))
    rpc.get_block_height = AsyncMock(return_value=LAST_VALID_BLOCK_HEIGHT - 100)
    rpc.get_mint_decimals = AsyncMock(side_effect=lambda mint: 9 if str(mint) == NATIVE_MINT else 6)
    rpc.send_transaction = AsyncMock(side_effect=send)
    rpc.get_signature_statuses = AsyncMock(
        return_value=[{"slot": 1, "confirmations": 1, "err": None, "confirmationStatus": "confirmed"}]
    )
    return rpc


# ============================================================================
# Principals & configuration
# ============================================================================

@pytest.fixture
def funder_keypair():
    return Keypair()


@pytest.fixture
def fee_payer_keypair():
    return Keypair()


@pytest.fixture
def destination_owner():
    return Keypair().pubkey()


@pytest.fixture
def destination_account(destination_owner):
    return holding_account(destination_owner, USDC_MINT, allow_owner_off_curve=True)


@pytest.fixture
def config():
    """Fast, deterministic configuration (no backoff waits, immediate timeouts)."""
    return PipelineConfig(
        rpc_url="http://localhost:8899",
        jupiter_api_url="https://jupiter.test/swap/v1",
        jupiter_api_key="",
        slippage_bps=2000,
        route_tiers=(None, 40, 30, 25),
        max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        http_timeout_seconds=1.0,
        confirmation_timeout_seconds=0.0,
        confirmation_poll_seconds=0.0,
    )


@pytest.fixture
def mock_jupiter():
    """Mock Jupiter client returning a small route for every quote."""
    jupiter = AsyncMock()

    async def get_quote(input_mint, output_mint, amount, slippage_bps=None, max_accounts=None):
        return parse_quote(
            quote_response(in_amount=amount, input_mint=input_mint, output_mint=output_mint),
            max_accounts=max_accounts,
        )

    async def get_swap_instructions(quote, user_public_key, destination_token_account):
        return swap_instructions_response(
            Pubkey.from_string(user_public_key),
            Pubkey.from_string(destination_token_account),
        )

    jupiter.get_quote = AsyncMock(side_effect=get_quote)
    jupiter.get_swap_instructions = AsyncMock(side_effect=get_swap_instructions)
    return jupiter
