"""
Balance Verifier - before/after snapshots and landing evidence.

Reported amounts are always measured on-chain as balance deltas, never taken
from the quote.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, Union

from solders.pubkey import Pubkey

from .config import PipelineConfig, NATIVE_MINT
from .keys import Principal, holding_account

logger = logging.getLogger(__name__)


class BalanceRpc(Protocol):
    """Protocol for the balance lookups the verifier makes."""

    async def get_balance(self, address: Union[str, Pubkey]) -> int:
        ...

    async def get_token_account_balance(self, address: Union[str, Pubkey]) -> int:
        ...


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balances relevant to one payment, at one point in time."""

    funder_native: int
    fee_payer_native: int
    funder_input: int
    destination_output: int
    taken_at: datetime

    def delta(self, after: "BalanceSnapshot") -> "BalanceDelta":
        return BalanceDelta(
            funder_native=after.funder_native - self.funder_native,
            fee_payer_native=after.fee_payer_native - self.fee_payer_native,
            funder_input=after.funder_input - self.funder_input,
            destination_output=after.destination_output - self.destination_output,
        )


@dataclass(frozen=True)
class BalanceDelta:
    """Signed change between two snapshots (after - before)."""

    funder_native: int
    fee_payer_native: int
    funder_input: int
    destination_output: int


class BalanceVerifier:
    """Takes balance snapshots and judges whether a swap has landed."""

    def __init__(self, rpc: BalanceRpc, config: PipelineConfig = None):
        self.rpc = rpc
        self.config = config or PipelineConfig()

    async def input_balance(self, funder: Principal, input_mint: str) -> int:
        """Funder balance of the input asset (native lamports for SOL)."""
        if input_mint == NATIVE_MINT:
            return await self.rpc.get_balance(funder.pubkey)
        return await self.rpc.get_token_account_balance(holding_account(funder, input_mint))

    async def snapshot(
        self,
        funder: Principal,
        fee_payer: Principal,
        input_mint: str,
        destination_account: Union[str, Pubkey],
        destination_is_native: bool = False,
    ) -> BalanceSnapshot:
        """
        Read all balances concurrently.

        destination_account is a holding account unless destination_is_native,
        in which case its lamport balance is read.
        """
        if destination_is_native:
            destination_read = self.rpc.get_balance(destination_account)
        else:
            destination_read = self.rpc.get_token_account_balance(destination_account)

        funder_native, fee_payer_native, destination_output = await asyncio.gather(
            self.rpc.get_balance(funder.pubkey),
            self.rpc.get_balance(fee_payer.pubkey),
            destination_read,
        )
        if input_mint == NATIVE_MINT:
            funder_input = funder_native
        else:
            funder_input = await self.input_balance(funder, input_mint)

        return BalanceSnapshot(
            funder_native=funder_native,
            fee_payer_native=fee_payer_native,
            funder_input=funder_input,
            destination_output=destination_output,
            taken_at=datetime.now(timezone.utc),
        )

    def confirms_landing(
        self,
        before: BalanceSnapshot,
        after: BalanceSnapshot,
        expected_input: int,
    ) -> bool:
        """
        Judge from balances alone whether the swap executed.

        The funder's input balance must have fallen by at least the expected
        amount minus the landing tolerance. When destination verification is
        enabled the destination must also have received output.
        """
        delta = before.delta(after)
        consumed = -delta.funder_input

        if consumed < expected_input - self.config.landing_tolerance:
            logger.info(f"Funder decrease {consumed} below expected {expected_input}; not landed")
            return False

        if self.config.verify_destination_on_reconcile and delta.destination_output <= 0:
            logger.info("Destination balance unchanged; not landed")
            return False

        return True

    async def confirm_landing(
        self,
        before: BalanceSnapshot,
        funder: Principal,
        fee_payer: Principal,
        input_mint: str,
        destination_account: Union[str, Pubkey],
        expected_input: int,
        destination_is_native: bool = False,
    ) -> Optional[BalanceSnapshot]:
        """
        Take a fresh snapshot and return it if it shows the swap landed.

        Returns:
            The new snapshot on evidence of landing, else None
        """
        after = await self.snapshot(
            funder, fee_payer, input_mint, destination_account, destination_is_native
        )
        if self.confirms_landing(before, after, expected_input):
            return after
        return None
