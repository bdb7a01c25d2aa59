"""Payment Orchestrator - caller-facing entry point for payment-as-swap."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, List, Tuple

import aiohttp
import backoff
from solders.system_program import TransferParams, transfer

from .assembler import InstructionAssembler, InstructionSet
from .builder import TransactionBuilder
from .config import PipelineConfig, NATIVE_MINT, LAMPORTS_PER_SOL
from .controller import AttemptRecord, PreparedSubmission, SubmissionController, SubmissionOutcome
from .errors import (
    InsufficientBalance,
    InvalidQuote,
    PaymentSwapError,
    PipelineFailure,
    TransientError,
)
from .jupiter_client import JupiterClient
from .keys import Principal, Role, holding_account, parse_address, parse_signer, same_principal
from .rpc import LedgerRpc, DEFAULT_DECIMALS
from .verifier import BalanceSnapshot, BalanceVerifier

logger = logging.getLogger(__name__)


def spendable_native_amount(balance: int, reserve: int) -> int:
    """Lamports that can be spent while keeping `reserve` in the account."""
    return max(balance - reserve, 0)


@dataclass
class PaymentRequest:
    """One payment: swap input_amount of input_mint into output_mint for destination."""

    funder_credential: str = field(repr=False)
    fee_payer_credential: str = field(repr=False)
    destination_address: str
    output_mint: str
    input_amount: int
    input_mint: str = NATIVE_MINT
    slippage_bps: Optional[int] = None
    # Destination is a program-derived address (e.g. a vault) rather than a wallet
    allow_owner_off_curve: bool = False
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class ExecutionResult:
    """Measured outcome of a confirmed payment."""

    signature: str
    input_amount_consumed: int
    output_amount_received: int
    funder_balance_delta: Optional[int]
    fee_payer_balance_delta: Optional[int]
    input_mint: str = NATIVE_MINT
    output_mint: str = ""
    input_decimals: int = DEFAULT_DECIMALS
    output_decimals: int = DEFAULT_DECIMALS
    quoted_in_amount: Optional[int] = None
    quoted_out_amount: Optional[int] = None
    destination_account: str = ""
    route_tier: Optional[int] = None
    reconciled: bool = False
    balances_verified: bool = True
    attempts: List[AttemptRecord] = field(default_factory=list)

    @property
    def input_ui_amount(self) -> Decimal:
        return Decimal(self.input_amount_consumed) / (Decimal(10) ** self.input_decimals)

    @property
    def output_ui_amount(self) -> Decimal:
        return Decimal(self.output_amount_received) / (Decimal(10) ** self.output_decimals)

    @property
    def swap_rate(self) -> Optional[Decimal]:
        """Output tokens received per input token spent."""
        if self.input_amount_consumed <= 0:
            return None
        return self.output_ui_amount / self.input_ui_amount

    @property
    def fee_paid(self) -> Optional[int]:
        """Lamports the fee payer spent (None when balances were not measured)."""
        if self.fee_payer_balance_delta is None:
            return None
        return max(-self.fee_payer_balance_delta, 0)

    def __str__(self) -> str:
        rate = f" @ {self.swap_rate:.6f}" if self.swap_rate is not None else ""
        landed = " (reconciled)" if self.reconciled else ""
        if not self.balances_verified:
            landed += " (quoted amounts, balances unread)"
        return (
            f"Payment {self.signature[:16]}...: {self.input_ui_amount} in -> "
            f"{self.output_ui_amount} out{rate}{landed}"
        )


class PaymentSwapOrchestrator:
    """
    Runs payments through quote -> assemble -> build -> submit -> reconcile.

    Flow:
        Resolve keys -> Pre-flight balances -> Quote (tier) -> Assemble ->
        Snapshot -> Build & sign -> Submit -> Confirm / Reconcile -> Measure

    One aiohttp session is shared by the Jupiter and RPC clients and closed
    when the orchestrator's context exits. Clients can also be injected.
    """

    def __init__(
        self,
        config: PipelineConfig = None,
        jupiter: JupiterClient = None,
        rpc: LedgerRpc = None,
        session: aiohttp.ClientSession = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Pipeline configuration
            jupiter: Jupiter client (created on enter if not provided)
            rpc: Ledger RPC client (created on enter if not provided)
            session: Shared aiohttp session (created on enter if not provided)
        """
        self.config = config or PipelineConfig()
        self.jupiter = jupiter
        self.rpc = rpc
        self._session = session
        self._owns_session = False

        if self.jupiter is not None and self.rpc is not None:
            self._wire()

    def _wire(self) -> None:
        self.assembler = InstructionAssembler(self.jupiter)
        self.builder = TransactionBuilder(self.rpc, self.config)
        self.verifier = BalanceVerifier(self.rpc, self.config)
        self.controller = SubmissionController(self.rpc, self.verifier, self.config)

    async def __aenter__(self):
        if self.jupiter is None or self.rpc is None:
            if self._session is None:
                self._session = aiohttp.ClientSession()
                self._owns_session = True
            if self.jupiter is None:
                self.jupiter = JupiterClient(self._session, self.config)
            if self.rpc is None:
                self.rpc = LedgerRpc(self._session, self.config)
            self._wire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_session and self._session:
            await self._session.close()

    # =========================================================================
    # Payment as swap
    # =========================================================================

    async def execute_payment_swap(self, request: PaymentRequest) -> ExecutionResult:
        """
        Swap the funder's input asset and deliver the output to the destination.

        The fee payer pays the network fee; the funder's funds are swapped.

        Args:
            request: PaymentRequest

        Returns:
            ExecutionResult with amounts measured from balance deltas

        Raises:
            PipelineFailure: Terminal failure with classification, last known
                balances and the attempt log
        """
        funder, fee_payer, destination = self._resolve(request)
        logger.info(
            f"💸 Payment {request.request_id[:8]}: {request.input_amount} {request.input_mint[:8]}... -> "
            f"{request.output_mint[:8]}... for {destination.short} (fee payer {fee_payer.short})"
        )

        before: Optional[BalanceSnapshot] = None
        try:
            self._check_pair(request.input_mint, request.output_mint)
            if request.input_amount <= 0:
                raise InvalidQuote(f"Input amount must be positive, got {request.input_amount}")

            destination_account = holding_account(
                destination, request.output_mint, allow_owner_off_curve=request.allow_owner_off_curve
            )
            before = await self.verifier.snapshot(funder, fee_payer, request.input_mint, destination_account)
            self._check_balances(before, request.input_amount, request.input_mint, funder, fee_payer)

            input_decimals, output_decimals = await asyncio.gather(
                self.rpc.get_mint_decimals(request.input_mint),
                self.rpc.get_mint_decimals(request.output_mint),
            )
        except PaymentSwapError as e:
            logger.error(f"❌ Payment {request.request_id[:8]} rejected before submission: {e.message}")
            raise PipelineFailure(e, balances=before)

        async def prepare(tier: Optional[int]) -> PreparedSubmission:
            quote = await self.jupiter.get_quote(
                request.input_mint,
                request.output_mint,
                request.input_amount,
                slippage_bps=request.slippage_bps,
                max_accounts=tier,
            )
            instruction_set = await self.assembler.assemble(quote, funder, destination_account)
            snapshot = await self.verifier.snapshot(funder, fee_payer, request.input_mint, destination_account)
            signed = await self.builder.build(instruction_set, funder, fee_payer)
            return PreparedSubmission(
                transaction=signed,
                before=snapshot,
                funder=funder,
                fee_payer=fee_payer,
                input_mint=request.input_mint,
                destination_account=destination_account,
                expected_input=request.input_amount,
                quote=quote,
            )

        outcome = await self._run(prepare, before)
        after = await self._final_snapshot(outcome)
        result = self._result(outcome, after, request.output_mint, input_decimals, output_decimals)

        logger.info(f"✅ {result}")
        return result

    async def execute_payment_swap_all(
        self,
        funder_credential: str,
        fee_payer_credential: str,
        destination_address: str,
        output_mint: str,
        reserve_lamports: Optional[int] = None,
        slippage_bps: Optional[int] = None,
        allow_owner_off_curve: bool = False,
    ) -> ExecutionResult:
        """
        Swap the funder's whole native balance except a rent-exempt reserve.

        When the funder also pays fees, the minimum fee balance is reserved too.

        Raises:
            PipelineFailure: Nothing spendable, or the payment failed
        """
        reserve = self.config.native_reserve_lamports if reserve_lamports is None else reserve_lamports
        request = PaymentRequest(
            funder_credential=funder_credential,
            fee_payer_credential=fee_payer_credential,
            destination_address=destination_address,
            output_mint=output_mint,
            input_amount=0,
            slippage_bps=slippage_bps,
            allow_owner_off_curve=allow_owner_off_curve,
        )
        funder, fee_payer, _ = self._resolve(request)
        if same_principal(funder, fee_payer):
            reserve += self.config.min_fee_payer_balance

        try:
            self._check_pair(request.input_mint, output_mint)
            balance = await self.rpc.get_balance(funder.pubkey)
        except PaymentSwapError as e:
            raise PipelineFailure(e)

        amount = spendable_native_amount(balance, reserve)
        if amount <= 0:
            raise PipelineFailure(
                InsufficientBalance(
                    f"Funder {funder.short} has {balance} lamports, nothing above reserve {reserve}",
                    {"balance": balance, "reserve": reserve},
                )
            )

        logger.info(
            f"Swapping all: {amount / LAMPORTS_PER_SOL:.9f} SOL "
            f"(keeping {reserve / LAMPORTS_PER_SOL:.9f} SOL)"
        )
        request.input_amount = amount
        return await self.execute_payment_swap(request)

    # =========================================================================
    # Plain native transfer
    # =========================================================================

    async def transfer_native(
        self,
        funder_credential: str,
        fee_payer_credential: str,
        destination_address: str,
        lamports: int,
    ) -> ExecutionResult:
        """
        Transfer SOL from the funder to the destination; the fee payer pays the fee.

        Uses the same build, submit and reconcile path as swaps, with a single
        route tier since a transfer has no route to constrain.

        Raises:
            PipelineFailure: Terminal failure
        """
        funder = self._signer(funder_credential, Role.FUNDER)
        fee_payer = self._signer(fee_payer_credential, Role.FEE_PAYER)
        destination = self._address(destination_address)

        before: Optional[BalanceSnapshot] = None
        try:
            if lamports <= 0:
                raise InvalidQuote(f"Transfer amount must be positive, got {lamports}")
            before = await self.verifier.snapshot(
                funder, fee_payer, NATIVE_MINT, destination.pubkey, destination_is_native=True
            )
            self._check_balances(before, lamports, NATIVE_MINT, funder, fee_payer)
        except PaymentSwapError as e:
            raise PipelineFailure(e, balances=before)

        instruction_set = InstructionSet(
            main=transfer(
                TransferParams(from_pubkey=funder.pubkey, to_pubkey=destination.pubkey, lamports=lamports)
            )
        )
        logger.info(f"💸 Transfer {lamports / LAMPORTS_PER_SOL:.9f} SOL {funder.short} -> {destination.short}")

        async def prepare(tier: Optional[int]) -> PreparedSubmission:
            snapshot = await self.verifier.snapshot(
                funder, fee_payer, NATIVE_MINT, destination.pubkey, destination_is_native=True
            )
            signed = await self.builder.build(instruction_set, funder, fee_payer)
            return PreparedSubmission(
                transaction=signed,
                before=snapshot,
                funder=funder,
                fee_payer=fee_payer,
                input_mint=NATIVE_MINT,
                destination_account=destination.pubkey,
                expected_input=lamports,
                destination_is_native=True,
            )

        outcome = await self._run(prepare, before, route_tiers=(None,))
        after = await self._final_snapshot(outcome)
        result = self._result(outcome, after, NATIVE_MINT, DEFAULT_DECIMALS, DEFAULT_DECIMALS)
        logger.info(f"✅ {result}")
        return result

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _signer(credential: str, role: Role) -> Principal:
        try:
            return parse_signer(credential, role)
        except PaymentSwapError as e:
            raise PipelineFailure(e)

    @staticmethod
    def _address(address: str) -> Principal:
        try:
            return parse_address(address, Role.DESTINATION)
        except PaymentSwapError as e:
            raise PipelineFailure(e)

    def _resolve(self, request: PaymentRequest) -> Tuple[Principal, Principal, Principal]:
        return (
            self._signer(request.funder_credential, Role.FUNDER),
            self._signer(request.fee_payer_credential, Role.FEE_PAYER),
            self._address(request.destination_address),
        )

    @staticmethod
    def _check_pair(input_mint: str, output_mint: str) -> None:
        """
        Raises:
            InvalidQuote: Input and output are the same asset
        """
        if input_mint == output_mint:
            raise InvalidQuote(
                f"Input and output mint must differ, both are {input_mint}",
                {"mint": input_mint},
            )

    def _check_balances(
        self,
        snapshot: BalanceSnapshot,
        amount: int,
        input_mint: str,
        funder: Principal,
        fee_payer: Principal,
    ) -> None:
        """
        Raises:
            InsufficientBalance: Funder cannot cover the amount or fee payer the fee
        """
        if snapshot.funder_input < amount:
            raise InsufficientBalance(
                f"Funder {funder.short} holds {snapshot.funder_input}, needs {amount}",
                {"available": snapshot.funder_input, "required": amount},
            )

        required_fee = self.config.min_fee_payer_balance
        fee_balance = snapshot.fee_payer_native
        if same_principal(funder, fee_payer) and input_mint == NATIVE_MINT:
            required_fee += amount
        if fee_balance < required_fee:
            raise InsufficientBalance(
                f"Fee payer {fee_payer.short} holds {fee_balance} lamports, needs {required_fee}",
                {"available": fee_balance, "required": required_fee},
            )

    async def _run(
        self,
        prepare,
        before: Optional[BalanceSnapshot],
        route_tiers: Optional[Tuple[Optional[int], ...]] = None,
    ) -> SubmissionOutcome:
        try:
            return await self.controller.run(prepare, route_tiers=route_tiers)
        except PipelineFailure as failure:
            if failure.balances is None:
                failure.balances = before
            raise

    async def _final_snapshot(self, outcome: SubmissionOutcome) -> Optional[BalanceSnapshot]:
        """
        Post-confirmation snapshot; reuses the one taken during reconciliation.

        Returns None when balances stay unreadable after retries. The payment
        is confirmed either way, so the result falls back to quoted amounts.
        """
        if outcome.after is not None:
            return outcome.after

        prepared = outcome.prepared

        @backoff.on_exception(
            backoff.expo,
            TransientError,
            max_tries=self.config.max_attempts,
            jitter=None,
            factor=self.config.backoff_base_seconds,
            max_value=self.config.backoff_max_seconds,
            on_backoff=lambda details: logger.warning(
                f"Balance read failed after confirmation, retry {details['tries']}"
            ),
            logger=None,
        )
        async def read() -> BalanceSnapshot:
            return await self.verifier.snapshot(
                prepared.funder,
                prepared.fee_payer,
                prepared.input_mint,
                prepared.destination_account,
                prepared.destination_is_native,
            )

        try:
            return await read()
        except TransientError as e:
            logger.error(
                f"❌ {prepared.signature[:16]}... confirmed but balances unreadable: {e.message}; "
                f"reporting quoted amounts"
            )
            return None

    @staticmethod
    def _result(
        outcome: SubmissionOutcome,
        after: Optional[BalanceSnapshot],
        output_mint: str,
        input_decimals: int,
        output_decimals: int,
    ) -> ExecutionResult:
        prepared = outcome.prepared
        quote = prepared.quote
        quoted_in = quote.in_amount if quote else prepared.expected_input
        quoted_out = quote.out_amount if quote else prepared.expected_input

        if after is not None:
            delta = prepared.before.delta(after)
            consumed, received = -delta.funder_input, delta.destination_output
            funder_delta, fee_payer_delta = delta.funder_native, delta.fee_payer_native
        else:
            consumed, received = prepared.expected_input, quoted_out
            funder_delta, fee_payer_delta = None, None

        return ExecutionResult(
            signature=prepared.signature,
            input_amount_consumed=consumed,
            output_amount_received=received,
            funder_balance_delta=funder_delta,
            fee_payer_balance_delta=fee_payer_delta,
            input_mint=prepared.input_mint,
            output_mint=output_mint,
            input_decimals=input_decimals,
            output_decimals=output_decimals,
            quoted_in_amount=quoted_in,
            quoted_out_amount=quoted_out,
            destination_account=str(prepared.destination_account),
            route_tier=outcome.route_tier,
            reconciled=outcome.reconciled,
            balances_verified=after is not None,
            attempts=outcome.attempts,
        )
