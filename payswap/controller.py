"""
Submission & Reconciliation Controller.

Drives one payment through quote, build, submit and confirm, and decides
what to do when a step fails:

- SizeExceeded: move to the next, tighter route tier and start over
- Transient: start over at the same tier, with exponential backoff
- LikelyLanded: keep watching the chain until the transaction is found or
  its blockhash expires
- anything else: stop

A transaction that may have landed is never resubmitted. It is resolved to
CONFIRMED or FAILED from the signature status, the balances and the block
height; LikelyLanded never leaves this module.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple, Protocol, Callable, Awaitable, Union

import backoff
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .builder import SignedTransaction
from .config import PipelineConfig
from .errors import (
    ErrorKind,
    Expired,
    LikelyLanded,
    PaymentSwapError,
    PipelineFailure,
    SizeExceeded,
    TransientError,
    classify_transaction_error,
)
from .jupiter_client import Quote
from .keys import Principal
from .verifier import BalanceSnapshot, BalanceVerifier

logger = logging.getLogger(__name__)

# Commitment levels in increasing order of finality
_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


class SubmissionState(str, Enum):
    """Lifecycle of one submission attempt."""
    BUILT = "built"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class SubmissionRpc(Protocol):
    """Protocol for the RPC calls the controller makes."""

    async def send_transaction(self, tx: VersionedTransaction) -> str:
        ...

    async def get_signature_statuses(
        self,
        signatures: List[str],
        search_transaction_history: bool = False,
    ) -> List[Optional[Dict[str, Any]]]:
        ...

    async def get_block_height(self) -> int:
        ...


@dataclass
class AttemptRecord:
    """Audit entry for one pass through the pipeline."""

    number: int
    route_tier: Optional[int]
    state: SubmissionState = SubmissionState.BUILT
    history: List[SubmissionState] = field(default_factory=list)
    signature: Optional[str] = None
    size: Optional[int] = None
    quoted_out_amount: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def transition(self, state: SubmissionState) -> None:
        self.history.append(state)
        self.state = state
        if state in (SubmissionState.CONFIRMED, SubmissionState.FAILED):
            self.finished_at = datetime.now(timezone.utc)

    def fail(self, error: PaymentSwapError) -> None:
        self.error_kind = error.kind
        self.error = error.message
        self.transition(SubmissionState.FAILED)

    def __str__(self) -> str:
        tier = self.route_tier if self.route_tier is not None else "none"
        line = f"#{self.number} tier={tier} {self.state.value}"
        if self.signature:
            line += f" sig={self.signature[:16]}..."
        if self.error_kind:
            line += f" [{self.error_kind.value}] {self.error}"
        return line


@dataclass
class PreparedSubmission:
    """A signed transaction plus everything needed to verify it landed."""

    transaction: SignedTransaction
    before: BalanceSnapshot
    funder: Principal
    fee_payer: Principal
    input_mint: str
    destination_account: Union[str, Pubkey]
    expected_input: int
    destination_is_native: bool = False
    quote: Optional[Quote] = None

    @property
    def signature(self) -> str:
        return self.transaction.signature


@dataclass
class SubmissionOutcome:
    """A confirmed submission."""

    prepared: PreparedSubmission
    route_tier: Optional[int]
    reconciled: bool
    attempts: List[AttemptRecord]
    after: Optional[BalanceSnapshot] = None

    @property
    def signature(self) -> str:
        return self.prepared.signature


# prepare(route_tier) -> PreparedSubmission
PrepareFn = Callable[[Optional[int]], Awaitable[PreparedSubmission]]


@dataclass
class _RunLog:
    attempts: List[AttemptRecord] = field(default_factory=list)
    last_balances: Optional[BalanceSnapshot] = None


class SubmissionController:
    """Submits transactions and applies the retry and reconciliation policy."""

    def __init__(
        self,
        rpc: SubmissionRpc,
        verifier: BalanceVerifier,
        config: PipelineConfig = None,
    ):
        self.rpc = rpc
        self.verifier = verifier
        self.config = config or PipelineConfig()

    # =========================================================================
    # Single submission
    # =========================================================================

    async def send(self, signed: SignedTransaction) -> str:
        """
        Send a transaction.

        A failure flagged maybe_delivered (connection drop, gateway 5xx,
        internal error) does not prove the node never received the
        transaction. It is logged and the signature is returned, so the
        caller polls for it exactly as for an acknowledged send.

        Raises:
            PaymentSwapError: The node rejected the transaction outright
        """
        try:
            signature = await self.rpc.send_transaction(signed.tx)
        except TransientError as e:
            if not e.details.get("maybe_delivered"):
                raise
            logger.warning(
                f"⚠️ Send of {signed.signature[:16]}... failed ambiguously ({e.message}); "
                f"polling instead of resending"
            )
            return signed.signature

        if signature and signature != signed.signature:
            logger.warning(f"RPC returned signature {signature[:16]}... for {signed.signature[:16]}...")
        return signed.signature

    def _is_committed(self, status: Dict[str, Any]) -> bool:
        level = status.get("confirmationStatus") or "processed"
        required = _COMMITMENT_RANK.get(self.config.commitment, 1)
        return _COMMITMENT_RANK.get(level, 0) >= required

    async def wait_for_confirmation(self, signed: SignedTransaction) -> None:
        """
        Poll the signature status until it reaches the configured commitment.

        Raises:
            LikelyLanded: Timed out, or the blockhash expired with no status
            PaymentSwapError: The transaction executed with an error
        """
        signature = signed.signature
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.confirmation_timeout_seconds

        while True:
            try:
                statuses = await self.rpc.get_signature_statuses([signature])
                status = statuses[0] if statuses else None
                block_height = None if status else await self.rpc.get_block_height()
            except TransientError as e:
                # Already submitted; keep polling rather than resending
                logger.warning(f"Status poll for {signature[:16]}... failed: {e.message}")
                status, block_height = None, None

            if status is not None:
                if status.get("err") is not None:
                    raise classify_transaction_error(status["err"], context=f"transaction {signature[:16]}...")
                if self._is_committed(status):
                    return

            if block_height is not None and block_height > signed.last_valid_block_height:
                raise LikelyLanded(
                    f"Blockhash expired before {signature[:16]}... was confirmed",
                    signature=signature,
                    details={"reason": "expired", "block_height": block_height},
                )

            if loop.time() >= deadline:
                raise LikelyLanded(
                    f"Confirmation of {signature[:16]}... timed out after "
                    f"{self.config.confirmation_timeout_seconds}s",
                    signature=signature,
                    details={"reason": "timeout"},
                )

            await asyncio.sleep(self.config.confirmation_poll_seconds)

    async def reconcile(
        self,
        prepared: PreparedSubmission,
        uncertain: LikelyLanded,
    ) -> Optional[BalanceSnapshot]:
        """
        Resolve an unconfirmed transaction to CONFIRMED or FAILED.

        Polls until one of these holds:

        - the signature status (history search) reaches the configured
          commitment: confirmed
        - the status carries an execution error: failed with that error
        - the balances show the funder spent the amount and the destination
          received output: confirmed
        - the block height is past the transaction's last valid block height
          with no status and no balance change: failed with Expired. The
          transaction can no longer land, so a fresh attempt is safe.

        Read failures are retried on the next poll. Never resubmits.

        Returns:
            Post-landing snapshot when the decision came from balances, else None

        Raises:
            Expired: The blockhash expired and the transaction never landed
            PaymentSwapError: The transaction executed with an error
        """
        signature = prepared.signature
        last_valid = prepared.transaction.last_valid_block_height
        logger.warning(f"⏳ {uncertain.message}; reconciling against chain state")

        while True:
            try:
                # Height first: an expiry seen here is final for the reads below
                block_height = await self.rpc.get_block_height()
                statuses = await self.rpc.get_signature_statuses([signature], search_transaction_history=True)
                status = statuses[0] if statuses else None
                after = None
                if status is None:
                    after = await self.verifier.confirm_landing(
                        prepared.before,
                        prepared.funder,
                        prepared.fee_payer,
                        prepared.input_mint,
                        prepared.destination_account,
                        prepared.expected_input,
                        prepared.destination_is_native,
                    )
            except TransientError as e:
                logger.warning(f"Reconciliation read for {signature[:16]}... failed: {e.message}")
                await asyncio.sleep(self.config.confirmation_poll_seconds)
                continue

            if status is not None:
                if status.get("err") is not None:
                    raise classify_transaction_error(status["err"], context=f"transaction {signature[:16]}...")
                if self._is_committed(status):
                    logger.info(f"✅ Found {signature[:16]}... on-chain ({status.get('confirmationStatus')})")
                    return None
            elif after is not None:
                logger.info(f"✅ Balances show {signature[:16]}... landed")
                return after
            elif block_height > last_valid:
                raise Expired(
                    f"{signature[:16]}... did not land before its blockhash expired "
                    f"(block height {block_height} > {last_valid})",
                    {"reason": uncertain.details.get("reason"), "block_height": block_height},
                )

            await asyncio.sleep(self.config.confirmation_poll_seconds)

    async def submit(self, prepared: PreparedSubmission, record: AttemptRecord) -> Tuple[bool, Optional[BalanceSnapshot]]:
        """
        Send, confirm and if needed reconcile one prepared transaction.

        Returns:
            (reconciled, snapshot taken during reconciliation or None)
        """
        signed = prepared.transaction
        try:
            await self.send(signed)
            record.transition(SubmissionState.SUBMITTED)
            logger.info(f"📤 Submitted {signed.signature[:16]}... ({signed.size} bytes)")
            await self.wait_for_confirmation(signed)
        except LikelyLanded as uncertain:
            record.transition(SubmissionState.TIMED_OUT)
            after = await self.reconcile(prepared, uncertain)
            record.transition(SubmissionState.CONFIRMED)
            return True, after
        except PaymentSwapError:
            record.transition(SubmissionState.REJECTED)
            raise

        record.transition(SubmissionState.CONFIRMED)
        logger.info(f"✅ Confirmed {signed.signature[:16]}...")
        return False, None

    # =========================================================================
    # Retry policy
    # =========================================================================

    async def _attempt(self, prepare: PrepareFn, tier: Optional[int], log: _RunLog) -> SubmissionOutcome:
        record = AttemptRecord(number=len(log.attempts) + 1, route_tier=tier)
        log.attempts.append(record)
        try:
            prepared = await prepare(tier)
            record.transition(SubmissionState.BUILT)
            record.signature = prepared.signature
            record.size = prepared.transaction.size
            if prepared.quote is not None:
                record.quoted_out_amount = prepared.quote.out_amount
            log.last_balances = prepared.before

            reconciled, after = await self.submit(prepared, record)
        except PaymentSwapError as e:
            record.fail(e)
            raise

        if after is not None:
            log.last_balances = after
        return SubmissionOutcome(
            prepared=prepared,
            route_tier=tier,
            reconciled=reconciled,
            attempts=log.attempts,
            after=after,
        )

    def _on_backoff(self, details: Dict[str, Any]) -> None:
        logger.warning(
            f"🔄 Transient failure, retrying in {details['wait']:.1f}s "
            f"(attempt {details['tries']}/{self.config.max_attempts}): {details['exception']}"
        )

    async def _run_tier(self, prepare: PrepareFn, tier: Optional[int], log: _RunLog) -> SubmissionOutcome:
        @backoff.on_exception(
            backoff.expo,
            TransientError,
            max_tries=self.config.max_attempts,
            jitter=None,
            factor=self.config.backoff_base_seconds,
            max_value=self.config.backoff_max_seconds,
            on_backoff=self._on_backoff,
            logger=None,
        )
        async def attempt() -> SubmissionOutcome:
            return await self._attempt(prepare, tier, log)

        return await attempt()

    async def run(
        self,
        prepare: PrepareFn,
        route_tiers: Optional[Tuple[Optional[int], ...]] = None,
    ) -> SubmissionOutcome:
        """
        Run the pipeline until it confirms or fails terminally.

        Args:
            prepare: Builds a PreparedSubmission for a route tier (quote,
                assemble, snapshot, build)
            route_tiers: Route complexity tiers to walk on SizeExceeded
                (defaults to config.route_tiers)

        Returns:
            SubmissionOutcome for the confirmed transaction

        Raises:
            PipelineFailure: Terminal failure with classification, last
                known balances and the attempt log
        """
        tiers = tuple(route_tiers if route_tiers is not None else self.config.route_tiers)
        log = _RunLog()
        last_error: Optional[PaymentSwapError] = None

        for index, tier in enumerate(tiers):
            try:
                outcome = await self._run_tier(prepare, tier, log)
            except SizeExceeded as e:
                last_error = e
                if index + 1 < len(tiers):
                    next_tier = tiers[index + 1]
                    logger.warning(f"📦 {e.message}; re-quoting with maxAccounts={next_tier}")
                continue
            except PaymentSwapError as e:
                logger.error(f"❌ Payment failed [{e.kind.value}]: {e.message}")
                raise PipelineFailure(e, balances=log.last_balances, attempts=log.attempts)

            if tier is not None:
                logger.info(f"Confirmed at route tier maxAccounts={tier}")
            return outcome

        logger.error(f"❌ Transaction too large at every route tier {tiers}")
        raise PipelineFailure(last_error, balances=log.last_balances, attempts=log.attempts)
