"""
Instruction Assembler - turns a Jupiter quote into an ordered instruction set.

Jupiter's swap-instructions endpoint returns the swap split into groups. The
groups must be executed in this order:

    compute budget -> setup -> token ledger -> swap -> cleanup

Setup creates the holding accounts and wraps SOL; cleanup unwraps it again.
The order is fixed here and never changed by later stages.
"""

import base64
import binascii
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, Protocol, Union

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .errors import RouteBuildFailed
from .jupiter_client import Quote
from .keys import Principal

logger = logging.getLogger(__name__)


class InstructionKind(str, Enum):
    """Position of an instruction within the swap."""
    COMPUTE_BUDGET = "compute_budget"
    SETUP = "setup"
    TOKEN_LEDGER = "token_ledger"
    MAIN = "main"
    CLEANUP = "cleanup"


# Execution order of the groups
INSTRUCTION_ORDER: Tuple[InstructionKind, ...] = (
    InstructionKind.COMPUTE_BUDGET,
    InstructionKind.SETUP,
    InstructionKind.TOKEN_LEDGER,
    InstructionKind.MAIN,
    InstructionKind.CLEANUP,
)


class SwapInstructionSource(Protocol):
    """Protocol for the swap-instructions endpoint (JupiterClient)."""

    async def get_swap_instructions(
        self,
        quote: Quote,
        user_public_key: str,
        destination_token_account: str,
    ) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class TaggedInstruction:
    """An instruction with its group tag."""

    kind: InstructionKind
    instruction: Instruction


@dataclass
class InstructionSet:
    """Ordered instructions for one swap, plus the lookup tables they use."""

    compute_budget: List[Instruction] = field(default_factory=list)
    setup: List[Instruction] = field(default_factory=list)
    token_ledger: Optional[Instruction] = None
    main: Optional[Instruction] = None
    cleanup: Optional[Instruction] = None
    lookup_table_addresses: List[Pubkey] = field(default_factory=list)
    quote: Optional[Quote] = None

    def tagged(self) -> List[TaggedInstruction]:
        """All instructions with their kind, in execution order."""
        if self.main is None:
            raise RouteBuildFailed("Instruction set has no main swap instruction")

        tagged = [TaggedInstruction(InstructionKind.COMPUTE_BUDGET, ix) for ix in self.compute_budget]
        tagged.extend(TaggedInstruction(InstructionKind.SETUP, ix) for ix in self.setup)
        if self.token_ledger is not None:
            tagged.append(TaggedInstruction(InstructionKind.TOKEN_LEDGER, self.token_ledger))
        tagged.append(TaggedInstruction(InstructionKind.MAIN, self.main))
        if self.cleanup is not None:
            tagged.append(TaggedInstruction(InstructionKind.CLEANUP, self.cleanup))
        return tagged

    def instructions(self) -> List[Instruction]:
        """Instructions in execution order."""
        return [t.instruction for t in self.tagged()]

    def kinds(self) -> List[InstructionKind]:
        return [t.kind for t in self.tagged()]

    def __len__(self) -> int:
        return len(self.tagged())


def decode_instruction(raw: Dict[str, Any]) -> Instruction:
    """
    Decode a Jupiter instruction object into a solders Instruction.

    Expected shape:
        {"programId": str, "accounts": [{"pubkey", "isSigner", "isWritable"}], "data": base64}

    Raises:
        RouteBuildFailed: If the object is malformed
    """
    try:
        program_id = Pubkey.from_string(raw["programId"])
        accounts = [
            AccountMeta(
                pubkey=Pubkey.from_string(meta["pubkey"]),
                is_signer=bool(meta["isSigner"]),
                is_writable=bool(meta["isWritable"]),
            )
            for meta in raw["accounts"]
        ]
        data = base64.b64decode(raw.get("data") or "", validate=True)
    except (KeyError, TypeError, ValueError, binascii.Error) as e:
        raise RouteBuildFailed(f"Malformed instruction from aggregator: {e!r}", {"instruction": raw})

    return Instruction(program_id, data, accounts)


def build_instruction_set(response: Dict[str, Any], quote: Optional[Quote] = None) -> InstructionSet:
    """
    Build an InstructionSet from a swap-instructions response.

    Raises:
        RouteBuildFailed: On an error field, missing swap instruction or bad encoding
    """
    if response.get("error"):
        raise RouteBuildFailed(f"Swap instructions error: {response['error']}", {"response": response})

    swap = response.get("swapInstruction")
    if not swap:
        raise RouteBuildFailed("Swap instructions response has no swapInstruction", {"response": response})

    token_ledger = response.get("tokenLedgerInstruction")
    cleanup = response.get("cleanupInstruction")

    try:
        lookup_tables = [Pubkey.from_string(a) for a in response.get("addressLookupTableAddresses") or []]
    except ValueError as e:
        raise RouteBuildFailed(f"Invalid lookup table address: {e}")

    return InstructionSet(
        compute_budget=[decode_instruction(ix) for ix in response.get("computeBudgetInstructions") or []],
        setup=[decode_instruction(ix) for ix in response.get("setupInstructions") or []],
        token_ledger=decode_instruction(token_ledger) if token_ledger else None,
        main=decode_instruction(swap),
        cleanup=decode_instruction(cleanup) if cleanup else None,
        lookup_table_addresses=lookup_tables,
        quote=quote,
    )


class InstructionAssembler:
    """Fetches and decodes the instructions that execute a quote."""

    def __init__(self, source: SwapInstructionSource):
        self.source = source

    async def assemble(
        self,
        quote: Quote,
        funder: Principal,
        destination_holding_account: Union[str, Pubkey],
    ) -> InstructionSet:
        """
        Assemble the instruction set for a quote.

        The funder is the swap's user: its funds are spent and it signs the
        swap. Output tokens go to destination_holding_account.

        Raises:
            RouteBuildFailed: Aggregator refused the route (not retried here)
            TransientError: Aggregator unreachable
        """
        response = await self.source.get_swap_instructions(
            quote,
            user_public_key=funder.address,
            destination_token_account=str(destination_holding_account),
        )
        instruction_set = build_instruction_set(response, quote=quote)

        logger.info(
            f"Assembled {len(instruction_set)} instructions "
            f"({len(instruction_set.compute_budget)} budget, {len(instruction_set.setup)} setup, "
            f"{len(instruction_set.lookup_table_addresses)} lookup tables)"
        )
        return instruction_set
