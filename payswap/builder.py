"""
Dual-Signer Transaction Builder.

Compiles an InstructionSet into a signed v0 transaction whose fee is paid by
a different principal than the one whose funds are swapped. The fee payer is
always the message payer, so its signature comes first.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, List, Tuple, Protocol, Sequence

from solders.address_lookup_table_account import AddressLookupTable, AddressLookupTableAccount
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .assembler import InstructionSet
from .config import PipelineConfig
from .errors import MalformedCredential, RouteBuildFailed, SizeExceeded, StaleRoute
from .keys import Principal, same_principal

logger = logging.getLogger(__name__)


class BuilderRpc(Protocol):
    """Protocol for the RPC calls the builder makes."""

    async def get_multiple_accounts(self, addresses: List[Pubkey]) -> List[Optional[bytes]]:
        ...

    async def get_latest_blockhash(self) -> Tuple[Hash, int]:
        ...


@dataclass
class SignedTransaction:
    """A fully signed, size-checked transaction ready for submission."""

    tx: VersionedTransaction
    fee_payer: Pubkey
    blockhash: Hash
    last_valid_block_height: int
    size: int
    signers: List[Pubkey] = field(default_factory=list)

    @property
    def signature(self) -> str:
        """Transaction id: the fee payer's signature."""
        return str(self.tx.signatures[0])

    @property
    def signature_count(self) -> int:
        return len(self.tx.signatures)


class TransactionBuilder:
    """Builds v0 transactions signed by the funder and the fee payer."""

    def __init__(self, rpc: BuilderRpc, config: PipelineConfig = None):
        self.rpc = rpc
        self.config = config or PipelineConfig()

    async def resolve_lookup_tables(self, addresses: Sequence[Pubkey]) -> List[AddressLookupTableAccount]:
        """
        Fetch and decode address lookup tables.

        Raises:
            StaleRoute: If any table no longer exists or cannot be decoded
        """
        if not addresses:
            return []

        raw_tables = await self.rpc.get_multiple_accounts(list(addresses))
        tables = []
        for address, data in zip(addresses, raw_tables):
            if data is None:
                raise StaleRoute(f"Lookup table {address} not found", {"table": str(address)})
            try:
                table = AddressLookupTable.deserialize(data)
            except ValueError as e:
                raise StaleRoute(f"Lookup table {address} could not be decoded: {e}", {"table": str(address)})
            tables.append(AddressLookupTableAccount(key=address, addresses=list(table.addresses)))
        return tables

    async def build(
        self,
        instruction_set: InstructionSet,
        funder: Principal,
        fee_payer: Principal,
    ) -> SignedTransaction:
        """
        Compile, sign and size-check a transaction.

        The blockhash is fetched right before signing so that the transaction
        has as much of its validity window left as possible when sent.

        Args:
            instruction_set: Assembled instructions (order is kept as is)
            funder: Signing principal whose funds are spent
            fee_payer: Signing principal that pays the network fee

        Returns:
            SignedTransaction

        Raises:
            MalformedCredential: A principal cannot sign
            StaleRoute: A lookup table is missing
            SizeExceeded: Serialized transaction exceeds the packet limit
        """
        for principal in (funder, fee_payer):
            if not principal.can_sign:
                raise MalformedCredential(f"{principal.role.value} {principal.short} has no signing key")

        instructions = instruction_set.instructions()
        lookup_tables = await self.resolve_lookup_tables(instruction_set.lookup_table_addresses)
        blockhash, last_valid_block_height = await self.rpc.get_latest_blockhash()

        message = MessageV0.try_compile(
            fee_payer.pubkey,
            instructions,
            lookup_tables,
            blockhash,
        )

        keypairs = self._signing_keypairs(message, funder, fee_payer)
        tx = VersionedTransaction(message, keypairs)

        size = len(bytes(tx))
        if size > self.config.max_transaction_size:
            logger.warning(
                f"Transaction too large: {size} > {self.config.max_transaction_size} bytes "
                f"({len(instructions)} instructions, {len(lookup_tables)} lookup tables)"
            )
            raise SizeExceeded(
                f"Transaction size {size} exceeds {self.config.max_transaction_size} bytes",
                size=size,
                limit=self.config.max_transaction_size,
            )

        signed = SignedTransaction(
            tx=tx,
            fee_payer=fee_payer.pubkey,
            blockhash=blockhash,
            last_valid_block_height=last_valid_block_height,
            size=size,
            signers=[kp.pubkey() for kp in keypairs],
        )
        logger.debug(f"Built transaction {signed.signature[:16]}... ({size} bytes)")
        return signed

    @staticmethod
    def _signing_keypairs(message: MessageV0, funder: Principal, fee_payer: Principal) -> List[Keypair]:
        """Keypairs for every required signer, fee payer first, each key once."""
        keypairs = [fee_payer.keypair]
        if not same_principal(funder, fee_payer):
            keypairs.append(funder.keypair)

        available = {kp.pubkey() for kp in keypairs}
        required = message.account_keys[:message.header.num_required_signatures]
        missing = [str(key) for key in required if key not in available]
        if missing:
            raise RouteBuildFailed(f"Route requires signatures from unknown accounts: {missing}")

        # Only keys the message actually asks for
        return [kp for kp in keypairs if kp.pubkey() in required]
