"""Fund freshly generated accounts from one atomic batch.

The transfers go into a single ``Utility.batch_all`` signed by the funder.
``batch_all`` dispatches all inner calls or none, so the stage does not
handle partial success. With ``verify`` on, the free balance of every
recipient is read back after finality to check that assumption against the
ledger.
"""
import logging
from collections.abc import Sequence

from stakepop.chain import ChainClient
from stakepop.constants import FUND_MULTIPLIER, Confirmation, Stage, TxState
from stakepop.errors import ChainConnectionError, FinalityTimeout, FundingError
from stakepop.models import AccountOutcome, FundingBatch, FundingInstruction, FundingReceipt, Identity
from stakepop.tracking import Submitter

log = logging.getLogger("stakepop.funding")


class FundingStage:
    def __init__(
        self,
        client: ChainClient,
        submitter: Submitter,
        funder: Identity,
        *,
        multiplier: int = FUND_MULTIPLIER,
        confirmation: Confirmation = Confirmation.FINALIZED,
        verify: bool = True,
    ):
        self.client = client
        self.submitter = submitter
        self.funder = funder
        self.multiplier = multiplier
        self.confirmation = confirmation
        self.verify = verify

    async def default_amount(self) -> int:
        ed = await self.client.read_constant("Balances", "ExistentialDeposit")
        if ed is None:
            raise FundingError("runtime exposes no Balances.ExistentialDeposit", stage=Stage.FUNDING)
        return int(ed) * self.multiplier

    def build_batch(self, identities: Sequence[Identity], amount: int) -> FundingBatch:
        if amount <= 0:
            raise ValueError(f"funding amount must be positive, got {amount}")
        recipients = [i.address for i in identities]
        if len(set(recipients)) != len(recipients):
            raise ValueError("funding batch recipients must be distinct")
        return FundingBatch(
            funder=self.funder.address,
            instructions=tuple(FundingInstruction(recipient=r, amount=amount) for r in recipients),
        )

    async def _compose(self, batch: FundingBatch):
        calls = [
            await self.client.compose_call("Balances", "transfer_allow_death", {"dest": i.recipient, "value": i.amount})
            for i in batch.instructions
        ]
        return await self.client.compose_call("Utility", "batch_all", {"calls": calls})

    async def run(self, identities: Sequence[Identity], amount: int | None = None) -> FundingReceipt:
        """Fund every identity with ``amount`` (default ED * multiplier) and wait for the batch."""
        try:
            return await self._run(identities, amount)
        except ChainConnectionError as e:
            raise e.attribute(Stage.FUNDING, self.funder.address)

    async def _run(self, identities: Sequence[Identity], amount: int | None) -> FundingReceipt:
        if amount is None:
            amount = await self.default_amount()
        batch = self.build_batch(identities, amount)
        log.info(f"Funding {len(batch)} accounts with {amount} each ({batch.total} total) from {batch.funder}")

        if not batch.instructions:
            return FundingReceipt(None, None, amount, frozenset(), self.confirmation)

        call = await self._compose(batch)
        extrinsic = await self.client.sign(call, self.funder)
        p = await self.submitter.track(Stage.FUNDING, self.funder.address, extrinsic, until=self.confirmation)

        if p.state is TxState.TIMED_OUT:
            raise FinalityTimeout(f"funding batch {p.tx_hash} {p.error}", stage=Stage.FUNDING, account=self.funder.address)
        if not p.reached(self.confirmation):
            raise FundingError(
                f"funding batch {p.tx_hash} failed: {p.error}",
                stage=Stage.FUNDING,
                account=self.funder.address,
                failures=[AccountOutcome(address=r, errors=[f"funding batch failed: {p.error}"]) for r in batch.recipients],
            )
        log.info(f"Funding batch {p.tx_hash} {p.state.name.lower()} in {p.block_hash}")

        if self.verify:
            await self._verify(batch)

        return FundingReceipt(
            batch_hash=p.tx_hash,
            block_hash=p.block_hash,
            amount=amount,
            recipients=frozenset(batch.recipients),
            confirmation=self.confirmation,
        )

    async def _verify(self, batch: FundingBatch) -> None:
        short: list[AccountOutcome] = []
        for i in batch.instructions:
            free = await self.client.free_balance(i.recipient)
            if free < i.amount:
                short.append(AccountOutcome(address=i.recipient, errors=[f"free balance {free} < funded {i.amount}"]))
        if short:
            raise FundingError(
                f"{len(short)}/{len(batch)} recipients not funded after batch finality",
                stage=Stage.FUNDING,
                account=short[0].address,
                failures=short,
            )
        log.debug("Verified balances of %s funded accounts", len(batch))
