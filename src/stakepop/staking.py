import logging
from collections.abc import Sequence

from stakepop.chain import ChainClient
from stakepop.constants import Confirmation, Stage
from stakepop.errors import StakingError
from stakepop.models import (
    AccountOutcome,
    FundingReceipt,
    Nominator,
    StageReport,
    StakeRequest,
    Validator,
)
from stakepop.tracking import Submitter

log = logging.getLogger("stakepop.staking")

# Rewards are re-bonded into the staking ledger
REWARD_DESTINATION = "Staked"


class StakingStage:
    """Bond, then assume a role, for every account of a batch.

    Phase 1 submits every bond and waits for all of them to be terminal.
    Phase 2 only starts afterwards and submits the role transaction of each
    account whose bond went through. The stage returns once every
    submitted transaction is terminal; failures are attributed to accounts.
    """

    def __init__(
        self,
        client: ChainClient,
        submitter: Submitter,
        *,
        bond_confirmation: Confirmation = Confirmation.FINALIZED,
        role_confirmation: Confirmation = Confirmation.FINALIZED,
        abort_on_first_failure: bool = False,
    ):
        self.client = client
        self.submitter = submitter
        self.bond_confirmation = bond_confirmation
        self.role_confirmation = role_confirmation
        self.abort_on_first_failure = abort_on_first_failure

    def _check(self, requests: Sequence[StakeRequest], receipt: FundingReceipt) -> None:
        seen: set[str] = set()
        for r in requests:
            if r.address in seen:
                raise ValueError(f"duplicate stake request for {r.address}")
            seen.add(r.address)
            if not receipt.covers(r.address):
                raise StakingError("account not covered by a confirmed funding batch", stage=Stage.BOND, account=r.address)
            if r.bond > receipt.amount:
                raise StakingError(f"bond {r.bond} exceeds funded amount {receipt.amount}",
                                   stage=Stage.BOND, account=r.address)

    def _bond(self, r: StakeRequest):
        async def build():
            call = await self.client.compose_call("Staking", "bond", {"value": r.bond, "payee": REWARD_DESTINATION})
            return await self.client.sign(call, r.identity)
        return build

    def _role(self, r: StakeRequest):
        async def build():
            match r.role:
                case Validator():
                    call = await self.client.compose_call("Staking", "validate", {"prefs": r.role.prefs()})
                case Nominator(targets=targets):
                    call = await self.client.compose_call("Staking", "nominate", {"targets": list(targets)})
                case _:
                    raise TypeError(f"unknown role {r.role!r}")
            return await self.client.sign(call, r.identity)
        return build

    async def run(self, requests: Sequence[StakeRequest], receipt: FundingReceipt) -> StageReport:
        self._check(requests, receipt)
        outcomes = {
            r.address: AccountOutcome(
                address=r.address,
                role=r.role.kind,
                funded=receipt.amount,
                bond=r.bond,
                targets=getattr(r.role, "targets", ()),
            )
            for r in requests
        }
        report = StageReport(stage="staking", outcomes=list(outcomes.values()))
        if not requests:
            return report

        # Phase 1: every bond, joined on all outcomes
        bonds = await self.submitter.submit_all(
            Stage.BOND, [(r.address, self._bond(r)) for r in requests], until=self.bond_confirmation
        )
        bonded: list[StakeRequest] = []
        for r, p in zip(requests, bonds):
            if p.reached(self.bond_confirmation):
                outcomes[r.address].bonded = True
                bonded.append(r)
            else:
                outcomes[r.address].errors.append(f"bond {p.state.name.lower()}: {p.error}")

        if len(bonded) < len(requests):
            log.warning(f"{len(requests) - len(bonded)}/{len(requests)} bonds did not go through")
            if self.abort_on_first_failure:
                first = next(o for o in outcomes.values() if o.errors)
                raise StakingError("bond failed, aborting before role assignment",
                                   stage=Stage.BOND, account=first.address, failures=report.failed)

        # Phase 2: roles, only for accounts whose bond is confirmed
        roles = await self.submitter.submit_all(
            Stage.ROLE, [(r.address, self._role(r)) for r in bonded], until=self.role_confirmation
        )
        for r, p in zip(bonded, roles):
            if p.reached(self.role_confirmation):
                outcomes[r.address].role_assigned = True
            else:
                outcomes[r.address].errors.append(f"{r.role.kind} {p.state.name.lower()}: {p.error}")

        ok = len(requests) - len(report.failed)
        log.info(f"Staking complete: {ok}/{len(requests)} accounts bonded and assigned")
        return report
