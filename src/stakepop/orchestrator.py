import logging
import random
import warnings
from typing import Any

from stakepop.accounts import AccountFactory
from stakepop.chain import ChainClient
from stakepop.constants import DEFAULT_NOMINATIONS, Confirmation
from stakepop.errors import InsufficientTargets
from stakepop.funding import FundingStage
from stakepop.models import Identity, Nominator, RunReport, StakeRequest, Validator
from stakepop.staking import StakingStage
from stakepop.state import ChainStateReader
from stakepop.targets import TargetSelector
from stakepop.tracking import Store, Submitter

log = logging.getLogger("stakepop.orchestrator")


class Orchestrator:
    """Runs the validate, nominate and stakers-info workflows against one client.

    Each workflow goes accounts -> funding -> (validator snapshot) -> staking
    and stops at the first stage that cannot produce a usable result.
    """

    def __init__(self, client: ChainClient, config: dict[str, Any], *,
                 store: Store | None = None, rng: random.Random | None = None):
        self.client = client
        self.config = config
        chain, fund, stake, timeout = config["chain"], config["funding"], config["staking"], config["timeout"]

        self.accounts = AccountFactory(ss58_format=int(chain["ss58_format"]))
        self.funder: Identity = self.accounts.from_uri(fund["funder_uri"])
        self.submitter = Submitter(
            client, store, timeout=float(timeout["finality"]), max_concurrency=int(stake["max_concurrency"])
        )
        self.funding = FundingStage(
            client,
            self.submitter,
            self.funder,
            multiplier=int(fund["multiplier"]),
            confirmation=Confirmation(fund["confirmation"]),
            verify=bool(fund["verify"]),
        )
        self.staking = StakingStage(
            client,
            self.submitter,
            bond_confirmation=Confirmation(stake["bond_confirmation"]),
            role_confirmation=Confirmation(stake["role_confirmation"]),
            abort_on_first_failure=bool(stake["abort_on_first_failure"]),
        )
        self.reader = ChainStateReader(client, ss58_format=int(chain["ss58_format"]))
        self.selector = TargetSelector(rng)

    @property
    def store(self) -> Store:
        return self.submitter.store

    async def _amounts(self, bond_amount: int | None) -> tuple[int, int]:
        """(per-account funding, bond). Funding is twice the bond so fees are covered."""
        if bond_amount is None:
            fund = await self.funding.default_amount()
            return fund, fund // 2
        if bond_amount <= 0:
            raise ValueError(f"bond amount must be positive, got {bond_amount}")
        return 2 * bond_amount, bond_amount

    def _warn(self, report: RunReport, msg: str, category: type[Warning] | None = None) -> None:
        report.warnings.append(msg)
        if category is None:
            log.warning(msg)
        else:
            with warnings.catch_warnings():
                # Once per run, not once per process
                warnings.simplefilter("always", category)
                warnings.warn(category(msg), stacklevel=3)

    async def _check_min_bond(self, report: RunReport, kind: str, bond: int) -> None:
        item = "MinValidatorBond" if kind == Validator.kind else "MinNominatorBond"
        minimum = await self.client.read_storage("Staking", item)
        if minimum is not None and bond < int(minimum):
            self._warn(report, f"bond {bond} is below Staking.{item} ({minimum}), bonds will likely be rejected")

    async def _fund(self, report: RunReport, count: int, fund: int, namespace: str | None):
        report.namespace = namespace or self.accounts.new_namespace()
        identities = self.accounts.generate_many(count, report.namespace)
        receipt = await self.funding.run(identities, fund)
        return identities, receipt

    async def validate(self, count: int, bond_amount: int | None = None, *,
                       namespace: str | None = None, parachain_id: int | None = None) -> RunReport:
        report = RunReport(command="validate", parachain_id=parachain_id)
        fund, bond = await self._amounts(bond_amount)
        await self._check_min_bond(report, Validator.kind, bond)
        log.info(f"validate: {count} accounts, funding {fund}, bond {bond}")

        identities, receipt = await self._fund(report, count, fund, namespace)
        stage = await self.staking.run([StakeRequest(i, bond, Validator()) for i in identities], receipt)
        report.outcomes = stage.outcomes
        self._log_report(report)
        return report

    async def _nominations_quota(self, report: RunReport, nominations: int) -> int:
        limit = await self.client.read_constant("Staking", "MaxNominations")
        if limit is not None and nominations > int(limit):
            self._warn(report, f"{nominations} nominations exceed Staking.MaxNominations, capping to {limit}")
            return int(limit)
        return nominations

    async def nominate(self, count: int, bond_amount: int | None = None, nominations: int = DEFAULT_NOMINATIONS, *,
                       namespace: str | None = None, parachain_id: int | None = None) -> RunReport:
        if nominations < 0:
            raise ValueError("nominations can't be negative!")
        report = RunReport(command="nominate", parachain_id=parachain_id)
        fund, bond = await self._amounts(bond_amount)
        await self._check_min_bond(report, Nominator.kind, bond)
        quota = await self._nominations_quota(report, nominations)
        log.info(f"nominate: {count} accounts, funding {fund}, bond {bond}, {quota} nominations each")

        identities, receipt = await self._fund(report, count, fund, namespace)

        snapshot = await self.reader.validators()
        if len(snapshot) < quota:
            self._warn(
                report,
                f"only {len(snapshot)} validators available for {quota} nominations per account",
                InsufficientTargets,
            )
        requests = [StakeRequest(i, bond, Nominator(self.selector.select(quota, snapshot))) for i in identities]

        stage = await self.staking.run(requests, receipt)
        report.outcomes = stage.outcomes
        self._log_report(report)
        return report

    async def stakers_info(self) -> RunReport:
        validators, nominators = await self.reader.counts()
        log.info(f"Staking: {validators} validators, {nominators} nominators")
        return RunReport(command="stakers-info", validators=validators, nominators=nominators)

    def _log_report(self, report: RunReport) -> None:
        failed = report.failed
        total = len(report.outcomes)
        if failed:
            log.warning(f"{report.command}: {total - len(failed)}/{total} accounts succeeded")
            for o in failed:
                log.warning("  %s: %s", o.address, "; ".join(o.errors))
        else:
            log.info(f"{report.command}: all {total} accounts succeeded")
