import asyncio

import pytest

from stakepop.constants import Confirmation
from stakepop.errors import StakingError
from stakepop.models import FundingReceipt, Nominator, StakeRequest, Validator
from stakepop.staking import StakingStage
from stakepop.tracking import Submitter

from conftest import MockChain, make_addresses

FUND = 1_000


def fund(chain, identities, amount=FUND) -> FundingReceipt:
    for i in identities:
        chain.balances[i.address] += amount
    return FundingReceipt("0xbatch", "0xblock", amount, frozenset(i.address for i in identities), Confirmation.FINALIZED)


def stage(chain, *, concurrency=4, timeout=2.0, **kw) -> StakingStage:
    return StakingStage(chain, Submitter(chain, timeout=timeout, max_concurrency=concurrency), **kw)


def validators(chain, factory, n, bond=FUND // 2):
    ids = factory.generate_many(n, "s")
    return [StakeRequest(i, bond, Validator()) for i in ids], fund(chain, ids)


def test_validators_bond_then_validate(chain, factory):
    requests, receipt = validators(chain, factory, 4)
    report = asyncio.run(stage(chain).run(requests, receipt))

    assert report.ok
    assert all(o.bonded and o.role_assigned and o.role == "validator" for o in report.outcomes)
    assert sorted(chain.validators) == sorted(r.address for r in requests)
    assert len(chain.calls("Staking.bond")) == 4
    assert len(chain.calls("Staking.validate")) == 4
    assert chain.calls("Staking.bond")[0].call.params == {"value": FUND // 2, "payee": "Staked"}


def test_every_bond_final_before_any_role(factory):
    slow = {}
    chain = MockChain(delay=lambda x: 0.05 if x.signer in slow else 0.0)
    requests, receipt = validators(chain, factory, 5)
    slow[requests[0].address] = True

    asyncio.run(stage(chain).run(requests, receipt))

    first_role = next(n for n, (ev, name, _) in enumerate(chain.log)
                      if ev == "submit" and name == "Staking.validate")
    bonds_final = [n for n, (ev, name, _) in enumerate(chain.log) if ev == "final" and name == "Staking.bond"]
    assert len(bonds_final) == 5
    assert max(bonds_final) < first_role


def test_failed_bond_is_attributed_and_skips_role(factory):
    chain = MockChain()
    requests, receipt = validators(chain, factory, 3)
    bad = requests[1].address
    chain.fail = lambda x: "Staking.InsufficientBond" if x.signer == bad and x.call.name == "Staking.bond" else None

    report = asyncio.run(stage(chain).run(requests, receipt))

    assert not report.ok
    [failed] = report.failed
    assert failed.address == bad
    assert not failed.bonded
    assert "InsufficientBond" in failed.errors[0]
    assert bad not in [x.signer for x in chain.calls("Staking.validate")]
    assert len(chain.calls("Staking.validate")) == 2


def test_abort_on_first_failure(factory):
    chain = MockChain()
    requests, receipt = validators(chain, factory, 3)
    bad = requests[0].address
    chain.fail = lambda x: "Staking.InsufficientBond" if x.signer == bad else None

    with pytest.raises(StakingError) as e:
        asyncio.run(stage(chain, abort_on_first_failure=True).run(requests, receipt))
    assert e.value.account == bad
    assert e.value.stage == "bond"
    assert chain.calls("Staking.validate") == []


def test_timed_out_bond_is_reported(factory):
    chain = MockChain()
    requests, receipt = validators(chain, factory, 2)
    stuck = requests[0].address
    chain.stall = lambda x: x.signer == stuck

    report = asyncio.run(stage(chain, timeout=0.1).run(requests, receipt))
    [failed] = report.failed
    assert failed.address == stuck
    assert "timed_out" in failed.errors[0]


def test_bond_above_funded_is_rejected_upfront(chain, factory):
    ids = factory.generate_many(2, "s")
    receipt = fund(chain, ids)
    requests = [StakeRequest(i, FUND + 1, Validator()) for i in ids]
    with pytest.raises(StakingError):
        asyncio.run(stage(chain).run(requests, receipt))
    assert chain.submitted == []


def test_unfunded_account_is_rejected(chain, factory):
    funded, stranger = factory.generate("s/0"), factory.generate("s/1")
    receipt = fund(chain, [funded])
    requests = [StakeRequest(funded, 10, Validator()), StakeRequest(stranger, 10, Validator())]
    with pytest.raises(StakingError) as e:
        asyncio.run(stage(chain).run(requests, receipt))
    assert e.value.account == stranger.address
    assert chain.submitted == []


def test_duplicate_requests_rejected(chain, factory):
    a = factory.generate("s/0")
    receipt = fund(chain, [a])
    with pytest.raises(ValueError):
        asyncio.run(stage(chain).run([StakeRequest(a, 10, Validator())] * 2, receipt))


def test_nominators_use_their_targets(factory):
    targets = make_addresses(3, "v")
    chain = MockChain(validators=list(targets))
    ids = factory.generate_many(2, "s")
    receipt = fund(chain, ids)
    requests = [StakeRequest(i, 100, Nominator(tuple(targets[:2]))) for i in ids]

    report = asyncio.run(stage(chain).run(requests, receipt))

    assert report.ok
    assert all(chain.nominators[i.address] == targets[:2] for i in ids)
    assert report.outcomes[0].to_dict()["targets"] == targets[:2]


def test_role_failure_is_attributed(factory):
    chain = MockChain(validators=make_addresses(1, "v"))
    ids = factory.generate_many(2, "s")
    receipt = fund(chain, ids)
    requests = [
        StakeRequest(ids[0], 100, Nominator(tuple(chain.validators))),
        StakeRequest(ids[1], 100, Nominator(("not-a-validator",))),
    ]
    report = asyncio.run(stage(chain).run(requests, receipt))
    [failed] = report.failed
    assert failed.address == ids[1].address
    assert failed.bonded and not failed.role_assigned
    assert "BadTarget" in failed.errors[0]


def test_concurrency_is_bounded(factory):
    chain = MockChain(delay=lambda x: 0.01)
    requests, receipt = validators(chain, factory, 9)
    report = asyncio.run(stage(chain, concurrency=2).run(requests, receipt))
    assert report.ok
    assert chain.peak_in_flight <= 2


def test_nothing_to_stake(chain):
    receipt = FundingReceipt(None, None, 0, frozenset(), Confirmation.FINALIZED)
    report = asyncio.run(stage(chain).run([], receipt))
    assert report.outcomes == []
    assert chain.submitted == []
