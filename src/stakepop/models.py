"""Domain data structures shared by the stages.

NOTE: Roles are a tagged variant (Validator | Nominator) so StakingStage
treats both the same way and only the final call differs.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from substrateinterface import Keypair

from stakepop.constants import Confirmation, TxState


@dataclass(frozen=True, slots=True)
class Identity:
    address: str
    keypair: Keypair = field(compare=False, repr=False)
    seed: str | None = field(default=None, compare=False, repr=False)

    @property
    def public_key(self) -> bytes:
        return bytes(self.keypair.public_key)


@dataclass(frozen=True, slots=True)
class FundingInstruction:
    recipient: str
    amount: int


@dataclass(frozen=True, slots=True)
class FundingBatch:
    funder: str
    instructions: tuple[FundingInstruction, ...]

    def __len__(self) -> int:
        return len(self.instructions)

    @property
    def recipients(self) -> list[str]:
        return [i.recipient for i in self.instructions]

    @property
    def total(self) -> int:
        return sum(i.amount for i in self.instructions)


@dataclass(frozen=True, slots=True)
class Validator:
    kind: ClassVar[str] = "validator"
    commission: int = 0  # Perbill
    blocked: bool = False

    def prefs(self) -> dict[str, Any]:
        return {"commission": self.commission, "blocked": self.blocked}


@dataclass(frozen=True, slots=True)
class Nominator:
    kind: ClassVar[str] = "nominator"
    targets: tuple[str, ...] = ()

    def __post_init__(self):
        if len(set(self.targets)) != len(self.targets):
            raise ValueError(f"nomination targets must be distinct: {self.targets}")


Role = Validator | Nominator


@dataclass(frozen=True, slots=True)
class StakeRequest:
    identity: Identity
    bond: int
    role: Role

    def __post_init__(self):
        if self.bond <= 0:
            raise ValueError(f"bond must be positive, got {self.bond}")

    @property
    def address(self) -> str:
        return self.identity.address


@dataclass(frozen=True, slots=True)
class TxUpdate:
    """One status event from a submit-and-watch stream."""

    state: TxState
    tx_hash: str | None = None
    block_hash: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class AccountOutcome:
    address: str
    role: str | None = None
    funded: int = 0
    bond: int = 0
    bonded: bool = False
    role_assigned: bool = False
    targets: tuple[str, ...] = ()
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and self.bonded and self.role_assigned

    def to_dict(self) -> dict[str, Any]:
        d = {
            "address": self.address,
            "role": self.role,
            "funded": self.funded,
            "bond": self.bond,
            "bonded": self.bonded,
            "role_assigned": self.role_assigned,
            "errors": list(self.errors),
        }
        if self.role == Nominator.kind:
            d["targets"] = list(self.targets)
        return d


@dataclass(frozen=True, slots=True)
class FundingReceipt:
    """Proof that a funding batch reached its confirmation level."""

    batch_hash: str | None
    block_hash: str | None
    amount: int
    recipients: frozenset[str]
    confirmation: Confirmation

    def covers(self, address: str) -> bool:
        return address in self.recipients


@dataclass(slots=True)
class StageReport:
    stage: str
    outcomes: list[AccountOutcome] = field(default_factory=list)

    @property
    def failed(self) -> list[AccountOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass(slots=True)
class RunReport:
    command: str
    parachain_id: int | None = None
    namespace: str | None = None
    outcomes: list[AccountOutcome] = field(default_factory=list)
    validators: int | None = None
    nominators: int | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def failed(self) -> list[AccountOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"command": self.command, "ok": self.ok}
        if self.parachain_id is not None:
            d["parachain_id"] = self.parachain_id
        if self.namespace is not None:
            d["namespace"] = self.namespace
        if self.outcomes:
            d["accounts"] = [o.to_dict() for o in self.outcomes]
            d["succeeded"] = len(self.outcomes) - len(self.failed)
            d["failed"] = len(self.failed)
        if self.validators is not None:
            d["validators"] = self.validators
        if self.nominators is not None:
            d["nominators"] = self.nominators
        if self.warnings:
            d["warnings"] = list(self.warnings)
        return d
