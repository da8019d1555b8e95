"""Error kinds raised while populating a staking network.

Every error carries the stage it happened in and, where one can be named,
the account it is attributed to. The CLI turns these into a stderr line and
a non-zero exit code.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stakepop.models import AccountOutcome


class PopulateError(Exception):
    def __init__(self, message: str, *, stage: str | None = None, account: str | None = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.account = account

    def __str__(self) -> str:
        parts = []
        if self.stage:
            parts.append(f"[{self.stage}]")
        if self.account:
            parts.append(f"account={self.account}")
        parts.append(self.message)
        return " ".join(parts)

    def attribute(self, stage: str | None, account: str | None = None) -> PopulateError:
        """Fill in the stage and account where the raiser could not name them."""
        self.stage = self.stage or stage
        self.account = self.account or account
        return self


class ChainConnectionError(PopulateError, ConnectionError):
    """The endpoint could not be reached. Fatal, not retried."""


class SubmissionError(PopulateError):
    """Rejected before inclusion, or dispatched with an error."""


class FinalityTimeout(PopulateError):
    """A status stream did not reach the awaited state in time."""


class SchemaDecodeError(PopulateError):
    """A storage key does not match the expected layout."""


class KeyDerivationError(PopulateError):
    pass


class StageError(PopulateError):
    """A stage could not produce a usable result."""

    def __init__(self, message: str, *, stage: str | None = None, account: str | None = None,
                 failures: list[AccountOutcome] | None = None):
        super().__init__(message, stage=stage, account=account)
        self.failures = failures or []


class FundingError(StageError):
    pass


class StakingError(StageError):
    pass


class InsufficientTargets(UserWarning):
    """Fewer validators are available than nominations were requested."""


__all__ = [
    "ChainConnectionError",
    "FinalityTimeout",
    "FundingError",
    "InsufficientTargets",
    "KeyDerivationError",
    "PopulateError",
    "SchemaDecodeError",
    "StageError",
    "StakingError",
    "SubmissionError",
]
