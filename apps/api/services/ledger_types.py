"""Result contracts shared by the credit ledger, regeneration limiter and workflows.

Business-rule rejections are returned as values; infrastructure failures are
raised as ``LedgerStoreError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Literal, Optional, TypeVar, Union


CreditPurpose = Literal["adventure", "expansion"]

T = TypeVar("T")


class RegenerationPhase(str, Enum):
    SCAFFOLD = "scaffold"
    EXPANSION = "expansion"


class LedgerStoreError(RuntimeError):
    """Raised when the balance or counter store cannot complete an operation."""

    def __init__(self, message: str, *, operation: str, subject_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.subject_id = subject_id


class AdventureNotFoundError(LookupError):
    """Raised when a regeneration targets an adventure that does not exist."""

    def __init__(self, adventure_id: str) -> None:
        super().__init__(f"Adventure {adventure_id} not found")
        self.adventure_id = adventure_id


# Credit ledger outcomes


@dataclass(frozen=True)
class CreditConsumed:
    purpose: str
    remaining_credits: int
    ok: bool = True


@dataclass(frozen=True)
class InsufficientCredits:
    purpose: str
    balance: int
    required: int = 1
    ok: bool = False

    @property
    def message(self) -> str:
        return (
            f"Insufficient credits for {self.purpose}. Required: {self.required}, "
            f"available: {self.balance}. Purchase credits to continue."
        )


@dataclass(frozen=True)
class CreditRefunded:
    purpose: str
    reason: str
    new_balance: int
    ok: bool = True


@dataclass(frozen=True)
class CreditsAdded:
    amount: int
    new_balance: int
    total_purchased: int
    ok: bool = True


ConsumeOutcome = Union[CreditConsumed, InsufficientCredits]


# Regeneration limiter outcomes


@dataclass(frozen=True)
class LimitCheckPassed:
    phase: RegenerationPhase
    used: int
    limit: int
    ok: bool = True


@dataclass(frozen=True)
class LimitExceeded:
    phase: RegenerationPhase
    used: int
    limit: int
    ok: bool = False

    @property
    def message(self) -> str:
        return f"{self.used}/{self.limit} {self.phase.value} regenerations used"


@dataclass(frozen=True)
class RegenerationNotAllowed:
    state: str
    ok: bool = False

    @property
    def message(self) -> str:
        return f"Adventures in state '{self.state}' cannot be regenerated"


LimitOutcome = Union[LimitCheckPassed, LimitExceeded]


@dataclass(frozen=True)
class RegenerationCounts:
    scaffold_used: int
    scaffold_remaining: int
    expansion_used: int
    expansion_remaining: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "scaffold_used": self.scaffold_used,
            "scaffold_remaining": self.scaffold_remaining,
            "expansion_used": self.expansion_used,
            "expansion_remaining": self.expansion_remaining,
        }


# Workflow outcomes


@dataclass(frozen=True)
class GenerationFailed:
    reason: str
    refunded: bool = False
    ok: bool = False


@dataclass(frozen=True)
class WorkflowResult(Generic[T]):
    """Terminal state of a generation workflow plus whatever it produced."""

    state: str
    payload: Optional[T] = None
    rejection: Optional[Union[InsufficientCredits, LimitExceeded, RegenerationNotAllowed, GenerationFailed]] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.rejection is None
