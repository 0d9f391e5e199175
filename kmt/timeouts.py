"""
Named timeout budgets for remote operations.

Each remote call belongs to an ``OperationKind``; the executor asks the
policy for that kind's budget when the call is submitted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from kmt.exceptions import UnknownOperationKind


class OperationKind(str, Enum):
    """Classes of remote operations that have their own budget."""

    REACHABILITY = "reachability"
    FUTURE_WAIT = "future_wait"
    DESCRIBE_GROUP = "describe_group"
    CLOSE = "close"
    DELETE_TOPIC = "delete_topic"
    POLL = "poll"


DEFAULT_BUDGETS_MS: dict[OperationKind, int] = {
    OperationKind.REACHABILITY: 2000,
    OperationKind.FUTURE_WAIT: 5000,
    OperationKind.DESCRIBE_GROUP: 2000,
    OperationKind.CLOSE: 2000,
    OperationKind.DELETE_TOPIC: 2000,
    # default fetch timeout plus DEFAULT_POLL_GRACE_MS
    OperationKind.POLL: 7000,
}

# extra wait past a listener's fetch timeout before its poll is abandoned
DEFAULT_POLL_GRACE_MS = 2000


@dataclass(frozen=True)
class TimeoutPolicy:
    """
    Immutable lookup from operation kind to budget.

    Example:
        policy = TimeoutPolicy.from_ms(reachability=200)
        policy.budget(OperationKind.REACHABILITY)  # 0.2
    """

    budgets_ms: dict[OperationKind, int] = field(
        default_factory=lambda: dict(DEFAULT_BUDGETS_MS)
    )
    poll_grace_ms: int = DEFAULT_POLL_GRACE_MS

    @classmethod
    def from_ms(cls, poll_grace_ms: int = DEFAULT_POLL_GRACE_MS, **overrides: int) -> "TimeoutPolicy":
        """
        Build a policy from defaults plus per-kind overrides.

        Args:
            poll_grace_ms: Added to a listener's fetch timeout to get its poll budget
            **overrides: Budgets in milliseconds keyed by kind value
                (e.g. ``describe_group=500``)
        """
        budgets = dict(DEFAULT_BUDGETS_MS)
        for name, value in overrides.items():
            budgets[resolve_kind(name)] = int(value)
        return cls(budgets_ms=budgets, poll_grace_ms=int(poll_grace_ms))

    def budget_ms(self, kind: OperationKind | str) -> int:
        resolved = resolve_kind(kind)
        try:
            return self.budgets_ms[resolved]
        except KeyError:
            raise UnknownOperationKind(
                f"No timeout budget for '{resolved.value}'",
                details={"kind": resolved.value},
            ) from None

    def budget(self, kind: OperationKind | str) -> float:
        """Budget for ``kind`` in seconds."""
        return self.budget_ms(kind) / 1000.0

    def poll_budget(self, fetch_timeout_ms: int) -> float:
        """Budget in seconds for one poll waiting up to ``fetch_timeout_ms``."""
        return (fetch_timeout_ms + self.poll_grace_ms) / 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {kind.value: ms for kind, ms in self.budgets_ms.items()}


def resolve_kind(kind: OperationKind | str) -> OperationKind:
    if isinstance(kind, OperationKind):
        return kind
    try:
        return OperationKind(kind)
    except ValueError:
        raise UnknownOperationKind(
            f"Unknown operation kind '{kind}'",
            details={"kind": str(kind)},
        ) from None
