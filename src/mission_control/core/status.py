"""Forward-only task status transitions.

Task status moves along a fixed order and never backwards. A request to move to
the current status or an earlier one is a no-op rather than an error, so stale or
duplicated completion signals are harmless: a ``testing`` signal that arrives after
``done`` leaves the task ``done``. Callers inspect the returned ``Transition`` to
tell a redundant request apart from an applied one.
"""

from dataclasses import dataclass

TASK_STATUS_ORDER = (
    "planning",
    "inbox",
    "assigned",
    "in_progress",
    "testing",
    "review",
    "done",
)

TASK_PRIORITIES = ("low", "normal", "high", "urgent")

# Statuses an agent may report through the completion webhook.
COMPLETION_STATUSES = ("testing", "review", "done")


@dataclass(frozen=True)
class Transition:
    applied: bool
    previous: str
    status: str


def status_index(status: str) -> int:
    try:
        return TASK_STATUS_ORDER.index(status)
    except ValueError:
        raise ValueError(f"Unknown task status: {status}") from None


def can_advance(current: str, requested: str) -> bool:
    """True iff ``requested`` is strictly later than ``current``."""
    return status_index(requested) > status_index(current)


def advance(current: str, requested: str) -> Transition:
    """Resolve a status request against the current status."""
    if can_advance(current, requested):
        return Transition(applied=True, previous=current, status=requested)
    return Transition(applied=False, previous=current, status=current)
