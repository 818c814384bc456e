"""Aggregation strategies as one decision function over a closed enum."""

from __future__ import annotations

from dataclasses import dataclass

from colony.swarm.models import AggregationStrategy, SessionStatus


@dataclass(frozen=True)
class Tally:
    """Terminal task counts of a session at one instant."""

    total: int
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def terminal(self) -> int:
        return self.succeeded + self.failed + self.cancelled

    @property
    def outstanding(self) -> int:
        return self.total - self.terminal


def decide(
    strategy: AggregationStrategy,
    tally: Tally,
    quorum_required: int = 1,
    allow_partial: bool = True,
) -> SessionStatus | None:
    """Return the session's final status, or None while undecided.

    - ``all`` decides once every task is terminal: completed when all
      succeeded, partial when some succeeded and partial results are allowed,
      otherwise aborted.
    - ``quorum`` completes as soon as ``quorum_required`` tasks succeeded and
      aborts once the quorum can no longer be reached.
    - ``first_success`` completes on the first success and aborts when every
      task ended without one.
    """
    if strategy == AggregationStrategy.ALL:
        if tally.outstanding > 0:
            return None
        if tally.succeeded == tally.total:
            return SessionStatus.COMPLETED
        if tally.succeeded > 0 and allow_partial:
            return SessionStatus.PARTIAL
        return SessionStatus.ABORTED

    if strategy == AggregationStrategy.QUORUM:
        if tally.succeeded >= quorum_required:
            return SessionStatus.COMPLETED
        if tally.succeeded + tally.outstanding < quorum_required:
            return SessionStatus.ABORTED
        return None

    if strategy == AggregationStrategy.FIRST_SUCCESS:
        if tally.succeeded > 0:
            return SessionStatus.COMPLETED
        if tally.outstanding == 0:
            return SessionStatus.ABORTED
        return None

    raise ValueError(f"Unknown aggregation strategy: {strategy}")


def abort_reason(strategy: AggregationStrategy, tally: Tally, quorum_required: int) -> str:
    if strategy == AggregationStrategy.QUORUM:
        return (
            f"quorum of {quorum_required} unreachable: {tally.succeeded} succeeded, "
            f"{tally.failed + tally.cancelled} of {tally.total} did not"
        )
    if strategy == AggregationStrategy.FIRST_SUCCESS:
        return f"none of {tally.total} tasks succeeded"
    return f"{tally.failed + tally.cancelled} of {tally.total} tasks did not succeed"
