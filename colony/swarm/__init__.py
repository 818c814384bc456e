"""Colony Swarm: parallel workers coordinated per goal session."""

from colony.swarm.aggregation import Tally, decide
from colony.swarm.coordinator import SwarmCoordinator
from colony.swarm.models import (
    AggregationStrategy,
    Assignment,
    SessionResult,
    SessionSettings,
    SessionStatus,
    TaskOutcome,
    TraceStep,
    WorkerEvent,
    WorkerState,
)
from colony.swarm.tokens import CancellationToken
from colony.swarm.worker import GatewayStep, SpecializationProfile, Worker

__all__ = [
    "AggregationStrategy",
    "Assignment",
    "CancellationToken",
    "GatewayStep",
    "SessionResult",
    "SessionSettings",
    "SessionStatus",
    "SpecializationProfile",
    "SwarmCoordinator",
    "Tally",
    "TaskOutcome",
    "TraceStep",
    "Worker",
    "WorkerEvent",
    "WorkerState",
    "decide",
]
