"""
Colony - multi-agent orchestration core.

A task router, a swarm coordinator running specialized workers in parallel,
and a three-layer memory (episodic, reflexion, skill) that turns recurring
successes into reusable procedures.
"""

__version__ = "0.3.0"

from colony.config import ColonyConfig, GoalOptions, get_config
from colony.errors import (
    Cancelled,
    ColonyError,
    ConfigError,
    EmptyDecomposition,
    GatewayError,
    GatewayTimeout,
    GatewayUnavailable,
    MemoryWriteConflict,
    NoWorkerAvailable,
    RecordConflict,
    SessionAborted,
    WorkerFailure,
)
from colony.gateway import GatewayRequest, GatewayResponse, MockGateway, RoutingGateway
from colony.learning import LearningEngine
from colony.logging import configure_logging, get_logger, setup_logging
from colony.memory import MemoryLayer, MemoryStore
from colony.orchestrator import GoalReport, Orchestrator
from colony.router import TaskRouter
from colony.swarm import SwarmCoordinator
from colony.tasks import Goal, GoalStatus, Task, TaskArena, TaskStatus

__all__ = [
    "Cancelled",
    "ColonyConfig",
    "ColonyError",
    "ConfigError",
    "EmptyDecomposition",
    "GatewayError",
    "GatewayRequest",
    "GatewayResponse",
    "GatewayTimeout",
    "GatewayUnavailable",
    "Goal",
    "GoalOptions",
    "GoalReport",
    "GoalStatus",
    "LearningEngine",
    "MemoryLayer",
    "MemoryStore",
    "MemoryWriteConflict",
    "MockGateway",
    "NoWorkerAvailable",
    "Orchestrator",
    "RecordConflict",
    "RoutingGateway",
    "SessionAborted",
    "SwarmCoordinator",
    "Task",
    "TaskArena",
    "TaskRouter",
    "TaskStatus",
    "WorkerFailure",
    "__version__",
    "get_config",
    "get_logger",
    "configure_logging",
    "setup_logging",
]
