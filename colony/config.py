"""
Colony Configuration Management

Loads configuration from YAML file with environment variable overrides.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from colony.errors import ConfigError

AGGREGATION_STRATEGIES = ("all", "quorum", "first_success")
NO_WORKER_POLICIES = ("queue", "fail")

DEFAULT_SPECIALIZATION_KEYWORDS: dict[str, list[str]] = {
    "coder": ["code", "implement", "fix", "refactor", "function", "bug", "script", "build"],
    "researcher": ["research", "find", "investigate", "look up", "search", "gather"],
    "writer": ["write", "draft", "document", "summarize", "explain", "describe"],
    "analyst": ["analyze", "analyse", "compare", "evaluate", "measure", "estimate"],
    "reviewer": ["review", "test", "verify", "check", "audit", "validate"],
}


def default_data_dir() -> Path:
    """Return the default data directory."""
    return Path.home() / ".colony"


def _env_bool(name: str, current: bool) -> bool:
    if value := os.environ.get(name):
        return value.lower() in ("true", "1", "yes")
    return current


def _env_float(name: str, current: float) -> float:
    if value := os.environ.get(name):
        return float(value)
    return current


def _env_int(name: str, current: int) -> int:
    if value := os.environ.get(name):
        return int(value)
    return current


@dataclass
class RouterConfig:
    """Configuration for goal decomposition and skill matching."""

    decomposer: str = "rule"  # "rule" or "model"
    default_specialization: str = "generalist"
    confidence_floor: float = 0.6
    use_similar_skills: bool = True
    similar_skill_threshold: float = 0.92
    specialization_keywords: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_SPECIALIZATION_KEYWORDS.items()}
    )

    def __post_init__(self):
        self.decomposer = os.environ.get("COLONY_DECOMPOSER", self.decomposer)
        self.confidence_floor = _env_float("COLONY_CONFIDENCE_FLOOR", self.confidence_floor)


@dataclass
class SwarmConfig:
    """Configuration for swarm sessions and worker pools."""

    workers_per_specialization: int = 2
    aggregation: str = "all"
    quorum_fraction: float = 0.5
    allow_partial: bool = True
    retry_budget: int = 2
    retry_backoff_seconds: float = 0.5
    dispatch_wait_seconds: float = 5.0
    no_worker_policy: str = "queue"
    cancel_grace_seconds: float = 5.0
    max_worker_failures: int = 3
    poll_interval_seconds: float = 0.05
    max_concurrent_goals: int = 4

    def __post_init__(self):
        self.workers_per_specialization = _env_int(
            "COLONY_WORKERS_PER_SPECIALIZATION", self.workers_per_specialization
        )
        self.aggregation = os.environ.get("COLONY_AGGREGATION", self.aggregation)
        self.retry_budget = _env_int("COLONY_RETRY_BUDGET", self.retry_budget)
        self.no_worker_policy = os.environ.get("COLONY_NO_WORKER_POLICY", self.no_worker_policy)

    def validate(self) -> None:
        """Raise ConfigError on values the coordinator cannot honor."""
        if self.aggregation not in AGGREGATION_STRATEGIES:
            raise ConfigError(f"Unknown aggregation strategy {self.aggregation!r}")
        if self.no_worker_policy not in NO_WORKER_POLICIES:
            raise ConfigError(f"Unknown no-worker policy {self.no_worker_policy!r}")
        if not 0.0 < self.quorum_fraction <= 1.0:
            raise ConfigError(f"quorum_fraction must be in (0, 1], got {self.quorum_fraction}")
        if self.retry_budget < 0:
            raise ConfigError("retry_budget must be >= 0")
        if self.workers_per_specialization < 1:
            raise ConfigError("workers_per_specialization must be >= 1")


@dataclass
class MemoryConfig:
    """Configuration for the memory store."""

    backend: str = "sqlite"  # "sqlite" or "memory"
    db_name: str = "colony-memory.db"
    embedding_dim: int = 256
    similarity_weight: float = 1.0
    recency_weight: float = 1.0
    success_weight: float = 1.0
    recency_half_life_hours: float = 168.0
    merge_threshold: float = 0.75
    write_retries: int = 3
    lock_timeout_seconds: float = 10.0

    def __post_init__(self):
        self.backend = os.environ.get("COLONY_MEMORY_BACKEND", self.backend)


@dataclass
class LearningConfig:
    """Configuration for reflexion and skill promotion."""

    promotion_threshold: int = 5
    variant_threshold: float = 0.9
    critic: str = "heuristic"  # "heuristic" or "model"
    consolidate_every: int = 0  # promotions between consolidations, 0 = never
    consolidation_interval_hours: float = 0.0  # 0 = no background schedule

    def __post_init__(self):
        self.promotion_threshold = _env_int(
            "COLONY_PROMOTION_THRESHOLD", self.promotion_threshold
        )
        self.critic = os.environ.get("COLONY_CRITIC", self.critic)


@dataclass
class GatewayConfig:
    """Configuration for tool/model invocation."""

    default_timeout_seconds: float = 30.0
    max_concurrent_calls: int = 16
    model_name: str = "default"

    def __post_init__(self):
        self.default_timeout_seconds = _env_float(
            "COLONY_GATEWAY_TIMEOUT", self.default_timeout_seconds
        )
        self.model_name = os.environ.get("COLONY_MODEL_NAME", self.model_name)


@dataclass
class GoalOptions:
    """Per-goal overrides supplied at submission time."""

    aggregation: str | None = None
    quorum_fraction: float | None = None
    allow_partial: bool | None = None
    retry_budget: int | None = None
    specialization_hints: dict[str, str] = field(default_factory=dict)
    workers: dict[str, int] = field(default_factory=dict)


@dataclass
class ColonyConfig:
    """Main configuration for Colony."""

    data_dir: Path = field(default_factory=default_data_dir)
    log_level: str = "INFO"
    log_to_file: bool = True
    router: RouterConfig = field(default_factory=RouterConfig)
    swarm: SwarmConfig = field(default_factory=SwarmConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)

    def __post_init__(self):
        if isinstance(self.data_dir, str):
            self.data_dir = Path(self.data_dir)

        self.data_dir = self.data_dir.expanduser()

        if env_data_dir := os.environ.get("COLONY_DATA_DIR"):
            self.data_dir = Path(env_data_dir).expanduser()
        self.log_level = os.environ.get("COLONY_LOG_LEVEL", self.log_level)
        self.log_to_file = _env_bool("COLONY_LOG_TO_FILE", self.log_to_file)

    @property
    def config_file(self) -> Path:
        return self.data_dir / "config.yaml"

    @property
    def log_file(self) -> Path:
        return self.data_dir / "colony.log"

    @property
    def memory_db(self) -> Path:
        return self.data_dir / self.memory.db_name

    def ensure_dirs(self) -> None:
        """Create necessary directories."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _sections(self) -> dict[str, Any]:
        return {
            "router": self.router,
            "swarm": self.swarm,
            "memory": self.memory,
            "learning": self.learning,
            "gateway": self.gateway,
        }

    def to_dict(self) -> dict:
        """Convert config to dictionary for serialization."""
        data: dict[str, Any] = {
            "data_dir": str(self.data_dir),
            "log_level": self.log_level,
            "log_to_file": self.log_to_file,
        }
        for name, section in self._sections().items():
            data[name] = {f.name: getattr(section, f.name) for f in fields(section)}
        return data

    def save(self) -> None:
        """Save configuration to YAML file."""
        self.ensure_dirs()
        with open(self.config_file, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls, config_path: Path | None = None) -> "ColonyConfig":
        """
        Load configuration from file.

        Precedence (highest to lowest):
        1. Environment variables
        2. Config file values
        3. Default values
        """
        config = cls()

        if config_path is None:
            config_path = config.config_file

        if config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}

            if "data_dir" in data:
                config.data_dir = Path(data["data_dir"]).expanduser()
            if "log_level" in data:
                config.log_level = data["log_level"]
            if "log_to_file" in data:
                config.log_to_file = data["log_to_file"]

            for name, section in config._sections().items():
                if section_data := data.get(name):
                    _apply_section(section, section_data, name)

            # Re-apply environment overrides
            config.__post_init__()
            for section in config._sections().values():
                section.__post_init__()

        config.swarm.validate()
        return config


def _apply_section(section: Any, values: dict, name: str) -> None:
    """Copy known keys from a YAML mapping onto a config section."""
    known = {f.name for f in fields(section)}
    for key, value in values.items():
        if key not in known:
            raise ConfigError(f"Unknown key {key!r} in config section {name!r}")
        setattr(section, key, value)


def get_config() -> ColonyConfig:
    """Get the global configuration, loading from default location."""
    return ColonyConfig.load()
