"""Tests for configuration loading, env overrides and session settings."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
import yaml

from colony.config import ColonyConfig, GoalOptions, SwarmConfig
from colony.errors import ConfigError
from colony.logging import configure_logging, get_logger, setup_logging
from colony.swarm.models import AggregationStrategy, SessionSettings

# ════════════════════════════════════════════════════════════════════
# TestColonyConfig
# ════════════════════════════════════════════════════════════════════


class TestColonyConfig:
    def test_defaults(self, tmp_data_dir: Path):
        config = ColonyConfig(data_dir=tmp_data_dir)
        assert config.swarm.aggregation == "all"
        assert config.swarm.retry_budget == 2
        assert config.learning.promotion_threshold == 5
        assert config.memory.backend == "sqlite"
        assert config.memory_db == tmp_data_dir / "colony-memory.db"
        assert "coder" in config.router.specialization_keywords

    def test_string_data_dir_is_expanded(self):
        config = ColonyConfig(data_dir="~/colony-test")
        assert isinstance(config.data_dir, Path)
        assert "~" not in str(config.data_dir)

    def test_save_and_load_round_trip(self, tmp_data_dir: Path):
        config = ColonyConfig(data_dir=tmp_data_dir)
        config.swarm.aggregation = "quorum"
        config.swarm.quorum_fraction = 0.75
        config.learning.promotion_threshold = 3
        config.save()

        loaded = ColonyConfig.load(config.config_file)
        assert loaded.data_dir == tmp_data_dir
        assert loaded.swarm.aggregation == "quorum"
        assert loaded.swarm.quorum_fraction == 0.75
        assert loaded.learning.promotion_threshold == 3

    def test_missing_file_gives_defaults(self, tmp_data_dir: Path):
        loaded = ColonyConfig.load(tmp_data_dir / "absent.yaml")
        assert loaded.swarm.aggregation == "all"

    def test_env_overrides_file(self, tmp_data_dir: Path, monkeypatch: pytest.MonkeyPatch):
        path = tmp_data_dir / "config.yaml"
        path.write_text(yaml.dump({"swarm": {"aggregation": "all", "retry_budget": 4}}))
        monkeypatch.setenv("COLONY_AGGREGATION", "first_success")

        loaded = ColonyConfig.load(path)
        assert loaded.swarm.aggregation == "first_success"
        assert loaded.swarm.retry_budget == 4

    def test_env_data_dir(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("COLONY_DATA_DIR", str(tmp_path / "elsewhere"))
        assert ColonyConfig().data_dir == tmp_path / "elsewhere"

    def test_unknown_key_rejected(self, tmp_data_dir: Path):
        path = tmp_data_dir / "config.yaml"
        path.write_text(yaml.dump({"swarm": {"aggregaton": "all"}}))
        with pytest.raises(ConfigError, match="aggregaton"):
            ColonyConfig.load(path)

    def test_invalid_strategy_rejected(self, tmp_data_dir: Path):
        path = tmp_data_dir / "config.yaml"
        path.write_text(yaml.dump({"swarm": {"aggregation": "majority"}}))
        with pytest.raises(ConfigError):
            ColonyConfig.load(path)

    def test_to_dict_is_yaml_safe(self, tmp_data_dir: Path):
        data = ColonyConfig(data_dir=tmp_data_dir).to_dict()
        assert yaml.safe_load(yaml.dump(data))["swarm"]["retry_budget"] == 2


# ════════════════════════════════════════════════════════════════════
# TestSessionSettings
# ════════════════════════════════════════════════════════════════════


class TestSessionSettings:
    def test_goal_options_override_config(self):
        settings = SessionSettings.resolve(
            SwarmConfig(),
            GoalOptions(aggregation="quorum", quorum_fraction=0.6, retry_budget=0),
        )
        assert settings.aggregation == AggregationStrategy.QUORUM
        assert settings.quorum_fraction == 0.6
        assert settings.retry_budget == 0

    def test_config_used_without_options(self):
        settings = SessionSettings.resolve(SwarmConfig(aggregation="first_success"))
        assert settings.aggregation == AggregationStrategy.FIRST_SUCCESS
        assert settings.allow_partial is True

    def test_invalid_goal_options(self):
        with pytest.raises(ConfigError):
            SessionSettings.resolve(SwarmConfig(), GoalOptions(aggregation="most"))
        with pytest.raises(ConfigError):
            SessionSettings.resolve(SwarmConfig(), GoalOptions(quorum_fraction=0.0))

    def test_quorum_required(self):
        assert SessionSettings(quorum_fraction=0.5).quorum_required(3) == 2
        assert SessionSettings(quorum_fraction=2 / 3).quorum_required(3) == 2
        assert SessionSettings(quorum_fraction=1.0).quorum_required(4) == 4
        assert SessionSettings(quorum_fraction=0.1).quorum_required(2) == 1

    def test_exponential_backoff(self):
        settings = SessionSettings(retry_backoff_seconds=0.5)
        assert [settings.backoff(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_worker_count_per_specialization(self):
        settings = SessionSettings(workers_per_specialization=2, workers={"coder": 5})
        assert settings.worker_count("coder") == 5
        assert settings.worker_count("writer") == 2


# ════════════════════════════════════════════════════════════════════
# TestLogging
# ════════════════════════════════════════════════════════════════════


class TestLogging:
    def test_file_and_console_handlers(self, tmp_data_dir: Path):
        log_file = tmp_data_dir / "logs" / "colony.log"
        logger = setup_logging(log_file, "DEBUG", log_to_file=True)
        try:
            assert logger.name == "colony"
            assert logger.propagate is False
            assert len(logger.handlers) == 2
            get_logger("swarm.coordinator").info("hello from the swarm")
            for handler in logger.handlers:
                handler.flush()
            assert "hello from the swarm" in log_file.read_text()
        finally:
            for handler in list(logger.handlers):
                handler.close()
            logger.handlers.clear()

    def test_console_only(self):
        logger = setup_logging(None, "INFO", log_to_file=False)
        try:
            assert len(logger.handlers) == 1
            assert logger.handlers[0].level == logging.WARNING
        finally:
            logger.handlers.clear()

    def test_configure_from_colony_config(
        self, tmp_data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ):
        for var in ("COLONY_DATA_DIR", "COLONY_LOG_LEVEL", "COLONY_LOG_TO_FILE"):
            monkeypatch.delenv(var, raising=False)
        config = ColonyConfig(data_dir=tmp_data_dir, log_level="debug")
        logger = configure_logging(config)
        try:
            assert logger.level == logging.DEBUG
            get_logger("learning.engine").debug("promoted a skill")
            for handler in logger.handlers:
                handler.flush()
            assert "promoted a skill" in config.log_file.read_text()
        finally:
            for handler in list(logger.handlers):
                handler.close()
            logger.handlers.clear()

    def test_component_logger_namespace(self):
        assert get_logger("memory.store").name == "colony.memory.store"
