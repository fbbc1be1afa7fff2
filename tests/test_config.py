"""Tests for hindsight.core.config module."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from hindsight.core.config import (
    GrpoConfig,
    LearningConfig,
    LogConfig,
    TransferConfig,
)
from hindsight.storage.files import LearningPaths


class TestDefaults:
    """Defaults form a complete configuration."""

    def test_empty_config_is_valid(self):
        """LearningConfig() needs no arguments."""
        config = LearningConfig()
        assert config.data_dir.name == ".hindsight"
        assert config.grpo.learning_rate == pytest.approx(0.1)
        assert config.transfer.promotion_min_successes == 3
        assert config.transfer.promotion_min_confidence == pytest.approx(0.8)
        assert config.memory.short_term_ttl_days == 7
        assert config.memory.long_term_ttl_days == 90
        assert config.lifelong.max_experiences == 1000

    def test_get_paths_expands_user(self):
        """~ in data_dir is expanded for the on-disk layout."""
        config = LearningConfig(data_dir=Path("~/learning"))
        paths = config.get_paths()
        assert isinstance(paths, LearningPaths)
        assert "~" not in str(paths.root)
        assert paths.tool_history.name == "tool-history.json"


class TestValidation:
    """Field bounds and cross-field rules."""

    def test_weight_bounds_must_be_ordered(self):
        """min_weight above max_weight is rejected."""
        with pytest.raises(ValidationError, match="min_weight"):
            GrpoConfig(min_weight=3.0, max_weight=2.0)

    def test_learning_rate_bounded(self):
        """learning_rate must be in (0, 1]."""
        with pytest.raises(ValidationError):
            GrpoConfig(learning_rate=0.0)

    def test_confidence_threshold_bounded(self):
        """Promotion confidence is a probability."""
        with pytest.raises(ValidationError):
            TransferConfig(promotion_min_confidence=1.5)

    def test_log_both_requires_file(self):
        """format='both' needs a file path."""
        with pytest.raises(ValidationError, match="file_path"):
            LogConfig(format="both")


class TestYamlLoading:
    """Loading configuration from YAML."""

    def test_from_yaml_string(self):
        """Sections override only what they name."""
        config = LearningConfig.from_yaml_string(
            """
data_dir: /tmp/hs
grpo:
  learning_rate: 0.2
transfer:
  demotion_consecutive_failures: 3
logging:
  level: DEBUG
"""
        )
        assert config.data_dir == Path("/tmp/hs")
        assert config.grpo.learning_rate == pytest.approx(0.2)
        assert config.grpo.max_weight == pytest.approx(5.0)
        assert config.transfer.demotion_consecutive_failures == 3
        assert config.logging.level == "DEBUG"

    def test_empty_document(self):
        """An empty YAML document yields the defaults."""
        config = LearningConfig.from_yaml_string("")
        assert config.tool_learner.min_samples == 3

    def test_from_yaml_file(self, tmp_path: Path):
        """Files are read as UTF-8 YAML."""
        path = tmp_path / "hindsight.yaml"
        path.write_text("memory:\n  search_limit: 5\n", encoding="utf-8")
        config = LearningConfig.from_yaml(path)
        assert config.memory.search_limit == 5

    def test_invalid_value_raises(self):
        """Out-of-range values surface as ValidationError."""
        with pytest.raises(ValidationError):
            LearningConfig.from_yaml_string("memory:\n  search_threshold: 2\n")
