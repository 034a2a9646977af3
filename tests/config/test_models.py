"""Tests for configuration models."""

import pytest
from pydantic import ValidationError

from hitlflow.approval.models import TimeoutStrategy
from hitlflow.config import ConfidenceWeights, HITLConfig, LoggingSettings, RiskWeights


class TestHITLConfig:
    """Test the main configuration model."""

    def test_defaults(self):
        config = HITLConfig()

        assert config.confidence_threshold == 0.7
        assert config.approval_timeout_ms == 3_600_000
        assert config.timeout_strategy == TimeoutStrategy.REJECT
        assert config.retry_attempts == 3
        assert config.chains == {}
        assert config.confidence_weights == ConfidenceWeights()
        assert config.risk_weights.security == 0.30

    def test_threshold_range(self):
        with pytest.raises(ValidationError):
            HITLConfig(confidence_threshold=-0.1)

    def test_chain_without_levels_is_rejected(self):
        with pytest.raises(ValidationError, match="has no levels"):
            HITLConfig(chains={"empty": []})

    def test_duplicate_level_ids_are_rejected(self):
        levels = [
            {"id": "l1", "name": "First", "approvers": ["a"]},
            {"id": "l1", "name": "Second", "approvers": ["b"]},
        ]
        with pytest.raises(ValidationError, match="duplicate level ids"):
            HITLConfig(chains={"dup": levels})

    def test_threshold_policy_needs_threshold(self):
        level = {"id": "l1", "name": "Panel", "approvers": ["a", "b"], "policy": "threshold"}
        with pytest.raises(ValidationError, match="sets no threshold"):
            HITLConfig(chains={"panel": [level]})

    def test_threshold_policy_bounds(self):
        level = {
            "id": "l1",
            "name": "Panel",
            "approvers": ["a", "b"],
            "policy": "threshold",
            "threshold": 3,
        }
        with pytest.raises(ValidationError, match="must be between 1"):
            HITLConfig(chains={"panel": [level]})


class TestWeights:
    """Test weight models."""

    def test_all_zero_risk_weights_are_rejected(self):
        with pytest.raises(ValidationError, match="positive"):
            RiskWeights(
                security=0,
                data_impact=0,
                user_impact=0,
                business_impact=0,
                operational_impact=0,
            )

    def test_confidence_weights_must_be_positive(self):
        with pytest.raises(ValidationError):
            ConfidenceWeights(base=0)


class TestLoggingSettings:
    """Test logging settings."""

    def test_level_is_normalized(self):
        assert LoggingSettings(level="warning").level == "WARNING"

    def test_invalid_level(self):
        with pytest.raises(ValidationError, match="Invalid log level"):
            LoggingSettings(level="LOUD")
