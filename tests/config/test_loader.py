"""Tests for configuration loading."""

import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from hitlflow.approval.models import ApprovalPolicy, TimeoutStrategy
from hitlflow.config import (
    ConfigurationError,
    HITLConfig,
    get_config_from_env,
    load_hitl_config,
    load_yaml_config,
    save_hitl_config,
    substitute_env_vars,
)


def _write_yaml(content: str) -> Path:
    handle = tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False)
    with handle:
        handle.write(content)
    return Path(handle.name)


class TestSubstituteEnvVars:
    """Test environment variable substitution."""

    def test_substitutes_set_variable(self):
        with patch.dict(os.environ, {"HITL_TEST_OWNER": "ops"}):
            assert substitute_env_vars("owner: ${HITL_TEST_OWNER}") == "owner: ops"

    def test_uses_default_when_unset(self):
        with patch.dict(os.environ, {}, clear=True):
            assert substitute_env_vars("${MISSING_VAR:fallback}") == "fallback"
            assert substitute_env_vars("${MISSING_VAR}") == ""

    def test_recurses_into_collections(self):
        with patch.dict(os.environ, {"HITL_TEST_ROLE": "admin"}):
            data = {"levels": [{"role": "${HITL_TEST_ROLE}"}], "count": 3}
            assert substitute_env_vars(data) == {"levels": [{"role": "admin"}], "count": 3}


class TestLoadConfig:
    """Test YAML configuration loading."""

    def test_missing_file(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_yaml_config("/nonexistent/hitl.yaml")
        assert "not found" in str(exc_info.value)
        assert exc_info.value.error_code == "configuration_error"

    def test_empty_file(self):
        path = _write_yaml("")
        try:
            with pytest.raises(ConfigurationError, match="empty"):
                load_yaml_config(path)
        finally:
            path.unlink()

    def test_invalid_yaml(self):
        path = _write_yaml("chains: [unclosed")
        try:
            with pytest.raises(ConfigurationError, match="parse"):
                load_yaml_config(path)
        finally:
            path.unlink()

    def test_non_mapping_yaml(self):
        path = _write_yaml("- just\n- a list\n")
        try:
            with pytest.raises(ConfigurationError, match="mapping"):
                load_yaml_config(path)
        finally:
            path.unlink()

    def test_load_full_config(self):
        """Test loading thresholds, chains and patterns from YAML."""
        path = _write_yaml(
            """
hitl:
  confidence_threshold: 0.8
  approval_timeout_ms: ${HITL_TEST_TIMEOUT:60000}
  timeout_strategy: escalate
  chains:
    deploy:
      - id: lead
        name: Team Lead
        priority: 1
        approvers: [alice, bob]
        policy: all
      - id: director
        name: Director
        priority: 2
        approvers: [carol]
  historical_patterns:
    - node_id: deploy
      approval_rate: 0.9
      total_decisions: 10
"""
        )
        try:
            with patch.dict(os.environ, {}, clear=True):
                config = load_hitl_config(path)
        finally:
            path.unlink()

        assert config.confidence_threshold == 0.8
        assert config.approval_timeout_ms == 60000
        assert config.timeout_strategy == TimeoutStrategy.ESCALATE
        assert [level.id for level in config.chains["deploy"]] == ["lead", "director"]
        assert config.chains["deploy"][0].policy == ApprovalPolicy.ALL
        assert [a.id for a in config.chains["deploy"][0].approvers] == ["alice", "bob"]
        assert config.historical_patterns[0].approval_rate == 0.9

    def test_validation_error_is_reported(self):
        path = _write_yaml("confidence_threshold: 1.5\n")
        try:
            with pytest.raises(ConfigurationError) as exc_info:
                load_hitl_config(path)
        finally:
            path.unlink()
        assert "confidence_threshold" in str(exc_info.value)

    def test_save_and_reload(self):
        config = HITLConfig(
            confidence_threshold=0.6,
            chains={"review": [{"id": "l1", "name": "Reviewers", "approvers": ["alice"]}]},
        )

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "hitl.yaml"
            save_hitl_config(config, path)

            with open(path, encoding="utf-8") as f:
                raw = yaml.safe_load(f)
            reloaded = load_hitl_config(path)

        assert raw["confidence_threshold"] == 0.6
        assert reloaded.confidence_threshold == 0.6
        assert reloaded.chains["review"][0].approvers[0].id == "alice"


class TestConfigFromEnv:
    """Test configuration from HITL_* environment variables."""

    def test_returns_none_without_variables(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_config_from_env() is None

    def test_reads_variables(self):
        env = {
            "HITL_CONFIDENCE_THRESHOLD": "0.9",
            "HITL_TIMEOUT_STRATEGY": "retry",
            "HITL_RETRY_ATTEMPTS": "5",
            "HITL_LOG_LEVEL": "debug",
            "HITL_LOG_STRUCTURED": "true",
        }
        with patch.dict(os.environ, env, clear=True):
            config = get_config_from_env()

        assert config.confidence_threshold == 0.9
        assert config.timeout_strategy == TimeoutStrategy.RETRY
        assert config.retry_attempts == 5
        assert config.logging.level == "DEBUG"
        assert config.logging.structured is True

    def test_invalid_variable(self):
        with patch.dict(os.environ, {"HITL_TIMEOUT_STRATEGY": "ignore"}, clear=True):
            with pytest.raises(ConfigurationError):
                get_config_from_env()
