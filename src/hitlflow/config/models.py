"""
Pydantic configuration models for the approval system.

All settings can be loaded from YAML (with environment variable
substitution) or built from ``HITL_*`` environment variables.
"""

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..approval.models import ApprovalLevel, ApprovalPattern, TimeoutStrategy


class ConfidenceWeights(BaseModel):
    """Weights of the built-in confidence factors."""

    base: float = Field(
        default=0.3,
        gt=0,
        description="Weight of the workflow's own confidence"
    )
    historical: float = Field(
        default=0.25,
        gt=0,
        description="Weight of the node's historical success rate"
    )
    user: float = Field(
        default=0.15,
        gt=0,
        description="Weight of the requesting user's success rate"
    )
    environment: float = Field(
        default=0.1,
        gt=0,
        description="Weight of the environment factor"
    )
    custom: float = Field(
        default=0.1,
        gt=0,
        description="Weight of each custom factor"
    )


class RiskWeights(BaseModel):
    """Weights of the risk dimensions in the overall risk score."""

    security: float = Field(default=0.30, ge=0.0)
    data_impact: float = Field(default=0.25, ge=0.0)
    user_impact: float = Field(default=0.20, ge=0.0)
    business_impact: float = Field(default=0.15, ge=0.0)
    operational_impact: float = Field(default=0.10, ge=0.0)

    @model_validator(mode='after')
    def validate_not_all_zero(self) -> 'RiskWeights':
        if sum(self.model_dump().values()) <= 0:
            raise ValueError("At least one risk weight must be positive")
        return self


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        description="Logging level"
    )
    structured: bool = Field(
        default=False,
        description="Emit JSON log lines"
    )
    log_file: Optional[Path] = Field(
        default=None,
        description="Optional log file path"
    )
    rich_console: bool = Field(
        default=True,
        description="Use Rich console formatting"
    )

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class HITLConfig(BaseModel):
    """Main configuration for the approval system."""

    confidence_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Confidence below which a human must approve"
    )
    approval_timeout_ms: int = Field(
        default=3_600_000,
        gt=0,
        description="Default time a request waits for a human"
    )
    timeout_strategy: TimeoutStrategy = Field(
        default=TimeoutStrategy.REJECT,
        description="Default action when a request times out"
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Default maximum retry attempts per request"
    )
    hook_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound on any ML hook or custom evaluator call"
    )
    max_rejection_reasons: int = Field(
        default=10,
        gt=0,
        description="How many distinct rejection reasons a pattern keeps"
    )
    confidence_weights: ConfidenceWeights = Field(
        default_factory=ConfidenceWeights,
        description="Confidence factor weights"
    )
    risk_weights: RiskWeights = Field(
        default_factory=RiskWeights,
        description="Risk dimension weights"
    )
    historical_patterns: List[ApprovalPattern] = Field(
        default_factory=list,
        description="Approval patterns to seed the evaluator with"
    )
    chains: Dict[str, List[ApprovalLevel]] = Field(
        default_factory=dict,
        description="Approval chains keyed by chain id"
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration"
    )

    @field_validator('chains')
    @classmethod
    def validate_chains(cls, v: Dict[str, List[ApprovalLevel]]) -> Dict[str, List[ApprovalLevel]]:
        """Every chain needs at least one level, with unique level ids."""
        for chain_id, levels in v.items():
            if not levels:
                raise ValueError(f"Chain {chain_id} has no levels")
            level_ids = [level.id for level in levels]
            if len(level_ids) != len(set(level_ids)):
                raise ValueError(f"Chain {chain_id} has duplicate level ids")
        return v
