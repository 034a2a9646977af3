"""
Human-in-the-loop approval system for workflow orchestration.

This module provides confidence and risk scoring, multi-level approval
chains, the approval request state machine and feedback processing.
"""

from .models import (
    SYSTEM_APPROVER,
    ApprovalCondition,
    ApprovalDecision,
    ApprovalLevel,
    ApprovalOptions,
    ApprovalPattern,
    ApprovalPolicy,
    ApprovalRequest,
    ApprovalResponse,
    ApprovalResult,
    ApprovalStats,
    ApprovalWorkflowState,
    Approver,
    ChainApprovalRequest,
    ChainDecision,
    ChainStatus,
    ConditionOperator,
    ConfidenceEvaluationContext,
    ConfidenceFactor,
    EnvironmentContext,
    ExecutionOutcome,
    FeedbackContent,
    FeedbackEntry,
    FeedbackStats,
    FeedbackType,
    GateDecision,
    LevelDecision,
    RiskAssessment,
    RiskAssessmentConfig,
    RiskAssessmentOptions,
    RiskLevel,
    SkipConditions,
    TimeoutStrategy,
    UserContext,
    WorkflowState,
)
from .confidence import ConfidenceEvaluator, MLIntegrationHooks, MLRecommendation
from .chain import ApprovalChain
from .feedback import FeedbackProcessor
from .service import HumanApproval
from .gate import ApprovalGate, route_after_human_approval, route_based_on_confidence

__all__ = [
    # Components
    "ApprovalChain",
    "ApprovalGate",
    "ConfidenceEvaluator",
    "FeedbackProcessor",
    "HumanApproval",
    "MLIntegrationHooks",
    "MLRecommendation",
    # Routing
    "route_after_human_approval",
    "route_based_on_confidence",
    # Models
    "SYSTEM_APPROVER",
    "ApprovalCondition",
    "ApprovalDecision",
    "ApprovalLevel",
    "ApprovalOptions",
    "ApprovalPattern",
    "ApprovalPolicy",
    "ApprovalRequest",
    "ApprovalResponse",
    "ApprovalResult",
    "ApprovalStats",
    "ApprovalWorkflowState",
    "Approver",
    "ChainApprovalRequest",
    "ChainDecision",
    "ChainStatus",
    "ConditionOperator",
    "ConfidenceEvaluationContext",
    "ConfidenceFactor",
    "EnvironmentContext",
    "ExecutionOutcome",
    "FeedbackContent",
    "FeedbackEntry",
    "FeedbackStats",
    "FeedbackType",
    "GateDecision",
    "LevelDecision",
    "RiskAssessment",
    "RiskAssessmentConfig",
    "RiskAssessmentOptions",
    "RiskLevel",
    "SkipConditions",
    "TimeoutStrategy",
    "UserContext",
    "WorkflowState",
]
