"""
hitlflow - Human-in-the-loop approval orchestration for workflow engines.

This package decides when an automated workflow step needs a human, routes
the request through approval chains, enforces timeouts and learns from the
outcomes.
"""

__version__ = "0.1.0"

# approval must load before config; config models reference approval models
from .approval import (
    ApprovalChain,
    ApprovalGate,
    ApprovalOptions,
    ApprovalRequest,
    ApprovalResponse,
    ApprovalResult,
    ConfidenceEvaluator,
    FeedbackProcessor,
    HumanApproval,
    WorkflowState,
    route_after_human_approval,
    route_based_on_confidence,
)
from .config import HITLConfig, load_hitl_config
from .communication import EventBus, EventType
from .exceptions import HITLError
from .factory import ApprovalSystem, create_approval_system
from .logging_config import setup_logging

__all__ = [
    # Core components
    "ApprovalChain",
    "ApprovalGate",
    "ConfidenceEvaluator",
    "FeedbackProcessor",
    "HumanApproval",
    # Models
    "ApprovalOptions",
    "ApprovalRequest",
    "ApprovalResponse",
    "ApprovalResult",
    "WorkflowState",
    # Configuration
    "HITLConfig",
    "load_hitl_config",
    "setup_logging",
    # Events
    "EventBus",
    "EventType",
    # Errors
    "HITLError",
    # Factory functions
    "ApprovalSystem",
    "create_approval_system",
    # Routing
    "route_after_human_approval",
    "route_based_on_confidence",
]
