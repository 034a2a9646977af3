"""
Pydantic models for the human-in-the-loop approval system.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RiskLevel(str, Enum):
    """Risk levels, ordered from least to most severe."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RISK_LEVEL_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


def risk_level_rank(level: RiskLevel) -> int:
    """Numeric severity of a risk level (higher = more severe)."""
    return RISK_LEVEL_ORDER.index(RiskLevel(level))


class ApprovalWorkflowState(str, Enum):
    """State of an orchestrated approval request."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    ApprovalWorkflowState.APPROVED,
    ApprovalWorkflowState.REJECTED,
    ApprovalWorkflowState.ESCALATED,
    ApprovalWorkflowState.TIMEOUT,
    ApprovalWorkflowState.CANCELLED,
})


class TimeoutStrategy(str, Enum):
    """What happens when nobody answers in time."""
    APPROVE = "approve"
    REJECT = "reject"
    ESCALATE = "escalate"
    RETRY = "retry"


class ApprovalDecision(str, Enum):
    """Decisions a human can send to the orchestrator."""
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    RETRY = "retry"
    MODIFY = "modify"


class ApprovalPolicy(str, Enum):
    """How the approvers of one chain level reach a decision."""
    ALL = "all"
    ANY = "any"
    MAJORITY = "majority"
    THRESHOLD = "threshold"


class ConditionOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    CONTAINS = "contains"


class ChainDecision(str, Enum):
    """Decisions recorded against a chain level."""
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"


class ChainStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    TIMEOUT = "timeout"


class LevelDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class FeedbackType(str, Enum):
    """Types of human feedback."""
    APPROVAL = "approval"
    REJECTION = "rejection"
    MODIFICATION = "modification"
    RATING = "rating"
    CLARIFICATION = "clarification"
    COMMENT = "comment"


class FactorSource(str, Enum):
    HISTORICAL = "historical"
    CONTEXTUAL = "contextual"
    ALGORITHMIC = "algorithmic"
    USER = "user"
    SYSTEM = "system"


class ExecutionOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class WorkflowState(BaseModel):
    """The slice of workflow state the approval subsystem reads.

    Extra keys are kept so callers can pass their full state through.
    """
    model_config = ConfigDict(extra="allow")

    execution_id: str
    current_node: Optional[str] = None
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Approver(BaseModel):
    """A person (or the system) taking part in an approval."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    role: Optional[str] = None
    email: Optional[str] = None


SYSTEM_APPROVER = Approver(id="system", name="Auto-Approval", role="system")


class ApprovalCondition(BaseModel):
    """Condition deciding whether a chain level applies to a request."""
    model_config = ConfigDict(frozen=True)

    type: str = "custom"  # "confidence", "risk", "impact", "custom"
    operator: ConditionOperator
    value: Any = None
    field: Optional[str] = None  # key (or dotted path) into the context


class ApprovalLevel(BaseModel):
    """One level of an approval chain. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    priority: int = 0  # lower runs first
    approvers: List[Approver] = Field(default_factory=list)
    policy: ApprovalPolicy = ApprovalPolicy.ANY
    threshold: Optional[int] = None
    conditions: List[ApprovalCondition] = Field(default_factory=list)
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    auto_approve_on_timeout: bool = False

    @field_validator("approvers", mode="before")
    @classmethod
    def coerce_approver_ids(cls, v: Any) -> Any:
        """Allow approvers to be listed by id."""
        if isinstance(v, list):
            return [{"id": a, "name": a} if isinstance(a, str) else a for a in v]
        return v

    @model_validator(mode="after")
    def validate_threshold(self) -> "ApprovalLevel":
        if self.policy == ApprovalPolicy.THRESHOLD:
            if self.threshold is None:
                raise ValueError(f"Level {self.id} uses the threshold policy but sets no threshold")
            if not 1 <= self.threshold <= max(1, len(self.approvers)):
                raise ValueError(
                    f"Level {self.id} threshold {self.threshold} must be between 1 and "
                    f"the number of approvers ({len(self.approvers)})"
                )
        return self


class ChainHistoryEntry(BaseModel):
    level_id: str
    approver: Approver
    decision: ChainDecision
    comments: Optional[str] = None
    automated: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class ChainApprovalRequest(BaseModel):
    """A request travelling through the levels of an approval chain."""
    id: str = Field(default_factory=lambda: f"chain-{uuid4().hex}")
    execution_id: str
    chain_id: str
    current_level: ApprovalLevel
    chain: List[ApprovalLevel]
    context: Dict[str, Any] = Field(default_factory=dict)
    history: List[ChainHistoryEntry] = Field(default_factory=list)
    status: ChainStatus = ChainStatus.PENDING
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.status == ChainStatus.PENDING

    @property
    def current_level_index(self) -> int:
        for index, level in enumerate(self.chain):
            if level.id == self.current_level.id:
                return index
        return -1

    def level_history(self, level_id: str) -> List[ChainHistoryEntry]:
        return [entry for entry in self.history if entry.level_id == level_id]


class ConfidenceFactor(BaseModel):
    """One weighted contribution to a confidence score."""
    name: str
    value: float = Field(ge=0.0, le=1.0)
    weight: float = Field(gt=0.0)
    source: FactorSource = FactorSource.CONTEXTUAL
    description: str = ""


class ApprovalPattern(BaseModel):
    """Historical approval behaviour of one workflow node."""
    node_id: str
    approval_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    average_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    total_decisions: int = Field(default=0, ge=0)
    successful_executions: int = Field(default=0, ge=0)
    failed_executions: int = Field(default=0, ge=0)
    common_rejection_reasons: List[str] = Field(default_factory=list)
    risk_factors: List[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow)

    @property
    def success_rate(self) -> Optional[float]:
        executions = self.successful_executions + self.failed_executions
        if executions == 0:
            return None
        return self.successful_executions / executions


class UserContext(BaseModel):
    role: Optional[str] = None
    experience: float = 0.0
    success_rate: float = Field(default=0.5, ge=0.0, le=1.0)


class EnvironmentContext(BaseModel):
    is_production: bool = False
    time_of_day: Optional[int] = Field(default=None, ge=0, le=23)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    system_load: float = Field(default=0.0, ge=0.0, le=1.0)


class ConfidenceEvaluationContext(BaseModel):
    """Optional inputs that refine a confidence evaluation."""
    historical_pattern: Optional[ApprovalPattern] = None
    user_context: Optional[UserContext] = None
    environment: Optional[EnvironmentContext] = None
    custom_factors: Dict[str, float] = Field(default_factory=dict)
    additional_factors: List[ConfidenceFactor] = Field(default_factory=list)


class RiskDetails(BaseModel):
    """Per-dimension risk scores; extra dimensions are allowed."""
    model_config = ConfigDict(extra="allow")

    security: float = Field(default=0.0, ge=0.0, le=1.0)
    data_impact: float = Field(default=0.0, ge=0.0, le=1.0)
    user_impact: float = Field(default=0.0, ge=0.0, le=1.0)
    business_impact: float = Field(default=0.0, ge=0.0, le=1.0)
    operational_impact: float = Field(default=0.0, ge=0.0, le=1.0)


class RiskAssessment(BaseModel):
    """Risk of letting an action proceed without supervision."""
    level: RiskLevel
    score: float = Field(ge=0.0, le=1.0)
    factors: List[str] = Field(default_factory=list)
    details: RiskDetails = Field(default_factory=RiskDetails)
    recommendations: List[str] = Field(default_factory=list)
    mitigations: List[str] = Field(default_factory=list)


class RiskAssessmentOptions(BaseModel):
    factors: List[str] = Field(default_factory=list)
    custom_evaluator: Optional[Callable[..., Any]] = Field(default=None, exclude=True)
    weights: Dict[str, float] = Field(default_factory=dict)


class RiskAssessmentConfig(BaseModel):
    """Risk evaluation settings of an approval request."""
    enabled: bool = False
    factors: List[str] = Field(default_factory=list)
    evaluator: Optional[Callable[..., Any]] = Field(default=None, exclude=True)


class SkipConditions(BaseModel):
    """Conditions under which the approval gate is skipped entirely."""
    high_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    user_role: List[str] = Field(default_factory=list)
    safe_mode: bool = False
    custom: Optional[Callable[..., bool]] = Field(default=None, exclude=True)


class ApprovalOptions(BaseModel):
    """Per-request approval configuration.

    Unset values fall back to the system configuration.
    """
    confidence_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    risk_threshold: Optional[RiskLevel] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    on_timeout: Optional[TimeoutStrategy] = None
    chain_id: Optional[str] = None
    approvers: List[str] = Field(default_factory=list)
    risk_assessment: RiskAssessmentConfig = Field(default_factory=RiskAssessmentConfig)
    skip_conditions: Optional[SkipConditions] = None
    max_retry_attempts: Optional[int] = Field(default=None, ge=1)
    when: Optional[Callable[..., bool]] = Field(default=None, exclude=True)
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConfidenceSnapshot(BaseModel):
    current: float = Field(ge=0.0, le=1.0)
    threshold: float = Field(ge=0.0, le=1.0)
    factors: Dict[str, float] = Field(default_factory=dict)

    @property
    def below_threshold(self) -> bool:
        return self.current < self.threshold


class TimeoutSettings(BaseModel):
    duration_ms: int = Field(gt=0)
    strategy: TimeoutStrategy = TimeoutStrategy.REJECT


class RetryState(BaseModel):
    count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)

    @property
    def exhausted(self) -> bool:
        return self.count >= self.max_attempts


class ApprovalHistoryEntry(BaseModel):
    """Audit entry on an orchestrated request. Entries are never edited."""
    action: str
    approver: Optional[Approver] = None
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ApprovalRequest(BaseModel):
    """Request for a human decision on a workflow node."""
    id: str = Field(default_factory=lambda: f"approval-{uuid4().hex}")
    execution_id: str
    node_id: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    state: WorkflowState
    options: ApprovalOptions = Field(default_factory=ApprovalOptions)
    workflow_state: ApprovalWorkflowState = ApprovalWorkflowState.PENDING
    approvers: List[str] = Field(default_factory=list)
    chain_id: Optional[str] = None
    chain_request_id: Optional[str] = None
    risk_assessment: Optional[RiskAssessment] = None
    confidence: ConfidenceSnapshot
    timeout: TimeoutSettings
    retry: RetryState = Field(default_factory=RetryState)
    history: List[ApprovalHistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    responded_at: Optional[datetime] = None
    timed_out_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.workflow_state in TERMINAL_STATES

    @property
    def response_time_seconds(self) -> Optional[float]:
        if self.responded_at is None:
            return None
        return (self.responded_at - self.created_at).total_seconds()


class ApprovalResponse(BaseModel):
    """A human (or system) answer to an approval request."""
    request_id: Optional[str] = None
    decision: ApprovalDecision
    approver: Approver
    message: Optional[str] = None
    modifications: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class ApprovalResult(BaseModel):
    """Outcome of processing a response, returned instead of raising."""
    success: bool
    next_state: Optional[Dict[str, Any]] = None
    workflow_state: Optional[ApprovalWorkflowState] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class ApprovalStats(BaseModel):
    total: int = 0
    by_state: Dict[str, int] = Field(default_factory=dict)
    approval_rate: float = 0.0
    average_response_time: float = 0.0  # seconds
    timeout_rate: float = 0.0
    escalation_rate: float = 0.0


class FeedbackContent(BaseModel):
    message: Optional[str] = None
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    modifications: Optional[Dict[str, Any]] = None
    tags: List[str] = Field(default_factory=list)
    data: Optional[Dict[str, Any]] = None


class ProcessingResult(BaseModel):
    success: bool
    error: Optional[str] = None
    applied_changes: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class FeedbackEntry(BaseModel):
    """Qualitative feedback tied to one execution."""
    id: str = Field(default_factory=lambda: f"feedback-{uuid4().hex}")
    execution_id: str
    type: FeedbackType
    content: FeedbackContent = Field(default_factory=FeedbackContent)
    submitter: Approver
    timestamp: datetime = Field(default_factory=utcnow)
    processed: bool = False
    processing_result: Optional[ProcessingResult] = None


class FeedbackStats(BaseModel):
    total: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    average_rating: Optional[float] = None
    processed_count: int = 0
    pending_count: int = 0
    success_rate: float = 0.0


class GateDecision(BaseModel):
    """Whether a node must wait for a human."""
    required: bool
    skipped: bool = False
    reasons: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None
    risk_assessment: Optional[RiskAssessment] = None
