"""
Approval gate and routing helpers.

The gate decides whether a workflow node must wait for a human before it
runs; the routing helpers map workflow state to the name of the next node.
"""

import inspect
import math
from typing import Any, Dict, Optional, Union

from ..config.models import HITLConfig
from ..logging_config import get_approval_logger
from .confidence import ConfidenceEvaluator
from .models import (
    ApprovalOptions,
    GateDecision,
    RiskAssessmentOptions,
    WorkflowState,
    risk_level_rank,
)

logger = get_approval_logger("routing")


def _raw_confidence(state: Union[WorkflowState, Dict[str, Any]]) -> float:
    value = state.confidence if isinstance(state, WorkflowState) else state.get("confidence")
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return float(value)
    return 0.0


async def _call(func, *args: Any) -> Any:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class ApprovalGate:
    """Decides whether a node needs a human approval gate."""

    def __init__(
        self,
        confidence_evaluator: Optional[ConfidenceEvaluator] = None,
        config: Optional[HITLConfig] = None,
    ):
        self.config = config or HITLConfig()
        self.confidence_evaluator = confidence_evaluator or ConfidenceEvaluator(config=self.config)
        self.logger = get_approval_logger("gate")

    async def evaluate_skip_conditions(self, state: WorkflowState, options: ApprovalOptions) -> bool:
        """True when the skip conditions let the node run without approval."""
        skip = options.skip_conditions
        if skip is None:
            return False

        if skip.high_confidence is not None and _raw_confidence(state) >= skip.high_confidence:
            return True

        user_role = state.metadata.get("user_role")
        if skip.user_role and user_role in skip.user_role:
            return True

        if skip.safe_mode and state.metadata.get("safe_mode") is True:
            return True

        if skip.custom is not None:
            return bool(await _call(skip.custom, state))

        return False

    async def evaluate_approval_required(
        self,
        state: WorkflowState,
        options: ApprovalOptions,
    ) -> GateDecision:
        reasons = []

        if options.when is not None and await _call(options.when, state):
            reasons.append("Custom approval condition matched")

        threshold = options.confidence_threshold
        if threshold is None:
            threshold = self.config.confidence_threshold
        confidence = await self.confidence_evaluator.evaluate_confidence(state)
        if confidence < threshold:
            reasons.append(f"Confidence {confidence:.2f} below threshold {threshold:.2f}")

        risk_assessment = None
        if options.risk_assessment.enabled:
            risk_assessment = await self.confidence_evaluator.assess_risk(
                state,
                RiskAssessmentOptions(
                    factors=options.risk_assessment.factors,
                    custom_evaluator=options.risk_assessment.evaluator,
                ),
            )
            if (
                options.risk_threshold is not None
                and risk_level_rank(risk_assessment.level) >= risk_level_rank(options.risk_threshold)
            ):
                reasons.append(
                    f"Risk level {risk_assessment.level.value} at or above "
                    f"threshold {options.risk_threshold.value}"
                )

        return GateDecision(
            required=bool(reasons),
            reasons=reasons,
            confidence=confidence,
            risk_assessment=risk_assessment,
        )

    async def decide(
        self,
        state: Union[WorkflowState, Dict[str, Any]],
        options: Optional[Union[ApprovalOptions, Dict[str, Any]]] = None,
    ) -> GateDecision:
        """Decide whether the state's current node must wait for a human.

        A node that was already approved (``approved_<node>`` or
        ``approval_received`` in the state) passes straight through.
        """
        if not isinstance(state, WorkflowState):
            state = WorkflowState.model_validate(state)
        if options is None:
            options = ApprovalOptions()
        elif not isinstance(options, ApprovalOptions):
            options = ApprovalOptions.model_validate(options)

        if await self.evaluate_skip_conditions(state, options):
            self.logger.debug(f"Skipping approval for {state.current_node}: skip conditions met")
            return GateDecision(required=False, skipped=True, reasons=["Skip conditions met"])

        extra = state.model_extra or {}
        if extra.get(f"approved_{state.current_node}") or extra.get("approval_received"):
            return GateDecision(required=False, reasons=["Approval already received"])

        decision = await self.evaluate_approval_required(state, options)
        if decision.required:
            self.logger.info(f"Approval required for {state.current_node}: {'; '.join(decision.reasons)}")
        return decision


def route_after_human_approval(state: Union[WorkflowState, Dict[str, Any]]) -> str:
    """Map the human feedback in a state to approved, rejected, revision or retry."""
    if isinstance(state, WorkflowState):
        feedback = (state.model_extra or {}).get("human_feedback")
    else:
        feedback = state.get("human_feedback")

    if not feedback:
        logger.debug("No human feedback available, defaulting to retry")
        return "retry"

    status = feedback.get("status")
    logger.info(f"Human approval decision: {status}")

    if status == "approved":
        return "approved"
    if status == "rejected":
        return "rejected"
    if status == "needs_revision":
        return "revision"
    return "retry"


def route_based_on_confidence(
    state: Union[WorkflowState, Dict[str, Any]],
    next_node: str,
    confidence_threshold: float = 0.8,
    requires_human_approval: bool = False,
    auto_approve_threshold: float = 0.95,
    low_confidence_route: str = "human_approval",
) -> str:
    """Pick the next node from the state's raw confidence.

    At or above ``auto_approve_threshold`` the workflow proceeds; at or above
    ``confidence_threshold`` it proceeds unless human approval is required;
    below that it takes ``low_confidence_route``.
    """
    confidence = _raw_confidence(state)

    if confidence >= auto_approve_threshold:
        logger.info(f"High confidence ({confidence}) - auto approving")
        return next_node

    if confidence >= confidence_threshold:
        if requires_human_approval:
            logger.info(f"Medium confidence ({confidence}) - requiring human approval")
            return "human_approval"
        return next_node

    logger.info(f"Low confidence ({confidence}) - routing to {low_confidence_route}")
    return low_confidence_route
