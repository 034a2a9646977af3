"""
ConfidenceEvaluator: confidence scoring, risk assessment and learning
from approval outcomes.
"""

import asyncio
import inspect
import math
from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from ..communication.events import EventPublisher, EventType, publish_safely
from ..config.models import HITLConfig
from ..exceptions import EvaluationError
from ..logging_config import get_approval_logger
from ..utils.locks import KeyedLocks
from .models import (
    ApprovalPattern,
    ConfidenceEvaluationContext,
    ConfidenceFactor,
    ExecutionOutcome,
    FactorSource,
    RiskAssessment,
    RiskAssessmentOptions,
    RiskDetails,
    RiskLevel,
    WorkflowState,
    risk_level_rank,
    utcnow,
)

DEFAULT_CONFIDENCE = 0.5

RISK_DIMENSIONS = ("security", "data_impact", "user_impact", "business_impact", "operational_impact")

# dimension -> (threshold the score must exceed, factor name)
RISK_FACTOR_THRESHOLDS = {
    "security": (0.6, "high-security-risk"),
    "data_impact": (0.7, "high-data-impact"),
    "user_impact": (0.6, "high-user-impact"),
    "business_impact": (0.7, "high-business-impact"),
    "operational_impact": (0.8, "high-operational-impact"),
}

RECOMMENDATIONS = {
    RiskLevel.LOW: "Consider auto-approval for similar operations",
    RiskLevel.MEDIUM: "Standard approval process recommended",
    RiskLevel.HIGH: "Senior approval required",
    RiskLevel.CRITICAL: "Executive approval required",
}

MITIGATIONS = {
    RiskLevel.LOW: "Standard monitoring and alerting",
    RiskLevel.MEDIUM: "Enhanced monitoring during execution",
    RiskLevel.HIGH: "Real-time monitoring and alerting",
    RiskLevel.CRITICAL: "War room setup with all stakeholders",
}


class MLIntegrationHooks(BaseModel):
    """Optional model-backed predictors. Each hook may be sync or async."""

    predict_confidence: Optional[Callable[..., Any]] = None
    predict_risk: Optional[Callable[..., Any]] = None
    learn_from_outcome: Optional[Callable[..., Any]] = None
    get_recommendation: Optional[Callable[..., Any]] = None


class MLRecommendation(BaseModel):
    should_approve: bool
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: List[str] = Field(default_factory=list)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _is_unit_interval(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and 0.0 <= value <= 1.0
    )


class ConfidenceEvaluator:
    """
    Scores how confident the automation is in an action and how risky it
    would be to let it run unsupervised.

    Keeps one approval pattern per workflow node and updates it as approval
    outcomes come in. Evaluation never raises; failures fall back to neutral
    values (confidence 0.5, medium risk).
    """

    def __init__(
        self,
        event_publisher: Optional[EventPublisher] = None,
        config: Optional[HITLConfig] = None,
    ):
        self.event_publisher = event_publisher
        self.config = config or HITLConfig()

        self._patterns: Dict[str, ApprovalPattern] = {}
        self._factor_history: Dict[str, List[ConfidenceFactor]] = {}
        self._last_confidence: Dict[str, float] = {}
        self._node_locks = KeyedLocks()
        self._ml_hooks = MLIntegrationHooks()

        self.logger = get_approval_logger("confidence")

    # Confidence

    async def evaluate_confidence(
        self,
        state: WorkflowState,
        context: Optional[ConfidenceEvaluationContext] = None,
    ) -> float:
        """Return a confidence score in [0, 1] for the given state."""
        context = context or ConfidenceEvaluationContext()
        execution_id = state.execution_id

        try:
            factors = self._calculate_confidence_factors(state, context)
            total_weight = sum(f.weight for f in factors)
            confidence = sum(f.value * f.weight for f in factors) / total_weight

            predicted = await self._call_hook("predict_confidence", state)
            if predicted is not None:
                if _is_unit_interval(predicted):
                    confidence = (confidence + predicted) / 2
                else:
                    self.logger.warning(f"Ignoring out-of-range ML confidence {predicted!r}")

            if not math.isfinite(confidence):
                raise EvaluationError(
                    f"Confidence evaluation produced a non-finite value for {execution_id}",
                    technical_details={"execution_id": execution_id},
                )
            confidence = _clamp(confidence)

        except EvaluationError:
            return self._fallback_confidence(execution_id)
        except Exception as e:
            self.logger.error(f"Error evaluating confidence for {execution_id}: {e}", exc_info=True)
            return self._fallback_confidence(execution_id)

        self._factor_history[execution_id] = factors
        self._last_confidence[execution_id] = confidence

        await publish_safely(self.event_publisher, EventType.CONFIDENCE_EVALUATED, {
            "execution_id": execution_id,
            "confidence": confidence,
            "factors": [
                {"name": f.name, "value": f.value, "weight": f.weight} for f in factors
            ],
            "timestamp": utcnow().isoformat(),
        })

        self.logger.debug(f"Confidence evaluated: {confidence:.3f} for execution {execution_id}")
        return confidence

    def _fallback_confidence(self, execution_id: str) -> float:
        fallback = self._last_confidence.get(execution_id, DEFAULT_CONFIDENCE)
        self.logger.warning(f"Using fallback confidence {fallback:.3f} for execution {execution_id}")
        return fallback

    def _calculate_confidence_factors(
        self,
        state: WorkflowState,
        context: ConfidenceEvaluationContext,
    ) -> List[ConfidenceFactor]:
        weights = self.config.confidence_weights
        factors: List[ConfidenceFactor] = []

        raw = state.confidence
        if raw is None:
            base = DEFAULT_CONFIDENCE
        elif not math.isfinite(raw):
            raise EvaluationError(
                f"Workflow state carries a non-finite confidence: {raw}",
                technical_details={"execution_id": state.execution_id},
            )
        else:
            base = _clamp(raw)

        factors.append(ConfidenceFactor(
            name="base_confidence",
            value=base,
            weight=weights.base,
            source=FactorSource.SYSTEM,
            description="Base confidence from workflow state",
        ))

        pattern = context.historical_pattern
        if pattern is None and state.current_node:
            pattern = self._patterns.get(state.current_node)
        if pattern is not None:
            success_rate = pattern.success_rate
            value = success_rate if success_rate is not None else pattern.approval_rate
            factors.append(ConfidenceFactor(
                name="historical_success",
                value=value,
                weight=weights.historical,
                source=FactorSource.HISTORICAL,
                description=f"Historical success rate: {value * 100:.1f}%",
            ))

        if context.user_context is not None:
            factors.append(ConfidenceFactor(
                name="user_history",
                value=context.user_context.success_rate,
                weight=weights.user,
                source=FactorSource.USER,
                description=f"User success rate ({context.user_context.role or 'unknown role'})",
            ))

        if context.environment is not None:
            env = context.environment
            value = (0.6 if env.is_production else 0.9) * (1 - 0.3 * env.system_load)
            factors.append(ConfidenceFactor(
                name="environment",
                value=_clamp(value),
                weight=weights.environment,
                source=FactorSource.CONTEXTUAL,
                description="Production environment" if env.is_production else "Non-production environment",
            ))

        for name, value in context.custom_factors.items():
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                raise EvaluationError(
                    f"Custom confidence factor {name} is not a finite number: {value!r}",
                    technical_details={"execution_id": state.execution_id, "factor": name},
                )
            factors.append(ConfidenceFactor(
                name=name,
                value=_clamp(value),
                weight=weights.custom,
                source=FactorSource.ALGORITHMIC,
                description=f"Custom factor {name}",
            ))

        factors.extend(context.additional_factors)
        return factors

    def get_confidence_factors(self, execution_id: str) -> Dict[str, float]:
        """Factor breakdown of the last evaluation for an execution."""
        return {f.name: f.value for f in self._factor_history.get(execution_id, [])}

    # Risk

    async def assess_risk(
        self,
        state: WorkflowState,
        options: Optional[RiskAssessmentOptions] = None,
    ) -> RiskAssessment:
        """Estimate the risk of letting the action proceed unsupervised."""
        options = options or RiskAssessmentOptions()

        try:
            if options.custom_evaluator is not None:
                assessment = await self._run_custom_evaluator(options.custom_evaluator, state, options)
            else:
                assessment = await self._assess_with_heuristics(state, options)
        except Exception as e:
            self.logger.error(f"Error assessing risk for {state.execution_id}: {e}", exc_info=True)
            return self._default_assessment()

        await publish_safely(self.event_publisher, EventType.RISK_ASSESSED, {
            "execution_id": state.execution_id,
            "assessment": assessment.model_dump(mode="json"),
            "timestamp": utcnow().isoformat(),
        })

        self.logger.debug(
            f"Risk assessed: {assessment.level.value} ({assessment.score:.3f}) "
            f"for execution {state.execution_id}"
        )
        return assessment

    async def _assess_with_heuristics(
        self,
        state: WorkflowState,
        options: RiskAssessmentOptions,
    ) -> RiskAssessment:
        details = self._calculate_risk_details(state)

        weights = {**self.config.risk_weights.model_dump(), **options.weights}
        detail_values = details.model_dump()
        score = 0.0
        for dimension, weight in weights.items():
            value = detail_values.get(dimension, 0.0)
            if isinstance(value, (int, float)):
                score += value * weight
        if not math.isfinite(score):
            raise EvaluationError(
                f"Risk evaluation produced a non-finite score for {state.execution_id}"
            )
        score = _clamp(score)

        level = self.risk_level_for_score(score)
        level = await self._merge_predicted_risk(state, level)

        factors = self._identify_risk_factors(details, options.factors)
        return RiskAssessment(
            level=level,
            score=score,
            factors=factors,
            details=details,
            recommendations=self.generate_recommendations(level, factors),
            mitigations=self.generate_mitigations(level, factors),
        )

    async def _run_custom_evaluator(
        self,
        evaluator: Callable[..., Any],
        state: WorkflowState,
        options: RiskAssessmentOptions,
    ) -> RiskAssessment:
        result = evaluator(state)
        if inspect.isawaitable(result):
            result = await asyncio.wait_for(result, timeout=self.config.hook_timeout_seconds)

        if isinstance(result, RiskAssessment):
            data = result.model_dump()
        elif isinstance(result, Mapping):
            data = dict(result)
        else:
            raise EvaluationError(
                f"Custom risk evaluator returned {type(result).__name__}, expected a mapping"
            )

        level = RiskLevel(data["level"])
        factors = list(data.get("factors") or [])

        details = data.get("details")
        if isinstance(details, RiskDetails):
            details = details.model_dump()
        if not details or not any(details.get(d) for d in RISK_DIMENSIONS):
            computed = self._calculate_risk_details(state).model_dump()
            details = {**computed, **(details or {})}

        score = data.get("score")
        if score is None:
            weights = {**self.config.risk_weights.model_dump(), **options.weights}
            score = sum(details.get(d, 0.0) * w for d, w in weights.items())

        return RiskAssessment(
            level=level,
            score=_clamp(score),
            factors=factors,
            details=RiskDetails(**details),
            recommendations=data.get("recommendations") or self.generate_recommendations(level, factors),
            mitigations=data.get("mitigations") or self.generate_mitigations(level, factors),
        )

    async def _merge_predicted_risk(self, state: WorkflowState, level: RiskLevel) -> RiskLevel:
        predicted = await self._call_hook("predict_risk", state)
        if predicted is None:
            return level
        try:
            predicted = RiskLevel(predicted)
        except ValueError:
            self.logger.warning(f"Ignoring unknown ML risk level {predicted!r}")
            return level
        return predicted if risk_level_rank(predicted) > risk_level_rank(level) else level

    def _calculate_risk_details(self, state: WorkflowState) -> RiskDetails:
        metadata = state.metadata or {}

        security = 0.0
        if metadata.get("privileged_operation") or metadata.get("admin_action"):
            security = 0.8
        elif metadata.get("security_sensitive"):
            security = 0.6

        data_impact = 0.0
        if metadata.get("customer_data") or metadata.get("prod_data"):
            data_impact = 0.9
        elif metadata.get("data_modification"):
            data_impact = 0.5

        try:
            affected_users = float(metadata.get("affected_users") or 0)
        except (TypeError, ValueError):
            affected_users = 0.0
        user_impact = 0.0
        if affected_users > 1000:
            user_impact = 0.8
        elif affected_users > 100:
            user_impact = 0.4

        business_impact = 0.0
        if metadata.get("business_critical"):
            business_impact = 0.9
        elif metadata.get("financial_impact"):
            business_impact = 0.7

        operational_impact = 0.0
        if metadata.get("downtime_expected"):
            operational_impact = 0.9
        elif metadata.get("irreversible") or metadata.get("production_deployment"):
            operational_impact = 0.7

        return RiskDetails(
            security=security,
            data_impact=data_impact,
            user_impact=user_impact,
            business_impact=business_impact,
            operational_impact=operational_impact,
        )

    @staticmethod
    def risk_level_for_score(score: float) -> RiskLevel:
        if score >= 0.8:
            return RiskLevel.CRITICAL
        if score >= 0.6:
            return RiskLevel.HIGH
        if score >= 0.3:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    @staticmethod
    def _identify_risk_factors(details: RiskDetails, extra_factors: Iterable[str]) -> List[str]:
        factors = []
        for dimension, (threshold, name) in RISK_FACTOR_THRESHOLDS.items():
            if getattr(details, dimension) > threshold:
                factors.append(name)
        for factor in extra_factors:
            if factor not in factors:
                factors.append(factor)
        return factors

    @staticmethod
    def generate_recommendations(level: RiskLevel, factors: Iterable[str] = ()) -> List[str]:
        recommendations = [RECOMMENDATIONS[RiskLevel(level)]]
        if "high-security-risk" in factors:
            recommendations.append("Security team review recommended")
        return recommendations

    @staticmethod
    def generate_mitigations(level: RiskLevel, factors: Iterable[str] = ()) -> List[str]:
        mitigations = [MITIGATIONS[RiskLevel(level)]]
        if "high-data-impact" in factors:
            mitigations.append("Back up affected data before execution")
        return mitigations

    @staticmethod
    def _default_assessment() -> RiskAssessment:
        return RiskAssessment(
            level=RiskLevel.MEDIUM,
            score=0.5,
            factors=["evaluation-error"],
            details=RiskDetails(
                security=0.5,
                data_impact=0.5,
                user_impact=0.5,
                business_impact=0.5,
                operational_impact=0.5,
            ),
            recommendations=["Manual review recommended due to evaluation error"],
            mitigations=["Proceed with caution"],
        )

    # Learning

    async def learn_from_approval_outcome(
        self,
        state: WorkflowState,
        approved: bool,
        confidence: float,
        outcome: Optional[Union[ExecutionOutcome, str]] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Fold one approval decision into the node's pattern. Never raises."""
        node_id = state.current_node or "unknown"

        try:
            outcome = ExecutionOutcome(outcome) if outcome is not None else None

            async with self._node_locks.lock_for(node_id):
                pattern = self._patterns.get(node_id) or ApprovalPattern(node_id=node_id)
                n = pattern.total_decisions

                if isinstance(confidence, (int, float)) and math.isfinite(confidence):
                    confidence_value = _clamp(confidence)
                else:
                    confidence_value = pattern.average_confidence

                update: Dict[str, Any] = {
                    "approval_rate": (pattern.approval_rate * n + (1.0 if approved else 0.0)) / (n + 1),
                    "average_confidence": (pattern.average_confidence * n + confidence_value) / (n + 1),
                    "total_decisions": n + 1,
                    "last_updated": utcnow(),
                }

                if outcome == ExecutionOutcome.SUCCESS:
                    update["successful_executions"] = pattern.successful_executions + 1
                elif outcome == ExecutionOutcome.FAILURE:
                    update["failed_executions"] = pattern.failed_executions + 1

                if not approved and reason:
                    reasons = [r for r in pattern.common_rejection_reasons if r != reason]
                    reasons.insert(0, reason)
                    update["common_rejection_reasons"] = reasons[:self.config.max_rejection_reasons]

                pattern = pattern.model_copy(update=update)
                self._patterns[node_id] = pattern

            if outcome is not None:
                await self._call_hook("learn_from_outcome", state, approved, confidence_value, outcome.value)

            self.logger.debug(
                f"Updated pattern for node {node_id}: approval rate {pattern.approval_rate:.3f}"
            )
        except Exception as e:
            self.logger.error(f"Error learning from approval outcome for node {node_id}: {e}", exc_info=True)

    def get_historical_pattern(self, node_id: str) -> Optional[ApprovalPattern]:
        return self._patterns.get(node_id)

    def load_historical_patterns(self, patterns: Iterable[ApprovalPattern]) -> int:
        """Seed node patterns, replacing any existing pattern for the same node."""
        count = 0
        for pattern in patterns:
            self._patterns[pattern.node_id] = pattern
            count += 1
        self.logger.debug(f"Loaded {count} historical patterns")
        return count

    def clear_patterns(self) -> None:
        self._patterns.clear()
        self._factor_history.clear()
        self._last_confidence.clear()
        self._node_locks.clear()

    # ML hooks

    def register_ml_hooks(
        self,
        hooks: Optional[Union[MLIntegrationHooks, Dict[str, Callable[..., Any]]]] = None,
        **kwargs: Callable[..., Any],
    ) -> None:
        """Register (or replace) ML hooks; hooks not given are kept."""
        if isinstance(hooks, MLIntegrationHooks):
            new_hooks = {
                name: getattr(hooks, name)
                for name in MLIntegrationHooks.model_fields
                if getattr(hooks, name) is not None
            }
        else:
            new_hooks = dict(hooks or {})
        new_hooks.update(kwargs)

        unknown = set(new_hooks) - set(MLIntegrationHooks.model_fields)
        if unknown:
            raise ValueError(f"Unknown ML hooks: {sorted(unknown)}")

        self._ml_hooks = self._ml_hooks.model_copy(
            update={name: hook for name, hook in new_hooks.items() if hook is not None}
        )
        self.logger.info(f"ML integration hooks registered: {sorted(new_hooks)}")

    async def get_ml_recommendation(self, state: WorkflowState) -> Optional[MLRecommendation]:
        result = await self._call_hook("get_recommendation", state)
        if result is None:
            return None
        try:
            if isinstance(result, MLRecommendation):
                return result
            return MLRecommendation(**result)
        except (TypeError, ValueError) as e:
            self.logger.warning(f"ML recommendation was malformed: {e}")
            return None

    async def _call_hook(self, name: str, *args: Any) -> Any:
        """Call an ML hook bounded by the hook timeout. Failures yield None."""
        hook = getattr(self._ml_hooks, name)
        if hook is None:
            return None
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self.config.hook_timeout_seconds)
            return result
        except asyncio.TimeoutError:
            self.logger.warning(f"ML hook {name} timed out after {self.config.hook_timeout_seconds}s")
        except Exception as e:
            self.logger.warning(f"ML hook {name} failed: {e}")
        return None
