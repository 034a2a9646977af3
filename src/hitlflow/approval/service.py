"""
HumanApproval: the approval request state machine.

Creates approval requests, arms their timeouts, applies human responses and
timer fires, and turns every outcome into a partial workflow-state update.
"""

from datetime import timedelta
from functools import partial
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..communication.events import EventPublisher, EventType, publish_safely
from ..communication.push import PushChannel, PushChannelRegistry
from ..config.models import HITLConfig
from ..exceptions import (
    ChainNotFoundError,
    HITLError,
    InvalidStateError,
    RequestNotFoundError,
    ValidationError,
)
from ..logging_config import get_approval_logger
from ..utils.locks import KeyedLocks
from ..utils.timers import TimerRegistry
from .chain import ApprovalChain
from .confidence import ConfidenceEvaluator
from .feedback import FeedbackProcessor
from .models import (
    SYSTEM_APPROVER,
    ApprovalDecision,
    ApprovalHistoryEntry,
    ApprovalOptions,
    ApprovalRequest,
    ApprovalResponse,
    ApprovalResult,
    ApprovalStats,
    ApprovalWorkflowState,
    Approver,
    ChainApprovalRequest,
    ChainDecision,
    ChainStatus,
    ConfidenceSnapshot,
    FeedbackContent,
    FeedbackType,
    RetryState,
    RiskAssessmentOptions,
    TimeoutSettings,
    TimeoutStrategy,
    WorkflowState,
    utcnow,
)

CHAIN_STATUS_TO_STATE = {
    ChainStatus.APPROVED: ApprovalWorkflowState.APPROVED,
    ChainStatus.REJECTED: ApprovalWorkflowState.REJECTED,
    ChainStatus.ESCALATED: ApprovalWorkflowState.ESCALATED,
    ChainStatus.TIMEOUT: ApprovalWorkflowState.TIMEOUT,
}

TIMEOUT_APPROVER = Approver(id="system", name="Auto-Approval (Timeout)", role="system")
TIMEOUT_REJECTER = Approver(id="system", name="Auto-Rejection (Timeout)", role="system")
TIMEOUT_ESCALATOR = Approver(id="system", name="Auto-Escalation (Timeout)", role="system")
TIMEOUT_RETRIER = Approver(id="system", name="Auto-Retry (Timeout)", role="system")


class HumanApproval:
    """
    Orchestrates human approval requests.

    Every mutation of a request runs under that request's lock, and only a
    request that is still in progress may change. Terminal states stop the
    timer and freeze the history.
    """

    def __init__(
        self,
        confidence_evaluator: Optional[ConfidenceEvaluator] = None,
        approval_chain: Optional[ApprovalChain] = None,
        feedback_processor: Optional[FeedbackProcessor] = None,
        event_publisher: Optional[EventPublisher] = None,
        config: Optional[HITLConfig] = None,
        push_channels: Optional[PushChannelRegistry] = None,
    ):
        self.config = config or HITLConfig()
        self.event_publisher = event_publisher
        self.confidence_evaluator = confidence_evaluator or ConfidenceEvaluator(event_publisher, self.config)
        self.approval_chain = approval_chain or ApprovalChain(event_publisher)
        self.feedback_processor = feedback_processor or FeedbackProcessor(event_publisher)
        self.push_channels = push_channels or PushChannelRegistry(
            timeout_seconds=self.config.hook_timeout_seconds
        )

        self._requests: Dict[str, ApprovalRequest] = {}
        self._chain_index: Dict[str, str] = {}  # chain request id -> approval request id
        self._locks = KeyedLocks()
        self._timers = TimerRegistry("approval-timeout")
        self._timer_generation: Dict[str, int] = {}

        self.approval_chain.add_listener(self._on_chain_resolved)

        self.logger = get_approval_logger("service")

    # Creating requests

    async def request_approval(
        self,
        execution_id: str,
        node_id: str,
        message: str,
        state: Union[WorkflowState, Dict[str, Any]],
        options: Optional[Union[ApprovalOptions, Dict[str, Any]]] = None,
    ) -> ApprovalRequest:
        """Create an approval request and start waiting for a human."""
        options = self._coerce_options(options)
        state = self._coerce_state(execution_id, node_id, state)

        self.logger.info(f"Requesting approval for execution {execution_id}, node {node_id}")

        confidence = await self.confidence_evaluator.evaluate_confidence(state)
        factors = self.confidence_evaluator.get_confidence_factors(execution_id)

        risk_assessment = None
        if options.risk_assessment.enabled:
            risk_assessment = await self.confidence_evaluator.assess_risk(
                state,
                RiskAssessmentOptions(
                    factors=options.risk_assessment.factors,
                    custom_evaluator=options.risk_assessment.evaluator,
                ),
            )

        threshold = options.confidence_threshold
        timeout_ms = options.timeout_ms
        max_retry_attempts = options.max_retry_attempts
        request = ApprovalRequest(
            execution_id=execution_id,
            node_id=node_id,
            message=options.message or message,
            metadata=dict(options.metadata),
            state=state,
            options=options,
            approvers=list(options.approvers),
            chain_id=options.chain_id,
            risk_assessment=risk_assessment,
            confidence=ConfidenceSnapshot(
                current=confidence,
                threshold=threshold if threshold is not None else self.config.confidence_threshold,
                factors=factors,
            ),
            timeout=TimeoutSettings(
                duration_ms=timeout_ms if timeout_ms is not None else self.config.approval_timeout_ms,
                strategy=options.on_timeout if options.on_timeout is not None else self.config.timeout_strategy,
            ),
            retry=RetryState(
                max_attempts=max_retry_attempts if max_retry_attempts is not None else self.config.retry_attempts
            ),
        )

        async with self._locks.lock_for(request.id):
            self._requests[request.id] = request

            chain_request = None
            if options.chain_id:
                chain_request = await self._initiate_chain(request)

            request.workflow_state = ApprovalWorkflowState.IN_PROGRESS
            request.history.append(ApprovalHistoryEntry(action="requested", message=request.message))

            await publish_safely(self.event_publisher, EventType.APPROVAL_REQUESTED, {
                "request_id": request.id,
                "execution_id": execution_id,
                "node_id": node_id,
                "message": request.message,
                "approvers": request.approvers,
                "confidence": request.confidence.current,
                "threshold": request.confidence.threshold,
                "risk_level": risk_assessment.level.value if risk_assessment else None,
                "chain_id": request.chain_id,
                "stream_enabled": self.push_channels.has(execution_id),
            })
            await self._push_requested(request)

            if chain_request is not None and chain_request.status == ChainStatus.APPROVED:
                await self._complete(
                    request,
                    ApprovalWorkflowState.APPROVED,
                    SYSTEM_APPROVER,
                    chain_request.reason,
                )
            else:
                self._arm_timer(request)

        self.logger.log_audit_event(
            "approval_requested",
            request_id=request.id,
            details={
                "execution_id": execution_id,
                "node_id": node_id,
                "confidence": request.confidence.current,
                "chain_id": request.chain_id,
            },
        )
        return request

    async def _initiate_chain(self, request: ApprovalRequest) -> Optional[ChainApprovalRequest]:
        risk = request.risk_assessment
        try:
            chain_request = await self.approval_chain.initiate_approval(
                request.execution_id,
                request.chain_id,
                {
                    "node_id": request.node_id,
                    "message": request.message,
                    "confidence": request.confidence.current,
                    "risk_level": risk.level.value if risk else None,
                    "risk_assessment": risk.model_dump(mode="json") if risk else None,
                    "metadata": request.metadata,
                },
            )
        except ChainNotFoundError as e:
            self.logger.warning(
                f"Failed to initiate approval chain {request.chain_id}: {e}. "
                f"Proceeding without a chain"
            )
            request.chain_id = None
            return None

        request.chain_request_id = chain_request.id
        self._chain_index[chain_request.id] = request.id
        if chain_request.is_pending:
            self._merge_approvers(request, chain_request)
        return chain_request

    @staticmethod
    def _merge_approvers(request: ApprovalRequest, chain_request: ChainApprovalRequest) -> None:
        for approver in chain_request.current_level.approvers:
            if approver.id not in request.approvers:
                request.approvers.append(approver.id)

    @staticmethod
    def _coerce_options(options: Optional[Union[ApprovalOptions, Dict[str, Any]]]) -> ApprovalOptions:
        if options is None:
            return ApprovalOptions()
        if isinstance(options, ApprovalOptions):
            return options
        return ApprovalOptions.model_validate(options)

    @staticmethod
    def _coerce_state(
        execution_id: str,
        node_id: str,
        state: Union[WorkflowState, Dict[str, Any]],
    ) -> WorkflowState:
        if isinstance(state, WorkflowState):
            if state.current_node is None:
                return state.model_copy(update={"current_node": node_id})
            return state
        data = {"execution_id": execution_id, "current_node": node_id}
        data.update({k: v for k, v in dict(state or {}).items() if v is not None})
        return WorkflowState.model_validate(data)

    # Responses

    async def process_approval_response(
        self,
        request_id: str,
        response: Union[ApprovalResponse, Dict[str, Any]],
    ) -> ApprovalResult:
        """Apply a human decision. Failures are returned, never raised."""
        if not isinstance(response, ApprovalResponse):
            try:
                response = ApprovalResponse.model_validate(response)
            except PydanticValidationError as e:
                return self._failure(ValidationError(
                    f"Malformed approval response for {request_id}: {e.error_count()} validation errors",
                    technical_details={"request_id": request_id, "errors": e.errors(include_url=False)},
                    original_error=e,
                ))

        if response.request_id is not None and response.request_id != request_id:
            return self._failure(ValidationError(
                f"Response is for request {response.request_id}, not {request_id}",
                technical_details={"request_id": request_id},
            ))

        async with self._locks.lock_for(request_id):
            request = self._requests.get(request_id)
            if request is None:
                return self._failure(RequestNotFoundError(
                    f"Approval request {request_id} not found",
                    technical_details={"request_id": request_id},
                ))

            if request.workflow_state != ApprovalWorkflowState.IN_PROGRESS:
                return self._failure(InvalidStateError(
                    f"Approval request {request_id} is not in progress "
                    f"(current state: {request.workflow_state.value})",
                    technical_details={"request_id": request_id, "state": request.workflow_state.value},
                ))

            self.logger.info(f"Processing approval response for {request_id}: {response.decision.value}")

            try:
                next_state = await self._apply_response(request, response)
            except HITLError as e:
                return self._failure(e)
            except Exception as e:
                self.logger.error(f"Error processing approval response for {request_id}: {e}", exc_info=True)
                return ApprovalResult(success=False, error=str(e), error_code="processing_error")

        return ApprovalResult(success=True, next_state=next_state, workflow_state=request.workflow_state)

    @staticmethod
    def _failure(error: HITLError) -> ApprovalResult:
        return ApprovalResult(success=False, error=str(error), error_code=error.error_code)

    async def _apply_response(self, request: ApprovalRequest, response: ApprovalResponse) -> Dict[str, Any]:
        decision = response.decision

        if decision in (ApprovalDecision.APPROVED, ApprovalDecision.REJECTED) and request.chain_request_id:
            return await self._apply_chain_vote(request, response)
        if decision == ApprovalDecision.APPROVED:
            return await self._handle_approved(request, response)
        if decision == ApprovalDecision.REJECTED:
            return await self._handle_rejected(request, response, response.message)
        if decision == ApprovalDecision.ESCALATED:
            return await self._handle_escalated(request, response)
        if decision == ApprovalDecision.RETRY:
            return await self._handle_retry(request, response)
        return await self._handle_modify(request, response)

    async def _apply_chain_vote(self, request: ApprovalRequest, response: ApprovalResponse) -> Dict[str, Any]:
        chain_request = self.approval_chain.get_approval_request(request.chain_request_id)
        if chain_request is None:
            raise RequestNotFoundError(
                f"Chain request {request.chain_request_id} of {request.id} not found",
                technical_details={"request_id": request.id},
            )

        chain_request = await self.approval_chain.process_approval(
            request.chain_request_id,
            response.approver,
            ChainDecision(response.decision.value),
            response.message,
        )

        if chain_request.is_pending:
            request.history.append(ApprovalHistoryEntry(
                action=f"chain_{response.decision.value}",
                approver=response.approver,
                message=response.message,
            ))
            self._merge_approvers(request, chain_request)
            await self._push_update(request, response.decision.value, response.approver, response.message)
            return {
                "waiting_for_approval": True,
                "metadata": {
                    **request.state.metadata,
                    "chain_level": chain_request.current_level.id,
                    "chain_status": chain_request.status.value,
                },
            }

        if chain_request.status == ChainStatus.APPROVED:
            return await self._handle_approved(request, response)
        return await self._handle_rejected(request, response, response.message)

    def _human_feedback(
        self,
        response: ApprovalResponse,
        approved: bool,
        status: str,
    ) -> Dict[str, Any]:
        return {
            "approved": approved,
            "status": status,
            "approver": response.approver.model_dump(exclude_none=True),
            "message": response.message,
            "timestamp": response.timestamp.isoformat(),
            "metadata": dict(response.metadata),
        }

    async def _handle_approved(self, request: ApprovalRequest, response: ApprovalResponse) -> Dict[str, Any]:
        await self.feedback_processor.submit_feedback(
            request.execution_id,
            FeedbackType.APPROVAL,
            FeedbackContent(message=response.message, data=response.metadata or None),
            response.approver,
        )

        next_state = {
            "human_feedback": self._human_feedback(response, True, "approved"),
            "confidence": min(request.confidence.current + 0.1, 1.0),
            "approval_received": True,
            "waiting_for_approval": False,
            f"approved_{request.node_id}": True,
        }
        await self._complete(request, ApprovalWorkflowState.APPROVED, response.approver, response.message)
        return next_state

    async def _handle_rejected(
        self,
        request: ApprovalRequest,
        response: ApprovalResponse,
        reason: Optional[str],
    ) -> Dict[str, Any]:
        await self.feedback_processor.submit_feedback(
            request.execution_id,
            FeedbackType.REJECTION,
            FeedbackContent(message=reason, data=response.metadata or None),
            response.approver,
        )

        human_feedback = self._human_feedback(response, False, "rejected")
        human_feedback["message"] = reason
        human_feedback["reason"] = reason
        next_state = {
            "human_feedback": human_feedback,
            "confidence": max(request.confidence.current - 0.2, 0.0),
            "approval_received": False,
            "waiting_for_approval": False,
            "rejection_reason": reason,
        }
        await self._complete(request, ApprovalWorkflowState.REJECTED, response.approver, reason)
        return next_state

    async def _handle_escalated(self, request: ApprovalRequest, response: ApprovalResponse) -> Dict[str, Any]:
        advanced = await self._escalate_chain(request, response.approver, response.message)

        await publish_safely(self.event_publisher, EventType.APPROVAL_ESCALATED, {
            "request_id": request.id,
            "execution_id": request.execution_id,
            "escalated_by": response.approver.model_dump(exclude_none=True),
            "reason": response.message,
            "chain_id": request.chain_id,
            "advanced": advanced,
        })

        metadata = {
            **request.state.metadata,
            "escalated_by": response.approver.model_dump(exclude_none=True),
            "escalation_reason": response.message,
        }

        if self._chain_exhausted(request):
            await self._complete(request, ApprovalWorkflowState.ESCALATED, response.approver, response.message)
            return {"waiting_for_approval": False, "metadata": metadata}

        request.history.append(ApprovalHistoryEntry(
            action=ApprovalDecision.ESCALATED.value,
            approver=response.approver,
            message=response.message,
        ))
        self._arm_timer(request)
        await self._push_update(request, ApprovalDecision.ESCALATED.value, response.approver, response.message)
        return {"waiting_for_approval": True, "metadata": metadata}

    async def _handle_retry(self, request: ApprovalRequest, response: ApprovalResponse) -> Dict[str, Any]:
        request.retry.count += 1

        if request.retry.count < request.retry.max_attempts:
            request.history.append(ApprovalHistoryEntry(
                action=ApprovalDecision.RETRY.value,
                approver=response.approver,
                message=response.message,
            ))
            self._arm_timer(request)
            await self._push_update(request, ApprovalDecision.RETRY.value, response.approver, response.message)
            return {
                "waiting_for_approval": True,
                "metadata": {
                    **request.state.metadata,
                    "retry_count": request.retry.count,
                    "retry_reason": response.message,
                },
            }

        return await self._handle_rejected(request, response, f"Max retries reached: {response.message}")

    async def _handle_modify(self, request: ApprovalRequest, response: ApprovalResponse) -> Dict[str, Any]:
        modifications = dict(response.modifications or {})
        entry = await self.feedback_processor.submit_feedback(
            request.execution_id,
            FeedbackType.MODIFICATION,
            FeedbackContent(
                message=response.message,
                modifications=modifications,
                data=response.metadata or None,
            ),
            response.approver,
        )

        request.history.append(ApprovalHistoryEntry(
            action=ApprovalDecision.MODIFY.value,
            approver=response.approver,
            message=response.message,
        ))
        self._arm_timer(request)
        await self._push_update(request, ApprovalDecision.MODIFY.value, response.approver, response.message)

        human_feedback = self._human_feedback(response, False, "needs_revision")
        human_feedback["alternatives"] = list(modifications)
        human_feedback["metadata"] = modifications
        return {
            "human_feedback": human_feedback,
            "waiting_for_approval": False,
            "feedback_id": entry.id,
            "metadata": {
                **request.state.metadata,
                "human_modifications": modifications,
                "modification_reason": response.message,
            },
        }

    async def _escalate_chain(
        self,
        request: ApprovalRequest,
        approver: Approver,
        reason: Optional[str],
    ) -> bool:
        """Move a chain-scoped request to its next level. Returns whether it advanced."""
        if not request.chain_request_id:
            return False
        chain_request = self.approval_chain.get_approval_request(request.chain_request_id)
        if chain_request is None or not chain_request.is_pending:
            return False

        try:
            chain_request = await self.approval_chain.escalate(request.chain_request_id, approver, reason)
        except HITLError as e:
            self.logger.warning(f"Failed to escalate chain request {request.chain_request_id}: {e}")
            return False

        if chain_request.is_pending:
            self._merge_approvers(request, chain_request)
            return True
        return False

    def _chain_exhausted(self, request: ApprovalRequest) -> bool:
        if not request.chain_request_id:
            return False
        chain_request = self.approval_chain.get_approval_request(request.chain_request_id)
        return chain_request is not None and chain_request.status == ChainStatus.ESCALATED

    # Terminal transitions

    async def _complete(
        self,
        request: ApprovalRequest,
        state: ApprovalWorkflowState,
        approver: Optional[Approver],
        message: Optional[str],
    ) -> None:
        """Apply a terminal transition. Caller holds the request lock."""
        now = utcnow()
        request.workflow_state = state
        request.responded_at = now
        if state == ApprovalWorkflowState.TIMEOUT:
            request.timed_out_at = request.timed_out_at or now
        request.history.append(ApprovalHistoryEntry(action=state.value, approver=approver, message=message))
        self._cancel_timer(request.id)

        await publish_safely(self.event_publisher, EventType.APPROVAL_COMPLETED, {
            "request_id": request.id,
            "execution_id": request.execution_id,
            "node_id": request.node_id,
            "decision": state.value,
            "approver": approver.model_dump(exclude_none=True) if approver else None,
            "message": message,
            "duration_seconds": request.response_time_seconds,
        })
        await self._push_update(request, state.value, approver, message)

        self.logger.log_audit_event(
            f"approval_{state.value}",
            request_id=request.id,
            actor=approver.id if approver else None,
            details={"execution_id": request.execution_id, "node_id": request.node_id, "message": message},
        )

        if state != ApprovalWorkflowState.CANCELLED:
            await self.confidence_evaluator.learn_from_approval_outcome(
                request.state,
                approved=state == ApprovalWorkflowState.APPROVED,
                confidence=request.confidence.current,
                reason=message if state != ApprovalWorkflowState.APPROVED else None,
            )

    # Timers

    def _arm_timer(self, request: ApprovalRequest) -> None:
        generation = self._timer_generation.get(request.id, 0) + 1
        self._timer_generation[request.id] = generation
        self._timers.schedule(
            request.id,
            request.timeout.duration_ms / 1000,
            partial(self._handle_timeout, request.id, generation),
        )

    def _cancel_timer(self, request_id: str) -> None:
        self._timers.cancel(request_id)
        self._timer_generation[request_id] = self._timer_generation.get(request_id, 0) + 1

    async def _handle_timeout(self, request_id: str, generation: int) -> None:
        async with self._locks.lock_for(request_id):
            request = self._requests.get(request_id)
            if (
                request is None
                or request.workflow_state != ApprovalWorkflowState.IN_PROGRESS
                or self._timer_generation.get(request_id) != generation
            ):
                return

            strategy = request.timeout.strategy
            request.timed_out_at = utcnow()
            self.logger.info(f"Approval request {request_id} timed out (strategy: {strategy.value})")

            await publish_safely(self.event_publisher, EventType.APPROVAL_TIMEOUT, {
                "request_id": request_id,
                "execution_id": request.execution_id,
                "node_id": request.node_id,
                "strategy": strategy.value,
                "retry_count": request.retry.count,
            })

            if strategy == TimeoutStrategy.APPROVE:
                await self._complete(
                    request, ApprovalWorkflowState.APPROVED, TIMEOUT_APPROVER, "Auto-approved due to timeout"
                )
            elif strategy == TimeoutStrategy.REJECT:
                await self._complete(
                    request, ApprovalWorkflowState.REJECTED, TIMEOUT_REJECTER, "Rejected due to timeout"
                )
            elif strategy == TimeoutStrategy.ESCALATE:
                await self._escalate_on_timeout(request)
            else:
                await self._retry_on_timeout(request)

    async def _escalate_on_timeout(self, request: ApprovalRequest) -> None:
        reason = "Escalated due to timeout"
        advanced = await self._escalate_chain(request, TIMEOUT_ESCALATOR, reason)

        await publish_safely(self.event_publisher, EventType.APPROVAL_ESCALATED, {
            "request_id": request.id,
            "execution_id": request.execution_id,
            "escalated_by": TIMEOUT_ESCALATOR.model_dump(exclude_none=True),
            "reason": reason,
            "chain_id": request.chain_id,
            "advanced": advanced,
        })

        if advanced:
            request.history.append(ApprovalHistoryEntry(
                action=ApprovalDecision.ESCALATED.value,
                approver=TIMEOUT_ESCALATOR,
                message=reason,
            ))
            self._arm_timer(request)
            await self._push_update(request, ApprovalDecision.ESCALATED.value, TIMEOUT_ESCALATOR, reason)
        else:
            await self._complete(request, ApprovalWorkflowState.ESCALATED, TIMEOUT_ESCALATOR, reason)

    async def _retry_on_timeout(self, request: ApprovalRequest) -> None:
        request.retry.count += 1

        if request.retry.count < request.retry.max_attempts:
            message = f"Retry {request.retry.count} of {request.retry.max_attempts} after timeout"
            request.history.append(ApprovalHistoryEntry(
                action=ApprovalDecision.RETRY.value,
                approver=TIMEOUT_RETRIER,
                message=message,
            ))
            self._arm_timer(request)
            await publish_safely(self.event_publisher, EventType.APPROVAL_REQUESTED, {
                "request_id": request.id,
                "execution_id": request.execution_id,
                "node_id": request.node_id,
                "message": request.message,
                "approvers": request.approvers,
                "retry_attempt": request.retry.count,
            })
            await self._push_update(request, ApprovalDecision.RETRY.value, TIMEOUT_RETRIER, message)
        else:
            await self._complete(
                request,
                ApprovalWorkflowState.REJECTED,
                TIMEOUT_REJECTER,
                "Rejected after maximum retry attempts",
            )

    async def _on_chain_resolved(self, chain_request: ChainApprovalRequest) -> None:
        """Resolve the linked request when its chain resolves on its own."""
        request_id = self._chain_index.get(chain_request.id)
        if request_id is None:
            return

        async with self._locks.lock_for(request_id):
            request = self._requests.get(request_id)
            if request is None or request.workflow_state != ApprovalWorkflowState.IN_PROGRESS:
                return

            state = CHAIN_STATUS_TO_STATE.get(chain_request.status)
            if state is None:
                return

            approver = chain_request.history[-1].approver if chain_request.history else SYSTEM_APPROVER
            if state == ApprovalWorkflowState.TIMEOUT:
                approver = SYSTEM_APPROVER
            self.logger.info(f"Chain request {chain_request.id} resolved request {request_id}: {state.value}")
            await self._complete(request, state, approver, chain_request.reason)

    # Cancellation and queries

    async def cancel_approval(self, request_id: str) -> bool:
        """Cancel a request that is still in progress. Returns whether it was cancelled."""
        async with self._locks.lock_for(request_id):
            request = self._requests.get(request_id)
            if request is None or request.workflow_state != ApprovalWorkflowState.IN_PROGRESS:
                return False

            if request.chain_request_id:
                self.approval_chain.discard_request(request.chain_request_id)
                self._chain_index.pop(request.chain_request_id, None)

            await self._complete(request, ApprovalWorkflowState.CANCELLED, None, "Cancelled")

        self.logger.info(f"Cancelled approval request {request_id}")
        return True

    def get_approval_request(self, request_id: str) -> Optional[ApprovalRequest]:
        return self._requests.get(request_id)

    def get_pending_approvals(self) -> List[ApprovalRequest]:
        return [
            r for r in self._requests.values()
            if r.workflow_state == ApprovalWorkflowState.IN_PROGRESS
        ]

    def get_approvals_for_execution(self, execution_id: str) -> List[ApprovalRequest]:
        return [r for r in self._requests.values() if r.execution_id == execution_id]

    def get_approval_stats(self) -> ApprovalStats:
        requests = list(self._requests.values())
        by_state = {state.value: 0 for state in ApprovalWorkflowState}

        response_times = []
        for request in requests:
            by_state[request.workflow_state.value] += 1
            if request.response_time_seconds is not None:
                response_times.append(request.response_time_seconds)

        total = len(requests)
        approved = by_state[ApprovalWorkflowState.APPROVED.value]
        rejected = by_state[ApprovalWorkflowState.REJECTED.value]
        decided = approved + rejected

        return ApprovalStats(
            total=total,
            by_state=by_state,
            approval_rate=approved / decided if decided else 0.0,
            average_response_time=sum(response_times) / len(response_times) if response_times else 0.0,
            timeout_rate=by_state[ApprovalWorkflowState.TIMEOUT.value] / total if total else 0.0,
            escalation_rate=by_state[ApprovalWorkflowState.ESCALATED.value] / total if total else 0.0,
        )

    # Push channels

    def register_stream_connection(self, execution_id: str, connection: PushChannel) -> None:
        self.push_channels.register(execution_id, connection)

    def unregister_stream_connection(self, execution_id: str) -> None:
        self.push_channels.unregister(execution_id)

    async def _push_requested(self, request: ApprovalRequest) -> None:
        await self.push_channels.send(request.execution_id, "approval_requested", {
            "request_id": request.id,
            "node_id": request.node_id,
            "message": request.message,
            "confidence": request.confidence.model_dump(mode="json"),
            "risk_assessment": (
                request.risk_assessment.model_dump(mode="json") if request.risk_assessment else None
            ),
            "approvers": request.approvers,
            "timeout_ms": request.timeout.duration_ms,
            "timestamp": request.created_at.isoformat(),
        })

    async def _push_update(
        self,
        request: ApprovalRequest,
        decision: str,
        approver: Optional[Approver],
        message: Optional[str],
    ) -> None:
        await self.push_channels.send(request.execution_id, "approval_updated", {
            "request_id": request.id,
            "decision": decision,
            "workflow_state": request.workflow_state.value,
            "approver": approver.model_dump(exclude_none=True) if approver else None,
            "message": message,
            "timestamp": utcnow().isoformat(),
        })

    # Lifecycle

    def evict_resolved(self, older_than_seconds: float = 0) -> int:
        """Forget resolved requests that finished more than the given seconds ago."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        evicted = [
            request_id
            for request_id, request in self._requests.items()
            if request.is_terminal and (request.responded_at or request.created_at) <= cutoff
        ]

        for request_id in evicted:
            request = self._requests.pop(request_id)
            if request.chain_request_id:
                self._chain_index.pop(request.chain_request_id, None)
                self.approval_chain.discard_request(request.chain_request_id)
            self._timer_generation.pop(request_id, None)
            self._locks.discard(request_id)

        if evicted:
            self.logger.debug(f"Evicted {len(evicted)} resolved approval requests")
        return len(evicted)

    async def shutdown(self) -> None:
        """Cancel every timer and clear all in-memory requests."""
        cancelled = self._timers.cancel_all()
        await self.approval_chain.shutdown()
        self._requests.clear()
        self._chain_index.clear()
        self._timer_generation.clear()
        self._locks.clear()
        self.logger.info(f"Human approval service shut down ({cancelled} timers cancelled)")
