"""
ApprovalChain: named chains of ordered approval levels.
"""

import asyncio
from collections.abc import Mapping
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from ..communication.events import EventPublisher, EventType, publish_safely
from ..exceptions import ChainNotFoundError, InvalidStateError, RequestNotFoundError, ValidationError
from ..logging_config import get_approval_logger
from ..utils.locks import KeyedLocks
from ..utils.timers import TimerRegistry
from .models import (
    SYSTEM_APPROVER,
    ApprovalCondition,
    ApprovalLevel,
    ApprovalPolicy,
    Approver,
    ChainApprovalRequest,
    ChainDecision,
    ChainHistoryEntry,
    ChainStatus,
    ConditionOperator,
    LevelDecision,
    RiskLevel,
    risk_level_rank,
    utcnow,
)

ChainListener = Callable[[ChainApprovalRequest], Awaitable[Any]]

_COLLECTIONS = (list, tuple, set, frozenset)
_MISSING = object()


def _resolve_field(context: Any, path: str) -> Any:
    """Look up a key, or a dotted path, in the context. Missing yields None."""
    if isinstance(context, Mapping) and path in context:
        return context[path]

    value = context
    for part in path.split("."):
        if isinstance(value, Mapping):
            value = value.get(part, _MISSING)
        else:
            value = getattr(value, part, _MISSING)
        if value is _MISSING:
            return None
    return value


def _ordering_key(value: Any) -> float:
    """Numeric ordering for comparisons; risk level names order by severity."""
    if isinstance(value, RiskLevel):
        return float(risk_level_rank(value))
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(risk_level_rank(RiskLevel(str(value).lower())))


class ApprovalChain:
    """
    Registry of approval chains and the chain-scoped requests moving
    through them.

    A request sits at one level at a time. Votes are evaluated against the
    level's policy; an approved level advances the request, a rejected level
    terminates it. Each level may carry its own timeout.
    """

    def __init__(self, event_publisher: Optional[EventPublisher] = None):
        self.event_publisher = event_publisher

        self._chains: Dict[str, List[ApprovalLevel]] = {}
        self._requests: Dict[str, ChainApprovalRequest] = {}
        self._locks = KeyedLocks()
        self._timers = TimerRegistry("chain-level-timeout")
        self._listeners: List[ChainListener] = []
        self._listener_tasks: Set["asyncio.Task[Any]"] = set()

        self.logger = get_approval_logger("chain")

    # Chain registry

    def create_approval_chain(
        self,
        chain_id: str,
        levels: Iterable[Union[ApprovalLevel, Dict[str, Any]]],
    ) -> List[ApprovalLevel]:
        """Register (or replace) a chain; levels are ordered by priority."""
        parsed = [
            level if isinstance(level, ApprovalLevel) else ApprovalLevel.model_validate(level)
            for level in levels
        ]
        sorted_levels = sorted(parsed, key=lambda level: level.priority)

        self._chains[chain_id] = sorted_levels
        self.logger.info(f"Created approval chain {chain_id} with {len(sorted_levels)} levels")
        return list(sorted_levels)

    def get_chain(self, chain_id: str) -> Optional[List[ApprovalLevel]]:
        levels = self._chains.get(chain_id)
        return list(levels) if levels is not None else None

    def list_chains(self) -> List[str]:
        return list(self._chains)

    # Requests

    async def initiate_approval(
        self,
        execution_id: str,
        chain_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ChainApprovalRequest:
        """Start a chain-scoped request at the first level whose conditions hold."""
        context = dict(context or {})
        levels = self._chains.get(chain_id)

        if not levels:
            raise ChainNotFoundError(
                f"Approval chain {chain_id} not found",
                technical_details={"chain_id": chain_id, "execution_id": execution_id},
                recovery_suggestions=["Register the chain with create_approval_chain first"],
            )

        required_levels = [level for level in levels if self._is_level_required(level, context)]

        if not required_levels:
            request = ChainApprovalRequest(
                execution_id=execution_id,
                chain_id=chain_id,
                current_level=levels[0],
                chain=list(levels),
                context=context,
                status=ChainStatus.APPROVED,
                reason="No approval required based on conditions",
                history=[
                    ChainHistoryEntry(
                        level_id="auto",
                        approver=SYSTEM_APPROVER,
                        decision=ChainDecision.APPROVED,
                        comments="No approval required based on conditions",
                        automated=True,
                    )
                ],
            )
            self._requests[request.id] = request
            self.logger.log_audit_event(
                "chain_auto_approved",
                request_id=request.id,
                actor=SYSTEM_APPROVER.id,
                details={"execution_id": execution_id, "chain_id": chain_id},
            )
            return request

        request = ChainApprovalRequest(
            execution_id=execution_id,
            chain_id=chain_id,
            current_level=required_levels[0],
            chain=required_levels,
            context=context,
        )
        self._requests[request.id] = request

        await self._activate_level(request)

        self.logger.info(
            f"Initiated chain request {request.id} for execution {execution_id} "
            f"({len(required_levels)} of {len(levels)} levels required)"
        )
        return request

    async def process_approval(
        self,
        request_id: str,
        approver: Union[Approver, str],
        decision: Union[ChainDecision, str],
        comments: Optional[str] = None,
    ) -> ChainApprovalRequest:
        """Record a vote at the request's current level and apply the outcome.

        Raises:
            RequestNotFoundError: Unknown request id
            InvalidStateError: The request is no longer pending
            ValidationError: Unknown decision
        """
        if isinstance(approver, str):
            approver = Approver(id=approver, name=approver)
        try:
            decision = ChainDecision(decision)
        except ValueError as e:
            raise ValidationError(
                f"Unknown chain decision: {decision!r}",
                technical_details={"request_id": request_id},
                original_error=e,
            )

        async with self._locks.lock_for(request_id):
            request = self._get_or_raise(request_id)
            if not request.is_pending:
                raise InvalidStateError(
                    f"Approval request {request_id} is not pending (status: {request.status.value})",
                    technical_details={"request_id": request_id, "status": request.status.value},
                )

            level = request.current_level
            if decision != ChainDecision.ESCALATED and not self.is_level_approver(level, approver.id):
                raise ValidationError(
                    f"{approver.id} is not an approver at level {level.id} of request {request_id}",
                    technical_details={"request_id": request_id, "level_id": level.id, "approver": approver.id},
                    recovery_suggestions=["Send the vote as one of the level's approvers"],
                )

            resolved = await self._apply_decision(request, approver, decision, comments)

        if resolved:
            self._notify_listeners(request)
        return request

    async def escalate(
        self,
        request_id: str,
        approver: Union[Approver, str],
        comments: Optional[str] = None,
    ) -> ChainApprovalRequest:
        """Move the request to the next level, or terminate it as escalated at the last."""
        return await self.process_approval(request_id, approver, ChainDecision.ESCALATED, comments)

    async def _apply_decision(
        self,
        request: ChainApprovalRequest,
        approver: Approver,
        decision: ChainDecision,
        comments: Optional[str],
        automated: bool = False,
    ) -> bool:
        """Apply a vote. Caller holds the request lock. Returns whether the request resolved."""
        level = request.current_level
        request.history.append(
            ChainHistoryEntry(
                level_id=level.id,
                approver=approver,
                decision=decision,
                comments=comments,
                automated=automated,
            )
        )
        request.updated_at = utcnow()

        self.logger.log_audit_event(
            f"chain_{decision.value}",
            request_id=request.id,
            actor=approver.id,
            details={"level_id": level.id, "automated": automated, "comments": comments},
        )

        if decision == ChainDecision.ESCALATED:
            await publish_safely(self.event_publisher, EventType.APPROVAL_ESCALATED, {
                "request_id": request.id,
                "execution_id": request.execution_id,
                "chain_id": request.chain_id,
                "from_level": level.id,
                "escalated_by": approver.id,
                "reason": comments,
            })
            return await self._advance_or_finish(request, ChainStatus.ESCALATED, comments)

        if automated and decision == ChainDecision.APPROVED:
            level_decision = LevelDecision.APPROVED
        else:
            level_decision = self.evaluate_level_decision(level, request.level_history(level.id))

        if level_decision == LevelDecision.APPROVED:
            return await self._advance_or_finish(request, ChainStatus.APPROVED, comments)
        if level_decision == LevelDecision.REJECTED:
            await self._finish(request, ChainStatus.REJECTED, comments)
            return True
        return False

    async def _advance_or_finish(
        self,
        request: ChainApprovalRequest,
        final_status: ChainStatus,
        reason: Optional[str],
    ) -> bool:
        index = request.current_level_index
        if 0 <= index < len(request.chain) - 1:
            previous = request.current_level
            request.current_level = request.chain[index + 1]
            self._timers.cancel(request.id)
            await self._activate_level(request)
            self.logger.info(
                f"Chain request {request.id} moved from level {previous.name} "
                f"to level {request.current_level.name}"
            )
            return False

        await self._finish(request, final_status, reason)
        return True

    async def _finish(
        self,
        request: ChainApprovalRequest,
        status: ChainStatus,
        reason: Optional[str],
    ) -> None:
        request.status = status
        request.reason = reason
        request.updated_at = utcnow()
        self._timers.cancel(request.id)

        payload = {
            "request_id": request.id,
            "execution_id": request.execution_id,
            "chain_id": request.chain_id,
            "level_id": request.current_level.id,
            "status": status.value,
            "reason": reason,
        }
        if status == ChainStatus.TIMEOUT:
            await publish_safely(self.event_publisher, EventType.APPROVAL_TIMEOUT, payload)
        else:
            await publish_safely(self.event_publisher, EventType.APPROVAL_COMPLETED, payload)

        self.logger.info(f"Chain request {request.id} resolved: {status.value}")

    async def _activate_level(self, request: ChainApprovalRequest) -> None:
        """Notify the current level's approvers and arm its timer."""
        level = request.current_level

        await publish_safely(self.event_publisher, EventType.APPROVAL_REQUESTED, {
            "request_id": request.id,
            "execution_id": request.execution_id,
            "chain_id": request.chain_id,
            "level_id": level.id,
            "level": level.name,
            "approvers": [a.model_dump(exclude_none=True) for a in level.approvers],
            "context": request.context,
        })

        if level.timeout_ms:
            self._timers.schedule(
                request.id,
                level.timeout_ms / 1000,
                partial(self._handle_level_timeout, request.id, level.id),
            )

    async def _handle_level_timeout(self, request_id: str, level_id: str) -> None:
        resolved = False
        async with self._locks.lock_for(request_id):
            request = self._requests.get(request_id)
            if request is None or not request.is_pending or request.current_level.id != level_id:
                return

            level = request.current_level
            self.logger.info(f"Level {level.name} of chain request {request_id} timed out")

            if level.auto_approve_on_timeout:
                resolved = await self._apply_decision(
                    request,
                    SYSTEM_APPROVER,
                    ChainDecision.APPROVED,
                    "Auto-approved due to timeout",
                    automated=True,
                )
            else:
                await self._finish(request, ChainStatus.TIMEOUT, f"Level {level.name} timed out")
                resolved = True

        if resolved:
            self._notify_listeners(request)

    def _get_or_raise(self, request_id: str) -> ChainApprovalRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise RequestNotFoundError(
                f"Approval request {request_id} not found",
                technical_details={"request_id": request_id},
            )
        return request

    # Evaluation

    def _is_level_required(self, level: ApprovalLevel, context: Dict[str, Any]) -> bool:
        return all(self.evaluate_condition(condition, context) for condition in level.conditions)

    @staticmethod
    def evaluate_condition(condition: ApprovalCondition, context: Dict[str, Any]) -> bool:
        """Evaluate one condition. Values that cannot be compared yield False."""
        value = _resolve_field(context, condition.field) if condition.field else context
        expected = condition.value
        operator = condition.operator

        try:
            if operator == ConditionOperator.EQ:
                return value == expected
            if operator == ConditionOperator.NE:
                return value != expected
            if operator == ConditionOperator.GT:
                return _ordering_key(value) > _ordering_key(expected)
            if operator == ConditionOperator.GTE:
                return _ordering_key(value) >= _ordering_key(expected)
            if operator == ConditionOperator.LT:
                return _ordering_key(value) < _ordering_key(expected)
            if operator == ConditionOperator.LTE:
                return _ordering_key(value) <= _ordering_key(expected)
            if operator == ConditionOperator.IN:
                return isinstance(expected, _COLLECTIONS) and value in expected
            if operator == ConditionOperator.CONTAINS:
                if isinstance(value, (*_COLLECTIONS, Mapping)):
                    return expected in value
                return str(expected) in str(value)
        except (TypeError, ValueError):
            return False
        return False

    @staticmethod
    def is_level_approver(level: ApprovalLevel, approver_id: str) -> bool:
        """A level without listed approvers is open to anyone."""
        if not level.approvers:
            return True
        return any(a.id == approver_id for a in level.approvers)

    @staticmethod
    def evaluate_level_decision(
        level: ApprovalLevel,
        history: Iterable[ChainHistoryEntry],
    ) -> LevelDecision:
        """Decide a level from the latest vote of each of its approvers.

        Votes from anyone outside the level's approver list are ignored.
        """
        latest: Dict[str, ChainDecision] = {}
        for entry in history:
            if entry.decision == ChainDecision.ESCALATED:
                continue
            if not ApprovalChain.is_level_approver(level, entry.approver.id):
                continue
            latest[entry.approver.id] = entry.decision

        approvals = sum(1 for d in latest.values() if d == ChainDecision.APPROVED)
        rejections = sum(1 for d in latest.values() if d == ChainDecision.REJECTED)
        total = len(level.approvers)

        if level.policy == ApprovalPolicy.ALL:
            if rejections > 0:
                return LevelDecision.REJECTED
            if approvals > 0 and approvals >= total:
                return LevelDecision.APPROVED
            return LevelDecision.PENDING

        if level.policy == ApprovalPolicy.ANY:
            if approvals > 0:
                return LevelDecision.APPROVED
            if rejections >= max(total, 1):
                return LevelDecision.REJECTED
            return LevelDecision.PENDING

        if level.policy == ApprovalPolicy.MAJORITY:
            majority = total // 2 + 1
            if approvals >= majority:
                return LevelDecision.APPROVED
            if rejections >= majority:
                return LevelDecision.REJECTED
            return LevelDecision.PENDING

        if level.policy == ApprovalPolicy.THRESHOLD:
            threshold = level.threshold or 1
            if approvals >= threshold:
                return LevelDecision.APPROVED
            if rejections > total - threshold:
                return LevelDecision.REJECTED
            return LevelDecision.PENDING

        return LevelDecision.PENDING

    # Listeners

    def add_listener(self, listener: ChainListener) -> None:
        """Be told (asynchronously) about every terminal chain transition."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ChainListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify_listeners(self, request: ChainApprovalRequest) -> None:
        for listener in list(self._listeners):
            task = asyncio.create_task(self._run_listener(listener, request))
            self._listener_tasks.add(task)
            task.add_done_callback(self._listener_tasks.discard)

    async def _run_listener(self, listener: ChainListener, request: ChainApprovalRequest) -> None:
        try:
            await listener(request)
        except Exception as e:
            self.logger.error(f"Chain listener failed for request {request.id}: {e}", exc_info=True)

    # Queries

    def get_approval_request(self, request_id: str) -> Optional[ChainApprovalRequest]:
        return self._requests.get(request_id)

    def get_pending_approvals_for_approver(self, approver_id: str) -> List[ChainApprovalRequest]:
        return [
            request
            for request in self._requests.values()
            if request.is_pending and any(a.id == approver_id for a in request.current_level.approvers)
        ]

    def discard_request(self, request_id: str) -> bool:
        """Forget a request, cancelling its level timer."""
        self._timers.cancel(request_id)
        self._locks.discard(request_id)
        return self._requests.pop(request_id, None) is not None

    async def shutdown(self) -> None:
        """Cancel every level timer and pending listener task and forget all requests."""
        cancelled = self._timers.cancel_all()
        tasks = list(self._listener_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._listener_tasks.clear()
        self._requests.clear()
        self._locks.clear()
        self.logger.info(f"Approval chain shut down ({cancelled} level timers cancelled)")
