"""
FeedbackProcessor: records human feedback and turns it into workflow-state
updates.
"""

import math
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from ..communication.events import EventPublisher, EventType, publish_safely
from ..exceptions import FeedbackNotFoundError
from ..logging_config import get_approval_logger
from ..utils.locks import KeyedLocks
from .models import (
    Approver,
    FeedbackContent,
    FeedbackEntry,
    FeedbackStats,
    FeedbackType,
    ProcessingResult,
    WorkflowState,
    utcnow,
)

StateLike = Union[WorkflowState, Dict[str, Any]]


def _state_confidence(state: StateLike, default: float) -> float:
    value = state.confidence if isinstance(state, WorkflowState) else state.get("confidence")
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return value
    return default


def _state_metadata(state: StateLike) -> Dict[str, Any]:
    metadata = state.metadata if isinstance(state, WorkflowState) else state.get("metadata")
    return dict(metadata) if isinstance(metadata, Mapping) else {}


class FeedbackProcessor:
    """
    Stores feedback entries per execution and interprets them.

    Processing an entry returns a partial workflow-state update; each entry
    is processed at most once.
    """

    def __init__(self, event_publisher: Optional[EventPublisher] = None):
        self.event_publisher = event_publisher

        self._feedback: Dict[str, FeedbackEntry] = {}
        self._by_execution: Dict[str, List[str]] = {}
        self._locks = KeyedLocks()

        self._handlers: Dict[FeedbackType, Callable[[FeedbackEntry, StateLike], Dict[str, Any]]] = {
            FeedbackType.APPROVAL: self._process_approval,
            FeedbackType.REJECTION: self._process_rejection,
            FeedbackType.MODIFICATION: self._process_modification,
            FeedbackType.CLARIFICATION: self._process_clarification,
            FeedbackType.RATING: self._process_rating,
            FeedbackType.COMMENT: self._process_comment,
        }

        self.logger = get_approval_logger("feedback")

    async def submit_feedback(
        self,
        execution_id: str,
        feedback_type: Union[FeedbackType, str],
        content: Optional[Union[FeedbackContent, Dict[str, Any]]] = None,
        submitter: Optional[Union[Approver, Dict[str, Any]]] = None,
    ) -> FeedbackEntry:
        """Record a new, unprocessed feedback entry."""
        entry = FeedbackEntry(
            execution_id=execution_id,
            type=FeedbackType(feedback_type),
            content=content if content is not None else FeedbackContent(),
            submitter=submitter if submitter is not None else Approver(id="anonymous"),
        )

        self._feedback[entry.id] = entry
        self._by_execution.setdefault(execution_id, []).append(entry.id)

        await publish_safely(self.event_publisher, EventType.FEEDBACK_SUBMITTED, {
            "feedback_id": entry.id,
            "execution_id": execution_id,
            "type": entry.type.value,
            "submitter": entry.submitter.model_dump(exclude_none=True),
        })

        self.logger.log_audit_event(
            "feedback_submitted",
            request_id=entry.id,
            actor=entry.submitter.id,
            details={"execution_id": execution_id, "type": entry.type.value},
        )
        return entry

    async def process_feedback(self, feedback_id: str, state: StateLike) -> Dict[str, Any]:
        """Interpret a feedback entry against the current workflow state.

        Returns:
            Partial state update; empty if the entry was already processed

        Raises:
            FeedbackNotFoundError: Unknown feedback id
        """
        async with self._locks.lock_for(feedback_id):
            entry = self._feedback.get(feedback_id)
            if entry is None:
                raise FeedbackNotFoundError(
                    f"Feedback {feedback_id} not found",
                    technical_details={"feedback_id": feedback_id},
                )

            if entry.processed:
                self.logger.warning(f"Feedback {feedback_id} already processed")
                return {}

            self.logger.info(f"Processing feedback {feedback_id} of type {entry.type.value}")

            try:
                state_update = self._handlers[entry.type](entry, state)
            except Exception as e:
                entry.processed = True
                entry.processing_result = ProcessingResult(success=False, error=str(e))
                await publish_safely(self.event_publisher, EventType.FEEDBACK_FAILED, {
                    "feedback_id": feedback_id,
                    "execution_id": entry.execution_id,
                    "error": str(e),
                })
                raise

            entry.processed = True
            entry.processing_result = ProcessingResult(success=True, applied_changes=state_update)

        await publish_safely(self.event_publisher, EventType.FEEDBACK_PROCESSED, {
            "feedback_id": feedback_id,
            "execution_id": entry.execution_id,
            "type": entry.type.value,
            "success": True,
        })
        return state_update

    def _human_feedback(self, entry: FeedbackEntry, approved: bool, status: str) -> Dict[str, Any]:
        return {
            "approved": approved,
            "status": status,
            "approver": entry.submitter.model_dump(exclude_none=True),
            "message": entry.content.message,
            "timestamp": entry.timestamp.isoformat(),
        }

    def _process_approval(self, entry: FeedbackEntry, state: StateLike) -> Dict[str, Any]:
        return {
            "human_feedback": self._human_feedback(entry, True, "approved"),
            "confidence": min(_state_confidence(state, 0.0) + 0.1, 1.0),
            "approval_received": True,
        }

    def _process_rejection(self, entry: FeedbackEntry, state: StateLike) -> Dict[str, Any]:
        human_feedback = self._human_feedback(entry, False, "rejected")
        human_feedback["reason"] = entry.content.message
        return {
            "human_feedback": human_feedback,
            "confidence": max(_state_confidence(state, 0.0) - 0.2, 0.0),
            "rejection_reason": entry.content.message,
        }

    def _process_modification(self, entry: FeedbackEntry, state: StateLike) -> Dict[str, Any]:
        modifications = dict(entry.content.modifications or {})
        human_feedback = self._human_feedback(entry, False, "needs_revision")
        human_feedback["alternatives"] = list(modifications)
        human_feedback["metadata"] = modifications
        return {
            "human_feedback": human_feedback,
            "metadata": {
                **_state_metadata(state),
                **modifications,
                "modifications": modifications,
            },
        }

    def _process_clarification(self, entry: FeedbackEntry, state: StateLike) -> Dict[str, Any]:
        metadata = _state_metadata(state)
        clarifications = list(metadata.get("clarifications") or [])
        clarifications.append(entry.content.message)
        return {"metadata": {**metadata, "clarifications": clarifications}}

    def _process_rating(self, entry: FeedbackEntry, state: StateLike) -> Dict[str, Any]:
        rating = entry.content.rating or 3
        adjustment = (rating - 3) * 0.1
        return {
            "confidence": max(0.0, min(1.0, _state_confidence(state, 0.5) + adjustment)),
            "metadata": {
                **_state_metadata(state),
                "user_rating": rating,
                "average_rating": self._average_rating(self.get_feedback_for_execution(entry.execution_id)),
                "rating_feedback": entry.content.message,
            },
        }

    def _process_comment(self, entry: FeedbackEntry, state: StateLike) -> Dict[str, Any]:
        metadata = _state_metadata(state)
        comments = list(metadata.get("comments") or [])
        comments.append({
            "message": entry.content.message,
            "submitter": entry.submitter.model_dump(exclude_none=True),
            "timestamp": entry.timestamp.isoformat(),
            "tags": list(entry.content.tags),
        })
        return {"metadata": {**metadata, "comments": comments}}

    @staticmethod
    def _average_rating(entries: List[FeedbackEntry]) -> Optional[float]:
        ratings = [
            e.content.rating for e in entries
            if e.type == FeedbackType.RATING and e.content.rating is not None
        ]
        return sum(ratings) / len(ratings) if ratings else None

    def get_feedback(self, feedback_id: str) -> Optional[FeedbackEntry]:
        return self._feedback.get(feedback_id)

    def get_feedback_for_execution(self, execution_id: str) -> List[FeedbackEntry]:
        return [
            self._feedback[fid]
            for fid in self._by_execution.get(execution_id, [])
            if fid in self._feedback
        ]

    def get_feedback_stats(self, execution_id: Optional[str] = None) -> FeedbackStats:
        entries = (
            self.get_feedback_for_execution(execution_id)
            if execution_id is not None
            else list(self._feedback.values())
        )

        by_type = {feedback_type.value: 0 for feedback_type in FeedbackType}
        processed_count = 0
        succeeded = 0
        for entry in entries:
            by_type[entry.type.value] += 1
            if entry.processed:
                processed_count += 1
            if entry.processing_result is not None and entry.processing_result.success:
                succeeded += 1

        return FeedbackStats(
            total=len(entries),
            by_type=by_type,
            average_rating=self._average_rating(entries),
            processed_count=processed_count,
            pending_count=len(entries) - processed_count,
            success_rate=succeeded / len(entries) if entries else 0.0,
        )

    def clear_old_feedback(self, older_than_seconds: float = 86400) -> int:
        """Drop feedback entries older than the given age. Returns how many were removed."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        stale = [fid for fid, entry in self._feedback.items() if entry.timestamp < cutoff]

        for fid in stale:
            entry = self._feedback.pop(fid)
            ids = self._by_execution.get(entry.execution_id)
            if ids is not None:
                ids.remove(fid)
                if not ids:
                    del self._by_execution[entry.execution_id]
            self._locks.discard(fid)

        if stale:
            self.logger.debug(f"Cleared {len(stale)} old feedback entries")
        return len(stale)

    def clear(self) -> None:
        self._feedback.clear()
        self._by_execution.clear()
        self._locks.clear()
