"""Event types and the event-publishing interface."""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Protocol, runtime_checkable
from uuid import uuid4

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

PUBLISH_TIMEOUT_SECONDS = 5.0


class EventType(str, Enum):
    """Events published by the approval subsystem."""
    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_COMPLETED = "approval.completed"
    APPROVAL_TIMEOUT = "approval.timeout"
    APPROVAL_ESCALATED = "approval.escalated"
    CONFIDENCE_EVALUATED = "confidence.evaluated"
    RISK_ASSESSED = "risk.assessed"
    FEEDBACK_SUBMITTED = "feedback.submitted"
    FEEDBACK_PROCESSED = "feedback.processed"
    FEEDBACK_FAILED = "feedback.failed"


class Event(BaseModel):
    """A published event as seen by subscribers."""
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@runtime_checkable
class EventPublisher(Protocol):
    """Anything the approval components can publish events through."""

    async def publish(self, event_type: EventType, payload: Dict[str, Any]) -> Any:
        ...


async def publish_safely(
    publisher: Optional[EventPublisher],
    event_type: EventType,
    payload: Dict[str, Any],
    timeout_seconds: float = PUBLISH_TIMEOUT_SECONDS,
) -> bool:
    """Publish through publisher, logging instead of raising on failure.

    A publisher that does not finish within ``timeout_seconds`` is abandoned.
    """
    if publisher is None:
        return False
    try:
        await asyncio.wait_for(publisher.publish(event_type, payload), timeout=timeout_seconds)
        return True
    except asyncio.TimeoutError:
        logger.warning(f"Publishing {EventType(event_type).value} timed out after {timeout_seconds}s")
        return False
    except Exception as e:
        logger.warning(f"Failed to publish {EventType(event_type).value}: {e}")
        return False
