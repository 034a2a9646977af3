"""Per-execution push channels for real-time approval updates."""

import asyncio
import inspect
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class PushChannel(Protocol):
    """A sink that accepts JSON text, e.g. a websocket connection."""

    def send(self, payload: str) -> Any:
        ...


class PushChannelRegistry:
    """Holds one push channel per execution id.

    Delivery is best effort: failures are logged and swallowed, and an
    async send that takes longer than ``timeout_seconds`` is abandoned.
    """

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._channels: Dict[str, PushChannel] = {}

    def register(self, execution_id: str, channel: PushChannel) -> None:
        self._channels[execution_id] = channel
        logger.debug(f"Registered push channel for execution {execution_id}")

    def unregister(self, execution_id: str) -> None:
        if self._channels.pop(execution_id, None) is not None:
            logger.debug(f"Unregistered push channel for execution {execution_id}")

    def has(self, execution_id: str) -> bool:
        return execution_id in self._channels

    async def send(self, execution_id: str, message_type: str, data: Dict[str, Any]) -> bool:
        """Send a typed JSON message. Returns whether delivery succeeded."""
        channel = self._channels.get(execution_id)
        if channel is None:
            return False

        try:
            payload = json.dumps(
                {
                    "type": message_type,
                    "data": data,
                    "sent_at": datetime.now(timezone.utc).isoformat(),
                },
                default=str,
            )
            result = channel.send(payload)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self.timeout_seconds)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f"Push of {message_type} to execution {execution_id} timed out after {self.timeout_seconds}s"
            )
            return False
        except Exception as e:
            logger.warning(f"Failed to push {message_type} to execution {execution_id}: {e}")
            return False

    def clear(self) -> None:
        self._channels.clear()

    def __len__(self) -> int:
        return len(self._channels)
