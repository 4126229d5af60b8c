"""
Lifecycle event bus for mission control.

Lifecycle operations queue events on the session; ``db.get_session`` hands
them to the bus only after the transaction commits, so subscribers never see
changes that were rolled back.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings

logger = logging.getLogger(__name__)

PENDING_EVENTS_KEY = "archon.pending_events"


class EventType(str, Enum):
    PROJECT_CREATED = "project.created"
    PROJECT_UPDATED = "project.updated"
    PROJECT_DELETED = "project.deleted"

    DEPLOYMENT_CREATED = "deployment.created"
    DEPLOYMENT_STATUS_CHANGED = "deployment.status_changed"
    DEPLOYMENT_DELETED = "deployment.deleted"

    TASK_CREATED = "task.created"
    TASK_STATUS_CHANGED = "task.status_changed"

    AGENT_UPDATED = "agent.updated"
    INTEGRATION_UPDATED = "integration.updated"

    LOG_APPENDED = "log.appended"


@dataclass
class LifecycleEvent:
    """Standardized event for lifecycle mutations."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.PROJECT_CREATED
    project_id: Optional[str] = None
    deployment_id: Optional[str] = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def channels(self) -> list[str]:
        channels: list[str] = []
        if self.deployment_id:
            channels.append(f"channel:deployment:{self.deployment_id}")
        if self.project_id:
            channels.append(f"channel:project:{self.project_id}")
        return channels

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "project_id": self.project_id,
            "deployment_id": self.deployment_id,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[LifecycleEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event: LifecycleEvent) -> None:
        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception as exc:
                # Subscribers must not turn a committed write into a failed request.
                logger.warning("Event handler error for %s: %s", event.type.value, exc)


event_bus = EventEmitter()


def queue_event(session: AsyncSession, event: LifecycleEvent) -> None:
    """Hold an event until the session's transaction commits."""
    session.info.setdefault(PENDING_EVENTS_KEY, []).append(event)


def take_pending_events(session: AsyncSession) -> list[LifecycleEvent]:
    return session.info.pop(PENDING_EVENTS_KEY, [])


async def publish_event_handler(event: LifecycleEvent) -> None:
    """Handler that publishes events to Redis Pub/Sub."""
    if not settings.redis_events_enabled or not event.channels:
        return

    from .redis_client import get_redis_client

    redis = get_redis_client()
    payload = json.dumps(event.to_dict())
    for channel in event.channels:
        await redis.publish(channel, payload)


event_bus.on_event(publish_event_handler)
