"""
Event publisher port used by the outbox relay.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class EventPublisher(Protocol):
    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        key: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> None:
        """Publish one event; raise on failure so the relay can retry it later."""
        ...

    async def close(self) -> None: ...
