from __future__ import annotations

import asyncio
from typing import Any, List, Optional

from .base import Envelope, PublishMiddleware, Publisher, Serializer
from .config import MessagingConfig
from .envelope import H_EVENT_ID, H_EVENT_TYPE, H_VERSION, set_header
from .middlewares import LoggingMiddleware
from .serializers.json import JsonSerializer


def create_publisher(
    cfg: MessagingConfig,
    serializer: Serializer,
    middlewares: Optional[List[PublishMiddleware]] = None,
) -> Publisher:
    if cfg.provider == "inmemory":
        from .providers.memory.publisher import InMemoryPublisher
        return InMemoryPublisher(serializer, middlewares)
    if cfg.provider == "kafka":
        from .providers.kafka.publisher import KafkaPublisher
        return KafkaPublisher(cfg.kafka, serializer, middlewares)
    raise ValueError(f"Unsupported provider: {cfg.provider}")


class BrokerEventPublisher:
    """Adapts a blocking Publisher to the async EventPublisher port.

    Topics get the configured prefix; the event id travels as a header so
    consumers can deduplicate at-least-once deliveries.
    """

    def __init__(self, publisher: Publisher, topic_prefix: str = "") -> None:
        self.publisher = publisher
        self._prefix = topic_prefix

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        key: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> None:
        env = Envelope(payload=payload, key=key.encode("utf-8") if key else None)
        set_header(env.headers, H_EVENT_TYPE, topic)
        set_header(env.headers, H_VERSION, env.version)
        if event_id:
            set_header(env.headers, H_EVENT_ID, event_id)
        await asyncio.to_thread(self.publisher.publish, f"{self._prefix}{topic}", env)

    async def close(self) -> None:
        await asyncio.to_thread(self.publisher.close)


def create_event_publisher(cfg: MessagingConfig) -> BrokerEventPublisher:
    publisher = create_publisher(cfg, JsonSerializer(), [LoggingMiddleware()])
    return BrokerEventPublisher(publisher, cfg.topic_prefix)
