from __future__ import annotations

import threading
from typing import List, Optional

from ...base import Envelope, PublishMiddleware, PublishResult, Publisher, Serializer


class InMemoryPublisher(Publisher):
    """Process-local broker for development and tests.

    Messages are serialized like Kafka would see them and appended to
    ``messages``; offsets increase per topic.
    """

    def __init__(self, serializer: Serializer, middlewares: Optional[List[PublishMiddleware]] = None) -> None:
        self.serializer = serializer
        self.middlewares = middlewares or []
        self.messages: list[tuple[str, Envelope]] = []
        self._offsets: dict[str, int] = {}
        self._lock = threading.Lock()
        self.closed = False

    def publish(self, topic: str, env: Envelope) -> PublishResult:
        for m in self.middlewares:
            env = m.before_publish(topic, env)
        if not isinstance(env.payload, (bytes, bytearray)):
            env.payload = self.serializer.dumps(env.payload)
        with self._lock:
            offset = self._offsets.get(topic, 0)
            self._offsets[topic] = offset + 1
            self.messages.append((topic, env))
        result = PublishResult(topic=topic, partition=0, offset=offset)
        for m in self.middlewares:
            m.after_publish(topic, env, result)
        return result

    def decoded(self, topic: Optional[str] = None) -> list[dict]:
        return [
            self.serializer.loads(env.payload)
            for t, env in self.messages
            if topic is None or t == topic
        ]

    def close(self) -> None:
        self.closed = True
