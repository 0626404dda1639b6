from __future__ import annotations

from typing import Any, Optional

from core.logging_config import get_logger

from ..base import Envelope, PublishMiddleware, PublishResult
from ..envelope import H_EVENT_ID, get_header


class LoggingMiddleware(PublishMiddleware):
    def __init__(self, logger: Optional[Any] = None) -> None:
        self.log = logger or get_logger("messaging")

    def before_publish(self, topic: str, env: Envelope) -> Envelope:  # type: ignore[override]
        self.log.debug(
            "publishing",
            topic=topic,
            key=(env.key or b"").decode("utf-8", "replace"),
            event_id=get_header(env.headers, H_EVENT_ID),
        )
        return env

    def after_publish(self, topic: str, env: Envelope, result: PublishResult) -> None:  # type: ignore[override]
        self.log.info(
            "published",
            topic=topic,
            partition=result.partition,
            offset=result.offset,
            event_id=get_header(env.headers, H_EVENT_ID),
        )
