"""
Relay for the transactional outbox: publishes pending domain events.
"""
from __future__ import annotations

from application.ports.event_publisher import EventPublisher
from application.utils.provider_calls import UnitOfWorkFactory
from core.logging_config import get_logger


logger = get_logger(__name__)


class OutboxRelay:
    """Publishes unpublished outbox rows oldest first.

    Delivery is at-least-once: a row is marked published only after the
    publisher returns. A failure stops the batch so later events of the
    same payment never overtake an earlier one.
    """

    def __init__(self, uow_factory: UnitOfWorkFactory, publisher: EventPublisher) -> None:
        self._uow_factory = uow_factory
        self._publisher = publisher

    async def relay_pending(self, batch_size: int = 100) -> int:
        published = 0
        async with self._uow_factory() as uow:
            messages = await uow.outbox_repository.list_unpublished(limit=batch_size)
            for message in messages:
                try:
                    await self._publisher.publish(
                        message.topic,
                        message.payload,
                        key=message.key,
                        event_id=message.event_id,
                    )
                except Exception as exc:
                    message.mark_attempt_failed(str(exc))
                    await uow.outbox_repository.update(message)
                    logger.warning(
                        "outbox_publish_failed",
                        event_id=message.event_id,
                        topic=message.topic,
                        attempts=message.attempts,
                        error=str(exc),
                    )
                    break
                message.mark_published()
                await uow.outbox_repository.update(message)
                published += 1
        if published:
            logger.info("outbox_relayed", count=published)
        return published
