from .base import (
    Envelope,
    PublishResult,
    Publisher,
    Serializer,
)
from .config import (
    MessagingConfig,
    KafkaConfig,
    ProducerTuning,
    TLSConfig,
    SASLConfig,
)
from .config_builder import messaging_config_from_settings
from .factory import BrokerEventPublisher, create_event_publisher, create_publisher

__all__ = [
    "Envelope",
    "PublishResult",
    "Publisher",
    "Serializer",
    "MessagingConfig",
    "KafkaConfig",
    "ProducerTuning",
    "TLSConfig",
    "SASLConfig",
    "messaging_config_from_settings",
    "BrokerEventPublisher",
    "create_event_publisher",
    "create_publisher",
]
