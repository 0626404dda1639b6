from __future__ import annotations

"""Messaging config builder (composition root for messaging layer).

Maps ``core.config.MessagingSettings`` onto the MessagingConfig dataclasses
so the messaging package never imports from core.
"""

from typing import Optional, Protocol

from .config import KafkaConfig, MessagingConfig, ProducerTuning, SASLConfig, TLSConfig


class KafkaSettingsLike(Protocol):
    bootstrap_servers: str
    client_id: str

    tls_enable: bool
    tls_ca_location: Optional[str]
    tls_certificate: Optional[str]
    tls_key: Optional[str]
    tls_verify: bool

    sasl_mechanism: Optional[str]
    sasl_username: Optional[str]
    sasl_password: Optional[str]

    producer_acks: str
    producer_enable_idempotence: bool
    producer_compression_type: str
    producer_linger_ms: int
    producer_batch_size: int
    producer_max_in_flight: int
    producer_message_timeout_ms: int
    producer_send_wait_s: float
    producer_delivery_wait_s: float


class MessagingSettingsLike(Protocol):
    provider: str
    topic_prefix: str
    kafka: KafkaSettingsLike


def messaging_config_from_settings(ms: MessagingSettingsLike) -> MessagingConfig:
    ks = ms.kafka
    kafka = KafkaConfig(
        bootstrap_servers=ks.bootstrap_servers,
        client_id=ks.client_id,
        tls=TLSConfig(
            enable=ks.tls_enable,
            ca_location=ks.tls_ca_location,
            certificate=ks.tls_certificate,
            key=ks.tls_key,
            verify=ks.tls_verify,
        ),
        sasl=SASLConfig(
            mechanism=ks.sasl_mechanism,
            username=ks.sasl_username,
            password=ks.sasl_password,
        ),
        producer=ProducerTuning(
            acks=ks.producer_acks,
            enable_idempotence=ks.producer_enable_idempotence,
            compression_type=ks.producer_compression_type,
            linger_ms=ks.producer_linger_ms,
            batch_size=ks.producer_batch_size,
            max_in_flight=ks.producer_max_in_flight,
            message_timeout_ms=ks.producer_message_timeout_ms,
            send_wait_s=ks.producer_send_wait_s,
            delivery_wait_s=ks.producer_delivery_wait_s,
        ),
    )
    provider = ms.provider.strip().lower()
    if provider not in {"inmemory", "kafka"}:
        raise ValueError(f"Unsupported messaging provider: {ms.provider}")
    return MessagingConfig(provider=provider, topic_prefix=ms.topic_prefix, kafka=kafka)  # type: ignore[arg-type]


__all__ = ["messaging_config_from_settings", "KafkaSettingsLike", "MessagingSettingsLike"]
