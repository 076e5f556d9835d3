"""
Default side-effect handlers: Kafka for email and analytics, Redis for cache
invalidation. Handlers are blocking callables; the dispatcher runs them off
the event loop and retries whatever they raise.
"""
import logging
from typing import Callable, Dict

from confluent_kafka import Producer

from common.kafka import TOPIC_ANALYTICS_EVENTS, TOPIC_NOTIFICATIONS, get_producer
from common.redis_client import RedisClient
from common.schemas import Effect, InvalidateCache
from common.settings import Settings

logger = logging.getLogger(__name__)

EffectHandler = Callable[[Effect], None]


class EffectDeliveryError(Exception):
    pass


class KafkaEffectPublisher:
    """Publish an effect as JSON, keyed by effect id so consumers can dedup"""

    def __init__(self, producer: Producer, topic: str, flush_timeout: float = 5.0):
        self.producer = producer
        self.topic = topic
        self.flush_timeout = flush_timeout

    def __call__(self, effect: Effect) -> None:
        errors = []

        def on_delivery(err, msg):
            if err is not None:
                errors.append(err)

        self.producer.produce(
            self.topic,
            key=effect.effect_id.encode("utf-8"),
            value=effect.model_dump_json().encode("utf-8"),
            on_delivery=on_delivery,
        )
        remaining = self.producer.flush(self.flush_timeout)
        if remaining or errors:
            raise EffectDeliveryError(
                f"{self.topic}: {effect.effect_id} not acknowledged ({errors[0] if errors else 'flush timed out'})"
            )
        logger.info(f"Published {effect.kind} {effect.effect_id} to {self.topic}")


class CacheInvalidator:

    def __init__(self, redis_client: RedisClient):
        self.redis = redis_client

    def __call__(self, effect: InvalidateCache) -> None:
        deleted = self.redis.delete_keys(effect.keys)
        logger.info(f"Invalidated {deleted}/{len(effect.keys)} cache keys for {effect.effect_id}")


def build_default_handlers(cfg: Settings) -> Dict[str, EffectHandler]:
    producer = get_producer(cfg.kafka_bootstrap)
    return {
        "send_confirmation_email": KafkaEffectPublisher(producer, TOPIC_NOTIFICATIONS, cfg.kafka_flush_timeout),
        "record_analytics_event": KafkaEffectPublisher(producer, TOPIC_ANALYTICS_EVENTS, cfg.kafka_flush_timeout),
        "invalidate_cache": CacheInvalidator(RedisClient(cfg.redis_url)),
    }
