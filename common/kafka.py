import logging
import threading
from confluent_kafka import Producer, Consumer
from common.circuit_breaker import kafka_circuit_breaker, CircuitBreaker
from common.retry import retry_sync, KAFKA_RETRY_CONFIG
from common.schemas import MarketplaceEvent
from common.settings import settings

logger = logging.getLogger(__name__)

TOPIC_MARKETPLACE_EVENTS = "marketplace_events"

_producer = None
_producer_lock = threading.Lock()

def get_producer() -> Producer:
    global _producer
    with _producer_lock:
        if _producer is None:
            _producer = Producer({"bootstrap.servers": settings.kafka_bootstrap, "enable.idempotence": True})
        return _producer

def get_consumer(group_id: str, topics: list[str]):
    c = Consumer({
        "bootstrap.servers": settings.kafka_bootstrap,
        "group.id": group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,
    })
    c.subscribe(topics)
    return c

class KafkaEventPublisher:
    """Fire-and-forget publisher; called only after the owning transaction committed"""

    def __init__(self, topic: str = TOPIC_MARKETPLACE_EVENTS, breaker: CircuitBreaker = kafka_circuit_breaker):
        self.topic = topic
        self.breaker = breaker

    def _send(self, event: MarketplaceEvent):
        producer = get_producer()
        producer.produce(self.topic, key=event.event_id.encode("utf-8"), value=event.model_dump_json().encode("utf-8"))
        producer.flush(5)

    def publish(self, event: MarketplaceEvent) -> bool:
        try:
            self.breaker.call(retry_sync, self._send, KAFKA_RETRY_CONFIG, event)
        except Exception as e:
            # Delivery failures never roll back marketplace state
            logger.warning(f"Failed to publish {event.type} event {event.event_id}: {e}")
            return False
        logger.info(f"📤 Published {event.type} for order={event.order_id} guide={event.guide_id}")
        return True
