import json, logging, threading
from contextlib import asynccontextmanager
from typing import Optional
from confluent_kafka import TopicPartition
from fastapi import FastAPI
from pydantic import ValidationError
from common.kafka import get_consumer, TOPIC_NOTIFICATIONS
from common.redis_client import RedisClient
from common.schemas import SendConfirmationEmail
from common.settings import settings
from common.tracing import notification_tracer

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS = 2.0

SUBJECTS = {
    "payment_completed": "Your payment was received",
    "payment_failed": "Your payment could not be completed",
    "payment_refunded": "Your payment was refunded",
    "subscription_activated": "Your subscription is active",
    "subscription_canceled": "Your subscription was canceled",
    "subscription_past_due": "Your subscription payment is past due",
}

class MailSender:
    """Hands rendered emails to the mail relay (logged delivery)"""

    def send(self, recipient_ref: str, subject: str, context: dict):
        logger.info(f"[NOTIFY] to={recipient_ref} subject={subject!r} context={json.dumps(context, default=str)}")

def handle_message(raw: bytes, redis_client: RedisClient, sender: MailSender) -> bool:
    """Deliver one notification message. Returns True when an email went out."""
    try:
        effect = SendConfirmationEmail.model_validate_json(raw)
    except ValidationError as e:
        logger.error(f"Skipping unreadable notification message: {e}")
        return False

    with notification_tracer.start_span("send_notification") as span:
        span.add_tag("effect_id", effect.effect_id)
        span.add_tag("template", effect.template)
        if not effect.recipient_ref:
            logger.warning(f"Notification {effect.effect_id} has no recipient, skipping")
            return False
        # The dispatcher retries publishes, so the same effect can arrive twice
        if not redis_client.mark_once(effect.effect_id):
            logger.info(f"Notification {effect.effect_id} already sent")
            return False
        try:
            sender.send(effect.recipient_ref, SUBJECTS.get(effect.template, effect.template), effect.context)
        except Exception:
            redis_client.clear_marker(effect.effect_id)
            raise
        return True

def consume(stop: threading.Event, redis_client: Optional[RedisClient] = None, sender: Optional[MailSender] = None):
    redis_client = redis_client or RedisClient(settings.redis_url)
    sender = sender or MailSender()
    c = get_consumer("notification-service", [TOPIC_NOTIFICATIONS])
    try:
        while not stop.is_set():
            msg = c.poll(1.0)
            if not msg:
                continue
            if msg.error():
                logger.warning(f"Consumer error: {msg.error()}")
                continue
            try:
                handle_message(msg.value(), redis_client, sender)
            except Exception as e:
                logger.error(f"Notification delivery failed, retrying: {e}")
                c.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))
                stop.wait(RETRY_BACKOFF_SECONDS)
                continue
            c.commit(message=msg, asynchronous=False)
    finally:
        c.close()

@asynccontextmanager
async def lifespan(app: FastAPI):
    stop = threading.Event()
    worker = threading.Thread(target=consume, args=(stop,), daemon=True)
    worker.start()
    yield
    stop.set()
    worker.join(timeout=5)

app = FastAPI(title="Notification Service", lifespan=lifespan)

@app.get("/health")
async def health():
    return {"ok": True, "service": "notification"}
