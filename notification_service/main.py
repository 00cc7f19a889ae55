import json, logging, threading
from contextlib import asynccontextmanager
from fastapi import FastAPI
import redis
from common.kafka import get_consumer, TOPIC_MARKETPLACE_EVENTS
from common.settings import settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEDUPE_TTL_SECONDS = 7 * 24 * 3600

MESSAGES = {
    "OrderClaimed": "Guide {guide_id} grabbed your order {order_id}",
    "BookingAccepted": "Guide {guide_id} accepted your booking {order_id}",
    "OrderExpired": "Claim on order {order_id} expired; the order is {state}",
    "FundsUnlocked": "{amount} cents are now available for withdrawal",
    "AlertRaised": "Order {order_id} is overdue; please end it in the app",
}

def was_sent(store, event_id: str) -> bool:
    # Returns True if already sent
    return not store.set(f"notif:{event_id}", 1, nx=True, ex=DEDUPE_TTL_SECONDS)

def recipients(evt: dict) -> list:
    if evt.get("type") in ("OrderClaimed", "BookingAccepted"):
        return [evt.get("requester_id")]
    if evt.get("type") == "AlertRaised":
        return [evt.get("guide_id"), "staff"]
    return [evt.get("guide_id")]

def handle_event(evt: dict, store) -> bool:
    """Hand one marketplace event to the delivery channel; False when skipped."""
    template = MESSAGES.get(evt.get("type"))
    if template is None:
        logger.debug(f"Skipping event type: {evt.get('type')}")
        return False
    if was_sent(store, evt["event_id"]):
        return False
    fields = {**evt.get("details", {}), **{k: v for k, v in evt.items() if k != "details"}}
    message = template.format_map({k: fields.get(k) for k in ("guide_id", "order_id", "amount", "state")})
    for recipient in recipients(evt):
        if recipient:
            logger.info(f"[NOTIFY] {recipient}: {message}")
    return True

def consume(store):
    c = get_consumer("notification-service", [TOPIC_MARKETPLACE_EVENTS])
    while True:
        msg = c.poll(1.0)
        if not msg or msg.error():
            continue
        try:
            handle_event(json.loads(msg.value()), store)
        except (ValueError, KeyError) as e:
            logger.error(f"Dropping malformed event: {e}")
        c.commit()

@asynccontextmanager
async def lifespan(app: FastAPI):
    store = redis.from_url(settings.redis_url)
    threading.Thread(target=consume, args=(store,), daemon=True).start()
    yield

app = FastAPI(title="Notification Service", lifespan=lifespan)

@app.get("/health")
async def health():
    return {"ok": True}
