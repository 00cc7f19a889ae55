import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import FastAPI, Query
from sqlalchemy.orm import sessionmaker
from common.error_handling import add_error_handlers
from common.kafka import KafkaEventPublisher
from common.schemas import (
    AlertOut,
    AlertStatusUpdate,
    BookingResponse,
    ClaimOrder,
    CompleteOrder,
    ConfirmOrder,
    CreateOrder,
    DeductRequest,
    GuideLevelOut,
    GuideUpsert,
    LedgerEntryOut,
    OrderOut,
    PriceUpdate,
    ReviewOrder,
    VerificationUpdate,
    WalletSummary,
    WithdrawRequest,
)
from marketplace_service.alerts import AlertEscalation
from marketplace_service.db import SessionLocal
from marketplace_service.guides import GuideDirectory
from marketplace_service.models import Base, utcnow
from marketplace_service.orders import ClaimArbiter
from marketplace_service.pricing import PriceGovernor
from marketplace_service.wallet import WalletLedger
from marketplace_service.workers import start_sweeps

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SWEEP_SHUTDOWN_TIMEOUT = 10.0

def create_app(session_factory: Optional[sessionmaker] = None, publisher=None, clock=utcnow,
               run_sweeps: bool = True) -> FastAPI:
    session_factory = session_factory or SessionLocal
    publisher = publisher or KafkaEventPublisher()

    guides = GuideDirectory(session_factory, clock)
    governor = PriceGovernor(session_factory, clock)
    ledger = WalletLedger(session_factory, publisher, clock)
    arbiter = ClaimArbiter(session_factory, ledger, publisher, clock)
    escalation = AlertEscalation(session_factory, ledger, publisher, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=session_factory.kw["bind"])
        workers = start_sweeps(ledger, arbiter, escalation) if run_sweeps else []
        logger.info("🚀 Marketplace service started")
        yield
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.join(timeout=SWEEP_SHUTDOWN_TIMEOUT)
            if worker.is_alive():
                logger.warning(f"Sweep {worker.name} still running after {SWEEP_SHUTDOWN_TIMEOUT}s")

    app = FastAPI(title="Guide Marketplace Service", version="1.0.0", lifespan=lifespan)
    add_error_handlers(app)

    # Request handlers are plain functions so FastAPI runs them on its worker thread pool

    @app.put("/guides/{guide_id}", response_model=GuideLevelOut)
    def upsert_guide(guide_id: str, profile: GuideUpsert):
        guides.upsert(guide_id, profile)
        return guides.level_info(guide_id)

    @app.get("/guides/{guide_id}/level", response_model=GuideLevelOut)
    def guide_level(guide_id: str):
        return guides.level_info(guide_id)

    @app.put("/guides/{guide_id}/price", response_model=GuideLevelOut)
    def set_price(guide_id: str, body: PriceUpdate):
        governor.set_price(guide_id, body.price)
        return guides.level_info(guide_id)

    @app.put("/guides/{guide_id}/verification", response_model=GuideLevelOut)
    def set_verification(guide_id: str, body: VerificationUpdate):
        """Called by the certification service once document review is done."""
        guides.set_verification(guide_id, body.verified)
        return guides.level_info(guide_id)

    @app.post("/orders", response_model=OrderOut, status_code=201)
    def create_order(body: CreateOrder):
        return arbiter.create_order(body)

    @app.get("/orders", response_model=List[OrderOut])
    def list_orders(state: Optional[str] = None, limit: int = Query(100, ge=1, le=500)):
        return arbiter.list_orders(state, limit)

    @app.get("/orders/{order_id}", response_model=OrderOut)
    def get_order(order_id: str):
        return arbiter.get_order(order_id)

    @app.post("/orders/{order_id}/claim", response_model=OrderOut)
    def claim_order(order_id: str, body: ClaimOrder):
        return arbiter.claim(order_id, body.guide_id)

    @app.post("/orders/{order_id}/confirm", response_model=OrderOut)
    def confirm_order(order_id: str, body: ConfirmOrder):
        return arbiter.confirm(order_id, body.requester_id)

    @app.post("/orders/{order_id}/booking-response", response_model=OrderOut)
    def respond_to_booking(order_id: str, body: BookingResponse):
        return arbiter.respond_to_booking(order_id, body.guide_id, body.decision)

    @app.post("/orders/{order_id}/complete", response_model=OrderOut)
    def complete_order(order_id: str, body: CompleteOrder):
        return arbiter.complete(order_id, body.guide_id)

    @app.post("/orders/{order_id}/review", response_model=OrderOut)
    def review_order(order_id: str, body: ReviewOrder):
        return arbiter.record_review(order_id, body.requester_id, body.good)

    @app.get("/wallets/{guide_id}", response_model=WalletSummary)
    def wallet(guide_id: str):
        return ledger.wallet_summary(guide_id)

    @app.get("/wallets/{guide_id}/entries", response_model=List[LedgerEntryOut])
    def wallet_entries(guide_id: str, limit: int = Query(100, ge=1, le=500)):
        return ledger.list_entries(guide_id, limit)

    @app.post("/wallets/{guide_id}/withdraw", response_model=LedgerEntryOut, status_code=201)
    def withdraw(guide_id: str, body: WithdrawRequest):
        return ledger.withdraw(guide_id, body.amount, body.request_id)

    @app.post("/wallets/{guide_id}/deduct", response_model=LedgerEntryOut, status_code=201)
    def deduct(guide_id: str, body: DeductRequest):
        """Staff-initiated deduction, e.g. after an upheld complaint."""
        return ledger.deduct(guide_id, body.amount, body.reason, body.order_id)

    @app.post("/withdrawals/{entry_id}/settle", response_model=LedgerEntryOut)
    def settle_withdrawal(entry_id: int):
        return ledger.settle_withdrawal(entry_id)

    @app.get("/alerts", response_model=List[AlertOut])
    def list_alerts(status: Optional[str] = None):
        return escalation.list_alerts(status)

    @app.put("/alerts/{order_id}", response_model=AlertOut)
    def update_alert(order_id: str, body: AlertStatusUpdate):
        return escalation.update_alert_status(order_id, body.status, body.notes)

    @app.get("/health")
    def health():
        return {"ok": True, "service": "marketplace"}

    return app

app = create_app()
