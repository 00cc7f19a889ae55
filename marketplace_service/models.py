from datetime import datetime, timezone
import uuid
from sqlalchemy import Column, Integer, String, BigInteger, Boolean, Date, DateTime, Text, JSON, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite only autoincrements INTEGER primary keys
LedgerId = BigInteger().with_variant(Integer, "sqlite")

def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def new_id() -> str:
    return uuid.uuid4().hex

class OrderOrigin:
    GRAB = "grab"
    BOOKING = "booking"

class OrderState:
    OPEN = "open"
    CLAIMED = "claimed"
    BOOKING_PENDING = "booking_pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    REJECTED = "rejected"

class EntryType:
    INCOME = "income"
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    WITHDRAW = "withdraw"
    DEDUCTED = "deducted"

class EntryStatus:
    ACTIVE = "active"
    RESOLVED = "resolved"

class AlertStatus:
    PENDING = "pending"
    CONTACTED = "contacted"
    RESOLVED = "resolved"

class Guide(Base):
    __tablename__ = "guides"
    id = Column(String(64), primary_key=True)
    completed_orders = Column(Integer, nullable=False, default=0)
    good_reviews = Column(Integer, nullable=False, default=0)
    has_photography_equipment = Column(Boolean, nullable=False, default=False)
    has_vehicle = Column(Boolean, nullable=False, default=False)
    verified = Column(Boolean, nullable=False, default=False)  # set by the certification service
    hourly_price = Column(Integer, nullable=False, default=30)  # currency units per hour
    version = Column(Integer, nullable=False, default=0)  # bumped by every ledger write for this guide
    updated_at = Column(DateTime, nullable=False, default=utcnow)

class Order(Base):
    __tablename__ = "orders"
    id = Column(String(64), primary_key=True, default=new_id)
    origin = Column(String(16), nullable=False)
    state = Column(String(32), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=0)
    requester_id = Column(String(64), nullable=False, index=True)
    target_guide_id = Column(String(64), index=True)
    schedule_date = Column(Date, nullable=False)
    time_slot = Column(String(16), nullable=False)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    party_size = Column(Integer, nullable=False, default=1)
    filters = Column(JSON, nullable=False, default=dict)
    hourly_price = Column(Integer)  # agreed price, fixed once the order is bound
    claimed_by = Column(String(64), index=True)
    claimed_at = Column(DateTime)
    confirmed_at = Column(DateTime)
    completed_at = Column(DateTime)
    reviewed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    id = Column(LedgerId, primary_key=True, autoincrement=True)
    guide_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(64), index=True)
    type = Column(String(16), nullable=False)
    amount = Column(BigInteger, nullable=False)  # signed cents
    status = Column(String(16), nullable=False, default=EntryStatus.ACTIVE)
    reason = Column(String(255))
    idempotency_key = Column(String(128), nullable=False, unique=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    unlock_at = Column(DateTime)

    __table_args__ = (
        Index("ix_ledger_holds", "type", "status", "unlock_at"),
    )

class Alert(Base):
    __tablename__ = "order_alerts"
    order_id = Column(String(64), primary_key=True)
    guide_id = Column(String(64), nullable=False, index=True)
    reminder_count = Column(Integer, nullable=False, default=0)
    total_penalty = Column(BigInteger, nullable=False, default=0)  # cents
    status = Column(String(16), nullable=False, default=AlertStatus.PENDING, index=True)
    notes = Column(Text)
    order_end_at = Column(DateTime, nullable=False)
    last_reminder_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
