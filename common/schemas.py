from datetime import date, datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional
import uuid

# Events handed to the notification service

EventType = Literal["OrderClaimed", "BookingAccepted", "OrderExpired", "FundsUnlocked", "AlertRaised"]

class MarketplaceEvent(BaseModel):
    type: EventType
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    guide_id: Optional[str] = None
    order_id: Optional[str] = None
    requester_id: Optional[str] = None
    amount: Optional[int] = None
    occurred_at: datetime
    details: Dict[str, Any] = Field(default_factory=dict)

# Requests

class CreateOrder(BaseModel):
    origin: Literal["grab", "booking"]
    requester_id: str
    target_guide_id: Optional[str] = None
    schedule_date: date
    time_slot: str = Field(examples=["09:00-13:00"])
    party_size: int = 1
    filters: Dict[str, Any] = Field(default_factory=dict)

class ClaimOrder(BaseModel):
    guide_id: str

class ConfirmOrder(BaseModel):
    requester_id: str

class BookingResponse(BaseModel):
    guide_id: str
    decision: Literal["accept", "reject"]

class CompleteOrder(BaseModel):
    guide_id: str

class ReviewOrder(BaseModel):
    requester_id: str
    good: bool

class GuideUpsert(BaseModel):
    completed_orders: int = Field(default=0, ge=0)
    good_reviews: int = Field(default=0, ge=0)
    has_photography_equipment: bool = False
    has_vehicle: bool = False
    verified: bool = False
    hourly_price: int = 30

class PriceUpdate(BaseModel):
    price: int

class VerificationUpdate(BaseModel):
    verified: bool

class WithdrawRequest(BaseModel):
    amount: int  # cents
    request_id: Optional[str] = None

class DeductRequest(BaseModel):
    amount: int  # cents
    reason: str
    order_id: Optional[str] = None

class AlertStatusUpdate(BaseModel):
    status: Literal["pending", "contacted", "resolved"]
    notes: Optional[str] = None

# Responses

class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    origin: str
    state: str
    requester_id: str
    target_guide_id: Optional[str] = None
    schedule_date: date
    time_slot: str
    start_at: datetime
    end_at: datetime
    party_size: int
    filters: Dict[str, Any]
    hourly_price: Optional[int] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

class GuideLevelOut(BaseModel):
    guide_id: str
    points: int
    level: str
    commission_rate: float
    level_progress: float
    points_to_next_level: Optional[int] = None
    price_floor: int
    price_ceiling: int
    hourly_price: int
    verified: bool

class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    guide_id: str
    order_id: Optional[str] = None
    type: str
    amount: int
    status: str
    reason: Optional[str] = None
    created_at: datetime
    unlock_at: Optional[datetime] = None

class WalletSummary(BaseModel):
    guide_id: str
    available_balance: int
    locked_balance: int
    total_income: int
    locked_entries: List[LedgerEntryOut]

class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    guide_id: str
    reminder_count: int
    total_penalty: int
    status: str
    notes: Optional[str] = None
    order_end_at: datetime
    last_reminder_at: datetime
    created_at: datetime
    updated_at: datetime
