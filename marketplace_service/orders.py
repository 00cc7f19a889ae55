"""
Order claim arbitration.

Every transition is one conditional UPDATE guarded by the expected state
(and the row version), so concurrent callers on the same order are decided by
the database: exactly one UPDATE matches, the others see zero rows.
"""
import logging
import re
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from common.error_handling import (
    AlreadyClaimed,
    InvalidState,
    NotAuthorized,
    NotFoundError,
    ValidationError,
)
from common.retry import retry_sync, StaleStateError, LEDGER_CAS_RETRY_CONFIG
from common.schemas import CreateOrder, MarketplaceEvent
from common.settings import settings
from marketplace_service.models import Guide, Order, OrderOrigin, OrderState, utcnow
from marketplace_service.wallet import WalletLedger

logger = logging.getLogger(__name__)

TIME_SLOT_RE = re.compile(r"^(\d{2}):(\d{2})-(\d{2}):(\d{2})$")

def parse_time_slot(schedule_date: date, time_slot: str) -> Tuple[datetime, datetime]:
    match = TIME_SLOT_RE.match(time_slot or "")
    if not match:
        raise ValidationError("time slot must look like HH:MM-HH:MM", field="time_slot")
    sh, sm, eh, em = (int(g) for g in match.groups())
    if sh > 23 or eh > 23 or sm > 59 or em > 59:
        raise ValidationError("time slot has an invalid clock time", field="time_slot")
    start = datetime.combine(schedule_date, datetime.min.time()).replace(hour=sh, minute=sm)
    end = datetime.combine(schedule_date, datetime.min.time()).replace(hour=eh, minute=em)
    if end <= start:
        raise ValidationError("time slot must end after it starts", field="time_slot")
    return start, end

class ClaimArbiter:
    def __init__(self, session_factory: sessionmaker, ledger: WalletLedger, publisher,
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.ledger = ledger
        self.publisher = publisher
        self.clock = clock

    @property
    def claim_window(self) -> timedelta:
        return timedelta(hours=settings.claim_window_hours)

    def _get(self, db: Session, order_id: str) -> Order:
        order = db.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found", field="order_id")
        return order

    def _transition(self, db: Session, order: Order, expected_state: str, **values) -> bool:
        result = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.state == expected_state, Order.version == order.version)
            .values(version=Order.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def create_order(self, request: CreateOrder) -> Order:
        if request.party_size < 1:
            raise ValidationError("party size must be at least 1", field="party_size")
        start_at, end_at = parse_time_slot(request.schedule_date, request.time_slot)
        now = self.clock()

        with self.session_factory() as db:
            order = Order(
                origin=request.origin,
                requester_id=request.requester_id,
                schedule_date=request.schedule_date,
                time_slot=request.time_slot,
                start_at=start_at,
                end_at=end_at,
                party_size=request.party_size,
                filters=request.filters,
                created_at=now,
            )
            if request.origin == OrderOrigin.BOOKING:
                if not request.target_guide_id:
                    raise ValidationError("a booking must name a guide", field="target_guide_id")
                guide = db.get(Guide, request.target_guide_id)
                if guide is None:
                    raise NotFoundError(f"guide {request.target_guide_id} not found", field="target_guide_id")
                order.state = OrderState.BOOKING_PENDING
                order.target_guide_id = guide.id
                order.hourly_price = guide.hourly_price
            else:
                if request.target_guide_id:
                    raise ValidationError("grab orders are open to every guide", field="target_guide_id")
                order.state = OrderState.OPEN
            db.add(order)
            db.commit()
        logger.info(f"Order {order.id} created ({order.origin}) by {order.requester_id}")
        return order

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            return self._get(db, order_id)

    def list_orders(self, state: Optional[str] = None, limit: int = 100) -> List[Order]:
        with self.session_factory() as db:
            query = select(Order).order_by(Order.created_at.desc()).limit(limit)
            if state:
                query = query.where(Order.state == state)
            return db.execute(query).scalars().all()

    def claim(self, order_id: str, guide_id: str) -> Order:
        """Guide grabs an open order. Exactly one concurrent caller wins."""
        now = self.clock()
        with self.session_factory() as db:
            guide = db.get(Guide, guide_id)
            if guide is None:
                raise NotFoundError(f"guide {guide_id} not found", field="guide_id")
            # No version check: the state guard alone decides the race
            result = db.execute(
                update(Order)
                .where(Order.id == order_id, Order.state == OrderState.OPEN)
                .values(
                    state=OrderState.CLAIMED,
                    claimed_by=guide_id,
                    claimed_at=now,
                    hourly_price=guide.hourly_price,
                    version=Order.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                self._get(db, order_id)
                raise AlreadyClaimed(order_id)
            db.commit()
            order = self._get(db, order_id)

        logger.info(f"✅ Order {order_id} claimed by guide {guide_id}")
        self.publisher.publish(MarketplaceEvent(
            type="OrderClaimed", order_id=order_id, guide_id=guide_id,
            requester_id=order.requester_id, occurred_at=now,
        ))
        return order

    def confirm(self, order_id: str, requester_id: str) -> Order:
        """Tourist accepts the guide who grabbed the order."""
        now = self.clock()
        with self.session_factory() as db:
            order = self._get(db, order_id)
            if order.requester_id != requester_id:
                raise NotAuthorized(f"order {order_id} belongs to another requester", field="requester_id")
            if order.state != OrderState.CLAIMED:
                raise InvalidState(f"order {order_id} is {order.state}, not claimed", context={"state": order.state})
            if not self._transition(db, order, OrderState.CLAIMED, state=OrderState.CONFIRMED, confirmed_at=now):
                db.rollback()
                raise InvalidState(f"order {order_id} changed before confirmation", context={"order_id": order_id})
            db.commit()
            db.refresh(order)
        logger.info(f"Order {order_id} confirmed with guide {order.claimed_by}")
        return order

    def respond_to_booking(self, order_id: str, guide_id: str, decision: str) -> Order:
        if decision not in ("accept", "reject"):
            raise ValidationError("decision must be accept or reject", field="decision")
        now = self.clock()
        with self.session_factory() as db:
            order = self._get(db, order_id)
            if order.origin != OrderOrigin.BOOKING or order.target_guide_id != guide_id:
                raise NotAuthorized(f"order {order_id} was not booked with guide {guide_id}", field="guide_id")
            if order.state != OrderState.BOOKING_PENDING:
                raise InvalidState(f"order {order_id} is {order.state}, not awaiting a response",
                                   context={"state": order.state})
            if decision == "accept":
                values = dict(state=OrderState.CONFIRMED, claimed_by=guide_id, claimed_at=now, confirmed_at=now)
            else:
                values = dict(state=OrderState.REJECTED)
            if not self._transition(db, order, OrderState.BOOKING_PENDING, **values):
                db.rollback()
                raise InvalidState(f"order {order_id} changed before the response", context={"order_id": order_id})
            db.commit()
            db.refresh(order)

        logger.info(f"Booking {order_id} {decision}ed by guide {guide_id}")
        if decision == "accept":
            self.publisher.publish(MarketplaceEvent(
                type="BookingAccepted", order_id=order_id, guide_id=guide_id,
                requester_id=order.requester_id, occurred_at=now,
            ))
        return order

    def expire(self, order_id: str) -> bool:
        """Release a claim that was not confirmed within the claim window.

        The order goes back to open for another guide, or to expired when its
        scheduled start has already passed.
        """
        now = self.clock()
        cutoff = now - self.claim_window
        with self.session_factory() as db:
            order = self._get(db, order_id)
            if order.state != OrderState.CLAIMED or order.claimed_at is None or order.claimed_at >= cutoff:
                return False
            previous_guide = order.claimed_by
            target = OrderState.EXPIRED if order.start_at <= now else OrderState.OPEN
            # Re-checked in the UPDATE itself so a late confirmation wins cleanly
            result = db.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.state == OrderState.CLAIMED,
                    Order.version == order.version,
                    Order.claimed_at < cutoff,
                )
                .values(state=target, claimed_by=None, claimed_at=None, hourly_price=None,
                        version=Order.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            db.commit()

        logger.info(f"⏰ Claim on order {order_id} by guide {previous_guide} expired; order is now {target}")
        self.publisher.publish(MarketplaceEvent(
            type="OrderExpired", order_id=order_id, guide_id=previous_guide,
            occurred_at=now, details={"state": target},
        ))
        return True

    def expire_sweep(self) -> int:
        cutoff = self.clock() - self.claim_window
        with self.session_factory() as db:
            stale = db.execute(
                select(Order.id).where(Order.state == OrderState.CLAIMED, Order.claimed_at < cutoff)
            ).scalars().all()
        return sum(1 for order_id in stale if self.expire(order_id))

    def complete(self, order_id: str, guide_id: str) -> Order:
        """Guide checks in after service; posts the order income in the same transaction."""
        return retry_sync(self._complete_once, LEDGER_CAS_RETRY_CONFIG, order_id, guide_id)

    def _complete_once(self, order_id: str, guide_id: str) -> Order:
        now = self.clock()
        with self.session_factory() as db:
            order = self._get(db, order_id)
            if order.claimed_by != guide_id:
                raise NotAuthorized(f"order {order_id} is not assigned to guide {guide_id}", field="guide_id")
            if order.completed_at is not None:
                return order
            if order.state != OrderState.CONFIRMED:
                raise InvalidState(f"order {order_id} is {order.state}, not confirmed", context={"state": order.state})

            guide = self.ledger.lock_guide(db, guide_id)
            if not self._transition(db, order, OrderState.CONFIRMED, completed_at=now):
                db.rollback()
                order = self._get(db, order_id)
                if order.completed_at is not None:
                    return order
                if order.state == OrderState.CONFIRMED:
                    raise StaleStateError(f"order {order_id} changed before completion")
                raise InvalidState(f"order {order_id} changed before completion", context={"order_id": order_id})
            db.refresh(order)
            # Commission is based on the standing the guide had before this order counted
            self.ledger.post_order_income_in(db, order, guide, now)
            db.execute(
                update(Guide)
                .where(Guide.id == guide_id)
                .values(completed_orders=Guide.completed_orders + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        logger.info(f"🏁 Order {order_id} completed by guide {guide_id}")
        return order

    def record_review(self, order_id: str, requester_id: str, good: bool) -> Order:
        now = self.clock()
        with self.session_factory() as db:
            order = self._get(db, order_id)
            if order.requester_id != requester_id:
                raise NotAuthorized(f"order {order_id} belongs to another requester", field="requester_id")
            if order.completed_at is None:
                raise InvalidState(f"order {order_id} is not completed yet", context={"order_id": order_id})
            result = db.execute(
                update(Order)
                .where(Order.id == order_id, Order.reviewed.is_(False))
                .values(reviewed=True, version=Order.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise InvalidState(f"order {order_id} was already reviewed", context={"order_id": order_id})
            if good:
                db.execute(
                    update(Guide)
                    .where(Guide.id == order.claimed_by)
                    .values(good_reviews=Guide.good_reviews + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            db.commit()
            db.refresh(order)
        return order
