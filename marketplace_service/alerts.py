"""
Overdue-order escalation.

A confirmed order still running past its scheduled end gets one reminder per
reminder interval. Each reminder deducts a penalty from the guide's held
income and refreshes the order's alert for staff follow-up.

Penalty policy: 5 units per reminder, at most 30 units per order, and never
more than the guide currently has on hold.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from common.error_handling import InvalidState, NotFoundError, ValidationError
from common.retry import retry_sync, StaleStateError, LEDGER_CAS_RETRY_CONFIG
from common.schemas import MarketplaceEvent
from common.settings import settings
from marketplace_service.models import Alert, AlertStatus, Order, OrderState, utcnow
from marketplace_service.wallet import WalletLedger

logger = logging.getLogger(__name__)

ALERT_STATUSES = (AlertStatus.PENDING, AlertStatus.CONTACTED, AlertStatus.RESOLVED)

# Staff may only move an alert forward
ALLOWED_TRANSITIONS = {
    AlertStatus.PENDING: (AlertStatus.CONTACTED, AlertStatus.RESOLVED),
    AlertStatus.CONTACTED: (AlertStatus.RESOLVED,),
    AlertStatus.RESOLVED: (),
}

class AlertEscalation:
    def __init__(self, session_factory: sessionmaker, ledger: WalletLedger, publisher,
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.ledger = ledger
        self.publisher = publisher
        self.clock = clock

    @property
    def reminder_interval(self) -> timedelta:
        return timedelta(minutes=settings.reminder_interval_minutes)

    def overdue_sweep(self) -> int:
        now = self.clock()
        with self.session_factory() as db:
            overdue = db.execute(
                select(Order.id).where(
                    Order.state == OrderState.CONFIRMED,
                    Order.completed_at.is_(None),
                    Order.end_at < now,
                )
            ).scalars().all()

        reminded = 0
        for order_id in overdue:
            try:
                alert = retry_sync(self._remind, LEDGER_CAS_RETRY_CONFIG, order_id, now)
            except Exception:
                # Nothing was committed for this order; the next tick tries again
                logger.exception(f"Overdue reminder for order {order_id} failed")
                continue
            if alert is None:
                continue
            reminded += 1
            self.publisher.publish(MarketplaceEvent(
                type="AlertRaised", order_id=order_id, guide_id=alert.guide_id, amount=alert.total_penalty,
                occurred_at=now, details={"reminder_count": alert.reminder_count, "status": alert.status},
            ))
        return reminded

    def _remind(self, order_id: str, now: datetime) -> Optional[Alert]:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None or order.state != OrderState.CONFIRMED or order.completed_at is not None:
                return None
            alert = db.get(Alert, order_id)
            if alert is not None:
                if alert.status == AlertStatus.RESOLVED:
                    return None
                if now - alert.last_reminder_at < self.reminder_interval:
                    return None

            guide_id = order.claimed_by
            self.ledger.lock_guide(db, guide_id)
            # complete() takes the same guide lock, so this re-read sees any completion that won
            still_running = db.execute(
                select(Order.id).where(
                    Order.id == order_id,
                    Order.state == OrderState.CONFIRMED,
                    Order.completed_at.is_(None),
                )
            ).scalar_one_or_none()
            if still_running is None:
                db.rollback()
                return None
            reminder = (alert.reminder_count if alert else 0) + 1
            penalized = alert.total_penalty if alert else 0
            penalty = min(
                settings.penalty_per_reminder_cents,
                max(0, settings.max_penalty_cents - penalized),
                self.ledger.locked_balance_in(db, guide_id, now),
            )
            if penalty > 0:
                self.ledger.apply_deduction(
                    db, guide_id, penalty, f"order {order_id} overdue, reminder {reminder}", now,
                    order_id=order_id, idempotency_key=f"penalty:{order_id}:{reminder}",
                )

            if alert is None:
                alert = Alert(
                    order_id=order_id, guide_id=guide_id, reminder_count=reminder, total_penalty=penalty,
                    status=AlertStatus.PENDING, order_end_at=order.end_at, last_reminder_at=now,
                    created_at=now, updated_at=now,
                )
                db.add(alert)
            else:
                # Reminder data is overwritten; the staff-owned status is left alone
                result = db.execute(
                    update(Alert)
                    .where(Alert.order_id == order_id, Alert.reminder_count == alert.reminder_count)
                    .values(reminder_count=reminder, total_penalty=penalized + penalty,
                            last_reminder_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise StaleStateError(f"alert for order {order_id} changed concurrently")
            try:
                db.commit()
            except IntegrityError:
                raise StaleStateError(f"alert for order {order_id} created concurrently")
            alert = db.get(Alert, order_id)
            db.refresh(alert)

        logger.warning(f"🚨 Order {order_id} overdue: reminder {reminder} for guide {guide_id}, penalty {penalty} cents")
        return alert

    def list_alerts(self, status_filter: Optional[str] = None) -> List[Alert]:
        if status_filter is not None and status_filter not in ALERT_STATUSES:
            raise ValidationError(f"unknown alert status {status_filter!r}", field="status")
        with self.session_factory() as db:
            query = select(Alert).order_by(Alert.created_at.desc())
            if status_filter:
                query = query.where(Alert.status == status_filter)
            return db.execute(query).scalars().all()

    def update_alert_status(self, order_id: str, status: str, notes: Optional[str] = None) -> Alert:
        if status not in ALERT_STATUSES:
            raise ValidationError(f"unknown alert status {status!r}", field="status")
        if status == AlertStatus.RESOLVED and not (notes or "").strip():
            raise ValidationError("resolving an alert requires notes", field="notes")
        now = self.clock()
        with self.session_factory() as db:
            alert = db.get(Alert, order_id)
            if alert is None:
                raise NotFoundError(f"no alert for order {order_id}", field="order_id")
            if status not in ALLOWED_TRANSITIONS[alert.status]:
                raise InvalidState(f"alert cannot move from {alert.status} to {status}",
                                   context={"status": alert.status})
            values = dict(status=status, updated_at=now)
            if notes is not None:
                values["notes"] = notes
            result = db.execute(
                update(Alert)
                .where(Alert.order_id == order_id, Alert.status == alert.status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise InvalidState(f"alert for order {order_id} was updated by someone else",
                                   context={"order_id": order_id})
            db.commit()
            db.refresh(alert)
        logger.info(f"Alert for order {order_id} moved to {status}")
        return alert
