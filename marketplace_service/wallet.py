"""
Guide wallet ledger.

Append-only entries, amounts in signed cents. Order income is posted as an
``income`` entry plus a ``locked`` hold of the same net amount; the hold keeps
that money out of the available balance until ``unlock_at``. The settled
total (income + withdrawals + deductions) is split as::

    locked_balance    = sum of active holds with unlock_at > now
    available_balance = settled total - locked_balance
"""
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from common.error_handling import (
    InsufficientFunds,
    InsufficientLockedFunds,
    InvalidState,
    NotFoundError,
    ValidationError,
)
from common.retry import retry_sync, StaleStateError, LEDGER_CAS_RETRY_CONFIG
from common.schemas import LedgerEntryOut, MarketplaceEvent, WalletSummary
from common.settings import settings
from marketplace_service.levels import standing_for
from marketplace_service.models import EntryStatus, EntryType, Guide, LedgerEntry, Order, utcnow

logger = logging.getLogger(__name__)

SETTLED_TYPES = (EntryType.INCOME, EntryType.WITHDRAW, EntryType.DEDUCTED)

def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def order_gross_cents(order: Order) -> int:
    """Agreed hourly price times the scheduled service duration."""
    minutes = int((order.end_at - order.start_at).total_seconds() // 60)
    return _round_cents(Decimal(order.hourly_price) * 100 * minutes / 60)

def split_commission(gross_cents: int, rate: Decimal) -> Tuple[int, int]:
    commission = _round_cents(Decimal(gross_cents) * rate)
    return commission, gross_cents - commission

class WalletLedger:
    def __init__(self, session_factory: sessionmaker, publisher, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.publisher = publisher
        self.clock = clock

    # Helpers that run inside a caller's transaction

    def lock_guide(self, db: Session, guide_id: str) -> Guide:
        """Take the guide's ledger for this transaction; serializes balance checks for one guide only.

        The row lock is backed by a version bump, so two writers that read the
        same version conflict even where ``FOR UPDATE`` is a no-op (SQLite).
        The loser gets ``StaleStateError`` and is retried from a fresh read.
        """
        guide = db.execute(select(Guide).where(Guide.id == guide_id).with_for_update()).scalar_one_or_none()
        if guide is None:
            raise NotFoundError(f"guide {guide_id} not found", field="guide_id")
        result = db.execute(
            update(Guide)
            .where(Guide.id == guide_id, Guide.version == guide.version)
            .values(version=Guide.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleStateError(f"guide {guide_id} ledger changed concurrently")
        return guide

    def _entry_by_key(self, db: Session, key: str) -> Optional[LedgerEntry]:
        return db.execute(select(LedgerEntry).where(LedgerEntry.idempotency_key == key)).scalar_one_or_none()

    def locked_balance_in(self, db: Session, guide_id: str, now: datetime) -> int:
        return db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                LedgerEntry.guide_id == guide_id,
                LedgerEntry.type == EntryType.LOCKED,
                LedgerEntry.status == EntryStatus.ACTIVE,
                LedgerEntry.unlock_at > now,
            )
        ).scalar_one()

    def settled_total_in(self, db: Session, guide_id: str) -> int:
        return db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                LedgerEntry.guide_id == guide_id,
                LedgerEntry.type.in_(SETTLED_TYPES),
            )
        ).scalar_one()

    def available_balance_in(self, db: Session, guide_id: str, now: datetime) -> int:
        return self.settled_total_in(db, guide_id) - self.locked_balance_in(db, guide_id, now)

    def post_order_income_in(self, db: Session, order: Order, guide: Guide, now: datetime) -> Tuple[LedgerEntry, LedgerEntry]:
        """Post the income entry and its hold for a completed order, once per order."""
        income_key, hold_key = f"income:{order.id}", f"locked:{order.id}"
        income = self._entry_by_key(db, income_key)
        hold = self._entry_by_key(db, hold_key)
        if income is not None and hold is not None:
            return income, hold
        if income is not None or hold is not None:
            raise InvalidState(f"order {order.id} has an unpaired ledger entry", context={"order_id": order.id})
        if order.hourly_price is None:
            raise ValidationError(f"order {order.id} has no agreed price", field="hourly_price")

        rate = standing_for(guide).commission_rate
        gross = order_gross_cents(order)
        commission, net = split_commission(gross, rate)
        reason = f"order income: gross {gross}, commission {commission} ({rate * 100:.1f}%)"

        income = LedgerEntry(
            guide_id=guide.id, order_id=order.id, type=EntryType.INCOME, amount=net,
            status=EntryStatus.RESOLVED, reason=reason, idempotency_key=income_key, created_at=now,
        )
        hold = LedgerEntry(
            guide_id=guide.id, order_id=order.id, type=EntryType.LOCKED, amount=net,
            status=EntryStatus.ACTIVE, reason="order income held", idempotency_key=hold_key,
            created_at=now, unlock_at=now + timedelta(days=settings.lock_period_days),
        )
        db.add_all([income, hold])
        db.flush()
        logger.info(f"💰 Order {order.id}: guide {guide.id} earns {net} cents (gross {gross}, commission {commission}), held until {hold.unlock_at}")
        return income, hold

    def apply_deduction(self, db: Session, guide_id: str, amount: int, reason: str, now: datetime,
                        order_id: Optional[str] = None, idempotency_key: Optional[str] = None) -> LedgerEntry:
        """Consume holds oldest-first and post the deduction; caller holds the guide lock and commits."""
        if amount <= 0:
            raise ValidationError("deduction amount must be positive", field="amount")
        key = idempotency_key or f"deduct:{uuid.uuid4().hex}"
        existing = self._entry_by_key(db, key)
        if existing is not None:
            return existing

        locked = self.locked_balance_in(db, guide_id, now)
        if amount > locked:
            raise InsufficientLockedFunds(amount, locked)

        holds = db.execute(
            select(LedgerEntry).where(
                LedgerEntry.guide_id == guide_id,
                LedgerEntry.type == EntryType.LOCKED,
                LedgerEntry.status == EntryStatus.ACTIVE,
                LedgerEntry.unlock_at > now,
            ).order_by(LedgerEntry.unlock_at, LedgerEntry.id)
        ).scalars().all()

        remaining = amount
        for hold in holds:
            if remaining == 0:
                break
            take = min(hold.amount, remaining)
            self._consume_hold(db, hold, take)
            remaining -= take

        entry = LedgerEntry(
            guide_id=guide_id, order_id=order_id, type=EntryType.DEDUCTED, amount=-amount,
            status=EntryStatus.RESOLVED, reason=reason, idempotency_key=key, created_at=now,
        )
        db.add(entry)
        db.flush()
        return entry

    def _consume_hold(self, db: Session, hold: LedgerEntry, take: int) -> None:
        # The unlock sweep flips holds without the guide lock; the version check catches it
        left = hold.amount - take
        result = db.execute(
            update(LedgerEntry)
            .where(
                LedgerEntry.id == hold.id,
                LedgerEntry.type == EntryType.LOCKED,
                LedgerEntry.status == EntryStatus.ACTIVE,
                LedgerEntry.version == hold.version,
            )
            .values(
                amount=left,
                status=EntryStatus.RESOLVED if left == 0 else EntryStatus.ACTIVE,
                version=LedgerEntry.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleStateError(f"hold {hold.id} changed concurrently")

    # Operations

    def post_order_income(self, order_id: str) -> Tuple[LedgerEntry, LedgerEntry]:
        """Standalone retry entry point; completion normally posts inside its own transaction."""
        return retry_sync(self._post_order_income_once, LEDGER_CAS_RETRY_CONFIG, order_id)

    def _post_order_income_once(self, order_id: str) -> Tuple[LedgerEntry, LedgerEntry]:
        now = self.clock()
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found", field="order_id")
            if order.completed_at is None or order.claimed_by is None:
                raise InvalidState(f"order {order_id} is not completed", context={"order_id": order_id})
            guide = self.lock_guide(db, order.claimed_by)
            try:
                pair = self.post_order_income_in(db, order, guide, now)
                db.commit()
            except IntegrityError:
                # A concurrent retry posted the pair first
                db.rollback()
                pair = (self._entry_by_key(db, f"income:{order_id}"), self._entry_by_key(db, f"locked:{order_id}"))
        return pair

    def deduct(self, guide_id: str, amount: int, reason: str, order_id: Optional[str] = None,
               idempotency_key: Optional[str] = None) -> LedgerEntry:
        return retry_sync(self._deduct_once, LEDGER_CAS_RETRY_CONFIG, guide_id, amount, reason, order_id, idempotency_key)

    def _deduct_once(self, guide_id, amount, reason, order_id, idempotency_key) -> LedgerEntry:
        now = self.clock()
        with self.session_factory() as db:
            self.lock_guide(db, guide_id)
            entry = self.apply_deduction(db, guide_id, amount, reason, now, order_id, idempotency_key)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                entry = self._entry_by_key(db, idempotency_key) if idempotency_key else None
                if entry is None:
                    raise
                return entry
        logger.info(f"Deducted {amount} cents from guide {guide_id}: {reason}")
        return entry

    def withdraw(self, guide_id: str, amount: int, request_id: Optional[str] = None) -> LedgerEntry:
        """Request a payout; settlement is done by the external payout system."""
        return retry_sync(self._withdraw_once, LEDGER_CAS_RETRY_CONFIG, guide_id, amount, request_id)

    def _withdraw_once(self, guide_id: str, amount: int, request_id: Optional[str]) -> LedgerEntry:
        now = self.clock()
        key = f"withdraw:{request_id or uuid.uuid4().hex}"
        with self.session_factory() as db:
            self.lock_guide(db, guide_id)
            existing = self._entry_by_key(db, key)
            if existing is not None:
                return existing
            available = self.available_balance_in(db, guide_id, now)
            if amount < settings.min_withdraw_cents or amount > available:
                raise InsufficientFunds(amount, available, settings.min_withdraw_cents)
            entry = LedgerEntry(
                guide_id=guide_id, type=EntryType.WITHDRAW, amount=-amount, status=EntryStatus.ACTIVE,
                reason="payout requested", idempotency_key=key, created_at=now,
            )
            db.add(entry)
            db.commit()
        logger.info(f"💸 Guide {guide_id} requested payout of {amount} cents")
        return entry

    def settle_withdrawal(self, entry_id: int) -> LedgerEntry:
        """Callback from the payout system once the transfer has landed."""
        with self.session_factory() as db:
            result = db.execute(
                update(LedgerEntry)
                .where(
                    LedgerEntry.id == entry_id,
                    LedgerEntry.type == EntryType.WITHDRAW,
                    LedgerEntry.status == EntryStatus.ACTIVE,
                )
                .values(status=EntryStatus.RESOLVED, version=LedgerEntry.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                entry = db.get(LedgerEntry, entry_id)
                if entry is None or entry.type != EntryType.WITHDRAW:
                    raise NotFoundError(f"withdrawal {entry_id} not found", field="entry_id")
                raise InvalidState(f"withdrawal {entry_id} already settled", context={"entry_id": entry_id})
            db.commit()
            return db.get(LedgerEntry, entry_id)

    def unlock_sweep(self, batch_size: int = 500) -> int:
        """Release holds whose lock period has ended. Safe to re-run."""
        now = self.clock()
        with self.session_factory() as db:
            due = db.execute(
                select(LedgerEntry.id, LedgerEntry.guide_id, LedgerEntry.amount, LedgerEntry.version)
                .where(
                    LedgerEntry.type == EntryType.LOCKED,
                    LedgerEntry.status == EntryStatus.ACTIVE,
                    LedgerEntry.unlock_at <= now,
                )
                .order_by(LedgerEntry.unlock_at)
                .limit(batch_size)
            ).all()

        released = defaultdict(int)
        count = 0
        for row in due:
            # One transaction per hold so a failure leaves the rest untouched
            with self.session_factory() as db:
                result = db.execute(
                    update(LedgerEntry)
                    .where(
                        LedgerEntry.id == row.id,
                        LedgerEntry.type == EntryType.LOCKED,
                        LedgerEntry.status == EntryStatus.ACTIVE,
                        LedgerEntry.version == row.version,
                    )
                    .values(type=EntryType.UNLOCKED, status=EntryStatus.RESOLVED, version=LedgerEntry.version + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # A deduction changed the hold; picked up again next tick
                    db.rollback()
                    continue
                db.commit()
            released[row.guide_id] += row.amount
            count += 1

        for guide_id, amount in released.items():
            self.publisher.publish(MarketplaceEvent(type="FundsUnlocked", guide_id=guide_id, amount=amount, occurred_at=now))
        if count:
            logger.info(f"🔓 Unlocked {count} holds for {len(released)} guides")
        return count

    # Reads

    def locked_balance(self, guide_id: str) -> int:
        with self.session_factory() as db:
            return self.locked_balance_in(db, guide_id, self.clock())

    def available_balance(self, guide_id: str) -> int:
        with self.session_factory() as db:
            return self.available_balance_in(db, guide_id, self.clock())

    def list_entries(self, guide_id: str, limit: int = 100) -> List[LedgerEntry]:
        with self.session_factory() as db:
            return db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.guide_id == guide_id)
                .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
                .limit(limit)
            ).scalars().all()

    def wallet_summary(self, guide_id: str) -> WalletSummary:
        now = self.clock()
        with self.session_factory() as db:
            if db.get(Guide, guide_id) is None:
                raise NotFoundError(f"guide {guide_id} not found", field="guide_id")
            locked = self.locked_balance_in(db, guide_id, now)
            available = self.settled_total_in(db, guide_id) - locked
            total_income = db.execute(
                select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                    LedgerEntry.guide_id == guide_id, LedgerEntry.type == EntryType.INCOME
                )
            ).scalar_one()
            holds = db.execute(
                select(LedgerEntry).where(
                    LedgerEntry.guide_id == guide_id,
                    LedgerEntry.type == EntryType.LOCKED,
                    LedgerEntry.status == EntryStatus.ACTIVE,
                    LedgerEntry.unlock_at > now,
                ).order_by(LedgerEntry.unlock_at)
            ).scalars().all()
            return WalletSummary(
                guide_id=guide_id,
                available_balance=available,
                locked_balance=locked,
                total_income=total_income,
                locked_entries=[LedgerEntryOut.model_validate(h) for h in holds],
            )
