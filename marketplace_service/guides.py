import logging
from typing import Callable
from sqlalchemy.orm import sessionmaker
from common.error_handling import NotFoundError
from common.schemas import GuideLevelOut, GuideUpsert
from marketplace_service.levels import standing_for
from marketplace_service.models import Guide, utcnow
from marketplace_service.pricing import check_price, price_band

logger = logging.getLogger(__name__)

class GuideDirectory:
    """Guide profiles as seen by the transaction engine."""

    def __init__(self, session_factory: sessionmaker, clock: Callable = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def upsert(self, guide_id: str, profile: GuideUpsert) -> Guide:
        with self.session_factory() as db:
            guide = db.get(Guide, guide_id)
            if guide is None:
                guide = Guide(id=guide_id)
                db.add(guide)
            guide.completed_orders = profile.completed_orders
            guide.good_reviews = profile.good_reviews
            guide.has_photography_equipment = profile.has_photography_equipment
            guide.has_vehicle = profile.has_vehicle
            guide.verified = profile.verified
            check_price(guide, profile.hourly_price)
            guide.hourly_price = profile.hourly_price
            guide.updated_at = self.clock()
            db.commit()
        logger.info(f"Guide {guide_id} profile saved")
        return guide

    def get(self, guide_id: str) -> Guide:
        with self.session_factory() as db:
            guide = db.get(Guide, guide_id)
            if guide is None:
                raise NotFoundError(f"guide {guide_id} not found", field="guide_id")
            return guide

    def set_verification(self, guide_id: str, verified: bool) -> Guide:
        """Record the certification service's verdict."""
        with self.session_factory() as db:
            guide = db.get(Guide, guide_id)
            if guide is None:
                raise NotFoundError(f"guide {guide_id} not found", field="guide_id")
            guide.verified = verified
            guide.updated_at = self.clock()
            db.commit()
        logger.info(f"Guide {guide_id} verification set to {verified}")
        return guide

    def level_info(self, guide_id: str) -> GuideLevelOut:
        guide = self.get(guide_id)
        standing = standing_for(guide)
        floor, ceiling = price_band(guide)
        return GuideLevelOut(
            guide_id=guide.id,
            points=standing.points,
            level=standing.level,
            commission_rate=float(standing.commission_rate),
            level_progress=round(standing.level_progress, 2),
            points_to_next_level=standing.points_to_next_level,
            price_floor=floor,
            price_ceiling=ceiling,
            hourly_price=guide.hourly_price,
            verified=guide.verified,
        )
