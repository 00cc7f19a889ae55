import logging
from typing import Callable, Tuple
from sqlalchemy.orm import sessionmaker
from common.error_handling import NotFoundError, PriceOutOfRange, ValidationError
from common.settings import settings
from marketplace_service.levels import get_tier, standing_for
from marketplace_service.models import Guide, utcnow

logger = logging.getLogger(__name__)

def price_ceiling(level: str, verified: bool) -> int:
    # Unverified guides are capped regardless of tier
    if not verified:
        return settings.unverified_price_ceiling
    return get_tier(level).price_max

def price_band(guide: Guide) -> Tuple[int, int]:
    return settings.price_floor, price_ceiling(standing_for(guide).level, guide.verified)

def check_price(guide: Guide, price: int) -> None:
    if price <= 0:
        raise ValidationError("price must be positive", field="price")
    floor, ceiling = price_band(guide)
    if price < floor or price > ceiling:
        raise PriceOutOfRange(price, floor, ceiling)

class PriceGovernor:
    """Validates and applies a guide's hourly price.

    Orders capture the price when they are bound to a guide, so a change only
    affects orders bound afterwards.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def price_band(self, guide_id: str) -> Tuple[int, int]:
        with self.session_factory() as db:
            guide = db.get(Guide, guide_id)
            if guide is None:
                raise NotFoundError(f"guide {guide_id} not found", field="guide_id")
            return price_band(guide)

    def set_price(self, guide_id: str, price: int) -> Guide:
        with self.session_factory() as db:
            guide = db.get(Guide, guide_id)
            if guide is None:
                raise NotFoundError(f"guide {guide_id} not found", field="guide_id")
            check_price(guide, price)
            previous = guide.hourly_price
            guide.hourly_price = price
            guide.updated_at = self.clock()
            db.commit()
        logger.info(f"Guide {guide_id} price changed {previous} -> {price}/hour")
        return guide
