"""
Guide tiers: stats -> points -> level -> commission rate.

Pure functions only. The points scheme is the order/review-weighted one:
5 points per completed order, 3 per good review, plus one-off bonuses for
providing photography equipment (50) and a vehicle (80).
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

POINTS_PER_COMPLETED_ORDER = 5
POINTS_PER_GOOD_REVIEW = 3
PHOTOGRAPHY_EQUIPMENT_BONUS = 50
VEHICLE_BONUS = 80

VERIFIED_COMMISSION_FACTOR = Decimal("0.8")

@dataclass(frozen=True)
class Tier:
    level: str
    min_points: int
    max_points: Optional[int]  # None for the top tier
    base_commission_rate: Decimal
    price_max: int  # hourly ceiling for verified guides

TIERS = (
    Tier("junior", 0, 100, Decimal("0.20"), 80),
    Tier("intermediate", 101, 300, Decimal("0.18"), 120),
    Tier("senior", 301, 600, Decimal("0.15"), 200),
    Tier("gold", 601, None, Decimal("0.12"), 300),
)
TIERS_BY_LEVEL = {t.level: t for t in TIERS}

@dataclass(frozen=True)
class GuideStanding:
    points: int
    level: str
    commission_rate: Decimal
    level_progress: float
    points_to_next_level: Optional[int]

def calculate_points(completed_orders: int, good_reviews: int, has_photography: bool, has_vehicle: bool) -> int:
    if completed_orders < 0 or good_reviews < 0:
        raise ValueError("order and review counts cannot be negative")
    points = completed_orders * POINTS_PER_COMPLETED_ORDER + good_reviews * POINTS_PER_GOOD_REVIEW
    if has_photography:
        points += PHOTOGRAPHY_EQUIPMENT_BONUS
    if has_vehicle:
        points += VEHICLE_BONUS
    return points

def tier_for(points: int) -> Tier:
    """Highest tier whose minimum is reached."""
    current = TIERS[0]
    for tier in TIERS:
        if points >= tier.min_points:
            current = tier
    return current

def level_for(points: int) -> str:
    return tier_for(points).level

def get_tier(level: str) -> Tier:
    try:
        return TIERS_BY_LEVEL[level]
    except KeyError:
        raise ValueError(f"unknown guide level {level!r}")

def commission_rate(level: str, verified: bool) -> Decimal:
    base = get_tier(level).base_commission_rate
    return base * VERIFIED_COMMISSION_FACTOR if verified else base

def next_tier(tier: Tier) -> Optional[Tier]:
    idx = TIERS.index(tier)
    return TIERS[idx + 1] if idx + 1 < len(TIERS) else None

def level_progress(points: int) -> float:
    tier = tier_for(points)
    if tier.max_points is None:
        return 100.0
    span = tier.max_points - tier.min_points + 1
    ratio = (points - tier.min_points) / span
    return min(1.0, max(0.0, ratio)) * 100

def points_to_next_level(points: int) -> Optional[int]:
    upcoming = next_tier(tier_for(points))
    if upcoming is None:
        return None
    return upcoming.min_points - points

def guide_points(guide) -> int:
    return calculate_points(guide.completed_orders, guide.good_reviews,
                            guide.has_photography_equipment, guide.has_vehicle)

def standing_for(guide) -> GuideStanding:
    """All derived tier values for a guide profile."""
    points = guide_points(guide)
    level = level_for(points)
    return GuideStanding(
        points=points,
        level=level,
        commission_rate=commission_rate(level, guide.verified),
        level_progress=level_progress(points),
        points_to_next_level=points_to_next_level(points),
    )
