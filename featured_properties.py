"""Featured placements: billing, expiry and the homepage rotation."""
import calendar
import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from transitions import FeaturedDisplayMode, FeaturedStatus
from vacancy_payments import round_half_up

logger = logging.getLogger(__name__)

FEATURED_BILLING_RATE = 0.25
FEATURED_DEFAULT_DURATION_DAYS = 30
ROTATION_INTERVAL_SECONDS = {
    FeaturedDisplayMode.SINGLE: 12,
    FeaturedDisplayMode.DOUBLE: 12,
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Entry = Tuple[Dict[str, Any], Optional[Dict[str, Any]]]


class FeaturedAgreementError(ValueError):
    pass


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def compute_featured_charge(monthly_rent: Any) -> int:
    if isinstance(monthly_rent, bool) or not isinstance(monthly_rent, (int, float)):
        return 0
    if not math.isfinite(monthly_rent) or monthly_rent <= 0:
        return 0
    return round_half_up(monthly_rent * FEATURED_BILLING_RATE)


def is_expired(record: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    end = parse_timestamp(record.get("end_date"))
    if end is None:
        return True
    now = now or datetime.now(timezone.utc)
    return now > end


def days_remaining(record: Dict[str, Any], now: Optional[datetime] = None) -> int:
    end = parse_timestamp(record.get("end_date"))
    if end is None:
        return 0
    now = now or datetime.now(timezone.utc)
    diff = (end - now).total_seconds()
    return max(0, math.ceil(diff / 86400))


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def billing_window(start: Optional[datetime] = None, now: Optional[datetime] = None) -> Dict[str, str]:
    begin = start or now or datetime.now(timezone.utc)
    return {
        "billing_start": begin.isoformat(),
        "billing_end": add_months(begin, 1).isoformat(),
    }


def should_display(record: Dict[str, Any], listing: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> bool:
    return (
        record.get("status") == FeaturedStatus.ACTIVE.value
        and bool(record.get("agreement_verified"))
        and not is_expired(record, now)
        and listing is not None
    )


def _start_of(entry: Entry) -> datetime:
    return parse_timestamp(entry[0].get("start_date")) or _EPOCH


def build_slides(entries: Sequence[Entry], mode: Any = FeaturedDisplayMode.SINGLE) -> List[List[Entry]]:
    """Group entries into carousel slides, oldest placement first.

    ``single`` yields one entry per slide, ``double`` pairs consecutive
    entries, so the last slide may hold one.
    """
    ordered = sorted(entries, key=_start_of)
    if not ordered:
        return []
    if FeaturedDisplayMode(mode) is FeaturedDisplayMode.DOUBLE:
        return [list(ordered[i:i + 2]) for i in range(0, len(ordered), 2)]
    return [[entry] for entry in ordered]


def rotation_mode(entries: Sequence[Entry]) -> FeaturedDisplayMode:
    ordered = sorted(entries, key=_start_of)
    if not ordered:
        return FeaturedDisplayMode.SINGLE
    try:
        return FeaturedDisplayMode(ordered[0][0].get("display_mode") or "single")
    except ValueError:
        return FeaturedDisplayMode.SINGLE


class FeaturedCarousel:
    def __init__(self, slides: List[List[Entry]], mode: FeaturedDisplayMode = FeaturedDisplayMode.SINGLE):
        self.slides = slides
        self.mode = mode
        self.index = 0

    @property
    def interval_seconds(self) -> int:
        return ROTATION_INTERVAL_SECONDS[self.mode]

    def __len__(self) -> int:
        return len(self.slides)

    @property
    def current(self) -> List[Entry]:
        if not self.slides:
            return []
        return self.slides[self.index]

    def advance(self) -> int:
        if len(self.slides) > 1:
            self.index = (self.index + 1) % len(self.slides)
        return self.index

    def next(self) -> int:
        return self.advance()

    def prev(self) -> int:
        if self.slides:
            self.index = (self.index - 1) % len(self.slides)
        return self.index

    def reset(self) -> None:
        self.index = 0

    def index_at(self, elapsed_seconds: float) -> int:
        if len(self.slides) <= 1:
            return 0
        return int(elapsed_seconds // self.interval_seconds) % len(self.slides)


def _end_date(days: int, now: Optional[datetime]) -> str:
    return ((now or datetime.now(timezone.utc)) + timedelta(days=days)).isoformat()


async def load_featured_entries(db: Any) -> List[Entry]:
    records = await db.featured_properties.find({}, {"_id": 0}).sort("start_date", 1).to_list(1000)
    listing_ids = list({r.get("listing_id") for r in records if r.get("listing_id")})
    listings = await db.listings.find({"id": {"$in": listing_ids}}, {"_id": 0}).to_list(1000)
    by_id = {listing["id"]: listing for listing in listings}
    return [(record, by_id.get(record.get("listing_id"))) for record in records]


async def build_rotation(db: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    entries = [e for e in await load_featured_entries(db) if should_display(e[0], e[1], now)]
    mode = rotation_mode(entries)
    carousel = FeaturedCarousel(build_slides(entries, mode), mode)
    return {
        "display_mode": mode.value,
        "interval_ms": carousel.interval_seconds * 1000,
        "current_index": carousel.index_at(now.timestamp()),
        "slides": [
            [{"featured": record, "listing": listing} for record, listing in slide]
            for slide in carousel.slides
        ],
    }


async def create_featured_property(
    db: Any,
    listing_id: str,
    featured_by: str,
    display_mode: FeaturedDisplayMode,
    agreement_verified: bool,
    monthly_rent: float,
    duration_days: int = FEATURED_DEFAULT_DURATION_DAYS,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if not agreement_verified:
        raise FeaturedAgreementError("Agreement must be verified before featuring a property.")

    now = now or datetime.now(timezone.utc)
    record = {
        "id": str(uuid.uuid4()),
        "listing_id": listing_id,
        "featured_by": featured_by,
        "start_date": now.isoformat(),
        "end_date": _end_date(duration_days, now),
        "status": FeaturedStatus.ACTIVE.value,
        "agreement_verified": True,
        "display_mode": FeaturedDisplayMode(display_mode).value,
        "monthly_rent": monthly_rent,
        "monthly_charge": compute_featured_charge(monthly_rent),
        "created_at": now.isoformat(),
        "updated_at": now.isoformat(),
        **billing_window(now=now),
    }
    await db.featured_properties.insert_one(dict(record))
    logger.info("Featured listing %s by %s until %s", listing_id, featured_by, record["end_date"])
    return record


async def renew_featured_property(
    db: Any,
    featured_id: str,
    duration_days: int = FEATURED_DEFAULT_DURATION_DAYS,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    end = _end_date(duration_days, now)
    updates = {
        "end_date": end,
        "status": FeaturedStatus.ACTIVE.value,
        "updated_at": now.isoformat(),
        "billing_start": now.isoformat(),
        "billing_end": end,
    }
    await db.featured_properties.update_one({"id": featured_id}, {"$set": updates})
    return updates


async def update_featured_property(
    db: Any,
    featured_id: str,
    featured_by: str,
    agreement_verified: bool,
    listing_id: Optional[str] = None,
    display_mode: Optional[FeaturedDisplayMode] = None,
    monthly_rent: Optional[float] = None,
    duration_days: int = FEATURED_DEFAULT_DURATION_DAYS,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if not agreement_verified:
        raise FeaturedAgreementError("Agreement must be verified before updating a featured property.")

    now = now or datetime.now(timezone.utc)
    updates: Dict[str, Any] = {
        "updated_at": now.isoformat(),
        "featured_by": featured_by,
        "agreement_verified": True,
    }
    if listing_id:
        updates["listing_id"] = listing_id
        updates["start_date"] = now.isoformat()
    if display_mode:
        updates["display_mode"] = FeaturedDisplayMode(display_mode).value
    if isinstance(monthly_rent, (int, float)):
        updates["monthly_rent"] = monthly_rent
        updates["monthly_charge"] = compute_featured_charge(monthly_rent)
        updates.update(billing_window(now=now))
    updates["end_date"] = _end_date(duration_days, now)
    updates["status"] = FeaturedStatus.ACTIVE.value
    await db.featured_properties.update_one({"id": featured_id}, {"$set": updates})
    return updates


async def remove_featured_property(db: Any, featured_id: str) -> bool:
    result = await db.featured_properties.delete_one({"id": featured_id})
    return result.deleted_count > 0


async def expire_featured_property(db: Any, featured_id: str, now: Optional[datetime] = None) -> None:
    now = now or datetime.now(timezone.utc)
    await db.featured_properties.update_one(
        {"id": featured_id},
        {"$set": {"status": FeaturedStatus.EXPIRED.value, "updated_at": now.isoformat()}},
    )


async def set_display_mode(db: Any, mode: FeaturedDisplayMode, now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    result = await db.featured_properties.update_many(
        {},
        {"$set": {"display_mode": FeaturedDisplayMode(mode).value, "updated_at": now.isoformat()}},
    )
    return result.matched_count


async def expire_overdue(db: Any, now: Optional[datetime] = None, dry_run: bool = False) -> List[str]:
    """Mark active records whose end date has passed as expired.

    Uses the same rule as :func:`is_expired`, so a record ending exactly
    at ``now`` is still active. Records without an end date are left alone
    here even though the rotation already treats them as expired.
    """
    now = now or datetime.now(timezone.utc)
    records = await db.featured_properties.find(
        {"status": {"$ne": FeaturedStatus.EXPIRED.value}}, {"_id": 0}
    ).to_list(None)
    overdue = []
    for record in records:
        if parse_timestamp(record.get("end_date")) is not None and is_expired(record, now):
            overdue.append(record["id"])
    if dry_run or not overdue:
        return overdue
    await db.featured_properties.update_many(
        {"id": {"$in": overdue}},
        {"$set": {"status": FeaturedStatus.EXPIRED.value, "updated_at": now.isoformat()}},
    )
    for featured_id in overdue:
        logger.info("Expired featured property %s", featured_id)
    return overdue
