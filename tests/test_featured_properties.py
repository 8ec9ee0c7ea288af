from datetime import datetime, timedelta, timezone

import pytest

import featured_properties as fp
from in_memory_db import InMemoryDB
from transitions import FeaturedDisplayMode

NOW = datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc)


def _entry(idx, **record):
    base = {
        "id": f"f{idx}",
        "listing_id": f"l{idx}",
        "start_date": (NOW - timedelta(days=10 - idx)).isoformat(),
        "end_date": (NOW + timedelta(days=20)).isoformat(),
        "status": "active",
        "agreement_verified": True,
        "display_mode": "single",
    }
    base.update(record)
    return base, {"id": base["listing_id"], "price": 10000}


def test_featured_charge_is_quarter_of_rent():
    assert fp.compute_featured_charge(10000) == 2500
    assert fp.compute_featured_charge(0) == 0
    assert fp.compute_featured_charge(None) == 0


def test_expiry_is_strictly_after_end_date():
    assert fp.is_expired({"end_date": (NOW - timedelta(milliseconds=1)).isoformat()}, NOW)
    assert not fp.is_expired({"end_date": (NOW + timedelta(days=1)).isoformat()}, NOW)
    assert not fp.is_expired({"end_date": NOW.isoformat()}, NOW)


def test_missing_end_date_counts_as_expired():
    assert fp.is_expired({}, NOW)
    assert fp.days_remaining({}, NOW) == 0


def test_days_remaining_rounds_up_partial_days():
    assert fp.days_remaining({"end_date": (NOW + timedelta(hours=30)).isoformat()}, NOW) == 2
    assert fp.days_remaining({"end_date": (NOW - timedelta(days=3)).isoformat()}, NOW) == 0


def test_billing_window_clamps_to_month_end():
    window = fp.billing_window(start=datetime(2026, 1, 31, tzinfo=timezone.utc))
    assert window["billing_end"].startswith("2026-02-28")


def test_should_display_requires_active_verified_unexpired_with_listing():
    record, listing = _entry(1)
    assert fp.should_display(record, listing, NOW)
    assert not fp.should_display(record, None, NOW)
    assert not fp.should_display({**record, "agreement_verified": False}, listing, NOW)
    assert not fp.should_display({**record, "status": "expired"}, listing, NOW)
    assert not fp.should_display({**record, "end_date": None}, listing, NOW)


def test_single_mode_gives_one_entry_per_slide():
    entries = [_entry(i) for i in range(5)]
    slides = fp.build_slides(entries, FeaturedDisplayMode.SINGLE)
    assert [len(s) for s in slides] == [1, 1, 1, 1, 1]


def test_double_mode_pairs_entries_oldest_first():
    entries = [_entry(i) for i in reversed(range(5))]
    slides = fp.build_slides(entries, "double")
    assert [len(s) for s in slides] == [2, 2, 1]
    assert [e[0]["id"] for e in slides[0]] == ["f0", "f1"]


def test_missing_start_date_sorts_first():
    entries = [_entry(1), _entry(2, start_date=None)]
    slides = fp.build_slides(entries)
    assert slides[0][0][0]["id"] == "f2"


def test_rotation_mode_follows_oldest_entry():
    entries = [_entry(2, display_mode="single"), _entry(1, display_mode="double")]
    assert fp.rotation_mode(entries) is FeaturedDisplayMode.DOUBLE
    assert fp.rotation_mode([]) is FeaturedDisplayMode.SINGLE


def test_carousel_wraps_in_both_directions():
    carousel = fp.FeaturedCarousel(fp.build_slides([_entry(i) for i in range(3)]))
    assert carousel.interval_seconds == 12
    assert [carousel.next(), carousel.next(), carousel.next()] == [1, 2, 0]
    assert carousel.prev() == 2
    carousel.reset()
    assert carousel.index == 0
    assert carousel.index_at(25) == 2
    assert carousel.index_at(36) == 0


def test_carousel_with_one_slide_stays_put():
    carousel = fp.FeaturedCarousel(fp.build_slides([_entry(1)]))
    assert carousel.advance() == 0
    assert carousel.index_at(1000) == 0


def _store():
    visible, _ = _entry(1)
    overdue, _ = _entry(2, end_date=(NOW - timedelta(hours=1)).isoformat())
    no_end, _ = _entry(3, end_date=None)
    return InMemoryDB(
        listings=[{"id": "l1", "price": 10000}, {"id": "l2", "price": 8000}],
        featured=[visible, overdue, no_end],
    )


@pytest.mark.asyncio
async def test_expire_overdue_marks_only_past_end_dates():
    db = _store()
    assert await fp.expire_overdue(db, NOW, dry_run=True) == ["f2"]
    assert (await db.featured_properties.find_one({"id": "f2"}))["status"] == "active"

    assert await fp.expire_overdue(db, NOW) == ["f2"]
    assert (await db.featured_properties.find_one({"id": "f2"}))["status"] == "expired"
    assert (await db.featured_properties.find_one({"id": "f3"}))["status"] == "active"
    assert await fp.expire_overdue(db, NOW) == []


@pytest.mark.asyncio
async def test_rotation_skips_undisplayable_entries():
    rotation = await fp.build_rotation(_store(), NOW)
    assert rotation["display_mode"] == "single"
    assert rotation["interval_ms"] == 12000
    assert [[s["featured"]["id"] for s in slide] for slide in rotation["slides"]] == [["f1"]]


@pytest.mark.asyncio
async def test_create_requires_verified_agreement():
    db = InMemoryDB()
    with pytest.raises(fp.FeaturedAgreementError):
        await fp.create_featured_property(db, "l1", "admin@x", "single", False, 10000, now=NOW)
    assert await db.featured_properties.count_documents({}) == 0


@pytest.mark.asyncio
async def test_create_renew_and_set_display_mode():
    db = InMemoryDB()
    record = await fp.create_featured_property(db, "l1", "admin@x", "double", True, 10000, 30, now=NOW)
    assert record["monthly_charge"] == 2500
    assert record["end_date"] == (NOW + timedelta(days=30)).isoformat()
    assert record["billing_end"].startswith("2026-04-15")

    later = NOW + timedelta(days=40)
    updates = await fp.renew_featured_property(db, record["id"], 14, now=later)
    stored = await db.featured_properties.find_one({"id": record["id"]})
    assert stored["end_date"] == updates["end_date"] == (later + timedelta(days=14)).isoformat()
    assert stored["status"] == "active"

    assert await fp.set_display_mode(db, FeaturedDisplayMode.SINGLE, now=later) == 1
    assert (await db.featured_properties.find_one({"id": record["id"]}))["display_mode"] == "single"

    assert await fp.remove_featured_property(db, record["id"])
    assert not await fp.remove_featured_property(db, record["id"])


@pytest.mark.asyncio
async def test_sweep_agrees_with_expiry_check_at_end_instant():
    record, _ = _entry(4, end_date=NOW.isoformat())
    db = InMemoryDB(featured=[record])
    assert not fp.is_expired(record, NOW)
    assert await fp.expire_overdue(db, NOW) == []
    later = NOW + timedelta(milliseconds=1)
    assert fp.is_expired(record, later)
    assert await fp.expire_overdue(db, later) == ["f4"]
