import uuid
from datetime import datetime, timezone, timedelta
from typing import List, Dict, Any

from vacancy_payments import VACANCY_PAYMENT_MODE, compute_vacancy_charge
from featured_properties import billing_window, compute_featured_charge


LOCATIONS = [
    "Machakos Town",
    "Athi River",
    "Syokimau",
    "Mlolongo",
    "Kitengela",
    "Tala",
]

PROPERTY_TYPES = [
    {"type": "Bedsitter", "rent": 6500},
    {"type": "Single Room", "rent": 4500},
    {"type": "1 Bedroom", "rent": 12000},
    {"type": "2 Bedroom", "rent": 18500},
    {"type": "3 Bedroom", "rent": 28000},
    {"type": "Business", "rent": 35000},
]

STATUSES = ["Vacant", "Occupied", "Available Soon", "For Sale"]

LANDLORDS = [
    {"id": "landlord-mutua", "name": "Peter Mutua", "email": "mutua@key2rent.co.ke", "phone_number": "0712345678"},
    {"id": "landlord-wanjiku", "name": "Grace Wanjiku", "email": "wanjiku@key2rent.co.ke", "phone_number": "0722345678"},
    {"id": "landlord-otieno", "name": "Brian Otieno", "email": "otieno@key2rent.co.ke", "phone_number": "+254733345678"},
]

ADMIN = {"id": "admin-root", "name": "Site Admin", "email": "admin@key2rent.co.ke", "phone_number": None}

IMAGES = [
    "https://images.unsplash.com/photo-1505693416388-ac5ce068fe85?w=1200",
    "https://images.unsplash.com/photo-1470246973918-29a93221c455?w=1200",
    "https://images.unsplash.com/photo-1502672260266-1c1ef2d93688?w=1200",
    "https://images.unsplash.com/photo-1507089947368-19c1da9775ae?w=1200",
]


def _features(prop_type: str) -> List[str]:
    if prop_type == "Business":
        return ["Street Frontage", "Parking", "Security"]
    return ["Water", "Electricity Token", "Security", "Parking"]


def generate_seed_users() -> List[Dict[str, Any]]:
    now = datetime.now(timezone.utc).isoformat()
    users = []
    for landlord in LANDLORDS:
        users.append({
            **landlord,
            "picture": None,
            "role": "landlord",
            "account_type": "landlord",
            "landlord_application_status": "approved",
            "listings": [],
            "can_view_contacts": False,
            "preferred_county": "Machakos",
            "suspended": False,
            "created_at": now,
        })
    users.append({
        **ADMIN,
        "picture": None,
        "role": "admin",
        "account_type": "tenant",
        "landlord_application_status": "none",
        "listings": [],
        "can_view_contacts": True,
        "preferred_county": None,
        "suspended": False,
        "created_at": now,
    })
    return users


def generate_seed_listings(users: List[Dict[str, Any]], count: int = 24) -> List[Dict[str, Any]]:
    """Create deterministic but varied seed data."""
    listings: List[Dict[str, Any]] = []
    landlords = [u for u in users if u["role"] == "landlord"]
    now = datetime.now(timezone.utc)

    for idx in range(count):
        prop = PROPERTY_TYPES[idx % len(PROPERTY_TYPES)]
        status = STATUSES[idx % len(STATUSES)]
        owner = landlords[idx % len(landlords)]
        rent = prop["rent"] + (idx * 250)
        total_units = 1 + (idx % 3)
        vacant = status == "Vacant"
        # every other vacant listing is still waiting on its activation fee
        awaiting_payment = vacant and idx % 8 == 0

        listing_id = str(uuid.uuid4())
        listings.append({
            "id": listing_id,
            "name": f"{prop['type']} at {LOCATIONS[idx % len(LOCATIONS)]} #{idx + 1}",
            "type": prop["type"],
            "location": LOCATIONS[idx % len(LOCATIONS)],
            "location_description": "Five minutes from the main road",
            "price": rent,
            "sale_price": rent * 150 if status == "For Sale" else None,
            "deposit": rent,
            "deposit_months": 1,
            "description": f"Clean {prop['type'].lower()} with reliable water and secure parking.",
            "contact": owner["phone_number"],
            "images": IMAGES[: 2 + (idx % 3)],
            "features": _features(prop["type"]),
            "status": status,
            "total_units": total_units,
            "available_units": total_units if status != "Occupied" else 0,
            "user_id": owner["id"],
            "landlord_name": owner["name"],
            "approval_status": "published",
            "approved_at": now.isoformat(),
            "approved_by": ADMIN["email"],
            "rejection_reason": None,
            "payment_status": "pending" if awaiting_payment else "paid",
            "visibility_status": "hidden" if awaiting_payment else "visible",
            "payment_mode": VACANCY_PAYMENT_MODE if vacant else None,
            "amount_due": compute_vacancy_charge(rent) if vacant else None,
            "confirmation_text": "QWE12RTY9 Confirmed. Ksh paid to KEY2RENT" if awaiting_payment else None,
            "proof_upload_url": None,
            "is_featured": idx < 3,
            "is_boosted": idx % 5 == 0,
            "created_at": (now - timedelta(hours=idx)).isoformat(),
            "updated_at": (now - timedelta(hours=idx)).isoformat(),
        })
        owner["listings"].append(listing_id)

    return listings


def generate_seed_featured(listings: List[Dict[str, Any]], count: int = 4) -> List[Dict[str, Any]]:
    now = datetime.now(timezone.utc)
    featured = []
    visible = [lst for lst in listings if lst["visibility_status"] == "visible"]
    for idx, listing in enumerate(visible[:count]):
        start = now - timedelta(days=idx + 1)
        featured.append({
            "id": str(uuid.uuid4()),
            "listing_id": listing["id"],
            "featured_by": ADMIN["email"],
            "start_date": start.isoformat(),
            "end_date": (start + timedelta(days=30)).isoformat(),
            "status": "active",
            "agreement_verified": True,
            "display_mode": "single",
            "monthly_rent": listing["price"],
            "monthly_charge": compute_featured_charge(listing["price"]),
            "created_at": start.isoformat(),
            "updated_at": start.isoformat(),
            **billing_window(start=start),
        })
    return featured


USERS_DATA = generate_seed_users()
LISTINGS_DATA = generate_seed_listings(USERS_DATA)
FEATURED_DATA = generate_seed_featured(LISTINGS_DATA)
