import math
from typing import Any, Optional
from urllib.parse import quote

VACANCY_RATE = 0.10
VACANCY_PAYMENT_MODE = "10% Monthly Rent"
DEFAULT_PAYMENT_LABEL = "Vacancy Listing"
PAYMENT_METHOD = "M-Pesa"


def round_half_up(value: float) -> int:
    """Round like the browser's Math.round (halves go up, not to even)."""
    return int(math.floor(value + 0.5))


def _as_rent(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return float(value)


def compute_vacancy_charge(monthly_rent: Any) -> int:
    rent = _as_rent(monthly_rent)
    if rent is None:
        return 0
    return round_half_up(rent * VACANCY_RATE)


def get_vacancy_payment_amount(monthly_rent: Any = None) -> int:
    if monthly_rent is None:
        return 0
    if isinstance(monthly_rent, str):
        try:
            monthly_rent = float(monthly_rent.strip() or 0)
        except ValueError:
            return 0
    return compute_vacancy_charge(monthly_rent)


def get_vacancy_payment_label(property_type: Optional[str] = None) -> str:
    if not property_type or not property_type.strip():
        return DEFAULT_PAYMENT_LABEL
    return property_type


def build_payment_instructions(
    listing: dict,
    till_number: str,
    account_name: str,
    support_contact: str,
) -> dict:
    """Everything a landlord needs to pay the activation fee for ``listing``."""
    label = get_vacancy_payment_label(listing.get("type"))
    amount = listing.get("amount_due")
    if not isinstance(amount, (int, float)):
        amount = get_vacancy_payment_amount(listing.get("price"))
    message = (
        "Hi, I have submitted a vacancy listing on Key-2-Rent and would like to "
        "confirm payment for publishing."
    )
    return {
        "listing_id": listing.get("id"),
        "label": label,
        "reference": listing.get("name") or label,
        "amount": amount,
        "formatted_amount": f"KES {amount:,}",
        "payment_method": PAYMENT_METHOD,
        "payment_mode": VACANCY_PAYMENT_MODE,
        "till_number": till_number,
        "account_name": account_name,
        "payment_status": listing.get("payment_status"),
        "support_whatsapp_url": f"https://wa.me/{support_contact}?text={quote(message)}",
    }
