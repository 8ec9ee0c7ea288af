import re
from typing import Any, Dict, Optional
from urllib.parse import quote

COUNTRY_CODE = "254"
SITE_NAME = "Key-2-Rent"


def normalize_phone_number(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    digits = re.sub(r"[^0-9]", "", raw)
    if not digits:
        return None
    if digits.startswith(COUNTRY_CODE):
        return digits
    if digits.startswith("0") and len(digits) == 10:
        return f"{COUNTRY_CODE}{digits[1:]}"
    return digits if len(digits) >= 9 else None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _price_for(listing: Dict[str, Any]) -> Optional[float]:
    if listing.get("status") == "For Sale":
        value = listing.get("sale_price")
    else:
        value = listing.get("price")
    return value if _is_number(value) else None


def _money(value: float) -> str:
    return f"Ksh {value:,.0f}"


def build_whatsapp_message(listing: Dict[str, Any]) -> str:
    name = (listing.get("name") or "").strip()
    label = name or f"{listing.get('type')} in {listing.get('location')}"
    for_sale = listing.get("status") == "For Sale"

    price = _price_for(listing)
    price_text = ""
    if price is not None:
        if for_sale:
            price_text = f" listed for sale at {_money(price)}"
        else:
            price_text = f" listed at {_money(price)} per month"

    if for_sale:
        closing = "I am very interested, could we discuss the purchase details and schedule a viewing?"
    else:
        closing = "I'm very interested, could we discuss the rental terms and schedule a viewing?"

    return (
        f"Hello! I came across your {label} on {SITE_NAME} and wanted to confirm "
        f"if it is still available{price_text}. {closing}"
    )


def whatsapp_link(listing: Dict[str, Any]) -> Optional[str]:
    phone = normalize_phone_number(listing.get("contact"))
    if not phone:
        return None
    return f"https://wa.me/{phone}?text={quote(build_whatsapp_message(listing))}"


def listing_summary(listing: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Title and description used when a listing link is shared."""
    if not listing:
        return {
            "title": f"{SITE_NAME} | Find Your Perfect Home in Kenya",
            "description": (
                "Discover rental listings across Kenya including bedsitters, single rooms, "
                "apartments, and business spaces."
            ),
        }

    type_label = listing.get("type") or "Property"
    location_label = listing.get("location") or "Kenya"
    price = _price_for(listing)
    suffix = "" if listing.get("status") == "For Sale" else " per month"

    if price is not None:
        lead = f"{type_label} available at {_money(price)}{suffix}."
    else:
        lead = f"{type_label} available now."
    return {
        "title": f"{type_label} in {location_label} | {SITE_NAME}",
        "description": f"{lead} Browse more rentals on {SITE_NAME}.",
    }
