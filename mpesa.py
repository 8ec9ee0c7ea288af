"""M-Pesa STK callback processing.

Safaricom posts the outcome of an STK push here. The matching transaction
is marked SUCCESS or FAILED, and a successful payment unlocks the feature
the user paid for.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from in_memory_db import fetch_single_document
from transitions import ListingStatus, TransactionStatus, TransactionType

logger = logging.getLogger(__name__)

ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}
DISABLED_BODY = {"message": "M-Pesa integration temporarily disabled"}

CONTACT_ACCESS_DAYS = 30
FEATURED_DAYS = 30
BOOST_DAYS = 7


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_seconds: int


class FixedWindowRateLimiter:
    """Per-key request counter over fixed windows, kept in process memory."""

    def __init__(self) -> None:
        self._counts: Dict[str, Tuple[int, int]] = {}
        self._window: Optional[int] = None

    def allow(self, key: str, limit: int, window_seconds: int, now: Optional[float] = None) -> RateLimitResult:
        now_s = int(now if now is not None else time.time())
        window = now_s // window_seconds

        if window != self._window:
            # only the current window's counters are kept
            self._counts = {k: v for k, v in self._counts.items() if v[0] == window}
            self._window = window

        seen_window, count = self._counts.get(key, (window, 0))
        val = (count if seen_window == window else 0) + 1
        self._counts[key] = (window, val)
        remaining = max(0, limit - val)
        reset = window_seconds - (now_s % window_seconds)
        return RateLimitResult(allowed=val <= limit, remaining=remaining, reset_seconds=reset)


def metadata_value(items: Optional[List[Dict[str, Any]]], name: str) -> Any:
    for item in items or []:
        if item.get("Name") == name:
            return item.get("Value")
    return None


async def apply_permissions(db: Any, transaction: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """Unlock what ``transaction`` paid for. Returns False when nothing applied."""
    now = now or datetime.now(timezone.utc)
    user_id = transaction.get("user_id")
    listing_id = transaction.get("listing_id")
    amount = transaction.get("amount") or 0

    try:
        kind = TransactionType(transaction.get("type"))
    except ValueError:
        logger.error("Unknown transaction type %r for user %s", transaction.get("type"), user_id)
        return False

    if kind is TransactionType.CONTACT_ACCESS:
        await db.users.update_one({"id": user_id}, {
            "$set": {
                "can_view_contacts": True,
                "contact_access_expires_at": (now + timedelta(days=CONTACT_ACCESS_DAYS)).isoformat(),
                "last_contact_payment_date": now.isoformat(),
                "last_transaction_date": now.isoformat(),
            },
            "$inc": {"total_contact_payments": amount},
        })
        logger.info("Granted contact access to user %s", user_id)
        return True

    if not listing_id:
        logger.error("No listing_id provided for %s", kind.value)
        return False

    if kind is TransactionType.FEATURED_LISTING:
        updates = {
            "is_featured": True,
            "featured_until": (now + timedelta(days=FEATURED_DAYS)).isoformat(),
            "featured_paid_at": now.isoformat(),
            "featured_paid_amount": amount,
        }
    elif kind is TransactionType.BOOSTED_LISTING:
        updates = {
            "is_boosted": True,
            "boosted_until": (now + timedelta(days=BOOST_DAYS)).isoformat(),
            "boosted_paid_at": now.isoformat(),
            "boosted_paid_amount": amount,
        }
    else:
        updates = {
            "status": ListingStatus.VACANT.value,
            "vacancy_paid_at": now.isoformat(),
            "vacancy_paid_amount": amount,
        }
    await db.listings.update_one({"id": listing_id}, {"$set": updates})
    logger.info("Applied %s for user %s on listing %s", kind.value, user_id, listing_id)
    return True


async def handle_callback(db: Any, payload: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Process one callback body and return what should be sent back.

    The reply is always ``ACCEPTED`` so that Safaricom does not retry.
    """
    now = now or datetime.now(timezone.utc)
    await db.mpesa_callbacks.insert_one({"data": payload, "received_at": now.isoformat()})

    stk = ((payload or {}).get("Body") or {}).get("stkCallback")
    if not stk:
        logger.info("Invalid callback format")
        return ACCEPTED

    checkout_id = stk.get("CheckoutRequestID")
    result_code = stk.get("ResultCode")
    result_desc = stk.get("ResultDesc")
    logger.info("M-Pesa callback %s: %s %s", checkout_id, result_code, result_desc)

    transaction, transaction_id = await fetch_single_document(
        db.transactions, "checkout_request_id", checkout_id
    )
    if not transaction:
        logger.error("Transaction not found for CheckoutRequestID %s", checkout_id)
        return ACCEPTED

    success = result_code == 0
    update: Dict[str, Any] = {
        "status": (TransactionStatus.SUCCESS if success else TransactionStatus.FAILED).value,
        "status_message": result_desc,
        "updated_at": now.isoformat(),
        "completed_at": now.isoformat(),
    }

    items = (stk.get("CallbackMetadata") or {}).get("Item")
    if success and items:
        receipt = metadata_value(items, "MpesaReceiptNumber")
        if receipt:
            update["mpesa_receipt_number"] = receipt
        await apply_permissions(db, transaction, now)
        await db.platform_settings.update_one(
            {"id": "config"},
            {"$inc": {"total_revenue": transaction.get("amount") or 0}, "$set": {"last_updated": now.isoformat()}},
            upsert=True,
        )
    elif not success:
        logger.warning("Payment failed for user %s: %s", transaction.get("user_id"), result_desc)

    await db.transactions.update_one({"id": transaction_id}, {"$set": update})
    logger.info("Transaction %s updated to %s", transaction_id, update["status"])
    return ACCEPTED
