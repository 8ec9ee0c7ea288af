"""Status enums and the state transitions allowed for each entity.

Every admin or owner mutation of a status field goes through one of the
``*_transition`` functions below. They return the ``$set`` document to
write and raise :class:`InvalidTransition` for a move the table does not
allow.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

DEFAULT_REJECTION_REASON = "No reason provided"


class ListingStatus(str, Enum):
    VACANT = "Vacant"
    OCCUPIED = "Occupied"
    AVAILABLE_SOON = "Available Soon"
    FOR_SALE = "For Sale"


class ApprovalStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    PUBLISHED = "published"
    RENTED = "rented"
    REJECTED = "rejected"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    VERIFIED = "verified"
    REJECTED = "rejected"


class VisibilityStatus(str, Enum):
    HIDDEN = "hidden"
    VISIBLE = "visible"


class LandlordApplicationStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class ProfileApplicationStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class UserRole(str, Enum):
    TENANT = "tenant"
    LANDLORD = "landlord"
    ADMIN = "admin"


class FeaturedStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class FeaturedDisplayMode(str, Enum):
    SINGLE = "single"
    DOUBLE = "double"


class TransactionType(str, Enum):
    CONTACT_ACCESS = "CONTACT_ACCESS"
    FEATURED_LISTING = "FEATURED_LISTING"
    BOOSTED_LISTING = "BOOSTED_LISTING"
    VACANCY_LISTING = "VACANCY_LISTING"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class ListingAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    MARK_RENTED = "mark_rented"
    REPUBLISH = "republish"
    REQUEUE = "requeue"


class PaymentAction(str, Enum):
    SUBMIT_PROOF = "submit_proof"
    APPROVE = "approve"
    REJECT = "reject"
    REFUND = "refund"


class ApplicationAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class InvalidTransition(ValueError):
    def __init__(self, entity: str, action: str, current: Optional[str]):
        self.entity = entity
        self.action = action
        self.current = current
        super().__init__(f"Cannot {action.replace('_', ' ')} {entity} while it is {current or 'unset'}")


_A = ApprovalStatus
LISTING_TRANSITIONS = {
    ListingAction.APPROVE: {_A.PENDING_APPROVAL, _A.REJECTED, _A.RENTED},
    ListingAction.REJECT: {_A.PENDING_APPROVAL, _A.PUBLISHED, _A.RENTED},
    ListingAction.MARK_RENTED: {_A.PUBLISHED},
    ListingAction.REPUBLISH: {_A.RENTED},
    ListingAction.REQUEUE: {_A.PUBLISHED, _A.RENTED, _A.REJECTED},
}

# target approval status -> action used by the admin status picker
LISTING_STATUS_ACTIONS = {
    _A.PUBLISHED: ListingAction.APPROVE,
    _A.REJECTED: ListingAction.REJECT,
    _A.RENTED: ListingAction.MARK_RENTED,
    _A.PENDING_APPROVAL: ListingAction.REQUEUE,
}

_P = PaymentStatus
PAYMENT_TRANSITIONS = {
    PaymentAction.SUBMIT_PROOF: {_P.PENDING, _P.REJECTED},
    PaymentAction.APPROVE: {_P.PENDING, _P.REJECTED},
    PaymentAction.REJECT: {_P.PENDING, _P.PAID, _P.VERIFIED},
    PaymentAction.REFUND: {_P.PAID, _P.VERIFIED, _P.REJECTED},
}

APPLICATION_TRANSITIONS = {
    ApplicationAction.APPROVE: {LandlordApplicationStatus.PENDING_APPROVAL},
    ApplicationAction.REJECT: {LandlordApplicationStatus.PENDING_APPROVAL},
}


def _coerce(enum_cls, value: Any):
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _iso(now: Optional[datetime]) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def rejection_reason(reason: Optional[str]) -> str:
    return (reason or "").strip() or DEFAULT_REJECTION_REASON


def listing_transition(
    listing: Dict[str, Any],
    action: ListingAction,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = _coerce(ApprovalStatus, listing.get("approval_status"))
    if current not in LISTING_TRANSITIONS[action]:
        raise InvalidTransition("listing", action.value, listing.get("approval_status"))

    updates: Dict[str, Any] = {"updated_at": _iso(now)}
    total = listing.get("total_units") or 1
    available = listing.get("available_units") or 0

    if action is ListingAction.APPROVE:
        updates.update({
            "approval_status": _A.PUBLISHED.value,
            "available_units": available if available > 0 else total,
            "approved_at": _iso(now),
            "approved_by": actor or "system",
            "rejection_reason": None,
        })
    elif action is ListingAction.REJECT:
        updates.update({
            "approval_status": _A.REJECTED.value,
            "rejection_reason": rejection_reason(reason),
        })
    elif action is ListingAction.MARK_RENTED:
        updates.update({"approval_status": _A.RENTED.value, "available_units": 0})
    elif action is ListingAction.REPUBLISH:
        updates.update({"approval_status": _A.PUBLISHED.value, "available_units": max(1, total)})
    elif action is ListingAction.REQUEUE:
        updates.update({"approval_status": _A.PENDING_APPROVAL.value})
    return updates


def adjust_units_update(listing: Dict[str, Any], adjustment: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Change available units, keeping them in ``[0, total_units]``.

    Zero available units marks the listing rented, anything above that
    publishes it. Returns an empty dict when nothing would change.
    """
    current = _coerce(ApprovalStatus, listing.get("approval_status"))
    if current not in (_A.PUBLISHED, _A.RENTED):
        raise InvalidTransition("listing", "adjust units of", listing.get("approval_status"))

    total = listing.get("total_units") or 1
    available = listing.get("available_units") or 0
    new_available = max(0, min(total, available + adjustment))
    new_status = _A.RENTED if new_available == 0 else _A.PUBLISHED
    if new_available == available and current is new_status:
        return {}
    return {
        "available_units": new_available,
        "approval_status": new_status.value,
        "updated_at": _iso(now),
    }


def payment_transition(
    listing: Dict[str, Any],
    action: PaymentAction,
    confirmation_text: Optional[str] = None,
    proof_upload_url: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if listing.get("status") != ListingStatus.VACANT.value:
        raise InvalidTransition("vacancy payment", action.value, "not vacant")
    current = _coerce(PaymentStatus, listing.get("payment_status"))
    if current not in PAYMENT_TRANSITIONS[action]:
        raise InvalidTransition("vacancy payment", action.value, listing.get("payment_status"))

    updates: Dict[str, Any] = {"updated_at": _iso(now)}
    if action is PaymentAction.SUBMIT_PROOF:
        text = (confirmation_text or "").strip()
        if not text and not proof_upload_url:
            raise ValueError(
                "Provide a payment confirmation message or upload a screenshot before continuing."
            )
        updates.update({
            "payment_status": _P.PENDING.value,
            "visibility_status": VisibilityStatus.HIDDEN.value,
            "confirmation_text": text or None,
            "proof_upload_url": proof_upload_url,
            "payment_submitted_at": _iso(now),
        })
    elif action is PaymentAction.APPROVE:
        updates.update({
            "payment_status": _P.PAID.value,
            "visibility_status": VisibilityStatus.VISIBLE.value,
            "vacancy_paid_at": _iso(now),
            "vacancy_paid_amount": listing.get("amount_due"),
        })
    elif action is PaymentAction.REJECT:
        updates.update({
            "payment_status": _P.REJECTED.value,
            "visibility_status": VisibilityStatus.HIDDEN.value,
            "admin_feedback": rejection_reason(reason),
        })
    elif action is PaymentAction.REFUND:
        updates.update({
            "payment_status": _P.PENDING.value,
            "visibility_status": VisibilityStatus.HIDDEN.value,
        })
    return updates


def application_transition(
    application: Dict[str, Any],
    action: ApplicationAction,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Dict[str, Any]]:
    """Return the application update and the matching user-profile update."""
    current = _coerce(LandlordApplicationStatus, application.get("status"))
    if current not in APPLICATION_TRANSITIONS[action]:
        raise InvalidTransition("landlord application", action.value, application.get("status"))

    reviewed = {"reviewed_at": _iso(now), "reviewed_by": actor or "system"}
    if action is ApplicationAction.APPROVE:
        return {
            "application": {"status": LandlordApplicationStatus.APPROVED.value, "admin_feedback": None, **reviewed},
            "user": {
                "role": UserRole.LANDLORD.value,
                "landlord_application_status": ProfileApplicationStatus.APPROVED.value,
            },
        }
    feedback = rejection_reason(reason)
    return {
        "application": {"status": LandlordApplicationStatus.REJECTED.value, "admin_feedback": feedback, **reviewed},
        "user": {"landlord_application_status": ProfileApplicationStatus.REJECTED.value},
    }
