from fastapi import FastAPI, APIRouter, HTTPException, Depends, Response, Cookie, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import json
import logging
from pathlib import Path
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from typing import Any, Dict, List, Optional
import uuid
from datetime import datetime, timezone, timedelta
import httpx

from in_memory_db import InMemoryDB
from mock_data import LISTINGS_DATA, USERS_DATA, FEATURED_DATA
from messaging import listing_summary, normalize_phone_number, whatsapp_link
from vacancy_payments import VACANCY_PAYMENT_MODE, build_payment_instructions, compute_vacancy_charge
import featured_properties as featured
import mpesa
from transitions import (
    ApplicationAction,
    ApprovalStatus,
    FeaturedDisplayMode,
    InvalidTransition,
    LandlordApplicationStatus,
    ListingAction,
    ListingStatus,
    LISTING_STATUS_ACTIONS,
    PaymentAction,
    PaymentStatus,
    ProfileApplicationStatus,
    UserRole,
    VisibilityStatus,
    adjust_units_update,
    application_transition,
    listing_transition,
    payment_transition,
)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

MONGO_URL = os.getenv('MONGO_URL')
DB_NAME = os.getenv('DB_NAME', 'key2rent')
USE_IN_MEMORY_DB = os.getenv('USE_IN_MEMORY_DB', 'true').lower() == 'true'
ENABLE_DEV_AUTH = os.getenv('ENABLE_DEV_AUTH', 'true').lower() == 'true'
AUTH_SESSION_URL = os.getenv('AUTH_SESSION_URL')
ADMIN_EMAILS = {e.strip().lower() for e in os.getenv('ADMIN_EMAILS', '').split(',') if e.strip()}
AUTO_APPROVE_LISTINGS = os.getenv('AUTO_APPROVE_LISTINGS', 'true').lower() == 'true'
MPESA_ENABLED = os.getenv('MPESA_ENABLED', 'false').lower() == 'true'
MPESA_TILL_NUMBER = os.getenv('MPESA_TILL_NUMBER', '6046866')
MPESA_ACCOUNT_NAME = os.getenv('MPESA_ACCOUNT_NAME', 'KEY-2-RENT')
VACANCY_SUPPORT_CONTACT = os.getenv('VACANCY_SUPPORT_CONTACT', '254708674665')
FEATURED_DURATION_DAYS = int(os.getenv('FEATURED_DURATION_DAYS', featured.FEATURED_DEFAULT_DURATION_DAYS))

CALLBACK_RATE_LIMIT = 50
CALLBACK_RATE_WINDOW_SECONDS = 60
GENERIC_FAILURE = "Update failed. Try again later"

client = None
if not USE_IN_MEMORY_DB and MONGO_URL:
    client = AsyncIOMotorClient(MONGO_URL)
    db = client[DB_NAME]
    DATA_SOURCE = "mongodb"
else:
    db = InMemoryDB(LISTINGS_DATA, USERS_DATA, FEATURED_DATA)
    DATA_SOURCE = "in-memory"
    USE_IN_MEMORY_DB = True

app = FastAPI(title="Key-2-Rent API")
api_router = APIRouter(prefix="/api")

callback_limiter = mpesa.FixedWindowRateLimiter()

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# Models
class User(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: str
    name: str
    picture: Optional[str] = None
    phone_number: Optional[str] = None
    role: UserRole = UserRole.TENANT
    account_type: str = "tenant"
    experience_level: Optional[str] = None
    preferred_county: Optional[str] = None
    landlord_application_status: ProfileApplicationStatus = ProfileApplicationStatus.NONE
    landlord_application_id: Optional[str] = None
    listings: List[str] = Field(default_factory=list)
    can_view_contacts: bool = False
    contact_access_expires_at: Optional[str] = None
    suspended: bool = False
    created_at: str = Field(default_factory=now_iso)


class Session(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    session_token: str
    expires_at: str
    created_at: str = Field(default_factory=now_iso)


class Listing(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: Optional[str] = None
    type: str
    location: str
    location_description: Optional[str] = None
    price: Optional[float] = None
    sale_price: Optional[float] = None
    deposit: Optional[float] = None
    deposit_months: Optional[int] = None
    business_terms: Optional[str] = None
    description: Optional[str] = None
    contact: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    status: ListingStatus
    total_units: int = 1
    available_units: int = 0
    user_id: str
    landlord_name: Optional[str] = None
    approval_status: ApprovalStatus = ApprovalStatus.PENDING_APPROVAL
    approved_at: Optional[str] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.PAID
    visibility_status: VisibilityStatus = VisibilityStatus.VISIBLE
    payment_mode: Optional[str] = None
    amount_due: Optional[int] = None
    confirmation_text: Optional[str] = None
    proof_upload_url: Optional[str] = None
    admin_feedback: Optional[str] = None
    is_featured: bool = False
    featured_until: Optional[str] = None
    is_boosted: bool = False
    boosted_until: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: Optional[str] = None


class LandlordApplication(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    user_name: str
    user_email: str
    payment_transaction_id: str
    status: LandlordApplicationStatus = LandlordApplicationStatus.PENDING_APPROVAL
    admin_feedback: Optional[str] = None
    reviewed_at: Optional[str] = None
    reviewed_by: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)


# Input Models
def _format_contact(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    digits = normalize_phone_number(value)
    if not digits or not digits.startswith("254") or len(digits) != 12:
        raise ValueError("Enter a valid Kenyan phone number, e.g. +254712345678.")
    return f"+{digits}"


class ListingCreate(BaseModel):
    name: Optional[str] = None
    type: str = Field(min_length=1)
    location: str = Field(min_length=1)
    location_description: Optional[str] = None
    price: float = Field(ge=1)
    sale_price: Optional[float] = None
    deposit: Optional[float] = None
    deposit_months: Optional[int] = None
    business_terms: Optional[str] = None
    description: Optional[str] = None
    contact: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    status: ListingStatus
    total_units: int = Field(default=1, ge=1)
    available_units: int = Field(default=0, ge=0)

    @field_validator("contact")
    @classmethod
    def check_contact(cls, value: Optional[str]) -> Optional[str]:
        return _format_contact(value)

    @field_validator("name", "business_terms", "location_description")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    @model_validator(mode="after")
    def check_units(self):
        if self.available_units > self.total_units:
            raise ValueError("Available units cannot exceed total units.")
        return self


class ListingUpdate(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    location: Optional[str] = None
    location_description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=1)
    sale_price: Optional[float] = None
    deposit: Optional[float] = None
    deposit_months: Optional[int] = None
    business_terms: Optional[str] = None
    description: Optional[str] = None
    contact: Optional[str] = None
    images: Optional[List[str]] = None
    features: Optional[List[str]] = None
    status: Optional[ListingStatus] = None
    total_units: Optional[int] = Field(default=None, ge=1)

    @field_validator("contact")
    @classmethod
    def check_contact(cls, value: Optional[str]) -> Optional[str]:
        return _format_contact(value)


class UnitsAdjust(BaseModel):
    adjustment: int


class ReasonPayload(BaseModel):
    reason: Optional[str] = None


class ApprovalChange(BaseModel):
    approval_status: ApprovalStatus
    reason: Optional[str] = None


class PaymentProof(BaseModel):
    confirmation_text: Optional[str] = Field(default=None, max_length=1200)
    proof_upload_url: Optional[str] = None


class PaymentReview(BaseModel):
    action: PaymentAction
    reason: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone_number: Optional[str] = None
    preferred_county: Optional[str] = None
    account_type: Optional[str] = None
    experience_level: Optional[str] = None


class LandlordApplicationCreate(BaseModel):
    payment_transaction_id: str = ""


class FeaturedCreate(BaseModel):
    listing_id: str = ""
    display_mode: FeaturedDisplayMode = FeaturedDisplayMode.SINGLE
    agreement_verified: bool = False
    duration_days: Optional[int] = Field(default=None, ge=1)


class FeaturedUpdate(BaseModel):
    listing_id: Optional[str] = None
    display_mode: Optional[FeaturedDisplayMode] = None
    agreement_verified: bool = False
    duration_days: Optional[int] = Field(default=None, ge=1)


class FeaturedRenew(BaseModel):
    duration_days: Optional[int] = Field(default=None, ge=1)


class DisplayModeChange(BaseModel):
    display_mode: FeaturedDisplayMode


class DevLogin(BaseModel):
    email: str
    name: str
    picture: Optional[str] = None


# Auth helpers
async def get_current_user(
    session_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None),
) -> Optional[User]:
    token = None
    if authorization:
        token = authorization.replace("Bearer ", "")
    token = token or session_token

    if not token:
        return None

    session = await db.sessions.find_one({"session_token": token})
    if not session or datetime.fromisoformat(session["expires_at"]) < datetime.now(timezone.utc):
        return None

    user = await db.users.find_one({"id": session["user_id"]}, {"_id": 0})
    return User(**user) if user else None


def is_admin(user: Optional[User]) -> bool:
    if not user:
        return False
    return user.role == UserRole.ADMIN or user.email.lower() in ADMIN_EMAILS


async def require_user(user: Optional[User] = Depends(get_current_user)) -> User:
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


async def require_admin(user: Optional[User] = Depends(get_current_user)) -> User:
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


async def _get_listing(listing_id: str) -> Dict[str, Any]:
    listing = await db.listings.find_one({"id": listing_id}, {"_id": 0})
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    return listing


async def _owned_listing(listing_id: str, user: User, action: str) -> Dict[str, Any]:
    listing = await _get_listing(listing_id)
    if listing["user_id"] != user.id and not is_admin(user):
        raise HTTPException(status_code=403, detail=f"You can only {action} your own listings")
    return listing


async def _write(collection: Any, doc_id: str, update: Dict[str, Any], what: str) -> None:
    try:
        await collection.update_one({"id": doc_id}, update)
    except Exception:
        logger.exception("Failed to update %s %s", what, doc_id)
        raise HTTPException(status_code=500, detail=GENERIC_FAILURE)


def _conflict(exc: InvalidTransition) -> HTTPException:
    return HTTPException(status_code=409, detail=str(exc))


async def _start_session(user: User, session_token: str) -> None:
    session = Session(
        user_id=user.id,
        session_token=session_token,
        expires_at=(datetime.now(timezone.utc) + timedelta(days=7)).isoformat(),
    )
    await db.sessions.insert_one(session.model_dump())


async def _find_or_create_user(email: str, name: str, picture: Optional[str]) -> User:
    existing_user = await db.users.find_one({"email": email}, {"_id": 0})
    if existing_user:
        return User(**existing_user)
    user = User(email=email, name=name, picture=picture)
    await db.users.insert_one(user.model_dump(mode="json"))
    return user


# Auth endpoints
@api_router.post("/auth/session")
async def create_session(request: Request, response: Response):
    session_id = request.headers.get("X-Session-ID")
    if not session_id:
        raise HTTPException(status_code=400, detail="Session ID required")
    if not AUTH_SESSION_URL:
        raise HTTPException(status_code=503, detail="External sign-in is not configured")

    async with httpx.AsyncClient() as http:
        resp = await http.get(AUTH_SESSION_URL, headers={"X-Session-ID": session_id})
        if resp.status_code != 200:
            raise HTTPException(status_code=401, detail="Invalid session")
        data = resp.json()

    user = await _find_or_create_user(data["email"], data["name"], data.get("picture"))
    session_token = data["session_token"]
    await _start_session(user, session_token)

    response.set_cookie(
        key="session_token",
        value=session_token,
        httponly=True,
        secure=True,
        samesite="none",
        max_age=604800,
        path="/"
    )
    return {"user": user.model_dump(mode="json")}


@api_router.post("/auth/dev-login")
async def dev_login(payload: DevLogin, response: Response):
    if not ENABLE_DEV_AUTH:
        raise HTTPException(status_code=403, detail="Developer login disabled")

    user = await _find_or_create_user(payload.email, payload.name, payload.picture)
    session_token = str(uuid.uuid4())
    await _start_session(user, session_token)

    response.set_cookie(
        key="session_token",
        value=session_token,
        httponly=True,
        secure=False,
        samesite="lax",
        max_age=604800,
        path="/"
    )
    return {"user": user.model_dump(mode="json"), "session_token": session_token, "source": DATA_SOURCE}


@api_router.get("/auth/me")
async def get_me(user: User = Depends(require_user)):
    return {"user": user.model_dump(mode="json"), "is_admin": is_admin(user)}


@api_router.post("/auth/logout")
async def logout(response: Response, session_token: Optional[str] = Cookie(None)):
    if session_token:
        await db.sessions.delete_one({"session_token": session_token})
    response.delete_cookie("session_token", path="/")
    return {"message": "Logged out"}


# Profile & landlord onboarding
@api_router.put("/me/profile")
async def update_profile(payload: ProfileUpdate, user: User = Depends(require_user)):
    update_dict = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "name" in update_dict and not update_dict["name"].strip():
        raise HTTPException(status_code=400, detail="Name cannot be empty")
    if update_dict:
        update_dict["updated_at"] = now_iso()
        await _write(db.users, user.id, {"$set": update_dict}, "user")
    updated = await db.users.find_one({"id": user.id}, {"_id": 0})
    return {"user": User(**updated).model_dump(mode="json")}


@api_router.post("/landlord-applications", response_model=LandlordApplication)
async def submit_landlord_application(payload: LandlordApplicationCreate, user: User = Depends(require_user)):
    if user.landlord_application_status in (ProfileApplicationStatus.PENDING, ProfileApplicationStatus.APPROVED):
        raise HTTPException(status_code=400, detail="You already have a landlord application on file")
    transaction_id = payload.payment_transaction_id.strip()
    if not transaction_id:
        raise HTTPException(status_code=400, detail="Enter the M-Pesa or payment transaction ID to proceed.")

    application = LandlordApplication(
        user_id=user.id,
        user_name=user.name,
        user_email=user.email,
        payment_transaction_id=transaction_id,
    )
    try:
        await db.landlord_applications.insert_one(application.model_dump(mode="json"))
        await db.users.update_one({"id": user.id}, {"$set": {
            "role": UserRole.LANDLORD.value,
            "landlord_application_status": ProfileApplicationStatus.PENDING.value,
            "landlord_application_id": application.id,
        }})
    except Exception:
        logger.exception("Failed to submit landlord application for %s", user.id)
        raise HTTPException(status_code=500, detail=GENERIC_FAILURE)
    return application


@api_router.get("/me/landlord-application")
async def get_my_landlord_application(user: User = Depends(require_user)):
    apps = await db.landlord_applications.find({"user_id": user.id}, {"_id": 0}).sort("created_at", -1).to_list(1)
    return {
        "status": user.landlord_application_status.value,
        "application": apps[0] if apps else None,
    }


# Listing endpoints
STATUS_PRIORITY = {
    ListingStatus.VACANT.value: 4,
    ListingStatus.FOR_SALE.value: 3,
    ListingStatus.AVAILABLE_SOON.value: 2,
    ListingStatus.OCCUPIED.value: 1,
}


def _timestamp(value: Any) -> float:
    parsed = featured.parse_timestamp(value)
    return parsed.timestamp() if parsed else 0.0


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def filter_listings(
    listings: List[Dict[str, Any]],
    location: Optional[str] = None,
    type: Optional[str] = None,
    status: Optional[str] = None,
    max_price: Optional[float] = None,
) -> List[Dict[str, Any]]:
    def keep(listing: Dict[str, Any]) -> bool:
        if location and location != "All" and listing.get("location") != location:
            return False
        if type and type != "All" and listing.get("type") != type:
            return False
        if status and status != "All" and _normalize(listing.get("status")) != _normalize(status):
            return False
        price = listing.get("price")
        if (
            max_price is not None
            and _normalize(listing.get("status")) != "for sale"
            and isinstance(price, (int, float))
            and price > max_price
        ):
            return False
        return True

    def sort_key(listing: Dict[str, Any]):
        return (
            0 if listing.get("is_featured") else 1,
            0 if listing.get("is_boosted") else 1,
            -STATUS_PRIORITY.get(listing.get("status"), 0),
            -_timestamp(listing.get("created_at")),
        )

    return sorted([lst for lst in listings if keep(lst)], key=sort_key)


PUBLIC_QUERY = {
    "visibility_status": VisibilityStatus.VISIBLE.value,
    "approval_status": ApprovalStatus.PUBLISHED.value,
}


def _is_public(listing: Dict[str, Any]) -> bool:
    return all(listing.get(k) == v for k, v in PUBLIC_QUERY.items())


@api_router.get("/listings", response_model=List[Listing])
async def get_listings(
    location: Optional[str] = None,
    type: Optional[str] = None,
    status: Optional[str] = None,
    max_price: Optional[float] = None,
    limit: int = 50
):
    listings = await db.listings.find(dict(PUBLIC_QUERY), {"_id": 0}).to_list(10000)
    return filter_listings(listings, location, type, status, max_price)[:limit]


@api_router.get("/listings/{listing_id}", response_model=Listing)
async def get_listing(listing_id: str, user: Optional[User] = Depends(get_current_user)):
    listing = await _get_listing(listing_id)
    if not _is_public(listing) and not (user and (user.id == listing["user_id"] or is_admin(user))):
        raise HTTPException(status_code=404, detail="Listing not found")
    return Listing(**listing)


@api_router.get("/listings/{listing_id}/summary")
async def get_listing_summary(listing_id: str):
    listing = await db.listings.find_one({"id": listing_id}, {"_id": 0})
    if listing and not _is_public(listing):
        listing = None
    summary = listing_summary(listing)
    summary["whatsapp_url"] = whatsapp_link(listing) if listing else None
    summary["image"] = (listing.get("images") or [None])[0] if listing else None
    return summary


def _vacancy_fields(status: ListingStatus, price: Optional[float]) -> Dict[str, Any]:
    if status is ListingStatus.VACANT:
        return {
            "payment_status": PaymentStatus.PENDING.value,
            "visibility_status": VisibilityStatus.HIDDEN.value,
            "payment_mode": VACANCY_PAYMENT_MODE,
            "amount_due": compute_vacancy_charge(price),
        }
    return {
        "payment_status": PaymentStatus.PAID.value,
        "visibility_status": VisibilityStatus.VISIBLE.value,
        "payment_mode": None,
        "amount_due": None,
    }


@api_router.post("/listings", response_model=Listing)
async def create_listing(payload: ListingCreate, user: User = Depends(require_user)):
    approval = ApprovalStatus.PUBLISHED if AUTO_APPROVE_LISTINGS else ApprovalStatus.PENDING_APPROVAL
    listing = Listing(
        **payload.model_dump(),
        user_id=user.id,
        landlord_name=user.name,
        approval_status=approval,
        **_vacancy_fields(payload.status, payload.price),
    )
    try:
        await db.listings.insert_one(listing.model_dump(mode="json"))
        await db.users.update_one({"id": user.id}, {"$addToSet": {"listings": listing.id}})
    except Exception:
        logger.exception("Failed to create listing for %s", user.id)
        raise HTTPException(status_code=500, detail=GENERIC_FAILURE)
    logger.info("Listing %s created by %s (%s)", listing.id, user.id, listing.status.value)
    return listing


@api_router.get("/me/listings", response_model=List[Listing])
async def get_my_listings(user: User = Depends(require_user)):
    listings = await db.listings.find({"user_id": user.id}, {"_id": 0}).sort("created_at", -1).to_list(1000)
    return listings


@api_router.put("/listings/{listing_id}", response_model=Listing)
async def update_listing(listing_id: str, payload: ListingUpdate, user: User = Depends(require_user)):
    existing = await _owned_listing(listing_id, user, "edit")

    update_dict = {k: v for k, v in payload.model_dump(exclude_unset=True, mode="json").items() if v is not None}
    if "total_units" in update_dict:
        update_dict["available_units"] = min(existing.get("available_units") or 0, update_dict["total_units"])

    status = ListingStatus(update_dict.get("status", existing["status"]))
    # a paid fee only carries over while the listing stays Vacant
    was_vacant = existing.get("status") == ListingStatus.VACANT.value
    paid = existing.get("payment_status") in (PaymentStatus.PAID.value, PaymentStatus.VERIFIED.value)
    if status is ListingStatus.VACANT and not (was_vacant and paid):
        update_dict.update(_vacancy_fields(status, update_dict.get("price", existing.get("price"))))

    if update_dict:
        update_dict["updated_at"] = now_iso()
        await _write(db.listings, listing_id, {"$set": update_dict}, "listing")

    updated = await db.listings.find_one({"id": listing_id}, {"_id": 0})
    return Listing(**updated)


@api_router.delete("/listings/{listing_id}")
async def delete_listing(listing_id: str, user: User = Depends(require_user)):
    existing = await _owned_listing(listing_id, user, "delete")
    try:
        await db.listings.delete_one({"id": listing_id})
        await db.users.update_one({"id": existing["user_id"]}, {"$pull": {"listings": listing_id}})
    except Exception:
        logger.exception("Failed to delete listing %s", listing_id)
        raise HTTPException(status_code=500, detail="Could not delete the listing. Please try again.")
    logger.info("Listing %s deleted by %s", listing_id, user.id)
    return {"message": "Listing deleted successfully"}


@api_router.post("/listings/{listing_id}/toggle-status", response_model=Listing)
async def toggle_listing_status(listing_id: str, user: User = Depends(require_user)):
    listing = await _owned_listing(listing_id, user, "update")
    current = listing.get("approval_status")
    action = ListingAction.MARK_RENTED if current == ApprovalStatus.PUBLISHED.value else ListingAction.REPUBLISH
    try:
        updates = listing_transition(listing, action, actor=user.email)
    except InvalidTransition as exc:
        raise _conflict(exc)
    await _write(db.listings, listing_id, {"$set": updates}, "listing")
    return Listing(**{**listing, **updates})


@api_router.post("/listings/{listing_id}/units", response_model=Listing)
async def adjust_units(listing_id: str, payload: UnitsAdjust, user: User = Depends(require_user)):
    listing = await _owned_listing(listing_id, user, "update")
    try:
        updates = adjust_units_update(listing, payload.adjustment)
    except InvalidTransition as exc:
        raise _conflict(exc)
    if updates:
        await _write(db.listings, listing_id, {"$set": updates}, "listing")
    return Listing(**{**listing, **updates})


# Vacancy payments
@api_router.get("/payments/vacancy/{listing_id}")
async def get_vacancy_payment(listing_id: str, user: User = Depends(require_user)):
    listing = await _owned_listing(listing_id, user, "pay for")
    if listing.get("status") != ListingStatus.VACANT.value:
        raise HTTPException(status_code=400, detail="Only vacant listings need an activation payment")
    return build_payment_instructions(listing, MPESA_TILL_NUMBER, MPESA_ACCOUNT_NAME, VACANCY_SUPPORT_CONTACT)


@api_router.post("/listings/{listing_id}/vacancy-payment", response_model=Listing)
async def submit_vacancy_payment(listing_id: str, payload: PaymentProof, user: User = Depends(require_user)):
    listing = await _owned_listing(listing_id, user, "pay for")
    try:
        updates = payment_transition(
            listing,
            PaymentAction.SUBMIT_PROOF,
            confirmation_text=payload.confirmation_text,
            proof_upload_url=payload.proof_upload_url,
        )
    except InvalidTransition as exc:
        raise _conflict(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    await _write(db.listings, listing_id, {"$set": updates}, "listing")
    logger.info("Vacancy payment proof submitted for listing %s", listing_id)
    return Listing(**{**listing, **updates})


# Featured properties
@api_router.get("/featured")
async def get_featured():
    return await featured.build_rotation(db)


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@api_router.get("/featured/stream")
async def stream_featured(request: Request):
    async def events():
        async with db.featured_properties.watch() as stream:
            yield _sse(await featured.build_rotation(db))
            async for _change in stream:
                if await request.is_disconnected():
                    break
                yield _sse(await featured.build_rotation(db))

    return StreamingResponse(events(), media_type="text/event-stream")


# Admin: listings
@api_router.get("/admin/listings", response_model=List[Listing])
async def admin_list_listings(
    search: Optional[str] = None,
    type: Optional[str] = None,
    status: Optional[ListingStatus] = None,
    approval_status: Optional[ApprovalStatus] = None,
    admin: User = Depends(require_admin),
):
    query: Dict[str, Any] = {}
    if search:
        query["$or"] = [
            {"name": {"$regex": search, "$options": "i"}},
            {"location": {"$regex": search, "$options": "i"}},
            {"type": {"$regex": search, "$options": "i"}},
        ]
    if type and type != "all":
        query["type"] = type
    if status:
        query["status"] = status.value
    if approval_status:
        query["approval_status"] = approval_status.value
    return await db.listings.find(query, {"_id": 0}).sort("created_at", -1).to_list(10000)


async def _apply_listing_action(listing_id: str, action: ListingAction, admin: User, reason: Optional[str] = None):
    listing = await _get_listing(listing_id)
    try:
        updates = listing_transition(listing, action, actor=admin.email, reason=reason)
    except InvalidTransition as exc:
        raise _conflict(exc)
    await _write(db.listings, listing_id, {"$set": updates}, "listing")
    logger.info("Admin %s applied %s to listing %s", admin.email, action.value, listing_id)
    return Listing(**{**listing, **updates})


@api_router.post("/admin/listings/{listing_id}/approve", response_model=Listing)
async def admin_approve_listing(listing_id: str, admin: User = Depends(require_admin)):
    return await _apply_listing_action(listing_id, ListingAction.APPROVE, admin)


@api_router.post("/admin/listings/{listing_id}/reject", response_model=Listing)
async def admin_reject_listing(listing_id: str, payload: ReasonPayload, admin: User = Depends(require_admin)):
    return await _apply_listing_action(listing_id, ListingAction.REJECT, admin, payload.reason)


@api_router.post("/admin/listings/{listing_id}/status", response_model=Listing)
async def admin_change_listing_status(listing_id: str, payload: ApprovalChange, admin: User = Depends(require_admin)):
    action = LISTING_STATUS_ACTIONS[payload.approval_status]
    return await _apply_listing_action(listing_id, action, admin, payload.reason)


@api_router.delete("/admin/listings/{listing_id}")
async def admin_delete_listing(listing_id: str, admin: User = Depends(require_admin)):
    return await delete_listing(listing_id, admin)


# Admin: vacancy payments
UNKNOWN_LANDLORD_NAMES = {None, "", "Unknown", "Unknown landlord"}


def _display_name(profile: Dict[str, Any]) -> Optional[str]:
    for key in ("full_name", "name", "display_name", "email"):
        value = profile.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


async def resolve_landlord_names(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    user_ids = list({r["user_id"] for r in records if r.get("user_id")})
    if not user_ids:
        return records
    profiles = await db.users.find({"id": {"$in": user_ids}}, {"_id": 0}).to_list(len(user_ids))
    names = {p["id"]: _display_name(p) or p["id"] for p in profiles}

    resolved = []
    for record in records:
        if record.get("landlord_name") not in UNKNOWN_LANDLORD_NAMES:
            resolved.append(record)
            continue
        name = names.get(record.get("user_id")) or record.get("landlord_name") or "Unknown landlord"
        resolved.append({**record, "landlord_name": name})
    return resolved


@api_router.get("/admin/vacant-payments", response_model=List[Listing])
async def admin_vacant_payments(admin: User = Depends(require_admin)):
    try:
        records = await db.listings.find(
            {"status": ListingStatus.VACANT.value, "amount_due": {"$ne": None, "$exists": True}},
            {"_id": 0},
        ).sort("created_at", -1).to_list(10000)
    except Exception:
        logger.exception("Failed to load vacant payments")
        raise HTTPException(status_code=500, detail="Could not load vacant payment records")
    records = [r for r in records if isinstance(r.get("amount_due"), (int, float))]
    return await resolve_landlord_names(records)


@api_router.post("/admin/vacant-payments/{listing_id}", response_model=Listing)
async def admin_review_vacant_payment(listing_id: str, payload: PaymentReview, admin: User = Depends(require_admin)):
    if payload.action is PaymentAction.SUBMIT_PROOF:
        raise HTTPException(status_code=400, detail="Admins review proofs, they do not submit them")
    listing = await _get_listing(listing_id)
    try:
        updates = payment_transition(listing, payload.action, reason=payload.reason)
    except InvalidTransition as exc:
        raise _conflict(exc)
    await _write(db.listings, listing_id, {"$set": updates}, "listing")
    logger.info("Admin %s applied %s to vacancy payment %s", admin.email, payload.action.value, listing_id)
    return Listing(**{**listing, **updates})


# Admin: landlord applications
@api_router.get("/admin/landlord-applications", response_model=List[LandlordApplication])
async def admin_landlord_applications(
    status: Optional[LandlordApplicationStatus] = None,
    admin: User = Depends(require_admin),
):
    query = {"status": status.value} if status else {}
    return await db.landlord_applications.find(query, {"_id": 0}).sort("created_at", -1).to_list(1000)


async def _review_application(application_id: str, action: ApplicationAction, admin: User, reason: Optional[str] = None):
    application = await db.landlord_applications.find_one({"id": application_id}, {"_id": 0})
    if not application:
        raise HTTPException(status_code=404, detail="Application not found")
    try:
        updates = application_transition(application, action, actor=admin.email, reason=reason)
    except InvalidTransition as exc:
        raise _conflict(exc)
    await _write(db.landlord_applications, application_id, {"$set": updates["application"]}, "landlord application")
    await _write(db.users, application["user_id"], {"$set": updates["user"]}, "user")
    logger.info("Admin %s applied %s to landlord application %s", admin.email, action.value, application_id)
    return LandlordApplication(**{**application, **updates["application"]})


@api_router.post("/admin/landlord-applications/{application_id}/approve", response_model=LandlordApplication)
async def admin_approve_application(application_id: str, admin: User = Depends(require_admin)):
    return await _review_application(application_id, ApplicationAction.APPROVE, admin)


@api_router.post("/admin/landlord-applications/{application_id}/reject", response_model=LandlordApplication)
async def admin_reject_application(application_id: str, payload: ReasonPayload, admin: User = Depends(require_admin)):
    return await _review_application(application_id, ApplicationAction.REJECT, admin, payload.reason)


# Admin: featured properties
@api_router.get("/admin/featured")
async def admin_featured_rows(admin: User = Depends(require_admin)):
    now = datetime.now(timezone.utc)
    rows = []
    for record, listing in await featured.load_featured_entries(db):
        days = featured.days_remaining(record, now)
        rows.append({
            "record": record,
            "listing": listing,
            "days_remaining": days,
            "expired": days == 0 or record.get("status") == "expired",
            "monthly_charge": featured.compute_featured_charge((listing or {}).get("price")) or None,
        })
    return rows


@api_router.get("/admin/featured/preview/{listing_id}")
async def admin_featured_preview(listing_id: str, admin: User = Depends(require_admin)):
    listing = await _get_listing(listing_id.strip())
    charge = featured.compute_featured_charge(listing.get("price"))
    return {"listing": listing, "monthly_charge": charge or None}


async def _featurable_listing(listing_id: str) -> Dict[str, Any]:
    if not listing_id.strip():
        raise HTTPException(status_code=400, detail="Listing ID required")
    listing = await db.listings.find_one({"id": listing_id.strip()}, {"_id": 0})
    if not listing:
        raise HTTPException(status_code=404, detail="Provide a valid listing ID before featuring.")
    price = listing.get("price")
    if not isinstance(price, (int, float)) or price <= 0:
        raise HTTPException(
            status_code=400,
            detail="Featured listings require a monthly rent to calculate the 25% charge.",
        )
    return listing


@api_router.post("/admin/featured")
async def admin_add_featured(payload: FeaturedCreate, admin: User = Depends(require_admin)):
    listing = await _featurable_listing(payload.listing_id)
    try:
        return await featured.create_featured_property(
            db,
            listing_id=listing["id"],
            featured_by=admin.email,
            display_mode=payload.display_mode,
            agreement_verified=payload.agreement_verified,
            monthly_rent=listing["price"],
            duration_days=payload.duration_days or FEATURED_DURATION_DAYS,
        )
    except featured.FeaturedAgreementError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


async def _get_featured(featured_id: str) -> Dict[str, Any]:
    record = await db.featured_properties.find_one({"id": featured_id}, {"_id": 0})
    if not record:
        raise HTTPException(status_code=404, detail="Featured property not found")
    return record


@api_router.post("/admin/featured/{featured_id}/renew")
async def admin_renew_featured(featured_id: str, payload: FeaturedRenew, admin: User = Depends(require_admin)):
    record = await _get_featured(featured_id)
    updates = await featured.renew_featured_property(db, featured_id, payload.duration_days or FEATURED_DURATION_DAYS)
    return {**record, **updates}


@api_router.put("/admin/featured/display-mode")
async def admin_set_display_mode(payload: DisplayModeChange, admin: User = Depends(require_admin)):
    try:
        count = await featured.set_display_mode(db, payload.display_mode)
    except Exception:
        logger.exception("Failed to update featured display mode")
        raise HTTPException(status_code=500, detail="Unable to update display mode.")
    return {"display_mode": payload.display_mode.value, "updated": count}


@api_router.put("/admin/featured/{featured_id}")
async def admin_replace_featured(featured_id: str, payload: FeaturedUpdate, admin: User = Depends(require_admin)):
    record = await _get_featured(featured_id)
    monthly_rent = None
    if payload.listing_id:
        listing = await _featurable_listing(payload.listing_id)
        monthly_rent = listing["price"]
    try:
        updates = await featured.update_featured_property(
            db,
            featured_id,
            featured_by=admin.email,
            agreement_verified=payload.agreement_verified,
            listing_id=payload.listing_id.strip() if payload.listing_id else None,
            display_mode=payload.display_mode,
            monthly_rent=monthly_rent,
            duration_days=payload.duration_days or FEATURED_DURATION_DAYS,
        )
    except featured.FeaturedAgreementError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {**record, **updates}


@api_router.post("/admin/featured/{featured_id}/expire")
async def admin_expire_featured(featured_id: str, admin: User = Depends(require_admin)):
    await _get_featured(featured_id)
    await featured.expire_featured_property(db, featured_id)
    return {"message": "Featured property expired"}


@api_router.delete("/admin/featured/{featured_id}")
async def admin_remove_featured(featured_id: str, admin: User = Depends(require_admin)):
    if not await featured.remove_featured_property(db, featured_id):
        raise HTTPException(status_code=404, detail="Featured property not found")
    return {"message": "Featured property removed"}


# M-Pesa
@api_router.post("/mpesa/stk-push")
async def mpesa_stk_push():
    logger.warning("M-Pesa STK push requested while integration disabled")
    return JSONResponse(status_code=503, content=mpesa.DISABLED_BODY)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@api_router.post("/mpesa/callback")
async def mpesa_callback(request: Request):
    if not MPESA_ENABLED:
        logger.warning("M-Pesa callback received while integration disabled")
        return JSONResponse(status_code=503, content=mpesa.DISABLED_BODY)

    client_ip = _client_ip(request)
    limit = callback_limiter.allow(f"mpesa-callback:{client_ip}", CALLBACK_RATE_LIMIT, CALLBACK_RATE_WINDOW_SECONDS)
    if not limit.allowed:
        logger.warning("Rate limit exceeded for M-Pesa callback from IP: %s", client_ip)
        return JSONResponse(status_code=429, content={"ResultCode": 1, "ResultDesc": "Rate limit exceeded"})

    try:
        payload = await request.json()
        return await mpesa.handle_callback(db, payload)
    except Exception:
        # reply Accepted even on internal errors
        logger.exception("Callback handler error")
        return mpesa.ACCEPTED


@api_router.get("/mpesa/callback")
async def mpesa_callback_probe():
    return {"message": "M-Pesa callback endpoint active"}


# Maintenance
@api_router.post("/tasks/expire-featured")
async def run_featured_expiry():
    expired = await featured.expire_overdue(db)
    return {"message": "Featured expiry task completed", "expired": len(expired)}


app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger.info("API data source: %s", DATA_SOURCE)


@app.on_event("shutdown")
async def shutdown_db_client():
    if client:
        client.close()
