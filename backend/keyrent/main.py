from __future__ import annotations

import json
import logging
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.middleware.trustedhost import TrustedHostMiddleware

from keyrent.config import (
    admin_email,
    admin_password,
    allowed_hosts,
    cors_origins,
    enforce_secure_secrets,
    payment_currency,
    paystack_public_key,
)
from keyrent.db import session_scope
from keyrent.errors import Conflict, Forbidden, GatewayError, KeyRentError, NotFound, Unauthorized, ValidationError
from keyrent.messaging import conversation_out, message_out
from keyrent.models import PENDING, Listing, Notification, User
from keyrent.payments import CANCELLED, GATEWAY_ERROR, Confirmed, Declined, payment_out
from keyrent.paystack import (
    PaystackClient,
    PaystackError,
    confirm_with_gateway,
    outcome_from_transaction,
    valid_webhook_signature,
)
from keyrent.rate_limit import limiter
from keyrent.security import create_access_token, hash_password, user_id_from_token, verify_password
from keyrent.services import Services, build_services


logger = logging.getLogger(__name__)

app = FastAPI(title="KeyRent API")

# Production hardening: ensure we don't run with dangerous defaults.
enforce_secure_secrets()

app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts())
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def _security_headers(request, call_next):
    resp = await call_next(request)
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    return resp


@app.exception_handler(KeyRentError)
async def _domain_error(request: Request, exc: KeyRentError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.on_event("startup")
def seed_admin_user() -> None:
    """Create the admin account named by ADMIN_EMAIL/ADMIN_PASSWORD, if both are set."""
    email, password = admin_email(), admin_password()
    if not email or not password:
        return
    try:
        with session_scope() as db:
            if build_services(db).users.find_by_email(email):
                return
            db.add(User(email=email, name="Administrator", role="admin", password_hash=hash_password(password)))
    except Exception:
        # The schema may not be migrated yet; the next start will retry.
        logger.warning("Admin seed skipped", exc_info=True)


# -----------------------
# Dependencies
# -----------------------
def get_db():
    with session_scope() as db:
        yield db


def get_services(db: Annotated[Session, Depends(get_db)]) -> Services:
    return build_services(db)


def get_payment_gateway() -> PaystackClient:
    return PaystackClient()


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


def get_current_user(
    db: Annotated[Session, Depends(get_db)],
    authorization: Annotated[str | None, Header()] = None,
) -> User:
    token = _bearer_token(authorization)
    if not token:
        raise Unauthorized("Not authenticated")
    user = db.get(User, user_id_from_token(token))
    if not user:
        raise Unauthorized("User not found")
    return user


def get_optional_user(
    db: Annotated[Session, Depends(get_db)],
    authorization: Annotated[str | None, Header()] = None,
) -> User | None:
    token = _bearer_token(authorization)
    if not token:
        return None
    try:
        return db.get(User, user_id_from_token(token))
    except Unauthorized:
        return None


def _require_admin(me: User) -> None:
    if (me.role or "").lower() != "admin":
        raise Forbidden("Admin only")


# -----------------------
# Schemas
# -----------------------
class _CamelIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterIn(BaseModel):
    email: str
    password: str = Field(min_length=6)
    name: str = ""
    phone: str = ""
    role: str = "user"  # user | owner


class LoginIn(BaseModel):
    email: str
    password: str


class ListingCreateIn(_CamelIn):
    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    price: int = Field(ge=0)
    location: str = ""
    property_type: str = Field(default="", alias="type", max_length=64)
    category: str = Field(default="", max_length=32)
    bedrooms: int | None = Field(default=None, ge=0)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    contact_phone: str = Field(default="", alias="contactPhone")
    contact_email: str = Field(default="", alias="contactEmail")


class ListingUpdateIn(_CamelIn):
    # Only fields present in the request body are changed.
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    price: int | None = Field(default=None, ge=0)
    location: str | None = None
    property_type: str | None = Field(default=None, alias="type", max_length=64)
    category: str | None = Field(default=None, max_length=32)
    bedrooms: int | None = Field(default=None, ge=0)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    contact_phone: str | None = Field(default=None, alias="contactPhone")
    contact_email: str | None = Field(default=None, alias="contactEmail")


class ContactAccessIn(_CamelIn):
    listing_id: int = Field(alias="listingId")


class InitiatePaymentIn(_CamelIn):
    kind: str
    listing_id: int | None = Field(default=None, alias="listingId")


class VerifyPaymentIn(BaseModel):
    reference: str = Field(min_length=1, max_length=64)
    # Set by the client when the user closed the checkout without paying.
    cancelled: bool = False


class ConversationIn(_CamelIn):
    listing_id: int = Field(alias="listingId")


class MessageIn(BaseModel):
    text: str


class VerificationIn(_CamelIn):
    method: str
    id_number: str = Field(alias="idNumber")


class ReviewIn(BaseModel):
    approve: bool


class AdminGrantIn(_CamelIn):
    user_id: int = Field(alias="userId")
    listing_id: int = Field(alias="listingId")


# -----------------------
# Serializers
# -----------------------
def _user_out(u: User) -> dict[str, Any]:
    return {
        "id": u.id,
        "email": u.email,
        "name": u.name,
        "phone": u.phone,
        "role": u.role,
        "isVerified": bool(u.is_verified),
    }


def _listing_out(listing: Listing, *, has_contact_access: bool | None = None) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": listing.id,
        "ownerId": listing.owner_id,
        "title": listing.title,
        "description": listing.description,
        "price": listing.price,
        "priceDisplay": f"{listing.price:,}",
        "location": listing.location,
        "type": listing.property_type or "",
        "category": listing.category or "",
        "bedrooms": listing.bedrooms,
        "latitude": listing.latitude,
        "longitude": listing.longitude,
        "approved": bool(listing.approved),
        "featured": bool(listing.featured),
        "createdAt": listing.created_at.isoformat() if listing.created_at else "",
    }
    if has_contact_access is not None:
        out["hasContactAccess"] = has_contact_access
    if has_contact_access:
        out["contactPhone"] = (listing.contact_phone or "").strip()
        out["contactEmail"] = (listing.contact_email or "").strip()
    return out


def _grant_out(grant) -> dict[str, Any] | None:
    if grant is None:
        return None
    return {
        "id": grant.id,
        "userId": grant.user_id,
        "listingId": grant.listing_id,
        "granted": bool(grant.granted),
        "paymentId": grant.payment_id,
        "grantedByAdmin": bool(grant.granted_by_admin),
    }


def _notification_out(n: Notification) -> dict[str, Any]:
    return {
        "id": n.id,
        "kind": n.kind,
        "title": n.title,
        "body": n.body,
        "relatedId": n.related_id,
        "read": bool(n.read),
        "createdAt": n.created_at.isoformat() if n.created_at else "",
    }


@app.get("/health")
def health():
    return {"ok": True}


# -----------------------
# Auth
# -----------------------
@app.post("/auth/register", status_code=201)
def register(data: RegisterIn, db: Annotated[Session, Depends(get_db)], svc: Annotated[Services, Depends(get_services)]):
    email = data.email.strip().lower()
    role = (data.role or "user").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("Invalid email")
    if role not in {"user", "owner"}:
        raise ValidationError("Invalid role")
    if svc.users.find_by_email(email):
        raise Conflict("User already exists")

    user = User(
        email=email,
        name=(data.name or "").strip(),
        phone=(data.phone or "").strip(),
        role=role,
        password_hash=hash_password(data.password),
    )
    try:
        with db.begin_nested():
            db.add(user)
    except IntegrityError:
        # Concurrent double-submits can still hit the unique email index.
        raise Conflict("User already exists")
    return {"ok": True, "user_id": user.id}


@app.post("/auth/login")
def login(data: LoginIn, svc: Annotated[Services, Depends(get_services)]):
    limiter.hit(key=f"login:{data.email.strip().lower()}", limit=10, window_seconds=60, detail="Too many login attempts")
    user = svc.users.find_by_email(data.email)
    if not user or not verify_password(data.password, user.password_hash):
        raise Unauthorized("Invalid credentials")
    return {
        "access_token": create_access_token(user_id=user.id, role=user.role),
        "token_type": "bearer",
        "user": _user_out(user),
    }


@app.get("/me")
def me_profile(me: Annotated[User, Depends(get_current_user)], svc: Annotated[Services, Depends(get_services)]):
    out = _user_out(me)
    # Server-side fee; clients must not compute their own.
    out["contactFee"] = svc.gate.fee_for_user(me.id)
    return out


# -----------------------
# Listings (browse is free; contact is fee-gated)
# -----------------------
@app.post("/listings", status_code=201)
def create_listing(
    data: ListingCreateIn,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
):
    listing = svc.listings.create_listing(
        owner_id=me.id,
        title=data.title.strip(),
        description=(data.description or "").strip(),
        price=int(data.price),
        location=(data.location or "").strip(),
        property_type=data.property_type.strip().lower(),
        category=data.category.strip().lower(),
        bedrooms=data.bedrooms,
        latitude=data.latitude,
        longitude=data.longitude,
        contact_phone=(data.contact_phone or me.phone or "").strip(),
        contact_email=(data.contact_email or me.email or "").strip(),
    )
    return _listing_out(listing, has_contact_access=True)


def _listing_page(me: User | None, svc: Services, items: list[Listing]) -> list[dict[str, Any]]:
    if not me:
        return [_listing_out(x) for x in items]
    granted = svc.gate.granted_listing_ids(me.id, [x.id for x in items])
    return [_listing_out(x, has_contact_access=(x.id in granted or int(x.owner_id) == int(me.id))) for x in items]


@app.get("/listings")
def list_listings(
    me: Annotated[User | None, Depends(get_optional_user)],
    svc: Annotated[Services, Depends(get_services)],
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    property_type: str | None = Query(default=None, alias="type"),
    category: str | None = None,
    min_price: int | None = Query(default=None, alias="minPrice", ge=0),
    max_price: int | None = Query(default=None, alias="maxPrice", ge=0),
):
    items = svc.listings.list_approved(
        limit=limit,
        offset=offset,
        property_type=property_type,
        category=category,
        min_price=min_price,
        max_price=max_price,
    )
    return {"items": _listing_page(me, svc, items)}


@app.get("/listings/featured")
def featured_listings(
    me: Annotated[User | None, Depends(get_optional_user)],
    svc: Annotated[Services, Depends(get_services)],
    limit: int = Query(default=5, ge=1, le=50),
):
    return {"items": _listing_page(me, svc, svc.listings.list_featured(limit=limit))}


@app.get("/listings/recent")
def recent_listings(
    me: Annotated[User | None, Depends(get_optional_user)],
    svc: Annotated[Services, Depends(get_services)],
    limit: int = Query(default=10, ge=1, le=50),
):
    return {"items": _listing_page(me, svc, svc.listings.list_recent(limit=limit))}


@app.get("/listings/nearby")
def nearby_listings(
    me: Annotated[User | None, Depends(get_optional_user)],
    svc: Annotated[Services, Depends(get_services)],
    lat: float | None = None,
    lng: float | None = None,
    radius_km: float = Query(default=5.0, alias="radiusKm", gt=0, le=200),
    limit: int = Query(default=10, ge=1, le=50),
):
    if lat is None or lng is None:
        raise ValidationError("lat and lng are required")
    hits = svc.listings.list_nearby(lat=lat, lng=lng, radius_km=radius_km, limit=limit)
    items = _listing_page(me, svc, [listing for listing, _ in hits])
    for out, (_, distance) in zip(items, hits):
        out["distanceKm"] = round(distance, 2)
    return {"items": items}


@app.get("/listings/{listing_id:int}")
def get_listing(
    listing_id: int,
    me: Annotated[User | None, Depends(get_optional_user)],
    svc: Annotated[Services, Depends(get_services)],
):
    listing = svc.listings.get_listing(listing_id)
    is_owner = bool(me and int(listing.owner_id) == int(me.id))
    if not listing.approved and not is_owner:
        raise NotFound("Listing not found")
    has_access = svc.gate.has_access(me.id, listing.id) if me else False
    return _listing_out(listing, has_contact_access=has_access)


@app.put("/listings/{listing_id:int}")
def update_listing(
    listing_id: int,
    data: ListingUpdateIn,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
):
    fields = data.model_dump(exclude_unset=True)
    for name in ("title", "description", "location", "contact_phone", "contact_email"):
        if fields.get(name) is not None:
            fields[name] = fields[name].strip()
    for name in ("property_type", "category"):
        if fields.get(name) is not None:
            fields[name] = fields[name].strip().lower()
    # Text columns are not nullable; an explicit null leaves them unchanged.
    fields = {k: v for k, v in fields.items() if v is not None or k in {"bedrooms", "latitude", "longitude"}}
    listing = svc.listings.update_listing(listing_id, me, **fields)
    return _listing_out(listing, has_contact_access=True)


@app.delete("/listings/{listing_id:int}")
def delete_listing(
    listing_id: int,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
):
    svc.listings.delete_listing(listing_id, me)
    return {"ok": True}



# -----------------------
# Contact access
# -----------------------
@app.get("/contact-access/{listing_id:int}")
def check_contact_access(
    listing_id: int,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
):
    limiter.hit(key=f"contact:{me.id}", limit=60, window_seconds=60, detail="Too many contact access checks")
    decision = svc.gate.check_access(me.id, listing_id)
    return {"hasAccess": decision.has_access, "grant": _grant_out(decision.grant)}


@app.post("/contact-access")
def request_contact_access(
    data: ContactAccessIn,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
):
    grant = svc.gate.request_access(me.id, data.listing_id)
    return {"grant": _grant_out(grant), "fee": svc.gate.fee_for_user(me.id)}


# -----------------------
# Payments
# -----------------------
@app.post("/payments/initiate", status_code=201)
def initiate_payment(
    data: InitiatePaymentIn,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
    gateway: Annotated[PaystackClient, Depends(get_payment_gateway)],
):
    init = svc.payments.initiate(me.id, data.kind, data.listing_id)
    out: dict[str, Any] = {
        "reference": init.reference,
        "paymentId": init.payment_id,
        "amount": init.amount,
        "currency": payment_currency(),
        "publicKey": paystack_public_key(),
    }
    if gateway.configured:
        # Hosted checkout is optional; the inline widget only needs the reference.
        try:
            paystack = gateway.initialize_transaction(
                email=me.email,
                amount_kobo=init.amount,
                reference=init.reference,
                currency=payment_currency(),
                metadata={"payment_id": init.payment_id, "kind": data.kind, "listing_id": data.listing_id},
            )
            out["authorizationUrl"] = paystack.get("authorization_url")
            out["accessCode"] = paystack.get("access_code")
        except PaystackError as e:
            logger.error("Paystack init failed for %s: %s", init.reference, e)
    return out


@app.post("/payments/verify/{payment_id:int}")
def verify_payment(
    payment_id: int,
    data: VerifyPaymentIn,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
    gateway: Annotated[PaystackClient, Depends(get_payment_gateway)],
):
    limiter.hit(key=f"pay:verify:{me.id}", limit=30, window_seconds=10 * 60, detail="Too many verification attempts")
    payment = svc.ledger.get(payment_id)
    if int(payment.user_id) != int(me.id):
        raise Forbidden("Forbidden")
    if payment.reference != data.reference.strip():
        raise Conflict("Reference does not match payment")

    if data.cancelled:
        logger.info("Checkout cancelled by user reference=%s", payment.reference)
        return {"status": CANCELLED, "payment": payment_out(payment)}

    if payment.status == PENDING:
        outcome = confirm_with_gateway(gateway, reference=payment.reference, expected_amount=payment.amount)
    else:
        # Terminal records short-circuit before the outcome is looked at.
        outcome = Confirmed()

    result = svc.payments.verify_detailed(payment.reference, outcome)
    if result.status == GATEWAY_ERROR:
        raise GatewayError(f"Verification failed: {getattr(outcome, 'reason', '')}".strip())
    return {"status": result.status, "payment": payment_out(result.payment)}


async def _raw_body(request: Request) -> bytes:
    # Signature checks need the exact bytes Paystack signed.
    return await request.body()


@app.post("/payments/webhook")
def paystack_webhook(
    request: Request,
    body: Annotated[bytes, Depends(_raw_body)],
    svc: Annotated[Services, Depends(get_services)],
):
    if not valid_webhook_signature(body, request.headers.get("X-Paystack-Signature", "")):
        return JSONResponse({"ok": False, "error": "Invalid signature"}, status_code=400)
    try:
        payload = json.loads(body.decode("utf-8"))
    except ValueError:
        return JSONResponse({"ok": False, "error": "Invalid JSON"}, status_code=400)

    event = str(payload.get("event") or "")
    data = payload.get("data") or {}
    reference = str(data.get("reference") or "").strip()
    if event not in {"charge.success", "charge.failed"} or not reference:
        return {"ok": True}

    try:
        payment = svc.ledger.get_by_reference(reference)
    except NotFound:
        logger.warning("Webhook for unknown reference: %s", reference)
        return {"ok": True}
    if event == "charge.success":
        outcome = outcome_from_transaction(data, expected_amount=payment.amount)
    else:
        outcome = Declined(reason=str(data.get("gateway_response") or "charge.failed"))
    result = svc.payments.verify_detailed(reference, outcome)
    return {"ok": True, "status": result.status}


@app.get("/payments")
def list_payments(me: Annotated[User, Depends(get_current_user)], svc: Annotated[Services, Depends(get_services)]):
    return {"items": [payment_out(p) for p in svc.ledger.list_for_user(me.id)]}


# -----------------------
# Conversations / messages
# -----------------------
@app.post("/conversations")
def start_conversation(
    data: ConversationIn,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
):
    conv, created = svc.messaging.start_conversation(me.id, data.listing_id)
    return JSONResponse(conversation_out(conv), status_code=201 if created else 200)


@app.get("/conversations")
def list_conversations(me: Annotated[User, Depends(get_current_user)], svc: Annotated[Services, Depends(get_services)]):
    return {"items": [conversation_out(c) for c in svc.messaging.list_conversations(me.id)]}


@app.post("/conversations/{conversation_id:int}/messages", status_code=201)
def send_message(
    conversation_id: int,
    data: MessageIn,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
):
    return message_out(svc.messaging.send_message(conversation_id, me.id, data.text))


@app.get("/conversations/{conversation_id:int}/messages")
def list_messages(
    conversation_id: int,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    msgs = svc.messaging.list_messages(conversation_id, me.id, limit=limit, offset=offset)
    return {"items": [message_out(m) for m in msgs]}


# -----------------------
# Notifications
# -----------------------
@app.get("/notifications")
def list_notifications(
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
    unread: bool = False,
):
    return {"items": [_notification_out(n) for n in svc.notifier.list_for_user(me.id, unread_only=unread)]}


@app.put("/notifications/read-all")
def read_all_notifications(me: Annotated[User, Depends(get_current_user)], svc: Annotated[Services, Depends(get_services)]):
    return {"ok": True, "updated": svc.notifier.mark_all_read(me.id)}


@app.put("/notifications/{notification_id:int}/read")
def read_notification(
    notification_id: int,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
):
    return _notification_out(svc.notifier.mark_read(me.id, notification_id))


# -----------------------
# Identity verification
# -----------------------
@app.post("/verifications", status_code=201)
def submit_verification(
    data: VerificationIn,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
):
    v = svc.verification.submit(me.id, data.method, data.id_number)
    return {"id": v.id, "method": v.method, "status": v.status}


@app.get("/verifications")
def list_verifications(me: Annotated[User, Depends(get_current_user)], svc: Annotated[Services, Depends(get_services)]):
    return {
        "items": [
            {
                "id": v.id,
                "method": v.method,
                "status": v.status,
                "createdAt": v.created_at.isoformat() if v.created_at else "",
            }
            for v in svc.verification.list_for_user(me.id)
        ]
    }


# -----------------------
# Admin
# -----------------------
@app.post("/admin/verifications/{verification_id:int}/review")
def review_verification(
    verification_id: int,
    data: ReviewIn,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
):
    v = svc.verification.review(me.id, verification_id, approve=data.approve)
    return {"id": v.id, "userId": v.user_id, "status": v.status}


@app.post("/admin/contact-access")
def admin_grant_contact_access(
    data: AdminGrantIn,
    me: Annotated[User, Depends(get_current_user)],
    svc: Annotated[Services, Depends(get_services)],
):
    _require_admin(me)
    grant = svc.gate.grant_by_admin(data.user_id, data.listing_id)
    svc.notifier.notify(
        data.user_id, "listing", "Contact details and chat were unlocked for you by an administrator.", data.listing_id
    )
    return {"grant": _grant_out(grant)}
