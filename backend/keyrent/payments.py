"""
Payment ledger and the verification state machine.

A payment starts `pending` and moves exactly once to `successful` or
`failed`. The move is a compare-and-swap on (reference, status='pending'),
so duplicate gateway callbacks racing each other apply the unlock side
effects exactly once. Failed payments are never retried in place: the
caller initiates a new payment with a new reference.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Union

from sqlalchemy import select, update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from keyrent.contact_access import ContactAccessGate
from keyrent.errors import Conflict, Forbidden, NotFound, ValidationError
from keyrent.models import (
    CONTACT_FEE,
    FAILED,
    FEATURED_FEE,
    LISTING_FEE,
    PAYMENT_KINDS,
    PENDING,
    SUCCESSFUL,
    Payment,
)
from keyrent.notifications import NotificationEmitter
from keyrent.stores import ListingStore

logger = logging.getLogger(__name__)

_REFERENCE_ATTEMPTS = 5


# -----------------------
# Gateway outcomes
# -----------------------
@dataclass(frozen=True)
class Confirmed:
    pass


@dataclass(frozen=True)
class Declined:
    reason: str = ""


@dataclass(frozen=True)
class Errored:
    reason: str


GatewayOutcome = Union[Confirmed, Declined, Errored]

# Caller-visible verification results.
VERIFIED = "verified"
REJECTED = "rejected"
ALREADY_PROCESSED = "already_processed"
GATEWAY_ERROR = "gateway_error"
CANCELLED = "cancelled"


@dataclass(frozen=True)
class Initiation:
    reference: str
    payment_id: int
    amount: int


@dataclass(frozen=True)
class VerificationResult:
    payment: Payment
    status: str


def new_reference() -> str:
    return f"KR-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


def payment_out(p: Payment) -> dict:
    return {
        "id": p.id,
        "userId": p.user_id,
        "listingId": p.listing_id,
        "kind": p.kind,
        "amount": p.amount,
        "reference": p.reference,
        "status": p.status,
        "createdAt": p.created_at.isoformat() if p.created_at else "",
        "updatedAt": p.updated_at.isoformat() if p.updated_at else "",
    }


class PaymentLedger:
    def __init__(self, db: Session) -> None:
        self.db = db

    def create(self, *, user_id: int, kind: str, amount: int, listing_id: int | None = None) -> Payment:
        if kind not in PAYMENT_KINDS:
            raise ValidationError(f"Unknown payment kind: {kind}")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Amount must be a positive integer (kobo)")

        for _ in range(_REFERENCE_ATTEMPTS):
            try:
                with self.db.begin_nested():
                    payment = Payment(
                        user_id=int(user_id),
                        listing_id=listing_id,
                        kind=kind,
                        amount=amount,
                        reference=new_reference(),
                        status=PENDING,
                    )
                    self.db.add(payment)
            except IntegrityError:
                logger.warning("Payment reference collision; retrying")
                continue
            logger.info(
                "Payment created id=%s reference=%s kind=%s amount=%s user_id=%s",
                payment.id,
                payment.reference,
                kind,
                amount,
                user_id,
            )
            return payment
        raise Conflict("Failed to allocate payment reference")

    def get(self, payment_id: int) -> Payment:
        payment = self.db.get(Payment, int(payment_id), populate_existing=True)
        if not payment:
            raise NotFound("Payment not found")
        return payment

    def get_by_reference(self, reference: str) -> Payment:
        stmt = select(Payment).where(Payment.reference == (reference or "").strip()).execution_options(
            populate_existing=True
        )
        payment = self.db.execute(stmt).scalar_one_or_none()
        if not payment:
            raise NotFound("Payment not found")
        return payment

    def list_for_user(self, user_id: int) -> list[Payment]:
        stmt = select(Payment).where(Payment.user_id == int(user_id)).order_by(Payment.id.desc())
        return list(self.db.execute(stmt).scalars().all())

    def transition(self, reference: str, new_status: str, gateway_response: dict | None = None) -> bool:
        """Moves a pending payment to `new_status`; True only for the caller that won."""
        if new_status not in (SUCCESSFUL, FAILED):
            raise ValidationError(f"Invalid terminal status: {new_status}")
        res = self.db.execute(
            sa_update(Payment)
            .where((Payment.reference == reference) & (Payment.status == PENDING))
            .values(
                status=new_status,
                gateway_response=json.dumps(gateway_response or {}),
                updated_at=dt.datetime.now(dt.timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        return bool(res.rowcount)


class PaymentVerificationFlow:
    def __init__(
        self,
        db: Session,
        *,
        ledger: PaymentLedger,
        gate: ContactAccessGate,
        listings: ListingStore,
        notifier: NotificationEmitter,
        listing_fee: int,
        featured_fee: int,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.gate = gate
        self.listings = listings
        self.notifier = notifier
        self.listing_fee = int(listing_fee)
        self.featured_fee = int(featured_fee)

    # -----------------------
    # Initiate
    # -----------------------
    def initiate(self, user_id: int, kind: str, listing_id: int | None = None) -> Initiation:
        kind = (kind or "").strip().lower()
        if kind not in PAYMENT_KINDS:
            raise ValidationError(f"Unknown payment kind: {kind or '<empty>'}")
        if listing_id is None:
            raise ValidationError(f"listingId is required for {kind}")
        listing = self.listings.get_listing(listing_id)
        is_owner = int(listing.owner_id) == int(user_id)

        if kind == CONTACT_FEE:
            if is_owner:
                raise ValidationError("Owners already have access to their own listing")
            if not listing.approved:
                # Unapproved listings are invisible to everyone but their owner.
                raise NotFound("Listing not found")
            if self.gate.has_access(user_id, listing.id):
                raise Conflict("Contact access already granted")
            amount = self.gate.fee_for_user(user_id)
            self.gate.request_access(user_id, listing.id)
        else:
            if not is_owner:
                raise Forbidden("Only the listing owner can pay this fee")
            amount = self.listing_fee if kind == LISTING_FEE else self.featured_fee

        payment = self.ledger.create(user_id=user_id, kind=kind, amount=amount, listing_id=listing.id)
        return Initiation(reference=payment.reference, payment_id=payment.id, amount=payment.amount)

    # -----------------------
    # Verify
    # -----------------------
    def verify(self, reference: str, outcome: GatewayOutcome | bool) -> Payment:
        return self.verify_detailed(reference, outcome).payment

    def verify_detailed(self, reference: str, outcome: GatewayOutcome | bool) -> VerificationResult:
        if isinstance(outcome, bool):
            outcome = Confirmed() if outcome else Declined()

        payment = self.ledger.get_by_reference(reference)
        if payment.status != PENDING:
            logger.info("Payment already processed reference=%s status=%s", payment.reference, payment.status)
            return VerificationResult(payment, ALREADY_PROCESSED)

        if isinstance(outcome, Errored):
            logger.error("Gateway error verifying reference=%s: %s", payment.reference, outcome.reason)
            return VerificationResult(payment, GATEWAY_ERROR)

        if isinstance(outcome, Confirmed):
            new_status, gateway_response = SUCCESSFUL, {"status": "success"}
        elif isinstance(outcome, Declined):
            new_status, gateway_response = FAILED, {"status": "failed", "reason": outcome.reason}
        else:
            raise ValidationError(f"Unsupported gateway outcome: {outcome!r}")

        if not self.ledger.transition(payment.reference, new_status, gateway_response):
            # A concurrent verify won the transition and owns the side effects.
            payment = self.ledger.get_by_reference(reference)
            logger.info("Payment transition lost race reference=%s status=%s", payment.reference, payment.status)
            return VerificationResult(payment, ALREADY_PROCESSED)

        payment = self.ledger.get_by_reference(reference)
        logger.info("Payment %s reference=%s", new_status, payment.reference)
        if new_status == SUCCESSFUL:
            message = self._apply_success(payment)
            self.notifier.notify(payment.user_id, "payment", message, payment.id, title="Payment successful")
            return VerificationResult(payment, VERIFIED)

        self.notifier.notify(
            payment.user_id,
            "payment",
            "Your payment was not successful. You can try again with a new payment.",
            payment.id,
            title="Payment failed",
        )
        return VerificationResult(payment, REJECTED)

    def _apply_success(self, payment: Payment) -> str:
        if payment.kind == CONTACT_FEE:
            self.gate.grant_access(payment.user_id, payment.listing_id, payment.id)
            return "Contact details and chat are now unlocked for this listing."
        if payment.kind == LISTING_FEE:
            self.listings.set_approved(payment.listing_id, True)
            return "Your listing fee was received and your listing is now live."
        if payment.kind == FEATURED_FEE:
            self.listings.set_featured(payment.listing_id, True)
            return "Your listing is now featured."
        raise ValidationError(f"Unknown payment kind: {payment.kind}")
