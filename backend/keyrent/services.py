from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from keyrent.config import contact_fee_base, featured_listing_fee, listing_fee
from keyrent.contact_access import ContactAccessGate
from keyrent.messaging import MessagingService
from keyrent.notifications import NotificationEmitter
from keyrent.payments import PaymentLedger, PaymentVerificationFlow
from keyrent.stores import ListingStore, UserStore
from keyrent.verification import VerificationService


@dataclass
class Services:
    users: UserStore
    listings: ListingStore
    notifier: NotificationEmitter
    gate: ContactAccessGate
    ledger: PaymentLedger
    payments: PaymentVerificationFlow
    messaging: MessagingService
    verification: VerificationService


def build_services(
    db: Session,
    *,
    base_fee: int | None = None,
    listing_fee_amount: int | None = None,
    featured_fee_amount: int | None = None,
    deliver_notifications: bool = True,
) -> Services:
    """Wires every service around one session; nothing here outlives the request."""
    users = UserStore(db)
    listings = ListingStore(db)
    notifier = NotificationEmitter(db, users=users, deliver=deliver_notifications)
    gate = ContactAccessGate(
        db,
        users=users,
        listings=listings,
        base_fee=contact_fee_base() if base_fee is None else base_fee,
    )
    ledger = PaymentLedger(db)
    payments = PaymentVerificationFlow(
        db,
        ledger=ledger,
        gate=gate,
        listings=listings,
        notifier=notifier,
        listing_fee=listing_fee() if listing_fee_amount is None else listing_fee_amount,
        featured_fee=featured_listing_fee() if featured_fee_amount is None else featured_fee_amount,
    )
    return Services(
        users=users,
        listings=listings,
        notifier=notifier,
        gate=gate,
        ledger=ledger,
        payments=payments,
        messaging=MessagingService(db, gate=gate, listings=listings, notifier=notifier),
        verification=VerificationService(db, users=users, notifier=notifier),
    )
