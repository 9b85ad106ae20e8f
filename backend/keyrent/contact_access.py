"""
Contact-access gate.

Decides whether a user may see a listing owner's contact details and chat with
them, and records the one-way `granted = False -> True` transition. Grants are
keyed by (user_id, listing_id) and backed by a unique constraint; all writes go
through conditional UPDATEs or savepointed INSERTs so concurrent callbacks can
never produce two rows or two transitions.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass

from sqlalchemy import select, update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from keyrent.errors import Conflict, Unauthorized, ValidationError
from keyrent.models import ContactAccess
from keyrent.stores import ListingStore, UserStore

logger = logging.getLogger(__name__)

# Percent of the base fee charged per (is_verified, has_own_listings).
_FEE_PERCENT = {
    (True, True): 50,
    (True, False): 75,
    (False, True): 100,
    (False, False): 100,
}

_GRANT_ATTEMPTS = 3


def compute_fee(is_verified: bool, has_own_listings: bool, base_fee: int) -> int:
    """
    Contact fee in kobo.

    verified with at least one listing pays half, verified without listings
    pays three quarters, everyone else pays the full base fee.
    """
    return int(base_fee) * _FEE_PERCENT[(bool(is_verified), bool(has_own_listings))] // 100


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    grant: ContactAccess | None = None


class ContactAccessGate:
    def __init__(self, db: Session, *, users: UserStore, listings: ListingStore, base_fee: int) -> None:
        self.db = db
        self.users = users
        self.listings = listings
        self.base_fee = int(base_fee)

    # -----------------------
    # Fees
    # -----------------------
    def compute_fee(self, is_verified: bool, has_own_listings: bool) -> int:
        return compute_fee(is_verified, has_own_listings, self.base_fee)

    def fee_for_user(self, user_id: int) -> int:
        user = self.users.get_user(user_id)
        return self.compute_fee(bool(user.is_verified), self.listings.has_listings(user.id))

    # -----------------------
    # Reads
    # -----------------------
    def _get_grant(self, user_id: int, listing_id: int) -> ContactAccess | None:
        stmt = (
            select(ContactAccess)
            .where((ContactAccess.user_id == int(user_id)) & (ContactAccess.listing_id == int(listing_id)))
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def check_access(self, user_id: int | None, listing_id: int) -> AccessDecision:
        if user_id is None:
            raise Unauthorized("Not authenticated")
        listing = self.listings.get_listing(listing_id)
        if int(listing.owner_id) == int(user_id):
            return AccessDecision(has_access=True)
        grant = self._get_grant(user_id, listing.id)
        return AccessDecision(has_access=bool(grant and grant.granted), grant=grant)

    def has_access(self, user_id: int | None, listing_id: int) -> bool:
        return self.check_access(user_id, listing_id).has_access

    def granted_listing_ids(self, user_id: int, listing_ids: list[int]) -> set[int]:
        ids = [int(x) for x in listing_ids if int(x) > 0]
        if not ids:
            return set()
        rows = self.db.execute(
            select(ContactAccess.listing_id).where(
                (ContactAccess.user_id == int(user_id))
                & (ContactAccess.listing_id.in_(ids))
                & (ContactAccess.granted == True)  # noqa: E712
            )
        ).scalars().all()
        return {int(x) for x in rows}

    # -----------------------
    # Writes
    # -----------------------
    def request_access(self, user_id: int | None, listing_id: int) -> ContactAccess:
        if user_id is None:
            raise Unauthorized("Not authenticated")
        listing = self.listings.get_listing(listing_id)
        existing = self._get_grant(user_id, listing.id)
        if existing:
            return existing
        try:
            with self.db.begin_nested():
                grant = ContactAccess(user_id=int(user_id), listing_id=listing.id, granted=False)
                self.db.add(grant)
            logger.info("Contact access requested user_id=%s listing_id=%s", user_id, listing.id)
            return grant
        except IntegrityError:
            # Someone else created the row between our read and insert.
            existing = self._get_grant(user_id, listing.id)
            if existing is None:
                raise
            return existing

    def grant_access(
        self,
        user_id: int,
        listing_id: int,
        payment_id: int | None = None,
        *,
        by_admin: bool = False,
    ) -> ContactAccess:
        """
        Upsert the grant to `granted = True`.

        Calling this again for an already-granted pair returns the existing
        record untouched, so the payment that first unlocked access stays
        attached to it.
        """
        if payment_id is None and not by_admin:
            raise ValidationError("A grant must be backed by a payment or an admin action")
        # A paid grant still lands if the owner deleted the listing after checkout.
        listing = self.listings.get_listing(listing_id, include_deleted=payment_id is not None)
        now = dt.datetime.now(dt.timezone.utc)

        for _ in range(_GRANT_ATTEMPTS):
            flipped = self.db.execute(
                sa_update(ContactAccess)
                .where(
                    (ContactAccess.user_id == int(user_id))
                    & (ContactAccess.listing_id == listing.id)
                    & (ContactAccess.granted == False)  # noqa: E712
                )
                .values(granted=True, payment_id=payment_id, granted_by_admin=bool(by_admin), updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if flipped:
                logger.info(
                    "Contact access granted user_id=%s listing_id=%s payment_id=%s by_admin=%s",
                    user_id,
                    listing.id,
                    payment_id,
                    by_admin,
                )
                return self._get_grant(user_id, listing.id)

            existing = self._get_grant(user_id, listing.id)
            if existing is not None and existing.granted:
                if by_admin and not existing.granted_by_admin:
                    existing.granted_by_admin = True
                    existing.updated_at = now
                    self.db.flush()
                logger.info("Contact access already granted user_id=%s listing_id=%s", user_id, listing.id)
                return existing
            if existing is not None:
                # A pending row appeared after our UPDATE; flip it on the next pass.
                continue

            try:
                with self.db.begin_nested():
                    grant = ContactAccess(
                        user_id=int(user_id),
                        listing_id=listing.id,
                        granted=True,
                        payment_id=payment_id,
                        granted_by_admin=bool(by_admin),
                    )
                    self.db.add(grant)
                logger.info(
                    "Contact access granted user_id=%s listing_id=%s payment_id=%s by_admin=%s",
                    user_id,
                    listing.id,
                    payment_id,
                    by_admin,
                )
                return grant
            except IntegrityError:
                continue

        raise Conflict("Could not record contact access grant")

    def grant_by_admin(self, user_id: int, listing_id: int) -> ContactAccess:
        self.users.get_user(user_id)
        return self.grant_access(user_id, listing_id, by_admin=True)
