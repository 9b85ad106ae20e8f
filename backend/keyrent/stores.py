"""
Thin store handles over the users and listings tables.

The contact-access core only ever reaches identity and listing data through
these, so tests and alternative backends can swap them out.
"""

from __future__ import annotations

import datetime as dt
import math

from sqlalchemy import select, update as sa_update
from sqlalchemy.orm import Session

from keyrent.errors import Forbidden, NotFound, ValidationError
from keyrent.models import Listing, User


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(p1) * math.cos(p2) * (math.sin(dlon / 2) ** 2)
    return r * 2 * math.asin(math.sqrt(a))


class UserStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get_user(self, user_id: int) -> User:
        user = self.db.get(User, int(user_id))
        if not user:
            raise NotFound("User not found")
        return user

    def find_by_email(self, email: str) -> User | None:
        email = (email or "").strip().lower()
        return self.db.execute(select(User).where(User.email == email)).scalar_one_or_none()

    def mark_verified(self, user_id: int, verified: bool = True) -> User:
        user = self.get_user(user_id)
        user.is_verified = bool(verified)
        self.db.add(user)
        self.db.flush()
        return user


class ListingStore:
    # Fields an owner may change after creation. Approval and featuring only
    # move through payments or admin review.
    EDITABLE_FIELDS = (
        "title",
        "description",
        "price",
        "location",
        "property_type",
        "category",
        "bedrooms",
        "latitude",
        "longitude",
        "contact_phone",
        "contact_email",
    )

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_listing(self, listing_id: int, *, include_deleted: bool = False) -> Listing:
        listing = self.db.get(Listing, int(listing_id))
        if not listing or (listing.deleted and not include_deleted):
            raise NotFound("Listing not found")
        return listing

    def has_listings(self, owner_id: int) -> bool:
        stmt = select(Listing.id).where((Listing.owner_id == int(owner_id)) & (Listing.deleted == False)).limit(1)  # noqa: E712
        return self.db.execute(stmt).first() is not None

    def create_listing(self, *, owner_id: int, **fields) -> Listing:
        listing = Listing(owner_id=int(owner_id), approved=False, featured=False, **fields)
        self.db.add(listing)
        self.db.flush()
        return listing

    def _editable(self, listing_id: int, actor: User) -> Listing:
        listing = self.get_listing(listing_id)
        if (actor.role or "").lower() != "admin" and int(listing.owner_id) != int(actor.id):
            raise Forbidden("Only the owner can change this listing")
        return listing

    def update_listing(self, listing_id: int, actor: User, **fields) -> Listing:
        listing = self._editable(listing_id, actor)
        unknown = set(fields) - set(self.EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update: {', '.join(sorted(unknown))}")
        for name, value in fields.items():
            setattr(listing, name, value)
        listing.updated_at = dt.datetime.now(dt.timezone.utc)
        self.db.add(listing)
        self.db.flush()
        return listing

    def delete_listing(self, listing_id: int, actor: User) -> None:
        listing = self._editable(listing_id, actor)
        listing.deleted = True
        listing.approved = False
        listing.featured = False
        listing.updated_at = dt.datetime.now(dt.timezone.utc)
        self.db.add(listing)
        self.db.flush()

    def _visible(self):
        return select(Listing).where((Listing.approved == True) & (Listing.deleted == False))  # noqa: E712

    def list_approved(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        property_type: str | None = None,
        category: str | None = None,
        min_price: int | None = None,
        max_price: int | None = None,
    ) -> list[Listing]:
        stmt = self._visible()
        if property_type:
            stmt = stmt.where(Listing.property_type == property_type.strip().lower())
        if category:
            stmt = stmt.where(Listing.category == category.strip().lower())
        if min_price is not None:
            stmt = stmt.where(Listing.price >= int(min_price))
        if max_price is not None:
            stmt = stmt.where(Listing.price <= int(max_price))
        stmt = stmt.order_by(Listing.featured.desc(), Listing.id.desc()).limit(int(limit)).offset(int(offset))
        return list(self.db.execute(stmt).scalars().all())

    def list_featured(self, *, limit: int = 5) -> list[Listing]:
        stmt = self._visible().where(Listing.featured == True).order_by(Listing.id.desc()).limit(int(limit))  # noqa: E712
        return list(self.db.execute(stmt).scalars().all())

    def list_recent(self, *, limit: int = 10) -> list[Listing]:
        stmt = self._visible().order_by(Listing.created_at.desc(), Listing.id.desc()).limit(int(limit))
        return list(self.db.execute(stmt).scalars().all())

    def list_nearby(self, *, lat: float, lng: float, radius_km: float = 5.0, limit: int = 10) -> list[tuple[Listing, float]]:
        """Approved listings within `radius_km`, nearest first, with their distance in km."""
        if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lng <= 180.0):
            raise ValidationError("Invalid coordinates")
        if radius_km <= 0:
            raise ValidationError("Radius must be positive")

        # Bounding-box prefilter; the exact distance is computed below.
        lat_delta = radius_km / 111.0
        cos_lat = max(0.01, abs(math.cos(math.radians(lat))))
        lon_delta = radius_km / (111.0 * cos_lat)
        stmt = self._visible().where(
            Listing.latitude.is_not(None)
            & Listing.longitude.is_not(None)
            & Listing.latitude.between(lat - lat_delta, lat + lat_delta)
            & Listing.longitude.between(lng - lon_delta, lng + lon_delta)
        )
        scored = []
        for listing in self.db.execute(stmt).scalars().all():
            d = haversine_km(lat, lng, float(listing.latitude), float(listing.longitude))
            if d <= radius_km:
                scored.append((listing, d))
        scored.sort(key=lambda x: x[1])
        return scored[: int(limit)]

    def set_approved(self, listing_id: int, approved: bool) -> None:
        self._set_flag(listing_id, approved=bool(approved))

    def set_featured(self, listing_id: int, featured: bool) -> None:
        self._set_flag(listing_id, featured=bool(featured))

    def _set_flag(self, listing_id: int, **values) -> None:
        res = self.db.execute(
            sa_update(Listing)
            .where(Listing.id == int(listing_id))
            .values(updated_at=dt.datetime.now(dt.timezone.utc), **values)
            .execution_options(synchronize_session="fetch")
        )
        if not res.rowcount:
            raise NotFound("Listing not found")
