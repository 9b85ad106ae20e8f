from __future__ import annotations

import datetime as dt
import logging
import re

from sqlalchemy import select
from sqlalchemy.orm import Session

from keyrent.errors import Conflict, Forbidden, NotFound, ValidationError
from keyrent.models import Verification
from keyrent.notifications import NotificationEmitter
from keyrent.stores import UserStore

logger = logging.getLogger(__name__)

VERIFICATION_METHODS = {"nin", "bvn"}


class VerificationService:
    """Identity checks (NIN/BVN) reviewed by an admin; approval lowers the contact fee tier."""

    def __init__(self, db: Session, *, users: UserStore, notifier: NotificationEmitter) -> None:
        self.db = db
        self.users = users
        self.notifier = notifier

    def submit(self, user_id: int, method: str, id_number: str) -> Verification:
        method = (method or "").strip().lower()
        id_number = re.sub(r"\s+", "", id_number or "")
        if method not in VERIFICATION_METHODS:
            raise ValidationError("Verification method must be nin or bvn")
        if not re.fullmatch(r"[0-9]{11}", id_number):
            raise ValidationError(f"{method.upper()} must be 11 digits")
        user = self.users.get_user(user_id)
        if user.is_verified:
            raise Conflict("Account is already verified")
        pending = self._pending_for(user.id)
        if pending is not None:
            raise Conflict("A verification is already awaiting review")

        v = Verification(user_id=user.id, method=method, id_number=id_number, status="pending")
        self.db.add(v)
        self.db.flush()
        logger.info("Verification submitted id=%s user_id=%s method=%s", v.id, user.id, method)
        return v

    def _pending_for(self, user_id: int) -> Verification | None:
        stmt = select(Verification).where((Verification.user_id == int(user_id)) & (Verification.status == "pending"))
        return self.db.execute(stmt.limit(1)).scalar_one_or_none()

    def list_for_user(self, user_id: int) -> list[Verification]:
        stmt = select(Verification).where(Verification.user_id == int(user_id)).order_by(Verification.id.desc())
        return list(self.db.execute(stmt).scalars().all())

    def review(self, admin_id: int, verification_id: int, *, approve: bool) -> Verification:
        admin = self.users.get_user(admin_id)
        if (admin.role or "").lower() != "admin":
            raise Forbidden("Admin only")
        v = self.db.get(Verification, int(verification_id))
        if not v:
            raise NotFound("Verification not found")
        if v.status != "pending":
            return v

        v.status = "verified" if approve else "rejected"
        v.updated_at = dt.datetime.now(dt.timezone.utc)
        if approve:
            self.users.mark_verified(v.user_id, True)
        self.db.flush()
        logger.info("Verification reviewed id=%s status=%s by=%s", v.id, v.status, admin.id)

        body = (
            "Your identity has been verified. You now qualify for discounted contact fees."
            if approve
            else "Your identity verification was not approved."
        )
        self.notifier.notify(v.user_id, "verification", body, v.id)
        return v
