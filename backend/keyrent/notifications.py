"""
Notification emitter.

Notifications are strictly best-effort: a failure here is logged and dropped,
and never rolls back the payment, grant or message that triggered it.

The row is written inside the caller's transaction. Email and SMS only go out
once that transaction commits; a rollback discards them with the row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import event, select, update as sa_update
from sqlalchemy.orm import Session

from keyrent.config import sms_backend
from keyrent.errors import NotFound
from keyrent.mailer import send_email
from keyrent.models import Notification
from keyrent.stores import UserStore

logger = logging.getLogger(__name__)

_DEFAULT_TITLES = {
    "message": "New Message",
    "payment": "Payment update",
    "listing": "Listing update",
    "verification": "Verification update",
}


def send_sms(*, to_phone: str, text: str) -> str:
    """Returns which path handled the SMS: skipped, disabled or console."""
    to_phone = (to_phone or "").strip()
    text = (text or "").strip()
    if not to_phone or not text:
        return "skipped"
    backend = sms_backend()
    if backend in {"disabled", "off", "none"}:
        return "disabled"
    # No paid provider is wired in; log what would have been sent.
    logger.warning("SMS_BACKEND=%s: to=%s\n%s", backend, to_phone, text)
    return "console"


@dataclass(frozen=True)
class Delivery:
    user_id: int
    email: str
    phone: str
    title: str
    body: str


class NotificationEmitter:
    def __init__(self, db: Session, *, users: UserStore, deliver: bool = True) -> None:
        self.db = db
        self.users = users
        self.deliver = deliver
        self.outbox: list[Delivery] = []
        if deliver:
            event.listen(db, "after_commit", self._after_commit)
            event.listen(db, "after_transaction_end", self._after_transaction_end)

    def notify(
        self,
        user_id: int,
        kind: str,
        message: str,
        related_id: int | None = None,
        *,
        title: str | None = None,
    ) -> Notification | None:
        try:
            with self.db.begin_nested():
                note = Notification(
                    user_id=int(user_id),
                    kind=kind,
                    title=title or _DEFAULT_TITLES.get(kind, "Notification"),
                    body=message,
                    related_id=related_id,
                )
                self.db.add(note)
        except Exception:
            logger.exception("Failed to store notification user_id=%s kind=%s", user_id, kind)
            return None

        logger.info("Notification emitted user_id=%s kind=%s related_id=%s", user_id, kind, related_id)
        if self.deliver:
            self._enqueue(note)
        return note

    def _enqueue(self, note: Notification) -> None:
        # Recipient details are read now; no SQL may run once the commit fires.
        try:
            user = self.users.get_user(note.user_id)
        except Exception:
            logger.exception("Notification delivery skipped; user lookup failed user_id=%s", note.user_id)
            return
        self.outbox.append(
            Delivery(
                user_id=user.id,
                email=(user.email or "").strip(),
                phone=(user.phone or "").strip(),
                title=note.title,
                body=note.body,
            )
        )

    def _after_commit(self, session: Session) -> None:
        if session.in_nested_transaction():
            # Only a savepoint was released; the outer transaction may still roll back.
            return
        pending, self.outbox = self.outbox, []
        for item in pending:
            self._send(item)

    def _after_transaction_end(self, session: Session, transaction) -> None:
        if transaction.parent is None and self.outbox:
            logger.info("Dropping %s undelivered notification(s) after rollback", len(self.outbox))
            self.outbox = []

    def _send(self, item: Delivery) -> None:
        if "@" in item.email:
            try:
                send_email(to_email=item.email, subject=item.title, text=item.body)
            except Exception:
                logger.exception("Notification email failed user_id=%s", item.user_id)
        if item.phone:
            try:
                send_sms(to_phone=item.phone, text=f"{item.title}: {item.body}")
            except Exception:
                logger.exception("Notification SMS failed user_id=%s", item.user_id)

    def list_for_user(self, user_id: int, *, unread_only: bool = False) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_id == int(user_id))
        if unread_only:
            stmt = stmt.where(Notification.read == False)  # noqa: E712
        stmt = stmt.order_by(Notification.id.desc())
        return list(self.db.execute(stmt).scalars().all())

    def mark_read(self, user_id: int, notification_id: int) -> Notification:
        note = self.db.get(Notification, int(notification_id))
        if not note or int(note.user_id) != int(user_id):
            raise NotFound("Notification not found")
        note.read = True
        self.db.flush()
        return note

    def mark_all_read(self, user_id: int) -> int:
        res = self.db.execute(
            sa_update(Notification)
            .where((Notification.user_id == int(user_id)) & (Notification.read == False))  # noqa: E712
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        return int(res.rowcount or 0)
