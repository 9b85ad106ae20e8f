from __future__ import annotations

import datetime as dt
import logging

from sqlalchemy import or_, select, update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from keyrent.contact_access import ContactAccessGate
from keyrent.errors import Forbidden, NotFound, ValidationError
from keyrent.models import Conversation, Message
from keyrent.notifications import NotificationEmitter
from keyrent.stores import ListingStore

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


def conversation_out(c: Conversation) -> dict:
    return {
        "id": c.id,
        "listingId": c.listing_id,
        "renterId": c.renter_id,
        "ownerId": c.owner_id,
        "lastMessageAt": c.last_message_at.isoformat() if c.last_message_at else "",
        "createdAt": c.created_at.isoformat() if c.created_at else "",
    }


def message_out(m: Message) -> dict:
    return {
        "id": m.id,
        "conversationId": m.conversation_id,
        "senderId": m.sender_id,
        "text": m.text,
        "read": bool(m.read),
        "createdAt": m.created_at.isoformat() if m.created_at else "",
    }


class MessagingService:
    def __init__(
        self,
        db: Session,
        *,
        gate: ContactAccessGate,
        listings: ListingStore,
        notifier: NotificationEmitter,
    ) -> None:
        self.db = db
        self.gate = gate
        self.listings = listings
        self.notifier = notifier

    def _find(self, listing_id: int, renter_id: int, owner_id: int) -> Conversation | None:
        return self.db.execute(
            select(Conversation).where(
                (Conversation.listing_id == int(listing_id))
                & (Conversation.renter_id == int(renter_id))
                & (Conversation.owner_id == int(owner_id))
            )
        ).scalar_one_or_none()

    def start_conversation(self, renter_id: int, listing_id: int) -> tuple[Conversation, bool]:
        """Returns the conversation and whether it was created by this call."""
        listing = self.listings.get_listing(listing_id)
        owner_id = int(listing.owner_id)
        if owner_id == int(renter_id):
            raise ValidationError("You cannot start a conversation on your own listing")

        existing = self._find(listing.id, renter_id, owner_id)
        if existing:
            return existing, False
        try:
            with self.db.begin_nested():
                conv = Conversation(listing_id=listing.id, renter_id=int(renter_id), owner_id=owner_id)
                self.db.add(conv)
        except IntegrityError:
            existing = self._find(listing.id, renter_id, owner_id)
            if existing is None:
                raise
            return existing, False
        logger.info("Conversation started id=%s listing_id=%s renter_id=%s", conv.id, listing.id, renter_id)
        return conv, True

    def get_conversation(self, conversation_id: int) -> Conversation:
        conv = self.db.get(Conversation, int(conversation_id))
        if not conv:
            raise NotFound("Conversation not found")
        return conv

    def _authorize(self, conv: Conversation, user_id: int, action: str) -> None:
        if int(user_id) not in (int(conv.renter_id), int(conv.owner_id)):
            raise Forbidden(f"Not authorized to {action} messages in this conversation")
        # Owners are never gated; renters need a granted contact access.
        if int(user_id) == int(conv.renter_id) and not self.gate.has_access(user_id, conv.listing_id):
            raise Forbidden(f"Contact access required to {action} messages")

    def send_message(self, conversation_id: int, sender_id: int, text: str) -> Message:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message text is required")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message is too long (max {MAX_MESSAGE_LENGTH} characters)")

        conv = self.get_conversation(conversation_id)
        self._authorize(conv, sender_id, "send")

        now = dt.datetime.now(dt.timezone.utc)
        msg = Message(conversation_id=conv.id, sender_id=int(sender_id), text=text)
        self.db.add(msg)
        conv.last_message_at = now
        self.db.flush()

        recipient_id = conv.owner_id if int(sender_id) == int(conv.renter_id) else conv.renter_id
        self.notifier.notify(recipient_id, "message", "You have a new message", conv.id, title="New Message")
        return msg

    def list_messages(self, conversation_id: int, user_id: int, *, limit: int = 50, offset: int = 0) -> list[Message]:
        conv = self.get_conversation(conversation_id)
        self._authorize(conv, user_id, "view")

        rows = self.db.execute(
            select(Message)
            .where(Message.conversation_id == conv.id)
            .order_by(Message.id.asc())
            .limit(max(1, min(int(limit), 200)))
            .offset(max(0, int(offset)))
        ).scalars().all()

        self.db.execute(
            sa_update(Message)
            .where(
                (Message.conversation_id == conv.id)
                & (Message.sender_id != int(user_id))
                & (Message.read == False)  # noqa: E712
            )
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        return list(rows)

    def list_conversations(self, user_id: int) -> list[Conversation]:
        stmt = (
            select(Conversation)
            .where(or_(Conversation.renter_id == int(user_id), Conversation.owner_id == int(user_id)))
            .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
        )
        return list(self.db.execute(stmt).scalars().all())
