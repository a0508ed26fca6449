"""
Messaging engine: conversations, messages and per-participant unread counters.

Every participant is identified by (id, type); counters are keyed by
participant_key ("<type>:<id>"). A send increments the counter of every
participant except the sender, in the same transaction as the insert.
"""

import logging
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.db.models import (
    Admin,
    Client,
    ClientCoach,
    ClientCoachStatus,
    Coach,
    Conversation,
    ConversationParticipant,
    ConversationType,
    DirectMessage,
    MessageType,
    UserType,
    direct_pair_key,
    participant_key,
    utcnow,
)
from app.exceptions import BadRequestError, ForbiddenError, NotFoundError
from app.schemas.base import Page, PaginationMeta
from app.schemas.events import MessageCreatedEvent
from app.schemas.messaging import (
    ConversationCreate,
    ConversationFilters,
    ConversationRead,
    DirectMessageRead,
    MessageCreate,
    MessageFilters,
    MessageUpdate,
)
from app.services.events import EventPublisher, event_publisher

logger = logging.getLogger(__name__)
settings = get_settings()

PARTICIPANT_MODELS = {
    UserType.COACH.value: Coach,
    UserType.CLIENT.value: Client,
    UserType.ADMIN.value: Admin,
}


def _not_sent_by(user_id: str, user_type: str):
    """SQL condition: message was not authored by this (id, type)."""
    return or_(DirectMessage.sender_id != user_id, DirectMessage.sender_type != user_type)


def _as_uuid(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise BadRequestError(f"Invalid participant id: {value}")


class MessagingService:
    """Service for conversations and direct messages."""

    def __init__(self, publisher: EventPublisher | None = None):
        self.publisher = publisher or event_publisher

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _to_read(conversation: Conversation, messages: list[DirectMessage]) -> ConversationRead:
        read = ConversationRead.model_validate(conversation)
        read.messages = [DirectMessageRead.model_validate(m) for m in messages]
        return read

    async def _get_conversation(
        self,
        db: AsyncSession,
        conversation_id: UUID,
        user_id: str,
        user_type: str,
        lock: bool = False,
    ) -> Conversation:
        """
        Load a conversation the user participates in.

        Raises:
            NotFoundError: No such conversation
            ForbiddenError: User is not a participant
        """
        stmt = select(Conversation).where(Conversation.id == conversation_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(stmt)
        conversation = result.scalar_one_or_none()
        if conversation is None:
            raise NotFoundError("Conversation not found")
        if not conversation.is_participant(user_id, user_type):
            raise ForbiddenError("Access denied to this conversation")
        return conversation

    async def _get_own_message(
        self, db: AsyncSession, message_id: UUID, user_id: str, user_type: str
    ) -> DirectMessage:
        message = await db.get(DirectMessage, message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message.sender_id != user_id or message.sender_type != user_type:
            raise ForbiddenError("You can only modify your own messages")
        return message

    async def _latest_messages(
        self, db: AsyncSession, conversations: list[Conversation]
    ) -> dict[UUID, DirectMessage]:
        """Last message of each conversation, by conversation id."""
        last_ids = [c.last_message_id for c in conversations if c.last_message_id]
        if not last_ids:
            return {}
        result = await db.execute(select(DirectMessage).where(DirectMessage.id.in_(last_ids)))
        return {m.conversation_id: m for m in result.scalars()}

    async def _has_active_coach(self, db: AsyncSession, client_id: str, coach_id: str) -> bool:
        result = await db.execute(
            select(ClientCoach.id).where(
                ClientCoach.client_id == _as_uuid(client_id),
                ClientCoach.coach_id == _as_uuid(coach_id),
                ClientCoach.status == ClientCoachStatus.ACTIVE.value,
            )
        )
        return result.first() is not None

    async def _active_coach_ids(self, db: AsyncSession, client_id: str) -> set[UUID]:
        result = await db.execute(
            select(ClientCoach.coach_id).where(
                ClientCoach.client_id == _as_uuid(client_id),
                ClientCoach.status == ClientCoachStatus.ACTIVE.value,
            )
        )
        return set(result.scalars().all())

    async def _validate_conversation_access(
        self,
        db: AsyncSession,
        participant_ids: list[str],
        participant_types: list[str],
        requester_id: str,
        requester_type: str,
    ) -> None:
        """
        Check a client initiator may talk to every other participant.

        Clients may message their active coaches and clients sharing an active
        coach with them. Coaches and admins are not restricted.
        """
        if requester_type != UserType.CLIENT.value:
            return

        own_coaches: set[UUID] | None = None
        for other_id, other_type in zip(participant_ids, participant_types):
            if other_id == requester_id and other_type == requester_type:
                continue
            if other_type == UserType.ADMIN.value:
                raise ForbiddenError("Only coaches can contact admin support")
            if other_type == UserType.COACH.value:
                if not await self._has_active_coach(db, requester_id, other_id):
                    raise ForbiddenError("You can only message your assigned coach")
                continue

            if own_coaches is None:
                own_coaches = await self._active_coach_ids(db, requester_id)
                if not own_coaches:
                    raise ForbiddenError("You must have an assigned coach to message other clients")
            if not own_coaches & await self._active_coach_ids(db, other_id):
                raise ForbiddenError("You can only message clients who share your coach")

    async def _find_existing_direct_conversation(
        self, db: AsyncSession, pair_key: str
    ) -> Conversation | None:
        result = await db.execute(select(Conversation).where(Conversation.direct_pair_key == pair_key))
        return result.scalar_one_or_none()

    async def _to_read_with_latest(self, db: AsyncSession, conversation: Conversation) -> ConversationRead:
        latest = await self._latest_messages(db, [conversation])
        return self._to_read(conversation, [latest[conversation.id]] if conversation.id in latest else [])

    # =========================================================================
    # CONVERSATIONS
    # =========================================================================

    async def create_conversation(
        self,
        db: AsyncSession,
        data: ConversationCreate,
        requester_id: str,
        requester_type: str,
    ) -> ConversationRead:
        """
        Create a conversation, or return the existing direct one for the same pair.

        The requester is added to the participants when not already listed.
        Participant ids are stored in canonical UUID form.

        Raises:
            BadRequestError: Direct without exactly 2 participants, group
                without a name, a participant listed twice, or a participant
                id that is malformed or unknown
            ForbiddenError: Client initiator without the required relationships
        """
        conversation_type = ConversationType(data.type).value
        requester_id = str(_as_uuid(requester_id))
        participant_ids = [str(_as_uuid(pid)) for pid in data.participant_ids]
        participant_types = [UserType(t).value for t in data.participant_types]
        if requester_id not in participant_ids:
            participant_ids.append(requester_id)
            participant_types.append(requester_type)

        keys = [participant_key(t, i) for i, t in zip(participant_ids, participant_types)]
        if len(set(keys)) != len(keys):
            raise BadRequestError("Participants must be unique")
        if conversation_type == ConversationType.DIRECT.value and len(participant_ids) != 2:
            raise BadRequestError("Direct conversations must have exactly 2 participants")
        if conversation_type == ConversationType.GROUP.value and not data.name:
            raise BadRequestError("Group conversations require a name")

        for pid, ptype in zip(participant_ids, participant_types):
            if pid == requester_id and ptype == requester_type:
                continue
            if await db.get(PARTICIPANT_MODELS[ptype], UUID(pid)) is None:
                raise BadRequestError(f"Participant not found: {participant_key(ptype, pid)}")

        await self._validate_conversation_access(
            db, participant_ids, participant_types, requester_id, requester_type
        )

        pair_key = None
        if conversation_type == ConversationType.DIRECT.value:
            pair_key = direct_pair_key(keys)
            existing = await self._find_existing_direct_conversation(db, pair_key)
            if existing is not None:
                return await self._to_read_with_latest(db, existing)

        conversation = Conversation(
            type=conversation_type,
            name=data.name,
            direct_pair_key=pair_key,
            participants=[
                ConversationParticipant(
                    position=position,
                    participant_id=pid,
                    participant_type=ptype,
                    participant_key=key,
                    unread_count=0,
                )
                for position, (pid, ptype, key) in enumerate(zip(participant_ids, participant_types, keys))
            ],
        )
        try:
            async with db.begin_nested():
                db.add(conversation)
        except IntegrityError:
            # A concurrent request created the same direct conversation
            existing = await self._find_existing_direct_conversation(db, pair_key)
            if existing is None:
                raise
            return await self._to_read_with_latest(db, existing)
        await db.commit()

        logger.info("Created %s conversation %s with %d participants", conversation_type, conversation.id, len(keys))
        return self._to_read(conversation, [])


    async def get_conversations(
        self,
        db: AsyncSession,
        filters: ConversationFilters,
        requester_id: str,
        requester_type: str,
    ) -> Page[ConversationRead]:
        """The requester's conversations, most recently active first, each with its latest message."""
        key = participant_key(requester_type, requester_id)
        base = (
            select(Conversation)
            .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
            .where(ConversationParticipant.participant_key == key)
        )
        if filters.search:
            base = base.where(Conversation.name.ilike(f"%{filters.search}%"))
        if filters.unread_only:
            base = base.where(ConversationParticipant.unread_count > 0)

        total = await db.scalar(select(func.count()).select_from(base.subquery()))
        result = await db.execute(
            base.order_by(Conversation.last_message_at.desc().nulls_last(), Conversation.created_at.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        )
        conversations = list(result.scalars().all())
        latest = await self._latest_messages(db, conversations)

        return Page[ConversationRead](
            data=[self._to_read(c, [latest[c.id]] if c.id in latest else []) for c in conversations],
            pagination=PaginationMeta.build(filters.page, filters.limit, total or 0),
        )

    async def get_conversation(
        self,
        db: AsyncSession,
        conversation_id: UUID,
        requester_id: str,
        requester_type: str,
    ) -> ConversationRead:
        """Conversation with its most recent messages, oldest first."""
        conversation = await self._get_conversation(db, conversation_id, requester_id, requester_type)
        result = await db.execute(
            select(DirectMessage)
            .where(DirectMessage.conversation_id == conversation.id)
            .order_by(DirectMessage.created_at.desc())
            .limit(settings.conversation_message_window)
        )
        messages = list(result.scalars().all())
        messages.reverse()
        return self._to_read(conversation, messages)

    async def create_support_conversation(self, db: AsyncSession, coach_id: UUID) -> ConversationRead:
        """
        Open (or reopen) the coach's direct conversation with support.

        Support is the earliest-created active admin.

        Raises:
            NotFoundError: No active admin exists
        """
        result = await db.execute(
            select(Admin).where(Admin.is_active.is_(True)).order_by(Admin.created_at.asc()).limit(1)
        )
        admin = result.scalar_one_or_none()
        if admin is None:
            raise NotFoundError("No admin available for support")

        logger.info("Support conversation requested by coach %s with admin %s", coach_id, admin.id)
        return await self.create_conversation(
            db,
            ConversationCreate(
                type=ConversationType.DIRECT,
                name=settings.support_conversation_name,
                participant_ids=[str(admin.id)],
                participant_types=[UserType.ADMIN],
            ),
            str(coach_id),
            UserType.COACH.value,
        )

    # =========================================================================
    # MESSAGES
    # =========================================================================

    async def send_message(
        self,
        db: AsyncSession,
        conversation_id: UUID,
        data: MessageCreate,
        sender_id: str,
        sender_type: str,
        sender_name: str,
    ) -> DirectMessageRead:
        """
        Send a message and bump every other participant's unread counter.

        The conversation row is locked for the duration so concurrent sends
        cannot lose counter increments.

        Raises:
            NotFoundError: No such conversation
            ForbiddenError: Sender is not a participant
            BadRequestError: Reply target is not in this conversation
        """
        conversation = await self._get_conversation(db, conversation_id, sender_id, sender_type, lock=True)

        reply_to = None
        if data.reply_to_message_id is not None:
            reply_to = await db.get(DirectMessage, data.reply_to_message_id)
            if reply_to is None or reply_to.conversation_id != conversation.id:
                raise BadRequestError("Reply target must be a message in this conversation")

        message = DirectMessage(
            conversation_id=conversation.id,
            sender_id=sender_id,
            sender_type=sender_type,
            sender_name=sender_name,
            type=MessageType(data.type).value,
            content=data.content,
            media_urls=list(data.media_urls),
            file_url=data.file_url,
            file_name=data.file_name,
            file_size=data.file_size,
            reply_to=reply_to,
            is_read=False,
            is_edited=False,
            created_at=utcnow(),
        )
        db.add(message)
        await db.flush()

        conversation.last_message_id = message.id
        conversation.last_message_at = message.created_at

        sender_key = participant_key(sender_type, sender_id)
        for participant in conversation.participants:
            if participant.participant_key == sender_key:
                continue
            participant.unread_count += 1
            await self.publisher.publish(
                db,
                MessageCreatedEvent(
                    message_id=message.id,
                    conversation_id=conversation.id,
                    sender_id=sender_id,
                    sender_type=sender_type,
                    sender_name=sender_name,
                    recipient_id=participant.participant_id,
                    recipient_type=participant.participant_type,
                    type=message.type,
                    content=message.content,
                    created_at=message.created_at,
                ),
            )

        await db.commit()
        logger.info("Message %s sent to conversation %s by %s", message.id, conversation.id, sender_key)
        return DirectMessageRead.model_validate(message)

    async def get_messages(
        self,
        db: AsyncSession,
        conversation_id: UUID,
        filters: MessageFilters,
        requester_id: str,
        requester_type: str,
    ) -> Page[DirectMessageRead]:
        """Messages of a conversation, newest first, with optional filters."""
        conversation = await self._get_conversation(db, conversation_id, requester_id, requester_type)

        stmt = select(DirectMessage).where(DirectMessage.conversation_id == conversation.id)
        if filters.type:
            stmt = stmt.where(DirectMessage.type == MessageType(filters.type).value)
        if filters.search:
            stmt = stmt.where(DirectMessage.content.ilike(f"%{filters.search}%"))
        if filters.before:
            stmt = stmt.where(DirectMessage.created_at < filters.before)
        if filters.after:
            stmt = stmt.where(DirectMessage.created_at > filters.after)

        total = await db.scalar(select(func.count()).select_from(stmt.subquery()))
        result = await db.execute(
            stmt.order_by(DirectMessage.created_at.desc()).offset(filters.offset).limit(filters.limit)
        )
        return Page[DirectMessageRead](
            data=[DirectMessageRead.model_validate(m) for m in result.scalars()],
            pagination=PaginationMeta.build(filters.page, filters.limit, total or 0),
        )

    async def edit_message(
        self,
        db: AsyncSession,
        message_id: UUID,
        data: MessageUpdate,
        requester_id: str,
        requester_type: str,
    ) -> DirectMessageRead:
        """Replace a message's content. Only the sender may edit."""
        message = await self._get_own_message(db, message_id, requester_id, requester_type)
        message.content = data.content
        message.is_edited = True
        message.edited_at = utcnow()
        await db.commit()

        logger.info("Message %s edited", message.id)
        return DirectMessageRead.model_validate(message)

    async def delete_message(
        self,
        db: AsyncSession,
        message_id: UUID,
        requester_id: str,
        requester_type: str,
    ) -> None:
        """
        Delete a message. Only the sender may delete.

        Unread recipients' counters are decremented, and the conversation's
        last message moves to the newest remaining one when needed.
        """
        message = await self._get_own_message(db, message_id, requester_id, requester_type)
        result = await db.execute(
            select(Conversation)
            .where(Conversation.id == message.conversation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        conversation = result.scalar_one()

        if not message.is_read:
            sender_key = participant_key(message.sender_type, message.sender_id)
            for participant in conversation.participants:
                if participant.participant_key != sender_key and participant.unread_count > 0:
                    participant.unread_count -= 1

        await db.delete(message)
        await db.flush()

        if conversation.last_message_id == message.id:
            result = await db.execute(
                select(DirectMessage)
                .where(DirectMessage.conversation_id == conversation.id)
                .order_by(DirectMessage.created_at.desc())
                .limit(1)
            )
            newest = result.scalar_one_or_none()
            conversation.last_message_id = newest.id if newest else None
            conversation.last_message_at = newest.created_at if newest else None

        await db.commit()
        logger.info("Message %s deleted from conversation %s", message_id, conversation.id)

    # =========================================================================
    # READ STATE
    # =========================================================================

    async def _recount_unread(
        self, db: AsyncSession, conversation_id: UUID, requester_id: str, requester_type: str
    ) -> None:
        """Set the requester's counter to the number of unread messages not sent by them."""
        result = await db.execute(
            select(ConversationParticipant).where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.participant_key == participant_key(requester_type, requester_id),
            )
        )
        participant = result.scalar_one_or_none()
        if participant is None:
            return

        unread = await db.scalar(
            select(func.count()).select_from(DirectMessage).where(
                DirectMessage.conversation_id == conversation_id,
                DirectMessage.is_read.is_(False),
                _not_sent_by(requester_id, requester_type),
            )
        )
        participant.unread_count = unread or 0

    async def mark_as_read(
        self,
        db: AsyncSession,
        message_ids: list[UUID],
        requester_id: str,
        requester_type: str,
    ) -> int:
        """
        Mark messages read for the requester, skipping their own messages.

        Returns:
            Number of messages marked
        """
        result = await db.execute(
            select(DirectMessage).where(
                DirectMessage.id.in_(message_ids),
                _not_sent_by(requester_id, requester_type),
            )
        )
        messages = list(result.scalars().all())

        now = utcnow()
        for message in messages:
            message.is_read = True
            message.read_at = now
        await db.flush()

        for conversation_id in {m.conversation_id for m in messages}:
            await self._recount_unread(db, conversation_id, requester_id, requester_type)

        await db.commit()
        logger.info("Marked %d messages as read for %s", len(messages), participant_key(requester_type, requester_id))
        return len(messages)

    async def mark_conversation_as_read(
        self,
        db: AsyncSession,
        conversation_id: UUID,
        requester_id: str,
        requester_type: str,
    ) -> None:
        """Mark everything the requester received in a conversation as read and zero their counter."""
        conversation = await self._get_conversation(db, conversation_id, requester_id, requester_type)
        await db.execute(
            update(DirectMessage)
            .where(
                DirectMessage.conversation_id == conversation.id,
                DirectMessage.is_read.is_(False),
                _not_sent_by(requester_id, requester_type),
            )
            .values(is_read=True, read_at=utcnow()),
            execution_options={"synchronize_session": "fetch"},
        )
        conversation.get_participant(requester_id, requester_type).unread_count = 0
        await db.commit()

    async def get_unread_count(
        self,
        db: AsyncSession,
        conversation_id: UUID,
        requester_id: str,
        requester_type: str,
    ) -> int:
        """The requester's unread counter for one conversation."""
        conversation = await self._get_conversation(db, conversation_id, requester_id, requester_type)
        return conversation.unread_count.get(participant_key(requester_type, requester_id), 0)

    async def get_total_unread_count(self, db: AsyncSession, requester_id: str, requester_type: str) -> int:
        """Sum of the requester's counters across all conversations."""
        total = await db.scalar(
            select(func.coalesce(func.sum(ConversationParticipant.unread_count), 0)).where(
                ConversationParticipant.participant_key == participant_key(requester_type, requester_id)
            )
        )
        return int(total or 0)


# Singleton instance
messaging_service = MessagingService()
