"""
Conversation and message data models.

A Conversation is one platform thread (Gmail) or space (Chat) for one
account. Its aggregate fields are derived from its messages and cannot be
set directly.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from msgsync.sync.attachment import Attachment


class ConversationKind:
    """Conversation kinds across both platforms."""

    THREAD = "thread"
    DIRECT_MESSAGE = "DIRECT_MESSAGE"
    SPACE = "SPACE"
    GROUP_CHAT = "GROUP_CHAT"


class ParticipantRole:
    MEMBER = "member"
    SENDER = "sender"


EPOCH_MIN = datetime.min.replace(tzinfo=timezone.utc)

NO_SUBJECT = "(No Subject)"
UNNAMED_DIRECT_MESSAGE = "(Direct Message)"
UNNAMED_SPACE = "(Unnamed Space)"

# Display names that a later, real name may replace
PLACEHOLDER_DISPLAY_NAMES = frozenset({NO_SUBJECT, UNNAMED_DIRECT_MESSAGE, UNNAMED_SPACE, ""})


def placeholder_display_name(kind: str) -> str:
    """Return the placeholder name used for an unnamed conversation of a kind."""
    if kind == ConversationKind.THREAD:
        return NO_SUBJECT
    if kind == ConversationKind.DIRECT_MESSAGE:
        return UNNAMED_DIRECT_MESSAGE
    return UNNAMED_SPACE


def is_placeholder_display_name(name: Optional[str]) -> bool:
    return name is None or name.strip() in PLACEHOLDER_DISPLAY_NAMES


@dataclass
class Message:
    """
    A single message as fetched from a platform.

    Attributes:
        platform_message_id: Platform message id, unique within a conversation
        conversation_id: Platform thread or space id
        sender_identifier: Opaque sender id ("users/123") or email address
        body: Plain text body
        label: Fetch label the message was first seen under
        created_at: Creation timestamp (timezone-aware UTC)
        attachments: Attachments in platform order
        subject: Email subject, None for chat messages
        is_from_account: True when the synced account sent the message
    """

    platform_message_id: str
    conversation_id: str
    sender_identifier: Optional[str]
    body: str = ""
    label: Optional[str] = None
    created_at: Optional[datetime] = None
    attachments: list[Attachment] = field(default_factory=list)
    subject: Optional[str] = None
    is_from_account: bool = False


def message_sort_key(message: Message) -> tuple[datetime, str]:
    """Order by creation time, tie-broken by platform message id."""
    return (message.created_at or EPOCH_MIN, message.platform_message_id)


def sort_messages(messages: list[Message]) -> list[Message]:
    return sorted(messages, key=message_sort_key)


@dataclass
class Participant:
    """
    A conversation participant.

    Attributes:
        identifier: Opaque platform identifier or email address
        resolved_email: Email address from the identity resolver
        display_name: Display name from the identity resolver
        role: ParticipantRole value
    """

    identifier: str
    resolved_email: Optional[str] = None
    display_name: Optional[str] = None
    role: str = ParticipantRole.MEMBER


@dataclass
class Conversation:
    """
    A logical conversation for one account.

    Unique per (account_id, platform_thread_id). message_count and
    last_activity_time are computed from messages on every access.

    Usage:
        conversation = Conversation(
            account_id=1,
            platform="gmail",
            platform_thread_id="T1",
            kind=ConversationKind.THREAD,
            display_name="Quarterly report",
        )
        conversation.messages.extend(batch.messages)
        conversation.message_count  # -> len(conversation.messages)
    """

    account_id: int
    platform: str
    platform_thread_id: str
    kind: str = ConversationKind.THREAD
    display_name: str = ""
    participants: list[Participant] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def last_activity_time(self) -> Optional[datetime]:
        timestamps = [m.created_at for m in self.messages if m.created_at is not None]
        return max(timestamps) if timestamps else None

    def message_ids(self) -> set[str]:
        return {m.platform_message_id for m in self.messages}

    def find_message(self, platform_message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.platform_message_id == platform_message_id:
                return message
        return None

    def find_participant(self, identifier: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.identifier == identifier:
                return participant
        return None
