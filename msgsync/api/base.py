"""
Platform connector interface.

A connector wraps the raw API of one messaging platform for one account.
The sync core only talks to platforms through this interface, so tests can
substitute an in-memory fake.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from msgsync.sync.account import Account
from msgsync.sync.attachment import Attachment
from msgsync.sync.conversation import ConversationKind, Message


@dataclass
class Page:
    """One page of a paginated listing."""

    items: list[Any] = field(default_factory=list)
    next_page_token: Optional[str] = None


@dataclass
class ConversationRef:
    """
    A conversation as listed by a platform.

    Attributes:
        id: Platform thread or space id
        display_name: Platform-supplied name, if any
        kind: ConversationKind value
    """

    id: str
    display_name: Optional[str] = None
    kind: str = ConversationKind.THREAD


@dataclass
class DirectoryProfile:
    """A canonical profile returned by a directory service."""

    email: str
    display_name: Optional[str] = None
    domain: Optional[str] = None


class PlatformConnector(ABC):
    """
    Base class for platform connectors.

    Class attributes:
        platform: Platform name used in sync state and conversation rows
        labels: Labels fetched independently; (None,) when the platform has
            no labels
        outgoing_label: Label of messages sent by the account, if any
        hydrate_listed_messages: Whether listed messages must be fetched
            individually to get complete attachment data
    """

    platform: str = ""
    labels: tuple[Optional[str], ...] = (None,)
    outgoing_label: Optional[str] = None
    hydrate_listed_messages: bool = False

    @abstractmethod
    def list_conversations(
        self,
        account: Account,
        page_token: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Page:
        """List one page of ConversationRef items."""

    @abstractmethod
    def list_messages(
        self,
        conversation_id: str,
        page_token: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Page:
        """List one page of raw message dicts of a conversation."""

    @abstractmethod
    def get_message(self, message_id: str) -> dict[str, Any]:
        """Fetch one raw message with complete attachment data."""

    @abstractmethod
    def list_members(self, conversation_id: str) -> list[str]:
        """List participant identifiers of a conversation."""

    @abstractmethod
    def parse_message(
        self, raw: dict[str, Any], conversation_id: str, label: Optional[str] = None
    ) -> Message:
        """
        Convert a raw platform message into a Message.

        Raises:
            DataShapeError: If the raw message lacks required fields
        """

    def resolve_directory_profile(self, identifier: str) -> Optional[DirectoryProfile]:
        """Look up a canonical profile; None when unavailable."""
        return None

    def get_account_identifier(self, account: Account) -> Optional[str]:
        """Return the platform identifier of the account itself, if known."""
        return None

    def download_attachment(
        self, message: Message, attachment: Attachment
    ) -> Optional[bytes]:
        """Download attachment bytes; None when the platform cannot."""
        return None
