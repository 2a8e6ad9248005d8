"""
Google Chat API connector.

Provides:
- Space listing and paginated message listing
- Message parsing, accepting both the "attachments" and "attachment" fields
- Space member listing
- Directory profile lookup through the Admin SDK Directory API
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from google.oauth2.credentials import Credentials

from msgsync.api.base import ConversationRef, DirectoryProfile, Page, PlatformConnector
from msgsync.api.google_client import DEFAULT_PAGE_SIZE, GoogleAPIConnector
from msgsync.config.sync_config import PLATFORM_CHAT
from msgsync.errors import DataShapeError, PlatformAPIError
from msgsync.sync.account import Account
from msgsync.sync.attachment import Attachment, DownloadState
from msgsync.sync.conversation import ConversationKind, Message
from msgsync.utils.normalization import (
    canonical_identifier,
    email_domain,
    identifier_candidates,
    normalize_email,
)

logger = logging.getLogger(__name__)

# Chat API max page sizes
MAX_SPACES_PAGE_SIZE = 1000
MAX_MESSAGES_PAGE_SIZE = 1000

_SPACE_KINDS = {
    "DIRECT_MESSAGE": ConversationKind.DIRECT_MESSAGE,
    "GROUP_CHAT": ConversationKind.GROUP_CHAT,
    "SPACE": ConversationKind.SPACE,
}

_FRACTION = re.compile(r"\.(\d+)")


def parse_create_time(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 createTime.

    Nanosecond fractions are truncated to microseconds.
    """
    if not value:
        return None
    value = value.strip().replace("Z", "+00:00")
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.debug(f"Invalid createTime {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def raw_attachments(raw: dict[str, Any]) -> list[dict[str, Any]]:
    """Return message attachments from either the plural or singular field."""
    attachments = raw.get("attachments")
    if attachments is None:
        attachments = raw.get("attachment")
    if attachments is None:
        return []
    if isinstance(attachments, dict):
        return [attachments]
    return [a for a in attachments if isinstance(a, dict)]


def space_kind(space: dict[str, Any]) -> str:
    space_type = space.get("spaceType") or space.get("type")
    if space_type == "ROOM":
        space_type = "SPACE"
    if space_type == "DM":
        space_type = "DIRECT_MESSAGE"
    return _SPACE_KINDS.get(space_type or "", ConversationKind.SPACE)


class ChatConnector(GoogleAPIConnector, PlatformConnector):
    """
    Google Chat connector for one account.

    Listed messages may omit attachment details, so the orchestrator
    fetches each message individually before parsing.

    Usage:
        connector = ChatConnector(credentials)
        page = connector.list_conversations(account)
        profile = connector.resolve_directory_profile("users/123")
    """

    SERVICE_NAME = "chat"
    SERVICE_VERSION = "v1"
    DIRECTORY_SERVICE_NAME = "admin"
    DIRECTORY_SERVICE_VERSION = "directory_v1"

    platform = PLATFORM_CHAT
    labels = (None,)
    outgoing_label = None
    hydrate_listed_messages = True

    def __init__(
        self,
        credentials: Credentials,
        page_size: int = DEFAULT_PAGE_SIZE,
        directory_enabled: bool = True,
    ):
        """
        Initialize the Chat connector.

        Args:
            credentials: Credentials with chat and directory read scopes
            page_size: Items per page for list calls
            directory_enabled: Whether Admin Directory lookups are allowed
        """
        super().__init__(credentials, page_size=page_size)
        self.directory_enabled = directory_enabled

    @property
    def directory_service(self) -> Any:
        return self._build_service(
            self.DIRECTORY_SERVICE_NAME, self.DIRECTORY_SERVICE_VERSION
        )

    # =========================================================================
    # Listing
    # =========================================================================

    def list_conversations(
        self,
        account: Account,
        page_token: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Page:
        params: dict[str, Any] = {"pageSize": min(self.page_size, MAX_SPACES_PAGE_SIZE)}
        if page_token:
            params["pageToken"] = page_token

        response = self._execute(
            lambda: self.service.spaces().list(**params).execute(),
            f"list_spaces({account.email})",
        )
        refs = []
        for space in response.get("spaces", []) or []:
            if not space.get("name"):
                continue
            refs.append(
                ConversationRef(
                    id=space["name"],
                    display_name=space.get("displayName") or None,
                    kind=space_kind(space),
                )
            )
        logger.debug(f"Listed {len(refs)} spaces for {account.email}")
        return Page(items=refs, next_page_token=response.get("nextPageToken"))

    def list_messages(
        self,
        conversation_id: str,
        page_token: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Page:
        params: dict[str, Any] = {
            "parent": conversation_id,
            "pageSize": min(self.page_size, MAX_MESSAGES_PAGE_SIZE),
        }
        if page_token:
            params["pageToken"] = page_token

        response = self._execute(
            lambda: self.service.spaces().messages().list(**params).execute(),
            f"list_messages({conversation_id})",
        )
        return Page(
            items=response.get("messages", []) or [],
            next_page_token=response.get("nextPageToken"),
        )

    def get_message(self, message_id: str) -> dict[str, Any]:
        return self._execute(
            lambda: self.service.spaces().messages().get(name=message_id).execute(),
            f"get_message({message_id})",
        )

    def list_members(self, conversation_id: str) -> list[str]:
        """List the user resource names of every human member of a space."""
        members: list[str] = []
        page_token: Optional[str] = None

        while True:
            params: dict[str, Any] = {"parent": conversation_id, "pageSize": 1000}
            if page_token:
                params["pageToken"] = page_token

            response = self._execute(
                lambda p=params: self.service.spaces().members().list(**p).execute(),
                f"list_members({conversation_id})",
            )
            for membership in response.get("memberships", []) or []:
                member = membership.get("member") or {}
                name = member.get("name")
                if name and member.get("type", "HUMAN") == "HUMAN" and name not in members:
                    members.append(name)

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return members

    # =========================================================================
    # Parsing
    # =========================================================================

    def parse_message(
        self, raw: dict[str, Any], conversation_id: str, label: Optional[str] = None
    ) -> Message:
        name = raw.get("name")
        if not name:
            raise DataShapeError(f"Chat message without name: {raw!r:.200}")

        space_id = (raw.get("space") or {}).get("name") or conversation_id
        if not space_id:
            raise DataShapeError(f"Chat message {name} without space")

        attachments = []
        for att in raw_attachments(raw):
            data_ref = att.get("attachmentDataRef") or {}
            drive_ref = att.get("driveDataRef") or {}
            attachments.append(
                Attachment.create(
                    message_id=name,
                    filename=att.get("contentName"),
                    mime_type=att.get("contentType"),
                    source_ref=data_ref.get("resourceName") or drive_ref.get("driveFileId"),
                    resource_name=att.get("name"),
                    download_url=att.get("downloadUri"),
                    download_state=DownloadState.PENDING,
                )
            )

        return Message(
            platform_message_id=name,
            conversation_id=space_id,
            sender_identifier=(raw.get("sender") or {}).get("name"),
            body=raw.get("text") or raw.get("formattedText") or "",
            label=label,
            created_at=parse_create_time(raw.get("createTime")),
            attachments=attachments,
        )

    # =========================================================================
    # Directory
    # =========================================================================

    def resolve_directory_profile(self, identifier: str) -> Optional[DirectoryProfile]:
        """
        Look up a user in the Admin SDK Directory.

        Tries the bare numeric id first, then the other identifier forms.

        Returns:
            DirectoryProfile, or None if no candidate is found
        """
        if not self.directory_enabled:
            return None

        bare = canonical_identifier(identifier)
        candidates = [bare] + [
            c for c in identifier_candidates(identifier) if c != bare and "/" not in c
        ]
        for candidate in candidates:
            user = self._execute(
                lambda c=candidate: self.directory_service.users()
                .get(userKey=c)
                .execute(),
                f"directory_lookup({candidate})",
                not_found_ok=True,
            )
            if not user or not user.get("primaryEmail"):
                continue

            email = normalize_email(user["primaryEmail"])
            return DirectoryProfile(
                email=email,
                display_name=(user.get("name") or {}).get("fullName") or None,
                domain=email_domain(email),
            )
        return None

    def get_account_identifier(self, account: Account) -> Optional[str]:
        """Return "users/<id>" for the account, or None if the lookup fails."""
        if not self.directory_enabled:
            return None
        try:
            user = self._execute(
                lambda: self.directory_service.users()
                .get(userKey=account.email)
                .execute(),
                f"account_lookup({account.email})",
                not_found_ok=True,
            )
        except PlatformAPIError as e:
            logger.warning(f"Directory lookup failed for {account.email}: {e}")
            return None
        if not user or not user.get("id"):
            return None
        return f"users/{user['id']}"

    def download_attachment(
        self, message: Message, attachment: Attachment
    ) -> Optional[bytes]:
        """Download uploaded attachment content through media.download."""
        if not attachment.source_ref:
            return None

        return self._execute(
            lambda: self.service.media()
            .download_media(resourceName=attachment.source_ref)
            .execute(),
            f"download_attachment({message.platform_message_id})",
            not_found_ok=True,
        )
