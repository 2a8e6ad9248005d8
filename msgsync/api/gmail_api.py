"""
Gmail API connector.

Provides:
- Thread listing per label (INBOX, SENT) restricted to a lookback window
- Message listing and parsing, including attachment metadata
- Participant listing from From/To/Cc headers
- Attachment download through users.messages.attachments
"""

import base64
import binascii
import logging
from datetime import date, datetime, timedelta, timezone
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from typing import Any, Optional

from google.oauth2.credentials import Credentials

from msgsync.api.base import ConversationRef, Page, PlatformConnector
from msgsync.api.google_client import DEFAULT_PAGE_SIZE, GoogleAPIConnector
from msgsync.config.sync_config import PLATFORM_GMAIL, GmailConfig
from msgsync.errors import DataShapeError
from msgsync.sync.account import Account
from msgsync.sync.attachment import Attachment, DownloadState
from msgsync.sync.conversation import ConversationKind, Message
from msgsync.utils.normalization import normalize_email

logger = logging.getLogger(__name__)

MEMBER_HEADERS = ("From", "To", "Cc")


def get_header(headers: list[dict[str, Any]], name: str) -> str:
    """Return the value of a header, matched case-insensitively."""
    name = name.lower()
    for header in headers or []:
        if (header.get("name") or "").lower() == name:
            return header.get("value") or ""
    return ""


def decode_body(data: Optional[str]) -> str:
    """Decode a base64url message body part."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError) as e:
        raise DataShapeError(f"Malformed message body: {e}") from e
    return decoded.decode("utf-8", errors="replace")


def extract_body(payload: dict[str, Any]) -> str:
    """
    Extract the text body of a message payload.

    Prefers text/plain, falls back to text/html.
    """
    plain = ""
    html = ""

    def walk(part: dict[str, Any]) -> None:
        nonlocal plain, html
        mime_type = part.get("mimeType", "")
        data = (part.get("body") or {}).get("data")
        if data and not part.get("filename"):
            if mime_type == "text/plain" and not plain:
                plain = decode_body(data)
            elif mime_type == "text/html" and not html:
                html = decode_body(data)
        for child in part.get("parts") or []:
            walk(child)

    walk(payload)
    if not plain and not html and (payload.get("body") or {}).get("data"):
        return decode_body(payload["body"]["data"])
    return plain or html


def extract_attachment_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Collect every payload part that carries a file name, depth first."""
    parts: list[dict[str, Any]] = []

    def walk(part: dict[str, Any]) -> None:
        for child in part.get("parts") or []:
            if child.get("filename"):
                parts.append(child)
            walk(child)

    walk(payload)
    return parts


def parse_timestamp(raw: dict[str, Any], headers: list[dict[str, Any]]) -> Optional[datetime]:
    """Creation time from internalDate (ms since epoch), else the Date header."""
    internal_date = raw.get("internalDate")
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            logger.debug(f"Invalid internalDate {internal_date!r}")

    date_header = get_header(headers, "Date")
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


class GmailConnector(GoogleAPIConnector, PlatformConnector):
    """
    Gmail connector for one mailbox.

    Threads are listed once per label; the same thread appearing under both
    INBOX and SENT is merged by the conversation grouper.

    Usage:
        connector = GmailConnector(credentials, GmailConfig())
        page = connector.list_conversations(account, label="INBOX")
        for ref in page.items:
            messages = connector.list_messages(ref.id, label="INBOX")
    """

    SERVICE_NAME = "gmail"
    SERVICE_VERSION = "v1"

    platform = PLATFORM_GMAIL
    hydrate_listed_messages = False

    def __init__(
        self,
        credentials: Credentials,
        config: Optional[GmailConfig] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        today: Optional[date] = None,
    ):
        """
        Initialize the Gmail connector.

        Args:
            credentials: Credentials authorized for the mailbox
            config: Gmail settings (labels, lookback window)
            page_size: Threads per page (API max is 500)
            today: Reference date for the lookback window, defaults to today
        """
        super().__init__(credentials, page_size=min(page_size, 500))
        self.config = config or GmailConfig()
        self.labels = tuple(self.config.labels)
        self.outgoing_label = self.config.outgoing_label
        self._today = today

    def _search_query(self) -> str:
        today = self._today or datetime.now(timezone.utc).date()
        after = today - timedelta(days=self.config.lookback_days)
        return f"after:{after.isoformat()}"

    def list_conversations(
        self,
        account: Account,
        page_token: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Page:
        params: dict[str, Any] = {
            "userId": "me",
            "maxResults": self.page_size,
            "q": self._search_query(),
        }
        if label:
            params["labelIds"] = [label]
        if page_token:
            params["pageToken"] = page_token

        response = self._execute(
            lambda: self.service.users().threads().list(**params).execute(),
            f"list_threads({account.email}, {label})",
        )
        threads = response.get("threads", []) or []
        logger.debug(f"Listed {len(threads)} threads for {account.email} ({label})")
        return Page(
            items=[
                ConversationRef(id=thread["id"], kind=ConversationKind.THREAD)
                for thread in threads
                if thread.get("id")
            ],
            next_page_token=response.get("nextPageToken"),
        )

    def list_messages(
        self,
        conversation_id: str,
        page_token: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Page:
        """
        List the messages of a thread that carry a label.

        threads.get is not paginated, so the page never has a continuation.
        """
        response = self._execute(
            lambda: self.service.users()
            .threads()
            .get(userId="me", id=conversation_id, format="full")
            .execute(),
            f"get_thread({conversation_id})",
            not_found_ok=True,
        )
        if response is None:
            return Page()

        messages = response.get("messages", []) or []
        if label:
            messages = [m for m in messages if label in (m.get("labelIds") or [])]
        return Page(items=messages)

    def get_message(self, message_id: str) -> dict[str, Any]:
        return self._execute(
            lambda: self.service.users()
            .messages()
            .get(userId="me", id=message_id, format="full")
            .execute(),
            f"get_message({message_id})",
        )

    def list_members(self, conversation_id: str) -> list[str]:
        """List every address found in From/To/Cc headers of a thread."""
        response = self._execute(
            lambda: self.service.users()
            .threads()
            .get(
                userId="me",
                id=conversation_id,
                format="metadata",
                metadataHeaders=list(MEMBER_HEADERS),
            )
            .execute(),
            f"list_members({conversation_id})",
            not_found_ok=True,
        )
        if response is None:
            return []

        members: list[str] = []
        for message in response.get("messages", []) or []:
            headers = (message.get("payload") or {}).get("headers", [])
            values = [get_header(headers, name) for name in MEMBER_HEADERS]
            for _, address in getaddresses([v for v in values if v]):
                address = normalize_email(address)
                if address and address not in members:
                    members.append(address)
        return members

    def parse_message(
        self, raw: dict[str, Any], conversation_id: str, label: Optional[str] = None
    ) -> Message:
        message_id = raw.get("id")
        thread_id = raw.get("threadId") or conversation_id
        if not message_id or not thread_id:
            raise DataShapeError(f"Gmail message without id or threadId: {raw!r:.200}")

        payload = raw.get("payload") or {}
        headers = payload.get("headers", [])
        sender = normalize_email(parseaddr(get_header(headers, "From"))[1]) or None

        attachments = []
        for part in extract_attachment_parts(payload):
            body = part.get("body") or {}
            attachment_id = body.get("attachmentId")
            attachments.append(
                Attachment.create(
                    message_id=message_id,
                    filename=part.get("filename"),
                    mime_type=part.get("mimeType"),
                    source_ref=f"{message_id}/{part['partId']}" if part.get("partId") else None,
                    resource_name=attachment_id,
                    size=body.get("size"),
                    download_state=(
                        DownloadState.DEFERRED if attachment_id else DownloadState.SKIPPED
                    ),
                )
            )

        return Message(
            platform_message_id=message_id,
            conversation_id=thread_id,
            sender_identifier=sender,
            body=extract_body(payload),
            label=label,
            created_at=parse_timestamp(raw, headers),
            attachments=attachments,
            subject=get_header(headers, "Subject").strip() or None,
        )

    def get_account_identifier(self, account: Account) -> Optional[str]:
        return normalize_email(account.email)

    def download_attachment(
        self, message: Message, attachment: Attachment
    ) -> Optional[bytes]:
        """Download attachment bytes by message id and attachment id."""
        if not attachment.resource_name:
            return None

        response = self._execute(
            lambda: self.service.users()
            .messages()
            .attachments()
            .get(
                userId="me",
                messageId=message.platform_message_id,
                id=attachment.resource_name,
            )
            .execute(),
            f"download_attachment({message.platform_message_id})",
            not_found_ok=True,
        )
        if not response or not response.get("data"):
            return None
        data = response["data"]
        return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
