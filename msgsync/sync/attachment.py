"""
Attachment model and reconciliation.

Provides:
- Media type classification from MIME types
- Dedup key selection for attachments from either platform
- AttachmentReconciler, which merges a freshly fetched attachment list into
  an existing one without dropping previously retrieved data
"""

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Optional

from msgsync.utils.normalization import normalize_string

logger = logging.getLogger(__name__)


class MediaType:
    """Coarse attachment categories."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    ARCHIVE = "archive"
    OTHER = "other"


class DownloadState:
    """Attachment download lifecycle states."""

    PENDING = "pending"
    DEFERRED = "deferred"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


VALID_DOWNLOAD_STATES = frozenset(
    {
        DownloadState.PENDING,
        DownloadState.DEFERRED,
        DownloadState.COMPLETED,
        DownloadState.FAILED,
        DownloadState.SKIPPED,
    }
)

_DOCUMENT_MARKERS = ("pdf", "document", "spreadsheet", "presentation", "msword", "text/")
_ARCHIVE_MARKERS = ("zip", "rar", "tar", "gzip", "7z", "compressed")

# Fields filled from incoming data when the existing value is empty
BACKFILL_FIELDS = (
    "download_path",
    "size",
    "blob_ref",
    "download_url",
    "mime_type",
    "filename",
    "source_ref",
    "resource_name",
)


def classify_media_type(mime_type: Optional[str]) -> str:
    """
    Classify a MIME type into a MediaType value.

    Args:
        mime_type: MIME type such as "image/png"; None or empty gives OTHER

    Returns:
        One of the MediaType constants
    """
    if not mime_type:
        return MediaType.OTHER

    mime = mime_type.strip().lower()
    if mime.startswith("image/"):
        return MediaType.IMAGE
    if mime.startswith("video/"):
        return MediaType.VIDEO
    if mime.startswith("audio/") or mime == "application/ogg":
        return MediaType.AUDIO
    if any(marker in mime for marker in _ARCHIVE_MARKERS):
        return MediaType.ARCHIVE
    if any(marker in mime for marker in _DOCUMENT_MARKERS):
        return MediaType.DOCUMENT
    return MediaType.OTHER


def select_dedup_key(
    source_ref: Optional[str] = None,
    resource_name: Optional[str] = None,
    filename: Optional[str] = None,
    mime_type: Optional[str] = None,
    message_id: Optional[str] = None,
) -> tuple[str, bool]:
    """
    Choose the dedup key for an attachment.

    The first non-empty candidate wins:
    1. Explicit source reference (download/attachment data reference)
    2. Provider resource name
    3. filename + content type composite
    4. Synthesized random key

    A synthesized key is unique per call, so the attachment it identifies
    will not be recognized again on a later pass.

    Args:
        source_ref: Platform source reference for the attachment bytes
        resource_name: Platform resource name of the attachment
        filename: Attachment file name
        mime_type: Attachment content type
        message_id: Owning message id, used to prefix synthesized keys

    Returns:
        Tuple of (dedup_key, synthesized)
    """
    if source_ref and source_ref.strip():
        return source_ref.strip(), False
    if resource_name and resource_name.strip():
        return resource_name.strip(), False
    if filename and filename.strip():
        normalized = normalize_string(
            filename, remove_spaces=False, strip_punctuation=False
        )
        content_type = (mime_type or "").strip().lower()
        return f"{normalized}|{content_type}", False

    key = f"{message_id or 'message'}_attachment_{uuid.uuid4().hex}"
    logger.debug(f"Synthesized attachment key {key}")
    return key, True


@dataclass
class Attachment:
    """
    A message attachment.

    Attributes:
        dedup_key: Identity of the attachment within its message
        filename: Display file name
        mime_type: Content type reported by the platform
        media_type: MediaType classification of mime_type
        download_state: DownloadState value
        blob_ref: Opaque blob store reference once the bytes are stored
        size: Size in bytes, when known
        source_ref: Platform reference used to download the bytes
        resource_name: Platform resource name
        download_url: Direct download URL, when the platform provides one
        download_path: Local path, when the bytes were downloaded elsewhere
        synthesized_key: True when dedup_key was generated randomly
    """

    dedup_key: str
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    media_type: str = MediaType.OTHER
    download_state: str = DownloadState.PENDING
    blob_ref: Optional[str] = None
    size: Optional[int] = None
    source_ref: Optional[str] = None
    resource_name: Optional[str] = None
    download_url: Optional[str] = None
    download_path: Optional[str] = None
    synthesized_key: bool = False

    @classmethod
    def create(
        cls,
        message_id: Optional[str] = None,
        filename: Optional[str] = None,
        mime_type: Optional[str] = None,
        source_ref: Optional[str] = None,
        resource_name: Optional[str] = None,
        download_url: Optional[str] = None,
        size: Optional[int] = None,
        download_state: str = DownloadState.PENDING,
    ) -> "Attachment":
        """
        Build an Attachment, selecting its dedup key and media type.

        Usage:
            attachment = Attachment.create(
                message_id="m1",
                filename="report.pdf",
                mime_type="application/pdf",
                source_ref="m1/2",
            )
        """
        dedup_key, synthesized = select_dedup_key(
            source_ref=source_ref,
            resource_name=resource_name,
            filename=filename,
            mime_type=mime_type,
            message_id=message_id,
        )
        return cls(
            dedup_key=dedup_key,
            filename=filename,
            mime_type=mime_type,
            media_type=classify_media_type(mime_type),
            download_state=download_state,
            size=size,
            source_ref=source_ref,
            resource_name=resource_name,
            download_url=download_url,
            synthesized_key=synthesized,
        )

    @property
    def is_downloaded(self) -> bool:
        return self.download_state == DownloadState.COMPLETED


def _is_empty(value: object) -> bool:
    return value is None or value == ""


class AttachmentReconciler:
    """
    Merges attachment lists by dedup key.

    Existing attachments are never removed or reordered. For a key present
    on both sides only previously-empty fields are filled from the incoming
    copy; keys seen only in the incoming list are appended in order.

    Usage:
        reconciler = AttachmentReconciler()
        merged = reconciler.merge(existing.attachments, fetched.attachments)
    """

    def merge(
        self, existing: list[Attachment], incoming: list[Attachment]
    ) -> list[Attachment]:
        """
        Merge incoming attachments into existing ones.

        Args:
            existing: Attachments already persisted for the message
            incoming: Attachments from the latest fetch

        Returns:
            New merged list; the input lists are not modified
        """
        merged, _ = self.merge_with_changes(existing, incoming)
        return merged

    def merge_with_changes(
        self, existing: list[Attachment], incoming: list[Attachment]
    ) -> tuple[list[Attachment], bool]:
        """
        Merge incoming attachments and report whether anything changed.

        Returns:
            Tuple of (merged list, changed)
        """
        merged = [replace(attachment) for attachment in existing]
        index = {attachment.dedup_key: attachment for attachment in merged}
        changed = False

        for item in incoming:
            current = index.get(item.dedup_key)
            if current is None:
                added = replace(item)
                merged.append(added)
                index[added.dedup_key] = added
                changed = True
                continue

            if self._backfill(current, item):
                changed = True

        return merged, changed

    def _backfill(self, current: Attachment, incoming: Attachment) -> bool:
        """Fill empty fields of current from incoming, in place."""
        changed = False
        for name in BACKFILL_FIELDS:
            new_value = getattr(incoming, name)
            if _is_empty(getattr(current, name)) and not _is_empty(new_value):
                setattr(current, name, new_value)
                changed = True

        if current.media_type == MediaType.OTHER and current.mime_type:
            media_type = classify_media_type(current.mime_type)
            if media_type != current.media_type:
                current.media_type = media_type
                changed = True

        if (
            incoming.download_state == DownloadState.COMPLETED
            and current.download_state != DownloadState.COMPLETED
        ):
            current.download_state = DownloadState.COMPLETED
            changed = True

        if changed:
            logger.debug(f"Backfilled attachment {current.dedup_key}")
        return changed
