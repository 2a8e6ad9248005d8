"""
Conversation grouping.

Messages are fetched per label, so one platform thread can arrive split
across several fetches. The grouper collapses everything fetched for an
account into one batch per platform thread id before anything is persisted.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Optional

from msgsync.api.base import ConversationRef
from msgsync.sync.attachment import AttachmentReconciler
from msgsync.sync.conversation import (
    ConversationKind,
    Message,
    placeholder_display_name,
    sort_messages,
)

logger = logging.getLogger(__name__)


@dataclass
class ConversationBatch:
    """
    All fetched messages of one platform thread.

    Attributes:
        platform_thread_id: Platform thread or space id
        platform: Platform name
        kind: ConversationKind value
        display_name: Connector-supplied name, earliest subject or placeholder
        labels: Labels the messages were fetched under, in encounter order
        messages: Messages ordered by (created_at, platform_message_id)
    """

    platform_thread_id: str
    platform: str
    kind: str
    display_name: str
    labels: list[str] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)


class ConversationGrouper:
    """
    Groups fetched messages by platform thread id.

    Usage:
        grouper = ConversationGrouper()
        batches = grouper.group("gmail", inbox_messages + sent_messages)
    """

    def __init__(self, reconciler: Optional[AttachmentReconciler] = None):
        self.reconciler = reconciler or AttachmentReconciler()

    def group(
        self,
        platform: str,
        messages: Iterable[Message],
        refs: Optional[Mapping[str, ConversationRef]] = None,
        default_kind: str = ConversationKind.THREAD,
    ) -> list[ConversationBatch]:
        """
        Group messages into one batch per platform thread id.

        A message id seen more than once keeps the copy fetched first; the
        attachments of later copies are reconciled into it.

        Args:
            platform: Platform name
            messages: Messages from every label fetch, in fetch order
            refs: Listed conversations by id, for names and kinds
            default_kind: Kind used when a thread has no ref

        Returns:
            Batches in order of first appearance
        """
        refs = refs or {}
        by_thread: dict[str, dict[str, Message]] = {}
        labels: dict[str, list[str]] = {}
        duplicates = 0

        for message in messages:
            thread_messages = by_thread.setdefault(message.conversation_id, {})
            thread_labels = labels.setdefault(message.conversation_id, [])
            if message.label and message.label not in thread_labels:
                thread_labels.append(message.label)

            existing = thread_messages.get(message.platform_message_id)
            if existing is None:
                thread_messages[message.platform_message_id] = message
                continue

            duplicates += 1
            attachments = self.reconciler.merge(existing.attachments, message.attachments)
            thread_messages[message.platform_message_id] = replace(
                existing, attachments=attachments
            )

        if duplicates:
            logger.debug(f"Collapsed {duplicates} messages fetched under several labels")

        batches = []
        for thread_id, thread_messages in by_thread.items():
            ref = refs.get(thread_id)
            kind = ref.kind if ref is not None else default_kind
            ordered = sort_messages(list(thread_messages.values()))
            batches.append(
                ConversationBatch(
                    platform_thread_id=thread_id,
                    platform=platform,
                    kind=kind,
                    display_name=self._display_name(ref, kind, ordered),
                    labels=labels[thread_id],
                    messages=ordered,
                )
            )
        return batches

    @staticmethod
    def _display_name(
        ref: Optional[ConversationRef], kind: str, messages: list[Message]
    ) -> str:
        if ref is not None and ref.display_name:
            return ref.display_name
        for message in messages:
            if message.subject and message.subject.strip():
                return message.subject.strip()
        return placeholder_display_name(kind)
