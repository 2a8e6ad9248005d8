"""
Incremental merge of fetched messages into persisted conversations.

The merge is computed as a pure plan first and then persisted in a single
transaction. Persisted messages are never rewritten except for attachment
backfill, and a plan with no changes writes nothing.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Optional

from msgsync.storage.db import SyncDatabase
from msgsync.sync.attachment import AttachmentReconciler
from msgsync.sync.conversation import (
    Conversation,
    Message,
    Participant,
    ParticipantRole,
    is_placeholder_display_name,
    sort_messages,
)

logger = logging.getLogger(__name__)


@dataclass
class MergePlan:
    """
    The delta between a persisted conversation and a fetched batch.

    Attributes:
        conversation: Conversation as it will look after the merge
        new_messages: Messages to insert
        backfilled_messages: Persisted messages whose attachments changed
        participants: Participants to insert or update
        renamed: Whether the conversation's placeholder name is replaced
        is_new_conversation: Whether the conversation is not persisted yet
    """

    conversation: Conversation
    new_messages: list[Message] = field(default_factory=list)
    backfilled_messages: list[Message] = field(default_factory=list)
    participants: list[Participant] = field(default_factory=list)
    renamed: bool = False
    is_new_conversation: bool = False

    @property
    def is_empty(self) -> bool:
        return not (
            self.new_messages
            or self.backfilled_messages
            or self.participants
            or self.renamed
            or self.is_new_conversation
        )


@dataclass
class MergeResult:
    """Outcome of merging one batch into one conversation."""

    conversation: Conversation
    new_message_count: int = 0
    backfilled_count: int = 0
    is_new_conversation: bool = False
    written: bool = False


class MergeEngine:
    """
    Computes and persists incremental conversation updates.

    Usage:
        engine = MergeEngine(database)
        existing = database.find_conversation(account.id, thread_id) or Conversation(...)
        result = engine.merge_conversation(existing, batch.messages)
        print(result.new_message_count)
    """

    def __init__(
        self, store: SyncDatabase, reconciler: Optional[AttachmentReconciler] = None
    ):
        self.store = store
        self.reconciler = reconciler or AttachmentReconciler()

    def compute(
        self,
        existing: Conversation,
        incoming: Iterable[Message],
        participants: Iterable[Participant] = (),
        display_name: Optional[str] = None,
    ) -> MergePlan:
        """
        Compute the merge of incoming messages into a conversation.

        Neither argument is modified.

        Args:
            existing: Persisted conversation, or an unsaved one (id None)
            incoming: Fetched messages of the conversation
            participants: Participants observed in this fetch
            display_name: Name suggested by this fetch

        Returns:
            MergePlan describing every change
        """
        is_new = existing.id is None
        messages = list(existing.messages)
        positions = {m.platform_message_id: i for i, m in enumerate(messages)}

        new_messages: list[Message] = []
        backfilled: list[Message] = []
        new_ids: set[str] = set()

        for message in incoming:
            message_id = message.platform_message_id
            if message_id in positions:
                current = messages[positions[message_id]]
                attachments, changed = self.reconciler.merge_with_changes(
                    current.attachments, message.attachments
                )
                if changed:
                    updated = replace(current, attachments=attachments)
                    messages[positions[message_id]] = updated
                    backfilled = [m for m in backfilled if m.platform_message_id != message_id]
                    backfilled.append(updated)
            elif message_id not in new_ids:
                new_ids.add(message_id)
                new_messages.append(message)

        merged_participants, changed_participants = self._merge_participants(
            existing.participants, participants
        )

        name = existing.display_name
        renamed = False
        if (
            display_name
            and not is_placeholder_display_name(display_name)
            and is_placeholder_display_name(name)
            and not is_new
        ):
            name = display_name
            renamed = True
        elif is_new and display_name and is_placeholder_display_name(name):
            name = display_name

        conversation = replace(
            existing,
            display_name=name,
            participants=merged_participants,
            messages=sort_messages(messages + new_messages),
        )
        return MergePlan(
            conversation=conversation,
            new_messages=new_messages,
            backfilled_messages=backfilled,
            participants=changed_participants,
            renamed=renamed,
            is_new_conversation=is_new,
        )

    def _merge_participants(
        self, existing: list[Participant], incoming: Iterable[Participant]
    ) -> tuple[list[Participant], list[Participant]]:
        """Union participants by identifier, filling empty fields only."""
        merged = [replace(p) for p in existing]
        index = {p.identifier: p for p in merged}
        changed: list[Participant] = []

        for participant in incoming:
            current = index.get(participant.identifier)
            if current is None:
                added = replace(participant)
                merged.append(added)
                index[added.identifier] = added
                changed.append(added)
                continue

            updated = False
            if not current.resolved_email and participant.resolved_email:
                current.resolved_email = participant.resolved_email
                updated = True
            if not current.display_name and participant.display_name:
                current.display_name = participant.display_name
                updated = True
            if (
                current.role == ParticipantRole.SENDER
                and participant.role == ParticipantRole.MEMBER
            ):
                current.role = ParticipantRole.MEMBER
                updated = True
            if updated and current not in changed:
                changed.append(current)

        return merged, changed

    def merge_conversation(
        self,
        existing: Conversation,
        incoming: Iterable[Message],
        participants: Iterable[Participant] = (),
        display_name: Optional[str] = None,
    ) -> MergeResult:
        """
        Merge incoming messages into a conversation and persist the result.

        The whole update is one transaction. Merging the same batch twice
        writes nothing the second time.

        Args:
            existing: Persisted conversation, or an unsaved one (id None)
            incoming: Fetched messages of the conversation
            participants: Participants observed in this fetch
            display_name: Name suggested by this fetch

        Returns:
            MergeResult with the merged conversation and counts
        """
        plan = self.compute(existing, incoming, participants, display_name)
        if plan.is_empty:
            logger.debug(
                f"Conversation {existing.platform_thread_id} is up to date, nothing to write"
            )
            return MergeResult(conversation=plan.conversation)

        inserted = self.store.append_messages(
            plan.conversation,
            plan.new_messages,
            plan.backfilled_messages,
            plan.participants,
        )
        logger.debug(
            f"Merged conversation {existing.platform_thread_id}: "
            f"{inserted} new, {len(plan.backfilled_messages)} backfilled"
        )
        return MergeResult(
            conversation=plan.conversation,
            new_message_count=inserted,
            backfilled_count=len(plan.backfilled_messages),
            is_new_conversation=plan.is_new_conversation,
            written=True,
        )
