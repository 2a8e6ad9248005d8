"""Tests for incremental conversation merges."""

from unittest.mock import MagicMock

import pytest

from fakes import at
from msgsync.storage.db import SyncDatabase
from msgsync.sync.attachment import Attachment
from msgsync.sync.conversation import (
    UNNAMED_DIRECT_MESSAGE,
    Conversation,
    ConversationKind,
    Message,
    Participant,
    ParticipantRole,
)
from msgsync.sync.merge import MergeEngine


def message(message_id, minutes, attachments=None):
    return Message(
        platform_message_id=message_id,
        conversation_id="T1",
        sender_identifier="alice@example.com",
        created_at=at(minutes),
        attachments=attachments or [],
    )


@pytest.fixture
def engine(database):
    return MergeEngine(database)


@pytest.fixture
def new_conversation(account):
    return Conversation(
        account_id=account.id,
        platform="gmail",
        platform_thread_id="T1",
        display_name="Budget",
    )


class TestCompute:
    """Test computing merge plans without persisting."""

    def test_new_conversation_plan(self, new_conversation):
        """Test that every message of a new conversation is new."""
        engine = MergeEngine(MagicMock(spec=SyncDatabase))

        plan = engine.compute(new_conversation, [message("m2", 5), message("m1", 0)])

        assert plan.is_new_conversation
        assert [m.platform_message_id for m in plan.new_messages] == ["m2", "m1"]
        assert [m.platform_message_id for m in plan.conversation.messages] == ["m1", "m2"]
        assert plan.conversation.message_count == 2
        assert plan.conversation.last_activity_time == at(5)

    def test_inputs_are_not_modified(self, new_conversation):
        """Test that compute leaves the existing conversation untouched."""
        engine = MergeEngine(MagicMock(spec=SyncDatabase))

        engine.compute(new_conversation, [message("m1", 0)])

        assert new_conversation.messages == []

    def test_incoming_duplicates_counted_once(self, new_conversation):
        """Test that a message repeated in the batch is new only once."""
        engine = MergeEngine(MagicMock(spec=SyncDatabase))

        plan = engine.compute(new_conversation, [message("m1", 0), message("m1", 0)])

        assert len(plan.new_messages) == 1

    def test_participants_fill_empty_fields(self):
        """Test that participant data is only added, never overwritten."""
        existing = Conversation(
            account_id=1,
            platform="chat",
            platform_thread_id="spaces/A",
            id=7,
            participants=[
                Participant("users/2", resolved_email="b@example.com", role=ParticipantRole.SENDER)
            ],
        )
        engine = MergeEngine(MagicMock(spec=SyncDatabase))

        plan = engine.compute(
            existing,
            [],
            participants=[
                Participant("users/2", resolved_email="other@example.com", display_name="Bob"),
                Participant("users/3"),
            ],
        )

        bob = plan.conversation.participants[0]
        assert bob.resolved_email == "b@example.com"
        assert bob.display_name == "Bob"
        assert bob.role == ParticipantRole.MEMBER
        assert [p.identifier for p in plan.participants] == ["users/2", "users/3"]
        assert existing.participants[0].display_name is None

    def test_placeholder_name_is_replaced(self):
        """Test that a stored placeholder name takes a real suggestion."""
        existing = Conversation(
            account_id=1,
            platform="chat",
            platform_thread_id="spaces/DM1",
            kind=ConversationKind.DIRECT_MESSAGE,
            display_name=UNNAMED_DIRECT_MESSAGE,
            id=3,
        )
        engine = MergeEngine(MagicMock(spec=SyncDatabase))

        plan = engine.compute(existing, [], display_name="Bob Builder")

        assert plan.renamed
        assert plan.conversation.display_name == "Bob Builder"

    def test_real_name_is_kept(self):
        """Test that a real stored name is never replaced."""
        existing = Conversation(
            account_id=1, platform="gmail", platform_thread_id="T1", display_name="Budget", id=3
        )
        engine = MergeEngine(MagicMock(spec=SyncDatabase))

        plan = engine.compute(existing, [], display_name="Re: Budget")

        assert not plan.renamed
        assert plan.is_empty
        assert plan.conversation.display_name == "Budget"


class TestMergeConversation:
    """Test persisting merges."""

    def test_first_merge_persists(self, database, account, engine, new_conversation):
        """Test that a new conversation and its messages are written."""
        result = engine.merge_conversation(new_conversation, [message("m1", 0)])

        assert result.written
        assert result.is_new_conversation
        assert result.new_message_count == 1
        assert result.conversation.id is not None
        assert database.find_conversation(account.id, "T1").message_count == 1

    def test_merge_is_idempotent(self, database, account, engine, new_conversation):
        """Test that merging the same batch twice writes nothing the second time."""
        batch = [message("m1", 0), message("m2", 1)]
        first = engine.merge_conversation(new_conversation, batch)
        stored = database.find_conversation(account.id, "T1")

        second = engine.merge_conversation(stored, batch)

        assert first.new_message_count == 2
        assert not second.written
        assert second.new_message_count == 0
        assert database.count_messages(account.id) == 2

    def test_unchanged_merge_does_not_touch_store(self, new_conversation):
        """Test that an empty plan never calls the store."""
        store = MagicMock(spec=SyncDatabase)
        existing = Conversation(
            account_id=1,
            platform="gmail",
            platform_thread_id="T1",
            display_name="Budget",
            id=5,
            messages=[message("m1", 0)],
        )

        result = MergeEngine(store).merge_conversation(existing, [message("m1", 0)])

        assert not result.written
        store.append_messages.assert_not_called()

    def test_attachment_backfill(self, database, account, engine, new_conversation):
        """Test that attachments of stored messages are backfilled."""
        engine.merge_conversation(
            new_conversation,
            [message("m1", 0, [Attachment(dedup_key="a", filename="a.pdf")])],
        )
        stored = database.find_conversation(account.id, "T1")

        result = engine.merge_conversation(
            stored,
            [
                message(
                    "m1",
                    0,
                    [
                        Attachment(dedup_key="a", download_url="https://files.example.com/a"),
                        Attachment(dedup_key="b", filename="b.png"),
                    ],
                )
            ],
        )

        assert result.backfilled_count == 1
        assert result.new_message_count == 0
        attachments = database.find_conversation(account.id, "T1").messages[0].attachments
        assert [a.dedup_key for a in attachments] == ["a", "b"]
        assert attachments[0].filename == "a.pdf"
        assert attachments[0].download_url == "https://files.example.com/a"

    def test_late_message_is_inserted_in_order(
        self, database, account, engine, new_conversation
    ):
        """Test that an earlier message fetched later sorts first."""
        engine.merge_conversation(new_conversation, [message("m2", 10)])
        stored = database.find_conversation(account.id, "T1")

        result = engine.merge_conversation(stored, [message("m1", 0), message("m2", 10)])

        assert result.new_message_count == 1
        loaded = database.find_conversation(account.id, "T1")
        assert [m.platform_message_id for m in loaded.messages] == ["m1", "m2"]
