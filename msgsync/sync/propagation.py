"""
Cross-account identity propagation.

An identifier that shows up in the direct messages of several synced
accounts is often one of those accounts. The account under which it sent
the most messages as "the account itself" is taken as its owner, and the
mapping is upgraded to that account's email. Runs outside the sync critical
path; it only reads messages and writes identity mappings and conversation
names.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Optional

from msgsync.config.sync_config import IdentityConfig
from msgsync.storage.db import SyncDatabase
from msgsync.sync.conversation import ConversationKind
from msgsync.sync.identity import (
    CONFIDENCE_CROSS_ACCOUNT,
    IdentityMapping,
    Provenance,
)
from msgsync.utils.normalization import (
    canonical_identifier,
    email_domain,
    identifier_candidates,
)

logger = logging.getLogger(__name__)


@dataclass
class PropagationStats:
    """Counts from one propagation pass."""

    senders_examined: int = 0
    mappings_propagated: int = 0
    conversations_renamed: int = 0


class IdentityPropagator:
    """
    Propagates identities discovered in one account to the others.

    Usage:
        propagator = IdentityPropagator(database)
        stats = propagator.run()
    """

    def __init__(self, database: SyncDatabase, config: Optional[IdentityConfig] = None):
        self.database = database
        self.config = config or IdentityConfig()

    def run(self) -> PropagationStats:
        """
        Run one propagation pass.

        Returns:
            PropagationStats with the number of changes made
        """
        stats = PropagationStats()
        activity = self.database.sender_activity(kind=ConversationKind.DIRECT_MESSAGE)

        by_sender: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for row in activity:
            by_sender[canonical_identifier(row["sender_identifier"])].append(row)
        stats.senders_examined = len(by_sender)

        for sender, rows in by_sender.items():
            owner = self._owner_account(rows)
            if owner is None:
                continue

            email = owner["account_email"]
            raw_identifier = rows[0]["sender_identifier"]
            self.database.upsert_identity_mapping(
                IdentityMapping(
                    external_id=sender,
                    email=email,
                    display_name=email.split("@", 1)[0],
                    domain=email_domain(email),
                    confidence=CONFIDENCE_CROSS_ACCOUNT,
                    provenance=Provenance.CROSS_ACCOUNT,
                    aliases=[a for a in identifier_candidates(raw_identifier) if a != sender],
                    discovered_by_account=owner["account_id"],
                )
            )
            stats.mappings_propagated += 1
            logger.debug(
                f"Assigned {sender[:8]}... to {email} "
                f"({owner['own_message_count']} own messages)"
            )

        stats.conversations_renamed = self._rename_direct_messages()
        logger.info(
            f"Identity propagation: {stats.mappings_propagated} mappings propagated, "
            f"{stats.conversations_renamed} conversations renamed"
        )
        return stats

    @staticmethod
    def _owner_account(rows: list[dict[str, Any]]) -> Optional[dict[str, Any]]:
        """Pick the account the sender most often was, if seen in 2+ accounts."""
        accounts = {row["account_id"] for row in rows}
        if len(accounts) < 2:
            return None

        best: Optional[dict[str, Any]] = None
        for row in rows:
            own = row["own_message_count"] or 0
            if own > 0 and (best is None or own > (best["own_message_count"] or 0)):
                best = row
        return best

    def _rename_direct_messages(self) -> int:
        """Name placeholder-named direct messages after their main counterpart."""
        renamed = 0
        for conversation in self.database.list_unnamed_direct_messages():
            for sender in self.database.conversation_senders(conversation["id"]):
                mapping = self.database.find_identity_mapping(sender["sender_identifier"])
                if mapping is None or mapping.confidence < self.config.low_confidence_threshold:
                    continue
                if not mapping.display_name:
                    continue
                if self.database.update_conversation_display_name(
                    conversation["id"], mapping.display_name
                ):
                    renamed += 1
                break
        return renamed
