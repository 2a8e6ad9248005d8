"""
Sync orchestrator for message synchronization.

Drives one sync run over every active account and configured platform:
fetch conversations and messages per label, group them by thread, resolve
senders, merge incrementally and record per-account outcomes. A failure in
one conversation never aborts its account, and a failure in one account
never aborts the run.
"""

import logging
import threading
import time
from collections import Counter
from collections.abc import Callable, Iterable, Iterator, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, TypeVar, Union

from msgsync.api.base import ConversationRef, PlatformConnector
from msgsync.config.sync_config import SyncConfig, load_config
from msgsync.errors import (
    DataShapeError,
    PlatformAPIError,
    TransientUpstreamError,
    UpstreamAuthError,
)
from msgsync.storage.blobs import BlobStore, LocalBlobStore
from msgsync.storage.db import SyncDatabase
from msgsync.sync.account import Account
from msgsync.sync.attachment import DownloadState
from msgsync.sync.conversation import (
    Conversation,
    ConversationKind,
    Message,
    Participant,
    ParticipantRole,
    is_placeholder_display_name,
)
from msgsync.sync.grouper import ConversationBatch, ConversationGrouper
from msgsync.sync.identity import Identity, IdentityResolver, SyncRunContext
from msgsync.sync.merge import MergeEngine
from msgsync.sync.propagation import IdentityPropagator, PropagationStats
from msgsync.utils.logging import configure_logging
from msgsync.utils.normalization import normalize_email
from msgsync.utils.paths import resolve_config_dir, resolve_data_path, resolve_database_path

logger = logging.getLogger(__name__)

T = TypeVar("T")

ConnectorFactory = Callable[[Account], PlatformConnector]

# Attachment states that a download may still complete
DOWNLOADABLE_STATES = (DownloadState.PENDING, DownloadState.DEFERRED)


class AccountState(str, Enum):
    """Per-account sync state machine."""

    IDLE = "idle"
    FETCHING = "fetching"
    RESOLVING = "resolving"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ConversationError:
    """A failure confined to one conversation."""

    platform: str
    conversation_id: str
    error_type: str
    message: str

    def __str__(self) -> str:
        return f"{self.platform}:{self.conversation_id}: {self.error_type}: {self.message}"


@dataclass
class AccountSummary:
    """
    Outcome of syncing one account.

    A FAILED account may still have merged some conversations before the
    fatal error; their counts are kept.
    """

    account_id: int
    email: str
    state: AccountState = AccountState.IDLE
    conversations_seen: int = 0
    new_conversations: int = 0
    new_messages: int = 0
    backfilled_messages: int = 0
    skipped_messages: int = 0
    attachments_downloaded: int = 0
    attachments_failed: int = 0
    errors: list[ConversationError] = field(default_factory=list)
    fatal_error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.state == AccountState.FAILED


@dataclass
class RunSummary:
    """Outcome of one orchestrator run."""

    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    accounts: list[AccountSummary] = field(default_factory=list)

    @property
    def total_new_conversations(self) -> int:
        return sum(a.new_conversations for a in self.accounts)

    @property
    def total_new_messages(self) -> int:
        return sum(a.new_messages for a in self.accounts)

    @property
    def total_errors(self) -> int:
        return sum(len(a.errors) for a in self.accounts)

    @property
    def failed_accounts(self) -> list[AccountSummary]:
        return [a for a in self.accounts if a.failed]

    def summary(self) -> str:
        """
        Generate a human-readable summary of the run.

        Returns:
            Formatted string summary of the run
        """
        lines = [
            "Sync Summary:",
            f"  Accounts: {len(self.accounts)} "
            f"({len(self.failed_accounts)} failed)",
            f"  New conversations: {self.total_new_conversations}",
            f"  New messages: {self.total_new_messages}",
            f"  Conversation errors: {self.total_errors}",
        ]
        if self.started_at and self.finished_at:
            duration = (self.finished_at - self.started_at).total_seconds()
            lines.append(f"  Duration: {duration:.1f}s")

        for account in self.accounts:
            lines.append("")
            lines.append(f"{account.email}: {account.state.value}")
            lines.append(
                f"  Conversations: {account.conversations_seen} seen, "
                f"{account.new_conversations} new"
            )
            lines.append(
                f"  Messages: {account.new_messages} new, "
                f"{account.backfilled_messages} backfilled"
            )
            if account.skipped_messages:
                lines.append(f"  Skipped (malformed): {account.skipped_messages}")
            if account.attachments_downloaded or account.attachments_failed:
                lines.append(
                    f"  Attachments: {account.attachments_downloaded} downloaded, "
                    f"{account.attachments_failed} failed"
                )
            if account.fatal_error:
                lines.append(f"  Fatal error: {account.fatal_error}")
            for error in account.errors:
                lines.append(f"  Error: {error}")

        return "\n".join(lines)


class ConversationLocks:
    """Registry of per-conversation locks; one merge per conversation at a time."""

    def __init__(self) -> None:
        self._locks: dict[tuple[int, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def lock_for(self, account_id: int, platform_thread_id: str) -> threading.Lock:
        key = (account_id, platform_thread_id)
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, account_id: int, platform_thread_id: str) -> Iterator[None]:
        with self.lock_for(account_id, platform_thread_id):
            yield


@dataclass
class _FetchedConversation:
    ref: ConversationRef
    label: Optional[str]
    messages: list[Message] = field(default_factory=list)
    skipped: int = 0
    error: Optional[Exception] = None


class SyncOrchestrator:
    """
    Orchestrates message sync across accounts and platforms.

    Usage:
        orchestrator = SyncOrchestrator(
            database,
            connectors={"gmail": lambda account: GmailConnector(creds_for(account))},
            config=config,
        )
        result = orchestrator.run()
        print(result.summary())
    """

    def __init__(
        self,
        database: SyncDatabase,
        connectors: Mapping[str, ConnectorFactory],
        config: Optional[SyncConfig] = None,
        resolver: Optional[IdentityResolver] = None,
        blob_store: Optional[BlobStore] = None,
        grouper: Optional[ConversationGrouper] = None,
        merge_engine: Optional[MergeEngine] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the orchestrator.

        Args:
            database: Initialized SyncDatabase
            connectors: Connector factory per platform name
            config: Sync settings, defaults to SyncConfig()
            resolver: Identity resolver, built from config when omitted
            blob_store: Store for downloaded attachments
            grouper: Conversation grouper
            merge_engine: Incremental merge engine
            sleep: Sleep function for pauses and backoff
        """
        self.database = database
        self.connectors = dict(connectors)
        self.config = config or SyncConfig()
        self.resolver = resolver or IdentityResolver(database, self.config.identity)
        self.blob_store = blob_store
        self.grouper = grouper or ConversationGrouper()
        self.merge_engine = merge_engine or MergeEngine(database)
        self.locks = ConversationLocks()
        self._sleep = sleep
        self._background = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="identity-propagation"
        )
        self._background_futures: list[Future] = []

    @classmethod
    def from_config(
        cls,
        connectors: Mapping[str, ConnectorFactory],
        config_dir: Union[Path, str, None] = None,
    ) -> "SyncOrchestrator":
        """
        Build an orchestrator from a config directory.

        Loads config.yaml, configures logging, opens and initializes the
        database and, when attachment downloads are enabled, the blob store.
        Relative paths in config.yaml are resolved against the config
        directory.

        Args:
            connectors: Connector factory per platform name
            config_dir: Config directory, defaults to $MSGSYNC_CONFIG_DIR or ~/.msgsync

        Raises:
            ConfigError: If config.yaml is unreadable or invalid
        """
        config_dir = resolve_config_dir(config_dir)
        config = load_config(config_dir)
        configure_logging(config, config_dir)

        db_path = resolve_database_path(config.database_path, config_dir)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        database = SyncDatabase(db_path)
        database.initialize()
        blob_store = None
        if config.download_attachments:
            blob_store = LocalBlobStore(resolve_data_path(config.blob_dir, config_dir))

        logger.info(
            f"Loaded config from {config_dir}: platforms={', '.join(config.platforms)}, "
            f"database={database.db_path}"
        )
        return cls(database, connectors, config=config, blob_store=blob_store)

    # =========================================================================
    # Run
    # =========================================================================

    def run(self, accounts: Optional[Iterable[Account]] = None) -> RunSummary:
        """
        Sync every active account.

        Args:
            accounts: Accounts to sync; defaults to all active stored accounts

        Returns:
            RunSummary with one AccountSummary per synced account
        """
        context = SyncRunContext()
        result = RunSummary(run_id=context.run_id, started_at=context.started_at)

        if accounts is None:
            accounts = self.database.list_accounts()
        active = [account for account in accounts if account.is_active]
        logger.info(f"Starting sync run {context.run_id} for {len(active)} accounts")

        if self.config.max_account_workers <= 1:
            for index, account in enumerate(active):
                if index > 0:
                    self._pause_between_accounts()
                result.accounts.append(self._sync_account_isolated(account, context))
        else:
            with ThreadPoolExecutor(
                max_workers=self.config.max_account_workers,
                thread_name_prefix="account-sync",
            ) as pool:
                futures = []
                for index, account in enumerate(active):
                    if index > 0:
                        self._pause_between_accounts()
                    futures.append(
                        pool.submit(self._sync_account_isolated, account, context)
                    )
                result.accounts.extend(future.result() for future in futures)

        self.resolver.flush()
        result.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Sync run {context.run_id} finished: "
            f"{result.total_new_conversations} new conversations, "
            f"{result.total_new_messages} new messages, "
            f"{result.total_errors} errors"
        )

        if self.config.propagate_identities:
            self.start_propagation()
        return result

    def _pause_between_accounts(self) -> None:
        if self.config.account_pause_seconds > 0:
            logger.debug(f"Pausing {self.config.account_pause_seconds}s between accounts")
            self._sleep(self.config.account_pause_seconds)

    def _sync_account_isolated(
        self, account: Account, context: SyncRunContext
    ) -> AccountSummary:
        """Sync one account; no exception escapes to sibling accounts."""
        try:
            return self.sync_account(account, context)
        except Exception as e:
            logger.error(f"Sync of {account.email} failed: {e}", exc_info=True)
            return AccountSummary(
                account_id=account.id,
                email=account.email,
                state=AccountState.FAILED,
                fatal_error=f"{type(e).__name__}: {e}",
            )

    def sync_account(
        self, account: Account, context: Optional[SyncRunContext] = None
    ) -> AccountSummary:
        """
        Sync one account on every configured platform.

        Args:
            account: Account to sync
            context: Run context; a fresh one is created when omitted

        Returns:
            AccountSummary; state is DONE, or FAILED after a fatal error
        """
        context = context or SyncRunContext()
        summary = AccountSummary(account_id=account.id, email=account.email)

        for platform in self.config.platforms:
            factory = self.connectors.get(platform)
            if factory is None:
                logger.debug(f"No connector for {platform}, skipping")
                continue

            try:
                connector = factory(account)
                self._sync_platform(account, connector, context, summary)
            except PlatformAPIError as e:
                # Auth failures and exhausted retries while listing end the account
                summary.state = AccountState.FAILED
                summary.fatal_error = f"{platform}: {type(e).__name__}: {e}"
                logger.error(f"Sync of {account.email} on {platform} failed: {e}")
                return summary

            self.database.update_last_sync(account.id, platform)

        summary.state = AccountState.DONE
        logger.info(
            f"Synced {account.email}: {summary.new_conversations} new conversations, "
            f"{summary.new_messages} new messages, {len(summary.errors)} errors"
        )
        return summary

    # =========================================================================
    # Platform sync
    # =========================================================================

    def _sync_platform(
        self,
        account: Account,
        connector: PlatformConnector,
        context: SyncRunContext,
        summary: AccountSummary,
    ) -> None:
        platform = connector.platform
        summary.state = AccountState.FETCHING

        account_identifier = self._call_with_retry(
            connector.get_account_identifier, account,
            operation_name="get_account_identifier",
        )
        self.resolver.register_known_identity(
            identifier=account_identifier or account.email,
            email=account.email,
            context=context,
            account_id=account.id,
        )

        refs, fetched = self._fetch_account(account, connector)
        messages: list[Message] = []
        failed_threads: set[str] = set()
        for item in fetched:
            summary.skipped_messages += item.skipped
            if item.error is not None:
                if isinstance(item.error, UpstreamAuthError):
                    raise item.error
                if item.ref.id not in failed_threads:
                    failed_threads.add(item.ref.id)
                    self._record_error(summary, platform, item.ref.id, item.error)
                continue
            messages.extend(item.messages)

        summary.state = AccountState.RESOLVING
        default_kind = (
            ConversationKind.THREAD if connector.outgoing_label else ConversationKind.SPACE
        )
        batches = self.grouper.group(platform, messages, refs, default_kind=default_kind)
        summary.conversations_seen += len(batches)

        for batch in batches:
            if batch.platform_thread_id in failed_threads:
                continue
            try:
                self._sync_conversation(
                    account, connector, batch, account_identifier, context, summary
                )
            except UpstreamAuthError:
                raise
            except Exception as e:
                logger.error(
                    f"Failed to sync conversation {batch.platform_thread_id} "
                    f"of {account.email}: {e}"
                )
                self._record_error(summary, platform, batch.platform_thread_id, e)

    def _record_error(
        self, summary: AccountSummary, platform: str, conversation_id: str, error: Exception
    ) -> None:
        summary.errors.append(
            ConversationError(
                platform=platform,
                conversation_id=conversation_id,
                error_type=type(error).__name__,
                message=str(error),
            )
        )

    def _fetch_account(
        self, account: Account, connector: PlatformConnector
    ) -> tuple[dict[str, ConversationRef], list[_FetchedConversation]]:
        """List conversations per label and fetch their messages concurrently."""
        refs: dict[str, ConversationRef] = {}
        work: list[tuple[ConversationRef, Optional[str]]] = []

        for label in connector.labels:
            page_token: Optional[str] = None
            while True:
                page = self._call_with_retry(
                    connector.list_conversations,
                    account,
                    page_token=page_token,
                    label=label,
                    operation_name=f"list_conversations({label})",
                )
                for ref in page.items:
                    refs.setdefault(ref.id, ref)
                    work.append((ref, label))
                page_token = page.next_page_token
                if not page_token:
                    break

        logger.debug(
            f"{account.email}: {len(refs)} {connector.platform} conversations "
            f"across {len(connector.labels)} labels"
        )
        if not work:
            return refs, []

        workers = max(1, min(self.config.max_fetch_workers, len(work)))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="message-fetch"
        ) as pool:
            fetched = list(
                pool.map(
                    lambda item: self._fetch_conversation(connector, item[0], item[1]),
                    work,
                )
            )
        return refs, fetched

    def _fetch_conversation(
        self,
        connector: PlatformConnector,
        ref: ConversationRef,
        label: Optional[str],
    ) -> _FetchedConversation:
        """Fetch and parse every message of one conversation under one label."""
        result = _FetchedConversation(ref=ref, label=label)
        page_token: Optional[str] = None
        pages = 0

        try:
            while True:
                page = self._call_with_retry(
                    connector.list_messages,
                    ref.id,
                    page_token=page_token,
                    label=label,
                    operation_name=f"list_messages({ref.id})",
                )
                pages += 1
                for raw in page.items:
                    if connector.hydrate_listed_messages:
                        raw = self._hydrate(connector, raw)
                    try:
                        result.messages.append(connector.parse_message(raw, ref.id, label))
                    except DataShapeError as e:
                        logger.warning(f"Skipping malformed message in {ref.id}: {e}")
                        result.skipped += 1

                page_token = page.next_page_token
                if not page_token:
                    break
                if pages >= self.config.max_pages:
                    logger.warning(
                        f"Stopped paging {ref.id} after {pages} pages; "
                        f"remaining messages are fetched on a later run"
                    )
                    break
        except Exception as e:
            logger.warning(f"Failed to fetch conversation {ref.id} ({label}): {e}")
            result.error = e
        return result

    def _hydrate(
        self, connector: PlatformConnector, raw: dict[str, Any]
    ) -> dict[str, Any]:
        """Fetch the full message; fall back to the listed copy on failure."""
        message_id = raw.get("name") or raw.get("id")
        if not message_id:
            return raw
        try:
            full = self._call_with_retry(
                connector.get_message, message_id, operation_name=f"get_message({message_id})"
            )
        except UpstreamAuthError:
            raise
        except PlatformAPIError as e:
            logger.warning(f"Could not fetch full message {message_id}, using listed copy: {e}")
            return raw
        return full or raw

    # =========================================================================
    # Conversation sync
    # =========================================================================

    def _sync_conversation(
        self,
        account: Account,
        connector: PlatformConnector,
        batch: ConversationBatch,
        account_identifier: Optional[str],
        context: SyncRunContext,
        summary: AccountSummary,
    ) -> None:
        with self.locks.hold(account.id, batch.platform_thread_id):
            existing = self.database.find_conversation(account.id, batch.platform_thread_id)

            members: list[str] = []
            if existing is None:
                members = self._call_with_retry(
                    connector.list_members,
                    batch.platform_thread_id,
                    operation_name=f"list_members({batch.platform_thread_id})",
                )

            identities = self._resolve_participants(
                account, connector, batch, members, context
            )
            account_emails = {normalize_email(account.email)}
            own_identifiers = {i for i in (account_identifier, account.email) if i}
            messages = [
                replace(
                    message,
                    is_from_account=self._is_from_account(
                        message, connector, own_identifiers, account_emails, identities
                    ),
                )
                for message in batch.messages
            ]
            participants = self._participants(members, messages, identities)
            display_name = self._display_name(batch, messages, identities)

            summary.state = AccountState.MERGING
            base = existing or Conversation(
                account_id=account.id,
                platform=batch.platform,
                platform_thread_id=batch.platform_thread_id,
                kind=batch.kind,
                display_name=display_name,
            )
            result = self.merge_engine.merge_conversation(
                base, messages, participants, display_name
            )

            summary.new_messages += result.new_message_count
            summary.backfilled_messages += result.backfilled_count
            if result.is_new_conversation:
                summary.new_conversations += 1

            if self.config.download_attachments and self.blob_store is not None:
                self._download_attachments(connector, result.conversation, summary)

    def _resolve_participants(
        self,
        account: Account,
        connector: PlatformConnector,
        batch: ConversationBatch,
        members: list[str],
        context: SyncRunContext,
    ) -> dict[str, Identity]:
        identifiers = list(members)
        for message in batch.messages:
            if message.sender_identifier and message.sender_identifier not in identifiers:
                identifiers.append(message.sender_identifier)

        return {
            identifier: self.resolver.resolve(
                identifier, context, account_id=account.id, directory=connector
            )
            for identifier in identifiers
        }

    @staticmethod
    def _is_from_account(
        message: Message,
        connector: PlatformConnector,
        own_identifiers: set[str],
        account_emails: set[str],
        identities: dict[str, Identity],
    ) -> bool:
        if connector.outgoing_label and message.label == connector.outgoing_label:
            return True
        sender = message.sender_identifier
        if not sender:
            return False
        if sender in own_identifiers or normalize_email(sender) in account_emails:
            return True
        identity = identities.get(sender)
        return identity is not None and identity.email in account_emails

    def _participants(
        self,
        members: list[str],
        messages: list[Message],
        identities: dict[str, Identity],
    ) -> list[Participant]:
        threshold = self.config.identity.low_confidence_threshold
        participants: dict[str, Participant] = {}
        for identifier in members:
            participants[identifier] = Participant(identifier=identifier)
        for message in messages:
            sender = message.sender_identifier
            if sender and sender not in participants:
                participants[sender] = Participant(
                    identifier=sender, role=ParticipantRole.SENDER
                )

        for identifier, participant in participants.items():
            identity = identities.get(identifier)
            if identity is not None:
                participant.resolved_email = identity.email
                participant.display_name = identity.display_name_for(threshold)
        return list(participants.values())

    def _display_name(
        self,
        batch: ConversationBatch,
        messages: list[Message],
        identities: dict[str, Identity],
    ) -> str:
        """Name unnamed direct messages after the most active counterpart."""
        if batch.kind != ConversationKind.DIRECT_MESSAGE:
            return batch.display_name
        if not is_placeholder_display_name(batch.display_name):
            return batch.display_name

        counts = Counter(
            m.sender_identifier
            for m in messages
            if m.sender_identifier and not m.is_from_account
        )
        threshold = self.config.identity.low_confidence_threshold
        for identifier, _ in counts.most_common():
            identity = identities.get(identifier)
            name = identity.display_name_for(threshold) if identity else None
            if name:
                return name
        return batch.display_name

    def _download_attachments(
        self,
        connector: PlatformConnector,
        conversation: Conversation,
        summary: AccountSummary,
    ) -> None:
        """Download pending attachments and backfill their blob references."""
        updates: list[Message] = []
        for message in conversation.messages:
            downloaded = []
            for attachment in message.attachments:
                if attachment.blob_ref or attachment.download_state not in DOWNLOADABLE_STATES:
                    continue
                try:
                    data = self._call_with_retry(
                        connector.download_attachment,
                        message,
                        attachment,
                        operation_name=f"download_attachment({attachment.dedup_key})",
                    )
                except UpstreamAuthError:
                    raise
                except (PlatformAPIError, OSError) as e:
                    logger.warning(f"Failed to download {attachment.filename}: {e}")
                    summary.attachments_failed += 1
                    continue
                if not data:
                    continue

                downloaded.append(
                    replace(
                        attachment,
                        blob_ref=self.blob_store.store(data),
                        size=attachment.size or len(data),
                        download_state=DownloadState.COMPLETED,
                    )
                )
                summary.attachments_downloaded += 1

            if downloaded:
                updates.append(replace(message, attachments=downloaded))

        if updates:
            self.merge_engine.merge_conversation(conversation, updates)

    # =========================================================================
    # Retry
    # =========================================================================

    def _call_with_retry(
        self, func: Callable[..., T], *args: Any, operation_name: str = "", **kwargs: Any
    ) -> T:
        """
        Call func, retrying TransientUpstreamError with exponential backoff.

        Raises:
            TransientUpstreamError: If every attempt failed
        """
        retry = self.config.retry
        delay = retry.initial_delay
        name = operation_name or getattr(func, "__name__", "call")

        for attempt in range(retry.max_retries):
            try:
                return func(*args, **kwargs)
            except TransientUpstreamError as e:
                if attempt >= retry.max_retries - 1:
                    logger.error(f"{name} failed after {retry.max_retries} attempts: {e}")
                    raise
                logger.warning(
                    f"{name} failed transiently, retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{retry.max_retries})"
                )
                self._sleep(delay)
                delay = min(delay * 2, retry.max_delay)

        # Should not reach here, but just in case
        raise TransientUpstreamError(f"{name} failed after all retries")

    # =========================================================================
    # Background identity propagation
    # =========================================================================

    def start_propagation(self) -> Future:
        """Start identity propagation on the background thread."""
        propagator = IdentityPropagator(self.database, self.config.identity)
        future = self._background.submit(self._run_propagation, propagator)
        self._background_futures.append(future)
        return future

    @staticmethod
    def _run_propagation(propagator: IdentityPropagator) -> PropagationStats:
        try:
            return propagator.run()
        except Exception as e:
            logger.error(f"Identity propagation failed: {e}", exc_info=True)
            raise

    def wait_for_background(self, timeout: Optional[float] = None) -> None:
        """Wait for background propagation started by this orchestrator."""
        for future in list(self._background_futures):
            try:
                future.result(timeout=timeout)
            except Exception as e:
                logger.warning(f"Background propagation ended with error: {e}")
        self._background_futures.clear()

    def close(self) -> None:
        """Wait for background work and release executors."""
        self.wait_for_background()
        self._background.shutdown(wait=True)
        self.resolver.close()
