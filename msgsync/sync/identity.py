"""
Participant identity resolution.

Resolves opaque participant identifiers ("users/123", bare ids, email
addresses) into stable identities through a cascade:

1. Per-run cache (ResolutionCache owned by a SyncRunContext)
2. Persistent identity mappings, looked up by identifier or alias
3. Email addresses used as identifiers (confidence 90)
4. Platform directory profile (confidence 95, "directory" depth only)
5. Deterministic placeholder (confidence 30)

Every resolution that misses the cache is written back to the store on a
background executor. The store performs a max-confidence upsert, so a later
low-confidence resolution never downgrades a mapping.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from msgsync.config.sync_config import IdentityConfig, ResolutionDepth
from msgsync.errors import IdentityResolutionExhausted, PlatformAPIError
from msgsync.utils.normalization import (
    canonical_identifier,
    email_domain,
    identifier_candidates,
    is_email,
    normalize_email,
)

if TYPE_CHECKING:
    from msgsync.api.base import PlatformConnector
    from msgsync.storage.db import SyncDatabase

logger = logging.getLogger(__name__)


class Provenance:
    """Where an identity mapping came from."""

    SYNC_ACCOUNT = "sync_account"
    DIRECTORY = "directory"
    MANUAL = "manual"
    CROSS_ACCOUNT = "cross_account"
    EMAIL_DIRECT = "email_direct"
    MEMBER = "member"
    FALLBACK = "fallback"


# Lower value wins when two mappings have the same confidence
PROVENANCE_PRIORITY = {
    Provenance.SYNC_ACCOUNT: 0,
    Provenance.DIRECTORY: 1,
    Provenance.MANUAL: 2,
    Provenance.CROSS_ACCOUNT: 3,
    Provenance.EMAIL_DIRECT: 4,
    Provenance.MEMBER: 5,
    Provenance.FALLBACK: 6,
}

CONFIDENCE_SYNC_ACCOUNT = 100
CONFIDENCE_DIRECTORY = 95
CONFIDENCE_EMAIL_DIRECT = 90
CONFIDENCE_CROSS_ACCOUNT = 90
CONFIDENCE_FALLBACK = 30

PLACEHOLDER_NAME_LENGTH = 8
UNKNOWN_IDENTIFIER = "unknown"


def provenance_priority(provenance: Optional[str]) -> int:
    return PROVENANCE_PRIORITY.get(provenance or "", len(PROVENANCE_PRIORITY))


@dataclass(frozen=True)
class Identity:
    """
    A resolved participant identity.

    Attributes:
        identifier: The identifier that was resolved
        email: Email address (placeholder address for fallback identities)
        display_name: Human-readable name
        domain: Email domain
        confidence: 0-100, higher is more trustworthy
        provenance: Provenance value
    """

    identifier: str
    email: str
    display_name: str
    domain: str
    confidence: int
    provenance: str

    @property
    def is_placeholder(self) -> bool:
        return self.provenance == Provenance.FALLBACK

    def display_name_for(self, min_confidence: int) -> Optional[str]:
        """
        Return the display name only if it is trustworthy enough.

        Args:
            min_confidence: Minimum confidence for the name to be shown

        Returns:
            The display name, or None when confidence is below the threshold
        """
        if self.confidence < min_confidence:
            return None
        return self.display_name or None


@dataclass
class IdentityMapping:
    """
    A persisted identity mapping.

    external_id is the canonical identifier; aliases hold every other form
    the same identity has been seen under.
    """

    external_id: str
    email: str
    display_name: str
    domain: str
    confidence: int
    provenance: str
    aliases: list[str] = field(default_factory=list)
    seen_count: int = 0
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    discovered_by_account: Optional[int] = None

    def to_identity(self, identifier: str) -> Identity:
        return Identity(
            identifier=identifier,
            email=self.email,
            display_name=self.display_name,
            domain=self.domain,
            confidence=self.confidence,
            provenance=self.provenance,
        )

    @classmethod
    def from_identity(
        cls, identity: Identity, discovered_by_account: Optional[int] = None
    ) -> IdentityMapping:
        identifier = identity.identifier
        external_id = canonical_identifier(identifier)
        aliases = [
            alias for alias in identifier_candidates(identifier) if alias != external_id
        ]
        return cls(
            external_id=external_id,
            email=identity.email,
            display_name=identity.display_name,
            domain=identity.domain,
            confidence=identity.confidence,
            provenance=identity.provenance,
            aliases=aliases,
            discovered_by_account=discovered_by_account,
        )


class ResolutionCache:
    """Thread-safe per-run identity cache keyed by canonical identifier."""

    def __init__(self) -> None:
        self._entries: dict[str, Identity] = {}
        self._lock = threading.Lock()

    def get(self, identifier: str) -> Optional[Identity]:
        with self._lock:
            return self._entries.get(canonical_identifier(identifier))

    def put(self, identifier: str, identity: Identity) -> None:
        with self._lock:
            self._entries[canonical_identifier(identifier)] = identity

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, identifier: object) -> bool:
        if not isinstance(identifier, str):
            return False
        with self._lock:
            return canonical_identifier(identifier) in self._entries


@dataclass
class SyncRunContext:
    """State scoped to one orchestrator invocation."""

    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cache: ResolutionCache = field(default_factory=ResolutionCache)


class IdentityResolver:
    """
    Resolves participant identifiers into identities.

    Usage:
        resolver = IdentityResolver(database, config.identity)
        context = SyncRunContext()
        identity = resolver.resolve("users/123", context, directory=connector)
        resolver.flush()
    """

    def __init__(
        self,
        store: SyncDatabase,
        config: Optional[IdentityConfig] = None,
        directory: Optional[PlatformConnector] = None,
        max_persist_workers: int = 2,
    ):
        """
        Initialize the resolver.

        Args:
            store: Database holding identity mappings
            config: Identity settings, defaults to IdentityConfig()
            directory: Default connector used for directory lookups
            max_persist_workers: Threads used for background persistence
        """
        self.store = store
        self.config = config or IdentityConfig()
        self.directory = directory
        self._executor = ThreadPoolExecutor(
            max_workers=max_persist_workers, thread_name_prefix="identity-persist"
        )
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        self._closed = False

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve(
        self,
        identifier: Optional[str],
        context: SyncRunContext,
        account_id: Optional[int] = None,
        directory: Optional[PlatformConnector] = None,
    ) -> Identity:
        """
        Resolve an identifier into an identity. Never returns None.

        Args:
            identifier: Participant identifier or email address
            context: Run context holding the resolution cache
            account_id: Account on whose behalf the identifier was seen
            directory: Connector for directory lookups, overrides the default

        Returns:
            Identity from the first cascade step that succeeds
        """
        identifier = (identifier or "").strip() or UNKNOWN_IDENTIFIER

        cached = context.cache.get(identifier)
        if cached is not None:
            return cached

        identity = self._resolve_uncached(identifier, directory or self.directory)
        context.cache.put(identifier, identity)
        self._persist_async(identity, account_id)
        return identity

    def _directory_enabled(self, directory: Optional[PlatformConnector]) -> bool:
        return (
            directory is not None
            and self.config.resolution_depth == ResolutionDepth.DIRECTORY
        )

    def _resolve_uncached(
        self, identifier: str, directory: Optional[PlatformConnector]
    ) -> Identity:
        stored: Optional[Identity] = None
        mapping = self._lookup_store(identifier)
        if mapping is not None:
            stored = mapping.to_identity(identifier)
            if (
                mapping.confidence >= self.config.min_stored_confidence
                or not self._directory_enabled(directory)
            ):
                return stored
            logger.debug(
                f"Stored mapping for {identifier} has confidence "
                f"{mapping.confidence}, trying further sources"
            )

        try:
            resolved = self._resolve_remote(identifier, directory)
        except IdentityResolutionExhausted as e:
            logger.debug(f"Falling back to placeholder identity: {e}")
            resolved = self.fallback_identity(identifier)

        if stored is not None and stored.confidence >= resolved.confidence:
            return stored
        return resolved

    def _lookup_store(self, identifier: str) -> Optional[IdentityMapping]:
        try:
            return self.store.find_identity_mapping(identifier)
        except sqlite3.Error as e:
            logger.warning(f"Identity mapping lookup failed for {identifier}: {e}")
            return None

    def _resolve_remote(
        self, identifier: str, directory: Optional[PlatformConnector]
    ) -> Identity:
        if is_email(identifier):
            email = normalize_email(identifier)
            return Identity(
                identifier=identifier,
                email=email,
                display_name=email.split("@", 1)[0],
                domain=email_domain(email),
                confidence=CONFIDENCE_EMAIL_DIRECT,
                provenance=Provenance.EMAIL_DIRECT,
            )

        if self._directory_enabled(directory):
            try:
                profile = directory.resolve_directory_profile(identifier)
            except PlatformAPIError as e:
                logger.warning(f"Directory lookup failed for {identifier}: {e}")
                profile = None

            if profile is not None and profile.email:
                email = normalize_email(profile.email)
                return Identity(
                    identifier=identifier,
                    email=email,
                    display_name=profile.display_name or email.split("@", 1)[0],
                    domain=profile.domain or email_domain(email),
                    confidence=CONFIDENCE_DIRECTORY,
                    provenance=Provenance.DIRECTORY,
                )

        raise IdentityResolutionExhausted(f"No source could resolve {identifier}")

    def fallback_identity(self, identifier: str) -> Identity:
        """
        Build the deterministic placeholder identity for an identifier.

        The same identifier always yields the same placeholder.
        """
        bare = canonical_identifier(identifier) or UNKNOWN_IDENTIFIER
        domain = self.config.placeholder_domain
        return Identity(
            identifier=identifier,
            email=f"user-{bare}@{domain}",
            display_name=f"User {bare[:PLACEHOLDER_NAME_LENGTH]}",
            domain=domain,
            confidence=CONFIDENCE_FALLBACK,
            provenance=Provenance.FALLBACK,
        )

    # =========================================================================
    # Known identities
    # =========================================================================

    def register_known_identity(
        self,
        identifier: str,
        email: str,
        display_name: Optional[str] = None,
        context: Optional[SyncRunContext] = None,
        account_id: Optional[int] = None,
    ) -> Identity:
        """
        Record the identity of a synced account with full confidence.

        The mapping is written synchronously so resolutions later in the
        same run find it.

        Args:
            identifier: Platform identifier of the account ("users/123")
            email: Account email address
            display_name: Account display name, defaults to the local part
            context: Run context to seed, if any
            account_id: Account the identity belongs to

        Returns:
            The registered identity
        """
        email = normalize_email(email)
        identity = Identity(
            identifier=identifier,
            email=email,
            display_name=display_name or email.split("@", 1)[0],
            domain=email_domain(email),
            confidence=CONFIDENCE_SYNC_ACCOUNT,
            provenance=Provenance.SYNC_ACCOUNT,
        )
        mapping = IdentityMapping.from_identity(identity, discovered_by_account=account_id)
        self.store.upsert_identity_mapping(mapping)
        if context is not None:
            context.cache.put(identifier, identity)
            context.cache.put(email, identity)
        logger.debug(f"Registered account identity {identifier} -> {email}")
        return identity

    # =========================================================================
    # Background persistence
    # =========================================================================

    def _persist_async(self, identity: Identity, account_id: Optional[int]) -> None:
        mapping = IdentityMapping.from_identity(identity, discovered_by_account=account_id)
        with self._pending_lock:
            if self._closed:
                logger.warning(
                    f"Resolver closed, not persisting mapping for {identity.identifier}"
                )
                return
            future = self._executor.submit(self._persist, mapping)
            self._pending.add(future)
        future.add_done_callback(self._discard_pending)

    def _discard_pending(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _persist(self, mapping: IdentityMapping) -> None:
        try:
            self.store.upsert_identity_mapping(mapping)
        except sqlite3.Error as e:
            logger.warning(
                f"Failed to persist identity mapping for {mapping.external_id}: {e}"
            )

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until every pending mapping write has finished."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            logger.debug(f"Waiting for {len(pending)} identity writes")
            wait(pending, timeout=timeout)

    def close(self) -> None:
        """Finish pending writes and stop the background executor."""
        with self._pending_lock:
            self._closed = True
        self._executor.shutdown(wait=True)
