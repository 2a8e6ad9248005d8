"""
Tests for participant identity resolution.

Covers the resolution cascade, the per-run cache, placeholder identities
and the max-confidence guarantees of persisted mappings.
"""

import sqlite3
from unittest.mock import MagicMock

import pytest

from fakes import FakeConnector
from msgsync.api.base import DirectoryProfile
from msgsync.config.sync_config import IdentityConfig, ResolutionDepth
from msgsync.errors import PlatformAPIError
from msgsync.sync.identity import (
    CONFIDENCE_DIRECTORY,
    CONFIDENCE_EMAIL_DIRECT,
    CONFIDENCE_FALLBACK,
    CONFIDENCE_SYNC_ACCOUNT,
    Identity,
    IdentityMapping,
    IdentityResolver,
    Provenance,
    ResolutionCache,
    SyncRunContext,
    provenance_priority,
)


@pytest.fixture
def resolver(database):
    """Create a resolver over the in-memory database."""
    resolver = IdentityResolver(database)
    yield resolver
    resolver.close()


@pytest.fixture
def directory():
    """Create a connector whose directory knows users/42."""
    return FakeConnector(
        directory={
            "users/42": DirectoryProfile(
                email="Carol@Example.com", display_name="Carol Danvers"
            )
        }
    )


class TestIdentity:
    """Tests for the Identity value object."""

    def test_display_name_below_threshold_is_hidden(self):
        """Test that low-confidence names are not shown."""
        identity = Identity(
            "users/1", "user-1@x.invalid", "User 1", "x.invalid", 30, Provenance.FALLBACK
        )
        assert identity.display_name_for(50) is None
        assert identity.display_name_for(30) == "User 1"

    def test_is_placeholder(self):
        """Test that only fallback identities are placeholders."""
        fallback = Identity("a", "e", "n", "d", 30, Provenance.FALLBACK)
        directory = Identity("a", "e", "n", "d", 95, Provenance.DIRECTORY)
        assert fallback.is_placeholder
        assert not directory.is_placeholder

    def test_provenance_priority_order(self):
        """Test that sync accounts outrank directory, which outranks fallback."""
        assert provenance_priority(Provenance.SYNC_ACCOUNT) < provenance_priority(
            Provenance.DIRECTORY
        )
        assert provenance_priority(Provenance.DIRECTORY) < provenance_priority(
            Provenance.FALLBACK
        )
        assert provenance_priority("unknown") > provenance_priority(Provenance.FALLBACK)


class TestIdentityMapping:
    """Tests for converting identities to persisted mappings."""

    def test_from_identity_uses_canonical_id(self):
        """Test that the namespace is stripped and kept as an alias."""
        identity = Identity(
            "users/108506371856200018714",
            "dana@example.com",
            "Dana",
            "example.com",
            95,
            Provenance.DIRECTORY,
        )

        mapping = IdentityMapping.from_identity(identity, discovered_by_account=3)

        assert mapping.external_id == "108506371856200018714"
        assert "users/108506371856200018714" in mapping.aliases
        assert mapping.external_id not in mapping.aliases
        assert mapping.discovered_by_account == 3


class TestResolutionCache:
    """Tests for the per-run resolution cache."""

    def test_lookup_by_any_identifier_form(self):
        """Test that namespaced and bare ids share a cache entry."""
        cache = ResolutionCache()
        identity = Identity("users/7", "e@x.com", "E", "x.com", 95, Provenance.DIRECTORY)

        cache.put("users/7", identity)

        assert cache.get("7") is identity
        assert "users/7" in cache
        assert len(cache) == 1

    def test_contexts_do_not_share_caches(self):
        """Test that each run context owns a fresh cache."""
        assert SyncRunContext().cache is not SyncRunContext().cache


class TestResolutionCascade:
    """Tests for the resolution order."""

    def test_email_identifier_resolves_directly(self, resolver):
        """Test that an email address resolves without any lookup."""
        identity = resolver.resolve("Alice@Example.com", SyncRunContext())

        assert identity.email == "alice@example.com"
        assert identity.display_name == "alice"
        assert identity.domain == "example.com"
        assert identity.confidence == CONFIDENCE_EMAIL_DIRECT
        assert identity.provenance == Provenance.EMAIL_DIRECT

    def test_directory_lookup(self, resolver, directory):
        """Test that opaque ids are resolved through the directory."""
        identity = resolver.resolve("users/42", SyncRunContext(), directory=directory)

        assert identity.email == "carol@example.com"
        assert identity.display_name == "Carol Danvers"
        assert identity.confidence == CONFIDENCE_DIRECTORY
        assert identity.provenance == Provenance.DIRECTORY

    def test_cache_prevents_repeat_lookups(self, resolver, directory):
        """Test that one run looks up an identifier only once."""
        context = SyncRunContext()

        first = resolver.resolve("users/42", context, directory=directory)
        second = resolver.resolve("42", context, directory=directory)

        assert first is second
        assert directory.calls_to("resolve_directory_profile") == ["users/42"]

    def test_stored_mapping_skips_directory(self, database, directory):
        """Test that a confident stored mapping is used in a later run."""
        first_run = IdentityResolver(database)
        first_run.resolve("users/42", SyncRunContext(), directory=directory)
        first_run.close()

        second_run = IdentityResolver(database)
        identity = second_run.resolve("users/42", SyncRunContext(), directory=directory)
        second_run.close()

        assert identity.email == "carol@example.com"
        assert directory.calls_to("resolve_directory_profile") == ["users/42"]

    def test_local_depth_never_queries_directory(self, database, directory):
        """Test that resolution_depth local stops before the directory."""
        resolver = IdentityResolver(
            database, IdentityConfig(resolution_depth=ResolutionDepth.LOCAL)
        )

        identity = resolver.resolve("users/42", SyncRunContext(), directory=directory)
        resolver.close()

        assert identity.provenance == Provenance.FALLBACK
        assert directory.calls_to("resolve_directory_profile") == []

    def test_directory_error_falls_back(self, resolver, directory):
        """Test that a failing directory yields a placeholder identity."""
        directory.fail(
            "resolve_directory_profile", "users/42", PlatformAPIError("500 backend")
        )

        identity = resolver.resolve("users/42", SyncRunContext(), directory=directory)

        assert identity.provenance == Provenance.FALLBACK

    def test_stored_placeholder_is_upgraded_by_directory(self, database, directory):
        """Test that a low-confidence stored mapping lets the directory answer."""
        database.upsert_identity_mapping(
            IdentityMapping(
                external_id="42",
                email="user-42@unresolved.invalid",
                display_name="User 42",
                domain="unresolved.invalid",
                confidence=CONFIDENCE_FALLBACK,
                provenance=Provenance.FALLBACK,
            )
        )
        resolver = IdentityResolver(database)

        identity = resolver.resolve("users/42", SyncRunContext(), directory=directory)
        resolver.flush()
        resolver.close()

        assert identity.provenance == Provenance.DIRECTORY
        stored = database.find_identity_mapping("users/42")
        assert stored.confidence == CONFIDENCE_DIRECTORY
        assert stored.email == "carol@example.com"

    def test_store_failure_is_treated_as_miss(self):
        """Test that a broken store does not stop resolution."""
        store = MagicMock()
        store.find_identity_mapping.side_effect = sqlite3.OperationalError("locked")
        resolver = IdentityResolver(store)

        identity = resolver.resolve("bob@example.com", SyncRunContext())
        resolver.close()

        assert identity.email == "bob@example.com"

    def test_empty_identifier_resolves_to_unknown(self, resolver):
        """Test that a missing identifier still yields an identity."""
        identity = resolver.resolve(None, SyncRunContext())

        assert identity.identifier == "unknown"
        assert identity.provenance == Provenance.FALLBACK


class TestFallbackIdentity:
    """Tests for deterministic placeholder identities."""

    def test_placeholder_fields(self, resolver):
        """Test the placeholder email and display name format."""
        identity = resolver.fallback_identity("users/108506371856200018714")

        assert identity.email == "user-108506371856200018714@unresolved.invalid"
        assert identity.display_name == "User 10850637"
        assert identity.confidence == CONFIDENCE_FALLBACK

    def test_fallback_is_deterministic(self, database):
        """Test that the same identifier always yields the same placeholder."""
        first = IdentityResolver(database)
        second = IdentityResolver(database)

        a = first.resolve("users/555", SyncRunContext())
        b = second.resolve("users/555", SyncRunContext())
        first.close()
        second.close()

        assert (a.email, a.display_name) == (b.email, b.display_name)

    def test_placeholder_domain_from_config(self, database):
        """Test that the configured placeholder domain is used."""
        resolver = IdentityResolver(
            database, IdentityConfig(placeholder_domain="corp.example")
        )

        identity = resolver.fallback_identity("users/9")
        resolver.close()

        assert identity.email == "user-9@corp.example"


class TestKnownIdentities:
    """Tests for registering synced accounts."""

    def test_register_writes_full_confidence(self, database, resolver):
        """Test that an account identity is stored synchronously at 100."""
        resolver.register_known_identity("users/1", "Team@Example.com", account_id=1)

        mapping = database.find_identity_mapping("users/1")
        assert mapping.confidence == CONFIDENCE_SYNC_ACCOUNT
        assert mapping.provenance == Provenance.SYNC_ACCOUNT
        assert mapping.email == "team@example.com"
        assert mapping.discovered_by_account == 1

    def test_register_seeds_cache(self, resolver, directory):
        """Test that the registered identity is served from the cache."""
        context = SyncRunContext()
        resolver.register_known_identity("users/42", "me@example.com", context=context)

        identity = resolver.resolve("users/42", context, directory=directory)

        assert identity.email == "me@example.com"
        assert directory.calls_to("resolve_directory_profile") == []


class TestBackgroundPersistence:
    """Tests for writing resolutions back to the store."""

    def test_resolutions_are_persisted_after_flush(self, database, resolver):
        """Test that flush waits for background writes."""
        resolver.resolve("erin@example.com", SyncRunContext(), account_id=2)
        resolver.flush()

        mapping = database.find_identity_mapping("erin@example.com")
        assert mapping.confidence == CONFIDENCE_EMAIL_DIRECT
        assert mapping.discovered_by_account == 2

    def test_low_confidence_never_downgrades(self, database, directory):
        """Test that a later placeholder does not replace a directory mapping."""
        resolver = IdentityResolver(database)
        resolver.resolve("users/42", SyncRunContext(), directory=directory)
        resolver.flush()
        resolver.close()

        local = IdentityResolver(
            database, IdentityConfig(resolution_depth=ResolutionDepth.LOCAL)
        )
        local._persist(
            IdentityMapping.from_identity(local.fallback_identity("users/42"))
        )
        local.close()

        mapping = database.find_identity_mapping("42")
        assert mapping.confidence == CONFIDENCE_DIRECTORY
        assert mapping.email == "carol@example.com"
        assert mapping.seen_count == 2

    def test_closed_resolver_skips_persistence(self, database):
        """Test that resolving after close still answers without writing."""
        resolver = IdentityResolver(database)
        resolver.close()

        identity = resolver.resolve("frank@example.com", SyncRunContext())

        assert identity.email == "frank@example.com"
        assert database.count_identity_mappings() == 0
