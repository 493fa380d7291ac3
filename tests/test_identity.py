"""Tests for identity resolution and anonymous board migration."""

import pytest

from visionboard.errors import AuthorizationError, NotFoundError
from visionboard.identity import Identity, resolve_identity


class TestResolveIdentity:
    def test_requires_some_identity(self):
        """Neither user nor visitor id is an error."""
        with pytest.raises(AuthorizationError):
            resolve_identity(None, "  ")

    def test_user_takes_precedence_for_key(self):
        """The user id keys a signed-in caller."""
        identity = resolve_identity("u1", "fp1")

        assert identity.is_authenticated
        assert identity.key == "user:u1"

    def test_visitor_only(self):
        """Visitors are keyed by fingerprint."""
        identity = resolve_identity(None, "fp1")

        assert not identity.is_authenticated
        assert identity.key == "visitor:fp1"


class TestIdentityService:
    def test_get_or_create_is_stable(self, services, visitor):
        """Repeated lookups return the same profile."""
        first = services.identities.get_or_create_profile(visitor)
        second = services.identities.get_or_create_profile(visitor)

        assert first.id == second.id
        assert first.id.startswith("profile_")
        assert first.visitor_id == "fp_visitor_1"

    def test_lost_creation_race_returns_winner(self, services, visitor, monkeypatch):
        """When a concurrent request creates the profile first, its profile is returned."""
        winner = services.identities.get_or_create_profile(visitor)
        lookups = iter([None])
        real_lookup = services.storage.get_profile_by_visitor_id
        monkeypatch.setattr(
            services.storage,
            "get_profile_by_visitor_id",
            lambda visitor_id: next(lookups, None) or real_lookup(visitor_id),
        )

        profile = services.identities.get_or_create_profile(visitor)

        assert profile.id == winner.id

    def test_require_profile_missing(self, services):
        """A missing profile raises NotFoundError."""
        with pytest.raises(NotFoundError):
            services.identities.require_profile(Identity(visitor_id="nobody"))

    def test_update_avatar(self, services, user):
        """Avatar URLs are stored on the profile."""
        profile = services.identities.get_or_create_profile(user)

        updated = services.identities.update_avatar(profile.id, "https://x/orig.jpg", "https://x/nobg.png")

        assert updated.avatar_no_bg_url == "https://x/nobg.png"


class TestMigrateBoards:
    def test_visitor_boards_move_to_user(self, services, visitor, board):
        """Migration moves visitor boards to the user."""
        migrated = services.identities.migrate_boards(visitor.visitor_id, "user_9")

        assert migrated == 1
        user_profile = services.identities.get_profile(Identity(user_id="user_9"))
        moved = services.storage.get_board(board.id)
        assert moved.user_id == "user_9"
        assert moved.profile_id == user_profile.id

    def test_claimed_boards_are_not_moved_again(self, services, visitor, board):
        """Boards already claimed stay put."""
        services.identities.migrate_boards(visitor.visitor_id, "user_9")

        assert services.identities.migrate_boards(visitor.visitor_id, "user_other") == 0
        assert services.storage.get_board(board.id).user_id == "user_9"

    def test_requires_user(self, services, visitor):
        """Migration needs a user id."""
        with pytest.raises(AuthorizationError):
            services.identities.migrate_boards(visitor.visitor_id, "")
