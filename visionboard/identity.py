"""Identity resolution: map a request to a profile."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import logging

from visionboard.errors import AuthorizationError, NotFoundError
from visionboard.models import Profile, generate_profile_id
from visionboard.storage import DuplicateProfileError, StorageBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Who is calling: an authenticated user, an anonymous visitor, or both."""
    user_id: Optional[str] = None
    visitor_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    @property
    def key(self) -> str:
        """Stable key used for rate limiting."""
        if self.user_id:
            return f"user:{self.user_id}"
        return f"visitor:{self.visitor_id}"


def resolve_identity(user_id: Optional[str], visitor_id: Optional[str]) -> Identity:
    """
    Build an Identity from request credentials.

    Raises:
        AuthorizationError: If neither a user id nor a visitor id is present.
    """
    user_id = (user_id or "").strip() or None
    visitor_id = (visitor_id or "").strip() or None
    if not user_id and not visitor_id:
        raise AuthorizationError("Authentication required")
    return Identity(user_id=user_id, visitor_id=visitor_id)


class IdentityService:
    """Profile lookup, creation and anonymous-board migration."""

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    def get_profile(self, identity: Identity) -> Optional[Profile]:
        if identity.user_id:
            return self.storage.get_profile_by_user_id(identity.user_id)
        return self.storage.get_profile_by_visitor_id(identity.visitor_id)

    def require_profile(self, identity: Identity) -> Profile:
        profile = self.get_profile(identity)
        if profile is None:
            raise NotFoundError("Profile")
        return profile

    def get_or_create_profile(self, identity: Identity) -> Profile:
        profile = self.get_profile(identity)
        if profile:
            return profile

        if identity.user_id:
            profile = Profile(id=generate_profile_id(), user_id=identity.user_id)
        else:
            profile = Profile(id=generate_profile_id(), visitor_id=identity.visitor_id)

        try:
            self.storage.create_profile(profile)
        except DuplicateProfileError:
            # Lost a race with a concurrent first request for the same identity.
            existing = self.get_profile(identity)
            if existing is None:
                raise
            return existing

        logger.info("Created profile %s for %s", profile.id, identity.key)
        return profile

    def update_avatar(self, profile_id: str, original_url: str, no_bg_url: str) -> Profile:
        profile = self.storage.update_profile_avatar(profile_id, original_url, no_bg_url)
        if profile is None:
            raise NotFoundError("Profile", profile_id)
        return profile

    def migrate_boards(self, visitor_id: str, user_id: str) -> int:
        """
        Move a visitor's unclaimed boards to the authenticated user.

        Only boards with `visitor_id = visitor_id AND user_id IS NULL` move;
        boards already claimed by any user are left alone.
        """
        if not user_id:
            raise AuthorizationError("Must be authenticated to migrate boards")
        profile = self.get_or_create_profile(Identity(user_id=user_id))
        migrated = self.storage.migrate_boards(visitor_id, user_id, profile.id)
        logger.info("Migrated %d board(s) from visitor %s to user %s", migrated, visitor_id, user_id)
        return migrated
