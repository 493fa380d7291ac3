"""Board CRUD and ownership checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional
import logging

from visionboard.errors import ForbiddenError, NotFoundError, QuotaExceededError, ValidationError
from visionboard.identity import Identity, IdentityService
from visionboard.ledger import CreditLedger, UserLimits
from visionboard.models import Goal, GoalStatus, Profile, VisionBoard, generate_board_id
from visionboard.storage import StorageBackend

logger = logging.getLogger(__name__)

BOARD_NAME_TEMPLATES = [
    "2026 Vision Board",
    "My Dream Year 2026",
    "2026 Goals & Dreams",
    "Vision 2026",
    "Manifest 2026",
]

MAX_BOARD_NAME_LENGTH = 100


def default_board_name(existing_count: int = 0) -> str:
    """Rotate through the templates, numbering them once they run out."""
    template = BOARD_NAME_TEMPLATES[existing_count % len(BOARD_NAME_TEMPLATES)]
    if existing_count >= len(BOARD_NAME_TEMPLATES):
        return f"{template} #{existing_count // len(BOARD_NAME_TEMPLATES) + 1}"
    return template


@dataclass
class BoardWithGoals:
    board: VisionBoard
    goals: List[Goal] = field(default_factory=list)


@dataclass
class BoardListing:
    """Everything the home screen needs about a caller's boards."""
    boards: List[BoardWithGoals]
    profile: Optional[Profile]
    limits: UserLimits
    board_count: int
    photo_count: int
    is_authenticated: bool


class BoardService:
    def __init__(self, storage: StorageBackend, identities: IdentityService, ledger: CreditLedger):
        self.storage = storage
        self.identities = identities
        self.ledger = ledger

    def create_board(
        self,
        identity: Identity,
        name: Optional[str] = None,
        photo_url: Optional[str] = None,
        photo_no_bg_url: Optional[str] = None,
    ) -> VisionBoard:
        """
        Create a board for the caller.

        Without explicit photo urls the profile avatar is used, so the caller
        must have uploaded one first.
        """
        if photo_url and photo_no_bg_url:
            profile = self.identities.get_or_create_profile(identity)
        else:
            profile = self.identities.get_profile(identity)
            if profile is None:
                raise ValidationError("Profile not found. Upload a photo first.")
            if not profile.avatar_no_bg_url:
                raise ValidationError("No avatar found. Upload a photo first.")
            photo_url = profile.avatar_original_url
            photo_no_bg_url = profile.avatar_no_bg_url

        if name is not None:
            name = name.strip()
            if len(name) > MAX_BOARD_NAME_LENGTH:
                raise ValidationError(f"Board name too long. Max {MAX_BOARD_NAME_LENGTH} characters")

        limits = self.ledger.get_limits(profile)
        board_count = self.storage.count_boards_for_profile(profile.id)
        if board_count >= limits.max_boards:
            raise QuotaExceededError("Maximum boards limit reached", requires_upgrade=not limits.is_paid)

        board = self.storage.create_board(
            VisionBoard(
                id=generate_board_id(),
                profile_id=profile.id,
                name=name or default_board_name(board_count),
                visitor_id=identity.visitor_id,
                user_id=identity.user_id,
                user_photo_url=photo_url,
                user_photo_no_bg_url=photo_no_bg_url,
            )
        )
        logger.info("Created board %s for profile %s", board.id, profile.id)
        return board

    def get_board(self, board_id: str) -> BoardWithGoals:
        """Public read of a board and its non-failed goals (share view)."""
        board = self.storage.get_board(board_id)
        if board is None:
            raise NotFoundError("Board", board_id)
        return BoardWithGoals(board, self.storage.list_goals_for_board(board_id, include_failed=False))

    def require_owned_board(self, identity: Identity, board_id: str) -> VisionBoard:
        profile = self.identities.require_profile(identity)
        board = self.storage.get_board(board_id)
        if board is None:
            raise NotFoundError("Board", board_id)
        if board.profile_id != profile.id:
            raise ForbiddenError("Unauthorized")
        return board

    def list_boards(self, identity: Identity) -> BoardListing:
        profile = self.identities.get_profile(identity)
        limits = self.ledger.get_limits(profile)
        if profile is None:
            return BoardListing(
                boards=[],
                profile=None,
                limits=limits,
                board_count=0,
                photo_count=0,
                is_authenticated=identity.is_authenticated,
            )

        boards = [
            BoardWithGoals(board, self.storage.list_goals_for_board(board.id, include_failed=False))
            for board in self.storage.list_boards_for_profile(profile.id)
        ]
        photo_count = self.storage.count_generated_images_for_profile(profile.id)
        return BoardListing(
            boards=boards,
            profile=profile,
            limits=limits,
            board_count=len(boards),
            photo_count=photo_count,
            is_authenticated=identity.is_authenticated,
        )

    def rename_board(self, identity: Identity, board_id: str, name: str) -> VisionBoard:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Board name is required")
        if len(name) > MAX_BOARD_NAME_LENGTH:
            raise ValidationError(f"Board name too long. Max {MAX_BOARD_NAME_LENGTH} characters")
        self.require_owned_board(identity, board_id)
        return self.storage.rename_board(board_id, name)

    def delete_board(self, identity: Identity, board_id: str) -> None:
        """Delete a board and, by cascade, its goals; unfinished goals get their credit back."""
        self.require_owned_board(identity, board_id)
        for goal in self.storage.list_goals_for_board(board_id):
            if goal.status in (GoalStatus.PENDING, GoalStatus.GENERATING):
                self.ledger.release(goal.id)
        self.storage.delete_board(board_id)
        logger.info("Deleted board %s", board_id)
