"""
Goal lifecycle for Vision Board.

States:
    pending -> generating -> completed | failed

A goal holds one credit reservation from creation. Completion commits it;
failure, deletion before completion, or the stuck-goal reclaimer releases it.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional
import logging
import time

import requests

from visionboard.boards import BoardService
from visionboard.config import DEFAULT_LIMITS, STUCK_GOAL_TIMEOUT
from visionboard.errors import ExternalServiceError, ForbiddenError, NotFoundError, QuotaExceededError, ValidationError
from visionboard.identity import Identity
from visionboard.ledger import CreditLedger
from visionboard.metrics import MetricsCollector
from visionboard.models import (
    Goal,
    GoalPosition,
    GoalStatus,
    ReservationStatus,
    VisionBoard,
    generate_goal_id,
    utcnow,
)
from visionboard.providers import BlobStore, ImageProvider, PhraseProvider, persist_remote
from visionboard.storage import StorageBackend

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (GoalStatus.PENDING, GoalStatus.GENERATING)


class GoalService:
    """
    Creates goals, drives image generation and reclaims stuck goals.

    Example:
        ```python
        goal = goals.create_goal(identity, board.id, "Run a marathon")
        goal = goals.generate(identity, goal.id)
        goal.status  # GoalStatus.COMPLETED
        ```
    """

    def __init__(
        self,
        storage: StorageBackend,
        boards: BoardService,
        ledger: CreditLedger,
        images: ImageProvider,
        phrases: PhraseProvider,
        blob_store: BlobStore,
        metrics: Optional[MetricsCollector] = None,
        limits: Optional[dict] = None,
        stuck_timeout: timedelta = STUCK_GOAL_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
        http_session: Optional[requests.Session] = None,
    ):
        self.storage = storage
        self.boards = boards
        self.ledger = ledger
        self.images = images
        self.phrases = phrases
        self.blob_store = blob_store
        self.metrics = metrics
        self.limits = limits or dict(DEFAULT_LIMITS)
        self.stuck_timeout = stuck_timeout
        self.clock = clock
        self.http_session = http_session

    # =========================================================================
    # Creation
    # =========================================================================

    def create_goal(self, identity: Identity, board_id: str, title: str) -> Goal:
        """
        Add a pending goal to a board and reserve the credit that pays for it.

        Raises:
            ValidationError: Missing or over-long title.
            NotFoundError / ForbiddenError: Unknown board or not the owner.
            QuotaExceededError: Board is full, or no credit / free slot left.
        """
        title = (title or "").strip()
        max_len = self.limits["max_title_length"]
        if not board_id or not title:
            raise ValidationError("Missing required fields")
        if len(title) > max_len:
            raise ValidationError(f"Goal title too long. Max {max_len} characters")

        board = self.boards.require_owned_board(identity, board_id)
        profile = self.storage.get_profile(board.profile_id)
        limits = self.ledger.get_limits(profile)

        goal = Goal(id=generate_goal_id(), board_id=board_id, title=title, created_at=self.clock())
        with self.storage.transaction():
            goal_count = self.storage.count_active_goals_for_board(board_id)
            if goal_count >= limits.max_goals_per_board:
                raise QuotaExceededError(
                    f"Maximum {limits.max_goals_per_board} goals per board allowed"
                )
            self.storage.create_goal(goal)
            self.ledger.reserve(board.profile_id, goal.id)

        if self.metrics:
            self.metrics.record_goal("created", goal.id, board_id=board_id)
        return goal

    # =========================================================================
    # Generation
    # =========================================================================

    def _require_owned_goal(self, identity: Identity, goal_id: str) -> tuple[Goal, VisionBoard]:
        goal = self.storage.get_goal(goal_id)
        if goal is None:
            raise NotFoundError("Goal", goal_id)
        board = self.boards.require_owned_board(identity, goal.board_id)
        return goal, board

    def generate(self, identity: Identity, goal_id: str, user_image_url: Optional[str] = None) -> Goal:
        """
        Generate the image (and phrase) for a goal.

        A pending goal moves to generating and then completed or failed. A
        completed goal is regenerated in place without using a credit; a
        failed goal is final and must be recreated.
        """
        goal, board = self._require_owned_goal(identity, goal_id)
        source_url = user_image_url or board.user_photo_no_bg_url
        if not source_url:
            raise ValidationError("No user image available for this board")

        if goal.status == GoalStatus.COMPLETED:
            return self._regenerate(goal, source_url)
        if goal.status == GoalStatus.FAILED:
            raise ValidationError("Goal generation failed. Create the goal again to retry.")

        reservation = self.ledger.get_reservation(goal.id)
        if reservation is None or reservation.status != ReservationStatus.RESERVED:
            self.ledger.reserve(board.profile_id, goal.id)

        if not self.storage.transition_goal(goal.id, (GoalStatus.PENDING,), GoalStatus.GENERATING):
            raise ValidationError("Goal is already generating")
        if self.metrics:
            self.metrics.record_goal("generating", goal.id)

        started = time.monotonic()
        try:
            image_url, phrase = self._run_generation(goal, source_url, want_phrase=goal.phrase is None)
        except Exception as e:
            self.mark_failed(goal.id)
            if self.metrics:
                self.metrics.record_error(goal.id, "generation_failed", str(e))
            if isinstance(e, ExternalServiceError):
                raise
            raise ExternalServiceError("image-generation", str(e)) from e

        fields = {"generated_image_url": image_url}
        if phrase:
            fields["phrase"] = phrase
        if not self.storage.transition_goal(goal.id, (GoalStatus.GENERATING,), GoalStatus.COMPLETED, **fields):
            # Reclaimed or deleted while we waited; its credit is already back.
            logger.warning("Goal %s finished after being reclaimed or deleted; result discarded", goal.id)
            return self.get_goal(goal.id)

        self.ledger.commit(goal.id)
        if self.metrics:
            self.metrics.record_goal(
                "completed", goal.id, latency_ms=int((time.monotonic() - started) * 1000)
            )
        return self.get_goal(goal.id)

    def _regenerate(self, goal: Goal, source_url: str) -> Goal:
        image_url, _ = self._run_generation(goal, source_url, want_phrase=False)
        if self.metrics:
            self.metrics.record_goal("regenerated", goal.id)
        updated = self.storage.update_goal(goal.id, generated_image_url=image_url)
        if updated is None:
            raise NotFoundError("Goal", goal.id)
        return updated

    def _run_generation(self, goal: Goal, source_url: str, want_phrase: bool) -> tuple[str, Optional[str]]:
        """Issue image and phrase calls concurrently; the phrase is best-effort."""
        with ThreadPoolExecutor(max_workers=2) as executor:
            image_future = executor.submit(self.images.generate_scene, source_url, goal.title)
            phrase_future = executor.submit(self.phrases.generate_phrase, goal.title) if want_phrase else None

            remote_url = image_future.result()
            phrase = None
            if phrase_future is not None:
                try:
                    phrase = phrase_future.result()
                except Exception as e:
                    logger.warning("Phrase generation failed for goal %s: %s", goal.id, e)

        name = f"goal-{goal.id}-{int(time.time() * 1000)}.png"
        image_url = persist_remote(self.blob_store, remote_url, name, session=self.http_session)
        return image_url, phrase

    def generate_phrase(self, identity: Identity, goal_id: str) -> Goal:
        goal, _ = self._require_owned_goal(identity, goal_id)
        phrase = self.phrases.generate_phrase(goal.title)
        return self.storage.update_goal(goal.id, phrase=phrase)

    # =========================================================================
    # Failure and reclamation
    # =========================================================================

    def mark_failed(self, goal_id: str) -> bool:
        """Fail a non-terminal goal and release its reservation. False if already terminal."""
        with self.storage.transaction():
            if not self.storage.transition_goal(goal_id, ACTIVE_STATUSES, GoalStatus.FAILED):
                return False
            self.ledger.release(goal_id)
        if self.metrics:
            self.metrics.record_goal("failed", goal_id)
        return True

    def _cutoff(self, now: Optional[datetime]) -> datetime:
        return (now or self.clock()) - self.stuck_timeout

    def find_stuck_goals(self, now: Optional[datetime] = None) -> List[Goal]:
        return self.storage.find_stuck_goals(self._cutoff(now))

    def find_stuck_goals_for_board(self, board_id: str, now: Optional[datetime] = None) -> List[Goal]:
        return self.storage.find_stuck_goals(self._cutoff(now), board_id=board_id)

    def reclaim_stuck_goals(self, board_id: Optional[str] = None, now: Optional[datetime] = None) -> List[Goal]:
        """Fail every stuck goal (optionally only on one board) and refund it."""
        if board_id is None:
            stuck = self.find_stuck_goals(now)
        else:
            stuck = self.find_stuck_goals_for_board(board_id, now)

        reclaimed = []
        for goal in stuck:
            logger.info("Cleaning up stuck goal %s (created %s)", goal.id, goal.created_at.isoformat())
            if self.mark_failed(goal.id):
                reclaimed.append(goal)
                if self.metrics:
                    self.metrics.record_goal("reclaimed", goal.id, board_id=goal.board_id)
        return reclaimed

    # =========================================================================
    # Reads, deletes, layout
    # =========================================================================

    def list_goals(self, board_id: str) -> List[Goal]:
        """Active goals of a board, after reclaiming any that are stuck."""
        if self.storage.get_board(board_id) is None:
            raise NotFoundError("Board", board_id)
        self.reclaim_stuck_goals(board_id)
        return self.storage.list_goals_for_board(board_id, include_failed=False)

    def get_goal(self, goal_id: str) -> Goal:
        goal = self.storage.get_goal(goal_id)
        if goal is None:
            raise NotFoundError("Goal", goal_id)
        return goal

    def delete_goal(self, identity: Identity, goal_id: str) -> None:
        goal, _ = self._require_owned_goal(identity, goal_id)
        if not goal.status.is_terminal:
            self.ledger.release(goal.id)
        self.storage.delete_goal(goal.id)
        if self.metrics:
            self.metrics.record_goal("deleted", goal.id)

    def save_layout(self, identity: Identity, positions: Iterable[GoalPosition]) -> int:
        """Update canvas positions; every goal must be on a board the caller owns."""
        positions = list(positions)
        owned_boards: set[str] = set()
        for pos in positions:
            goal = self.storage.get_goal(pos.id)
            if goal is None:
                raise NotFoundError("Goal", pos.id)
            if goal.board_id not in owned_boards:
                try:
                    self.boards.require_owned_board(identity, goal.board_id)
                except NotFoundError as e:
                    raise ForbiddenError("Unauthorized") from e
                owned_boards.add(goal.board_id)
        return self.storage.update_goal_positions(positions)
