"""Storage backends for profiles, boards, goals and the credit ledger."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, List, Optional, Protocol, Sequence
import sqlite3
import threading

from visionboard.models import (
    CreditRecord,
    CreditReservation,
    Goal,
    GoalPosition,
    GoalStatus,
    Profile,
    PurchaseRecord,
    ReservationSource,
    ReservationStatus,
    VisionBoard,
    utcnow,
)


class DuplicateOrderError(Exception):
    """Raised when a purchase for an already recorded order id is inserted."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order '{order_id}' already recorded")


class DuplicateProfileError(Exception):
    """Raised when a profile for an already known user or visitor id is inserted."""

    def __init__(self, profile: Profile):
        self.user_id = profile.user_id
        self.visitor_id = profile.visitor_id
        super().__init__(f"Profile for '{profile.user_id or profile.visitor_id}' already exists")


class StorageBackend(Protocol):
    """Storage backend interface."""

    def transaction(self) -> Iterator[None]:
        ...

    # Profiles
    def create_profile(self, profile: Profile) -> Profile:
        ...

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        ...

    def get_profile_by_user_id(self, user_id: str) -> Optional[Profile]:
        ...

    def get_profile_by_visitor_id(self, visitor_id: str) -> Optional[Profile]:
        ...

    def update_profile_avatar(self, profile_id: str, original_url: str, no_bg_url: str) -> Optional[Profile]:
        ...

    def increment_free_images_used(self, profile_id: str, limit: int) -> bool:
        ...

    def decrement_free_images_used(self, profile_id: str) -> bool:
        ...

    # Boards
    def create_board(self, board: VisionBoard) -> VisionBoard:
        ...

    def get_board(self, board_id: str) -> Optional[VisionBoard]:
        ...

    def list_boards_for_profile(self, profile_id: str) -> List[VisionBoard]:
        ...

    def count_boards_for_profile(self, profile_id: str) -> int:
        ...

    def rename_board(self, board_id: str, name: str) -> Optional[VisionBoard]:
        ...

    def delete_board(self, board_id: str) -> bool:
        ...

    def migrate_boards(self, visitor_id: str, user_id: str, profile_id: str) -> int:
        ...

    # Goals
    def create_goal(self, goal: Goal) -> Goal:
        ...

    def get_goal(self, goal_id: str) -> Optional[Goal]:
        ...

    def list_goals_for_board(self, board_id: str, include_failed: bool = True) -> List[Goal]:
        ...

    def count_active_goals_for_board(self, board_id: str) -> int:
        ...

    def count_generated_images_for_profile(self, profile_id: str) -> int:
        ...

    def transition_goal(self, goal_id: str, from_statuses: Sequence[GoalStatus], to_status: GoalStatus, **fields) -> bool:
        ...

    def update_goal(self, goal_id: str, **fields) -> Optional[Goal]:
        ...

    def update_goal_positions(self, positions: Iterable[GoalPosition]) -> int:
        ...

    def delete_goal(self, goal_id: str) -> bool:
        ...

    def find_stuck_goals(self, cutoff: datetime, board_id: Optional[str] = None) -> List[Goal]:
        ...

    # Credits
    def get_credit_record(self, profile_id: str) -> Optional[CreditRecord]:
        ...

    def increment_credits(self, profile_id: str, amount: int, customer_id: Optional[str] = None) -> None:
        ...

    def decrement_credit(self, profile_id: str) -> bool:
        ...

    def refund_credit(self, profile_id: str) -> bool:
        ...

    def add_purchase(self, purchase: PurchaseRecord) -> PurchaseRecord:
        ...

    def get_purchase_by_order_id(self, order_id: str) -> Optional[PurchaseRecord]:
        ...

    def list_purchases_since(self, profile_id: str, cutoff: datetime) -> List[PurchaseRecord]:
        ...

    # Reservations
    def create_reservation(self, reservation: CreditReservation) -> CreditReservation:
        ...

    def get_reservation(self, goal_id: str) -> Optional[CreditReservation]:
        ...

    def transition_reservation(self, goal_id: str, from_status: ReservationStatus, to_status: ReservationStatus) -> bool:
        ...


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_GOAL_COLUMNS = {
    "title",
    "generated_image_url",
    "phrase",
    "status",
    "position_x",
    "position_y",
    "width",
    "height",
}


class SQLiteStorage:
    """SQLite-backed storage backend."""

    def __init__(self, db_path: str = "visionboard.db"):
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._lock = threading.RLock()
        self._depth = 0
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                user_id TEXT UNIQUE,
                visitor_id TEXT UNIQUE,
                avatar_original_url TEXT,
                avatar_no_bg_url TEXT,
                free_images_used INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS vision_boards (
                id TEXT PRIMARY KEY,
                profile_id TEXT NOT NULL REFERENCES profiles(id),
                visitor_id TEXT,
                user_id TEXT,
                name TEXT NOT NULL,
                user_photo_url TEXT,
                user_photo_no_bg_url TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS goals (
                id TEXT PRIMARY KEY,
                board_id TEXT NOT NULL REFERENCES vision_boards(id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                generated_image_url TEXT,
                phrase TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                position_x INTEGER NOT NULL DEFAULT 0,
                position_y INTEGER NOT NULL DEFAULT 0,
                width INTEGER NOT NULL DEFAULT 300,
                height INTEGER NOT NULL DEFAULT 300,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_credits (
                profile_id TEXT PRIMARY KEY REFERENCES profiles(id),
                image_credits INTEGER NOT NULL DEFAULT 0 CHECK (image_credits >= 0),
                total_purchased INTEGER NOT NULL DEFAULT 0,
                polar_customer_id TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS purchases (
                id TEXT PRIMARY KEY,
                profile_id TEXT NOT NULL,
                polar_order_id TEXT NOT NULL UNIQUE,
                amount INTEGER NOT NULL,
                credits_added INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS credit_reservations (
                goal_id TEXT PRIMARY KEY,
                profile_id TEXT NOT NULL,
                source TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_boards_profile ON vision_boards(profile_id);
            CREATE INDEX IF NOT EXISTS idx_boards_visitor ON vision_boards(visitor_id);
            CREATE INDEX IF NOT EXISTS idx_goals_board ON goals(board_id);
            CREATE INDEX IF NOT EXISTS idx_goals_status_time ON goals(status, created_at);
            CREATE INDEX IF NOT EXISTS idx_purchases_profile ON purchases(profile_id, created_at);
            """
        )
        self._conn.commit()

    # =========================================================================
    # Transactions
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes into one commit; nested use joins the outer one."""
        with self._lock:
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.rollback()
                raise
            else:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.commit()

    def _execute(self, sql: str, params: Sequence = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                cur = self._conn.execute(sql, params)
            except sqlite3.Error:
                if self._depth == 0:
                    self._conn.rollback()
                raise
            if self._depth == 0:
                self._conn.commit()
            return cur

    def _fetchone(self, sql: str, params: Sequence = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: Sequence = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # =========================================================================
    # Profiles
    # =========================================================================

    def _row_to_profile(self, row: sqlite3.Row) -> Profile:
        return Profile(
            id=row["id"],
            user_id=row["user_id"],
            visitor_id=row["visitor_id"],
            avatar_original_url=row["avatar_original_url"],
            avatar_no_bg_url=row["avatar_no_bg_url"],
            free_images_used=row["free_images_used"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def create_profile(self, profile: Profile) -> Profile:
        try:
            self._execute(
                """
                INSERT INTO profiles (id, user_id, visitor_id, avatar_original_url, avatar_no_bg_url,
                                      free_images_used, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    profile.id,
                    profile.user_id,
                    profile.visitor_id,
                    profile.avatar_original_url,
                    profile.avatar_no_bg_url,
                    profile.free_images_used,
                    _ts(profile.created_at),
                    _ts(profile.updated_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateProfileError(profile) from exc
        return profile

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        row = self._fetchone("SELECT * FROM profiles WHERE id = ?", (profile_id,))
        return self._row_to_profile(row) if row else None

    def get_profile_by_user_id(self, user_id: str) -> Optional[Profile]:
        row = self._fetchone("SELECT * FROM profiles WHERE user_id = ?", (user_id,))
        return self._row_to_profile(row) if row else None

    def get_profile_by_visitor_id(self, visitor_id: str) -> Optional[Profile]:
        row = self._fetchone("SELECT * FROM profiles WHERE visitor_id = ?", (visitor_id,))
        return self._row_to_profile(row) if row else None

    def update_profile_avatar(self, profile_id: str, original_url: str, no_bg_url: str) -> Optional[Profile]:
        self._execute(
            """
            UPDATE profiles
            SET avatar_original_url = ?, avatar_no_bg_url = ?, updated_at = ?
            WHERE id = ?
            """,
            (original_url, no_bg_url, _ts(utcnow()), profile_id),
        )
        return self.get_profile(profile_id)

    def increment_free_images_used(self, profile_id: str, limit: int) -> bool:
        cur = self._execute(
            """
            UPDATE profiles
            SET free_images_used = free_images_used + 1, updated_at = ?
            WHERE id = ? AND free_images_used < ?
            """,
            (_ts(utcnow()), profile_id, limit),
        )
        return cur.rowcount > 0

    def decrement_free_images_used(self, profile_id: str) -> bool:
        cur = self._execute(
            """
            UPDATE profiles
            SET free_images_used = free_images_used - 1, updated_at = ?
            WHERE id = ? AND free_images_used > 0
            """,
            (_ts(utcnow()), profile_id),
        )
        return cur.rowcount > 0

    # =========================================================================
    # Boards
    # =========================================================================

    def _row_to_board(self, row: sqlite3.Row) -> VisionBoard:
        return VisionBoard(
            id=row["id"],
            profile_id=row["profile_id"],
            name=row["name"],
            visitor_id=row["visitor_id"],
            user_id=row["user_id"],
            user_photo_url=row["user_photo_url"],
            user_photo_no_bg_url=row["user_photo_no_bg_url"],
            created_at=_parse_ts(row["created_at"]),
        )

    def create_board(self, board: VisionBoard) -> VisionBoard:
        self._execute(
            """
            INSERT INTO vision_boards (id, profile_id, visitor_id, user_id, name,
                                       user_photo_url, user_photo_no_bg_url, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                board.id,
                board.profile_id,
                board.visitor_id,
                board.user_id,
                board.name,
                board.user_photo_url,
                board.user_photo_no_bg_url,
                _ts(board.created_at),
            ),
        )
        return board

    def get_board(self, board_id: str) -> Optional[VisionBoard]:
        row = self._fetchone("SELECT * FROM vision_boards WHERE id = ?", (board_id,))
        return self._row_to_board(row) if row else None

    def list_boards_for_profile(self, profile_id: str) -> List[VisionBoard]:
        rows = self._fetchall(
            "SELECT * FROM vision_boards WHERE profile_id = ? ORDER BY created_at ASC",
            (profile_id,),
        )
        return [self._row_to_board(row) for row in rows]

    def count_boards_for_profile(self, profile_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM vision_boards WHERE profile_id = ?",
            (profile_id,),
        )
        return int(row["n"])

    def rename_board(self, board_id: str, name: str) -> Optional[VisionBoard]:
        self._execute("UPDATE vision_boards SET name = ? WHERE id = ?", (name, board_id))
        return self.get_board(board_id)

    def delete_board(self, board_id: str) -> bool:
        cur = self._execute("DELETE FROM vision_boards WHERE id = ?", (board_id,))
        return cur.rowcount > 0

    def migrate_boards(self, visitor_id: str, user_id: str, profile_id: str) -> int:
        cur = self._execute(
            """
            UPDATE vision_boards
            SET user_id = ?, profile_id = ?
            WHERE visitor_id = ? AND user_id IS NULL
            """,
            (user_id, profile_id, visitor_id),
        )
        return cur.rowcount

    # =========================================================================
    # Goals
    # =========================================================================

    def _row_to_goal(self, row: sqlite3.Row) -> Goal:
        return Goal(
            id=row["id"],
            board_id=row["board_id"],
            title=row["title"],
            status=GoalStatus(row["status"]),
            generated_image_url=row["generated_image_url"],
            phrase=row["phrase"],
            position_x=row["position_x"],
            position_y=row["position_y"],
            width=row["width"],
            height=row["height"],
            created_at=_parse_ts(row["created_at"]),
        )

    def create_goal(self, goal: Goal) -> Goal:
        self._execute(
            """
            INSERT INTO goals (id, board_id, title, generated_image_url, phrase, status,
                               position_x, position_y, width, height, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                goal.id,
                goal.board_id,
                goal.title,
                goal.generated_image_url,
                goal.phrase,
                goal.status.value,
                goal.position_x,
                goal.position_y,
                goal.width,
                goal.height,
                _ts(goal.created_at),
            ),
        )
        return goal

    def get_goal(self, goal_id: str) -> Optional[Goal]:
        row = self._fetchone("SELECT * FROM goals WHERE id = ?", (goal_id,))
        return self._row_to_goal(row) if row else None

    def list_goals_for_board(self, board_id: str, include_failed: bool = True) -> List[Goal]:
        sql = "SELECT * FROM goals WHERE board_id = ?"
        params: list = [board_id]
        if not include_failed:
            sql += " AND status != ?"
            params.append(GoalStatus.FAILED.value)
        sql += " ORDER BY created_at ASC"
        return [self._row_to_goal(row) for row in self._fetchall(sql, params)]

    def count_active_goals_for_board(self, board_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM goals WHERE board_id = ? AND status != ?",
            (board_id, GoalStatus.FAILED.value),
        )
        return int(row["n"])

    def count_generated_images_for_profile(self, profile_id: str) -> int:
        row = self._fetchone(
            """
            SELECT COUNT(*) AS n FROM goals g
            JOIN vision_boards b ON b.id = g.board_id
            WHERE b.profile_id = ? AND g.generated_image_url IS NOT NULL
            """,
            (profile_id,),
        )
        return int(row["n"])

    def _goal_assignments(self, fields: dict) -> tuple[str, list]:
        unknown = set(fields) - _GOAL_COLUMNS
        if unknown:
            raise ValueError(f"Unknown goal fields: {sorted(unknown)}")
        values = [v.value if isinstance(v, GoalStatus) else v for v in fields.values()]
        return ", ".join(f"{name} = ?" for name in fields), values

    def transition_goal(
        self,
        goal_id: str,
        from_statuses: Sequence[GoalStatus],
        to_status: GoalStatus,
        **fields,
    ) -> bool:
        """Conditionally move a goal to a new status; False if it was not in `from_statuses`."""
        assignments, values = self._goal_assignments({"status": to_status, **fields})
        placeholders = ", ".join("?" for _ in from_statuses)
        cur = self._execute(
            f"UPDATE goals SET {assignments} WHERE id = ? AND status IN ({placeholders})",
            (*values, goal_id, *(s.value for s in from_statuses)),
        )
        return cur.rowcount > 0

    def update_goal(self, goal_id: str, **fields) -> Optional[Goal]:
        if fields:
            assignments, values = self._goal_assignments(fields)
            self._execute(f"UPDATE goals SET {assignments} WHERE id = ?", (*values, goal_id))
        return self.get_goal(goal_id)

    def update_goal_positions(self, positions: Iterable[GoalPosition]) -> int:
        updated = 0
        with self.transaction():
            for pos in positions:
                cur = self._execute(
                    """
                    UPDATE goals SET position_x = ?, position_y = ?, width = ?, height = ?
                    WHERE id = ?
                    """,
                    (pos.position_x, pos.position_y, pos.width, pos.height, pos.id),
                )
                updated += cur.rowcount
        return updated

    def delete_goal(self, goal_id: str) -> bool:
        cur = self._execute("DELETE FROM goals WHERE id = ?", (goal_id,))
        return cur.rowcount > 0

    def find_stuck_goals(self, cutoff: datetime, board_id: Optional[str] = None) -> List[Goal]:
        sql = "SELECT * FROM goals WHERE status IN (?, ?) AND created_at < ?"
        params: list = [GoalStatus.PENDING.value, GoalStatus.GENERATING.value, _ts(cutoff)]
        if board_id is not None:
            sql += " AND board_id = ?"
            params.append(board_id)
        sql += " ORDER BY created_at ASC"
        return [self._row_to_goal(row) for row in self._fetchall(sql, params)]

    # =========================================================================
    # Credits
    # =========================================================================

    def get_credit_record(self, profile_id: str) -> Optional[CreditRecord]:
        row = self._fetchone("SELECT * FROM user_credits WHERE profile_id = ?", (profile_id,))
        if not row:
            return None
        return CreditRecord(
            profile_id=row["profile_id"],
            image_credits=row["image_credits"],
            total_purchased=row["total_purchased"],
            polar_customer_id=row["polar_customer_id"],
            updated_at=_parse_ts(row["updated_at"]),
        )

    def increment_credits(self, profile_id: str, amount: int, customer_id: Optional[str] = None) -> None:
        self._execute(
            """
            INSERT INTO user_credits (profile_id, image_credits, total_purchased, polar_customer_id, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(profile_id) DO UPDATE SET
                image_credits = image_credits + excluded.image_credits,
                total_purchased = total_purchased + excluded.total_purchased,
                polar_customer_id = COALESCE(excluded.polar_customer_id, polar_customer_id),
                updated_at = excluded.updated_at
            """,
            (profile_id, amount, amount, customer_id, _ts(utcnow())),
        )

    def decrement_credit(self, profile_id: str) -> bool:
        cur = self._execute(
            """
            UPDATE user_credits SET image_credits = image_credits - 1, updated_at = ?
            WHERE profile_id = ? AND image_credits > 0
            """,
            (_ts(utcnow()), profile_id),
        )
        return cur.rowcount > 0

    def refund_credit(self, profile_id: str) -> bool:
        cur = self._execute(
            """
            UPDATE user_credits SET image_credits = image_credits + 1, updated_at = ?
            WHERE profile_id = ?
            """,
            (_ts(utcnow()), profile_id),
        )
        return cur.rowcount > 0

    def _row_to_purchase(self, row: sqlite3.Row) -> PurchaseRecord:
        return PurchaseRecord(
            id=row["id"],
            profile_id=row["profile_id"],
            polar_order_id=row["polar_order_id"],
            amount=row["amount"],
            credits_added=row["credits_added"],
            created_at=_parse_ts(row["created_at"]),
        )

    def add_purchase(self, purchase: PurchaseRecord) -> PurchaseRecord:
        try:
            self._execute(
                """
                INSERT INTO purchases (id, profile_id, polar_order_id, amount, credits_added, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    purchase.id,
                    purchase.profile_id,
                    purchase.polar_order_id,
                    purchase.amount,
                    purchase.credits_added,
                    _ts(purchase.created_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateOrderError(purchase.polar_order_id) from exc
        return purchase

    def get_purchase_by_order_id(self, order_id: str) -> Optional[PurchaseRecord]:
        row = self._fetchone("SELECT * FROM purchases WHERE polar_order_id = ?", (order_id,))
        return self._row_to_purchase(row) if row else None

    def list_purchases_since(self, profile_id: str, cutoff: datetime) -> List[PurchaseRecord]:
        rows = self._fetchall(
            """
            SELECT * FROM purchases WHERE profile_id = ? AND created_at >= ?
            ORDER BY created_at ASC
            """,
            (profile_id, _ts(cutoff)),
        )
        return [self._row_to_purchase(row) for row in rows]

    # =========================================================================
    # Reservations
    # =========================================================================

    def _row_to_reservation(self, row: sqlite3.Row) -> CreditReservation:
        return CreditReservation(
            goal_id=row["goal_id"],
            profile_id=row["profile_id"],
            source=ReservationSource(row["source"]),
            status=ReservationStatus(row["status"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def create_reservation(self, reservation: CreditReservation) -> CreditReservation:
        self._execute(
            """
            INSERT INTO credit_reservations (goal_id, profile_id, source, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(goal_id) DO UPDATE SET
                profile_id = excluded.profile_id,
                source = excluded.source,
                status = excluded.status,
                created_at = excluded.created_at,
                updated_at = excluded.updated_at
            """,
            (
                reservation.goal_id,
                reservation.profile_id,
                reservation.source.value,
                reservation.status.value,
                _ts(reservation.created_at),
                _ts(reservation.updated_at),
            ),
        )
        return reservation

    def get_reservation(self, goal_id: str) -> Optional[CreditReservation]:
        row = self._fetchone("SELECT * FROM credit_reservations WHERE goal_id = ?", (goal_id,))
        return self._row_to_reservation(row) if row else None

    def transition_reservation(
        self,
        goal_id: str,
        from_status: ReservationStatus,
        to_status: ReservationStatus,
    ) -> bool:
        cur = self._execute(
            """
            UPDATE credit_reservations SET status = ?, updated_at = ?
            WHERE goal_id = ? AND status = ?
            """,
            (to_status.value, _ts(utcnow()), goal_id, from_status.value),
        )
        return cur.rowcount > 0

    def close(self) -> None:
        self._conn.close()
