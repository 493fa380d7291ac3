"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import secrets
import string


_ID_ALPHABET = string.ascii_letters + string.digits + "_-"


def generate_id(size: int = 21) -> str:
    """URL-safe random id."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(size))


def generate_board_id() -> str:
    return generate_id(10)


def generate_goal_id() -> str:
    return generate_id(12)


def generate_profile_id() -> str:
    return f"profile_{generate_id()}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GoalStatus(str, Enum):
    """Lifecycle states of a goal."""
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GoalStatus.COMPLETED, GoalStatus.FAILED)


class ReservationSource(str, Enum):
    """What a reservation was paid with."""
    CREDIT = "credit"
    FREE = "free"


class ReservationStatus(str, Enum):
    """Reservation phases."""
    RESERVED = "reserved"
    COMMITTED = "committed"
    RELEASED = "released"


@dataclass
class Profile:
    """Identity anchor for boards and credits."""
    id: str
    user_id: Optional[str] = None
    visitor_id: Optional[str] = None
    avatar_original_url: Optional[str] = None
    avatar_no_bg_url: Optional[str] = None
    free_images_used: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class VisionBoard:
    """A named collection of goals."""
    id: str
    profile_id: str
    name: str
    visitor_id: Optional[str] = None
    user_id: Optional[str] = None
    user_photo_url: Optional[str] = None
    user_photo_no_bg_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Goal:
    """A single image-generation task on a board."""
    id: str
    board_id: str
    title: str
    status: GoalStatus = GoalStatus.PENDING
    generated_image_url: Optional[str] = None
    phrase: Optional[str] = None
    position_x: int = 0
    position_y: int = 0
    width: int = 300
    height: int = 300
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CreditRecord:
    """Image credit balance of a profile."""
    profile_id: str
    image_credits: int = 0
    total_purchased: int = 0
    polar_customer_id: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PurchaseRecord:
    """Ledger entry for one payment provider order."""
    profile_id: str
    polar_order_id: str
    credits_added: int
    amount: int = 500
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CreditReservation:
    """One credit (or free slot) held for a goal."""
    goal_id: str
    profile_id: str
    source: ReservationSource
    status: ReservationStatus = ReservationStatus.RESERVED
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class GoalPosition:
    """Canvas placement of a goal."""
    id: str
    position_x: int
    position_y: int
    width: int
    height: int
