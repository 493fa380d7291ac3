"""
Vision Board - AI vision boards with credit-metered image generation.

Wiring the services:
    from visionboard import Settings, build_services

    services = build_services(Settings.from_env())

Boards and goals:
    from visionboard import Identity

    me = Identity(visitor_id="fp_123")
    board = services.boards.create_board(me, photo_url=url, photo_no_bg_url=no_bg)
    goal = services.goals.create_goal(me, board.id, "Run a marathon")
    goal = services.goals.generate(me, goal.id)
    print(goal.generated_image_url)

Credits (idempotent per order):
    grant = services.ledger.add_credits(profile.id, 10, "order_abc")
    print(grant.balance, grant.already_processed)

HTTP API:
    uvicorn api.main:app
"""

from visionboard.config import Settings, get_limits, get_rate_limits
from visionboard.errors import (
    VisionBoardError,
    AuthorizationError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    QuotaExceededError,
    ExternalServiceError,
)
from visionboard.models import (
    Profile,
    VisionBoard,
    Goal,
    GoalStatus,
    GoalPosition,
    CreditReservation,
    ReservationStatus,
)
from visionboard.auth import SessionVerifier
from visionboard.identity import Identity, IdentityService, resolve_identity
from visionboard.ledger import CreditLedger, CreditGrant, UserLimits
from visionboard.rate_limiter import RateLimiterRegistry, RateLimitError
from visionboard.storage import SQLiteStorage
from visionboard.services import Services, build_services


__version__ = "0.1.0"
__all__ = [
    # Config
    "Settings",
    "get_limits",
    "get_rate_limits",
    # Errors
    "VisionBoardError",
    "AuthorizationError",
    "ForbiddenError",
    "NotFoundError",
    "ValidationError",
    "QuotaExceededError",
    "ExternalServiceError",
    "RateLimitError",
    # Models
    "Profile",
    "VisionBoard",
    "Goal",
    "GoalStatus",
    "GoalPosition",
    "CreditReservation",
    "ReservationStatus",
    # Services
    "Identity",
    "IdentityService",
    "resolve_identity",
    "SessionVerifier",
    "CreditLedger",
    "CreditGrant",
    "UserLimits",
    "RateLimiterRegistry",
    "SQLiteStorage",
    "Services",
    "build_services",
]
