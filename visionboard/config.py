"""Global configuration for Vision Board."""

from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Any, List, Optional


DEFAULT_LIMITS: Dict[str, int] = {
    "free_max_boards": 1,
    "paid_max_boards": 999,
    "free_max_photos": 3,
    "max_goals_per_board": 4,
    "paid_credits_per_purchase": 10,
    "credit_cost_per_image": 1,
    "max_title_length": 200,
}

# operation class -> tier -> (requests, window seconds)
DEFAULT_RATE_LIMITS: Dict[str, Dict[str, Dict[str, int]]] = {
    "general": {
        "free": {"requests": 20, "window": 60},
        "paid": {"requests": 60, "window": 60},
    },
    "image-gen": {
        "free": {"requests": 10, "window": 3600},
        "paid": {"requests": 100, "window": 3600},
    },
    "bg-removal": {
        "free": {"requests": 3, "window": 3600},
        "paid": {"requests": 20, "window": 3600},
    },
    "upload": {
        "free": {"requests": 5, "window": 3600},
        "paid": {"requests": 30, "window": 3600},
    },
    "goals": {
        "free": {"requests": 30, "window": 3600},
        "paid": {"requests": 200, "window": 3600},
    },
}

DEV_RATE_LIMITS: Dict[str, Dict[str, Dict[str, int]]] = {
    "general": {
        "free": {"requests": 100, "window": 60},
        "paid": {"requests": 200, "window": 60},
    },
    "image-gen": {
        "free": {"requests": 100, "window": 3600},
        "paid": {"requests": 500, "window": 3600},
    },
    "bg-removal": {
        "free": {"requests": 50, "window": 3600},
        "paid": {"requests": 100, "window": 3600},
    },
    "upload": {
        "free": {"requests": 50, "window": 3600},
        "paid": {"requests": 100, "window": 3600},
    },
    "goals": {
        "free": {"requests": 200, "window": 3600},
        "paid": {"requests": 500, "window": 3600},
    },
}

STUCK_GOAL_TIMEOUT = timedelta(minutes=3)
PURCHASE_AMOUNT_CENTS = 500
RATE_LIMIT_PREFIX = "visionboard"


def _parse_json_env(var_name: str) -> Dict[str, Any] | None:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _env_flag(var_name: str) -> bool:
    return os.getenv(var_name, "").strip().lower() in ("1", "true", "yes", "on")


def _env_list(var_name: str) -> List[str]:
    return [item.strip() for item in os.getenv(var_name, "").split(",") if item.strip()]


def get_limits() -> Dict[str, int]:
    """Return quota limits, with optional env override of individual keys."""
    limits = copy.deepcopy(DEFAULT_LIMITS)
    parsed = _parse_json_env("VISIONBOARD_LIMITS_JSON")
    if parsed:
        for key, value in parsed.items():
            if key in limits and isinstance(value, int):
                limits[key] = value
    return limits


def get_rate_limits(dev_mode: bool = False) -> Dict[str, Dict[str, Dict[str, int]]]:
    """Return the rate limit table, with optional env override."""
    parsed = _parse_json_env("VISIONBOARD_RATE_LIMITS_JSON")
    if parsed:
        return parsed
    return copy.deepcopy(DEV_RATE_LIMITS if dev_mode else DEFAULT_RATE_LIMITS)


@dataclass
class Settings:
    """Runtime settings for the service."""
    db_path: str = "visionboard.db"
    blob_dir: str = "static/blobs"
    public_url: str = "http://localhost:8000/static/blobs"
    app_url: str = "http://localhost:3000"
    dev_mode: bool = False
    mock_fal: bool = False
    fal_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    polar_access_token: Optional[str] = None
    polar_webhook_secret: Optional[str] = None
    polar_product_id: Optional[str] = None
    polar_server: str = "production"
    clerk_jwks_url: Optional[str] = None
    clerk_issuer: Optional[str] = None
    clerk_authorized_parties: List[str] = field(default_factory=list)
    redis_url: Optional[str] = None
    limits: Dict[str, int] = field(default_factory=get_limits)
    rate_limits: Dict[str, Dict[str, Dict[str, int]]] = field(
        default_factory=get_rate_limits
    )

    @property
    def polar_api_base(self) -> str:
        if self.polar_server == "sandbox":
            return "https://sandbox-api.polar.sh/v1"
        return "https://api.polar.sh/v1"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        dev_mode = _env_flag("VISIONBOARD_DEV_MODE")
        return cls(
            db_path=os.getenv("VISIONBOARD_DB_PATH", "visionboard.db"),
            blob_dir=os.getenv("VISIONBOARD_BLOB_DIR", "static/blobs"),
            public_url=os.getenv(
                "VISIONBOARD_PUBLIC_URL", "http://localhost:8000/static/blobs"
            ),
            app_url=(
                os.getenv("VISIONBOARD_APP_URL")
                or os.getenv("NEXT_PUBLIC_APP_URL")
                or "http://localhost:3000"
            ),
            dev_mode=dev_mode,
            mock_fal=_env_flag("DEV_MOCK_FAL"),
            fal_key=os.getenv("FAL_KEY"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            polar_access_token=os.getenv("POLAR_ACCESS_TOKEN"),
            polar_webhook_secret=os.getenv("POLAR_WEBHOOK_SECRET"),
            polar_product_id=os.getenv("POLAR_PRODUCT_ID"),
            polar_server=os.getenv("POLAR_SERVER", "production"),
            clerk_jwks_url=os.getenv("CLERK_JWKS_URL"),
            clerk_issuer=os.getenv("CLERK_ISSUER"),
            clerk_authorized_parties=_env_list("CLERK_AUTHORIZED_PARTIES"),
            redis_url=os.getenv("VISIONBOARD_REDIS_URL") or os.getenv("REDIS_URL"),
            limits=get_limits(),
            rate_limits=get_rate_limits(dev_mode=dev_mode or _env_flag("DEV_MOCK_FAL")),
        )
