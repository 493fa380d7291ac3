"""Wiring of storage, ledger, limiter and providers into one container."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import redis

from visionboard.auth import SessionVerifier
from visionboard.boards import BoardService
from visionboard.config import Settings
from visionboard.goals import GoalService
from visionboard.identity import IdentityService
from visionboard.ledger import CreditLedger
from visionboard.metrics import MetricsCollector
from visionboard.providers import (
    BlobStore,
    FalImageProvider,
    ImageProvider,
    LocalBlobStore,
    MockImageProvider,
    OpenAIPhraseProvider,
    PhraseProvider,
    PolarClient,
)
from visionboard.rate_limiter import RateLimiterRegistry
from visionboard.storage import SQLiteStorage


@dataclass
class Services:
    """Everything a request handler needs, created once per process."""
    settings: Settings
    storage: SQLiteStorage
    metrics: MetricsCollector
    rate_limits: RateLimiterRegistry
    identities: IdentityService
    ledger: CreditLedger
    boards: BoardService
    goals: GoalService
    images: ImageProvider
    phrases: PhraseProvider
    blob_store: BlobStore
    polar: PolarClient
    sessions: SessionVerifier

    def close(self) -> None:
        self.storage.close()


def build_services(
    settings: Settings,
    images: Optional[ImageProvider] = None,
    phrases: Optional[PhraseProvider] = None,
    blob_store: Optional[BlobStore] = None,
    polar: Optional[PolarClient] = None,
    metrics: Optional[MetricsCollector] = None,
    metrics_file: Optional[Path] = None,
    sessions: Optional[SessionVerifier] = None,
    redis_client: Optional[redis.Redis] = None,
) -> Services:
    """
    Build the service graph from settings.

    Providers can be swapped out (tests pass fakes); otherwise they are
    built from the configured credentials. Rate limits live in Redis when
    `redis_url` is set and in process memory otherwise.
    """
    storage = SQLiteStorage(db_path=settings.db_path)
    metrics = metrics or MetricsCollector(metrics_file=metrics_file)

    if images is None:
        images = MockImageProvider() if settings.mock_fal else FalImageProvider(settings.fal_key)
    phrases = phrases or OpenAIPhraseProvider(api_key=settings.openai_api_key)
    blob_store = blob_store or LocalBlobStore(settings.blob_dir, settings.public_url)
    polar = polar or PolarClient(settings.polar_access_token, base_url=settings.polar_api_base)
    sessions = sessions or SessionVerifier(
        settings.clerk_jwks_url,
        issuer=settings.clerk_issuer,
        authorized_parties=settings.clerk_authorized_parties,
    )
    if redis_client is None and settings.redis_url:
        redis_client = redis.Redis.from_url(settings.redis_url)

    identities = IdentityService(storage)
    ledger = CreditLedger(storage, limits=settings.limits, metrics=metrics)
    boards = BoardService(storage, identities, ledger)
    goals = GoalService(
        storage,
        boards,
        ledger,
        images=images,
        phrases=phrases,
        blob_store=blob_store,
        metrics=metrics,
        limits=settings.limits,
    )

    return Services(
        settings=settings,
        storage=storage,
        metrics=metrics,
        rate_limits=RateLimiterRegistry(settings.rate_limits, redis_client=redis_client),
        identities=identities,
        ledger=ledger,
        boards=boards,
        goals=goals,
        images=images,
        phrases=phrases,
        blob_store=blob_store,
        polar=polar,
        sessions=sessions,
    )
