"""FastAPI server for Vision Board."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
import logging
import os
import uuid

from fastapi import FastAPI, HTTPException, Header, Depends, Request, Query, UploadFile, File
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from visionboard import __version__
from visionboard.auth import bearer_token
from visionboard.boards import BoardWithGoals
from visionboard.config import Settings
from visionboard.errors import AuthorizationError, ForbiddenError, ValidationError, VisionBoardError
from visionboard.identity import Identity, resolve_identity
from visionboard.models import Goal, GoalPosition, VisionBoard
from visionboard.providers import persist_remote
from visionboard.rate_limiter import RateLimitError, RateLimitResult, tier_for
from visionboard.services import Services, build_services
from visionboard.webhooks import parse_order_paid, verify

logger = logging.getLogger("visionboard.api")

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


# =============================================================================
# Serialization
# =============================================================================


def _iso(value: datetime) -> str:
    return value.isoformat()


def _goal_json(goal: Goal) -> Dict[str, Any]:
    return {
        "id": goal.id,
        "boardId": goal.board_id,
        "title": goal.title,
        "generatedImageUrl": goal.generated_image_url,
        "phrase": goal.phrase,
        "status": goal.status.value,
        "positionX": goal.position_x,
        "positionY": goal.position_y,
        "width": goal.width,
        "height": goal.height,
        "createdAt": _iso(goal.created_at),
    }


def _board_json(board: VisionBoard, goals: Optional[List[Goal]] = None) -> Dict[str, Any]:
    body = {
        "id": board.id,
        "profileId": board.profile_id,
        "name": board.name,
        "userPhotoUrl": board.user_photo_url,
        "userPhotoNoBgUrl": board.user_photo_no_bg_url,
        "createdAt": _iso(board.created_at),
    }
    if goals is not None:
        body["goals"] = [_goal_json(g) for g in goals]
    return body


def _board_with_goals_json(item: BoardWithGoals) -> Dict[str, Any]:
    return _board_json(item.board, item.goals)


# =============================================================================
# Dependencies
# =============================================================================


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_identity(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_visitor_id: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> Identity:
    """Signed-in user from a verified session token, plus the visitor fingerprint."""
    token = bearer_token(authorization) or request.cookies.get("__session")
    user_id = services.sessions.verify(token) if token else None
    return resolve_identity(user_id, x_visitor_id)


def rate_limited(operation_class: str):
    """Dependency factory: reject with 429 before the handler runs."""

    def _check(
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> RateLimitResult:
        profile = services.identities.get_profile(identity)
        is_paid = services.ledger.get_limits(profile).is_paid
        result = services.rate_limits.check_rate_limit(identity.key, operation_class, is_paid)
        if not result.success:
            services.metrics.record_rate_limited(operation_class, identity.key, tier_for(is_paid))
            raise RateLimitError(operation_class, remaining=result.remaining, reset=result.reset)
        return result

    return _check


# =============================================================================
# Request models
# =============================================================================


class CreateBoardRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=100)


class RenameBoardRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CreateGoalRequest(BaseModel):
    boardId: str = Field(..., min_length=1)
    title: str = ""


class PositionUpdate(BaseModel):
    id: str
    positionX: int
    positionY: int
    width: int = Field(..., ge=1)
    height: int = Field(..., ge=1)


class SaveLayoutRequest(BaseModel):
    positions: List[PositionUpdate]


class GenerateImageRequest(BaseModel):
    goalId: str = Field(..., min_length=1)
    userImageUrl: Optional[str] = None


class GeneratePhraseRequest(BaseModel):
    goalId: str = Field(..., min_length=1)


class ImageUrlRequest(BaseModel):
    imageUrl: str = Field(..., min_length=1)


# =============================================================================
# App
# =============================================================================


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Pass `services` to reuse an existing service graph (tests do); otherwise
    one is built from `settings` (or the environment) at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "services", None) is None:
            owned = build_services(settings or Settings.from_env())
            app.state.services = owned
        try:
            yield
        finally:
            if owned is not None:
                owned.close()
                app.state.services = None

    app = FastAPI(title="Vision Board API", version=__version__, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    blob_dir = (services.settings if services else (settings or Settings.from_env())).blob_dir
    os.makedirs(blob_dir, exist_ok=True)
    app.mount("/static/blobs", StaticFiles(directory=blob_dir), name="blobs")

    @app.exception_handler(VisionBoardError)
    async def _service_error(request: Request, exc: VisionBoardError) -> JSONResponse:
        headers = {}
        if isinstance(exc, RateLimitError):
            headers["X-RateLimit-Remaining"] = str(exc.remaining)
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    _register_routes(app)
    return app


def _handle_webhook(services: Services, secret: str, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
    payload = verify(secret, headers, body)

    order = parse_order_paid(payload)
    if order is None:
        return {"received": True}
    if not order.external_user_id:
        logger.error("No external user ID in order: %s", order.order_id)
        return {"received": True}

    credits = services.settings.limits["paid_credits_per_purchase"]
    profile = services.identities.get_or_create_profile(Identity(user_id=order.external_user_id))
    grant = services.ledger.add_credits(profile.id, credits, order.idempotency_key, order.customer_id)
    if not grant.already_processed:
        logger.info("Added %d credits to user %s", credits, order.external_user_id)
    return {"received": True, "alreadyProcessed": grant.already_processed}


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    # -------------------------------------------------------------------------
    # Boards
    # -------------------------------------------------------------------------

    @app.get("/boards")
    def list_boards(
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        listing = services.boards.list_boards(identity)
        profile = listing.profile
        return {
            "boards": [_board_with_goals_json(b) for b in listing.boards],
            "profile": (
                {
                    "id": profile.id,
                    "avatarOriginalUrl": profile.avatar_original_url,
                    "avatarNoBgUrl": profile.avatar_no_bg_url,
                }
                if profile
                else None
            ),
            "limits": listing.limits.to_dict(),
            "usage": {"boards": listing.board_count, "photos": listing.photo_count},
            "isAuthenticated": listing.is_authenticated,
            "isPaid": listing.limits.is_paid,
            "credits": listing.limits.credits,
        }

    @app.post("/boards")
    def create_board(
        req: CreateBoardRequest,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
        _limit: RateLimitResult = Depends(rate_limited("general")),
    ) -> Dict[str, Any]:
        board = services.boards.create_board(identity, name=req.name)
        return {
            "boardId": board.id,
            "profileId": board.profile_id,
            "name": board.name,
            "avatarOriginalUrl": board.user_photo_url,
            "avatarNoBgUrl": board.user_photo_no_bg_url,
        }

    @app.get("/boards/{board_id}")
    def get_board(board_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
        return _board_with_goals_json(services.boards.get_board(board_id))

    @app.patch("/boards/{board_id}")
    def rename_board(
        board_id: str,
        req: RenameBoardRequest,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return _board_json(services.boards.rename_board(identity, board_id, req.name))

    @app.delete("/boards")
    def delete_board(
        id: Optional[str] = Query(default=None),
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        if not id:
            raise ValidationError("Missing board ID")
        services.boards.delete_board(identity, id)
        return {"success": True}

    # -------------------------------------------------------------------------
    # Goals
    # -------------------------------------------------------------------------

    @app.get("/goals")
    def list_goals(
        boardId: Optional[str] = Query(default=None),
        services: Services = Depends(get_services),
    ) -> List[Dict[str, Any]]:
        if not boardId:
            raise ValidationError("Missing board ID")
        return [_goal_json(g) for g in services.goals.list_goals(boardId)]

    @app.post("/goals")
    def create_goal(
        req: CreateGoalRequest,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
        _limit: RateLimitResult = Depends(rate_limited("goals")),
    ) -> Dict[str, Any]:
        goal = services.goals.create_goal(identity, req.boardId, req.title)
        return _goal_json(goal)

    @app.delete("/goals")
    def delete_goal(
        id: Optional[str] = Query(default=None),
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
        _limit: RateLimitResult = Depends(rate_limited("goals")),
    ) -> Dict[str, Any]:
        if not id:
            raise ValidationError("Missing goal ID")
        services.goals.delete_goal(identity, id)
        return {"success": True}

    @app.post("/goals/layout")
    def save_layout(
        req: SaveLayoutRequest,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        updated = services.goals.save_layout(
            identity,
            [
                GoalPosition(
                    id=p.id,
                    position_x=p.positionX,
                    position_y=p.positionY,
                    width=p.width,
                    height=p.height,
                )
                for p in req.positions
            ],
        )
        return {"success": True, "updated": updated}

    @app.post("/generate-image")
    def generate_image(
        req: GenerateImageRequest,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
        limit: RateLimitResult = Depends(rate_limited("image-gen")),
    ) -> Dict[str, Any]:
        goal = services.goals.generate(identity, req.goalId, user_image_url=req.userImageUrl)
        profile = services.identities.get_profile(identity)
        return {
            "goalId": goal.id,
            "imageUrl": goal.generated_image_url,
            "phrase": goal.phrase,
            "status": goal.status.value,
            "remaining": limit.remaining,
            "credits": services.ledger.get_balance(profile.id) if profile else 0,
        }

    @app.post("/generate-phrase")
    def generate_phrase(
        req: GeneratePhraseRequest,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
        _limit: RateLimitResult = Depends(rate_limited("general")),
    ) -> Dict[str, Any]:
        goal = services.goals.generate_phrase(identity, req.goalId)
        return {"goalId": goal.id, "phrase": goal.phrase}

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    @app.post("/upload")
    def upload(
        file: UploadFile = File(...),
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
        _limit: RateLimitResult = Depends(rate_limited("upload")),
    ) -> Dict[str, Any]:
        data = file.file.read(MAX_UPLOAD_BYTES + 1)
        if not data:
            raise ValidationError("No file provided")
        if len(data) > MAX_UPLOAD_BYTES:
            raise ValidationError("File too large")
        owner = identity.user_id or identity.visitor_id
        name = f"{owner}/{uuid.uuid4()}-{file.filename or 'upload'}"
        url = services.blob_store.put(name, data, file.content_type)
        return {"url": url}

    @app.post("/remove-background")
    def remove_background(
        req: ImageUrlRequest,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
        _limit: RateLimitResult = Depends(rate_limited("bg-removal")),
    ) -> Dict[str, Any]:
        no_bg_remote = services.images.remove_background(req.imageUrl)
        no_bg_url = persist_remote(
            services.blob_store,
            no_bg_remote,
            f"no-bg-{int(datetime.now(timezone.utc).timestamp() * 1000)}.png",
        )
        board = services.boards.create_board(identity, photo_url=req.imageUrl, photo_no_bg_url=no_bg_url)
        return {"boardId": board.id, "originalUrl": req.imageUrl, "noBgUrl": no_bg_url}

    @app.post("/update-avatar")
    def update_avatar(
        req: ImageUrlRequest,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
        _limit: RateLimitResult = Depends(rate_limited("bg-removal")),
    ) -> Dict[str, Any]:
        profile = services.identities.get_or_create_profile(identity)
        pixelated = services.images.pixelate(req.imageUrl)
        no_bg_remote = services.images.remove_background(pixelated)
        no_bg_url = persist_remote(
            services.blob_store,
            no_bg_remote,
            f"{profile.id}/avatar-{int(datetime.now(timezone.utc).timestamp() * 1000)}.png",
        )
        services.identities.update_avatar(profile.id, req.imageUrl, no_bg_url)
        return {"profileId": profile.id, "originalUrl": req.imageUrl, "noBgUrl": no_bg_url}

    # -------------------------------------------------------------------------
    # Credits and payments
    # -------------------------------------------------------------------------

    @app.get("/credits")
    def get_credits(
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        profile = services.identities.get_profile(identity)
        limits = services.ledger.get_limits(profile)
        return {
            "credits": limits.credits,
            "isPaid": limits.is_paid,
            "maxPhotos": limits.max_photos,
            "maxBoards": limits.max_boards,
            "freeImagesUsed": profile.free_images_used if profile else 0,
        }

    @app.get("/credits/poll")
    def poll_credits(
        since: datetime = Query(...),
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        profile = services.identities.get_profile(identity)
        if profile is None:
            return {"hasPurchase": False, "credits": 0, "isPaid": False}
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        status = services.ledger.has_purchase_since(profile.id, since)
        return {"hasPurchase": status.has_purchase, "credits": status.balance, "isPaid": status.balance > 0}

    @app.get("/polar/checkout")
    def checkout(
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> RedirectResponse:
        if not identity.is_authenticated:
            raise AuthorizationError("Not authenticated")
        product_id = services.settings.polar_product_id
        if not product_id:
            raise HTTPException(status_code=503, detail="Checkout is not configured")
        url = services.polar.create_checkout(
            product_id,
            success_url=f"{services.settings.app_url}/?checkout_id={{CHECKOUT_ID}}",
            external_customer_id=identity.user_id,
        )
        return RedirectResponse(url, status_code=303)

    @app.post("/polar/webhook")
    async def polar_webhook(request: Request, services: Services = Depends(get_services)) -> Dict[str, Any]:
        secret = services.settings.polar_webhook_secret
        if not secret:
            raise HTTPException(status_code=503, detail="Webhook is not configured")
        body = await request.body()
        return await run_in_threadpool(_handle_webhook, services, secret, dict(request.headers), body)

    @app.get("/polar/verify")
    def verify_checkout(
        checkout_id: Optional[str] = Query(default=None),
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        if not checkout_id:
            raise ValidationError("Missing checkout_id")
        if not identity.is_authenticated:
            raise AuthorizationError("Not authenticated")

        checkout = services.polar.get_checkout(checkout_id)
        if checkout.get("status") != "succeeded":
            return {"verified": False, "status": checkout.get("status"), "credits": 0, "isPaid": False}

        external_id = checkout.get("customer_external_id") or checkout.get("external_customer_id")
        if external_id != identity.user_id:
            raise ForbiddenError("Checkout does not belong to this user")

        profile = services.identities.get_or_create_profile(Identity(user_id=identity.user_id))
        services.ledger.add_credits(
            profile.id,
            services.settings.limits["paid_credits_per_purchase"],
            checkout_id,
            checkout.get("customer_id"),
        )
        limits = services.ledger.get_limits(profile)
        return {
            "verified": True,
            "credits": limits.credits,
            "isPaid": limits.is_paid,
            "maxPhotos": limits.max_photos,
            "maxBoards": limits.max_boards,
        }

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    @app.post("/auth/migrate-boards")
    def migrate_boards(
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        if not identity.user_id:
            raise AuthorizationError("Must be authenticated to migrate boards")
        if not identity.visitor_id:
            raise ValidationError("Missing visitor ID for migration")
        migrated = services.identities.migrate_boards(identity.visitor_id, identity.user_id)
        return {"success": True, "migratedCount": migrated}


app = create_app()
