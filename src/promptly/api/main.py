"""Promptly Printed - FastAPI Application.

This module defines the application factory, every REST route and the
``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Services** (:mod:`promptly.core`) are built once per application in the
  ``lifespan`` context and stored on ``app.state``.  Route handlers only
  translate between HTTP and service calls.
- **Errors** raised by services are :class:`~promptly.core.errors.PromptlyError`
  subclasses; a single exception handler turns them into
  ``{"detail": ...}`` responses with the class's status code.
- **Identity** comes from the ``X-User-ID`` header set by the auth proxy in
  front of this service.  Requests without it get 401.
- Handlers are plain ``def`` functions so the blocking SQLite and httpx
  calls run in FastAPI's threadpool.  The Square webhook is the exception:
  it must read the raw body to check the signature.

Endpoints
---------
======  ====================================================  ====================================
Method  Path                                                  Purpose
======  ====================================================  ====================================
GET     ``/api/health``                                       Liveness and version
POST    ``/api/competitions``                                 Create a competition (admin seed)
GET     ``/api/competitions/active``                          Latest open competition
GET     ``/api/competitions/{id}``                            Competition details
POST    ``/api/competitions/{id}/submit``                     Enter a design
GET     ``/api/competitions/{id}/leaderboard``                Ranked entries
POST    ``/api/competitions/entries/{id}/like``               Toggle a like
POST    ``/api/competitions/entries/{id}/vote``               Toggle a vote
POST    ``/api/competition/verify-purchase``                  Link an order to an entry
POST    ``/api/competition/complete-referral``                Pay the referrer of an order
POST    ``/api/competition/verify-social-follow``             Claim a social follow
GET     ``/api/competition/verify-social-follow``             Follow claim status
GET     ``/api/admin/competition/pending-social-follows``     Claims awaiting review
POST    ``/api/admin/competition/approve-social-follow``      Approve or reject a claim
POST    ``/api/designs``                                      Save a design and award points
GET     ``/api/points``                                       Points, level and rank
GET     ``/api/points/history``                               Recent point movements
GET     ``/api/credits``                                      Credit balance and stats
POST    ``/api/credits/deduct``                               Charge a generation
POST    ``/api/credits/grant-tshirt-bonus``                   T-shirt purchase bonus
GET     ``/api/credits/guest/{session_id}``                   Guest allowance
POST    ``/api/generations/authorize``                        Pre-check credits or guest allowance
POST    ``/api/generations``                                  Charge and record a generation
GET     ``/api/credit-packs``                                 Packs on sale
POST    ``/api/checkout/credits``                             Square checkout for a pack
GET     ``/api/orders/{id}/actions``                          Prodigi action availability
POST    ``/api/orders/{id}/cancel``                           Cancel and refund
POST    ``/api/orders/{id}/update-address``                   Change recipient details
POST    ``/api/orders/{id}/update-shipping``                  Downgrade shipping and refund
POST    ``/api/orders/{id}/metadata``                         Push metadata to Prodigi
PATCH   ``/api/admin/orders/{id}/status``                     Override local status
POST    ``/api/orders/lookup``                                Guest order lookup
POST    ``/api/webhooks/prodigi``                             Prodigi CloudEvents callback
POST    ``/api/webhooks/square/credits``                      Square payment callback
POST    ``/api/print-image``                                  300 DPI print-ready PNG
======  ====================================================  ====================================

Usage
-----
CLI (installed entry point)::

    promptly

Direct invocation::

    python -m promptly.api.main
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any

import httpx
from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from promptly import __version__
from promptly.api.models import (
    AddressRequest,
    CompetitionCreateRequest,
    CompleteReferralRequest,
    CreditCheckoutRequest,
    DeductCreditsRequest,
    DesignCreateRequest,
    GenerationAuthorizeRequest,
    GenerationRecordRequest,
    MetadataRequest,
    OrderLookupRequest,
    PrintImageRequest,
    SocialFollowRequest,
    SocialFollowReviewRequest,
    StatusUpdateRequest,
    SubmitEntryRequest,
    TshirtBonusRequest,
    UpdateShippingRequest,
    VerifyPurchaseRequest,
)
from promptly.core.competitions import CompetitionService
from promptly.core.config import PromptlyConfig, config
from promptly.core.credit_purchases import CreditPurchaseService
from promptly.core.credits import CreditLedger, credit_cost
from promptly.core.database import Database, to_iso, utcnow
from promptly.core.errors import (
    ActionUnavailableError,
    GuestLimitError,
    InsufficientCreditsError,
    OrderNotSubmittedError,
    PermissionDeniedError,
    PromptlyError,
    ValidationError,
)
from promptly.core.gamification import (
    calculate_tier,
    check_achievements,
    held_achievements,
    load_user_stats,
    tier_benefits,
)
from promptly.core.orders import Address, Order, OrderActionService
from promptly.core.points import PointsLedger
from promptly.core.print_image import generate_print_ready
from promptly.core.rewards import RewardsService
from promptly.integrations.prodigi import ProdigiClient
from promptly.integrations.square import SquareClient, verify_signature

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application factory and lifecycle.
# ---------------------------------------------------------------------------


def create_app(
    settings: PromptlyConfig | None = None,
    *,
    prodigi_transport: httpx.BaseTransport | None = None,
    square_transport: httpx.BaseTransport | None = None,
    now: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Configuration; the global :data:`config` when omitted.
        prodigi_transport: httpx transport for the Prodigi client (tests).
        square_transport: httpx transport for the Square client (tests).
        now: Clock shared by every service.

    Returns:
        A configured application.  Services exist once its lifespan starts.
    """
    settings = settings or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # --- Startup -------------------------------------------------------
        db = Database(settings.database_path)
        ledger = PointsLedger(db, settings.points_per_level, now=now)
        prodigi = ProdigiClient(
            settings.prodigi_api_key,
            settings.prodigi_api_url,
            timeout=settings.prodigi_timeout,
            callback_url=settings.prodigi_callback_url,
            transport=prodigi_transport,
        )
        square = SquareClient(
            settings.square_access_token,
            settings.square_api_url,
            square_version=settings.square_version,
            timeout=settings.square_timeout,
            transport=square_transport,
        )

        credits = CreditLedger(
            db,
            monthly_credits=settings.monthly_credits,
            welcome_credits=settings.welcome_credits,
            tshirt_purchase_bonus=settings.tshirt_purchase_bonus,
            guest_daily_limit=settings.guest_daily_limit,
            now=now,
        )
        purchases = CreditPurchaseService(
            db,
            credits,
            square,
            location_id=settings.square_location_id,
            public_base_url=settings.public_base_url,
            now=now,
        )
        purchases.seed_default_packs()

        app.state.settings = settings
        app.state.db = db
        app.state.points = ledger
        app.state.competitions = CompetitionService(db, ledger, now=now)
        app.state.rewards = RewardsService(db, ledger, now=now)
        app.state.credits = credits
        app.state.purchases = purchases
        app.state.orders = OrderActionService(
            db,
            prodigi,
            square,
            currency=settings.currency,
            action_cache_ttl=timedelta(seconds=settings.action_cache_ttl_seconds),
            now=now,
        )
        logger.info(f"Services initialised (database {settings.database_path})")

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        prodigi.close()
        square.close()
        logger.info("HTTP clients closed on shutdown.")

    app = FastAPI(
        title="Promptly Printed",
        description="Competitions, credits and Prodigi order management API.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PromptlyError, _domain_error_handler)
    app.include_router(router)
    return app


async def _domain_error_handler(request: Request, exc: PromptlyError) -> JSONResponse:
    """Map a service exception to ``{"detail": ...}`` plus any context."""
    body: dict[str, Any] = {"detail": exc.message}
    if isinstance(exc, ActionUnavailableError):
        body["action"] = exc.action
    elif isinstance(exc, OrderNotSubmittedError):
        body["actions"] = exc.actions
    elif isinstance(exc, InsufficientCreditsError):
        body["balance"] = exc.balance
        body["required"] = exc.required
    elif isinstance(exc, GuestLimitError):
        body["resets_at"] = to_iso(exc.resets_at) if exc.resets_at else None

    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=body)


# ---------------------------------------------------------------------------
# Dependencies.
# ---------------------------------------------------------------------------


def current_user(x_user_id: str | None = Header(default=None)) -> str:
    """Return the caller's user id from the ``X-User-ID`` header."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


def optional_user(x_user_id: str | None = Header(default=None)) -> str | None:
    """Return the caller's user id, or ``None`` for anonymous guests."""
    if not x_user_id or not x_user_id.strip():
        return None
    return x_user_id.strip()


def competitions_service(request: Request) -> CompetitionService:
    return request.app.state.competitions


def rewards_service(request: Request) -> RewardsService:
    return request.app.state.rewards


def points_ledger(request: Request) -> PointsLedger:
    return request.app.state.points


def credit_ledger(request: Request) -> CreditLedger:
    return request.app.state.credits


def purchase_service(request: Request) -> CreditPurchaseService:
    return request.app.state.purchases


def order_service(request: Request) -> OrderActionService:
    return request.app.state.orders


def _owned_order(orders: OrderActionService, order_id: int, user_id: str) -> Order:
    order = orders.get_order(order_id)
    if order.user_id != user_id:
        logger.warning(f"User {user_id} attempted to act on order {order_id}")
        raise PermissionDeniedError("You do not have access to this order")
    return order


router = APIRouter()


# ---------------------------------------------------------------------------
# Health.
# ---------------------------------------------------------------------------


@router.get("/api/health")
def health() -> dict:
    return {"status": "ok", "version": __version__}


# ---------------------------------------------------------------------------
# Competitions.
# ---------------------------------------------------------------------------


@router.post("/api/competitions", status_code=201)
def create_competition(
    req: CompetitionCreateRequest,
    user_id: str = Depends(current_user),
    competitions: CompetitionService = Depends(competitions_service),
) -> dict:
    """Create a competition.  Intended for admin tooling and seeding."""
    competition = competitions.create_competition(
        req.theme,
        req.start_date,
        req.end_date,
        theme_icon=req.theme_icon,
        prize=req.prize,
        funnel_tag=req.funnel_tag,
        is_active=req.is_active,
        competition_id=req.id,
    )
    logger.info(f"Competition {competition.id} created by {user_id}")
    return competition.to_dict()


@router.get("/api/competitions/active")
def get_active_competition(
    funnel_tag: str | None = Query(default=None),
    competitions: CompetitionService = Depends(competitions_service),
) -> dict:
    competition = competitions.active_competition(funnel_tag)
    return {"competition": competition.to_dict() if competition else None}


@router.get("/api/competitions/{competition_id}")
def get_competition(
    competition_id: str,
    competitions: CompetitionService = Depends(competitions_service),
) -> dict:
    competition = competitions.get_competition(competition_id)
    entries = competitions.list_entries(competition_id)
    return {**competition.to_dict(), "entry_count": len(entries)}


@router.post("/api/competitions/{competition_id}/submit", status_code=201)
def submit_entry(
    competition_id: str,
    req: SubmitEntryRequest,
    user_id: str = Depends(current_user),
    competitions: CompetitionService = Depends(competitions_service),
) -> dict:
    """Enter one of the caller's designs into a competition.

    Returns:
        The new entry and the caller's balance after the entry award.
    """
    entry = competitions.submit_entry(competition_id, user_id, req.design_id)
    points = competitions.ledger.get(user_id)
    return {
        "success": True,
        "entry": asdict(entry),
        "points": points.points,
        "level": points.level,
    }


@router.get("/api/competitions/{competition_id}/leaderboard")
def get_leaderboard(
    request: Request,
    competition_id: str,
    limit: int | None = Query(default=None, ge=1),
    competitions: CompetitionService = Depends(competitions_service),
) -> dict:
    """Return the ranked leaderboard.

    ``limit`` defaults to ``leaderboard_default_limit`` and is capped at
    ``leaderboard_max_limit``.
    """
    settings: PromptlyConfig = request.app.state.settings
    limit = min(limit or settings.leaderboard_default_limit, settings.leaderboard_max_limit)
    rows = competitions.leaderboard(competition_id, limit)
    return {"competition_id": competition_id, "leaderboard": [asdict(row) for row in rows]}


@router.post("/api/competitions/entries/{entry_id}/like")
def toggle_like(
    entry_id: str,
    user_id: str = Depends(current_user),
    competitions: CompetitionService = Depends(competitions_service),
) -> dict:
    result = competitions.toggle_like(entry_id, user_id)
    return {"success": True, "liked": result.active, "like_count": result.count}


@router.post("/api/competitions/entries/{entry_id}/vote")
def toggle_vote(
    entry_id: str,
    user_id: str = Depends(current_user),
    competitions: CompetitionService = Depends(competitions_service),
) -> dict:
    result = competitions.toggle_vote(entry_id, user_id)
    return {"success": True, "voted": result.active, "vote_count": result.count}


@router.post("/api/competition/verify-purchase")
def verify_purchase(
    req: VerifyPurchaseRequest,
    user_id: str = Depends(current_user),
    competitions: CompetitionService = Depends(competitions_service),
) -> dict:
    entry = competitions.verify_purchase(
        user_id,
        req.order_id,
        design_id=req.design_id,
        competition_id=req.competition_id,
    )
    if entry is None:
        return {
            "verified": False,
            "message": "No competition entry found. Provide a design_id to enter one.",
        }
    return {"verified": True, "entry": asdict(entry), "referral_code": entry.referral_code}


@router.post("/api/competition/complete-referral")
def complete_referral(
    req: CompleteReferralRequest,
    user_id: str = Depends(current_user),
    rewards: RewardsService = Depends(rewards_service),
) -> dict:
    """Pay the owner of the referral code used on the caller's fulfilled order."""
    result = rewards.complete_referral(user_id, req.order_id, req.referral_code)
    return {"success": result.awarded, **asdict(result)}


@router.post("/api/competition/verify-social-follow", status_code=201)
def submit_social_follow(
    req: SocialFollowRequest,
    user_id: str = Depends(current_user),
    rewards: RewardsService = Depends(rewards_service),
) -> dict:
    claim = rewards.submit_social_follow(user_id, req.platform, req.username, req.screenshot_url)
    return {
        "success": True,
        "pending": True,
        "message": "Social follow submitted for verification",
        **asdict(claim),
    }


@router.get("/api/competition/verify-social-follow")
def social_follow_status(
    user_id: str = Depends(current_user),
    rewards: RewardsService = Depends(rewards_service),
) -> dict:
    return rewards.social_follow_status(user_id)


@router.get("/api/admin/competition/pending-social-follows")
def pending_social_follows(
    user_id: str = Depends(current_user),
    rewards: RewardsService = Depends(rewards_service),
) -> dict:
    pending = rewards.pending_social_follows()
    return {"pending": [asdict(claim) for claim in pending], "count": len(pending)}


@router.post("/api/admin/competition/approve-social-follow")
def review_social_follow(
    req: SocialFollowReviewRequest,
    user_id: str = Depends(current_user),
    rewards: RewardsService = Depends(rewards_service),
) -> dict:
    result = rewards.review_social_follow(req.verification_id, req.approved, req.notes)
    logger.info(f"Social follow claim {req.verification_id} reviewed by {user_id}")
    return {"success": True, **asdict(result)}


# ---------------------------------------------------------------------------
# Designs.
# ---------------------------------------------------------------------------


@router.post("/api/designs", status_code=201)
def create_design(
    req: DesignCreateRequest,
    user_id: str = Depends(current_user),
    rewards: RewardsService = Depends(rewards_service),
) -> dict:
    """Save a design; awards points, extends the streak and unlocks badges."""
    reward = rewards.record_design(
        user_id, req.name, req.image_url, campaign_id=req.campaign_id
    )
    return {"success": True, **asdict(reward)}


# ---------------------------------------------------------------------------
# Points.
# ---------------------------------------------------------------------------


@router.get("/api/points")
def get_points(
    request: Request,
    user_id: str = Depends(current_user),
    points: PointsLedger = Depends(points_ledger),
) -> dict:
    """Return the caller's points, level, rank and loyalty tier."""
    balance = points.get(user_id)
    stats = load_user_stats(request.app.state.db, user_id)
    tier = calculate_tier(stats)
    achievements = held_achievements(stats) + check_achievements(stats)
    return {
        "user_id": user_id,
        "points": balance.points,
        "level": balance.level,
        "rank": points.rank(user_id),
        "tier": tier,
        "tier_benefits": tier_benefits(tier),
        "streak_days": stats.streak_days,
        "badges": stats.badges,
        "achievements": [achievement.id for achievement in achievements],
    }


@router.get("/api/points/history")
def get_points_history(
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(current_user),
    points: PointsLedger = Depends(points_ledger),
) -> dict:
    return {"history": [asdict(item) for item in points.history(user_id, limit)]}


# ---------------------------------------------------------------------------
# Credits.
# ---------------------------------------------------------------------------


@router.get("/api/credits")
def get_credits(
    user_id: str = Depends(current_user),
    credits: CreditLedger = Depends(credit_ledger),
) -> dict:
    return credits.get_credit_stats(user_id)


@router.post("/api/credits/deduct")
def deduct_credits(
    req: DeductCreditsRequest,
    user_id: str = Depends(current_user),
    credits: CreditLedger = Depends(credit_ledger),
) -> dict:
    """Charge one generation.  Responds 402 when the balance is too low."""
    result = credits.deduct_credits(
        user_id,
        req.model,
        req.reason or f"Image generation with {req.model}",
        req.metadata,
    )
    if not result.success:
        raise InsufficientCreditsError(
            "Insufficient credits",
            balance=result.new_balance,
            required=credit_cost(req.model),
        )
    return asdict(result)


@router.post("/api/credits/grant-tshirt-bonus")
def grant_tshirt_bonus(
    req: TshirtBonusRequest,
    user_id: str = Depends(current_user),
    credits: CreditLedger = Depends(credit_ledger),
) -> dict:
    granted, balance = credits.grant_tshirt_bonus(user_id, req.order_id, req.tshirt_count)
    return {"success": True, "credits_granted": granted, "new_balance": balance}


@router.get("/api/credits/guest/{session_id}")
def guest_allowance(
    session_id: str,
    credits: CreditLedger = Depends(credit_ledger),
) -> dict:
    allowance = credits.check_guest_limit(session_id)
    return {
        "allowed": allowance.allowed,
        "remaining": allowance.remaining,
        "resets_at": to_iso(allowance.resets_at) if allowance.resets_at else None,
    }


# ---------------------------------------------------------------------------
# Generations.
# ---------------------------------------------------------------------------


@router.post("/api/generations/authorize")
def authorize_generation(
    req: GenerationAuthorizeRequest,
    user_id: str | None = Depends(optional_user),
    credits: CreditLedger = Depends(credit_ledger),
) -> dict:
    """Check a generation may start.  402 for users, 429 for guests over the limit."""
    quote = credits.authorize_generation(req.model, user_id=user_id, session_id=req.session_id)
    body = asdict(quote)
    body["resets_at"] = to_iso(quote.resets_at) if quote.resets_at else None
    return {"allowed": True, **body}


@router.post("/api/generations", status_code=201)
def record_generation(
    request: Request,
    req: GenerationRecordRequest,
    user_id: str | None = Depends(optional_user),
    credits: CreditLedger = Depends(credit_ledger),
) -> dict:
    """Charge a finished generation to the caller and record it.

    Signed-in users pay the model's credit cost; guests use one of their
    daily generations.  Failed generations are recorded free of charge.
    """
    receipt = credits.settle_generation(
        prompt=req.prompt,
        model_name=req.model,
        status=req.status,
        user_id=user_id,
        session_id=None if user_id else req.session_id,
        ip_address=request.client.host if request.client else None,
        image_url=req.image_url,
        print_ready_url=req.print_ready_url,
        error_message=req.error_message,
        generation_time_ms=req.generation_time_ms,
        metadata=req.metadata,
    )
    return asdict(receipt)


# ---------------------------------------------------------------------------
# Credit packs.
# ---------------------------------------------------------------------------


@router.get("/api/credit-packs")
def list_credit_packs(purchases: CreditPurchaseService = Depends(purchase_service)) -> dict:
    return {"packs": [pack.to_dict() for pack in purchases.list_packs()]}


@router.post("/api/checkout/credits")
def checkout_credits(
    req: CreditCheckoutRequest,
    user_id: str = Depends(current_user),
    purchases: CreditPurchaseService = Depends(purchase_service),
) -> dict:
    session = purchases.start_checkout(user_id, req.pack_id)
    return asdict(session)


# ---------------------------------------------------------------------------
# Orders.
# ---------------------------------------------------------------------------


@router.get("/api/orders/{order_id}/actions")
def get_order_actions(
    order_id: int,
    force_refresh: bool = Query(default=False),
    user_id: str = Depends(current_user),
    orders: OrderActionService = Depends(order_service),
) -> dict:
    _owned_order(orders, order_id, user_id)
    actions = orders.get_available_actions(order_id, force_refresh=force_refresh)
    return {"order_id": order_id, "actions": actions}


@router.post("/api/orders/{order_id}/cancel")
def cancel_order(
    order_id: int,
    user_id: str = Depends(current_user),
    orders: OrderActionService = Depends(order_service),
) -> dict:
    _owned_order(orders, order_id, user_id)
    return asdict(orders.cancel_order(order_id))


@router.post("/api/orders/{order_id}/update-address")
def update_address(
    order_id: int,
    req: AddressRequest,
    user_id: str = Depends(current_user),
    orders: OrderActionService = Depends(order_service),
) -> dict:
    _owned_order(orders, order_id, user_id)
    return asdict(orders.update_shipping_address(order_id, Address(**req.model_dump())))


@router.post("/api/orders/{order_id}/update-shipping")
def update_shipping(
    order_id: int,
    req: UpdateShippingRequest,
    user_id: str = Depends(current_user),
    orders: OrderActionService = Depends(order_service),
) -> dict:
    _owned_order(orders, order_id, user_id)
    return asdict(orders.downgrade_shipping(order_id, req.shipping_method))


@router.post("/api/orders/{order_id}/metadata")
def update_metadata(
    order_id: int,
    req: MetadataRequest,
    user_id: str = Depends(current_user),
    orders: OrderActionService = Depends(order_service),
) -> dict:
    _owned_order(orders, order_id, user_id)
    return asdict(orders.update_order_metadata(order_id, req.metadata))


@router.patch("/api/admin/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    req: StatusUpdateRequest,
    user_id: str = Depends(current_user),
    orders: OrderActionService = Depends(order_service),
) -> dict:
    order = orders.update_status(order_id, req.status)
    logger.info(f"Order {order_id} status overridden by {user_id}")
    return order.to_dict()


@router.post("/api/orders/lookup")
def lookup_order(
    req: OrderLookupRequest,
    orders: OrderActionService = Depends(order_service),
) -> dict:
    """Guest order lookup by id and recipient email."""
    order = orders.lookup_order(req.order_id, req.email)
    return {
        "id": order.id,
        "status": order.status.value,
        "total_price": order.total_price,
        "shipping_method": order.shipping_method,
        "recipient_name": order.recipient.name if order.recipient else None,
        "shipments": order.metadata.get("shipments", []),
    }


# ---------------------------------------------------------------------------
# Webhooks.
# ---------------------------------------------------------------------------


@router.post("/api/webhooks/prodigi")
def prodigi_webhook(
    event: dict[str, Any] = Body(...),
    orders: OrderActionService = Depends(order_service),
) -> dict:
    logger.info(f"Prodigi webhook {event.get('id')} ({event.get('type')})")
    summary = orders.apply_prodigi_event(event)
    return {"success": True, **summary}


@router.post("/api/webhooks/square/credits")
async def square_credits_webhook(
    request: Request,
    x_square_hmacsha256_signature: str | None = Header(default=None),
    purchases: CreditPurchaseService = Depends(purchase_service),
) -> dict:
    """Settle credit-pack purchases from signed Square events.

    The raw body is needed for the signature check, so this handler reads
    it itself and hands the parsed event to the service in the threadpool.
    """
    settings: PromptlyConfig = request.app.state.settings
    if not settings.square_webhook_signature_key:
        logger.error("Square webhook signature key is not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    body = await request.body()
    if not x_square_hmacsha256_signature or not verify_signature(
        body,
        x_square_hmacsha256_signature,
        settings.square_webhook_signature_key,
        settings.square_webhook_url,
    ):
        logger.warning("Rejected Square webhook with an invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = json.loads(body)
    except ValueError as e:
        raise ValidationError("Webhook body is not valid JSON") from e
    if not isinstance(event, dict):
        raise ValidationError("Webhook body must be a JSON object")

    logger.info(f"Square webhook {event.get('event_id')} ({event.get('type')})")
    summary = await run_in_threadpool(purchases.apply_square_event, event)
    return {"received": True, **summary}


# ---------------------------------------------------------------------------
# Print-ready images.
# ---------------------------------------------------------------------------


def _decode_image_data(image_data: str) -> bytes:
    payload = image_data
    if payload.startswith("data:"):
        header, _, payload = payload.partition(",")
        if ";base64" not in header:
            raise ValidationError("Only base64 data URLs are supported")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Invalid base64 image data: {e}") from e


@router.post("/api/print-image")
def print_image(req: PrintImageRequest) -> Response:
    png = generate_print_ready(_decode_image_data(req.image_data), req.product_code)
    return Response(content=png, media_type="image/png")


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~promptly.core.config.config`
    (``PROMPTLY_SERVER_HOST`` and ``PROMPTLY_SERVER_PORT``).

    Registered as the ``promptly`` console script in ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "promptly.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
