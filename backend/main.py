"""
FastAPI application for the odds and settlement engine
Includes REST API, scheduled jobs, and error mapping
"""

from contextlib import asynccontextmanager
from typing import Optional
import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from backend.auth import verify_api_key, verify_admin_api_key
from backend.core.errors import (
    AllCredentialsExhausted,
    BetNotEligible,
    BetNotFound,
    BettingCutoffReached,
    BettingError,
    EventNotFound,
    InsufficientBalance,
    InvalidWager,
    OddsDrifted,
    UnknownSport,
    UserNotFound,
)
from backend.models import utcnow
from backend.schemas import (
    BalanceResponse,
    BetHistoryResponse,
    OddsPageResponse,
    PlaceBetRequest,
    PlaceBetResponse,
    RefreshResponse,
    SaleResponse,
    SellQuoteResponse,
    SettlementResponse,
)
from backend.services.container import ServiceContainer, get_services

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Scheduler instance
scheduler = BackgroundScheduler()

#: HTTP status for each domain error; subclasses not listed fall back to 400.
ERROR_STATUS = {
    InvalidWager: status.HTTP_400_BAD_REQUEST,
    InsufficientBalance: status.HTTP_400_BAD_REQUEST,
    BettingCutoffReached: status.HTTP_400_BAD_REQUEST,
    OddsDrifted: status.HTTP_409_CONFLICT,
    BetNotEligible: status.HTTP_409_CONFLICT,
    BetNotFound: status.HTTP_404_NOT_FOUND,
    UserNotFound: status.HTTP_404_NOT_FOUND,
    UnknownSport: status.HTTP_404_NOT_FOUND,
    AllCredentialsExhausted: status.HTTP_503_SERVICE_UNAVAILABLE,
    EventNotFound: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting odds and settlement engine")

    refresh_minutes = int(os.getenv("ODDS_REFRESH_INTERVAL_MIN", "60"))
    settlement_minutes = int(os.getenv("SETTLEMENT_INTERVAL_MIN", "120"))

    # Warm the odds cache before serving traffic
    _warm_cache_job()

    scheduler.add_job(
        _refresh_odds_job,
        IntervalTrigger(minutes=refresh_minutes),
        id="refresh_odds",
        name="Refresh Odds Cache",
        replace_existing=True,
    )

    scheduler.add_job(
        _resolve_games_job,
        IntervalTrigger(minutes=settlement_minutes),
        id="resolve_games",
        name="Resolve Completed Games",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started: odds refresh every %dmin, settlement every %dmin",
        refresh_minutes, settlement_minutes,
    )

    yield

    # Shutdown
    logger.info("Shutting down odds and settlement engine")
    scheduler.shutdown()
    get_services().close()


app = FastAPI(
    title="Sports Odds Betting Engine",
    description="Live odds caching, verified bet placement, cash-out and settlement",
    version="1.0",
    lifespan=lifespan,
)

# CORS (adjust origins for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# ERROR MAPPING
# ============================================================================

@app.exception_handler(BettingError)
async def betting_error_handler(request: Request, exc: BettingError):
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        "%s: %s" % (".".join(str(part) for part in err.get("loc", ())), err.get("msg", "invalid"))
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "invalid_request", "detail": "; ".join(details), "retryable": False},
    )


# ============================================================================
# SCHEDULED JOBS
# ============================================================================

def _warm_cache_job():
    """Evict stale entries and refresh empty or stale sports; runs at startup."""
    try:
        report = get_services().cache.warm_all()
        logger.info("Cache warm-up: %s", [o.to_dict() for o in report])
    except Exception as exc:
        logger.error("Cache warm-up failed: %s", exc, exc_info=True)


def _refresh_odds_job():
    """Force-refresh every sport; runs every hour by default."""
    try:
        report = get_services().cache.refresh_all(force=True)
        logger.info("Odds refresh: %s", [(o.sport, o.status, o.cached_count) for o in report])
    except Exception as exc:
        logger.error("Odds refresh job failed: %s", exc, exc_info=True)


def _resolve_games_job():
    """Settle bets on completed games; runs every 2 hours by default."""
    try:
        results = get_services().settlement.resolve_completed_games()
        logger.info(
            "Settlement: %d resolved, %d skipped, errors=%s",
            results["events_resolved"], results["events_skipped"], results["errors"],
        )
    except Exception as exc:
        logger.error("Settlement job failed: %s", exc, exc_info=True)


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health_check(services: ServiceContainer = Depends(get_services)):
    """Health check endpoint"""
    health = {
        "status": "healthy",
        "database": "connected",
        "scheduler": "running" if scheduler.running else "stopped",
        "timestamp": utcnow().isoformat(),
    }

    db = services.session_factory()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("Health check database error: %s", e)
        health["status"] = "degraded"
        health["database"] = f"error: {str(e)}"
    finally:
        db.close()

    return health


@app.get("/api/odds", response_model=OddsPageResponse)
def get_odds(
    sport: Optional[str] = Query(default=None, description="Sport code; omit for all sports"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=50),
    refresh: bool = Query(default=False, description="Force a provider refresh"),
    services: ServiceContainer = Depends(get_services),
):
    """Upcoming events with head-to-head odds, served from the cache."""
    result = services.cache.get_page(sport, page=page, page_size=limit, force_refresh=refresh)
    return {
        "events": [e.to_dict() for e in result.items],
        "page": result.page,
        "limit": result.page_size,
        "total_count": result.total_count,
        "total_pages": result.total_pages,
        "has_more": result.has_more,
        "last_refreshed": result.last_refreshed,
        "cache": [o.to_dict() for o in result.refresh],
    }


# ============================================================================
# AUTHENTICATED ENDPOINTS - ACCOUNT AND BETS
# ============================================================================

@app.get("/api/user", response_model=BalanceResponse)
def get_user(
    user_id: int = Depends(verify_api_key),
    services: ServiceContainer = Depends(get_services),
):
    return {"user_id": user_id, "balance": services.ledger.get_balance(user_id)}


@app.get("/api/bets", response_model=BetHistoryResponse)
def get_bets(
    user_id: int = Depends(verify_api_key),
    services: ServiceContainer = Depends(get_services),
):
    """Betting history, newest first."""
    bets = services.ledger.list_bets(user_id)
    return {"total": len(bets), "bets": [b.to_dict() for b in bets]}


@app.post("/api/bets", response_model=PlaceBetResponse, status_code=status.HTTP_201_CREATED)
def place_bet(
    payload: PlaceBetRequest,
    user_id: int = Depends(verify_api_key),
    services: ServiceContainer = Depends(get_services),
):
    """
    Place a bet after re-verifying the asserted odds.

    Rejected with 409 if the live price drifted beyond tolerance, 400 if
    the balance is short or betting has closed.
    """
    result = services.ledger.place_bet(
        user_id=user_id,
        event=payload.event,
        participant=payload.participant,
        stake=payload.stake,
        asserted_odds=payload.odds,
        sport=payload.sport,
        commence_time=payload.commence_time,
    )
    return PlaceBetResponse(
        message="Bet placed",
        bet_id=result.bet_id,
        new_balance=result.new_balance,
        odds=result.odds,
        live_odds=result.live_odds,
        odds_source=result.odds_source,
    )


@app.get("/api/bets/{bet_id}/sell-quote", response_model=SellQuoteResponse)
def get_sell_quote(
    bet_id: int,
    user_id: int = Depends(verify_api_key),
    services: ServiceContainer = Depends(get_services),
):
    """Current cash-out value of a pending bet; nothing is mutated."""
    return services.ledger.get_sell_quote(bet_id, user_id).to_dict()


@app.post("/api/bets/{bet_id}/sell", response_model=SaleResponse)
def sell_bet(
    bet_id: int,
    user_id: int = Depends(verify_api_key),
    services: ServiceContainer = Depends(get_services),
):
    """Cash out a pending bet at its fair value."""
    return services.ledger.sell_bet(bet_id, user_id).to_dict()


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@app.post("/admin/resolve-games", response_model=SettlementResponse)
def trigger_settlement(
    user_id: int = Depends(verify_admin_api_key),
    services: ServiceContainer = Depends(get_services),
):
    """Run a settlement pass now (admin only)."""
    logger.info("Manual settlement triggered by user %d", user_id)
    results = services.settlement.resolve_completed_games()
    return SettlementResponse(message="Settlement complete", **results)


@app.post("/admin/refresh-odds", response_model=RefreshResponse)
def trigger_refresh(
    user_id: int = Depends(verify_admin_api_key),
    services: ServiceContainer = Depends(get_services),
):
    """Force-refresh the odds cache for every sport (admin only)."""
    logger.info("Manual odds refresh triggered by user %d", user_id)
    report = services.cache.refresh_all(force=True)
    return RefreshResponse(message="Refresh complete", sports=[o.to_dict() for o in report])
