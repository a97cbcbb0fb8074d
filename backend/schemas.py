"""
Pydantic request/response schemas for the betting API.

Using explicit schemas instead of raw dicts prevents mass-assignment
vulnerabilities on ORM models and generates accurate OpenAPI docs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.core.odds_math import is_valid_american


# ---------------------------------------------------------------------------
# Bet placement
# ---------------------------------------------------------------------------

class PlaceBetRequest(BaseModel):
    """
    Payload for POST /api/bets.

    ``odds`` is the price the user saw; it is re-verified against live odds
    before the bet is accepted.
    """

    event: str = Field(..., min_length=3, max_length=200, description='e.g. "Boston Celtics vs Miami Heat"')
    participant: str = Field(..., min_length=1, max_length=120, description="Team being backed")
    stake: float = Field(..., description="Amount risked")
    odds: int = Field(..., description="American odds shown to the user")
    sport: str = Field(..., description="Sport code, e.g. NBA")
    commence_time: datetime = Field(..., description="Event start (ISO 8601, UTC)")

    @field_validator("odds")
    @classmethod
    def validate_american_odds(cls, v: int) -> int:
        if not is_valid_american(v):
            raise ValueError(
                f"odds={v} is not valid American odds. Must be >= +100 or <= -100."
            )
        return v

    @field_validator("stake")
    @classmethod
    def validate_stake(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("stake must be positive")
        return round(v, 2)

    model_config = {
        "json_schema_extra": {
            "example": {
                "event": "Boston Celtics vs Miami Heat",
                "participant": "Boston Celtics",
                "stake": 50.0,
                "odds": -150,
                "sport": "NBA",
                "commence_time": "2026-01-15T00:30:00Z",
            }
        }
    }


class PlaceBetResponse(BaseModel):
    message: str
    bet_id: int
    new_balance: float
    odds: int
    live_odds: Optional[int]
    odds_source: str


# ---------------------------------------------------------------------------
# Account and history
# ---------------------------------------------------------------------------

class BalanceResponse(BaseModel):
    user_id: int
    balance: float


class BetResponse(BaseModel):
    id: int
    event: str
    participant: str
    stake: float
    odds: int
    sport: str
    commence_time: datetime
    status: str
    created_at: Optional[datetime]
    status_changed_at: Optional[datetime]
    final_amount: Optional[float]
    profit_loss: Optional[float]
    potential_payout: float


class BetHistoryResponse(BaseModel):
    total: int
    bets: List[BetResponse]


# ---------------------------------------------------------------------------
# Cash-out
# ---------------------------------------------------------------------------

class SellQuoteResponse(BaseModel):
    bet_id: int
    stake: float
    original_odds: int
    current_odds: int
    potential_payout: float
    win_probability: float
    sell_value: float
    profit_loss: float
    floor_applied: bool
    odds_movement: str
    odds_source: str


class SaleResponse(SellQuoteResponse):
    new_balance: float


# ---------------------------------------------------------------------------
# Odds listing
# ---------------------------------------------------------------------------

class OutcomeResponse(BaseModel):
    name: str
    price: int


class OddsEventResponse(BaseModel):
    id: int
    sport: str
    event: str
    home_team: str
    away_team: str
    commence_time: datetime
    odds: List[OutcomeResponse]
    refreshed_at: datetime


class RefreshOutcomeResponse(BaseModel):
    sport: str
    status: str
    cached_count: int
    fetched_count: int
    last_refreshed: Optional[datetime]
    credentials_failed: int
    error: Optional[str]
    next_event: Optional[str] = None


class OddsPageResponse(BaseModel):
    """Structure for the /api/odds endpoint."""
    events: List[OddsEventResponse]
    page: int
    limit: int
    total_count: int
    total_pages: int
    has_more: bool
    last_refreshed: Dict[str, Optional[datetime]]
    cache: List[RefreshOutcomeResponse]


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

class SettlementResponse(BaseModel):
    """Response from /admin/resolve-games."""
    message: str
    events_resolved: int
    events_skipped: int
    bets_won: int
    bets_lost: int
    bets_cancelled: int
    bets_unmatched: int
    errors: List[str]
    events: List[dict]
    timestamp: str


class RefreshResponse(BaseModel):
    """Response from /admin/refresh-odds."""
    message: str
    sports: List[RefreshOutcomeResponse]
