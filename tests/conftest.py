"""Shared fixtures: in-memory database, fixed clock, fake provider."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.models import User, init_db
from backend.services.odds import EventOdds, GameResult, OddsProviderClient, Outcome, ProviderResponse

NOW = datetime(2026, 1, 10, 12, 0, 0)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def make_user(session_factory):
    def _make_user(username="testuser", balance=1000.0) -> int:
        db = session_factory()
        try:
            user = User(username=username, email=f"{username}@example.com", balance=balance)
            db.add(user)
            db.commit()
            return user.id
        finally:
            db.close()
    return _make_user


@pytest.fixture
def provider():
    """Stand-in for OddsProviderClient; tests set fetch_odds / fetch_results."""
    client = MagicMock(spec=OddsProviderClient)
    client.fetch_odds.return_value = ProviderResponse(items=[], credential_index=1)
    client.fetch_results.return_value = ProviderResponse(items=[], credential_index=1)
    return client


def make_event(
    home="Boston Celtics",
    away="Miami Heat",
    home_price=-150,
    away_price=130,
    commence=None,
    sport="NBA",
    external_id="evt-1",
) -> EventOdds:
    return EventOdds(
        sport=sport,
        home_team=home,
        away_team=away,
        commence_time=commence or NOW + timedelta(days=1),
        outcomes=[Outcome(home, home_price), Outcome(away, away_price)],
        external_id=external_id,
        bookmaker="draftkings",
    )


def make_result(
    home="Boston Celtics",
    away="Miami Heat",
    home_score=110,
    away_score=101,
    completed=True,
    commence=None,
    sport="NBA",
) -> GameResult:
    return GameResult(
        sport=sport,
        home_team=home,
        away_team=away,
        commence_time=commence,
        completed=completed,
        home_score=home_score,
        away_score=away_score,
    )


def odds_response(*events) -> ProviderResponse:
    return ProviderResponse(items=list(events), credential_index=1)
