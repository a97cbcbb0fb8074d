"""
Database models for the odds and settlement engine
SQLAlchemy ORM; SQLite by default, PostgreSQL in production
"""

from contextlib import contextmanager
from datetime import datetime, timezone
import os

from dotenv import load_dotenv
from sqlalchemy import (
    create_engine,
    CheckConstraint,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Boolean,
    JSON,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bets.db")


def make_engine(url: str = DATABASE_URL, **kwargs):
    """Create an engine; SQLite connections may be shared across worker threads."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        # pool_pre_ping keeps long-lived Postgres connections alive
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, echo=False, **kwargs)


engine = make_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@contextmanager
def session_scope(factory=None):
    """Unit of work: commit on success, roll back everything on any error."""
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


BET_PENDING = "pending"
BET_WON = "won"
BET_LOST = "lost"
BET_SOLD = "sold"
BET_CANCELLED = "cancelled"
BET_STATUSES = (BET_PENDING, BET_WON, BET_LOST, BET_SOLD, BET_CANCELLED)


class User(Base):
    """Account holding the virtual-currency balance"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, nullable=False)
    email = Column(String)
    balance = Column(Float, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    bets = relationship("Bet", back_populates="user")


class Bet(Base):
    """One user's wager; odds and stake never change after creation"""

    __tablename__ = "bets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    event = Column(String, nullable=False)          # "Home Team vs Away Team"
    participant = Column(String, nullable=False)    # team the user backed
    stake = Column(Float, nullable=False)
    odds = Column(Integer, nullable=False)          # American odds at placement
    sport = Column(String, nullable=False, index=True)
    commence_time = Column(DateTime, nullable=False, index=True)

    status = Column(String, nullable=False, default=BET_PENDING, index=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    status_changed_at = Column(DateTime)

    # Null while pending, stamped exactly once on the terminal transition
    final_amount = Column(Float)
    profit_loss = Column(Float)

    user = relationship("User", back_populates="bets")

    __table_args__ = (
        CheckConstraint("stake > 0", name="ck_bets_stake_positive"),
        CheckConstraint(
            "status IN (%s)" % ", ".join("'%s'" % s for s in BET_STATUSES),
            name="ck_bets_status",
        ),
        Index("ix_bets_status_event", "status", "sport", "event", "commence_time"),
    )


class OddsSnapshot(Base):
    """Cached head-to-head odds for one upcoming event"""

    __tablename__ = "odds_cache"

    id = Column(Integer, primary_key=True, index=True)
    sport = Column(String, nullable=False, index=True)
    event = Column(String, nullable=False, index=True)   # "Home Team vs Away Team"
    external_id = Column(String, index=True)             # provider event id
    home_team = Column(String, nullable=False)
    away_team = Column(String, nullable=False)
    commence_time = Column(DateTime, nullable=False, index=True)
    outcomes = Column(JSON, nullable=False)              # [{"name": ..., "price": ...}]
    bookmaker = Column(String)
    refreshed_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "sport", "home_team", "away_team", "commence_time",
            name="_odds_cache_event_uc",
        ),
    )


class DataFetch(Base):
    """Track provider calls for monitoring upstream health"""

    __tablename__ = "data_fetches"

    id = Column(Integer, primary_key=True, index=True)
    fetch_time = Column(DateTime, default=utcnow, index=True)
    data_source = Column(String, nullable=False, index=True)  # "odds_api_odds:NBA", ...
    success = Column(Boolean, nullable=False)
    records_fetched = Column(Integer)
    credentials_failed = Column(Integer, default=0)
    error_message = Column(Text)
    response_time_ms = Column(Integer)


# Create all tables
def init_db(bind=None):
    """Initialize database tables"""
    Base.metadata.create_all(bind=bind or engine)
