"""
Persisted odds cache and the policy deciding when to refresh it.

OddsCacheStore
    Row-level access to the ``odds_cache`` table.  Replacing a sport's
    snapshots is one transaction (delete + inserts commit together), so
    readers see either the old set or the new set, never an empty sport
    mid-refresh.

OddsCacheManager
    Decides per sport whether to serve the cache or pull from the provider:

        refresh if  forced
                or  no upcoming snapshots are cached
                or  now - newest refresh > cache duration

    A refresh sorts events by commence time, truncates to the sport's event
    limit, replaces the sport atomically, then trims any excess rows.  If
    every provider credential fails the existing cache is left untouched and
    keeps being served: an upstream outage degrades to stale data, never to
    empty data.
"""

import logging
import math
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError

from backend.core.errors import AllCredentialsExhausted
from backend.core.settings import EngineSettings
from backend.core.sport_config import get_sport_config, supported_sports
from backend.models import DataFetch, OddsSnapshot, SessionLocal, session_scope, utcnow
from backend.services.odds import EventOdds, OddsProviderClient, Outcome
from backend.services.team_mapping import closest_fixture, find_outcome_name

logger = logging.getLogger(__name__)

CACHE_HIT = "cache_hit"
REFRESHED = "refreshed"
STALE_FALLBACK = "stale_fallback"


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class CachedEvent:
    """Detached copy of an ``odds_cache`` row."""

    id: int
    sport: str
    event: str
    home_team: str
    away_team: str
    commence_time: datetime
    outcomes: List[Outcome]
    refreshed_at: datetime
    external_id: Optional[str] = None
    bookmaker: Optional[str] = None

    def price_for(self, participant: str) -> Optional[int]:
        name = find_outcome_name(participant, [o.name for o in self.outcomes])
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome.price
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sport": self.sport,
            "event": self.event,
            "home_team": self.home_team,
            "away_team": self.away_team,
            "commence_time": self.commence_time.isoformat(),
            "odds": [o.to_dict() for o in self.outcomes],
            "refreshed_at": self.refreshed_at.isoformat(),
        }


@dataclass
class CacheFreshness:
    count: int
    last_refreshed: Optional[datetime]


@dataclass
class RefreshOutcome:
    sport: str
    status: str                      # cache_hit | refreshed | stale_fallback
    cached_count: int
    fetched_count: int = 0
    last_refreshed: Optional[datetime] = None
    credentials_failed: int = 0
    error: Optional[str] = None
    next_event: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sport": self.sport,
            "status": self.status,
            "cached_count": self.cached_count,
            "fetched_count": self.fetched_count,
            "last_refreshed": self.last_refreshed.isoformat() if self.last_refreshed else None,
            "credentials_failed": self.credentials_failed,
            "error": self.error,
            "next_event": self.next_event,
        }


@dataclass
class OddsPage:
    items: List[CachedEvent]
    total_count: int
    page: int
    page_size: int
    has_more: bool
    last_refreshed: Dict[str, Optional[datetime]] = field(default_factory=dict)
    refresh: List[RefreshOutcome] = field(default_factory=list)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.page_size) if self.page_size else 0


def _to_cached(row: OddsSnapshot) -> CachedEvent:
    outcomes = []
    for raw in row.outcomes or []:
        try:
            outcomes.append(Outcome(name=raw["name"], price=int(raw["price"])))
        except (KeyError, TypeError, ValueError):
            logger.debug("Dropping malformed cached outcome %r on row %d", raw, row.id)
    return CachedEvent(
        id=row.id,
        sport=row.sport,
        event=row.event,
        home_team=row.home_team,
        away_team=row.away_team,
        commence_time=row.commence_time,
        outcomes=outcomes,
        refreshed_at=row.refreshed_at,
        external_id=row.external_id,
        bookmaker=row.bookmaker,
    )


def _to_row(event: EventOdds, refreshed_at: datetime) -> OddsSnapshot:
    return OddsSnapshot(
        sport=event.sport,
        event=event.event,
        external_id=event.external_id,
        home_team=event.home_team,
        away_team=event.away_team,
        commence_time=event.commence_time,
        outcomes=[o.to_dict() for o in event.outcomes],
        bookmaker=event.bookmaker,
        refreshed_at=refreshed_at,
    )


def log_fetch(
    session_factory,
    source: str,
    *,
    success: bool,
    records: int = 0,
    credentials_failed: int = 0,
    error: Optional[str] = None,
    response_time_ms: Optional[int] = None,
) -> None:
    """Persist a provider-health row; a logging failure never fails the caller."""
    try:
        with session_scope(session_factory) as db:
            db.add(DataFetch(
                data_source=source,
                success=success,
                records_fetched=records,
                credentials_failed=credentials_failed,
                error_message=(error or "")[:500] or None,
                response_time_ms=response_time_ms,
            ))
    except SQLAlchemyError as exc:
        logger.error("Could not record data fetch for %s: %s", source, exc)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class OddsCacheStore:
    """Transactional access to cached odds snapshots."""

    def __init__(self, session_factory=None, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock

    def freshness(self, sport: str) -> CacheFreshness:
        """Count of upcoming snapshots for ``sport`` and their newest refresh time."""
        now = self.clock()
        with session_scope(self.session_factory) as db:
            count, latest = (
                db.query(func.count(OddsSnapshot.id), func.max(OddsSnapshot.refreshed_at))
                .filter(OddsSnapshot.sport == sport, OddsSnapshot.commence_time > now)
                .one()
            )
        return CacheFreshness(count=count or 0, last_refreshed=latest)

    def replace_sport(
        self, sport: str, events: Iterable[EventOdds], refreshed_at: Optional[datetime] = None
    ) -> int:
        """Atomically swap every snapshot for ``sport`` with ``events``."""
        refreshed_at = refreshed_at or self.clock()
        seen = set()
        rows = []
        for event in events:
            if event.sport != sport:
                logger.warning("Ignoring %s event %s in %s refresh", event.sport, event.event, sport)
                continue
            key = (event.home_team, event.away_team, event.commence_time)
            if key in seen:
                logger.debug("Skipping duplicate event %s", event.event)
                continue
            seen.add(key)
            rows.append(_to_row(event, refreshed_at))

        with session_scope(self.session_factory) as db:
            deleted = (
                db.query(OddsSnapshot)
                .filter(OddsSnapshot.sport == sport)
                .delete(synchronize_session=False)
            )
            db.add_all(rows)
        logger.info("Cache replaced for %s: %d removed, %d inserted", sport, deleted, len(rows))
        return len(rows)

    def upsert_event(self, event: EventOdds, refreshed_at: Optional[datetime] = None) -> None:
        """Replace the snapshot for a single game in one transaction.

        The game is identified by its provider id, or by its teams and start
        time; other games between the same teams are left alone.
        """
        refreshed_at = refreshed_at or self.clock()
        match = [
            (OddsSnapshot.home_team == event.home_team)
            & (OddsSnapshot.away_team == event.away_team)
            & (OddsSnapshot.commence_time == event.commence_time)
        ]
        if event.external_id:
            match.append(OddsSnapshot.external_id == event.external_id)
        with session_scope(self.session_factory) as db:
            (
                db.query(OddsSnapshot)
                .filter(OddsSnapshot.sport == event.sport, or_(*match))
                .delete(synchronize_session=False)
            )
            db.add(_to_row(event, refreshed_at))
        logger.debug("Cache upserted %s at %s (%s)", event.event, event.commence_time, event.sport)

    def list_upcoming(
        self, sport: Optional[str] = None, offset: int = 0, limit: int = 10
    ) -> Tuple[List[CachedEvent], int]:
        """Upcoming snapshots ordered by commence time, plus the total count."""
        now = self.clock()
        with session_scope(self.session_factory) as db:
            query = db.query(OddsSnapshot).filter(OddsSnapshot.commence_time > now)
            if sport:
                query = query.filter(OddsSnapshot.sport == sport)
            total = query.count()
            rows = (
                query.order_by(OddsSnapshot.commence_time.asc(), OddsSnapshot.id.asc())
                .offset(max(offset, 0))
                .limit(max(limit, 0))
                .all()
            )
            items = [_to_cached(row) for row in rows]
        return items, total

    def find_event(
        self, sport: str, event: str, commence_time: Optional[datetime] = None
    ) -> Optional[CachedEvent]:
        """Upcoming snapshot for ``event``, nearest to ``commence_time`` if given."""
        now = self.clock()
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(OddsSnapshot)
                .filter(OddsSnapshot.sport == sport, OddsSnapshot.commence_time > now)
                .order_by(OddsSnapshot.refreshed_at.desc())
                .all()
            )
            cached = [_to_cached(row) for row in rows]
        return closest_fixture(cached, event, commence_time)

    def evict_expired(self) -> int:
        """Delete snapshots whose event has already started."""
        now = self.clock()
        with session_scope(self.session_factory) as db:
            removed = (
                db.query(OddsSnapshot)
                .filter(OddsSnapshot.commence_time <= now)
                .delete(synchronize_session=False)
            )
        if removed:
            logger.info("Evicted %d past events from cache", removed)
        return removed

    def evict_excess(self, sport: str, max_count: int) -> int:
        """Keep only the ``max_count`` soonest-starting snapshots for ``sport``."""
        now = self.clock()
        with session_scope(self.session_factory) as db:
            ids = [
                row_id for (row_id,) in
                db.query(OddsSnapshot.id)
                .filter(OddsSnapshot.sport == sport, OddsSnapshot.commence_time > now)
                .order_by(OddsSnapshot.commence_time.asc(), OddsSnapshot.id.asc())
                .all()
            ]
            excess = ids[max(max_count, 0):]
            if excess:
                (
                    db.query(OddsSnapshot)
                    .filter(OddsSnapshot.id.in_(excess))
                    .delete(synchronize_session=False)
                )
        if excess:
            logger.info(
                "Removed %d excess %s events from cache (keeping %d)",
                len(excess), sport, max_count,
            )
        return len(excess)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class OddsCacheManager:
    """
    Serves odds from the cache, refreshing from the provider when stale.

    Usage::

        manager = OddsCacheManager(store, client, settings)
        page = manager.get_page("NBA", page=1, page_size=10)
    """

    def __init__(
        self,
        store: OddsCacheStore,
        client: OddsProviderClient,
        settings: EngineSettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.client = client
        self.settings = settings
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()

    def _sport_lock(self, sport: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks[sport]

    # ------------------------------------------------------------------
    # Staleness policy
    # ------------------------------------------------------------------

    def needs_refresh(self, freshness: CacheFreshness, force: bool = False) -> bool:
        if force or freshness.count == 0 or freshness.last_refreshed is None:
            return True
        return self.clock() - freshness.last_refreshed > self.settings.cache_duration

    def refresh_sport(self, sport: str, force: bool = False) -> RefreshOutcome:
        """Refresh one sport if the policy requires it."""
        sport = get_sport_config(sport).sport_id
        with self._sport_lock(sport):
            freshness = self.store.freshness(sport)
            if not self.needs_refresh(freshness, force):
                age = self.clock() - freshness.last_refreshed
                logger.debug(
                    "Using cached %s data (%d events, %dm old)",
                    sport, freshness.count, age.total_seconds() // 60,
                )
                return RefreshOutcome(sport, CACHE_HIT, freshness.count,
                                      last_refreshed=freshness.last_refreshed)
            return self._refresh_locked(sport, freshness)

    def _refresh_locked(self, sport: str, previous: CacheFreshness) -> RefreshOutcome:
        now = self.clock()
        max_events = self.settings.max_events_for(sport)
        logger.info(
            "Fetching fresh %s odds (%d cached, max %d)", sport, previous.count, max_events,
        )
        try:
            response = self.client.fetch_odds(
                sport, commence_from=now, commence_to=now + self.settings.lookahead,
            )
        except AllCredentialsExhausted as exc:
            logger.error(
                "Odds refresh failed for %s, serving %d cached events: %s",
                sport, previous.count, exc,
            )
            log_fetch(
                self.store.session_factory, f"odds_api_odds:{sport}", success=False,
                credentials_failed=len(exc.failures), error=str(exc),
            )
            return RefreshOutcome(
                sport, STALE_FALLBACK, previous.count,
                last_refreshed=previous.last_refreshed,
                credentials_failed=len(exc.failures), error=str(exc),
            )

        upcoming = sorted(
            (e for e in response.items if e.commence_time > now),
            key=lambda e: e.commence_time,
        )[:max_events]

        inserted = self.store.replace_sport(sport, upcoming, refreshed_at=now)
        self.store.evict_excess(sport, max_events)
        log_fetch(
            self.store.session_factory, f"odds_api_odds:{sport}", success=True,
            records=inserted, credentials_failed=len(response.failures),
            response_time_ms=response.response_time_ms,
        )
        return RefreshOutcome(
            sport, REFRESHED, inserted, fetched_count=len(response.items),
            last_refreshed=now, credentials_failed=len(response.failures),
        )

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    def get_page(
        self,
        sport: Optional[str] = None,
        page: int = 1,
        page_size: int = 10,
        force_refresh: bool = False,
    ) -> OddsPage:
        """
        One page of upcoming events, refreshing stale sports first.

        ``sport=None`` pages across every configured sport by commence time.
        """
        page = max(int(page), 1)
        page_size = max(int(page_size), 1)
        sports = [get_sport_config(sport).sport_id] if sport else supported_sports()

        outcomes = [self.refresh_sport(s, force=force_refresh) for s in sports]

        offset = (page - 1) * page_size
        items, total = self.store.list_upcoming(
            sports[0] if sport else None, offset=offset, limit=page_size,
        )
        return OddsPage(
            items=items,
            total_count=total,
            page=page,
            page_size=page_size,
            has_more=offset + len(items) < total,
            last_refreshed={o.sport: o.last_refreshed for o in outcomes},
            refresh=outcomes,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def warm_all(self) -> List[RefreshOutcome]:
        """Startup pass: evict past and excess events, then refresh stale sports."""
        self.store.evict_expired()
        for sport in supported_sports():
            self.store.evict_excess(sport, self.settings.max_events_for(sport))

        report = [self.refresh_sport(sport) for sport in supported_sports()]
        for outcome in report:
            upcoming, _ = self.store.list_upcoming(outcome.sport, limit=1)
            if upcoming:
                outcome.next_event = upcoming[0].event
            logger.info(
                "Cache %s: %s (%d events, %d fetched)",
                outcome.sport, outcome.status, outcome.cached_count, outcome.fetched_count,
            )
        return report

    def refresh_all(self, force: bool = True) -> List[RefreshOutcome]:
        self.store.evict_expired()
        return [self.refresh_sport(sport, force=force) for sport in supported_sports()]
