"""
Odds verification at the moment of a financial action.

Before a bet is placed or sold, the event's price is re-read from the
provider (scoped to the event's provider id when the cache knows it).  A
successful read is written back into the cache for that event, so the
listing surface picks up the new price too.  If the provider cannot be
reached, or no longer lists the event, the most recent cached snapshot is
returned instead; ``None`` means neither source has the event and the
caller applies its own fallback policy.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from backend.core.errors import AllCredentialsExhausted
from backend.core.sport_config import get_sport_config
from backend.models import utcnow
from backend.services.odds import EventOdds, OddsProviderClient, Outcome
from backend.services.odds_cache import OddsCacheStore, log_fetch
from backend.services.team_mapping import closest_fixture, find_outcome_name

logger = logging.getLogger(__name__)

SOURCE_PROVIDER = "provider"
SOURCE_CACHE = "cache"


@dataclass
class VerifiedOdds:
    sport: str
    event: str
    home_team: str
    away_team: str
    commence_time: datetime
    outcomes: List[Outcome]
    source: str                      # provider | cache
    refreshed_at: datetime

    def price_for(self, participant: str) -> Optional[int]:
        name = find_outcome_name(participant, [o.name for o in self.outcomes])
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome.price
        return None


def match_event(
    events: Sequence[EventOdds], event: str, commence_time: Optional[datetime] = None
) -> Optional[EventOdds]:
    """Find the game ``event`` ("Home vs Away") starting near ``commence_time``."""
    return closest_fixture(events, event, commence_time)


class OddsVerificationService:
    """Re-validates one event's odds, falling back to the cache."""

    def __init__(
        self,
        client: OddsProviderClient,
        store: OddsCacheStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.store = store
        self.clock = clock

    def get_live_odds(
        self, sport: str, event: str, commence_time: Optional[datetime] = None
    ) -> Optional[VerifiedOdds]:
        """
        Live odds for one game, or the cached snapshot if the provider fails.

        ``commence_time`` picks between games with the same teams; only a
        game starting within the fixture window of it is returned.
        """
        cfg = get_sport_config(sport)
        cached = self.store.find_event(cfg.sport_id, event, commence_time)
        now = self.clock()

        event_ids = [cached.external_id] if cached is not None and cached.external_id else None
        try:
            response = self.client.fetch_odds(cfg.sport_id, commence_from=now, event_ids=event_ids)
        except AllCredentialsExhausted as exc:
            logger.warning("Live odds unavailable for %s (%s): %s", event, cfg.sport_id, exc)
            log_fetch(
                self.store.session_factory, f"odds_api_verify:{cfg.sport_id}", success=False,
                credentials_failed=len(exc.failures), error=str(exc),
            )
        else:
            fresh = match_event(response.items, event, commence_time)
            if fresh is not None:
                self.store.upsert_event(fresh, refreshed_at=now)
                logger.info("Verified live odds for %s via provider", fresh.event)
                return VerifiedOdds(
                    sport=cfg.sport_id,
                    event=fresh.event,
                    home_team=fresh.home_team,
                    away_team=fresh.away_team,
                    commence_time=fresh.commence_time,
                    outcomes=list(fresh.outcomes),
                    source=SOURCE_PROVIDER,
                    refreshed_at=now,
                )
            logger.warning(
                "Provider returned %d %s events but none matched %s",
                len(response.items), cfg.sport_id, event,
            )

        if cached is not None:
            logger.info(
                "Using cached odds for %s (refreshed %s)", cached.event, cached.refreshed_at.isoformat(),
            )
            return VerifiedOdds(
                sport=cached.sport,
                event=cached.event,
                home_team=cached.home_team,
                away_team=cached.away_team,
                commence_time=cached.commence_time,
                outcomes=list(cached.outcomes),
                source=SOURCE_CACHE,
                refreshed_at=cached.refreshed_at,
            )

        logger.warning("No live or cached odds for %s (%s)", event, cfg.sport_id)
        return None
