"""
The Odds API integration: upcoming head-to-head odds and completed scores.
https://the-odds-api.com/

Credential failover
-------------------
The free tier of The Odds API is tightly rate-limited, so deployments
configure up to five API keys.  The client is constructed with that ordered
list and, for every request, tries each key in turn until one returns a
usable payload.  A key fails on any non-2xx status (401 bad key, 429 quota),
network error, timeout, or an unparseable body; the failure is logged by
credential *index* (never the key itself) and the next key is tried.  When
every key has failed the client raises
:class:`~backend.core.errors.AllCredentialsExhausted` carrying the list of
failures and the last underlying error.

Each attempt has its own timeout, so one unresponsive key cannot stall the
whole chain.

Payload resilience
------------------
Events are parsed one at a time.  A malformed event (missing teams, bad
timestamp, no usable h2h prices) is skipped with a debug log; it never
fails the batch.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, Sequence, TypeVar

import requests

from backend.core.errors import AllCredentialsExhausted
from backend.core.odds_math import is_valid_american
from backend.core.settings import EngineSettings
from backend.core.sport_config import get_sport_config
from backend.services.team_mapping import event_name, find_outcome_name, teams_match

logger = logging.getLogger(__name__)

_COMMENCE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Outcome:
    name: str
    price: int

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "price": self.price}


@dataclass
class EventOdds:
    """One upcoming event's head-to-head prices as returned by the provider."""

    sport: str
    home_team: str
    away_team: str
    commence_time: datetime          # naive UTC
    outcomes: List[Outcome]
    external_id: Optional[str] = None
    bookmaker: Optional[str] = None

    @property
    def event(self) -> str:
        return event_name(self.home_team, self.away_team)

    def price_for(self, participant: str) -> Optional[int]:
        name = find_outcome_name(participant, [o.name for o in self.outcomes])
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome.price
        return None


@dataclass
class GameResult:
    """Score line for one game from the scores endpoint."""

    sport: str
    home_team: str
    away_team: str
    commence_time: Optional[datetime]
    completed: bool
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    external_id: Optional[str] = None

    @property
    def has_final_score(self) -> bool:
        return self.completed and self.home_score is not None and self.away_score is not None

    @property
    def is_draw(self) -> bool:
        return self.has_final_score and self.home_score == self.away_score

    def winner(self) -> Optional[str]:
        """Team with the higher final score; None if incomplete or level."""
        if not self.has_final_score or self.is_draw:
            return None
        return self.home_team if self.home_score > self.away_score else self.away_team

    def loser(self) -> Optional[str]:
        winner = self.winner()
        if winner is None:
            return None
        return self.away_team if winner == self.home_team else self.home_team

    def involves(self, home_team: str, away_team: str) -> bool:
        return teams_match(home_team, self.home_team) and teams_match(away_team, self.away_team)


@dataclass
class CredentialFailure:
    credential_index: int            # 1-based position in the configured list
    error: str
    status_code: Optional[int] = None


@dataclass
class ProviderResponse(Generic[T]):
    items: List[T]
    credential_index: int
    failures: List[CredentialFailure] = field(default_factory=list)
    requests_remaining: Optional[str] = None
    requests_used: Optional[str] = None
    response_time_ms: int = 0
    skipped: int = 0                 # malformed events dropped while parsing


# ---------------------------------------------------------------------------
# Parsing (pure)
# ---------------------------------------------------------------------------

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 provider timestamp into naive UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _h2h_outcomes(raw: Dict, home_team: str, away_team: str):
    """First bookmaker whose h2h market prices both teams."""
    for bookmaker in raw.get("bookmakers") or []:
        if not isinstance(bookmaker, dict):
            continue
        for market in bookmaker.get("markets") or []:
            if not isinstance(market, dict) or market.get("key") != "h2h":
                continue
            outcomes = []
            for outcome in market.get("outcomes") or []:
                if not isinstance(outcome, dict):
                    continue
                name = outcome.get("name")
                price = outcome.get("price")
                if isinstance(name, str) and name.strip() and is_valid_american(price):
                    outcomes.append(Outcome(name=name.strip(), price=int(round(price))))
            names = [o.name for o in outcomes]
            if find_outcome_name(home_team, names) and find_outcome_name(away_team, names):
                return outcomes, bookmaker.get("key")
    return None, None


def parse_event(raw: Any, sport: str) -> Optional[EventOdds]:
    """Parse one raw odds event; None if it is malformed."""
    if not isinstance(raw, dict):
        return None
    home_team = raw.get("home_team")
    away_team = raw.get("away_team")
    if not isinstance(home_team, str) or not isinstance(away_team, str):
        return None
    if not home_team.strip() or not away_team.strip():
        return None
    commence_time = parse_timestamp(raw.get("commence_time"))
    if commence_time is None:
        return None
    outcomes, bookmaker = _h2h_outcomes(raw, home_team, away_team)
    if not outcomes:
        return None
    return EventOdds(
        sport=sport,
        home_team=home_team.strip(),
        away_team=away_team.strip(),
        commence_time=commence_time,
        outcomes=outcomes,
        external_id=raw.get("id"),
        bookmaker=bookmaker,
    )


def _parse_score(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_result(raw: Any, sport: str) -> Optional[GameResult]:
    """
    Parse one scores entry; None if it is malformed.

    The API returns:
        {"home_team": "Duke", "completed": true,
         "scores": [{"name": "Duke", "score": "83"}, ...]}
    """
    if not isinstance(raw, dict):
        return None
    home_team = raw.get("home_team")
    away_team = raw.get("away_team")
    if not isinstance(home_team, str) or not isinstance(away_team, str):
        return None

    home_score: Optional[int] = None
    away_score: Optional[int] = None
    for entry in raw.get("scores") or []:
        if not isinstance(entry, dict):
            continue
        value = _parse_score(entry.get("score"))
        name = entry.get("name") or ""
        if name == home_team:
            home_score = value
        elif name == away_team:
            away_score = value

    return GameResult(
        sport=sport,
        home_team=home_team.strip(),
        away_team=away_team.strip(),
        commence_time=parse_timestamp(raw.get("commence_time")),
        completed=raw.get("completed") is True,
        home_score=home_score,
        away_score=away_score,
        external_id=raw.get("id"),
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class OddsProviderClient:
    """Client for The Odds API with ordered credential failover."""

    def __init__(
        self,
        api_keys: Sequence[str],
        base_url: str = "https://api.the-odds-api.com/v4",
        regions: str = "us",
        markets: str = "h2h",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.api_keys = tuple(k for k in api_keys if k)
        self.base_url = base_url.rstrip("/")
        self.regions = regions
        self.markets = markets
        self.timeout = timeout
        self._http = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: EngineSettings, session=None) -> "OddsProviderClient":
        return cls(
            api_keys=settings.odds_api_keys,
            base_url=settings.odds_api_base_url,
            regions=settings.odds_api_regions,
            markets=settings.odds_api_markets,
            timeout=settings.provider_timeout_seconds,
            session=session,
        )

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def fetch_odds(
        self,
        sport: str,
        commence_from: Optional[datetime] = None,
        commence_to: Optional[datetime] = None,
        event_ids: Optional[Sequence[str]] = None,
    ) -> ProviderResponse[EventOdds]:
        """
        Fetch current h2h odds for a sport.

        Args:
            sport:         Internal sport code or provider sport key.
            commence_from: Only events starting at or after this (naive UTC).
            commence_to:   Only events starting at or before this (naive UTC).
            event_ids:     Restrict the response to these provider event ids.

        Raises:
            AllCredentialsExhausted: If every credential failed.
        """
        cfg = get_sport_config(sport)
        params: Dict[str, Any] = {
            "regions": self.regions,
            "markets": self.markets,
            "oddsFormat": "american",
        }
        if commence_from is not None:
            params["commenceTimeFrom"] = commence_from.strftime(_COMMENCE_FORMAT)
        if commence_to is not None:
            params["commenceTimeTo"] = commence_to.strftime(_COMMENCE_FORMAT)
        if event_ids:
            params["eventIds"] = ",".join(event_ids)

        response = self._get_with_fallback(f"/sports/{cfg.provider_key}/odds", params, cfg.provider_key)
        events = []
        for raw in response.items:
            parsed = parse_event(raw, cfg.sport_id)
            if parsed is None:
                response.skipped += 1
                logger.debug("Skipping malformed %s event: %.200r", cfg.sport_id, raw)
                continue
            events.append(parsed)

        logger.info(
            "Odds API: %d %s events parsed (%d skipped) via credential %d, quota used=%s remaining=%s",
            len(events), cfg.sport_id, response.skipped,
            response.credential_index, response.requests_used, response.requests_remaining,
        )
        response.items = events
        return response

    def fetch_results(self, sport: str, days_from: int = 3) -> ProviderResponse[GameResult]:
        """
        Fetch recent scores (completed and in-progress) for a sport.

        ``days_from`` is clamped to the API's 1..3 range.

        Raises:
            AllCredentialsExhausted: If every credential failed.
        """
        cfg = get_sport_config(sport)
        params = {"daysFrom": min(max(int(days_from), 1), 3)}
        response = self._get_with_fallback(f"/sports/{cfg.provider_key}/scores", params, cfg.provider_key)

        results = []
        for raw in response.items:
            parsed = parse_result(raw, cfg.sport_id)
            if parsed is None:
                response.skipped += 1
                continue
            results.append(parsed)

        completed = sum(1 for r in results if r.completed)
        logger.info(
            "Scores API: %d %s games, %d completed (daysFrom=%d)",
            len(results), cfg.sport_id, completed, params["daysFrom"],
        )
        response.items = results
        return response

    # ------------------------------------------------------------------
    # Fallback loop
    # ------------------------------------------------------------------

    def _get_with_fallback(self, path: str, params: Dict[str, Any], sport_key: str) -> ProviderResponse:
        url = f"{self.base_url}{path}"
        failures: List[CredentialFailure] = []
        last_error: Optional[BaseException] = None

        if not self.api_keys:
            raise AllCredentialsExhausted(
                sport_key, failures, ValueError("no odds API credentials configured")
            )

        total = len(self.api_keys)
        for index, api_key in enumerate(self.api_keys, start=1):
            started = time.monotonic()
            try:
                resp = self._http.get(url, params={**params, "apiKey": api_key}, timeout=self.timeout)
            except requests.exceptions.RequestException as exc:
                logger.warning("Credential %d/%d failed for %s: %s", index, total, sport_key, exc)
                failures.append(CredentialFailure(index, str(exc)))
                last_error = exc
                continue

            if not 200 <= resp.status_code < 300:
                body = (resp.text or "")[:200]
                logger.warning(
                    "Credential %d/%d failed for %s with status %d: %s",
                    index, total, sport_key, resp.status_code, body,
                )
                last_error = requests.HTTPError(f"{resp.status_code}: {body}", response=resp)
                failures.append(CredentialFailure(index, str(last_error), resp.status_code))
                continue

            try:
                payload = resp.json()
            except ValueError as exc:
                logger.warning("Credential %d/%d returned an unparseable body for %s", index, total, sport_key)
                failures.append(CredentialFailure(index, f"invalid JSON: {exc}", resp.status_code))
                last_error = exc
                continue

            if not isinstance(payload, list):
                logger.warning("Credential %d/%d returned a non-list payload for %s", index, total, sport_key)
                last_error = ValueError(f"unexpected payload type {type(payload).__name__}")
                failures.append(CredentialFailure(index, str(last_error), resp.status_code))
                continue

            return ProviderResponse(
                items=payload,
                credential_index=index,
                failures=failures,
                requests_remaining=resp.headers.get("x-requests-remaining"),
                requests_used=resp.headers.get("x-requests-used"),
                response_time_ms=int((time.monotonic() - started) * 1000),
            )

        logger.error("All %d odds API credentials failed for %s", total, sport_key)
        raise AllCredentialsExhausted(sport_key, failures, last_error)
