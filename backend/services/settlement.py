"""
Settlement of pending bets against provider game results.

Called by the scheduler (and the admin endpoint) on an interval.  One pass:

1. Group pending bets by event, keeping only events whose commence time
   is past the sport's settlement grace period.
2. Fetch recent results once per sport that has such events.
3. Match each event to a result by team names and commence-time proximity.
4. For events with a completed result and a final score, transition every
   pending bet: backers of the winner are credited stake + winnings, backers
   of the loser are closed at zero, and a level score cancels and refunds.

An event with no matching or incomplete result is left untouched for the
next pass.  Each transition is guarded on ``status = 'pending'``, so running
the pass twice (or concurrently) never pays out twice.
"""

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from backend.core.errors import AllCredentialsExhausted, BettingError
from backend.core.settings import EngineSettings
from backend.models import SessionLocal, utcnow
from backend.services.bet_ledger import BetLedger, SettlementBatch
from backend.services.odds import GameResult, OddsProviderClient
from backend.services.odds_cache import log_fetch
from backend.services.team_mapping import split_event, teams_match

logger = logging.getLogger(__name__)

#: A result is only attributed to an event if their commence times are this
#: close; the same two teams can meet twice inside the results window.
RESULT_TIME_WINDOW = timedelta(hours=12)

EVENT_WON_LOST = "settled"
EVENT_DRAW = "cancelled"
EVENT_NO_RESULT = "no_result"
EVENT_INCOMPLETE = "incomplete"


def find_result(
    batch: SettlementBatch, results: Sequence[GameResult]
) -> Optional[GameResult]:
    """The result for ``batch``'s event, matched on teams then start time."""
    teams = split_event(batch.event)
    if teams is None:
        logger.warning("Cannot parse teams from event %r", batch.event)
        return None
    home, away = teams

    best: Optional[GameResult] = None
    best_gap: Optional[timedelta] = None
    for result in results:
        if not (result.involves(home, away) or result.involves(away, home)):
            continue
        if result.commence_time is None:
            gap = RESULT_TIME_WINDOW
        else:
            gap = abs(result.commence_time - batch.commence_time)
            if gap > RESULT_TIME_WINDOW:
                continue
        if best_gap is None or gap < best_gap:
            best, best_gap = result, gap
    return best


def _job_summary(events: List[Dict], errors: List[str]) -> Dict:
    return {
        "events_resolved": sum(1 for e in events if e["status"] in (EVENT_WON_LOST, EVENT_DRAW)),
        "events_skipped": sum(1 for e in events if e["status"] in (EVENT_NO_RESULT, EVENT_INCOMPLETE)),
        "bets_won": sum(e["won"] for e in events),
        "bets_lost": sum(e["lost"] for e in events),
        "bets_cancelled": sum(e["cancelled"] for e in events),
        "bets_unmatched": sum(e["unmatched"] for e in events),
        "errors": errors,
        "events": events,
        "timestamp": utcnow().isoformat(),
    }


class SettlementResolver:
    """Resolves pending bets once their games have final results."""

    def __init__(
        self,
        ledger: BetLedger,
        client: OddsProviderClient,
        settings: EngineSettings,
        session_factory=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.client = client
        self.settings = settings
        self.session_factory = session_factory or SessionLocal
        self.clock = clock

    def resolve_completed_games(self) -> Dict:
        """Run one settlement pass and return a summary of what changed."""
        now = self.clock()
        batches = self.ledger.pending_batches(now)
        logger.info("Settlement pass: %d event(s) past their grace period", len(batches))
        if not batches:
            return _job_summary([], [])

        by_sport: Dict[str, List[SettlementBatch]] = defaultdict(list)
        for batch in batches:
            by_sport[batch.sport].append(batch)

        errors: List[str] = []
        work = []
        for sport, sport_batches in by_sport.items():
            results = self._fetch_results(sport, errors)
            if results is None:
                continue
            work.extend((batch, results) for batch in sport_batches)

        if self.settings.settlement_workers > 1 and len(work) > 1:
            with ThreadPoolExecutor(max_workers=self.settings.settlement_workers) as pool:
                events = list(pool.map(lambda item: self._settle_safely(*item, errors), work))
        else:
            events = [self._settle_safely(batch, results, errors) for batch, results in work]

        summary = _job_summary(events, errors)
        logger.info(
            "Settlement complete: %d resolved, %d skipped, %d won, %d lost, %d cancelled",
            summary["events_resolved"], summary["events_skipped"],
            summary["bets_won"], summary["bets_lost"], summary["bets_cancelled"],
        )
        return summary

    def _fetch_results(self, sport: str, errors: List[str]) -> Optional[List[GameResult]]:
        source = f"odds_api_scores:{sport}"
        try:
            response = self.client.fetch_results(sport, days_from=self.settings.results_days_from)
        except AllCredentialsExhausted as exc:
            logger.error("Results unavailable for %s, settlement deferred: %s", sport, exc)
            log_fetch(
                self.session_factory, source, success=False,
                credentials_failed=len(exc.failures), error=str(exc),
            )
            errors.append(f"{sport}: {exc}")
            return None

        log_fetch(
            self.session_factory, source, success=True, records=len(response.items),
            credentials_failed=len(response.failures),
            response_time_ms=response.response_time_ms,
        )
        return response.items

    def _settle_safely(
        self, batch: SettlementBatch, results: Sequence[GameResult], errors: List[str]
    ) -> Dict:
        try:
            return self.settle_event(batch, results)
        except BettingError as exc:
            logger.error("Settlement failed for %s: %s", batch.event, exc)
            errors.append(f"{batch.event}: {exc}")
            return self._event_report(batch, EVENT_NO_RESULT)

    @staticmethod
    def _event_report(batch: SettlementBatch, status: str, result: Optional[GameResult] = None) -> Dict:
        return {
            "sport": batch.sport,
            "event": batch.event,
            "commence_time": batch.commence_time.isoformat(),
            "status": status,
            "home_score": result.home_score if result else None,
            "away_score": result.away_score if result else None,
            "won": 0,
            "lost": 0,
            "cancelled": 0,
            "unmatched": 0,
        }

    def settle_event(self, batch: SettlementBatch, results: Sequence[GameResult]) -> Dict:
        """Settle every pending bet on one event; no-op without a final score."""
        result = find_result(batch, results)
        if result is None:
            logger.debug("No result yet for %s", batch.event)
            return self._event_report(batch, EVENT_NO_RESULT)
        if not result.has_final_score:
            logger.debug("Result for %s not final", batch.event)
            return self._event_report(batch, EVENT_INCOMPLETE, result)

        if result.is_draw:
            report = self._event_report(batch, EVENT_DRAW, result)
            for bet in batch.bets:
                if self.ledger.settle_cancelled(bet):
                    report["cancelled"] += 1
            logger.info(
                "%s ended level %d-%d: %d bet(s) refunded",
                batch.event, result.home_score, result.away_score, report["cancelled"],
            )
            return report

        winner, loser = result.winner(), result.loser()
        report = self._event_report(batch, EVENT_WON_LOST, result)
        for bet in batch.bets:
            if teams_match(bet.participant, winner):
                if self.ledger.settle_won(bet):
                    report["won"] += 1
            elif teams_match(bet.participant, loser):
                if self.ledger.settle_lost(bet):
                    report["lost"] += 1
            else:
                report["unmatched"] += 1
                logger.warning(
                    "Bet %d participant %r matches neither %r nor %r; left pending",
                    bet.id, bet.participant, winner, loser,
                )

        logger.info(
            "Settled %s (%s %d - %s %d): %d won, %d lost",
            batch.event, result.home_team, result.home_score,
            result.away_team, result.away_score, report["won"], report["lost"],
        )
        return report
