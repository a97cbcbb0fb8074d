"""
Team-name matching across provider naming drift.

Cached snapshots, bets and provider responses can spell the same team
differently ("LA Lakers" vs "Los Angeles Lakers", "The Arsenal" vs
"Arsenal FC").  Every comparison goes through :func:`match_team`, which
returns a tagged :class:`TeamMatch` so callers (and tests) can see *how*
a name was resolved:

    EXACT       case-insensitive equality after trimming
    NORMALIZED  equal after normalisation, or one normalised name contains
                the other (unique candidate only)
    FUZZY       rapidfuzz token-sort similarity above the threshold
    UNRESOLVED  no confident match
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple, TypeVar

from rapidfuzz import fuzz, process

logger = logging.getLogger(__name__)

#: Separator used when deriving an event description from its two teams.
EVENT_SEPARATOR = " vs "

#: Minimum rapidfuzz score for a FUZZY match.  High enough that "New York
#: Rangers" never resolves to "New York Islanders".
FUZZY_THRESHOLD = 90

#: Fixtures between the same teams are one game only if their start times
#: fall within this window.
FIXTURE_TIME_WINDOW = timedelta(hours=12)

#: Normalised names shorter than this never take part in containment
#: matching ("la" would otherwise match half the league).
_MIN_CONTAINMENT_LEN = 4

_PREFIX_RE = re.compile(r"^the\s+", re.IGNORECASE)
_SUFFIX_RE = re.compile(r"\s+(fc|cf|united|city|town)$", re.IGNORECASE)
_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


class MatchKind(str, enum.Enum):
    EXACT = "exact"
    NORMALIZED = "normalized"
    FUZZY = "fuzzy"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class TeamMatch:
    kind: MatchKind
    query: str
    matched: Optional[str] = None
    score: float = 0.0

    @property
    def resolved(self) -> bool:
        return self.kind is not MatchKind.UNRESOLVED


def normalize_team_name(name: str) -> str:
    """Lower-case, drop a leading "The", common club suffixes and punctuation."""
    cleaned = _PREFIX_RE.sub("", (name or "").strip())
    cleaned = _SUFFIX_RE.sub("", cleaned)
    cleaned = _PUNCT_RE.sub(" ", cleaned.lower())
    return _SPACE_RE.sub(" ", cleaned).strip()


def match_team(query: str, candidates: Iterable[str]) -> TeamMatch:
    """Resolve ``query`` against ``candidates`` using the strategies above."""
    query = (query or "").strip()
    choices = [c for c in candidates if c]
    if not query or not choices:
        return TeamMatch(MatchKind.UNRESOLVED, query)

    # Strategy 1: exact (case-insensitive)
    for choice in choices:
        if choice.strip().lower() == query.lower():
            return TeamMatch(MatchKind.EXACT, query, choice, 100.0)

    # Strategy 2: normalised equality, then unique containment
    norm_query = normalize_team_name(query)
    normalized = [(choice, normalize_team_name(choice)) for choice in choices]
    for choice, norm in normalized:
        if norm and norm == norm_query:
            return TeamMatch(MatchKind.NORMALIZED, query, choice, 100.0)

    if len(norm_query) >= _MIN_CONTAINMENT_LEN:
        containing = [
            choice for choice, norm in normalized
            if len(norm) >= _MIN_CONTAINMENT_LEN and (norm_query in norm or norm in norm_query)
        ]
        if len(containing) == 1:
            return TeamMatch(MatchKind.NORMALIZED, query, containing[0], 95.0)
        if len(containing) > 1:
            logger.debug("Ambiguous containment for %r: %s", query, containing)

    # Strategy 3: fuzzy fallback over the normalised names
    result = process.extractOne(
        norm_query,
        [norm for _, norm in normalized],
        scorer=fuzz.token_sort_ratio,
        score_cutoff=FUZZY_THRESHOLD,
    )
    if result:
        _, score, index = result
        matched = normalized[index][0]
        logger.debug("Fuzzy matched %r to %r (score %.1f)", query, matched, score)
        return TeamMatch(MatchKind.FUZZY, query, matched, float(score))

    return TeamMatch(MatchKind.UNRESOLVED, query)


def teams_match(a: str, b: str) -> bool:
    """True if two team names refer to the same team."""
    return match_team(a, [b]).resolved


# ---------------------------------------------------------------------------
# Event descriptions
# ---------------------------------------------------------------------------

def event_name(home_team: str, away_team: str) -> str:
    """Event identifier derived from the two team names."""
    return f"{home_team.strip()}{EVENT_SEPARATOR}{away_team.strip()}"


def split_event(event: str) -> Optional[Tuple[str, str]]:
    """Inverse of :func:`event_name`; None if ``event`` has no separator."""
    parts = (event or "").split(EVENT_SEPARATOR)
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        return None
    return parts[0].strip(), parts[1].strip()


def events_match(
    home_a: str, away_a: str, home_b: str, away_b: str
) -> bool:
    """Both sides of two fixtures match (home to home, away to away)."""
    return teams_match(home_a, home_b) and teams_match(away_a, away_b)


def find_outcome_name(participant: str, names: List[str]) -> Optional[str]:
    """Resolve a bet's participant against a list of outcome names."""
    return match_team(participant, names).matched


F = TypeVar("F")


def closest_fixture(
    candidates: Sequence[F],
    event: str,
    commence_time: Optional[datetime] = None,
    window: timedelta = FIXTURE_TIME_WINDOW,
) -> Optional[F]:
    """
    The fixture in ``candidates`` that is the game ``event`` describes.

    Candidates need ``event``, ``home_team``, ``away_team`` and
    ``commence_time`` attributes.  Teams are matched exactly first, then
    through :func:`events_match`.  With ``commence_time`` given, only
    fixtures starting within ``window`` of it qualify and the nearest one
    wins; without it the soonest-starting fixture wins.
    """
    pool = list(candidates)
    if commence_time is not None:
        pool = [c for c in pool if abs(c.commence_time - commence_time) <= window]

        def key(c):
            return abs(c.commence_time - commence_time)
    else:
        def key(c):
            return c.commence_time

    named = [c for c in pool if c.event == event]
    if not named:
        teams = split_event(event)
        if teams is None:
            return None
        named = [c for c in pool if events_match(teams[0], teams[1], c.home_team, c.away_team)]
    return min(named, key=key, default=None)
