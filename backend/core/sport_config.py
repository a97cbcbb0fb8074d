"""Sport-level configuration: all sport-specific constants in one place.

This module is the **registry** of supported sports.  Nowhere else in the
codebase should provider sport keys or per-sport event limits be
hard-coded.

Architecture
------------
:class:`SportConfig` is a frozen dataclass carrying the per-sport constants.
:data:`SPORTS` maps the internal sport code (``"NFL"``, ``"NBA"`` …) to its
config.  To add a new sport, add an entry to :data:`SPORTS`; deployment-level
overrides (event limits, drift tolerance, settlement grace) live in
:class:`~backend.core.settings.EngineSettings`, not here.

Typical usage::

    from backend.core.sport_config import get_sport_config

    cfg = get_sport_config("nba")
    cfg.provider_key   # "basketball_nba"
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Final, List

from backend.core.errors import UnknownSport

#: Default number of upcoming events cached per sport.  Each cached event
#: costs provider quota on every refresh, so the default is deliberately low.
DEFAULT_MAX_EVENTS: Final[int] = 5


@dataclass(frozen=True)
class SportConfig:
    """Immutable configuration bundle for a single sport.

    Attributes:
        sport_id: Internal sport code stored on snapshots and bets (``"NFL"``).
        provider_key: The Odds API ``sport_key`` (``"americanfootball_nfl"``).
        max_events: Default cap on cached upcoming events.
    """

    sport_id: str
    provider_key: str
    max_events: int = DEFAULT_MAX_EVENTS


SPORTS: Dict[str, SportConfig] = {
    "NFL": SportConfig(
        sport_id="NFL",
        provider_key="americanfootball_nfl",
    ),
    "NBA": SportConfig(
        sport_id="NBA",
        provider_key="basketball_nba",
    ),
    "MLB": SportConfig(
        sport_id="MLB",
        provider_key="baseball_mlb",
    ),
    "NHL": SportConfig(
        sport_id="NHL",
        provider_key="icehockey_nhl",
    ),
}


def get_sport_config(sport: str) -> SportConfig:
    """Look up a sport by internal code or provider key (case-insensitive).

    Raises:
        UnknownSport: If ``sport`` is not in the registry.
    """
    if not sport:
        raise UnknownSport(str(sport))
    code = sport.strip().upper()
    if code in SPORTS:
        return SPORTS[code]
    key = sport.strip().lower()
    for cfg in SPORTS.values():
        if cfg.provider_key == key:
            return cfg
    raise UnknownSport(sport)


def supported_sports() -> List[str]:
    """Internal codes of every configured sport, in registry order."""
    return list(SPORTS)
