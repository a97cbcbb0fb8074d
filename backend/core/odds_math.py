"""Fundamental odds mathematics: the single source of truth.

Every function here is **pure**: no I/O, no logging, no side effects.
Import from this module; never reimplement locally in services or models.

The pillars exposed are:

1. **Validation**: is an integer a representable American price?
2. **Odds conversion**: American ↔ decimal ↔ implied probability.
3. **Payouts**: profit on a winning stake and total potential payout.

Design decisions
----------------
* All functions accept ``int`` American odds because The Odds API returns
  integers when ``oddsFormat=american``.  Floats are tolerated for callers
  that read odds back from JSON, but are never produced here.
* Implied probability is the raw, vig-inclusive figure.  Cash-out pricing
  deliberately reprices at this stated market probability with no margin.
* Money is rounded to cents only at the edges (:func:`round_money`); the
  intermediate arithmetic stays in full float precision.

Run tests with::

    pytest tests/test_odds_math.py -v
"""

from __future__ import annotations

import math
from typing import Final

# ---------------------------------------------------------------------------
# Module-level constants
# ---------------------------------------------------------------------------

#: American-odds magnitude floor.  The Odds API never returns |odds| < 100;
#: values below this indicate a data error.
_MIN_ODDS_MAGNITUDE: Final[int] = 100


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def is_valid_american(american: object) -> bool:
    """Return True if ``american`` is a usable American odds value.

    Booleans are rejected even though ``bool`` subclasses ``int``.
    """
    if isinstance(american, bool) or not isinstance(american, (int, float)):
        return False
    if not math.isfinite(american):
        return False
    return abs(american) >= _MIN_ODDS_MAGNITUDE


def _require_valid(american: int | float) -> None:
    if not is_valid_american(american):
        raise ValueError(
            f"Invalid American odds {american!r}: magnitude must be ≥ 100. "
            "Check upstream odds parsing for data errors."
        )


# ---------------------------------------------------------------------------
# Odds conversion
# ---------------------------------------------------------------------------


def american_to_decimal(american: int | float) -> float:
    """Convert American odds to decimal (European) format.

    Decimal odds represent the total payout per unit staked, **including**
    the return of the stake itself.  Examples::

        american_to_decimal(-110) → 1.9091   (risk 110 to win 100)
        american_to_decimal(+150) → 2.5000   (risk 100 to win 150)

    Raises:
        ValueError: If ``|american| < 100``.
    """
    _require_valid(american)
    if american > 0:
        return american / 100.0 + 1.0
    # Negative: risk |american| to win 100
    return 100.0 / abs(american) + 1.0


def implied_probability(american: int | float) -> float:
    """Raw implied win probability from American odds (vig-inclusive).

    ``100 / (o + 100)`` for positive odds, ``|o| / (|o| + 100)`` for negative
    odds.  The result always lies strictly inside ``(0, 1)``.

    Examples::

        implied_probability(+120) → 0.4545
        implied_probability(-250) → 0.7143
    """
    _require_valid(american)
    if american > 0:
        return 100.0 / (american + 100.0)
    magnitude = abs(american)
    return magnitude / (magnitude + 100.0)


# ---------------------------------------------------------------------------
# Payouts
# ---------------------------------------------------------------------------


def profit_on_win(stake: float, american: int | float) -> float:
    """Profit (excluding the returned stake) if a bet at ``american`` wins.

    ``stake * o / 100`` for positive odds, ``stake * 100 / |o|`` otherwise.
    """
    _require_valid(american)
    if american > 0:
        return stake * american / 100.0
    return stake * 100.0 / abs(american)


def potential_payout(stake: float, american: int | float) -> float:
    """Total amount returned on a win: the stake plus :func:`profit_on_win`."""
    return stake + profit_on_win(stake, american)


def round_money(amount: float) -> float:
    """Round a currency amount to cents."""
    return round(amount, 2)
