"""Fair-value cash-out pricing for pending bets.

The sell value of a position is the payout it would collect on a win,
weighted by the probability the market currently assigns to that win::

    payout      = stake + profit_on_win(stake, original_odds)
    probability = implied_probability(current_odds)
    fair_value  = payout * probability

No spread or house margin is applied; the position is repriced at its
current market value only.  The value is floored at a fraction of the stake
(5% by default) so that a long shot that drifted further never sells for
(near) nothing.

Worked examples::

    stake=100 @ +150, now +120  →  250.00 * 0.4545 = 113.64  (P&L +13.64)
    stake=50  @ -200, now -250  →   75.00 * 0.7143 =  53.57  (P&L  +3.57)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Final

from backend.core.odds_math import implied_probability, potential_payout, round_money

#: Default minimum sell value as a fraction of the original stake.
DEFAULT_FLOOR_PCT: Final[float] = 0.05

MOVEMENT_IMPROVED: Final[str] = "improved"
MOVEMENT_WORSENED: Final[str] = "worsened"
MOVEMENT_UNCHANGED: Final[str] = "unchanged"


@dataclass(frozen=True)
class CashOutQuote:
    """Result of pricing an early exit."""

    stake: float
    original_odds: int
    current_odds: int
    potential_payout: float
    win_probability: float
    sell_value: float
    profit_loss: float
    floor_applied: bool

    @property
    def odds_movement(self) -> str:
        """Direction of the price move from the bettor's point of view.

        A lower implied probability now than at placement means the market
        rates the pick less likely, so the position lost value.
        """
        before = implied_probability(self.original_odds)
        after = self.win_probability
        if abs(after - before) < 1e-12:
            return MOVEMENT_UNCHANGED
        return MOVEMENT_IMPROVED if after > before else MOVEMENT_WORSENED


def price_cash_out(
    stake: float,
    original_odds: int,
    current_odds: int,
    floor_pct: float = DEFAULT_FLOOR_PCT,
) -> CashOutQuote:
    """Compute the fair sell value of a pending bet.

    Args:
        stake:         Original amount wagered (must be > 0).
        original_odds: American odds locked in at placement.
        current_odds:  Live American odds for the same participant.
        floor_pct:     Minimum sell value as a fraction of ``stake``.

    Returns:
        A :class:`CashOutQuote` with ``sell_value`` and ``profit_loss``
        rounded to cents.

    Raises:
        ValueError: On a non-positive stake, a negative floor, or invalid odds.
    """
    if stake <= 0:
        raise ValueError(f"stake must be positive, got {stake!r}")
    if floor_pct < 0:
        raise ValueError(f"floor_pct must be non-negative, got {floor_pct!r}")

    payout = potential_payout(stake, original_odds)
    probability = implied_probability(current_odds)
    fair_value = payout * probability
    # Floor rounds up to the cent so the sell value never drops below it.
    floor_value = math.ceil(round(stake * floor_pct * 100, 6)) / 100

    rounded_fair = round_money(fair_value)
    floor_applied = rounded_fair < floor_value
    sell_value = max(rounded_fair, floor_value)

    return CashOutQuote(
        stake=stake,
        original_odds=int(original_odds),
        current_odds=int(current_odds),
        potential_payout=round_money(payout),
        win_probability=probability,
        sell_value=sell_value,
        profit_loss=round_money(sell_value - stake),
        floor_applied=floor_applied,
    )
