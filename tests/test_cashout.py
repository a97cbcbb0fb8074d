"""Tests for backend.core.cashout: fair-value early exit pricing."""

import pytest

from backend.core.cashout import (
    MOVEMENT_IMPROVED,
    MOVEMENT_UNCHANGED,
    MOVEMENT_WORSENED,
    price_cash_out,
)


def test_underdog_shortened_sells_at_profit():
    # 100 @ +150, now +120: 250.00 * 0.4545 = 113.64
    quote = price_cash_out(100, 150, 120)
    assert quote.potential_payout == pytest.approx(250.0)
    assert quote.sell_value == pytest.approx(113.64)
    assert quote.profit_loss == pytest.approx(13.64)
    assert quote.odds_movement == MOVEMENT_IMPROVED
    assert quote.floor_applied is False


def test_favourite_shortened_sells_at_profit():
    # 50 @ -200, now -250: 75.00 * 0.7143 = 53.57
    quote = price_cash_out(50, -200, -250)
    assert quote.sell_value == pytest.approx(53.57)
    assert quote.profit_loss == pytest.approx(3.57)
    assert quote.odds_movement == MOVEMENT_IMPROVED


def test_price_drift_against_bettor_sells_at_loss():
    quote = price_cash_out(100, -150, 130)
    # payout 166.67 * 0.4348
    assert quote.sell_value == pytest.approx(72.46, abs=0.01)
    assert quote.profit_loss < 0
    assert quote.odds_movement == MOVEMENT_WORSENED


def test_unchanged_odds_is_close_to_stake_for_even_money():
    quote = price_cash_out(100, 100, 100)
    assert quote.sell_value == pytest.approx(100.0)
    assert quote.profit_loss == pytest.approx(0.0)
    assert quote.odds_movement == MOVEMENT_UNCHANGED


def test_floor_applies_to_long_shots():
    quote = price_cash_out(100, 500, 20000)
    assert quote.floor_applied is True
    assert quote.sell_value == pytest.approx(5.0)
    assert quote.profit_loss == pytest.approx(-95.0)


def test_custom_floor():
    quote = price_cash_out(100, 500, 20000, floor_pct=0.0)
    assert quote.floor_applied is False
    assert quote.sell_value == pytest.approx(2.99, abs=0.01)


@pytest.mark.parametrize("stake, original, current", [
    (100, 150, 120),
    (25, -300, 400),
    (10, 900, 10000),
    (1000, -110, -110),
    (0.01, -10000, 10000),
    (0.09, -10000, 10000),
    (0.30, -10000, 10000),
    (0.30, 150, 120),
])
def test_sell_value_never_below_floor(stake, original, current):
    quote = price_cash_out(stake, original, current)
    assert quote.sell_value >= stake * 0.05
    assert quote.profit_loss == pytest.approx(quote.sell_value - stake, abs=0.01)


def test_rejects_bad_inputs():
    with pytest.raises(ValueError):
        price_cash_out(0, 150, 120)
    with pytest.raises(ValueError):
        price_cash_out(100, 150, 120, floor_pct=-0.1)
    with pytest.raises(ValueError):
        price_cash_out(100, 50, 120)


def test_small_stake_floor_rounds_up_to_the_cent():
    # 0.30 * 5% = 0.015; rounding to nearest would sell for 0.01
    quote = price_cash_out(0.30, -10000, 10000)
    assert quote.floor_applied is True
    assert quote.sell_value == pytest.approx(0.02)

    quote = price_cash_out(0.01, -10000, 10000)
    assert quote.sell_value == pytest.approx(0.01)
