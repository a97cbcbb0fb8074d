"""Tests for EngineSettings.from_env and the sport registry."""

from datetime import timedelta

import pytest

from backend.core.errors import UnknownSport
from backend.core.settings import EngineSettings, VerificationFallback
from backend.core.sport_config import SPORTS, SportConfig, get_sport_config, supported_sports


def test_defaults_from_empty_environment():
    settings = EngineSettings.from_env({})
    assert settings.odds_api_keys == ()
    assert settings.cache_duration == timedelta(minutes=60)
    assert settings.lookahead == timedelta(days=14)
    assert settings.max_events_for("NBA") == 5
    assert settings.drift_tolerance_for("NFL") == 10
    assert settings.settlement_grace_for("MLB") == timedelta(hours=2)
    assert settings.verification_fallback is VerificationFallback.ACCEPT_ASSERTED
    assert settings.cash_out_floor_pct == pytest.approx(0.05)
    assert settings.betting_cutoff == timedelta(0)


def test_credentials_are_ordered_and_blanks_dropped():
    settings = EngineSettings.from_env({
        "ODDS_API_KEY": "first",
        "ODDS_API_KEY_2": "  ",
        "ODDS_API_KEY_3": "third",
        "ODDS_API_KEY_5": "fifth",
    })
    assert settings.odds_api_keys == ("first", "third", "fifth")


def test_per_sport_overrides():
    settings = EngineSettings.from_env({
        "MAX_EVENTS_PER_SPORT": "8",
        "MAX_EVENTS_NBA": "12",
        "ODDS_DRIFT_TOLERANCE": "15",
        "ODDS_DRIFT_TOLERANCE_NFL": "25",
        "SETTLEMENT_GRACE_HOURS_MLB": "4.5",
    })
    assert settings.max_events_for("NBA") == 12
    assert settings.max_events_for("NHL") == 8
    assert settings.drift_tolerance_for("nfl") == 25
    assert settings.drift_tolerance_for("NBA") == 15
    assert settings.settlement_grace_for("MLB") == timedelta(hours=4.5)
    assert settings.settlement_grace_for("NBA") == timedelta(hours=2)


def test_bad_values_fall_back_to_defaults():
    settings = EngineSettings.from_env({
        "ODDS_CACHE_MINUTES": "soon",
        "VERIFICATION_FALLBACK": "maybe",
        "RESULTS_DAYS_FROM": "9",
        "SETTLEMENT_WORKERS": "0",
    })
    assert settings.cache_duration == timedelta(minutes=60)
    assert settings.verification_fallback is VerificationFallback.ACCEPT_ASSERTED
    assert settings.results_days_from == 3
    assert settings.settlement_workers == 1


def test_reject_policy_parsed():
    settings = EngineSettings.from_env({"VERIFICATION_FALLBACK": "REJECT"})
    assert settings.verification_fallback is VerificationFallback.REJECT


def test_sport_registry_lookup():
    assert set(supported_sports()) == {"NFL", "NBA", "MLB", "NHL"}
    assert get_sport_config("nba").provider_key == "basketball_nba"
    assert get_sport_config("icehockey_nhl").sport_id == "NHL"
    with pytest.raises(UnknownSport):
        get_sport_config("CURLING")


def test_max_events_falls_back_to_sport_registry(monkeypatch):
    monkeypatch.setitem(SPORTS, "NHL", SportConfig(sport_id="NHL", provider_key="icehockey_nhl", max_events=7))
    assert EngineSettings.from_env({}).max_events_for("NHL") == 7
    assert EngineSettings.from_env({"MAX_EVENTS_PER_SPORT": "3"}).max_events_for("NHL") == 3
