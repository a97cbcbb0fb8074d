"""Tests for OddsVerificationService: provider first, cache fallback."""

from datetime import timedelta

import pytest

from backend.core.errors import AllCredentialsExhausted
from backend.services.odds_cache import OddsCacheStore
from backend.services.verification import SOURCE_CACHE, SOURCE_PROVIDER, OddsVerificationService
from conftest import NOW, make_event, odds_response


@pytest.fixture
def store(session_factory, clock):
    return OddsCacheStore(session_factory, clock=clock)


@pytest.fixture
def verifier(provider, store, clock):
    return OddsVerificationService(provider, store, clock=clock)


def test_provider_odds_returned_and_written_back(verifier, provider, store):
    store.replace_sport("NBA", [make_event(home_price=-150)])
    provider.fetch_odds.return_value = odds_response(make_event(home_price=-170))

    live = verifier.get_live_odds("NBA", "Boston Celtics vs Miami Heat")

    assert live.source == SOURCE_PROVIDER
    assert live.price_for("Boston Celtics") == -170
    assert store.find_event("NBA", "Boston Celtics vs Miami Heat").price_for("Boston Celtics") == -170
    assert provider.fetch_odds.call_args.kwargs["event_ids"] == ["evt-1"]


def test_unknown_external_id_fetches_whole_sport(verifier, provider):
    provider.fetch_odds.return_value = odds_response(make_event())
    live = verifier.get_live_odds("NBA", "Boston Celtics vs Miami Heat")
    assert live.source == SOURCE_PROVIDER
    assert provider.fetch_odds.call_args.kwargs["event_ids"] is None
    assert provider.fetch_odds.call_args.kwargs["commence_from"] == NOW


def test_provider_down_falls_back_to_cache(verifier, provider, store):
    store.replace_sport("NBA", [make_event(away_price=140)])
    provider.fetch_odds.side_effect = AllCredentialsExhausted("basketball_nba", [], RuntimeError("down"))

    live = verifier.get_live_odds("NBA", "Boston Celtics vs Miami Heat")

    assert live.source == SOURCE_CACHE
    assert live.price_for("Miami Heat") == 140
    assert live.refreshed_at == NOW


def test_event_missing_from_provider_falls_back_to_cache(verifier, provider, store):
    store.replace_sport("NBA", [make_event()])
    provider.fetch_odds.return_value = odds_response(
        make_event(home="Chicago Bulls", away="Detroit Pistons", external_id="other"),
    )
    live = verifier.get_live_odds("NBA", "Boston Celtics vs Miami Heat")
    assert live.source == SOURCE_CACHE


def test_no_source_returns_none(verifier, provider):
    provider.fetch_odds.side_effect = AllCredentialsExhausted("basketball_nba", [], RuntimeError("down"))
    assert verifier.get_live_odds("NBA", "Boston Celtics vs Miami Heat") is None


def test_started_event_not_served_from_cache(verifier, provider, store, clock):
    store.replace_sport("NBA", [make_event(commence=NOW + timedelta(minutes=30))])
    clock.advance(hours=1)
    provider.fetch_odds.return_value = odds_response()
    assert verifier.get_live_odds("NBA", "Boston Celtics vs Miami Heat") is None
