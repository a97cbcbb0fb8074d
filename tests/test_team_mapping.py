"""Tests for team-name matching and event name helpers."""

import pytest

from backend.services.team_mapping import (
    MatchKind,
    event_name,
    events_match,
    find_outcome_name,
    match_team,
    normalize_team_name,
    split_event,
    teams_match,
)


@pytest.mark.parametrize("raw, expected", [
    ("The Arsenal", "arsenal"),
    ("Arsenal FC", "arsenal"),
    ("  St. Louis   Blues ", "st louis blues"),
    ("Manchester City", "manchester"),
])
def test_normalize_team_name(raw, expected):
    assert normalize_team_name(raw) == expected


def test_exact_match_is_case_insensitive():
    match = match_team("boston celtics", ["Miami Heat", "Boston Celtics"])
    assert match.kind is MatchKind.EXACT
    assert match.matched == "Boston Celtics"


def test_normalized_match():
    match = match_team("Arsenal FC", ["Chelsea", "The Arsenal"])
    assert match.kind is MatchKind.NORMALIZED
    assert match.matched == "The Arsenal"


def test_containment_match_requires_unique_candidate():
    match = match_team("Lakers", ["Los Angeles Lakers", "Golden State Warriors"])
    assert match.kind is MatchKind.NORMALIZED
    assert match.matched == "Los Angeles Lakers"

    ambiguous = match_team("New York", ["New York Rangers", "New York Islanders"])
    assert ambiguous.kind is MatchKind.UNRESOLVED


def test_fuzzy_match_tolerates_small_typos():
    match = match_team("Boston Celtcs", ["Boston Celtics", "Miami Heat"])
    assert match.kind is MatchKind.FUZZY
    assert match.matched == "Boston Celtics"
    assert match.score >= 90


def test_similar_teams_do_not_match():
    assert not teams_match("New York Rangers", "New York Islanders")
    assert not teams_match("Miami Heat", "Boston Celtics")


def test_unresolved_on_empty_input():
    assert match_team("", ["Boston Celtics"]).kind is MatchKind.UNRESOLVED
    assert match_team("Boston Celtics", []).resolved is False


def test_event_name_round_trip():
    event = event_name("Boston Celtics", "Miami Heat")
    assert event == "Boston Celtics vs Miami Heat"
    assert split_event(event) == ("Boston Celtics", "Miami Heat")


@pytest.mark.parametrize("event", ["Boston Celtics", "", " vs Miami Heat", "A vs B vs C"])
def test_split_event_rejects_malformed(event):
    assert split_event(event) is None


def test_events_match_is_orientation_sensitive():
    assert events_match("Boston Celtics", "Miami Heat", "boston celtics", "miami heat")
    assert not events_match("Boston Celtics", "Miami Heat", "Miami Heat", "Boston Celtics")


def test_find_outcome_name():
    names = ["Boston Celtics", "Miami Heat"]
    assert find_outcome_name("Miami Heat", names) == "Miami Heat"
    assert find_outcome_name("Celtics", names) == "Boston Celtics"
    assert find_outcome_name("Chicago Bulls", names) is None
