"""Tests for OddsProviderClient: credential failover and payload parsing."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
import requests

from backend.core.errors import AllCredentialsExhausted
from backend.services.odds import OddsProviderClient, parse_event, parse_result, parse_timestamp


def _response(status=200, payload=None, headers=None, json_error=False):
    resp = MagicMock()
    resp.status_code = status
    resp.text = "" if payload is None else str(payload)
    resp.headers = headers or {}
    if json_error:
        resp.json.side_effect = ValueError("Expecting value")
    else:
        resp.json.return_value = payload
    return resp


def _raw_event(event_id="abc", home="Boston Celtics", away="Miami Heat",
               commence="2026-01-11T00:30:00Z", home_price=-150, away_price=130):
    return {
        "id": event_id,
        "sport_key": "basketball_nba",
        "commence_time": commence,
        "home_team": home,
        "away_team": away,
        "bookmakers": [{
            "key": "draftkings",
            "markets": [{
                "key": "h2h",
                "outcomes": [
                    {"name": home, "price": home_price},
                    {"name": away, "price": away_price},
                ],
            }],
        }],
    }


def _client(*responses, keys=("k1", "k2", "k3", "k4", "k5")):
    session = MagicMock()
    session.get.side_effect = list(responses)
    return OddsProviderClient(keys, session=session), session


# ---------------------------------------------------------------------------
# Failover
# ---------------------------------------------------------------------------

def test_first_credential_success():
    client, session = _client(_response(payload=[_raw_event()], headers={"x-requests-remaining": "480"}))
    response = client.fetch_odds("NBA")

    assert response.credential_index == 1
    assert response.requests_remaining == "480"
    assert len(response.items) == 1
    event = response.items[0]
    assert event.event == "Boston Celtics vs Miami Heat"
    assert event.price_for("Miami Heat") == 130
    assert event.commence_time == datetime(2026, 1, 11, 0, 30)

    url = session.get.call_args.args[0]
    params = session.get.call_args.kwargs["params"]
    assert url.endswith("/sports/basketball_nba/odds")
    assert params["apiKey"] == "k1"
    assert params["oddsFormat"] == "american"
    assert params["markets"] == "h2h"


def test_falls_over_in_order_until_a_key_works():
    client, session = _client(
        _response(status=401, payload={"message": "bad key"}),
        requests.exceptions.Timeout("read timed out"),
        _response(payload=[_raw_event()]),
    )
    response = client.fetch_odds("NBA")

    assert response.credential_index == 3
    assert [f.credential_index for f in response.failures] == [1, 2]
    assert response.failures[0].status_code == 401
    used_keys = [c.kwargs["params"]["apiKey"] for c in session.get.call_args_list]
    assert used_keys == ["k1", "k2", "k3"]


def test_all_rate_limited_raises_exhausted():
    client, session = _client(*[_response(status=429, payload={"message": "quota"}) for _ in range(5)])
    with pytest.raises(AllCredentialsExhausted) as excinfo:
        client.fetch_odds("NBA")

    assert session.get.call_count == 5
    assert len(excinfo.value.failures) == 5
    assert excinfo.value.retryable is True
    assert "k1" not in str(excinfo.value)


def test_invalid_json_and_non_list_payload_count_as_failures():
    client, _ = _client(
        _response(json_error=True),
        _response(payload={"error": "unexpected"}),
        keys=("k1", "k2"),
    )
    with pytest.raises(AllCredentialsExhausted):
        client.fetch_odds("NFL")


def test_no_credentials_configured():
    client = OddsProviderClient([], session=MagicMock())
    with pytest.raises(AllCredentialsExhausted):
        client.fetch_odds("NBA")


def test_each_attempt_has_its_own_timeout():
    session = MagicMock()
    session.get.return_value = _response(payload=[])
    client = OddsProviderClient(["k1"], timeout=2.5, session=session)
    client.fetch_odds("NBA")
    assert session.get.call_args.kwargs["timeout"] == 2.5


def test_commence_window_and_event_ids_are_sent():
    client, session = _client(_response(payload=[]))
    client.fetch_odds(
        "NBA",
        commence_from=datetime(2026, 1, 10, 12, 0),
        commence_to=datetime(2026, 1, 24, 12, 0),
        event_ids=["abc", "def"],
    )
    params = session.get.call_args.kwargs["params"]
    assert params["commenceTimeFrom"] == "2026-01-10T12:00:00Z"
    assert params["commenceTimeTo"] == "2026-01-24T12:00:00Z"
    assert params["eventIds"] == "abc,def"


# ---------------------------------------------------------------------------
# Payload resilience
# ---------------------------------------------------------------------------

def test_malformed_events_are_skipped():
    payload = [
        _raw_event(event_id="good"),
        {"id": "no-teams", "commence_time": "2026-01-11T00:30:00Z"},
        _raw_event(event_id="bad-time", commence="not a date"),
        dict(_raw_event(event_id="no-books"), bookmakers=[]),
        "garbage",
    ]
    client, _ = _client(_response(payload=payload))
    response = client.fetch_odds("NBA")

    assert [e.external_id for e in response.items] == ["good"]
    assert response.skipped == 4


def test_parse_event_uses_first_bookmaker_pricing_both_teams():
    raw = _raw_event()
    raw["bookmakers"].insert(0, {
        "key": "partial",
        "markets": [{"key": "h2h", "outcomes": [{"name": "Boston Celtics", "price": -140}]}],
    })
    event = parse_event(raw, "NBA")
    assert event.bookmaker == "draftkings"
    assert event.price_for("Boston Celtics") == -150


def test_parse_result_reads_scores():
    raw = {
        "id": "g1",
        "home_team": "Boston Celtics",
        "away_team": "Miami Heat",
        "commence_time": "2026-01-09T00:30:00Z",
        "completed": True,
        "scores": [
            {"name": "Boston Celtics", "score": "112"},
            {"name": "Miami Heat", "score": "104"},
        ],
    }
    result = parse_result(raw, "NBA")
    assert result.has_final_score
    assert result.winner() == "Boston Celtics"
    assert result.loser() == "Miami Heat"


def test_parse_result_incomplete_game_has_no_winner():
    raw = {"home_team": "A Team", "away_team": "B Team", "completed": False, "scores": None}
    result = parse_result(raw, "NBA")
    assert result.has_final_score is False
    assert result.winner() is None


def test_fetch_results_clamps_days_from():
    client, session = _client(_response(payload=[]))
    client.fetch_results("NBA", days_from=10)
    params = session.get.call_args.kwargs["params"]
    assert params["daysFrom"] == 3
    assert session.get.call_args.args[0].endswith("/sports/basketball_nba/scores")


def test_parse_timestamp_converts_offsets_to_naive_utc():
    assert parse_timestamp("2026-01-11T02:30:00+02:00") == datetime(2026, 1, 11, 0, 30)
    assert parse_timestamp("") is None
    assert parse_timestamp(None) is None
