"""HTTP surface tests using FastAPI's TestClient."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from backend.auth import get_valid_api_keys
from backend.core.errors import AllCredentialsExhausted
from backend.core.settings import EngineSettings, VerificationFallback
from backend.main import app
from backend.services.container import ServiceContainer, get_services
from conftest import NOW, make_event, make_result, odds_response

ADMIN = {"X-API-Key": "admin-key"}
USER = {"X-API-Key": "user-key"}
COMMENCE = NOW + timedelta(days=1)

BET = {
    "event": "Boston Celtics vs Miami Heat",
    "participant": "Boston Celtics",
    "stake": 50,
    "odds": -150,
    "sport": "NBA",
    "commence_time": "2026-01-11T12:00:00Z",
}


@pytest.fixture
def container(session_factory, provider, clock, make_user, monkeypatch):
    monkeypatch.setenv("API_KEY_USER1", "admin-key")
    monkeypatch.setenv("API_KEY_USER2", "user-key")
    get_valid_api_keys.cache_clear()
    make_user("testuser")
    make_user("johndoe")

    provider.fetch_odds.return_value = odds_response(make_event(commence=COMMENCE))
    services = ServiceContainer(
        EngineSettings(odds_api_keys=("k1",)), session_factory, client=provider, clock=clock,
    )
    app.dependency_overrides[get_services] = lambda: services
    yield services
    app.dependency_overrides.clear()
    get_valid_api_keys.cache_clear()


@pytest.fixture
def client(container):
    return TestClient(app)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["database"] == "connected"


def test_odds_listing(client, provider):
    resp = client.get("/api/odds", params={"sport": "NBA", "limit": 5})
    assert resp.status_code == 200
    body = resp.json()
    assert body["total_count"] == 1
    assert body["has_more"] is False
    assert body["events"][0]["event"] == "Boston Celtics vs Miami Heat"
    assert body["events"][0]["odds"][0] == {"name": "Boston Celtics", "price": -150}
    assert body["cache"][0]["status"] == "refreshed"


def test_unknown_sport(client):
    resp = client.get("/api/odds", params={"sport": "CURLING"})
    assert resp.status_code == 404
    assert resp.json()["error"] == "unknown_sport"


def test_api_key_required(client):
    assert client.get("/api/user").status_code == 401
    assert client.get("/api/user", headers={"X-API-Key": "nope"}).status_code == 401


def test_user_balance(client):
    resp = client.get("/api/user", headers=USER)
    assert resp.status_code == 200
    assert resp.json() == {"user_id": 2, "balance": 1000.0}


def test_place_bet_and_history(client):
    resp = client.post("/api/bets", json=BET, headers=USER)
    assert resp.status_code == 201
    body = resp.json()
    assert body["new_balance"] == pytest.approx(950.0)
    assert body["odds_source"] == "provider"

    history = client.get("/api/bets", headers=USER).json()
    assert history["total"] == 1
    assert history["bets"][0]["status"] == "pending"
    assert history["bets"][0]["final_amount"] is None


def test_drifted_odds_conflict(client, provider):
    provider.fetch_odds.return_value = odds_response(make_event(home_price=-200, commence=COMMENCE))
    resp = client.post("/api/bets", json=BET, headers=USER)
    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "odds_drifted"
    assert body["live_odds"] == -200


@pytest.mark.parametrize("field, value", [("odds", 50), ("stake", 0), ("stake", -5)])
def test_invalid_request(client, field, value):
    resp = client.post("/api/bets", json=dict(BET, **{field: value}), headers=USER)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"


def test_insufficient_balance(client):
    resp = client.post("/api/bets", json=dict(BET, stake=5000), headers=USER)
    assert resp.status_code == 400
    assert resp.json()["error"] == "insufficient_balance"
    assert client.get("/api/user", headers=USER).json()["balance"] == 1000.0


def test_unverifiable_odds_rejected_as_unavailable(session_factory, provider, clock, client):
    provider.fetch_odds.side_effect = AllCredentialsExhausted("basketball_nba", [], RuntimeError("down"))
    strict = ServiceContainer(
        EngineSettings(odds_api_keys=("k1",), verification_fallback=VerificationFallback.REJECT),
        session_factory, client=provider, clock=clock,
    )
    app.dependency_overrides[get_services] = lambda: strict

    resp = client.post("/api/bets", json=BET, headers=USER)
    assert resp.status_code == 503
    assert resp.json()["retryable"] is True


def test_sell_flow(client, provider):
    bet_id = client.post("/api/bets", json=BET, headers=USER).json()["bet_id"]
    provider.fetch_odds.return_value = odds_response(make_event(home_price=-170, commence=COMMENCE))

    quote = client.get(f"/api/bets/{bet_id}/sell-quote", headers=USER)
    assert quote.status_code == 200
    assert quote.json()["sell_value"] == pytest.approx(52.47)

    sale = client.post(f"/api/bets/{bet_id}/sell", headers=USER)
    assert sale.status_code == 200
    assert sale.json()["new_balance"] == pytest.approx(1002.47)

    again = client.post(f"/api/bets/{bet_id}/sell", headers=USER)
    assert again.status_code == 409
    assert again.json()["error"] == "bet_not_eligible"


def test_sell_unknown_bet(client):
    resp = client.get("/api/bets/999/sell-quote", headers=USER)
    assert resp.status_code == 404
    assert resp.json()["error"] == "bet_not_found"


def test_admin_endpoints_require_admin(client):
    assert client.post("/admin/resolve-games", headers=USER).status_code == 403
    assert client.post("/admin/refresh-odds", headers=USER).status_code == 403


def test_admin_resolve_games(client, provider, clock):
    client.post("/api/bets", json=BET, headers=USER)
    clock.advance(days=1, hours=3)
    provider.fetch_results.return_value = odds_response(make_result(commence=COMMENCE))

    resp = client.post("/admin/resolve-games", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["bets_won"] == 1
    assert client.get("/api/user", headers=USER).json()["balance"] == pytest.approx(1033.33)


def test_admin_refresh_odds(client, provider):
    provider.fetch_odds.side_effect = lambda sport, **kwargs: odds_response(
        make_event(sport=sport, external_id=f"{sport}-1", commence=COMMENCE),
    )
    resp = client.post("/admin/refresh-odds", headers=ADMIN)
    assert resp.status_code == 200
    assert len(resp.json()["sports"]) == 4
    assert provider.fetch_odds.call_count == 4
