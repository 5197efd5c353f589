import asyncio
import time

import pytest

from curbside.errors import StoreUnavailable
from curbside.geohash import encode
from curbside.realtime import InMemorySubscriptionRegistry
from curbside.store import InMemoryStore

LAT, LNG = -34.6037, -58.3816
USER = {"X-User-Id": "test-user"}


def post_report(client, headers=None, **overrides):
    body = {"lat": LAT, "lng": LNG, "count_bucket": "2_5"}
    body.update(overrides)
    return client.post("/report", json=body, headers=headers or {})


class DownStore(InMemoryStore):
    def query_prefix(self, prefix):
        raise StoreUnavailable("Store read failed for reports")


def on_event_loop():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class WatchedRegistry(InMemorySubscriptionRegistry):
    def __init__(self):
        super().__init__()
        self.touched = []
        self.unsubscribed_on_loop = []

    def touch(self, connection_id):
        self.touched.append(connection_id)

    def unsubscribe(self, connection_id):
        self.unsubscribed_on_loop.append(on_event_loop())
        super().unsubscribe(connection_id)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_create_report(client, clock):
    resp = post_report(client, headers=USER)
    assert resp.status_code == 201
    body = resp.json()
    assert set(body) == {"reportId", "geoHash6", "side", "count_bucket", "confidence", "ts"}
    assert body["count_bucket"] == "2_5"
    assert body["geoHash6"] == encode(LAT, LNG, 6)
    assert body["side"] in {"N", "S", "E", "W"}
    assert body["confidence"] == 1.0
    assert body["reportId"] == f"{body['geoHash6']}#{body['side']}#{body['ts']}"


def test_invalid_bucket_is_400(client):
    resp = post_report(client, count_bucket="invalid")
    assert resp.status_code == 400
    assert "Invalid count_bucket" in resp.json()["error"]
    assert resp.json()["kind"] == "InvalidEnum"


def test_missing_coordinates_is_400(client):
    resp = client.post("/report", json={"count_bucket": "2_5"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing required fields: lat, lng", "kind": "MissingField"}


def test_malformed_body_is_400(client):
    resp = post_report(client, lat="north-ish")
    assert resp.status_code == 400
    assert resp.json()["kind"] == "InvalidRequest"


def test_out_of_range_is_400(client):
    resp = post_report(client, lat=123.0)
    assert resp.status_code == 400
    assert resp.json()["kind"] == "InvalidCoordinate"


def test_rate_limit_is_429_for_authenticated_users(client, clock):
    assert post_report(client, headers=USER).status_code == 201
    clock.advance(2)
    resp = post_report(client, headers=USER)
    assert resp.status_code == 429
    assert resp.json()["kind"] == "RateLimited"


def test_anonymous_reports_are_not_rate_limited(client, clock):
    assert post_report(client).status_code == 201
    clock.advance(2)
    assert post_report(client).status_code == 201


def test_nearby_returns_clusters(client, clock):
    first = post_report(client, headers={"X-User-Id": "a"}, side="N", count_bucket="5_plus").json()
    clock.advance(30)
    second = post_report(client, headers={"X-User-Id": "b"}, side="N", count_bucket="1").json()
    post_report(client, side="S")

    resp = client.get("/nearby", params={"lat": LAT, "lng": LNG, "radius": 500})
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 2
    by_side = {c["side"]: c for c in body["clusters"]}
    assert by_side["N"] == {
        "geoHash6": first["geoHash6"],
        "side": "N",
        "count_bucket": "1",
        "confidence": 1.0,
        "last_ts": second["ts"],
        "lat": LAT,
        "lng": LNG,
    }
    assert by_side["S"]["count_bucket"] == "2_5"


def test_nearby_default_radius(client):
    post_report(client)
    resp = client.get("/nearby", params={"lat": LAT + 0.005, "lng": LNG})
    assert resp.status_code == 200
    assert resp.json()["total"] == 1


def test_nearby_hides_expired_reports(client, clock):
    post_report(client)
    clock.advance(15 * 60 + 1)
    resp = client.get("/nearby", params={"lat": LAT, "lng": LNG})
    assert resp.json() == {"clusters": [], "total": 0}


def test_nearby_requires_coordinates(client):
    resp = client.get("/nearby", params={"lng": LNG})
    assert resp.status_code == 400
    assert "Missing required parameters: lat, lng" in resp.json()["error"]


@pytest.mark.parametrize("params", [{"lat": "invalid", "lng": LNG}, {"lat": 95, "lng": LNG}, {"lat": LAT, "lng": LNG, "radius": "far"}])
def test_nearby_rejects_invalid_values(client, params):
    resp = client.get("/nearby", params=params)
    assert resp.status_code == 400
    assert resp.json()["kind"] == "InvalidCoordinate"


def test_nearby_invalid_lat_message(client):
    resp = client.get("/nearby", params={"lat": "invalid", "lng": LNG})
    assert "Invalid lat/lng values" in resp.json()["error"]


def test_store_outage_is_503(client, services):
    services.reports = DownStore("reports")
    resp = client.get("/nearby", params={"lat": LAT, "lng": LNG})
    assert resp.status_code == 503
    assert resp.json()["kind"] == "StoreUnavailable"


def test_confirm(client):
    resp = client.post("/confirm", json={"reportId": "69y6q3#N#ts", "status": "still_free"})
    assert resp.status_code == 401

    resp = client.post("/confirm", json={"reportId": "69y6q3#N#ts", "status": "still_free"}, headers=USER)
    assert resp.status_code == 200
    assert resp.json()["reportId"] == "69y6q3#N#ts"
    assert resp.json()["status"] == "still_free"

    resp = client.post("/confirm", json={"reportId": "69y6q3#N#ts", "status": "maybe"}, headers=USER)
    assert resp.status_code == 400


def test_parking_session_flow(client, clock):
    assert client.get("/me/park", headers=USER).status_code == 404
    assert client.post("/park/start", json={"lat": LAT, "lng": LNG}).status_code == 401

    resp = client.post("/park/start", json={"lat": LAT, "lng": LNG, "note": "blue door"}, headers=USER)
    assert resp.status_code == 201
    session = resp.json()
    assert session["sessionId"].startswith("test-user#")
    assert session["note"] == "blue door"

    assert client.get("/me/park", headers=USER).json() == session

    clock.advance(600)
    resp = client.post("/park/end", headers=USER)
    assert resp.status_code == 200
    assert resp.json()["sessionId"] == session["sessionId"]

    assert client.post("/park/end", headers=USER).status_code == 404
    assert client.get("/me/park", headers=USER).json()["kind"] == "SessionNotFound"


def test_websocket_subscription_receives_report_updates(client):
    area = encode(LAT, LNG, 5)
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"action": "subscribe", "area": area})
        assert ws.receive_json() == {"type": "subscription_confirmed", "area": area}

        receipt = post_report(client, side="W").json()
        update = ws.receive_json()
        assert update == {
            "type": "report_update",
            "geoHash6": receipt["geoHash6"],
            "side": "W",
            "count_bucket": "2_5",
            "confidence": 1.0,
            "ts": receipt["ts"],
        }


def test_websocket_protocol_errors(client, services):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "error": "Invalid message format"}
        ws.send_json({"action": "subscribe"})
        assert ws.receive_json() == {"type": "error", "error": "Missing area parameter"}
        ws.send_json({"action": "jump"})
        assert ws.receive_json() == {"type": "error", "error": "Unknown action"}

        ws.send_json({"action": "subscribe", "area": "69y6q"})
        ws.receive_json()
        assert len(services.registry.list_subscribers("69y6q")) == 1

    # Disconnect drops the subscription.
    assert services.registry.list_subscribers("69y6q") == []


def test_websocket_cleanup_runs_off_the_event_loop(client, services):
    services.registry = WatchedRegistry()
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"action": "subscribe", "area": "69y6q"})
        ws.receive_json()

    assert services.registry.list_subscribers("69y6q") == []
    assert services.registry.unsubscribed_on_loop == [False]


def test_websocket_heartbeat_refreshes_subscription(client, services):
    services.registry = WatchedRegistry()
    services.heartbeat_interval_s = 0.01
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"action": "subscribe", "area": "69y6q"})
        ws.receive_json()
        deadline = time.monotonic() + 2
        while not services.registry.touched and time.monotonic() < deadline:
            time.sleep(0.01)

    assert services.registry.touched
    assert len(set(services.registry.touched)) == 1
