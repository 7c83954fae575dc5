import json
import logging

import pytest

import atb_proxy
from atb_errors import InvalidConfig, MissingConfig
from conftest import failing


_ENV_KEYS = [
    "ATB_CONFIG",
    "ATB_USER",
    "ATB_PASS",
    "ATB_URL",
    "STOPS_CACHE_TTL_SEC",
    "DEPARTURES_CACHE_TTL_SEC",
    "CACHE_CLEANUP_INTERVAL_SEC",
    "CORS_ALLOWED_ORIGINS",
]


def load_settings(monkeypatch, **env):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return atb_proxy.Settings.from_env()


@pytest.fixture
def http(api):
    return atb_proxy.create_app(api).test_client()


def test_list_stops(http, client):
    resp = http.get("/api/v1/busstops")
    assert resp.status_code == 200
    assert resp.mimetype == "application/json"
    nodes = [s["nodeId"] for s in resp.get_json()["stops"]]
    assert nodes == [101, 102, 103]

    http.get("/api/v1/busstops")
    assert client.stop_calls == 1


def test_get_stop(http):
    resp = http.get("/api/v1/busstops/102")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["nodeId"] == 102
    assert data["description"] == "Munkegata"


def test_get_unknown_stop(http):
    resp = http.get("/api/v1/busstops/999")
    assert resp.status_code == 404
    assert resp.get_json() == {"status": 404, "message": "bus stop with nodeID=999 not found"}


def test_get_stop_invalid_node_id(http, client):
    resp = http.get("/api/v1/busstops/abc")
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "missing or invalid nodeID"
    assert client.stop_calls == 0


@pytest.mark.parametrize("prefix", ["/api/v1/busstops/", "/api/v1/departures/"])
@pytest.mark.parametrize("node_id", ["1" * 5000, "9" * 20])
def test_oversized_node_id_is_bad_request(http, client, prefix, node_id):
    resp = http.get(prefix + node_id)
    assert resp.status_code == 400
    assert resp.get_json() == {"status": 400, "message": "missing or invalid nodeID"}
    assert client.stop_calls == 0
    assert client.forecast_calls == []


def test_client_errors_not_logged_as_warnings(http, client, caplog):
    caplog.set_level(logging.DEBUG, logger="atb_proxy")
    assert http.get("/api/v1/busstops/999").status_code == 404
    assert http.get("/api/v1/departures/abc").status_code == 400
    assert [r for r in caplog.records if r.levelno >= logging.WARNING] == []

    client.forecast_error = failing()
    assert http.get("/api/v1/departures/101").status_code == 500
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "secret_pass" in warnings[0].getMessage()


def test_unknown_stop_departures_skip_forecast(http, client):
    resp = http.get("/api/v1/departures/999")
    assert resp.status_code == 404
    assert "999" in resp.get_json()["message"]
    assert client.forecast_calls == []


def test_departures(http, client):
    resp = http.get("/api/v1/departures/101")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["isGoingTowardsCentrum"] is False
    assert [d["line"] for d in data["departures"]] == ["5", "22"]
    assert client.forecast_calls == [101]


def test_departures_invalid_node_id(http, client):
    resp = http.get("/api/v1/departures/10x")
    assert resp.status_code == 400
    assert client.forecast_calls == []


def test_forecast_failure_does_not_leak_cause(http, client):
    client.forecast_error = failing()
    resp = http.get("/api/v1/departures/101")
    assert resp.status_code == 500
    assert resp.get_json() == {"status": 500, "message": "could not get departures from atb"}
    body = resp.get_data(as_text=True)
    assert "10.0.0.7" not in body
    assert "secret_pass" not in body


def test_stops_failure(http, client):
    client.stops_error = failing()
    for path in ("/api/v1/busstops", "/api/v1/busstops/101", "/api/v1/departures/101"):
        resp = http.get(path)
        assert resp.status_code == 500
        assert "secret_pass" not in resp.get_data(as_text=True)
    assert client.forecast_calls == []


def test_unexpected_error_is_500(http, api, monkeypatch):
    def boom():
        raise KeyError("internal detail")

    monkeypatch.setattr(api, "list_stops", boom)
    resp = http.get("/api/v1/busstops")
    assert resp.status_code == 500
    assert "internal detail" not in resp.get_data(as_text=True)


@pytest.mark.parametrize(
    "method, path",
    [("GET", "/"), ("GET", "/api/v2/busstops"), ("POST", "/api/v1/busstops")],
)
def test_unmatched_route(http, client, method, path):
    resp = http.open(path, method=method)
    assert resp.status_code == 404
    assert resp.get_json() == {"status": 404, "message": "route not found"}
    assert client.stop_calls == 0


def test_pretty(http):
    compact = http.get("/api/v1/busstops/101").get_data(as_text=True)
    pretty = http.get("/api/v1/busstops/101?pretty").get_data(as_text=True)
    assert "\n" not in compact
    assert pretty.startswith('{\n  "stopId"')
    assert json.loads(pretty) == json.loads(compact)


def test_security_headers(http):
    resp = http.get("/api/v1/busstops")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_cors_allow_deny(monkeypatch, api):
    settings = load_settings(monkeypatch, CORS_ALLOWED_ORIGINS="http://allowed.test")
    http = atb_proxy.create_app(api, settings).test_client()

    resp = http.get("/api/v1/busstops", headers={"Origin": "http://allowed.test"})
    assert resp.headers.get("Access-Control-Allow-Origin") == "http://allowed.test"

    resp = http.get("/api/v1/busstops", headers={"Origin": "http://blocked.test"})
    assert "Access-Control-Allow-Origin" not in resp.headers


def test_settings_from_env(monkeypatch):
    settings = load_settings(
        monkeypatch,
        ATB_USER="user",
        ATB_PASS="pass",
        STOPS_CACHE_TTL_SEC="900",
        DEPARTURES_CACHE_TTL_SEC="not-a-number",
    )
    assert (settings.atb_user, settings.atb_pass) == ("user", "pass")
    assert settings.atb_url is None
    assert settings.stops_ttl_sec == 900
    assert settings.departures_ttl_sec == 60


@pytest.mark.parametrize(
    "env",
    [
        {"STOPS_CACHE_TTL_SEC": "0"},
        {"STOPS_CACHE_TTL_SEC": "-5"},
        {"DEPARTURES_CACHE_TTL_SEC": "0"},
        {"CACHE_CLEANUP_INTERVAL_SEC": "-1"},
    ],
)
def test_settings_reject_unusable_durations(monkeypatch, env):
    with pytest.raises(InvalidConfig):
        load_settings(monkeypatch, **env)


def test_cleanup_can_be_disabled(monkeypatch):
    assert load_settings(monkeypatch, CACHE_CLEANUP_INTERVAL_SEC="0").cleanup_interval_sec == 0


def test_main_requires_credentials(monkeypatch):
    load_settings(monkeypatch)
    monkeypatch.setattr(atb_proxy, "load_dotenv", lambda: None)
    with pytest.raises(MissingConfig):
        atb_proxy.main()
