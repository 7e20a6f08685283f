"""HTTP transport: tests through Flask's test client.

Tests cover:
    - Excluded routes go through Requesting and the syncs
    - Error bodies and bad fields map to 400, unanswered requests to 504, runaway flows to 500
    - Included routes are answered straight by the concept
"""

import pytest

from app import PASSTHROUGH_EXCLUSIONS, PASSTHROUGH_INCLUSIONS, build_engine, is_passthrough, make_app
from config import Settings


@pytest.fixture
def settings():
    return Settings(api_base_url="api/", request_timeout_seconds=5.0)


@pytest.fixture
def client(settings):
    app = make_app(build_engine(settings), settings)
    app.config["TESTING"] = True
    return app.test_client()


def _login(client, username="alice", password="pw"):
    resp = client.post("/api/UserAuthentication/register", json={"username": username, "password": password})
    assert resp.status_code == 200
    assert resp.get_json() == {"user": username}
    resp = client.post("/api/UserAuthentication/login", json={"username": username, "password": password})
    assert resp.status_code == 200
    return resp.get_json()["token"]


def test_base_url_is_normalized(settings):
    assert settings.api_base_url == "/api"


def test_register_login_and_create_herd(client):
    token = _login(client)
    resp = client.post("/api/HerdGrouping/createHerd", json={"token": token, "name": "north"})
    assert resp.status_code == 200
    assert resp.get_json() == {"herdName": "north"}
    resp = client.post("/api/HerdGrouping/_listActiveHerds", json={"token": token})
    assert resp.get_json() == {"herds": [{"name": "north", "description": "", "isArchived": False}]}


def test_error_bodies_are_400(client):
    token = _login(client)
    client.post("/api/HerdGrouping/createHerd", json={"token": token, "name": "north"})
    resp = client.post("/api/HerdGrouping/createHerd", json={"token": token, "name": "north"})
    assert resp.status_code == 400
    assert "already exists" in resp.get_json()["error"]
    resp = client.post("/api/HerdGrouping/createHerd", json={"name": "north"})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Token is required for authentication."}


def test_excluded_route_without_syncs_is_504(client):
    token = _login(client)
    resp = client.post("/api/UserAuthentication/verify", json={"token": token})
    assert resp.status_code == 504
    assert "No response" in resp.get_json()["error"]


def test_unlisted_route_is_handled_through_requesting(client, caplog):
    resp = client.post("/api/Weather/forecast", json={})
    assert resp.status_code == 504
    assert "neither included nor excluded" in caplog.text


def test_runaway_flow_is_500():
    settings = Settings(max_flow_events=1)
    client = make_app(build_engine(settings), settings).test_client()
    resp = client.post("/api/HerdGrouping/createHerd", json={"name": "north"})
    assert resp.status_code == 500


def test_passthrough_route_answers_directly(client):
    _login(client)
    resp = client.post("/api/UserAuthentication/_getUsername", json={"user": "alice"})
    assert resp.status_code == 200
    assert resp.get_json() == {"username": "alice"}
    resp = client.post("/api/UserAuthentication/_getUsername", json={"user": "mallory"})
    assert resp.status_code == 400


def test_passthrough_bad_arguments_are_400(client):
    resp = client.post("/api/UserAuthentication/_getUsername", json={"nope": 1})
    assert resp.status_code == 400


def test_non_object_body_is_rejected(client):
    resp = client.post("/api/UserAuthentication/register", json=["alice"])
    assert resp.status_code == 400


def test_inclusions_and_exclusions_do_not_overlap():
    assert not set(PASSTHROUGH_INCLUSIONS) & set(PASSTHROUGH_EXCLUSIONS)
    assert is_passthrough("/UserAuthentication/_getUsername")
    assert not is_passthrough("/UserAuthentication/register")


def test_request_field_named_self_is_not_a_500(client):
    resp = client.post("/api/UserAuthentication/register", json={"username": "bob", "password": "pw", "self": 1})
    assert resp.status_code == 200
    assert resp.get_json() == {"user": "bob"}
    resp = client.post("/api/HerdGrouping/createHerd", json={"self": "x"})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Token is required for authentication."}


def test_missing_credentials_are_named(client):
    resp = client.post("/api/UserAuthentication/register", json={"username": "bob"})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Missing required field(s): password."}


def test_retention_limits_come_from_settings():
    settings = Settings(max_retained_flows=3, max_retained_requests=5)
    eng = build_engine(settings)
    assert eng.max_retained_flows == 3
    assert eng.concepts["Requesting"].max_requests == 5
