"""
HTTP surface tests: member portal and officer portal end to end.
"""

import pytest
from fastapi.testclient import TestClient

import escobar.api
from escobar.api import create_app
from escobar.identity import IdentityAdapter
from escobar.settings import Settings
from escobar.store import AccountStore

PORTAL_CODE = "portal-code"

SETTINGS = Settings(
    officer_portal_code=PORTAL_CODE,
    token_secret="api-test-secret",
    password_iterations=1000,
    officer_handles=("boss", "deputy"),
)


@pytest.fixture
def client():
    store = AccountStore()
    IdentityAdapter(store, SETTINGS).register("boss", "long-enough")
    return TestClient(create_app(settings=SETTINGS, store=store))


def _session(response):
    body = response.json()
    return {"Authorization": f"Bearer {body['session']['token']}"}, body["member"]["id"]


def _register(client, handle, secret="long-enough"):
    response = client.post("/auth/register", json={"handle": handle, "secret": secret})
    assert response.status_code == 201, response.text
    return _session(response)


def _login(client, handle, secret="long-enough"):
    response = client.post("/auth/login", json={"handle": handle, "secret": secret})
    assert response.status_code == 200, response.text
    return _session(response)


@pytest.fixture
def officer(client):
    headers, officer_id = _login(client, "boss")
    response = client.post("/officer/login", json={"portal_code": PORTAL_CODE}, headers=headers)
    assert response.status_code == 200, response.text
    headers["X-Officer-Token"] = response.json()["token"]
    return headers, officer_id


@pytest.fixture
def member(client):
    return _register(client, "Member.One")


class TestAuthRoutes:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy", "service": "escobar-ledger"}

    def test_register_and_me(self, client, member):
        headers, member_id = member

        response = client.get("/me", headers=headers)

        assert response.status_code == 200
        assert response.json()["id"] == member_id
        assert response.json()["handle"] == "Member.One"
        assert response.json()["balance"] == 0

    def test_register_rejects_short_handle(self, client):
        response = client.post("/auth/register", json={"handle": "ab", "secret": "long-enough"})

        assert response.status_code == 400
        assert "3-20" in response.json()["detail"]

    def test_duplicate_handle(self, client, member):
        response = client.post("/auth/register", json={"handle": "member.one", "secret": "long-enough"})

        assert response.status_code == 400

    def test_login_and_logout(self, client, member):
        _, member_id = member

        response = client.post("/auth/login", json={"handle": "MEMBER.ONE", "secret": "long-enough"})
        assert response.status_code == 200
        headers = {"Authorization": f"Bearer {response.json()['session']['token']}"}
        assert client.get("/me", headers=headers).json()["id"] == member_id

        client.post("/auth/logout", headers=headers)
        assert client.get("/me", headers=headers).status_code == 401

    def test_login_wrong_secret(self, client, member):
        response = client.post("/auth/login", json={"handle": "member.one", "secret": "nope-nope"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid handle or secret."

    def test_anonymous_requests_refused(self, client):
        assert client.get("/me").status_code == 401
        assert client.get("/announcements").status_code == 401
        assert client.get("/me", headers={"Authorization": "Bearer forged"}).status_code == 401

    def test_importing_api_builds_no_app(self):
        assert not hasattr(escobar.api, "app")


class TestOfficerRoutes:
    def test_officer_login_requires_code_and_roster(self, client, member):
        headers, _ = member

        response = client.post("/officer/login", json={"portal_code": PORTAL_CODE}, headers=headers)

        assert response.status_code == 403
        assert response.json()["detail"] == "Not authorized."

    def test_wrong_portal_code(self, client):
        headers, _ = _login(client, "boss")

        response = client.post("/officer/login", json={"portal_code": "guess"}, headers=headers)

        assert response.status_code == 403

    def test_officer_routes_need_capability_token(self, client, officer):
        headers, _ = officer
        session_only = {"Authorization": headers["Authorization"]}

        assert client.get("/officer/members", headers=session_only).status_code == 403
        assert client.get("/officer/members", headers=headers).status_code == 200

    def test_member_cannot_reuse_officer_token(self, client, officer, member):
        member_headers, _ = member
        stolen = {**member_headers, "X-Officer-Token": officer[0]["X-Officer-Token"]}

        assert client.get("/officer/members", headers=stolen).status_code == 403

    def test_spend_flow(self, client, officer, member):
        officer_headers, officer_id = officer
        member_headers, member_id = member

        response = client.post(f"/officer/members/{member_id}/adjust",
                               json={"action": "add", "amount": 50, "reason": "Welcome bonus"},
                               headers=officer_headers)
        assert response.status_code == 200
        assert response.json()["kind"] == "add"

        response = client.post("/me/spend-requests", json={"amount": 30, "reason": "Hoodie"}, headers=member_headers)
        assert response.status_code == 201
        request_id = response.json()["id"]

        pending = client.get("/officer/spend-requests", headers=officer_headers).json()
        assert [r["id"] for r in pending] == [request_id]

        response = client.post(f"/officer/spend-requests/{request_id}/resolve",
                               json={"decision": "approve", "note": "Enjoy"}, headers=officer_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "approved"
        assert response.json()["handled_by"] == officer_id

        again = client.post(f"/officer/spend-requests/{request_id}/resolve",
                            json={"decision": "reject"}, headers=officer_headers)
        assert again.status_code == 409
        assert again.json()["detail"] == "Already handled."

        assert client.get("/me", headers=member_headers).json()["balance"] == 20
        logs = client.get("/me/logs", headers=member_headers).json()
        assert logs["entries"][0]["kind"] == "spend"
        assert logs["entries"][0]["reason"] == "Spent: Hoodie"
        mine = client.get("/me/spend-requests", headers=member_headers).json()
        assert mine[0]["officer_note"] == "Enjoy"

        balance = client.get("/me/balance", headers=member_headers).json()
        assert balance["consistent"] is True
        audit = client.get(f"/officer/members/{member_id}/balance", headers=officer_headers).json()
        assert audit["ledger_total"] == 20

    def test_overdraw_refused(self, client, officer, member):
        officer_headers, _ = officer
        _, member_id = member

        response = client.post(f"/officer/members/{member_id}/adjust",
                               json={"action": "deduct", "amount": 5, "reason": "Fine"},
                               headers=officer_headers)

        assert response.status_code == 400
        assert response.json()["detail"] == "Would go negative (current 0)."

    def test_adjust_requires_positive_amount(self, client, officer, member):
        officer_headers, member_id = officer[0], member[1]

        response = client.post(f"/officer/members/{member_id}/adjust",
                               json={"action": "deduct", "amount": -5, "reason": "Sneaky credit"},
                               headers=officer_headers)

        assert response.status_code == 400
        assert client.get(f"/officer/members/{member_id}/balance", headers=officer_headers).json()["balance"] == 0

    def test_adjust_unknown_member(self, client, officer):
        response = client.post("/officer/members/nobody/adjust",
                               json={"action": "add", "amount": 5, "reason": "Ghost"},
                               headers=officer[0])

        assert response.status_code == 404

    def test_disabling_locks_member_out(self, client, officer, member):
        officer_headers, _ = officer
        member_headers, member_id = member

        response = client.post(f"/officer/members/{member_id}/toggle-disabled", headers=officer_headers)
        assert response.json() == {"member_id": member_id, "disabled": True}

        assert client.get("/me", headers=member_headers).status_code == 403
        response = client.post(f"/officer/members/{member_id}/adjust",
                               json={"action": "add", "amount": 5, "reason": "Bonus"},
                               headers=officer_headers)
        assert response.status_code == 409

    def test_announcements(self, client, officer, member):
        officer_headers, _ = officer
        member_headers, _ = member

        response = client.post("/officer/announcements", json={"title": "Meeting", "body": "Friday"},
                               headers=officer_headers)
        assert response.status_code == 201

        listed = client.get("/announcements", headers=member_headers).json()
        assert [a["title"] for a in listed] == ["Meeting"]

        empty = client.post("/officer/announcements", json={"title": " ", "body": "x"}, headers=officer_headers)
        assert empty.status_code == 400

    def test_member_list(self, client, officer, member):
        members = client.get("/officer/members", headers=officer[0]).json()

        assert [m["handle"] for m in members] == ["boss", "Member.One"]

    def test_member_search(self, client, officer, member):
        members = client.get("/officer/members", params={"search": "ONE"}, headers=officer[0]).json()

        assert [m["handle"] for m in members] == ["Member.One"]

    def test_registering_listed_handle_does_not_grant_officer(self, client):
        headers, _ = _register(client, "deputy")

        response = client.post("/officer/login", json={"portal_code": PORTAL_CODE}, headers=headers)

        assert response.status_code == 403
