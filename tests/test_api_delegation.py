"""
Delegation API tests.

Tests cover:
  - POST /delegations (201, validation errors as 400 with code)
  - accept / reject / cancel endpoints and their error mapping
  - GET list / mine / active / check-delegate / permission-types
"""


def _create(client, org, **overrides):
    body = {
        "company_id": org.company.id,
        "delegator_id": org.D.id,
        "delegate_id": org.G.id,
        "permissions": ["APPROVE_LEAVE"],
        "start_date": "2024-01-01",
        "end_date": "2099-12-31",
    }
    body.update(overrides)
    return client.post("/api/v1/delegations", json=body)


# ═════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════

class TestCreateAPI:
    def test_create(self, client, org):
        res = _create(client, org)
        assert res.status_code == 201
        data = res.get_json()
        assert data["status"] == "PENDING"
        assert data["permissions"] == ["APPROVE_LEAVE"]
        assert data["delegate"]["id"] == org.G.id

    def test_self_delegation(self, client, org):
        res = _create(client, org, delegate_id=org.D.id)
        assert res.status_code == 400
        body = res.get_json()
        assert body["error"] == "不能指定自己為代理人"
        assert body["code"] == "ERR_BAD_REQUEST"

    def test_duplicate(self, client, org):
        _create(client, org)
        res = _create(client, org)
        assert res.status_code == 400
        assert res.get_json()["error"] == "已有進行中的代理設定"

    def test_missing_delegate(self, client, org):
        res = _create(client, org, delegate_id=None)
        assert res.status_code == 400
        assert res.get_json()["details"] == {"delegate_id": "required"}

    def test_bad_date(self, client, org):
        res = _create(client, org, start_date="01/02/2024")
        assert res.status_code == 400


# ═════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═════════════════════════════════════════════════════════════════════════

class TestLifecycleAPI:
    def test_accept_then_active(self, client, org):
        did = _create(client, org).get_json()["id"]
        res = client.post(f"/api/v1/delegations/{did}/accept", json={"actor_id": org.G.id})
        assert res.status_code == 200
        assert res.get_json()["status"] == "ACCEPTED"

        res = client.get("/api/v1/delegations/active", headers={"X-Employee-Id": str(org.G.id)})
        assert [d["id"] for d in res.get_json()] == [did]

    def test_accept_by_wrong_employee(self, client, org):
        did = _create(client, org).get_json()["id"]
        res = client.post(f"/api/v1/delegations/{did}/accept", json={"actor_id": org.D.id})
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_accept_missing(self, client, org):
        res = client.post("/api/v1/delegations/9999/accept", json={"actor_id": org.G.id})
        assert res.status_code == 404
        assert res.get_json()["error"] == "找不到代理設定"

    def test_accept_without_actor(self, client, org):
        did = _create(client, org).get_json()["id"]
        res = client.post(f"/api/v1/delegations/{did}/accept", json={})
        assert res.status_code == 400

    def test_reject(self, client, org):
        did = _create(client, org).get_json()["id"]
        res = client.post(f"/api/v1/delegations/{did}/reject", json={"actor_id": org.G.id, "reason": "出國"})
        assert res.status_code == 200
        assert res.get_json()["reject_reason"] == "出國"

    def test_cancel_reason_too_short(self, client, org):
        did = _create(client, org).get_json()["id"]
        res = client.post(f"/api/v1/delegations/{did}/cancel", json={"actor_id": org.D.id, "reason": "算了"})
        assert res.status_code == 400

    def test_cancel(self, client, org):
        did = _create(client, org).get_json()["id"]
        res = client.post(
            f"/api/v1/delegations/{did}/cancel",
            json={"actor_id": org.D.id, "reason": "休假計畫已經取消了，謝謝"},
        )
        assert res.status_code == 200
        assert res.get_json()["status"] == "CANCELLED"


# ═════════════════════════════════════════════════════════════════════════
# QUERIES
# ═════════════════════════════════════════════════════════════════════════

class TestQueryAPI:
    def test_list_and_get(self, client, org):
        did = _create(client, org).get_json()["id"]
        res = client.get(f"/api/v1/delegations?company_id={org.company.id}&status=PENDING")
        assert res.get_json()["total"] == 1
        res = client.get(f"/api/v1/delegations/{did}")
        assert res.get_json()["delegator"]["id"] == org.D.id

    def test_list_bad_status(self, client, org):
        assert client.get("/api/v1/delegations?status=NOPE").status_code == 400

    def test_mine(self, client, org):
        _create(client, org)
        res = client.get("/api/v1/delegations/mine", headers={"X-Employee-Id": str(org.D.id)})
        data = res.get_json()
        assert len(data["as_delegator"]) == 1
        assert data["as_delegate"] == []

    def test_check_delegate(self, client, org):
        assert client.get(f"/api/v1/delegations/check-delegate/{org.G.id}").get_json()["can_be_delegate"] is True
        data = client.get(f"/api/v1/delegations/check-delegate/{org.X.id}").get_json()
        assert data["can_be_delegate"] is False

    def test_permission_types(self, client):
        res = client.get("/api/v1/delegations/permission-types")
        assert res.status_code == 200
        assert any(p["value"] == "APPROVE_LEAVE" for p in res.get_json())
