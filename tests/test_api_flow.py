"""
Flow template, workflow definition and flow execution API tests.

Tests cover:
  - PUT/GET/DELETE flow templates (201 on create, 200 on replace)
  - Workflow definition CRUD, applicable lookup and path preview
  - Starting executions (201 started / 200 not started / 409 duplicate / 422 unroutable)
  - Decide and cancel endpoints
  - Pending, proxy-pending and history inbox endpoints
"""
import pytest


def _steps(org):
    return [
        {"step_order": 1, "name": "直屬主管", "assignee_type": "DIRECT_SUPERVISOR"},
        {"step_order": 2, "name": "財務審核", "assignee_type": "SPECIFIC_PERSON", "specific_employee_id": org.E2.id},
    ]


def _put_template(client, org, steps=None, module_type="LEAVE"):
    return client.put(
        f"/api/v1/companies/{org.company.id}/flow-templates/{module_type}",
        json={"name": "請假流程", "steps": steps if steps is not None else _steps(org)},
    )


def _start(client, org, reference_id="L-1", module_type="LEAVE", applicant=None):
    return client.post("/api/v1/flow-executions", json={
        "module_type": module_type,
        "reference_id": reference_id,
        "applicant_id": (applicant or org.A).id,
        "company_id": org.company.id,
        "request_data": {"days": 2},
    })


@pytest.fixture()
def running(client, org):
    """A started two-step LEAVE execution."""
    _put_template(client, org)
    res = _start(client, org)
    assert res.status_code == 201
    return res.get_json()["execution"]


def _decide(client, execution, step_order, signer, action="approve", **extra):
    record = next(r for r in execution["records"] if r["step_order"] == step_order)
    return client.post(
        f"/api/v1/flow-executions/{execution['id']}/records/{record['id']}/decide",
        json={"action": action, "signer_id": signer.id, **extra},
    )


# ═════════════════════════════════════════════════════════════════════════
# FLOW TEMPLATES
# ═════════════════════════════════════════════════════════════════════════

class TestFlowTemplateAPI:
    def test_create_then_replace(self, client, org):
        res = _put_template(client, org)
        assert res.status_code == 201
        assert res.get_json()["version"] == 1

        res = _put_template(client, org, steps=_steps(org)[:1])
        assert res.status_code == 200
        data = res.get_json()
        assert data["version"] == 2
        assert len(data["steps"]) == 1

    def test_too_many_steps(self, client, org):
        steps = [{"step_order": i, "name": f"第{i}關", "assignee_type": "DIRECT_SUPERVISOR"} for i in range(1, 6)]
        res = _put_template(client, org, steps=steps)
        assert res.status_code == 400
        assert res.get_json()["error"] == "審核層級最多 4 層"

    def test_steps_must_be_array(self, client, org):
        res = client.put(f"/api/v1/companies/{org.company.id}/flow-templates/LEAVE", json={"name": "x"})
        assert res.status_code == 400

    def test_malformed_step_payloads(self, client, org):
        res = _put_template(client, org, steps=[{"step_order": "first", "name": "主管",
                                                 "assignee_type": "DIRECT_SUPERVISOR"}])
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_BAD_REQUEST"
        res = _put_template(client, org, steps=["DIRECT_SUPERVISOR"])
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_BAD_REQUEST"

    def test_inactive_template_starts_nothing(self, client, org):
        res = client.put(f"/api/v1/companies/{org.company.id}/flow-templates/LEAVE",
                         json={"name": "請假流程", "steps": _steps(org), "is_active": False})
        assert res.get_json()["is_active"] is False
        assert _start(client, org).get_json()["started"] is False

    def test_get_by_module(self, client, org):
        _put_template(client, org)
        res = client.get(f"/api/v1/companies/{org.company.id}/flow-templates/LEAVE")
        assert [s["assignee_type"] for s in res.get_json()["steps"]] == ["DIRECT_SUPERVISOR", "SPECIFIC_PERSON"]
        assert client.get(f"/api/v1/companies/{org.company.id}/flow-templates/SEAL").status_code == 404
        assert client.get(f"/api/v1/companies/{org.company.id}/flow-templates/NOPE").status_code == 400

    def test_list_and_module_types(self, client, org):
        _put_template(client, org)
        assert len(client.get(f"/api/v1/companies/{org.company.id}/flow-templates").get_json()) == 1
        values = {m["value"] for m in client.get("/api/v1/flow-templates/module-types").get_json()}
        assert {"LEAVE", "EXPENSE", "SEAL", "CARD", "STATIONERY"} <= values

    def test_delete_blocked_by_pending(self, client, org, running):
        res = client.delete(f"/api/v1/flow-templates/{running['template_id']}")
        assert res.status_code == 400
        assert res.get_json()["details"] == {"pending_executions": 1}

    def test_delete(self, client, org):
        tid = _put_template(client, org).get_json()["id"]
        assert client.delete(f"/api/v1/flow-templates/{tid}").status_code == 200
        assert client.get(f"/api/v1/flow-templates/{tid}").status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# WORKFLOW DEFINITIONS
# ═════════════════════════════════════════════════════════════════════════

class TestWorkflowDefinitionAPI:
    def _design(self, org):
        return {
            "nodes": [
                {"node_key": "start", "node_type": "START", "name": "開始"},
                {"node_key": "hr", "node_type": "APPROVAL", "name": "人資",
                 "assignee_type": "POSITION", "position_id": org.hr.id},
                {"node_key": "end", "node_type": "END", "name": "結束"},
            ],
            "edges": [
                {"from_node_key": "start", "to_node_key": "hr"},
                {"from_node_key": "hr", "to_node_key": "end"},
            ],
        }

    def _create(self, client, org, **fields):
        body = {"name": "請假專用", "scope_type": "REQUEST_TYPE", "request_type": "LEAVE",
                "company_id": org.company.id, **self._design(org), **fields}
        return client.post("/api/v1/workflow-definitions", json=body)

    def test_create_and_get(self, client, org):
        res = self._create(client, org)
        assert res.status_code == 201
        wid = res.get_json()["id"]
        data = client.get(f"/api/v1/workflow-definitions/{wid}").get_json()
        assert len(data["nodes"]) == 3

    def test_create_invalid_scope(self, client, org):
        res = self._create(client, org, scope_type="TEAM")
        assert res.status_code == 400

    def test_update_rejects_string_active_flag(self, client, org):
        wid = self._create(client, org).get_json()["id"]
        res = client.put(f"/api/v1/workflow-definitions/{wid}", json={"is_active": "false"})
        assert res.status_code == 400
        assert res.get_json()["details"] == {"is_active": "boolean"}
        assert client.get(f"/api/v1/workflow-definitions/{wid}").get_json()["is_active"] is True

    def test_applicable(self, client, org):
        wid = self._create(client, org).get_json()["id"]
        res = client.get(
            f"/api/v1/workflow-definitions/applicable?employee_id={org.A.id}"
            f"&company_id={org.company.id}&request_type=LEAVE"
        )
        assert res.get_json()["definition"]["id"] == wid
        res = client.get(
            f"/api/v1/workflow-definitions/applicable?employee_id={org.A.id}"
            f"&company_id={org.company.id}&request_type=SEAL"
        )
        assert res.get_json()["definition"] is None

    def test_preview(self, client, org):
        wid = self._create(client, org).get_json()["id"]
        res = client.post(f"/api/v1/workflow-definitions/{wid}/preview", json={"request_data": {}})
        assert res.get_json() == [
            {"step_order": 1, "name": "人資", "is_required": True, "assignee_type": "POSITION"},
        ]

    def test_save_design_and_duplicate(self, client, org):
        wid = self._create(client, org).get_json()["id"]
        res = client.put(f"/api/v1/workflow-definitions/{wid}/design", json=self._design(org))
        assert res.get_json()["version"] == 2
        res = client.post(f"/api/v1/workflow-definitions/{wid}/duplicate", json={"new_name": "副本"})
        assert res.status_code == 201
        assert res.get_json()["is_active"] is False

    def test_execution_uses_definition(self, client, org):
        self._create(client, org)
        res = _start(client, org)
        execution = res.get_json()["execution"]
        assert execution["source"] == "DEFINITION"
        assert execution["records"][0]["candidate_ids"] == [org.H1.id, org.H2.id]

    def test_delete(self, client, org):
        wid = self._create(client, org).get_json()["id"]
        assert client.delete(f"/api/v1/workflow-definitions/{wid}").status_code == 200
        assert client.get(f"/api/v1/workflow-definitions/{wid}").status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# EXECUTIONS
# ═════════════════════════════════════════════════════════════════════════

class TestExecutionAPI:
    def test_start(self, client, org, running):
        assert running["status"] == "PENDING"
        assert running["current_step"] == 1
        assert [r["assignee_id"] for r in running["records"]] == [org.S1.id, org.E2.id]

    def test_start_without_flow(self, client, org):
        res = _start(client, org, module_type="SEAL", reference_id="S-1")
        assert res.status_code == 200
        data = res.get_json()
        assert data["started"] is False
        assert data["module_type"] == "SEAL"

    def test_start_duplicate(self, client, org, running):
        res = _start(client, org)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_start_unroutable(self, client, org):
        _put_template(client, org)
        res = _start(client, org, applicant=org.E2)
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_UNROUTABLE_STEP"
        assert body["details"]["step_order"] == 1

    def test_start_requires_reference(self, client, org):
        res = client.post("/api/v1/flow-executions", json={"module_type": "LEAVE"})
        assert res.status_code == 400

    def test_full_approval(self, client, org, running):
        res = _decide(client, running, 1, org.S1)
        assert res.status_code == 200
        data = res.get_json()
        assert data["execution"]["current_step"] == 2
        assert data["final_status"] is None

        res = _decide(client, running, 2, org.E2, comment="OK")
        data = res.get_json()
        assert data["final_status"] == "APPROVED"
        assert data["execution"]["status"] == "APPROVED"

        res = client.get("/api/v1/flow-executions/by-reference?module_type=LEAVE&reference_id=L-1")
        assert res.get_json()["status"] == "APPROVED"

    def test_reject(self, client, org, running):
        res = _decide(client, running, 1, org.S1, action="reject", comment="人力不足")
        data = res.get_json()
        assert data["execution"]["status"] == "REJECTED"
        assert data["record"]["comment"] == "人力不足"

    def test_wrong_signer(self, client, org, running):
        res = _decide(client, running, 1, org.E2)
        assert res.status_code == 403

    def test_out_of_order(self, client, org, running):
        res = _decide(client, running, 2, org.E2)
        assert res.status_code == 400
        assert res.get_json()["error"] == "尚未輪到此關卡"

    def test_double_decision(self, client, org, running):
        _decide(client, running, 1, org.S1)
        res = _decide(client, running, 1, org.S1)
        assert res.status_code == 400
        assert res.get_json()["error"] == "此簽核紀錄已處理"

    def test_cancel(self, client, org, running):
        res = client.post(f"/api/v1/flow-executions/{running['id']}/cancel",
                          json={"actor_id": org.A.id, "reason": "改期"})
        assert res.status_code == 200
        assert res.get_json()["status"] == "CANCELLED"
        res = client.post(f"/api/v1/flow-executions/{running['id']}/cancel", json={"actor_id": org.A.id})
        assert res.status_code == 400

    def test_cancel_forbidden(self, client, org, running):
        res = client.post(f"/api/v1/flow-executions/{running['id']}/cancel", json={"actor_id": org.S1.id})
        assert res.status_code == 403

    def test_missing_execution(self, client, org):
        assert client.get("/api/v1/flow-executions/9999").status_code == 404
        res = client.get("/api/v1/flow-executions/by-reference?module_type=LEAVE&reference_id=nope")
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# INBOX
# ═════════════════════════════════════════════════════════════════════════

class TestInboxAPI:
    def test_pending(self, client, org, running):
        res = client.get(f"/api/v1/approvals/pending?employee_id={org.S1.id}")
        data = res.get_json()
        assert data["total"] == 1
        assert data["items"][0]["id"] == running["id"]

        _decide(client, running, 1, org.S1)
        assert client.get(f"/api/v1/approvals/pending?employee_id={org.S1.id}").get_json()["total"] == 0
        assert client.get(
            "/api/v1/approvals/pending", headers={"X-Employee-Id": str(org.E2.id)},
        ).get_json()["total"] == 1

    def test_pending_requires_employee(self, client, org):
        assert client.get("/api/v1/approvals/pending").status_code == 400

    def test_proxy_pending(self, client, org):
        client.put(
            f"/api/v1/companies/{org.company.id}/flow-templates/LEAVE",
            json={"name": "請假", "steps": [
                {"step_order": 1, "name": "部門主管", "assignee_type": "SPECIFIC_PERSON",
                 "specific_employee_id": org.D.id},
            ]},
        )
        did = client.post("/api/v1/delegations", json={
            "company_id": org.company.id, "delegator_id": org.D.id, "delegate_id": org.G.id,
            "permissions": ["APPROVE_LEAVE"], "start_date": "2024-01-01",
        }).get_json()["id"]
        client.post(f"/api/v1/delegations/{did}/accept", json={"actor_id": org.G.id})
        execution = _start(client, org).get_json()["execution"]

        data = client.get(f"/api/v1/approvals/proxy-pending?employee_id={org.G.id}").get_json()
        assert data["total"] == 1
        assert data["items"][0]["delegation"]["id"] == did

        res = _decide(client, execution, 1, org.G)
        assert res.get_json()["delegated"] is True
        assert res.get_json()["record"]["actual_approver_id"] == org.G.id
        assert client.get(f"/api/v1/approvals/proxy-pending?employee_id={org.G.id}").get_json()["total"] == 0

        data = client.get(f"/api/v1/approvals/history?employee_id={org.G.id}").get_json()
        assert data["total"] == 1
