"""
Notification, approval CC and scheduler API tests.

Tests cover:
  - Inbox listing, unread count, mark read / mark all read
  - Manual outbox dispatch
  - Approval CC settings: global default, company override, inherited flag
  - Scheduler job listing and unknown-job handling
  - Health endpoint
"""
from app.models import db
from app.services.notification import NotificationService


def _deliver(recipient_id, count=2):
    for i in range(count):
        NotificationService.enqueue(
            recipient_id=recipient_id, type="APPROVAL_REQUEST", title=f"審核 {i}",
            ref_type="flow_execution", ref_id=i,
        )
    db.session.commit()
    NotificationService.dispatch_pending()


# ═════════════════════════════════════════════════════════════════════════
# INBOX
# ═════════════════════════════════════════════════════════════════════════

class TestInboxAPI:
    def test_list(self, client, org):
        _deliver(org.S1.id)
        res = client.get(f"/api/v1/notifications?recipient_id={org.S1.id}")
        data = res.get_json()
        assert data["total"] == 2
        assert data["unread_count"] == 2

    def test_recipient_required(self, client, org):
        assert client.get("/api/v1/notifications").status_code == 400

    def test_mark_read(self, client, org):
        _deliver(org.S1.id, count=1)
        nid = client.get(f"/api/v1/notifications?recipient_id={org.S1.id}").get_json()["items"][0]["id"]
        res = client.patch(f"/api/v1/notifications/{nid}/read", json={"recipient_id": org.S1.id})
        assert res.status_code == 200
        assert res.get_json()["is_read"] is True
        res = client.get("/api/v1/notifications/unread-count", headers={"X-Employee-Id": str(org.S1.id)})
        assert res.get_json()["unread_count"] == 0

    def test_mark_read_wrong_recipient(self, client, org):
        _deliver(org.S1.id, count=1)
        nid = client.get(f"/api/v1/notifications?recipient_id={org.S1.id}").get_json()["items"][0]["id"]
        res = client.patch(f"/api/v1/notifications/{nid}/read", json={"recipient_id": org.E2.id})
        assert res.status_code == 404

    def test_mark_all_read(self, client, org):
        _deliver(org.S1.id, count=3)
        res = client.post("/api/v1/notifications/mark-all-read", json={"recipient_id": org.S1.id})
        assert res.get_json()["marked_read"] == 3

    def test_dispatch(self, client, org):
        NotificationService.enqueue(recipient_id=org.S1.id, type="APPROVAL_REQUEST", title="審核")
        db.session.commit()
        res = client.post("/api/v1/notifications/dispatch", json={"limit": 10})
        assert res.get_json() == {"delivered": 1, "failed": 0, "remaining": 0}

    def test_dispatch_bad_limit(self, client, org):
        assert client.post("/api/v1/notifications/dispatch", json={"limit": "many"}).status_code == 400


# ═════════════════════════════════════════════════════════════════════════
# APPROVAL CC SETTINGS
# ═════════════════════════════════════════════════════════════════════════

class TestApprovalCCAPI:
    def test_empty_default(self, client, org):
        res = client.get("/api/v1/notification-settings/approval-cc")
        assert res.get_json()["cc_employee_ids"] == []

    def test_global_then_company_override(self, client, org):
        res = client.put("/api/v1/notification-settings/approval-cc",
                         json={"cc_employee_ids": [org.H1.id]})
        assert res.status_code == 200

        data = client.get(f"/api/v1/notification-settings/approval-cc?company_id={org.company.id}").get_json()
        assert data["cc_employee_ids"] == [org.H1.id]
        assert data["inherited"] is True

        client.put("/api/v1/notification-settings/approval-cc",
                   json={"company_id": org.company.id, "cc_employee_ids": [org.H2.id, org.H2.id]})
        data = client.get(f"/api/v1/notification-settings/approval-cc?company_id={org.company.id}").get_json()
        assert data["cc_employee_ids"] == [org.H2.id]
        assert data["inherited"] is False

    def test_unknown_employee(self, client, org):
        res = client.put("/api/v1/notification-settings/approval-cc", json={"cc_employee_ids": [9999]})
        assert res.status_code == 400
        assert res.get_json()["details"] == {"missing": [9999]}

    def test_not_a_list(self, client, org):
        res = client.put("/api/v1/notification-settings/approval-cc", json={"cc_employee_ids": "1,2"})
        assert res.status_code == 400


# ═════════════════════════════════════════════════════════════════════════
# SCHEDULER & HEALTH
# ═════════════════════════════════════════════════════════════════════════

class TestSchedulerAPI:
    def test_list_jobs(self, client):
        names = {j["job_name"] for j in client.get("/api/v1/scheduler/jobs").get_json()}
        assert {"notification_outbox_dispatch", "stale_notification_cleanup"} <= names

    def test_unknown_job(self, client):
        assert client.post("/api/v1/scheduler/jobs/nope/run").status_code == 404

    def test_health(self, client):
        data = client.get("/api/v1/health").get_json()
        assert data["status"] == "ok"
        assert "cache" in data
