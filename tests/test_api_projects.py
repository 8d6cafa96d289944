"""
Project API tests (HTTP mapping over the services).

Covers:
    1. Identity headers: 401 / 403, health exempt, request id header
    2. Create / read / update / delete with department guards
    3. Transition endpoint: cascade, 422 mapping
    4. Sales → accounts → payments → installation over HTTP
    5. Queues, list filters, history and activity
"""

import pytest

from crm.models.workflow import Stage


def _create(client, headers, school="Green Valley School", **extra):
    res = client.post("/api/v1/projects", json={"school": school, **extra},
                      headers=headers("EXECUTIVE", "exec-1"))
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _move(client, headers, pid, to_stage, role="EXECUTIVE", user="exec-1"):
    return client.post(f"/api/v1/projects/{pid}/transition", json={"to_stage": to_stage},
                       headers=headers(role, user))


def _onboard(client, headers, pid):
    for stage in ("ON_PROGRESS", "QUOTATION_SENT", "IN_REVIEW", "ONBOARDED"):
        res = _move(client, headers, pid, stage)
        assert res.status_code == 200, res.get_json()
    return res.get_json()


def _to_accounts(client, headers, pid, invoice=1000):
    _onboard(client, headers, pid)
    sales = headers("SALES_COORDINATOR", "sales-1")
    res = client.put(f"/api/v1/projects/{pid}/sales",
                     json={"project_value": 1200, "invoice_amount": invoice}, headers=sales)
    assert res.status_code == 200, res.get_json()
    res = client.post(f"/api/v1/projects/{pid}/ready-for-accounts", json={}, headers=sales)
    assert res.status_code == 200, res.get_json()
    return res.get_json()


# ═══════════════════════════════════════════════════════════════════════════
#  Identity
# ═══════════════════════════════════════════════════════════════════════════


class TestIdentity:
    def test_missing_headers(self, client):
        res = client.get("/api/v1/projects/1")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_missing_role(self, client):
        res = client.get("/api/v1/projects/1", headers={"X-User-Id": "exec-1"})
        assert res.status_code == 401

    def test_unknown_role(self, client, headers):
        res = client.get("/api/v1/projects/1", headers=headers("INTERN", "x"))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_system_role_reserved(self, client, headers):
        res = client.get("/api/v1/projects/1", headers=headers("SYSTEM", "x"))
        assert res.status_code == 403

    def test_prefixed_role_accepted(self, client, headers):
        pid = _create(client, headers)["id"]
        res = client.get(f"/api/v1/projects/{pid}", headers=headers("ROLE_ACCOUNTS", "acct-1"))
        assert res.status_code == 200

    def test_health_needs_no_identity(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_health_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        body = res.get_json()
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["scheduler"]["running"] is False
        assert body["checks"]["alerts"]["total"] == 0

    def test_request_id_header(self, client, headers):
        res = client.get("/api/v1/projects", headers=headers("ADMIN", "admin-1"))
        assert res.headers.get("X-Request-ID")
        assert res.headers.get("X-Request-Duration-Ms")

    def test_non_json_body_rejected(self, client, headers):
        res = client.post("/api/v1/projects", data="school=X",
                          content_type="application/x-www-form-urlencoded",
                          headers=headers())
        assert res.status_code == 415


# ═══════════════════════════════════════════════════════════════════════════
#  CRUD
# ═══════════════════════════════════════════════════════════════════════════


class TestProjectCrud:
    def test_create(self, client, headers):
        body = _create(client, headers, contact_number="9000000001", district="Thrissur")
        assert body["current_stage"] == "LEAD"
        assert body["current_owner_role"] == "EXECUTIVE"
        assert body["executive_view_status"] == "NON_ONBOARDED"
        assert body["is_locked"] is False
        assert body["created_by"] == "exec-1"
        assert body["total_received"] == 0.0
        assert body["payment_history"] == []

    def test_create_requires_school(self, client, headers):
        res = client.post("/api/v1/projects", json={"district": "Thrissur"},
                          headers=headers())
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_create_forbidden_for_accounts(self, client, headers):
        res = client.post("/api/v1/projects", json={"school": "X"},
                          headers=headers("ACCOUNTS", "acct-1"))
        assert res.status_code == 403

    def test_duplicate_contact(self, client, headers):
        _create(client, headers, school="A", contact_number="555")
        res = client.post("/api/v1/projects", json={"school": "B", "contact_number": "555"},
                          headers=headers())
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_get_unknown(self, client, headers):
        res = client.get("/api/v1/projects/999", headers=headers())
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_update(self, client, headers):
        pid = _create(client, headers)["id"]
        res = client.put(f"/api/v1/projects/{pid}", json={"place": "Aluva"},
                         headers=headers())
        assert res.status_code == 200
        assert res.get_json()["place"] == "Aluva"

    def test_update_onboarded_by_other_executive(self, client, headers):
        pid = _create(client, headers)["id"]
        _onboard(client, headers, pid)
        res = client.put(f"/api/v1/projects/{pid}", json={"place": "Aluva"},
                         headers=headers("EXECUTIVE", "exec-2"))
        assert res.status_code == 403

    def test_delete(self, client, headers):
        pid = _create(client, headers)["id"]
        res = client.delete(f"/api/v1/projects/{pid}", headers=headers())
        assert res.status_code == 200
        assert res.get_json() == {"deleted": True, "id": pid}
        assert client.get(f"/api/v1/projects/{pid}", headers=headers()).status_code == 404

        activity = client.get(f"/api/v1/projects/{pid}/activity", headers=headers()).get_json()
        assert activity["activity"][0]["action"] == "DELETED"

    def test_delete_onboarded_forbidden(self, client, headers):
        pid = _create(client, headers)["id"]
        _onboard(client, headers, pid)
        res = client.delete(f"/api/v1/projects/{pid}", headers=headers("ADMIN", "admin-1"))
        assert res.status_code == 403


# ═══════════════════════════════════════════════════════════════════════════
#  Transitions
# ═══════════════════════════════════════════════════════════════════════════


class TestTransitionApi:
    def test_onboarding_cascades(self, client, headers):
        pid = _create(client, headers)["id"]
        body = _onboard(client, headers, pid)
        assert body["current_stage"] == "SALES"
        assert body["previous_stage"] == "ONBOARDED"
        assert body["is_locked"] is True
        assert body["executive_view_status"] == "ONBOARDED_ACTIVE"

        history = client.get(f"/api/v1/projects/{pid}/history", headers=headers()).get_json()
        assert history["total"] == 6
        assert history["history"][-1]["is_system_triggered"] is True
        assert history["history"][-1]["changed_by"] == "SYSTEM"

    def test_invalid_edge(self, client, headers):
        pid = _create(client, headers)["id"]
        res = _move(client, headers, pid, "SALES")
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_INVALID_TRANSITION"
        assert body["details"]["from_stage"] == "LEAD"

    def test_wrong_department(self, client, headers):
        pid = _create(client, headers)["id"]
        res = _move(client, headers, pid, "ON_PROGRESS", role="INSTALLATION", user="inst-1")
        assert res.status_code == 422

    def test_to_stage_required(self, client, headers):
        pid = _create(client, headers)["id"]
        res = client.post(f"/api/v1/projects/{pid}/transition", json={}, headers=headers())
        assert res.status_code == 400

    def test_super_admin_reversal(self, client, headers):
        pid = _create(client, headers)["id"]
        _onboard(client, headers, pid)
        res = _move(client, headers, pid, "LEAD", role="SUPER_ADMIN", user="root")
        assert res.status_code == 200
        assert res.get_json()["current_stage"] == "LEAD"
        assert res.get_json()["is_locked"] is True


# ═══════════════════════════════════════════════════════════════════════════
#  Sales → accounts → installation
# ═══════════════════════════════════════════════════════════════════════════


class TestDepartmentFlow:
    def test_full_flow(self, client, headers):
        pid = _create(client, headers)["id"]
        body = _to_accounts(client, headers, pid, invoice=1000)
        assert body["current_stage"] == "ACCOUNTS"
        assert body["payment_status"] == "PENDING"
        assert body["pending_amount"] == 1000.0

        accounts = headers("ACCOUNTS", "acct-1")
        res = client.post(f"/api/v1/projects/{pid}/payments",
                          json={"amount": 400, "payment_date": "2025-01-10"},
                          headers=accounts)
        assert res.status_code == 201
        body = res.get_json()
        assert body["payment_status"] == "PARTIAL"
        assert body["pending_amount"] == 600.0
        assert body["total_received"] == 400.0

        res = client.post(f"/api/v1/projects/{pid}/payments", json={"amount": "600"},
                          headers=accounts)
        body = res.get_json()
        assert body["current_stage"] == "INSTALLATION"
        assert body["payment_status"] == "COMPLETED"
        assert len(body["payment_history"]) == 2

        payments = client.get(f"/api/v1/projects/{pid}/payments", headers=accounts).get_json()
        assert payments["total"] == 2

        res = client.put(f"/api/v1/projects/{pid}/installation",
                         json={"installation_status": "WORK_DONE",
                               "installation_remarks": "Handed over"},
                         headers=headers("INSTALLATION", "inst-1"))
        assert res.status_code == 200
        body = res.get_json()
        assert body["current_stage"] == "COMPLETED"
        assert body["executive_view_status"] == "COMPLETED"
        assert body["completion_date"] is not None

    def test_payment_outside_accounts(self, client, headers):
        pid = _create(client, headers)["id"]
        res = client.post(f"/api/v1/projects/{pid}/payments", json={"amount": 100},
                          headers=headers("ACCOUNTS", "acct-1"))
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_INVALID_STATE"

    @pytest.mark.parametrize("amount", [0, -10, "ten"])
    def test_bad_amount(self, client, headers, amount):
        pid = _create(client, headers)["id"]
        _to_accounts(client, headers, pid)
        res = client.post(f"/api/v1/projects/{pid}/payments", json={"amount": amount},
                          headers=headers("ACCOUNTS", "acct-1"))
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_INVALID_AMOUNT"

    def test_amount_required(self, client, headers):
        pid = _create(client, headers)["id"]
        res = client.post(f"/api/v1/projects/{pid}/payments", json={},
                          headers=headers("ACCOUNTS", "acct-1"))
        assert res.status_code == 400

    def test_payment_forbidden_for_sales(self, client, headers):
        pid = _create(client, headers)["id"]
        res = client.post(f"/api/v1/projects/{pid}/payments", json={"amount": 100},
                          headers=headers("SALES_COORDINATOR", "sales-1"))
        assert res.status_code == 403

    def test_ready_for_accounts_missing_invoice(self, client, headers):
        pid = _create(client, headers)["id"]
        _onboard(client, headers, pid)
        res = client.post(f"/api/v1/projects/{pid}/ready-for-accounts", json={},
                          headers=headers("SALES_COORDINATOR", "sales-1"))
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_INVALID_FIELD"

    def test_sales_data_invalid(self, client, headers):
        pid = _create(client, headers)["id"]
        _onboard(client, headers, pid)
        res = client.put(f"/api/v1/projects/{pid}/sales", json={"invoice_amount": "-1"},
                         headers=headers("SALES_COORDINATOR", "sales-1"))
        assert res.status_code == 422
        assert "invoice_amount" in res.get_json()["details"]


# ═══════════════════════════════════════════════════════════════════════════
#  Lists & queues
# ═══════════════════════════════════════════════════════════════════════════


class TestListsAndQueues:
    def test_admin_list_with_filter(self, client, headers):
        _create(client, headers, school="A")
        pid = _create(client, headers, school="B")["id"]
        _onboard(client, headers, pid)

        admin = headers("ADMIN", "admin-1")
        body = client.get("/api/v1/projects", headers=admin).get_json()
        assert body["total"] == 2
        body = client.get("/api/v1/projects?stage=SALES", headers=admin).get_json()
        assert [p["id"] for p in body["projects"]] == [pid]

    def test_list_requires_admin(self, client, headers):
        assert client.get("/api/v1/projects", headers=headers()).status_code == 403

    def test_list_bad_stage(self, client, headers):
        res = client.get("/api/v1/projects?stage=ARCHIVED", headers=headers("ADMIN", "a"))
        assert res.status_code == 422

    def test_sales_queue(self, client, headers):
        _create(client, headers, school="A")
        pid = _create(client, headers, school="B")["id"]
        _onboard(client, headers, pid)

        body = client.get("/api/v1/projects/queues/sales",
                          headers=headers("SALES_COORDINATOR", "sales-1")).get_json()
        assert body["queue"] == "sales"
        assert [p["id"] for p in body["projects"]] == [pid]

    def test_queue_role_guard(self, client, headers):
        res = client.get("/api/v1/projects/queues/accounts", headers=headers())
        assert res.status_code == 403

    def test_unknown_queue(self, client, headers):
        res = client.get("/api/v1/projects/queues/warehouse", headers=headers("ADMIN", "a"))
        assert res.status_code == 404

    def test_pagination(self, client, headers):
        for i in range(3):
            _create(client, headers, school=f"School {i}")
        body = client.get("/api/v1/projects?limit=2&offset=1",
                          headers=headers("ADMIN", "a")).get_json()
        assert body["total"] == 3
        assert len(body["projects"]) == 2

    def test_activity_feed(self, client, headers):
        pid = _create(client, headers)["id"]
        _move(client, headers, pid, Stage.ON_PROGRESS.value)
        body = client.get(f"/api/v1/projects/{pid}/activity", headers=headers()).get_json()
        assert [a["action"] for a in body["activity"]] == ["STAGE_CHANGED", "CREATED"]
