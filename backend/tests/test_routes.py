"""
HTTP API tests.

Verifies:
- Authentication and permission checks on the ledger endpoints
- A full shift through the API: open, order, settle, X report, close, Z report
- Ledger errors come back as JSON with a machine-readable code
- Ownership overrides over HTTP
"""

PASSWORD = "Password123!"
SUPERVISOR_PIN = "4321"


class TestAuthentication:
    def test_health(self, client, db_session):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.get_json() == {"status": "ok"}

    def test_login_and_me(self, client, staff):
        response = client.post("/api/auth/login", json={"username": "manager", "password": PASSWORD})
        assert response.status_code == 200
        body = response.get_json()
        assert "CLOSE_WORK_PERIOD" in body["permissions"]

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
        assert me.status_code == 200
        assert me.get_json()["user"]["username"] == "manager"

    def test_login_rejects_bad_password(self, client, staff):
        response = client.post("/api/auth/login", json={"username": "manager", "password": "nope"})
        assert response.status_code == 401

    def test_endpoints_require_token(self, client, period):
        assert client.post("/api/orders", json={}).status_code == 401
        assert client.get(f"/api/reports/x/{period.id}").status_code == 401
        assert client.post("/api/work-periods/close", json={"closing_cash_cents": 0}).status_code == 401

    def test_cashier_cannot_close_void_or_report(self, client, period, headers):
        response = client.post(
            "/api/work-periods/close", json={"closing_cash_cents": 10000}, headers=headers.cashier,
        )
        assert response.status_code == 403
        assert response.get_json()["required_permission"] == "CLOSE_WORK_PERIOD"

        assert client.post("/api/receipts/1/void", json={"reason": "x"}, headers=headers.cashier).status_code == 403
        assert client.get(f"/api/reports/x/{period.id}", headers=headers.cashier).status_code == 403
        assert client.get("/api/audit", headers=headers.cashier).status_code == 403


class TestShiftThroughApi:
    def test_full_shift(self, client, staff, products, headers):
        opened = client.post(
            "/api/work-periods/open", json={"opening_float_cents": 10000}, headers=headers.manager,
        )
        assert opened.status_code == 201
        period_id = opened.get_json()["work_period"]["id"]

        order = client.post(
            "/api/orders", json={"items": [{"product_id": products.burger}]}, headers=headers.cashier,
        )
        assert order.status_code == 201
        receipt = client.post(
            "/api/receipts", json={"order_id": order.get_json()["order"]["id"]}, headers=headers.cashier,
        )
        assert receipt.status_code == 201
        receipt_body = receipt.get_json()["receipt"]
        assert receipt_body["state"] == "PENDING"
        assert receipt_body["total_cents"] == 4640
        receipt_id = receipt_body["id"]

        added = client.post(
            f"/api/receipts/{receipt_id}/items",
            json={"items": [{"product_id": products.fries}]},
            headers=headers.cashier,
        )
        assert added.status_code == 201
        assert len(added.get_json()["items"]) == 1
        assert added.get_json()["receipt"]["total_cents"] == 5640

        short = client.post(
            f"/api/receipts/{receipt_id}/settle",
            json={"payments": [{"method": "CASH", "amount_cents": 5000, "idempotency_key": "r1-a"}]},
            headers=headers.cashier,
        )
        assert short.status_code == 400
        assert short.get_json()["code"] == "INSUFFICIENT_PAYMENT"

        settled = client.post(
            f"/api/receipts/{receipt_id}/settle",
            json={"payments": [{"method": "CASH", "amount_cents": 6000, "idempotency_key": "r1-b"}]},
            headers=headers.cashier,
        )
        assert settled.status_code == 200
        assert settled.get_json()["change_cents"] == 360
        assert settled.get_json()["receipt"]["state"] == "SETTLED"

        x_report = client.get(f"/api/reports/x/{period_id}", headers=headers.manager)
        assert x_report.status_code == 200
        assert x_report.get_json()["sales"]["total_cents"] == 5640
        assert x_report.get_json()["expected_cash_cents"] == 15640

        closed = client.post(
            "/api/work-periods/close", json={"closing_cash_cents": 15600}, headers=headers.manager,
        )
        assert closed.status_code == 200
        period = closed.get_json()["work_period"]
        assert period["status"] == "CLOSED"
        assert period["expected_cash_cents"] == 15640
        assert period["variance_cents"] == -40
        assert period["z_report_number"] == 1

        z_report = client.get(f"/api/reports/z/{period_id}", headers=headers.manager)
        assert z_report.status_code == 200
        report = z_report.get_json()["z_report"]
        assert report["report_number"] == 1

        again = client.post(f"/api/reports/z/{period_id}", headers=headers.manager)
        assert again.status_code == 409
        assert again.get_json()["code"] == "ALREADY_GENERATED"

        verified = client.get(f"/api/reports/z/{report['id']}/verify", headers=headers.manager)
        assert verified.get_json()["valid"] is True

        locked = client.post(
            f"/api/receipts/{receipt_id}/items",
            json={"items": [{"product_id": products.fries}]},
            headers=headers.cashier,
        )
        assert locked.status_code == 409

    def test_second_open_conflicts(self, client, period, headers):
        response = client.post(
            "/api/work-periods/open", json={"opening_float_cents": 5000}, headers=headers.manager,
        )
        assert response.status_code == 409
        assert response.get_json()["code"] == "ALREADY_OPEN"

    def test_missing_fields(self, client, period, headers):
        response = client.post("/api/receipts/1/settle", json={}, headers=headers.cashier)
        assert response.status_code == 400
        assert response.get_json()["details"]["missing"] == ["payments"]

    def test_unknown_receipt(self, client, period, headers):
        response = client.get("/api/receipts/999999", headers=headers.cashier)
        assert response.status_code == 404
        assert response.get_json()["code"] == "NOT_FOUND"


class TestOwnershipThroughApi:
    def _receipt(self, client, headers, products):
        order = client.post(
            "/api/orders", json={"items": [{"product_id": products.fries}]}, headers=headers.cashier,
        ).get_json()["order"]
        return client.post(
            "/api/receipts", json={"order_id": order["id"]}, headers=headers.cashier,
        ).get_json()["receipt"]["id"]

    def test_override_lets_other_cashier_add_items_once(self, client, period, products, headers):
        receipt_id = self._receipt(client, headers, products)
        body = {"items": [{"product_id": products.fries}]}

        denied = client.post(f"/api/receipts/{receipt_id}/items", json=body, headers=headers.cashier2)
        assert denied.status_code == 403
        assert denied.get_json()["code"] == "AUTHORIZATION_DENIED"

        grant = client.post(
            f"/api/receipts/{receipt_id}/overrides",
            json={"action": "ADD_ITEMS", "authorizer_username": "supervisor", "authorizer_pin": SUPERVISOR_PIN},
            headers=headers.cashier2,
        )
        assert grant.status_code == 201
        token = grant.get_json()["override_token"]

        allowed = client.post(
            f"/api/receipts/{receipt_id}/items", json=dict(body, override_token=token), headers=headers.cashier2,
        )
        assert allowed.status_code == 201

        reused = client.post(
            f"/api/receipts/{receipt_id}/items", json=dict(body, override_token=token), headers=headers.cashier2,
        )
        assert reused.status_code == 403

    def test_wrong_pin_is_rejected(self, client, period, products, headers):
        receipt_id = self._receipt(client, headers, products)
        response = client.post(
            f"/api/receipts/{receipt_id}/overrides",
            json={"action": "ADD_ITEMS", "authorizer_username": "supervisor", "authorizer_pin": "0000"},
            headers=headers.cashier2,
        )
        assert response.status_code == 403

    def test_supervisor_voids_and_audit_shows_it(self, client, period, products, headers, staff):
        receipt_id = self._receipt(client, headers, products)
        voided = client.post(
            f"/api/receipts/{receipt_id}/void",
            json={"reason": "Customer left", "requested_by_user_id": staff.cashier},
            headers=headers.supervisor,
        )
        assert voided.status_code == 200
        assert voided.get_json()["receipt"]["state"] == "VOIDED"

        entries = client.get(
            f"/api/audit?entity_type=receipt&entity_id={receipt_id}", headers=headers.manager,
        ).get_json()["entries"]
        assert any(e["action"] == "receipt.voided" for e in entries)
