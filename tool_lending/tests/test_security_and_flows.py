import os
import sys
import unittest
from datetime import datetime, timedelta
from pathlib import Path

from fastapi.testclient import TestClient
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError


os.environ.setdefault("TOOL_LENDING_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("LOCAL_ADMIN_EMAIL", "admin@toollending.local")
os.environ.setdefault("LOCAL_ADMIN_PASSWORD", "admin-test-pin")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import LoanDesk as app_module
import services.login_guard_service as login_guard_service
import services.session_service as session_service
from db.base import Base
from db.session import SessionLocalLending, engine_lending
from models.lending_models import Item, Loan
from services.login_guard_service import reset_login_guard
from services.loan_status_service import due_date_for


ADMIN_EMAIL = os.environ["LOCAL_ADMIN_EMAIL"]
ADMIN_PASSWORD = os.environ["LOCAL_ADMIN_PASSWORD"]
TABLES_AT_IMPORT = set(inspect(engine_lending).get_table_names())


def _reset_tables():
    Base.metadata.create_all(engine_lending)
    with engine_lending.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


class UnavailableDb:
    def __init__(self):
        self.rollbacks = 0

    def execute(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is down"))

    def get(self, model, identifier):
        raise OperationalError("SELECT 1", {}, Exception("database is down"))

    def rollback(self):
        self.rollbacks += 1


class SecurityAndFlowTests(unittest.TestCase):
    def setUp(self):
        _reset_tables()
        reset_login_guard()
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()

    def _login(self, client, email, password):
        response = client.post("/api/auth/login", json={"email": email, "password": password})
        self.assertEqual(response.status_code, 200, response.text)
        return {"X-Session-Token": response.json()["sessionToken"]}

    def _admin_headers(self):
        return self._login(self.client, ADMIN_EMAIL, ADMIN_PASSWORD)

    def _create_operator(self, headers, email, role="Operator", password="operator-pass"):
        response = self.client.post(
            "/api/admin/operators",
            json={"email": email, "name": email.split("@")[0], "password": password, "role": role},
            headers=headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_login_logout_revokes_session_token(self):
        headers = self._admin_headers()
        me_before = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_before.status_code, 200)
        self.assertEqual(me_before.json()["user"]["role"], "SuperOperator")

        logout = self.client.post("/api/auth/logout", headers=headers)
        self.assertEqual(logout.status_code, 200)

        me_after = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_after.status_code, 401)

    def test_login_persists_with_cookie_session(self):
        login = self.client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
        self.assertEqual(login.status_code, 200)
        self.assertIn("tool_lending_session=", login.headers.get("set-cookie", ""))

        me = self.client.get("/api/auth/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["user"]["operatorID"], "default-admin-uid")

    def test_login_rejects_wrong_password_and_unknown_fields(self):
        wrong = self.client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": "nope-nope"})
        self.assertEqual(wrong.status_code, 401)
        self.assertEqual(wrong.json()["detail"], "Invalid credentials.")

        malformed = self.client.post("/api/auth/login", json={"username": "admin", "password": "x"})
        self.assertEqual(malformed.status_code, 400)

    def test_repeated_failures_lock_the_account(self):
        for _ in range(8):
            self.client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "wrong-pass"})
        locked = self.client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "wrong-pass"})
        self.assertEqual(locked.status_code, 429)
        self.assertIn("Retry-After", locked.headers)

    def test_requests_without_session_are_rejected(self):
        self.assertEqual(self.client.get("/api/items").status_code, 401)
        self.assertEqual(self.client.get("/api/loans").status_code, 401)

    def test_standard_operator_cannot_reach_super_operator_routes(self):
        admin = self._admin_headers()
        self._create_operator(admin, "desk@example.com")

        operator_client = TestClient(app_module.app)
        headers = self._login(operator_client, "desk@example.com", "operator-pass")

        self.assertEqual(operator_client.get("/api/items", headers=headers).status_code, 200)
        denied = operator_client.get("/api/admin/operators", headers=headers)
        self.assertEqual(denied.status_code, 403)
        self.assertEqual(denied.json()["detail"], app_module.ACCESS_RESTRICTED_DETAIL)
        self.assertEqual(operator_client.get("/api/admin/settings", headers=headers).status_code, 403)
        self.assertEqual(
            operator_client.put("/api/admin/settings", json={"maintenanceMode": True}, headers=headers).status_code,
            403,
        )

    def test_fallback_account_is_listed_and_protected(self):
        headers = self._admin_headers()
        listed = self.client.get("/api/admin/operators", headers=headers)
        self.assertEqual(listed.status_code, 200)
        fallback = [row for row in listed.json() if row["operatorID"] == "default-admin-uid"]
        self.assertEqual(len(fallback), 1)
        self.assertTrue(fallback[0]["isProtected"])

        edit = self.client.put("/api/admin/operators/default-admin-uid", json={"role": "Operator"}, headers=headers)
        self.assertEqual(edit.status_code, 403)
        delete = self.client.delete("/api/admin/operators/default-admin-uid", headers=headers)
        self.assertEqual(delete.status_code, 403)

    def test_operator_cannot_delete_own_account(self):
        admin = self._admin_headers()
        created = self._create_operator(admin, "lead@example.com", role="SuperOperator")

        lead_client = TestClient(app_module.app)
        headers = self._login(lead_client, "lead@example.com", "operator-pass")
        response = lead_client.delete(f"/api/admin/operators/{created['operatorID']}", headers=headers)
        self.assertEqual(response.status_code, 403)

        removed = self.client.delete(f"/api/admin/operators/{created['operatorID']}", headers=admin)
        self.assertEqual(removed.status_code, 200)

    def test_role_change_and_deletion_apply_to_live_sessions(self):
        admin = self._admin_headers()
        created = self._create_operator(admin, "lead@example.com", role="SuperOperator")

        lead_client = TestClient(app_module.app)
        headers = self._login(lead_client, "lead@example.com", "operator-pass")
        self.assertEqual(lead_client.get("/api/admin/operators", headers=headers).status_code, 200)

        demote = self.client.put(
            f"/api/admin/operators/{created['operatorID']}",
            json={"role": "Operator"},
            headers=admin,
        )
        self.assertEqual(demote.status_code, 200)
        self.assertEqual(demote.json()["role"], "Operator")

        self.assertEqual(lead_client.get("/api/admin/operators", headers=headers).status_code, 403)
        self.assertEqual(lead_client.get("/api/admin/settings").status_code, 403)
        self.assertEqual(lead_client.get("/api/auth/me", headers=headers).json()["user"]["role"], "Operator")

        removed = self.client.delete(f"/api/admin/operators/{created['operatorID']}", headers=admin)
        self.assertEqual(removed.status_code, 200)

        self.assertEqual(lead_client.get("/api/admin/settings", headers=headers).status_code, 401)
        self.assertEqual(lead_client.get("/api/items").status_code, 401)

    def test_expired_session_is_rejected_on_cookie_and_header(self):
        original_ttl = session_service.SESSION_TTL_SECONDS
        session_service.SESSION_TTL_SECONDS = -1
        try:
            login = self.client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
        finally:
            session_service.SESSION_TTL_SECONDS = original_ttl
        self.assertEqual(login.status_code, 200)
        headers = {"X-Session-Token": login.json()["sessionToken"]}

        self.assertEqual(self.client.get("/api/auth/me").status_code, 401)
        self.assertEqual(self.client.get("/api/auth/me", headers=headers).status_code, 401)

    def test_login_guard_keeps_no_entries_for_clean_keys(self):
        for index in range(20):
            self.assertIsNone(login_guard_service.check_login_guard("10.0.0.1", f"operator:made-up-{index}@example.com"))
        self.assertEqual(login_guard_service._ATTEMPTS_BY_ACCOUNT, {})
        self.assertEqual(login_guard_service._ATTEMPTS_BY_IP, {})

        login_guard_service.record_login_failure("10.0.0.1", "operator:real@example.com")
        self.assertIn("operator:real@example.com", login_guard_service._ATTEMPTS_BY_ACCOUNT)

    def test_app_import_creates_sqlite_schema(self):
        self.assertTrue({"Items", "Borrowers", "Loans", "LoanHistory", "OperatorAccounts"} <= TABLES_AT_IMPORT)

    def test_operator_creation_validates_input(self):
        headers = self._admin_headers()
        self._create_operator(headers, "twice@example.com")

        duplicate = self.client.post(
            "/api/admin/operators",
            json={"email": "TWICE@example.com", "name": "Again", "password": "operator-pass"},
            headers=headers,
        )
        self.assertEqual(duplicate.status_code, 400)

        short = self.client.post(
            "/api/admin/operators",
            json={"email": "short@example.com", "name": "Short", "password": "12345"},
            headers=headers,
        )
        self.assertEqual(short.status_code, 400)

        reserved = self.client.post(
            "/api/admin/operators",
            json={"email": ADMIN_EMAIL, "name": "Shadow", "password": "operator-pass"},
            headers=headers,
        )
        self.assertEqual(reserved.status_code, 400)

    def test_self_registration_disabled_by_default(self):
        response = self.client.post(
            "/api/auth/register",
            json={"email": "new@example.com", "name": "New", "password": "operator-pass"},
        )
        self.assertEqual(response.status_code, 403)

    def test_issue_and_return_through_api(self):
        headers = self._admin_headers()
        item = self.client.post(
            "/api/items",
            json={"name": "Phillips screwdriver", "category": "Hand tools"},
            headers=headers,
        ).json()
        borrower = self.client.post(
            "/api/borrowers",
            json={"name": "J. Perez", "studentNumber": "2021-0042", "career": "Mechanical Engineering"},
            headers=headers,
        ).json()

        issued = self.client.post(
            "/api/loans",
            json={"itemID": item["itemID"], "borrowerID": borrower["borrowerID"]},
            headers=headers,
        )
        self.assertEqual(issued.status_code, 200, issued.text)
        loan = issued.json()
        self.assertEqual(loan["status"], "active")
        self.assertEqual(loan["item"]["name"], "Phillips screwdriver")
        self.assertEqual(loan["issuedByName"], "Principal Administrator")
        self.assertRegex(loan["ticketCode"], r"^TL\d{9}$")

        again = self.client.post(
            "/api/loans",
            json={"itemID": item["itemID"], "borrowerID": borrower["borrowerID"]},
            headers=headers,
        )
        self.assertEqual(again.status_code, 409)

        self.assertEqual(self.client.delete(f"/api/items/{item['itemID']}", headers=headers).status_code, 409)
        self.assertEqual(
            self.client.delete(f"/api/borrowers/{borrower['borrowerID']}", headers=headers).status_code,
            409,
        )

        returned = self.client.post(f"/api/loans/{loan['loanID']}/return", json={"notes": "ok"}, headers=headers)
        self.assertEqual(returned.status_code, 200, returned.text)
        self.assertEqual(returned.json()["status"], "returned")
        self.assertEqual(returned.json()["borrower"]["name"], "J. Perez")

        retried = self.client.post(f"/api/loans/{loan['loanID']}/return", headers=headers)
        self.assertEqual(retried.status_code, 200)
        self.assertEqual(retried.json()["loanID"], loan["loanID"])

        history = self.client.get("/api/loans/history", params={"search": "phillips"}, headers=headers).json()
        self.assertEqual([row["loanID"] for row in history], [loan["loanID"]])
        self.assertTrue(self.client.get(f"/api/items/{item['itemID']}", headers=headers).json()["isAvailable"])
        self.assertEqual(self.client.delete(f"/api/items/{item['itemID']}", headers=headers).status_code, 200)

    def test_issue_for_missing_records_returns_404(self):
        headers = self._admin_headers()
        response = self.client.post("/api/loans", json={"itemID": "missing", "borrowerID": "missing"}, headers=headers)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.client.post("/api/loans/missing/return", headers=headers).status_code, 404)

    def test_overdue_view_lists_only_overdue_loans(self):
        headers = self._admin_headers()
        item = self.client.post("/api/items", json={"name": "Torque wrench"}, headers=headers).json()
        fresh_item = self.client.post("/api/items", json={"name": "Tape measure"}, headers=headers).json()
        borrower = self.client.post(
            "/api/borrowers",
            json={"name": "Ana Ruiz", "studentNumber": "2020-0001"},
            headers=headers,
        ).json()
        self.client.post(
            "/api/loans",
            json={"itemID": fresh_item["itemID"], "borrowerID": borrower["borrowerID"]},
            headers=headers,
        )

        loan_date = datetime.now() - timedelta(days=40)
        with SessionLocalLending() as db:
            db.get(Item, item["itemID"]).IsAvailable = False
            db.add(
                Loan(
                    ItemID=item["itemID"],
                    BorrowerID=borrower["borrowerID"],
                    LoanDate=loan_date,
                    DueDate=due_date_for(loan_date),
                    Status="active",
                    TicketCode="TL000000001",
                )
            )
            db.commit()

        overdue = self.client.get("/api/loans/overdue", headers=headers).json()
        self.assertEqual([row["item"]["name"] for row in overdue], ["Torque wrench"])
        self.assertEqual(overdue[0]["daysOverdue"], 25)
        self.assertEqual(overdue[0]["severity"], "moderate")

        active_only = self.client.get("/api/loans", params={"status": "active"}, headers=headers).json()
        self.assertEqual([row["item"]["name"] for row in active_only], ["Tape measure"])
        everything = self.client.get("/api/loans", params={"status": "all"}, headers=headers).json()
        self.assertEqual(len(everything), 2)

        dashboard = self.client.get("/api/dashboard", headers=headers).json()
        self.assertEqual(dashboard["activeLoans"], 2)
        self.assertEqual(dashboard["overdueLoans"], 1)
        self.assertEqual(dashboard["availableItems"], 0)

    def test_item_qr_payload_identifies_item(self):
        headers = self._admin_headers()
        item = self.client.post("/api/items", json={"name": "Multimeter"}, headers=headers).json()
        qr = self.client.get(f"/api/items/{item['itemID']}/qr", headers=headers)
        self.assertEqual(qr.status_code, 200)
        self.assertEqual(qr.json()["payload"]["itemId"], item["itemID"])
        self.assertEqual(qr.json()["payload"]["type"], "tool")

    def test_item_requires_name(self):
        headers = self._admin_headers()
        response = self.client.post("/api/items", json={"name": "   "}, headers=headers)
        self.assertEqual(response.status_code, 400)

    def test_settings_round_trip_and_validation(self):
        headers = self._admin_headers()
        settings = self.client.get("/api/admin/settings", headers=headers).json()
        self.assertEqual(settings["loanDurationDays"], 15)
        self.assertEqual(settings["maxLoansPerBorrower"], 3)

        updated = self.client.put(
            "/api/admin/settings",
            json={"maintenanceMode": True, "backupFrequency": "weekly"},
            headers=headers,
        )
        self.assertEqual(updated.status_code, 200)
        self.assertTrue(updated.json()["maintenanceMode"])
        self.assertEqual(updated.json()["updatedBy"], "default-admin-uid")

        invalid = self.client.put("/api/admin/settings", json={"maxLoansPerBorrower": 0}, headers=headers)
        self.assertEqual(invalid.status_code, 400)

    def test_storage_failure_returns_generic_503(self):
        headers = self._admin_headers()
        app_module.app.dependency_overrides[app_module.get_lending_db] = UnavailableDb
        response = self.client.get("/api/items", headers=headers)
        self.assertEqual(response.status_code, 503)
        self.assertNotIn("database is down", response.json()["detail"])
        self.assertEqual(self.client.get("/api/loans/anything", headers=headers).status_code, 503)

    def test_report_export_is_plain_text_attachment(self):
        headers = self._admin_headers()
        response = self.client.get("/api/reports/export", params={"days": 7}, headers=headers)
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.text.startswith("TOOL LOAN REPORT"))
        self.assertIn("loan-report-", response.headers.get("content-disposition", ""))
        self.assertEqual(self.client.get("/api/reports", params={"days": 10}, headers=headers).status_code, 400)


if __name__ == "__main__":
    unittest.main()
