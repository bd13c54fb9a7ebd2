import unittest
from decimal import Decimal
from unittest import mock

from fastapi.testclient import TestClient

from flowledger import main
from flowledger.currency_conversion import StaticRateProvider
from flowledger.models import OwnerScope
from flowledger.store import LedgerStore, create_ledger_engine


class FlowApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = LedgerStore(create_ledger_engine("sqlite://"))
        patches = [
            mock.patch.object(main, "store", self.store),
            mock.patch.object(main, "FX_PROVIDER", StaticRateProvider()),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)
        self.client = TestClient(main.app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)
        self.account = self.store.insert_asset(OwnerScope.personal(1), "Checking", currency="USD", balance="100")
        self.headers = {"x-user-id": "1"}

    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_requires_user_identity(self) -> None:
        response = self.client.get("/flows")

        self.assertEqual(response.status_code, 401)

    def test_create_and_fetch_flow(self) -> None:
        response = self.client.post(
            "/flows",
            json={
                "type": "income",
                "amount": "250.00",
                "currency": "usd",
                "to_asset_id": self.account.id,
                "date": "2024-01-15",
                "recurring_frequency": "monthly",
                "adjust_balances": True,
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(Decimal(str(body["amount"])), Decimal("250"))
        self.assertEqual(body["currency"], "USD")
        self.assertIsNotNone(body["schedule_id"])
        self.assertEqual(self.store.find_asset(self.account.id).balance, Decimal("350"))

        fetched = self.client.get(f"/flows/{body['id']}", headers=self.headers)
        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(fetched.json()["date"], "2024-01-15")

        schedule = self.client.get(f"/recurring-schedules/{body['schedule_id']}", headers=self.headers)
        self.assertEqual(schedule.json()["next_run_date"], "2024-02-15")
        self.assertEqual(schedule.json()["source_flow_id"], body["id"])

    def test_validation_errors_are_bad_requests(self) -> None:
        response = self.client.post(
            "/flows",
            json={"type": "income", "amount": "10", "currency": "USD"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Income flows must have a to_asset_id")

    def test_foreign_reference_is_a_bad_request(self) -> None:
        response = self.client.post(
            "/flows",
            json={"type": "expense", "amount": "10", "currency": "USD", "from_asset_id": self.account.id},
            headers={"x-user-id": "2"},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "From asset not found or does not belong to user")

    def test_unknown_flow_is_not_found(self) -> None:
        self.assertEqual(self.client.get("/flows/999", headers=self.headers).status_code, 404)
        self.assertEqual(self.client.delete("/flows/999", headers=self.headers).status_code, 404)

    def test_review_flow(self) -> None:
        created = self.client.post(
            "/flows",
            json={
                "type": "expense",
                "amount": "4.20",
                "currency": "USD",
                "from_asset_id": self.account.id,
                "needs_review": True,
            },
            headers=self.headers,
        ).json()

        self.assertEqual(self.client.get("/flows/review-count", headers=self.headers).json(), {"count": 1})
        reviewed = self.client.post(f"/flows/{created['id']}/review", headers=self.headers)
        self.assertFalse(reviewed.json()["needs_review"])
        self.assertEqual(self.client.get("/flows/review-count", headers=self.headers).json(), {"count": 0})

    def test_flow_stats(self) -> None:
        for flow in (
            {"type": "income", "amount": "300", "currency": "USD", "to_asset_id": self.account.id},
            {"type": "expense", "amount": "46", "currency": "EUR", "from_asset_id": self.account.id},
        ):
            self.client.post("/flows", json={**flow, "date": "2024-05-10"}, headers=self.headers)

        response = self.client.get(
            "/flows/stats?start_date=2024-05-01&end_date=2024-05-31&currency=USD",
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(Decimal(str(body["total_income"])), Decimal("300"))
        self.assertEqual(Decimal(str(body["total_expense"])), Decimal("50"))
        self.assertEqual(Decimal(str(body["net_flow"])), Decimal("250"))
        self.assertEqual(body["start_date"], "2024-05-01")

    def test_flow_stats_rejects_inverted_range(self) -> None:
        response = self.client.get(
            "/flows/stats?start_date=2024-05-31&end_date=2024-05-01",
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_process_recurring_endpoint(self) -> None:
        self.client.post(
            "/recurring-schedules",
            json={
                "frequency": "weekly",
                "next_run_date": "2024-03-01",
                "flow_template": {
                    "type": "income",
                    "amount": "5",
                    "currency": "USD",
                    "to_asset_id": self.account.id,
                },
            },
            headers=self.headers,
        )

        response = self.client.post("/recurring-schedules/process?as_of=2024-03-01", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["processed"], 1)
        self.assertEqual(len(body["created_flows"]), 1)
        self.assertEqual(body["errors"], [])

        listing = self.client.get("/recurring-schedules", headers=self.headers).json()
        self.assertEqual(listing["total"], 1)
        self.assertEqual(listing["schedules"][0]["next_run_date"], "2024-03-08")

    def test_family_view_falls_back_to_personal_without_membership(self) -> None:
        self.client.post(
            "/flows",
            json={"type": "income", "amount": "1", "currency": "USD", "to_asset_id": self.account.id},
            headers=self.headers,
        )

        response = self.client.get("/flows", headers={"x-user-id": "1", "x-view-mode": "family"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total"], 1)

    def test_family_members_default_to_family_view(self) -> None:
        self.store.add_family_member(7, 1)
        joint = self.store.insert_asset(OwnerScope.family(1, 7), "Joint", currency="USD")

        created = self.client.post(
            "/flows",
            json={"type": "income", "amount": "3", "currency": "USD", "to_asset_id": joint.id},
            headers=self.headers,
        )
        self.assertEqual(created.json()["belong_id"], "family:7")

        personal = self.client.get("/flows", headers={"x-user-id": "1", "x-view-mode": "personal"})
        self.assertEqual(personal.json()["total"], 0)


if __name__ == "__main__":
    unittest.main()
