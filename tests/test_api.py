#!/usr/bin/env python3
"""
HTTP API tests for the marketplace service
Runs the FastAPI app in-process against a throwaway SQLite database.
"""

import unittest
from unittest import mock

from fastapi.testclient import TestClient

from marketplace_service.main import create_app
from marketplace_service.workers import start_sweeps
from marketplace_fixture import MarketplaceTestCase


class MarketplaceApiTestCase(MarketplaceTestCase):

    def setUp(self):
        super().setUp()
        app = create_app(self.session_factory, self.publisher, self.clock, run_sweeps=False)
        self.client = TestClient(app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def put_guide(self, guide_id="guide-1", **profile):
        profile.setdefault("hourly_price", 60)
        response = self.client.put(f"/guides/{guide_id}", json=profile)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def post_grab_order(self, **overrides):
        body = {"origin": "grab", "requester_id": "tourist-1", "schedule_date": "2026-10-03", "time_slot": "09:00-13:00"}
        body.update(overrides)
        return self.client.post("/orders", json=body)

    def assertError(self, response, status_code, code):
        self.assertEqual(response.status_code, status_code, response.text)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"]["code"], code)
        return body["error"]


class TestGuideEndpoints(MarketplaceApiTestCase):

    def test_upsert_and_level(self):
        info = self.put_guide(completed_orders=25, good_reviews=5, has_vehicle=True)
        self.assertEqual(info["points"], 220)
        self.assertEqual(info["level"], "intermediate")
        self.assertAlmostEqual(info["commission_rate"], 0.18)
        self.assertEqual(info["price_ceiling"], 80)

        response = self.client.get("/guides/guide-1/level")
        self.assertEqual(response.json(), info)

    def test_price_out_of_range(self):
        self.put_guide()
        error = self.assertError(self.client.put("/guides/guide-1/price", json={"price": 90}), 409, "PRICE_OUT_OF_RANGE")
        self.assertEqual(error["context"], {"floor": 30, "ceiling": 80})
        self.assertEqual(error["field"], "price")

    def test_verification_raises_ceiling(self):
        self.put_guide(completed_orders=70)
        response = self.client.put("/guides/guide-1/verification", json={"verified": True})
        self.assertEqual(response.json()["price_ceiling"], 200)
        response = self.client.put("/guides/guide-1/price", json={"price": 150})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["hourly_price"], 150)

    def test_unknown_guide(self):
        self.assertError(self.client.get("/guides/ghost/level"), 404, "NOT_FOUND")


class TestOrderEndpoints(MarketplaceApiTestCase):

    def setUp(self):
        super().setUp()
        self.put_guide("guide-1")
        self.put_guide("guide-2")

    def test_grab_flow_through_completion(self):
        response = self.post_grab_order()
        self.assertEqual(response.status_code, 201, response.text)
        order_id = response.json()["id"]
        self.assertEqual(response.json()["state"], "open")

        response = self.client.post(f"/orders/{order_id}/claim", json={"guide_id": "guide-1"})
        self.assertEqual(response.json()["state"], "claimed")
        self.assertEqual(response.json()["hourly_price"], 60)

        self.assertError(self.client.post(f"/orders/{order_id}/claim", json={"guide_id": "guide-2"}),
                         409, "ALREADY_CLAIMED")

        response = self.client.post(f"/orders/{order_id}/confirm", json={"requester_id": "tourist-1"})
        self.assertEqual(response.json()["state"], "confirmed")

        response = self.client.post(f"/orders/{order_id}/complete", json={"guide_id": "guide-1"})
        self.assertEqual(response.status_code, 200)
        self.assertIsNotNone(response.json()["completed_at"])

        wallet = self.client.get("/wallets/guide-1").json()
        self.assertEqual(wallet["available_balance"], 0)
        self.assertEqual(wallet["locked_balance"], 19200)
        self.assertEqual(wallet["total_income"], 19200)
        self.assertEqual(len(wallet["locked_entries"]), 1)

        entries = self.client.get("/wallets/guide-1/entries").json()
        self.assertEqual(sorted(e["type"] for e in entries), ["income", "locked"])

    def test_booking_response_by_wrong_guide(self):
        response = self.client.post("/orders", json={
            "origin": "booking", "requester_id": "tourist-1", "target_guide_id": "guide-1",
            "schedule_date": "2026-10-03", "time_slot": "09:00-13:00",
        })
        order_id = response.json()["id"]
        self.assertError(self.client.post(f"/orders/{order_id}/booking-response",
                                          json={"guide_id": "guide-2", "decision": "accept"}), 403, "NOT_AUTHORIZED")
        response = self.client.post(f"/orders/{order_id}/booking-response", json={"guide_id": "guide-1", "decision": "reject"})
        self.assertEqual(response.json()["state"], "rejected")
        self.assertError(self.client.post(f"/orders/{order_id}/booking-response",
                                          json={"guide_id": "guide-1", "decision": "accept"}), 409, "INVALID_STATE")

    def test_request_validation(self):
        self.assertError(self.client.post("/orders", json={"origin": "grab", "schedule_date": "2026-10-03"}),
                         400, "VALIDATION_ERROR")
        self.assertError(self.post_grab_order(time_slot="13:00-09:00"), 400, "VALIDATION_ERROR")

    def test_order_lookup_and_listing(self):
        self.assertError(self.client.get("/orders/missing"), 404, "NOT_FOUND")
        order_id = self.post_grab_order().json()["id"]
        self.assertEqual(self.client.get(f"/orders/{order_id}").json()["id"], order_id)
        self.assertEqual([o["id"] for o in self.client.get("/orders", params={"state": "open"}).json()], [order_id])
        self.assertEqual(self.client.get("/orders", params={"state": "claimed"}).json(), [])


class TestWalletEndpoints(MarketplaceApiTestCase):

    def setUp(self):
        super().setUp()
        self.put_guide("guide-1", hourly_price=80)
        self.completed_order("guide-1")

    def test_withdraw_rules(self):
        error = self.assertError(self.client.post("/wallets/guide-1/withdraw", json={"amount": 5000}),
                                 409, "INSUFFICIENT_FUNDS")
        self.assertEqual(error["context"]["available_balance"], 0)

        self.clock.advance(days=7)
        response = self.client.post("/wallets/guide-1/withdraw", json={"amount": 5000, "request_id": "r-1"})
        self.assertEqual(response.status_code, 201, response.text)
        entry_id = response.json()["id"]
        self.assertEqual(response.json()["amount"], -5000)

        response = self.client.post(f"/withdrawals/{entry_id}/settle")
        self.assertEqual(response.json()["status"], "resolved")
        self.assertEqual(self.client.get("/wallets/guide-1").json()["available_balance"], 20600)

    def test_staff_deduction(self):
        response = self.client.post("/wallets/guide-1/deduct", json={"amount": 1000, "reason": "complaint upheld"})
        self.assertEqual(response.status_code, 201, response.text)
        self.assertEqual(response.json()["type"], "deducted")
        self.assertError(self.client.post("/wallets/guide-1/deduct", json={"amount": 999999, "reason": "too much"}),
                         409, "INSUFFICIENT_LOCKED_FUNDS")
        self.assertEqual(self.client.get("/wallets/guide-1").json()["locked_balance"], 24600)


class TestAlertEndpoints(MarketplaceApiTestCase):

    def test_alert_workflow(self):
        self.put_guide("guide-1")
        order = self.confirmed_order("guide-1")
        self.clock.advance(days=3)
        self.escalation.overdue_sweep()

        alerts = self.client.get("/alerts", params={"status": "pending"}).json()
        self.assertEqual([a["order_id"] for a in alerts], [order.id])

        self.assertError(self.client.put(f"/alerts/{order.id}", json={"status": "resolved"}), 400, "VALIDATION_ERROR")
        response = self.client.put(f"/alerts/{order.id}", json={"status": "resolved", "notes": "guide confirmed end"})
        self.assertEqual(response.json()["status"], "resolved")
        self.assertError(self.client.put(f"/alerts/{order.id}", json={"status": "contacted"}), 409, "INVALID_STATE")
        self.assertEqual(self.client.get("/alerts", params={"status": "pending"}).json(), [])

    def test_health(self):
        self.assertEqual(self.client.get("/health").json(), {"ok": True, "service": "marketplace"})


class TestLifespan(MarketplaceTestCase):

    def test_sweeps_stop_with_the_app(self):
        started = []

        def record_sweeps(*services):
            workers = start_sweeps(*services)
            started.extend(workers)
            return workers

        app = create_app(self.session_factory, self.publisher, self.clock, run_sweeps=True)
        with mock.patch("marketplace_service.main.start_sweeps", record_sweeps):
            with TestClient(app) as client:
                self.assertEqual(client.get("/health").status_code, 200)
                self.assertTrue(all(worker.is_alive() for worker in started))

        self.assertEqual([worker.name for worker in started], ["unlock", "claim-expiry", "overdue-alerts"])
        # Shutdown waits for the sweeps, so nothing touches the database after the app is gone
        self.assertFalse(any(worker.is_alive() for worker in started))


if __name__ == "__main__":
    unittest.main()
