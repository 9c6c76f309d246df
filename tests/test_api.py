"""Tests de la API: webhooks, pickups, puntos y admin"""

import ledger
from lifecycle import create_pickup, transition_pickup
from models import LedgerEntry


class TestWebhooks:

    def test_requires_service_role(self, client, household, headers):
        response = client.post(
            "/webhooks/pickup-created",
            json={"type": "INSERT", "table": "pickups", "record": {"id": 1}},
            headers=headers(household),
        )
        assert response.status_code == 403

    def test_rejects_bad_token(self, client):
        response = client.post(
            "/webhooks/pickup-created",
            json={"record": {"id": 1}},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401

    def test_created_then_completed(self, client, db, household, collector, headers):
        pickup = create_pickup(db, household.id, "plastic", 8)
        db.commit()

        created = client.post(
            "/webhooks/pickup-created",
            json={"type": "INSERT", "table": "pickups", "record": {"id": pickup.id, "user_id": household.id,
                                                                     "waste_category": "plastic"}},
            headers=headers(),
        )
        assert created.status_code == 200
        body = created.json()
        assert body["success"] is True
        assert body["points_awarded"] == 12
        assert body["new_balance"] == 62

        transition_pickup(db, pickup.id, "assigned", collector_id=collector.id)
        transition_pickup(db, pickup.id, "in_progress")
        transition_pickup(db, pickup.id, "collected", actual_weight=20)
        transition_pickup(db, pickup.id, "processed")
        transition_pickup(db, pickup.id, "completed")
        db.commit()

        payload = {
            "type": "UPDATE",
            "table": "pickups",
            "record": {"id": pickup.id, "status": "completed", "actual_weight": 20},
            "old_record": {"id": pickup.id, "status": "processed"},
        }
        completed = client.post("/webhooks/pickup-updated", json=payload, headers=headers())
        assert completed.status_code == 200
        assert completed.json()["new_balance"] == 102
        assert completed.json()["new_streak"] == 1

        redelivered = client.post("/webhooks/pickup-updated", json=payload, headers=headers())
        assert redelivered.status_code == 200
        assert redelivered.json()["message"] == "Completion already processed"
        assert db.query(LedgerEntry).filter(LedgerEntry.user_id == household.id).count() == 3

    def test_unknown_pickup_is_404(self, client, headers):
        response = client.post(
            "/webhooks/pickup-updated",
            json={"record": {"id": 77, "status": "completed"}, "old_record": {"id": 77, "status": "processed"}},
            headers=headers(),
        )
        assert response.status_code == 404
        assert response.json()["error_code"] == "not_found"
        assert response.json()["retryable"] is False


class TestPickups:

    def test_household_full_flow(self, client, household, collector, headers):
        created = client.post(
            "/pickups", json={"waste_category": "electronic", "estimated_weight": 3}, headers=headers(household)
        )
        assert created.status_code == 200
        body = created.json()
        pickup_id = body["pickup"]["id"]
        assert body["pickup"]["status"] == "pending"
        assert body["pickup"]["points_awarded"] == 20
        assert body["result"]["badge_names"] == ["First Pickup"]

        for step in [{"status": "assigned"}, {"status": "in_progress"},
                     {"status": "collected", "actual_weight": 4.2}, {"status": "processed"}]:
            response = client.patch(f"/pickups/{pickup_id}/status", json=step, headers=headers(collector))
            assert response.status_code == 200, response.json()
            assert response.json()["result"]["message"] == "No processing needed"

        done = client.patch(f"/pickups/{pickup_id}/status", json={"status": "completed"}, headers=headers(collector))
        assert done.status_code == 200
        assert done.json()["result"]["weight_bonus"] == 8
        assert done.json()["pickup"]["points_awarded"] == 28

        points = client.get("/me/points", headers=headers(household)).json()
        assert points["green_points"] == 78
        assert points["weekly_streak"] == 1
        assert points["total_pickups"] == 1

        entries = client.get("/me/ledger", headers=headers(household)).json()
        assert [e["transaction_type"] for e in entries] == ["pickup_created", "badge_earned", "pickup_completed"]

        stats = client.get("/me/stats", headers=headers(household)).json()
        assert stats["completed_pickups"] == 1
        assert stats["impact"]["weight_kg"] == 4.2

    def test_collectors_cannot_request_pickups(self, client, collector, headers):
        response = client.post("/pickups", json={"waste_category": "glass"}, headers=headers(collector))
        assert response.status_code == 403

    def test_invalid_category_is_422(self, client, household, headers):
        response = client.post("/pickups", json={"waste_category": "lava"}, headers=headers(household))
        assert response.status_code == 422

    def test_illegal_transition_is_409(self, client, household, admin, headers):
        pickup_id = client.post(
            "/pickups", json={"waste_category": "glass"}, headers=headers(household)
        ).json()["pickup"]["id"]
        response = client.patch(f"/pickups/{pickup_id}/status", json={"status": "completed"}, headers=headers(admin))
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_state"

    def test_household_can_cancel_own_pickup(self, client, household, headers):
        pickup_id = client.post(
            "/pickups", json={"waste_category": "glass"}, headers=headers(household)
        ).json()["pickup"]["id"]
        response = client.patch(f"/pickups/{pickup_id}/status", json={"status": "cancelled"}, headers=headers(household))
        assert response.status_code == 200
        assert response.json()["pickup"]["status"] == "cancelled"

    def test_lost_balance_race_is_retried_in_process(self, client, household, headers, monkeypatch):
        real_read = ledger._read_balance
        calls = {"n": 0}

        def stale_for_first_attempt(session, user_id):
            calls["n"] += 1
            value = real_read(session, user_id)
            return value + 1 if calls["n"] <= ledger.LEDGER_MAX_RETRIES else value

        monkeypatch.setattr(ledger, "_read_balance", stale_for_first_attempt)
        response = client.post(
            "/pickups", json={"waste_category": "electronic", "estimated_weight": 3}, headers=headers(household)
        )

        assert response.status_code == 200
        assert response.json()["result"]["success"] is True
        assert response.json()["result"]["new_balance"] == 70
        assert calls["n"] > ledger.LEDGER_MAX_RETRIES

    def test_unresolved_conflict_is_reported_and_recoverable(self, client, household, collector, headers,
                                                              monkeypatch):
        pickup_id = client.post(
            "/pickups", json={"waste_category": "glass"}, headers=headers(household)
        ).json()["pickup"]["id"]
        for step in [{"status": "assigned"}, {"status": "in_progress"},
                     {"status": "collected", "actual_weight": 5}, {"status": "processed"}]:
            client.patch(f"/pickups/{pickup_id}/status", json=step, headers=headers(collector))

        real_read = ledger._read_balance
        monkeypatch.setattr(ledger, "_read_balance", lambda session, user_id: real_read(session, user_id) + 1)
        done = client.patch(f"/pickups/{pickup_id}/status", json={"status": "completed"}, headers=headers(collector))

        assert done.status_code == 409
        assert done.json()["pickup"]["status"] == "completed"
        assert done.json()["result"]["error_code"] == "concurrency_conflict"
        assert done.json()["result"]["retryable"] is True

        # El dispatcher de la BD reentrega el evento y esta vez se procesa
        monkeypatch.setattr(ledger, "_read_balance", real_read)
        redelivered = client.post(
            "/webhooks/pickup-updated",
            json={"record": {"id": pickup_id, "status": "completed"},
                  "old_record": {"id": pickup_id, "status": "processed"}},
            headers=headers(),
        )
        assert redelivered.status_code == 200
        assert redelivered.json()["weight_bonus"] == 10

    def test_other_collector_is_forbidden(self, client, household, collector, make_profile, headers):
        intruder = make_profile("collector")
        pickup_id = client.post(
            "/pickups", json={"waste_category": "glass"}, headers=headers(household)
        ).json()["pickup"]["id"]
        client.patch(f"/pickups/{pickup_id}/status", json={"status": "assigned"}, headers=headers(collector))

        response = client.patch(f"/pickups/{pickup_id}/status", json={"status": "in_progress"}, headers=headers(intruder))
        assert response.status_code == 403


class TestPointsAndAdmin:

    def test_redeem_insufficient_balance(self, client, household, headers):
        response = client.post("/me/redeem", json={"points": 10, "reward": "Compostera"}, headers=headers(household))
        assert response.status_code == 409

    def test_admin_adjust_and_verify(self, client, household, admin, headers):
        adjusted = client.post(
            f"/admin/users/{household.id}/adjust",
            json={"points": 30, "reason": "Campaña de reciclaje"},
            headers=headers(admin),
        )
        assert adjusted.status_code == 200
        assert adjusted.json()["transaction_type"] == "bonus_points"

        redeemed = client.post("/me/redeem", json={"points": 10, "reward": "Bolsa"}, headers=headers(household))
        assert redeemed.status_code == 200
        assert redeemed.json()["balance_after"] == 20

        audit = client.get(f"/admin/users/{household.id}/ledger/verify", headers=headers(admin)).json()
        assert audit["consistent"] is True
        assert audit["ledger_sum"] == 20

    def test_admin_endpoints_need_admin(self, client, household, headers):
        response = client.post(
            f"/admin/users/{household.id}/adjust", json={"points": 30, "reason": "Yo mismo"}, headers=headers(household)
        )
        assert response.status_code == 403

    def test_badges_catalog_and_progress(self, client, household, headers):
        catalog = client.get("/badges").json()
        assert {b["name"] for b in catalog} >= {"First Pickup", "Eco Warrior", "E-Waste Expert"}

        progress = client.get("/me/badges", headers=headers(household)).json()
        assert all(p["earned"] is False for p in progress)

    def test_health_check(self, client):
        assert client.get("/").json()["status"] == "ok"
