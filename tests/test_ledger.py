"""Tests del motor del ledger: asientos, saldo, concurrencia y auditoría"""

import pytest

import ledger
from errors import NotFound, InvalidState, ConcurrencyConflict, ValidationError
from ledger import append_entry, verify_ledger, adjust_points, redeem_points, list_entries
from models import LedgerEntry, Profile


def _entries(db, user_id):
    return db.query(LedgerEntry).filter(LedgerEntry.user_id == user_id).order_by(LedgerEntry.id).all()


class TestAppendEntry:

    def test_updates_balance_and_snapshot(self, db, household):
        entry = append_entry(db, household.id, None, None, "bonus_points", 30, {"reason": "test"})
        db.commit()

        assert entry.balance_after == 30
        assert entry.transaction_data["reason"] == "test"
        assert "timestamp" in entry.transaction_data
        db.refresh(household)
        assert household.green_points == 30

    def test_running_balance_is_contiguous(self, db, household):
        for delta, tx in [(12, "bonus_points"), (50, "badge_earned"), (-20, "penalty"), (40, "bonus_points")]:
            append_entry(db, household.id, None, None, tx, delta)
        db.commit()

        entries = _entries(db, household.id)
        previous = 0
        for entry in entries:
            assert entry.balance_after == previous + entry.points_change
            previous = entry.balance_after
        db.refresh(household)
        assert household.green_points == sum(e.points_change for e in entries) == 82

    def test_missing_user_writes_nothing(self, db):
        with pytest.raises(NotFound):
            append_entry(db, 999, None, None, "bonus_points", 10)
        assert db.query(LedgerEntry).count() == 0

    def test_negative_delta_rejected_for_reward_types(self, db, household):
        with pytest.raises(InvalidState):
            append_entry(db, household.id, None, None, "badge_earned", -5)
        db.rollback()
        db.refresh(household)
        assert household.green_points == 0
        assert db.query(LedgerEntry).count() == 0

    def test_penalty_may_go_negative(self, db, household):
        entry = append_entry(db, household.id, None, None, "penalty", -15)
        db.commit()
        assert entry.balance_after == -15

    def test_unknown_transaction_type(self, db, household):
        with pytest.raises(ValidationError):
            append_entry(db, household.id, None, None, "gift", 10)

    def test_non_integer_delta(self, db, household):
        with pytest.raises(ValidationError):
            append_entry(db, household.id, None, None, "bonus_points", 1.5)

    def test_entries_are_immutable(self, db, household):
        entry = append_entry(db, household.id, None, None, "bonus_points", 10)
        db.commit()

        entry.points_change = 1000
        with pytest.raises(InvalidState):
            db.flush()
        db.rollback()

        db.delete(db.get(LedgerEntry, entry.id))
        with pytest.raises(InvalidState):
            db.flush()
        db.rollback()

    def test_same_pickup_step_cannot_be_credited_twice(self, db, household, submit_pickup):
        pickup, _ = submit_pickup(household)
        with pytest.raises(ConcurrencyConflict):
            append_entry(db, household.id, pickup.id, None, "pickup_created", 12)
        db.rollback()


class TestOptimisticConcurrency:

    def test_lost_race_is_retried(self, db, household, monkeypatch):
        real_read = ledger._read_balance
        calls = {"n": 0}

        def stale_once(session, user_id):
            calls["n"] += 1
            value = real_read(session, user_id)
            return value - 7 if calls["n"] == 1 else value

        append_entry(db, household.id, None, None, "bonus_points", 20)
        db.commit()

        monkeypatch.setattr(ledger, "_read_balance", stale_once)
        entry = append_entry(db, household.id, None, None, "bonus_points", 5)
        db.commit()

        assert calls["n"] == 2
        assert entry.balance_after == 25
        db.refresh(household)
        assert household.green_points == 25

    def test_gives_up_with_concurrency_conflict(self, db, household, monkeypatch):
        real_read = ledger._read_balance
        monkeypatch.setattr(ledger, "_read_balance", lambda session, user_id: real_read(session, user_id) + 1)

        with pytest.raises(ConcurrencyConflict):
            append_entry(db, household.id, None, None, "bonus_points", 5)
        db.rollback()

        db.refresh(household)
        assert household.green_points == 0
        assert db.query(LedgerEntry).count() == 0


class TestAudit:

    def test_consistent_ledger(self, db, household):
        append_entry(db, household.id, None, None, "bonus_points", 40)
        append_entry(db, household.id, None, None, "penalty", -10)
        db.commit()

        audit = verify_ledger(db, household.id)
        assert audit["consistent"] is True
        assert audit["entries"] == 2
        assert audit["ledger_sum"] == audit["profile_balance"] == 30

    def test_detects_tampered_balance(self, db, household):
        append_entry(db, household.id, None, None, "bonus_points", 40)
        db.query(Profile).filter(Profile.id == household.id).update({Profile.green_points: 999})
        db.commit()

        audit = verify_ledger(db, household.id)
        assert audit["consistent"] is False
        assert audit["first_broken_entry_id"] is None
        assert audit["profile_balance"] == 999

    def test_list_entries_filters_by_type(self, db, household):
        append_entry(db, household.id, None, None, "bonus_points", 40)
        append_entry(db, household.id, None, None, "penalty", -10)
        db.commit()

        penalties = list_entries(db, household.id, transaction_type="penalty")
        assert [e.points_change for e in penalties] == [-10]


class TestManualAdjustments:

    def test_admin_bonus_and_penalty(self, db, household, admin):
        bonus = adjust_points(db, household.id, 25, "Limpieza del barrio", admin.id)
        penalty = adjust_points(db, household.id, -40, "Residuos mezclados", admin.id)
        db.commit()

        assert bonus.transaction_type == "bonus_points"
        assert penalty.transaction_type == "penalty"
        assert penalty.balance_after == -15
        assert penalty.transaction_data["admin_id"] == admin.id

    def test_only_admins_adjust(self, db, household, collector):
        with pytest.raises(InvalidState):
            adjust_points(db, household.id, 10, "Por la cara", collector.id)

    def test_reason_and_delta_required(self, db, household, admin):
        with pytest.raises(ValidationError):
            adjust_points(db, household.id, 0, "nada", admin.id)
        with pytest.raises(ValidationError):
            adjust_points(db, household.id, 10, "   ", admin.id)


class TestRedemption:

    def test_redeem_reduces_balance(self, db, household):
        append_entry(db, household.id, None, None, "bonus_points", 100)
        entry = redeem_points(db, household.id, 60, "Bolsa reutilizable")
        db.commit()

        assert entry.transaction_type == "redemption"
        assert entry.points_change == -60
        assert entry.balance_after == 40

    def test_insufficient_balance(self, db, household):
        append_entry(db, household.id, None, None, "bonus_points", 10)
        with pytest.raises(InvalidState):
            redeem_points(db, household.id, 11, "Compostera")

    def test_redeem_whole_balance(self, db, household):
        append_entry(db, household.id, None, None, "bonus_points", 25)
        entry = redeem_points(db, household.id, 25, "Compostera")
        assert entry.balance_after == 0

    def test_concurrent_redemption_cannot_overdraw(self, db, household, monkeypatch):
        # Otro canje de 60 se confirmó después de que este leyera 100
        append_entry(db, household.id, None, None, "bonus_points", 100)
        redeem_points(db, household.id, 60, "Bolsa")
        db.commit()

        real_read = ledger._read_balance
        calls = {"n": 0}

        def stale_once(session, user_id):
            calls["n"] += 1
            return 100 if calls["n"] == 1 else real_read(session, user_id)

        monkeypatch.setattr(ledger, "_read_balance", stale_once)
        with pytest.raises(InvalidState):
            redeem_points(db, household.id, 60, "Bolsa")
        db.rollback()

        assert calls["n"] == 2
        db.refresh(household)
        assert household.green_points == 40
        assert [e.balance_after for e in _entries(db, household.id)] == [100, 40]

    def test_amount_must_be_positive(self, db, household):
        with pytest.raises(ValidationError):
            redeem_points(db, household.id, 0, "Nada")
