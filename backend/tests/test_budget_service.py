import pytest
from sqlalchemy.exc import OperationalError

from discount_authority.extensions import db
from discount_authority.errors import BudgetExhausted, ConcurrencyConflict, InputError, PersistenceFailure
from discount_authority.models import BudgetReservation, DiscountBudget
from discount_authority.services import budget_service
from discount_authority.services.concurrency import run_fail_closed
from discount_authority.time_utils import iso_week_key


def _budget(employee):
    return budget_service.get_active_budget(employee.id)


class TestPeriods:
    def test_open_defaults_to_iso_week_and_default_limit(self, staff):
        budget = budget_service.open_budget_period(staff.id)
        assert budget.period_key == iso_week_key()
        assert budget.limit_cents == 50000
        assert budget.status == "OPEN"
        assert budget.remaining_cents == 50000

    def test_open_is_idempotent(self, staff, open_budget):
        first = open_budget(staff, period_key="shift-1")
        second = open_budget(staff, period_key="shift-1")
        assert first.id == second.id
        assert DiscountBudget.query.count() == 1

    def test_second_open_period_is_rejected(self, staff, open_budget):
        open_budget(staff, period_key="shift-1")
        with pytest.raises(InputError):
            open_budget(staff, period_key="shift-2")

    def test_closed_period_cannot_reopen(self, staff, open_budget):
        budget = open_budget(staff, period_key="shift-1")
        budget_service.close_budget_period(budget.id)
        with pytest.raises(InputError):
            open_budget(staff, period_key="shift-1")
        assert open_budget(staff, period_key="shift-2").status == "OPEN"

    def test_open_for_unknown_employee(self, db_session):
        with pytest.raises(InputError):
            budget_service.open_budget_period(424242)

    def test_close_releases_outstanding_reservations(self, staff, open_budget, audit_sink):
        budget = open_budget(staff)
        held = budget_service.reserve(staff.id, 1000)
        spent = budget_service.reserve(staff.id, 2000)
        budget_service.commit_reservation(spent.id)

        closed = budget_service.close_budget_period(budget.id)

        assert closed.status == "CLOSED"
        assert closed.closed_at is not None
        assert closed.reserved_cents == 0
        assert closed.committed_cents == 2000
        assert db.session.get(BudgetReservation, held.id).status == "RELEASED"
        assert audit_sink.events("budget.closed")[0].payload["released_reservation_ids"] == [held.id]

    def test_close_is_idempotent(self, staff, open_budget):
        budget = open_budget(staff)
        budget_service.close_budget_period(budget.id)
        assert budget_service.close_budget_period(budget.id).status == "CLOSED"

    def test_closed_budget_no_longer_mutates(self, staff, open_budget):
        budget = open_budget(staff)
        budget_service.close_budget_period(budget.id)
        with pytest.raises(BudgetExhausted) as exc:
            budget_service.reserve(staff.id, 100)
        assert exc.value.details["reason"] == "no_open_period"

    def test_summary_lists_outstanding_reservations(self, staff, open_budget):
        open_budget(staff)
        held = budget_service.reserve(staff.id, 700)
        summary = budget_service.get_budget_summary(staff.id)
        assert summary["budget"]["reserved_cents"] == 700
        assert [r["id"] for r in summary["outstanding_reservations"]] == [held.id]

    def test_probe_without_open_period(self, staff):
        assert budget_service.probe_remaining(staff.id) is None
        assert budget_service.get_budget_summary(staff.id) is None


class TestReserveCommitRelease:
    def test_reserve_within_limit(self, staff, open_budget):
        open_budget(staff, limit_cents=10000)
        reservation = budget_service.reserve(staff.id, 4000, transaction_id="T-1")

        budget = _budget(staff)
        assert reservation.status == "RESERVED"
        assert budget.reserved_cents == 4000
        assert budget.remaining_cents == 6000

    def test_reserve_up_to_exact_limit(self, staff, open_budget):
        open_budget(staff, limit_cents=10000)
        budget_service.reserve(staff.id, 6000)
        budget_service.reserve(staff.id, 4000)
        assert _budget(staff).remaining_cents == 0

    def test_reserve_over_limit_has_no_side_effects(self, staff, open_budget):
        open_budget(staff, limit_cents=10000)
        budget_service.reserve(staff.id, 6000)
        version = _budget(staff).version_id

        with pytest.raises(BudgetExhausted) as exc:
            budget_service.reserve(staff.id, 4001)

        assert exc.value.details["reason"] == "insufficient_budget"
        assert exc.value.details["remaining_cents"] == 4000
        budget = _budget(staff)
        assert budget.reserved_cents == 6000
        assert budget.version_id == version
        assert BudgetReservation.query.count() == 1

    def test_committed_amounts_count_against_limit(self, staff, open_budget):
        open_budget(staff, limit_cents=10000)
        reservation = budget_service.reserve(staff.id, 9000)
        budget_service.commit_reservation(reservation.id)
        with pytest.raises(BudgetExhausted):
            budget_service.reserve(staff.id, 1001)

    def test_reserve_without_open_period(self, staff):
        with pytest.raises(BudgetExhausted) as exc:
            budget_service.reserve(staff.id, 100)
        assert exc.value.details["reason"] == "no_open_period"

    def test_negative_amount_is_input_error(self, staff, open_budget):
        open_budget(staff)
        with pytest.raises(InputError):
            budget_service.reserve(staff.id, -5)

    def test_commit_moves_reserved_to_committed(self, staff, open_budget, audit_sink):
        open_budget(staff, limit_cents=10000)
        reservation = budget_service.reserve(staff.id, 2500)
        budget_service.commit_reservation(reservation.id)

        budget = _budget(staff)
        assert budget.reserved_cents == 0
        assert budget.committed_cents == 2500
        assert [e.event_type for e in audit_sink.events() if e.entity_type == "reservation"] == [
            "budget.reserved", "budget.committed",
        ]

    def test_double_commit_is_conflict(self, staff, open_budget):
        open_budget(staff)
        reservation = budget_service.reserve(staff.id, 2500)
        budget_service.commit_reservation(reservation.id)

        with pytest.raises(ConcurrencyConflict) as exc:
            budget_service.commit_reservation(reservation.id)
        assert exc.value.details["status"] == "COMMITTED"
        assert _budget(staff).committed_cents == 2500

    def test_release_returns_budget(self, staff, open_budget):
        open_budget(staff, limit_cents=10000)
        reservation = budget_service.reserve(staff.id, 2500)
        released = budget_service.release_reservation(reservation.id)

        assert released.status == "RELEASED"
        assert _budget(staff).remaining_cents == 10000

    def test_release_after_commit_is_conflict(self, staff, open_budget):
        open_budget(staff)
        reservation = budget_service.reserve(staff.id, 2500)
        budget_service.commit_reservation(reservation.id)
        with pytest.raises(ConcurrencyConflict):
            budget_service.release_reservation(reservation.id)

    def test_commit_after_release_is_conflict(self, staff, open_budget):
        open_budget(staff)
        reservation = budget_service.reserve(staff.id, 2500)
        budget_service.release_reservation(reservation.id)
        with pytest.raises(ConcurrencyConflict):
            budget_service.commit_reservation(reservation.id)

    def test_unknown_reservation_is_conflict(self, staff, open_budget):
        open_budget(staff)
        with pytest.raises(ConcurrencyConflict):
            budget_service.commit_reservation(987654)
        with pytest.raises(ConcurrencyConflict):
            budget_service.release_reservation(987654)


class TestExpiry:
    def test_expired_reservation_cannot_commit(self, staff, open_budget, backdate):
        open_budget(staff)
        reservation = budget_service.reserve(staff.id, 2500)
        backdate(BudgetReservation, reservation.id)

        with pytest.raises(ConcurrencyConflict) as exc:
            budget_service.commit_reservation(reservation.id)
        assert exc.value.details["status"] == "EXPIRED"
        assert _budget(staff).committed_cents == 0

    def test_sweep_returns_abandoned_reservations(self, staff, manager, open_budget, backdate):
        open_budget(staff)
        open_budget(manager)
        stale = budget_service.reserve(staff.id, 2500)
        stale_mgr = budget_service.reserve(manager.id, 1500)
        live = budget_service.reserve(staff.id, 1000)
        backdate(BudgetReservation, stale.id)
        backdate(BudgetReservation, stale_mgr.id)

        expired = budget_service.release_expired_reservations()

        assert sorted(expired) == sorted([stale.id, stale_mgr.id])
        assert db.session.get(BudgetReservation, stale.id).status == "EXPIRED"
        assert db.session.get(BudgetReservation, live.id).status == "RESERVED"
        assert _budget(staff).reserved_cents == 1000
        assert _budget(manager).reserved_cents == 0
        assert budget_service.release_expired_reservations() == []

    def test_reserve_sweeps_expired_holds_first(self, staff, open_budget, backdate):
        open_budget(staff, limit_cents=10000)
        stale = budget_service.reserve(staff.id, 8000)
        backdate(BudgetReservation, stale.id)

        budget_service.reserve(staff.id, 5000)

        assert db.session.get(BudgetReservation, stale.id).status == "EXPIRED"
        assert _budget(staff).reserved_cents == 5000


class TestFailClosed:
    def test_storage_errors_retry_then_fail_closed(self, app, db_session):
        calls = []

        def _flaky():
            calls.append(1)
            raise OperationalError("UPDATE discount_budgets", {}, Exception("database is locked"))

        with pytest.raises(PersistenceFailure) as exc:
            run_fail_closed(_flaky, operation="reserve")
        assert len(calls) == app.config["LEDGER_RETRY_ATTEMPTS"]
        assert exc.value.details == {"operation": "reserve"}

    def test_transient_error_recovers(self, db_session):
        calls = []

        def _once_flaky():
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("UPDATE discount_budgets", {}, Exception("database is locked"))
            return "ok"

        assert run_fail_closed(_once_flaky, operation="reserve") == "ok"
        assert len(calls) == 2

    def test_business_errors_are_not_retried(self, db_session):
        calls = []

        def _exhausted():
            calls.append(1)
            raise BudgetExhausted("no budget")

        with pytest.raises(BudgetExhausted):
            run_fail_closed(_exhausted, operation="reserve")
        assert len(calls) == 1
