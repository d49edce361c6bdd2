import pytest

from discount_authority.errors import BudgetExhausted, EscalationError, InputError, NotAuthorizedToResolve
from discount_authority.extensions import db
from discount_authority.models import BudgetReservation, EscalationCase
from discount_authority.services import authority_service, budget_service, escalation_service


def _staff_case(tv, staff, pct=15, notes=None):
    record = authority_service.validate(tv.id, staff.id, pct)
    return escalation_service.create_escalation(record.decision_id, notes=notes), record


def _budget(employee):
    return budget_service.get_active_budget(employee.id)


class TestCreate:
    def test_create_places_hold(self, tv, staff, open_budget):
        open_budget(staff)
        case, record = _staff_case(tv, staff, notes="price match")

        assert case.status == "PENDING"
        assert case.requester_role == "staff"
        assert case.requested_discount_bps == 1500
        assert case.escalation_reason == "exceeds_tier_limit"
        assert case.request_notes == "price match"

        hold = db.session.get(BudgetReservation, case.hold_reservation_id)
        assert hold.amount_cents == record.discount_amount_cents == 24750
        assert hold.escalation_case_id == case.id
        assert hold.expires_at == case.expires_at
        assert _budget(staff).reserved_cents == 24750

    def test_create_twice_returns_pending_case(self, tv, staff, open_budget):
        open_budget(staff)
        case, record = _staff_case(tv, staff)
        again = escalation_service.create_escalation(record.decision_id)
        assert again.id == case.id
        assert EscalationCase.query.count() == 1
        assert _budget(staff).reserved_cents == 24750

    def test_create_after_approval_returns_approved_case(self, tv, staff, manager, open_budget):
        open_budget(staff)
        case, record = _staff_case(tv, staff)
        escalation_service.resolve_escalation(case.id, manager.id, "approve")

        again = escalation_service.create_escalation(record.decision_id)
        replay = escalation_service.resolve_escalation(again.id, manager.id, "approve")

        assert again.id == case.id
        assert again.status == "APPROVED"
        assert replay.replayed
        assert EscalationCase.query.count() == 1
        budget = _budget(staff)
        assert budget.committed_cents == 24750
        assert budget.reserved_cents == 0

    def test_new_case_after_denial(self, tv, staff, manager, open_budget):
        open_budget(staff)
        case, record = _staff_case(tv, staff)
        escalation_service.resolve_escalation(case.id, manager.id, "deny")

        fresh = escalation_service.create_escalation(record.decision_id)

        assert fresh.id != case.id
        assert fresh.status == "PENDING"
        assert _budget(staff).reserved_cents == 24750

    def test_create_audits_reservations_it_expired(self, tv, staff, open_budget, backdate, audit_sink):
        open_budget(staff)
        stale = budget_service.reserve(staff.id, 1000)
        backdate(BudgetReservation, stale.id)

        _staff_case(tv, staff)

        assert db.session.get(BudgetReservation, stale.id).status == "EXPIRED"
        released = [e for e in audit_sink.events("budget.released") if e.entity_id == str(stale.id)]
        assert len(released) == 1
        assert released[0].payload["status"] == "EXPIRED"

    def test_allowed_decision_cannot_escalate(self, tv, staff, open_budget):
        open_budget(staff)
        record = authority_service.validate(tv.id, staff.id, 5)
        with pytest.raises(EscalationError):
            escalation_service.create_escalation(record.decision_id)

    def test_admin_has_nobody_to_escalate_to(self, tv, admin, open_budget):
        open_budget(admin)
        record = authority_service.validate(tv.id, admin.id, 30)
        with pytest.raises(EscalationError):
            escalation_service.create_escalation(record.decision_id)

    def test_unknown_decision(self, db_session):
        with pytest.raises(InputError):
            escalation_service.create_escalation("f" * 64)

    def test_insufficient_budget_creates_nothing(self, tv, staff, open_budget):
        open_budget(staff, limit_cents=1000)
        record = authority_service.validate(tv.id, staff.id, 15)
        with pytest.raises(BudgetExhausted):
            escalation_service.create_escalation(record.decision_id)
        assert EscalationCase.query.count() == 0
        assert BudgetReservation.query.count() == 0

    def test_create_without_open_period_fails_closed(self, tv, staff):
        record = authority_service.validate(tv.id, staff.id, 15)
        with pytest.raises(BudgetExhausted):
            escalation_service.create_escalation(record.decision_id)

    def test_create_is_audited(self, tv, staff, open_budget, audit_sink):
        open_budget(staff)
        case, _ = _staff_case(tv, staff)
        events = audit_sink.events("escalation.created")
        assert len(events) == 1
        assert events[0].entity_id == str(case.id)
        assert events[0].payload["hold_reservation_id"] == case.hold_reservation_id


class TestResolve:
    def test_manager_approves_staff_case(self, tv, staff, manager, open_budget):
        open_budget(staff)
        case, _ = _staff_case(tv, staff)

        result = escalation_service.resolve_escalation(case.id, manager.id, "approve", notes="ok")

        assert result.outcome == "approved"
        assert not result.replayed
        assert result.case["status"] == "APPROVED"
        assert result.case["approver_employee_id"] == manager.id
        assert result.case["approved_discount_bps"] == 1500
        assert result.decision.allowed
        assert result.decision.authority_role == "manager"
        assert result.decision.approver_employee_id == manager.id
        assert result.decision.employee_id == staff.id

        budget = _budget(staff)
        assert budget.reserved_cents == 0
        assert budget.committed_cents == 24750
        assert db.session.get(BudgetReservation, case.hold_reservation_id).status == "RELEASED"
        committed = db.session.get(BudgetReservation, result.case["committed_reservation_id"])
        assert committed.status == "COMMITTED"
        assert committed.decision_id == result.decision.decision_id

    def test_second_approval_replays_without_double_commit(self, tv, staff, manager, admin, open_budget):
        open_budget(staff)
        case, _ = _staff_case(tv, staff)

        first = escalation_service.resolve_escalation(case.id, manager.id, "approve")
        second = escalation_service.resolve_escalation(case.id, manager.id, "approve")
        third = escalation_service.resolve_escalation(case.id, admin.id, "approve", override_discount_pct=5)

        assert second.replayed and third.replayed
        assert second.outcome == third.outcome == "approved"
        assert second.decision == first.decision
        assert third.case["approved_discount_bps"] == 1500
        assert _budget(staff).committed_cents == 24750
        assert BudgetReservation.query.filter_by(status="COMMITTED").count() == 1

    def test_conflicting_action_on_terminal_case(self, tv, staff, manager, open_budget):
        open_budget(staff)
        case, _ = _staff_case(tv, staff)
        escalation_service.resolve_escalation(case.id, manager.id, "approve")
        with pytest.raises(EscalationError):
            escalation_service.resolve_escalation(case.id, manager.id, "deny")

    def test_override_is_revalidated_under_approver_authority(self, tv, staff, manager, open_budget):
        open_budget(staff)
        case, _ = _staff_case(tv, staff)

        result = escalation_service.resolve_escalation(case.id, manager.id, "approve", override_discount_pct="12")

        assert result.outcome == "approved"
        assert result.case["approved_discount_bps"] == 1200
        assert result.decision.discount_amount_cents == 19800
        assert _budget(staff).committed_cents == 19800

    def test_approver_cannot_exceed_own_ceiling(self, tv, staff, manager, open_budget, audit_sink):
        open_budget(staff)
        case, _ = _staff_case(tv, staff)

        result = escalation_service.resolve_escalation(case.id, manager.id, "approve", override_discount_pct=27)

        assert result.outcome == "approval_rejected"
        assert result.decision.escalation_reason == "exceeds_tier_limit"
        assert result.case["status"] == "PENDING"
        assert db.session.get(BudgetReservation, case.hold_reservation_id).status == "RESERVED"
        assert _budget(staff).committed_cents == 0
        assert len(audit_sink.events("escalation.approval_rejected")) == 1

    def test_cost_floor_binds_admin_approvals(self, tv, staff, admin, open_budget):
        open_budget(staff)
        case, _ = _staff_case(tv, staff, pct=30)
        assert case.escalation_reason == "below_cost_floor"

        rejected = escalation_service.resolve_escalation(case.id, admin.id, "approve")
        assert rejected.outcome == "approval_rejected"
        assert rejected.decision.escalation_reason == "below_cost_floor"

        approved = escalation_service.resolve_escalation(case.id, admin.id, "approve", override_discount_pct=25)
        assert approved.outcome == "approved"
        assert approved.decision.unrestricted
        assert _budget(staff).committed_cents == 41250

    def test_deny_releases_hold(self, tv, staff, manager, open_budget, audit_sink):
        open_budget(staff)
        case, _ = _staff_case(tv, staff)

        result = escalation_service.resolve_escalation(case.id, manager.id, "deny", notes="no")
        again = escalation_service.resolve_escalation(case.id, manager.id, "deny")

        assert result.outcome == "denied"
        assert again.replayed
        assert result.case["resolution_notes"] == "no"
        budget = _budget(staff)
        assert budget.reserved_cents == 0
        assert budget.committed_cents == 0
        assert len(audit_sink.events("escalation.denied")) == 1

    def test_peer_cannot_resolve(self, tv, staff, make_employee, open_budget):
        other_staff = make_employee("sid.staff", "staff")
        open_budget(staff)
        case, _ = _staff_case(tv, staff)
        with pytest.raises(NotAuthorizedToResolve):
            escalation_service.resolve_escalation(case.id, other_staff.id, "approve")

    def test_manager_case_needs_admin(self, tv, manager, make_employee, admin, open_budget):
        other_manager = make_employee("max.manager", "manager")
        open_budget(manager)
        record = authority_service.validate(tv.id, manager.id, 28)
        assert record.escalation_reason == "exceeds_tier_limit"
        case = escalation_service.create_escalation(record.decision_id)

        with pytest.raises(NotAuthorizedToResolve):
            escalation_service.resolve_escalation(case.id, other_manager.id, "approve")
        assert escalation_service.resolve_escalation(case.id, admin.id, "approve").outcome == "approved"

    def test_approval_audit_records_both_parties_and_terms(self, tv, staff, manager, open_budget, audit_sink):
        open_budget(staff)
        case, record = _staff_case(tv, staff)
        escalation_service.resolve_escalation(case.id, manager.id, "approve", override_discount_pct=12)

        event = audit_sink.events("escalation.approved")[0]
        assert event.actor_employee_id == manager.id
        assert event.payload["requester_employee_id"] == staff.id
        assert event.payload["approver_employee_id"] == manager.id
        assert event.payload["requested_discount_bps"] == 1500
        assert event.payload["decision_id"] == record.decision_id
        assert event.payload["final_decision"]["proposed_discount_bps"] == 1200

    @pytest.mark.parametrize("action", ["approve", "deny"])
    def test_expired_case_cannot_be_resolved(self, tv, staff, manager, open_budget, backdate, action):
        open_budget(staff)
        case, _ = _staff_case(tv, staff)
        backdate(EscalationCase, case.id)

        result = escalation_service.resolve_escalation(case.id, manager.id, action)
        again = escalation_service.resolve_escalation(case.id, manager.id, action)

        assert result.outcome == "expired"
        assert again.outcome == "expired" and again.replayed
        assert _budget(staff).reserved_cents == 0
        assert db.session.get(BudgetReservation, case.hold_reservation_id).status == "EXPIRED"

    @pytest.mark.parametrize("kwargs", [
        {"action": "maybe"},
        {"action": "approve", "override_discount_pct": "150"},
        {"action": "approve", "notes": "x" * 300},
    ])
    def test_bad_resolution_input(self, tv, staff, manager, open_budget, kwargs):
        open_budget(staff)
        case, _ = _staff_case(tv, staff)
        action = kwargs.pop("action")
        with pytest.raises(InputError):
            escalation_service.resolve_escalation(case.id, manager.id, action, **kwargs)

    def test_approval_audits_reservations_it_expired(self, tv, staff, manager, open_budget, backdate, audit_sink):
        open_budget(staff)
        case, _ = _staff_case(tv, staff)
        stale = budget_service.reserve(staff.id, 1000)
        backdate(BudgetReservation, stale.id)

        escalation_service.resolve_escalation(case.id, manager.id, "approve")

        assert db.session.get(BudgetReservation, stale.id).status == "EXPIRED"
        released = [e for e in audit_sink.events("budget.released") if e.entity_id == str(stale.id)]
        assert len(released) == 1
        assert released[0].payload["status"] == "EXPIRED"
        assert _budget(staff).reserved_cents == 0

    @pytest.mark.parametrize("approver_id", [True, "1.0", "", None])
    def test_malformed_approver_id(self, tv, staff, manager, open_budget, approver_id):
        open_budget(staff)
        case, _ = _staff_case(tv, staff)
        with pytest.raises(InputError):
            escalation_service.resolve_escalation(case.id, approver_id, "approve")
        with pytest.raises(InputError):
            escalation_service.list_pending_for_approver(approver_id)
        assert escalation_service.get_case(case.id).status == "PENDING"

    def test_unknown_case(self, manager):
        with pytest.raises(InputError):
            escalation_service.resolve_escalation(31337, manager.id, "approve")


class TestReadsAndSweeps:
    def test_get_case_expires_lazily(self, tv, staff, open_budget, backdate, audit_sink):
        open_budget(staff)
        case, _ = _staff_case(tv, staff)
        backdate(EscalationCase, case.id)

        loaded = escalation_service.get_case(case.id)

        assert loaded.status == "EXPIRED"
        assert loaded.resolved_at is not None
        assert len(audit_sink.events("escalation.expired")) == 1
        assert escalation_service.get_case(999999) is None

    def test_expire_stale_cases(self, tv, staff, open_budget, backdate):
        open_budget(staff, limit_cents=100000)
        stale, _ = _staff_case(tv, staff, pct=15)
        live, _ = _staff_case(tv, staff, pct=16)
        backdate(EscalationCase, stale.id)

        assert escalation_service.expire_stale_cases() == [stale.id]
        assert escalation_service.get_case(live.id).status == "PENDING"
        assert _budget(staff).reserved_cents == db.session.get(BudgetReservation, live.hold_reservation_id).amount_cents

    def test_new_case_after_previous_expired(self, tv, staff, open_budget, backdate):
        open_budget(staff)
        case, record = _staff_case(tv, staff)
        backdate(EscalationCase, case.id)

        fresh = escalation_service.create_escalation(record.decision_id)

        assert fresh.id != case.id
        assert escalation_service.get_case(case.id).status == "EXPIRED"
        assert _budget(staff).reserved_cents == 24750

    def test_pending_visibility_follows_rank(self, tv, staff, manager, admin, open_budget):
        open_budget(staff)
        open_budget(manager)
        staff_case, _ = _staff_case(tv, staff)
        manager_record = authority_service.validate(tv.id, manager.id, 28)
        manager_case = escalation_service.create_escalation(manager_record.decision_id)

        assert escalation_service.list_pending_for_approver(staff.id) == []
        assert [c.id for c in escalation_service.list_pending_for_approver(manager.id)] == [staff_case.id]
        assert [c.id for c in escalation_service.list_pending_for_approver(admin.id)] == [staff_case.id, manager_case.id]
