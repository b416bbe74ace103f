"""
Unit Tests for the Enrollment Tracker

Tests cover:
1. Plan registration
2. Enrollment validation and pricing
3. Activation, suspension, grace period and expiry
4. Cancellation refunds and renewal
5. Limit accounting
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from benefits.models import (
    CoverageRule,
    Dependent,
    EnrollmentKind,
    EnrollmentStatus,
    EnrollRequest,
    PaymentCadence,
    Plan,
    ServiceType,
    UtilizationKind,
)
from ledger.errors import InvalidState, LimitExceeded, ValidationFailed
from ledger.models import utcnow


def child(name="Ema") -> Dependent:
    return Dependent(first_name=name, last_name="Okafor", relationship="child")


class TestPlans:
    """Tests for plan registration and listing."""

    def test_register_rejects_out_of_range_percentage(self, engine):
        """Coverage percentages must lie between 0 and 100."""
        plan = Plan(
            id="plan-bad",
            plan_code="BAD",
            name="Broken",
            coverage={ServiceType.OUTPATIENT: CoverageRule(coverage_percentage=Decimal("120"))},
        )

        with pytest.raises(ValidationFailed):
            engine.enrollments.register_plan(plan)

    def test_list_available_plans(self, engine, make_plan):
        """Closed plans are hidden from the available listing."""
        make_plan("plan-open")
        make_plan("plan-closed", available_for_enrollment=False)

        assert len(engine.enrollments.list_plans()) == 2
        assert [p.id for p in engine.enrollments.list_plans(available_only=True)] == ["plan-open"]


class TestEnroll:
    """Tests for creating enrollments."""

    def test_enrollment_starts_pending_with_plan_limits(self, engine, make_plan):
        """Limits are copied from the plan at enrollment time."""
        plan = make_plan()

        enrollment = engine.enrollments.enroll(EnrollRequest(subscriber_id="patient-1", plan_id=plan.id))

        assert enrollment.status == EnrollmentStatus.PENDING
        assert enrollment.limits.remaining_annual == Decimal("5000")
        assert enrollment.limits.deductible == Decimal("200")
        assert enrollment.payment.amount == Decimal("100.00")
        assert enrollment.coverage_end - enrollment.coverage_start == timedelta(days=365)
        assert engine.enrollments.get_plan(plan.id).statistics.total_enrollments == 1

    @pytest.mark.parametrize("cadence,amount", [
        (PaymentCadence.QUARTERLY, Decimal("300.00")),
        (PaymentCadence.ANNUAL, Decimal("1200.00")),
    ])
    def test_premium_follows_cadence(self, engine, make_plan, cadence, amount):
        """The premium is the monthly rate times the months per payment."""
        plan = make_plan()

        enrollment = engine.enrollments.enroll(EnrollRequest(
            subscriber_id="patient-1", plan_id=plan.id, payment_cadence=cadence,
        ))

        assert enrollment.payment.amount == amount

    def test_family_enrollment_needs_dependents(self, engine, make_plan):
        """Family enrollments must list at least one dependent."""
        plan = make_plan()

        with pytest.raises(ValidationFailed):
            engine.enrollments.enroll(EnrollRequest(subscriber_id="patient-1", plan_id=plan.id,
                                                    kind=EnrollmentKind.FAMILY))

        family = engine.enrollments.enroll(EnrollRequest(
            subscriber_id="patient-1", plan_id=plan.id, kind=EnrollmentKind.FAMILY, dependents=[child()],
        ))
        assert family.payment.amount == Decimal("250.00")

    def test_dependent_limit(self, engine, make_plan):
        """The plan caps the number of dependents."""
        plan = make_plan()
        dependents = [child(name) for name in ("A", "B", "C", "D", "E")]

        with pytest.raises(ValidationFailed):
            engine.enrollments.enroll(EnrollRequest(
                subscriber_id="patient-1", plan_id=plan.id, kind=EnrollmentKind.FAMILY, dependents=dependents,
            ))

    def test_one_open_enrollment_per_subscriber(self, engine, make_plan):
        """A subscriber with a pending enrollment cannot enroll again."""
        plan = make_plan()
        engine.enrollments.enroll(EnrollRequest(subscriber_id="patient-1", plan_id=plan.id))

        with pytest.raises(InvalidState):
            engine.enrollments.enroll(EnrollRequest(subscriber_id="patient-1", plan_id=plan.id))

    def test_plan_must_be_open_for_enrollment(self, engine, make_plan):
        """Unavailable plans and closed enrollment windows are refused."""
        now = utcnow()
        closed = make_plan("plan-closed", available_for_enrollment=False)
        lapsed = make_plan("plan-lapsed", open_enrollment_start=now - timedelta(days=60),
                           open_enrollment_end=now - timedelta(days=30))

        with pytest.raises(InvalidState):
            engine.enrollments.enroll(EnrollRequest(subscriber_id="patient-1", plan_id=closed.id))
        with pytest.raises(InvalidState):
            engine.enrollments.enroll(EnrollRequest(subscriber_id="patient-2", plan_id=lapsed.id))


class TestLifecycle:
    """Tests for status transitions."""

    def test_activation_issues_membership_card(self, engine, active_enrollment):
        """Activation moves to active and issues a card number."""
        enrollment = active_enrollment()

        assert enrollment.status == EnrollmentStatus.ACTIVE
        assert enrollment.membership_card_number.startswith("HMO-")
        assert engine.enrollments.get_plan(enrollment.plan_id).statistics.active_members == 1

    def test_activate_twice_is_invalid(self, engine, active_enrollment):
        """Only pending enrollments can be activated."""
        enrollment = active_enrollment()

        with pytest.raises(InvalidState):
            engine.enrollments.activate(enrollment.id, actor="admin-1")

    def test_suspend_and_reinstate(self, engine, active_enrollment):
        """Suspension is reversible."""
        enrollment = active_enrollment()

        suspended = engine.enrollments.suspend(enrollment.id, "admin-1", "premium overdue")
        assert suspended.status == EnrollmentStatus.SUSPENDED
        assert engine.enrollments.get_plan(enrollment.plan_id).statistics.active_members == 0

        reinstated = engine.enrollments.reinstate(enrollment.id, "admin-1")
        assert reinstated.status == EnrollmentStatus.ACTIVE

    def test_grace_period_near_coverage_end(self, engine, active_enrollment):
        """An active enrollment close to its end date is in its grace period."""
        enrollment = active_enrollment(start=utcnow() - timedelta(days=340))

        assert engine.enrollments.effective_status(enrollment) == EnrollmentStatus.GRACE_PERIOD

    def test_expiry_is_derived(self, engine, active_enrollment):
        """Past the coverage end the enrollment reads as expired."""
        enrollment = active_enrollment()

        later = enrollment.coverage_end + timedelta(days=1)
        assert engine.enrollments.effective_status(enrollment, later) == EnrollmentStatus.EXPIRED
        assert engine.enrollments.get_enrollment(enrollment.id).status == EnrollmentStatus.ACTIVE

    def test_annual_cancellation_refunds_unused_days(self, engine, make_plan):
        """Annual payers get a pro-rata refund of the unused coverage."""
        plan = make_plan()
        start = utcnow()
        enrollment = engine.enrollments.enroll(EnrollRequest(
            subscriber_id="patient-1", plan_id=plan.id, payment_cadence=PaymentCadence.ANNUAL, coverage_start=start,
        ))
        engine.enrollments.activate(enrollment.id, "admin-1")

        response = engine.enrollments.cancel(enrollment.id, "patient-1", "moving abroad",
                                             now=start + timedelta(days=73))

        assert response.refund_amount == Decimal("960.00")
        assert response.enrollment.status == EnrollmentStatus.CANCELLED
        assert response.enrollment.cancellation.reason == "moving abroad"

    def test_monthly_cancellation_has_no_refund(self, engine, active_enrollment):
        """Monthly payers are not refunded."""
        enrollment = active_enrollment()

        response = engine.enrollments.cancel(enrollment.id, "patient-1", "switching plans")

        assert response.refund_amount == Decimal("0")
        with pytest.raises(InvalidState):
            engine.enrollments.cancel(enrollment.id, "patient-1", "again")


class TestRenewal:
    """Tests for renewing enrollments."""

    def test_renewal_outside_window_is_refused(self, engine, active_enrollment):
        """Renewal opens only near the end of coverage."""
        enrollment = active_enrollment()

        with pytest.raises(InvalidState):
            engine.enrollments.renew(enrollment.id, "patient-1")

    def test_renewal_continues_coverage(self, engine, active_enrollment):
        """The renewed enrollment starts where the current one ends."""
        enrollment = active_enrollment(start=utcnow() - timedelta(days=340))

        renewed = engine.enrollments.renew(enrollment.id, "patient-1")

        assert renewed.status == EnrollmentStatus.PENDING
        assert renewed.renewed_from == enrollment.id
        assert renewed.coverage_start == enrollment.coverage_end
        assert renewed.limits.remaining_annual == Decimal("5000")

    def test_renewal_happens_once(self, engine, active_enrollment):
        """An enrollment can only be renewed once."""
        enrollment = active_enrollment(start=utcnow() - timedelta(days=340))
        engine.enrollments.renew(enrollment.id, "patient-1")

        with pytest.raises(InvalidState):
            engine.enrollments.renew(enrollment.id, "patient-1")


class TestLimits:
    """Tests for utilization against coverage limits."""

    def test_approved_claim_draws_down_limits(self, engine, active_enrollment):
        """Approvals reduce the remaining annual and lifetime limits."""
        enrollment = active_enrollment()

        updated = engine.enrollments.record_utilization(
            enrollment.id, UtilizationKind.CLAIM_APPROVED, Decimal("1000"), patient_share=Decimal("250"),
        )

        assert updated.limits.remaining_annual == Decimal("4000.00")
        assert updated.limits.remaining_lifetime == Decimal("49000.00")
        assert updated.limits.deductible_met == Decimal("200.00")
        assert updated.limits.out_of_pocket_met == Decimal("250.00")
        assert updated.utilization.claims_approved == 1

    def test_approval_beyond_limit_is_refused(self, engine, active_enrollment):
        """Approving more than the remaining limit fails without changes."""
        enrollment = active_enrollment(annual_maximum="500")

        with pytest.raises(LimitExceeded):
            engine.enrollments.record_utilization(enrollment.id, UtilizationKind.CLAIM_APPROVED, Decimal("600"))

        after = engine.enrollments.get_enrollment(enrollment.id)
        assert after.limits.remaining_annual == Decimal("500")
        assert after.utilization.claims_approved == 0

    def test_reversal_restores_limits(self, engine, active_enrollment):
        """A reversed claim gives its amount back to the limits."""
        enrollment = active_enrollment()
        engine.enrollments.record_utilization(enrollment.id, UtilizationKind.CLAIM_APPROVED, Decimal("300"),
                                              patient_share=Decimal("50"))

        restored = engine.enrollments.record_utilization(enrollment.id, UtilizationKind.CLAIM_REVERSED,
                                                         Decimal("300"), patient_share=Decimal("50"))

        assert restored.limits.remaining_annual == Decimal("5000")
        assert restored.limits.out_of_pocket_met == Decimal("0")
        assert restored.utilization.claims_approved == 0
        assert restored.utilization.total_paid_amount == Decimal("0")

    def test_counters(self, engine, active_enrollment):
        """Appointments and prescriptions are counted."""
        enrollment = active_enrollment()

        engine.enrollments.record_utilization(enrollment.id, UtilizationKind.APPOINTMENT)
        updated = engine.enrollments.record_utilization(enrollment.id, UtilizationKind.PRESCRIPTION, count=2)

        assert updated.utilization.appointments_used == 1
        assert updated.utilization.prescriptions_used == 2

    def test_negative_amount_is_malformed(self, engine, active_enrollment):
        """Utilization amounts cannot be negative."""
        enrollment = active_enrollment()

        with pytest.raises(ValidationFailed):
            engine.enrollments.record_utilization(enrollment.id, UtilizationKind.CLAIM_SUBMITTED, Decimal("-1"))

    def test_check_remaining(self, engine, active_enrollment):
        """The check reports how much of a request fits under the limits."""
        enrollment = active_enrollment()

        fits = engine.enrollments.check_remaining(enrollment.id, Decimal("1200"))
        too_much = engine.enrollments.check_remaining(enrollment.id, Decimal("6000"))

        assert fits.limited is False
        assert fits.allowed == Decimal("1200.00")
        assert too_much.limited is True
        assert too_much.allowed == Decimal("5000")
        assert too_much.headroom == Decimal("5000")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
