import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from ledger.config import EngineSettings
from ledger.errors import InvalidState, LimitExceeded, ValidationFailed
from ledger.models import ZERO, StatusChange, to_money, utcnow
from ledger.store import ENROLLMENTS, PLANS, LedgerStore
from ledger.wallets import generate_reference

from .models import (
    CancellationResponse,
    Cancellation,
    Enrollment,
    EnrollmentKind,
    EnrollmentLimits,
    EnrollmentPayment,
    EnrollmentStatus,
    EnrollRequest,
    LimitCheck,
    PaymentCadence,
    Plan,
    PlanStatus,
    UtilizationKind,
)

logger = logging.getLogger(__name__)

COVERAGE_TERM = timedelta(days=365)
RENEWAL_NOTICE = timedelta(days=30)

CADENCE_MONTHS = {
    PaymentCadence.MONTHLY: 1,
    PaymentCadence.QUARTERLY: 3,
    PaymentCadence.ANNUAL: 12,
}

# Statuses an enrollment can still leave
OPEN_STATUSES = {EnrollmentStatus.PENDING, EnrollmentStatus.ACTIVE, EnrollmentStatus.SUSPENDED}
IN_FORCE = {EnrollmentStatus.ACTIVE, EnrollmentStatus.GRACE_PERIOD}


class EnrollmentTracker:
    """Benefits plans, enrollments, and the coverage limits they carry.

    Limits are snapshotted from the plan when the enrollment is created, so
    later plan edits never reach an enrollment already in force.
    """

    def __init__(self, store: LedgerStore, settings: Optional[EngineSettings] = None):
        self.store = store
        self.settings = settings or EngineSettings()

    # Plans

    def register_plan(self, plan: Plan) -> Plan:
        for service, rule in plan.coverage.items():
            pct = rule.coverage_percentage
            if pct is not None and not (ZERO <= pct <= 100):
                raise ValidationFailed(f"Coverage percentage for {service.value} must be between 0 and 100")
            if rule.copayment < ZERO:
                raise ValidationFailed(f"Copayment for {service.value} cannot be negative")
        with self.store.atomic():
            plan = self.store.insert(PLANS, plan)
        logger.info("Registered plan %s (%s)", plan.id, plan.plan_code)
        return plan

    def get_plan(self, plan_id: str) -> Plan:
        return self.store.get(PLANS, plan_id, Plan)

    def list_plans(self, available_only: bool = False) -> list[Plan]:
        return self.store.select(
            PLANS,
            Plan,
            lambda p: not available_only or (p.status == PlanStatus.ACTIVE and p.available_for_enrollment),
        )

    # Enrollment lifecycle

    @staticmethod
    def initialize_limits(plan: Plan, kind: EnrollmentKind) -> EnrollmentLimits:
        pricing = plan.pricing
        return EnrollmentLimits(
            annual_maximum=plan.limits.annual_maximum,
            remaining_annual=plan.limits.annual_maximum,
            lifetime_maximum=plan.limits.lifetime_maximum,
            remaining_lifetime=plan.limits.lifetime_maximum,
            deductible=pricing.deductible.get(kind, pricing.deductible.get(EnrollmentKind.INDIVIDUAL, ZERO)),
            max_out_of_pocket=pricing.max_out_of_pocket.get(
                kind, pricing.max_out_of_pocket.get(EnrollmentKind.INDIVIDUAL, ZERO)
            ),
        )

    def enroll(self, request: EnrollRequest, now: Optional[datetime] = None) -> Enrollment:
        now = now or utcnow()
        with self.store.atomic():
            plan = self.get_plan(request.plan_id)
            if plan.status != PlanStatus.ACTIVE or not plan.available_for_enrollment:
                raise InvalidState(f"Plan {plan.id} is not available for enrollment")
            if not plan.is_enrollment_open(now):
                raise InvalidState(f"Plan {plan.id} is outside its open enrollment period")

            existing = self.store.select(
                ENROLLMENTS,
                Enrollment,
                lambda e: e.subscriber_id == request.subscriber_id
                and self.effective_status(e, now) in IN_FORCE | {EnrollmentStatus.PENDING},
            )
            if existing:
                raise InvalidState(f"Subscriber {request.subscriber_id} already has an active or pending enrollment")

            self._check_dependents(request, plan)
            enrollment = self._new_enrollment(
                plan,
                subscriber_id=request.subscriber_id,
                kind=request.kind,
                dependents=request.dependents,
                cadence=request.payment_cadence,
                start=request.coverage_start or now,
                enrolled_by=request.enrolled_by or request.subscriber_id,
            )
            enrollment = self.store.insert(ENROLLMENTS, enrollment)
            self._bump_plan(plan.id, total_enrollments=1)

        logger.info("Enrolled %s in plan %s as %s", request.subscriber_id, plan.id, enrollment.id)
        return enrollment

    def get_enrollment(self, enrollment_id: str) -> Enrollment:
        return self.store.get(ENROLLMENTS, enrollment_id, Enrollment)

    def list_for_subscriber(self, subscriber_id: str) -> list[Enrollment]:
        return self.store.select(ENROLLMENTS, Enrollment, lambda e: e.subscriber_id == subscriber_id)

    def effective_status(self, enrollment: Enrollment, now: Optional[datetime] = None) -> EnrollmentStatus:
        """Status as of ``now``: expiry and the grace period are derived, never stored."""
        now = now or utcnow()
        if enrollment.status not in OPEN_STATUSES:
            return enrollment.status
        if now > enrollment.coverage_end:
            return EnrollmentStatus.EXPIRED
        if enrollment.status == EnrollmentStatus.ACTIVE:
            if enrollment.coverage_end - now <= timedelta(days=self._grace_days(enrollment.plan_id)):
                return EnrollmentStatus.GRACE_PERIOD
        return enrollment.status

    def activate(self, enrollment_id: str, actor: str, now: Optional[datetime] = None) -> Enrollment:
        with self.store.atomic():
            enrollment = self.get_enrollment(enrollment_id)
            if enrollment.status != EnrollmentStatus.PENDING:
                raise InvalidState(f"Cannot activate enrollment in {enrollment.status.value} state")
            if self.effective_status(enrollment, now) == EnrollmentStatus.EXPIRED:
                raise InvalidState(f"Enrollment {enrollment.id} coverage window has already ended")
            enrollment.membership_card_number = enrollment.membership_card_number or generate_reference("HMO")
            enrollment = self._transition(enrollment, EnrollmentStatus.ACTIVE, "activated", actor)
            self._bump_plan(enrollment.plan_id, active_members=1)
        logger.info("Activated enrollment %s (card %s)", enrollment.id, enrollment.membership_card_number)
        return enrollment

    def suspend(self, enrollment_id: str, actor: str, reason: str) -> Enrollment:
        with self.store.atomic():
            enrollment = self.get_enrollment(enrollment_id)
            if enrollment.status != EnrollmentStatus.ACTIVE:
                raise InvalidState(f"Cannot suspend enrollment in {enrollment.status.value} state")
            enrollment = self._transition(enrollment, EnrollmentStatus.SUSPENDED, reason, actor)
            self._bump_plan(enrollment.plan_id, active_members=-1)
        logger.info("Suspended enrollment %s: %s", enrollment.id, reason)
        return enrollment

    def reinstate(self, enrollment_id: str, actor: str, reason: str = "reinstated") -> Enrollment:
        with self.store.atomic():
            enrollment = self.get_enrollment(enrollment_id)
            if enrollment.status != EnrollmentStatus.SUSPENDED:
                raise InvalidState(f"Cannot reinstate enrollment in {enrollment.status.value} state")
            enrollment = self._transition(enrollment, EnrollmentStatus.ACTIVE, reason, actor)
            self._bump_plan(enrollment.plan_id, active_members=1)
        return enrollment

    def cancel(
        self,
        enrollment_id: str,
        actor: str,
        reason: str,
        effective_date: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> CancellationResponse:
        now = now or utcnow()
        with self.store.atomic():
            enrollment = self.get_enrollment(enrollment_id)
            if enrollment.status not in OPEN_STATUSES:
                raise InvalidState(f"Cannot cancel enrollment in {enrollment.status.value} state")

            refund = ZERO
            days_remaining = math.ceil((enrollment.coverage_end - now).total_seconds() / 86400)
            if days_remaining > 0 and enrollment.payment.cadence == PaymentCadence.ANNUAL:
                total_days = math.ceil((enrollment.coverage_end - enrollment.coverage_start).total_seconds() / 86400)
                refund = to_money(enrollment.payment.amount * days_remaining / total_days)

            was_active = enrollment.status == EnrollmentStatus.ACTIVE
            enrollment.cancellation = Cancellation(
                requested_at=now,
                effective_date=effective_date or now,
                reason=reason,
                refund_amount=refund,
                processed_by=actor,
            )
            enrollment = self._transition(enrollment, EnrollmentStatus.CANCELLED, reason, actor)
            if was_active:
                self._bump_plan(enrollment.plan_id, active_members=-1)

        logger.info("Cancelled enrollment %s (refund %s): %s", enrollment.id, refund, reason)
        return CancellationResponse(enrollment=enrollment, refund_amount=refund, message="Enrollment cancelled successfully")

    def renew(self, enrollment_id: str, actor: str, now: Optional[datetime] = None) -> Enrollment:
        now = now or utcnow()
        with self.store.atomic():
            current = self.get_enrollment(enrollment_id)
            status = self.effective_status(current, now)
            if status not in IN_FORCE:
                raise InvalidState(f"Cannot renew enrollment in {status.value} state")
            if current.coverage_end - now > timedelta(days=self.settings.renewal_window_days):
                raise InvalidState(
                    f"Enrollment {current.id} can only be renewed within "
                    f"{self.settings.renewal_window_days} days of expiry"
                )
            if self.store.select(ENROLLMENTS, Enrollment, lambda e: e.renewed_from == current.id):
                raise InvalidState(f"Enrollment {current.id} has already been renewed")

            plan = self.get_plan(current.plan_id)
            if plan.status != PlanStatus.ACTIVE:
                raise InvalidState(f"Plan {plan.id} is no longer active")
            renewal = self._new_enrollment(
                plan,
                subscriber_id=current.subscriber_id,
                kind=current.kind,
                dependents=current.dependents,
                cadence=current.payment.cadence,
                start=current.coverage_end,
                enrolled_by=actor,
            )
            renewal.renewed_from = current.id
            renewal = self.store.insert(ENROLLMENTS, renewal)
            self._bump_plan(plan.id, total_enrollments=1)

        logger.info("Renewed enrollment %s as %s", current.id, renewal.id)
        return renewal

    # Limits and utilization

    def record_utilization(
        self,
        enrollment_id: str,
        kind: UtilizationKind,
        amount=ZERO,
        count: int = 1,
        patient_share=ZERO,
    ) -> Enrollment:
        """Apply a utilization event to the enrollment's counters and limits.

        ``claim_approved`` charges ``amount`` against the remaining annual and
        lifetime limits; ``claim_reversed`` gives it back. ``count`` is the
        change in the matching counter, zero when only a previously recorded
        decision is being revised. ``patient_share`` is the signed change in
        what the member pays out of pocket.
        """
        amount = to_money(amount)
        patient_share = to_money(patient_share)
        if amount < ZERO:
            raise ValidationFailed("Utilization amount cannot be negative")

        with self.store.atomic():
            enrollment = self.get_enrollment(enrollment_id)
            usage = enrollment.utilization
            limits = enrollment.limits

            if kind == UtilizationKind.APPOINTMENT:
                usage.appointments_used += count
            elif kind == UtilizationKind.PRESCRIPTION:
                usage.prescriptions_used += count
            elif kind == UtilizationKind.CLAIM_SUBMITTED:
                usage.claims_submitted += count
                usage.total_claimed_amount += amount
            elif kind == UtilizationKind.CLAIM_DENIED:
                usage.claims_denied = max(0, usage.claims_denied + count)
            elif kind == UtilizationKind.CLAIM_APPROVED:
                check = self._check(limits, amount)
                if check.limited:
                    raise LimitExceeded(
                        f"Approving {amount} exceeds the remaining coverage of {check.headroom} "
                        f"on enrollment {enrollment.id}"
                    )
                if limits.remaining_annual is not None:
                    limits.remaining_annual -= amount
                if limits.remaining_lifetime is not None:
                    limits.remaining_lifetime -= amount
                self._apply_patient_share(limits, patient_share)
                usage.claims_approved += count
                usage.total_paid_amount += amount
            elif kind == UtilizationKind.CLAIM_REVERSED:
                if limits.remaining_annual is not None:
                    limits.remaining_annual = min(limits.annual_maximum, limits.remaining_annual + amount)
                if limits.remaining_lifetime is not None:
                    limits.remaining_lifetime = min(limits.lifetime_maximum, limits.remaining_lifetime + amount)
                self._apply_patient_share(limits, -patient_share)
                usage.claims_approved = max(0, usage.claims_approved - count)
                usage.total_paid_amount = max(ZERO, usage.total_paid_amount - amount)
            else:
                raise ValidationFailed(f"Unknown utilization kind {kind}")

            enrollment = self.store.put(ENROLLMENTS, enrollment)

        logger.debug("Recorded %s utilization of %s on %s", kind.value, amount, enrollment_id)
        return enrollment

    def check_remaining(self, enrollment_id: str, amount) -> LimitCheck:
        enrollment = self.get_enrollment(enrollment_id)
        return self._check(enrollment.limits, to_money(amount))

    @staticmethod
    def _check(limits: EnrollmentLimits, amount: Decimal) -> LimitCheck:
        remaining = [r for r in (limits.remaining_annual, limits.remaining_lifetime) if r is not None]
        if not remaining:
            return LimitCheck(requested=amount, allowed=amount)
        headroom = max(ZERO, min(remaining))
        return LimitCheck(
            requested=amount,
            allowed=min(amount, headroom),
            headroom=headroom,
            limited=amount > headroom,
        )

    @staticmethod
    def _apply_patient_share(limits: EnrollmentLimits, share: Decimal) -> None:
        if share == ZERO:
            return
        if share > ZERO:
            toward_deductible = min(share, max(ZERO, limits.deductible - limits.deductible_met))
            limits.deductible_met += toward_deductible
        else:
            limits.deductible_met = max(ZERO, limits.deductible_met + share)
        limits.out_of_pocket_met = max(ZERO, limits.out_of_pocket_met + share)

    def _new_enrollment(
        self,
        plan: Plan,
        subscriber_id: str,
        kind: EnrollmentKind,
        dependents: list,
        cadence: PaymentCadence,
        start: datetime,
        enrolled_by: str,
    ) -> Enrollment:
        premium = plan.pricing.monthly_premium.get(kind, plan.pricing.monthly_premium.get(EnrollmentKind.INDIVIDUAL))
        if not premium:
            raise ValidationFailed(f"Plan {plan.id} has no pricing for {kind.value} enrollment")
        end = start + COVERAGE_TERM
        return Enrollment(
            id=generate_reference("ENR"),
            subscriber_id=subscriber_id,
            plan_id=plan.id,
            kind=kind,
            dependents=list(dependents),
            payment=EnrollmentPayment(cadence=cadence, amount=to_money(premium * CADENCE_MONTHS[cadence])),
            coverage_start=start,
            coverage_end=end,
            renewal_date=end - RENEWAL_NOTICE,
            limits=self.initialize_limits(plan, kind),
            status_history=[StatusChange(status=EnrollmentStatus.PENDING.value, reason="enrolled", actor=enrolled_by)],
            enrolled_by=enrolled_by,
        )

    @staticmethod
    def _check_dependents(request: EnrollRequest, plan: Plan) -> None:
        if request.kind == EnrollmentKind.FAMILY and not request.dependents:
            raise ValidationFailed("Family enrollment requires at least one dependent")
        allowed = plan.limits.dependents_allowed
        if allowed and len(request.dependents) > allowed:
            raise ValidationFailed(f"This plan allows a maximum of {allowed} dependents")

    def _transition(self, enrollment: Enrollment, status: EnrollmentStatus, reason: str, actor: str) -> Enrollment:
        enrollment.status = status
        enrollment.status_history.append(StatusChange(status=status.value, reason=reason, actor=actor))
        return self.store.put(ENROLLMENTS, enrollment)

    def _bump_plan(self, plan_id: str, total_enrollments: int = 0, active_members: int = 0) -> None:
        plan = self.get_plan(plan_id)
        stats = plan.statistics
        stats.total_enrollments += total_enrollments
        stats.active_members = max(0, stats.active_members + active_members)
        self.store.put(PLANS, plan)

    def _grace_days(self, plan_id: str) -> int:
        plan = self.store.find(PLANS, plan_id, Plan)
        if plan is not None and plan.grace_period_days is not None:
            return plan.grace_period_days
        return self.settings.grace_period_days
