import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from ledger.config import EngineSettings
from ledger.errors import ConcurrencyConflict, CurrencyMismatch, InvalidState, ValidationFailed
from ledger.models import (
    ZERO,
    ClaimPaymentRef,
    InitiateTransactionRequest,
    Party,
    PaymentMethod,
    StatusChange,
    Transaction,
    TransactionKind,
    to_money,
    utcnow,
)
from ledger.service import TransactionProcessor
from ledger.store import CLAIMS, LedgerStore
from ledger.wallets import generate_reference

from .enrollment import IN_FORCE, EnrollmentTracker
from .models import (
    Appeal,
    AppealStatus,
    Claim,
    ClaimBilling,
    ClaimDraft,
    ClaimPayment,
    ClaimPaymentResponse,
    ClaimStatus,
    CoverageRule,
    Enrollment,
    PatientResponsibility,
    Plan,
    ServiceType,
    UtilizationKind,
)
from .screening import ClaimScreener

logger = logging.getLogger(__name__)

DECIDED = {ClaimStatus.APPROVED, ClaimStatus.PARTIALLY_APPROVED}
APPEALABLE = {ClaimStatus.REJECTED, ClaimStatus.PARTIALLY_APPROVED}
REVIEWABLE = {ClaimStatus.SUBMITTED, ClaimStatus.APPEALED}


def resolve_coverage_rule(plan: Plan, service_type: ServiceType) -> CoverageRule:
    rule = plan.coverage.get(service_type) or plan.coverage.get(ServiceType.OUTPATIENT)
    return rule if rule is not None else CoverageRule()


def compute_billing(
    total_billed,
    rule: CoverageRule,
    default_coverage_percentage: Decimal,
    headroom: Optional[Decimal] = None,
    currency: str = "USD",
    breakdown: Optional[list] = None,
) -> ClaimBilling:
    """Split a billed amount into the covered portion and what the patient owes.

    ``headroom`` is the coverage the enrollment has left; a covered amount
    above it is clamped and the excess moves to the patient.
    """
    total = to_money(total_billed)
    breakdown = breakdown or []

    if not rule.covered:
        return ClaimBilling(
            total_billed=total,
            breakdown=breakdown,
            currency=currency,
            patient_responsibility=PatientResponsibility(uncovered=total, total=total),
        )

    percentage = rule.coverage_percentage if rule.coverage_percentage is not None else default_coverage_percentage
    copayment = min(to_money(rule.copayment), total)
    covered = max(ZERO, to_money((total - copayment) * percentage / 100))
    coinsurance = total - copayment - covered

    uncovered = ZERO
    limited = False
    if headroom is not None and covered > headroom:
        uncovered = covered - headroom
        covered = headroom
        limited = True

    return ClaimBilling(
        total_billed=total,
        breakdown=breakdown,
        currency=currency,
        coverage_percentage=percentage,
        covered_amount=covered,
        patient_responsibility=PatientResponsibility(
            copayment=copayment,
            coinsurance=coinsurance,
            uncovered=uncovered,
            total=copayment + coinsurance + uncovered,
        ),
        limited_by_annual_maximum=limited,
    )


class ClaimAdjudicator:
    def __init__(
        self,
        store: LedgerStore,
        transactions: TransactionProcessor,
        enrollments: EnrollmentTracker,
        settings: Optional[EngineSettings] = None,
        screener: Optional[ClaimScreener] = None,
    ):
        self.store = store
        self.transactions = transactions
        self.enrollments = enrollments
        self.settings = settings or enrollments.settings
        self.screener = screener or ClaimScreener()

    def adjudicate(
        self,
        draft: ClaimDraft,
        plan: Optional[Plan] = None,
        enrollment: Optional[Enrollment] = None,
        now: Optional[datetime] = None,
    ) -> Claim:
        now = now or utcnow()
        with self.store.atomic():
            if draft.claim_number:
                existing = self.store.find(CLAIMS, draft.claim_number, Claim)
                if existing is not None:
                    if existing.enrollment_id != draft.enrollment_id:
                        raise ValidationFailed(f"Claim number {draft.claim_number} is already in use")
                    logger.debug("Claim %s already submitted (idempotent return)", existing.id)
                    return existing

            # Limits are always read fresh inside the unit
            enrollment = self._current_enrollment(draft, enrollment)
            plan = self._current_plan(enrollment, plan)
            self._check_submittable(draft, plan, enrollment, now)

            rule = resolve_coverage_rule(plan, draft.service_type)
            if rule.requires_referral and not draft.referral_id:
                raise ValidationFailed(f"{draft.service_type.value} claims under plan {plan.id} require a referral")
            currency = plan.pricing.currency
            billing = compute_billing(
                draft.total_billed, rule, self.settings.default_coverage_percentage,
                currency=currency, breakdown=draft.breakdown,
            )
            check = self.enrollments.check_remaining(enrollment.id, billing.covered_amount)
            if check.limited:
                billing = compute_billing(
                    draft.total_billed, rule, self.settings.default_coverage_percentage,
                    headroom=check.headroom, currency=currency, breakdown=draft.breakdown,
                )
                logger.warning(
                    "Claim on %s limited by annual maximum: covered %s of %s",
                    enrollment.id, billing.covered_amount, check.requested,
                )

            claim = Claim(
                id=draft.claim_number or generate_reference("CLM"),
                enrollment_id=enrollment.id,
                plan_id=plan.id,
                patient_id=draft.patient_id,
                claimant=draft.claimant,
                service_type=draft.service_type,
                service_date=draft.service_date,
                discharge_date=draft.discharge_date,
                diagnosis=draft.diagnosis,
                procedure=draft.procedure,
                referral_id=draft.referral_id,
                billing=billing,
                notes=[draft.notes] if draft.notes else [],
                status_history=[StatusChange(
                    status=ClaimStatus.SUBMITTED.value, reason="submitted", actor=draft.claimant.id, at=now,
                )],
                created_at=now,
                updated_at=now,
            )
            if billing.limited_by_annual_maximum:
                claim.notes.append(
                    f"Limited by annual maximum: {check.requested - billing.covered_amount} moved to patient"
                )
            claim.fraud_flags = self.screener.screen(self._screening_context(claim, enrollment, now))

            claim = self.store.insert(CLAIMS, claim)
            self.enrollments.record_utilization(
                enrollment.id, UtilizationKind.CLAIM_SUBMITTED, billing.total_billed
            )

        logger.info(
            "Claim %s submitted: billed %s, covered %s, patient %s",
            claim.id, billing.total_billed, billing.covered_amount, billing.patient_responsibility.total,
        )
        return claim

    def get_claim(self, claim_id: str) -> Claim:
        return self.store.get(CLAIMS, claim_id, Claim)

    def list_claims(
        self,
        enrollment_id: Optional[str] = None,
        status: Optional[ClaimStatus] = None,
        claimant_id: Optional[str] = None,
    ) -> list[Claim]:
        claims = self.store.select(
            CLAIMS,
            Claim,
            lambda c: (enrollment_id is None or c.enrollment_id == enrollment_id)
            and (status is None or c.status == status)
            and (claimant_id is None or c.claimant.id == claimant_id),
        )
        claims.sort(key=lambda c: c.created_at, reverse=True)
        return claims

    def start_review(self, claim_id: str, actor: str, notes: str = "", expected_version: Optional[int] = None) -> Claim:
        with self.store.atomic():
            claim = self._load(claim_id, expected_version)
            if claim.status not in REVIEWABLE:
                raise InvalidState(f"Cannot review claim in {claim.status.value} state")
            if claim.status == ClaimStatus.APPEALED:
                claim.appeal.status = AppealStatus.UNDER_REVIEW
            claim = self._transition(claim, ClaimStatus.UNDER_REVIEW, actor, notes or "review started")
        logger.info("Claim %s under review by %s", claim.id, actor)
        return claim

    def approve(
        self,
        claim_id: str,
        actor: str,
        amount=None,
        notes: str = "",
        expected_version: Optional[int] = None,
    ) -> Claim:
        with self.store.atomic():
            claim = self._load(claim_id, expected_version)
            amount = claim.billing.covered_amount if amount is None else to_money(amount)
            claim = self._decide(claim, amount, actor, notes)
        return claim

    def partially_approve(
        self,
        claim_id: str,
        actor: str,
        amount,
        notes: str = "",
        expected_version: Optional[int] = None,
    ) -> Claim:
        if amount is None:
            raise ValidationFailed("A partial approval needs an amount")
        amount = to_money(amount)
        with self.store.atomic():
            claim = self._load(claim_id, expected_version)
            if amount >= claim.billing.covered_amount:
                raise ValidationFailed(
                    f"Partial approval must be below the covered amount of {claim.billing.covered_amount}"
                )
            claim = self._decide(claim, amount, actor, notes)
        return claim

    def reject(
        self,
        claim_id: str,
        actor: str,
        reason: str,
        notes: str = "",
        expected_version: Optional[int] = None,
    ) -> Claim:
        with self.store.atomic():
            claim = self._load(claim_id, expected_version)
            if claim.status != ClaimStatus.UNDER_REVIEW:
                raise InvalidState(f"Cannot reject claim in {claim.status.value} state")
            self._mark_reviewed(claim, actor, notes)

            appeal = claim.appeal
            if appeal is not None and appeal.status == AppealStatus.UNDER_REVIEW:
                # Upholding the original decision: its utilization is already recorded
                appeal.status = AppealStatus.REJECTED
                appeal.reviewed_at = claim.reviewed_at
                appeal.review_notes = reason
                claim = self._transition(claim, appeal.prior_status, actor, f"appeal rejected: {reason}")
            else:
                claim.rejection_reason = reason
                claim.billing.approved_amount = ZERO
                claim.billing.rejected_amount = claim.billing.total_billed
                self.enrollments.record_utilization(claim.enrollment_id, UtilizationKind.CLAIM_DENIED)
                claim = self._transition(claim, ClaimStatus.REJECTED, actor, reason)

        logger.info("Claim %s rejected by %s: %s", claim.id, actor, reason)
        return claim

    def submit_appeal(self, claim_id: str, actor: str, reason: str) -> Claim:
        with self.store.atomic():
            claim = self._load(claim_id)
            if claim.status not in APPEALABLE:
                raise InvalidState(f"Cannot appeal claim in {claim.status.value} state")
            if claim.appeal is not None:
                raise InvalidState(f"Claim {claim.id} has already been appealed")
            claim.appeal = Appeal(submitted_by=actor, reason=reason, prior_status=claim.status)
            claim = self._transition(claim, ClaimStatus.APPEALED, actor, reason)
        logger.info("Claim %s appealed by %s", claim.id, actor)
        return claim

    def pay(
        self,
        claim_id: str,
        actor: str,
        payer_wallet_id: Optional[str] = None,
        method: str = "wallet",
    ) -> ClaimPaymentResponse:
        with self.store.atomic():
            claim = self._load(claim_id)
            if claim.status not in DECIDED:
                raise InvalidState(f"Cannot pay claim in {claim.status.value} state")
            amount = claim.billing.approved_amount
            if amount <= ZERO:
                raise InvalidState(f"Claim {claim.id} has nothing approved to pay")

            payer = payer_wallet_id or self.enrollments.get_plan(claim.plan_id).funding_wallet_id
            if not payer:
                raise ValidationFailed(f"Plan {claim.plan_id} has no funding wallet and no payer wallet was given")

            attempt = sum(1 for change in claim.status_history if change.status == ClaimStatus.PAID.value)
            txn = self.transactions.process(InitiateTransactionRequest(
                kind=TransactionKind.PAYMENT,
                source=Party(wallet_id=payer),
                destination=Party(wallet_id=claim.claimant.wallet_id, user_id=claim.claimant.id),
                amount=amount,
                currency=claim.billing.currency,
                payment_method=PaymentMethod.INSURANCE,
                reference=ClaimPaymentRef(claim_id=claim.id),
                description=f"Claim {claim.id} payment",
                idempotency_key=f"{claim.id}:payment:{attempt}",
                metadata={"payment_method": method},
            ))

            claim.billing.payment = ClaimPayment(amount=amount, transaction_id=txn.id, method=method)
            claim = self._transition(claim, ClaimStatus.PAID, actor, f"paid via {txn.id}")

        logger.info("Claim %s paid %s to %s", claim.id, amount, claim.claimant.wallet_id)
        return ClaimPaymentResponse(claim=claim, transaction=txn, message="Claim paid successfully")

    def cancel(self, claim_id: str, actor: str, reason: str) -> Claim:
        with self.store.atomic():
            claim = self._load(claim_id)
            if claim.status in (ClaimStatus.PAID, ClaimStatus.CANCELLED):
                raise InvalidState(f"Cannot cancel claim in {claim.status.value} state")
            utilized = claim.billing.utilized_amount
            if utilized > ZERO:
                self.enrollments.record_utilization(
                    claim.enrollment_id,
                    UtilizationKind.CLAIM_REVERSED,
                    utilized,
                    patient_share=claim.billing.total_billed - utilized,
                )
                claim.billing.utilized_amount = ZERO
            claim = self._transition(claim, ClaimStatus.CANCELLED, actor, reason)
        logger.info("Claim %s cancelled by %s: %s", claim.id, actor, reason)
        return claim

    def compensate(self, original: Transaction, reversal: Transaction) -> None:
        """Undo the payment record of a claim whose payment was reversed."""
        with self.store.atomic():
            claim = self._load(original.reference.claim_id)
            if claim.status != ClaimStatus.PAID:
                logger.debug("Claim %s is %s, nothing to roll back", claim.id, claim.status.value)
                return
            decision = next(
                ClaimStatus(change.status)
                for change in reversed(claim.status_history)
                if change.status in {s.value for s in DECIDED}
            )
            claim.billing.payment = None
            self._transition(claim, decision, reversal.metadata.get("performed_by"), f"payment reversed by {reversal.id}")
        logger.info("Claim %s payment %s reversed, back to %s", claim.id, original.id, decision.value)

    def restore(self, original: Transaction, replay: Transaction) -> None:
        """Mark a claim paid again when the reversal of its payment is itself reversed."""
        with self.store.atomic():
            claim = self._load(original.reference.claim_id)
            if claim.status not in DECIDED or claim.billing.payment is not None:
                raise InvalidState(f"Cannot restore the payment of claim in {claim.status.value} state")
            if replay.amount != claim.billing.approved_amount:
                raise InvalidState(
                    f"Claim {claim.id} is approved for {claim.billing.approved_amount}, "
                    f"the restored payment is {replay.amount}"
                )
            claim.billing.payment = ClaimPayment(
                amount=replay.amount,
                transaction_id=replay.id,
                method=original.metadata.get("payment_method", "wallet"),
            )
            claim = self._transition(
                claim, ClaimStatus.PAID, replay.metadata.get("performed_by"), f"payment restored by {replay.id}"
            )
        logger.info("Claim %s payment restored via %s", claim.id, replay.id)

    def _decide(self, claim: Claim, amount: Decimal, actor: str, notes: str) -> Claim:
        if claim.status != ClaimStatus.UNDER_REVIEW:
            raise InvalidState(f"Cannot approve claim in {claim.status.value} state")
        billing = claim.billing
        if amount <= ZERO:
            raise ValidationFailed("Approved amount must be greater than zero; reject the claim instead")
        if amount > billing.covered_amount:
            raise ValidationFailed(f"Approved amount {amount} exceeds the covered amount {billing.covered_amount}")

        if claim.rejection_reason is not None:
            # Approved on appeal after a denial
            self.enrollments.record_utilization(claim.enrollment_id, UtilizationKind.CLAIM_DENIED, count=-1)

        # Only the change against any earlier decision is charged to the limits
        previous = billing.utilized_amount
        previous_share = billing.total_billed - previous if previous > ZERO else ZERO
        share_delta = (billing.total_billed - amount) - previous_share
        if amount > previous:
            self.enrollments.record_utilization(
                claim.enrollment_id,
                UtilizationKind.CLAIM_APPROVED,
                amount - previous,
                count=0 if previous else 1,
                patient_share=share_delta,
            )
        elif amount < previous:
            self.enrollments.record_utilization(
                claim.enrollment_id,
                UtilizationKind.CLAIM_REVERSED,
                previous - amount,
                count=0,
                patient_share=-share_delta,
            )

        billing.approved_amount = amount
        billing.rejected_amount = billing.total_billed - amount
        billing.utilized_amount = amount
        claim.rejection_reason = None
        self._mark_reviewed(claim, actor, notes)

        appeal = claim.appeal
        if appeal is not None and appeal.status == AppealStatus.UNDER_REVIEW:
            appeal.status = AppealStatus.APPROVED
            appeal.reviewed_at = claim.reviewed_at
            appeal.review_notes = notes

        status = ClaimStatus.APPROVED if amount == billing.covered_amount else ClaimStatus.PARTIALLY_APPROVED
        claim = self._transition(claim, status, actor, notes or f"approved {amount}")
        logger.info("Claim %s %s for %s by %s", claim.id, status.value, amount, actor)
        return claim

    def _load(self, claim_id: str, expected_version: Optional[int] = None) -> Claim:
        claim = self.get_claim(claim_id)
        if expected_version is not None and claim.version != expected_version:
            raise ConcurrencyConflict(
                f"Claim {claim.id} is at version {claim.version}, expected {expected_version}"
            )
        return claim

    def _transition(self, claim: Claim, status: ClaimStatus, actor: Optional[str], reason: str) -> Claim:
        now = utcnow()
        claim.status = status
        claim.updated_at = now
        claim.status_history.append(StatusChange(status=status.value, reason=reason, actor=actor, at=now))
        return self.store.put(CLAIMS, claim)

    @staticmethod
    def _mark_reviewed(claim: Claim, actor: str, notes: str) -> None:
        claim.reviewed_by = actor
        claim.reviewed_at = utcnow()
        if notes:
            claim.review_notes = notes

    def _current_enrollment(self, draft: ClaimDraft, enrollment: Optional[Enrollment]) -> Enrollment:
        if enrollment is not None and enrollment.id != draft.enrollment_id:
            raise ValidationFailed(f"Claim is for enrollment {draft.enrollment_id}, not {enrollment.id}")
        return self.enrollments.get_enrollment(draft.enrollment_id)

    def _current_plan(self, enrollment: Enrollment, plan: Optional[Plan]) -> Plan:
        if plan is not None and plan.id != enrollment.plan_id:
            raise ValidationFailed(f"Enrollment {enrollment.id} belongs to plan {enrollment.plan_id}, not {plan.id}")
        return self.enrollments.get_plan(enrollment.plan_id)

    def _check_submittable(self, draft: ClaimDraft, plan: Plan, enrollment: Enrollment, now: datetime) -> None:
        status = self.enrollments.effective_status(enrollment, now)
        if status not in IN_FORCE:
            raise InvalidState(f"Enrollment {enrollment.id} is {status.value}, claims cannot be submitted")
        if not (enrollment.coverage_start <= draft.service_date <= enrollment.coverage_end):
            raise ValidationFailed("Service date is outside the enrollment's coverage window")
        if draft.discharge_date is not None and draft.discharge_date < draft.service_date:
            raise ValidationFailed("Discharge date cannot be before the service date")
        if draft.currency and draft.currency != plan.pricing.currency:
            raise CurrencyMismatch(f"Plan {plan.id} pays in {plan.pricing.currency}, claim is in {draft.currency}")

    def _screening_context(self, claim: Claim, enrollment: Enrollment, now: datetime) -> dict:
        procedure = claim.procedure.code if claim.procedure else None
        duplicates = self.store.select(
            CLAIMS,
            Claim,
            lambda c: c.enrollment_id == claim.enrollment_id
            and c.status != ClaimStatus.CANCELLED
            and c.service_date.date() == claim.service_date.date()
            and (c.procedure.code if c.procedure else None) == procedure
            and c.billing.total_billed == claim.billing.total_billed,
        )
        billing = claim.billing
        annual_maximum = enrollment.limits.annual_maximum
        return {
            "claim": {
                "id": claim.id,
                "total_billed": billing.total_billed,
                "future_service_date": claim.service_date > now,
                "over_annual_maximum": annual_maximum is not None and billing.total_billed > annual_maximum,
                "has_breakdown": bool(billing.breakdown),
                "breakdown_matches": sum((item.total_price for item in billing.breakdown), ZERO) == billing.total_billed,
            },
            "enrollment": {"id": enrollment.id, "annual_maximum": annual_maximum},
            "history": {"duplicates": len(duplicates)},
        }
