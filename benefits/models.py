from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, ConfigDict, computed_field

from ledger.models import ZERO, StatusChange, Transaction, UtcDatetime, utcnow


# ---------------------------------------------------------------------------
# Sponsorships
# ---------------------------------------------------------------------------

class SponsorshipType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    EMERGENCY = "emergency"
    CHRONIC_CARE = "chronic_care"
    PREVENTIVE = "preventive"
    MEDICATION = "medication"


class SponsorshipStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"
    TERMINATED = "terminated"
    COMPLETED = "completed"


class SponsoredService(str, Enum):
    CONSULTATION = "consultation"
    MEDICATION = "medication"
    LAB_TESTS = "lab_tests"
    IMAGING = "imaging"
    SURGERY = "surgery"
    EMERGENCY = "emergency"
    ALL = "all"


class RenewalDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SponsorshipAmount(BaseModel):
    allocated: Decimal
    used: Decimal = ZERO
    currency: str = "USD"

    @computed_field
    @property
    def remaining(self) -> Decimal:
        return self.allocated - self.used


class ValidityWindow(BaseModel):
    start_date: UtcDatetime = Field(default_factory=utcnow)
    end_date: Optional[UtcDatetime] = None

    def has_ended(self, now: datetime) -> bool:
        return self.end_date is not None and self.end_date < now


class CoverageRules(BaseModel):
    services: list[SponsoredService] = Field(default_factory=list, description="Empty means every service")
    providers: list[str] = Field(default_factory=list, description="Empty means every provider")
    excluded_services: list[SponsoredService] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)
    requires_pre_approval: bool = False
    approval_threshold: Decimal = ZERO

    def denial_reason(self, service: SponsoredService, provider_id: Optional[str]) -> Optional[str]:
        if service in self.excluded_services:
            return f"{service.value} is excluded from this sponsorship"
        if self.services and SponsoredService.ALL not in self.services and service not in self.services:
            return f"{service.value} is not among the sponsored services"
        if self.providers and provider_id not in self.providers:
            return f"Provider {provider_id} is not an eligible provider for this sponsorship"
        return None


class UtilizationEvent(BaseModel):
    id: str
    at: UtcDatetime = Field(default_factory=utcnow)
    service: SponsoredService
    amount: Decimal
    transaction_id: str
    provider_id: Optional[str] = None
    appointment_id: Optional[str] = None
    approved: bool = False
    approved_by: Optional[str] = None
    pre_approval_id: Optional[str] = None
    notes: str = ""
    reversed: bool = False
    reversed_at: Optional[UtcDatetime] = None
    restored_by: Optional[str] = None


class PreApproval(BaseModel):
    id: str
    amount: Decimal
    service: SponsoredService
    approved_by: str
    approved_at: UtcDatetime = Field(default_factory=utcnow)
    consumed_by: Optional[str] = None


class ServicesReceived(BaseModel):
    consultations: int = 0
    medications: int = 0
    lab_tests: int = 0
    imaging: int = 0
    procedures: int = 0
    emergency_visits: int = 0


class Renewal(BaseModel):
    requested_at: UtcDatetime = Field(default_factory=utcnow)
    requested_by: str
    decision: RenewalDecision = RenewalDecision.PENDING
    new_amount: Optional[Decimal] = None
    new_window: Optional[ValidityWindow] = None
    reviewed_at: Optional[UtcDatetime] = None
    reviewed_by: Optional[str] = None


class Sponsorship(BaseModel):
    id: str
    sponsor_id: str
    beneficiary_id: str
    sponsor_wallet_id: str
    beneficiary_wallet_id: str
    type: SponsorshipType
    amount: SponsorshipAmount
    window: ValidityWindow
    coverage: CoverageRules = Field(default_factory=CoverageRules)
    utilization: list[UtilizationEvent] = Field(default_factory=list)
    pre_approvals: list[PreApproval] = Field(default_factory=list)
    status: SponsorshipStatus = SponsorshipStatus.PENDING
    status_history: list[StatusChange] = Field(default_factory=list)
    approved_by: Optional[str] = None
    approved_at: Optional[UtcDatetime] = None
    impact: ServicesReceived = Field(default_factory=ServicesReceived)
    renewal: Optional[Renewal] = None
    description: str = ""
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    @property
    def utilization_rate(self) -> Decimal:
        if self.amount.allocated == ZERO:
            return ZERO
        return self.amount.used / self.amount.allocated * 100

    def days_remaining(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.window.end_date is None:
            return None
        delta = self.window.end_date - (now or utcnow())
        return delta.days + (1 if delta.seconds or delta.microseconds else 0)


class CreateSponsorshipRequest(BaseModel):
    sponsor_id: str
    beneficiary_id: str
    sponsor_wallet_id: str
    beneficiary_wallet_id: str
    type: SponsorshipType = SponsorshipType.PARTIAL
    amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = None
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    coverage: CoverageRules = Field(default_factory=CoverageRules)
    description: str = ""
    approved_by: Optional[str] = Field(default=None, description="Approve immediately on behalf of this actor")


class UtilizeSponsorshipRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    service: SponsoredService
    provider_id: Optional[str] = None
    payee_wallet_id: Optional[str] = Field(default=None, description="Rendering party's wallet; defaults to the beneficiary")
    appointment_id: Optional[str] = None
    pre_approval_id: Optional[str] = None
    notes: str = ""
    idempotency_key: Optional[str] = None


class PreApprovalRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    service: SponsoredService
    approved_by: str


class SponsorshipActionRequest(BaseModel):
    actor: str
    reason: str = ""


class RenewalRequest(BaseModel):
    requested_by: str
    new_amount: Optional[Decimal] = None
    new_end_date: Optional[UtcDatetime] = None


class ProcessRenewalRequest(BaseModel):
    reviewed_by: str
    decision: Literal[RenewalDecision.APPROVED, RenewalDecision.REJECTED]
    new_amount: Optional[Decimal] = None
    new_start_date: Optional[UtcDatetime] = None
    new_end_date: Optional[UtcDatetime] = None


class UtilizationResponse(BaseModel):
    sponsorship: Sponsorship
    utilization: UtilizationEvent
    transaction: Transaction
    message: str


# ---------------------------------------------------------------------------
# Plans and enrollments
# ---------------------------------------------------------------------------

class ServiceType(str, Enum):
    OUTPATIENT = "outpatient"
    INPATIENT = "inpatient"
    EMERGENCY = "emergency"
    SURGERY = "surgery"
    MATERNITY = "maternity"
    PRESCRIPTION = "prescription"
    DIAGNOSTIC = "diagnostic"
    DENTAL = "dental"
    VISION = "vision"
    MENTAL_HEALTH = "mental_health"
    PREVENTIVE = "preventive"
    SPECIALIST_CONSULTATION = "specialist_consultation"
    OTHER = "other"


class EnrollmentKind(str, Enum):
    INDIVIDUAL = "individual"
    FAMILY = "family"
    CORPORATE = "corporate"
    GROUP = "group"


class PaymentCadence(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    DISCONTINUED = "discontinued"


class EnrollmentStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    GRACE_PERIOD = "grace_period"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class UtilizationKind(str, Enum):
    APPOINTMENT = "appointment"
    PRESCRIPTION = "prescription"
    CLAIM_SUBMITTED = "claim_submitted"
    CLAIM_APPROVED = "claim_approved"
    CLAIM_DENIED = "claim_denied"
    CLAIM_REVERSED = "claim_reversed"


class CoverageRule(BaseModel):
    covered: bool = True
    copayment: Decimal = ZERO
    coverage_percentage: Optional[Decimal] = None
    requires_referral: bool = False


class PlanLimits(BaseModel):
    annual_maximum: Optional[Decimal] = None
    lifetime_maximum: Optional[Decimal] = None
    dependents_allowed: int = 0


class PlanPricing(BaseModel):
    monthly_premium: dict[EnrollmentKind, Decimal] = Field(default_factory=dict)
    deductible: dict[EnrollmentKind, Decimal] = Field(default_factory=dict)
    max_out_of_pocket: dict[EnrollmentKind, Decimal] = Field(default_factory=dict)
    registration_fee: Decimal = ZERO
    currency: str = "USD"


class PlanStatistics(BaseModel):
    total_enrollments: int = 0
    active_members: int = 0


class Plan(BaseModel):
    id: str
    plan_code: str
    name: str
    coverage: dict[ServiceType, CoverageRule] = Field(default_factory=dict)
    limits: PlanLimits = Field(default_factory=PlanLimits)
    pricing: PlanPricing = Field(default_factory=PlanPricing)
    status: PlanStatus = PlanStatus.ACTIVE
    available_for_enrollment: bool = True
    open_enrollment_start: Optional[UtcDatetime] = None
    open_enrollment_end: Optional[UtcDatetime] = None
    grace_period_days: Optional[int] = None
    funding_wallet_id: Optional[str] = Field(default=None, description="Pool wallet claims are paid from")
    statistics: PlanStatistics = Field(default_factory=PlanStatistics)
    created_at: UtcDatetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    def is_enrollment_open(self, now: datetime) -> bool:
        if self.open_enrollment_start is None or self.open_enrollment_end is None:
            return True
        return self.open_enrollment_start <= now <= self.open_enrollment_end


class EnrollmentLimits(BaseModel):
    annual_maximum: Optional[Decimal] = None
    remaining_annual: Optional[Decimal] = None
    lifetime_maximum: Optional[Decimal] = None
    remaining_lifetime: Optional[Decimal] = None
    deductible: Decimal = ZERO
    deductible_met: Decimal = ZERO
    max_out_of_pocket: Decimal = ZERO
    out_of_pocket_met: Decimal = ZERO


class EnrollmentUtilization(BaseModel):
    appointments_used: int = 0
    prescriptions_used: int = 0
    claims_submitted: int = 0
    claims_approved: int = 0
    claims_denied: int = 0
    total_claimed_amount: Decimal = ZERO
    total_paid_amount: Decimal = ZERO


class Dependent(BaseModel):
    first_name: str
    last_name: str
    relationship: Literal["spouse", "child", "parent", "other"]
    date_of_birth: Optional[UtcDatetime] = None


class EnrollmentPayment(BaseModel):
    cadence: PaymentCadence = PaymentCadence.MONTHLY
    amount: Decimal
    auto_renewal: bool = True


class Cancellation(BaseModel):
    requested_at: UtcDatetime = Field(default_factory=utcnow)
    effective_date: UtcDatetime
    reason: str
    refund_amount: Decimal = ZERO
    processed_by: Optional[str] = None


class Enrollment(BaseModel):
    id: str
    subscriber_id: str
    plan_id: str
    kind: EnrollmentKind
    dependents: list[Dependent] = Field(default_factory=list)
    payment: EnrollmentPayment
    coverage_start: UtcDatetime
    coverage_end: UtcDatetime
    renewal_date: Optional[UtcDatetime] = None
    limits: EnrollmentLimits = Field(default_factory=EnrollmentLimits)
    utilization: EnrollmentUtilization = Field(default_factory=EnrollmentUtilization)
    status: EnrollmentStatus = EnrollmentStatus.PENDING
    status_history: list[StatusChange] = Field(default_factory=list)
    membership_card_number: Optional[str] = None
    cancellation: Optional[Cancellation] = None
    renewed_from: Optional[str] = None
    enrolled_by: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class EnrollRequest(BaseModel):
    subscriber_id: str
    plan_id: str
    kind: EnrollmentKind = EnrollmentKind.INDIVIDUAL
    dependents: list[Dependent] = Field(default_factory=list)
    payment_cadence: PaymentCadence = PaymentCadence.MONTHLY
    coverage_start: Optional[UtcDatetime] = None
    enrolled_by: Optional[str] = None


class EnrollmentActionRequest(BaseModel):
    actor: str
    reason: str = ""
    effective_date: Optional[UtcDatetime] = None


class LimitCheck(BaseModel):
    requested: Decimal
    allowed: Decimal
    headroom: Optional[Decimal] = None
    limited: bool = False


class CancellationResponse(BaseModel):
    enrollment: Enrollment
    refund_amount: Decimal
    message: str


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------

class ClaimStatus(str, Enum):
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    PARTIALLY_APPROVED = "partially_approved"
    REJECTED = "rejected"
    PAID = "paid"
    APPEALED = "appealed"
    CANCELLED = "cancelled"


class AppealStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class FlagSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProviderClaimant(BaseModel):
    kind: Literal["provider"] = "provider"
    id: str
    wallet_id: str
    name: str
    facility_name: Optional[str] = None
    license_number: Optional[str] = None
    specialty: Optional[str] = None


class VendorClaimant(BaseModel):
    kind: Literal["vendor"] = "vendor"
    id: str
    wallet_id: str
    business_name: str
    license_number: Optional[str] = None
    vendor_type: Optional[str] = None


class PatientClaimant(BaseModel):
    kind: Literal["patient"] = "patient"
    id: str
    wallet_id: str
    name: str


Claimant = Annotated[
    Union[ProviderClaimant, VendorClaimant, PatientClaimant],
    Field(discriminator="kind"),
]


class Diagnosis(BaseModel):
    code: str
    description: str = ""


class Procedure(BaseModel):
    code: str
    description: str = ""


class BillingItem(BaseModel):
    item: str
    quantity: int = 1
    unit_price: Decimal
    total_price: Decimal


class PatientResponsibility(BaseModel):
    copayment: Decimal = ZERO
    coinsurance: Decimal = ZERO
    deductible: Decimal = ZERO
    uncovered: Decimal = ZERO
    total: Decimal = ZERO


class ClaimPayment(BaseModel):
    amount: Decimal
    transaction_id: str
    method: str = "wallet"
    paid_at: UtcDatetime = Field(default_factory=utcnow)


class ClaimBilling(BaseModel):
    total_billed: Decimal
    breakdown: list[BillingItem] = Field(default_factory=list)
    currency: str = "USD"
    coverage_percentage: Decimal = ZERO
    covered_amount: Decimal = ZERO
    patient_responsibility: PatientResponsibility = Field(default_factory=PatientResponsibility)
    limited_by_annual_maximum: bool = False
    approved_amount: Decimal = ZERO
    rejected_amount: Decimal = ZERO
    utilized_amount: Decimal = Field(default=ZERO, description="Amount currently charged against enrollment limits")
    payment: Optional[ClaimPayment] = None


class Appeal(BaseModel):
    submitted_at: UtcDatetime = Field(default_factory=utcnow)
    submitted_by: str
    reason: str
    status: AppealStatus = AppealStatus.PENDING
    prior_status: ClaimStatus
    reviewed_at: Optional[UtcDatetime] = None
    review_notes: str = ""


class FraudFlag(BaseModel):
    code: str
    severity: FlagSeverity
    description: str
    detected_at: UtcDatetime = Field(default_factory=utcnow)


class ClaimDraft(BaseModel):
    claim_number: Optional[str] = Field(default=None, description="Caller-supplied claim number, used as dedup key")
    enrollment_id: str
    patient_id: str
    claimant: Claimant
    service_type: ServiceType
    service_date: UtcDatetime
    discharge_date: Optional[UtcDatetime] = None
    diagnosis: Optional[Diagnosis] = None
    procedure: Optional[Procedure] = None
    referral_id: Optional[str] = None
    total_billed: Decimal = Field(..., ge=0)
    breakdown: list[BillingItem] = Field(default_factory=list)
    currency: Optional[str] = None
    notes: str = ""


class Claim(BaseModel):
    id: str
    enrollment_id: str
    plan_id: str
    patient_id: str
    claimant: Claimant
    service_type: ServiceType
    service_date: UtcDatetime
    discharge_date: Optional[UtcDatetime] = None
    diagnosis: Optional[Diagnosis] = None
    procedure: Optional[Procedure] = None
    referral_id: Optional[str] = None
    billing: ClaimBilling
    status: ClaimStatus = ClaimStatus.SUBMITTED
    status_history: list[StatusChange] = Field(default_factory=list)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[UtcDatetime] = None
    review_notes: str = ""
    rejection_reason: Optional[str] = None
    appeal: Optional[Appeal] = None
    fraud_flags: list[FraudFlag] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class ReviewRequest(BaseModel):
    actor: str
    notes: str = ""
    expected_version: Optional[int] = None


class ApproveClaimRequest(BaseModel):
    actor: str
    approved_amount: Optional[Decimal] = None
    notes: str = ""
    expected_version: Optional[int] = None


class RejectClaimRequest(BaseModel):
    actor: str
    reason: str
    notes: str = ""
    expected_version: Optional[int] = None


class AppealRequest(BaseModel):
    actor: str
    reason: str


class PayClaimRequest(BaseModel):
    actor: str
    payer_wallet_id: Optional[str] = Field(default=None, description="Defaults to the plan's funding wallet")
    method: str = "wallet"


class CancelClaimRequest(BaseModel):
    actor: str
    reason: str


class ClaimPaymentResponse(BaseModel):
    claim: Claim
    transaction: Transaction
    message: str
