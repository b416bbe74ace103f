from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Request, status

from ledger.api import get_engine

from .models import (
    AppealRequest,
    ApproveClaimRequest,
    CancelClaimRequest,
    CancellationResponse,
    Claim,
    ClaimDraft,
    ClaimPaymentResponse,
    ClaimStatus,
    CreateSponsorshipRequest,
    Enrollment,
    EnrollmentActionRequest,
    EnrollRequest,
    LimitCheck,
    PayClaimRequest,
    Plan,
    PreApprovalRequest,
    ProcessRenewalRequest,
    RejectClaimRequest,
    RenewalRequest,
    ReviewRequest,
    SponsorshipActionRequest,
    Sponsorship,
    UtilizationResponse,
    UtilizeSponsorshipRequest,
)

router = APIRouter()


# Sponsorships

@router.post("/sponsorships", response_model=Sponsorship, status_code=status.HTTP_201_CREATED, tags=["Sponsorships"])
def create_sponsorship(body: CreateSponsorshipRequest, request: Request) -> Sponsorship:
    return get_engine(request).sponsorships.create(body)


@router.get("/sponsorships/{sponsorship_id}", response_model=Sponsorship, tags=["Sponsorships"])
def get_sponsorship(sponsorship_id: str, request: Request) -> Sponsorship:
    return get_engine(request).sponsorships.get(sponsorship_id)


@router.get("/sponsors/{sponsor_id}/sponsorships", response_model=list[Sponsorship], tags=["Sponsorships"])
def list_sponsor_sponsorships(sponsor_id: str, request: Request) -> list[Sponsorship]:
    return get_engine(request).sponsorships.list_by_sponsor(sponsor_id)


@router.get("/beneficiaries/{beneficiary_id}/sponsorships", response_model=list[Sponsorship], tags=["Sponsorships"])
def list_beneficiary_sponsorships(beneficiary_id: str, request: Request) -> list[Sponsorship]:
    return get_engine(request).sponsorships.list_by_beneficiary(beneficiary_id)


@router.post("/sponsorships/{sponsorship_id}/approve", response_model=Sponsorship, tags=["Sponsorships"])
def approve_sponsorship(sponsorship_id: str, body: SponsorshipActionRequest, request: Request) -> Sponsorship:
    return get_engine(request).sponsorships.approve(sponsorship_id, body.actor, body.reason)


@router.post("/sponsorships/{sponsorship_id}/utilize", response_model=UtilizationResponse, tags=["Sponsorships"])
def utilize_sponsorship(sponsorship_id: str, body: UtilizeSponsorshipRequest, request: Request) -> UtilizationResponse:
    return get_engine(request).sponsorships.utilize(sponsorship_id, body)


@router.post("/sponsorships/{sponsorship_id}/pre-approvals", response_model=Sponsorship, tags=["Sponsorships"])
def pre_approve_sponsorship(sponsorship_id: str, body: PreApprovalRequest, request: Request) -> Sponsorship:
    return get_engine(request).sponsorships.pre_approve(sponsorship_id, body)


@router.post("/sponsorships/{sponsorship_id}/pause", response_model=Sponsorship, tags=["Sponsorships"])
def pause_sponsorship(sponsorship_id: str, body: SponsorshipActionRequest, request: Request) -> Sponsorship:
    return get_engine(request).sponsorships.pause(sponsorship_id, body.actor, body.reason)


@router.post("/sponsorships/{sponsorship_id}/resume", response_model=Sponsorship, tags=["Sponsorships"])
def resume_sponsorship(sponsorship_id: str, body: SponsorshipActionRequest, request: Request) -> Sponsorship:
    return get_engine(request).sponsorships.resume(sponsorship_id, body.actor)


@router.post("/sponsorships/{sponsorship_id}/terminate", response_model=Sponsorship, tags=["Sponsorships"])
def terminate_sponsorship(sponsorship_id: str, body: SponsorshipActionRequest, request: Request) -> Sponsorship:
    return get_engine(request).sponsorships.terminate(sponsorship_id, body.actor, body.reason)


@router.post("/sponsorships/{sponsorship_id}/renewal", response_model=Sponsorship, tags=["Sponsorships"])
def request_sponsorship_renewal(sponsorship_id: str, body: RenewalRequest, request: Request) -> Sponsorship:
    return get_engine(request).sponsorships.request_renewal(sponsorship_id, body)


@router.post("/sponsorships/{sponsorship_id}/renewal/decision", response_model=Sponsorship, tags=["Sponsorships"])
def process_sponsorship_renewal(sponsorship_id: str, body: ProcessRenewalRequest, request: Request) -> Sponsorship:
    return get_engine(request).sponsorships.process_renewal(sponsorship_id, body)


# Plans and enrollments

@router.post("/plans", response_model=Plan, status_code=status.HTTP_201_CREATED, tags=["Plans"])
def register_plan(body: Plan, request: Request) -> Plan:
    return get_engine(request).enrollments.register_plan(body)


@router.get("/plans", response_model=list[Plan], tags=["Plans"])
def list_plans(request: Request, available_only: bool = True) -> list[Plan]:
    return get_engine(request).enrollments.list_plans(available_only=available_only)


@router.post("/enrollments", response_model=Enrollment, status_code=status.HTTP_201_CREATED, tags=["Enrollments"])
def enroll(body: EnrollRequest, request: Request) -> Enrollment:
    return get_engine(request).enrollments.enroll(body)


@router.get("/enrollments/{enrollment_id}", response_model=Enrollment, tags=["Enrollments"])
def get_enrollment(enrollment_id: str, request: Request) -> Enrollment:
    tracker = get_engine(request).enrollments
    enrollment = tracker.get_enrollment(enrollment_id)
    return enrollment.model_copy(update={"status": tracker.effective_status(enrollment)})


@router.post("/enrollments/{enrollment_id}/activate", response_model=Enrollment, tags=["Enrollments"])
def activate_enrollment(enrollment_id: str, body: EnrollmentActionRequest, request: Request) -> Enrollment:
    return get_engine(request).enrollments.activate(enrollment_id, body.actor)


@router.post("/enrollments/{enrollment_id}/suspend", response_model=Enrollment, tags=["Enrollments"])
def suspend_enrollment(enrollment_id: str, body: EnrollmentActionRequest, request: Request) -> Enrollment:
    return get_engine(request).enrollments.suspend(enrollment_id, body.actor, body.reason)


@router.post("/enrollments/{enrollment_id}/reinstate", response_model=Enrollment, tags=["Enrollments"])
def reinstate_enrollment(enrollment_id: str, body: EnrollmentActionRequest, request: Request) -> Enrollment:
    return get_engine(request).enrollments.reinstate(enrollment_id, body.actor, body.reason or "reinstated")


@router.post("/enrollments/{enrollment_id}/cancel", response_model=CancellationResponse, tags=["Enrollments"])
def cancel_enrollment(enrollment_id: str, body: EnrollmentActionRequest, request: Request) -> CancellationResponse:
    return get_engine(request).enrollments.cancel(enrollment_id, body.actor, body.reason, body.effective_date)


@router.post("/enrollments/{enrollment_id}/renew", response_model=Enrollment, status_code=status.HTTP_201_CREATED, tags=["Enrollments"])
def renew_enrollment(enrollment_id: str, body: EnrollmentActionRequest, request: Request) -> Enrollment:
    return get_engine(request).enrollments.renew(enrollment_id, body.actor)


@router.get("/enrollments/{enrollment_id}/limits", response_model=LimitCheck, tags=["Enrollments"])
def check_enrollment_limits(enrollment_id: str, amount: Decimal, request: Request) -> LimitCheck:
    return get_engine(request).enrollments.check_remaining(enrollment_id, amount)


# Claims

@router.post("/claims", response_model=Claim, status_code=status.HTTP_201_CREATED, tags=["Claims"])
def submit_claim(body: ClaimDraft, request: Request) -> Claim:
    return get_engine(request).claims.adjudicate(body)


@router.get("/claims", response_model=list[Claim], tags=["Claims"])
def list_claims(
    request: Request,
    enrollment_id: Optional[str] = None,
    status: Optional[ClaimStatus] = None,
    claimant_id: Optional[str] = None,
) -> list[Claim]:
    return get_engine(request).claims.list_claims(enrollment_id, status, claimant_id)


@router.get("/claims/{claim_id}", response_model=Claim, tags=["Claims"])
def get_claim(claim_id: str, request: Request) -> Claim:
    return get_engine(request).claims.get_claim(claim_id)


@router.post("/claims/{claim_id}/review", response_model=Claim, tags=["Claims"])
def start_claim_review(claim_id: str, body: ReviewRequest, request: Request) -> Claim:
    return get_engine(request).claims.start_review(claim_id, body.actor, body.notes, body.expected_version)


@router.post("/claims/{claim_id}/approve", response_model=Claim, tags=["Claims"])
def approve_claim(claim_id: str, body: ApproveClaimRequest, request: Request) -> Claim:
    return get_engine(request).claims.approve(
        claim_id, body.actor, body.approved_amount, body.notes, body.expected_version
    )


@router.post("/claims/{claim_id}/partial", response_model=Claim, tags=["Claims"])
def partially_approve_claim(claim_id: str, body: ApproveClaimRequest, request: Request) -> Claim:
    return get_engine(request).claims.partially_approve(
        claim_id, body.actor, body.approved_amount, body.notes, body.expected_version
    )


@router.post("/claims/{claim_id}/reject", response_model=Claim, tags=["Claims"])
def reject_claim(claim_id: str, body: RejectClaimRequest, request: Request) -> Claim:
    return get_engine(request).claims.reject(claim_id, body.actor, body.reason, body.notes, body.expected_version)


@router.post("/claims/{claim_id}/appeal", response_model=Claim, tags=["Claims"])
def appeal_claim(claim_id: str, body: AppealRequest, request: Request) -> Claim:
    return get_engine(request).claims.submit_appeal(claim_id, body.actor, body.reason)


@router.post("/claims/{claim_id}/pay", response_model=ClaimPaymentResponse, tags=["Claims"])
def pay_claim(claim_id: str, body: PayClaimRequest, request: Request) -> ClaimPaymentResponse:
    return get_engine(request).claims.pay(claim_id, body.actor, body.payer_wallet_id, body.method)


@router.post("/claims/{claim_id}/cancel", response_model=Claim, tags=["Claims"])
def cancel_claim(claim_id: str, body: CancelClaimRequest, request: Request) -> Claim:
    return get_engine(request).claims.cancel(claim_id, body.actor, body.reason)
