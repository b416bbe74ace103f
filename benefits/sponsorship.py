import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from ledger.errors import (
    CurrencyMismatch,
    InsufficientSponsorshipFunds,
    InvalidState,
    NotCovered,
    NotFound,
    PreApprovalRequired,
    ValidationFailed,
)
from ledger.models import (
    ZERO,
    InitiateTransactionRequest,
    Party,
    PaymentMethod,
    SponsorshipUtilizationRef,
    StatusChange,
    Transaction,
    TransactionKind,
    to_money,
    utcnow,
)
from ledger.service import TransactionProcessor
from ledger.store import SPONSORSHIPS, TRANSACTIONS, LedgerStore
from ledger.wallets import WalletManager, generate_reference

from .models import (
    CreateSponsorshipRequest,
    PreApproval,
    PreApprovalRequest,
    ProcessRenewalRequest,
    Renewal,
    RenewalDecision,
    RenewalRequest,
    SponsoredService,
    Sponsorship,
    SponsorshipAmount,
    SponsorshipStatus,
    UtilizationEvent,
    UtilizationResponse,
    UtilizeSponsorshipRequest,
    ValidityWindow,
)

logger = logging.getLogger(__name__)

SERVICE_COUNTERS = {
    SponsoredService.CONSULTATION: "consultations",
    SponsoredService.MEDICATION: "medications",
    SponsoredService.LAB_TESTS: "lab_tests",
    SponsoredService.IMAGING: "imaging",
    SponsoredService.SURGERY: "procedures",
    SponsoredService.EMERGENCY: "emergency_visits",
}

# The sponsor wallet holds the remaining allocation in reserve while funded
FUNDED = {SponsorshipStatus.ACTIVE, SponsorshipStatus.PAUSED}
TERMINAL = {SponsorshipStatus.EXPIRED, SponsorshipStatus.TERMINATED, SponsorshipStatus.COMPLETED}


class SponsorshipFundController:
    """Sponsor allocations to beneficiaries and the utilization drawn against them.

    Approval reserves the whole allocation on the sponsor wallet. Each
    utilization captures its amount from that reservation, and leaving the
    funded states (expiry, termination) releases whatever is left, so the
    reserved balance always equals ``remaining`` for a funded sponsorship.
    """

    def __init__(self, store: LedgerStore, wallets: WalletManager, transactions: TransactionProcessor):
        self.store = store
        self.wallets = wallets
        self.transactions = transactions

    def create(self, request: CreateSponsorshipRequest, now: Optional[datetime] = None) -> Sponsorship:
        now = now or utcnow()
        sponsor_wallet = self.wallets.get_wallet(request.sponsor_wallet_id)
        beneficiary_wallet = self.wallets.get_wallet(request.beneficiary_wallet_id)
        currency = request.currency or sponsor_wallet.currency
        for wallet in (sponsor_wallet, beneficiary_wallet):
            if wallet.currency != currency:
                raise CurrencyMismatch(f"Wallet {wallet.id} holds {wallet.currency}, sponsorship is in {currency}")

        window = ValidityWindow(start_date=request.start_date or now, end_date=request.end_date)
        if window.end_date is not None and window.end_date <= window.start_date:
            raise ValidationFailed("Sponsorship end date must be after its start date")

        sponsorship = Sponsorship(
            id=generate_reference("SP"),
            sponsor_id=request.sponsor_id,
            beneficiary_id=request.beneficiary_id,
            sponsor_wallet_id=sponsor_wallet.id,
            beneficiary_wallet_id=beneficiary_wallet.id,
            type=request.type,
            amount=SponsorshipAmount(allocated=to_money(request.amount), currency=currency),
            window=window,
            coverage=request.coverage,
            description=request.description,
            status_history=[StatusChange(status=SponsorshipStatus.PENDING.value, reason="created", actor=request.sponsor_id)],
        )
        with self.store.atomic():
            sponsorship = self.store.insert(SPONSORSHIPS, sponsorship)
            if request.approved_by:
                sponsorship = self.approve(sponsorship.id, request.approved_by, now=now)

        logger.info(
            "Created sponsorship %s: %s -> %s for %s %s",
            sponsorship.id, sponsorship.sponsor_id, sponsorship.beneficiary_id,
            sponsorship.amount.allocated, currency,
        )
        return sponsorship

    def approve(self, sponsorship_id: str, actor: str, comments: str = "", now: Optional[datetime] = None) -> Sponsorship:
        now = now or utcnow()
        with self.store.atomic():
            sponsorship = self.get(sponsorship_id, now=now)
            if sponsorship.status != SponsorshipStatus.PENDING:
                raise InvalidState(f"Cannot approve sponsorship in {sponsorship.status.value} state")
            sponsorship.approved_by = actor
            sponsorship.approved_at = now
            sponsorship = self._transition(sponsorship, SponsorshipStatus.ACTIVE, comments or "approved", actor)
        logger.info("Approved sponsorship %s, reserved %s", sponsorship.id, sponsorship.amount.allocated)
        return sponsorship

    def get(self, sponsorship_id: str, now: Optional[datetime] = None) -> Sponsorship:
        with self.store.atomic():
            sponsorship = self.store.get(SPONSORSHIPS, sponsorship_id, Sponsorship)
            return self._refresh(sponsorship, now or utcnow())

    def utilize(
        self,
        sponsorship_id: str,
        request: UtilizeSponsorshipRequest,
        now: Optional[datetime] = None,
    ) -> UtilizationResponse:
        now = now or utcnow()
        amount = to_money(request.amount)
        if amount <= ZERO:
            raise ValidationFailed("Utilization amount must be greater than zero")
        if request.service == SponsoredService.ALL:
            raise ValidationFailed("Utilization must name a concrete service")
        idempotency_key = f"{sponsorship_id}:{request.idempotency_key}" if request.idempotency_key else None

        # Lazy expiry commits on its own, even when the utilization is then refused
        self.get(sponsorship_id, now=now)

        with self.store.atomic():
            replay = self._replay(sponsorship_id, idempotency_key)
            if replay is not None:
                return replay

            sponsorship = self.get(sponsorship_id, now=now)
            if sponsorship.status != SponsorshipStatus.ACTIVE:
                raise InvalidState(f"Sponsorship {sponsorship.id} is {sponsorship.status.value}, not active")

            reason = sponsorship.coverage.denial_reason(request.service, request.provider_id)
            if reason:
                raise NotCovered(reason)

            remaining = sponsorship.amount.remaining
            if amount > remaining:
                logger.warning("Sponsorship %s has %s remaining, %s requested", sponsorship.id, remaining, amount)
                raise InsufficientSponsorshipFunds(
                    f"Insufficient sponsorship funds: {remaining} remaining, {amount} requested"
                )

            event_id = generate_reference("UTL")
            pre_approval = self._consume_pre_approval(sponsorship, request, amount, event_id)
            coverage = sponsorship.coverage
            if coverage.requires_pre_approval and amount > coverage.approval_threshold and pre_approval is None:
                raise PreApprovalRequired(
                    f"Pre-approval required for amounts above {coverage.approval_threshold}"
                )

            txn = self.transactions.process(
                InitiateTransactionRequest(
                    kind=TransactionKind.SPONSORSHIP,
                    source=Party(wallet_id=sponsorship.sponsor_wallet_id, user_id=sponsorship.sponsor_id),
                    destination=Party(
                        wallet_id=request.payee_wallet_id or sponsorship.beneficiary_wallet_id,
                        user_id=request.provider_id or sponsorship.beneficiary_id,
                    ),
                    amount=amount,
                    currency=sponsorship.amount.currency,
                    payment_method=PaymentMethod.SPONSOR,
                    reference=SponsorshipUtilizationRef(sponsorship_id=sponsorship.id, utilization_id=event_id),
                    description=f"Sponsored {request.service.value}",
                    idempotency_key=idempotency_key,
                ),
                draw_from_reserved=True,
            )

            event = UtilizationEvent(
                id=event_id,
                at=now,
                service=request.service,
                amount=amount,
                transaction_id=txn.id,
                provider_id=request.provider_id,
                appointment_id=request.appointment_id,
                approved=pre_approval is not None,
                approved_by=pre_approval.approved_by if pre_approval else None,
                pre_approval_id=pre_approval.id if pre_approval else None,
                notes=request.notes,
            )
            sponsorship.utilization.append(event)
            sponsorship.amount.used += amount
            self._count(sponsorship, request.service, 1)
            sponsorship.updated_at = now
            if sponsorship.amount.remaining == ZERO:
                sponsorship.status = SponsorshipStatus.COMPLETED
                sponsorship.status_history.append(
                    StatusChange(status=sponsorship.status.value, reason="allocation fully used")
                )
            sponsorship = self.store.put(SPONSORSHIPS, sponsorship)

        logger.info(
            "Utilized %s of sponsorship %s for %s (%s remaining)",
            amount, sponsorship.id, request.service.value, sponsorship.amount.remaining,
        )
        return UtilizationResponse(
            sponsorship=sponsorship,
            utilization=event,
            transaction=txn,
            message="Sponsorship utilized successfully",
        )

    def pre_approve(self, sponsorship_id: str, request: PreApprovalRequest, now: Optional[datetime] = None) -> Sponsorship:
        now = now or utcnow()
        amount = to_money(request.amount)
        with self.store.atomic():
            sponsorship = self.get(sponsorship_id, now=now)
            if sponsorship.status != SponsorshipStatus.ACTIVE:
                raise InvalidState(f"Cannot pre-approve against a {sponsorship.status.value} sponsorship")
            if amount > sponsorship.amount.remaining:
                raise InsufficientSponsorshipFunds(
                    f"Insufficient sponsorship funds: {sponsorship.amount.remaining} remaining, {amount} requested"
                )
            sponsorship.pre_approvals.append(PreApproval(
                id=generate_reference("PA"),
                amount=amount,
                service=request.service,
                approved_by=request.approved_by,
                approved_at=now,
            ))
            sponsorship.updated_at = now
            sponsorship = self.store.put(SPONSORSHIPS, sponsorship)
        logger.info("Pre-approved %s for %s on sponsorship %s", amount, request.service.value, sponsorship.id)
        return sponsorship

    def pause(self, sponsorship_id: str, actor: str, reason: str) -> Sponsorship:
        with self.store.atomic():
            sponsorship = self.get(sponsorship_id)
            if sponsorship.status != SponsorshipStatus.ACTIVE:
                raise InvalidState(f"Cannot pause sponsorship in {sponsorship.status.value} state")
            sponsorship = self._transition(sponsorship, SponsorshipStatus.PAUSED, reason, actor)
        logger.info("Paused sponsorship %s: %s", sponsorship.id, reason)
        return sponsorship

    def resume(self, sponsorship_id: str, actor: str) -> Sponsorship:
        with self.store.atomic():
            sponsorship = self.get(sponsorship_id)
            if sponsorship.status != SponsorshipStatus.PAUSED:
                raise InvalidState(f"Cannot resume sponsorship in {sponsorship.status.value} state")
            sponsorship = self._transition(sponsorship, SponsorshipStatus.ACTIVE, "resumed", actor)
        logger.info("Resumed sponsorship %s", sponsorship.id)
        return sponsorship

    def terminate(self, sponsorship_id: str, actor: str, reason: str) -> Sponsorship:
        with self.store.atomic():
            sponsorship = self.get(sponsorship_id)
            if sponsorship.status in TERMINAL:
                raise InvalidState(f"Cannot terminate sponsorship in {sponsorship.status.value} state")
            sponsorship = self._transition(sponsorship, SponsorshipStatus.TERMINATED, reason, actor)
        logger.info("Terminated sponsorship %s: %s", sponsorship.id, reason)
        return sponsorship

    def request_renewal(self, sponsorship_id: str, request: RenewalRequest) -> Sponsorship:
        with self.store.atomic():
            sponsorship = self.get(sponsorship_id)
            if sponsorship.status in (SponsorshipStatus.PENDING, SponsorshipStatus.TERMINATED):
                raise InvalidState(f"Cannot renew a {sponsorship.status.value} sponsorship")
            if sponsorship.renewal is not None and sponsorship.renewal.decision == RenewalDecision.PENDING:
                raise InvalidState(f"Sponsorship {sponsorship.id} already has a pending renewal request")

            new_window = None
            if request.new_end_date is not None:
                new_window = ValidityWindow(start_date=sponsorship.window.start_date, end_date=request.new_end_date)
            sponsorship.renewal = Renewal(
                requested_by=request.requested_by,
                new_amount=to_money(request.new_amount) if request.new_amount is not None else None,
                new_window=new_window,
            )
            sponsorship.updated_at = utcnow()
            sponsorship = self.store.put(SPONSORSHIPS, sponsorship)
        logger.info("Renewal requested for sponsorship %s by %s", sponsorship.id, request.requested_by)
        return sponsorship

    def process_renewal(
        self,
        sponsorship_id: str,
        request: ProcessRenewalRequest,
        now: Optional[datetime] = None,
    ) -> Sponsorship:
        now = now or utcnow()
        with self.store.atomic():
            sponsorship = self.get(sponsorship_id, now=now)
            renewal = sponsorship.renewal
            if renewal is None or renewal.decision != RenewalDecision.PENDING:
                raise InvalidState(f"Sponsorship {sponsorship.id} has no pending renewal request")

            renewal.decision = request.decision
            renewal.reviewed_by = request.reviewed_by
            renewal.reviewed_at = now
            if request.decision == RenewalDecision.REJECTED:
                sponsorship.updated_at = now
                sponsorship = self.store.put(SPONSORSHIPS, sponsorship)
                logger.info("Renewal rejected for sponsorship %s", sponsorship.id)
                return sponsorship

            held = self._held(sponsorship)
            new_amount = request.new_amount if request.new_amount is not None else renewal.new_amount
            if new_amount is not None:
                new_amount = to_money(new_amount)
                if new_amount < sponsorship.amount.used:
                    raise ValidationFailed(
                        f"Renewed allocation {new_amount} is below the {sponsorship.amount.used} already used"
                    )
                sponsorship.amount.allocated = new_amount
                renewal.new_amount = new_amount

            if request.new_end_date is not None:
                renewal.new_window = ValidityWindow(
                    start_date=request.new_start_date or sponsorship.window.start_date,
                    end_date=request.new_end_date,
                )
            if renewal.new_window is not None:
                if renewal.new_window.has_ended(now):
                    raise ValidationFailed("Renewed validity window has already ended")
                sponsorship.window = renewal.new_window

            if sponsorship.status in (SponsorshipStatus.EXPIRED, SponsorshipStatus.COMPLETED):
                if sponsorship.amount.remaining > ZERO and not sponsorship.window.has_ended(now):
                    sponsorship.status = SponsorshipStatus.ACTIVE
            elif sponsorship.status == SponsorshipStatus.ACTIVE and sponsorship.amount.remaining == ZERO:
                sponsorship.status = SponsorshipStatus.COMPLETED
            sponsorship.status_history.append(
                StatusChange(status=sponsorship.status.value, reason="renewed", actor=request.reviewed_by, at=now)
            )
            self._rebalance(sponsorship, held)
            sponsorship.updated_at = now
            sponsorship = self.store.put(SPONSORSHIPS, sponsorship)

        logger.info(
            "Renewed sponsorship %s: allocated %s, ends %s",
            sponsorship.id, sponsorship.amount.allocated, sponsorship.window.end_date,
        )
        return sponsorship

    def list_by_sponsor(self, sponsor_id: str, status: Optional[SponsorshipStatus] = None) -> list[Sponsorship]:
        return self._list(lambda s: s.sponsor_id == sponsor_id, status)

    def list_by_beneficiary(self, beneficiary_id: str, status: Optional[SponsorshipStatus] = None) -> list[Sponsorship]:
        return self._list(lambda s: s.beneficiary_id == beneficiary_id, status)

    def list_expiring(self, days_ahead: int = 30, now: Optional[datetime] = None) -> list[Sponsorship]:
        now = now or utcnow()
        horizon = now + timedelta(days=days_ahead)
        return [
            s for s in self._list(lambda s: s.window.end_date is not None, SponsorshipStatus.ACTIVE, now)
            if now <= s.window.end_date <= horizon
        ]

    def compensate(self, original: Transaction, reversal: Transaction) -> None:
        """Roll back the utilization a reversed sponsorship transaction paid for."""
        ref = original.reference
        with self.store.atomic():
            sponsorship = self.store.get(SPONSORSHIPS, ref.sponsorship_id, Sponsorship)
            event = next((e for e in sponsorship.utilization if e.id == ref.utilization_id), None)
            if event is None:
                raise NotFound(f"Utilization {ref.utilization_id} not found on sponsorship {sponsorship.id}")
            if event.reversed:
                logger.debug("Utilization %s already rolled back", event.id)
                return

            now = utcnow()
            held = self._held(sponsorship)
            event.reversed = True
            event.reversed_at = now
            sponsorship.amount.used -= event.amount
            self._count(sponsorship, event.service, -1)
            if sponsorship.status == SponsorshipStatus.COMPLETED and not sponsorship.window.has_ended(now):
                sponsorship.status = SponsorshipStatus.ACTIVE
                sponsorship.status_history.append(StatusChange(
                    status=sponsorship.status.value,
                    reason=f"utilization {event.id} reversed",
                    at=now,
                ))
            self._rebalance(sponsorship, held)
            sponsorship.updated_at = now
            self.store.put(SPONSORSHIPS, sponsorship)

        logger.info(
            "Rolled back utilization %s of %s on sponsorship %s (reversal %s)",
            event.id, event.amount, sponsorship.id, reversal.id,
        )

    def restore(self, original: Transaction, replay: Transaction) -> None:
        """Re-apply a rolled-back utilization once its reversal is reversed."""
        ref = original.reference
        with self.store.atomic():
            sponsorship = self.store.get(SPONSORSHIPS, ref.sponsorship_id, Sponsorship)
            event = next((e for e in sponsorship.utilization if e.id == ref.utilization_id), None)
            if event is None:
                raise NotFound(f"Utilization {ref.utilization_id} not found on sponsorship {sponsorship.id}")
            if not event.reversed:
                raise InvalidState(f"Utilization {event.id} is not rolled back")

            now = utcnow()
            if sponsorship.status != SponsorshipStatus.ACTIVE or sponsorship.window.has_ended(now):
                raise InvalidState(f"Sponsorship {sponsorship.id} is {sponsorship.status.value}, not active")
            # The replayed payout was captured from the reserve, which still counted the amount
            if event.amount > sponsorship.amount.remaining:
                raise InsufficientSponsorshipFunds(
                    f"Insufficient sponsorship funds: {sponsorship.amount.remaining} remaining, "
                    f"{event.amount} to re-apply"
                )

            event.reversed = False
            event.reversed_at = None
            event.restored_by = replay.id
            sponsorship.amount.used += event.amount
            self._count(sponsorship, event.service, 1)
            if sponsorship.amount.remaining == ZERO:
                sponsorship.status = SponsorshipStatus.COMPLETED
                sponsorship.status_history.append(StatusChange(
                    status=sponsorship.status.value,
                    reason=f"utilization {event.id} re-applied",
                    at=now,
                ))
            sponsorship.updated_at = now
            self.store.put(SPONSORSHIPS, sponsorship)

        logger.info(
            "Re-applied utilization %s of %s on sponsorship %s (transaction %s)",
            event.id, event.amount, sponsorship.id, replay.id,
        )

    def _list(self, where, status: Optional[SponsorshipStatus], now: Optional[datetime] = None) -> list[Sponsorship]:
        now = now or utcnow()
        with self.store.atomic():
            found = [self._refresh(s, now) for s in self.store.select(SPONSORSHIPS, Sponsorship, where)]
        found = [s for s in found if status is None or s.status == status]
        found.sort(key=lambda s: s.created_at, reverse=True)
        return found

    def _refresh(self, sponsorship: Sponsorship, now: datetime) -> Sponsorship:
        if sponsorship.status in TERMINAL or not sponsorship.window.has_ended(now):
            return sponsorship
        logger.info("Sponsorship %s expired at %s", sponsorship.id, sponsorship.window.end_date)
        return self._transition(sponsorship, SponsorshipStatus.EXPIRED, "validity window ended", actor=None)

    def _transition(
        self,
        sponsorship: Sponsorship,
        status: SponsorshipStatus,
        reason: str,
        actor: Optional[str],
    ) -> Sponsorship:
        held = self._held(sponsorship)
        sponsorship.status = status
        sponsorship.status_history.append(StatusChange(status=status.value, reason=reason, actor=actor))
        self._rebalance(sponsorship, held)
        sponsorship.updated_at = utcnow()
        return self.store.put(SPONSORSHIPS, sponsorship)

    @staticmethod
    def _held(sponsorship: Sponsorship) -> Decimal:
        return sponsorship.amount.remaining if sponsorship.status in FUNDED else ZERO

    def _rebalance(self, sponsorship: Sponsorship, held: Decimal) -> None:
        target = self._held(sponsorship)
        if target > held:
            self.wallets.reserve(sponsorship.sponsor_wallet_id, target - held)
        elif target < held:
            self.wallets.release(sponsorship.sponsor_wallet_id, held - target)

    @staticmethod
    def _count(sponsorship: Sponsorship, service: SponsoredService, delta: int) -> None:
        counter = SERVICE_COUNTERS[service]
        impact = sponsorship.impact
        setattr(impact, counter, max(0, getattr(impact, counter) + delta))

    @staticmethod
    def _consume_pre_approval(
        sponsorship: Sponsorship,
        request: UtilizeSponsorshipRequest,
        amount: Decimal,
        event_id: str,
    ) -> Optional[PreApproval]:
        if not request.pre_approval_id:
            return None
        pre_approval = next((p for p in sponsorship.pre_approvals if p.id == request.pre_approval_id), None)
        if pre_approval is None:
            raise PreApprovalRequired(f"Pre-approval {request.pre_approval_id} not found")
        if pre_approval.consumed_by is not None:
            raise PreApprovalRequired(f"Pre-approval {pre_approval.id} was already used")
        if pre_approval.service != request.service or amount > pre_approval.amount:
            raise PreApprovalRequired(
                f"Pre-approval {pre_approval.id} covers {pre_approval.service.value} up to {pre_approval.amount}"
            )
        pre_approval.consumed_by = event_id
        return pre_approval

    def _replay(self, sponsorship_id: str, idempotency_key: Optional[str]) -> Optional[UtilizationResponse]:
        transaction_id = self.store.lookup_key(TRANSACTIONS, idempotency_key)
        if transaction_id is None:
            return None
        txn = self.transactions.get_transaction(transaction_id)
        sponsorship = self.store.get(SPONSORSHIPS, sponsorship_id, Sponsorship)
        event = next((e for e in sponsorship.utilization if e.transaction_id == txn.id), None)
        if event is None:
            raise InvalidState(f"Idempotency key already used by transaction {txn.id}")
        logger.debug("Utilization %s replayed for key %s", event.id, idempotency_key)
        return UtilizationResponse(
            sponsorship=sponsorship,
            utilization=event,
            transaction=txn,
            message="Sponsorship utilization already recorded",
        )
