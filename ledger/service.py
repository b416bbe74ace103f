import logging
from decimal import Decimal
from typing import Callable, Optional

from .config import EngineSettings
from .errors import CurrencyMismatch, InvalidState, ValidationFailed
from .models import (
    ZERO,
    FeeBreakdown,
    InitiateTransactionRequest,
    PaymentMethod,
    ReferenceKind,
    ReversalRef,
    ReversalResponse,
    StatusChange,
    Transaction,
    TransactionHistoryResponse,
    TransactionKind,
    TransactionStatus,
    to_money,
    utcnow,
)
from .store import TRANSACTIONS, LedgerStore
from .wallets import WalletManager, generate_reference

logger = logging.getLogger(__name__)

Compensator = Callable[[Transaction, Transaction], None]

# Kinds moving value out of the system have no destination wallet; inbound
# rails have no source wallet. Everything else moves wallet to wallet.
SOURCE_ONLY = {TransactionKind.WITHDRAWAL}
DESTINATION_ONLY = {TransactionKind.DEPOSIT}


class TransactionProcessor:
    def __init__(self, store: LedgerStore, wallets: WalletManager, settings: Optional[EngineSettings] = None):
        self.store = store
        self.wallets = wallets
        self.settings = settings or wallets.settings
        self._compensators: dict[ReferenceKind, tuple[Compensator, Optional[Compensator]]] = {}

    def register_compensator(
        self,
        kind: ReferenceKind,
        compensator: Compensator,
        restorer: Optional[Compensator] = None,
    ) -> None:
        """
        Hook downstream records into reversals of transactions with this reference.

        The compensator undoes the record when the transaction is reversed. The
        restorer re-applies it when that reversal is itself reversed; without one
        such a re-reversal is refused.
        """
        self._compensators[kind] = (compensator, restorer)

    def calculate_fees(self, amount: Decimal, method: PaymentMethod) -> FeeBreakdown:
        platform = to_money(amount * self.settings.platform_fee_rate)
        if method == PaymentMethod.CARD:
            payment = to_money(amount * self.settings.card_fee_rate)
        elif method == PaymentMethod.BANK:
            payment = to_money(self.settings.bank_fee_flat)
        else:
            payment = ZERO
        tax = to_money(amount * self.settings.tax_rate)
        return FeeBreakdown(platform=platform, payment=payment, tax=tax, total=platform + payment + tax)

    def initiate(self, request: InitiateTransactionRequest, draw_from_reserved: bool = False) -> Transaction:
        with self.store.atomic():
            existing = self._check_idempotency(request.idempotency_key)
            if existing:
                logger.debug("Transaction %s already initiated (idempotent return)", existing.id)
                return existing

            amount = to_money(request.amount)
            if amount <= ZERO:
                raise ValidationFailed("Amount must be greater than zero")
            if request.reference is not None and request.reference.kind == ReferenceKind.REVERSAL.value:
                raise ValidationFailed("Reversal references are assigned by the ledger")
            currency = self._resolve_currency(request)

            fees = FeeBreakdown()
            if request.apply_fees:
                if not request.fee_wallet_id:
                    raise ValidationFailed("A fee wallet is required when fees apply")
                self._check_wallet_currency(request.fee_wallet_id, currency)
                fees = self.calculate_fees(amount, request.payment_method)
                if fees.total >= amount:
                    raise ValidationFailed(f"Fees of {fees.total} consume the whole amount {amount}")

            txn = Transaction(
                id=generate_reference("TXN"),
                idempotency_key=request.idempotency_key,
                kind=request.kind,
                source=request.source,
                destination=request.destination,
                amount=amount,
                currency=currency,
                fees=fees,
                fee_wallet_id=request.fee_wallet_id if request.apply_fees else None,
                payment_method=request.payment_method,
                draw_from_reserved=draw_from_reserved,
                reference=request.reference,
                description=request.description,
                metadata=request.metadata,
                status_history=[StatusChange(status=TransactionStatus.PENDING.value, reason="initiated")],
            )
            txn = self.store.insert(TRANSACTIONS, txn, idempotency_key=request.idempotency_key)

            if txn.kind == TransactionKind.DEPOSIT:
                self.wallets.hold_pending(txn.destination.wallet_id, amount, currency)

        logger.info("Initiated %s %s for %s %s", txn.kind.value, txn.id, txn.amount, txn.currency)
        return txn

    def complete(self, transaction_id: str) -> Transaction:
        with self.store.atomic():
            txn = self.get_transaction(transaction_id)
            if txn.status == TransactionStatus.COMPLETED:
                logger.debug("Transaction %s already completed (idempotent return)", txn.id)
                return txn
            if txn.status != TransactionStatus.PENDING:
                raise InvalidState(f"Cannot complete transaction in {txn.status.value} state")

            self._apply(txn)
            txn.status = TransactionStatus.COMPLETED
            txn.settled_at = utcnow()
            txn.status_history.append(StatusChange(status=txn.status.value, reason="settled"))
            txn = self.store.put(TRANSACTIONS, txn)

        logger.info("Completed %s %s", txn.kind.value, txn.id)
        return txn

    def process(self, request: InitiateTransactionRequest, draw_from_reserved: bool = False) -> Transaction:
        with self.store.atomic():
            txn = self.initiate(request, draw_from_reserved=draw_from_reserved)
            return self.complete(txn.id)

    def fail(self, transaction_id: str, reason: str) -> Transaction:
        return self._abandon(transaction_id, TransactionStatus.FAILED, reason)

    def cancel(self, transaction_id: str, reason: str) -> Transaction:
        return self._abandon(transaction_id, TransactionStatus.CANCELLED, reason)

    def reverse(self, transaction_id: str, reason: str, performed_by: Optional[str] = None) -> ReversalResponse:
        with self.store.atomic():
            original = self.get_transaction(transaction_id)
            if original.status != TransactionStatus.COMPLETED:
                raise InvalidState(
                    f"Cannot reverse transaction in {original.status.value} state. "
                    "Only completed transactions can be reversed."
                )

            # An odd number of hops back to the first transaction means this
            # reversal replays that transaction's movement.
            first, hops = self._first_of_chain(original)
            replays = hops % 2 == 1

            now = utcnow()
            reversal = Transaction(
                id=generate_reference("TXN"),
                idempotency_key=f"{original.id}:reversal",
                kind=TransactionKind.REFUND,
                source=original.destination,
                destination=original.source,
                amount=original.net_amount,
                currency=original.currency,
                payment_method=original.payment_method,
                draw_from_reserved=first.draw_from_reserved if replays else False,
                reference=ReversalRef(reverses=original.id),
                description=f"Reversal: {reason}",
                reverses=original.id,
                metadata={
                    "reversal_reason": reason,
                    "performed_by": performed_by,
                    "original_amount": str(original.amount),
                    "fees_retained": str(original.fees.total),
                },
                status_history=[StatusChange(status=TransactionStatus.PENDING.value, reason=reason, actor=performed_by)],
            )
            reversal = self.store.insert(TRANSACTIONS, reversal, idempotency_key=reversal.idempotency_key)
            reversal = self.complete(reversal.id)

            original.status = TransactionStatus.REVERSED
            original.reversed_by = reversal.id
            original.reversed_at = now
            original.status_history.append(StatusChange(status=original.status.value, reason=reason, actor=performed_by))
            original = self.store.put(TRANSACTIONS, original)

            if first.reference is not None:
                kind = ReferenceKind(first.reference.kind)
                compensator, restorer = self._compensators.get(kind, (None, None))
                if compensator is None:
                    logger.debug("No downstream compensation for %s reference", kind.value)
                elif not replays:
                    compensator(first, reversal)
                elif restorer is None:
                    raise InvalidState(f"A reversed {kind.value} cannot be re-applied")
                else:
                    restorer(first, reversal)

        logger.info("Reversed %s with %s: %s", original.id, reversal.id, reason)
        return ReversalResponse(original=original, reversal=reversal, message="Transaction reversed successfully")

    def get_transaction(self, transaction_id: str) -> Transaction:
        return self.store.get(TRANSACTIONS, transaction_id, Transaction)

    def _first_of_chain(self, txn: Transaction) -> tuple[Transaction, int]:
        hops = 0
        while txn.reference is not None and txn.reference.kind == ReferenceKind.REVERSAL.value:
            txn = self.get_transaction(txn.reference.reverses)
            hops += 1
        return txn, hops

    def history(self, wallet_id: str, limit: int = 50, offset: int = 0) -> TransactionHistoryResponse:
        balance = self.wallets.get_balance(wallet_id)
        touching = self.store.select(
            TRANSACTIONS,
            Transaction,
            lambda t: wallet_id in (t.source.wallet_id, t.destination.wallet_id, t.fee_wallet_id),
        )
        touching.sort(key=lambda t: t.created_at, reverse=True)
        return TransactionHistoryResponse(
            wallet_id=wallet_id,
            transactions=touching[offset:offset + limit],
            total_count=len(touching),
            balance=balance,
        )

    def _apply(self, txn: Transaction) -> None:
        source = txn.source.wallet_id
        destination = txn.destination.wallet_id
        if source:
            self.wallets.debit(
                source,
                txn.amount,
                txn.currency,
                from_reserved=txn.draw_from_reserved,
                withdrawal=txn.kind == TransactionKind.WITHDRAWAL,
            )
        if destination:
            if txn.kind == TransactionKind.DEPOSIT:
                self.wallets.drop_pending(destination, txn.amount)
            self.wallets.credit(destination, txn.net_amount, txn.currency)
        if txn.fees.total > ZERO:
            self.wallets.credit(txn.fee_wallet_id, txn.fees.total, txn.currency)

    def _abandon(self, transaction_id: str, status: TransactionStatus, reason: str) -> Transaction:
        with self.store.atomic():
            txn = self.get_transaction(transaction_id)
            if txn.status != TransactionStatus.PENDING:
                raise InvalidState(f"Cannot mark transaction {status.value} from {txn.status.value} state")
            if txn.kind == TransactionKind.DEPOSIT:
                self.wallets.drop_pending(txn.destination.wallet_id, txn.amount)

            txn.status = status
            txn.failure_reason = reason
            if status == TransactionStatus.FAILED:
                txn.failed_at = utcnow()
            txn.status_history.append(StatusChange(status=status.value, reason=reason))
            txn = self.store.put(TRANSACTIONS, txn)

        logger.info("Transaction %s %s: %s", txn.id, status.value, reason)
        return txn

    def _resolve_currency(self, request: InitiateTransactionRequest) -> str:
        source = request.source.wallet_id
        destination = request.destination.wallet_id

        if request.kind in SOURCE_ONLY:
            if not source:
                raise ValidationFailed(f"A {request.kind.value} needs a source wallet")
        elif request.kind in DESTINATION_ONLY:
            if not destination:
                raise ValidationFailed(f"A {request.kind.value} needs a destination wallet")
        elif not source or not destination:
            raise ValidationFailed(f"A {request.kind.value} needs both a source and a destination wallet")
        if source and source == destination:
            raise ValidationFailed("Source and destination wallets must differ")

        currency = request.currency
        for wallet_id in (source, destination):
            if wallet_id:
                wallet_currency = self.wallets.get_wallet(wallet_id).currency
                currency = currency or wallet_currency
                if wallet_currency != currency:
                    raise CurrencyMismatch(f"Wallet {wallet_id} holds {wallet_currency}, transaction is in {currency}")
        return currency

    def _check_wallet_currency(self, wallet_id: str, currency: str) -> None:
        wallet = self.wallets.get_wallet(wallet_id)
        if wallet.currency != currency:
            raise CurrencyMismatch(f"Fee wallet {wallet_id} holds {wallet.currency}, transaction is in {currency}")

    def _check_idempotency(self, idempotency_key: Optional[str]) -> Optional[Transaction]:
        transaction_id = self.store.lookup_key(TRANSACTIONS, idempotency_key)
        if transaction_id:
            return self.get_transaction(transaction_id)
        return None
