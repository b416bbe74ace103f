from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from pydantic import AfterValidator, BaseModel, Field, ConfigDict


CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Read offset-less timestamps as UTC so every stored datetime is aware."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class WalletKind(str, Enum):
    PERSONAL = "personal"
    SPONSORED = "sponsored"
    GLOBAL = "global"
    PROVIDER = "provider"
    VENDOR = "vendor"


class WalletStatus(str, Enum):
    ACTIVE = "active"
    FROZEN = "frozen"
    CLOSED = "closed"


class TransactionKind(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    SPONSORSHIP = "sponsorship"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REVERSED = "reversed"


class PaymentMethod(str, Enum):
    WALLET = "wallet"
    CARD = "card"
    BANK = "bank"
    MOBILE_MONEY = "mobile_money"
    INSURANCE = "insurance"
    SPONSOR = "sponsor"


class ReferenceKind(str, Enum):
    APPOINTMENT_PAYMENT = "appointment_payment"
    SPONSORSHIP_UTILIZATION = "sponsorship_utilization"
    CLAIM_PAYMENT = "claim_payment"
    REVERSAL = "reversal"


class Balance(BaseModel):
    available: Decimal = ZERO
    pending: Decimal = ZERO
    reserved: Decimal = ZERO
    currency: str = "USD"

    @property
    def total(self) -> Decimal:
        return self.available + self.pending + self.reserved


class WalletStatistics(BaseModel):
    total_received: Decimal = ZERO
    total_spent: Decimal = ZERO
    total_withdrawn: Decimal = ZERO
    transaction_count: int = 0
    last_transaction_at: Optional[UtcDatetime] = None


class WalletLimits(BaseModel):
    per_transaction: Optional[Decimal] = None


class Wallet(BaseModel):
    id: str
    owner_id: str
    kind: WalletKind
    balance: Balance
    status: WalletStatus = WalletStatus.ACTIVE
    status_reason: Optional[str] = None
    statistics: WalletStatistics = Field(default_factory=WalletStatistics)
    limits: WalletLimits = Field(default_factory=WalletLimits)
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)
    closed_at: Optional[UtcDatetime] = None
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    @property
    def currency(self) -> str:
        return self.balance.currency


class Party(BaseModel):
    wallet_id: Optional[str] = None
    user_id: Optional[str] = None


class FeeBreakdown(BaseModel):
    platform: Decimal = ZERO
    payment: Decimal = ZERO
    tax: Decimal = ZERO
    total: Decimal = ZERO


class AppointmentPaymentRef(BaseModel):
    kind: Literal["appointment_payment"] = "appointment_payment"
    appointment_id: str


class SponsorshipUtilizationRef(BaseModel):
    kind: Literal["sponsorship_utilization"] = "sponsorship_utilization"
    sponsorship_id: str
    utilization_id: str


class ClaimPaymentRef(BaseModel):
    kind: Literal["claim_payment"] = "claim_payment"
    claim_id: str


class ReversalRef(BaseModel):
    kind: Literal["reversal"] = "reversal"
    reverses: str


TransactionReference = Annotated[
    Union[AppointmentPaymentRef, SponsorshipUtilizationRef, ClaimPaymentRef, ReversalRef],
    Field(discriminator="kind"),
]


class StatusChange(BaseModel):
    status: str
    at: UtcDatetime = Field(default_factory=utcnow)
    reason: str = ""
    actor: Optional[str] = None


class Transaction(BaseModel):
    id: str
    idempotency_key: Optional[str] = None
    kind: TransactionKind
    source: Party
    destination: Party
    amount: Decimal
    currency: str = "USD"
    fees: FeeBreakdown = Field(default_factory=FeeBreakdown)
    fee_wallet_id: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.WALLET
    draw_from_reserved: bool = False
    status: TransactionStatus = TransactionStatus.PENDING
    status_history: list[StatusChange] = Field(default_factory=list)
    reference: Optional[TransactionReference] = None
    description: str = ""
    reverses: Optional[str] = None
    reversed_by: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    settled_at: Optional[UtcDatetime] = None
    failed_at: Optional[UtcDatetime] = None
    reversed_at: Optional[UtcDatetime] = None
    metadata: dict = Field(default_factory=dict)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    @property
    def net_amount(self) -> Decimal:
        return self.amount - self.fees.total


class OpenWalletRequest(BaseModel):
    owner_id: str
    kind: WalletKind = WalletKind.PERSONAL
    currency: Optional[str] = None
    per_transaction_limit: Optional[Decimal] = None


class WalletAmountRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = None


class WalletStatusRequest(BaseModel):
    reason: str = ""


class InitiateTransactionRequest(BaseModel):
    kind: TransactionKind
    source: Party = Field(default_factory=Party)
    destination: Party = Field(default_factory=Party)
    amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.WALLET
    apply_fees: bool = False
    fee_wallet_id: Optional[str] = None
    reference: Optional[TransactionReference] = None
    description: str = ""
    idempotency_key: Optional[str] = Field(default=None, description="Caller-supplied dedup key")
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "kind": "payment",
            "source": {"wallet_id": "PW-1A2B3C-D4E5F6"},
            "destination": {"wallet_id": "PRW-1A2B3C-A1B2C3"},
            "amount": 120.00,
            "currency": "USD",
            "reference": {"kind": "appointment_payment", "appointment_id": "apt-881"},
            "idempotency_key": "apt-881-payment",
        }
    })


class FailTransactionRequest(BaseModel):
    reason: str


class ReverseTransactionRequest(BaseModel):
    reason: str = Field(..., description="Reason for reversal")
    performed_by: Optional[str] = None


class BalanceResponse(BaseModel):
    wallet_id: str
    available: Decimal
    pending: Decimal
    reserved: Decimal
    total: Decimal
    currency: str
    status: WalletStatus


class TransactionHistoryResponse(BaseModel):
    wallet_id: str
    transactions: list[Transaction]
    total_count: int
    balance: BalanceResponse


class TransactionResponse(BaseModel):
    transaction: Transaction
    message: str


class ReversalResponse(BaseModel):
    original: Transaction
    reversal: Transaction
    message: str
