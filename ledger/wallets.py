import logging
import secrets
import time
from decimal import Decimal
from typing import Optional

from .config import EngineSettings
from .errors import (
    CurrencyMismatch,
    InsufficientFunds,
    InvalidState,
    LimitExceeded,
    ValidationFailed,
)
from .models import (
    ZERO,
    Balance,
    BalanceResponse,
    Wallet,
    WalletKind,
    WalletLimits,
    WalletStatus,
    to_money,
    utcnow,
)
from .store import WALLETS, LedgerStore

logger = logging.getLogger(__name__)

WALLET_PREFIXES = {
    WalletKind.PERSONAL: "PW",
    WalletKind.SPONSORED: "SW",
    WalletKind.GLOBAL: "GW",
    WalletKind.PROVIDER: "PRW",
    WalletKind.VENDOR: "VW",
}


def _base36(number: int) -> str:
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or "0"


def generate_reference(prefix: str) -> str:
    return f"{prefix}-{_base36(time.time_ns() // 1_000_000)}-{secrets.token_hex(3).upper()}"


class WalletManager:
    def __init__(self, store: LedgerStore, settings: Optional[EngineSettings] = None):
        self.store = store
        self.settings = settings or EngineSettings()

    def open_wallet(
        self,
        owner_id: str,
        kind: WalletKind = WalletKind.PERSONAL,
        currency: Optional[str] = None,
        per_transaction_limit: Optional[Decimal] = None,
    ) -> Wallet:
        wallet = Wallet(
            id=generate_reference(WALLET_PREFIXES[kind]),
            owner_id=owner_id,
            kind=kind,
            balance=Balance(currency=currency or self.settings.default_currency),
            limits=WalletLimits(
                per_transaction=to_money(per_transaction_limit) if per_transaction_limit is not None else None
            ),
        )
        with self.store.atomic():
            wallet = self.store.insert(WALLETS, wallet)
        logger.info("Opened %s wallet %s for owner %s", kind.value, wallet.id, owner_id)
        return wallet

    def get_wallet(self, wallet_id: str) -> Wallet:
        return self.store.get(WALLETS, wallet_id, Wallet)

    def get_balance(self, wallet_id: str) -> BalanceResponse:
        wallet = self.get_wallet(wallet_id)
        return BalanceResponse(
            wallet_id=wallet.id,
            available=wallet.balance.available,
            pending=wallet.balance.pending,
            reserved=wallet.balance.reserved,
            total=wallet.balance.total,
            currency=wallet.currency,
            status=wallet.status,
        )

    def list_wallets(self, owner_id: str) -> list[Wallet]:
        return self.store.select(WALLETS, Wallet, lambda w: w.owner_id == owner_id)

    def credit(self, wallet_id: str, amount, currency: Optional[str] = None) -> Wallet:
        amount = self._positive(amount)
        with self.store.atomic():
            wallet = self.get_wallet(wallet_id)
            self._check_currency(wallet, currency)
            if wallet.status == WalletStatus.CLOSED:
                raise InvalidState(f"Wallet {wallet_id} is closed")

            balance = wallet.balance.model_copy(update={"available": wallet.balance.available + amount})
            stats = wallet.statistics.model_copy(update={
                "total_received": wallet.statistics.total_received + amount,
            })
            return self._save(wallet, balance, self._touch(stats))

    def debit(
        self,
        wallet_id: str,
        amount,
        currency: Optional[str] = None,
        from_reserved: bool = False,
        withdrawal: bool = False,
    ) -> Wallet:
        amount = self._positive(amount)
        with self.store.atomic():
            wallet = self.get_wallet(wallet_id)
            self._check_currency(wallet, currency)
            self._check_spendable(wallet)
            limit = wallet.limits.per_transaction
            if limit is not None and amount > limit:
                raise LimitExceeded(f"Debit of {amount} exceeds the per-transaction limit of {limit}")

            if from_reserved:
                if wallet.balance.reserved < amount:
                    raise InsufficientFunds(
                        f"Wallet {wallet_id} has {wallet.balance.reserved} reserved, {amount} requested"
                    )
                balance = wallet.balance.model_copy(update={"reserved": wallet.balance.reserved - amount})
            else:
                if wallet.balance.available < amount:
                    logger.warning("Insufficient funds on %s: %s < %s", wallet_id, wallet.balance.available, amount)
                    raise InsufficientFunds(
                        f"Wallet {wallet_id} has {wallet.balance.available} available, {amount} requested"
                    )
                balance = wallet.balance.model_copy(update={"available": wallet.balance.available - amount})

            update = {"total_spent": wallet.statistics.total_spent + amount}
            if withdrawal:
                update["total_withdrawn"] = wallet.statistics.total_withdrawn + amount
            stats = wallet.statistics.model_copy(update=update)
            return self._save(wallet, balance, self._touch(stats))

    def reserve(self, wallet_id: str, amount) -> Wallet:
        amount = self._positive(amount)
        with self.store.atomic():
            wallet = self.get_wallet(wallet_id)
            self._check_spendable(wallet)
            if wallet.balance.available < amount:
                raise InsufficientFunds(
                    f"Wallet {wallet_id} has {wallet.balance.available} available, cannot reserve {amount}"
                )
            balance = wallet.balance.model_copy(update={
                "available": wallet.balance.available - amount,
                "reserved": wallet.balance.reserved + amount,
            })
            return self._save(wallet, balance)

    def release(self, wallet_id: str, amount) -> Wallet:
        amount = self._positive(amount)
        with self.store.atomic():
            wallet = self.get_wallet(wallet_id)
            if wallet.balance.reserved < amount:
                raise InsufficientFunds(
                    f"Wallet {wallet_id} has {wallet.balance.reserved} reserved, cannot release {amount}"
                )
            balance = wallet.balance.model_copy(update={
                "available": wallet.balance.available + amount,
                "reserved": wallet.balance.reserved - amount,
            })
            return self._save(wallet, balance)

    # Inbound funds that have not settled on the external rail yet

    def hold_pending(self, wallet_id: str, amount, currency: Optional[str] = None) -> Wallet:
        amount = self._positive(amount)
        with self.store.atomic():
            wallet = self.get_wallet(wallet_id)
            self._check_currency(wallet, currency)
            if wallet.status == WalletStatus.CLOSED:
                raise InvalidState(f"Wallet {wallet_id} is closed")
            balance = wallet.balance.model_copy(update={"pending": wallet.balance.pending + amount})
            return self._save(wallet, balance)

    def settle_pending(self, wallet_id: str, amount) -> Wallet:
        amount = self._positive(amount)
        with self.store.atomic():
            wallet = self.get_wallet(wallet_id)
            if wallet.balance.pending < amount:
                raise InvalidState(f"Wallet {wallet_id} has only {wallet.balance.pending} pending")
            balance = wallet.balance.model_copy(update={
                "pending": wallet.balance.pending - amount,
                "available": wallet.balance.available + amount,
            })
            stats = wallet.statistics.model_copy(update={
                "total_received": wallet.statistics.total_received + amount,
            })
            return self._save(wallet, balance, self._touch(stats))

    def drop_pending(self, wallet_id: str, amount) -> Wallet:
        amount = self._positive(amount)
        with self.store.atomic():
            wallet = self.get_wallet(wallet_id)
            if wallet.balance.pending < amount:
                raise InvalidState(f"Wallet {wallet_id} has only {wallet.balance.pending} pending")
            balance = wallet.balance.model_copy(update={"pending": wallet.balance.pending - amount})
            return self._save(wallet, balance)

    def freeze(self, wallet_id: str, reason: str = "") -> Wallet:
        with self.store.atomic():
            wallet = self.get_wallet(wallet_id)
            if wallet.status != WalletStatus.ACTIVE:
                raise InvalidState(f"Cannot freeze wallet in {wallet.status.value} state")
            wallet.status = WalletStatus.FROZEN
            wallet.status_reason = reason
            wallet.updated_at = utcnow()
            wallet = self.store.put(WALLETS, wallet)
        logger.info("Froze wallet %s: %s", wallet_id, reason)
        return wallet

    def unfreeze(self, wallet_id: str) -> Wallet:
        with self.store.atomic():
            wallet = self.get_wallet(wallet_id)
            if wallet.status != WalletStatus.FROZEN:
                raise InvalidState(f"Cannot unfreeze wallet in {wallet.status.value} state")
            wallet.status = WalletStatus.ACTIVE
            wallet.status_reason = None
            wallet.updated_at = utcnow()
            return self.store.put(WALLETS, wallet)

    def close(self, wallet_id: str, reason: str = "") -> Wallet:
        with self.store.atomic():
            wallet = self.get_wallet(wallet_id)
            if wallet.status == WalletStatus.CLOSED:
                raise InvalidState(f"Wallet {wallet_id} is already closed")
            if wallet.balance.total != ZERO:
                raise InvalidState(f"Wallet {wallet_id} still holds {wallet.balance.total}")
            wallet.status = WalletStatus.CLOSED
            wallet.status_reason = reason
            wallet.closed_at = wallet.updated_at = utcnow()
            wallet = self.store.put(WALLETS, wallet)
        logger.info("Closed wallet %s", wallet_id)
        return wallet

    def _save(self, wallet: Wallet, balance: Balance, statistics=None) -> Wallet:
        if balance.available < ZERO or balance.pending < ZERO or balance.reserved < ZERO:
            raise InvalidState(f"Wallet {wallet.id} balance would go negative")
        wallet.balance = balance
        if statistics is not None:
            wallet.statistics = statistics
        wallet.updated_at = utcnow()
        return self.store.put(WALLETS, wallet)

    @staticmethod
    def _touch(statistics):
        return statistics.model_copy(update={
            "transaction_count": statistics.transaction_count + 1,
            "last_transaction_at": utcnow(),
        })

    @staticmethod
    def _positive(amount) -> Decimal:
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationFailed("Amount must be greater than zero")
        return amount

    @staticmethod
    def _check_currency(wallet: Wallet, currency: Optional[str]) -> None:
        if currency and currency != wallet.currency:
            raise CurrencyMismatch(f"Wallet {wallet.id} holds {wallet.currency}, got {currency}")

    @staticmethod
    def _check_spendable(wallet: Wallet) -> None:
        if wallet.status != WalletStatus.ACTIVE:
            raise InvalidState(f"Wallet {wallet.id} is {wallet.status.value}")
