"""
Wallet Ledger for the Benefits Engine

This module provides:
- Wallets with available / pending / reserved balances
- Two-phase transactions: pending -> completed / failed / cancelled
- Reversals that compensate downstream records
- Idempotent transaction creation
- Atomic, versioned storage
"""

from .config import EngineSettings
from .errors import EngineError, StoreUnavailable
from .models import (
    Balance,
    PaymentMethod,
    Transaction,
    TransactionKind,
    TransactionStatus,
    Wallet,
    WalletKind,
    WalletStatus,
)
from .service import TransactionProcessor
from .store import LedgerStore
from .wallets import WalletManager

__all__ = [
    "EngineSettings",
    "EngineError",
    "StoreUnavailable",
    "Balance",
    "PaymentMethod",
    "Transaction",
    "TransactionKind",
    "TransactionStatus",
    "Wallet",
    "WalletKind",
    "WalletStatus",
    "TransactionProcessor",
    "LedgerStore",
    "WalletManager",
]
