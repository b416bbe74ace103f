"""
Unit Tests for the Wallet Manager

Tests cover:
1. Credit / debit invariants
2. Reservations
3. Freeze / close lifecycle
4. Currency and per-transaction limits
"""

import pytest
from decimal import Decimal

from ledger.errors import CurrencyMismatch, InsufficientFunds, InvalidState, LimitExceeded, ValidationFailed
from ledger.models import WalletKind, WalletStatus


class TestOpenWallet:
    """Tests for opening wallets."""

    def test_wallet_id_prefix_follows_kind(self, engine):
        """Wallet identifiers carry a prefix for their kind."""
        personal = engine.wallets.open_wallet("user-1", WalletKind.PERSONAL)
        provider = engine.wallets.open_wallet("provider-1", WalletKind.PROVIDER)

        assert personal.id.startswith("PW-")
        assert provider.id.startswith("PRW-")

    def test_new_wallet_is_empty_and_active(self, engine):
        """A new wallet starts active with zero balances in the default currency."""
        wallet = engine.wallets.open_wallet("user-1")

        assert wallet.status == WalletStatus.ACTIVE
        assert wallet.balance.total == Decimal("0.00")
        assert wallet.currency == "USD"

    def test_list_wallets_by_owner(self, engine):
        """Wallets are listed per owner."""
        engine.wallets.open_wallet("user-1")
        engine.wallets.open_wallet("user-1", WalletKind.SPONSORED)
        engine.wallets.open_wallet("user-2")

        assert len(engine.wallets.list_wallets("user-1")) == 2


class TestCreditDebit:
    """Tests for balance mutations."""

    def test_credit_updates_balance_and_statistics(self, engine, make_wallet):
        """Credits increase available funds and counters."""
        wallet = make_wallet(balance="100")

        assert wallet.balance.available == Decimal("100.00")
        assert wallet.statistics.total_received == Decimal("100.00")
        assert wallet.statistics.transaction_count == 1

    def test_debit_failure_leaves_wallet_unchanged(self, engine, make_wallet):
        """Debiting 75 from a wallet holding 50 fails without side effects."""
        wallet = make_wallet(balance="50")

        with pytest.raises(InsufficientFunds):
            engine.wallets.debit(wallet.id, Decimal("75"))

        after = engine.wallets.get_wallet(wallet.id)
        assert after.balance.available == Decimal("50.00")
        assert after.statistics.total_spent == Decimal("0.00")
        assert after.version == wallet.version

    def test_debit_rejects_non_positive_amounts(self, engine, make_wallet):
        """Zero and negative amounts are malformed input."""
        wallet = make_wallet(balance="50")

        with pytest.raises(ValidationFailed):
            engine.wallets.debit(wallet.id, Decimal("0"))
        with pytest.raises(ValidationFailed):
            engine.wallets.credit(wallet.id, Decimal("-5"))

    def test_currency_mismatch(self, engine, make_wallet):
        """Movements in another currency are refused."""
        wallet = make_wallet(balance="50")

        with pytest.raises(CurrencyMismatch):
            engine.wallets.credit(wallet.id, Decimal("10"), "EUR")

    def test_per_transaction_limit(self, engine, make_wallet):
        """Debits above the wallet's per-transaction limit are refused."""
        wallet = make_wallet(balance="500", per_transaction_limit=Decimal("100"))

        with pytest.raises(LimitExceeded):
            engine.wallets.debit(wallet.id, Decimal("150"))
        engine.wallets.debit(wallet.id, Decimal("100"))

        assert engine.wallets.get_balance(wallet.id).available == Decimal("400.00")


class TestReservations:
    """Tests for reserve / release and reserved captures."""

    def test_reserve_moves_available_to_reserved(self, engine, make_wallet):
        """Reserving keeps the total constant."""
        wallet = make_wallet(balance="100")

        engine.wallets.reserve(wallet.id, Decimal("60"))
        balance = engine.wallets.get_balance(wallet.id)

        assert balance.available == Decimal("40.00")
        assert balance.reserved == Decimal("60.00")
        assert balance.total == Decimal("100.00")

    def test_reserved_funds_are_not_spendable(self, engine, make_wallet):
        """Ordinary debits only draw from available funds."""
        wallet = make_wallet(balance="100")
        engine.wallets.reserve(wallet.id, Decimal("80"))

        with pytest.raises(InsufficientFunds):
            engine.wallets.debit(wallet.id, Decimal("50"))

    def test_capture_from_reserved(self, engine, make_wallet):
        """A debit flagged from_reserved draws from the reservation."""
        wallet = make_wallet(balance="100")
        engine.wallets.reserve(wallet.id, Decimal("80"))

        engine.wallets.debit(wallet.id, Decimal("50"), from_reserved=True)
        balance = engine.wallets.get_balance(wallet.id)

        assert balance.reserved == Decimal("30.00")
        assert balance.available == Decimal("20.00")

    def test_release_more_than_reserved_fails(self, engine, make_wallet):
        """Releasing cannot push reserved funds negative."""
        wallet = make_wallet(balance="100")
        engine.wallets.reserve(wallet.id, Decimal("10"))

        with pytest.raises(InsufficientFunds):
            engine.wallets.release(wallet.id, Decimal("20"))


class TestWalletStatus:
    """Tests for freeze / unfreeze / close."""

    def test_frozen_wallet_accepts_credits_but_not_debits(self, engine, make_wallet):
        """Freezing blocks spending only."""
        wallet = make_wallet(balance="100")
        engine.wallets.freeze(wallet.id, "kyc review")

        engine.wallets.credit(wallet.id, Decimal("10"))
        with pytest.raises(InvalidState):
            engine.wallets.debit(wallet.id, Decimal("10"))

        engine.wallets.unfreeze(wallet.id)
        engine.wallets.debit(wallet.id, Decimal("10"))
        assert engine.wallets.get_balance(wallet.id).available == Decimal("100.00")

    def test_close_requires_zero_balance(self, engine, make_wallet):
        """A wallet holding funds cannot be closed."""
        wallet = make_wallet(balance="5")

        with pytest.raises(InvalidState):
            engine.wallets.close(wallet.id)

        engine.wallets.debit(wallet.id, Decimal("5"))
        closed = engine.wallets.close(wallet.id, "account closed")
        assert closed.status == WalletStatus.CLOSED

    def test_closed_wallet_rejects_credits(self, engine, make_wallet):
        """Closed wallets accept nothing."""
        wallet = make_wallet()
        engine.wallets.close(wallet.id)

        with pytest.raises(InvalidState):
            engine.wallets.credit(wallet.id, Decimal("1"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
